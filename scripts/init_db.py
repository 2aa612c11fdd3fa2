from benchmark import create_app, db
from benchmark.models import Project, Team, User
from benchmark.transitions import create_order, receive
app = create_app()

with app.app_context():
    db.drop_all()
    db.create_all()

    fp = Project(code="FP-UK", name="Floor Plans UK", country="UK", department="floor_plan",
                 client_name="Demo Estates", workflow_type="FP_3_LAYER", wip_cap=1,
                 sla_config={"draw": 240, "check": 120, "qa": 60})
    ph = Project(code="PH-AU", name="Photo Enhancement AU", country="AU", department="photos_enhancement",
                 client_name="Demo Realty", workflow_type="PH_2_LAYER", wip_cap=2)
    db.session.add_all([fp, ph]); db.session.flush()
    team = Team(project_id=fp.id, name="Team A")
    db.session.add(team); db.session.flush()

    manager = User(name="Ops Manager", email="ops@example.com", role="operations_manager")
    db.session.add(manager)
    # Sample production staff per layer
    staff = [
        (fp, "drawer", "draw", 3), (fp, "checker", "check", 2), (fp, "qa", "qa", 1),
        (ph, "designer", "design", 3), (ph, "qa", "qa", 1),
    ]
    for project, role, layer, n in staff:
        for i in range(1, n + 1):
            db.session.add(User(name=f"{project.code} {role} {i}",
                                email=f"{role}{i}@{project.code.lower()}.example.com",
                                role=role, layer=layer, project_id=project.id,
                                team_id=team.id if project is fp else None, daily_target=20))
    db.session.commit()

    # Sample orders, queued at the first stage
    for project in (fp, ph):
        for i in range(1, 11):
            priority = ("low", "normal", "normal", "high", "urgent")[i % 5]
            order = create_order(project, manager, order_number=f"{project.code}-{i:04d}",
                                 client_reference=f"REF-{i:04d}", priority=priority)
            receive(order, manager)

    print("Database initialized.")
