import threading

import pytest
from sqlalchemy import event

from benchmark import assignment, create_app, db
from benchmark import transitions as t
from benchmark.assignment import (ASSIGNED, NO_ORDER_AVAILABLE, WIP_CAP_EXCEEDED,
                                  eligible_candidates, queued_count, start_next,
                                  wip_count)
from benchmark.errors import InvalidTransition
from benchmark.models import Order, Project, User, WorkItem


def test_picks_highest_priority_then_oldest(seed, queued_order):
    old_normal = queued_order(age_minutes=120)
    young_urgent = queued_order(priority="urgent", age_minutes=1)
    older_urgent = queued_order(priority="urgent", age_minutes=30)
    queued_order(priority="low", age_minutes=500)

    ids = [o.id for o in eligible_candidates(seed.fp.id, "draw")]
    assert ids[:3] == [older_urgent.id, young_urgent.id, old_normal.id]

    result = start_next(seed.drawer)
    assert result.outcome == ASSIGNED
    assert result.order.id == older_urgent.id


def test_candidates_skip_held_assigned_and_other_stages(seed, queued_order):
    held = queued_order()
    t.hold(held, seed.manager, "waiting on client")
    taken = queued_order()
    t.reassign(taken, seed.manager, "priority client", seed.drawer2.id)
    queued_order(project=seed.ph)
    free = queued_order()

    assert [o.id for o in eligible_candidates(seed.fp.id, "draw")] == [free.id]
    assert eligible_candidates(seed.fp.id, "check") == []


def test_wip_cap_blocks_second_claim(seed, queued_order):
    first = queued_order()
    queued_order()
    assert start_next(seed.drawer).order.id == first.id
    assert wip_count(seed.drawer) == 1

    result = start_next(seed.drawer)
    assert result.outcome == WIP_CAP_EXCEEDED
    assert result.order is None
    assert wip_count(seed.drawer) == 1
    assert Order.query.filter_by(workflow_state="QUEUED_DRAW").count() == 1


def test_wip_cap_is_per_project_setting(seed, queued_order):
    for _ in range(3):
        queued_order(project=seed.ph)
    assert start_next(seed.designer).assigned
    assert start_next(seed.designer).assigned
    assert start_next(seed.designer).outcome == WIP_CAP_EXCEEDED
    assert wip_count(seed.designer) == 2


def test_held_order_keeps_its_wip_slot(seed, queued_order):
    order = queued_order()
    other = queued_order()
    start_next(seed.drawer)
    t.hold(order, seed.manager, "client clarification")
    assert order.assigned_to == seed.drawer.id
    assert wip_count(seed.drawer) == 1
    assert [o.id for o in assignment.assigned_orders(seed.drawer)] == [order.id]

    assert start_next(seed.drawer).outcome == WIP_CAP_EXCEEDED
    db.session.refresh(other)
    assert other.assigned_to is None

    t.resume(order, seed.manager)
    assert order.workflow_state == "IN_DRAW"
    assert wip_count(seed.drawer) == 1 <= seed.fp.wip_cap


def test_held_queued_order_takes_no_slot(seed, queued_order):
    order = queued_order()
    queued_order()
    t.hold(order, seed.manager, "waiting on client")
    assert wip_count(seed.drawer) == 0
    assert start_next(seed.drawer).assigned


def test_queued_count_matches_eligible_orders(seed, queued_order):
    orders = [queued_order() for _ in range(4)]
    t.hold(orders[0], seed.manager, "waiting on client")
    queued_order(project=seed.ph)
    start_next(seed.drawer)
    assert queued_count(seed.fp.id, "draw") == 2
    assert queued_count(seed.fp.id, "draw") == len(eligible_candidates(seed.fp.id, "draw"))
    assert queued_count(seed.fp.id, "check") == 0


def test_no_order_available(seed):
    result = start_next(seed.drawer)
    assert result.outcome == NO_ORDER_AVAILABLE
    assert result.order is None
    assert "No orders" in result.message


def test_wrong_role_for_topology(seed, queued_order):
    seed.checker.project_id = seed.ph.id
    db.session.commit()
    with pytest.raises(InvalidTransition):
        start_next(seed.checker)
    with pytest.raises(InvalidTransition):
        start_next(seed.manager)


def test_lost_claim_moves_on_to_next_candidate(seed, queued_order, monkeypatch):
    first = queued_order(age_minutes=10)
    second = queued_order(age_minutes=5)
    stale = list(eligible_candidates(seed.fp.id, "draw"))

    # another worker wins the first order between our read and our claim
    assert start_next(seed.drawer2).order.id == first.id
    monkeypatch.setattr(assignment, "eligible_candidates", lambda *a, **kw: stale)

    result = start_next(seed.drawer)
    assert result.outcome == ASSIGNED
    assert result.order.id == second.id
    db.session.refresh(first)
    assert first.assigned_to == seed.drawer2.id
    assert WorkItem.query.filter_by(order_id=first.id).count() == 1


def test_every_claim_lost_reports_no_order(seed, queued_order, monkeypatch):
    order = queued_order()
    stale = list(eligible_candidates(seed.fp.id, "draw"))
    start_next(seed.drawer2)
    monkeypatch.setattr(assignment, "eligible_candidates", lambda *a, **kw: stale)

    assert start_next(seed.drawer).outcome == NO_ORDER_AVAILABLE
    db.session.refresh(order)
    assert order.assigned_to == seed.drawer2.id


def test_each_order_claimed_once(seed, queued_order):
    orders = [queued_order() for _ in range(2)]
    results = [start_next(seed.drawer), start_next(seed.drawer2)]
    assert all(r.assigned for r in results)
    assert {r.order.id for r in results} == {o.id for o in orders}
    for order in orders:
        assert WorkItem.query.filter_by(order_id=order.id, status="in_progress").count() == 1
    assert start_next(seed.drawer).outcome == WIP_CAP_EXCEEDED


def test_claim_creates_work_item_and_log(seed, queued_order):
    order = queued_order()
    start_next(seed.drawer)
    item = WorkItem.query.filter_by(order_id=order.id).one()
    assert (item.stage, item.assigned_user_id, item.status, item.attempt_number) == (
        "draw", seed.drawer.id, "in_progress", 0)
    assert order.started_at is not None
    assert seed.drawer.last_activity is not None


def test_project_wip_cap_defaults_from_config(app):
    app.config["DEFAULT_WIP_CAP"] = 4
    project = Project(code="FP9", name="Defaults", workflow_type="FP_3_LAYER")
    db.session.add(project)
    db.session.commit()
    assert project.wip_cap == 4


@pytest.fixture()
def file_app(tmp_path):
    """App on a file-backed SQLite database that real threads can share.

    Every transaction opens with BEGIN IMMEDIATE, so writers queue on the
    database lock instead of failing on lock upgrade.
    """
    app = create_app("testing", {
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'claims.db'}",
        "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 30,
                                                       "check_same_thread": False}},
    })
    with app.app_context():
        engine = db.engine

        @event.listens_for(engine, "connect")
        def _manual_begin(dbapi_conn, _record):
            dbapi_conn.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()
        db.engine.dispose()


def test_concurrent_start_next_hands_each_order_out_once(file_app):
    with file_app.app_context():
        project = Project(code="FPX", name="Threads", workflow_type="FP_3_LAYER", wip_cap=1)
        manager = User(name="Mo Manager", email="mo@example.com", role="operations_manager")
        db.session.add_all([project, manager])
        db.session.flush()
        drawers = [User(name=f"Drawer {i}", email=f"drawer{i}@example.com", role="drawer",
                        project_id=project.id, layer="draw") for i in range(6)]
        db.session.add_all(drawers)
        db.session.commit()
        for _ in range(3):
            t.receive(t.create_order(project, manager), manager)
        drawer_ids = [d.id for d in drawers]

    barrier = threading.Barrier(len(drawer_ids))
    outcomes, failures = [], []

    def worker(user_id):
        with file_app.app_context():
            barrier.wait()
            try:
                user = db.session.get(User, user_id)
                result = start_next(user)
                outcomes.append((result.outcome, result.order.id if result.order else None))
            except Exception as exc:  # surfaced by the assertion below
                failures.append(exc)

    threads = [threading.Thread(target=worker, args=(uid,)) for uid in drawer_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert failures == []
    won = [order_id for outcome, order_id in outcomes if outcome == ASSIGNED]
    assert len(won) == 3 and len(set(won)) == 3
    assert sorted(o for o, _ in outcomes if o != ASSIGNED) == [NO_ORDER_AVAILABLE] * 3

    with file_app.app_context():
        assert WorkItem.query.count() == 3
        owners = [o.assigned_to for o in Order.query.all()]
        assert None not in owners and len(set(owners)) == 3
