"""
Shared pytest fixtures.

Provides:
    - app: Flask application on a fresh in-memory database, context pushed
    - client: Flask test client
    - seed: two projects (FP wip_cap=1, PH wip_cap=2) and their staff
    - queued_order: factory for orders already queued at their first stage
    - as_user: actor headers for the test client
"""

from datetime import timedelta
from types import SimpleNamespace

import pytest

from benchmark import create_app, db
from benchmark.models import Project, User, utcnow
from benchmark.transitions import create_order, receive


@pytest.fixture()
def app():
    app = create_app("testing")
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


def _user(name, role, project=None, layer=None, **kw):
    u = User(name=name, email=f"{name.lower().replace(' ', '.')}@example.com", role=role,
             project_id=project.id if project else None, layer=layer, **kw)
    db.session.add(u)
    return u


@pytest.fixture()
def seed(app):
    fp = Project(code="FP1", name="Floor Plans", workflow_type="FP_3_LAYER", wip_cap=1,
                 sla_config={"draw": 60})
    ph = Project(code="PH1", name="Photos", workflow_type="PH_2_LAYER", wip_cap=2)
    db.session.add_all([fp, ph])
    db.session.flush()
    s = SimpleNamespace(
        fp=fp,
        ph=ph,
        manager=_user("Olivia Ops", "operations_manager"),
        director=_user("Dana Director", "director"),
        accounts=_user("Avery Accounts", "accounts_manager"),
        drawer=_user("Drew One", "drawer", fp, "draw"),
        drawer2=_user("Drew Two", "drawer", fp, "draw"),
        checker=_user("Cam Checker", "checker", fp, "check"),
        qa=_user("Quinn QA", "qa", fp, "qa"),
        designer=_user("Dee Designer", "designer", ph, "design"),
        ph_qa=_user("Pat QA", "qa", ph, "qa"),
    )
    db.session.commit()
    return s


@pytest.fixture()
def queued_order(seed):
    """Create and queue an order; ``age_minutes`` backdates its queue entry."""

    def make(project=None, priority="normal", age_minutes=None, **kw):
        order = create_order(project or seed.fp, seed.manager, priority=priority, **kw)
        receive(order, seed.manager)
        if age_minutes is not None:
            order.queued_at = utcnow() - timedelta(minutes=age_minutes)
            db.session.commit()
        return order

    return make


@pytest.fixture()
def as_user():
    """Request headers identifying ``user`` as the actor."""
    return lambda user: {"X-User-Id": str(user.id)}
