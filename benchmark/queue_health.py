"""Queue health and staffing aggregates for dashboards.

Everything is computed on read; nothing here writes.  Each section of the
report is built independently so that one failing query degrades only that
section: the failure is logged and named in ``errors``.
"""

import logging

from flask import current_app
from sqlalchemy import func

from . import db
from .assignment import wip_count
from .models import Order, Project, User, isoformat, utcnow
from .stats import today_completed
from .workflow import (DELIVERED, ON_HOLD, STAGE_ROLES, TERMINAL_STATES,
                       in_progress, queued, topology_for)

logger = logging.getLogger(__name__)


def sla_minutes(project: Project, stage: str) -> int:
    config = project.sla_config or {}
    value = config.get(stage)
    if value is None:
        return current_app.config["DEFAULT_SLA_MINUTES"]
    return int(value)


def state_counts(project: Project) -> dict:
    rows = (db.session.query(Order.workflow_state, func.count(Order.id),
                              func.min(func.coalesce(Order.queued_at, Order.received_at)))
            .filter(Order.project_id == project.id)
            .group_by(Order.workflow_state)
            .all())
    return {state: {"count": count, "oldest": isoformat(oldest)}
            for state, count, oldest in rows}


def stage_health(project: Project, now=None) -> dict:
    now = now or utcnow()
    topology = topology_for(project.workflow_type)
    stages = {}
    for stage in topology.stages:
        queued_q = Order.query.filter(Order.project_id == project.id,
                                      Order.workflow_state == queued(stage))
        queued_count = queued_q.count()
        oldest = (db.session.query(func.min(Order.queued_at))
                  .filter(Order.project_id == project.id,
                          Order.workflow_state == queued(stage))
                  .scalar())
        in_progress_count = Order.query.filter(
            Order.project_id == project.id,
            Order.workflow_state == in_progress(stage)).count()
        limit = sla_minutes(project, stage)
        wait = (now - oldest).total_seconds() / 60 if oldest else 0
        stages[stage] = {
            "queued": queued_count,
            "in_progress": in_progress_count,
            "oldest_queued_at": isoformat(oldest),
            "oldest_wait_minutes": round(wait, 1),
            "sla_minutes": limit,
            "breached": bool(oldest) and wait > limit,
        }
    return stages


def staffing_rows(project: Project) -> list:
    users = (User.query
             .filter(User.project_id == project.id, User.role.in_(STAGE_ROLES.values()))
             .order_by(User.role, User.id)
             .all())
    return [{
        "user_id": u.id,
        "name": u.name,
        "role": u.role,
        "layer": u.layer,
        "wip_count": wip_count(u),
        "today_completed": today_completed(u),
        "is_absent": u.is_absent,
        "is_active": u.is_active,
    } for u in users]


def totals(project: Project) -> dict:
    base = Order.query.filter(Order.project_id == project.id)
    return {
        "on_hold": base.filter(Order.workflow_state == ON_HOLD).count(),
        "total_pending": base.filter(Order.workflow_state.notin_(TERMINAL_STATES)).count(),
        "total_delivered": base.filter(Order.workflow_state == DELIVERED).count(),
    }


def _section(name, fn, fallback, errors):
    try:
        return fn()
    except Exception:
        logger.exception("queue health section %s failed", name)
        db.session.rollback()
        errors.append(name)
        return fallback


def queue_health(project: Project) -> dict:
    errors = []
    stages = _section("stages", lambda: stage_health(project), {}, errors)
    report = {
        "project_id": project.id,
        "workflow_type": project.workflow_type,
        "state_counts": _section("state_counts", lambda: state_counts(project), {}, errors),
        "stages": stages,
        "staffing": _section("staffing", lambda: staffing_rows(project), [], errors),
        "sla_breaches": sum(1 for s in stages.values() if s["breached"]),
    }
    report.update(_section("totals", lambda: totals(project),
                           {"on_hold": 0, "total_pending": 0, "total_delivered": 0}, errors))
    report["errors"] = errors
    return report


def staffing(project: Project) -> dict:
    """Per-role headcount for a project, with the users listed."""
    grouped = {}
    for user in (User.query.filter(User.project_id == project.id)
                 .order_by(User.role, User.id).all()):
        entry = grouped.setdefault(user.role, {"role": user.role, "total": 0,
                                               "active": 0, "absent": 0, "users": []})
        entry["total"] += 1
        entry["active"] += int(bool(user.is_active) and not user.is_absent)
        entry["absent"] += int(bool(user.is_absent))
        entry["users"].append(dict(user.to_dict(), wip_count=wip_count(user)))
    return {"project_id": project.id, "staffing": grouped}
