"""Work item ledger and activity log.

Rows here are only ever added (or, for the open work item of an attempt,
closed) as a side effect of an order transition.  Nothing in the API edits
them directly.
"""

from . import db
from .models import ActivityLog, Order, WorkItem, utcnow
from .workflow import ATTEMPT_FIELDS


def open_work_item(order: Order):
    return (WorkItem.query
            .filter_by(order_id=order.id, status="in_progress")
            .order_by(WorkItem.id.desc())
            .first())


def create_work_item(order: Order, stage: str, user_id: int, now=None) -> WorkItem:
    """Start a new attempt of ``stage`` for ``order``.

    ``attempt_number`` is copied from the order's counter for the stage, so
    it must be called after any counter increment has been flushed.
    """
    now = now or utcnow()
    item = WorkItem(
        order_id=order.id,
        project_id=order.project_id,
        stage=stage,
        assigned_user_id=user_id,
        team_id=order.team_id,
        status="in_progress",
        attempt_number=getattr(order, ATTEMPT_FIELDS[stage]),
        assigned_at=now,
        started_at=now,
    )
    db.session.add(item)
    return item


def stop_timer(item: WorkItem, now=None) -> int:
    """Fold a running timer into ``time_spent_seconds``; returns seconds added."""
    if item.timer_started_at is None:
        return 0
    now = now or utcnow()
    added = max(0, int((now - item.timer_started_at).total_seconds()))
    item.time_spent_seconds = (item.time_spent_seconds or 0) + added
    item.timer_started_at = None
    return added


def close_work_item(order: Order, status: str, now=None, **fields):
    item = open_work_item(order)
    if item is None:
        return None
    now = now or utcnow()
    stop_timer(item, now)
    item.status = status
    item.completed_at = now
    for key, value in fields.items():
        setattr(item, key, value)
    return item


def log_hops(order_id: int, actor_id, action: str, from_state: str, path,
             reason=None, meta=None, now=None):
    """Write one activity row per state hop along ``path``."""
    now = now or utcnow()
    rows = []
    prev = from_state
    for state in path:
        row = ActivityLog(order_id=order_id, actor_id=actor_id, action=action,
                          from_state=prev, to_state=state, reason=reason,
                          meta=meta, created_at=now)
        db.session.add(row)
        rows.append(row)
        prev = state
    return rows


def work_item_history(order: Order):
    return WorkItem.query.filter_by(order_id=order.id).order_by(WorkItem.id).all()


def activity_history(order: Order):
    return ActivityLog.query.filter_by(order_id=order.id).order_by(ActivityLog.id).all()
