"""Pull-based auto-assignment ("start next").

A worker asks for work; nothing is pushed.  The engine picks the best queued
order of the worker's project and stage and claims it with a conditional
UPDATE, so two workers (or two service instances) racing for the same order
can never both win.  The loser simply tries the next candidate.
"""

import logging
from dataclasses import dataclass

from flask import current_app
from sqlalchemy import and_, case, func, or_

from . import db
from . import ledger
from .errors import ConcurrencyConflict, InvalidTransition
from .models import Order, Project, User, utcnow
from .transitions import guarded_update
from .workflow import (IN_PROGRESS_STATES, PRIORITY_RANK, ROLE_STAGES, START,
                       in_progress, plan, queued, topology_for)

logger = logging.getLogger(__name__)

ASSIGNED = "assigned"
NO_ORDER_AVAILABLE = "no_order_available"
WIP_CAP_EXCEEDED = "wip_cap_exceeded"


@dataclass
class AssignmentResult:
    outcome: str
    order: Order | None = None
    message: str = ""

    @property
    def assigned(self) -> bool:
        return self.outcome == ASSIGNED


def _holds_slot(user: User):
    # a held order keeps its assignee and comes back to the same IN_ state
    return and_(Order.assigned_to == user.id,
                or_(Order.workflow_state.in_(IN_PROGRESS_STATES),
                    and_(Order.is_on_hold.is_(True),
                         Order.pre_hold_state.in_(IN_PROGRESS_STATES))))


def wip_count(user: User) -> int:
    """Orders in progress (or held mid-stage) for ``user``; derived, never stored."""
    return db.session.query(func.count(Order.id)).filter(_holds_slot(user)).scalar() or 0


def current_order(user: User):
    return (Order.query
            .filter(Order.assigned_to == user.id,
                    Order.workflow_state.in_(IN_PROGRESS_STATES))
            .order_by(Order.started_at, Order.id)
            .first())


def assigned_orders(user: User):
    return (Order.query
            .filter(_holds_slot(user))
            .order_by(Order.started_at, Order.id)
            .all())


def _priority_rank():
    return case(PRIORITY_RANK, value=Order.priority, else_=PRIORITY_RANK["normal"])


def _eligible(query, project_id: int, stage: str):
    return query.filter(Order.project_id == project_id,
                        Order.workflow_state == queued(stage),
                        Order.is_on_hold.is_(False),
                        Order.assigned_to.is_(None))


def queued_count(project_id: int, stage: str) -> int:
    """Number of orders ``start_next`` could hand out for this stage."""
    return _eligible(db.session.query(func.count(Order.id)), project_id, stage).scalar() or 0


def eligible_candidates(project_id: int, stage: str, limit: int = 20):
    """Queued, unheld, unassigned orders: priority desc, oldest in queue, id."""
    return (_eligible(Order.query, project_id, stage)
            .order_by(_priority_rank().desc(), Order.queued_at.asc(), Order.id.asc())
            .limit(limit)
            .all())


def worker_stage(worker: User, project: Project) -> str:
    topology = topology_for(project.workflow_type)
    stage = ROLE_STAGES.get(worker.role)
    if worker.layer and worker.layer != stage:
        stage = None
    if stage is None or not topology.has_stage(stage):
        raise InvalidTransition(
            f"Role {worker.role!r} has no stage in {project.workflow_type} projects",
            event=START,
        )
    return stage


def claim(order: Order, worker: User, stage: str) -> Order:
    """Atomically move ``order`` from QUEUED_<stage> to IN_<stage> for ``worker``.

    Raises ConcurrencyConflict if the row was taken or changed meanwhile.
    """
    expected = queued(stage)
    step = plan(topology_for(order.workflow_type), expected, START, worker.role)
    now = utcnow()
    values = {"workflow_state": in_progress(stage), "assigned_to": worker.id}
    if order.started_at is None:
        values["started_at"] = now
    guarded_update(order, expected, values,
                   Order.assigned_to.is_(None), Order.is_on_hold.is_(False))
    ledger.create_work_item(order, stage, worker.id, now)
    ledger.log_hops(order.id, worker.id, START, step.from_state, step.path, now=now)
    worker.last_activity = now
    db.session.commit()
    return order


def start_next(worker: User) -> AssignmentResult:
    """Give ``worker`` the next order of their queue, if they have room for one."""
    if not worker.is_active or worker.project_id is None:
        raise InvalidTransition("Only active project members can take work", event=START)
    project = db.session.get(Project, worker.project_id)
    stage = worker_stage(worker, project)

    if wip_count(worker) >= project.wip_cap:
        logger.info("User %s at WIP cap %s", worker.id, project.wip_cap,
                    extra={"user_id": worker.id, "outcome": WIP_CAP_EXCEEDED})
        return AssignmentResult(WIP_CAP_EXCEEDED, None,
                                f"WIP cap of {project.wip_cap} reached; submit current work first")

    rounds = current_app.config.get("MAX_CLAIM_ROUNDS", 3)
    for _ in range(rounds):
        candidates = eligible_candidates(project.id, stage)
        if not candidates:
            break
        for candidate in candidates:
            try:
                order = claim(candidate, worker, stage)
            except ConcurrencyConflict:
                logger.debug("Lost claim on order %s; trying next", candidate.id)
                continue
            logger.info("Order %s assigned to user %s", order.id, worker.id,
                        extra={"order_id": order.id, "user_id": worker.id, "outcome": ASSIGNED})
            return AssignmentResult(ASSIGNED, order, "Order assigned")

    return AssignmentResult(NO_ORDER_AVAILABLE, None, "No orders available in your queue")
