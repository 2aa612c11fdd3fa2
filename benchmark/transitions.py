"""Apply workflow events to stored orders.

Each public function validates the event with :func:`benchmark.workflow.plan`,
then writes the new state with a guarded UPDATE that only matches while the
row is still in the state the plan was made for.  If another request got
there first the update matches nothing and :class:`ConcurrencyConflict` is
raised; nothing is written in that case.  The work item ledger and activity
log are appended in the same transaction.
"""

import dataclasses
import logging
from uuid import uuid4

from . import db
from . import ledger
from .errors import (ConcurrencyConflict, InvalidTransition, NotFound,
                     RoleNotPermitted, ValidationError)
from .models import HelpRequest, IssueFlag, Order, Project, User, utcnow
from .workflow import (ATTEMPT_FIELDS, CANCEL, DELIVERED, FLAG_SEVERITIES, FLAG_TYPES,
                       HOLD, MANAGEMENT_ROLES, ON_HOLD, PRIORITIES, RECEIVE,
                       REASSIGN, RECEIVED, REJECT, RELEASE, RESUME, STAGE_ROLES,
                       SUBMIT, TERMINAL_STATES, in_progress,
                       is_in_progress, plan, queued, topology_for,
                       validate_rejection)

logger = logging.getLogger(__name__)


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFound("Order", order_id)
    return order


def get_project(project_id: int) -> Project:
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFound("Project", project_id)
    return project


def require_management(actor: User, action: str) -> None:
    if actor.role not in MANAGEMENT_ROLES:
        raise RoleNotPermitted(f"Role {actor.role!r} cannot {action}")


def guarded_update(order: Order, expected_state: str, values: dict, *criteria) -> None:
    """UPDATE the order only if it is still in ``expected_state``.

    Extra SQL ``criteria`` narrow the guard further (e.g. on ``assigned_to``).
    On a miss the session is rolled back and ``ConcurrencyConflict`` raised.
    """
    count = (db.session.query(Order)
             .filter(Order.id == order.id, Order.workflow_state == expected_state, *criteria)
             .update(values, synchronize_session=False))
    if count != 1:
        db.session.rollback()
        raise ConcurrencyConflict(order.id, expected_state)
    db.session.expire(order)


def _require_assignee(order: Order, actor: User, event: str) -> None:
    if order.assigned_to != actor.id:
        raise RoleNotPermitted("Order is not assigned to you", order.workflow_state, event)


def _touch(actor: User, now) -> None:
    actor.last_activity = now


def clean_text(value, field: str, required: bool = False):
    """Stripped free-text payload value, or None when blank and optional."""
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", {field: "must be a string"})
    value = (value or "").strip()
    if not value:
        if required:
            raise ValidationError(f"{field} is required", {field: "required"})
        return None
    return value


def create_order(project: Project, actor: User, order_number: str | None = None,
                 client_reference: str | None = None, priority: str = "normal",
                 due_date=None, metadata: dict | None = None,
                 team_id: int | None = None) -> Order:
    """Create an order in RECEIVED; its workflow type comes from the project."""
    require_management(actor, "receive orders")
    order_number = clean_text(order_number, "order_number")
    client_reference = clean_text(client_reference, "client_reference")
    priority = priority or "normal"
    if priority not in PRIORITIES:
        raise ValidationError("Invalid priority",
                              {"priority": f"must be one of {', '.join(PRIORITIES)}"})
    topology_for(project.workflow_type)

    order_number = order_number or f"{project.code}-{uuid4().hex[:8].upper()}"
    if Order.query.filter_by(project_id=project.id, order_number=order_number).first():
        raise ValidationError("Duplicate order number",
                              {"order_number": f"{order_number} already exists in {project.code}"})

    now = utcnow()
    order = Order(
        order_number=order_number,
        project_id=project.id,
        client_reference=client_reference,
        workflow_type=project.workflow_type,
        workflow_state=RECEIVED,
        priority=priority,
        team_id=team_id,
        due_date=due_date,
        meta=metadata,
        received_at=now,
    )
    db.session.add(order)
    db.session.flush()
    ledger.log_hops(order.id, actor.id, "create", None, (RECEIVED,), now=now)
    db.session.commit()
    logger.info("Order %s created in project %s", order.order_number, project.code)
    return order


def receive(order: Order, actor: User) -> Order:
    """RECEIVED -> QUEUED_<first stage>."""
    topology = topology_for(order.workflow_type)
    step = plan(topology, order.workflow_state, RECEIVE, actor.role,
                is_on_hold=order.is_on_hold)
    now = utcnow()
    guarded_update(order, step.from_state,
                   {"workflow_state": step.to_state, "queued_at": now})
    ledger.log_hops(order.id, actor.id, RECEIVE, step.from_state, step.path, now=now)
    db.session.commit()
    logger.info("Order %s queued as %s", order.id, step.to_state)
    return order


def submit(order: Order, actor: User, comments: str | None = None) -> Order:
    """Finish the current stage and move on to the next queue (or deliver)."""
    topology = topology_for(order.workflow_type)
    step = plan(topology, order.workflow_state, SUBMIT, actor.role,
                is_on_hold=order.is_on_hold)
    _require_assignee(order, actor, SUBMIT)
    comments = clean_text(comments, "comments")

    now = utcnow()
    values = {
        "workflow_state": step.to_state,
        "assigned_to": None,
        "rejected_by": None,
        "rejected_at": None,
        "rejection_reason": None,
        "rejection_type": None,
    }
    if step.to_state == DELIVERED:
        values.update(completed_at=now, delivered_at=now)
    else:
        values["queued_at"] = now
    guarded_update(order, step.from_state, values, Order.assigned_to == actor.id)

    ledger.close_work_item(order, "completed", now, comments=comments)
    ledger.log_hops(order.id, actor.id, SUBMIT, step.from_state, step.path,
                    reason=comments, now=now)
    _touch(actor, now)
    db.session.commit()
    logger.info("Order %s submitted by user %s: %s -> %s",
                order.id, actor.id, step.from_state, step.to_state)
    return order


def reject(order: Order, actor: User, reason: str | None, rejection_code: str | None,
           route_to: str | None = None, min_reason_length: int = 10) -> Order:
    """Send the order back for rework.

    Defaults to the previous stage; ``route_to`` may pick another allowed
    rework stage.  Bumps that stage's attempt counter and ``recheck_count``.
    """
    topology = topology_for(order.workflow_type)
    step = plan(topology, order.workflow_state, REJECT, actor.role,
                is_on_hold=order.is_on_hold, route_to=route_to)
    _require_assignee(order, actor, REJECT)
    errors = validate_rejection(reason, rejection_code, min_reason_length)
    if errors:
        raise ValidationError("Rejection needs a reason and a rejection code", errors)
    reason = reason.strip()

    attempt_field = ATTEMPT_FIELDS[step.rework_stage]
    now = utcnow()
    values = {
        "workflow_state": step.to_state,
        "assigned_to": None,
        "queued_at": now,
        attempt_field: getattr(Order, attempt_field) + 1,
        "recheck_count": Order.recheck_count + 1,
        "rejected_by": actor.id,
        "rejected_at": now,
        "rejection_reason": reason,
        "rejection_type": rejection_code,
    }
    guarded_update(order, step.from_state, values, Order.assigned_to == actor.id)

    ledger.close_work_item(order, "rejected", now, rejection_code=rejection_code,
                           rework_reason=reason)
    ledger.log_hops(order.id, actor.id, REJECT, step.from_state, step.path,
                    reason=reason,
                    meta={"rejection_code": rejection_code, "route_to": step.rework_stage},
                    now=now)
    _touch(actor, now)
    db.session.commit()
    logger.info("Order %s rejected at %s by user %s, routed to %s (%s)",
                order.id, step.stage, actor.id, step.rework_stage, rejection_code)
    return order


def release(order: Order, actor: User, reason: str | None = None) -> Order:
    """Worker hands an in-progress order back to its queue.

    Unlike a rejection no counter moves and the order keeps its place in the
    queue (``queued_at`` is left alone).
    """
    topology = topology_for(order.workflow_type)
    step = plan(topology, order.workflow_state, RELEASE, actor.role,
                is_on_hold=order.is_on_hold)
    _require_assignee(order, actor, RELEASE)
    reason = clean_text(reason, "reason")

    now = utcnow()
    guarded_update(order, step.from_state,
                   {"workflow_state": step.to_state, "assigned_to": None},
                   Order.assigned_to == actor.id)
    ledger.close_work_item(order, "released", now, comments=reason)
    ledger.log_hops(order.id, actor.id, RELEASE, step.from_state, step.path,
                    reason=reason, now=now)
    _touch(actor, now)
    db.session.commit()
    logger.info("Order %s released to %s by user %s", order.id, step.to_state, actor.id)
    return order


def reassign(order: Order, actor: User, reason: str | None, user_id: int | None = None) -> Order:
    """Management move: hand the order to ``user_id`` or put it back in the queue."""
    topology = topology_for(order.workflow_type)
    step = plan(topology, order.workflow_state, REASSIGN, actor.role,
                is_on_hold=order.is_on_hold)
    reason = clean_text(reason, "reason", required=True)

    stage = step.stage
    values = {}
    if user_id is not None:
        if isinstance(user_id, bool) or not isinstance(user_id, int):
            raise ValidationError("Invalid user", {"user_id": "must be an integer"})
        target = db.session.get(User, user_id)
        if target is None:
            raise NotFound("User", user_id)
        if (not target.is_active or target.project_id != order.project_id
                or target.role != STAGE_ROLES[stage]):
            raise ValidationError(
                "User cannot take this order",
                {"user_id": f"must be an active {STAGE_ROLES[stage]} of project {order.project_id}"},
            )
        if target.id == order.assigned_to:
            raise InvalidTransition("Order is already assigned to that user",
                                    order.workflow_state, REASSIGN)
        new_state = in_progress(stage)
        values.update(workflow_state=new_state, assigned_to=target.id)
        if order.started_at is None:
            values["started_at"] = utcnow()
    else:
        if not is_in_progress(order.workflow_state):
            raise InvalidTransition("Order is already queued", order.workflow_state, REASSIGN)
        new_state = queued(stage)
        values.update(workflow_state=new_state, assigned_to=None)

    previous_user = order.assigned_to
    criteria = [Order.assigned_to.is_(None) if previous_user is None
                else Order.assigned_to == previous_user]
    now = utcnow()
    guarded_update(order, step.from_state, values, *criteria)

    ledger.close_work_item(order, "reassigned", now, comments=reason)
    if user_id is not None:
        ledger.create_work_item(order, stage, user_id, now)
    step = dataclasses.replace(step, path=(new_state,))
    ledger.log_hops(order.id, actor.id, REASSIGN, step.from_state, step.path,
                    reason=reason, meta={"from_user": previous_user, "to_user": user_id},
                    now=now)
    db.session.commit()
    logger.info("Order %s reassigned by user %s from %s to %s",
                order.id, actor.id, previous_user, user_id)
    return order


def hold(order: Order, actor: User, hold_reason: str | None) -> Order:
    topology = topology_for(order.workflow_type)
    step = plan(topology, order.workflow_state, HOLD, actor.role,
                is_on_hold=order.is_on_hold)
    hold_reason = clean_text(hold_reason, "hold_reason", required=True)

    now = utcnow()
    guarded_update(order, step.from_state, {
        "workflow_state": ON_HOLD,
        "is_on_hold": True,
        "hold_reason": hold_reason,
        "pre_hold_state": step.from_state,
    }, Order.is_on_hold.is_(False))
    # time on hold is not work time
    item = ledger.open_work_item(order)
    if item is not None:
        ledger.stop_timer(item, now)
    ledger.log_hops(order.id, actor.id, HOLD, step.from_state, step.path,
                    reason=hold_reason, now=now)
    db.session.commit()
    logger.info("Order %s put on hold from %s", order.id, step.from_state)
    return order


def resume(order: Order, actor: User) -> Order:
    """Return a held order to exactly the state it was held in."""
    topology = topology_for(order.workflow_type)
    step = plan(topology, order.workflow_state, RESUME, actor.role,
                is_on_hold=order.is_on_hold, pre_hold_state=order.pre_hold_state)
    now = utcnow()
    guarded_update(order, step.from_state, {
        "workflow_state": step.to_state,
        "is_on_hold": False,
        "hold_reason": None,
        "pre_hold_state": None,
    }, Order.is_on_hold.is_(True))
    ledger.log_hops(order.id, actor.id, RESUME, step.from_state, step.path, now=now)
    db.session.commit()
    logger.info("Order %s resumed to %s", order.id, step.to_state)
    return order


def cancel(order: Order, actor: User, reason: str | None) -> Order:
    topology = topology_for(order.workflow_type)
    step = plan(topology, order.workflow_state, CANCEL, actor.role,
                is_on_hold=order.is_on_hold)
    reason = clean_text(reason, "reason", required=True)

    now = utcnow()
    guarded_update(order, step.from_state,
                   {"workflow_state": step.to_state, "assigned_to": None})
    ledger.close_work_item(order, "cancelled", now, comments=reason)
    ledger.log_hops(order.id, actor.id, CANCEL, step.from_state, step.path,
                    reason=reason, now=now)
    db.session.commit()
    logger.info("Order %s cancelled by user %s", order.id, actor.id)
    return order


def release_worker_orders(user: User, actor: User, reason: str = "Worker unavailable"):
    """Put every in-progress order of ``user`` back in its queue.

    Orders that change under us are skipped; returns the orders released.
    """
    require_management(actor, "release another user's work")
    released = []
    for order in Order.query.filter(Order.assigned_to == user.id).order_by(Order.id).all():
        if not is_in_progress(order.workflow_state):
            continue
        try:
            released.append(reassign(order, actor, reason))
        except ConcurrencyConflict:
            logger.warning("Order %s changed while releasing user %s; skipped", order.id, user.id)
    return released


def start_timer(order: Order, actor: User):
    _require_assignee(order, actor, "timer")
    item = ledger.open_work_item(order)
    if item is None or not is_in_progress(order.workflow_state):
        raise InvalidTransition("Order has no work in progress", order.workflow_state, "timer")
    if item.timer_started_at is not None:
        raise InvalidTransition("Timer is already running", order.workflow_state, "timer")
    item.timer_started_at = utcnow()
    db.session.commit()
    return item


def stop_timer(order: Order, actor: User):
    _require_assignee(order, actor, "timer")
    item = ledger.open_work_item(order)
    if item is None or item.timer_started_at is None:
        raise InvalidTransition("Timer is not running", order.workflow_state, "timer")
    added = ledger.stop_timer(item)
    db.session.commit()
    return item, added


def _require_handler(order: Order, actor: User, action: str) -> None:
    """The assignee (or management) may raise notes on a live order."""
    if order.workflow_state in TERMINAL_STATES:
        raise InvalidTransition(f"Order is {order.workflow_state}", order.workflow_state, action)
    if actor.role not in MANAGEMENT_ROLES and order.assigned_to != actor.id:
        raise RoleNotPermitted("Order is not assigned to you", order.workflow_state, action)


def flag_issue(order: Order, actor: User, flag_type, description, severity="medium") -> IssueFlag:
    _require_handler(order, actor, "flag_issue")
    description = clean_text(description, "description", required=True)
    errors = {}
    if flag_type not in FLAG_TYPES:
        errors["flag_type"] = f"must be one of {', '.join(FLAG_TYPES)}"
    if (severity or "medium") not in FLAG_SEVERITIES:
        errors["severity"] = f"must be one of {', '.join(FLAG_SEVERITIES)}"
    if errors:
        raise ValidationError("Invalid issue flag", errors)

    now = utcnow()
    flag = IssueFlag(order_id=order.id, user_id=actor.id, flag_type=flag_type,
                     description=description, severity=severity or "medium", created_at=now)
    db.session.add(flag)
    state = order.workflow_state
    ledger.log_hops(order.id, actor.id, "flag_issue", state, (state,), reason=description,
                    meta={"flag_type": flag_type, "severity": flag.severity}, now=now)
    _touch(actor, now)
    db.session.commit()
    logger.info("Issue %s flagged on order %s by user %s", flag_type, order.id, actor.id)
    return flag


def request_help(order: Order, actor: User, question) -> HelpRequest:
    _require_handler(order, actor, "request_help")
    question = clean_text(question, "question", required=True)

    now = utcnow()
    help_request = HelpRequest(order_id=order.id, user_id=actor.id, question=question,
                               created_at=now)
    db.session.add(help_request)
    state = order.workflow_state
    ledger.log_hops(order.id, actor.id, "request_help", state, (state,), reason=question, now=now)
    _touch(actor, now)
    db.session.commit()
    logger.info("Help requested on order %s by user %s", order.id, actor.id)
    return help_request
