from flask import Blueprint, request, jsonify, current_app
from datetime import datetime

from . import db
from . import ledger
from . import queue_health as health
from . import stats
from . import transitions
from .assignment import (assigned_orders, current_order, queued_count, start_next,
                         wip_count)
from .auth import current_actor
from .errors import NotFound, ValidationError
from .models import HelpRequest, IssueFlag, Order, User
from .workflow import MANAGEMENT_ROLES, PRIORITIES, ROLE_STAGES

api = Blueprint("api", __name__)


def _payload():
    return request.get_json(silent=True) or {}


def _parse_date(value, field):
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError("Invalid date", {field: "must be an ISO 8601 date"}) from None


def _order_response(order, message=None):
    body = {"success": True, "order": order.to_dict()}
    if message:
        body["message"] = message
    return jsonify(body)


def _paginated(query):
    page = max(request.args.get("page", 1, type=int), 1)
    per = min(request.args.get("per_page", current_app.config["ORDERS_PER_PAGE"], type=int),
              current_app.config["ORDERS_MAX_PER_PAGE"])
    pager = query.paginate(page=page, per_page=max(per, 1), error_out=False)
    return {
        "success": True,
        "data": [o.to_dict() for o in pager.items],
        "current_page": pager.page,
        "last_page": pager.pages or 1,
        "per_page": pager.per_page,
        "total": pager.total,
    }


# ── Management: intake ──────────────────────────────────────────────────

@api.post("/receive")
def receive_order():
    actor = current_actor()
    data = _payload()
    if not data.get("project_id"):
        raise ValidationError("project_id is required", {"project_id": "required"})
    project = transitions.get_project(data["project_id"])
    order = transitions.create_order(
        project, actor,
        order_number=data.get("order_number"),
        client_reference=data.get("client_reference"),
        priority=data.get("priority") or "normal",
        due_date=_parse_date(data.get("due_date"), "due_date"),
        metadata=data.get("metadata"),
        team_id=data.get("team_id"),
    )
    transitions.receive(order, actor)
    return _order_response(order, "Order received"), 201


# ── Worker ──────────────────────────────────────────────────────────────

@api.post("/start-next")
def start_next_order():
    worker = current_actor()
    result = start_next(worker)
    return jsonify({
        "success": True,
        "order": result.order.to_dict() if result.order else None,
        "outcome": result.outcome,
        "message": result.message,
    })


@api.get("/my-current")
def my_current():
    order = current_order(current_actor())
    return jsonify({"success": True, "order": order.to_dict() if order else None})


@api.get("/my-queue")
def my_queue():
    orders = assigned_orders(current_actor())
    return jsonify({"success": True, "orders": [o.to_dict() for o in orders]})


@api.get("/my-stats")
def my_stats():
    worker = current_actor()
    stage = ROLE_STAGES.get(worker.role)
    queue_count = 0
    if stage and worker.project_id:
        queue_count = queued_count(worker.project_id, stage)
    return jsonify({
        "success": True,
        "today_completed": stats.today_completed(worker),
        "daily_target": worker.daily_target or 0,
        "wip_count": wip_count(worker),
        "queue_count": queue_count,
        "is_absent": worker.is_absent,
    })


@api.get("/my-completed")
def my_completed():
    orders = stats.completed_today_orders(current_actor())
    return jsonify({"success": True, "orders": [o.to_dict() for o in orders]})


@api.get("/my-history")
def my_history():
    return jsonify(_paginated(stats.history_query(current_actor())))


@api.get("/my-performance")
def my_performance():
    return jsonify({"success": True, **stats.performance(current_actor())})


@api.post("/orders/<int:order_id>/submit")
def submit_work(order_id):
    actor = current_actor()
    order = transitions.get_order(order_id)
    transitions.submit(order, actor, _payload().get("comments"))
    return _order_response(order, f"Work submitted; order is now {order.workflow_state}")


@api.post("/orders/<int:order_id>/reject")
def reject_order(order_id):
    actor = current_actor()
    data = _payload()
    order = transitions.get_order(order_id)
    transitions.reject(order, actor, data.get("reason"), data.get("rejection_code"),
                       route_to=data.get("route_to"),
                       min_reason_length=current_app.config["REJECTION_REASON_MIN_LENGTH"])
    return _order_response(order, "Order rejected")


@api.post("/orders/<int:order_id>/reassign-queue")
def reassign_to_queue(order_id):
    actor = current_actor()
    order = transitions.get_order(order_id)
    transitions.release(order, actor, _payload().get("reason"))
    return _order_response(order, "Order returned to queue")


@api.post("/orders/<int:order_id>/flag-issue")
def flag_issue(order_id):
    actor = current_actor()
    data = _payload()
    order = transitions.get_order(order_id)
    flag = transitions.flag_issue(order, actor, data.get("flag_type"), data.get("description"),
                                  data.get("severity") or "medium")
    return jsonify({"success": True, "flag": flag.to_dict(), "message": "Issue flagged"}), 201


@api.post("/orders/<int:order_id>/request-help")
def request_help(order_id):
    actor = current_actor()
    order = transitions.get_order(order_id)
    help_request = transitions.request_help(order, actor, _payload().get("question"))
    return jsonify({"success": True, "help_request": help_request.to_dict(),
                    "message": "Help requested"}), 201


@api.post("/orders/<int:order_id>/timer/start")
def timer_start(order_id):
    actor = current_actor()
    item = transitions.start_timer(transitions.get_order(order_id), actor)
    return jsonify({"success": True, "work_item": item.to_dict(), "message": "Timer started"})


@api.post("/orders/<int:order_id>/timer/stop")
def timer_stop(order_id):
    actor = current_actor()
    item, added = transitions.stop_timer(transitions.get_order(order_id), actor)
    return jsonify({
        "success": True,
        "work_item": item.to_dict(),
        "time_added_seconds": added,
        "total_time_seconds": item.time_spent_seconds,
        "message": "Timer stopped",
    })


# ── Management: order control ───────────────────────────────────────────

@api.post("/orders/<int:order_id>/reassign")
def reassign_order(order_id):
    actor = current_actor()
    data = _payload()
    order = transitions.get_order(order_id)
    transitions.reassign(order, actor, data.get("reason"), data.get("user_id"))
    return _order_response(order, "Order reassigned")


@api.post("/orders/<int:order_id>/hold")
def hold_order(order_id):
    actor = current_actor()
    order = transitions.get_order(order_id)
    transitions.hold(order, actor, _payload().get("hold_reason"))
    return _order_response(order, "Order on hold")


@api.post("/orders/<int:order_id>/resume")
def resume_order(order_id):
    actor = current_actor()
    order = transitions.get_order(order_id)
    transitions.resume(order, actor)
    return _order_response(order, "Order resumed")


@api.post("/orders/<int:order_id>/cancel")
def cancel_order(order_id):
    actor = current_actor()
    order = transitions.get_order(order_id)
    transitions.cancel(order, actor, _payload().get("reason"))
    return _order_response(order, "Order cancelled")


@api.post("/users/<int:user_id>/release-work")
def release_user_work(user_id):
    actor = current_actor()
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFound("User", user_id)
    released = transitions.release_worker_orders(user, actor)
    return jsonify({"success": True, "released": [o.id for o in released],
                    "message": f"{len(released)} order(s) returned to queue"})


# ── Reads ───────────────────────────────────────────────────────────────

@api.get("/orders/<int:order_id>")
def order_details(order_id):
    actor = current_actor()
    order = transitions.get_order(order_id)
    with_items = actor.role in MANAGEMENT_ROLES or order.assigned_to == actor.id
    flags = IssueFlag.query.filter_by(order_id=order.id).order_by(IssueFlag.id).all()
    help_requests = HelpRequest.query.filter_by(order_id=order.id).order_by(HelpRequest.id).all()
    return jsonify({
        "success": True,
        "order": order.to_dict(with_work_items=with_items),
        "issue_flags": [f.to_dict() for f in flags],
        "help_requests": [h.to_dict() for h in help_requests],
    })


@api.get("/work-items/<int:order_id>")
def work_item_history(order_id):
    current_actor()
    order = transitions.get_order(order_id)
    return jsonify({"success": True,
                    "work_items": [w.to_dict() for w in ledger.work_item_history(order)]})


@api.get("/orders/<int:order_id>/history")
def order_history(order_id):
    current_actor()
    order = transitions.get_order(order_id)
    return jsonify({"success": True,
                    "history": [r.to_dict() for r in ledger.activity_history(order)]})


@api.get("/<int:project_id>/orders")
def project_orders(project_id):
    current_actor()
    project = transitions.get_project(project_id)
    q = Order.query.filter(Order.project_id == project.id)
    state = request.args.get("state")
    if state:
        q = q.filter(Order.workflow_state == state)
    priority = request.args.get("priority")
    if priority:
        if priority not in PRIORITIES:
            raise ValidationError("Invalid priority", {"priority": f"must be one of {', '.join(PRIORITIES)}"})
        q = q.filter(Order.priority == priority)
    assigned_to = request.args.get("assigned_to", type=int)
    if assigned_to:
        q = q.filter(Order.assigned_to == assigned_to)

    return jsonify(_paginated(q.order_by(Order.received_at.desc(), Order.id.desc())))


@api.get("/<int:project_id>/queue-health")
def queue_health(project_id):
    current_actor()
    return jsonify(health.queue_health(transitions.get_project(project_id)))


@api.get("/<int:project_id>/staffing")
def staffing(project_id):
    current_actor()
    return jsonify(health.staffing(transitions.get_project(project_id)))
