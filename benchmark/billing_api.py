from flask import Blueprint, request, jsonify, current_app

from . import billing as svc
from .auth import current_actor
from .errors import ValidationError
from .models import Invoice
from .transitions import get_project

billing = Blueprint("billing", __name__)


def _payload():
    return request.get_json(silent=True) or {}


# ── Invoices ────────────────────────────────────────────────────────────

@billing.get("/invoices")
def list_invoices():
    current_actor()
    q = Invoice.query
    for field in ("project_id", "month", "year"):
        value = request.args.get(field, type=int)
        if value:
            q = q.filter(getattr(Invoice, field) == value)
    status = request.args.get("status")
    if status:
        q = q.filter(Invoice.status == status)
    page = max(request.args.get("page", 1, type=int), 1)
    per = min(request.args.get("per_page", current_app.config["ORDERS_PER_PAGE"], type=int),
              current_app.config["ORDERS_MAX_PER_PAGE"])
    pager = q.order_by(Invoice.id.desc()).paginate(page=page, per_page=max(per, 1), error_out=False)
    return jsonify({
        "success": True,
        "data": [i.to_dict() for i in pager.items],
        "current_page": pager.page,
        "last_page": pager.pages or 1,
        "per_page": pager.per_page,
        "total": pager.total,
    })


@billing.post("/invoices")
def create_invoice():
    actor = current_actor()
    data = _payload()
    if not data.get("project_id"):
        raise ValidationError("project_id is required", {"project_id": "required"})
    invoice = svc.create_invoice(
        actor, get_project(data["project_id"]),
        invoice_number=data.get("invoice_number"),
        month=data.get("month"),
        year=data.get("year"),
        service_counts=data.get("service_counts"),
        total_amount=data.get("total_amount", 0),
    )
    return jsonify({"success": True, "invoice": invoice.to_dict()}), 201


@billing.get("/invoices/<int:invoice_id>")
def show_invoice(invoice_id):
    current_actor()
    return jsonify({"success": True, "invoice": svc.get_invoice(invoice_id).to_dict()})


@billing.post("/invoices/<int:invoice_id>/transition")
def transition_invoice(invoice_id):
    actor = current_actor()
    invoice = svc.transition_invoice(svc.get_invoice(invoice_id), actor,
                                     _payload().get("to_status"))
    return jsonify({"success": True, "invoice": invoice.to_dict()})


@billing.delete("/invoices/<int:invoice_id>")
def delete_invoice(invoice_id):
    actor = current_actor()
    svc.delete_invoice(svc.get_invoice(invoice_id), actor)
    return jsonify({"success": True, "message": "Invoice deleted"})


# ── Month locks ─────────────────────────────────────────────────────────

@billing.get("/month-locks/<int:project_id>")
def list_month_locks(project_id):
    current_actor()
    locks = svc.list_locks(get_project(project_id))
    return jsonify({"success": True, "locks": [lock.to_dict() for lock in locks]})


@billing.post("/month-locks/<int:project_id>/lock")
def lock_month(project_id):
    actor = current_actor()
    data = _payload()
    lock = svc.lock_month(get_project(project_id), actor, data.get("month"), data.get("year"))
    return jsonify({"success": True, "lock": lock.to_dict()})


@billing.post("/month-locks/<int:project_id>/unlock")
def unlock_month(project_id):
    actor = current_actor()
    data = _payload()
    lock = svc.unlock_month(get_project(project_id), actor, data.get("month"), data.get("year"))
    return jsonify({"success": True, "lock": lock.to_dict()})


@billing.get("/month-locks/<int:project_id>/counts")
def month_counts(project_id):
    current_actor()
    counts, is_locked = svc.month_counts(get_project(project_id),
                                         request.args.get("month"), request.args.get("year"))
    return jsonify({"success": True, "counts": counts, "is_locked": is_locked})
