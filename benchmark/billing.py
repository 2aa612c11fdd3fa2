"""Invoice approval flow and month locks.

Invoices move strictly forward: draft -> prepared -> approved -> issued ->
sent, one step at a time, each step stamped with who did it and when.

A month lock freezes a project's production counts for a billing period.
While the lock is on, :func:`month_counts` answers from the frozen snapshot
so that invoice figures cannot drift as orders keep moving.
"""

import logging
from calendar import monthrange
from datetime import datetime
from decimal import Decimal, InvalidOperation

from sqlalchemy import func

from . import db
from .errors import (ConcurrencyConflict, InvalidTransition, NotFound, RoleNotPermitted,
                     ValidationError)
from .models import Invoice, MonthLock, Order, Project, User, WorkItem, utcnow
from .workflow import CANCELLED, DELIVERED, MANAGEMENT_ROLES

logger = logging.getLogger(__name__)

INVOICE_STATUSES = ("draft", "prepared", "approved", "issued", "sent")
OPS_ROLES = frozenset({"ceo", "director", "operations_manager"})
SENIOR_ROLES = frozenset({"ceo", "director"})

# current status -> (next status, roles allowed to move it, actor/time columns)
INVOICE_TRANSITIONS = {
    "draft": ("prepared", OPS_ROLES, "prepared_by", "prepared_at"),
    "prepared": ("approved", SENIOR_ROLES, "approved_by", "approved_at"),
    "approved": ("issued", SENIOR_ROLES, "issued_by", "issued_at"),
    "issued": ("sent", SENIOR_ROLES, "sent_by", "sent_at"),
}


def _period(month, year):
    errors = {}
    try:
        month = int(month)
        if not 1 <= month <= 12:
            errors["month"] = "must be between 1 and 12"
    except (TypeError, ValueError):
        errors["month"] = "must be an integer"
    try:
        year = int(year)
        if not 2000 <= year <= 2100:
            errors["year"] = "must be a four digit year"
    except (TypeError, ValueError):
        errors["year"] = "must be an integer"
    if errors:
        raise ValidationError("Invalid billing period", errors)
    start = datetime(year, month, 1)
    end = datetime(year, month, monthrange(year, month)[1], 23, 59, 59, 999999)
    return month, year, start, end


# ── Invoices ───────────────────────────────────────────────────────────

def get_invoice(invoice_id: int) -> Invoice:
    invoice = db.session.get(Invoice, invoice_id)
    if invoice is None:
        raise NotFound("Invoice", invoice_id)
    return invoice


def create_invoice(actor: User, project: Project, invoice_number: str, month, year,
                   service_counts: dict | None = None, total_amount=0) -> Invoice:
    if actor.role not in OPS_ROLES:
        raise RoleNotPermitted(f"Role {actor.role!r} cannot create invoices")
    month, year, _, _ = _period(month, year)
    if invoice_number is not None and not isinstance(invoice_number, str):
        raise ValidationError("Invalid invoice number", {"invoice_number": "must be a string"})
    if not (invoice_number or "").strip():
        raise ValidationError("Invoice number is required", {"invoice_number": "required"})
    if Invoice.query.filter_by(invoice_number=invoice_number).first():
        raise ValidationError("Duplicate invoice number",
                              {"invoice_number": f"{invoice_number} already exists"})
    try:
        amount = Decimal(str(total_amount or 0))
    except InvalidOperation:
        raise ValidationError("Invalid amount", {"total_amount": "must be a number"}) from None

    lock = MonthLock.query.filter_by(project_id=project.id, month=month, year=year,
                                     is_locked=True).first()
    invoice = Invoice(
        invoice_number=invoice_number.strip(),
        project_id=project.id,
        month=month,
        year=year,
        service_counts=service_counts,
        total_amount=amount,
        status="draft",
        locked_month_id=lock.id if lock else None,
        created_by=actor.id,
    )
    db.session.add(invoice)
    db.session.commit()
    logger.info("Invoice %s created for project %s %02d/%s",
                invoice.invoice_number, project.code, month, year)
    return invoice


def transition_invoice(invoice: Invoice, actor: User, to_status: str) -> Invoice:
    """Move an invoice exactly one step forward."""
    if to_status not in INVOICE_STATUSES:
        raise ValidationError("Unknown invoice status",
                              {"to_status": f"must be one of {', '.join(INVOICE_STATUSES)}"})
    rule = INVOICE_TRANSITIONS.get(invoice.status)
    if rule is None or rule[0] != to_status:
        raise InvalidTransition(f"Cannot move invoice from {invoice.status} to {to_status}",
                                invoice.status, to_status)
    next_status, roles, by_field, at_field = rule
    current = invoice.status
    if actor.role not in roles:
        raise RoleNotPermitted(f"Role {actor.role!r} cannot mark invoices {next_status}",
                               invoice.status, to_status)

    count = (db.session.query(Invoice)
             .filter(Invoice.id == invoice.id, Invoice.status == current)
             .update({"status": next_status, by_field: actor.id, at_field: utcnow()},
                     synchronize_session=False))
    if count != 1:
        db.session.rollback()
        raise ConcurrencyConflict(invoice.id, current, "Invoice")
    db.session.commit()
    db.session.refresh(invoice)
    logger.info("Invoice %s -> %s by user %s", invoice.id, next_status, actor.id)
    return invoice


def delete_invoice(invoice: Invoice, actor: User) -> None:
    if actor.role not in OPS_ROLES:
        raise RoleNotPermitted(f"Role {actor.role!r} cannot delete invoices")
    if invoice.status != "draft":
        raise InvalidTransition("Only draft invoices can be deleted", invoice.status, "delete")
    number = invoice.invoice_number
    db.session.delete(invoice)
    db.session.commit()
    logger.info("Invoice %s deleted by user %s", number, actor.id)


# ── Month locks ────────────────────────────────────────────────────────

def live_counts(project: Project, month: int, year: int) -> dict:
    """Production counts of a period computed from current order data."""
    month, year, start, end = _period(month, year)
    orders = Order.query.filter(Order.project_id == project.id)
    received = orders.filter(Order.received_at.between(start, end))
    stage_rows = (db.session.query(WorkItem.stage, func.count(WorkItem.id))
                  .filter(WorkItem.project_id == project.id,
                          WorkItem.status == "completed",
                          WorkItem.completed_at.between(start, end))
                  .group_by(WorkItem.stage)
                  .all())
    return {
        "received": received.count(),
        "delivered": orders.filter(Order.delivered_at.between(start, end)).count(),
        "pending": received.filter(Order.workflow_state.notin_((DELIVERED, CANCELLED))).count(),
        "stage_completions": {stage: count for stage, count in stage_rows},
        "computed_at": utcnow().isoformat(),
    }


def month_counts(project: Project, month, year) -> tuple:
    """(counts, is_locked) for a period; frozen while the month is locked."""
    month, year, _, _ = _period(month, year)
    lock = MonthLock.query.filter_by(project_id=project.id, month=month, year=year).first()
    if lock is not None and lock.is_locked:
        return lock.frozen_counts, True
    return live_counts(project, month, year), False


def list_locks(project: Project):
    return (MonthLock.query.filter_by(project_id=project.id)
            .order_by(MonthLock.year.desc(), MonthLock.month.desc()).all())


def lock_month(project: Project, actor: User, month, year) -> MonthLock:
    if actor.role not in MANAGEMENT_ROLES:
        raise RoleNotPermitted(f"Role {actor.role!r} cannot lock months")
    month, year, _, _ = _period(month, year)
    lock = MonthLock.query.filter_by(project_id=project.id, month=month, year=year).first()
    if lock is not None and lock.is_locked:
        raise InvalidTransition(f"{month:02d}/{year} is already locked", "locked", "lock")
    if lock is None:
        lock = MonthLock(project_id=project.id, month=month, year=year)
        db.session.add(lock)
    lock.frozen_counts = live_counts(project, month, year)
    lock.is_locked = True
    lock.locked_by = actor.id
    lock.locked_at = utcnow()
    db.session.commit()
    logger.info("Month %02d/%s locked for project %s by user %s",
                month, year, project.code, actor.id)
    return lock


def unlock_month(project: Project, actor: User, month, year) -> MonthLock:
    """Lift the lock; the frozen snapshot stays on the row for audit."""
    if actor.role not in MANAGEMENT_ROLES:
        raise RoleNotPermitted(f"Role {actor.role!r} cannot unlock months")
    month, year, _, _ = _period(month, year)
    lock = MonthLock.query.filter_by(project_id=project.id, month=month, year=year).first()
    if lock is None or not lock.is_locked:
        raise InvalidTransition(f"{month:02d}/{year} is not locked", "unlocked", "unlock")
    lock.is_locked = False
    lock.unlocked_by = actor.id
    lock.unlocked_at = utcnow()
    db.session.commit()
    logger.info("Month %02d/%s unlocked for project %s by user %s",
                month, year, project.code, actor.id)
    return lock
