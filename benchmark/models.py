from flask import current_app

from . import db
from .workflow import RECEIVED
from sqlalchemy import func
from sqlalchemy.orm import validates
from datetime import datetime, timezone


def utcnow():
    # naive UTC, the same on SQLite and PostgreSQL
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(value):
    return value.isoformat() if value else None


def default_wip_cap():
    return current_app.config.get("DEFAULT_WIP_CAP", 1)


class Project(db.Model):
    __tablename__ = "projects"
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), unique=True, nullable=False)
    name = db.Column(db.String(255), nullable=False)
    country = db.Column(db.String(100))
    department = db.Column(db.String(100))
    client_name = db.Column(db.String(255))
    status = db.Column(db.String(30), default="active")
    workflow_type = db.Column(db.String(20), nullable=False)
    wip_cap = db.Column(db.Integer, nullable=False, default=default_wip_cap)
    sla_config = db.Column(db.JSON)  # stage -> max queue wait in minutes
    meta = db.Column("metadata", db.JSON)
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "country": self.country,
            "department": self.department,
            "client_name": self.client_name,
            "status": self.status,
            "workflow_type": self.workflow_type,
            "wip_cap": self.wip_cap,
            "sla_config": self.sla_config,
            "metadata": self.meta,
        }


class Team(db.Model):
    __tablename__ = "teams"
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    is_active = db.Column(db.Boolean, default=True)


class User(db.Model):
    """A member of staff.  Production users work one ``layer`` of a project."""

    __tablename__ = "users"
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    role = db.Column(db.String(30), nullable=False)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=True, index=True)
    team_id = db.Column(db.Integer, db.ForeignKey("teams.id"), nullable=True)
    layer = db.Column(db.String(20))
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    is_absent = db.Column(db.Boolean, default=False, nullable=False)
    daily_target = db.Column(db.Integer, default=0)
    last_activity = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=func.now())

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "project_id": self.project_id,
            "team_id": self.team_id,
            "layer": self.layer,
            "is_active": self.is_active,
            "is_absent": self.is_absent,
            "daily_target": self.daily_target,
            "last_activity": isoformat(self.last_activity),
        }


class Order(db.Model):
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("project_id", "order_number", name="uq_orders_project_number"),
        db.Index("ix_orders_queue", "project_id", "workflow_state", "assigned_to"),
    )
    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(100), nullable=False)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=False)
    client_reference = db.Column(db.String(255))
    workflow_type = db.Column(db.String(20), nullable=False)
    workflow_state = db.Column(db.String(30), nullable=False, default=RECEIVED)
    priority = db.Column(db.String(10), nullable=False, default="normal")
    assigned_to = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    team_id = db.Column(db.Integer, db.ForeignKey("teams.id"), nullable=True)

    attempt_draw = db.Column(db.Integer, nullable=False, default=0)
    attempt_check = db.Column(db.Integer, nullable=False, default=0)
    attempt_qa = db.Column(db.Integer, nullable=False, default=0)
    recheck_count = db.Column(db.Integer, nullable=False, default=0)

    is_on_hold = db.Column(db.Boolean, nullable=False, default=False)
    hold_reason = db.Column(db.Text)
    pre_hold_state = db.Column(db.String(30))

    rejected_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    rejected_at = db.Column(db.DateTime)
    rejection_reason = db.Column(db.Text)
    rejection_type = db.Column(db.String(30))

    meta = db.Column("metadata", db.JSON)

    received_at = db.Column(db.DateTime, default=utcnow)
    queued_at = db.Column(db.DateTime)
    started_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    delivered_at = db.Column(db.DateTime)
    due_date = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    work_items = db.relationship("WorkItem", backref="order", lazy=True, order_by="WorkItem.id")

    @validates("workflow_type")
    def _freeze_workflow_type(self, key, value):
        if self.workflow_type is not None and value != self.workflow_type:
            raise ValueError("workflow_type cannot change once the order exists")
        return value

    def to_dict(self, with_work_items: bool = False):
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "project_id": self.project_id,
            "client_reference": self.client_reference,
            "workflow_type": self.workflow_type,
            "workflow_state": self.workflow_state,
            "priority": self.priority,
            "assigned_to": self.assigned_to,
            "team_id": self.team_id,
            "attempt_draw": self.attempt_draw,
            "attempt_check": self.attempt_check,
            "attempt_qa": self.attempt_qa,
            "recheck_count": self.recheck_count,
            "is_on_hold": self.is_on_hold,
            "hold_reason": self.hold_reason,
            "rejected_by": self.rejected_by,
            "rejected_at": isoformat(self.rejected_at),
            "rejection_reason": self.rejection_reason,
            "rejection_type": self.rejection_type,
            "metadata": self.meta,
            "received_at": isoformat(self.received_at),
            "queued_at": isoformat(self.queued_at),
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "delivered_at": isoformat(self.delivered_at),
            "due_date": isoformat(self.due_date),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }
        if with_work_items:
            data["work_items"] = [w.to_dict() for w in self.work_items]
        return data


class WorkItem(db.Model):
    """One stage attempt of an order.  Only the transitions module writes these."""

    __tablename__ = "work_items"
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=False)
    stage = db.Column(db.String(20), nullable=False)
    assigned_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    team_id = db.Column(db.Integer, db.ForeignKey("teams.id"), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="in_progress")
    attempt_number = db.Column(db.Integer, nullable=False, default=0)
    assigned_at = db.Column(db.DateTime, default=utcnow)
    started_at = db.Column(db.DateTime, default=utcnow)
    completed_at = db.Column(db.DateTime)
    comments = db.Column(db.Text)
    rework_reason = db.Column(db.Text)
    rejection_code = db.Column(db.String(30))
    timer_started_at = db.Column(db.DateTime)
    time_spent_seconds = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "project_id": self.project_id,
            "stage": self.stage,
            "assigned_user_id": self.assigned_user_id,
            "team_id": self.team_id,
            "status": self.status,
            "attempt_number": self.attempt_number,
            "assigned_at": isoformat(self.assigned_at),
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "comments": self.comments,
            "rework_reason": self.rework_reason,
            "rejection_code": self.rejection_code,
            "timer_running": self.timer_started_at is not None,
            "time_spent_seconds": self.time_spent_seconds,
        }


class ActivityLog(db.Model):
    __tablename__ = "activity_logs"
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    actor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    action = db.Column(db.String(30))  # event name, e.g. submit/reject/hold
    from_state = db.Column(db.String(30))
    to_state = db.Column(db.String(30))
    reason = db.Column(db.Text)
    meta = db.Column("metadata", db.JSON)
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "actor_id": self.actor_id,
            "action": self.action,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "reason": self.reason,
            "metadata": self.meta,
            "created_at": isoformat(self.created_at),
        }


class MonthLock(db.Model):
    __tablename__ = "month_locks"
    __table_args__ = (
        db.UniqueConstraint("project_id", "month", "year", name="uq_month_locks_period"),
    )
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=False)
    month = db.Column(db.Integer, nullable=False)
    year = db.Column(db.Integer, nullable=False)
    is_locked = db.Column(db.Boolean, nullable=False, default=False)
    locked_by = db.Column(db.Integer, db.ForeignKey("users.id"))
    locked_at = db.Column(db.DateTime)
    unlocked_by = db.Column(db.Integer, db.ForeignKey("users.id"))
    unlocked_at = db.Column(db.DateTime)
    frozen_counts = db.Column(db.JSON)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "month": self.month,
            "year": self.year,
            "is_locked": self.is_locked,
            "locked_by": self.locked_by,
            "locked_at": isoformat(self.locked_at),
            "unlocked_by": self.unlocked_by,
            "unlocked_at": isoformat(self.unlocked_at),
            "frozen_counts": self.frozen_counts,
        }


class Invoice(db.Model):
    __tablename__ = "invoices"
    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(100), unique=True, nullable=False)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=False, index=True)
    month = db.Column(db.Integer, nullable=False)
    year = db.Column(db.Integer, nullable=False)
    service_counts = db.Column(db.JSON)
    total_amount = db.Column(db.Numeric(12, 2), default=0)
    status = db.Column(db.String(20), nullable=False, default="draft")
    prepared_by = db.Column(db.Integer, db.ForeignKey("users.id"))
    prepared_at = db.Column(db.DateTime)
    approved_by = db.Column(db.Integer, db.ForeignKey("users.id"))
    approved_at = db.Column(db.DateTime)
    issued_by = db.Column(db.Integer, db.ForeignKey("users.id"))
    issued_at = db.Column(db.DateTime)
    sent_by = db.Column(db.Integer, db.ForeignKey("users.id"))
    sent_at = db.Column(db.DateTime)
    locked_month_id = db.Column(db.Integer, db.ForeignKey("month_locks.id"))
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"))
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "project_id": self.project_id,
            "month": self.month,
            "year": self.year,
            "service_counts": self.service_counts,
            "total_amount": float(self.total_amount or 0),
            "status": self.status,
            "prepared_by": self.prepared_by,
            "prepared_at": isoformat(self.prepared_at),
            "approved_by": self.approved_by,
            "approved_at": isoformat(self.approved_at),
            "issued_by": self.issued_by,
            "issued_at": isoformat(self.issued_at),
            "sent_by": self.sent_by,
            "sent_at": isoformat(self.sent_at),
            "locked_month_id": self.locked_month_id,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


class IssueFlag(db.Model):
    """A problem raised by the worker on an order they are handling."""

    __tablename__ = "issue_flags"
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    flag_type = db.Column(db.String(30), nullable=False)
    description = db.Column(db.Text, nullable=False)
    severity = db.Column(db.String(10), nullable=False, default="medium")
    status = db.Column(db.String(20), nullable=False, default="open")
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "flag_type": self.flag_type,
            "description": self.description,
            "severity": self.severity,
            "status": self.status,
            "created_at": isoformat(self.created_at),
        }


class HelpRequest(db.Model):
    __tablename__ = "help_requests"
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    question = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending")
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "question": self.question,
            "status": self.status,
            "created_at": isoformat(self.created_at),
        }
