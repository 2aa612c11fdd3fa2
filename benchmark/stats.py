"""Per-worker production figures for the worker dashboard.

All counts come from completed work items, so a rework attempt counts as
a separate piece of work for whoever did it.
"""

from datetime import datetime, time, timedelta

from sqlalchemy import func

from . import db
from .models import Order, User, WorkItem, utcnow

WORKING_DAYS_PER_WEEK = 5


def start_of_today():
    return datetime.combine(utcnow().date(), time.min)


def _completed(user: User):
    return WorkItem.query.filter(WorkItem.assigned_user_id == user.id,
                                 WorkItem.status == "completed")


def completed_since(user: User, since) -> int:
    return (db.session.query(func.count(WorkItem.id))
            .filter(WorkItem.assigned_user_id == user.id,
                    WorkItem.status == "completed",
                    WorkItem.completed_at >= since)
            .scalar()) or 0


def today_completed(user: User) -> int:
    return completed_since(user, start_of_today())


def completed_today_orders(user: User):
    """Orders the user finished a stage of today, latest first."""
    return (Order.query
            .join(WorkItem, WorkItem.order_id == Order.id)
            .filter(WorkItem.assigned_user_id == user.id,
                    WorkItem.status == "completed",
                    WorkItem.completed_at >= start_of_today())
            .group_by(Order.id)
            .order_by(func.max(WorkItem.completed_at).desc(), Order.id.desc())
            .all())


def history_query(user: User):
    """Every order the user has completed a stage of, most recent first."""
    return (Order.query
            .join(WorkItem, WorkItem.order_id == Order.id)
            .filter(WorkItem.assigned_user_id == user.id,
                    WorkItem.status == "completed")
            .group_by(Order.id)
            .order_by(func.max(WorkItem.completed_at).desc(), Order.id.desc()))


def _minutes(item: WorkItem):
    if item.time_spent_seconds:
        return item.time_spent_seconds / 60
    if item.started_at and item.completed_at:
        return (item.completed_at - item.started_at).total_seconds() / 60
    return None


def performance(user: User) -> dict:
    today = start_of_today()
    week_start = today - timedelta(days=today.weekday())
    month_start = today.replace(day=1)
    week = completed_since(user, week_start)
    daily_target = user.daily_target or 0
    weekly_target = daily_target * WORKING_DAYS_PER_WEEK

    month_items = _completed(user).filter(WorkItem.completed_at >= month_start).all()
    minutes = [m for m in (_minutes(i) for i in month_items) if m is not None]

    first_day = today - timedelta(days=6)
    per_day = {}
    for item in _completed(user).filter(WorkItem.completed_at >= first_day):
        day = item.completed_at.date()
        per_day[day] = per_day.get(day, 0) + 1
    daily_stats = []
    for offset in range(7):
        day = (first_day + timedelta(days=offset)).date()
        daily_stats.append({"date": day.isoformat(), "day": day.strftime("%a"),
                            "count": per_day.get(day, 0)})

    return {
        "today_completed": completed_since(user, today),
        "week_completed": week,
        "month_completed": len(month_items),
        "daily_target": daily_target,
        "weekly_target": weekly_target,
        "weekly_rate": round(week * 100 / weekly_target) if weekly_target else 0,
        "avg_time_minutes": round(sum(minutes) / len(minutes), 1) if minutes else 0,
        "daily_stats": daily_stats,
    }
