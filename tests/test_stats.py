from datetime import timedelta

from benchmark import db
from benchmark import stats
from benchmark import transitions as t
from benchmark.assignment import start_next
from benchmark.models import WorkItem


def _finish(seed, order, spent_seconds=None, days_ago=0):
    start_next(seed.drawer)
    t.submit(order, seed.drawer)
    item = WorkItem.query.filter_by(order_id=order.id, stage="draw").one()
    if spent_seconds is not None:
        item.time_spent_seconds = spent_seconds
    if days_ago:
        item.completed_at = item.completed_at - timedelta(days=days_ago)
    db.session.commit()
    return item


def test_performance_averages_and_daily_buckets(seed, queued_order):
    seed.drawer.daily_target = 2
    db.session.commit()
    _finish(seed, queued_order(), spent_seconds=600)
    _finish(seed, queued_order(), spent_seconds=1200)
    old = _finish(seed, queued_order(), spent_seconds=1800, days_ago=3)

    perf = stats.performance(seed.drawer)
    assert perf["today_completed"] == 2
    assert perf["weekly_target"] == 10
    by_date = {d["date"]: d["count"] for d in perf["daily_stats"]}
    assert by_date[old.completed_at.date().isoformat()] == 1
    assert by_date[stats.start_of_today().date().isoformat()] == 2
    if old.completed_at.month == stats.start_of_today().month:
        assert perf["avg_time_minutes"] == 20.0
    else:
        assert perf["avg_time_minutes"] == 15.0


def test_performance_of_idle_worker(seed):
    perf = stats.performance(seed.drawer2)
    assert perf["today_completed"] == perf["month_completed"] == 0
    assert perf["weekly_rate"] == 0
    assert perf["avg_time_minutes"] == 0
    assert [d["count"] for d in perf["daily_stats"]] == [0] * 7


def test_rejected_attempts_are_not_history(seed, queued_order):
    order = queued_order()
    _finish(seed, order)
    start_next(seed.checker)
    t.reject(order, seed.checker, "wrong dimensions", "quality")

    assert [o.id for o in stats.history_query(seed.drawer)] == [order.id]
    assert stats.history_query(seed.checker).all() == []
    assert stats.today_completed(seed.checker) == 0
