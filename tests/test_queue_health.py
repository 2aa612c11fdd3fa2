from benchmark import queue_health as qh
from benchmark import transitions as t
from benchmark.assignment import start_next


def test_counts_per_stage_and_state(seed, queued_order):
    a, b, c = queued_order(), queued_order(), queued_order()
    start_next(seed.drawer)
    t.submit(a, seed.drawer)
    t.hold(c, seed.manager, "client clarification")

    report = qh.queue_health(seed.fp)
    assert report["errors"] == []
    assert set(report["stages"]) == {"draw", "check", "qa"}
    assert report["stages"]["draw"]["queued"] == 1
    assert report["stages"]["check"]["queued"] == 1
    assert report["stages"]["qa"]["queued"] == 0
    assert report["state_counts"]["QUEUED_DRAW"]["count"] == 1
    assert report["state_counts"]["ON_HOLD"]["count"] == 1
    assert report["on_hold"] == 1
    assert report["total_pending"] == 3
    assert report["total_delivered"] == 0
    assert b.workflow_state == "QUEUED_DRAW"


def test_sla_breach_uses_project_config(seed, queued_order):
    queued_order(age_minutes=90)
    report = qh.queue_health(seed.fp)
    draw = report["stages"]["draw"]
    assert draw["sla_minutes"] == 60
    assert draw["breached"] is True
    assert draw["oldest_wait_minutes"] >= 90
    assert report["stages"]["check"]["breached"] is False
    # check has no project override
    assert report["stages"]["check"]["sla_minutes"] == 240
    assert report["sla_breaches"] == 1


def test_fresh_queue_is_within_sla(seed, queued_order):
    queued_order(age_minutes=5)
    assert qh.queue_health(seed.fp)["sla_breaches"] == 0


def test_ph_report_has_design_stage(seed, queued_order):
    queued_order(project=seed.ph)
    report = qh.queue_health(seed.ph)
    assert set(report["stages"]) == {"design", "qa"}
    assert report["stages"]["design"]["queued"] == 1


def test_staffing_rows_show_wip(seed, queued_order):
    queued_order()
    start_next(seed.drawer)
    rows = {r["user_id"]: r for r in qh.queue_health(seed.fp)["staffing"]}
    assert rows[seed.drawer.id]["wip_count"] == 1
    assert rows[seed.drawer2.id]["wip_count"] == 0
    assert seed.manager.id not in rows


def test_failing_section_degrades_only_itself(seed, queued_order, monkeypatch):
    queued_order()

    def boom(project):
        raise RuntimeError("staffing query failed")

    monkeypatch.setattr(qh, "staffing_rows", boom)
    report = qh.queue_health(seed.fp)
    assert report["errors"] == ["staffing"]
    assert report["staffing"] == []
    assert report["stages"]["draw"]["queued"] == 1
    assert report["total_pending"] == 1


def test_staffing_groups_by_role(seed):
    seed.drawer2.is_absent = True
    report = qh.staffing(seed.fp)
    drawers = report["staffing"]["drawer"]
    assert drawers["total"] == 2
    assert drawers["absent"] == 1
    assert drawers["active"] == 1
    assert [u["id"] for u in drawers["users"]] == [seed.drawer.id, seed.drawer2.id]
    assert "designer" not in report["staffing"]
