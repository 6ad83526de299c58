"""Tests for the triage engine."""

import asyncio

import pytest

from neuroclear.config import Config
from neuroclear.engine import (
    NotificationKind,
    ScanOutcome,
    TriageEngine,
    build_batch,
    reconcile,
)
from neuroclear.errors import ClassificationFailure, ConfigurationError
from neuroclear.inventory import protected_classification
from neuroclear.models import Category, Classification, RiskLevel, ScanMode
from tests.conftest import FakeClassifier, FakeLookup, make_record, make_result


def make_engine(records, service=None, lookup=None, **kwargs):
    """Create an engine that records snapshots and notifications."""
    snapshots = []
    notes = []
    engine = TriageEngine(
        records,
        service or FakeClassifier(),
        lookup,
        on_change=snapshots.append,
        on_notify=notes.append,
        **kwargs,
    )
    return engine, snapshots, notes


def bloat(name: str, ref: str | None = None, **kwargs):
    return make_result(
        name=name, category=Category.BLOATWARE, safe_to_kill=True, ref=ref, **kwargs
    )


# ─────────────────────────────────────────────────────────────────────────────
# Batch splitting and reconciliation
# ─────────────────────────────────────────────────────────────────────────────


def test_build_batch_takes_first_records_in_order():
    records = [make_record(id=f"proc-{i}", name=f"p{i}.exe") for i in range(5)]
    batch = build_batch(records, 3)
    assert [r.name for r in batch] == ["p0.exe", "p1.exe", "p2.exe"]
    assert [r.ref for r in batch] == ["p0", "p1", "p2"]


def test_reconcile_by_ref_handles_duplicate_names():
    batch = [
        make_record(id="proc-1", name="chrome.exe"),
        make_record(id="proc-2", name="chrome.exe"),
    ]
    results = [
        make_result(name="chrome.exe", risk_level=RiskLevel.HIGH, ref="p1"),
        make_result(name="chrome.exe", risk_level=RiskLevel.LOW, ref="p0"),
    ]
    assigned = reconcile(batch, results)
    assert assigned["proc-1"].risk_level is RiskLevel.LOW
    assert assigned["proc-2"].risk_level is RiskLevel.HIGH


def test_reconcile_name_fallback_applies_to_all_instances():
    batch = [
        make_record(id="proc-1", name="chrome.exe"),
        make_record(id="proc-2", name="chrome.exe"),
        make_record(id="proc-3", name="other.exe"),
    ]
    assigned = reconcile(batch, [make_result(name="chrome.exe", description="Browser")])
    assert assigned["proc-1"].description == "Browser"
    assert assigned["proc-2"].description == "Browser"
    assert assigned["proc-3"] == Classification.unmatched()


def test_reconcile_ref_match_not_overwritten_by_name_match():
    batch = [
        make_record(id="proc-1", name="chrome.exe"),
        make_record(id="proc-2", name="chrome.exe"),
    ]
    results = [
        make_result(name="chrome.exe", description="by name"),
        make_result(name="chrome.exe", description="by ref", ref="p0"),
    ]
    assigned = reconcile(batch, results)
    assert assigned["proc-1"].description == "by ref"
    assert assigned["proc-2"].description == "by name"


def test_reconcile_ref_with_wrong_name_falls_back_to_name():
    batch = [make_record(id="proc-1", name="a.exe"), make_record(id="proc-2", name="b.exe")]
    assigned = reconcile(batch, [make_result(name="b.exe", ref="p0", description="b")])
    assert assigned["proc-1"] == Classification.unmatched()
    assert assigned["proc-2"].description == "b"


def test_reconcile_ignores_unknown_names():
    batch = [make_record(id="proc-1", name="a.exe")]
    assigned = reconcile(batch, [make_result(name="ghost.exe")])
    assert list(assigned) == ["proc-1"]
    assert assigned["proc-1"] == Classification.unmatched()


# ─────────────────────────────────────────────────────────────────────────────
# Scan
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_scenario_scan_select_and_clean(scenario_records, scenario_results):
    """Critical stays unselected, bloatware is recommended and cleaned."""
    engine, _, notes = make_engine(scenario_records, FakeClassifier(scenario_results))

    assert await engine.scan() is ScanOutcome.COMPLETED
    assert engine.selected == {"proc-2"}

    assert engine.toggle("proc-1") is False
    assert engine.selected == {"proc-2"}

    request = engine.initiate_clean()
    assert request is not None
    assert request.ids == {"proc-2"}
    assert request.total_memory_mb == 50.0

    assert engine.confirm() == 50.0
    assert [r.id for r in engine.records] == ["proc-1", "proc-3"]
    assert engine.selected == frozenset()
    assert notes[-1].kind is NotificationKind.CLEAN_COMPLETED
    assert notes[-1].memory_freed_mb == 50.0


@pytest.mark.asyncio
async def test_transport_error_leaves_state_untouched(scenario_records):
    service = FakeClassifier(ClassificationFailure("ConnectionError: reset"))
    engine, _, notes = make_engine(scenario_records, service)
    engine.toggle("proc-3")
    before_records = engine.records
    before_selected = engine.selected

    assert await engine.scan() is ScanOutcome.FAILED

    assert engine.records == before_records
    assert engine.selected == before_selected
    assert not engine.scanning
    assert notes[-1].kind is NotificationKind.SCAN_FAILED
    assert notes[-1].severity == "error"


@pytest.mark.asyncio
async def test_unexpected_exception_is_converted_to_failure(scenario_records):
    engine, _, notes = make_engine(scenario_records, FakeClassifier(RuntimeError("boom")))
    assert await engine.scan() is ScanOutcome.FAILED
    assert "RuntimeError" in notes[-1].message
    assert all(r.classification is None for r in engine.records)


@pytest.mark.asyncio
async def test_empty_response_is_failure(scenario_records):
    engine, _, notes = make_engine(scenario_records, FakeClassifier([]))
    assert await engine.scan() is ScanOutcome.FAILED
    assert notes[-1].kind is NotificationKind.SCAN_FAILED
    assert all(r.classification is None for r in engine.records)


@pytest.mark.asyncio
async def test_missing_configuration_blocks_scan(scenario_records):
    engine, _, notes = make_engine(
        scenario_records, FakeClassifier(ConfigurationError("No API key found."))
    )
    assert await engine.scan() is ScanOutcome.NOT_CONFIGURED
    assert notes[-1].kind is NotificationKind.NOT_CONFIGURED
    assert notes[-1].severity == "error"
    assert engine.selected == frozenset()
    assert not engine.snapshot().analyzed


@pytest.mark.asyncio
async def test_scan_sends_one_batch_with_mode(scenario_records, scenario_results):
    service = FakeClassifier(scenario_results)
    engine, _, _ = make_engine(scenario_records, service, mode=ScanMode.DEEP)
    await engine.scan()
    assert len(service.calls) == 1
    batch, mode = service.calls[0]
    assert mode is ScanMode.DEEP
    assert [r.name for r in batch] == ["A.exe", "B.exe", "C.exe"]


@pytest.mark.asyncio
async def test_pass_through_records_untouched_and_never_selected():
    records = [make_record(id=f"proc-{i}", name=f"p{i}.exe") for i in range(4)]
    service = FakeClassifier([bloat(f"p{i}.exe", ref=f"p{i}") for i in range(4)])
    engine, _, _ = make_engine(records, service, batch_size=2)

    await engine.scan()

    batch, _ = service.calls[0]
    assert len(batch) == 2
    assert [r.id for r in engine.records] == ["proc-0", "proc-1", "proc-2", "proc-3"]
    assert engine.records[2].classification is None
    assert engine.records[3].classification is None
    assert engine.selected == {"proc-0", "proc-1"}


@pytest.mark.asyncio
async def test_response_order_does_not_change_record_order():
    records = [make_record(id=f"proc-{i}", name=f"p{i}.exe") for i in range(3)]
    results = [make_result(name=f"p{i}.exe") for i in reversed(range(3))]
    engine, _, _ = make_engine(records, FakeClassifier(results))
    await engine.scan()
    assert [r.id for r in engine.records] == ["proc-0", "proc-1", "proc-2"]


@pytest.mark.asyncio
async def test_omitted_records_become_unknown():
    records = [make_record(id="proc-1", name="a.exe"), make_record(id="proc-2", name="b.exe")]
    engine, _, _ = make_engine(records, FakeClassifier([make_result(name="a.exe")]))
    await engine.scan()
    b = engine.records[1]
    assert b.category is Category.UNKNOWN
    assert b.safe_to_kill is False
    assert b.risk_level is None
    assert b.description is None


@pytest.mark.asyncio
async def test_selection_is_replaced_not_merged(scenario_records, scenario_results):
    engine, _, _ = make_engine(scenario_records, FakeClassifier(scenario_results))
    engine.toggle("proc-3")
    await engine.scan()
    assert engine.selected == {"proc-2"}


@pytest.mark.asyncio
async def test_critical_safe_bloatware_is_not_auto_selected():
    records = [make_record(id="proc-1", name="weird.exe")]
    results = [bloat("weird.exe", risk_level=RiskLevel.CRITICAL)]
    engine, _, _ = make_engine(records, FakeClassifier(results))
    await engine.scan()
    assert engine.selected == frozenset()


@pytest.mark.asyncio
async def test_protected_record_omitted_by_service_stays_critical():
    records = [
        make_record(id="proc-1", name="svchost.exe", classification=protected_classification()),
        make_record(id="proc-2", name="OneDrive.exe"),
    ]
    engine, _, _ = make_engine(records, FakeClassifier([bloat("OneDrive.exe", ref="p1")]))

    await engine.scan()

    record = engine.snapshot().get("proc-1")
    assert record.classification == protected_classification()
    assert engine.toggle("proc-1") is False
    assert engine.selected == {"proc-2"}


@pytest.mark.asyncio
async def test_protected_record_reported_safe_is_not_selected():
    records = [
        make_record(id="proc-1", name="svchost.exe", classification=protected_classification())
    ]
    results = [
        make_result(
            name="svchost.exe",
            category=Category.BACKGROUND,
            safe_to_kill=True,
            risk_level=RiskLevel.LOW,
            ref="p0",
        )
    ]
    engine, _, _ = make_engine(records, FakeClassifier(results))

    await engine.scan()

    assert engine.selected == frozenset()
    assert engine.snapshot().get("proc-1").risk_level is RiskLevel.CRITICAL


def test_reconcile_keeps_critical_classification():
    batch = [make_record(id="proc-1", name="lsass.exe", classification=protected_classification())]
    assigned = reconcile(batch, [bloat("lsass.exe", ref="p0")])
    assert assigned == {"proc-1": protected_classification()}


@pytest.mark.asyncio
async def test_reclassification_as_critical_drops_manual_selection():
    records = [make_record(id="proc-1", name="x.exe")]
    results = [make_result(name="x.exe", risk_level=RiskLevel.CRITICAL, safe_to_kill=False)]
    engine, _, _ = make_engine(records, FakeClassifier(results))
    engine.toggle("proc-1")
    await engine.scan()
    assert "proc-1" not in engine.selected


@pytest.mark.asyncio
async def test_scan_while_scanning_is_rejected(scenario_records, scenario_results):
    gate = asyncio.Event()
    service = FakeClassifier(scenario_results, gate=gate)
    engine, snapshots, _ = make_engine(scenario_records, service)

    first = asyncio.create_task(engine.scan())
    await asyncio.sleep(0)
    assert engine.scanning
    assert snapshots[-1].scanning

    assert await engine.scan() is ScanOutcome.REJECTED
    gate.set()
    assert await first is ScanOutcome.COMPLETED
    assert len(service.calls) == 1
    assert not snapshots[-1].scanning


@pytest.mark.asyncio
async def test_toggle_during_scan_is_overridden_by_merge(scenario_records, scenario_results):
    gate = asyncio.Event()
    engine, _, _ = make_engine(scenario_records, FakeClassifier(scenario_results, gate=gate))

    task = asyncio.create_task(engine.scan())
    await asyncio.sleep(0)
    engine.toggle("proc-3")
    assert "proc-3" in engine.selected

    gate.set()
    await task
    assert engine.selected == {"proc-2"}


@pytest.mark.asyncio
async def test_scan_on_empty_inventory_is_rejected():
    service = FakeClassifier()
    engine, _, _ = make_engine([], service)
    assert await engine.scan() is ScanOutcome.REJECTED
    assert service.calls == []


@pytest.mark.asyncio
async def test_scan_rejected_while_clean_pending(scenario_records):
    service = FakeClassifier([make_result(name="A.exe")])
    engine, _, _ = make_engine(scenario_records, service)
    engine.toggle("proc-2")
    assert engine.initiate_clean() is not None

    assert await engine.scan() is ScanOutcome.REJECTED
    assert service.calls == []


@pytest.mark.asyncio
async def test_clean_rejected_while_scanning(scenario_records, scenario_results):
    gate = asyncio.Event()
    engine, _, _ = make_engine(scenario_records, FakeClassifier(scenario_results, gate=gate))
    engine.toggle("proc-2")

    task = asyncio.create_task(engine.scan())
    await asyncio.sleep(0)
    assert engine.initiate_clean() is None

    gate.set()
    await task


@pytest.mark.asyncio
async def test_merge_keeps_enrichment_settled_during_scan():
    records = [make_record(id="proc-1", name="a.exe")]
    gate = asyncio.Event()
    lookup = FakeLookup(text="looked up")
    engine, _, _ = make_engine(
        records, FakeClassifier([bloat("a.exe")], gate=gate), lookup=lookup
    )

    scan_task = asyncio.create_task(engine.scan())
    await asyncio.sleep(0)
    await engine.expand("proc-1")
    gate.set()
    await scan_task

    record = engine.records[0]
    assert record.enrichment.text == "looked up"
    assert record.category is Category.BLOATWARE


# ─────────────────────────────────────────────────────────────────────────────
# Selection and cleaning
# ─────────────────────────────────────────────────────────────────────────────


def test_toggle_flips_membership():
    engine, snapshots, _ = make_engine([make_record(id="proc-1")])
    assert engine.toggle("proc-1") is True
    assert engine.selected == {"proc-1"}
    assert snapshots[-1].selected == {"proc-1"}
    assert engine.toggle("proc-1") is True
    assert engine.selected == frozenset()


def test_toggle_unknown_id_is_noop():
    engine, snapshots, _ = make_engine([make_record(id="proc-1")])
    assert engine.toggle("proc-99") is False
    assert snapshots == []


def test_toggle_critical_is_noop():
    engine, _, _ = make_engine(
        [make_record(id="proc-1", name="lsass.exe", classification=protected_classification())]
    )
    assert engine.toggle("proc-1") is False
    assert engine.selected == frozenset()


def test_initiate_clean_with_empty_selection_is_noop():
    engine, snapshots, _ = make_engine([make_record(id="proc-1")])
    assert engine.initiate_clean() is None
    assert snapshots == []


def test_clean_request_snapshot_is_stable():
    records = [make_record(id="proc-1", memory_mb=10.0), make_record(id="proc-2", memory_mb=20.0)]
    engine, _, _ = make_engine(records)
    engine.toggle("proc-1")
    request = engine.initiate_clean()

    # Selection changes after the request do not alter what gets removed
    engine.toggle("proc-2")
    assert engine.confirm() == 10.0
    assert [r.id for r in engine.records] == ["proc-2"]
    assert request.total_memory_mb == 10.0


def test_cancel_leaves_inventory_and_selection():
    records = [make_record(id="proc-1"), make_record(id="proc-2")]
    engine, snapshots, _ = make_engine(records)
    engine.toggle("proc-1")
    engine.initiate_clean()
    assert snapshots[-1].pending_clean is not None

    engine.cancel()

    assert [r.id for r in engine.records] == ["proc-1", "proc-2"]
    assert engine.selected == {"proc-1"}
    assert snapshots[-1].pending_clean is None
    assert engine.confirm() is None


def test_second_initiate_clean_while_pending_is_rejected():
    engine, _, _ = make_engine([make_record(id="proc-1")])
    engine.toggle("proc-1")
    assert engine.initiate_clean() is not None
    assert engine.initiate_clean() is None


def test_freed_memory_matches_removed_records():
    records = [make_record(id=f"proc-{i}", memory_mb=float(10 * (i + 1))) for i in range(5)]
    engine, _, _ = make_engine(records)
    for record_id in ("proc-0", "proc-2", "proc-4"):
        engine.toggle(record_id)
    before = engine.stats().used_memory_gb

    freed = engine.initiate_clean() and engine.confirm()

    assert freed == 10.0 + 30.0 + 50.0
    assert [r.id for r in engine.records] == ["proc-1", "proc-3"]
    assert engine.stats().used_memory_gb == pytest.approx(before - freed / 1024)


def test_snapshot_is_immutable_view():
    engine, _, _ = make_engine([make_record(id="proc-1")])
    snap = engine.snapshot()
    engine.toggle("proc-1")
    assert snap.selected == frozenset()
    assert engine.snapshot().selected == {"proc-1"}


def test_snapshot_properties(scenario_records):
    engine, _, _ = make_engine(scenario_records)
    engine.toggle("proc-2")
    engine.toggle("proc-3")
    snap = engine.snapshot()
    assert snap.can_clean
    assert snap.selected_memory_mb == 350.0
    assert [r.id for r in snap.selected_records] == ["proc-2", "proc-3"]
    assert snap.get("proc-1").name == "A.exe"
    assert snap.get("nope") is None


def test_duplicate_ids_rejected():
    with pytest.raises(ValueError, match="unique"):
        TriageEngine([make_record(id="proc-1"), make_record(id="proc-1")], FakeClassifier())


def test_mode_toggle():
    engine, snapshots, _ = make_engine([make_record()])
    assert engine.mode is ScanMode.QUICK
    assert engine.toggle_mode() is ScanMode.DEEP
    assert snapshots[-1].mode is ScanMode.DEEP
    engine.set_mode(ScanMode.DEEP)
    assert len(snapshots) == 1


def test_from_config():
    config = Config()
    config.scan.batch_size = 3
    config.scan.default_mode = "deep"
    config.scan.total_memory_gb = 8.0
    engine = TriageEngine.from_config([make_record()], FakeClassifier(), config)
    assert engine.batch_size == 3
    assert engine.mode is ScanMode.DEEP
    assert engine.stats().total_memory_gb == 8.0


@pytest.mark.asyncio
async def test_critical_never_selected_across_operations():
    records = [
        make_record(id="proc-1", name="lsass.exe", classification=protected_classification()),
        make_record(id="proc-2", name="a.exe"),
        make_record(id="proc-3", name="b.exe"),
    ]
    results = [
        bloat("lsass.exe", risk_level=RiskLevel.CRITICAL),
        bloat("a.exe"),
        make_result(name="b.exe", risk_level=RiskLevel.CRITICAL, safe_to_kill=False),
    ]
    engine, snapshots, _ = make_engine(records, FakeClassifier(results))

    for record_id in ("proc-1", "proc-2", "proc-3"):
        engine.toggle(record_id)
    await engine.scan()
    for record_id in ("proc-1", "proc-2", "proc-3"):
        engine.toggle(record_id)

    for snap in snapshots:
        critical = {r.id for r in snap.records if r.is_critical}
        assert not critical & snap.selected


# ─────────────────────────────────────────────────────────────────────────────
# Detail rows and enrichment
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_double_expand_issues_one_lookup():
    gate = asyncio.Event()
    lookup = FakeLookup(gate=gate)
    engine, _, _ = make_engine([make_record(id="proc-1", name="a.exe")], lookup=lookup)

    first = engine.expand("proc-1")
    second = engine.expand("proc-1")
    assert first is second
    assert engine.records[0].enrichment.state.value == "pending"

    gate.set()
    await first
    assert lookup.calls == ["a.exe"]
    assert engine.records[0].enrichment.text == "A harmless helper process."


@pytest.mark.asyncio
async def test_expand_classified_record_skips_lookup():
    record = make_record(
        id="proc-1", classification=Classification(category=Category.USER, description="Known")
    )
    lookup = FakeLookup()
    engine, snapshots, _ = make_engine([record], lookup=lookup)

    assert engine.expand("proc-1") is None
    assert lookup.calls == []
    assert "proc-1" in snapshots[-1].expanded


@pytest.mark.asyncio
async def test_failed_lookup_falls_back_and_is_not_retried_automatically():
    lookup = FakeLookup(fail=True)
    engine, _, notes = make_engine([make_record(id="proc-1", name="a.exe")], lookup=lookup)

    await engine.expand("proc-1")
    record = engine.records[0]
    assert record.enrichment.text == "details unavailable"
    assert record.enrichment.state.value == "failed"
    assert record.classification is None
    assert notes == []

    engine.collapse("proc-1")
    assert engine.expand("proc-1") is None
    assert lookup.calls == ["a.exe"]

    lookup.fail = False
    await engine.expand("proc-1", retry=True)
    assert lookup.calls == ["a.exe", "a.exe"]
    assert engine.records[0].enrichment.state.value == "done"


@pytest.mark.asyncio
async def test_lookup_result_discarded_for_removed_record():
    gate = asyncio.Event()
    lookup = FakeLookup(gate=gate)
    engine, _, _ = make_engine([make_record(id="proc-1"), make_record(id="proc-2")], lookup=lookup)

    task = engine.expand("proc-1")
    engine.toggle("proc-1")
    engine.initiate_clean()
    engine.confirm()

    gate.set()
    await task
    assert [r.id for r in engine.records] == ["proc-2"]
    assert engine.enrichment.state("proc-1").state.value == "not_attempted"


def test_toggle_expanded():
    engine, snapshots, _ = make_engine([make_record(id="proc-1")])
    engine.toggle_expanded("proc-1")
    assert snapshots[-1].expanded == {"proc-1"}
    engine.toggle_expanded("proc-1")
    assert snapshots[-1].expanded == frozenset()


@pytest.mark.asyncio
async def test_scan_logs_structured_events(scenario_records, scenario_results, captured_logs):
    engine, _, _ = make_engine(scenario_records, FakeClassifier(scenario_results))
    await engine.scan()
    events = [e["event"] for e in captured_logs]
    assert events[:3] == ["scan_started", "scan_merged", "selection_replaced"]
    merged = captured_logs[1]
    assert merged["classified"] == 3
    assert merged["unmatched"] == 0
