# src/neuroclear/engine.py
"""Triage engine: inventory, batch classification, selection and cleaning.

The engine owns all mutable session state. Intents (scan, toggle, clean,
expand) are methods; every state change is published as an immutable
EngineSnapshot through ``on_change``. User-facing messages go through
``on_notify`` as Notification values.

Selection invariant: a selected id always refers to a live record that is
not classified Critical. Every method that touches the selection or the
inventory re-establishes it before publishing.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, replace
from enum import Enum

import structlog

from neuroclear.config import Config
from neuroclear.enrichment import EnrichmentCache
from neuroclear.errors import ClassificationFailure, ConfigurationError
from neuroclear.models import (
    Classification,
    ClassificationRequest,
    ClassificationResult,
    Enrichment,
    EnrichmentState,
    ProcessRecord,
    ScanMode,
    SystemStats,
)
from neuroclear.service import ClassificationService, LookupService

log = structlog.get_logger()

DEFAULT_BATCH_SIZE = 15
DEFAULT_TOTAL_MEMORY_GB = 32.0


class ScanOutcome(Enum):
    """Result of a scan intent."""

    COMPLETED = "completed"
    FAILED = "failed"
    NOT_CONFIGURED = "not_configured"
    REJECTED = "rejected"


class NotificationKind(Enum):
    SCAN_STARTED = "scan_started"
    SCAN_COMPLETED = "scan_completed"
    SCAN_FAILED = "scan_failed"
    NOT_CONFIGURED = "not_configured"
    CLEAN_COMPLETED = "clean_completed"


@dataclass(frozen=True)
class Notification:
    """User-facing message. Severity values match Textual's notify()."""

    kind: NotificationKind
    message: str
    severity: str = "information"  # information, warning, error
    memory_freed_mb: float | None = None


@dataclass(frozen=True)
class CleanRequest:
    """A pending termination awaiting confirmation."""

    records: tuple[ProcessRecord, ...]
    total_memory_mb: float

    @property
    def ids(self) -> frozenset[str]:
        return frozenset(r.id for r in self.records)


@dataclass(frozen=True)
class EngineSnapshot:
    """Read-only view of engine state for presentation."""

    records: tuple[ProcessRecord, ...]
    selected: frozenset[str]
    expanded: frozenset[str]
    stats: SystemStats
    mode: ScanMode
    scanning: bool
    analyzed: bool
    pending_clean: CleanRequest | None

    @property
    def selected_records(self) -> tuple[ProcessRecord, ...]:
        return tuple(r for r in self.records if r.id in self.selected)

    @property
    def selected_memory_mb(self) -> float:
        return sum(r.memory_mb for r in self.selected_records)

    @property
    def can_clean(self) -> bool:
        return bool(self.selected) and not self.scanning and self.pending_clean is None

    def get(self, record_id: str) -> ProcessRecord | None:
        for record in self.records:
            if record.id == record_id:
                return record
        return None


def batch_ref(index: int) -> str:
    """Correlation token for the record at ``index`` within a batch."""
    return f"p{index}"


def build_batch(records: Sequence[ProcessRecord], batch_size: int) -> list[ClassificationRequest]:
    """Take the first ``batch_size`` records as service requests, in order."""
    return [
        ClassificationRequest(ref=batch_ref(i), name=r.name, memory_mb=r.memory_mb)
        for i, r in enumerate(records[:batch_size])
    ]


def reconcile(
    batch: Sequence[ProcessRecord], results: Iterable[ClassificationResult]
) -> dict[str, Classification]:
    """Map service results back onto batch records.

    A result whose ref names a batch record with the same name applies to
    exactly that record; the first such result wins. Results without a
    usable ref fall back to name matching and apply to every batch record
    of that name still unassigned. Records already classified as
    Critical keep that classification. Other batch records no result covers
    get ``Classification.unmatched()``.

    Returns:
        Record id to classification, one entry per batch record.
    """
    by_ref = {batch_ref(i): record for i, record in enumerate(batch)}
    assigned: dict[str, Classification] = {}
    by_name: list[ClassificationResult] = []

    for result in results:
        record = by_ref.get(result.ref) if result.ref else None
        if record is None or record.name != result.name:
            by_name.append(result)
            continue
        if record.id not in assigned:
            assigned[record.id] = result.to_classification()

    for result in by_name:
        for record in batch:
            if record.name == result.name and record.id not in assigned:
                assigned[record.id] = result.to_classification()

    for record in batch:
        if record.is_critical:
            # Critical records keep their classification whatever the service says
            assigned[record.id] = record.classification
        elif record.id not in assigned:
            assigned[record.id] = Classification.unmatched()

    return assigned


class TriageEngine:
    """Session state machine for one process inventory."""

    def __init__(
        self,
        records: Iterable[ProcessRecord],
        service: ClassificationService,
        lookup: LookupService | None = None,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        total_memory_gb: float = DEFAULT_TOTAL_MEMORY_GB,
        mode: ScanMode = ScanMode.QUICK,
        on_change: Callable[[EngineSnapshot], None] | None = None,
        on_notify: Callable[[Notification], None] | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            records: Materialized inventory, in display order
            service: Batch classification backend
            lookup: Optional enrichment backend; without one, expanding a
                    row never starts a lookup
            batch_size: Records submitted per scan
            total_memory_gb: Capacity used for memory stats
            mode: Initial scan mode
            on_change: Called with a fresh snapshot after every state change
            on_notify: Called with user-facing notifications
        """
        self._records: list[ProcessRecord] = list(records)
        ids = [r.id for r in self._records]
        if len(ids) != len(set(ids)):
            raise ValueError("Record ids must be unique")
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")

        self._service = service
        self.batch_size = batch_size
        self.total_memory_gb = total_memory_gb
        self._mode = mode
        self._selected: set[str] = set()
        self._expanded: set[str] = set()
        self._scanning = False
        self._analyzed = False
        self._pending_clean: CleanRequest | None = None
        self.on_change = on_change
        self.on_notify = on_notify
        self._enrichment = (
            EnrichmentCache(lookup, on_settled=self._on_enrichment_settled) if lookup else None
        )

    @classmethod
    def from_config(
        cls,
        records: Iterable[ProcessRecord],
        service: ClassificationService,
        config: Config,
        lookup: LookupService | None = None,
        **kwargs,
    ) -> TriageEngine:
        """Build an engine with batch size, capacity and mode from config."""
        return cls(
            records,
            service,
            lookup,
            batch_size=config.scan.batch_size,
            total_memory_gb=config.scan.total_memory_gb,
            mode=config.scan.mode,
            **kwargs,
        )

    # ─────────────────────────────────────────────────────────────────────
    # State
    # ─────────────────────────────────────────────────────────────────────

    @property
    def mode(self) -> ScanMode:
        return self._mode

    @property
    def service(self) -> ClassificationService:
        return self._service

    @property
    def scanning(self) -> bool:
        return self._scanning

    @property
    def records(self) -> tuple[ProcessRecord, ...]:
        return tuple(self._records)

    @property
    def selected(self) -> frozenset[str]:
        return frozenset(self._selected)

    @property
    def enrichment(self) -> EnrichmentCache | None:
        return self._enrichment

    def stats(self) -> SystemStats:
        return SystemStats.from_records(self._records, self.total_memory_gb)

    def snapshot(self) -> EngineSnapshot:
        return EngineSnapshot(
            records=tuple(self._records),
            selected=frozenset(self._selected),
            expanded=frozenset(self._expanded),
            stats=self.stats(),
            mode=self._mode,
            scanning=self._scanning,
            analyzed=self._analyzed,
            pending_clean=self._pending_clean,
        )

    def _find(self, record_id: str) -> ProcessRecord | None:
        for record in self._records:
            if record.id == record_id:
                return record
        return None

    def _publish(self) -> None:
        if self.on_change:
            self.on_change(self.snapshot())

    def _notify(self, notification: Notification) -> None:
        if self.on_notify:
            self.on_notify(notification)

    # ─────────────────────────────────────────────────────────────────────
    # Scan
    # ─────────────────────────────────────────────────────────────────────

    def set_mode(self, mode: ScanMode) -> None:
        """Choose the profile used by the next scan."""
        if mode is self._mode:
            return
        self._mode = mode
        log.info("scan_mode_changed", mode=mode.value)
        self._publish()

    def toggle_mode(self) -> ScanMode:
        self.set_mode(ScanMode.DEEP if self._mode is ScanMode.QUICK else ScanMode.QUICK)
        return self._mode

    async def scan(self) -> ScanOutcome:
        """Classify the first batch of the inventory.

        On success, classifications for the batch are applied atomically and
        the selection is replaced by the auto-selectable batch records. On
        any failure the inventory and selection are left exactly as they
        were.
        """
        if self._scanning:
            log.info("scan_rejected", reason="scan_in_progress")
            return ScanOutcome.REJECTED
        if self._pending_clean is not None:
            log.info("scan_rejected", reason="clean_pending")
            return ScanOutcome.REJECTED

        batch = self._records[: self.batch_size]
        if not batch:
            log.info("scan_rejected", reason="empty_inventory")
            return ScanOutcome.REJECTED

        requests = build_batch(batch, self.batch_size)
        mode = self._mode
        self._scanning = True
        log.info("scan_started", count=len(requests), mode=mode.value)
        self._notify(
            Notification(
                NotificationKind.SCAN_STARTED,
                f"Analyzing {len(requests)} processes ({mode.value})...",
            )
        )
        self._publish()

        try:
            results = await self._service.classify(requests, mode)
            if not results:
                raise ClassificationFailure("Empty response")
        except ConfigurationError as e:
            self._scanning = False
            log.warning("scan_not_configured", error=str(e))
            self._notify(Notification(NotificationKind.NOT_CONFIGURED, str(e), "error"))
            self._publish()
            return ScanOutcome.NOT_CONFIGURED
        except asyncio.CancelledError:
            self._scanning = False
            self._publish()
            raise
        except Exception as e:
            self._scanning = False
            reason = str(e) if isinstance(e, ClassificationFailure) else f"{type(e).__name__}: {e}"
            log.warning("scan_failed", error=reason)
            self._notify(
                Notification(
                    NotificationKind.SCAN_FAILED,
                    f"Analysis failed: {reason}. Please try again.",
                    "error",
                )
            )
            self._publish()
            return ScanOutcome.FAILED

        self._merge(batch, results)
        self._scanning = False
        self._analyzed = True
        self._notify(
            Notification(
                NotificationKind.SCAN_COMPLETED,
                f"Analysis complete. {len(self._selected)} processes recommended.",
            )
        )
        self._publish()
        return ScanOutcome.COMPLETED

    def _merge(
        self, batch: Sequence[ProcessRecord], results: Sequence[ClassificationResult]
    ) -> None:
        classifications = reconcile(batch, results)

        # Re-read current records so enrichment that settled mid-scan survives
        self._records = [
            replace(r, classification=classifications[r.id]) if r.id in classifications else r
            for r in self._records
        ]

        self._selected = {
            record_id for record_id, c in classifications.items() if c.is_auto_selectable
        }
        unmatched = sum(1 for c in classifications.values() if c == Classification.unmatched())
        log.info(
            "scan_merged",
            classified=len(classifications),
            unmatched=unmatched,
            results=len(results),
        )
        log.info("selection_replaced", selected=sorted(self._selected))

    # ─────────────────────────────────────────────────────────────────────
    # Selection and cleaning
    # ─────────────────────────────────────────────────────────────────────

    def toggle(self, record_id: str) -> bool:
        """Flip selection of a record.

        Returns:
            True if the selection changed. Unknown ids and Critical records
            are ignored.
        """
        record = self._find(record_id)
        if record is None or record.is_critical:
            return False

        if record_id in self._selected:
            self._selected.discard(record_id)
        else:
            self._selected.add(record_id)
        self._publish()
        return True

    def initiate_clean(self) -> CleanRequest | None:
        """Stage the current selection for confirmation.

        Returns:
            The pending request, or None if nothing is selected, a scan is
            running, or a clean is already pending.
        """
        if self._scanning or self._pending_clean is not None or not self._selected:
            return None

        records = tuple(r for r in self._records if r.id in self._selected)
        self._pending_clean = CleanRequest(
            records=records,
            total_memory_mb=sum(r.memory_mb for r in records),
        )
        self._publish()
        return self._pending_clean

    def cancel(self) -> None:
        """Dismiss a pending clean. Inventory and selection are untouched."""
        if self._pending_clean is None:
            return
        self._pending_clean = None
        self._publish()

    def confirm(self) -> float | None:
        """Commit the pending clean.

        Removes exactly the staged records, clears the selection and
        returns the memory freed in MB. Returns None if nothing is pending.
        """
        pending = self._pending_clean
        if pending is None:
            return None

        removed = pending.ids
        self._records = [r for r in self._records if r.id not in removed]
        self._selected.clear()
        self._expanded -= removed
        self._pending_clean = None
        if self._enrichment:
            self._enrichment.forget(removed)

        freed = pending.total_memory_mb
        log.info("clean_committed", count=len(removed), memory_freed_mb=round(freed, 1))
        self._notify(
            Notification(
                NotificationKind.CLEAN_COMPLETED,
                f"Freed {freed:,.0f} MB of RAM!",
                memory_freed_mb=freed,
            )
        )
        self._publish()
        return freed

    # ─────────────────────────────────────────────────────────────────────
    # Detail rows and enrichment
    # ─────────────────────────────────────────────────────────────────────

    def expand(self, record_id: str, retry: bool = False) -> asyncio.Task[Enrichment] | None:
        """Open a record's detail row, starting a lookup if it has no description.

        Must be called from a running event loop when a lookup service is
        configured.

        Returns:
            The in-flight lookup task, or None if no lookup is needed.
        """
        record = self._find(record_id)
        if record is None:
            return None

        if record_id not in self._expanded:
            self._expanded.add(record_id)
            self._publish()

        if self._enrichment is None or not record.needs_enrichment:
            return None

        already_pending = self._enrichment.is_pending(record_id)
        task = self._enrichment.request(record, retry=retry)
        if task is not None and not already_pending:
            self._set_enrichment(record_id, Enrichment(state=EnrichmentState.PENDING))
        return task

    def collapse(self, record_id: str) -> None:
        if record_id in self._expanded:
            self._expanded.discard(record_id)
            self._publish()

    def toggle_expanded(self, record_id: str) -> asyncio.Task[Enrichment] | None:
        if record_id in self._expanded:
            self.collapse(record_id)
            return None
        return self.expand(record_id)

    def _set_enrichment(self, record_id: str, enrichment: Enrichment) -> None:
        for i, record in enumerate(self._records):
            if record.id == record_id:
                self._records[i] = replace(record, enrichment=enrichment)
                self._publish()
                return

    def _on_enrichment_settled(self, record_id: str, enrichment: Enrichment) -> None:
        self._set_enrichment(record_id, enrichment)
