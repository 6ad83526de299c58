# src/neuroclear/enrichment.py
"""Lazy per-record lookups with single-flight semantics.

Each record id moves through NOT_ATTEMPTED -> PENDING -> DONE | FAILED.
While PENDING, further requests for the same id join the in-flight task
instead of starting another lookup. A settled record is never looked up
again unless the caller explicitly asks to retry a failure.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable

import structlog

from neuroclear.errors import EnrichmentFailure
from neuroclear.models import Enrichment, EnrichmentState, ProcessRecord
from neuroclear.service import LookupService

log = structlog.get_logger()

FALLBACK_TEXT = "details unavailable"


class EnrichmentCache:
    """Memoized, single-flight lookups keyed by record id."""

    def __init__(
        self,
        service: LookupService,
        on_settled: Callable[[str, Enrichment], None] | None = None,
    ) -> None:
        """Initialize the cache.

        Args:
            service: Lookup backend, called with the record's name
            on_settled: Optional callback invoked with (record_id, enrichment)
                        when a lookup finishes for a record still tracked
        """
        self._service = service
        self._on_settled = on_settled
        self._states: dict[str, Enrichment] = {}
        self._inflight: dict[str, asyncio.Task[Enrichment]] = {}
        self.lookups_started = 0

    def state(self, record_id: str) -> Enrichment:
        """Current enrichment for a record id."""
        return self._states.get(record_id, Enrichment())

    def is_pending(self, record_id: str) -> bool:
        return record_id in self._inflight

    def request(
        self, record: ProcessRecord, retry: bool = False
    ) -> asyncio.Task[Enrichment] | None:
        """Start (or join) the lookup for a record.

        Must be called from a running event loop.

        Args:
            record: Record to enrich; its ``name`` is the lookup key
            retry: Allow a new attempt for a record whose lookup failed

        Returns:
            The in-flight task, or None if the record is already settled.
        """
        existing = self._inflight.get(record.id)
        if existing is not None:
            return existing

        current = self._states.get(record.id, record.enrichment)
        if current.state is EnrichmentState.DONE:
            return None
        if current.state is EnrichmentState.FAILED and not retry:
            return None

        self._states[record.id] = Enrichment(state=EnrichmentState.PENDING)
        self.lookups_started += 1
        log.info("lookup_started", record_id=record.id, name=record.name)
        task = asyncio.get_running_loop().create_task(self._run(record.id, record.name))
        self._inflight[record.id] = task
        return task

    async def _run(self, record_id: str, name: str) -> Enrichment:
        try:
            text = await self._service.lookup(name)
            result = Enrichment(state=EnrichmentState.DONE, text=text)
        except EnrichmentFailure as e:
            log.warning("lookup_failed", record_id=record_id, name=name, error=str(e))
            result = Enrichment(state=EnrichmentState.FAILED, text=FALLBACK_TEXT)
        except Exception as e:
            log.warning(
                "lookup_failed",
                record_id=record_id,
                name=name,
                error=f"{type(e).__name__}: {e}",
            )
            result = Enrichment(state=EnrichmentState.FAILED, text=FALLBACK_TEXT)
        finally:
            self._inflight.pop(record_id, None)

        # Record was forgotten (terminated) while the lookup was in flight
        if record_id not in self._states:
            log.debug("lookup_discarded", record_id=record_id)
            return result

        self._states[record_id] = result
        if self._on_settled:
            self._on_settled(record_id, result)
        return result

    def forget(self, record_ids: Iterable[str]) -> None:
        """Drop state for removed records. Late results for them are discarded."""
        for record_id in record_ids:
            self._states.pop(record_id, None)

    async def wait_idle(self) -> None:
        """Wait for every in-flight lookup to settle."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)
