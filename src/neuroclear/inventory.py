# src/neuroclear/inventory.py
"""Inventory sources.

Both sources materialize ProcessRecords with ids from an IdAllocator, so ids
are assigned exactly once and never reused within a session. Records are
ordered by memory, largest first, which is the order the batch splitter
sees.
"""

from __future__ import annotations

import itertools
import random
from collections.abc import Iterable

import psutil
import structlog

from neuroclear.config import DEFAULT_PROTECTED_NAMES, InventoryConfig
from neuroclear.models import Category, Classification, ProcessRecord, RiskLevel

log = structlog.get_logger()

MOCK_SYSTEM_PROCESSES = [
    "svchost.exe",
    "System",
    "Registry",
    "smss.exe",
    "csrss.exe",
    "wininit.exe",
    "services.exe",
    "lsass.exe",
    "explorer.exe",
    "Memory Compression",
    "spoolsv.exe",
    "RuntimeBroker.exe",
]

MOCK_USER_APPS = [
    "chrome.exe",
    "spotify.exe",
    "discord.exe",
    "code.exe",
    "steam.exe",
    "slack.exe",
    "obs64.exe",
    "firefox.exe",
    "msedge.exe",
]

MOCK_BLOATWARE = [
    "AdobeUpdateService.exe",
    "GoogleCrashHandler.exe",
    "OneDrive.exe",
    "Cortana.exe",
    "YourPhone.exe",
    "GameBar.exe",
    "SkypeApp.exe",
    "Teams.exe",
    "DropboxUpdate.exe",
]

# Browsers run several renderer processes under the same image name
MULTI_INSTANCE_MARKERS = ("chrome", "edge")

BLOATWARE_PRESENCE = 0.7

BYTES_PER_MB = 1024 * 1024


class IdAllocator:
    """Hands out ``proc-N`` ids. A given allocator never repeats an id."""

    def __init__(self, prefix: str = "proc", start: int = 1) -> None:
        self._prefix = prefix
        self._counter = itertools.count(start)

    def next_id(self) -> str:
        return f"{self._prefix}-{next(self._counter)}"


def protected_classification() -> Classification:
    """Classification given to protected system processes at materialization."""
    return Classification(
        category=Category.SYSTEM,
        safe_to_kill=False,
        risk_level=RiskLevel.CRITICAL,
        description="Windows System Process",
    )


def _sort_by_memory(records: Iterable[ProcessRecord]) -> list[ProcessRecord]:
    return sorted(records, key=lambda r: r.memory_mb, reverse=True)


def mock_inventory(
    seed: int | None = None,
    protected_names: Iterable[str] = DEFAULT_PROTECTED_NAMES,
    ids: IdAllocator | None = None,
) -> list[ProcessRecord]:
    """Generate a plausible Windows process list.

    Args:
        seed: Seed for reproducible output; None for a random list
        protected_names: Names pre-classified as critical system processes
        ids: Id allocator; a fresh one is used if omitted

    Returns:
        Records sorted by memory, largest first.
    """
    rng = random.Random(seed)
    ids = ids or IdAllocator()
    protected = set(protected_names)
    records: list[ProcessRecord] = []

    for name in MOCK_SYSTEM_PROCESSES:
        if name == "svchost.exe":
            memory = rng.randint(50, 849)
        else:
            memory = rng.randint(10, 209)
        records.append(
            ProcessRecord(
                id=ids.next_id(),
                name=name,
                pid=rng.randint(100, 5099),
                memory_mb=float(memory),
                cpu_percent=round(rng.uniform(0, 2), 2),
                classification=protected_classification() if name in protected else None,
            )
        )

    for name in MOCK_USER_APPS:
        if any(marker in name for marker in MULTI_INSTANCE_MARKERS):
            count = rng.randint(2, 7)
        else:
            count = 1
        for _ in range(count):
            records.append(
                ProcessRecord(
                    id=ids.next_id(),
                    name=name,
                    pid=rng.randint(5000, 24999),
                    memory_mb=float(rng.randint(100, 1599)),
                    cpu_percent=round(rng.uniform(0, 15), 2),
                )
            )

    for name in MOCK_BLOATWARE:
        if rng.random() < BLOATWARE_PRESENCE:
            records.append(
                ProcessRecord(
                    id=ids.next_id(),
                    name=name,
                    pid=rng.randint(5000, 24999),
                    memory_mb=float(rng.randint(20, 319)),
                    cpu_percent=0.0,
                )
            )

    return _sort_by_memory(records)


def live_inventory(
    min_memory_mb: float = 20.0,
    max_processes: int = 200,
    protected_names: Iterable[str] = DEFAULT_PROTECTED_NAMES,
    ids: IdAllocator | None = None,
) -> list[ProcessRecord]:
    """Snapshot running processes with psutil.

    Processes that exit mid-iteration, deny access, or are zombies are
    skipped. Processes below ``min_memory_mb`` RSS are dropped.

    Returns:
        At most ``max_processes`` records sorted by memory, largest first.
    """
    ids = ids or IdAllocator()
    protected = set(protected_names)
    candidates: list[tuple[str, int, float, float]] = []

    for proc in psutil.process_iter(attrs=["pid", "name", "memory_info", "cpu_percent"]):
        try:
            info = proc.info
            mem_info = info.get("memory_info")
            memory_mb = mem_info.rss / BYTES_PER_MB if mem_info else 0.0
            if memory_mb < min_memory_mb:
                continue
            candidates.append(
                (
                    info.get("name") or "",
                    info.get("pid", 0),
                    round(memory_mb, 1),
                    info.get("cpu_percent") or 0.0,
                )
            )
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue

    candidates.sort(key=lambda c: c[2], reverse=True)
    records = [
        ProcessRecord(
            id=ids.next_id(),
            name=name,
            pid=pid,
            memory_mb=memory_mb,
            cpu_percent=cpu,
            classification=protected_classification() if name in protected else None,
        )
        for name, pid, memory_mb, cpu in candidates[:max_processes]
    ]
    log.info("live_inventory", count=len(records), skipped=len(candidates) - len(records))
    return records


def load_inventory(config: InventoryConfig, source: str | None = None) -> list[ProcessRecord]:
    """Materialize the inventory from the configured source."""
    source = source or config.source
    if source == "live":
        return live_inventory(
            min_memory_mb=config.min_memory_mb,
            max_processes=config.max_processes,
            protected_names=config.protected_names,
        )
    if source == "mock":
        return mock_inventory(seed=config.seed, protected_names=config.protected_names)
    raise ValueError(f"Unknown inventory source: {source!r}")
