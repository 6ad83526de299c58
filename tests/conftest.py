"""Shared test fixtures for neuroclear."""

import asyncio
from collections.abc import Sequence

import pytest
import structlog

from neuroclear.errors import EnrichmentFailure
from neuroclear.models import (
    Category,
    Classification,
    ClassificationRequest,
    ClassificationResult,
    ProcessRecord,
    RiskLevel,
    ScanMode,
)


@pytest.fixture(autouse=True)
def captured_logs():
    """Collect structlog events instead of printing them."""
    with structlog.testing.capture_logs() as logs:
        yield logs


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep config and log files out of the real home directory."""
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("API_KEY", raising=False)
    return tmp_path


def make_record(
    id: str = "proc-1",
    name: str = "test.exe",
    pid: int = 1000,
    memory_mb: float = 100.0,
    cpu_percent: float = 0.0,
    classification: Classification | None = None,
) -> ProcessRecord:
    """Create a ProcessRecord for testing."""
    return ProcessRecord(
        id=id,
        name=name,
        pid=pid,
        memory_mb=memory_mb,
        cpu_percent=cpu_percent,
        classification=classification,
    )


def make_result(
    name: str = "test.exe",
    category: Category = Category.USER,
    safe_to_kill: bool = True,
    risk_level: RiskLevel = RiskLevel.LOW,
    description: str = "A test process",
    reasoning: str | None = None,
    ref: str | None = None,
) -> ClassificationResult:
    """Create a ClassificationResult for testing."""
    return ClassificationResult(
        name=name,
        category=category,
        safe_to_kill=safe_to_kill,
        risk_level=risk_level,
        description=description,
        reasoning=reasoning,
        ref=ref,
    )


def make_entry(**overrides) -> dict:
    """Create one raw response entry as the service would return it."""
    entry = {
        "ref": "p0",
        "name": "test.exe",
        "description": "A test process",
        "category": "User",
        "safeToKill": True,
        "riskLevel": "Low",
        "reasoning": "Launched by the user",
    }
    entry.update(overrides)
    return entry


class FakeClassifier:
    """Classification service that replays canned results.

    ``results`` may be a list (returned as-is), a callable taking the batch,
    or an exception instance (raised). Set ``gate`` to an asyncio.Event to
    hold the call open until the test releases it.
    """

    def __init__(self, results=None, gate: asyncio.Event | None = None) -> None:
        self.results = results if results is not None else []
        self.gate = gate
        self.calls: list[tuple[list[ClassificationRequest], ScanMode]] = []

    async def classify(
        self, batch: Sequence[ClassificationRequest], mode: ScanMode
    ) -> list[ClassificationResult]:
        self.calls.append((list(batch), mode))
        if self.gate is not None:
            await self.gate.wait()
        if isinstance(self.results, BaseException):
            raise self.results
        if callable(self.results):
            return self.results(batch)
        return list(self.results)


class FakeLookup:
    """Lookup service that counts calls and optionally fails or blocks."""

    def __init__(
        self,
        text: str = "A harmless helper process.",
        fail: bool = False,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.text = text
        self.fail = fail
        self.gate = gate
        self.calls: list[str] = []

    async def lookup(self, name: str) -> str:
        self.calls.append(name)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise EnrichmentFailure("lookup unavailable")
        return self.text


@pytest.fixture
def scenario_records() -> list[ProcessRecord]:
    """One critical, one bloatware and one user process."""
    return [
        make_record(id="proc-1", name="A.exe", memory_mb=200.0),
        make_record(id="proc-2", name="B.exe", memory_mb=50.0),
        make_record(id="proc-3", name="C.exe", memory_mb=300.0),
    ]


@pytest.fixture
def scenario_results() -> list[ClassificationResult]:
    return [
        make_result(
            name="A.exe",
            category=Category.SYSTEM,
            safe_to_kill=False,
            risk_level=RiskLevel.CRITICAL,
            ref="p0",
        ),
        make_result(
            name="B.exe",
            category=Category.BLOATWARE,
            safe_to_kill=True,
            risk_level=RiskLevel.LOW,
            ref="p1",
        ),
        make_result(
            name="C.exe",
            category=Category.USER,
            safe_to_kill=True,
            risk_level=RiskLevel.MEDIUM,
            ref="p2",
        ),
    ]
