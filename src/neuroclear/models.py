# src/neuroclear/models.py
"""Process records, classifications and derived stats.

Records are immutable values. The engine replaces a record wholesale when
its classification or enrichment changes, so a snapshot handed to the
presentation layer can never be modified underneath it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Category(Enum):
    """Classification category returned by the service."""

    SYSTEM = "System"
    USER = "User"
    BACKGROUND = "Background"
    BLOATWARE = "Bloatware"
    UNKNOWN = "Unknown"


class RiskLevel(Enum):
    """Risk of terminating a process. Absent means unknown."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class ScanMode(Enum):
    """Classification request profile."""

    QUICK = "quick"
    DEEP = "deep"

    @classmethod
    def parse(cls, value: str) -> ScanMode:
        """Parse a config/CLI string into a ScanMode."""
        if not isinstance(value, str):
            raise ValueError(f"Invalid scan mode: {value!r}. Must be a string")
        try:
            return cls(value.lower())
        except ValueError:
            valid = [m.value for m in cls]
            raise ValueError(f"Invalid scan mode: {value!r}. Must be one of {valid}") from None


# Categories eligible for automatic selection after a scan
AUTO_SELECT_CATEGORIES = frozenset({Category.BLOATWARE, Category.BACKGROUND})


@dataclass(slots=True, frozen=True)
class Classification:
    """Complete classification for one record.

    A record either has one of these or none at all; fields are never
    written individually.
    """

    category: Category
    safe_to_kill: bool | None = None
    risk_level: RiskLevel | None = None
    description: str | None = None
    reasoning: str | None = None

    @classmethod
    def unmatched(cls) -> Classification:
        """Classification for a batch record the service did not cover."""
        return cls(category=Category.UNKNOWN, safe_to_kill=False)

    @property
    def is_auto_selectable(self) -> bool:
        return (
            self.safe_to_kill is True
            and self.category in AUTO_SELECT_CATEGORIES
            and self.risk_level is not RiskLevel.CRITICAL
        )


class EnrichmentState(Enum):
    """Lifecycle of a per-record deep-dive lookup."""

    NOT_ATTEMPTED = "not_attempted"
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class Enrichment:
    """Supplementary, non-authoritative description text for a record."""

    state: EnrichmentState = EnrichmentState.NOT_ATTEMPTED
    text: str | None = None

    @property
    def settled(self) -> bool:
        """True once a lookup has finished, successfully or not."""
        return self.state in (EnrichmentState.DONE, EnrichmentState.FAILED)


@dataclass(slots=True, frozen=True)
class ProcessRecord:
    """One observed process.

    ``id`` is the only identity. ``name`` repeats across instances of the
    same executable and ``pid`` is informational.
    """

    id: str
    name: str
    pid: int
    memory_mb: float
    cpu_percent: float
    classification: Classification | None = None
    enrichment: Enrichment = field(default_factory=Enrichment)

    def __post_init__(self) -> None:
        if self.memory_mb < 0:
            raise ValueError(f"memory_mb must be >= 0, got {self.memory_mb}")
        if self.cpu_percent < 0:
            raise ValueError(f"cpu_percent must be >= 0, got {self.cpu_percent}")

    @property
    def category(self) -> Category | None:
        return self.classification.category if self.classification else None

    @property
    def risk_level(self) -> RiskLevel | None:
        return self.classification.risk_level if self.classification else None

    @property
    def safe_to_kill(self) -> bool | None:
        return self.classification.safe_to_kill if self.classification else None

    @property
    def description(self) -> str | None:
        return self.classification.description if self.classification else None

    @property
    def is_critical(self) -> bool:
        return self.risk_level is RiskLevel.CRITICAL

    @property
    def needs_enrichment(self) -> bool:
        """True if expanding this row should trigger a lookup."""
        return not self.description


@dataclass(slots=True, frozen=True)
class SystemStats:
    """Memory statistics derived from the inventory."""

    total_memory_gb: float
    used_memory_gb: float
    used_percent: float
    process_count: int

    @classmethod
    def from_records(
        cls, records: tuple[ProcessRecord, ...] | list[ProcessRecord], total_memory_gb: float
    ) -> SystemStats:
        """Recompute stats from records and the configured capacity."""
        used_gb = sum(r.memory_mb for r in records) / 1024
        percent = (used_gb / total_memory_gb) * 100 if total_memory_gb > 0 else 0.0
        return cls(
            total_memory_gb=total_memory_gb,
            used_memory_gb=used_gb,
            used_percent=percent,
            process_count=len(records),
        )


@dataclass(slots=True, frozen=True)
class ClassificationRequest:
    """One entry of a batch sent to the classification service."""

    ref: str
    name: str
    memory_mb: float

    @property
    def memory_summary(self) -> str:
        return f"{self.memory_mb:g}MB"


@dataclass(slots=True, frozen=True)
class ClassificationResult:
    """One entry returned by the classification service."""

    name: str
    category: Category
    safe_to_kill: bool
    risk_level: RiskLevel
    description: str
    reasoning: str | None = None
    ref: str | None = None

    def to_classification(self) -> Classification:
        return Classification(
            category=self.category,
            safe_to_kill=self.safe_to_kill,
            risk_level=self.risk_level,
            description=self.description,
            reasoning=self.reasoning,
        )
