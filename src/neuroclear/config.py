"""Configuration system for neuroclear."""

import os
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit

from neuroclear.models import ScanMode

# Windows processes that must never be offered for termination
DEFAULT_PROTECTED_NAMES = [
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
    "Taskmgr.exe",
    "spoolsv.exe",
    "RuntimeBroker.exe",
    "winlogon.exe",
    "fontdrvhost.exe",
    "dwm.exe",
]

VALID_SOURCES = {"mock", "live"}


@dataclass
class ScanConfig:
    """Batch classification configuration."""

    batch_size: int = 15  # Records submitted per scan; the rest pass through
    default_mode: str = "quick"  # "quick" or "deep"
    total_memory_gb: float = 32.0  # Capacity used for memory stats

    @property
    def mode(self) -> ScanMode:
        return ScanMode.parse(self.default_mode)


@dataclass
class ServiceConfig:
    """Classification service (Gemini) configuration."""

    api_key_env: str = "GEMINI_API_KEY"
    fallback_api_key_env: str = "API_KEY"
    quick_model: str = "gemini-2.5-flash"
    deep_model: str = "gemini-2.5-pro"
    lookup_model: str = "gemini-2.5-flash"
    max_sources: int = 2  # Source links appended to lookup text
    request_timeout: float = 60.0  # Seconds

    def resolve_api_key(self) -> str | None:
        """Return the API key from the environment, or None if unset."""
        for name in (self.api_key_env, self.fallback_api_key_env):
            value = os.environ.get(name, "").strip()
            if value:
                return value
        return None


@dataclass
class InventoryConfig:
    """Inventory source configuration."""

    source: str = "mock"  # "mock" or "live"
    min_memory_mb: float = 20.0  # Live source skips smaller processes
    max_processes: int = 200  # Live source cap
    seed: int | None = None  # Mock generator seed (None = random)
    protected_names: list[str] = field(default_factory=lambda: list(DEFAULT_PROTECTED_NAMES))


@dataclass
class SystemConfig:
    """Logging configuration."""

    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


# =============================================================================
# TUI Color Configuration
# =============================================================================


@dataclass
class RiskColors:
    """Colors for the risk column.

    Default palette: Dracula theme.
    """

    low: str = "#50fa7b"  # Dracula green
    medium: str = "#f1fa8c"  # Dracula yellow
    high: str = "#ffb86c"  # Dracula orange
    critical: str = "#ff5555"  # Dracula red
    unknown: str = "dim"


@dataclass
class CategoryColors:
    """Colors for the category column."""

    system: str = "#ff5555"
    user: str = "#8be9fd"
    background: str = "#bd93f9"
    bloatware: str = "#f1fa8c"
    unknown: str = "dim"


@dataclass
class TUIColorsConfig:
    """All TUI color configurations grouped together."""

    risk: RiskColors = field(default_factory=RiskColors)
    categories: CategoryColors = field(default_factory=CategoryColors)


@dataclass
class TUIConfig:
    """TUI-specific configuration."""

    colors: TUIColorsConfig = field(default_factory=TUIColorsConfig)
    name_truncate_length: int = 28
    gauge_elevated_percent: float = 60.0  # Gauge turns yellow above this
    gauge_critical_percent: float = 85.0  # Gauge turns red above this


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively.

    None values are skipped since TOML has no null.
    """
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if value is None:
            continue
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Main configuration container."""

    scan: ScanConfig = field(default_factory=ScanConfig)
    service: ServiceConfig = field(default_factory=ServiceConfig)
    inventory: InventoryConfig = field(default_factory=InventoryConfig)
    system: SystemConfig = field(default_factory=SystemConfig)
    tui: TUIConfig = field(default_factory=TUIConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "neuroclear"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "neuroclear"

    @property
    def log_path(self) -> Path:
        """JSON log path."""
        return self.state_dir / "neuroclear.log"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("scan", "service", "inventory", "system", "tui"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        return cls(
            scan=_load_scan_config(_get_table(data, "scan")),
            service=_load_service_config(_get_table(data, "service")),
            inventory=_load_inventory_config(_get_table(data, "inventory")),
            system=_load_system_config(_get_table(data, "system")),
            tui=_load_tui_config(_get_table(data, "tui")),
        )


def _get_table(data: dict, key: str) -> dict:
    value = data.get(key, {})
    if not isinstance(value, dict):
        raise ValueError(f"[{key}] must be a table, got {value!r}")
    return value


def _get_int(data: dict, key: str, default: int) -> int:
    """Read an integer field, rejecting other TOML types."""
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer, got {value!r}")
    return value


def _get_number(data: dict, key: str, default: float) -> float:
    """Read an int or float field as float."""
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number, got {value!r}")
    return float(value)


def _get_str(data: dict, key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string, got {value!r}")
    return value


def _load_scan_config(data: dict) -> ScanConfig:
    """Load scan config from TOML data, using dataclass defaults for missing fields."""
    defaults = ScanConfig()

    batch_size = _get_int(data, "batch_size", defaults.batch_size)
    default_mode = _get_str(data, "default_mode", defaults.default_mode)
    total_memory_gb = _get_number(data, "total_memory_gb", defaults.total_memory_gb)

    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    if total_memory_gb <= 0:
        raise ValueError(f"total_memory_gb must be > 0, got {total_memory_gb}")
    ScanMode.parse(default_mode)

    return ScanConfig(
        batch_size=batch_size,
        default_mode=default_mode,
        total_memory_gb=total_memory_gb,
    )


def _load_service_config(data: dict) -> ServiceConfig:
    """Load service config from TOML data."""
    d = ServiceConfig()

    max_sources = _get_int(data, "max_sources", d.max_sources)
    request_timeout = _get_number(data, "request_timeout", d.request_timeout)

    if max_sources < 0:
        raise ValueError(f"max_sources must be >= 0, got {max_sources}")
    if request_timeout <= 0:
        raise ValueError(f"request_timeout must be > 0, got {request_timeout}")

    return ServiceConfig(
        api_key_env=_get_str(data, "api_key_env", d.api_key_env),
        fallback_api_key_env=_get_str(data, "fallback_api_key_env", d.fallback_api_key_env),
        quick_model=_get_str(data, "quick_model", d.quick_model),
        deep_model=_get_str(data, "deep_model", d.deep_model),
        lookup_model=_get_str(data, "lookup_model", d.lookup_model),
        max_sources=max_sources,
        request_timeout=request_timeout,
    )


def _load_inventory_config(data: dict) -> InventoryConfig:
    """Load inventory config from TOML data."""
    d = InventoryConfig()

    source = _get_str(data, "source", d.source)
    min_memory_mb = _get_number(data, "min_memory_mb", d.min_memory_mb)
    max_processes = _get_int(data, "max_processes", d.max_processes)
    seed = data.get("seed", d.seed)
    protected_names = data.get("protected_names", d.protected_names)

    if source not in VALID_SOURCES:
        raise ValueError(f"Invalid source: {source!r}. Must be one of {VALID_SOURCES}")
    if min_memory_mb < 0:
        raise ValueError(f"min_memory_mb must be >= 0, got {min_memory_mb}")
    if max_processes < 1:
        raise ValueError(f"max_processes must be >= 1, got {max_processes}")
    if seed is not None and (isinstance(seed, bool) or not isinstance(seed, int)):
        raise ValueError(f"seed must be an integer, got {seed!r}")
    if not isinstance(protected_names, list):
        raise ValueError(f"protected_names must be a list, got {protected_names!r}")

    return InventoryConfig(
        source=source,
        min_memory_mb=min_memory_mb,
        max_processes=max_processes,
        seed=seed,
        protected_names=[str(n) for n in protected_names],
    )


def _load_system_config(data: dict) -> SystemConfig:
    """Load system config from TOML data."""
    d = SystemConfig()
    return SystemConfig(
        log_max_bytes=_get_int(data, "log_max_bytes", d.log_max_bytes),
        log_backup_count=_get_int(data, "log_backup_count", d.log_backup_count),
    )


def _load_tui_config(data: dict) -> TUIConfig:
    """Load TUI config from TOML data.

    Handles nested [tui.colors.*] sections with defaults.
    """
    tui_defaults = TUIConfig()
    colors_data = _get_table(data, "colors")
    risk_data = _get_table(colors_data, "risk")
    categories_data = _get_table(colors_data, "categories")

    r = RiskColors()
    c = CategoryColors()

    return TUIConfig(
        colors=TUIColorsConfig(
            risk=RiskColors(
                low=risk_data.get("low", r.low),
                medium=risk_data.get("medium", r.medium),
                high=risk_data.get("high", r.high),
                critical=risk_data.get("critical", r.critical),
                unknown=risk_data.get("unknown", r.unknown),
            ),
            categories=CategoryColors(
                system=categories_data.get("system", c.system),
                user=categories_data.get("user", c.user),
                background=categories_data.get("background", c.background),
                bloatware=categories_data.get("bloatware", c.bloatware),
                unknown=categories_data.get("unknown", c.unknown),
            ),
        ),
        name_truncate_length=_get_int(
            data, "name_truncate_length", tui_defaults.name_truncate_length
        ),
        gauge_elevated_percent=_get_number(
            data, "gauge_elevated_percent", tui_defaults.gauge_elevated_percent
        ),
        gauge_critical_percent=_get_number(
            data, "gauge_critical_percent", tui_defaults.gauge_critical_percent
        ),
    )
