"""
Configuration management and loading.

Handles application settings from a YAML file and environment variables.
Credentials are never read from the file; clients pick them up from the
environment when they are constructed.
"""

import os
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import yaml

from arr_report.errors import ConfigurationMissingError


class StoreKind(Enum):
    """Snapshot store backends."""
    SQLITE = "sqlite"
    JSON = "json"


@dataclass(frozen=True)
class SyncConfig:
    """Ledger synchronization settings."""
    store: StoreKind = StoreKind.SQLITE
    path: str = ".arr-report.db"
    snapshot_key: str = "ledger-sync-snapshot"
    max_history_days: int = 800
    freshness_seconds: int = 900
    max_records_per_run: int = 120
    default_lookback_days: int = 730

    def __post_init__(self):
        """Validate sync limits are positive."""
        if self.max_history_days <= 0:
            raise ValueError("max_history_days must be > 0")
        if self.freshness_seconds < 0:
            raise ValueError("freshness_seconds must be >= 0")
        if self.max_records_per_run <= 0:
            raise ValueError("max_records_per_run must be > 0")
        if self.default_lookback_days <= 0:
            raise ValueError("default_lookback_days must be > 0")
        if not self.path:
            raise ValueError("path must not be empty")


@dataclass(frozen=True)
class ReportConfig:
    """Report generation settings."""
    target_currency: str = "USD"
    cache_ttl_seconds: int = 300
    auto_sync: bool = False

    def __post_init__(self):
        if len(self.target_currency.strip()) != 3:
            raise ValueError("target_currency must be a 3-letter ISO code")
        if self.cache_ttl_seconds < 0:
            raise ValueError("cache_ttl_seconds must be >= 0")


@dataclass(frozen=True)
class CrmConfig:
    """CRM settings: deal stage, fan-out limits and property names."""
    included_dealstage: Optional[str] = None
    cache_ttl_seconds: int = 120
    association_concurrency: int = 4
    batch_concurrency: int = 2
    territory_property: str = "territory"
    country_property: str = "country"
    industry_property: str = "industry"
    current_arr_property: str = "current_arr"
    current_carr_property: str = "current_carr"

    def __post_init__(self):
        if self.cache_ttl_seconds < 0:
            raise ValueError("cache_ttl_seconds must be >= 0")
        if self.association_concurrency <= 0:
            raise ValueError("association_concurrency must be > 0")
        if self.batch_concurrency <= 0:
            raise ValueError("batch_concurrency must be > 0")

    def require_stage(self) -> str:
        """The configured deal stage.

        Raises:
            ConfigurationMissingError: If no stage is configured
        """
        if not self.included_dealstage:
            raise ConfigurationMissingError("ARR_INCLUDED_DEALSTAGE")
        return self.included_dealstage

    def deal_property_names(self) -> Dict[str, str]:
        return {
            "territory": self.territory_property,
            "country": self.country_property,
            "industry": self.industry_property,
        }


@dataclass(frozen=True)
class LedgerConfig:
    """Billing-ledger settings."""
    invoice_status: str = "paid"
    line_concurrency: int = 4

    def __post_init__(self):
        if self.line_concurrency <= 0:
            raise ValueError("line_concurrency must be > 0")


@dataclass(frozen=True)
class Settings:
    """Complete application configuration."""
    sync: SyncConfig = field(default_factory=SyncConfig)
    report: ReportConfig = field(default_factory=ReportConfig)
    crm: CrmConfig = field(default_factory=CrmConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)

    @classmethod
    def from_env(
        cls, environ: Optional[Mapping[str, str]] = None, base: Optional["Settings"] = None
    ) -> "Settings":
        """Layer environment variables over ``base`` (defaults if None).

        Raises:
            ValueError: If a variable holds an invalid value
        """
        env = os.environ if environ is None else environ
        settings = base or cls()
        overrides: Dict[str, Dict[str, Any]] = {}
        for name, (section, key, parse) in ENV_OVERRIDES.items():
            raw = env.get(name)
            if raw is None or raw == "":
                continue
            try:
                value = parse(raw)
            except ValueError:
                raise ValueError(f"Invalid value for {name}: {raw!r}")
            overrides.setdefault(section, {})[key] = value

        changes = {
            section: replace(getattr(settings, section), **values)
            for section, values in overrides.items()
        }
        return replace(settings, **changes)


def _parse_bool(raw: str) -> bool:
    text = raw.strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ValueError(raw)


ENV_OVERRIDES: Dict[str, Tuple[str, str, Callable[[str], Any]]] = {
    "ARR_INCLUDED_DEALSTAGE": ("crm", "included_dealstage", str.strip),
    "ARR_TARGET_CURRENCY": ("report", "target_currency", lambda v: v.strip().upper()),
    "ARR_REPORT_CACHE_TTL_SECONDS": ("report", "cache_ttl_seconds", int),
    "ARR_REPORT_AUTO_SYNC": ("report", "auto_sync", _parse_bool),
    "ARR_SYNC_STORE": ("sync", "store", lambda v: StoreKind(v.strip().lower())),
    "ARR_SYNC_STORE_PATH": ("sync", "path", str.strip),
    "ARR_SYNC_MAX_HISTORY_DAYS": ("sync", "max_history_days", int),
    "ARR_SYNC_FRESHNESS_SECONDS": ("sync", "freshness_seconds", int),
    "ARR_SYNC_MAX_RECORDS_PER_RUN": ("sync", "max_records_per_run", int),
    "ARR_CURRENT_ARR_PROPERTY": ("crm", "current_arr_property", str.strip),
    "ARR_CURRENT_CARR_PROPERTY": ("crm", "current_carr_property", str.strip),
    "ARR_LEDGER_INVOICE_STATUS": ("ledger", "invoice_status", str.strip),
}


def load_settings(path: str) -> Settings:
    """Load and validate settings from a YAML file.

    Every section is optional and missing keys take their defaults, but
    unknown keys and wrongly typed values are rejected so a typo never
    silently falls back to a default.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    sections = {
        'sync': SyncConfig,
        'report': ReportConfig,
        'crm': CrmConfig,
        'ledger': LedgerConfig,
    }
    unknown_keys = set(raw_config.keys()) - set(sections)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    parsed = {}
    for name, section_cls in sections.items():
        data = raw_config.get(name)
        if data is None:
            continue
        if not isinstance(data, dict):
            raise ValueError(f"'{name}' must be a dictionary")
        parsed[name] = _parse_section(section_cls, data, name)

    return Settings(**parsed)


def _parse_section(section_cls, data: Dict, path: str):
    """Parse and validate one configuration section.

    Args:
        section_cls: Frozen dataclass describing the section
        data: Raw section mapping
        path: Path for error messages

    Returns:
        Validated section instance

    Raises:
        ValueError: If the section is invalid
    """
    declared = {f.name: f for f in fields(section_cls)}
    unknown_keys = set(data.keys()) - set(declared)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    values = {}
    for key, raw in data.items():
        default = declared[key].default
        values[key] = _coerce(raw, default, f"{path}.{key}")

    try:
        return section_cls(**values)
    except ValueError as e:
        raise ValueError(f"Invalid {path}: {e}")


def _coerce(raw: Any, default: Any, path: str) -> Any:
    """Check ``raw`` against the type of the field's default."""
    if isinstance(default, Enum):
        if not isinstance(raw, str):
            raise ValueError(f"'{path}' must be a string")
        try:
            return type(default)(raw.lower())
        except ValueError:
            valid = [member.value for member in type(default)]
            raise ValueError(f"'{path}' must be one of: {valid}")
    if isinstance(default, bool):
        if not isinstance(raw, bool):
            raise ValueError(f"'{path}' must be a boolean")
        return raw
    if isinstance(default, int):
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise ValueError(f"'{path}' must be an integer")
        return raw
    # Strings; included_dealstage may also be null.
    if raw is None and default is None:
        return None
    if isinstance(raw, (int, float)) and not isinstance(raw, bool) and default is None:
        return str(raw)
    if not isinstance(raw, str):
        raise ValueError(f"'{path}' must be a string")
    return raw
