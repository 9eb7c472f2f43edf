"""
Configuration for stratum.

Settings live in a config.yaml file next to the store (or wherever --config
points). Every key is optional; missing keys fall back to the defaults below.

Example config.yaml:

    database: /var/lib/netvisor/store.sqlite
    busy_timeout_ms: 5000
    backups:
      enabled: true
      keep: 5
    backfill:
      email_domain: example.com
    reshape:
      network_subnet_ids: reset   # or: preserve
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .errors import ConfigError

DEFAULT_BASE_PATH = Path.home() / ".stratum"
DEFAULT_DB_PATH = DEFAULT_BASE_PATH / "store.sqlite"
DEFAULT_CONFIG_PATH = DEFAULT_BASE_PATH / "config.yaml"

NIL_UUID = "00000000-0000-0000-0000-000000000000"

SUBNET_POLICIES = ("reset", "preserve")


@dataclass
class BackupConfig:
    """Pre-migration snapshot settings"""
    enabled: bool = True
    directory: Optional[Path] = None  # default: {db dir}/backups
    keep: int = 5


@dataclass
class ReconcileConfig:
    """Legacy principal merge settings"""
    # Seed display names replaced by default_display_name
    display_placeholder_names: List[str] = field(default_factory=lambda: ["", "Name"])
    # Seed names that never become the handle
    placeholder_names: List[str] = field(default_factory=lambda: ["", "Name", "default"])
    default_display_name: str = "Name"
    default_handle: str = "default"


@dataclass
class BackfillConfig:
    """Email backfill settings"""
    email_domain: str = "example.com"
    fallback_local_part: str = "user"
    batch_size: int = 500

    @property
    def fallback_email(self) -> str:
        return f"{self.fallback_local_part}@{self.email_domain}"


@dataclass
class ReshapeConfig:
    """Embedded discovery record reshape settings"""
    tables: List[str] = field(default_factory=lambda: ["services", "hosts", "subnets", "groups"])
    nil_host_id: str = NIL_UUID
    # 'reset' drops legacy Network subnet associations, 'preserve' keeps them
    network_subnet_ids: str = "reset"


@dataclass
class MigrateConfig:
    """Top-level stratum configuration"""
    database: Path = DEFAULT_DB_PATH
    busy_timeout_ms: int = 5000
    backups: BackupConfig = field(default_factory=BackupConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    backfill: BackfillConfig = field(default_factory=BackfillConfig)
    reshape: ReshapeConfig = field(default_factory=ReshapeConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrateConfig":
        """Build a config from a parsed config.yaml mapping.

        Unknown keys are ignored so newer config files keep working with
        older releases.

        Raises:
            ConfigError: If a value has the wrong type or an invalid choice
        """
        if not isinstance(data, dict):
            raise ConfigError(f"config root must be a mapping, got {type(data).__name__}")

        config = cls()
        if "database" in data:
            config.database = Path(_expect(data, "database", str))
        if "busy_timeout_ms" in data:
            config.busy_timeout_ms = _expect(data, "busy_timeout_ms", int)

        backups = _section(data, "backups")
        if "enabled" in backups:
            config.backups.enabled = _expect(backups, "enabled", bool, "backups")
        if "directory" in backups and backups["directory"] is not None:
            config.backups.directory = Path(_expect(backups, "directory", str, "backups"))
        if "keep" in backups:
            config.backups.keep = _expect(backups, "keep", int, "backups")

        reconcile = _section(data, "reconcile")
        if "display_placeholder_names" in reconcile:
            names = _expect(reconcile, "display_placeholder_names", list, "reconcile")
            config.reconcile.display_placeholder_names = [str(n) for n in names]
        if "placeholder_names" in reconcile:
            names = _expect(reconcile, "placeholder_names", list, "reconcile")
            config.reconcile.placeholder_names = [str(n) for n in names]
        if "default_display_name" in reconcile:
            config.reconcile.default_display_name = _expect(reconcile, "default_display_name", str, "reconcile")
        if "default_handle" in reconcile:
            config.reconcile.default_handle = _expect(reconcile, "default_handle", str, "reconcile")

        backfill = _section(data, "backfill")
        if "email_domain" in backfill:
            config.backfill.email_domain = _expect(backfill, "email_domain", str, "backfill")
        if "fallback_local_part" in backfill:
            config.backfill.fallback_local_part = _expect(backfill, "fallback_local_part", str, "backfill")
        if "batch_size" in backfill:
            config.backfill.batch_size = _expect(backfill, "batch_size", int, "backfill")

        reshape = _section(data, "reshape")
        if "tables" in reshape:
            config.reshape.tables = [str(t) for t in _expect(reshape, "tables", list, "reshape")]
        if "nil_host_id" in reshape:
            config.reshape.nil_host_id = _expect(reshape, "nil_host_id", str, "reshape")
        if "network_subnet_ids" in reshape:
            config.reshape.network_subnet_ids = _expect(reshape, "network_subnet_ids", str, "reshape")

        config.validate()
        return config

    def validate(self) -> None:
        """Check value ranges that the type checks in from_dict cannot."""
        if self.busy_timeout_ms < 0:
            raise ConfigError(f"busy_timeout_ms must be >= 0, got {self.busy_timeout_ms}")
        if self.backups.keep < 1:
            raise ConfigError(f"backups.keep must be >= 1, got {self.backups.keep}")
        if self.backfill.batch_size < 1:
            raise ConfigError(f"backfill.batch_size must be >= 1, got {self.backfill.batch_size}")
        if "@" in self.backfill.email_domain or not self.backfill.email_domain:
            raise ConfigError(f"backfill.email_domain is not a domain: {self.backfill.email_domain!r}")
        if self.reshape.network_subnet_ids not in SUBNET_POLICIES:
            raise ConfigError(
                f"reshape.network_subnet_ids must be one of {', '.join(SUBNET_POLICIES)}, "
                f"got {self.reshape.network_subnet_ids!r}"
            )


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{name}' must be a mapping, got {type(section).__name__}")
    return section


def _expect(data: Dict[str, Any], key: str, kind: type, section: Optional[str] = None) -> Any:
    value = data[key]
    # bool is an int subclass; keep 'keep: true' from passing as 1
    if kind is int and isinstance(value, bool) or not isinstance(value, kind):
        name = f"{section}.{key}" if section else key
        raise ConfigError(f"'{name}' must be {kind.__name__}, got {type(value).__name__}")
    return value


def load_config(config_path: Optional[Union[str, Path]] = None) -> MigrateConfig:
    """Load configuration from config.yaml.

    Priority for the file location: explicit argument > STRATUM_CONFIG env var
    > ~/.stratum/config.yaml. A missing file yields the defaults. The
    STRATUM_DB env var, when set, overrides the database path from the file.

    Raises:
        ConfigError: If the file is not valid YAML or holds invalid values
    """
    if config_path is None:
        env_path = os.getenv("STRATUM_CONFIG")
        config_path = Path(env_path) if env_path else DEFAULT_CONFIG_PATH
    config_path = Path(config_path)

    if config_path.exists():
        try:
            data = yaml.safe_load(config_path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse {config_path}: {e}") from e
        config = MigrateConfig.from_dict(data)
    else:
        config = MigrateConfig()

    env_db = os.getenv("STRATUM_DB")
    if env_db:
        config.database = Path(env_db)

    return config
