"""
Warden configuration.

Loaded from YAML (PyYAML safe_load) or JSON, chosen by file extension, then
overridden by WARDEN_* environment variables. Example:

    state_dir: /var/lib/generation-warden
    trusted_public_key_file: /etc/generation-warden/release.pub
    ledger:
      signing_key_file: /etc/generation-warden/ledger.key
    monitor:
      interval: 60
      deep_scan_interval: 3600
    retention:
      quarantine_cycles: 10
    reload:
      command: systemctl reload myservice
    authorization:
      update_token_sha256: <64 hex>
      quarantine_token_sha256: <64 hex>

SECURITY: unknown keys are rejected rather than ignored, so a misspelled
token or key setting cannot silently leave a scope open.
"""

import json
import logging
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from ..constants import (
    Limits,
    Timeouts,
    _env_override,
    _parse_bool,
    default_config_path,
    default_state_dir,
)
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_HEX64 = re.compile(r'^[0-9a-fA-F]{64}$')


@dataclass
class LedgerSettings:
    signing_key_file: Optional[str] = None
    verify_key: Optional[str] = None          # hex; checks signatures without the private key


@dataclass
class MonitorSettings:
    interval: float = Timeouts.MONITOR_INTERVAL
    deep_scan_interval: Optional[float] = Timeouts.DEEP_SCAN_INTERVAL
    retry_attempts: int = Limits.TRANSIENT_RETRY_ATTEMPTS
    retry_delay: float = Timeouts.TRANSIENT_RETRY_DELAY
    retry_backoff: float = Timeouts.TRANSIENT_RETRY_BACKOFF


@dataclass
class RetentionSettings:
    quarantine_cycles: int = Limits.QUARANTINE_CYCLES
    remove_retired: bool = True
    read_only: bool = True


@dataclass
class ReloadSettings:
    command: Optional[Union[str, List[str]]] = None
    pid_file: Optional[str] = None
    signal: str = 'HUP'
    timeout: float = Timeouts.RELOAD_COMMAND


@dataclass
class AuthorizationSettings:
    update_token_sha256: Optional[str] = None
    quarantine_token_sha256: Optional[str] = None


@dataclass
class LoggingSettings:
    verbose: bool = False
    json: bool = False
    log_file: Optional[str] = None


@dataclass
class WardenConfig:
    """Complete warden configuration."""
    state_dir: str = field(default_factory=default_state_dir)
    trusted_public_key: Optional[str] = None
    trusted_public_key_file: Optional[str] = None
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)
    retention: RetentionSettings = field(default_factory=RetentionSettings)
    reload: ReloadSettings = field(default_factory=ReloadSettings)
    authorization: AuthorizationSettings = field(default_factory=AuthorizationSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    source: Optional[str] = field(default=None, compare=False)

    _SECTIONS = {
        'ledger': LedgerSettings,
        'monitor': MonitorSettings,
        'retention': RetentionSettings,
        'reload': ReloadSettings,
        'authorization': AuthorizationSettings,
        'logging': LoggingSettings,
    }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], source: Optional[str] = None) -> 'WardenConfig':
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration {source or ''} must be a mapping")

        config = cls(source=source)
        for key, value in data.items():
            if key in cls._SECTIONS:
                setattr(config, key, _build_section(cls._SECTIONS[key], key, value))
            elif key in ('state_dir', 'trusted_public_key', 'trusted_public_key_file'):
                if value is not None and not isinstance(value, str):
                    raise ConfigurationError(f"'{key}' must be a string")
                setattr(config, key, value)
            else:
                raise ConfigurationError(f"Unknown configuration key '{key}'")

        config.validate()
        return config

    def validate(self) -> None:
        """Raise ConfigurationError on the first invalid value."""
        if not self.state_dir:
            raise ConfigurationError("state_dir must not be empty")
        if self.trusted_public_key and not _HEX64.match(self.trusted_public_key):
            raise ConfigurationError("trusted_public_key must be 64 hex characters")
        if self.ledger.verify_key and not _HEX64.match(self.ledger.verify_key):
            raise ConfigurationError("ledger.verify_key must be 64 hex characters")

        monitor = self.monitor
        if monitor.interval <= 0:
            raise ConfigurationError("monitor.interval must be positive")
        if monitor.deep_scan_interval is not None and monitor.deep_scan_interval <= 0:
            raise ConfigurationError("monitor.deep_scan_interval must be positive or null")
        if monitor.retry_attempts < 1:
            raise ConfigurationError("monitor.retry_attempts must be at least 1")
        if monitor.retry_delay < 0 or monitor.retry_backoff < 1:
            raise ConfigurationError("monitor.retry_delay must be >= 0 and retry_backoff >= 1")

        if self.retention.quarantine_cycles < 1:
            raise ConfigurationError("retention.quarantine_cycles must be at least 1")

        for name in ('update_token_sha256', 'quarantine_token_sha256'):
            value = getattr(self.authorization, name)
            if value and not _HEX64.match(value):
                raise ConfigurationError(f"authorization.{name} must be a SHA-256 hex digest")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'state_dir': self.state_dir,
            'trusted_public_key': self.trusted_public_key,
            'trusted_public_key_file': self.trusted_public_key_file,
        }
        for name in self._SECTIONS:
            section = getattr(self, name)
            data[name] = {f.name: getattr(section, f.name) for f in fields(section)}
        return data


def _build_section(section_cls, name: str, value: Any):
    if value is None:
        return section_cls()
    if not isinstance(value, dict):
        raise ConfigurationError(f"Section '{name}' must be a mapping")

    known = {f.name: f for f in fields(section_cls)}
    for key in value:
        if key not in known:
            raise ConfigurationError(f"Unknown key '{key}' in section '{name}'")

    defaults = section_cls()
    kwargs = {}
    for key, raw in value.items():
        default = getattr(defaults, key)
        kwargs[key] = _coerce(f"{name}.{key}", raw, default)
    return section_cls(**kwargs)


def _coerce(key: str, raw: Any, default: Any) -> Any:
    """Coerce a value to the type of its default, where the default has one."""
    if raw is None or default is None:
        return raw
    try:
        if isinstance(default, bool):
            if isinstance(raw, bool):
                return raw
            return _parse_bool(str(raw))
        if isinstance(default, int):
            if isinstance(raw, bool):
                raise ValueError("boolean given")
            return int(raw)
        if isinstance(default, float):
            return float(raw)
        if isinstance(default, str) and not isinstance(raw, (str, list)):
            return str(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {key}: {raw!r} ({e})")
    return raw


def _read_file(path: Path) -> Dict[str, Any]:
    try:
        content = path.read_text(encoding='utf-8')
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration {path}: {e}")

    ext = path.suffix.lower()
    try:
        if ext == '.json':
            return json.loads(content) if content.strip() else {}
        return yaml.safe_load(content) or {}
    except (yaml.YAMLError, ValueError) as e:
        raise ConfigurationError(f"Cannot parse configuration {path}: {e}")


def apply_env_overrides(config: WardenConfig) -> WardenConfig:
    """Apply WARDEN_* environment overrides in place."""
    config.state_dir = _env_override('STATE_DIR', config.state_dir)
    config.trusted_public_key = _env_override(
        'TRUSTED_PUBLIC_KEY', config.trusted_public_key,
        validator=lambda v: bool(_HEX64.match(v)),
    )
    config.trusted_public_key_file = _env_override(
        'TRUSTED_PUBLIC_KEY_FILE', config.trusted_public_key_file,
    )
    config.ledger.signing_key_file = _env_override(
        'LEDGER_SIGNING_KEY', config.ledger.signing_key_file,
    )

    config.monitor.interval = _env_override(
        'MONITOR_INTERVAL', config.monitor.interval, float,
        min_value=1.0, max_value=86400.0,
    )
    config.monitor.retry_attempts = _env_override(
        'RETRY_ATTEMPTS', config.monitor.retry_attempts, int,
        min_value=1, max_value=10,
    )
    config.retention.quarantine_cycles = _env_override(
        'QUARANTINE_CYCLES', config.retention.quarantine_cycles, int,
        min_value=1, max_value=100000,
    )
    config.retention.remove_retired = _env_override(
        'REMOVE_RETIRED', config.retention.remove_retired, _parse_bool,
    )
    config.reload.command = _env_override('RELOAD_COMMAND', config.reload.command)

    config.authorization.update_token_sha256 = _env_override(
        'UPDATE_TOKEN_SHA256', config.authorization.update_token_sha256,
        validator=lambda v: bool(_HEX64.match(v)),
    )
    config.authorization.quarantine_token_sha256 = _env_override(
        'QUARANTINE_TOKEN_SHA256', config.authorization.quarantine_token_sha256,
        validator=lambda v: bool(_HEX64.match(v)),
    )
    return config


def load_config(
    path: Optional[Union[str, Path]] = None,
    required: bool = False,
    env: bool = True,
) -> WardenConfig:
    """
    Load configuration from path (default: WARDEN_CONFIG or the system path).

    A missing default config yields built-in defaults; a missing explicit
    or required one is an error.

    Raises:
        ConfigurationError: unreadable, unparsable or invalid configuration
    """
    explicit = path is not None
    config_path = Path(path) if explicit else Path(default_config_path())

    if config_path.exists():
        config = WardenConfig.from_dict(_read_file(config_path), source=str(config_path))
        logger.debug(f"Loaded configuration from {config_path}")
    elif explicit or required:
        raise ConfigurationError(f"Configuration file not found: {config_path}")
    else:
        config = WardenConfig()

    if env:
        apply_env_overrides(config)
        config.validate()
    return config
