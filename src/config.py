"""Engine settings management.

Settings are merged from several sources, later sources winning:
1. Built-in defaults (EngineSettings field defaults)
2. Settings file: $RECONCILE_SETTINGS, else ./reconcile.yaml if present
3. The 'settings:' block of the configuration being applied
4. Environment: RECONCILE_STATE, RECONCILE_WORKERS, RECONCILE_TIMEOUT,
   RECONCILE_LOCK_TIMEOUT
5. CLI flags (applied by the caller via EngineSettings.merge)
"""

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Optional

import yaml

SETTINGS_FILE = 'reconcile.yaml'

ENV_OVERRIDES = {
    'RECONCILE_STATE': 'state_path',
    'RECONCILE_WORKERS': 'workers',
    'RECONCILE_TIMEOUT': 'timeout',
    'RECONCILE_LOCK_TIMEOUT': 'lock_timeout',
}


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class EngineSettings:
    """Run settings for plan/apply/destroy.

    Attributes:
        state_path: State document location (None = derive from configuration)
        workers: Max concurrent provider operations on independent resources
        timeout: Per-operation timeout in seconds (None = no limit)
        lock_timeout: Seconds to wait for the state lock before failing
        create_before_destroy: Replacement order when the provider kind
            does not declare one
    """
    state_path: Optional[Path] = None
    workers: int = 1
    timeout: Optional[float] = None
    lock_timeout: float = 0.0
    create_before_destroy: bool = False

    def __post_init__(self):
        if isinstance(self.state_path, str):
            self.state_path = Path(self.state_path)
        self.validate()

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigError: If any setting is out of range
        """
        if not isinstance(self.workers, int) or isinstance(self.workers, bool) or self.workers < 1:
            raise ConfigError(f"workers must be a positive integer, got {self.workers!r}")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigError(f"timeout must be positive, got {self.timeout!r}")
        if self.lock_timeout < 0:
            raise ConfigError(f"lock_timeout must not be negative, got {self.lock_timeout!r}")

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'EngineSettings':
        """Create EngineSettings from dictionary."""
        return cls().merge(data)

    def merge(self, data: Optional[dict]) -> 'EngineSettings':
        """Return a copy with values from data applied.

        Keys with value None are ignored so unset CLI flags don't clobber
        lower-priority sources.

        Raises:
            ConfigError: On unknown keys or invalid values
        """
        if not data:
            return replace(self)
        known = {f.name for f in fields(self)}
        updates: dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                raise ConfigError(f"Unknown setting '{key}'. Known settings: {', '.join(sorted(known))}")
            if value is not None:
                updates[key] = _coerce(key, value)
        return replace(self, **updates)


def _coerce(key: str, value: Any) -> Any:
    """Coerce a raw (possibly string) setting value to its field type."""
    try:
        if key == 'state_path':
            return Path(value)
        if key == 'workers':
            if isinstance(value, bool):
                raise ValueError(value)
            return int(value)
        if key in ('timeout', 'lock_timeout'):
            return float(value)
        if key == 'create_before_destroy':
            if isinstance(value, str):
                return value.strip().lower() in ('1', 'true', 'yes', 'on')
            return bool(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid value for setting '{key}': {value!r}")
    return value


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def get_base_dir() -> Path:
    """Get the directory relative state paths are resolved against."""
    return Path.cwd()


def get_settings_file() -> Optional[Path]:
    """Discover the settings file.

    Resolution order:
    1. $RECONCILE_SETTINGS environment variable (must exist)
    2. ./reconcile.yaml in the working directory
    """
    if env_path := os.environ.get('RECONCILE_SETTINGS'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"RECONCILE_SETTINGS={env_path} does not exist")

    local = get_base_dir() / SETTINGS_FILE
    if local.exists():
        return local
    return None


def env_overrides() -> dict:
    """Collect settings overrides from RECONCILE_* environment variables."""
    overrides = {}
    for var, key in ENV_OVERRIDES.items():
        if (value := os.environ.get(var)) not in (None, ''):
            overrides[key] = value
    return overrides


def load_settings(
    settings_file: Optional[Path] = None,
    configuration_settings: Optional[dict] = None,
    cli_overrides: Optional[dict] = None,
) -> EngineSettings:
    """Resolve EngineSettings from all sources.

    Args:
        settings_file: Explicit settings file (skips discovery)
        configuration_settings: The 'settings:' block of a configuration
        cli_overrides: Values from command-line flags (None = unset)

    Raises:
        ConfigError: On unreadable files, unknown keys or invalid values
    """
    settings = EngineSettings()

    path = settings_file or get_settings_file()
    if path is not None:
        settings = settings.merge(_parse_yaml(Path(path)).get('settings', {}))

    settings = settings.merge(configuration_settings)
    settings = settings.merge(env_overrides())
    return settings.merge(cli_overrides)


def default_state_path(configuration_name: str, base_dir: Optional[Path] = None) -> Path:
    """State location for a configuration: .states/{name}/state.json."""
    return (base_dir or get_base_dir()) / '.states' / configuration_name / 'state.json'
