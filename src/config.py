"""Engine configuration.

Configuration is loaded from a single stackops.yaml:

    state_dir: /var/lib/stackops
    max_workers: 4
    native_timeout: 300
    callback_timeout: 3600
    sweep_interval: 5
    drift_interval: 0
    callback:
      bind: 0.0.0.0
      port: 44480
      public_url: https://engine.example:44480/callback
      cert: /etc/stackops/tls.crt
      key: /etc/stackops/tls.key
      require_token: true
      admin_token: s3cret
    providers:
      "Local::File": {kind: local-file, root: /srv/files}
      "Mem::*": {kind: memory, replacement_properties: [Name]}
    custom_types:
      "Custom::Database": {replacement_properties: [Engine]}

Resolution order (first hit wins):
1. $STACKOPS_CONFIG file
2. $STACKOPS_HOME/stackops.yaml
3. ./stackops.yaml
4. /usr/local/etc/stackops/stackops.yaml

Without a file, defaults apply.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from engine.gateway import MAX_CALLBACK_TIMEOUT

logger = logging.getLogger(__name__)

CONFIG_FILENAME = 'stackops.yaml'
FHS_CONFIG = Path('/usr/local/etc/stackops') / CONFIG_FILENAME
DEFAULT_CALLBACK_PORT = 44480


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class CallbackConfig:
    """Callback endpoint settings."""
    bind: str = '127.0.0.1'
    port: int = DEFAULT_CALLBACK_PORT
    public_url: str = ''
    cert: Optional[Path] = None
    key: Optional[Path] = None
    require_token: bool = True
    admin_token: str = ''

    @property
    def tls(self) -> bool:
        return self.cert is not None and self.key is not None

    @property
    def response_url(self) -> str:
        """URL custom providers post callbacks to."""
        if self.public_url:
            return self.public_url
        scheme = 'https' if self.tls else 'http'
        host = 'localhost' if self.bind in ('0.0.0.0', '::') else self.bind
        return f'{scheme}://{host}:{self.port}/callback'


@dataclass
class EngineConfig:
    """Engine settings.

    Attributes:
        state_dir: Root of stack records, journals and leases
        max_workers: Worker pool size per batch
        native_timeout: Seconds a native provider call may take
        callback_timeout: Custom provider deadline (clamped to MAX_CALLBACK_TIMEOUT)
        sweep_interval: Seconds between callback deadline sweeps
        drift_interval: Seconds between drift checks (0 disables the monitor)
        callback: Callback endpoint settings
        providers: Type pattern -> provider settings
        custom_types: Custom type -> replacement settings
        source: File the config was loaded from, if any
    """
    state_dir: Path = field(default_factory=lambda: Path.home() / '.stackops')
    max_workers: int = 4
    native_timeout: float = 300.0
    callback_timeout: float = float(MAX_CALLBACK_TIMEOUT)
    sweep_interval: float = 5.0
    drift_interval: float = 0.0
    callback: CallbackConfig = field(default_factory=CallbackConfig)
    providers: dict = field(default_factory=lambda: {'Mem::*': {'kind': 'memory'}})
    custom_types: dict = field(default_factory=dict)
    source: Optional[Path] = None

    @classmethod
    def from_dict(cls, data: dict, source: Optional[Path] = None) -> 'EngineConfig':
        """Build a config from parsed YAML.

        Raises:
            ConfigError: If a value has the wrong type or range
        """
        if not isinstance(data, dict):
            raise ConfigError(f"{source or 'config'}: top level must be a mapping")

        config = cls(source=source)
        if 'state_dir' in data:
            config.state_dir = Path(os.path.expanduser(str(data['state_dir'])))
        config.max_workers = _positive(data, 'max_workers', config.max_workers, int)
        config.native_timeout = _positive(data, 'native_timeout', config.native_timeout, float)
        config.sweep_interval = _positive(data, 'sweep_interval', config.sweep_interval, float)
        config.callback_timeout = _positive(data, 'callback_timeout', config.callback_timeout, float)
        if config.callback_timeout > MAX_CALLBACK_TIMEOUT:
            logger.warning(
                f"callback_timeout {config.callback_timeout:.0f}s exceeds maximum; "
                f"clamped to {MAX_CALLBACK_TIMEOUT}s"
            )
            config.callback_timeout = float(MAX_CALLBACK_TIMEOUT)
        drift = data.get('drift_interval', 0)
        if not isinstance(drift, (int, float)) or drift < 0:
            raise ConfigError(f"drift_interval must be a non-negative number, got {drift!r}")
        config.drift_interval = float(drift)

        callback = data.get('callback') or {}
        if not isinstance(callback, dict):
            raise ConfigError("callback must be a mapping")
        config.callback = CallbackConfig(
            bind=str(callback.get('bind', config.callback.bind)),
            port=_positive(callback, 'port', config.callback.port, int),
            public_url=str(callback.get('public_url', '')),
            cert=Path(callback['cert']) if callback.get('cert') else None,
            key=Path(callback['key']) if callback.get('key') else None,
            require_token=bool(callback.get('require_token', True)),
            admin_token=str(callback.get('admin_token', '')),
        )
        if (config.callback.cert is None) != (config.callback.key is None):
            raise ConfigError("callback.cert and callback.key must be set together")

        if 'providers' in data:
            providers = data['providers'] or {}
            if not isinstance(providers, dict):
                raise ConfigError("providers must be a mapping of type pattern to settings")
            for pattern, spec in providers.items():
                if not isinstance(spec, dict) or spec.get('kind') not in ('memory', 'local-file'):
                    raise ConfigError(f"providers.{pattern}: kind must be 'memory' or 'local-file'")
            config.providers = providers

        custom_types = data.get('custom_types') or {}
        if not isinstance(custom_types, dict):
            raise ConfigError("custom_types must be a mapping")
        config.custom_types = custom_types
        return config


def _positive(data: dict, key: str, default: Any, kind: type) -> Any:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{key} must be a positive number, got {value!r}")
    return kind(value)


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")


def find_config_file() -> Optional[Path]:
    """Discover stackops.yaml.

    Raises:
        ConfigError: If $STACKOPS_CONFIG names a missing file
    """
    if env_path := os.environ.get('STACKOPS_CONFIG'):
        path = Path(env_path)
        if path.is_file():
            return path
        raise ConfigError(f"STACKOPS_CONFIG={env_path} does not exist")

    if home := os.environ.get('STACKOPS_HOME'):
        path = Path(home) / CONFIG_FILENAME
        if path.is_file():
            return path

    local = Path.cwd() / CONFIG_FILENAME
    if local.is_file():
        return local

    if FHS_CONFIG.is_file():
        return FHS_CONFIG
    return None


def load_config(path: Optional[Path] = None) -> EngineConfig:
    """Load engine configuration.

    Args:
        path: Explicit config file (skips discovery)

    Raises:
        ConfigError: If the file is missing or invalid
    """
    if path is None:
        path = find_config_file()
        if path is None:
            logger.debug("No stackops.yaml found, using defaults")
            config = EngineConfig()
            if home := os.environ.get('STACKOPS_HOME'):
                config.state_dir = Path(home) / 'state'
            return config
    elif not Path(path).is_file():
        raise ConfigError(f"Config file not found: {path}")

    logger.debug(f"Loading config from {path}")
    return EngineConfig.from_dict(_parse_yaml(Path(path)), source=Path(path))
