"""
Worker configuration

Built once at start-up from the environment, optionally layered over a YAML
file, and handed to the worker.

Example YAML::

    nats_url: nats://nats:4222
    stream_name: tasks
    topic_name: tasks.grype
    result_topic_name: tasks.grype.results
    consumer_name: grype-worker
    heartbeat_interval: 15
"""

import os
import tempfile
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from .errors import ConfigError

# Environment variable -> field
ENV_VARS = {
    'NATS_URL': 'nats_url',
    'NATS_STREAM_NAME': 'stream_name',
    'NATS_TOPIC_NAME': 'topic_name',
    'NATS_RESULT_TOPIC_NAME': 'result_topic_name',
    'NATS_CONSUMER': 'consumer_name',
    'SCANNER_BINARY': 'scanner_binary',
    'SCANNER_FORMAT': 'scanner_format',
    'HEARTBEAT_INTERVAL': 'heartbeat_interval',
    'FETCH_TIMEOUT': 'fetch_timeout',
    'WORKDIR_ROOT': 'workdir_root',
    'KEEP_OCI_MANIFEST': 'keep_oci_manifest',
    'CLEANUP_INTERMEDIATE': 'cleanup_intermediate',
    'LOG_LEVEL': 'log_level',
}

REQUIRED = ('nats_url', 'stream_name', 'topic_name', 'result_topic_name', 'consumer_name')


@dataclass(frozen=True)
class WorkerConfig:
    nats_url: str = ''
    stream_name: str = ''
    topic_name: str = ''
    result_topic_name: str = ''
    consumer_name: str = ''
    scanner_binary: str = 'grype'
    scanner_format: str = 'json'
    heartbeat_interval: float = 15.0
    fetch_timeout: float = 5.0
    workdir_root: str = ''
    keep_oci_manifest: bool = True
    cleanup_intermediate: bool = True
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None,
                 base: Optional['WorkerConfig'] = None) -> 'WorkerConfig':
        """
        Read configuration from environment variables

        Args:
            environ: Environment mapping (default: os.environ)
            base: Values used where a variable is unset (default: field defaults)

        Returns:
            Validated WorkerConfig

        Raises:
            ConfigError: If a required setting is missing or a value is malformed
        """
        environ = os.environ if environ is None else environ
        overrides = {
            field_name: environ[var]
            for var, field_name in ENV_VARS.items()
            if environ.get(var, '') != ''
        }
        config = replace(base or cls(), **_coerce(overrides))
        config.validate()
        return config

    @classmethod
    def from_file(cls, path: Union[str, Path], environ: Optional[Mapping[str, str]] = None) -> 'WorkerConfig':
        """
        Read a YAML config file, then apply environment overrides

        Raises:
            ConfigError: If the file cannot be read, has unknown keys, or the result is incomplete
        """
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"failed to load config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"config file {path} must contain a mapping")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"unknown config keys in {path}: {', '.join(unknown)}")

        return cls.from_env(environ, base=cls(**_coerce(data)))

    def validate(self) -> None:
        missing = [name for name in REQUIRED if not getattr(self, name)]
        if missing:
            names = ', '.join(var for var, name in ENV_VARS.items() if name in missing)
            raise ConfigError(f"missing required configuration: {names}")
        if self.heartbeat_interval <= 0:
            raise ConfigError('heartbeat_interval must be positive')
        if self.fetch_timeout <= 0:
            raise ConfigError('fetch_timeout must be positive')

    @property
    def workdir(self) -> str:
        return self.workdir_root or tempfile.gettempdir()


def _coerce(values: Dict[str, Any]) -> Dict[str, Any]:
    """Convert raw string/YAML values to each field's type"""
    types = {f.name: f.type for f in fields(WorkerConfig)}
    result = {}
    for name, value in values.items():
        kind = types.get(name)
        try:
            if kind in (bool, 'bool'):
                result[name] = _to_bool(value)
            elif kind in (float, 'float'):
                result[name] = float(value)
            else:
                result[name] = str(value)
        except ValueError as e:
            raise ConfigError(f"invalid value for {name}: {value!r}") from e
    return result


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ('1', 'true', 'yes', 'on'):
        return True
    if text in ('0', 'false', 'no', 'off'):
        return False
    raise ValueError(value)
