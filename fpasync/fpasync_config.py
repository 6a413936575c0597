from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from fpasync.fpasync_serialize import deserialize

DEFAULT_TERMINOLOGY_SERVER = "https://tx.fhir.org/r4"
DEFAULT_MAX_ITERATIONS = 10

_TRUE = ('1', 'true', 'yes', 'on')


def _env_flag(value: Optional[str]) -> bool:
    return (value or '').strip().lower() in _TRUE


@dataclass
class Settings:
    """Runtime configuration for an evaluation and its external calls."""
    terminology_server: Optional[str] = DEFAULT_TERMINOLOGY_SERVER
    fhir_server: Optional[str] = None
    timeout: float = 5.0
    retries: int = 2
    backoff: float = 0.2
    headers: Dict[str, str] = field(default_factory=dict)
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    max_concurrency: Optional[int] = None
    debug: bool = False
    model: Optional[str] = None

    def __post_init__(self):
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if self.max_concurrency is not None and self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

    def http_config(self) -> Dict[str, Any]:
        """Transport options in the shape the HTTP helper expects."""
        return {
            'timeout': self.timeout,
            'retries': self.retries,
            'backoff': self.backoff,
            'headers': dict(self.headers),
        }

    def merged(self, **overrides) -> 'Settings':
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> 'Settings':
        known = {f.name for f in fields(cls)}
        # Accept kebab-case keys from config files
        cleaned = {str(k).replace('-', '_'): v for k, v in raw.items()}
        unknown = sorted(set(cleaned) - known)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(unknown)}")
        return cls(**cleaned)

    @classmethod
    def from_file(cls, path: str | os.PathLike) -> 'Settings':
        p = Path(path)
        fmt = 'json' if p.suffix.lower() == '.json' else 'yaml'
        raw = deserialize(p.read_bytes(), fmt=fmt, strict=True) or {}
        if not isinstance(raw, Mapping):
            raise ValueError(f"{p} does not contain a settings mapping")
        return cls.from_mapping(raw)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        """
        Build settings from FPASYNC_* variables. FPASYNC_CONFIG names a YAML/JSON
        file used as the base; individual variables override it.
        """
        env = os.environ if environ is None else environ
        base = cls.from_file(env['FPASYNC_CONFIG']) if env.get('FPASYNC_CONFIG') else cls()
        overrides: Dict[str, Any] = {}
        if 'FPASYNC_TERMINOLOGY_SERVER' in env:
            # An empty value disables memberOf
            overrides['terminology_server'] = env['FPASYNC_TERMINOLOGY_SERVER'] or None
        if env.get('FPASYNC_FHIR_SERVER'):
            overrides['fhir_server'] = env['FPASYNC_FHIR_SERVER']
        if env.get('FPASYNC_TIMEOUT'):
            overrides['timeout'] = float(env['FPASYNC_TIMEOUT'])
        if env.get('FPASYNC_RETRIES'):
            overrides['retries'] = int(env['FPASYNC_RETRIES'])
        if env.get('FPASYNC_MAX_ITERATIONS'):
            overrides['max_iterations'] = int(env['FPASYNC_MAX_ITERATIONS'])
        if env.get('FPASYNC_MAX_CONCURRENCY'):
            overrides['max_concurrency'] = int(env['FPASYNC_MAX_CONCURRENCY'])
        if env.get('FPASYNC_MODEL'):
            overrides['model'] = env['FPASYNC_MODEL']
        if 'FPASYNC_DEBUG' in env:
            overrides['debug'] = _env_flag(env['FPASYNC_DEBUG'])
        return replace(base, **overrides)


def debug_enabled(environ: Optional[Mapping[str, str]] = None) -> bool:
    """Process-wide trace toggle, read once when a driver is built."""
    env = os.environ if environ is None else environ
    return _env_flag(env.get('FPASYNC_DEBUG'))
