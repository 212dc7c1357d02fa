#!/usr/bin/env python3
"""Verification settings.

Settings come from, in increasing precedence:

1. built-in defaults,
2. a YAML file (``--config``),
3. ``IAV_*`` environment variables (``IAV_LIMIT=50``),
4. command-line flags.

Example YAML:

    image: ghcr.io/org/demo:latest
    predicate-type: https://slsa.dev/provenance/v1
    issuer: https://token.actions.githubusercontent.com
    subject: https://github.com/org/demo/.github/workflows/build.yaml@refs/heads/main
    workflow-trigger: push
    signed-timestamps: 1
"""

from __future__ import annotations

import os
import pathlib
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Mapping, Optional

from iav_errors import ConfigError
from iav_policy import DEFAULT_OIDC_ISSUER, VerifierOptions
from iav_registry import DEFAULT_LIMIT, DEFAULT_MAX_BUNDLE_BYTES
from iav_registry import DEFAULT_TIMEOUT as DEFAULT_REGISTRY_TIMEOUT
from iav_trust import DEFAULT_TIMEOUT as DEFAULT_TRUST_TIMEOUT
from iav_trust import GITHUB_TUF_URL

ENV_PREFIX = "IAV_"

_INT_FIELDS = {"limit", "signed_timestamps", "transparency_logs", "max_bundle_bytes", "workers"}
_FLOAT_FIELDS = {"registry_timeout", "trust_timeout"}
_BOOL_FIELDS = {"require_all"}
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass
class VerifyConfig:
    image: str = ""
    predicate_type: str = ""
    limit: int = DEFAULT_LIMIT
    issuer: str = DEFAULT_OIDC_ISSUER
    subject: str = ""
    workflow_trigger: Optional[str] = None
    workflow_name: Optional[str] = None
    workflow_repository: Optional[str] = None
    signed_timestamps: int = 1
    transparency_logs: int = 0
    tuf_url: str = GITHUB_TUF_URL
    tuf_root: Optional[str] = None
    trusted_root: Optional[str] = None
    registry_timeout: float = DEFAULT_REGISTRY_TIMEOUT
    trust_timeout: float = DEFAULT_TRUST_TIMEOUT
    max_bundle_bytes: int = DEFAULT_MAX_BUNDLE_BYTES
    workers: int = 1
    require_all: bool = False

    def verifier_options(self) -> VerifierOptions:
        return VerifierOptions(
            signed_timestamps=self.signed_timestamps,
            transparency_logs=self.transparency_logs,
        )

    def extensions(self) -> Dict[str, Optional[str]]:
        return {
            "workflow_trigger": self.workflow_trigger,
            "workflow_name": self.workflow_name,
            "workflow_repository": self.workflow_repository,
        }

    def validate(self) -> None:
        if not self.image:
            raise ConfigError("An image reference is required")
        if self.limit < 0:
            raise ConfigError("limit must be non-negative", f"Got: {self.limit}")
        if self.workers < 1:
            raise ConfigError("workers must be at least 1", f"Got: {self.workers}")
        if self.max_bundle_bytes <= 0:
            raise ConfigError("max_bundle_bytes must be positive", f"Got: {self.max_bundle_bytes}")
        if self.registry_timeout <= 0 or self.trust_timeout <= 0:
            raise ConfigError("timeouts must be positive")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


FIELD_NAMES = {f.name for f in fields(VerifyConfig)}


# =============================================================================
# Value coercion
# =============================================================================


def _coerce(name: str, value: Any, source: str) -> Any:
    if value is None:
        return None
    try:
        if name in _BOOL_FIELDS:
            if isinstance(value, bool):
                return value
            if isinstance(value, str) and value.strip().lower() in _TRUE | _FALSE:
                return value.strip().lower() in _TRUE
            raise ValueError(f"expected a boolean, got {value!r}")
        if name in _INT_FIELDS:
            if isinstance(value, bool) or isinstance(value, float):
                raise ValueError(f"expected an integer, got {value!r}")
            return int(value)
        if name in _FLOAT_FIELDS:
            if isinstance(value, bool):
                raise ValueError(f"expected a number, got {value!r}")
            return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid value for {name} in {source}", str(exc)) from exc
    if not isinstance(value, str):
        raise ConfigError(f"Invalid value for {name} in {source}", f"expected a string, got {value!r}")
    return value


def _normalize_key(key: str) -> str:
    return key.strip().lower().replace("-", "_")


# =============================================================================
# Sources
# =============================================================================


def load_yaml(path: pathlib.Path) -> Dict[str, Any]:
    import yaml

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {path}", str(exc)) from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {path}", str(exc)) from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    values: Dict[str, Any] = {}
    for key, value in data.items():
        name = _normalize_key(str(key))
        if name not in FIELD_NAMES:
            raise ConfigError(f"Unknown config key in {path}: {key}")
        values[name] = _coerce(name, value, str(path))
    return values


def from_environ(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    values: Dict[str, Any] = {}
    for name in FIELD_NAMES:
        key = ENV_PREFIX + name.upper()
        if key in environ:
            values[name] = _coerce(name, environ[key], key)
    return values


def load_config(
    path: Optional[pathlib.Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> VerifyConfig:
    """Merge defaults, YAML file, environment and explicit overrides."""
    values: Dict[str, Any] = {}
    if path is not None:
        values.update(load_yaml(path))
    values.update(from_environ(environ))
    for key, value in (overrides or {}).items():
        if value is None:
            continue
        name = _normalize_key(key)
        if name not in FIELD_NAMES:
            raise ConfigError(f"Unknown setting: {key}")
        values[name] = _coerce(name, value, "command line")
    return VerifyConfig(**values)
