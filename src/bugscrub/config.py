"""YAML/dict config loader for bugscrub.

Supports loading from a YAML file or a plain dict (for embedding in a
larger application config).

Example YAML:

    bugscrub:
      endpoint: https://bugs.example.com
      auth:
        type: api-key            # api-key | bearer | custom | none
        api_key: bs_live_123
      pii_patterns: all          # preset name or list of pattern names
      custom_patterns:
        - name: employee_id
          regex: "EMP-\\d{6}"
          priority: 95
      redaction_tokens:
        email: "[EMAIL]"
      duplicate_window_hours: 24
      max_attempts: 5
      backoff_base_ms: 1000
      backoff_max_ms: 30000
      direct_upload_enabled: true
      compression_enabled: true
      storage:
        backend: sqlite          # "memory" or "sqlite"
        path: ~/.bugscrub/queue.db
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import httpx

from .errors import ConfigError
from .image import MODES
from .patterns import PatternRegistry, custom_detector, resolve_names, validate_pattern
from .redactor import DEFAULT_TOKEN, TextSanitizer
from .storage import MemoryStorage, SqliteStorage, Storage
from .transport import ApiKeyAuth, BearerAuth, HeaderAuth


@dataclass
class PipelineConfig:
    """Normalized configuration consumed by the pipeline."""
    endpoint: str = ""
    auth: dict[str, Any] = field(default_factory=lambda: {"type": "none"})
    pii_patterns: str | list[str] = "all"
    custom_patterns: list[dict[str, Any]] = field(default_factory=list)
    redaction_tokens: dict[str, str] = field(default_factory=dict)
    default_token: str = DEFAULT_TOKEN
    use_presidio: bool = False
    duplicate_window_hours: float = 24.0
    max_attempts: int = 5
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 30000
    direct_upload_enabled: bool = True
    compression_enabled: bool = True
    inline_limit_bytes: int = 256 * 1024
    image_mode: str = "fill"
    storage_backend: str = "memory"
    storage_path: str = "~/.bugscrub/queue.db"
    max_queue_size: int | None = None
    timeout: float = 30.0


def _positive(data: dict[str, Any], key: str, default: Any, cast: Callable[[Any], Any]) -> Any:
    raw = data.get(key, default)
    try:
        value = cast(raw)
    except (TypeError, ValueError):
        raise ConfigError(key, f"expected a number, got {raw!r}") from None
    if value <= 0:
        raise ConfigError(key, f"must be positive, got {value!r}")
    return value


def load_config(data: dict[str, Any]) -> PipelineConfig:
    """Normalize and validate a config dict (from YAML or inline)."""
    # Support nested under "bugscrub" key or flat
    if "bugscrub" in data:
        data = data["bugscrub"] or {}

    auth = dict(data.get("auth") or {"type": "none"})
    if auth.get("type", "none") not in ("api-key", "bearer", "jwt", "custom", "none"):
        raise ConfigError("auth.type", f"unknown auth type {auth.get('type')!r}")

    patterns = data.get("pii_patterns", "all")
    resolve_names(patterns)     # raises ConfigError on unknown names

    custom = list(data.get("custom_patterns", []))
    for pat in custom:
        problems = validate_pattern(pat.get("name", ""), pat.get("regex", ""), pat.get("priority", 0))
        if problems:
            raise ConfigError("custom_patterns", f"{pat.get('name')!r}: {'; '.join(problems)}")

    image_mode = data.get("image_mode", "fill")
    if image_mode not in MODES:
        raise ConfigError("image_mode", f"must be one of {MODES}")

    storage = data.get("storage") or {}
    backend = storage.get("backend", "memory")
    if backend not in ("memory", "sqlite"):
        raise ConfigError("storage.backend", f"unknown backend {backend!r}")

    base_ms = _positive(data, "backoff_base_ms", 1000, int)
    max_ms = _positive(data, "backoff_max_ms", 30000, int)
    if max_ms < base_ms:
        raise ConfigError("backoff_max_ms", "must be >= backoff_base_ms")

    max_queue_size = data.get("max_queue_size")
    if max_queue_size is not None:
        max_queue_size = _positive(data, "max_queue_size", None, int)

    return PipelineConfig(
        endpoint=data.get("endpoint", ""),
        auth=auth,
        pii_patterns=patterns,
        custom_patterns=custom,
        redaction_tokens=dict(data.get("redaction_tokens", {})),
        default_token=data.get("default_token", DEFAULT_TOKEN),
        use_presidio=bool(data.get("use_presidio", False)),
        duplicate_window_hours=_positive(data, "duplicate_window_hours", 24.0, float),
        max_attempts=_positive(data, "max_attempts", 5, int),
        backoff_base_ms=base_ms,
        backoff_max_ms=max_ms,
        direct_upload_enabled=bool(data.get("direct_upload_enabled", True)),
        compression_enabled=bool(data.get("compression_enabled", True)),
        inline_limit_bytes=_positive(data, "inline_limit_bytes", 256 * 1024, int),
        image_mode=image_mode,
        storage_backend=backend,
        storage_path=storage.get("path", "~/.bugscrub/queue.db"),
        max_queue_size=max_queue_size,
        timeout=_positive(data, "timeout", 30.0, float),
    )


def load_from_yaml(path: str | Path) -> PipelineConfig:
    """Load config from a YAML file."""
    import yaml
    with open(path) as f:
        return load_config(yaml.safe_load(f) or {})


def build_registry(config: PipelineConfig) -> PatternRegistry:
    customs = [
        custom_detector(
            pat["name"], pat["regex"],
            kind=pat.get("kind"),
            priority=pat.get("priority", 0),
            confidence=pat.get("confidence", 0.9),
            group=pat.get("group", 0),
        )
        for pat in config.custom_patterns
    ]
    registry = PatternRegistry.from_config(config.pii_patterns, customs)
    if config.use_presidio:
        from .presidio_layer import PresidioDetector
        registry.register(PresidioDetector())
    return registry


def build_sanitizer(config: PipelineConfig) -> TextSanitizer:
    return TextSanitizer(
        build_registry(config),
        tokens=config.redaction_tokens,
        default_token=config.default_token,
    )


def build_auth(config: PipelineConfig) -> httpx.Auth | None:
    auth = config.auth
    kind = auth.get("type", "none")
    if kind == "api-key":
        if not auth.get("api_key"):
            raise ConfigError("auth.api_key", "required for api-key auth")
        return ApiKeyAuth(auth["api_key"], header=auth.get("header", "X-API-Key"))
    if kind in ("bearer", "jwt"):
        if not auth.get("token"):
            raise ConfigError("auth.token", "required for bearer auth")
        return BearerAuth(auth["token"], refresh=auth.get("refresh"))
    if kind == "custom":
        headers = auth.get("headers") or {}
        if not headers:
            raise ConfigError("auth.headers", "required for custom auth")
        return HeaderAuth(headers)
    return None


def build_storage(config: PipelineConfig) -> Storage:
    if config.storage_backend == "sqlite":
        return SqliteStorage(config.storage_path)
    return MemoryStorage()
