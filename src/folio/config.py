"""Configuration loader: YAML file with environment variable fallbacks."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class BackendConfig:
    base_url: str
    api_key: str
    verify_ssl: bool = True
    connect_timeout: float = 10.0  # seconds
    request_timeout: float = 60.0  # seconds; non-streaming calls only


@dataclass
class ReconcilerConfig:
    viewer_ready_timeout: float = 5.0
    viewer_poll_interval: float = 0.1
    validation_grace_seconds: float = 3.0
    ack_mode: str = "batch"  # "batch" or "single"
    status_flush_interval: float = 0.1
    status_max_pending: int = 25


@dataclass
class LibraryConfig:
    library_id: int = 1


@dataclass
class AppSettings:
    host: str = "127.0.0.1"
    port: int = 8765
    data_dir: Path = field(default_factory=lambda: Path.home() / ".folio")


@dataclass
class AppConfig:
    backend: BackendConfig
    reconciler: ReconcilerConfig = field(default_factory=ReconcilerConfig)
    library: LibraryConfig = field(default_factory=LibraryConfig)
    app: AppSettings = field(default_factory=AppSettings)


_ACK_MODES = ("batch", "single")


def _default_data_dir() -> Path:
    return Path.home() / ".folio"


def _get_config_path(data_dir: Path | None = None) -> Path:
    return (data_dir or _default_data_dir()) / "config.yaml"


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name, {})
    return value if isinstance(value, dict) else {}


def _clamped_float(section: dict[str, Any], key: str, env: str, default: float, lo: float, hi: float) -> float:
    try:
        val = float(section.get(key, os.environ.get(env, default)))
    except (ValueError, TypeError):
        val = default
    return max(lo, min(val, hi))


def _clamped_int(section: dict[str, Any], key: str, env: str, default: int, lo: int, hi: int) -> int:
    try:
        val = int(section.get(key, os.environ.get(env, default)))
    except (ValueError, TypeError):
        val = default
    return max(lo, min(val, hi))


def _is_true(value: Any) -> bool:
    return str(value).lower() not in ("false", "0", "no")


def load_config(config_path: Path | None = None) -> AppConfig:
    raw: dict[str, Any] = {}
    path = config_path or _get_config_path()

    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}

    backend_raw = _section(raw, "backend")
    base_url = backend_raw.get("base_url") or os.environ.get("FOLIO_BASE_URL", "")
    api_key = backend_raw.get("api_key") or os.environ.get("FOLIO_API_KEY", "")

    if not base_url:
        raise ValueError(
            f"Backend base_url is required. Set 'backend.base_url' in config.yaml ({path}) "
            "or FOLIO_BASE_URL environment variable."
        )
    if not api_key:
        raise ValueError(
            f"Backend api_key is required. Set 'backend.api_key' in config.yaml ({path}) "
            "or FOLIO_API_KEY environment variable."
        )

    backend = BackendConfig(
        base_url=str(base_url).rstrip("/"),
        api_key=str(api_key),
        verify_ssl=_is_true(backend_raw.get("verify_ssl", os.environ.get("FOLIO_VERIFY_SSL", "true"))),
        connect_timeout=_clamped_float(backend_raw, "connect_timeout", "FOLIO_CONNECT_TIMEOUT", 10.0, 1.0, 120.0),
        request_timeout=_clamped_float(backend_raw, "request_timeout", "FOLIO_REQUEST_TIMEOUT", 60.0, 5.0, 600.0),
    )

    rec_raw = _section(raw, "reconciler")
    ack_mode = str(rec_raw.get("ack_mode", os.environ.get("FOLIO_ACK_MODE", "batch"))).lower()
    if ack_mode not in _ACK_MODES:
        ack_mode = "batch"

    reconciler = ReconcilerConfig(
        viewer_ready_timeout=_clamped_float(
            rec_raw, "viewer_ready_timeout", "FOLIO_VIEWER_READY_TIMEOUT", 5.0, 0.5, 60.0
        ),
        viewer_poll_interval=_clamped_float(
            rec_raw, "viewer_poll_interval", "FOLIO_VIEWER_POLL_INTERVAL", 0.1, 0.01, 5.0
        ),
        validation_grace_seconds=_clamped_float(
            rec_raw, "validation_grace_seconds", "FOLIO_VALIDATION_GRACE_SECONDS", 3.0, 0.0, 60.0
        ),
        ack_mode=ack_mode,
        status_flush_interval=_clamped_float(
            rec_raw, "status_flush_interval", "FOLIO_STATUS_FLUSH_INTERVAL", 0.1, 0.01, 10.0
        ),
        status_max_pending=_clamped_int(rec_raw, "status_max_pending", "FOLIO_STATUS_MAX_PENDING", 25, 1, 500),
    )

    lib_raw = _section(raw, "library")
    library = LibraryConfig(
        library_id=_clamped_int(lib_raw, "library_id", "FOLIO_LIBRARY_ID", 1, 1, 2**31 - 1),
    )

    app_raw = _section(raw, "app")
    data_dir = Path(os.path.expanduser(app_raw.get("data_dir", os.environ.get("FOLIO_DATA_DIR", str(_default_data_dir())))))
    app_settings = AppSettings(
        host=app_raw.get("host", os.environ.get("FOLIO_HOST", "127.0.0.1")),
        port=_clamped_int(app_raw, "port", "FOLIO_PORT", 8765, 1, 65535),
        data_dir=data_dir,
    )

    return AppConfig(backend=backend, reconciler=reconciler, library=library, app=app_settings)


def ensure_data_dir(settings: AppSettings) -> Path:
    """Create the data directory (0700) if it is missing and return it."""
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    try:
        os.chmod(settings.data_dir, 0o700)
    except OSError:
        pass
    return settings.data_dir
