"""Application settings.

Defaults live on ``Settings``. A YAML file (``EXPENSEFLOW_CONFIG`` or an
explicit path) overrides them, and ``EXPENSEFLOW_<FIELD>`` environment
variables override both.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

ENV_PREFIX = "EXPENSEFLOW_"


@dataclass(frozen=True)
class Settings:
    database_path: str = "expenseflow.db"
    app_url: str = "http://localhost:8000"
    autosave_delay_seconds: float = 30.0
    request_timeout_seconds: float = 30.0
    session_ttl_seconds: int = 3600
    storage_dir: str = "storage"
    storage_bucket: str = "receipts"
    max_upload_bytes: int = 10 * 1024 * 1024
    allowed_upload_types: tuple[str, ...] = (
        "image/jpeg",
        "image/png",
        "image/heic",
        "application/pdf",
    )
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True
    email_from: str = "noreply@expenseflow.org"
    log_level: str = "INFO"
    log_json: bool = False
    extra: dict[str, Any] = field(default_factory=dict)


def load_settings(path: Path | str | None = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    environ = os.environ if environ is None else environ
    settings = Settings()

    config_path = path or environ.get(f"{ENV_PREFIX}CONFIG")
    if config_path:
        settings = _apply(settings, _load_yaml(Path(config_path)))

    overrides = {}
    for spec in fields(Settings):
        raw = environ.get(f"{ENV_PREFIX}{spec.name.upper()}")
        if raw is not None and spec.name != "extra":
            overrides[spec.name] = raw
    return _apply(settings, overrides)


def _load_yaml(config_path: Path) -> dict[str, Any]:
    with config_path.open("r", encoding="utf-8") as config_file:
        loaded = yaml.safe_load(config_file) or {}

    if not isinstance(loaded, dict):
        msg = f"Config file must contain a dictionary at root: {config_path}"
        raise ValueError(msg)

    return loaded


def _apply(settings: Settings, values: Mapping[str, Any]) -> Settings:
    known = {spec.name: spec for spec in fields(Settings)}
    changes: dict[str, Any] = {}
    extra = dict(settings.extra)
    for key, value in values.items():
        if key not in known or key == "extra":
            extra[key] = value
            continue
        changes[key] = _coerce(getattr(settings, key), value)
    return replace(settings, extra=extra, **changes)


def _coerce(current: Any, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, tuple):
        if isinstance(value, str):
            return tuple(item.strip() for item in value.split(",") if item.strip())
        return tuple(value)
    return value
