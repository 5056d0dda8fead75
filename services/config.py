from __future__ import annotations

import logging
import os
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field

ENV_PREFIX = "SENTIMENT_"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

DEFAULT_EMBEDDING_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_SENTIMENT_MODEL = "distilbert-base-uncased-finetuned-sst-2-english"
DEFAULT_REMOTE_ENDPOINT = "https://api.openai.com/v1/chat/completions"
DEFAULT_REMOTE_MODEL = "gpt-4o-mini"


class AnalyzerSettings(BaseModel):
    backend: Literal["local", "remote"] = "local"

    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    sentiment_model: str = DEFAULT_SENTIMENT_MODEL
    device: str | None = None
    encode_batch_size: int = Field(default=64, ge=1, le=1024)

    negation_window_tokens: int = Field(default=3, ge=0, le=10)
    negation_window_chars: int = Field(default=30, ge=0, le=200)
    short_text_damping: float = Field(default=0.7, ge=0.0, le=1.0)
    success_rate_threshold: float = Field(default=0.9, ge=0.0, le=1.0)

    endpoint: str = DEFAULT_REMOTE_ENDPOINT
    api_key: str | None = None
    remote_model: str = DEFAULT_REMOTE_MODEL
    remote_batch_size: int = Field(default=25, ge=1, le=49)
    parallel_batches: int = Field(default=4, ge=1, le=16)
    max_text_chars: int = Field(default=280, ge=20, le=2000)
    max_tokens: int = Field(default=4000, ge=256, le=32000)
    request_timeout_sec: float = Field(default=60.0, gt=0.0, le=600.0)
    run_timeout_sec: float | None = Field(default=None, gt=0.0)
    stream: bool = False

    log_level: str = "INFO"


def _parse_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return default


def _parse_optional_float(value: str) -> float | None:
    cleaned = value.strip().lower()
    if cleaned in {"", "none", "null", "0"}:
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def load_settings(env: Mapping[str, str] | None = None, **overrides: Any) -> AnalyzerSettings:
    source = os.environ if env is None else env
    raw: dict[str, Any] = {}
    for name, field in AnalyzerSettings.model_fields.items():
        key = f"{ENV_PREFIX}{name.upper()}"
        if key not in source:
            continue
        value = source[key]
        if field.annotation is bool:
            raw[name] = _parse_bool(value, default=bool(field.default))
        elif name == "run_timeout_sec":
            raw[name] = _parse_optional_float(value)
        elif name in {"device", "api_key"}:
            raw[name] = value.strip() or None
        else:
            raw[name] = value.strip()
    raw.update(overrides)
    return AnalyzerSettings.model_validate(raw)


def configure_logging(level: str | int = "INFO") -> None:
    root = logging.getLogger()
    if isinstance(level, str):
        level = logging.getLevelName(level.strip().upper())
        if not isinstance(level, int):
            level = logging.INFO
    if not any(getattr(h, "_sentiment_handler", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._sentiment_handler = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(level)
