import logging

import pytest
from pydantic import ValidationError

from services.config import AnalyzerSettings, configure_logging, load_settings
from services.factory import build_analyzer
from services.pipeline import LocalAnalyzer
from services.remote import RemoteAnalyzer


def test_defaults():
    settings = load_settings(env={})
    assert settings == AnalyzerSettings()
    assert settings.backend == "local"
    assert settings.negation_window_tokens == 3
    assert settings.negation_window_chars == 30
    assert settings.remote_batch_size == 25


def test_environment_overrides():
    env = {
        "SENTIMENT_BACKEND": "remote",
        "SENTIMENT_STREAM": "yes",
        "SENTIMENT_REMOTE_BATCH_SIZE": "10",
        "SENTIMENT_RUN_TIMEOUT_SEC": "",
        "SENTIMENT_API_KEY": "  ",
        "SENTIMENT_NEGATION_WINDOW_TOKENS": "5",
    }
    settings = load_settings(env=env)
    assert settings.backend == "remote"
    assert settings.stream is True
    assert settings.remote_batch_size == 10
    assert settings.run_timeout_sec is None
    assert settings.api_key is None
    assert settings.negation_window_tokens == 5


def test_keyword_overrides_win():
    settings = load_settings(env={"SENTIMENT_BACKEND": "remote"}, backend="local")
    assert settings.backend == "local"


def test_invalid_values_rejected():
    with pytest.raises(ValidationError):
        load_settings(env={"SENTIMENT_REMOTE_BATCH_SIZE": "100"})
    with pytest.raises(ValidationError):
        load_settings(env={"SENTIMENT_BACKEND": "cloud"})


def test_factory_selects_backend():
    assert isinstance(build_analyzer(load_settings(env={})), LocalAnalyzer)
    remote = build_analyzer(load_settings(env={}, backend="remote", parallel_batches=2))
    assert isinstance(remote, RemoteAnalyzer)
    assert remote.parallel_batches == 2


def test_configure_logging_is_idempotent():
    root = logging.getLogger()
    before = len(root.handlers)
    configure_logging("DEBUG")
    configure_logging("warning")
    assert len(root.handlers) <= before + 1
    assert root.level == logging.WARNING
