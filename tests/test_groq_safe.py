import logging
from types import SimpleNamespace

import pytest

import groq_client
import groq_safe
from groq_safe import GroqAuthError


def test_missing_key_disables(monkeypatch, caplog):
    caplog.set_level(logging.INFO)
    monkeypatch.delenv("GROQ_API_KEY", raising=False)
    groq_safe.reset_auth_state()

    with caplog.at_level(logging.WARNING):
        with pytest.raises(GroqAuthError):
            groq_safe.require_groq_api_key()

    assert any(
        "Groq disabled: no GROQ_API_KEY in environment" in rec.message
        for rec in caplog.records
    )
    assert groq_safe._groq_auth_disabled is True
    groq_safe.reset_auth_state()


def test_successful_key_lookup(monkeypatch):
    monkeypatch.setenv("GROQ_API_KEY", "  gsk_test ")
    groq_safe.reset_auth_state()

    assert groq_safe.require_groq_api_key() == "gsk_test"
    assert groq_safe._groq_auth_disabled is False


def test_describe_error_uses_body_and_status():
    error = RuntimeError("ignored")
    error.status_code = 400
    error.body = {"error": {"message": "The model has been decommissioned", "code": "model_decommissioned"}}

    assert groq_safe.describe_error(error) == "400 model_decommissioned: The model has been decommissioned"
    assert groq_safe.is_model_decommissioned_error(error) is True
    assert groq_safe.is_auth_error(error) is False


def test_auth_error_detection():
    assert groq_safe.is_auth_error(SimpleNamespace(status_code=401)) is True
    assert groq_safe.is_auth_error({"error": {"code": "invalid_api_key", "message": "bad"}}) is True
    assert groq_safe.is_auth_error(ValueError("Invalid API Key provided")) is True
    assert groq_safe.is_auth_error(ValueError("rate limited")) is False


def test_describe_plain_exception():
    assert groq_safe.describe_error(TimeoutError()) == "TimeoutError"
    assert groq_safe.describe_error(ValueError("boom")) == "boom"


def test_client_is_cached_per_key(monkeypatch):
    groq_client.reset_groq_client_cache()
    monkeypatch.delenv("GROQ_API_KEY", raising=False)
    assert groq_client.get_groq_client() is None

    monkeypatch.setenv("GROQ_API_KEY", "gsk_cached")
    groq_client.reset_groq_client_cache()
    first = groq_client.get_groq_client()
    assert first is not None
    assert groq_client.get_groq_client() is first
    groq_client.reset_groq_client_cache()
