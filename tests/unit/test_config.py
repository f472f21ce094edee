import pytest
from pydantic import ValidationError

from incident_sync.config import VALID_CLOSE_CODES, CloseCode, Settings


def test_api_keys_accept_comma_separated_string(monkeypatch):
    monkeypatch.setenv("EMBEDDING_API_KEYS", "key-one, key-two ,,key-three")

    settings = Settings(_env_file=None)

    assert settings.embedding_api_keys == ["key-one", "key-two", "key-three"]


def test_api_keys_accept_json_list(monkeypatch):
    monkeypatch.setenv("EMBEDDING_API_KEYS", '["primary", "fallback"]')

    settings = Settings(_env_file=None)

    assert settings.embedding_api_keys == ["primary", "fallback"]


def test_unknown_embedding_provider_is_rejected():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, embedding_provider="cohere")


def test_vectorization_concurrency_is_capped_at_ten():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, vectorization_max_concurrency=11)


def test_servicenow_configured_requires_url_and_credentials():
    assert not Settings(_env_file=None, servicenow_instance_url="https://dev1.service-now.com").servicenow_configured
    assert Settings(
        _env_file=None,
        servicenow_instance_url="https://dev1.service-now.com",
        servicenow_username="sync",
        servicenow_password="secret",
    ).servicenow_configured


def test_inline_push_attempts_must_leave_room_for_the_sweep():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, resolution_max_push_attempts=3, resolution_inline_attempts=3)

    settings = Settings(_env_file=None)
    assert settings.resolution_inline_attempts < settings.resolution_max_push_attempts


def test_close_codes_include_solution_provided():
    assert CloseCode.SOLUTION_PROVIDED == "Solution provided"
    assert len(VALID_CLOSE_CODES) == 10
