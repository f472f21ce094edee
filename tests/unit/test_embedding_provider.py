import httpx
import openai
import pytest

from incident_sync.config import Settings
from incident_sync.core import ConfigurationException, EmbeddingException
from incident_sync.infrastructure.llm import (
    MockEmbeddingClient,
    OpenAIEmbeddingClient,
    RotatingEmbeddingProvider,
    is_quota_error,
)

from tests.conftest import FakeEmbeddingClient


def openai_error(error_class, status_code):
    request = httpx.Request("POST", "https://api.openai.com/v1/embeddings")
    return error_class("rejected", response=httpx.Response(status_code, request=request), body=None)


def test_rotate_wraps_around():
    provider = RotatingEmbeddingProvider([FakeEmbeddingClient("k#0"), FakeEmbeddingClient("k#1")])

    assert provider.rotate() == 1
    assert provider.rotate() == 0


def test_set_index_resumes_modulo_credential_count():
    provider = RotatingEmbeddingProvider([FakeEmbeddingClient("k#0"), FakeEmbeddingClient("k#1")])

    provider.set_index(3)

    assert provider.current_index == 1


def test_provider_requires_a_credential():
    with pytest.raises(ConfigurationException):
        RotatingEmbeddingProvider([])


async def test_embed_uses_current_credential():
    first, second = FakeEmbeddingClient("k#0"), FakeEmbeddingClient("k#1")
    provider = RotatingEmbeddingProvider([first, second], dimension=8)
    provider.rotate()

    vector = await provider.embed("printer offline")

    assert len(vector) == 8
    assert first.texts == []
    assert second.texts == ["printer offline"]


async def test_dimension_mismatch_is_an_embedding_error():
    provider = RotatingEmbeddingProvider([FakeEmbeddingClient(dimension=4)], dimension=8)

    with pytest.raises(EmbeddingException):
        await provider.embed("printer offline")


async def test_health_check_reports_failures():
    provider = RotatingEmbeddingProvider([FakeEmbeddingClient(error=EmbeddingException("boom"))])

    health = await provider.health_check()

    assert health["healthy"] is False
    assert "boom" in health["error"]


@pytest.mark.parametrize("error, expected", [
    (openai_error(openai.RateLimitError, 429), True),
    (openai_error(openai.AuthenticationError, 401), True),
    (RuntimeError("Insufficient balance on account"), True),
    (RuntimeError("connection reset by peer"), False),
    (openai_error(openai.InternalServerError, 500), False),
])
def test_is_quota_error(error, expected):
    assert is_quota_error(error) is expected


def test_mock_provider_needs_no_keys():
    provider = RotatingEmbeddingProvider.from_settings(
        Settings(_env_file=None, embedding_provider="mock", embedding_dimension=16)
    )

    assert provider.credential_count == 1


async def test_mock_embeddings_are_deterministic():
    client = MockEmbeddingClient(dimension=16)

    first = await client.generate_embedding("same text")
    second = await client.generate_embedding("same text")

    assert first.embedding == second.embedding
    assert first.dimension == 16


def test_one_client_per_configured_key():
    provider = RotatingEmbeddingProvider.from_settings(Settings(
        _env_file=None,
        embedding_provider="openai",
        embedding_api_keys=["primary", "fallback"],
    ))

    assert provider.credential_count == 2


def test_missing_keys_are_a_configuration_error():
    with pytest.raises(ConfigurationException):
        RotatingEmbeddingProvider.from_settings(
            Settings(_env_file=None, embedding_provider="openai", embedding_api_keys=[])
        )


def test_openai_client_requires_key():
    with pytest.raises(ConfigurationException):
        OpenAIEmbeddingClient("", "text-embedding-3-small")
