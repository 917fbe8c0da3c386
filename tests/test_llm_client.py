"""Unit tests for the LLM client."""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.exceptions import ConfigurationException, GenerationException
from app.services.llm_client import LLMClient


def _response(content):
    return MagicMock(choices=[MagicMock(message=MagicMock(content=content))])


@pytest.fixture
def mock_openai_client():
    """Create a mock async OpenAI client."""
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=_response('{"questions": []}'))
    return client


async def test_requests_json_object(mock_openai_client):
    """Test the request parameters."""
    llm = LLMClient(openai_client=mock_openai_client, model="gpt-test")

    content = await llm.complete_json("system", "user", 1234)

    assert content == '{"questions": []}'
    kwargs = mock_openai_client.chat.completions.create.await_args.kwargs
    assert kwargs["model"] == "gpt-test"
    assert kwargs["temperature"] == 0
    assert kwargs["max_tokens"] == 1234
    assert kwargs["response_format"] == {"type": "json_object"}
    assert kwargs["messages"][0] == {"role": "system", "content": "system"}


async def test_retries_without_response_format(mock_openai_client):
    """Test the retry when the provider rejects response_format."""
    mock_openai_client.chat.completions.create.side_effect = [
        RuntimeError("Unknown parameter: 'response_format'"),
        _response('{"ok": true}'),
    ]
    llm = LLMClient(openai_client=mock_openai_client)

    content = await llm.complete_json("s", "u", 100)

    assert content == '{"ok": true}'
    retry_kwargs = mock_openai_client.chat.completions.create.await_args_list[1].kwargs
    assert "response_format" not in retry_kwargs


async def test_other_errors_raise(mock_openai_client):
    """Test that unrelated provider errors are not retried."""
    mock_openai_client.chat.completions.create.side_effect = RuntimeError("timeout")
    llm = LLMClient(openai_client=mock_openai_client)

    with pytest.raises(GenerationException):
        await llm.complete_json("s", "u", 100)
    assert mock_openai_client.chat.completions.create.await_count == 1


async def test_no_choices(mock_openai_client):
    """Test that an empty choice list is a generation error."""
    mock_openai_client.chat.completions.create.return_value = MagicMock(choices=[])
    llm = LLMClient(openai_client=mock_openai_client)

    with pytest.raises(GenerationException):
        await llm.complete_json("s", "u", 100)


async def test_missing_key():
    """Test that a missing API key is a configuration error."""
    llm = LLMClient()

    with patch("app.services.llm_client.settings") as mock_settings:
        mock_settings.openai_api_key = None
        with pytest.raises(ConfigurationException):
            await llm.complete_json("s", "u", 100)
