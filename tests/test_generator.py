"""Tests for app.services.generator."""
from types import SimpleNamespace
from unittest.mock import MagicMock

import openai
import pytest

from app.core.exceptions import (
    EmptyResponseError,
    GenerationError,
    UpstreamGenerationError,
)
from app.core.prompts import SYSTEM_PROMPT
from app.services.generator import ResponseGenerator, build_messages, build_prompt


def _completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def _generator(client, resend_history=True):
    return ResponseGenerator(
        client=client, model="test-model", timeout=5.0, resend_history=resend_history
    )


def _history():
    return [
        {"role": "user", "content": "What is a stoma?"},
        {"role": "assistant", "content": "A pore on the leaf."},
        {"role": "user", "content": "How does it close?"},
    ]


def test_first_turn_prompt_carries_preamble():
    prompt = build_prompt([{"role": "user", "content": "What is xylem?"}])
    assert prompt == f"{SYSTEM_PROMPT}\n\nUser: What is xylem?"


def test_later_turn_prompt_is_latest_content_only():
    assert build_prompt(_history()) == "How does it close?"


def test_empty_history_rejected():
    with pytest.raises(ValueError):
        build_prompt([])


def test_legacy_messages_send_single_prompt():
    assert build_messages(_history(), resend_history=False) == [
        {"role": "user", "content": "How does it close?"}
    ]


def test_resent_history_keeps_every_turn_with_preamble_on_first_user_turn():
    messages = build_messages(_history(), resend_history=True)

    assert [m["role"] for m in messages] == ["user", "assistant", "user"]
    assert messages[0]["content"] == build_prompt([_history()[0]])
    assert messages[1]["content"] == "A pore on the leaf."
    assert messages[2]["content"] == "How does it close?"


def test_single_turn_is_identical_in_both_modes():
    history = [{"role": "user", "content": "Hi"}]
    assert build_messages(history, True) == build_messages(history, False)


def test_generate_returns_text_and_passes_model_and_timeout():
    client = MagicMock()
    client.chat.completions.create.return_value = _completion("Chlorophyll is green.")

    reply = _generator(client).generate([{"role": "user", "content": "Why are leaves green?"}])

    assert reply == "Chlorophyll is green."
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "test-model"
    assert kwargs["timeout"] == 5.0
    assert kwargs["messages"][0]["content"].startswith(SYSTEM_PROMPT)


@pytest.mark.parametrize("content", ["", "   \n", None])
def test_empty_text_raises_empty_response_error(content):
    client = MagicMock()
    client.chat.completions.create.return_value = _completion(content)

    with pytest.raises(EmptyResponseError):
        _generator(client).generate([{"role": "user", "content": "hello"}])


def test_no_choices_raises_empty_response_error():
    client = MagicMock()
    client.chat.completions.create.return_value = SimpleNamespace(choices=[])

    with pytest.raises(EmptyResponseError):
        _generator(client).generate([{"role": "user", "content": "hello"}])


def test_service_failure_raises_upstream_error_once():
    client = MagicMock()
    client.chat.completions.create.side_effect = openai.OpenAIError("connection reset")

    with pytest.raises(UpstreamGenerationError, match="connection reset") as excinfo:
        _generator(client).generate([{"role": "user", "content": "hello"}])

    assert isinstance(excinfo.value, GenerationError)
    assert client.chat.completions.create.call_count == 1
