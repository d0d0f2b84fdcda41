"""
LiteLLM-powered chat completion helper utilities.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, MutableMapping, Sequence

from litellm import completion

ChatMessage = Mapping[str, Any]


class MalformedResponseError(RuntimeError):
    """Raised when a chat completion response lacks usable text content."""


@dataclass
class ChatResult:
    """
    Structured response returned from an LLM chat completion.
    """

    text: str
    raw: Any
    model: str | None = None
    usage: Mapping[str, int] = field(default_factory=dict)


CompletionCallable = Callable[..., ChatResult]


def call_chat_completion(
    *,
    model: str,
    messages: Sequence[ChatMessage],
    temperature: float | None = None,
    max_tokens: int | None = None,
    api_key: str | None = None,
    api_base: str | None = None,
    timeout: float | None = None,
    **extra_kwargs: Any,
) -> ChatResult:
    """
    Invoke LiteLLM's `completion` API and return the consolidated text.

    Non-2xx responses surface as LiteLLM exceptions and are left to propagate.
    A response without a text message raises :class:`MalformedResponseError`.
    """
    payload: MutableMapping[str, Any] = {
        "model": model,
        "messages": list(messages),
    }

    if temperature is not None:
        payload["temperature"] = temperature

    if max_tokens is not None:
        payload["max_tokens"] = max_tokens

    if api_key is not None:
        payload["api_key"] = api_key

    if api_base is not None:
        payload["api_base"] = api_base

    if timeout is not None:
        payload["timeout"] = timeout
        payload.setdefault("num_retries", 0)

    payload.update(extra_kwargs)

    response = completion(**payload)

    try:
        message = response["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise MalformedResponseError("Unexpected LiteLLM response format.") from exc

    if message is None:
        raise MalformedResponseError("LiteLLM response did not contain message content.")

    text = str(message).strip()
    if not text:
        raise MalformedResponseError("LiteLLM response contained only whitespace.")

    return ChatResult(
        text=text,
        raw=response,
        model=_read_field(response, "model") or model,
        usage=_extract_usage(response),
    )


def _read_field(response: Any, key: str) -> Any:
    try:
        return response[key]
    except (KeyError, TypeError):
        return getattr(response, key, None)


def _extract_usage(response: Any) -> dict[str, int]:
    usage = _read_field(response, "usage")
    if not usage:
        return {}

    counts: dict[str, int] = {}
    for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
        value = _read_field(usage, key)
        if isinstance(value, int):
            counts[key] = value
    return counts
