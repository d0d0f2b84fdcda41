"""Test doubles for text providers, image backends, and executors.

Nothing here talks to the network: text providers return scripted responses,
image generation is faked, and background work can run synchronously.
"""

from __future__ import annotations

import threading
from concurrent.futures import Executor, Future
from typing import Any, Callable, Sequence

from taleforge.common import ChatResult


class ScriptedProvider:
    """Text provider that replays responses (or raises scripted errors) in order."""

    def __init__(
        self,
        name: str,
        responses: Sequence[str | BaseException] | None = None,
        *,
        default: str | BaseException | None = None,
    ) -> None:
        self.name = name
        self._responses = list(responses or [])
        self._default = default
        self.calls: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def call(self, prompt_set, timeout, *, temperature=None) -> ChatResult:
        with self._lock:
            self.calls.append({"prompt": prompt_set, "timeout": timeout, "temperature": temperature})
            response = self._responses.pop(0) if self._responses else self._default

        if response is None:
            raise RuntimeError(f"{self.name} has no scripted response left")
        if isinstance(response, BaseException):
            raise response
        return ChatResult(text=response, raw=None, model=self.name, usage={"total_tokens": 42})


class GatedProvider(ScriptedProvider):
    """Scripted provider whose calls from ``gate_from`` onwards wait for ``release``."""

    def __init__(self, name: str, responses: Sequence[str], *, gate_from: int = 1) -> None:
        super().__init__(name, responses)
        self.gate_from = gate_from
        self.entered = threading.Event()
        self.release = threading.Event()

    def call(self, prompt_set, timeout, *, temperature=None) -> ChatResult:
        if len(self.calls) >= self.gate_from:
            self.entered.set()
            self.release.wait(timeout=5)
        return super().call(prompt_set, timeout, temperature=temperature)


class HangingProvider:
    """Provider that ignores its timeout and blocks until released."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.release = threading.Event()

    def call(self, prompt_set, timeout, *, temperature=None) -> ChatResult:
        self.release.wait(timeout=5)
        return ChatResult(text="too late", raw=None)


class SyncExecutor(Executor):
    """Executor that runs work inline, so background jobs finish before submit returns."""

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except BaseException as exc:
            future.set_exception(exc)
        return future


class FakeImageGenerator:
    def __init__(self, outputs: Any = None, *, error: BaseException | None = None) -> None:
        self.outputs = outputs if outputs is not None else ["https://replicate.test/out.png"]
        self.error = error
        self.calls: list[dict[str, Any]] = []
        self.predictions: list[dict[str, Any]] = []

    def generate_image(self, prompt, *, seed=None):
        self.calls.append({"prompt": prompt, "seed": seed})
        if self.error is not None:
            raise self.error
        return self.outputs

    def start_prediction(self, prompt, *, webhook, seed=None):
        self.predictions.append({"prompt": prompt, "webhook": webhook, "seed": seed})
        if self.error is not None:
            raise self.error
        return f"pred-{len(self.predictions)}"


class FakeImageStore:
    def __init__(self, *, error: BaseException | None = None) -> None:
        self.error = error
        self.saved: dict[str, Any] = {}

    def save(self, segment_id: str, output: Any) -> str:
        if self.error is not None:
            raise self.error
        self.saved[segment_id] = output
        return f"https://images.test/{segment_id}.png"

