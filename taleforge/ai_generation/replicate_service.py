"""
Integration with Replicate for segment illustration.
"""

from __future__ import annotations

import os
from collections.abc import Iterable as IterableABC
from typing import Any, Callable

import replicate

from .prompting import IllustrationPrompt

DEFAULT_MODEL_IDENTIFIER = "black-forest-labs/flux-schnell"


def _build_flux_schnell_input(*, prompt: IllustrationPrompt, seed: int | None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "prompt": prompt.positive,
        "aspect_ratio": "1:1",
        "output_format": "png",
        "num_outputs": 1,
    }
    if seed is not None:
        payload["seed"] = seed
    return payload


def _build_sdxl_input(*, prompt: IllustrationPrompt, seed: int | None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "prompt": prompt.positive,
        "negative_prompt": prompt.negative,
        "width": 1024,
        "height": 1024,
        "num_inference_steps": 30,
        "guidance_scale": 7.5,
    }
    if seed is not None:
        payload["seed"] = seed
    return payload


def _build_sdxl_lightning_input(*, prompt: IllustrationPrompt, seed: int | None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "prompt": prompt.positive,
        "negative_prompt": prompt.negative,
        "width": 1024,
        "height": 1024,
        "num_inference_steps": 4,
        "guidance_scale": 0,
    }
    if seed is not None:
        payload["seed"] = seed
    return payload


_MODEL_INPUT_BUILDERS: dict[str, Callable[..., dict[str, Any]]] = {
    "black-forest-labs/flux-schnell": _build_flux_schnell_input,
    "black-forest-labs/flux-dev": _build_flux_schnell_input,
    "stability-ai/sdxl": _build_sdxl_input,
    "bytedance/sdxl-lightning-4step": _build_sdxl_lightning_input,
}


def _build_replicate_input_payload(
    *,
    model_identifier: str,
    prompt: IllustrationPrompt,
    seed: int | None,
) -> dict[str, Any]:
    normalized_identifier = model_identifier.strip().lower()
    builder = _MODEL_INPUT_BUILDERS.get(normalized_identifier)
    if builder is None and ":" in normalized_identifier:
        base_identifier = normalized_identifier.split(":", maxsplit=1)[0]
        builder = _MODEL_INPUT_BUILDERS.get(base_identifier)
    if builder is None:
        supported_models = ", ".join(sorted(_MODEL_INPUT_BUILDERS))
        raise ValueError(
            "Model identifier "
            f"'{model_identifier}' is not configured with a default input payload. "
            f"Supported models: {supported_models}."
        )

    return builder(prompt=prompt, seed=seed)


class ReplicateImageGenerator:
    """
    Convenience wrapper around the Replicate client for segment illustrations.

    Parameters
    ----------
    api_token:
        Replicate API token. Falls back to ``REPLICATE_API_TOKEN`` environment variable.
    model_identifier:
        Model string in the ``owner/model`` or ``owner/model:version`` format. Falls back
        to ``REPLICATE_MODEL`` and then to ``black-forest-labs/flux-schnell``.
    client:
        Optional pre-configured :class:`replicate.Client`. Mainly useful for testing.
    """

    def __init__(
        self,
        *,
        api_token: str | None = None,
        model_identifier: str | None = None,
        client: replicate.Client | None = None,
    ) -> None:
        self._api_token = api_token or os.getenv("REPLICATE_API_TOKEN")
        if not self._api_token and not client:
            raise ValueError(
                "Replicate API token is required. Set REPLICATE_API_TOKEN or pass api_token."
            )

        self._model_identifier = (
            model_identifier or os.getenv("REPLICATE_MODEL") or DEFAULT_MODEL_IDENTIFIER
        )
        self._client = client or replicate.Client(api_token=self._api_token)

    @property
    def model_identifier(self) -> str:
        """Return the model identifier currently used."""
        return self._model_identifier

    def generate_image(
        self,
        prompt: IllustrationPrompt,
        *,
        seed: int | None = None,
        **model_kwargs: Any,
    ) -> Any:
        """
        Run the configured model and wait for its output.

        Returns
        -------
        Any
            Raw output produced by Replicate, usually a list of URLs or file outputs.
        """
        replicate_input = _build_replicate_input_payload(
            model_identifier=self._model_identifier,
            prompt=prompt,
            seed=seed,
        )
        # Allow the caller to tweak model-specific knobs (e.g., guidance_scale).
        replicate_input.update(model_kwargs)

        return self._client.run(self._model_identifier, input=replicate_input)

    def start_prediction(
        self,
        prompt: IllustrationPrompt,
        *,
        webhook: str,
        seed: int | None = None,
        **model_kwargs: Any,
    ) -> str:
        """
        Start an asynchronous prediction whose result is delivered to ``webhook``.

        Returns the Replicate prediction id.
        """
        replicate_input = _build_replicate_input_payload(
            model_identifier=self._model_identifier,
            prompt=prompt,
            seed=seed,
        )
        replicate_input.update(model_kwargs)

        target: dict[str, str]
        if ":" in self._model_identifier:
            target = {"version": self._model_identifier.split(":", maxsplit=1)[1]}
        else:
            target = {"model": self._model_identifier}

        prediction = self._client.predictions.create(
            **target,
            input=replicate_input,
            webhook=webhook,
            webhook_events_filter=["completed"],
        )
        return str(prediction.id)


def normalize_image_outputs(raw: Any) -> list[Any]:
    """
    Flatten the outputs returned by Replicate into a list of URL strings or
    file-like objects.
    """

    if raw is None:
        return []

    if isinstance(raw, str):
        return [raw]

    if isinstance(raw, bytes):
        return [raw]

    if hasattr(raw, "read"):
        return [raw]

    if isinstance(raw, IterableABC):
        collected = list(raw)
        if not collected:
            return []

        if all(isinstance(item, str) and len(item) == 1 for item in collected):
            return ["".join(collected)]

        normalized: list[Any] = []
        for item in collected:
            if isinstance(item, (str, bytes)) or hasattr(item, "read"):
                normalized.append(item)
            elif isinstance(item, IterableABC):
                normalized.extend(normalize_image_outputs(item))
            elif item is not None:
                normalized.append(str(item))
        return normalized

    return [str(raw)]
