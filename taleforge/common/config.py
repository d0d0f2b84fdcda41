"""
Explicit configuration objects passed into the engine on every call.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

DEFAULT_PRIMARY_MODEL = "gpt-4o"
DEFAULT_SECONDARY_MODEL = "openai/Meta-Llama-3_3-70B-Instruct"
DEFAULT_SECONDARY_API_BASE = "https://oai.endpoints.kepler.ai.cloud.ovh.net/v1"


@dataclass(frozen=True)
class GenerationConfig:
    """
    Per-call knobs for story generation.

    Attributes
    ----------
    provider_timeout:
        Seconds allowed for a single provider attempt before falling through to
        the next provider.
    choice_count:
        Number of choices requested from the model and synthesized when the
        model output has too few.
    min_choices / max_choices:
        Bounds on the choices kept for a non-ending segment.
    max_segments:
        Segment position at which a story is forced to end. A story may carry
        its own lower limit.
    min_segments_before_model_ending:
        First position at which a model-signalled ending is honoured.
    summary_segments:
        How many earlier segments are summarized in continuation prompts.
    context_word_limit:
        Maximum words of the prior segment quoted verbatim in continuation prompts.
    segment_cost:
        Credits authorized and charged per generated segment (text and image).
    images_enabled:
        Whether an illustration job is enqueued for new segments.
    temperature_override:
        Forces a sampling temperature on every provider when set.
    """

    provider_timeout: float = 8.0
    choice_count: int = 3
    min_choices: int = 2
    max_choices: int = 4
    max_segments: int = 10
    min_segments_before_model_ending: int = 3
    summary_segments: int = 3
    context_word_limit: int = 220
    segment_cost: int = 1
    images_enabled: bool = True
    temperature_override: float | None = None

    def __post_init__(self) -> None:
        if self.provider_timeout <= 0:
            raise ValueError("provider_timeout must be positive.")
        if not 2 <= self.min_choices <= self.max_choices <= 4:
            raise ValueError("Choice bounds must satisfy 2 <= min_choices <= max_choices <= 4.")
        if not self.min_choices <= self.choice_count <= self.max_choices:
            raise ValueError(
                f"choice_count must fall between {self.min_choices} and {self.max_choices}."
            )
        if self.max_segments < 1:
            raise ValueError("max_segments must be at least 1.")
        if self.segment_cost < 0:
            raise ValueError("segment_cost cannot be negative.")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "GenerationConfig":
        """
        Build a config from a dict-like object, ignoring unknown keys.
        """
        known = {item.name for item in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        return cls(**values)

    def with_overrides(self, **overrides: Any) -> "GenerationConfig":
        return replace(self, **overrides)


@dataclass(frozen=True)
class ProviderConfig:
    """
    Connection and sampling settings for one ranked text provider.
    """

    name: str
    model: str
    api_key: str | None = None
    api_base: str | None = None
    temperature: float = 0.7
    max_tokens: int | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ProviderConfig":
        if not str(data.get("name", "")).strip():
            raise ValueError("Provider configuration must include a non-empty 'name'.")
        if not str(data.get("model", "")).strip():
            raise ValueError("Provider configuration must include a non-empty 'model'.")

        max_tokens = data.get("max_tokens")
        return cls(
            name=str(data["name"]).strip(),
            model=str(data["model"]).strip(),
            api_key=data.get("api_key") or None,
            api_base=data.get("api_base") or None,
            temperature=float(data.get("temperature", 0.7)),
            max_tokens=int(max_tokens) if max_tokens not in (None, "") else None,
        )


def default_provider_configs() -> list[ProviderConfig]:
    """
    Resolve the ranked primary/secondary providers from the environment.
    """
    primary = ProviderConfig(
        name="primary",
        model=(
            os.getenv("TALEFORGE_PRIMARY_MODEL")
            or os.getenv("OPENAI_STORY_MODEL")
            or os.getenv("LITELLM_MODEL")
            or DEFAULT_PRIMARY_MODEL
        ),
        api_key=os.getenv("TALEFORGE_PRIMARY_API_KEY") or os.getenv("OPENAI_API_KEY"),
        api_base=os.getenv("TALEFORGE_PRIMARY_API_BASE"),
    )
    secondary = ProviderConfig(
        name="secondary",
        model=os.getenv("TALEFORGE_SECONDARY_MODEL") or DEFAULT_SECONDARY_MODEL,
        api_key=(
            os.getenv("TALEFORGE_SECONDARY_API_KEY")
            or os.getenv("OVH_AI_ENDPOINTS_ACCESS_TOKEN")
        ),
        api_base=os.getenv("TALEFORGE_SECONDARY_API_BASE") or DEFAULT_SECONDARY_API_BASE,
    )
    return [primary, secondary]


def load_mapping_file(path: str | Path) -> Mapping[str, Any]:
    """
    Load a YAML or JSON file that must deserialize to a mapping.
    """
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    suffix = path.suffix.lower()
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(text)
    elif suffix == ".json":
        data = json.loads(text)
    else:
        raise ValueError("Unsupported configuration file format. Use YAML or JSON.")

    if not isinstance(data, Mapping):
        raise ValueError(f"{path} must deserialize to a mapping.")
    return data


def load_generation_config(path: str | Path) -> GenerationConfig:
    data = load_mapping_file(path)
    section = data.get("generation", data)
    if not isinstance(section, Mapping):
        raise ValueError("The 'generation' section must be a mapping.")
    return GenerationConfig.from_mapping(section)


def load_provider_configs(path: str | Path) -> list[ProviderConfig]:
    """
    Read a ``providers`` list from a YAML/JSON file, in rank order.

    Falls back to :func:`default_provider_configs` when the file has none.
    """
    data = load_mapping_file(path)
    entries = data.get("providers")
    if not entries:
        return default_provider_configs()
    if not isinstance(entries, list):
        raise ValueError("The 'providers' section must be a list.")
    return [ProviderConfig.from_mapping(entry) for entry in entries]
