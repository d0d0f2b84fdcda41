"""Tests for the Replicate illustration backend."""

from unittest import mock

import pytest

from taleforge.ai_generation import IllustrationPrompt, ReplicateImageGenerator, normalize_image_outputs


@pytest.fixture
def prompt():
    return IllustrationPrompt(positive="A fox in a sunny forest", negative="blurry")


def test_flux_payload_omits_negative_prompt(prompt):
    client = mock.MagicMock()
    client.run.return_value = ["https://replicate.delivery/out.png"]
    generator = ReplicateImageGenerator(client=client, model_identifier="black-forest-labs/flux-schnell")

    output = generator.generate_image(prompt, seed=11)

    assert output == ["https://replicate.delivery/out.png"]
    model, kwargs = client.run.call_args.args[0], client.run.call_args.kwargs
    assert model == "black-forest-labs/flux-schnell"
    assert kwargs["input"]["prompt"] == "A fox in a sunny forest"
    assert kwargs["input"]["seed"] == 11
    assert "negative_prompt" not in kwargs["input"]


def test_sdxl_payload_carries_negative_prompt_and_overrides(prompt):
    client = mock.MagicMock()
    generator = ReplicateImageGenerator(client=client, model_identifier="stability-ai/sdxl:abc123")

    generator.generate_image(prompt, guidance_scale=5.0)

    payload = client.run.call_args.kwargs["input"]
    assert payload["negative_prompt"] == "blurry"
    assert payload["guidance_scale"] == 5.0
    assert "seed" not in payload


def test_unknown_model_is_rejected(prompt):
    generator = ReplicateImageGenerator(client=mock.MagicMock(), model_identifier="someone/unknown")

    with pytest.raises(ValueError):
        generator.generate_image(prompt)


def test_start_prediction_uses_version_and_webhook(prompt):
    client = mock.MagicMock()
    client.predictions.create.return_value = mock.Mock(id="pred-42")
    generator = ReplicateImageGenerator(client=client, model_identifier="stability-ai/sdxl:abc123")

    handle = generator.start_prediction(prompt, webhook="https://api.example/hook", seed=3)

    assert handle == "pred-42"
    kwargs = client.predictions.create.call_args.kwargs
    assert kwargs["version"] == "abc123"
    assert kwargs["webhook"] == "https://api.example/hook"
    assert kwargs["webhook_events_filter"] == ["completed"]


def test_missing_token_without_client_raises(monkeypatch):
    monkeypatch.delenv("REPLICATE_API_TOKEN", raising=False)

    with pytest.raises(ValueError):
        ReplicateImageGenerator()


def test_normalize_image_outputs_flattens_nested_results():
    assert normalize_image_outputs(None) == []
    assert normalize_image_outputs("https://x/a.png") == ["https://x/a.png"]
    assert normalize_image_outputs([["https://x/a.png"], "https://x/b.png"]) == [
        "https://x/a.png",
        "https://x/b.png",
    ]
    assert normalize_image_outputs(list("https://x/c.png")) == ["https://x/c.png"]
