"""Tests for writing illustration outputs to local storage."""

import base64
import io
from unittest import mock

import pytest

from taleforge.ai_generation import LocalImageStore


def test_saves_bytes_under_public_base_url(tmp_path):
    store = LocalImageStore(tmp_path, base_url="https://cdn.example/images/")

    url = store.save("seg-1", b"\x89PNG data")

    assert url == "https://cdn.example/images/seg-1.png"
    assert (tmp_path / "seg-1.png").read_bytes() == b"\x89PNG data"


def test_saves_file_like_output_as_file_uri(tmp_path):
    store = LocalImageStore(tmp_path)

    url = store.save("seg-2", io.BytesIO(b"image bytes"))

    assert url.startswith("file://")
    assert url.endswith("seg-2.png")


def test_decodes_data_uri(tmp_path):
    payload = base64.b64encode(b"jpeg bytes").decode("ascii")
    store = LocalImageStore(tmp_path)

    store.save("seg-3", f"data:image/jpeg;base64,{payload}")

    assert (tmp_path / "seg-3.jpg").read_bytes() == b"jpeg bytes"


def test_downloads_remote_url_with_session(tmp_path):
    response = mock.Mock()
    response.content = b"webp bytes"
    response.headers = {"Content-Type": "image/webp"}
    session = mock.Mock()
    session.get.return_value = response
    store = LocalImageStore(tmp_path, session=session, request_timeout=12.0)

    store.save("seg-4", "https://replicate.delivery/out-0.webp")

    session.get.assert_called_once_with("https://replicate.delivery/out-0.webp", timeout=12.0)
    response.raise_for_status.assert_called_once()
    assert (tmp_path / "seg-4.webp").read_bytes() == b"webp bytes"


@pytest.mark.parametrize("output", ["not an image", b""])
def test_rejects_unusable_output(tmp_path, output):
    store = LocalImageStore(tmp_path)

    with pytest.raises(ValueError):
        store.save("seg-5", output)
