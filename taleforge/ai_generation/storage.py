"""
Persistence of generated illustrations.
"""

from __future__ import annotations

import base64
import logging
import re
from pathlib import Path
from typing import Any, Protocol

import requests

logger = logging.getLogger(__name__)

_DATA_URI_PATTERN = re.compile(r"^data:image/(?P<format>[\w.+-]+);base64,(?P<data>.+)$", re.DOTALL)
_CONTENT_TYPE_SUFFIXES = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
}


class ImageStore(Protocol):
    def save(self, segment_id: str, output: Any) -> str:
        """Persist one image output and return its public URL."""
        ...


class LocalImageStore:
    """
    Write illustrations under ``root`` and expose them through ``base_url``.

    ``output`` may be a remote URL (downloaded with ``requests``), a
    ``data:image/...;base64`` URI, raw bytes, or a file-like object such as a
    Replicate file output.
    """

    def __init__(
        self,
        root: str | Path,
        *,
        base_url: str | None = None,
        request_timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self.root = Path(root).expanduser()
        self.base_url = base_url.rstrip("/") if base_url else None
        self.request_timeout = request_timeout
        self._session = session or requests.Session()

    def save(self, segment_id: str, output: Any) -> str:
        content, suffix = self._read_output(output)
        if not content:
            raise ValueError(f"Image output for segment {segment_id} was empty.")

        self.root.mkdir(parents=True, exist_ok=True)
        path = self.root / f"{segment_id}{suffix}"
        path.write_bytes(content)
        logger.info("Stored illustration for segment %s at %s.", segment_id, path)

        if self.base_url:
            return f"{self.base_url}/{path.name}"
        return path.resolve().as_uri()

    def _read_output(self, output: Any) -> tuple[bytes, str]:
        if isinstance(output, bytes):
            return output, ".png"

        if hasattr(output, "read"):
            return output.read(), ".png"

        text = str(output).strip()
        match = _DATA_URI_PATTERN.match(text)
        if match:
            suffix = "." + match.group("format").replace("jpeg", "jpg")
            return base64.b64decode(match.group("data")), suffix

        if text.lower().startswith(("http://", "https://")):
            response = self._session.get(text, timeout=self.request_timeout)
            response.raise_for_status()
            content_type = response.headers.get("Content-Type", "").split(";")[0].strip()
            suffix = _CONTENT_TYPE_SUFFIXES.get(content_type) or Path(text.split("?")[0]).suffix or ".png"
            return response.content, suffix

        raise ValueError(f"Unsupported image output: {text[:80]!r}")
