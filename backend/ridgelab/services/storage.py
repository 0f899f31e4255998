from __future__ import annotations

import re
import secrets
import string
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ridgelab.errors import BlobNotFound, BlobStoreError
from ridgelab.settings import settings

_KEY_ALPHABET = string.ascii_letters + string.digits + "_-"
_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9.]")
_UNSAFE_SEGMENT_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


@dataclass(frozen=True)
class BlobRef:
    key: str
    url: str


def normalize_key(key: str) -> str:
    normalized = key.replace("\\", "/").lstrip("/")
    parts = [part for part in normalized.split("/") if part]
    if not parts or any(part in {".", ".."} for part in parts):
        raise ValueError(f"Invalid storage key: {key!r}")
    return "/".join(parts)


def _key_segment(value: Optional[str]) -> str:
    cleaned = _UNSAFE_SEGMENT_CHARS.sub("_", value or "").strip(".")
    return cleaned or "default"


def generate_forensic_key(
    kind: str,
    filename: str,
    case_id: Optional[str] = None,
    sample_id: Optional[str] = None,
) -> str:
    timestamp = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_KEY_ALPHABET) for _ in range(6))
    clean_filename = _UNSAFE_FILENAME_CHARS.sub("_", filename) or "image.png"
    return f"{_key_segment(case_id)}/{_key_segment(sample_id)}/{kind}_{timestamp}_{suffix}_{clean_filename}"


class LocalBlobStore:
    """Filesystem blob store addressed by slash-separated keys."""

    def __init__(self, root: Path | None = None, public_base_url: str = "") -> None:
        self.root = Path(root or settings.storage_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")

    def resolve(self, key: str) -> Path:
        target = (self.root / normalize_key(key)).resolve()
        if self.root.resolve() not in target.parents:
            raise ValueError(f"Storage key escapes storage root: {key!r}")
        return target

    def url_for(self, key: str) -> str:
        return f"{self.public_base_url}/api/blobs/{normalize_key(key)}"

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> BlobRef:
        target = self.resolve(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise BlobStoreError(f"Could not write blob {key}: {exc}", details={"key": key, "content_type": content_type}) from exc
        return BlobRef(key=normalize_key(key), url=self.url_for(key))

    def get(self, key: str) -> BlobRef:
        if not self.resolve(key).is_file():
            raise BlobNotFound(f"Blob {key} not found", details={"key": key})
        return BlobRef(key=normalize_key(key), url=self.url_for(key))

    def read(self, key: str) -> bytes:
        target = self.resolve(key)
        if not target.is_file():
            raise BlobNotFound(f"Blob {key} not found", details={"key": key})
        return target.read_bytes()

    def delete(self, key: str) -> None:
        target = self.resolve(key)
        if target.exists() and target.is_file():
            target.unlink()


blob_store = LocalBlobStore(public_base_url=settings.public_base_url)
