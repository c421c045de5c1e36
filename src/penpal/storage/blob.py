"""Blob store for letter photos.

The workflow never looks inside an image. It uploads bytes, keeps the
returned URL on the letter proof, and moves on. Any failure from the
backing store surfaces as UpstreamFailureError before a proof is
written.
"""

from __future__ import annotations

import hashlib
from typing import Protocol

from penpal.errors import InvariantViolationError, UpstreamFailureError


class BlobStore(Protocol):
    def put(self, data: bytes, key: str) -> str:
        """Store ``data`` and return a URL for it."""
        ...


class InMemoryBlobStore:
    """Content-addressed in-memory blob store."""

    def __init__(self, base_url: str = "memory://letters") -> None:
        self._base_url = base_url.rstrip("/")
        self._blobs: dict[str, bytes] = {}

    def put(self, data: bytes, key: str) -> str:
        digest = hashlib.sha256(data).hexdigest()[:16]
        url = f"{self._base_url}/{key}-{digest}"
        self._blobs[url] = bytes(data)
        return url

    def get(self, url: str) -> bytes:
        return self._blobs[url]

    @property
    def count(self) -> int:
        return len(self._blobs)


def upload_letter_photo(
    store: BlobStore,
    image: bytes,
    match_id: str,
    step_number: int,
    role: str,
) -> str:
    """Upload one letter photo, translating backend failures."""
    if not image:
        raise InvariantViolationError("A photo of the letter is required")
    key = f"penpal/letters/{match_id}/step{step_number}_{role}"
    try:
        return store.put(image, key)
    except UpstreamFailureError:
        raise
    except Exception as e:
        raise UpstreamFailureError(f"Photo upload failed: {e}") from e
