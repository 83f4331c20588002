"""BlobStore protocol and a local-disk reference implementation.

File bytes never pass through the metadata services; they go to a blob
store that hands back an opaque object reference and can mint
time-limited download URLs for it.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import secrets
import time
import uuid
from pathlib import Path
from typing import Protocol, runtime_checkable
from urllib.parse import parse_qs, urlencode, urlsplit

from .exceptions import StorageError

logger = logging.getLogger(__name__)


@runtime_checkable
class BlobStore(Protocol):
    """Storage collaborator for file bytes."""

    async def store(self, data: bytes, *, content_type: str = "application/octet-stream") -> str:
        """Persist *data* and return an opaque object reference."""
        ...

    async def delete(self, object_ref: str) -> None:
        """Remove the object.  Deleting a missing object is not an error."""
        ...

    async def presign(self, object_ref: str, ttl: int) -> str:
        """Return a URL that serves the object for *ttl* seconds."""
        ...


class LocalBlobStore:
    """Blob store writing objects under *root*, sharded by the first two hex digits.

    Presigned URLs are ``file://`` URLs carrying an ``expires`` timestamp
    and an HMAC-SHA256 ``signature`` over ``object_ref`` and ``expires``.
    """

    def __init__(self, root: str | Path, *, secret: bytes | None = None) -> None:
        self.root = Path(root)
        self._secret = secret or secrets.token_bytes(32)

    def _path_for(self, object_ref: str) -> Path:
        parts = object_ref.split("/")
        if len(parts) != 2 or any(p in ("", ".", "..") for p in parts):
            raise StorageError(f"Invalid object reference: {object_ref!r}")
        return self.root / object_ref

    def _sign(self, object_ref: str, expires: int) -> str:
        msg = f"{object_ref}:{expires}".encode()
        return hmac.new(self._secret, msg, hashlib.sha256).hexdigest()

    async def store(self, data: bytes, *, content_type: str = "application/octet-stream") -> str:
        key = uuid.uuid4().hex
        object_ref = f"{key[:2]}/{key}"
        path = self.root / object_ref

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise StorageError(f"Failed to store object: {e}") from e
        logger.debug("Stored %d bytes (%s) as %s", len(data), content_type, object_ref)
        return object_ref

    async def read(self, object_ref: str) -> bytes:
        path = self._path_for(object_ref)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise StorageError(f"Object not found: {object_ref}") from e
        except OSError as e:
            raise StorageError(f"Failed to read object: {e}") from e

    async def delete(self, object_ref: str) -> None:
        path = self._path_for(object_ref)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as e:
            raise StorageError(f"Failed to delete object {object_ref}: {e}") from e

    async def exists(self, object_ref: str) -> bool:
        return await asyncio.to_thread(self._path_for(object_ref).exists)

    async def presign(self, object_ref: str, ttl: int) -> str:
        path = self._path_for(object_ref)
        expires = int(time.time()) + ttl
        query = urlencode({"expires": expires, "signature": self._sign(object_ref, expires)})
        return f"{path.resolve().as_uri()}?{query}"

    def verify_presigned(self, url: str, *, now: float | None = None) -> bool:
        """True if *url* was signed by this store and has not expired."""
        parts = urlsplit(url)
        params = parse_qs(parts.query)
        try:
            expires = int(params["expires"][0])
            signature = params["signature"][0]
        except (KeyError, IndexError, ValueError):
            return False
        root_uri = self.root.resolve().as_uri()
        base = f"{parts.scheme}://{parts.netloc}{parts.path}"
        if not base.startswith(root_uri + "/"):
            return False
        object_ref = base[len(root_uri) + 1 :]
        if expires < (now if now is not None else time.time()):
            return False
        return hmac.compare_digest(signature, self._sign(object_ref, expires))
