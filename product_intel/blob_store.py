import asyncio
import re
import uuid
from pathlib import Path
from typing import Optional

from .schemas import FileRef

URI_PREFIX = "blob://"
PUBLIC_ROUTE = "blobs"
_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_name(filename: str) -> str:
    name = Path(filename or "upload").name
    cleaned = _UNSAFE_RE.sub("_", name).strip("._")
    return cleaned or "upload"


class LocalBlobStore:
    """Durable image storage on local disk, addressed by opaque blob:// URIs.

    With a public base URL configured, every blob is also reachable over HTTP at
    ``<public_base_url>/blobs/<key>`` so search engines can fetch it.
    """

    def __init__(self, blob_dir: str, public_base_url: Optional[str] = None):
        self.root = Path(blob_dir).resolve()
        self.public_base_url = (public_base_url or "").rstrip("/") or None

    def init(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, uri: str) -> Path:
        if not uri.startswith(URI_PREFIX):
            raise ValueError(f"Not a blob URI: {uri}")
        path = (self.root / uri[len(URI_PREFIX):]).resolve()
        if self.root not in path.parents:
            raise ValueError(f"Blob URI escapes the store: {uri}")
        return path

    def path_for_key(self, key: str) -> Path:
        return self._path_for(f"{URI_PREFIX}{key}")

    def public_url(self, uri: str) -> Optional[str]:
        if not self.public_base_url or not uri.startswith(URI_PREFIX):
            return None
        return f"{self.public_base_url}/{PUBLIC_ROUTE}/{uri[len(URI_PREFIX):]}"

    async def save(self, job_id: str, filename: str, data: bytes, mime_type: str) -> FileRef:
        safe = _safe_name(filename)
        relative = f"jobs/{job_id}/{uuid.uuid4().hex[:8]}_{safe}"
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_bytes, data)
        return FileRef(
            uri=f"{URI_PREFIX}{relative}",
            original_name=Path(filename or "upload").name,
            mime_type=mime_type or "application/octet-stream",
            size=len(data),
        )

    async def load(self, uri: str) -> bytes:
        path = self._path_for(uri)
        return await asyncio.to_thread(path.read_bytes)
