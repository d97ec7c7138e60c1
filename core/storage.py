# core/storage.py
"""
Core Storage Utilities.

Blob store adapter for team files. The repository service only talks to the
`BlobStore` protocol; `SupabaseBlobStore` implements it on Supabase Storage.

Sidecar metadata is stored as a small JSON object next to each file, under
`{folder}/.metadata/{name}.json`. Listings skip that folder and deletes remove
the sidecar together with the object.

No retries anywhere: every backend failure is surfaced as BackendUnavailable
(or NotFound) and the caller decides what to do with it.
"""
import asyncio
import json
from urllib.parse import quote
from typing import AsyncIterator, Callable, Dict, List, Optional, Protocol

import httpx

from core.config import settings, logger as core_logger
from core.exceptions import BackendUnavailable, NotFound
from core.models import ObjectRef
from core.supabase_client import get_supabase_client, get_storage_credentials
from core.utils import split_path

logger = core_logger.getChild("Storage")

ProgressCallback = Callable[[int, int], None]

_LIST_PAGE_SIZE = 1000


class BlobStore(Protocol):
    async def list_by_prefix(self, prefix: str) -> List[ObjectRef]: ...

    async def upload_with_progress(
        self,
        path: str,
        data: bytes,
        progress_callback: Optional[ProgressCallback] = None,
        content_type: Optional[str] = None,
    ) -> ObjectRef: ...

    async def get_metadata(self, ref: ObjectRef) -> Dict[str, str]: ...

    async def set_metadata(self, ref: ObjectRef, metadata: Dict[str, str]) -> None: ...

    async def get_download_reference(self, ref: ObjectRef) -> str: ...

    async def download(self, ref: ObjectRef) -> bytes: ...

    async def delete(self, ref: ObjectRef) -> None: ...


def sidecar_path(path: str) -> str:
    """'teams/T1/a.txt' -> 'teams/T1/.metadata/a.txt.json'."""
    folder, name = split_path(path)
    return f"{folder}/{settings.METADATA_FOLDER}/{name}.json"


def _is_not_found(error: Exception) -> bool:
    status = getattr(error, "status", None) or getattr(error, "status_code", None)
    if str(status) == "404":
        return True
    message = str(error).lower()
    return "not found" in message or "not_found" in message


class SupabaseBlobStore:
    """BlobStore backed by a Supabase Storage bucket."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        bucket: str = settings.TEAM_FILES_BUCKET,
        supabase_client=None,
        chunk_size: int = settings.UPLOAD_CHUNK_SIZE,
        signed_url_expires_in: int = settings.SIGNED_URL_EXPIRES_IN,
    ):
        self.http_client = http_client
        self.bucket = bucket
        self.chunk_size = max(1, chunk_size)
        self.signed_url_expires_in = signed_url_expires_in
        self._supabase = supabase_client

    async def _bucket(self):
        if self._supabase is None:
            try:
                self._supabase = await get_supabase_client(use_service_key=True)
            except (ValueError, RuntimeError) as e:
                raise BackendUnavailable(f"Storage client unavailable: {e}") from e
        return self._supabase.storage.from_(self.bucket)

    async def list_by_prefix(self, prefix: str) -> List[ObjectRef]:
        folder = prefix.rstrip("/")
        bucket = await self._bucket()
        refs: List[ObjectRef] = []
        offset = 0
        while True:
            options = {"limit": _LIST_PAGE_SIZE, "offset": offset}
            try:
                page = await asyncio.to_thread(bucket.list, folder, options)
            except Exception as e:
                logger.error(f"Storage list failed for prefix '{prefix}': {e}", exc_info=False)
                raise BackendUnavailable(f"Could not list '{prefix}': {e}") from e

            page = page or []
            for item in page:
                name = item.get("name")
                # Folders (including the sidecar folder) come back without an id
                if not name or item.get("id") is None or name.startswith(settings.METADATA_FOLDER):
                    continue
                refs.append(ObjectRef(name=name, path=f"{folder}/{name}"))

            if len(page) < _LIST_PAGE_SIZE:
                break
            offset += _LIST_PAGE_SIZE

        logger.debug(f"Listed {len(refs)} object(s) under '{prefix}'.")
        return refs

    async def _chunks(self, data: bytes, progress_callback: Optional[ProgressCallback]) -> AsyncIterator[bytes]:
        total = len(data)
        if total == 0 and progress_callback:
            progress_callback(0, 0)
        for start in range(0, total, self.chunk_size):
            chunk = data[start:start + self.chunk_size]
            yield chunk
            if progress_callback:
                progress_callback(start + len(chunk), total)

    async def upload_with_progress(
        self,
        path: str,
        data: bytes,
        progress_callback: Optional[ProgressCallback] = None,
        content_type: Optional[str] = None,
    ) -> ObjectRef:
        """Streams `data` to the bucket, calling progress_callback(bytes_transferred, total_bytes) per chunk."""
        try:
            base_url, key = get_storage_credentials(use_service_key=True)
        except ValueError as e:
            raise BackendUnavailable(str(e)) from e

        # Names may carry "#", "?" or "%"; unencoded they would truncate the object key
        url = f"{base_url}/object/{quote(self.bucket, safe='')}/{quote(path, safe='/')}"
        headers = {
            "Authorization": f"Bearer {key}",
            "apikey": key,
            "x-upsert": "true", # Same-name uploads replace the previous object
            "Content-Type": content_type or "application/octet-stream",
            "Content-Length": str(len(data)),
        }
        logger.info(f"Uploading {len(data)} bytes to '{self.bucket}/{path}'")
        try:
            response = await self.http_client.post(url, content=self._chunks(data, progress_callback), headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Storage rejected upload of '{path}' ({e.response.status_code}): {e.response.text[:200]}", exc_info=False)
            raise BackendUnavailable(f"Upload of '{path}' failed with status {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error(f"Network error uploading '{path}': {e}", exc_info=False)
            raise BackendUnavailable(f"Upload of '{path}' failed: {e}") from e

        _, name = split_path(path)
        return ObjectRef(name=name, path=path)

    async def get_metadata(self, ref: ObjectRef) -> Dict[str, str]:
        """Raw sidecar map. An object without a sidecar yields an empty map."""
        bucket = await self._bucket()
        try:
            raw = await asyncio.to_thread(bucket.download, sidecar_path(ref.path))
        except Exception as e:
            if _is_not_found(e):
                return {}
            raise BackendUnavailable(f"Could not read metadata for '{ref.path}': {e}") from e
        try:
            decoded = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed sidecar metadata for '{ref.path}': {e}")
            return {}
        return decoded if isinstance(decoded, dict) else {}

    async def set_metadata(self, ref: ObjectRef, metadata: Dict[str, str]) -> None:
        bucket = await self._bucket()
        body = json.dumps(metadata).encode("utf-8")
        try:
            await asyncio.to_thread(
                bucket.upload,
                sidecar_path(ref.path),
                body,
                {"content-type": "application/json", "upsert": "true"},
            )
        except Exception as e:
            logger.error(f"Failed to write metadata for '{ref.path}': {e}", exc_info=False)
            raise BackendUnavailable(f"Could not write metadata for '{ref.path}': {e}") from e

    async def get_download_reference(self, ref: ObjectRef) -> str:
        bucket = await self._bucket()
        try:
            signed = await asyncio.to_thread(bucket.create_signed_url, ref.path, self.signed_url_expires_in)
        except Exception as e:
            if _is_not_found(e):
                raise NotFound(ref.path) from e
            raise BackendUnavailable(f"Could not sign URL for '{ref.path}': {e}") from e
        url = (signed or {}).get("signedURL") or (signed or {}).get("signedUrl")
        if not url:
            raise BackendUnavailable(f"Storage returned no signed URL for '{ref.path}'")
        return url

    async def download(self, ref: ObjectRef) -> bytes:
        bucket = await self._bucket()
        try:
            return await asyncio.to_thread(bucket.download, ref.path)
        except Exception as e:
            if _is_not_found(e):
                raise NotFound(ref.path) from e
            raise BackendUnavailable(f"Could not download '{ref.path}': {e}") from e

    async def delete(self, ref: ObjectRef) -> None:
        bucket = await self._bucket()
        try:
            logger.info(f"Deleting object from storage: {ref.path}")
            removed = await asyncio.to_thread(bucket.remove, [ref.path])
        except Exception as e:
            logger.error(f"Failed to delete '{ref.path}': {e}", exc_info=False)
            raise BackendUnavailable(f"Could not delete '{ref.path}': {e}") from e

        # Supabase answers an empty list when nothing matched
        if not removed:
            raise NotFound(ref.path)

        try:
            await asyncio.to_thread(bucket.remove, [sidecar_path(ref.path)])
        except Exception as e:
            # Object is gone; an orphaned sidecar is never listed
            logger.warning(f"Failed to delete sidecar metadata for '{ref.path}': {e}")
        logger.info(f"Successfully deleted object: {ref.path}")
