import asyncio
from typing import Dict, List, Optional

import pytest

from core.exceptions import BackendUnavailable, NotFound
from core.models import ObjectRef


class FakeBlobStore:
    """In-memory BlobStore double. Paths in `fail_*` sets make the matching call raise."""

    def __init__(self, chunk_size: int = 4):
        self.objects: Dict[str, bytes] = {}
        self.metadata: Dict[str, Dict[str, str]] = {}
        self.chunk_size = chunk_size
        self.url_version = 0
        self.fail_list = False
        self.fail_upload: set = set()
        self.fail_metadata_read: set = set()
        self.fail_metadata_write: set = set()
        self.fail_delete: set = set()
        self.fail_download_ref: set = set()
        self.calls: List[str] = []

    def seed(self, path: str, data: bytes, metadata: Optional[Dict[str, str]] = None):
        self.objects[path] = data
        if metadata is not None:
            self.metadata[path] = dict(metadata)

    async def list_by_prefix(self, prefix: str) -> List[ObjectRef]:
        self.calls.append(f"list:{prefix}")
        await asyncio.sleep(0)
        if self.fail_list:
            raise BackendUnavailable("list failed")
        return [
            ObjectRef(name=path[len(prefix):], path=path)
            for path in self.objects
            if path.startswith(prefix) and "/" not in path[len(prefix):]
        ]

    async def upload_with_progress(self, path, data, progress_callback=None, content_type=None) -> ObjectRef:
        self.calls.append(f"upload:{path}")
        total = len(data)
        for sent in range(self.chunk_size, total + self.chunk_size, self.chunk_size):
            # Yield to the loop so sibling jobs interleave
            await asyncio.sleep(0)
            if path in self.fail_upload:
                raise BackendUnavailable(f"upload of {path} interrupted")
            if progress_callback:
                progress_callback(min(sent, total), total)
        if total == 0 and progress_callback:
            progress_callback(0, 0)
        self.objects[path] = data
        return ObjectRef(name=path.rsplit("/", 1)[-1], path=path)

    async def get_metadata(self, ref: ObjectRef) -> Dict[str, str]:
        await asyncio.sleep(0)
        if ref.path in self.fail_metadata_read:
            raise BackendUnavailable(f"metadata read failed for {ref.path}")
        return dict(self.metadata.get(ref.path, {}))

    async def set_metadata(self, ref: ObjectRef, metadata: Dict[str, str]) -> None:
        await asyncio.sleep(0)
        if ref.path in self.fail_metadata_write:
            raise BackendUnavailable(f"metadata write failed for {ref.path}")
        if ref.path not in self.objects:
            raise NotFound(ref.path)
        self.metadata[ref.path] = dict(metadata)

    async def get_download_reference(self, ref: ObjectRef) -> str:
        await asyncio.sleep(0)
        if ref.path in self.fail_download_ref:
            raise BackendUnavailable(f"could not sign {ref.path}")
        if ref.path not in self.objects:
            raise NotFound(ref.path)
        self.url_version += 1
        return f"https://storage.test/{ref.path}?token={self.url_version}"

    async def download(self, ref: ObjectRef) -> bytes:
        if ref.path not in self.objects:
            raise NotFound(ref.path)
        return self.objects[ref.path]

    async def delete(self, ref: ObjectRef) -> None:
        self.calls.append(f"delete:{ref.path}")
        await asyncio.sleep(0)
        if ref.path in self.fail_delete:
            raise BackendUnavailable(f"delete failed for {ref.path}")
        if ref.path not in self.objects:
            raise NotFound(ref.path)
        del self.objects[ref.path]
        self.metadata.pop(ref.path, None)


@pytest.fixture
def fake_store():
    return FakeBlobStore()
