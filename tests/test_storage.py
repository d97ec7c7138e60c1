import json
from unittest.mock import MagicMock, patch

import httpx
import pytest

from core.exceptions import BackendUnavailable, NotFound
from core.models import ObjectRef
from core.storage import SupabaseBlobStore, sidecar_path

STORAGE_BASE = "https://project.supabase.co/storage/v1"


class StorageApiError(Exception):
    def __init__(self, message, status):
        super().__init__(message)
        self.status = status


@pytest.fixture
def bucket():
    return MagicMock()


@pytest.fixture
def supabase(bucket):
    client = MagicMock()
    client.storage.from_.return_value = bucket
    return client


def _store(supabase, handler=None, chunk_size=4):
    transport = httpx.MockTransport(handler or (lambda request: httpx.Response(200, json={"Key": "ok"})))
    return SupabaseBlobStore(
        httpx.AsyncClient(transport=transport),
        bucket="team-files",
        supabase_client=supabase,
        chunk_size=chunk_size,
        signed_url_expires_in=60,
    )


def test_sidecar_path():
    assert sidecar_path("teams/T1/a.txt") == "teams/T1/.metadata/a.txt.json"


@pytest.mark.asyncio
async def test_list_skips_folders_and_sidecars(supabase, bucket):
    bucket.list.return_value = [
        {"name": "a.txt", "id": "1"},
        {"name": ".metadata", "id": None},
        {"name": "sub", "id": None},
        {"name": "b.js", "id": "2"},
    ]

    refs = await _store(supabase).list_by_prefix("teams/T1/")

    assert refs == [ObjectRef(name="a.txt", path="teams/T1/a.txt"), ObjectRef(name="b.js", path="teams/T1/b.js")]
    supabase.storage.from_.assert_called_with("team-files")
    bucket.list.assert_called_once_with("teams/T1", {"limit": 1000, "offset": 0})


@pytest.mark.asyncio
async def test_list_pages_through_results(supabase, bucket):
    first_page = [{"name": f"f{i}.txt", "id": str(i)} for i in range(1000)]
    bucket.list.side_effect = [first_page, [{"name": "last.txt", "id": "x"}]]

    refs = await _store(supabase).list_by_prefix("teams/T1/")

    assert len(refs) == 1001
    assert bucket.list.call_args_list[1].args == ("teams/T1", {"limit": 1000, "offset": 1000})


@pytest.mark.asyncio
async def test_list_failure_is_backend_unavailable(supabase, bucket):
    bucket.list.side_effect = RuntimeError("connection reset")

    with pytest.raises(BackendUnavailable):
        await _store(supabase).list_by_prefix("teams/T1/")


@pytest.mark.asyncio
@patch("core.storage.get_storage_credentials", return_value=(STORAGE_BASE, "service-key"))
async def test_upload_streams_chunks_with_progress(mock_credentials, supabase):
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = request.content
        return httpx.Response(200, json={"Key": "team-files/teams/T1/a.txt"})

    progress = []
    ref = await _store(supabase, handler).upload_with_progress(
        "teams/T1/a.txt", b"0123456789", lambda sent, total: progress.append((sent, total)), "text/plain"
    )

    assert ref == ObjectRef(name="a.txt", path="teams/T1/a.txt")
    assert progress == [(4, 10), (8, 10), (10, 10)]
    assert seen["url"] == f"{STORAGE_BASE}/object/team-files/teams/T1/a.txt"
    assert seen["body"] == b"0123456789"
    assert seen["headers"]["authorization"] == "Bearer service-key"
    assert seen["headers"]["x-upsert"] == "true"
    assert seen["headers"]["content-type"] == "text/plain"


@pytest.mark.asyncio
@pytest.mark.parametrize("path, expected_raw_path", [
    ("teams/T1/a#b.txt", b"/storage/v1/object/team-files/teams/T1/a%23b.txt"),
    ("teams/T1/report?v=2.txt", b"/storage/v1/object/team-files/teams/T1/report%3Fv%3D2.txt"),
    ("teams/T1/100%.txt", b"/storage/v1/object/team-files/teams/T1/100%25.txt"),
    ("teams/T1/my notes.txt", b"/storage/v1/object/team-files/teams/T1/my%20notes.txt"),
])
@patch("core.storage.get_storage_credentials", return_value=(STORAGE_BASE, "service-key"))
async def test_upload_url_encodes_object_key(mock_credentials, supabase, path, expected_raw_path):
    seen = {}

    def handler(request: httpx.Request):
        seen["raw_path"] = request.url.raw_path
        return httpx.Response(200, json={"Key": f"team-files/{path}"})

    ref = await _store(supabase, handler).upload_with_progress(path, b"abc")

    assert seen["raw_path"] == expected_raw_path
    assert ref.path == path


@pytest.mark.asyncio
@patch("core.storage.get_storage_credentials", return_value=(STORAGE_BASE, "service-key"))
async def test_upload_rejected_is_backend_unavailable(mock_credentials, supabase):
    store = _store(supabase, lambda request: httpx.Response(400, json={"error": "InvalidKey"}))

    with pytest.raises(BackendUnavailable):
        await store.upload_with_progress("teams/T1/a.txt", b"abc")


@pytest.mark.asyncio
@patch("core.storage.get_storage_credentials", side_effect=ValueError("Supabase URL or key not configured"))
async def test_upload_without_credentials(mock_credentials, supabase):
    with pytest.raises(BackendUnavailable):
        await _store(supabase).upload_with_progress("teams/T1/a.txt", b"abc")


@pytest.mark.asyncio
async def test_get_metadata_reads_sidecar(supabase, bucket):
    bucket.download.return_value = json.dumps({"uploadedBy": "kim", "uploadedAt": "now"}).encode()

    raw = await _store(supabase).get_metadata(ObjectRef(name="a.txt", path="teams/T1/a.txt"))

    assert raw == {"uploadedBy": "kim", "uploadedAt": "now"}
    bucket.download.assert_called_once_with("teams/T1/.metadata/a.txt.json")


@pytest.mark.asyncio
async def test_get_metadata_missing_sidecar_is_empty(supabase, bucket):
    bucket.download.side_effect = StorageApiError("Object not found", 404)

    assert await _store(supabase).get_metadata(ObjectRef(name="a.txt", path="teams/T1/a.txt")) == {}


@pytest.mark.asyncio
async def test_get_metadata_malformed_sidecar_is_empty(supabase, bucket):
    bucket.download.return_value = b"{not json"

    assert await _store(supabase).get_metadata(ObjectRef(name="a.txt", path="teams/T1/a.txt")) == {}


@pytest.mark.asyncio
async def test_get_metadata_backend_error(supabase, bucket):
    bucket.download.side_effect = StorageApiError("Internal error", 500)

    with pytest.raises(BackendUnavailable):
        await _store(supabase).get_metadata(ObjectRef(name="a.txt", path="teams/T1/a.txt"))


@pytest.mark.asyncio
async def test_set_metadata_upserts_sidecar(supabase, bucket):
    await _store(supabase).set_metadata(ObjectRef(name="a.txt", path="teams/T1/a.txt"), {"uploadedBy": "kim"})

    path, body, options = bucket.upload.call_args.args
    assert path == "teams/T1/.metadata/a.txt.json"
    assert json.loads(body) == {"uploadedBy": "kim"}
    assert options["upsert"] == "true"


@pytest.mark.asyncio
async def test_download_reference_is_signed_url(supabase, bucket):
    bucket.create_signed_url.return_value = {"signedURL": "https://signed/a.txt?token=1"}

    url = await _store(supabase).get_download_reference(ObjectRef(name="a.txt", path="teams/T1/a.txt"))

    assert url == "https://signed/a.txt?token=1"
    bucket.create_signed_url.assert_called_once_with("teams/T1/a.txt", 60)


@pytest.mark.asyncio
async def test_download_reference_missing_object(supabase, bucket):
    bucket.create_signed_url.side_effect = StorageApiError("Object not found", 404)

    with pytest.raises(NotFound):
        await _store(supabase).get_download_reference(ObjectRef(name="a.txt", path="teams/T1/a.txt"))


@pytest.mark.asyncio
async def test_delete_removes_object_and_sidecar(supabase, bucket):
    bucket.remove.side_effect = [[{"name": "teams/T1/a.txt"}], []]

    await _store(supabase).delete(ObjectRef(name="a.txt", path="teams/T1/a.txt"))

    assert bucket.remove.call_args_list[0].args == (["teams/T1/a.txt"],)
    assert bucket.remove.call_args_list[1].args == (["teams/T1/.metadata/a.txt.json"],)


@pytest.mark.asyncio
async def test_delete_missing_object_is_not_found(supabase, bucket):
    bucket.remove.return_value = []

    with pytest.raises(NotFound):
        await _store(supabase).delete(ObjectRef(name="ghost.txt", path="teams/T1/ghost.txt"))
    assert bucket.remove.call_count == 1


@pytest.mark.asyncio
async def test_delete_sidecar_failure_is_not_fatal(supabase, bucket):
    bucket.remove.side_effect = [[{"name": "teams/T1/a.txt"}], RuntimeError("timeout")]

    await _store(supabase).delete(ObjectRef(name="a.txt", path="teams/T1/a.txt"))


@pytest.mark.asyncio
async def test_delete_backend_error(supabase, bucket):
    bucket.remove.side_effect = RuntimeError("503 Service Unavailable")

    with pytest.raises(BackendUnavailable):
        await _store(supabase).delete(ObjectRef(name="a.txt", path="teams/T1/a.txt"))
