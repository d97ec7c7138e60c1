# services/file_repository/app/repository.py
"""
Repository manager for one team's files.

`RepositoryState` is the single-writer container holding the authoritative
file list, the upload progress value and the active preview. Observers
register with `subscribe` and are told which part changed.

`RepositoryManager` drives the blob store: listing joins object identity with
sidecar metadata, uploads run as concurrent jobs that attach provenance once
the bytes are stored, deletes hit the backend before touching local state.
"""
import asyncio
from typing import Callable, Dict, List, Optional, Sequence, Union

from core.config import settings, logger as core_logger
from core.exceptions import InvalidFileName, NotFound, PartialMetadataFailure
from core.metadata import decode_provenance, encode_provenance, provenance_for
from core.models import (
    ActorIdentity, AppendedFile, ObjectRef, PreviewState, ProgressEvent, ProvenanceMetadata,
    StoredFile, UploadFailed, UploadOutcome, UploadPayload,
)
from core.storage import BlobStore
from core.utils import build_object_path, split_path, team_prefix, validate_file_name

logger = core_logger.getChild("FileRepository").getChild("Manager")

Subscriber = Callable[[str, "RepositoryState"], None]
UploadEvent = Union[ProgressEvent, AppendedFile, UploadFailed]


class RepositoryState:
    """Authoritative per-team state. Mutated only through the methods below."""

    FILES = "files"
    PROGRESS = "progress"
    PREVIEW = "preview"

    def __init__(self):
        self._files: List[StoredFile] = []
        self._progress: float = 0.0
        self._preview: Optional[PreviewState] = None
        self._subscribers: List[Subscriber] = []

    @property
    def files(self) -> List[StoredFile]:
        return list(self._files)

    @property
    def progress(self) -> float:
        return self._progress

    @property
    def preview(self) -> Optional[PreviewState]:
        return self._preview

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Registers an observer; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def _notify(self, change: str):
        for callback in list(self._subscribers):
            try:
                callback(change, self)
            except Exception as e:
                logger.error(f"State subscriber failed on '{change}' change: {e}", exc_info=True)

    def replace_files(self, files: Sequence[StoredFile]):
        self._files = list(files)
        self._notify(self.FILES)

    def append_file(self, file: StoredFile):
        # A re-upload under the same name overwrites the backend object, so keep one entry per path
        self._files = [f for f in self._files if f.path != file.path]
        self._files.append(file)
        self._notify(self.FILES)

    def remove_path(self, path: str) -> int:
        before = len(self._files)
        self._files = [f for f in self._files if f.path != path]
        removed = before - len(self._files)
        if removed:
            self._notify(self.FILES)
        return removed

    def set_progress(self, value: float):
        self._progress = value
        self._notify(self.PROGRESS)

    def set_preview(self, preview: Optional[PreviewState]):
        # An empty preview is the same as no preview
        self._preview = preview if preview is not None and preview.content else None
        self._notify(self.PREVIEW)


class _BatchProgress:
    """Total-bytes-weighted progress across the jobs of one upload batch."""

    def __init__(self, payloads: Sequence[UploadPayload]):
        self._transferred: Dict[int, int] = {i: 0 for i in range(len(payloads))}
        self._total = sum(p.size for p in payloads)

    def report(self, job_index: int, bytes_transferred: int) -> float:
        # Per-job byte counts only move forward
        self._transferred[job_index] = max(self._transferred[job_index], bytes_transferred)
        if self._total <= 0:
            return 100.0
        return sum(self._transferred.values()) / self._total * 100


class RepositoryManager:
    def __init__(
        self,
        team_id: str,
        store: BlobStore,
        state: Optional[RepositoryState] = None,
        max_concurrent_uploads: int = settings.MAX_CONCURRENT_UPLOADS,
    ):
        self.team_id = str(team_id)
        self.prefix = team_prefix(self.team_id)
        self.store = store
        self.state = state or RepositoryState()
        self.max_concurrent_uploads = max(0, max_concurrent_uploads)
        self._log_prefix = f"[team:{self.team_id}]"

    @property
    def files(self) -> List[StoredFile]:
        return self.state.files

    @property
    def progress(self) -> float:
        return self.state.progress

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        return self.state.subscribe(callback)

    # --- Listing ---

    async def _resolve_listed(self, ref: ObjectRef) -> Optional[StoredFile]:
        url_result, meta_result = await asyncio.gather(
            self.store.get_download_reference(ref),
            self.store.get_metadata(ref),
            return_exceptions=True,
        )
        if isinstance(url_result, BaseException):
            # Most likely deleted by someone else between list and resolve
            logger.warning(f"{self._log_prefix} Skipping '{ref.path}': download reference unavailable ({url_result}).")
            return None

        if isinstance(meta_result, BaseException):
            failure = PartialMetadataFailure(ref.path, meta_result)
            logger.warning(f"{self._log_prefix} {failure}. Listing it with unknown provenance.")
            provenance = ProvenanceMetadata()
        else:
            provenance = decode_provenance(meta_result)

        return StoredFile(
            name=ref.name,
            path=ref.path,
            download_ref=url_result,
            uploaded_by=provenance.uploaded_by,
            uploaded_at=provenance.uploaded_at,
        )

    async def list_files(self) -> List[StoredFile]:
        """Lists the team namespace and replaces the authoritative list. Raises BackendUnavailable."""
        logger.info(f"{self._log_prefix} Listing files under '{self.prefix}'.")
        refs = await self.store.list_by_prefix(self.prefix)
        resolved = await asyncio.gather(*(self._resolve_listed(ref) for ref in refs))
        files = [f for f in resolved if f is not None]
        self.state.replace_files(files)
        logger.info(f"{self._log_prefix} Listed {len(files)} of {len(refs)} object(s).")
        return files

    # --- Upload ---

    async def _run_job(
        self,
        job_index: int,
        payload: UploadPayload,
        nickname: Optional[str],
        batch: _BatchProgress,
        emit: Callable[[UploadEvent], None],
    ) -> UploadOutcome:
        job_prefix = f"{self._log_prefix}[{payload.name}]"

        def on_progress(bytes_transferred: int, total_bytes: int):
            aggregate = batch.report(job_index, bytes_transferred)
            self.state.set_progress(aggregate)
            emit(ProgressEvent(
                file_name=payload.name,
                bytes_transferred=bytes_transferred,
                total_bytes=total_bytes,
                aggregate=aggregate,
            ))

        try:
            path = build_object_path(self.team_id, payload.name)
            ref = await self.store.upload_with_progress(path, payload.data, on_progress, payload.content_type)
            logger.info(f"{job_prefix} Upload complete: {ref.path}")

            # Not atomic with the upload: a failure here leaves an object without provenance
            provenance = provenance_for(nickname)
            await self.store.set_metadata(ref, encode_provenance(provenance))
            download_ref = await self.store.get_download_reference(ref)
        except InvalidFileName as e:
            logger.warning(f"{job_prefix} Rejected: {e.reason}")
            outcome: UploadOutcome = UploadFailed(file_name=payload.name, error=str(e))
        except Exception as e:
            logger.error(f"{job_prefix} Upload failed: {e}", exc_info=False)
            outcome = UploadFailed(file_name=payload.name, error=str(e))
        else:
            stored = StoredFile(
                name=payload.name,
                path=ref.path,
                download_ref=download_ref,
                uploaded_by=provenance.uploaded_by,
                uploaded_at=provenance.uploaded_at,
            )
            self.state.append_file(stored)
            outcome = AppendedFile(file=stored)

        emit(outcome)
        return outcome

    async def upload_files(
        self,
        files: Sequence[UploadPayload],
        actor: Optional[ActorIdentity] = None,
        on_event: Optional[Callable[[UploadEvent], None]] = None,
    ) -> List[UploadOutcome]:
        """
        Uploads every file as an independent, concurrent job.

        Each job resolves to AppendedFile or UploadFailed; one failing job
        never cancels its siblings. Progress and outcomes are passed to
        `on_event` as they happen.
        """
        if not files:
            return []
        nickname = actor.nickname if actor else None
        batch = _BatchProgress(files)
        emit = on_event or (lambda event: None)
        semaphore = asyncio.Semaphore(self.max_concurrent_uploads) if self.max_concurrent_uploads else None

        async def guarded(index: int, payload: UploadPayload) -> UploadOutcome:
            if semaphore is None:
                return await self._run_job(index, payload, nickname, batch, emit)
            async with semaphore:
                return await self._run_job(index, payload, nickname, batch, emit)

        logger.info(f"{self._log_prefix} Starting upload batch of {len(files)} file(s) as '{nickname or 'Unknown'}'.")
        outcomes = await asyncio.gather(*(guarded(i, p) for i, p in enumerate(files)))
        succeeded = sum(1 for o in outcomes if isinstance(o, AppendedFile))
        logger.info(f"{self._log_prefix} Upload batch finished: {succeeded} succeeded, {len(outcomes) - succeeded} failed.")
        return list(outcomes)

    async def stream_upload(self, files: Sequence[UploadPayload], actor: Optional[ActorIdentity] = None):
        """Async iterator over the ProgressEvent / AppendedFile / UploadFailed events of one batch."""
        queue: asyncio.Queue = asyncio.Queue()
        done = object()

        async def run():
            try:
                await self.upload_files(files, actor, on_event=queue.put_nowait)
            finally:
                queue.put_nowait(done)

        task = asyncio.create_task(run())
        while True:
            event = await queue.get()
            if event is done:
                break
            yield event
        await task

    def _scoped_ref(self, path: str) -> ObjectRef:
        """Maps a caller-supplied path to a file directly inside this team's namespace, or raises NotFound."""
        folder, name = split_path(path)
        if folder + "/" != self.prefix:
            logger.warning(f"{self._log_prefix} Refusing path outside namespace: {path}")
            raise NotFound(path)
        try:
            validate_file_name(name)
        except InvalidFileName as e:
            # Sidecar objects and relative markers are never listed, so they can't be addressed either
            logger.warning(f"{self._log_prefix} Refusing path '{path}': {e.reason}")
            raise NotFound(path) from e
        return ObjectRef(name=name, path=path)

    # --- Delete ---

    async def delete_file(self, path: str) -> None:
        """Deletes the object, then drops it from the list. Raises NotFound / BackendUnavailable."""
        ref = self._scoped_ref(path)
        # Local list stays untouched unless the backend confirms
        await self.store.delete(ref)
        removed = self.state.remove_path(path)
        logger.info(f"{self._log_prefix} Deleted '{path}' ({removed} local entr{'y' if removed == 1 else 'ies'} removed).")

    # --- Lookups used by preview ---

    async def refresh_reference(self, path: str) -> StoredFile:
        """Returns the file at `path` with a freshly derived download reference."""
        ref = self._scoped_ref(path)
        download_ref = await self.store.get_download_reference(ref)
        known = next((f for f in self.state.files if f.path == path), None)
        if known is not None:
            return known.model_copy(update={"download_ref": download_ref})
        return StoredFile(name=ref.name, path=path, download_ref=download_ref)


