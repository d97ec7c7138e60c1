# services/file_repository/app/main.py
from fastapi import FastAPI, HTTPException, Depends, Request, Header, Query, File, UploadFile, status
from fastapi.responses import StreamingResponse
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import List, Optional
import logging

import httpx

from core.config import settings
from core.exceptions import BackendUnavailable, FetchError, InvalidFileName, NotFound, RepositoryError
from core.models import RepositoryResponse, TeamBoard, UploadBatchResult, UploadPayload
from core.storage import BlobStore, SupabaseBlobStore
from . import clients
from .preview import PreviewResolver
from .repository import RepositoryManager, RepositoryState

logger = logging.getLogger("TeamRepo_Core").getChild("FileRepository")


@dataclass
class TeamSession:
    """Manager and preview resolver of one team, sharing one state container."""
    manager: RepositoryManager
    previewer: PreviewResolver


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("File Repository lifespan startup: Initializing HTTPX Client.")
    app.state.http_client = httpx.AsyncClient(timeout=httpx.Timeout(settings.HTTP_TIMEOUT, connect=10.0))
    app.state.sessions = OrderedDict()
    yield
    logger.info("File Repository lifespan shutdown: Cleaning up resources.")
    if getattr(app.state, 'http_client', None):
        await app.state.http_client.aclose()
        app.state.http_client = None
        logger.info("HTTPX Client closed.")
    app.state.sessions = OrderedDict()


app = FastAPI(
    title="Team File Repository",
    description="Per-team file storage with provenance metadata, listing, deletion and preview.",
    version="1.0.0",
    lifespan=lifespan
)


# --- Dependencies ---

def get_http_client(request: Request) -> httpx.AsyncClient:
    client = getattr(request.app.state, 'http_client', None)
    if not client:
        logger.error("HTTP client dependency not met: Client not available in application state.")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="HTTP client not ready")
    return client


def get_blob_store(http_client: httpx.AsyncClient = Depends(get_http_client)) -> BlobStore:
    return SupabaseBlobStore(http_client)


def get_auth_token(authorization: Optional[str] = Header(None)) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    return token.strip() if scheme.lower() == "bearer" and token.strip() else None


def get_session(
    team_id: str,
    request: Request,
    store: BlobStore = Depends(get_blob_store),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> TeamSession:
    sessions: "OrderedDict[str, TeamSession]" = getattr(request.app.state, 'sessions', None)
    if sessions is None:
        sessions = request.app.state.sessions = OrderedDict()
    session = sessions.get(team_id)
    if session is not None:
        sessions.move_to_end(team_id)
    else:
        try:
            state = RepositoryState()
            session = TeamSession(
                manager=RepositoryManager(team_id, store, state),
                previewer=PreviewResolver(http_client, state),
            )
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
        sessions[team_id] = session
        logger.info(f"Opened repository session for team {team_id}.")
        # Least recently used sessions go first; their state is rebuilt by the next listing
        while len(sessions) > max(1, settings.MAX_TEAM_SESSIONS):
            evicted, _ = sessions.popitem(last=False)
            logger.info(f"Closed idle repository session for team {evicted}.")
    return session


def _to_http_exception(error: RepositoryError) -> HTTPException:
    if isinstance(error, NotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, InvalidFileName):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(error))
    if isinstance(error, FetchError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(error))
    if isinstance(error, BackendUnavailable):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Storage backend unavailable.")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal repository error")


# --- Health Check ---
@app.get("/health", response_model=RepositoryResponse, tags=["Meta"])
async def health_check(request: Request):
    client_status = "initialized" if getattr(request.app.state, 'http_client', None) else "NOT initialized"
    return RepositoryResponse(status="success", message=f"File Repository is running (HTTP Client: {client_status})")


# --- Team Board ---
@app.get("/teams/{team_id}", response_model=RepositoryResponse, tags=["Teams"])
async def get_team_board(
    team_id: str,
    session: TeamSession = Depends(get_session),
    http_client: httpx.AsyncClient = Depends(get_http_client),
    auth_token: Optional[str] = Depends(get_auth_token),
):
    """Roster plus a fresh listing. The document subsystem is handed team_id and nothing else."""
    members = await clients.fetch_team_members(http_client, team_id, auth_token)
    try:
        files = await session.manager.list_files()
    except RepositoryError as e:
        logger.error(f"Listing failed for team {team_id}: {e}")
        raise _to_http_exception(e)
    return RepositoryResponse(status="success", data=TeamBoard(team_id=team_id, members=members, files=files))


@app.get("/teams/{team_id}/members", response_model=RepositoryResponse, tags=["Teams"])
async def get_team_members(
    team_id: str,
    http_client: httpx.AsyncClient = Depends(get_http_client),
    auth_token: Optional[str] = Depends(get_auth_token),
):
    members = await clients.fetch_team_members(http_client, team_id, auth_token)
    return RepositoryResponse(status="success", data=members)


# --- Files ---
@app.get("/teams/{team_id}/files", response_model=RepositoryResponse, tags=["Files"])
async def list_files(team_id: str, session: TeamSession = Depends(get_session)):
    try:
        files = await session.manager.list_files()
    except RepositoryError as e:
        logger.error(f"Listing failed for team {team_id}: {e}")
        raise _to_http_exception(e)
    return RepositoryResponse(status="success", data=files)


@app.post("/teams/{team_id}/files", response_model=RepositoryResponse, tags=["Files"])
async def upload_files(
    team_id: str,
    files: List[UploadFile] = File(...),
    session: TeamSession = Depends(get_session),
    http_client: httpx.AsyncClient = Depends(get_http_client),
    auth_token: Optional[str] = Depends(get_auth_token),
):
    """Uploads every file concurrently; per-file failures are reported, not raised."""
    actor = await clients.fetch_user_info(http_client, auth_token)
    payloads = [
        UploadPayload(name=f.filename or "", data=await f.read(), content_type=f.content_type)
        for f in files
    ]
    outcomes = await session.manager.upload_files(payloads, actor)
    failed = sum(1 for o in outcomes if o.kind == "failed")
    message = f"Uploaded {len(outcomes) - failed} of {len(outcomes)} file(s)."
    return RepositoryResponse(
        status="success" if not failed else "partial",
        data=UploadBatchResult(outcomes=outcomes, progress=session.manager.progress),
        message=message,
    )


@app.post("/teams/{team_id}/files/stream", tags=["Files"])
async def stream_upload_files(
    team_id: str,
    files: List[UploadFile] = File(...),
    session: TeamSession = Depends(get_session),
    http_client: httpx.AsyncClient = Depends(get_http_client),
    auth_token: Optional[str] = Depends(get_auth_token),
):
    """Same batch as POST /files, answered as NDJSON: one progress/appended/failed event per line."""
    actor = await clients.fetch_user_info(http_client, auth_token)
    # Read bodies now; the uploaded files are closed once the response starts
    payloads = [
        UploadPayload(name=f.filename or "", data=await f.read(), content_type=f.content_type)
        for f in files
    ]

    async def event_lines():
        async for event in session.manager.stream_upload(payloads, actor):
            yield event.model_dump_json() + "\n"
        logger.info(f"Streamed upload batch of {len(payloads)} file(s) for team {team_id}.")

    return StreamingResponse(event_lines(), media_type="application/x-ndjson")


@app.delete("/teams/{team_id}/files",response_model=RepositoryResponse, tags=["Files"])
async def delete_file(team_id: str, path: str = Query(...), session: TeamSession = Depends(get_session)):
    try:
        await session.manager.delete_file(path)
    except RepositoryError as e:
        logger.warning(f"Delete of '{path}' failed for team {team_id}: {e}")
        raise _to_http_exception(e)
    return RepositoryResponse(status="success", data=session.manager.files, message=f"Deleted {path}")


@app.get("/teams/{team_id}/files/preview", response_model=RepositoryResponse, tags=["Files"])
async def preview_file(team_id: str, path: str = Query(...), session: TeamSession = Depends(get_session)):
    try:
        file = await session.manager.refresh_reference(path)
        preview = await session.previewer.preview(file)
    except RepositoryError as e:
        logger.warning(f"Preview of '{path}' failed for team {team_id}: {e}")
        raise _to_http_exception(e)
    return RepositoryResponse(status="success", data=preview)
