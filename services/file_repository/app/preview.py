# services/file_repository/app/preview.py
from typing import Optional, Tuple
import logging

import httpx

from core.exceptions import FetchError
from core.models import PreviewMode, PreviewState, StoredFile, HIGHLIGHTED_EXTENSIONS
from core.utils import file_extension
from .repository import RepositoryState

logger = logging.getLogger("TeamRepo_Core").getChild("FileRepository").getChild("Preview")


def classify(file_name: str) -> Tuple[str, PreviewMode]:
    """Maps a file name to (lowercased extension, rendering mode). Pure function of the name."""
    extension = file_extension(file_name)
    if extension in HIGHLIGHTED_EXTENSIONS:
        return extension, PreviewMode.HIGHLIGHTED
    return extension, PreviewMode.PLAIN


class PreviewResolver:
    """
    Fetches a file's text and decides how it should be rendered.

    Only the most recent request may update the shared preview state: each
    call takes a request id and a response that arrives after a newer request
    was issued is returned to its caller but not applied. A failed fetch
    leaves the current preview untouched.
    """

    def __init__(self, http_client: httpx.AsyncClient, state: Optional[RepositoryState] = None):
        self.http_client = http_client
        self.state = state or RepositoryState()
        self._latest_request_id = 0

    async def _fetch_text(self, file: StoredFile) -> str:
        try:
            response = await self.http_client.get(file.download_ref, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error {e.response.status_code} fetching preview for '{file.path}'", exc_info=False)
            raise FetchError(f"Could not fetch '{file.name}' (status {e.response.status_code})") from e
        except httpx.RequestError as e:
            logger.error(f"Network error fetching preview for '{file.path}': {e}", exc_info=False)
            raise FetchError(f"Could not fetch '{file.name}': {e}") from e
        return response.content.decode("utf-8", errors="replace")

    async def preview(self, file: StoredFile) -> PreviewState:
        """Raises FetchError; the previous preview stays displayed in that case."""
        self._latest_request_id += 1
        request_id = self._latest_request_id

        content = await self._fetch_text(file)
        file_type, mode = classify(file.name)
        preview = PreviewState(content=content, file_type=file_type, file_name=file.name)

        if request_id != self._latest_request_id:
            logger.info(f"Discarding stale preview of '{file.path}' (request {request_id}, latest {self._latest_request_id}).")
            return preview

        self.state.set_preview(preview)
        logger.debug(f"Preview of '{file.path}' rendered as {mode.value} ({len(content)} chars).")
        return preview
