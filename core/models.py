# core/models.py
from pydantic import BaseModel, Field, computed_field
from typing import List, Optional, Any, Literal, Union
from enum import Enum

UNKNOWN = "Unknown" # Provenance placeholder when metadata or identity is absent

# Extensions rendered with a syntax highlighter; the extension doubles as the language tag
HIGHLIGHTED_EXTENSIONS = frozenset({"js", "java", "c", "html", "css"})

# --- Core Data Models ---

class ObjectRef(BaseModel):
    """Identity of one object in the blob store."""
    name: str = Field(..., description="Object name (last path segment)")
    path: str = Field(..., description="Fully-qualified path within the bucket, e.g. teams/T1/notes.txt")

    model_config = {"frozen": True}


class ProvenanceMetadata(BaseModel):
    """Who uploaded an object and when. Both fields may be 'Unknown'."""
    uploaded_by: str = UNKNOWN
    uploaded_at: str = UNKNOWN


class StoredFile(BaseModel):
    """Authoritative record of one uploaded object."""
    name: str
    path: str = Field(..., description="Fully-qualified backend path; unique key within a namespace")
    download_ref: str = Field(..., description="Resolvable (possibly expiring) locator for the bytes")
    uploaded_by: str = UNKNOWN
    uploaded_at: str = UNKNOWN

    model_config = {"from_attributes": True}

    def identity(self) -> tuple[str, str, str]:
        """Comparison key that ignores the (time-limited) download reference."""
        return (self.path, self.uploaded_by, self.uploaded_at)


class UploadPayload(BaseModel):
    """One file selected for upload."""
    name: str
    data: bytes
    content_type: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)


class ActorIdentity(BaseModel):
    """Current actor as returned by the user-info provider. Extra fields are kept but unused."""
    nickname: Optional[str] = None

    model_config = {"extra": "allow"}


class TeamMember(BaseModel):
    id: Any
    nickname: Optional[str] = None

    model_config = {"extra": "allow"}


# --- Upload progress & outcomes ---

class ProgressEvent(BaseModel):
    """Progress report of one upload job, with the batch aggregate at that moment."""
    kind: Literal["progress"] = "progress"
    file_name: str
    bytes_transferred: int
    total_bytes: int
    aggregate: float = Field(0.0, description="Total-bytes-weighted progress of the whole batch, 0-100")

    @computed_field
    @property
    def ratio(self) -> float:
        if self.total_bytes <= 0:
            return 100.0
        return self.bytes_transferred / self.total_bytes * 100


class AppendedFile(BaseModel):
    kind: Literal["appended"] = "appended"
    file: StoredFile


class UploadFailed(BaseModel):
    kind: Literal["failed"] = "failed"
    file_name: str
    error: str


UploadOutcome = Union[AppendedFile, UploadFailed]


# --- Preview ---

class PreviewMode(str, Enum):
    HIGHLIGHTED = "highlighted"
    PLAIN = "plain"


class PreviewState(BaseModel):
    """The single active preview of a repository view."""
    content: str
    file_type: str = Field(..., description="Lowercased extension, empty if the name has none")
    file_name: Optional[str] = None

    @computed_field
    @property
    def mode(self) -> PreviewMode:
        return PreviewMode.HIGHLIGHTED if self.file_type in HIGHLIGHTED_EXTENSIONS else PreviewMode.PLAIN

    @computed_field
    @property
    def language(self) -> Optional[str]:
        return self.file_type if self.mode is PreviewMode.HIGHLIGHTED else None


# --- API Response Models ---

class TeamBoard(BaseModel):
    """Everything a team page shows, minus the document subsystem which only receives team_id."""
    team_id: str
    members: List[TeamMember] = Field(default_factory=list)
    files: List[StoredFile] = Field(default_factory=list)


class UploadBatchResult(BaseModel):
    outcomes: List[Union[AppendedFile, UploadFailed]]
    progress: float = Field(description="Final aggregate progress of the batch, 0-100")


class RepositoryResponse(BaseModel):
    """Standard response wrapper for the file repository API."""
    status: str = Field(description="'success' or 'error'")
    data: Any | None = Field(default=None, description="The primary data payload (depends on the endpoint)")
    message: Optional[str] = Field(default=None, description="Optional status message or error details")
