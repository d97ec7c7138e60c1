# core/exceptions.py
"""Error taxonomy shared by the storage adapter, repository manager and preview resolver."""


class RepositoryError(Exception):
    """Base class for all file repository errors."""


class BackendUnavailable(RepositoryError):
    """Network or service failure on a blob store call."""


class NotFound(RepositoryError):
    """Delete or metadata target does not exist in the backend."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Object not found: {path}")


class FetchError(RepositoryError):
    """Preview content could not be retrieved."""


class InvalidFileName(RepositoryError):
    """Filename cannot be mapped onto a namespace path."""

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Invalid file name '{name}': {reason}")


class PartialMetadataFailure(RepositoryError):
    """Metadata read failed for one object during a listing. Logged, never raised."""

    def __init__(self, path: str, cause: Exception):
        self.path = path
        self.cause = cause
        super().__init__(f"Metadata unavailable for {path}: {cause}")
