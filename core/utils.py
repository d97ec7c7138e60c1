# core/utils.py
"""
Core Utility Functions.

Namespace path helpers shared by the storage adapter and the repository
service. Every team's objects live under `teams/{team_id}/`.
"""
from core.config import settings
from core.exceptions import InvalidFileName

_FORBIDDEN_NAMES = {"", ".", ".."}


def team_prefix(team_id: str) -> str:
    """Returns the namespace prefix for a team, always with a trailing slash."""
    team_id = str(team_id).strip().strip("/")
    if not team_id or "/" in team_id:
        raise ValueError(f"Invalid team id: {team_id!r}")
    return f"{settings.TEAM_NAMESPACE_ROOT}/{team_id}/"


def validate_file_name(name: str) -> str:
    """Rejects names that would escape or nest inside the team namespace."""
    if name is None or name.strip() in _FORBIDDEN_NAMES:
        raise InvalidFileName(name or "", "name is empty or a relative path marker")
    if "/" in name or "\\" in name:
        raise InvalidFileName(name, "path separators are not allowed")
    if name.startswith(settings.METADATA_FOLDER):
        raise InvalidFileName(name, "name is reserved for sidecar metadata")
    return name


def build_object_path(team_id: str, file_name: str) -> str:
    return team_prefix(team_id) + validate_file_name(file_name)


def split_path(path: str) -> tuple[str, str]:
    """'teams/T1/a.txt' -> ('teams/T1', 'a.txt')."""
    folder, _, name = path.rstrip("/").rpartition("/")
    return folder, name


def file_extension(file_name: str) -> str:
    """Substring after the final '.', lowercased. Empty when the name has no dot."""
    if "." not in file_name:
        return ""
    return file_name.rsplit(".", 1)[-1].lower()
