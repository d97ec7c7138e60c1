# services/file_repository/app/clients.py
"""Thin clients for the roster and identity collaborators. Neither is part of the repository core."""
from typing import List, Optional
import logging

import httpx
from pydantic import ValidationError

from core.config import settings
from core.models import ActorIdentity, TeamMember

logger = logging.getLogger("TeamRepo_Core").getChild("FileRepository").getChild("Clients")


def _auth_headers(auth_token: Optional[str]) -> dict:
    return {"Authorization": f"Bearer {auth_token}"} if auth_token else {}


async def fetch_team_members(http_client: httpx.AsyncClient, team_id: str, auth_token: Optional[str]) -> List[TeamMember]:
    """Roster for a team. Any failure is logged and yields an empty roster."""
    url = f"{settings.ROSTER_API_URL}/api/board/post/{team_id}/team-members"
    try:
        response = await http_client.get(url, headers=_auth_headers(auth_token))
        response.raise_for_status()
        return [TeamMember(**member) for member in response.json()]
    except httpx.HTTPStatusError as e:
        logger.error(f"Roster service returned {e.response.status_code} for team {team_id}", exc_info=False)
    except httpx.RequestError as e:
        logger.error(f"Could not reach roster service at {url}: {e}", exc_info=False)
    except (ValueError, TypeError, ValidationError) as e:
        logger.error(f"Unexpected roster payload for team {team_id}: {e}", exc_info=False)
    return []


async def fetch_user_info(http_client: httpx.AsyncClient, auth_token: Optional[str]) -> Optional[ActorIdentity]:
    """Current actor, or None when there is no token or the provider can't resolve it."""
    if not auth_token:
        return None
    try:
        response = await http_client.get(settings.USER_INFO_URL, headers=_auth_headers(auth_token))
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            return None
        return ActorIdentity(**data)
    except httpx.HTTPStatusError as e:
        logger.warning(f"User info provider returned {e.response.status_code}; uploads will be attributed to 'Unknown'.")
    except httpx.RequestError as e:
        logger.error(f"Could not reach user info provider at {settings.USER_INFO_URL}: {e}", exc_info=False)
    except (ValueError, ValidationError) as e:
        logger.error(f"Unexpected user info payload: {e}", exc_info=False)
    return None
