"""Owner authentication collaborator.

Sessions are issued by the surrounding application; this service only
reads the owner id it placed in the session cookie.
"""

from fastapi import HTTPException, Request

from config import settings


def get_optional_owner_id(request: Request) -> str | None:
    """Owner id from the session cookie, or None when not signed in."""
    owner_id = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if owner_id and owner_id.strip():
        return owner_id.strip()
    return None


def get_current_owner_id(request: Request) -> str:
    """Owner id from the session cookie; 401 when not signed in."""
    owner_id = get_optional_owner_id(request)
    if not owner_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return owner_id
