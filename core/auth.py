# core/auth.py
import asyncio
from typing import Optional

from core.config import logger as core_logger
from core.models import CurrentUser
from core.supabase_client import get_supabase_client

logger = core_logger.getChild("Auth")


async def get_current_user(access_token: Optional[str]) -> Optional[CurrentUser]:
    """Resolves a Supabase access token to the signed-in user, or None when absent/invalid."""
    if not access_token:
        return None
    try:
        supabase = await get_supabase_client()
        response = await asyncio.to_thread(supabase.auth.get_user, access_token)
    except Exception as e:
        # Expired or malformed tokens surface here as auth API errors
        logger.warning(f"Could not resolve access token: {e}", exc_info=False)
        return None

    user = getattr(response, "user", None)
    if not user or not getattr(user, "id", None):
        logger.info("Access token did not resolve to a user.")
        return None
    return CurrentUser(id=str(user.id), email=getattr(user, "email", None))
