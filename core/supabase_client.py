# core/supabase_client.py
"""
Shared Supabase clients, one per key role.

The anon client only verifies access tokens; the service client writes
objects and metadata rows on behalf of users and bypasses RLS.
"""
import asyncio
from typing import Dict, Tuple

from supabase import Client, create_client

from core.config import settings, logger as core_logger

logger = core_logger.getChild("SupabaseClient")

ANON = "anon"
SERVICE = "service"

# role -> (settings attribute holding its key, name used in messages)
CLIENT_ROLES: Dict[str, Tuple[str, str]] = {
    ANON: ("SUPABASE_KEY", "Anon Key"),
    SERVICE: ("SUPABASE_SERVICE_KEY", "Service Role Key"),
}

_clients: Dict[str, Client] = {}
_init_lock = asyncio.Lock()

FILES_TABLE = settings.FILES_TABLE
FILES_BUCKET = settings.FILES_BUCKET


def _credentials(role: str) -> Tuple[str, str]:
    key_setting, key_label = CLIENT_ROLES[role]
    url = settings.SUPABASE_URL
    key = getattr(settings, key_setting)
    if not url or not key:
        logger.error(f"Supabase URL or {key_label} not configured. Cannot create {role} client.")
        raise ValueError(f"Supabase URL or {key_label} not configured")
    return url, key


async def get_supabase_client(use_service_key: bool = False) -> Client:
    """
    Returns the cached client for the requested role, creating it on first use.

    Raises ValueError when the URL or key is missing and RuntimeError when the
    SDK fails to build the client. Failures are not cached.
    """
    role = SERVICE if use_service_key else ANON
    client = _clients.get(role)
    if client is not None:
        return client

    async with _init_lock:
        if role in _clients:
            return _clients[role]
        url, key = _credentials(role)
        logger.info(f"Initializing Supabase {role} client...")
        try:
            client = await asyncio.to_thread(create_client, url, key)
        except Exception as e:
            logger.error(f"Failed to initialize Supabase {role} client: {e}", exc_info=True)
            raise RuntimeError(f"Failed to initialize Supabase client: {e}") from e
        _clients[role] = client
        logger.info(f"Supabase {role} client ready.")
        return client


def clear_supabase_clients() -> int:
    """Drops every cached client so the next call rebuilds from current settings. Returns how many were dropped."""
    dropped = len(_clients)
    _clients.clear()
    if dropped:
        logger.debug(f"Dropped {dropped} cached Supabase clients.")
    return dropped
