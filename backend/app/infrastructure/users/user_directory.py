"""
User Directory

Resolves a billing email to the Supabase auth user id through the
get_user_id_by_email RPC (service role key required).
"""

import asyncio
import logging
from typing import Any, Optional, Protocol

import httpx
from postgrest.exceptions import APIError
from supabase import Client, create_client
from supabase.lib.client_options import ClientOptions

from app.config.settings import Settings, get_settings
from app.infrastructure.exceptions import DatabaseError


logger = logging.getLogger(__name__)

USER_LOOKUP_RPC = "get_user_id_by_email"


class UserDirectory(Protocol):
    """Email -> user id lookup."""

    async def get_user_id_by_email(self, email: str) -> Optional[str]:
        ...


def _extract_user_id(data: Any) -> Optional[str]:
    # A scalar SQL function comes back as the bare value; a set-returning
    # one as a list of rows.
    if not data:
        return None
    if isinstance(data, str):
        return data
    if isinstance(data, list):
        return _extract_user_id(data[0])
    if isinstance(data, dict):
        value = data.get("id") or data.get("user_id") or data.get(USER_LOOKUP_RPC)
        return str(value) if value else None
    return str(data)


class SupabaseUserDirectory:
    """UserDirectory backed by the Supabase service-role client."""

    def __init__(self, client: Optional[Client] = None, settings: Optional[Settings] = None):
        if client is None:
            settings = settings or get_settings()
            options = ClientOptions(postgrest_client_timeout=30)
            client = create_client(
                settings.supabase_url,
                settings.supabase_service_role_key,
                options,
            )
        self._client = client

    async def get_user_id_by_email(self, email: str) -> Optional[str]:
        """
        Returns:
            The auth user id, or None if no user has this email.

        Raises:
            DatabaseError: the RPC itself failed.
        """
        try:
            response = await asyncio.to_thread(
                lambda: self._client.rpc(USER_LOOKUP_RPC, {"user_email": email}).execute()
            )
        except (APIError, httpx.HTTPError) as e:
            logger.error(f"User lookup failed for {email}: {e}")
            raise DatabaseError(
                "User lookup by email failed",
                operation=f"rpc:{USER_LOOKUP_RPC}",
                original_error=e,
            ) from e

        user_id = _extract_user_id(response.data)
        if not user_id:
            logger.info(f"No user found for email {email}")
        return user_id


_user_directory_instance: Optional[SupabaseUserDirectory] = None


def get_user_directory() -> SupabaseUserDirectory:
    """Get or create the user directory singleton."""
    global _user_directory_instance
    if _user_directory_instance is None:
        _user_directory_instance = SupabaseUserDirectory()
    return _user_directory_instance
