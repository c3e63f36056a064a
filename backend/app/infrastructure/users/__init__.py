"""
Users Infrastructure Module

Identity lookups against Supabase Auth.
"""

from app.infrastructure.users.user_directory import (
    SupabaseUserDirectory,
    UserDirectory,
    get_user_directory,
)

__all__ = ["SupabaseUserDirectory", "UserDirectory", "get_user_directory"]
