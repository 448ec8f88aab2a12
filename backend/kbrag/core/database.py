"""
Database connections: Supabase client setup.
"""

from functools import lru_cache
from supabase import create_client, Client

from kbrag.config import get_settings
from kbrag.core.exceptions import ConfigurationError


@lru_cache
def get_supabase_client() -> Client:
    """Get the Supabase client (singleton).

    Prefers the service_role key: queue workers and storage listing must see
    every scope's rows regardless of RLS. Falls back to the anon key.
    """
    settings = get_settings()
    key = settings.SUPABASE_SERVICE_KEY or settings.SUPABASE_KEY
    if not settings.SUPABASE_URL or not key:
        raise ConfigurationError(
            "Supabase is not configured",
            detail="Set SUPABASE_URL and SUPABASE_SERVICE_KEY (or SUPABASE_KEY).",
        )
    return create_client(settings.SUPABASE_URL, key)
