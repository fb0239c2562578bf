"""Database utilities for Supabase integration."""

from supabase import Client, create_client

from .config import Settings, get_settings

_supabase_client: Client | None = None


def get_supabase_client(settings: Settings | None = None) -> Client:
    """Get cached Supabase client."""
    global _supabase_client
    if _supabase_client is None:
        if settings is None:
            settings = get_settings()
        # Prefer new secret key, fall back to legacy service_role_key
        api_key = settings.supabase_secret_key or settings.supabase_service_role_key
        if not api_key:
            raise ValueError("Either SUPABASE_SECRET_KEY or SUPABASE_SERVICE_ROLE_KEY must be set")
        _supabase_client = create_client(settings.supabase_url, api_key)
    return _supabase_client


async def check_connection(db: Client) -> str:
    """Probe the ledger with a cheap query. Returns a status string."""
    try:
        db.table("transactions").select("id").limit(1).execute()
    except Exception as e:
        return f"error: {str(e)[:50]}"
    return "connected"
