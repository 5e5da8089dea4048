from supabase import AsyncClient, Client, acreate_client, create_client

from src.config import settings


def _create_supabase_client() -> Client | None:
    # Without credentials every request fails fast instead of running half-configured.
    if not settings.supabase_url or not settings.supabase_service_role_key:
        return None
    return create_client(settings.supabase_url, settings.supabase_service_role_key)


supabase: Client | None = _create_supabase_client()


async def create_async_supabase() -> AsyncClient | None:
    """Async client for Realtime; the sync client cannot hold channel subscriptions."""
    if not settings.supabase_url or not settings.supabase_service_role_key:
        return None
    return await acreate_client(settings.supabase_url, settings.supabase_service_role_key)
