from supabase import create_client
from core.config import settings, logger
from typing import Dict
import asyncio
from functools import partial

# Cache clients by type
_supabase_clients: Dict[str, any] = {}
_init_lock = asyncio.Lock()

async def get_supabase_client(use_service_key=False):
    """
    Initializes and returns the Supabase client (thread-safe).
    Args:
        use_service_key: If True, returns a client using the service role key to bypass RLS
    """
    global _supabase_clients

    client_type = "service" if use_service_key else "anon"

    if client_type not in _supabase_clients:
        async with _init_lock:
            # Double check after acquiring lock
            if client_type not in _supabase_clients:
                url = settings.SUPABASE_URL
                key = settings.SUPABASE_SERVICE_KEY if use_service_key else settings.SUPABASE_KEY

                if url and key:
                    key_type_str = 'service role' if use_service_key else 'anon'
                    logger.info(f"Initializing Supabase client with {key_type_str} key...")
                    try:
                        # create_client is synchronous
                        loop = asyncio.get_running_loop()
                        client_instance = await loop.run_in_executor(
                            None,
                            partial(create_client, url, key)
                        )
                        _supabase_clients[client_type] = client_instance
                        logger.info(f"Supabase client with {key_type_str} key initialized successfully.")
                    except Exception as e:
                        logger.error(f"Failed to initialize Supabase client with {key_type_str} key: {e}", exc_info=True)
                        raise RuntimeError(f"Failed to initialize Supabase client: {e}")
                else:
                    missing_key = "Service Role Key" if use_service_key else "Anon Key"
                    logger.error(f"Supabase URL or {missing_key} not configured. Cannot create client.")
                    raise ValueError(f"Supabase URL or {missing_key} not configured")

    return _supabase_clients[client_type]


def get_storage_credentials(use_service_key=False) -> tuple[str, str]:
    """Returns (storage REST base URL, key) for direct HTTP calls the SDK doesn't cover (streamed uploads)."""
    key = settings.SUPABASE_SERVICE_KEY if use_service_key else settings.SUPABASE_KEY
    if not settings.SUPABASE_URL or not key:
        raise ValueError("Supabase URL or key not configured")
    return f"{settings.SUPABASE_URL.rstrip('/')}/storage/v1", key
