import os
from supabase import Client, ClientOptions, create_client

from nearhelp.core.presence_config import STORE_TIMEOUT_SECONDS

_SUPABASE: Client | None = None

def supabase_admin() -> Client:
    global _SUPABASE
    if _SUPABASE is not None:
        return _SUPABASE

    url = os.environ.get("SUPABASE_URL")
    key = os.environ.get("SUPABASE_SERVICE_ROLE_KEY")
    if not url or not key:
        raise RuntimeError("Missing SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY")

    # the store wraps every call in its own timeout too; this one stops the
    # worker thread from hanging on a dead socket
    _SUPABASE = create_client(
        url,
        key,
        options=ClientOptions(postgrest_client_timeout=STORE_TIMEOUT_SECONDS),
    )
    return _SUPABASE
