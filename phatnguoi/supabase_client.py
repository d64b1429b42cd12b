"""
Supabase client for the worker.

Uses the SERVICE_ROLE key: the worker writes lookup history and job run
times for every user, so it must bypass RLS. Never expose this key to the
Telegram or REST clients.
"""

from supabase import create_client, Client
from phatnguoi.config import settings

supabase: Client = create_client(settings.supabase_url, settings.supabase_service_role_key)
