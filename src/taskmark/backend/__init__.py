"""Supabase Auth, PostgREST and Realtime adapters."""
