"""Personal task and bookmark manager backed by Supabase."""

__version__ = "0.1.0"
