# config.example.py

"""
Documentation-only module (safe to commit).

The real configuration is loaded from environment variables (optionally via a local .env file).
Do NOT commit real keys. Put them in .env (local, gitignored).

This file exists to make the repo self-documenting even without opening .env.example.
"""

ENV_VARS = {
    # App / logging
    "TASKMARK_APP_NAME": "App display name (default: taskmark).",
    "TASKMARK_LOG_LEVEL": "Console logging level (default: INFO). The log file always gets DEBUG.",
    # Backend
    "TASKMARK_SUPABASE_URL": "Supabase project URL (falls back to SUPABASE_URL).",
    "TASKMARK_SUPABASE_ANON_KEY": "Supabase anon (public) key (falls back to SUPABASE_ANON_KEY).",
    "TASKMARK_HTTP_TIMEOUT_SECONDS": "Timeout for auth/REST calls (default: 30).",
    # Realtime
    "TASKMARK_REALTIME_ENABLED": "Subscribe to row changes pushed by the backend (true/false, default: true).",
    "TASKMARK_REALTIME_HEARTBEAT_SECONDS": "Channel heartbeat interval (default: 25).",
    "TASKMARK_REALTIME_RECONNECT_SECONDS": "Delay before reconnecting a dropped channel (default: 5).",
    # Store policies
    "TASKMARK_INSERT_POLICY": (
        "optimistic (show a created row as soon as the server returns it) or realtime "
        "(wait for the pushed change). realtime falls back to optimistic when realtime is disabled."
    ),
    "TASKMARK_FILTER_MODE": "client (filter the cached rows) or server (re-query on every filter change).",
    # Paths (gitignored)
    "TASKMARK_DATA_DIR": "Local data directory, also holds taskmark.log (default: .local/taskmark).",
    "TASKMARK_SESSION_PATH": "Saved auth session JSON (default: <data_dir>/session.json).",
}
