# config.example.py

"""
Documentation-only module (safe to commit).

The real configuration is loaded from environment variables (optionally via a local .env file).
Keep machine-specific values in .env (local, gitignored).

This file exists to make the repo self-documenting even without opening .env.
"""

ENV_VARS = {
    # App / logging
    "TASKMIRROR_APP_NAME": "App display name (default: taskmirror).",
    "TASKMIRROR_LOG_LEVEL": "Console logging level (default: INFO).",
    # Identity
    "TASKMIRROR_USER_ID": "Authenticated user id; scopes remote paths and local fallback keys.",
    "TASKMIRROR_MULTI_USER": (
        "Use users/{uid}/... paths (default: true when a user id is set, "
        "otherwise the legacy top-level layout)."
    ),
    # Paths (gitignored)
    "TASKMIRROR_DATA_DIR": "Local data directory (default: .local/taskmirror).",
    "TASKMIRROR_FALLBACK_DB_PATH": "Fallback SQLite path (default: <data_dir>/fallback.sqlite3).",
    "TASKMIRROR_REMOTE_SNAPSHOT_PATH": (
        "JSON file backing the in-process demo store (default: <data_dir>/remote_documents.json)."
    ),
    # Sync tuning
    "TASKMIRROR_QUIET_PERIOD_SECONDS": "Debounce quiet period for text edits (default: 2).",
    "TASKMIRROR_IDLE_SAVE_INTERVAL_SECONDS": "Idling flush interval (default: 900).",
    "TASKMIRROR_IDLE_MIN_FLUSH_SECONDS": "Minimum idling before a periodic flush (default: 30).",
    "TASKMIRROR_PROBE_INTERVAL_SECONDS": "Quota recovery probe interval (default: 60).",
    "TASKMIRROR_CANARY_PATH": "Document used by the recovery probe (default: test/write-permission).",
}
