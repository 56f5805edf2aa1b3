# config.example.py

"""
Documentation-only module (safe to commit).

The real configuration is loaded from environment variables (optionally via a local .env file).
Do NOT commit real secrets. Use .env (local, gitignored).

This file exists to make the repo self-documenting even without opening .env.
"""

ENV_VARS = {
    # App / logging
    "SMART_APP_NAME": "App display name (default: smart-planner).",
    "SMART_LOG_LEVEL": "Console logging level (default: INFO).",
    # Paths (gitignored)
    "SMART_DATA_DIR": "Local data directory (default: .local/smart).",
    "SMART_TASKS_DB_PATH": "TaskStore SQLite path (default: <data_dir>/tasks.sqlite3).",
    # Optimizer tuning
    "SMART_DEFAULT_TASK_MINUTES": "Duration of a task without a requested end (default: 30).",
    "SMART_BREAK_MINUTES_HIGH": "Break after a high-priority task (default: 10).",
    "SMART_BREAK_MINUTES_MEDIUM": "Break after a medium-priority task (default: 15).",
    "SMART_BREAK_MINUTES_LOW": "Break after a low-priority task (default: 20).",
    "SMART_BREAK_FALLBACK_MINUTES": "Gap used when the travel estimate fails (default: 15).",
    "SMART_HISTORY_LIMIT": "Completed tasks consulted for preference/performance (default: 10).",
    # Timeouts
    "SMART_ORACLE_TIMEOUT_SECONDS": "Timeout for importance/travel lookups (default: 3).",
    "SMART_STORE_TIMEOUT_SECONDS": "Timeout for task store calls (default: 5).",
    "SMART_SHUTDOWN_GRACE_SECONDS": "How long stop() waits for in-flight notifications (default: 10).",
    # Importance oracle (OpenAI-compatible)
    "SMART_LLM_ENABLED": "Use the model-backed importance oracle (true/false, default: true).",
    "SMART_LLM_API_KEY": "API key (falls back to OPENAI_API_KEY). Missing => offline keyword oracle.",
    "SMART_LLM_BASE_URL": "Base URL (default: https://api.openai.com/v1).",
    "SMART_LLM_MODELS": "Comma/space separated list of models to try in order.",
    "SMART_APP_TITLE": "Optional X-Title metadata header.",
    # Travel oracle
    "SMART_TRAVEL_API_KEY": "Distance-matrix API key (falls back to GOOGLE_MAPS_API_KEY). "
                            "Missing => straight-line estimate.",
    "SMART_TRAVEL_BASE_URL": "Distance-matrix endpoint.",
    "SMART_TRAVEL_MODE": "Travel mode (default: driving).",
    # Notifications
    "SMART_NOTIFY_WEBHOOK_URL": "Push-gateway webhook. Missing => notifications are printed.",
}
