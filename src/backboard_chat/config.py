"""Central configuration for endpoints, paths and timings."""

import os
from pathlib import Path

# Upstream API (override with BACKBOARD_API_BASE env var)
API_BASE = os.environ.get("BACKBOARD_API_BASE", "https://app.backboard.io/api")
API_KEY_ENV = "BACKBOARD_API_KEY"
API_KEY_HEADER = "X-API-Key"
API_KEY_PLACEHOLDER = "your_api_key_here"

# Data directory (override with BACKBOARD_CHAT_DATA_DIR env var)
DATA_DIR = Path(
    os.environ.get("BACKBOARD_CHAT_DATA_DIR", str(Path.home() / ".backboard-chat"))
)
TITLES_DB_PATH = DATA_DIR / "titles.db"

# Timings (seconds)
POLL_INTERVAL = float(os.environ.get("BACKBOARD_POLL_INTERVAL", "2.0"))
STREAM_READ_TIMEOUT = float(os.environ.get("BACKBOARD_STREAM_TIMEOUT", "60.0"))
REQUEST_TIMEOUT = 30.0

# Chat defaults
DEFAULT_LLM_PROVIDER = "openai"
DEFAULT_MODEL_NAME = "gpt-4o"
DEFAULT_MEMORY_MODE = "auto"

# Titles
TITLE_MAX_CHARS = 40

# Model catalog search (per-provider pages, capped extra pages per provider)
MODEL_SEARCH_BATCH_SIZE = 500
MODEL_SEARCH_MAX_EXTRA_BATCHES = 10
MODEL_SEARCH_LIMIT = 50
THREAD_LIST_LIMIT = 100
