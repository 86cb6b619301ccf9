"""Environment-driven settings."""

import os
from pathlib import Path

DATABASE_PATH = os.getenv("DATABASE_PATH", "./data/automations.db")

# Extra block definitions loaded on top of the built-in set
BLOCKS_PATH = os.getenv("BLOCKS_PATH")
BUILTIN_BLOCKS_DIR = Path(__file__).resolve().parent / "catalog" / "builtin"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Graph traversal
GRAPH_MAX_DEPTH = int(os.getenv("GRAPH_MAX_DEPTH", "128"))

# Sandbox limits
SCRIPT_MAX_OPERATIONS = int(os.getenv("SCRIPT_MAX_OPERATIONS", "100000"))
SCRIPT_MAX_CALL_DEPTH = int(os.getenv("SCRIPT_MAX_CALL_DEPTH", "64"))
SCRIPT_MAX_MODULES = int(os.getenv("SCRIPT_MAX_MODULES", "10"))
SCRIPT_MAX_STRING_SIZE = int(os.getenv("SCRIPT_MAX_STRING_SIZE", "10000"))
SCRIPT_MAX_COLLECTION_SIZE = int(os.getenv("SCRIPT_MAX_COLLECTION_SIZE", "1000"))
SCRIPT_TIMEOUT_MS = int(os.getenv("SCRIPT_TIMEOUT_MS", "1000"))  # 1 second
