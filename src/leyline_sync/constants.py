"""Constants for leyline-sync."""

# Per-target state directory (inside the synced docs directory)
STATE_DIR = ".leyline-sync"
STATE_FILE = "state.json"
STATE_SCHEMA_VERSION = 1

# Project configuration file (at the project root)
CONFIG_FILE = ".leyline"
DEFAULT_DOCS_PATH = "docs/leyline"

# Corpus layout
DEFAULT_REPOSITORY = "https://github.com/phrazzld/leyline.git"
DEFAULT_REFERENCE = "master"
CORE_CATEGORY = "core"
TENETS_DIR = "tenets"
CORE_BINDINGS_DIR = "bindings/core"
CATEGORY_BINDINGS_DIR = "bindings/categories"

# Cache tuning
DEFAULT_CACHE_THRESHOLD = 0.8
DEFAULT_FETCH_WORKERS = 4
DEFAULT_FETCH_TIMEOUT = 30.0

# Version
TOOL_VERSION = "0.1.0"
