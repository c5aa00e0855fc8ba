"""Constants for TierConvert."""

from tierconvert import __version__

# Application constants
USER_AGENT = f"TierConvert/{__version__}"

# Default paths
DEFAULT_LOG_DIR = ".logs"
DEFAULT_CONFIG_FILE = "tierconvert.yaml"

MB = 1024 * 1024

# Orchestrator defaults
DEFAULT_MAX_FALLBACK_ATTEMPTS = 3
DEFAULT_TIER_SELECTION_TIMEOUT = 10.0

# Capability scoring
DEFAULT_ENGINE_WEIGHT = 0.5
DEFAULT_CANVAS_WEIGHT = 0.3
DEFAULT_NETWORK_WEIGHT = 0.2
DEFAULT_ENGINE_THRESHOLD = 0.6
DEFAULT_CANVAS_THRESHOLD = 0.3
NETWORK_AVAILABLE_SCORE = 0.8
NETWORK_UNAVAILABLE_SCORE = 0.2
DEFAULT_PROBE_TIMEOUT = 5.0
# Benchmark durations at or beyond these count as zero performance
CANVAS_BENCHMARK_BUDGET = 1.0
ENGINE_BENCHMARK_BUDGET = 2.0
SKIPPED_BENCHMARK_SCORE = 0.5

# Engine (headless Chromium) defaults
DEFAULT_ENGINE_MAX_FILE_SIZE = 50 * MB
DEFAULT_ENGINE_TIMEOUT = 60.0
DEFAULT_PAGE_LOAD_TIMEOUT = 30.0

# Process pool defaults
DEFAULT_POOL_MAX_INSTANCES = 3
DEFAULT_POOL_IDLE_TIMEOUT = 300.0
DEFAULT_POOL_SWEEP_INTERVAL = 60.0
DEFAULT_LAUNCH_TIMEOUT = 30.0
DEFAULT_KILL_TIMEOUT = 5.0
DEFAULT_COMMAND_TIMEOUT = 30.0

# Canvas (Pillow) defaults
DEFAULT_CANVAS_MAX_FILE_SIZE = 10 * MB
DEFAULT_CANVAS_WIDTH = 1240
DEFAULT_CANVAS_PAGE_HEIGHT = 1754
DEFAULT_CANVAS_MARGIN = 60
DEFAULT_CANVAS_FONT_SIZE = 18
DEFAULT_CANVAS_MAX_HEIGHT = 20000

# Markup defaults
DEFAULT_MARKUP_MAX_FILE_SIZE = 10 * MB

# Remote service defaults
DEFAULT_REMOTE_MAX_FILE_SIZE = 25 * MB
DEFAULT_REMOTE_TIMEOUT = 45.0
DEFAULT_REMOTE_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 1.0
DEFAULT_RETRY_MAX_DELAY = 10.0
DEFAULT_RETRY_JITTER = 0.1
DEFAULT_HEALTH_CHECK_INTERVAL = 300.0
DEFAULT_HEALTH_CHECK_TIMEOUT = 5.0
DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_HEALTH_CACHE_TTL = 600.0
DEGRADED_SUCCESS_RATE = 0.7

# Streaming defaults
DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_MAX_BUFFERED_CHUNKS = 4

# Memory pressure
DEFAULT_MEMORY_THRESHOLD = 0.85

# Output formats and their MIME types
FORMAT_MIME_TYPES = {
    "pdf": "application/pdf",
    "png": "image/png",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "mhtml": "multipart/related",
    "html": "text/html",
}

# Format aliases accepted from callers
FORMAT_ALIASES = {
    "jpg": "jpeg",
    "htm": "html",
    "mht": "mhtml",
    "image": "png",
}

# Remote service category per output format
FORMAT_CATEGORIES = {
    "pdf": "pdf",
    "png": "image",
    "jpeg": "image",
    "webp": "image",
    "mhtml": "mhtml",
}

# Default output format per remote service category
CATEGORY_FORMATS = {
    "pdf": "pdf",
    "image": "png",
    "mhtml": "mhtml",
}

FILE_EXTENSIONS = {
    "pdf": ".pdf",
    "png": ".png",
    "jpeg": ".jpg",
    "webp": ".webp",
    "mhtml": ".mhtml",
    "html": ".html",
}
