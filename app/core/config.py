import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    try:
        return float(value)
    except ValueError:
        return default


_SUPABASE_URL = os.getenv('SUPABASE_URL')
_SUPABASE_KEY = os.getenv('SUPABASE_KEY')
_DATABASE_URL = os.getenv('DATABASE_URL')

_ANTHROPIC_API_KEY = os.getenv('ANTHROPIC_API_KEY') or os.getenv('CLAUDE_API_KEY')

_CLAUDE_MODEL_PRIMARY = os.getenv('CLAUDE_MODEL_PRIMARY') or os.getenv('CLAUDE_MODEL', 'claude-sonnet-4-5-20250929')
_CLAUDE_MODEL_FALLBACKS = [
    model.strip()
    for model in os.getenv('CLAUDE_MODEL_FALLBACKS', 'claude-3-5-haiku-20241022').split(',')
    if model.strip()
]
_CLAUDE_MODEL_OPTIONS = [_CLAUDE_MODEL_PRIMARY] + [m for m in _CLAUDE_MODEL_FALLBACKS if m and m != _CLAUDE_MODEL_PRIMARY]

_OPENAI_API_KEY = os.getenv('OPENAI_API_KEY')
_EMBEDDING_MODEL = os.getenv('EMBEDDING_MODEL', 'text-embedding-3-small')

_RESEND_API_KEY = os.getenv('RESEND_API_KEY')
_NOTIFICATION_FROM_EMAIL = os.getenv('NOTIFICATION_FROM_EMAIL', 'Chatbot Builder <notifications@example.com>')
_DASHBOARD_URL = os.getenv('DASHBOARD_URL', 'http://localhost:5000/dashboard')


class Config:
    """Central configuration for the knowledge service."""

    SUPABASE_URL = _SUPABASE_URL
    SUPABASE_KEY = _SUPABASE_KEY
    DATABASE_URL = _DATABASE_URL

    ANTHROPIC_API_KEY = _ANTHROPIC_API_KEY

    CLAUDE_MODEL_PRIMARY = _CLAUDE_MODEL_PRIMARY
    CLAUDE_MODEL_FALLBACKS = _CLAUDE_MODEL_FALLBACKS
    CLAUDE_MODEL = _CLAUDE_MODEL_PRIMARY
    CLAUDE_MODEL_OPTIONS = _CLAUDE_MODEL_OPTIONS
    LLM_TIMEOUT_SECONDS = _env_float('LLM_TIMEOUT_SECONDS', 30.0)
    LLM_MAX_TOKENS = _env_int('LLM_MAX_TOKENS', 1024)

    OPENAI_API_KEY = _OPENAI_API_KEY
    EMBEDDING_MODEL = _EMBEDDING_MODEL
    # Live chat answers must not wait long on the embedding provider
    EMBEDDING_TIMEOUT_SECONDS = _env_float('EMBEDDING_TIMEOUT_SECONDS', 5.0)
    INDEX_EMBEDDING_TIMEOUT_SECONDS = _env_float('INDEX_EMBEDDING_TIMEOUT_SECONDS', 30.0)

    # Answer resolution
    SIMILARITY_THRESHOLD = _env_float('SIMILARITY_THRESHOLD', 0.85)
    RETRIEVAL_MIN_CHUNKS = _env_int('RETRIEVAL_MIN_CHUNKS', 3)
    RETRIEVAL_MAX_CHUNKS = _env_int('RETRIEVAL_MAX_CHUNKS', 8)
    RETRIEVAL_SEMANTIC_WEIGHT = _env_float('RETRIEVAL_SEMANTIC_WEIGHT', 0.7)
    CONTEXT_MAX_CHARS = _env_int('CONTEXT_MAX_CHARS', 12000)
    FALLBACK_CONTEXT_MAX_CHARS = _env_int('FALLBACK_CONTEXT_MAX_CHARS', 30000)
    HISTORY_MAX_TURNS = _env_int('HISTORY_MAX_TURNS', 10)

    # Chunking
    CHUNK_MAX_SIZE = _env_int('CHUNK_MAX_SIZE', 800)
    CHUNK_MIN_SIZE = _env_int('CHUNK_MIN_SIZE', 200)
    CHUNK_OVERLAP = _env_int('CHUNK_OVERLAP', 100)

    # Indexing
    CRAWL_CONCURRENCY = _env_int('CRAWL_CONCURRENCY', 3)
    EMBEDDING_CONCURRENCY = _env_int('EMBEDDING_CONCURRENCY', 4)
    CRAWL_TIMEOUT_SECONDS = _env_float('CRAWL_TIMEOUT_SECONDS', 30.0)
    CRAWL_MAX_CHARS = _env_int('CRAWL_MAX_CHARS', 50000)
    CRAWL_MAX_BYTES = _env_int('CRAWL_MAX_BYTES', 2_000_000)
    INDEXING_POLL_INTERVAL_SECONDS = _env_float('INDEXING_POLL_INTERVAL_SECONDS', 3.0)
    INDEXING_JOBS_PER_POLL = _env_int('INDEXING_JOBS_PER_POLL', 5)

    # Background loops (indexing worker + reindex scheduler) run inside the API process
    BACKGROUND_WORKERS_ENABLED = os.getenv('BACKGROUND_WORKERS_ENABLED', 'true').lower() == 'true'

    # Scheduling
    SCHEDULER_POLL_INTERVAL_SECONDS = _env_float('SCHEDULER_POLL_INTERVAL_SECONDS', 60.0)
    SCHEDULER_BATCH_SIZE = _env_int('SCHEDULER_BATCH_SIZE', 5)

    # Notifications
    RESEND_API_KEY = _RESEND_API_KEY
    NOTIFICATION_FROM_EMAIL = _NOTIFICATION_FROM_EMAIL
    DASHBOARD_URL = _DASHBOARD_URL

    BASE_DIR = Path(__file__).resolve().parent.parent.parent


settings = Config()
