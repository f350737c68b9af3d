import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

# Database Configuration
DB_CONFIG = {
    'host': os.getenv('DB_HOST', 'localhost'),
    'port': os.getenv('DB_PORT', '5432'),
    'database': os.getenv('DB_NAME'),
    'user': os.getenv('DB_USER', 'postgres'),
    'password': os.getenv('DB_PASSWORD')
}

# OpenAI Configuration
OPENAI_API_KEY = os.getenv('OPENAI_API_KEY')

# Upstream feedback source
FEEDBACK_API_BASE = os.getenv('FEEDBACK_API_BASE', 'https://web-api.rela.me/feedback/feishu')

# Table names
FEEDBACK_TABLE = 'feedback'
ANALYSIS_CACHE_TABLE = 'ai_analysis_cache'

# Output directory
OUTPUT_DIR = 'outputs'

# Fetch settings
MAX_DAYS_PER_CHUNK = 3  # Keeps each upstream request under its 1000-row cap
FETCH_CONCURRENCY = 5
UPSTREAM_TIMEOUT = 30.0

# Analysis settings
ANALYSIS_CHUNK_SIZE = 30  # Items per AI call
ANALYSIS_CONCURRENCY = 10  # Parallel AI calls
ANALYSIS_CACHE_SIZE = 5000
ANALYSIS_CACHE_TTL_HOURS = 24

# Query cache settings
QUERY_CACHE_SIZE = 10
QUERY_CACHE_TTL_SECONDS = 5 * 60


@dataclass
class DatabaseConfig:
    """Database configuration."""
    host: str
    port: int
    database: str
    user: str
    password: Optional[str] = None


@dataclass
class UpstreamConfig:
    """Upstream feedback API configuration."""
    base_url: str = FEEDBACK_API_BASE
    timeout: float = UPSTREAM_TIMEOUT
    max_days_per_chunk: int = MAX_DAYS_PER_CHUNK
    concurrency: int = FETCH_CONCURRENCY
    max_retries: int = 2  # Transport errors only
    retry_delay: float = 1.0


@dataclass
class PipelineConfig:
    """Enrichment and caching configuration."""
    analysis_chunk_size: int = ANALYSIS_CHUNK_SIZE
    analysis_concurrency: int = ANALYSIS_CONCURRENCY
    analysis_cache_size: int = ANALYSIS_CACHE_SIZE
    analysis_cache_ttl_hours: float = ANALYSIS_CACHE_TTL_HOURS
    query_cache_size: int = QUERY_CACHE_SIZE
    query_cache_ttl_seconds: float = QUERY_CACHE_TTL_SECONDS
    require_ai: bool = True


def load_database_config() -> Optional[DatabaseConfig]:
    """Create database config from environment variables, or None when no database is set."""
    if not DB_CONFIG['database']:
        return None

    return DatabaseConfig(
        host=DB_CONFIG['host'],
        port=int(DB_CONFIG['port']),
        database=DB_CONFIG['database'],
        user=DB_CONFIG['user'],
        password=DB_CONFIG['password']
    )


def load_upstream_config() -> UpstreamConfig:
    """Create upstream config from environment variables."""
    return UpstreamConfig(
        base_url=os.getenv('FEEDBACK_API_BASE', FEEDBACK_API_BASE),
        timeout=float(os.getenv('UPSTREAM_TIMEOUT', str(UPSTREAM_TIMEOUT))),
        max_days_per_chunk=int(os.getenv('MAX_DAYS_PER_CHUNK', str(MAX_DAYS_PER_CHUNK))),
        concurrency=int(os.getenv('FETCH_CONCURRENCY', str(FETCH_CONCURRENCY))),
        max_retries=int(os.getenv('UPSTREAM_MAX_RETRIES', '2')),
        retry_delay=float(os.getenv('UPSTREAM_RETRY_DELAY', '1.0'))
    )


def load_pipeline_config() -> PipelineConfig:
    """Create pipeline config from environment variables."""
    return PipelineConfig(
        analysis_chunk_size=int(os.getenv('ANALYSIS_CHUNK_SIZE', str(ANALYSIS_CHUNK_SIZE))),
        analysis_concurrency=int(os.getenv('ANALYSIS_CONCURRENCY', str(ANALYSIS_CONCURRENCY))),
        analysis_cache_size=int(os.getenv('ANALYSIS_CACHE_SIZE', str(ANALYSIS_CACHE_SIZE))),
        analysis_cache_ttl_hours=float(os.getenv('ANALYSIS_CACHE_TTL_HOURS', str(ANALYSIS_CACHE_TTL_HOURS))),
        query_cache_size=int(os.getenv('QUERY_CACHE_SIZE', str(QUERY_CACHE_SIZE))),
        query_cache_ttl_seconds=float(os.getenv('QUERY_CACHE_TTL_SECONDS', str(QUERY_CACHE_TTL_SECONDS))),
        require_ai=os.getenv('REQUIRE_AI', 'true').lower() != 'false'
    )
