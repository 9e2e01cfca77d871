"""Configuration settings for the post sync service."""
from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings."""

    # Supabase
    supabase_url: str = ""
    supabase_service_key: str = ""
    sync_user_id: Optional[str] = None

    # Source
    source: str = "nate_substack"
    namespace: str = "nate"
    feed_url: str = ""
    feed_auth_cookie: Optional[str] = None
    feed_cookie_name: str = "substack.sid"
    feed_user_agent: str = "Mozilla/5.0 (compatible; PostSyncBot/1.0)"
    feed_request_timeout: int = 30

    # Browser (Chrome started with --remote-debugging-port)
    browser_host: str = "127.0.0.1"
    browser_port: int = 9222
    browser_command_timeout: float = 30.0
    browser_discovery_timeout: float = 5.0
    browser_settle_seconds: float = 4.0

    # HTML Extraction Settings
    default_author: str = "Nate"
    link_context_chars: int = 200
    link_exclude_pattern: str = r"substack\.com/(subscribe|signin|account)|/subscribe(\?|$)"

    # Chunking Settings (in words)
    chunk_size: int = 800
    chunk_overlap_ratio: float = 0.1
    chunk_tail_discard: Optional[int] = None  # defaults to 2 x overlap
    link_match_chars: int = 50

    # Embedding Settings
    embedding_api_url: str = "https://api.openai.com/v1"
    embedding_api_key: str = ""
    embedding_model: str = "text-embedding-3-large"
    embedding_batch_size: int = 100
    embedding_timeout: int = 60
    embedding_max_retries: int = 3
    embedding_retry_delay: float = 1.0

    # Vector Index Settings
    pinecone_api_key: str = ""
    pinecone_host: str = ""
    pinecone_api_version: str = "2024-07"
    upsert_batch_size: int = 100
    vector_index_timeout: int = 30
    content_preview_chars: int = 1000
    links_preview_chars: int = 4000

    # Worker Configuration
    item_delay_seconds: float = 2.0
    item_timeout_seconds: float = 180.0
    backup_dir: Optional[str] = None
    log_level: str = "info"

    class Config:
        env_file = ".env"
        case_sensitive = False

    def missing_credentials(self, dry_run: bool = False) -> List[str]:
        """Names of required settings that are empty for this kind of run."""
        required = ["feed_url", "supabase_url", "supabase_service_key"]
        if not dry_run:
            required += ["embedding_api_key", "pinecone_api_key", "pinecone_host"]
        return [name.upper() for name in required if not getattr(self, name)]


settings = Settings()
