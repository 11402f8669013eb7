"""Configuration loading and validation."""

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlsplit

from dotenv import load_dotenv


@dataclass
class Config:
    api_key: str
    portal_url: str
    chunk_size: int = 50
    page_size: int = 100
    max_retries: int = 4
    backoff_base: float = 5.0
    single_fetch_retries: int = 3
    single_fetch_delay: float = 2.0
    member_role: str = "member"
    timeout: float = 30.0
    log_level: str = "INFO"
    output_dir: Path = field(default_factory=lambda: Path("output"))
    db_path: Path | None = None

    @property
    def base_url(self) -> str:
        """Portal URL reduced to scheme and host."""
        url = self.portal_url.rstrip("/")
        parts = urlsplit(url)
        if parts.scheme and parts.netloc:
            return f"{parts.scheme}://{parts.netloc}"
        return url

    @property
    def subscriptions_endpoint(self) -> str:
        return f"{self.base_url}/api/v2/subscriptions"

    @property
    def log_file(self) -> Path:
        return self.output_dir / "chargebee_sync.log"

    @property
    def progress_db(self) -> Path:
        return self.output_dir / "sync_progress.db"

    @property
    def member_db(self) -> Path:
        return self.db_path or self.output_dir / "members.db"


def load_config() -> Config:
    """Load configuration from environment variables (.env file supported)."""
    load_dotenv()

    api_key = os.environ.get("CHARGEBEE_API_KEY", "").strip()
    portal_url = os.environ.get("CHARGEBEE_PORTAL_URL", "").strip()

    if not api_key:
        print("Error: CHARGEBEE_API_KEY environment variable is not set.")
        print("Set it in a .env file or export it in your shell.")
        sys.exit(1)

    if not portal_url:
        print("Error: CHARGEBEE_PORTAL_URL environment variable is not set.")
        print("Set it in a .env file or export it in your shell.")
        sys.exit(1)

    db_path = os.environ.get("CHARGEBEE_DB_PATH", "").strip()

    return Config(
        api_key=api_key,
        portal_url=portal_url,
        chunk_size=max(int(os.environ.get("CHARGEBEE_CHUNK_SIZE", "50")), 1),
        page_size=min(int(os.environ.get("CHARGEBEE_PAGE_SIZE", "100")), 100),
        max_retries=max(int(os.environ.get("CHARGEBEE_MAX_RETRIES", "4")), 1),
        backoff_base=float(os.environ.get("CHARGEBEE_BACKOFF_BASE", "5")),
        single_fetch_retries=max(int(os.environ.get("CHARGEBEE_SINGLE_FETCH_RETRIES", "3")), 1),
        single_fetch_delay=float(os.environ.get("CHARGEBEE_SINGLE_FETCH_DELAY", "2")),
        member_role=os.environ.get("CHARGEBEE_MEMBER_ROLE", "member").strip(),
        timeout=float(os.environ.get("CHARGEBEE_TIMEOUT", "30")),
        log_level=os.environ.get("CHARGEBEE_LOG_LEVEL", "INFO").upper(),
        output_dir=Path(os.environ.get("CHARGEBEE_OUTPUT_DIR", "output")),
        db_path=Path(db_path) if db_path else None,
    )
