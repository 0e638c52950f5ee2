"""Configuration module for the mention graph engine."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from mention_graph import __version__

# Project root .env, anchored to __file__ so it works regardless of the CWD
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config
_USER_ENV = Path.home() / ".mention_graph" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class MentionGraphConfig(BaseModel):
    """Configuration for the mention graph engine."""

    # Base directory for the project
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("MENTION_GRAPH_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("MENTION_GRAPH_DATABASE_PATH", "data/db/mention_graph.db")
        )
    )
    # When True, uses an in-memory SQLite database shared by all threads
    # of the process. Useful for demos; the index does not survive restarts.
    in_memory_db: bool = Field(
        default_factory=lambda: _env_flag("MENTION_GRAPH_IN_MEMORY_DB", "false")
    )
    # Upper bound on how long one resolution lookup may block a write.
    # Mentions whose lookup exceeds it are stored as dangling.
    resolve_timeout_seconds: float = Field(
        default_factory=lambda: float(
            os.getenv("MENTION_GRAPH_RESOLVE_TIMEOUT", "5.0")
        )
    )
    resolver_max_workers: int = Field(
        default_factory=lambda: int(os.getenv("MENTION_GRAPH_RESOLVER_WORKERS", "4"))
    )
    # Content longer than this is rejected at the MCP boundary
    max_content_length: int = Field(
        default_factory=lambda: int(
            os.getenv("MENTION_GRAPH_MAX_CONTENT_LENGTH", "1000000")
        )
    )
    # Server configuration
    server_name: str = Field(
        default=os.getenv("MENTION_GRAPH_SERVER_NAME", "mention-graph")
    )
    server_version: str = Field(default=__version__)
    # Log directory (None means ~/.mention_graph/logs)
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("MENTION_GRAPH_LOG_DIR"))
            if os.getenv("MENTION_GRAPH_LOG_DIR")
            else None
        )
    )

    @model_validator(mode="after")
    def _validate_limits(self) -> "MentionGraphConfig":
        """Reject limits that would make resolution or the server unusable."""
        if self.resolve_timeout_seconds <= 0:
            raise ValueError("resolve_timeout_seconds must be > 0")
        if self.resolver_max_workers < 1:
            raise ValueError("resolver_max_workers must be >= 1")
        if self.max_content_length < 1:
            raise ValueError("max_content_length must be >= 1")
        if self.resolve_timeout_seconds > 60:
            logger.warning(
                "resolve_timeout_seconds=%.1f is very high; a slow lookup can "
                "block content writes for that long.",
                self.resolve_timeout_seconds,
            )
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        if self.in_memory_db:
            return "sqlite:///:memory:"
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"


# Create a global config instance
config = MentionGraphConfig()
