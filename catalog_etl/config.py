"""Runtime settings and category configuration loading."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List

import yaml
from dotenv import load_dotenv

from catalog_etl.models import Category

DEFAULT_BASE_URL = "https://open.data.gov.sa"
DEFAULT_CATEGORIES_PATH = Path(__file__).with_name("categories.yaml")
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def get_database_url() -> str:
    """Get database connection string from environment."""
    if conn_str := os.getenv("DATABASE_URL"):
        return conn_str

    host = os.getenv("PG_HOST", "localhost")
    port = os.getenv("PG_PORT", "5432")
    user = os.getenv("PG_USER", "catalog")
    password = os.getenv("PG_PASS", "catalog")
    database = os.getenv("PG_DB", "catalogdb")

    return f"postgresql://{user}:{password}@{host}:{port}/{database}"


@dataclass
class SyncSettings:
    """Run-wide settings passed to every component of a worker."""

    base_url: str = DEFAULT_BASE_URL
    database_url: str = ""
    page_size: int = 100
    headless: bool = True
    user_agent: str = USER_AGENT
    navigation_timeout_ms: int = 60000
    settle_delay: float = 3.0
    session_ttl: float = 1800.0
    acquire_attempts: int = 3
    delay_between_pages: float = 1.0
    delay_between_categories: float = 2.0
    enrich_min_delay: float = 0.3
    checkpoint_dir: Path = field(default_factory=lambda: Path(".checkpoints"))
    checkpoint_every_categories: int = 1
    checkpoint_every_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.page_size <= 0:
            raise ValueError("page_size must be positive")
        if self.acquire_attempts <= 0:
            raise ValueError("acquire_attempts must be positive")
        self.base_url = self.base_url.rstrip("/")

    @property
    def listing_url(self) -> str:
        return f"{self.base_url}/ar/datasets"

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> "SyncSettings":
        """Build settings from environment variables (and ``.env`` if present)."""
        if dotenv:
            load_dotenv()
        return cls(
            base_url=os.getenv("CATALOG_BASE_URL", DEFAULT_BASE_URL),
            database_url=get_database_url(),
            page_size=_env_int("CATALOG_PAGE_SIZE", 100),
            headless=_env_bool("CATALOG_HEADLESS", True),
            navigation_timeout_ms=_env_int("CATALOG_NAV_TIMEOUT_MS", 60000),
            settle_delay=_env_float("CATALOG_SETTLE_DELAY", 3.0),
            session_ttl=_env_float("CATALOG_SESSION_TTL", 1800.0),
            acquire_attempts=_env_int("CATALOG_ACQUIRE_ATTEMPTS", 3),
            delay_between_pages=_env_float("CATALOG_PAGE_DELAY", 1.0),
            delay_between_categories=_env_float("CATALOG_CATEGORY_DELAY", 2.0),
            enrich_min_delay=_env_float("CATALOG_ENRICH_MIN_DELAY", 0.3),
            checkpoint_dir=Path(os.getenv("CATALOG_CHECKPOINT_DIR", ".checkpoints")),
            checkpoint_every_categories=_env_int("CATALOG_CHECKPOINT_EVERY", 1),
            checkpoint_every_seconds=_env_float("CATALOG_CHECKPOINT_SECONDS", 60.0),
        )


def parse_categories(data: Any) -> List[Category]:
    """Validate raw YAML content into an ordered category list."""
    if isinstance(data, dict):
        data = data.get("categories")
    if not isinstance(data, list):
        raise ValueError("categories file must contain a list of categories")

    categories: List[Category] = []
    seen: set[str] = set()
    for entry in data:
        if isinstance(entry, str):
            entry = {"id": entry}
        category = Category.model_validate(entry)
        if category.id in seen:
            raise ValueError(f"duplicate category id: {category.id}")
        seen.add(category.id)
        categories.append(category)
    return categories


def load_categories(path: str | Path | None = None) -> List[Category]:
    """Read the static category list; defaults to the bundled file."""
    source = Path(path) if path else DEFAULT_CATEGORIES_PATH
    data = yaml.safe_load(source.read_text(encoding="utf-8"))
    return parse_categories(data)


def dump_categories(categories: List[Category], path: str | Path) -> None:
    payload = {
        "categories": [category.model_dump() for category in categories],
    }
    Path(path).write_text(
        yaml.safe_dump(payload, allow_unicode=True, sort_keys=False),
        encoding="utf-8",
    )
