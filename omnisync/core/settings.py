from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import tzinfo
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


class SyncType(str, Enum):
    """What a sync pass pulls from Omnivore."""

    ALL = "all"
    ARTICLES = "articles"
    HIGHLIGHTS = "highlights"


class GroupingPolicy(str, Enum):
    """How highlights are grouped into destination notes."""

    BY_DATE = "byDate"
    BY_ARTICLE = "byArticle"


class LogLevel(str, Enum):
    ERROR_ONLY = "error"
    ERRORS_AND_WARNINGS = "warn"
    DEBUG = "debug"

    def to_logging(self) -> int:
        return {
            LogLevel.ERROR_ONLY: logging.ERROR,
            LogLevel.ERRORS_AND_WARNINGS: logging.WARNING,
            LogLevel.DEBUG: logging.DEBUG,
        }[self]


HIGHLIGHT_TEMPLATE_CHOICES = ("default", "titleQuote", "quoteOnly")


def resolve_timezone(name: str) -> tzinfo | None:
    """Resolve an IANA zone name. 'local' (or empty) means the system zone (None)."""
    if not name or name == "local":
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {name}") from e


@dataclass(frozen=True)
class SyncConfig:
    """Immutable per-pass configuration. Built once at pass start."""

    sync_type: SyncType = SyncType.ALL
    target_folder: str = "Omnivore"
    article_labels: tuple[str, ...] = ()
    highlight_labels: tuple[str, ...] = ()
    grouping: GroupingPolicy = GroupingPolicy.BY_DATE
    highlight_template: str = "default"
    timezone: tzinfo | None = None
    highlight_sync_period_days: int = 14
    highlight_title_prefix: str = "Omnivore Highlights"
    article_retention_days: int = 3
    highlight_retention_days: int = 0  # 0 = never prune
    consolidate_after_sync: bool = True

    @property
    def syncs_articles(self) -> bool:
        return self.sync_type in (SyncType.ALL, SyncType.ARTICLES)

    @property
    def syncs_highlights(self) -> bool:
        return self.sync_type in (SyncType.ALL, SyncType.HIGHLIGHTS)


@dataclass(frozen=True)
class Settings:
    app_env: str
    db_path: str
    log_level: LogLevel
    omnivore_api_key: str
    omnivore_base_url: str
    joplin_token: str
    joplin_base_url: str
    sync_type: str
    sync_interval_minutes: int
    target_folder: str
    article_labels: tuple[str, ...]
    highlight_labels: tuple[str, ...]
    highlight_grouping: str
    highlight_template: str
    user_timezone: str
    highlight_sync_period_days: int
    highlight_title_prefix: str
    article_retention_days: int
    highlight_retention_days: int
    consolidate_after_sync: bool

    @staticmethod
    def from_env() -> "Settings":
        def _b(name: str, default: str) -> bool:
            return os.getenv(name, default).strip() in ("1", "true", "True", "yes", "YES")

        def _i(name: str, default: str) -> int:
            return int(os.getenv(name, default).strip())

        def _list(name: str) -> tuple[str, ...]:
            raw = os.getenv(name, "")
            return tuple(part.strip() for part in raw.split(",") if part.strip())

        return Settings(
            app_env=os.getenv("APP_ENV", "dev").strip(),
            db_path=os.getenv("DB_PATH", "/app/_local/data/omnisync.db").strip(),
            log_level=LogLevel(os.getenv("LOG_LEVEL", "warn").strip()),
            omnivore_api_key=os.getenv("OMNIVORE_API_KEY", "").strip(),
            omnivore_base_url=os.getenv("OMNIVORE_BASE_URL", "https://api-prod.omnivore.app").strip(),
            joplin_token=os.getenv("JOPLIN_TOKEN", "").strip(),
            joplin_base_url=os.getenv("JOPLIN_BASE_URL", "http://localhost:41184").strip(),
            sync_type=os.getenv("SYNC_TYPE", "all").strip(),
            sync_interval_minutes=_i("SYNC_INTERVAL_MINUTES", "0"),
            target_folder=os.getenv("TARGET_FOLDER", "Omnivore").strip(),
            article_labels=_list("ARTICLE_LABELS"),
            highlight_labels=_list("HIGHLIGHT_LABELS"),
            highlight_grouping=os.getenv("HIGHLIGHT_GROUPING", "byDate").strip(),
            highlight_template=os.getenv("HIGHLIGHT_TEMPLATE", "default").strip(),
            user_timezone=os.getenv("USER_TIMEZONE", "local").strip(),
            highlight_sync_period_days=_i("HIGHLIGHT_SYNC_PERIOD_DAYS", "14"),
            highlight_title_prefix=os.getenv("HIGHLIGHT_TITLE_PREFIX", "Omnivore Highlights").strip(),
            article_retention_days=_i("ARTICLE_RETENTION_DAYS", "3"),
            highlight_retention_days=_i("HIGHLIGHT_RETENTION_DAYS", "0"),
            consolidate_after_sync=_b("CONSOLIDATE_AFTER_SYNC", "1"),
        )

    def sync_config(self) -> SyncConfig:
        """Validate and freeze the settings a sync pass runs with.

        Raises:
            ValueError: If any sync setting is invalid.
        """
        if self.highlight_template not in HIGHLIGHT_TEMPLATE_CHOICES:
            raise ValueError(f"Unknown highlight template: {self.highlight_template}")
        if not self.target_folder:
            raise ValueError("Target folder name is required")
        if not self.highlight_title_prefix:
            raise ValueError("Highlight title prefix is required")

        return SyncConfig(
            sync_type=SyncType(self.sync_type),
            target_folder=self.target_folder,
            article_labels=self.article_labels,
            highlight_labels=self.highlight_labels,
            grouping=GroupingPolicy(self.highlight_grouping),
            highlight_template=self.highlight_template,
            timezone=resolve_timezone(self.user_timezone),
            highlight_sync_period_days=self.highlight_sync_period_days,
            highlight_title_prefix=self.highlight_title_prefix,
            article_retention_days=self.article_retention_days,
            highlight_retention_days=self.highlight_retention_days,
            consolidate_after_sync=self.consolidate_after_sync,
        )
