"""Watermark and dedup ledgers carried between sync passes."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _parse_dt(value: str) -> datetime:
    if not isinstance(value, str):
        raise TypeError(f"expected a timestamp string, got {type(value).__name__}")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class SyncedArticleRecord:
    id: str
    saved_at: datetime


@dataclass
class SyncState:
    """Watermark plus the article and highlight ledgers.

    Loaded once at pass start and saved once at pass end. The article
    ledger is pruned by age; the highlight ledger, keyed by group key,
    only when a highlight retention window is configured.
    """

    watermark: datetime = EPOCH
    articles: dict[str, SyncedArticleRecord] = field(default_factory=dict)
    highlights: dict[str, list[str]] = field(default_factory=dict)
    _highlight_ids: dict[str, set[str]] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._highlight_ids = {key: set(ids) for key, ids in self.highlights.items()}

    def get_watermark(self) -> datetime:
        return self.watermark

    def advance_watermark(self, candidate: datetime) -> datetime:
        """Move the watermark to `candidate` if later. Never moves it back."""
        if candidate > self.watermark:
            self.watermark = candidate
        return self.watermark

    # --- articles ---

    def is_article_synced(self, article_id: str) -> bool:
        return article_id in self.articles

    def record_article_synced(self, article_id: str, saved_at: datetime) -> None:
        if article_id not in self.articles:
            self.articles[article_id] = SyncedArticleRecord(id=article_id, saved_at=saved_at)

    def prune_articles(self, retention_days: int, now: datetime | None = None) -> int:
        """Drop article records saved more than `retention_days` ago.

        Only the records go; the notes stay. Returns the number removed.
        """
        threshold = (now or datetime.now(timezone.utc)) - timedelta(days=retention_days)
        before = len(self.articles)
        self.articles = {
            article_id: record
            for article_id, record in self.articles.items()
            if record.saved_at >= threshold
        }
        removed = before - len(self.articles)
        logger.debug(f"Pruned article ledger. Kept {len(self.articles)} out of {before}")
        return removed

    # --- highlights ---

    def is_highlight_synced(self, group_key: str, highlight_id: str) -> bool:
        return highlight_id in self._highlight_ids.get(group_key, ())

    def record_highlight_synced(self, group_key: str, highlight_id: str) -> None:
        seen = self._highlight_ids.setdefault(group_key, set())
        if highlight_id not in seen:
            seen.add(highlight_id)
            self.highlights.setdefault(group_key, []).append(highlight_id)

    def prune_highlights(self, retention_days: int, now: datetime | None = None) -> int:
        """Drop date-keyed highlight groups older than `retention_days`.

        Article-keyed groups are kept. A window of 0 keeps everything.
        Returns the number of groups removed.
        """
        if retention_days <= 0:
            return 0
        cutoff = ((now or datetime.now(timezone.utc)) - timedelta(days=retention_days)).date()
        removed = 0
        for key in list(self.highlights):
            try:
                day = datetime.strptime(key, "%Y-%m-%d").date()
            except ValueError:
                continue
            if day < cutoff:
                del self.highlights[key]
                self._highlight_ids.pop(key, None)
                removed += 1
        return removed

    @property
    def highlight_count(self) -> int:
        return sum(len(ids) for ids in self.highlights.values())

    # --- persistence ---

    def dump(self) -> dict[str, str]:
        """Serialize to the persisted key/value layout."""
        return {
            "last_sync_date": self.watermark.isoformat() if self.watermark != EPOCH else "",
            "synced_articles": json.dumps(
                [{"id": r.id, "savedAt": r.saved_at.isoformat()} for r in self.articles.values()]
            ),
            "synced_highlights": json.dumps(self.highlights),
        }

    @classmethod
    def load(cls, raw: dict[str, str | None]) -> SyncState:
        """Build state from persisted values.

        Unparseable values are logged and treated as empty, which falls
        back to a full re-sync instead of failing the pass.
        """
        state = cls()

        watermark = raw.get("last_sync_date") or ""
        if watermark:
            try:
                state.watermark = _parse_dt(watermark)
            except (ValueError, TypeError):
                logger.warning(f"Ignoring malformed last sync date: {watermark!r}")
        else:
            logger.info("Last sync date was reset or not set. Using earliest possible date.")

        try:
            for item in json.loads(raw.get("synced_articles") or "[]"):
                state.record_article_synced(item["id"], _parse_dt(item["savedAt"]))
        except (ValueError, TypeError, KeyError) as e:
            logger.warning(f"Ignoring malformed article ledger: {e}")
            state.articles = {}

        try:
            highlights = json.loads(raw.get("synced_highlights") or "{}")
            if not isinstance(highlights, dict):
                raise TypeError("expected an object")
            for key, ids in highlights.items():
                if not isinstance(ids, list):
                    raise TypeError(f"expected a list for {key}")
                for highlight_id in ids:
                    state.record_highlight_synced(key, str(highlight_id))
        except (ValueError, TypeError) as e:
            logger.warning(f"Ignoring malformed highlight ledger: {e}")
            state.highlights = {}
            state._highlight_ids = {}

        return state

    def to_dict(self) -> dict[str, Any]:
        """Summary for JSON/status display."""
        return {
            "last_sync_date": self.watermark.isoformat() if self.watermark != EPOCH else None,
            "synced_articles": len(self.articles),
            "synced_highlight_groups": len(self.highlights),
            "synced_highlights": self.highlight_count,
        }
