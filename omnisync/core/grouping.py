"""Partition highlights into destination-note groups."""

from __future__ import annotations

from collections import defaultdict
from datetime import tzinfo

from omnisync.core.settings import GroupingPolicy
from omnisync.providers.content_types import Highlight

DATE_KEY_FORMAT = "%Y-%m-%d"


def group_key(highlight: Highlight, policy: GroupingPolicy, tz: tzinfo | None = None) -> str:
    """The group a highlight belongs to: its local calendar day, or its article id."""
    if policy == GroupingPolicy.BY_ARTICLE:
        return highlight.article.id
    return highlight.created_at.astimezone(tz).strftime(DATE_KEY_FORMAT)


def _order_by_date(highlights: list[Highlight]) -> list[Highlight]:
    """Oldest first, then pull each article's highlights together.

    Articles appear in the order of their earliest highlight.
    """
    by_article: dict[str, list[Highlight]] = {}
    for hl in sorted(highlights, key=lambda h: h.created_at):
        by_article.setdefault(hl.article.id, []).append(hl)
    return [hl for group in by_article.values() for hl in group]


def _order_by_position(highlights: list[Highlight]) -> list[Highlight]:
    return sorted(highlights, key=lambda h: h.position_percent or 0)


def group_highlights(
    highlights: list[Highlight],
    policy: GroupingPolicy,
    tz: tzinfo | None = None,
) -> dict[str, list[Highlight]]:
    """Group highlights by `policy`, ordering each group.

    Groups come out in order of first appearance. All sorts are stable,
    so equal keys keep fetch order and the result is deterministic.
    """
    grouped: dict[str, list[Highlight]] = defaultdict(list)
    for hl in highlights:
        grouped[group_key(hl, policy, tz)].append(hl)

    order = _order_by_position if policy == GroupingPolicy.BY_ARTICLE else _order_by_date
    return {key: order(items) for key, items in grouped.items()}


def note_title(prefix: str, key: str, policy: GroupingPolicy, article_title: str | None = None) -> str:
    """Destination note title for a group."""
    if policy == GroupingPolicy.BY_ARTICLE:
        return f"{prefix} - {article_title or key}"
    return f"{prefix} {key}"
