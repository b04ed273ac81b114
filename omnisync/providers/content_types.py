"""Provider-agnostic content types for articles and highlights."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class Article:
    """A saved article from the read-it-later service."""

    id: str
    title: str
    url: str
    saved_at: datetime
    content: str | None = None  # raw HTML
    slug: str | None = None
    author: str | None = None
    published_at: datetime | None = None
    original_article_url: str | None = None
    labels: tuple[str, ...] = ()


@dataclass(frozen=True)
class ArticleRef:
    """Denormalized reference to the article a highlight belongs to."""

    id: str
    title: str
    url: str
    saved_at: datetime | None = None
    slug: str | None = None
    author: str | None = None
    published_at: datetime | None = None
    original_article_url: str | None = None


@dataclass(frozen=True)
class Highlight:
    """A highlight/annotation belonging to an article."""

    id: str
    article: ArticleRef
    quote: str
    created_at: datetime
    annotation: str | None = None
    position_percent: float | None = None  # 0.0 - 1.0 within the article
    type: str = "HIGHLIGHT"
