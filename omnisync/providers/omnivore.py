"""Omnivore GraphQL API client."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from omnisync.providers.content_types import Article, ArticleRef, Highlight

logger = logging.getLogger(__name__)

OMNIVORE_BASE_URL = "https://api-prod.omnivore.app"
PAGE_SIZE = 100

SEARCH_QUERY = """
query Search($after: String, $first: Int, $query: String, $includeContent: Boolean) {
  search(after: $after, first: $first, query: $query, includeContent: $includeContent) {
    ... on SearchSuccess {
      edges {
        node {
          id
          title
          slug
          url
          originalArticleUrl
          author
          publishedAt
          savedAt
          content
          labels { name }
          highlights {
            id
            type
            quote
            annotation
            createdAt
            highlightPositionPercent
          }
        }
      }
      pageInfo { hasNextPage endCursor }
    }
    ... on SearchError { errorCodes }
  }
}
"""


class OmnivoreError(Exception):
    """Base exception for Omnivore API errors."""


class OmnivoreAuthError(OmnivoreError):
    """Authentication failed."""


class OmnivoreRateLimitError(OmnivoreError):
    """Rate limit exceeded after all retries."""


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp from the API. Returns None if unparseable."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _label_clause(labels: list[str]) -> str:
    if not labels:
        return ""
    joined = " OR ".join(f'label:"{label}"' for label in labels)
    return f" ({joined})"


def build_article_query(since: datetime | None, labels: list[str] | None = None) -> str:
    """Search query for articles saved on or after the day of `since`."""
    query = f"saved:{since.date().isoformat()}..* " if since else ""
    query += "sort:saved-asc"
    return query + _label_clause(labels or [])


def build_highlight_query(
    since: datetime,
    lookback_days: int,
    labels: list[str] | None = None,
    now: datetime | None = None,
) -> str:
    """Search query for articles with highlights.

    Looks back at least `lookback_days` from now, so highlights made on
    older articles are still picked up after the watermark moved on.
    """
    now = now or datetime.now(timezone.utc)
    oldest = now - timedelta(days=lookback_days)
    query_date = min(oldest, since)
    query = f"saved:{query_date.date().isoformat()}..* sort:saved-asc has:highlights"
    return query + _label_clause(labels or [])


class OmnivoreClient:
    """Async client for the Omnivore search API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = OMNIVORE_BASE_URL,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("Omnivore API key is required")
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": api_key, "Content-Type": "application/json"},
            timeout=30.0,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "OmnivoreClient":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def _request_with_retry(
        self,
        payload: dict[str, Any],
        *,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
    ) -> dict[str, Any]:
        """POST a GraphQL payload with exponential backoff retry on 429.

        Raises:
            OmnivoreRateLimitError: If rate limited after all retries
            OmnivoreAuthError: If authentication fails
        """
        delay = base_delay

        for attempt in range(max_retries + 1):
            resp = await self._client.post("/api/graphql", json=payload)

            if resp.status_code in (401, 403):
                raise OmnivoreAuthError("Invalid Omnivore API key")

            if resp.status_code == 429:
                if attempt == max_retries:
                    raise OmnivoreRateLimitError(
                        f"Rate limit exceeded after {max_retries} retries"
                    )

                retry_after = resp.headers.get("Retry-After")
                try:
                    wait_time = float(retry_after) if retry_after else delay
                except ValueError:
                    wait_time = delay

                wait_time = min(wait_time, max_delay)
                logger.warning(
                    f"Rate limited (429). Waiting {wait_time:.1f}s "
                    f"(attempt {attempt + 1}/{max_retries + 1})"
                )
                await asyncio.sleep(wait_time)
                delay = min(delay * 2, max_delay)
                continue

            resp.raise_for_status()
            return resp.json()

        raise OmnivoreRateLimitError("Rate limit handling failed")

    async def _search(self, query: str) -> list[dict[str, Any]]:
        """Run a search, following pagination until exhausted.

        Returns the raw article nodes, deduplicated by id.
        """
        logger.debug(f"Using query: {query}")
        nodes: list[dict[str, Any]] = []
        seen: set[str] = set()
        after: str | None = None

        while True:
            data = await self._request_with_retry({
                "query": SEARCH_QUERY,
                "variables": {
                    "after": after,
                    "first": PAGE_SIZE,
                    "query": query,
                    "includeContent": True,
                },
            })
            if data.get("errors"):
                raise OmnivoreError(f"GraphQL error: {data['errors'][0].get('message')}")

            search = (data.get("data") or {}).get("search") or {}
            if "errorCodes" in search:
                raise OmnivoreError(f"Search failed: {', '.join(search['errorCodes'])}")

            edges = search.get("edges") or []
            if not edges:
                break

            for edge in edges:
                node = edge["node"]
                if node["id"] in seen:
                    continue
                seen.add(node["id"])
                nodes.append(node)

            logger.debug(f"Fetched {len(nodes)} items so far")

            page_info = search.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                break
            after = page_info.get("endCursor")

        return nodes

    async def fetch_articles(
        self, since: datetime | None, labels: list[str] | None = None
    ) -> list[Article]:
        """Fetch all articles saved since the watermark day."""
        logger.debug(f"Fetching articles since: {since.isoformat() if since else 'the beginning'}")
        nodes = await self._search(build_article_query(since, labels))
        articles = [self._parse_article(node) for node in nodes]
        logger.debug(f"Total articles fetched: {len(articles)}")
        return articles

    async def fetch_highlights(
        self,
        since: datetime,
        lookback_days: int,
        labels: list[str] | None = None,
    ) -> list[Highlight]:
        """Fetch highlights of all articles saved within the lookback window."""
        nodes = await self._search(build_highlight_query(since, lookback_days, labels))

        highlights: list[Highlight] = []
        seen: set[str] = set()
        for node in nodes:
            ref = self._parse_article_ref(node)
            for hl in node.get("highlights") or []:
                if hl["id"] in seen:
                    continue
                seen.add(hl["id"])
                highlights.append(self._parse_highlight(hl, ref))

        logger.debug(f"Total highlights fetched: {len(highlights)}")
        return highlights

    def _parse_article(self, node: dict) -> Article:
        """Convert a search node to an Article DTO."""
        return Article(
            id=node["id"],
            title=node.get("title") or "Untitled",
            url=node.get("url") or "",
            saved_at=parse_timestamp(node.get("savedAt")) or datetime.now(timezone.utc),
            content=node.get("content"),
            slug=node.get("slug"),
            author=node.get("author"),
            published_at=parse_timestamp(node.get("publishedAt")),
            original_article_url=node.get("originalArticleUrl"),
            labels=tuple(label["name"] for label in node.get("labels") or []),
        )

    def _parse_article_ref(self, node: dict) -> ArticleRef:
        return ArticleRef(
            id=node["id"],
            title=node.get("title") or "Untitled",
            url=node.get("url") or "",
            saved_at=parse_timestamp(node.get("savedAt")),
            slug=node.get("slug"),
            author=node.get("author"),
            published_at=parse_timestamp(node.get("publishedAt")),
            original_article_url=node.get("originalArticleUrl"),
        )

    def _parse_highlight(self, hl: dict, ref: ArticleRef) -> Highlight:
        """Convert a highlight node to a Highlight DTO."""
        # Highlights without createdAt count as made now
        created = parse_timestamp(hl.get("createdAt")) or datetime.now(timezone.utc)
        return Highlight(
            id=hl["id"],
            article=ref,
            quote=hl.get("quote") or "",
            created_at=created,
            annotation=hl.get("annotation") or None,
            position_percent=hl.get("highlightPositionPercent"),
            type=hl.get("type") or "HIGHLIGHT",
        )
