"""Joplin Data API client."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from omnisync.providers.note_store import (
    Folder,
    Note,
    NoteStore,
    NoteStoreError,
    NoteStoreUnavailableError,
)

logger = logging.getLogger(__name__)

JOPLIN_BASE_URL = "http://localhost:41184"
NOTE_FIELDS = "id,title,body,parent_id,source_url"


class JoplinError(NoteStoreError):
    """Joplin returned an error response."""


class JoplinConnectionError(NoteStoreUnavailableError):
    """Joplin Web Clipper service is not reachable."""


class JoplinClient(NoteStore):
    """Async client for the Joplin Data API (Web Clipper service)."""

    def __init__(
        self,
        token: str,
        base_url: str = JOPLIN_BASE_URL,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not token:
            raise ValueError("Joplin API token is required")
        self._client = httpx.AsyncClient(
            base_url=base_url,
            params={"token": token},
            timeout=30.0,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "JoplinClient":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        try:
            resp = await self._client.request(method, url, params=params, json=json)
        except httpx.TransportError as e:
            raise JoplinConnectionError(f"Joplin not reachable: {e}") from e

        if resp.status_code >= 400:
            raise JoplinError(f"{method} {url} failed: {resp.status_code} {resp.text[:200]}")

        if not resp.content:
            return None
        return resp.json()

    async def _get_paginated(self, url: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        """GET all pages of a list endpoint."""
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            data = await self._request("GET", url, params={**params, "page": page})
            items.extend(data.get("items", []))
            if not data.get("has_more"):
                break
            page += 1
        return items

    @staticmethod
    def _to_note(data: dict[str, Any]) -> Note:
        return Note(
            id=data["id"],
            title=data.get("title", ""),
            body=data.get("body") or "",
            parent_id=data.get("parent_id") or "",
            source_url=data.get("source_url") or None,
        )

    async def get_note(self, note_id: str) -> Note:
        data = await self._request("GET", f"/notes/{note_id}", params={"fields": NOTE_FIELDS})
        return self._to_note(data)

    async def create_note(
        self,
        title: str,
        body: str,
        parent_id: str,
        *,
        source_url: str | None = None,
        author: str | None = None,
    ) -> Note:
        payload: dict[str, Any] = {"title": title, "body": body, "parent_id": parent_id}
        if source_url:
            payload["source_url"] = source_url
        if author:
            payload["author"] = author
        data = await self._request("POST", "/notes", json=payload)
        logger.debug(f"Created note {data['id']} ({title})")
        # The create response does not always echo the body
        return Note(
            id=data["id"],
            title=title,
            body=body,
            parent_id=parent_id,
            source_url=source_url,
        )

    async def update_note(
        self,
        note_id: str,
        *,
        title: str | None = None,
        body: str | None = None,
        parent_id: str | None = None,
    ) -> None:
        payload: dict[str, Any] = {}
        if title is not None:
            payload["title"] = title
        if body is not None:
            payload["body"] = body
        if parent_id is not None:
            payload["parent_id"] = parent_id
        if not payload:
            return
        await self._request("PUT", f"/notes/{note_id}", json=payload)

    async def delete_note(self, note_id: str) -> None:
        await self._request("DELETE", f"/notes/{note_id}")

    async def _search_notes(self, query: str) -> list[Note]:
        items = await self._get_paginated(
            "/search", {"query": query, "type": "note", "fields": NOTE_FIELDS}
        )
        return [self._to_note(item) for item in items]

    async def search_notes_by_title(self, title: str) -> list[Note]:
        # Full-text search is fuzzy, so filter down to exact titles
        notes = await self._search_notes(f'title:"{title}"')
        return [note for note in notes if note.title == title]

    async def search_notes_by_prefix(self, prefix: str) -> list[Note]:
        notes = await self._search_notes(f'title:"{prefix}*"')
        return [note for note in notes if note.title.startswith(prefix)]

    async def list_folders(self) -> list[Folder]:
        items = await self._get_paginated("/folders", {"fields": "id,title,parent_id"})
        return [
            Folder(id=item["id"], title=item.get("title", ""), parent_id=item.get("parent_id") or "")
            for item in items
        ]

    async def create_folder(self, title: str) -> Folder:
        data = await self._request("POST", "/folders", json={"title": title})
        return Folder(id=data["id"], title=data.get("title", title))

    async def _get_or_create_tag(self, name: str) -> str:
        items = await self._get_paginated("/search", {"query": name, "type": "tag"})
        for item in items:
            if item.get("title", "").lower() == name.lower():
                return item["id"]
        data = await self._request("POST", "/tags", json={"title": name})
        return data["id"]

    async def add_tags(self, note_id: str, tags: list[str]) -> None:
        for name in tags:
            tag_id = await self._get_or_create_tag(name)
            await self._request("POST", f"/tags/{tag_id}/notes", json={"id": note_id})
