"""Tests for joplin.py"""

import json

import httpx
import pytest

from omnisync.providers.joplin import JoplinClient, JoplinConnectionError, JoplinError
from omnisync.providers.note_store import NoteStoreError, NoteStoreUnavailableError


def make_client(handler) -> JoplinClient:
    return JoplinClient("tok", "http://joplin.test", transport=httpx.MockTransport(handler))


def note_item(note_id: str, title: str, body: str = "", parent_id: str = "f1") -> dict:
    return {"id": note_id, "title": title, "body": body, "parent_id": parent_id, "source_url": ""}


@pytest.mark.asyncio
class TestJoplinClient:
    async def test_requires_token(self):
        with pytest.raises(ValueError):
            JoplinClient("")

    async def test_token_sent_on_every_request(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=note_item("n1", "T", "body"))

        async with make_client(handler) as client:
            note = await client.get_note("n1")

        assert note.body == "body"
        assert seen[0].url.params["token"] == "tok"
        assert seen[0].url.path == "/notes/n1"

    async def test_search_by_title_filters_exact(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={
                "items": [
                    note_item("n1", "Omnivore Highlights 2024-01-05", "A"),
                    note_item("n2", "Omnivore Highlights 2024-01-05 copy", "B"),
                ],
                "has_more": False,
            })

        async with make_client(handler) as client:
            notes = await client.search_notes_by_title("Omnivore Highlights 2024-01-05")

        assert [n.id for n in notes] == ["n1"]
        params = seen[0].url.params
        assert seen[0].url.path == "/search"
        assert params["query"] == 'title:"Omnivore Highlights 2024-01-05"'
        assert params["type"] == "note"
        assert "body" in params["fields"]

    async def test_search_by_prefix_follows_pages(self):
        def handler(request):
            page = int(request.url.params["page"])
            if page == 1:
                return httpx.Response(200, json={
                    "items": [note_item("n1", "Omnivore Highlights 2024-01-05")],
                    "has_more": True,
                })
            return httpx.Response(200, json={
                "items": [note_item("n2", "Omnivore Highlights 2024-01-06"), note_item("n3", "Other")],
                "has_more": False,
            })

        async with make_client(handler) as client:
            notes = await client.search_notes_by_prefix("Omnivore Highlights")

        assert [n.id for n in notes] == ["n1", "n2"]

    async def test_create_note_payload(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"id": "new1"})

        async with make_client(handler) as client:
            note = await client.create_note(
                "Title", "Body", "f1", source_url="https://example.com", author="Omnivore Sync"
            )

        assert note.id == "new1"
        assert note.body == "Body"
        assert bodies[0] == {
            "title": "Title",
            "body": "Body",
            "parent_id": "f1",
            "source_url": "https://example.com",
            "author": "Omnivore Sync",
        }

    async def test_update_sends_only_given_fields(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"id": "n1"})

        async with make_client(handler) as client:
            await client.update_note("n1", body="new body")
            await client.update_note("n1")

        assert len(seen) == 1
        assert seen[0].method == "PUT"
        assert json.loads(seen[0].content) == {"body": "new body"}

    async def test_delete_with_empty_response(self):
        def handler(request):
            assert request.method == "DELETE"
            return httpx.Response(200)

        async with make_client(handler) as client:
            await client.delete_note("n1")

    async def test_list_and_create_folders(self):
        def handler(request):
            if request.method == "GET":
                return httpx.Response(200, json={
                    "items": [{"id": "f1", "title": "Omnivore", "parent_id": ""}],
                    "has_more": False,
                })
            return httpx.Response(200, json={"id": "f2", "title": "New"})

        async with make_client(handler) as client:
            folders = await client.list_folders()
            created = await client.create_folder("New")

        assert folders[0].title == "Omnivore"
        assert created.id == "f2"

    async def test_add_tags_reuses_and_creates(self):
        posts = []

        def handler(request):
            if request.url.path == "/search":
                if request.url.params["query"] == "existing":
                    return httpx.Response(200, json={"items": [{"id": "t1", "title": "Existing"}], "has_more": False})
                return httpx.Response(200, json={"items": [], "has_more": False})
            posts.append((request.url.path, json.loads(request.content)))
            if request.url.path == "/tags":
                return httpx.Response(200, json={"id": "t2", "title": "fresh"})
            return httpx.Response(200, json={})

        async with make_client(handler) as client:
            await client.add_tags("n1", ["existing", "fresh"])

        assert posts == [
            ("/tags/t1/notes", {"id": "n1"}),
            ("/tags", {"title": "fresh"}),
            ("/tags/t2/notes", {"id": "n1"}),
        ]

    async def test_http_error_is_per_item(self):
        def handler(request):
            return httpx.Response(500, text="boom")

        async with make_client(handler) as client:
            with pytest.raises(JoplinError) as exc_info:
                await client.get_note("n1")

        assert isinstance(exc_info.value, NoteStoreError)
        assert not isinstance(exc_info.value, NoteStoreUnavailableError)

    async def test_connection_error_is_fatal(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(handler) as client:
            with pytest.raises(JoplinConnectionError) as exc_info:
                await client.list_folders()

        assert isinstance(exc_info.value, NoteStoreUnavailableError)
