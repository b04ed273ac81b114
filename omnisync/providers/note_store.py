"""Note store abstraction consumed by the sync engine."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass
class Note:
    """A destination note. `body` is kept in sync with the store by the engine."""

    id: str
    title: str
    body: str = ""
    parent_id: str = ""
    source_url: str | None = None


@dataclass(frozen=True)
class Folder:
    """A notebook/folder in the note store."""

    id: str
    title: str
    parent_id: str = ""


class NoteStoreError(Exception):
    """A single note store request failed. Recoverable per item."""


class NoteStoreUnavailableError(NoteStoreError):
    """The note store could not be reached. Aborts the sync pass."""


class NoteStore(ABC):
    """Abstract base class for note stores."""

    @abstractmethod
    async def get_note(self, note_id: str) -> Note:
        """Fetch a single note including its body."""
        ...

    @abstractmethod
    async def create_note(
        self,
        title: str,
        body: str,
        parent_id: str,
        *,
        source_url: str | None = None,
        author: str | None = None,
    ) -> Note:
        ...

    @abstractmethod
    async def update_note(
        self,
        note_id: str,
        *,
        title: str | None = None,
        body: str | None = None,
        parent_id: str | None = None,
    ) -> None:
        """Update the given fields of a note, leaving the rest untouched."""
        ...

    @abstractmethod
    async def delete_note(self, note_id: str) -> None:
        ...

    @abstractmethod
    async def search_notes_by_title(self, title: str) -> list[Note]:
        """Notes whose title equals `title` exactly, in search-result order."""
        ...

    @abstractmethod
    async def search_notes_by_prefix(self, prefix: str) -> list[Note]:
        """Notes whose title starts with `prefix`, in search-result order."""
        ...

    @abstractmethod
    async def list_folders(self) -> list[Folder]:
        ...

    @abstractmethod
    async def create_folder(self, title: str) -> Folder:
        ...

    @abstractmethod
    async def add_tags(self, note_id: str, tags: list[str]) -> None:
        """Attach tags to a note, creating missing tags."""
        ...
