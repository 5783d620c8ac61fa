"""
Notes, the operations Mindl may perform on them, and the mutation records
those operations leave behind.

`NoteOperations` is the capability the host application hands to the
interpreter. Without it a directive can read notes but never change them.
"""
import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional


class NoteOperationException(Exception):
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


@dataclass(frozen=True)
class Note:
    id: str
    path: str = ""
    content: str = ""
    created: Optional[datetime] = None
    modified: Optional[datetime] = None
    viewed: Optional[datetime] = None

    @property
    def first_line(self) -> str:
        return self.content.split("\n", 1)[0]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "path": self.path,
            "content": self.content,
            "created": _iso(self.created),
            "modified": _iso(self.modified),
            "viewed": _iso(self.viewed),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Note":
        return cls(
            id=data.get("id") or "",
            path=data.get("path") or "",
            content=data.get("content") or "",
            created=_parse_iso(data.get("created")),
            modified=_parse_iso(data.get("modified")),
            viewed=_parse_iso(data.get("viewed")),
        )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class MutationType(Enum):
    PATH_CHANGED = "path_changed"
    CONTENT_CHANGED = "content_changed"  # includes name changes
    CONTENT_APPENDED = "content_appended"


@dataclass(frozen=True)
class NoteMutation:
    note_id: str
    updated_note: Note
    mutation_type: MutationType


class NoteOperations(ABC):
    """Note store interface consumed by the interpreter."""

    @abstractmethod
    def create_note(self, path: str, content: str) -> Note:
        """Create a note. Raises NoteOperationException if the path is taken."""

    @abstractmethod
    def get_note_by_id(self, note_id: str) -> Optional[Note]:
        """Fresh copy of a note, or None."""

    @abstractmethod
    def find_by_path(self, path: str) -> Optional[Note]:
        ...

    @abstractmethod
    def note_exists_at_path(self, path: str) -> bool:
        ...

    @abstractmethod
    def update_path(self, note_id: str, new_path: str) -> Note:
        ...

    @abstractmethod
    def update_content(self, note_id: str, new_content: str) -> Note:
        ...

    @abstractmethod
    def append_to_note(self, note_id: str, text: str) -> Note:
        """Append `text` on a new line (no newline when the note is empty)."""


class InMemoryNoteOperations(NoteOperations):
    """
    A dictionary-backed note store.

    Used by the REPL and the test-suite. Ids are sequential (`note-1`,
    `note-2`, ...) unless notes are seeded with their own ids. `clock` supplies
    timestamps for created/modified and defaults to `datetime.now`.
    """

    def __init__(self, notes: Optional[Iterable[Note]] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self._notes: Dict[str, Note] = {}
        self._ids = itertools.count(1)
        self._clock = clock or datetime.now
        for note in notes or ():
            self._notes[note.id] = note

    def all_notes(self) -> List[Note]:
        return list(self._notes.values())

    def create_note(self, path: str, content: str) -> Note:
        if self.note_exists_at_path(path):
            raise NoteOperationException(f"Note already exists at path: {path}")
        note_id = self._next_id()
        now = self._now()
        note = Note(id=note_id, path=path, content=content, created=now, modified=now)
        self._notes[note_id] = note
        return note

    def get_note_by_id(self, note_id: str) -> Optional[Note]:
        return self._notes.get(note_id)

    def find_by_path(self, path: str) -> Optional[Note]:
        for note in self._notes.values():
            if note.path == path:
                return note
        return None

    def note_exists_at_path(self, path: str) -> bool:
        return self.find_by_path(path) is not None

    def update_path(self, note_id: str, new_path: str) -> Note:
        return self._update(note_id, path=new_path)

    def update_content(self, note_id: str, new_content: str) -> Note:
        return self._update(note_id, content=new_content)

    def append_to_note(self, note_id: str, text: str) -> Note:
        note = self._require(note_id)
        content = text if not note.content else f"{note.content}\n{text}"
        return self._update(note_id, content=content)

    # --- Internals ---

    def _require(self, note_id: str) -> Note:
        note = self._notes.get(note_id)
        if note is None:
            raise NoteOperationException(f"Note not found: {note_id}")
        return note

    def _update(self, note_id: str, **changes) -> Note:
        note = replace(self._require(note_id), modified=self._now(), **changes)
        self._notes[note_id] = note
        return note

    def _next_id(self) -> str:
        while True:
            candidate = f"note-{next(self._ids)}"
            if candidate not in self._notes:
                return candidate

    def _now(self) -> datetime:
        return self._clock().replace(microsecond=0)
