"""
Structural note hierarchy derived from `/`-delimited paths.

`projects/mindl/todo` has parent `projects/mindl`, whose parent is
`projects`, a root. Every lookup is against the supplied note snapshot;
a missing intermediate note ends the walk.
"""
from typing import Iterable, Optional

from mindl.mindl_notes import Note


def parent_path(path: str) -> Optional[str]:
    if "/" not in path:
        return None
    parent = path.rsplit("/", 1)[0]
    return parent or None


def find_parent(note: Note, notes: Iterable[Note]) -> Optional[Note]:
    """The note whose path is `note`'s parent segment, or None for a root."""
    target = parent_path(note.path)
    if target is None:
        return None
    for candidate in notes:
        if candidate.path == target:
            return candidate
    return None


def find_ancestor(note: Note, n: int, notes: Iterable[Note]) -> Optional[Note]:
    """Apply `find_parent` n times. `n == 0` is the note itself."""
    if n < 0:
        raise ValueError("Ancestor level must be non-negative")
    notes = list(notes)
    current: Optional[Note] = note
    for _ in range(n):
        current = find_parent(current, notes)
        if current is None:
            return None
    return current


def find_root(note: Note, notes: Iterable[Note]) -> Note:
    notes = list(notes)
    current = note
    while True:
        parent = find_parent(current, notes)
        if parent is None:
            return current
        current = parent
