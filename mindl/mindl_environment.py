"""
Evaluation environment: chained variable scopes plus the note context a
directive runs in.

The note context is shared by every scope of one evaluation. Scopes that
change part of it (`with_executor`, `with_mocked_time`, `push_view_stack`,
`for_note`) do so in a new child, so the change is gone as soon as the
caller drops that child, whichever way it exits.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING

from mindl.mindl_notes import Note, NoteMutation, NoteOperations
from mindl.mindl_values import DslValue

if TYPE_CHECKING:
    from mindl.mindl_executor import Executor


# =================================================================
# Once cache
# =================================================================

class OnceCache(ABC):
    """Storage for `once[...]` results, keyed by the body's source text."""

    @abstractmethod
    def get(self, key: str) -> Optional[DslValue]:
        ...

    @abstractmethod
    def put(self, key: str, value: DslValue) -> None:
        ...

    def contains(self, key: str) -> bool:
        return self.get(key) is not None


class InMemoryOnceCache(OnceCache):
    def __init__(self):
        self._values: Dict[str, DslValue] = {}

    def get(self, key: str) -> Optional[DslValue]:
        return self._values.get(key)

    def put(self, key: str, value: DslValue) -> None:
        self._values[key] = value

    def clear(self) -> None:
        self._values.clear()

    def __len__(self) -> int:
        return len(self._values)


# =================================================================
# Note context
# =================================================================

@dataclass(frozen=True)
class NoteContext:
    notes: Optional[Tuple[Note, ...]] = None
    current_note: Optional[Note] = None
    note_operations: Optional[NoteOperations] = None
    executor: Optional["Executor"] = None
    view_stack: Tuple[str, ...] = ()
    once_cache: OnceCache = field(default_factory=InMemoryOnceCache)
    mocked_time: Optional[datetime] = None


class Environment:
    """A scope of variable bindings with a parent chain."""

    def __init__(self, parent: Optional['Environment'] = None,
                 context: Optional[NoteContext] = None):
        self.parent = parent
        self.bindings: Dict[str, DslValue] = {}
        self._context = context
        # Only the root's log is used.
        self._mutations: List[NoteMutation] = []

    @classmethod
    def create(cls, notes=None, current_note: Optional[Note] = None,
               note_operations: Optional[NoteOperations] = None,
               once_cache: Optional[OnceCache] = None,
               mocked_time: Optional[datetime] = None) -> 'Environment':
        context = NoteContext(
            notes=tuple(notes) if notes is not None else None,
            current_note=current_note,
            note_operations=note_operations,
            once_cache=once_cache if once_cache is not None else InMemoryOnceCache(),
            mocked_time=mocked_time,
        )
        return cls(context=context)

    # --- Scopes ---

    def define(self, name: str, value: DslValue):
        self.bindings[name] = value

    def get(self, name: str) -> Optional[DslValue]:
        scope: Optional[Environment] = self
        while scope is not None:
            if name in scope.bindings:
                return scope.bindings[name]
            scope = scope.parent
        return None

    def child(self) -> 'Environment':
        return Environment(parent=self)

    def capture(self) -> 'Environment':
        """Closures hold the live environment, not a copy."""
        return self

    def _with_context(self, **changes: Any) -> 'Environment':
        return Environment(parent=self, context=replace(self.context, **changes))

    # --- Note context ---

    @property
    def context(self) -> NoteContext:
        scope: Optional[Environment] = self
        while scope is not None:
            if scope._context is not None:
                return scope._context
            scope = scope.parent
        return NoteContext()

    def get_notes(self) -> Optional[Tuple[Note, ...]]:
        return self.context.notes

    def get_current_note(self) -> Optional[Note]:
        return self.context.current_note

    def get_note_operations(self) -> Optional[NoteOperations]:
        return self.context.note_operations

    def get_executor(self) -> Optional["Executor"]:
        return self.context.executor

    def with_executor(self, executor: "Executor") -> 'Environment':
        return self._with_context(executor=executor)

    def with_mocked_time(self, moment: datetime) -> 'Environment':
        return self._with_context(mocked_time=moment)

    def for_note(self, note: Note) -> 'Environment':
        """A fresh scope evaluating as if `note` were current. Shares the mutation log."""
        return self._with_context(current_note=note)

    def now(self) -> datetime:
        mocked = self.context.mocked_time
        if mocked is not None:
            return mocked
        return datetime.now().replace(microsecond=0)

    def get_or_create_once_cache(self) -> OnceCache:
        return self.context.once_cache

    # --- View stack ---

    def push_view_stack(self, note_id: str) -> 'Environment':
        return self._with_context(view_stack=self.context.view_stack + (note_id,))

    def is_in_view_stack(self, note_id: str) -> bool:
        return note_id in self.context.view_stack

    def view_stack_path(self) -> Tuple[str, ...]:
        return self.context.view_stack

    # --- Mutation log ---

    def _root(self) -> 'Environment':
        scope = self
        while scope.parent is not None:
            scope = scope.parent
        return scope

    def register_mutation(self, mutation: NoteMutation):
        self._root()._mutations.append(mutation)

    def mutations(self) -> List[NoteMutation]:
        return list(self._root()._mutations)

    def clear_mutations(self):
        self._root()._mutations.clear()
