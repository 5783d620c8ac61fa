"""
Cache validity for directive results.

`DependencyAnalyzer` folds a parsed directive into the note data it can
read. After a successful run, `capture_validity` resolves that analysis
against the note snapshot and hashes exactly those inputs. Later,
`is_stale` rehashes the current notes and reports whether any of them
changed, short-circuiting at the first difference.

    validity = capture_validity(directive.expression, value, env)
    ...
    if is_stale(validity, ops.all_notes(), current_note):
        ...re-execute...
"""
import functools
import hashlib
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from mindl.mindl_ast import (
    Assignment, CallExpr, CurrentNoteRef, Expression, ExpressionFold, MethodCall,
    NumberLiteral, PropertyAccess,
)
from mindl.mindl_hierarchy import find_ancestor, find_root
from mindl.mindl_notes import Note
from mindl.mindl_values import DslValue, ListValue, NoteValue, ViewValue


# =================================================================
# Hierarchy paths
# =================================================================

class NoteField(Enum):
    NAME = "name"
    PATH = "path"
    MODIFIED = "modified"
    CREATED = "created"
    VIEWED = "viewed"


FIELD_PROPERTIES = {f.value: f for f in NoteField}


@dataclass(frozen=True)
class HierarchyPath:
    """A walk from the current note: `levels` parents up, or straight to the root."""
    levels: int = 1
    to_root: bool = False

    def extend(self, levels: int) -> 'HierarchyPath':
        if self.to_root:
            return self
        return HierarchyPath(self.levels + levels)

    def resolve(self, note: Note, notes: Iterable[Note]) -> Optional[Note]:
        if self.to_root:
            return find_root(note, notes)
        return find_ancestor(note, self.levels, notes)

    def to_record(self) -> Any:
        return "root" if self.to_root else self.levels

    @classmethod
    def from_record(cls, record: Any) -> 'HierarchyPath':
        return ROOT_PATH if record == "root" else cls(int(record))


SELF_PATH = HierarchyPath(0)
ROOT_PATH = HierarchyPath(0, to_root=True)


@dataclass(frozen=True)
class HierarchyAccess:
    path: HierarchyPath
    field: Optional[NoteField] = None  # None: the note itself


@dataclass(frozen=True)
class HierarchyDependency:
    path: HierarchyPath
    resolved_note_id: Optional[str]
    field: Optional[NoteField] = None
    field_hash: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        return {
            "path": self.path.to_record(),
            "resolved_note_id": self.resolved_note_id,
            "field": self.field.value if self.field else None,
            "field_hash": self.field_hash,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'HierarchyDependency':
        name = record.get("field")
        return cls(
            HierarchyPath.from_record(record.get("path", 1)),
            record.get("resolved_note_id"),
            NoteField(name) if name else None,
            record.get("field_hash"),
        )


# =================================================================
# Static analysis
# =================================================================

@dataclass(frozen=True)
class DirectiveAnalysis:
    uses_self_access: bool = False
    depends_on_path: bool = False
    depends_on_modified: bool = False
    depends_on_created: bool = False
    depends_on_viewed: bool = False
    depends_on_note_existence: bool = False
    accesses_first_line: bool = False
    is_mutating: bool = False
    hierarchy_accesses: FrozenSet[HierarchyAccess] = frozenset()

    def merge(self, other: 'DirectiveAnalysis') -> 'DirectiveAnalysis':
        flags = {f.name: getattr(self, f.name) or getattr(other, f.name)
                 for f in fields(self) if f.name != "hierarchy_accesses"}
        return DirectiveAnalysis(hierarchy_accesses=self.hierarchy_accesses | other.hierarchy_accesses, **flags)

    @property
    def can_share_globally(self) -> bool:
        return not self.uses_self_access


EMPTY_ANALYSIS = DirectiveAnalysis()

_FIELD_FLAGS = {
    NoteField.NAME: "accesses_first_line",
    NoteField.PATH: "depends_on_path",
    NoteField.MODIFIED: "depends_on_modified",
    NoteField.CREATED: "depends_on_created",
    NoteField.VIEWED: "depends_on_viewed",
}


class DependencyAnalyzer(ExpressionFold):
    """
    Folds a directive into the note data its result can depend on.

    `.name`, `.path` and the timestamp properties record the field they
    read. When the read goes through `.up`, `.up(n)` or `.root` from the
    current note, the walk is recorded too so a later move in the
    hierarchy can be noticed. `find(...)` depends on which notes exist.
    """

    def _create_handlers(self):
        return {
            CurrentNoteRef: lambda expr, ctx: DirectiveAnalysis(uses_self_access=True),
            PropertyAccess: self._property,
            MethodCall: self._method,
            CallExpr: self._call,
            Assignment: self._assignment,
        }

    def leaf(self) -> DirectiveAnalysis:
        return EMPTY_ANALYSIS

    def combine(self, results: List[DirectiveAnalysis]) -> DirectiveAnalysis:
        return functools.reduce(DirectiveAnalysis.merge, results, EMPTY_ANALYSIS)

    def _property(self, expr: PropertyAccess, ctx) -> DirectiveAnalysis:
        result = self.fold_children(expr, ctx)
        walk = self._walk(expr.target)
        note_field = FIELD_PROPERTIES.get(expr.property)
        if note_field is not None:
            result = result.merge(DirectiveAnalysis(**{_FIELD_FLAGS[note_field]: True}))
            if walk is not None and walk != SELF_PATH:
                result = result.merge(_hierarchy(walk, note_field))
        elif expr.property in ("up", "root"):
            result = result.merge(DirectiveAnalysis(depends_on_path=True))
            if walk is not None:
                step = ROOT_PATH if expr.property == "root" else walk.extend(1)
                result = result.merge(_hierarchy(step, None))
        return result

    def _method(self, expr: MethodCall, ctx) -> DirectiveAnalysis:
        result = self.fold_children(expr, ctx)
        if expr.method != "up":
            return result
        result = result.merge(DirectiveAnalysis(depends_on_path=True))
        walk = self._walk(expr.target)
        if walk is not None:
            result = result.merge(_hierarchy(walk.extend(_levels(expr)), None))
        return result

    def _call(self, expr: CallExpr, ctx) -> DirectiveAnalysis:
        result = self.fold_children(expr, ctx)
        if expr.name != "find":
            return result
        named = {arg.name for arg in expr.named_args}
        return result.merge(DirectiveAnalysis(
            depends_on_note_existence=True,
            depends_on_path="path" in named,
            accesses_first_line="name" in named,
        ))

    def _assignment(self, expr: Assignment, ctx) -> DirectiveAnalysis:
        return self.fold_children(expr, ctx).merge(DirectiveAnalysis(is_mutating=True))

    def _walk(self, expr: Expression) -> Optional[HierarchyPath]:
        """The hierarchy walk `expr` performs from the current note, or None."""
        match expr:
            case CurrentNoteRef():
                return SELF_PATH
            case PropertyAccess(target=target, property="up"):
                inner = self._walk(target)
                return inner.extend(1) if inner is not None else None
            case PropertyAccess(target=target, property="root"):
                return ROOT_PATH if self._walk(target) is not None else None
            case MethodCall(target=target, method="up"):
                inner = self._walk(target)
                return inner.extend(_levels(expr)) if inner is not None else None
            case _:
                return None

    def analyze(self, expr: Expression) -> DirectiveAnalysis:
        return self.fold(expr)


def _hierarchy(path: HierarchyPath, note_field: Optional[NoteField]) -> DirectiveAnalysis:
    return DirectiveAnalysis(uses_self_access=True, hierarchy_accesses=frozenset({HierarchyAccess(path, note_field)}))


def _levels(expr: MethodCall) -> int:
    if expr.args and isinstance(expr.args[0], NumberLiteral):
        return int(expr.args[0].value)
    return 1


# =================================================================
# Hashing
# =================================================================

def hash_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hash_first_line(content: str) -> str:
    return hash_text(content.split("\n", 1)[0])


def hash_non_first_line(content: str) -> str:
    parts = content.split("\n", 1)
    return hash_text(parts[1] if len(parts) > 1 else "")


def _field_text(note: Note, note_field: NoteField) -> str:
    match note_field:
        case NoteField.NAME:
            return note.first_line
        case NoteField.PATH:
            return note.path
        case _:
            stamp = getattr(note, note_field.value)
            return stamp.isoformat() if stamp is not None else ""


def hash_field(note: Note, note_field: NoteField) -> str:
    return hash_text(_field_text(note, note_field))


def hash_collection_field(notes: Iterable[Note], note_field: NoteField) -> str:
    """One hash over `id:value` lines for every note, in id order."""
    ordered = sorted(notes, key=lambda n: n.id)
    return hash_text("\n".join(f"{n.id}:{_field_text(n, note_field)}" for n in ordered))


def hash_existence(notes: Iterable[Note]) -> str:
    return hash_text("\n".join(sorted(n.id for n in notes)))


@dataclass(frozen=True)
class ContentHashes:
    first_line_hash: Optional[str] = None
    non_first_line_hash: Optional[str] = None


@dataclass(frozen=True)
class MetadataHashes:
    """Collection-level hashes; only fields the directive depends on are set."""
    path_hash: Optional[str] = None
    modified_hash: Optional[str] = None
    created_hash: Optional[str] = None
    viewed_hash: Optional[str] = None
    existence_hash: Optional[str] = None


# =================================================================
# Runtime dependencies
# =================================================================

@dataclass(frozen=True)
class DirectiveDependencies:
    first_line_notes: FrozenSet[str] = frozenset()
    non_first_line_notes: FrozenSet[str] = frozenset()
    depends_on_path: bool = False
    depends_on_modified: bool = False
    depends_on_created: bool = False
    depends_on_viewed: bool = False
    depends_on_note_existence: bool = False
    hierarchy_deps: Tuple[HierarchyDependency, ...] = ()
    uses_self_access: bool = False

    def merge(self, other: 'DirectiveDependencies') -> 'DirectiveDependencies':
        deps = self.hierarchy_deps + tuple(d for d in other.hierarchy_deps if d not in self.hierarchy_deps)
        return DirectiveDependencies(
            self.first_line_notes | other.first_line_notes,
            self.non_first_line_notes | other.non_first_line_notes,
            self.depends_on_path or other.depends_on_path,
            self.depends_on_modified or other.depends_on_modified,
            self.depends_on_created or other.depends_on_created,
            self.depends_on_viewed or other.depends_on_viewed,
            self.depends_on_note_existence or other.depends_on_note_existence,
            deps,
            self.uses_self_access or other.uses_self_access,
        )

    def is_empty(self) -> bool:
        return self == EMPTY_DEPENDENCIES

    def to_record(self) -> Dict[str, Any]:
        return {
            "first_line_notes": sorted(self.first_line_notes),
            "non_first_line_notes": sorted(self.non_first_line_notes),
            "depends_on_path": self.depends_on_path,
            "depends_on_modified": self.depends_on_modified,
            "depends_on_created": self.depends_on_created,
            "depends_on_viewed": self.depends_on_viewed,
            "depends_on_note_existence": self.depends_on_note_existence,
            "hierarchy_deps": [d.to_record() for d in self.hierarchy_deps],
            "uses_self_access": self.uses_self_access,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'DirectiveDependencies':
        return cls(
            frozenset(record.get("first_line_notes") or ()),
            frozenset(record.get("non_first_line_notes") or ()),
            bool(record.get("depends_on_path", False)),
            bool(record.get("depends_on_modified", False)),
            bool(record.get("depends_on_created", False)),
            bool(record.get("depends_on_viewed", False)),
            bool(record.get("depends_on_note_existence", False)),
            tuple(HierarchyDependency.from_record(d) for d in record.get("hierarchy_deps") or ()),
            bool(record.get("uses_self_access", False)),
        )


EMPTY_DEPENDENCIES = DirectiveDependencies()


def _notes_in(value: Optional[DslValue]) -> Tuple[List[str], List[str]]:
    """Ids of notes whose name, and whose body, a result shows."""
    match value:
        case NoteValue(note=note):
            return [note.id], []
        case ListValue(items=items):
            names: List[str] = []
            bodies: List[str] = []
            for item in items:
                item_names, item_bodies = _notes_in(item)
                names.extend(item_names)
                bodies.extend(item_bodies)
            return names, bodies
        case ViewValue(notes=notes):
            ids = [n.id for n in notes]
            return ids, ids
        case _:
            return [], []


def resolve_dependencies(analysis: DirectiveAnalysis, notes: Iterable[Note],
                         current_note: Optional[Note] = None,
                         value: Optional[DslValue] = None) -> DirectiveDependencies:
    """
    Pin a static analysis to concrete note ids. A `find(...)` that reads
    names may match any note, so every note's first line is tracked.
    """
    notes = list(notes)
    first_line = set()
    if analysis.accesses_first_line:
        if analysis.depends_on_note_existence:
            first_line.update(n.id for n in notes)
        elif current_note is not None and analysis.uses_self_access:
            first_line.add(current_note.id)
    shown_names, shown_bodies = _notes_in(value)
    first_line.update(shown_names)

    hierarchy = []
    if current_note is not None:
        for access in sorted(analysis.hierarchy_accesses, key=_access_order):
            resolved = access.path.resolve(current_note, notes)
            field_hash = None
            if resolved is not None and access.field is not None:
                field_hash = hash_field(resolved, access.field)
            hierarchy.append(HierarchyDependency(access.path, resolved.id if resolved else None,
                                                 access.field, field_hash))

    return DirectiveDependencies(
        first_line_notes=frozenset(first_line),
        non_first_line_notes=frozenset(shown_bodies),
        depends_on_path=analysis.depends_on_path or bool(shown_names),
        depends_on_modified=analysis.depends_on_modified,
        depends_on_created=analysis.depends_on_created,
        depends_on_viewed=analysis.depends_on_viewed,
        depends_on_note_existence=analysis.depends_on_note_existence,
        hierarchy_deps=tuple(hierarchy),
        uses_self_access=analysis.uses_self_access,
    )


def _access_order(access: HierarchyAccess):
    return access.path.to_root, access.path.levels, access.field.value if access.field else ""


# =================================================================
# Validity
# =================================================================

_METADATA = (
    ("depends_on_note_existence", "existence_hash", hash_existence),
    ("depends_on_path", "path_hash", lambda notes: hash_collection_field(notes, NoteField.PATH)),
    ("depends_on_modified", "modified_hash", lambda notes: hash_collection_field(notes, NoteField.MODIFIED)),
    ("depends_on_created", "created_hash", lambda notes: hash_collection_field(notes, NoteField.CREATED)),
    ("depends_on_viewed", "viewed_hash", lambda notes: hash_collection_field(notes, NoteField.VIEWED)),
)


def compute_metadata_hashes(notes: Iterable[Note], deps: DirectiveDependencies) -> MetadataHashes:
    notes = list(notes)
    hashes = {attr: compute(notes) for flag, attr, compute in _METADATA if getattr(deps, flag)}
    return MetadataHashes(**hashes)


@dataclass(frozen=True)
class CacheValidity:
    """What a cached result was computed from, as hashes."""
    dependencies: DirectiveDependencies = EMPTY_DEPENDENCIES
    content_hashes: Dict[str, ContentHashes] = field(default_factory=dict)
    metadata_hashes: MetadataHashes = MetadataHashes()

    def to_record(self) -> Dict[str, Any]:
        return {
            "dependencies": self.dependencies.to_record(),
            "content_hashes": {
                note_id: {"first_line": h.first_line_hash, "non_first_line": h.non_first_line_hash}
                for note_id, h in sorted(self.content_hashes.items())
            },
            "metadata_hashes": {f.name: getattr(self.metadata_hashes, f.name) for f in fields(MetadataHashes)},
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'CacheValidity':
        content = {
            note_id: ContentHashes(h.get("first_line"), h.get("non_first_line"))
            for note_id, h in (record.get("content_hashes") or {}).items()
        }
        metadata = record.get("metadata_hashes") or {}
        return cls(
            DirectiveDependencies.from_record(record.get("dependencies") or {}),
            content,
            MetadataHashes(**{f.name: metadata.get(f.name) for f in fields(MetadataHashes)}),
        )


def build_validity(deps: DirectiveDependencies, notes: Iterable[Note]) -> CacheValidity:
    notes = list(notes)
    by_id = {n.id: n for n in notes}
    content = {}
    for note_id in deps.first_line_notes | deps.non_first_line_notes:
        note = by_id.get(note_id)
        if note is None:
            continue
        content[note_id] = ContentHashes(
            hash_first_line(note.content) if note_id in deps.first_line_notes else None,
            hash_non_first_line(note.content) if note_id in deps.non_first_line_notes else None,
        )
    return CacheValidity(deps, content, compute_metadata_hashes(notes, deps))


def capture_validity(expression: Expression, value: Optional[DslValue], notes: Iterable[Note],
                     current_note: Optional[Note] = None) -> CacheValidity:
    """Analyze, resolve and hash in one step, right after a directive ran."""
    notes = list(notes)
    analysis = DependencyAnalyzer().analyze(expression)
    return build_validity(resolve_dependencies(analysis, notes, current_note, value), notes)


def _content_stale(note_ids: FrozenSet[str], by_id: Dict[str, Note], cached: Dict[str, ContentHashes],
                   hasher: Callable[[str], str], attr: str) -> bool:
    for note_id in sorted(note_ids):
        note = by_id.get(note_id)
        if note is None:
            return True
        hashes = cached.get(note_id)
        if hashes is None or getattr(hashes, attr) != hasher(note.content):
            return True
    return False


def is_stale(validity: CacheValidity, notes: Iterable[Note], current_note: Optional[Note] = None) -> bool:
    """
    True when any input `validity` was hashed from differs in `notes`.
    Hierarchy walks are only re-checked when `current_note` is given.
    """
    notes = list(notes)
    deps = validity.dependencies
    for flag, attr, compute in _METADATA:
        if getattr(deps, flag) and getattr(validity.metadata_hashes, attr) != compute(notes):
            return True

    by_id = {n.id: n for n in notes}
    if _content_stale(deps.first_line_notes, by_id, validity.content_hashes, hash_first_line, "first_line_hash"):
        return True
    if _content_stale(deps.non_first_line_notes, by_id, validity.content_hashes,
                      hash_non_first_line, "non_first_line_hash"):
        return True

    if current_note is not None:
        for dep in deps.hierarchy_deps:
            resolved = dep.path.resolve(current_note, notes)
            if (resolved.id if resolved else None) != dep.resolved_note_id:
                return True
            if resolved is not None and dep.field is not None and hash_field(resolved, dep.field) != dep.field_hash:
                return True
    return False
