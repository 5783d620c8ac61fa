"""
Directive lifecycle: finding `[...]` spans in note text, keeping their
identity stable across edits, executing them, and the cached result record.

    execute_directive("[add(1, 2)]", notes=[]).result.to_display_string()   # "3"
"""
import hashlib
import uuid as uuid_lib
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from mindl.mindl_analyzers import DynamicCallAnalyzer, MutationValidator
from mindl.mindl_builtins import CircularViewError, ExecutionException
from mindl.mindl_dependencies import CacheValidity, capture_validity, is_stale
from mindl.mindl_environment import Environment, OnceCache
from mindl.mindl_executor import Executor
from mindl.mindl_lexer import LexError, directive_end
from mindl.mindl_notes import Note, NoteMutation, NoteOperations
from mindl.mindl_parser import ParseError, parse_directive
from mindl.mindl_values import DslValue, SerializationError, deserialize


# =================================================================
# Span discovery
# =================================================================

@dataclass(frozen=True)
class FoundDirective:
    source_text: str
    start_offset: int
    end_offset: int  # exclusive


def find_directives(text: str) -> List[FoundDirective]:
    """
    Outermost `[...]` spans. Nested brackets are part of their directive and
    brackets inside string literals are ignored. Doubled brackets that
    cannot nest are escaped literals (see `mindl_lexer.directive_end`). An
    opener that is never closed is not reported.
    """
    found = []
    i = 0
    while i < len(text):
        if text[i] == '[':
            span = directive_end(text, i)
            if span is not None:
                end = span[0]
                found.append(FoundDirective(text[i:end], i, end))
                i = end
                continue
        i += 1
    return found


def contains_directives(text: str) -> bool:
    return bool(find_directives(text))


def hash_directive(source_text: str) -> str:
    return hashlib.sha256(source_text.encode("utf-8")).hexdigest()


def directive_key(line_index: int, offset: int) -> str:
    return f"{line_index}:{offset}"


# =================================================================
# Identity across edits
# =================================================================

@dataclass(frozen=True)
class DirectiveLocation:
    line_index: int
    start_offset: int
    source_text: str


@dataclass(frozen=True)
class DirectiveInstance:
    uuid: str
    line_index: int
    start_offset: int
    source_text: str

    @classmethod
    def create(cls, line_index: int, start_offset: int, source_text: str) -> 'DirectiveInstance':
        return cls(str(uuid_lib.uuid4()), line_index, start_offset, source_text)

    @property
    def key(self) -> str:
        return directive_key(self.line_index, self.start_offset)


def parse_all_directive_locations(content: str) -> List[DirectiveLocation]:
    locations = []
    for line_index, line in enumerate(content.split("\n")):
        for found in find_directives(line):
            locations.append(DirectiveLocation(line_index, found.start_offset, found.source_text))
    return locations


def match_directive_instances(existing: List[DirectiveInstance],
                              new: List[DirectiveLocation]) -> List[DirectiveInstance]:
    """
    Carry UUIDs over from `existing` to the directives now at `new`.

    Passes, in order: same line, offset and text; same line and text; the
    only remaining instance anywhere with that text. Everything else gets a
    fresh UUID, including text that has several equally good candidates.
    The result is in the order of `new`.
    """
    matched: Dict[int, DirectiveInstance] = {}
    used = set()

    def claim(index: int, location: DirectiveLocation, instance: DirectiveInstance):
        used.add(instance.uuid)
        matched[index] = replace(instance, line_index=location.line_index,
                                 start_offset=location.start_offset)

    passes = [
        lambda loc, inst: (inst.line_index == loc.line_index and inst.start_offset == loc.start_offset
                           and inst.source_text == loc.source_text),
        lambda loc, inst: inst.line_index == loc.line_index and inst.source_text == loc.source_text,
    ]
    for predicate in passes:
        for index, location in enumerate(new):
            if index in matched:
                continue
            for instance in existing:
                if instance.uuid not in used and predicate(location, instance):
                    claim(index, location, instance)
                    break

    for index, location in enumerate(new):
        if index in matched:
            continue
        candidates = [i for i in existing if i.uuid not in used and i.source_text == location.source_text]
        if len(candidates) == 1:
            claim(index, location, candidates[0])

    return [
        matched.get(index) or DirectiveInstance.create(loc.line_index, loc.start_offset, loc.source_text)
        for index, loc in enumerate(new)
    ]


# =================================================================
# Result record
# =================================================================

@dataclass(frozen=True)
class DirectiveResult:
    """What the cache stores for one directive: a serialized value or an error."""
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    display: Optional[str] = None
    is_dynamic: bool = False
    collapsed: bool = True
    executed_at: Optional[datetime] = None
    validity: Optional[CacheValidity] = None

    @classmethod
    def success(cls, value: DslValue, is_dynamic: bool = False, collapsed: bool = True,
                executed_at: Optional[datetime] = None,
                validity: Optional[CacheValidity] = None) -> 'DirectiveResult':
        try:
            record = value.serialize()
        except SerializationError:
            record = None
        return cls(record, None, value.display(), is_dynamic, collapsed, executed_at, validity)

    @classmethod
    def failure(cls, message: str, collapsed: bool = True) -> 'DirectiveResult':
        return cls(None, message, None, False, collapsed)

    @property
    def is_computed(self) -> bool:
        return self.error is None and (self.result is not None or self.display is not None)

    def to_value(self) -> Optional[DslValue]:
        if self.result is None:
            return None
        try:
            return deserialize(self.result)
        except SerializationError:
            return None

    def to_display_string(self, fallback: str = "...") -> str:
        if self.error is not None:
            return f"Error: {self.error}"
        value = self.to_value()
        if value is not None:
            return value.display()
        if self.display is not None:
            return self.display
        return fallback

    def is_stale(self, notes: Iterable[Note], current_note: Optional[Note] = None) -> bool:
        """A result without recorded validity cannot be checked, so it is always stale."""
        if self.validity is None:
            return True
        return is_stale(self.validity, notes, current_note)

    def to_record(self) -> Dict[str, Any]:
        record = {
            "result": self.result,
            "error": self.error,
            "display": self.display,
            "is_dynamic": self.is_dynamic,
            "collapsed": self.collapsed,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
        }
        if self.validity is not None:
            record["validity"] = self.validity.to_record()
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'DirectiveResult':
        executed_at = record.get("executed_at")
        validity = record.get("validity")
        return cls(
            result=record.get("result"),
            error=record.get("error"),
            display=record.get("display"),
            is_dynamic=bool(record.get("is_dynamic", False)),
            collapsed=bool(record.get("collapsed", True)),
            executed_at=datetime.fromisoformat(executed_at) if executed_at else None,
            validity=CacheValidity.from_record(validity) if validity else None,
        )


# =================================================================
# Execution
# =================================================================

@dataclass
class DirectiveExecutionResult:
    result: DirectiveResult
    mutations: List[NoteMutation] = field(default_factory=list)
    value: Optional[DslValue] = None


def _evaluate(source_text: str, env: Environment, executor: Executor,
              nested: bool = False) -> DirectiveExecutionResult:
    try:
        directive = parse_directive(source_text)
    except LexError as e:
        return DirectiveExecutionResult(DirectiveResult.failure(f"Lexer error: {e.message}"))
    except ParseError as e:
        return DirectiveExecutionResult(DirectiveResult.failure(f"Parse error: {e.message}"))

    validation = MutationValidator().validate(directive.expression)
    if not validation.is_valid():
        return DirectiveExecutionResult(DirectiveResult.failure(f"Validation error: {validation.error_message()}"))

    is_dynamic = DynamicCallAnalyzer.contains_dynamic_calls(directive.expression, executor.registry)
    try:
        value = executor.execute(directive, env)
    except CircularViewError as e:
        if nested:
            raise
        return DirectiveExecutionResult(DirectiveResult.failure(f"Execution error: {e.message}"), env.mutations())
    except ExecutionException as e:
        return DirectiveExecutionResult(DirectiveResult.failure(f"Execution error: {e.message}"), env.mutations())
    except Exception as e:
        return DirectiveExecutionResult(DirectiveResult.failure(f"Execution error: Internal error: {e}"), env.mutations())
    validity = capture_validity(directive.expression, value, env.get_notes() or (), env.get_current_note())
    result = DirectiveResult.success(value, is_dynamic, executed_at=env.now(), validity=validity)
    return DirectiveExecutionResult(result, env.mutations(), value)


def _root_environment(notes: Optional[Iterable[Note]], current_note: Optional[Note],
                      note_operations: Optional[NoteOperations], once_cache: Optional[OnceCache],
                      view_stack: Iterable[str], mocked_time: Optional[datetime]) -> Environment:
    env = Environment.create(notes, current_note, note_operations, once_cache, mocked_time)
    for note_id in view_stack:
        env = env.push_view_stack(note_id)
    if current_note is not None and not env.is_in_view_stack(current_note.id):
        env = env.push_view_stack(current_note.id)
    return env


def execute_directive(source_text: str,
                      notes: Optional[Iterable[Note]] = None,
                      current_note: Optional[Note] = None,
                      note_operations: Optional[NoteOperations] = None,
                      once_cache: Optional[OnceCache] = None,
                      view_stack: Iterable[str] = (),
                      mocked_time: Optional[datetime] = None,
                      executor: Optional[Executor] = None) -> DirectiveExecutionResult:
    """
    Lex, parse, validate and run one directive. Never raises for a bad
    directive: every failure is an error `DirectiveResult` whose message
    starts with the stage that failed.
    """
    env = _root_environment(notes, current_note, note_operations, once_cache, view_stack, mocked_time)
    return _evaluate(source_text, env, executor or Executor())


def execute_all_directives(line: str, line_index: int,
                           notes: Optional[Iterable[Note]] = None,
                           current_note: Optional[Note] = None,
                           note_operations: Optional[NoteOperations] = None,
                           once_cache: Optional[OnceCache] = None,
                           executor: Optional[Executor] = None,
                           mocked_time: Optional[datetime] = None) -> Dict[str, DirectiveResult]:
    notes = list(notes) if notes is not None else None
    executor = executor or Executor()
    results = {}
    for found in find_directives(line):
        outcome = execute_directive(found.source_text, notes, current_note, note_operations,
                                    once_cache, mocked_time=mocked_time, executor=executor)
        results[directive_key(line_index, found.start_offset)] = outcome.result
    return results


def render_note_content(note: Note, env: Environment) -> str:
    """Note content with each directive replaced by its display string."""
    executor = env.get_executor() or Executor()
    note_env = env.for_note(note)
    lines = []
    for line in note.content.split("\n"):
        pieces = []
        last = 0
        for found in find_directives(line):
            pieces.append(line[last:found.start_offset])
            outcome = _evaluate(found.source_text, note_env.child(), executor, nested=True)
            pieces.append(outcome.result.to_display_string())
            last = found.end_offset
        pieces.append(line[last:])
        lines.append("".join(pieces))
    return "\n".join(lines)


# =================================================================
# Display segments
# =================================================================

@dataclass(frozen=True)
class TextSegment:
    content: str
    start: int
    end: int


@dataclass(frozen=True)
class DirectiveSegment:
    source_text: str
    key: str
    result: Optional[DirectiveResult]
    start: int
    end: int

    @property
    def is_computed(self) -> bool:
        return self.result is not None and self.result.is_computed

    @property
    def display_text(self) -> str:
        if self.is_computed:
            return self.result.to_display_string(self.source_text)
        return self.source_text


Segment = Union[TextSegment, DirectiveSegment]


@dataclass(frozen=True)
class DirectiveDisplayRange:
    key: str
    source_range: Tuple[int, int]
    display_range: Tuple[int, int]
    source_text: str
    display_text: str
    is_computed: bool
    has_error: bool


@dataclass(frozen=True)
class DisplayText:
    display_text: str
    segments: Tuple[Segment, ...]
    directive_ranges: Tuple[DirectiveDisplayRange, ...]


def segment_line(content: str, line_index: int,
                 results: Optional[Dict[str, DirectiveResult]] = None) -> List[Segment]:
    results = results or {}
    segments: List[Segment] = []
    last = 0
    for found in find_directives(content):
        if found.start_offset > last:
            segments.append(TextSegment(content[last:found.start_offset], last, found.start_offset))
        key = directive_key(line_index, found.start_offset)
        segments.append(DirectiveSegment(found.source_text, key, results.get(key),
                                         found.start_offset, found.end_offset))
        last = found.end_offset
    if last < len(content):
        segments.append(TextSegment(content[last:], last, len(content)))
    return segments


def build_display_text(content: str, line_index: int,
                       results: Optional[Dict[str, DirectiveResult]] = None) -> DisplayText:
    segments = segment_line(content, line_index, results)
    parts: List[str] = []
    length = 0
    ranges = []
    for segment in segments:
        match segment:
            case TextSegment(content=text):
                parts.append(text)
                length += len(text)
            case DirectiveSegment():
                text = segment.display_text
                ranges.append(DirectiveDisplayRange(
                    key=segment.key,
                    source_range=(segment.start, segment.end),
                    display_range=(length, length + len(text)),
                    source_text=segment.source_text,
                    display_text=text,
                    is_computed=segment.is_computed,
                    has_error=segment.result is not None and segment.result.error is not None,
                ))
                parts.append(text)
                length += len(text)
    return DisplayText("".join(parts), tuple(segments), tuple(ranges))
