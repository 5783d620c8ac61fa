"""
Runtime values produced by evaluating Mindl expressions.

The set of value types is closed. Every consumer (display, serialization,
ordering, property dispatch) handles each of them explicitly.

Serialized form is always `{"type": <type_name>, "value": <payload>}`, which
is what the directive result cache stores.
"""
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, ClassVar, Dict, Optional, Tuple, TYPE_CHECKING

from mindl.mindl_notes import Note
from mindl.mindl_pattern import full_match

if TYPE_CHECKING:
    from mindl.mindl_ast import Expression
    from mindl.mindl_environment import Environment


class SerializationError(Exception):
    pass


class DslValue:
    """Base class of all runtime values."""
    type_name: ClassVar[str] = "value"

    def display(self) -> str:
        raise NotImplementedError

    def serialize(self) -> Dict[str, Any]:
        return {"type": self.type_name, "value": self._payload()}

    def _payload(self) -> Any:
        raise SerializationError(f"Values of type '{self.type_name}' cannot be serialized")

    def __str__(self) -> str:
        return self.display()


# =================================================================
# Primitive values
# =================================================================

@dataclass(frozen=True)
class UndefinedValue(DslValue):
    """Returned for missing data: absent properties, exhausted ancestors, empty `first`."""
    type_name: ClassVar[str] = "undefined"

    def display(self) -> str:
        return "undefined"

    def _payload(self) -> Any:
        return None


UNDEFINED = UndefinedValue()


@dataclass(frozen=True)
class NumberValue(DslValue):
    value: float
    type_name: ClassVar[str] = "number"

    def display(self) -> str:
        return format_number(self.value)

    def _payload(self) -> Any:
        return self.value


def format_number(value: float) -> str:
    if math.isfinite(value) and value == int(value):
        return str(int(value))
    return str(value)


@dataclass(frozen=True)
class StringValue(DslValue):
    value: str
    type_name: ClassVar[str] = "string"

    def display(self) -> str:
        return self.value

    def _payload(self) -> Any:
        return self.value


@dataclass(frozen=True)
class BooleanValue(DslValue):
    value: bool
    type_name: ClassVar[str] = "boolean"

    def display(self) -> str:
        return "true" if self.value else "false"

    def _payload(self) -> Any:
        return self.value


TRUE = BooleanValue(True)
FALSE = BooleanValue(False)


def boolean(value: bool) -> BooleanValue:
    return TRUE if value else FALSE


# =================================================================
# Temporal values
# =================================================================

@dataclass(frozen=True)
class DateValue(DslValue):
    value: date
    type_name: ClassVar[str] = "date"

    def display(self) -> str:
        return self.value.isoformat()

    def _payload(self) -> Any:
        return self.value.isoformat()


@dataclass(frozen=True)
class TimeValue(DslValue):
    value: time
    type_name: ClassVar[str] = "time"

    def display(self) -> str:
        return self.value.strftime("%H:%M:%S")

    def _payload(self) -> Any:
        return self.value.isoformat()


@dataclass(frozen=True)
class DateTimeValue(DslValue):
    value: datetime
    type_name: ClassVar[str] = "datetime"

    def display(self) -> str:
        return self.value.strftime("%Y-%m-%d, %H:%M:%S")

    def _payload(self) -> Any:
        return self.value.isoformat()


# =================================================================
# Structured values
# =================================================================

@dataclass(frozen=True)
class PatternValue(DslValue):
    """A compiled `pattern(...)`. Two patterns are equal when their regexes are."""
    regex: str
    type_name: ClassVar[str] = "pattern"

    def matches(self, text: str) -> bool:
        return full_match(self.regex, text)

    def display(self) -> str:
        return f"pattern({self.regex})"

    def _payload(self) -> Any:
        return self.regex


@dataclass(frozen=True)
class ListValue(DslValue):
    items: Tuple[DslValue, ...] = ()
    type_name: ClassVar[str] = "list"

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)

    def display(self) -> str:
        return "[" + ", ".join(item.display() for item in self.items) + "]"

    def _payload(self) -> Any:
        return [item.serialize() for item in self.items]


@dataclass(frozen=True)
class NoteValue(DslValue):
    note: Note
    type_name: ClassVar[str] = "note"

    def display(self) -> str:
        if self.note.path:
            return self.note.path
        if self.note.content:
            return self.note.first_line
        return self.note.id

    def _payload(self) -> Any:
        return self.note.to_dict()


@dataclass(frozen=True, eq=False)
class LambdaValue(DslValue):
    """
    A closure: parameters, an unevaluated body, and the environment it was
    created in. Also the result of `later ...`, a deferred computation.
    """
    params: Tuple[str, ...]
    body: "Expression"
    env: "Environment"
    type_name: ClassVar[str] = "lambda"

    def display(self) -> str:
        return f"<lambda({', '.join(self.params)})>"


@dataclass(frozen=True)
class ViewValue(DslValue):
    notes: Tuple[Note, ...] = ()
    rendered_contents: Tuple[str, ...] = ()
    type_name: ClassVar[str] = "view"

    def display(self) -> str:
        contents = self.rendered_contents
        if not contents:
            return "[empty view]"
        return "\n---\n".join(contents)

    def _payload(self) -> Any:
        return {
            "notes": [note.to_dict() for note in self.notes],
            "rendered_contents": list(self.rendered_contents),
        }


@dataclass(frozen=True)
class ButtonValue(DslValue):
    label: str
    action: LambdaValue = field(compare=False)
    type_name: ClassVar[str] = "button"

    def display(self) -> str:
        return f"[Button: {self.label}]"

    def _payload(self) -> Any:
        return {"label": self.label}


SCHEDULE_FREQUENCIES = ("daily", "hourly", "weekly")


@dataclass(frozen=True)
class ScheduleValue(DslValue):
    frequency: str
    action: LambdaValue = field(compare=False)
    at_time: Optional[str] = None
    type_name: ClassVar[str] = "schedule"

    def display(self) -> str:
        at = f" at {self.at_time}" if self.at_time else ""
        return f"[Schedule: {self.frequency}{at}]"

    def _payload(self) -> Any:
        return {"frequency": self.frequency, "at_time": self.at_time}


# =================================================================
# Serialization
# =================================================================

def deserialize(data: Dict[str, Any]) -> DslValue:
    if not isinstance(data, dict) or "type" not in data:
        raise SerializationError("Missing 'type' field in serialized value")
    type_name = data["type"]
    payload = data.get("value")
    match type_name:
        case "undefined":
            return UNDEFINED
        case "number":
            return NumberValue(float(payload))
        case "string":
            return StringValue(payload)
        case "boolean":
            return boolean(bool(payload))
        case "date":
            return DateValue(date.fromisoformat(payload))
        case "time":
            return TimeValue(time.fromisoformat(payload))
        case "datetime":
            return DateTimeValue(datetime.fromisoformat(payload))
        case "pattern":
            return PatternValue(payload)
        case "list":
            return ListValue(tuple(deserialize(item) for item in payload))
        case "note":
            return NoteValue(Note.from_dict(payload))
        case "view":
            return ViewValue(
                tuple(Note.from_dict(n) for n in payload.get("notes", [])),
                tuple(payload.get("rendered_contents") or ()),
            )
        case "lambda" | "button" | "schedule":
            raise SerializationError(f"Cannot deserialize '{type_name}': actions are not stored")
        case _:
            raise SerializationError(f"Unknown value type: {type_name}")


# =================================================================
# Ordering
# =================================================================

_TYPE_RANK = {
    UndefinedValue: 0,
    BooleanValue: 1,
    NumberValue: 2,
    StringValue: 3,
    DateValue: 4,
    TimeValue: 5,
    DateTimeValue: 6,
    NoteValue: 7,
    ListValue: 8,
}


def type_rank(value: DslValue) -> int:
    return _TYPE_RANK.get(type(value), 9)


def _cmp(a: Any, b: Any) -> int:
    return (a > b) - (a < b)


def compare_values(a: DslValue, b: DslValue) -> int:
    """Total order over values: -1, 0 or 1."""
    rank_a, rank_b = type_rank(a), type_rank(b)
    if rank_a != rank_b:
        return _cmp(rank_a, rank_b)
    match a:
        case UndefinedValue():
            return 0
        case BooleanValue() | NumberValue() | StringValue() | DateValue() | TimeValue() | DateTimeValue():
            return _cmp(a.value, b.value)
        case NoteValue():
            return _cmp(_note_key(a.note), _note_key(b.note))
        case ListValue():
            if len(a.items) != len(b.items):
                return _cmp(len(a.items), len(b.items))
            for x, y in zip(a.items, b.items):
                result = compare_values(x, y)
                if result:
                    return result
            return 0
        case _:
            if type(a) is not type(b):
                return _cmp(a.type_name, b.type_name)
            return _cmp(a.display(), b.display())


def _note_key(note: Note) -> Tuple[str, str, str]:
    return (note.path, note.first_line, note.id)
