"""
The builtin function registry and the Mindl standard library.

Every builtin is a `BuiltinFunction(name, call, is_dynamic)` where `call`
takes `(Arguments, Environment)` and returns a DslValue. The library itself
lives on `StdLib` as `_name` methods; `register_stdlib` discovers them the
same way the REPL lists them.
"""
import inspect
import math
import os
import sys
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from functools import cmp_to_key
from typing import Callable, Dict, List, Optional, Tuple

from mindl.mindl_environment import Environment
from mindl.mindl_notes import Note, NoteOperationException
from mindl.mindl_values import (
    DslValue, UNDEFINED, UndefinedValue, NumberValue, StringValue, BooleanValue,
    DateValue, TimeValue, DateTimeValue, PatternValue, ListValue, NoteValue,
    LambdaValue, ViewValue, ButtonValue, ScheduleValue, SCHEDULE_FREQUENCIES,
    boolean, compare_values,
)


class ExecutionException(Exception):
    def __init__(self, message: str, position: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.position = position


class CircularViewError(ExecutionException):
    pass


def _dbg(*args):
    if os.environ.get("MINDL_DEBUG"):
        print("[MINDL]", *args, file=sys.stderr)


# =================================================================
# Arguments
# =================================================================

class Arguments:
    """Positional and named arguments of one builtin call."""

    def __init__(self, positional: Optional[List[DslValue]] = None,
                 named: Optional[Dict[str, DslValue]] = None):
        self.positional: List[DslValue] = list(positional or [])
        self.named: Dict[str, DslValue] = dict(named or {})

    def __len__(self) -> int:
        return len(self.positional)

    def __getitem__(self, key):
        if isinstance(key, str):
            return self.named.get(key)
        if 0 <= key < len(self.positional):
            return self.positional[key]
        return None

    def has_named(self, name: Optional[str] = None) -> bool:
        if name is None:
            return bool(self.named)
        return name in self.named

    def require(self, index: int, param_name: Optional[str] = None) -> DslValue:
        value = self[index]
        if value is None:
            raise ExecutionException(f"Missing required {param_name or f'argument {index + 1}'}")
        return value

    def require_named(self, name: str) -> DslValue:
        value = self.named.get(name)
        if value is None:
            raise ExecutionException(f"Missing required argument '{name}'")
        return value

    def require_exact_count(self, count: int, func_name: str):
        if len(self) != count:
            noun = "argument" if count == 1 else "arguments"
            raise ExecutionException(f"'{func_name}' requires {count} {noun}, got {len(self)}")

    def require_no_args(self, func_name: str):
        if self.positional:
            raise ExecutionException(f"'{func_name}' takes no arguments, got {len(self)}")

    def _require_type(self, index: int, func_name: str, param_name: Optional[str],
                      kind: type, kind_name: str):
        param_name = param_name or f"argument {index + 1}"
        value = self[index]
        if value is None:
            raise ExecutionException(f"'{func_name}' missing {param_name}")
        if not isinstance(value, kind):
            raise ExecutionException(
                f"'{func_name}' {param_name} must be a {kind_name}, got {value.type_name}"
            )
        return value

    def require_number(self, index: int, func_name: str, param_name: Optional[str] = None) -> NumberValue:
        return self._require_type(index, func_name, param_name, NumberValue, "number")

    def require_string(self, index: int, func_name: str, param_name: Optional[str] = None) -> StringValue:
        return self._require_type(index, func_name, param_name, StringValue, "string")

    def require_pattern(self, index: int, func_name: str, param_name: Optional[str] = None) -> PatternValue:
        return self._require_type(index, func_name, param_name, PatternValue, "pattern")

    def require_boolean(self, index: int, func_name: str, param_name: Optional[str] = None) -> BooleanValue:
        return self._require_type(index, func_name, param_name, BooleanValue, "boolean")

    def require_lambda(self, index: int, func_name: str, param_name: Optional[str] = None) -> LambdaValue:
        return self._require_type(index, func_name, param_name, LambdaValue, "lambda")

    def get_lambda(self, name: str, func_name: str = "function") -> Optional[LambdaValue]:
        value = self.named.get(name)
        if value is None:
            return None
        if not isinstance(value, LambdaValue):
            raise ExecutionException(f"'{func_name}' {name}: must be a lambda, got {value.type_name}")
        return value


# =================================================================
# Registry
# =================================================================

@dataclass(frozen=True)
class BuiltinFunction:
    name: str
    call: Callable[[Arguments, Environment], DslValue]
    is_dynamic: bool = False


class BuiltinRegistry:
    def __init__(self):
        self._functions: Dict[str, BuiltinFunction] = {}

    def register(self, function: BuiltinFunction):
        self._functions[function.name] = function

    def get(self, name: str) -> Optional[BuiltinFunction]:
        return self._functions.get(name)

    def has(self, name: str) -> bool:
        return name in self._functions

    def is_dynamic(self, name: str) -> bool:
        function = self._functions.get(name)
        return function is not None and function.is_dynamic

    def all_names(self) -> List[str]:
        return sorted(self._functions)


def dynamic(func):
    """Marks a StdLib method whose result depends on the clock."""
    func._is_dynamic = True
    return func


# =================================================================
# Shared helpers
# =================================================================

def is_truthy(value: DslValue, func_name: str, param_name: str = "argument") -> bool:
    """Boolean context: Undefined counts as false, anything else must be a boolean."""
    if isinstance(value, UndefinedValue):
        return False
    if isinstance(value, BooleanValue):
        return value.value
    raise ExecutionException(f"'{func_name}' {param_name} must be a boolean, got {value.type_name}")


def _coerce_temporal(value: DslValue, like: DslValue) -> DslValue:
    if not isinstance(value, StringValue):
        return value
    text = value.value
    try:
        if isinstance(like, DateValue):
            return DateValue(date.fromisoformat(text))
        if isinstance(like, TimeValue):
            return TimeValue(time.fromisoformat(text))
        if isinstance(like, DateTimeValue):
            return DateTimeValue(datetime.fromisoformat(text))
    except ValueError:
        raise ExecutionException(f"Cannot parse '{text}' as a {like.type_name}")
    return value


def compare_for_comparison(a: DslValue, b: DslValue) -> int:
    """
    Comparison used by `eq`, `gt` and friends. Strings are read as dates or
    times when compared against one; other mixed-type comparisons fail.
    """
    norm_a = _coerce_temporal(a, b)
    norm_b = _coerce_temporal(b, a)
    if type(norm_a) is not type(norm_b):
        raise ExecutionException(f"Cannot compare {a.type_name} with {b.type_name}")
    return compare_values(norm_a, norm_b)


def invoke_lambda(env: Environment, lam: LambdaValue, args: List[DslValue], func_name: str) -> DslValue:
    executor = env.get_executor()
    if executor is None:
        raise ExecutionException(f"'{func_name}' requires an executor in the environment")
    return executor.invoke_lambda(lam, args)


def _matches_filter(filter_value: Optional[DslValue], text: str, param: str) -> bool:
    match filter_value:
        case None:
            return True
        case StringValue(value=value):
            return text == value
        case PatternValue():
            return filter_value.matches(text)
        case _:
            raise ExecutionException(
                f"'find' {param} argument must be a string or pattern, got {filter_value.type_name}"
            )


def _require_note_operations(env: Environment, func_name: str):
    ops = env.get_note_operations()
    if ops is None:
        raise ExecutionException(f"'{func_name}' requires note operations, which are not available here")
    return ops


def _note_label(note_id: str, notes) -> str:
    for note in notes or ():
        if note.id == note_id:
            return note.path or note.first_line or note.id
    return note_id


# =================================================================
# Standard library
# =================================================================

class StdLib:
    """Python implementations of every Mindl builtin."""

    # --- Arithmetic ---

    def _numbers(self, args: Arguments, name: str) -> Tuple[float, float]:
        args.require_exact_count(2, name)
        return args.require_number(0, name).value, args.require_number(1, name).value

    def _add(self, args, env):
        a, b = self._numbers(args, "add")
        return NumberValue(a + b)

    def _sub(self, args, env):
        a, b = self._numbers(args, "sub")
        return NumberValue(a - b)

    def _mul(self, args, env):
        a, b = self._numbers(args, "mul")
        return NumberValue(a * b)

    def _div(self, args, env):
        a, b = self._numbers(args, "div")
        if b == 0:
            raise ExecutionException("Division by zero")
        return NumberValue(a / b)

    def _mod(self, args, env):
        a, b = self._numbers(args, "mod")
        if b == 0:
            raise ExecutionException("Modulo by zero")
        return NumberValue(math.fmod(a, b))

    # --- Comparison and logic ---

    def _compare(self, args: Arguments, name: str) -> int:
        args.require_exact_count(2, name)
        return compare_for_comparison(args.require(0, "first argument"), args.require(1, "second argument"))

    def _eq(self, args, env): return boolean(self._compare(args, "eq") == 0)
    def _ne(self, args, env): return boolean(self._compare(args, "ne") != 0)
    def _gt(self, args, env): return boolean(self._compare(args, "gt") > 0)
    def _lt(self, args, env): return boolean(self._compare(args, "lt") < 0)
    def _gte(self, args, env): return boolean(self._compare(args, "gte") >= 0)
    def _lte(self, args, env): return boolean(self._compare(args, "lte") <= 0)

    def _and(self, args, env):
        args.require_exact_count(2, "and")
        return boolean(is_truthy(args[0], "and", "first argument") and is_truthy(args[1], "and", "second argument"))

    def _or(self, args, env):
        args.require_exact_count(2, "or")
        return boolean(is_truthy(args[0], "or", "first argument") or is_truthy(args[1], "or", "second argument"))

    def _not(self, args, env):
        args.require_exact_count(1, "not")
        return boolean(not is_truthy(args[0], "not"))

    # --- Strings ---

    def _string(self, args, env):
        return StringValue("".join(arg.display() for arg in args.positional))

    def _qt(self, args, env):
        args.require_no_args("qt")
        return StringValue('"')

    def _nl(self, args, env):
        args.require_no_args("nl")
        return StringValue("\n")

    def _tab(self, args, env):
        args.require_no_args("tab")
        return StringValue("\t")

    def _ret(self, args, env):
        args.require_no_args("ret")
        return StringValue("\r")

    # --- Dates and times ---

    @dynamic
    def _date(self, args, env):
        args.require_no_args("date")
        return DateValue(env.now().date())

    @dynamic
    def _time(self, args, env):
        args.require_no_args("time")
        return TimeValue(env.now().time())

    @dynamic
    def _datetime(self, args, env):
        args.require_no_args("datetime")
        return DateTimeValue(env.now())

    def _parse_date(self, args, env):
        args.require_exact_count(1, "parse_date")
        text = args.require_string(0, "parse_date").value
        try:
            return DateValue(date.fromisoformat(text))
        except ValueError:
            raise ExecutionException(f"'parse_date' failed to parse date: '{text}'")

    def _add_days(self, args, env):
        args.require_exact_count(2, "add_days")
        start = args.require(0, "date")
        days = args.require_number(1, "add_days", "days").value
        delta = timedelta(days=days)
        match start:
            case DateValue(value=d):
                return DateValue(d + delta)
            case DateTimeValue(value=dt):
                return DateTimeValue(dt + delta)
            case _:
                raise ExecutionException(f"'add_days' argument 1 must be a date, got {start.type_name}")

    # --- Lists ---

    def _list(self, args, env):
        return ListValue(tuple(args.positional))

    def _first(self, args, env):
        args.require_exact_count(1, "first")
        items = args[0]
        if not isinstance(items, ListValue):
            raise ExecutionException(f"'first' argument must be a list, got {items.type_name}")
        return items.items[0] if items.items else UNDEFINED

    def _sort(self, args, env):
        if len(args) != 1:
            raise ExecutionException(f"'sort' requires exactly 1 positional argument (list), got {len(args)}")
        items = args[0]
        if not isinstance(items, ListValue):
            raise ExecutionException(f"'sort' first argument must be a list, got {items.type_name}")
        key = args.get_lambda("key", "sort")
        descending = self._sort_order(args["order"])

        if key is not None:
            keyed = [(item, invoke_lambda(env, key, [item], "sort")) for item in items.items]
        else:
            keyed = [(item, item) for item in items.items]
        keyed.sort(key=cmp_to_key(lambda x, y: compare_values(x[1], y[1])))
        result = [item for item, _ in keyed]
        if descending:
            result.reverse()
        return ListValue(tuple(result))

    @staticmethod
    def _sort_order(order: Optional[DslValue]) -> bool:
        match order:
            case None:
                return False
            case StringValue(value=value) if value.lower() in ("ascending", "descending"):
                return value.lower() == "descending"
            case StringValue(value=value):
                raise ExecutionException(f"'sort' order must be 'ascending' or 'descending', got '{value}'")
            case _:
                raise ExecutionException(
                    f"'sort' order must be 'ascending' or 'descending', got {order.type_name}"
                )

    def _ascending(self, args, env):
        args.require_no_args("ascending")
        return StringValue("ascending")

    def _descending(self, args, env):
        args.require_no_args("descending")
        return StringValue("descending")

    # --- Patterns ---

    def _matches(self, args, env):
        args.require_exact_count(2, "matches")
        text = args.require_string(0, "matches", "string")
        pattern = args.require_pattern(1, "matches", "pattern")
        return boolean(pattern.matches(text.value))

    # --- Notes ---

    def _find(self, args, env):
        notes = env.get_notes()
        if not notes:
            return ListValue(())
        path_filter = args["path"]
        name_filter = args["name"]
        where = args.get_lambda("where", "find")

        found = []
        for note in notes:
            if not _matches_filter(path_filter, note.path, "path"):
                continue
            if not _matches_filter(name_filter, note.first_line, "name"):
                continue
            if where is not None:
                verdict = invoke_lambda(env, where, [NoteValue(note)], "find")
                if not isinstance(verdict, (BooleanValue, UndefinedValue)):
                    raise ExecutionException(
                        f"'find' where: lambda must return a boolean, got {verdict.type_name}"
                    )
                if not is_truthy(verdict, "find", "where: result"):
                    continue
            found.append(NoteValue(note))
        _dbg("find", path_filter, name_filter, "->", len(found))
        return ListValue(tuple(found))

    def _new(self, args, env):
        ops = _require_note_operations(env, "new")
        path = args.require_named("path")
        if not isinstance(path, StringValue):
            raise ExecutionException(f"'new' path: must be a string, got {path.type_name}")
        content = args["content"]
        content_text = content.display() if content is not None else ""
        if ops.note_exists_at_path(path.value):
            raise ExecutionException(f"Note already exists at path: {path.value}")
        try:
            return NoteValue(ops.create_note(path.value, content_text))
        except NoteOperationException as e:
            raise ExecutionException(f"Failed to create note: {e.message}")

    def _maybe_new(self, args, env):
        ops = _require_note_operations(env, "maybe_new")
        path = args.require_named("path")
        if not isinstance(path, StringValue):
            raise ExecutionException(f"'maybe_new' path: must be a string, got {path.type_name}")
        try:
            existing = ops.find_by_path(path.value)
            if existing is not None:
                return NoteValue(existing)
            content = args["maybe_content"]
            return NoteValue(ops.create_note(path.value, content.display() if content is not None else ""))
        except NoteOperationException as e:
            raise ExecutionException(f"Failed to create note: {e.message}")

    def _view(self, args, env):
        from mindl.mindl_directives import render_note_content  # lazy import to avoid cycles
        args.require_exact_count(1, "view")
        target = args[0]
        match target:
            case NoteValue(note=note):
                notes: List[Note] = [note]
            case ListValue(items=items):
                notes = []
                for item in items:
                    if not isinstance(item, NoteValue):
                        raise ExecutionException(f"'view' list items must be notes, got {item.type_name}")
                    notes.append(item.note)
            case _:
                raise ExecutionException(f"'view' argument must be a note or list of notes, got {target.type_name}")

        rendered = []
        for note in notes:
            if env.is_in_view_stack(note.id):
                chain = env.view_stack_path() + (note.id,)
                labels = [_note_label(note_id, env.get_notes()) for note_id in chain]
                raise CircularViewError(f"Circular view dependency: {' → '.join(labels)}")
            rendered.append(render_note_content(note, env.push_view_stack(note.id)))
        return ViewValue(tuple(notes), tuple(rendered))

    def _maybe(self, args, env):
        if len(args) not in (1, 2):
            raise ExecutionException(f"'maybe' requires 1 or 2 arguments, got {len(args)}")
        value = args[0]
        if isinstance(value, UndefinedValue):
            return args[1] if len(args) == 2 else StringValue("")
        return value

    def _if(self, args, env):
        if len(args) not in (2, 3):
            raise ExecutionException(f"'if' requires 2 or 3 arguments, got {len(args)}")
        if is_truthy(args[0], "if", "condition"):
            return args[1]
        return args[2] if len(args) == 3 else UNDEFINED

    # --- Actions ---

    def _button(self, args, env):
        label = args.require_string(0, "button", "label")
        action = args.require_lambda(1, "button", "action")
        return ButtonValue(label.value, action)

    def _schedule(self, args, env):
        frequency = args.require(0, "frequency")
        action = args.require_lambda(1, "schedule", "action")
        if not isinstance(frequency, StringValue):
            raise ExecutionException(
                "schedule() frequency must be a schedule identifier (daily, hourly, weekly), "
                f"got {frequency.type_name}"
            )
        if frequency.value not in SCHEDULE_FREQUENCIES:
            raise ExecutionException(
                f"Unknown schedule frequency '{frequency.value}'. "
                f"Valid options: {', '.join(SCHEDULE_FREQUENCIES)}"
            )
        at = args["at"]
        if at is not None and not isinstance(at, StringValue):
            raise ExecutionException(f"'schedule' at: must be a string, got {at.type_name}")
        return ScheduleValue(frequency.value, action, at.value if at is not None else None)

    def _daily(self, args, env):
        args.require_no_args("daily")
        return StringValue("daily")

    def _hourly(self, args, env):
        args.require_no_args("hourly")
        return StringValue("hourly")

    def _weekly(self, args, env):
        args.require_no_args("weekly")
        return StringValue("weekly")


# Helpers on StdLib that are not builtins themselves.
_NOT_BUILTINS = {"_numbers", "_compare", "_sort_order"}


def register_stdlib(registry: BuiltinRegistry, stdlib: Optional[StdLib] = None) -> BuiltinRegistry:
    stdlib = stdlib or StdLib()
    for name, member in inspect.getmembers(stdlib):
        if not name.startswith('_') or name.startswith('__') or not callable(member):
            continue
        if name in _NOT_BUILTINS:
            continue
        registry.register(BuiltinFunction(
            name=name[1:],
            call=member,
            is_dynamic=getattr(member, "_is_dynamic", False),
        ))
    return registry


def create_default_registry() -> BuiltinRegistry:
    return register_stdlib(BuiltinRegistry())


DEFAULT_REGISTRY = create_default_registry()
