"""
The Mindl evaluator: walks a parsed expression against an Environment and
produces a DslValue.

Method calls (`x.gt(3)`, `time.plus(hours: 1)`, `.append("done")`) and note
properties (`.path`, `.up`) are dispatched by `MethodHandler` and
`NotePropertyHandler`.
"""
import math
import os
import sys
from datetime import date, datetime, timedelta
from typing import List, Optional

from mindl.mindl_ast import (
    Expression, NumberLiteral, StringLiteral, CallExpr, VariableRef,
    CurrentNoteRef, PropertyAccess, MethodCall, Assignment, StatementList,
    LambdaExpr, LambdaInvocation, OnceExpr, RefreshExpr, PatternExpr, Directive,
)
from mindl.mindl_builtins import (
    Arguments, BuiltinRegistry, DEFAULT_REGISTRY, ExecutionException,
    compare_for_comparison, is_truthy,
)
from mindl.mindl_environment import Environment
from mindl.mindl_hierarchy import find_ancestor, find_parent, find_root
from mindl.mindl_notes import MutationType, NoteMutation, NoteOperationException
from mindl.mindl_pattern import compile_pattern
from mindl.mindl_values import (
    DslValue, UNDEFINED, UndefinedValue, NumberValue, StringValue, BooleanValue,
    DateValue, TimeValue, DateTimeValue, PatternValue, ListValue, NoteValue,
    LambdaValue, boolean,
)

__all__ = ["Executor", "ExecutionException", "MethodHandler", "NotePropertyHandler"]


class Executor:
    def __init__(self, registry: Optional[BuiltinRegistry] = None):
        self.registry = registry or DEFAULT_REGISTRY
        self.methods = MethodHandler(self)
        self.properties = NotePropertyHandler()

    def _dbg(self, *parts):
        if os.environ.get("MINDL_DEBUG"):
            print("[DBG]", *parts, file=sys.stderr)

    def execute(self, directive: Directive, env: Environment) -> DslValue:
        """Evaluate a whole directive. Binds this executor into the environment."""
        if env.get_executor() is not self:
            env = env.with_executor(self)
        self._dbg("execute", directive.source_text)
        return self.evaluate(directive.expression, env)

    def evaluate(self, expr: Expression, env: Environment) -> DslValue:
        match expr:
            case NumberLiteral(value=value):
                return NumberValue(value)
            case StringLiteral(value=value):
                return StringValue(value)
            case PatternExpr(elements=elements):
                return PatternValue(compile_pattern(elements))
            case CallExpr():
                return self._eval_call(expr, env)
            case VariableRef(name=name):
                value = env.get(name)
                if value is None:
                    raise ExecutionException(f"Unknown variable '{name}'", expr.position)
                return value
            case CurrentNoteRef():
                note = env.get_current_note()
                if note is None:
                    raise ExecutionException("No current note available", expr.position)
                return NoteValue(note)
            case PropertyAccess(target=target, property=prop):
                return self._get_property(self.evaluate(target, env), prop, env, expr.position)
            case MethodCall():
                return self._eval_method_call(expr, env)
            case Assignment():
                return self._eval_assignment(expr, env)
            case StatementList(statements=statements):
                result: DslValue = StringValue("")
                for statement in statements:
                    result = self.evaluate(statement, env)
                return result
            case LambdaExpr(params=params, body=body):
                return LambdaValue(params, body, env.capture())
            case LambdaInvocation(lambda_expr=lam_expr, args=args, named_args=named):
                if named:
                    raise ExecutionException("Lambdas do not take named arguments", expr.position)
                lam = self.evaluate(lam_expr, env)
                values = [self.evaluate(arg, env) for arg in args]
                return self.invoke_lambda(lam, values, expr.position)
            case OnceExpr(body=body, key=key):
                cache = env.get_or_create_once_cache()
                cached = cache.get(key)
                if cached is not None:
                    self._dbg("once hit", key)
                    return cached
                value = self.evaluate(body, env)
                cache.put(key, value)
                return value
            case RefreshExpr(body=body):
                return self.evaluate(body, env)
            case _:
                raise ExecutionException(f"Cannot evaluate {type(expr).__name__}", getattr(expr, "position", None))

    # ===================================================================
    # Calls
    # ===================================================================

    def _eval_call(self, expr: CallExpr, env: Environment) -> DslValue:
        bound = env.get(expr.name)
        if bound is not None:
            if isinstance(bound, LambdaValue):
                if expr.named_args:
                    raise ExecutionException("Lambdas do not take named arguments", expr.position)
                values = [self.evaluate(arg, env) for arg in expr.args]
                return self.invoke_lambda(bound, values, expr.position)
            if expr.args or expr.named_args:
                raise ExecutionException(f"Cannot call {bound.type_name} as a function", expr.position)
            return bound

        builtin = self.registry.get(expr.name)
        if builtin is None:
            raise ExecutionException(f"Unknown function or variable '{expr.name}'", expr.position)

        args = Arguments(
            [self.evaluate(arg, env) for arg in expr.args],
            {named.name: self.evaluate(named.value, env) for named in expr.named_args},
        )
        try:
            return builtin.call(args, env)
        except ExecutionException as e:
            if e.position is None:
                e.position = expr.position
            raise
        except Exception as e:
            raise ExecutionException(f"Error in '{expr.name}': {e}", expr.position) from e

    def invoke_lambda(self, lam: DslValue, args: List[DslValue], position: Optional[int] = None) -> DslValue:
        if not isinstance(lam, LambdaValue):
            raise ExecutionException(f"Cannot call {lam.type_name} as a function", position)
        expected = len(lam.params)
        if len(args) != expected:
            noun = "argument" if expected == 1 else "arguments"
            raise ExecutionException(f"Lambda requires {expected} {noun}, got {len(args)}", position)
        scope = lam.env.child()
        for name, value in zip(lam.params, args):
            scope.define(name, value)
        return self.evaluate(lam.body, scope)

    def _eval_method_call(self, expr: MethodCall, env: Environment) -> DslValue:
        target = self.evaluate(expr.target, env)
        args = Arguments(
            [self.evaluate(arg, env) for arg in expr.args],
            {named.name: self.evaluate(named.value, env) for named in expr.named_args},
        )
        try:
            return self.methods.call(target, expr.method, args, env)
        except ExecutionException as e:
            if e.position is None:
                e.position = expr.position
            raise
        except Exception as e:
            raise ExecutionException(f"Error in '.{expr.method}': {e}", expr.position) from e

    # ===================================================================
    # Properties and assignment
    # ===================================================================

    def _get_property(self, target: DslValue, prop: str, env: Environment, position: int) -> DslValue:
        match target:
            case UndefinedValue():
                return UNDEFINED
            case NoteValue():
                try:
                    return self.properties.get(target, prop, env)
                except ExecutionException as e:
                    if e.position is None:
                        e.position = position
                    raise
                except Exception as e:
                    raise ExecutionException(f"Error reading '.{prop}': {e}", position) from e
            case _:
                raise ExecutionException(f"Cannot access property '{prop}' on {target.type_name}", position)

    def _eval_assignment(self, expr: Assignment, env: Environment) -> DslValue:
        value = self.evaluate(expr.value, env)
        match expr.target:
            case VariableRef(name=name):
                env.define(name, value)
            case PropertyAccess(target=owner_expr, property=prop):
                owner = self.evaluate(owner_expr, env)
                if not isinstance(owner, NoteValue):
                    raise ExecutionException(
                        f"Cannot assign to property '{prop}' on {owner.type_name}", expr.position,
                    )
                try:
                    self.properties.set(owner, prop, value, env)
                except ExecutionException as e:
                    if e.position is None:
                        e.position = expr.position
                    raise
                except Exception as e:
                    raise ExecutionException(f"Error setting '.{prop}': {e}", expr.position) from e
            case _:
                raise ExecutionException("Invalid assignment target", expr.position)
        return value


# =================================================================
# Methods
# =================================================================

COMPARISON_METHODS = ("eq", "ne", "gt", "lt", "gte", "lte")


class MethodHandler:
    """`value.method(args)` for every value type."""

    def __init__(self, executor: Executor):
        self.executor = executor

    def call(self, target: DslValue, method: str, args: Arguments, env: Environment) -> DslValue:
        if method in COMPARISON_METHODS:
            return self._compare(target, method, args)
        match target:
            case NoteValue():
                return self._note_method(target, method, args, env)
            case BooleanValue() if method in ("and", "or"):
                args.require_exact_count(1, method)
                other = is_truthy(args[0], method)
                return boolean(target.value and other if method == "and" else target.value or other)
            case StringValue() if method in ("startsWith", "endsWith", "contains"):
                args.require_exact_count(1, method)
                needle = args.require_string(0, method).value
                match method:
                    case "startsWith":
                        return boolean(target.value.startswith(needle))
                    case "endsWith":
                        return boolean(target.value.endswith(needle))
                    case _:
                        return boolean(needle in target.value)
            case ListValue() if method == "at":
                args.require_exact_count(1, "at")
                index = args.require_number(0, "at", "index").value
                if not math.isfinite(index) or index != int(index) or not 0 <= index < len(target.items):
                    return UNDEFINED
                return target.items[int(index)]
            case DateValue() | TimeValue() | DateTimeValue() if method == "plus":
                return self._plus(target, args)
        raise ExecutionException(f"Unknown method '{method}' on {target.type_name}")

    def _compare(self, target: DslValue, method: str, args: Arguments) -> BooleanValue:
        args.require_exact_count(1, method)
        result = compare_for_comparison(target, args[0])
        match method:
            case "eq":
                return boolean(result == 0)
            case "ne":
                return boolean(result != 0)
            case "gt":
                return boolean(result > 0)
            case "lt":
                return boolean(result < 0)
            case "gte":
                return boolean(result >= 0)
            case _:
                return boolean(result <= 0)

    @staticmethod
    def _named_number(args: Arguments, name: str, kind: str) -> float:
        value = args[name]
        if value is None:
            return 0.0
        if not isinstance(value, NumberValue):
            raise ExecutionException(f"{kind}.plus() '{name}' must be a number, got {value.type_name}")
        return value.value

    def _plus(self, target: DslValue, args: Arguments) -> DslValue:
        kind = target.type_name
        if args.positional:
            raise ExecutionException(f"{kind}.plus() takes only named arguments")
        days = self._named_number(args, "days", kind)
        hours = self._named_number(args, "hours", kind)
        minutes = self._named_number(args, "minutes", kind)
        match target:
            case DateValue(value=d):
                if not args.has_named("days"):
                    raise ExecutionException("date.plus() requires 'days' parameter")
                return DateValue(d + timedelta(days=days))
            case TimeValue(value=t):
                if not (args.has_named("hours") or args.has_named("minutes")):
                    raise ExecutionException("time.plus() requires at least one of: hours, minutes")
                moved = datetime.combine(date(2000, 1, 1), t) + timedelta(hours=hours, minutes=minutes)
                return TimeValue(moved.time())
            case _:
                if not any(args.has_named(n) for n in ("days", "hours", "minutes")):
                    raise ExecutionException("datetime.plus() requires at least one of: days, hours, minutes")
                return DateTimeValue(target.value + timedelta(days=days, hours=hours, minutes=minutes))

    def _note_method(self, target: NoteValue, method: str, args: Arguments, env: Environment) -> DslValue:
        note = target.note
        match method:
            case "up":
                levels = 1
                if args.positional:
                    args.require_exact_count(1, "up")
                    count = args.require_number(0, "up", "levels").value
                    if count < 0 or count != int(count):
                        raise ExecutionException("'up' levels must be a non-negative whole number")
                    levels = int(count)
                ancestor = find_ancestor(note, levels, env.get_notes() or ())
                return NoteValue(ancestor) if ancestor is not None else UNDEFINED
            case "append":
                args.require_exact_count(1, "append")
                text = args[0].display()
                ops = env.get_note_operations()
                if ops is None:
                    raise ExecutionException("Cannot append to note: note operations not available")
                try:
                    updated = ops.append_to_note(note.id, text)
                except NoteOperationException as e:
                    raise ExecutionException(f"Failed to append to note: {e.message}")
                env.register_mutation(NoteMutation(note.id, updated, MutationType.CONTENT_APPENDED))
                return NoteValue(updated)
            case _:
                raise ExecutionException(f"Unknown method '{method}' on note")


# =================================================================
# Note properties
# =================================================================

READ_ONLY_NOTE_PROPERTIES = ("id", "created", "modified", "viewed", "up", "root")


class NotePropertyHandler:
    def get(self, target: NoteValue, prop: str, env: Environment) -> DslValue:
        note = target.note
        match prop:
            case "id":
                return StringValue(note.id)
            case "path":
                return StringValue(note.path)
            case "name":
                return StringValue(note.first_line)
            case "created" | "modified" | "viewed":
                stamp = getattr(note, prop)
                if stamp is None:
                    raise ExecutionException(f"Note has no {prop} date")
                return DateTimeValue(stamp)
            case "up":
                parent = find_parent(note, env.get_notes() or ())
                return NoteValue(parent) if parent is not None else UNDEFINED
            case "root":
                return NoteValue(find_root(note, env.get_notes() or ()))
            case _:
                raise ExecutionException(f"Unknown property '{prop}' on note")

    def set(self, target: NoteValue, prop: str, value: DslValue, env: Environment):
        if prop in READ_ONLY_NOTE_PROPERTIES:
            raise ExecutionException(f"Cannot set read-only property '{prop}' on note")
        if prop not in ("path", "name"):
            raise ExecutionException(f"Unknown property '{prop}' on note")
        ops = env.get_note_operations()
        if ops is None:
            raise ExecutionException("Cannot modify note properties: note operations not available")
        if not isinstance(value, StringValue):
            raise ExecutionException(f"Note {prop} must be a string, got {value.type_name}")

        note = target.note
        try:
            if prop == "path":
                updated = ops.update_path(note.id, value.value)
                kind = MutationType.PATH_CHANGED
            else:
                fresh = ops.get_note_by_id(note.id) or note
                lines = fresh.content.split("\n")
                lines[0] = value.value
                updated = ops.update_content(note.id, "\n".join(lines))
                kind = MutationType.CONTENT_CHANGED
        except NoteOperationException as e:
            raise ExecutionException(f"Failed to set note {prop}: {e.message}")
        env.register_mutation(NoteMutation(note.id, updated, kind))
