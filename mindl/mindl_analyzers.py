"""
Static analysis of parsed directives.

- DynamicCallAnalyzer: does the result depend on the clock?
- IdempotencyAnalyzer: is it safe to evaluate again?
- MutationValidator: are mutations and time values wrapped correctly?
- RefreshTriggerAnalyzer: when should a `refresh[...]` body be re-evaluated?

The first three are `ExpressionFold`s over the same traversal.
"""
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from mindl.mindl_ast import (
    Expression, ExpressionFold, NumberLiteral, StringLiteral, CallExpr,
    VariableRef, PropertyAccess, MethodCall, Assignment, StatementList,
    OnceExpr, RefreshExpr, child_expressions,
)
from mindl.mindl_builtins import BuiltinRegistry, DEFAULT_REGISTRY
from mindl.mindl_environment import Environment
from mindl.mindl_values import DslValue


# =================================================================
# Dynamic calls
# =================================================================

class DynamicCallAnalyzer(ExpressionFold):
    """True when evaluation calls a clock-dependent builtin outside `once[...]`."""

    def __init__(self, registry: Optional[BuiltinRegistry] = None):
        self.registry = registry or DEFAULT_REGISTRY
        super().__init__()

    def _create_handlers(self):
        return {
            CallExpr: self._call,
            OnceExpr: lambda expr, ctx: False,
            RefreshExpr: lambda expr, ctx: True,
        }

    def leaf(self) -> bool:
        return False

    def combine(self, results: List[bool]) -> bool:
        return any(results)

    def _call(self, expr: CallExpr, ctx) -> bool:
        return self.registry.is_dynamic(expr.name) or self.fold_children(expr, ctx)

    @classmethod
    def contains_dynamic_calls(cls, expr: Expression, registry: Optional[BuiltinRegistry] = None) -> bool:
        return cls(registry).fold(expr)


# =================================================================
# Idempotency
# =================================================================

@dataclass(frozen=True)
class AnalysisResult:
    is_idempotent: bool
    non_idempotent_reason: Optional[str] = None


NON_IDEMPOTENT_FUNCTIONS = {
    "new": "new() creates new data and requires an explicit trigger. "
           "Wrap in button() or schedule() to execute.",
}
NON_IDEMPOTENT_METHODS = {
    "append": ".append() modifies data and requires an explicit trigger. "
              "Wrap in button() or schedule() to execute.",
}


class IdempotencyAnalyzer(ExpressionFold):
    """Folds to the first reason the expression is not idempotent, or None."""

    def _create_handlers(self):
        return {
            CallExpr: self._call,
            MethodCall: self._method,
            OnceExpr: lambda expr, ctx: None,
        }

    def leaf(self) -> Optional[str]:
        return None

    def combine(self, results: List[Optional[str]]) -> Optional[str]:
        return next((r for r in results if r is not None), None)

    def _call(self, expr: CallExpr, ctx) -> Optional[str]:
        return NON_IDEMPOTENT_FUNCTIONS.get(expr.name) or self.fold_children(expr, ctx)

    def _method(self, expr: MethodCall, ctx) -> Optional[str]:
        return NON_IDEMPOTENT_METHODS.get(expr.method) or self.fold_children(expr, ctx)

    def analyze(self, expr: Expression) -> AnalysisResult:
        reason = self.fold(expr)
        return AnalysisResult(reason is None, reason)


# =================================================================
# Mutation validation
# =================================================================

class ValidationResult:
    def is_valid(self) -> bool:
        return False

    def error_message(self) -> Optional[str]:
        return None


@dataclass(frozen=True)
class Valid(ValidationResult):
    def is_valid(self) -> bool:
        return True


@dataclass(frozen=True)
class BareMutation(ValidationResult):
    mutation_type: str
    suggestion: str = "Wrap in button() or schedule() to execute."

    def error_message(self) -> str:
        return f"{self.mutation_type} requires explicit trigger. {self.suggestion}"


@dataclass(frozen=True)
class BareTimeValue(ValidationResult):
    function_name: str
    suggestion: str = "Wrap in once[...] to cache or refresh[...] to update periodically."

    def error_message(self) -> str:
        return f"{self.function_name} returns a time value that changes. {self.suggestion}"


VALID = Valid()

MUTATION_FUNCTIONS = ("new", "maybe_new")
MUTATION_METHODS = ("append",)
ACTION_WRAPPER_FUNCTIONS = ("button", "schedule")
TIME_FUNCTIONS = ("date", "time", "datetime")


@dataclass(frozen=True)
class _Context:
    inside_action: bool = False
    inside_time_wrapper: bool = False


_TOP = _Context()
_ACTION = _Context(inside_action=True, inside_time_wrapper=True)


class MutationValidator(ExpressionFold):
    """
    Rejects a directive whose top-level evaluation would mutate notes, or
    would show a bare clock value.

    Mutations (`new`, `maybe_new`, `.append`, property assignment) are only
    legal inside the action argument of `button(...)`/`schedule(...)`.
    `date`, `time` and `datetime` are legal inside `once[...]`,
    `refresh[...]` or an action.
    """

    def _create_handlers(self):
        return {
            CallExpr: self._call,
            MethodCall: self._method,
            Assignment: self._assignment,
            OnceExpr: self._time_wrapper,
            RefreshExpr: self._time_wrapper,
        }

    def leaf(self) -> ValidationResult:
        return VALID

    def combine(self, results: List[ValidationResult]) -> ValidationResult:
        return next((r for r in results if not r.is_valid()), VALID)

    def _first_invalid(self, pairs) -> ValidationResult:
        for expr, ctx in pairs:
            result = self.fold(expr, ctx)
            if not result.is_valid():
                return result
        return VALID

    def _call(self, expr: CallExpr, ctx: _Context) -> ValidationResult:
        if expr.name in MUTATION_FUNCTIONS and not ctx.inside_action:
            return BareMutation(f"{expr.name}()")
        if expr.name in TIME_FUNCTIONS and not expr.args and not ctx.inside_time_wrapper:
            return BareTimeValue(f"{expr.name}()")
        if expr.name in ACTION_WRAPPER_FUNCTIONS:
            pairs = []
            for index, arg in enumerate(expr.args):
                pairs.append((arg, _ACTION if index == 1 else ctx))
            pairs.extend((named.value, ctx) for named in expr.named_args)
            return self._first_invalid(pairs)
        return self.fold_children(expr, ctx)

    def _method(self, expr: MethodCall, ctx: _Context) -> ValidationResult:
        if expr.method in MUTATION_METHODS and not ctx.inside_action:
            return BareMutation(f".{expr.method}()")
        return self.fold_children(expr, ctx)

    def _assignment(self, expr: Assignment, ctx: _Context) -> ValidationResult:
        if isinstance(expr.target, PropertyAccess) and not ctx.inside_action:
            return BareMutation(f"Setting .{expr.target.property}")
        return self.fold_children(expr, ctx)

    def _time_wrapper(self, expr, ctx: _Context) -> ValidationResult:
        return self.fold(expr.body, _Context(ctx.inside_action, True))

    def validate(self, expr: Expression) -> ValidationResult:
        return self.fold(expr, _TOP)


class _ContainsMutations(ExpressionFold):
    def _create_handlers(self):
        return {CallExpr: self._call, MethodCall: self._method, Assignment: self._assignment}

    def leaf(self):
        return False

    def combine(self, results):
        return any(results)

    def _call(self, expr, ctx):
        names = MUTATION_FUNCTIONS + ACTION_WRAPPER_FUNCTIONS
        return expr.name in names or self.fold_children(expr, ctx)

    def _method(self, expr, ctx):
        return expr.method in MUTATION_METHODS or self.fold_children(expr, ctx)

    def _assignment(self, expr, ctx):
        return isinstance(expr.target, PropertyAccess) or self.fold_children(expr, ctx)


class _ContainsUnwrappedTime(ExpressionFold):
    def _create_handlers(self):
        return {
            CallExpr: self._call,
            OnceExpr: lambda expr, ctx: False,
            RefreshExpr: lambda expr, ctx: False,
        }

    def leaf(self):
        return False

    def combine(self, results):
        return any(results)

    def _call(self, expr, ctx):
        if expr.name in ACTION_WRAPPER_FUNCTIONS:
            others = [a for i, a in enumerate(expr.args) if i != 1] + [n.value for n in expr.named_args]
            return any(self.fold(a, ctx) for a in others)
        return (expr.name in TIME_FUNCTIONS and not expr.args) or self.fold_children(expr, ctx)


def contains_mutations(expr: Expression) -> bool:
    """Any mutation or action wrapper anywhere in the tree."""
    return _ContainsMutations().fold(expr)


def contains_unwrapped_time_values(expr: Expression) -> bool:
    return _ContainsUnwrappedTime().fold(expr)


# =================================================================
# Time triggers
# =================================================================

@dataclass(frozen=True)
class DailyTimeTrigger:
    trigger_time: time
    is_recurring = True

    def should_trigger_at(self, now: datetime) -> bool:
        return now.time() == self.trigger_time

    def next_trigger_after(self, now: datetime) -> datetime:
        today = datetime.combine(now.date(), self.trigger_time)
        return today if now < today else today + timedelta(days=1)


@dataclass(frozen=True)
class DateTrigger:
    trigger_date: date
    is_recurring = False

    def should_trigger_at(self, now: datetime) -> bool:
        return now.date() == self.trigger_date

    def next_trigger_after(self, now: datetime) -> Optional[datetime]:
        trigger = datetime.combine(self.trigger_date, time.min)
        return trigger if now < trigger else None


@dataclass(frozen=True)
class DateTimeTrigger:
    trigger_datetime: datetime
    is_recurring = False

    def should_trigger_at(self, now: datetime) -> bool:
        return now == self.trigger_datetime

    def next_trigger_after(self, now: datetime) -> Optional[datetime]:
        return self.trigger_datetime if now < self.trigger_datetime else None


TimeTrigger = Union[DailyTimeTrigger, DateTrigger, DateTimeTrigger]


@dataclass(frozen=True)
class RefreshAnalysis:
    triggers: Tuple[TimeTrigger, ...] = ()
    success: bool = True
    error: Optional[str] = None

    @classmethod
    def success_with(cls, triggers) -> 'RefreshAnalysis':
        return cls(tuple(triggers))

    @classmethod
    def failure(cls, message: str) -> 'RefreshAnalysis':
        return cls((), False, message)


class TemporalType(Enum):
    TIME = "time"
    DATE = "date"
    DATETIME = "datetime"


@dataclass(frozen=True)
class TimeComparison:
    temporal_type: TemporalType
    literal: str
    offset_minutes: int
    operator: str


class ComputedOperand(Exception):
    """A time comparison whose other side is not a known literal."""


COMPARISON_OPERATORS = ("gt", "lt", "gte", "lte", "eq", "ne")

NO_COMPARISONS_ERROR = (
    "refresh[...] requires time comparisons to determine triggers. "
    "Use once[...] for one-time evaluation instead."
)
COMPUTED_OPERAND_ERROR = (
    "refresh[...] time comparisons must compare against a literal or a variable "
    "holding one. Computed times cannot be scheduled."
)


class RefreshTriggerAnalyzer:
    """
    Derives the times at which a `refresh[...]` body can change value.

    Each `time|date|datetime` comparison against a literal becomes a
    candidate trigger (offsets from `.plus(...)` are subtracted back out). A
    candidate is kept only if evaluating the body a minute before, at, and a
    minute after it gives different results.
    """

    def __init__(self, registry: Optional[BuiltinRegistry] = None):
        self.registry = registry

    def analyze(self, expr: RefreshExpr, env: Optional[Environment] = None) -> RefreshAnalysis:
        env = env or Environment.create()
        variables: Dict[str, Expression] = {}
        self._collect_variables(expr.body, variables)

        comparisons: List[TimeComparison] = []
        try:
            self._find_comparisons(expr.body, comparisons, variables)
        except ComputedOperand:
            return RefreshAnalysis.failure(COMPUTED_OPERAND_ERROR)
        if not comparisons:
            return RefreshAnalysis.failure(NO_COMPARISONS_ERROR)

        triggers: List[TimeTrigger] = []
        for comparison in comparisons:
            candidate = self._candidate(comparison)
            if candidate is None or candidate in triggers:
                continue
            if self._verify(candidate, expr.body, env):
                triggers.append(candidate)
        return RefreshAnalysis.success_with(triggers)

    # --- Collection ---

    def _collect_variables(self, expr: Expression, variables: Dict[str, Expression]):
        match expr:
            case StatementList(statements=statements):
                for statement in statements:
                    self._collect_variables(statement, variables)
            case Assignment(target=VariableRef(name=name), value=value):
                variables[name] = value

    def _find_comparisons(self, expr: Expression, found: List[TimeComparison],
                          variables: Dict[str, Expression]):
        match expr:
            case OnceExpr() | RefreshExpr():
                return
            case MethodCall(method=method, target=target, args=args) if method in COMPARISON_OPERATORS and len(args) == 1:
                self._add_comparison(target, args[0], method, found, variables)
            case CallExpr(name=name, args=args) if name in COMPARISON_OPERATORS and len(args) >= 2:
                self._add_comparison(args[0], args[1], name, found, variables)
        for child in child_expressions(expr):
            self._find_comparisons(child, found, variables)

    def _add_comparison(self, left: Expression, right: Expression, operator: str,
                        found: List[TimeComparison], variables: Dict[str, Expression]):
        for temporal_side, literal_side in ((left, right), (right, left)):
            traced = self._backtrace(temporal_side, variables, set())
            if traced is None:
                continue
            literal = self._literal(literal_side, variables, set())
            if literal is None:
                raise ComputedOperand()
            temporal_type, offset = traced
            found.append(TimeComparison(temporal_type, literal, offset, operator))
            return

    def _resolve(self, name: str, variables: Dict[str, Expression], seen: set) -> Optional[Expression]:
        if name in seen:
            return None
        seen.add(name)
        return variables.get(name)

    def _literal(self, expr: Expression, variables: Dict[str, Expression], seen: set) -> Optional[str]:
        match expr:
            case StringLiteral(value=value):
                return value
            case VariableRef(name=name) | CallExpr(name=name, args=(), named_args=()):
                resolved = self._resolve(name, variables, seen)
                return self._literal(resolved, variables, seen) if resolved is not None else None
            case _:
                return None

    def _backtrace(self, expr: Expression, variables: Dict[str, Expression],
                   seen: set) -> Optional[Tuple[TemporalType, int]]:
        match expr:
            case CallExpr(name="time", args=()):
                return TemporalType.TIME, 0
            case CallExpr(name="date", args=()):
                return TemporalType.DATE, 0
            case CallExpr(name="datetime", args=()):
                return TemporalType.DATETIME, 0
            case VariableRef(name=name) | CallExpr(name=name, args=(), named_args=()):
                resolved = self._resolve(name, variables, seen)
                return self._backtrace(resolved, variables, seen) if resolved is not None else None
            case MethodCall(method="plus", target=target, named_args=named):
                inner = self._backtrace(target, variables, seen)
                if inner is None:
                    return None
                return inner[0], inner[1] + self._plus_offset(named)
            case PropertyAccess(target=target):
                return self._backtrace(target, variables, seen)
            case _:
                return None

    @staticmethod
    def _plus_offset(named_args) -> int:
        scale = {"minutes": 1, "hours": 60, "days": 24 * 60}
        total = 0
        for named in named_args:
            if named.name not in scale:
                continue
            if not isinstance(named.value, NumberLiteral):
                raise ComputedOperand()
            total += int(named.value.value * scale[named.name])
        return total

    # --- Candidates ---

    @staticmethod
    def _candidate(comparison: TimeComparison) -> Optional[TimeTrigger]:
        offset = timedelta(minutes=comparison.offset_minutes)
        try:
            match comparison.temporal_type:
                case TemporalType.TIME:
                    literal = datetime.combine(date(2000, 1, 1), time.fromisoformat(comparison.literal))
                    return DailyTimeTrigger((literal - offset).time())
                case TemporalType.DATE:
                    literal_date = date.fromisoformat(comparison.literal)
                    return DateTrigger(literal_date - timedelta(days=comparison.offset_minutes // (24 * 60)))
                case _:
                    return DateTimeTrigger(datetime.fromisoformat(comparison.literal) - offset)
        except ValueError:
            return None

    def _verify(self, trigger: TimeTrigger, body: Expression, env: Environment) -> bool:
        match trigger:
            case DailyTimeTrigger(trigger_time=t):
                moment = datetime.combine(env.now().date(), t)
            case DateTrigger(trigger_date=d):
                moment = datetime.combine(d, time.min)
            case _:
                moment = trigger.trigger_datetime
        minute = timedelta(minutes=1)
        before = self._evaluate_at(body, moment - minute, env)
        at = self._evaluate_at(body, moment, env)
        after = self._evaluate_at(body, moment + minute, env)
        return before != after or at != before or at != after

    def _evaluate_at(self, body: Expression, moment: datetime, env: Environment) -> Optional[DslValue]:
        from mindl.mindl_executor import Executor  # lazy import to avoid cycles
        executor = Executor(self.registry)
        mocked = env.with_mocked_time(moment).with_executor(executor)
        try:
            return executor.evaluate(body, mocked)
        except Exception:
            return None


def find_refresh_expr(expr: Expression) -> Optional[RefreshExpr]:
    """The top-level `refresh[...]` of a directive, if any."""
    match expr:
        case RefreshExpr():
            return expr
        case StatementList(statements=statements):
            for statement in statements:
                found = find_refresh_expr(statement)
                if found is not None:
                    return found
            return None
        case Assignment(value=value):
            return find_refresh_expr(value)
        case _:
            return None
