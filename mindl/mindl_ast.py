"""
AST node types for the Mindl directive language.

Every node is a frozen dataclass. Source positions are carried for
diagnostics but excluded from equality, so `a b c` and `a(b(c))` compare
equal as trees.

The module also provides `child_expressions` and `ExpressionFold`, the single
traversal shared by the static analyzers.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


# =================================================================
# Expressions
# =================================================================

class Expression:
    """Marker base class for all expression nodes."""
    position: int


@dataclass(frozen=True)
class NumberLiteral(Expression):
    value: float
    position: int = field(default=0, compare=False)


@dataclass(frozen=True)
class StringLiteral(Expression):
    value: str
    position: int = field(default=0, compare=False)


@dataclass(frozen=True)
class NamedArg:
    name: str
    value: Expression
    position: int = field(default=0, compare=False)


@dataclass(frozen=True)
class CallExpr(Expression):
    """A call by name. A bare identifier is a zero-argument call."""
    name: str
    args: Tuple[Expression, ...] = ()
    named_args: Tuple[NamedArg, ...] = ()
    position: int = field(default=0, compare=False)


@dataclass(frozen=True)
class VariableRef(Expression):
    """The left-hand side of `x: value`."""
    name: str
    position: int = field(default=0, compare=False)


@dataclass(frozen=True)
class CurrentNoteRef(Expression):
    position: int = field(default=0, compare=False)


@dataclass(frozen=True)
class PropertyAccess(Expression):
    target: Expression
    property: str
    position: int = field(default=0, compare=False)


@dataclass(frozen=True)
class MethodCall(Expression):
    target: Expression
    method: str
    args: Tuple[Expression, ...] = ()
    named_args: Tuple[NamedArg, ...] = ()
    position: int = field(default=0, compare=False)


@dataclass(frozen=True)
class Assignment(Expression):
    target: Union[VariableRef, PropertyAccess]
    value: Expression
    position: int = field(default=0, compare=False)


@dataclass(frozen=True)
class StatementList(Expression):
    statements: Tuple[Expression, ...]
    position: int = field(default=0, compare=False)


@dataclass(frozen=True)
class LambdaExpr(Expression):
    params: Tuple[str, ...]
    body: Expression
    position: int = field(default=0, compare=False)


@dataclass(frozen=True)
class LambdaInvocation(Expression):
    """`[body](args)`: build a lambda and call it on the spot."""
    lambda_expr: LambdaExpr
    args: Tuple[Expression, ...] = ()
    named_args: Tuple[NamedArg, ...] = ()
    position: int = field(default=0, compare=False)


@dataclass(frozen=True)
class OnceExpr(Expression):
    body: Expression
    # Source text of the body; keys the once cache.
    key: str = field(default="", compare=False)
    position: int = field(default=0, compare=False)


@dataclass(frozen=True)
class RefreshExpr(Expression):
    body: Expression
    position: int = field(default=0, compare=False)


# =================================================================
# Pattern sub-language
# =================================================================

class CharClassType(Enum):
    DIGIT = "digit"
    LETTER = "letter"
    SPACE = "space"
    PUNCT = "punct"
    ANY = "any"


class Quantifier:
    pass


@dataclass(frozen=True)
class Exact(Quantifier):
    n: int


@dataclass(frozen=True)
class Range(Quantifier):
    min: int
    max: Optional[int] = None


@dataclass(frozen=True)
class AnyCount(Quantifier):
    """Zero or more, written `*any`."""
    pass


class PatternElement:
    position: int


@dataclass(frozen=True)
class CharClass(PatternElement):
    kind: CharClassType
    position: int = field(default=0, compare=False)


@dataclass(frozen=True)
class PatternLiteral(PatternElement):
    value: str
    position: int = field(default=0, compare=False)


@dataclass(frozen=True)
class Quantified(PatternElement):
    element: PatternElement
    quantifier: Quantifier
    position: int = field(default=0, compare=False)


@dataclass(frozen=True)
class PatternExpr(Expression):
    elements: Tuple[PatternElement, ...]
    position: int = field(default=0, compare=False)


# =================================================================
# Directive
# =================================================================

@dataclass(frozen=True)
class Directive:
    """One bracketed span of note text, parsed."""
    expression: Expression
    source_text: str
    start_position: int = 0


# =================================================================
# Traversal
# =================================================================

def child_expressions(expr: Expression) -> List[Expression]:
    """Direct sub-expressions of `expr`, in evaluation order."""
    match expr:
        case CallExpr(args=args, named_args=named):
            return list(args) + [n.value for n in named]
        case MethodCall(target=target, args=args, named_args=named):
            return [target] + list(args) + [n.value for n in named]
        case LambdaInvocation(lambda_expr=lam, args=args, named_args=named):
            return [lam] + list(args) + [n.value for n in named]
        case PropertyAccess(target=target):
            return [target]
        case Assignment(target=PropertyAccess(target=owner), value=value):
            return [value, owner]
        case Assignment(value=value):
            return [value]
        case StatementList(statements=statements):
            return list(statements)
        case LambdaExpr(body=body) | OnceExpr(body=body) | RefreshExpr(body=body):
            return [body]
        case _:
            return []


class ExpressionFold:
    """
    A bottom-up fold over an expression tree.

    Subclasses supply `combine` (how child results merge) and `leaf` (the
    result for a node with no children), and register per-node overrides in
    `_create_handlers`. A handler receives `(expr, ctx)` and may call
    `fold_children` to continue the default traversal.
    """

    def __init__(self):
        self._handlers: Dict[type, Any] = self._create_handlers()

    def _create_handlers(self) -> Dict[type, Any]:
        return {}

    def leaf(self) -> Any:
        raise NotImplementedError

    def combine(self, results: List[Any]) -> Any:
        raise NotImplementedError

    def fold(self, expr: Expression, ctx: Any = None) -> Any:
        handler = self._handlers.get(type(expr))
        if handler is not None:
            return handler(expr, ctx)
        return self.fold_children(expr, ctx)

    def fold_children(self, expr: Expression, ctx: Any = None) -> Any:
        children = child_expressions(expr)
        if not children:
            return self.leaf()
        return self.combine([self.fold(child, ctx) for child in children])
