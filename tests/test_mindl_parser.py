import pytest
from mindl.mindl_ast import (
    Assignment, CallExpr, CharClass, CharClassType, CurrentNoteRef, Exact, AnyCount,
    LambdaExpr, LambdaInvocation, MethodCall, NamedArg, NumberLiteral, OnceExpr,
    PatternExpr, PatternLiteral, PropertyAccess, Quantified, Range, RefreshExpr,
    StatementList, StringLiteral, VariableRef,
)
from mindl.mindl_parser import ParseError, parse_directive


def parse(source):
    return parse_directive(source).expression


def call(name, *args, **named):
    return CallExpr(name, tuple(args), tuple(NamedArg(k, v) for k, v in named.items()))


def num(n):
    return NumberLiteral(float(n))


# --- Literal and Call Tests ---

def test_number_and_string_literals():
    assert parse("[42]") == num(42)
    assert parse('["hello"]') == StringLiteral("hello")


def test_call_with_positional_and_named_arguments():
    assert parse('[find(path: "a", where: x)]') == call("find", path=StringLiteral("a"), where=call("x"))
    assert parse("[add(1, 2)]") == call("add", num(1), num(2))


def test_bare_identifier_is_zero_argument_call():
    assert parse("[date]") == call("date")


def test_directive_keeps_source_text():
    directive = parse_directive("[add(1, 2)]")
    assert directive.source_text == "[add(1, 2)]"
    assert directive.start_position == 0


# --- Space Chaining Tests ---

def test_space_separated_identifiers_nest_right_to_left():
    assert parse("[a b c]") == parse("[a(b(c))]")


def test_chain_ends_at_a_call_with_parens():
    assert parse("[first sort(xs)]") == call("first", call("sort", call("xs")))


def test_chain_inside_arguments():
    assert parse("[add(a b, 1)]") == call("add", call("a", call("b")), num(1))


# --- Member Access Tests ---

def test_property_access_and_method_call():
    assert parse("[x.path]") == PropertyAccess(call("x"), "path")
    assert parse('[x.startsWith("a")]') == MethodCall(call("x"), "startsWith", (StringLiteral("a"),))


def test_current_note_reference_and_property():
    assert parse("[.]") == CurrentNoteRef()
    assert parse("[.path]") == PropertyAccess(CurrentNoteRef(), "path")


def test_detached_dot_is_an_argument():
    assert parse("[f .path]") == call("f", PropertyAccess(CurrentNoteRef(), "path"))


def test_chained_methods():
    expr = parse('[time.gt("09:00").and(x)]')
    assert expr == MethodCall(
        MethodCall(call("time"), "gt", (StringLiteral("09:00"),)),
        "and", (call("x"),),
    )


# --- Statement Tests ---

def test_variable_assignment_and_statement_list():
    expr = parse("[x: 5; add(x, 1)]")
    assert expr == StatementList((
        Assignment(VariableRef("x"), num(5)),
        call("add", call("x"), num(1)),
    ))


def test_trailing_semicolon_is_allowed():
    assert parse("[x: 5;]") == Assignment(VariableRef("x"), num(5))


def test_property_assignment():
    assert parse('[.path: "inbox"]') == Assignment(PropertyAccess(CurrentNoteRef(), "path"), StringLiteral("inbox"))


def test_cannot_assign_to_current_note():
    with pytest.raises(ParseError) as exc:
        parse('[.: "x"]')
    assert "Cannot assign directly to current note" in exc.value.message


def test_invalid_assignment_target():
    with pytest.raises(ParseError) as exc:
        parse('[add(1, 2): 3]')
    assert exc.value.message == "Invalid assignment target"


# --- Lambda Tests ---

def test_lambda_forms():
    implicit = LambdaExpr(("i",), PropertyAccess(call("i"), "path"))
    assert parse("[lambda[i.path]]") == implicit
    assert parse("[[i.path]]") == implicit
    assert parse("[(a, b)[add(a, b)]]") == LambdaExpr(("a", "b"), call("add", call("a"), call("b")))


def test_block_argument_sugar():
    assert parse("[f[add(i, 1)]]") == call("f", LambdaExpr(("i",), call("add", call("i"), num(1))))


def test_immediate_lambda_invocation():
    expr = parse("[[add(i, 1)](2)]")
    assert isinstance(expr, LambdaInvocation)
    assert expr.args == (num(2),)


def test_later_wraps_expression_in_lambda():
    assert parse("[later add(1, 2)]") == LambdaExpr(("i",), call("add", num(1), num(2)))
    assert parse("[later[5]]") == LambdaExpr(("i",), num(5))


def test_duplicate_lambda_parameter():
    with pytest.raises(ParseError):
        parse("[(a, a)[a]]")


def test_once_and_refresh_blocks():
    once = parse("[once[ date ]]")
    assert once == OnceExpr(call("date"))
    assert once.key == "date"
    assert parse("[refresh[time]]") == RefreshExpr(call("time"))


# --- Argument Errors ---

def test_positional_after_named_is_rejected():
    with pytest.raises(ParseError) as exc:
        parse("[f(a: 1, 2)]")
    assert exc.value.message == "Positional argument cannot follow named argument"


def test_duplicate_named_argument():
    with pytest.raises(ParseError) as exc:
        parse("[f(a: 1, a: 2)]")
    assert "Duplicate named argument 'a'" in exc.value.message


@pytest.mark.parametrize("source, message", [
    ("add(1)", "Expected '[' to start directive"),
    ("[add(1)", "Expected ']' to close directive"),
    ("[add(1)] x", "Unexpected input after directive"),
    ("[]", "Expected expression"),
    ("[add(1, 2]", "Expected ')' after arguments"),
])
def test_structural_errors(source, message):
    with pytest.raises(ParseError) as exc:
        parse(source)
    assert exc.value.message == message


# --- Pattern Tests ---

def test_pattern_elements_and_quantifiers():
    expr = parse('[pattern(digit*4 "-" letter*any space*(1..3) punct*(2..))]')
    assert expr == PatternExpr((
        Quantified(CharClass(CharClassType.DIGIT), Exact(4)),
        PatternLiteral("-"),
        Quantified(CharClass(CharClassType.LETTER), AnyCount()),
        Quantified(CharClass(CharClassType.SPACE), Range(1, 3)),
        Quantified(CharClass(CharClassType.PUNCT), Range(2, None)),
    ))


@pytest.mark.parametrize("source", [
    "[pattern()]",
    "[pattern(vowel)]",
    "[pattern(digit*(3..1))]",
    "[pattern(digit*1.5)]",
    "[pattern(digit*some)]",
])
def test_pattern_errors(source):
    with pytest.raises(ParseError):
        parse(source)
