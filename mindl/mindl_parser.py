"""
Recursive descent parser for the Mindl directive language.

Grammar summary (one directive):

    directive  := '[' statements ']'
    statements := statement (';' statement)* ';'?
    statement  := IDENT ':' expr | expr ':' expr | expr
    expr       := chain
    chain      := postfix chain?            (only after a bare identifier)
    postfix    := primary ('.' IDENT ('(' args ')')?)*
    primary    := NUMBER | STRING | '.' | '(' expr ')' | '(' params ')' block
                | block ('(' args ')')? | IDENT ('(' args ')' | block)?
                | 'pattern' '(' pattern ')' | 'lambda' block | 'later' (block | expr)
                | 'once' block | 'refresh' block
    block      := '[' statements ']'

Space-separated identifiers nest right to left: `a b c` is `a(b(c))`.
"""
from typing import List, Optional, Tuple

from mindl.mindl_lexer import Token, TokenType, tokenize
from mindl.mindl_ast import (
    Expression, NumberLiteral, StringLiteral, CallExpr, NamedArg, VariableRef,
    CurrentNoteRef, PropertyAccess, MethodCall, Assignment, StatementList,
    LambdaExpr, LambdaInvocation, OnceExpr, RefreshExpr, PatternExpr,
    PatternElement, CharClass, CharClassType, PatternLiteral, Quantified,
    Quantifier, Exact, Range, AnyCount, Directive,
)


class ParseError(Exception):
    def __init__(self, message: str, position: int, expected: Optional[str] = None):
        super().__init__(f"Parse error at position {position}: {message}")
        self.message = message
        self.position = position
        self.expected = expected


CHAR_CLASS_NAMES = {kind.value: kind for kind in CharClassType}

IMPLICIT_PARAM = "i"

# Tokens that end an argument, a statement or a block.
_EXPRESSION_TERMINATORS = (
    TokenType.RBRACKET, TokenType.RPAREN, TokenType.COMMA,
    TokenType.COLON, TokenType.SEMICOLON, TokenType.EOF,
)


class Parser:
    """Builds a Directive from a token list. No error recovery."""

    def __init__(self, tokens: List[Token], source: str):
        self.tokens = tokens
        self.source = source
        self.current = 0

    def parse_directive(self) -> Directive:
        start = self._consume(TokenType.LBRACKET, "'['", "Expected '[' to start directive")
        expression = self._parse_statements()
        end = self._consume(TokenType.RBRACKET, "']'", "Expected ']' to close directive")
        if not self._is_at_end():
            raise ParseError("Unexpected input after directive", self._peek().position, "end of directive")
        source_text = self.source[start.position:end.position + 1]
        return Directive(expression, source_text, start.position)

    # ===================================================================
    # Statements
    # ===================================================================

    def _parse_statements(self) -> Expression:
        start_position = self._peek().position
        statements = [self._parse_statement()]
        while self._match(TokenType.SEMICOLON):
            if self._check(TokenType.RBRACKET):
                break
            statements.append(self._parse_statement())
        if len(statements) == 1:
            return statements[0]
        return StatementList(tuple(statements), start_position)

    def _parse_statement(self) -> Expression:
        if self._check(TokenType.IDENTIFIER) and self._check_next(TokenType.COLON):
            name = self._advance()
            self._advance()  # ':'
            value = self._parse_expression()
            return Assignment(VariableRef(name.literal, name.position), value, name.position)

        expr = self._parse_expression()
        if self._check(TokenType.COLON):
            colon = self._advance()
            if isinstance(expr, PropertyAccess):
                value = self._parse_expression()
                return Assignment(expr, value, expr.position)
            if isinstance(expr, CurrentNoteRef):
                raise ParseError(
                    "Cannot assign directly to current note. Use property assignment like [.path: value]",
                    colon.position, "property access",
                )
            raise ParseError("Invalid assignment target", colon.position, "variable name or property access")
        return expr

    # ===================================================================
    # Expressions
    # ===================================================================

    def _parse_expression(self) -> Expression:
        return self._parse_chain()

    def _parse_chain(self) -> Expression:
        expr = self._parse_postfix()
        if self._is_bare_identifier(expr) and self._at_expression_start():
            inner = self._parse_chain()
            return CallExpr(expr.name, (inner,), (), expr.position)
        return expr

    def _is_bare_identifier(self, expr: Expression) -> bool:
        prev = self._previous()
        return (
            isinstance(expr, CallExpr)
            and prev.type is TokenType.IDENTIFIER
            and prev.position == expr.position
        )

    def _at_expression_start(self) -> bool:
        return self._peek().type not in _EXPRESSION_TERMINATORS

    def _parse_postfix(self) -> Expression:
        expr = self._parse_primary()
        # `i.path` is property access; `f .path` passes `.path` to f.
        while (self._check(TokenType.DOT) and self._touches_previous()
               and self._check_next(TokenType.IDENTIFIER)):
            self._advance()  # '.'
            expr = self._parse_member(expr)
        return expr

    def _parse_member(self, target: Expression) -> Expression:
        name = self._advance()
        if self._match(TokenType.LPAREN):
            args, named = self._parse_arguments()
            return MethodCall(target, name.literal, args, named, name.position)
        return PropertyAccess(target, name.literal, name.position)

    def _parse_primary(self) -> Expression:
        token = self._peek()
        match token.type:
            case TokenType.NUMBER:
                self._advance()
                return NumberLiteral(token.literal, token.position)
            case TokenType.STRING:
                self._advance()
                return StringLiteral(token.literal, token.position)
            case TokenType.DOT:
                self._advance()
                note = CurrentNoteRef(token.position)
                if self._check(TokenType.IDENTIFIER) and self._touches_previous():
                    return self._parse_member(note)
                return note
            case TokenType.LBRACKET:
                return self._parse_implicit_lambda()
            case TokenType.LPAREN:
                return self._parse_paren()
            case TokenType.IDENTIFIER:
                return self._parse_identifier()
            case _:
                raise ParseError("Expected expression", token.position, "expression")

    def _parse_identifier(self) -> Expression:
        token = self._advance()
        name = token.literal
        position = token.position

        if self._check(TokenType.LBRACKET):
            match name:
                case "lambda" | "later":
                    body, _ = self._parse_block()
                    return LambdaExpr((IMPLICIT_PARAM,), body, position)
                case "once":
                    body, key = self._parse_block()
                    return OnceExpr(body, key, position)
                case "refresh":
                    body, _ = self._parse_block()
                    return RefreshExpr(body, position)
                case _:
                    # f[body] is f([body])
                    block_position = self._peek().position
                    body, _ = self._parse_block()
                    return CallExpr(name, (LambdaExpr((IMPLICIT_PARAM,), body, block_position),), (), position)

        if name == "later" and self._at_expression_start():
            body = self._parse_chain()
            return LambdaExpr((IMPLICIT_PARAM,), body, position)

        if self._match(TokenType.LPAREN):
            if name == "pattern":
                return self._parse_pattern(position)
            args, named = self._parse_arguments()
            return CallExpr(name, args, named, position)

        return CallExpr(name, (), (), position)

    def _parse_block(self) -> Tuple[Expression, str]:
        """Parse `[statements]`, returning the body and its source text."""
        self._consume(TokenType.LBRACKET, "'['", "Expected '['")
        body_start = self._peek().position
        body = self._parse_statements()
        end = self._consume(TokenType.RBRACKET, "']'", "Expected ']' to close block")
        return body, self.source[body_start:end.position].strip()

    def _parse_implicit_lambda(self) -> Expression:
        position = self._peek().position
        body, _ = self._parse_block()
        lam = LambdaExpr((IMPLICIT_PARAM,), body, position)
        if self._match(TokenType.LPAREN):
            args, named = self._parse_arguments()
            return LambdaInvocation(lam, args, named, position)
        return lam

    def _parse_paren(self) -> Expression:
        open_paren = self._advance()
        params = self._try_parse_param_list()
        if params is not None:
            body, _ = self._parse_block()
            return LambdaExpr(params, body, open_paren.position)
        expr = self._parse_expression()
        self._consume(TokenType.RPAREN, "')'", "Expected ')' after expression")
        return expr

    def _try_parse_param_list(self) -> Optional[Tuple[str, ...]]:
        """Recognize `a, b)[` after '('. Consumes nothing unless it matches."""
        i = self.current
        params = []
        if self.tokens[i].type is TokenType.IDENTIFIER:
            params.append(self.tokens[i].literal)
            i += 1
            while self.tokens[i].type is TokenType.COMMA and self.tokens[i + 1].type is TokenType.IDENTIFIER:
                params.append(self.tokens[i + 1].literal)
                i += 2
        if self.tokens[i].type is not TokenType.RPAREN:
            return None
        if self.tokens[i + 1].type is not TokenType.LBRACKET:
            return None
        if len(set(params)) != len(params):
            raise ParseError("Duplicate lambda parameter name", self.tokens[self.current].position, "distinct names")
        self.current = i + 1  # past ')'
        return tuple(params)

    def _parse_arguments(self) -> Tuple[Tuple[Expression, ...], Tuple[NamedArg, ...]]:
        """Parse `arg, name: value, ...)` after '(' has been consumed."""
        positional: List[Expression] = []
        named: List[NamedArg] = []
        if not self._check(TokenType.RPAREN):
            while True:
                if self._check(TokenType.IDENTIFIER) and self._check_next(TokenType.COLON):
                    name = self._advance()
                    self._advance()  # ':'
                    if any(n.name == name.literal for n in named):
                        raise ParseError(f"Duplicate named argument '{name.literal}'", name.position)
                    named.append(NamedArg(name.literal, self._parse_expression(), name.position))
                else:
                    expr = self._parse_expression()
                    if named:
                        raise ParseError(
                            "Positional argument cannot follow named argument",
                            expr.position, "named argument",
                        )
                    positional.append(expr)
                if not self._match(TokenType.COMMA):
                    break
        self._consume(TokenType.RPAREN, "')'", "Expected ')' after arguments")
        return tuple(positional), tuple(named)

    # ===================================================================
    # Pattern sub-grammar
    # ===================================================================

    def _parse_pattern(self, position: int) -> PatternExpr:
        elements: List[PatternElement] = []
        while not self._check(TokenType.RPAREN):
            if self._is_at_end():
                raise ParseError("Expected ')' after pattern elements", self._peek().position, "')'")
            elements.append(self._parse_pattern_element())
        self._consume(TokenType.RPAREN, "')'", "Expected ')' after pattern elements")
        if not elements:
            raise ParseError("Pattern cannot be empty", position, "pattern element")
        return PatternExpr(tuple(elements), position)

    def _parse_pattern_element(self) -> PatternElement:
        token = self._peek()
        if self._match(TokenType.STRING):
            element: PatternElement = PatternLiteral(token.literal, token.position)
        elif self._match(TokenType.IDENTIFIER):
            kind = CHAR_CLASS_NAMES.get(token.literal)
            if kind is None:
                raise ParseError(
                    f"Unknown pattern character class '{token.literal}'. "
                    f"Valid classes are: {', '.join(CHAR_CLASS_NAMES)}",
                    token.position, "character class",
                )
            element = CharClass(kind, token.position)
        else:
            raise ParseError(
                "Expected pattern element (character class or string literal)",
                token.position, "pattern element",
            )
        if self._match(TokenType.STAR):
            return Quantified(element, self._parse_quantifier(), element.position)
        return element

    def _parse_quantifier(self) -> Quantifier:
        token = self._peek()
        if self._match(TokenType.NUMBER):
            return Exact(self._whole_number(token))
        if self._match(TokenType.IDENTIFIER):
            if token.literal != "any":
                raise ParseError(
                    f"Expected quantifier: number, 'any', or '(min..max)'. Got '{token.literal}'",
                    token.position, "quantifier",
                )
            return AnyCount()
        if self._match(TokenType.LPAREN):
            min_token = self._consume(TokenType.NUMBER, "number", "Expected minimum in range quantifier")
            minimum = self._whole_number(min_token)
            self._consume(TokenType.DOTDOT, "'..'", "Expected '..' in range quantifier")
            maximum = None
            if self._check(TokenType.NUMBER):
                max_token = self._advance()
                maximum = self._whole_number(max_token)
                if maximum < minimum:
                    raise ParseError(
                        f"Range maximum ({maximum}) must be >= minimum ({minimum})",
                        max_token.position, "maximum >= minimum",
                    )
            self._consume(TokenType.RPAREN, "')'", "Expected ')' after range quantifier")
            return Range(minimum, maximum)
        raise ParseError(
            "Expected quantifier after '*': number, 'any', or '(min..max)'",
            token.position, "quantifier",
        )

    @staticmethod
    def _whole_number(token: Token) -> int:
        value = token.literal
        if value != int(value):
            raise ParseError("Quantifier count must be a whole number", token.position, "whole number")
        return int(value)

    # ===================================================================
    # Token cursor
    # ===================================================================

    def _touches_previous(self) -> bool:
        """True when the current token starts right where the previous one ended."""
        prev = self._previous()
        return prev.position + len(prev.lexeme) == self._peek().position

    def _match(self, token_type: TokenType) -> bool:
        if self._check(token_type):
            self._advance()
            return True
        return False

    def _check(self, token_type: TokenType) -> bool:
        return self._peek().type is token_type

    def _check_next(self, token_type: TokenType) -> bool:
        if self.current + 1 >= len(self.tokens):
            return False
        return self.tokens[self.current + 1].type is token_type

    def _advance(self) -> Token:
        token = self.tokens[self.current]
        if token.type is not TokenType.EOF:
            self.current += 1
        return token

    def _is_at_end(self) -> bool:
        return self._peek().type is TokenType.EOF

    def _peek(self) -> Token:
        return self.tokens[self.current]

    def _previous(self) -> Token:
        return self.tokens[max(self.current - 1, 0)]

    def _consume(self, token_type: TokenType, expected: str, message: str) -> Token:
        if self._check(token_type):
            return self._advance()
        raise ParseError(message, self._peek().position, expected)


def parse_directive(source: str) -> Directive:
    """Lex and parse one bracketed directive."""
    return Parser(tokenize(source), source).parse_directive()
