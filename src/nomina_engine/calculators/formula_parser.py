"""Parser for the payroll formula language.

Formulas are parsed once into an immutable expression tree which is then
evaluated many times (once per employee). The grammar, lowest precedence
first::

    expression  := or ( "?" expression ":" expression )?
    or          := and ( "||" and )*
    and         := equality ( "&&" equality )*
    equality    := comparison ( ( "==" | "!=" ) comparison )*
    comparison  := additive ( ( "<" | "<=" | ">" | ">=" ) additive )*
    additive    := term ( ( "+" | "-" ) term )*
    term        := unary ( ( "*" | "/" | "%" ) unary )*
    unary       := ( "-" | "+" | "!" ) unary | primary
    primary     := NUMBER | "true" | "false" | IDENT
                 | IDENT "(" arguments? ")" | "(" expression ")"

Only the functions in ``FUNCTION_ARITY`` can be called. There is no
attribute access, indexing or assignment.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Union

MAX_FORMULA_LENGTH = 1000
DEFAULT_MAX_DEPTH = 64

# name -> (min args, max args); None means unbounded
FUNCTION_ARITY: dict[str, tuple[int, int | None]] = {
    "min": (1, None),
    "max": (1, None),
    "round": (1, 2),
    "if": (3, 3),
    "percentOf": (2, 2),
    "floor": (1, 1),
    "ceil": (1, 1),
    "abs": (1, 1),
    "proportional": (3, 3),
}

_TWO_CHAR_OPERATORS = {">=", "<=", "==", "!=", "&&", "||"}
_ONE_CHAR_OPERATORS = {"+", "-", "*", "/", "%", ">", "<", "!", "?", ":", "(", ")", ","}
_KEYWORDS = {"true", "false"}


# ===== Errors =====


class FormulaError(Exception):
    """Base class for every formula failure."""

    kind = "FORMULA_ERROR"

    def __init__(self, message: str, formula: str | None = None):
        self.message = message
        self.formula = formula
        super().__init__(message)


class FormulaSyntaxError(FormulaError):
    """Malformed expression, detected before evaluation."""

    kind = "SYNTAX_ERROR"

    def __init__(self, message: str, formula: str | None = None, position: int | None = None):
        self.position = position
        if position is not None:
            message = f"{message} (at position {position})"
        super().__init__(message, formula)


class UnknownIdentifierError(FormulaError):
    """Expression references a name not present in the context."""

    kind = "UNKNOWN_IDENTIFIER"

    def __init__(self, name: str, formula: str | None = None):
        self.name = name
        super().__init__(f"Unknown identifier '{name}'", formula)


class DivisionByZeroError(FormulaError):
    kind = "DIVISION_BY_ZERO"


class StepLimitExceededError(FormulaError):
    """Evaluation or nesting exceeded its hard bound."""

    kind = "STEP_LIMIT_EXCEEDED"


class TypeMismatchError(FormulaError):
    kind = "TYPE_MISMATCH"


class NegativeAmountError(FormulaError):
    """A concept evaluated to a negative amount."""

    kind = "NEGATIVE_AMOUNT"


# ===== Expression tree =====


@dataclass(frozen=True)
class Number:
    value: Decimal


@dataclass(frozen=True)
class Boolean:
    value: bool


@dataclass(frozen=True)
class Identifier:
    name: str


@dataclass(frozen=True)
class Unary:
    op: str
    operand: Expression


@dataclass(frozen=True)
class Binary:
    op: str
    left: Expression
    right: Expression


@dataclass(frozen=True)
class Conditional:
    condition: Expression
    then: Expression
    otherwise: Expression


@dataclass(frozen=True)
class Call:
    name: str
    args: tuple[Expression, ...]


Expression = Union[Number, Boolean, Identifier, Unary, Binary, Conditional, Call]


def iter_identifiers(node: Expression) -> set[str]:
    """Collect every identifier name referenced by an expression."""
    names: set[str] = set()
    stack: list[Expression] = [node]
    while stack:
        current = stack.pop()
        if isinstance(current, Identifier):
            names.add(current.name)
        elif isinstance(current, Unary):
            stack.append(current.operand)
        elif isinstance(current, Binary):
            stack.extend((current.left, current.right))
        elif isinstance(current, Conditional):
            stack.extend((current.condition, current.then, current.otherwise))
        elif isinstance(current, Call):
            stack.extend(current.args)
    return names


# ===== Tokenizer =====


@dataclass(frozen=True)
class Token:
    kind: str  # NUMBER, IDENT, OP, EOF
    text: str
    position: int


def _is_digit(char: str) -> bool:
    return "0" <= char <= "9"


def tokenize(formula: str) -> list[Token]:
    """Split a formula into tokens."""
    tokens: list[Token] = []
    i = 0
    length = len(formula)

    while i < length:
        char = formula[i]

        if char.isspace():
            i += 1
            continue

        if _is_digit(char) or (char == "." and i + 1 < length and _is_digit(formula[i + 1])):
            start = i
            seen_dot = False
            while i < length and (_is_digit(formula[i]) or formula[i] == "."):
                if formula[i] == ".":
                    if seen_dot:
                        raise FormulaSyntaxError("Malformed number", formula, i)
                    seen_dot = True
                i += 1
            if i < length and (formula[i].isalpha() or formula[i] == "_"):
                raise FormulaSyntaxError("Malformed number", formula, start)
            tokens.append(Token("NUMBER", formula[start:i], start))
            continue

        if char.isascii() and (char.isalpha() or char == "_"):
            start = i
            while i < length and formula[i].isascii() and (formula[i].isalnum() or formula[i] == "_"):
                i += 1
            tokens.append(Token("IDENT", formula[start:i], start))
            continue

        two = formula[i : i + 2]
        if two in _TWO_CHAR_OPERATORS:
            tokens.append(Token("OP", two, i))
            i += 2
            continue

        if char in _ONE_CHAR_OPERATORS:
            tokens.append(Token("OP", char, i))
            i += 1
            continue

        raise FormulaSyntaxError(f"Unexpected character {char!r}", formula, i)

    tokens.append(Token("EOF", "", length))
    return tokens


# ===== Parser =====


class FormulaParser:
    """Recursive-descent parser producing an immutable expression tree."""

    def __init__(self, formula: str, max_depth: int = DEFAULT_MAX_DEPTH):
        self.formula = formula
        self.max_depth = max_depth
        self.tokens: list[Token] = []
        self.pos = 0
        self.depth = 0

    def parse(self) -> Expression:
        if not isinstance(self.formula, str) or not self.formula.strip():
            raise FormulaSyntaxError("Formula is required", self.formula)
        if len(self.formula) > MAX_FORMULA_LENGTH:
            raise FormulaSyntaxError(
                f"Formula is too long (max {MAX_FORMULA_LENGTH} characters)", self.formula
            )

        self.tokens = tokenize(self.formula)
        self.pos = 0
        node = self._expression()
        token = self._peek()
        if token.kind != "EOF":
            raise FormulaSyntaxError(
                f"Unexpected token '{token.text}'", self.formula, token.position
            )
        return node

    # --- token helpers ---

    def _peek(self) -> Token:
        return self.tokens[self.pos]

    def _advance(self) -> Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def _match(self, *operators: str) -> Token | None:
        token = self._peek()
        if token.kind == "OP" and token.text in operators:
            self.pos += 1
            return token
        return None

    def _expect(self, operator: str) -> Token:
        token = self._peek()
        if token.kind != "OP" or token.text != operator:
            found = token.text or "end of formula"
            raise FormulaSyntaxError(
                f"Expected '{operator}' but found '{found}'", self.formula, token.position
            )
        return self._advance()

    def _enter(self) -> None:
        self.depth += 1
        if self.depth > self.max_depth:
            raise StepLimitExceededError(
                f"Formula nesting exceeds the maximum depth of {self.max_depth}", self.formula
            )

    def _leave(self) -> None:
        self.depth -= 1

    # --- grammar ---

    def _expression(self) -> Expression:
        self._enter()
        try:
            condition = self._or()
            if self._match("?"):
                then = self._expression()
                self._expect(":")
                otherwise = self._expression()
                return Conditional(condition, then, otherwise)
            return condition
        finally:
            self._leave()

    def _binary_level(self, operators: tuple[str, ...], operand) -> Expression:
        # Every chained operator deepens the left-leaning tree by one level.
        left = operand()
        chained = 0
        try:
            while True:
                token = self._match(*operators)
                if token is None:
                    return left
                self._enter()
                chained += 1
                left = Binary(token.text, left, operand())
        finally:
            self.depth -= chained

    def _or(self) -> Expression:
        return self._binary_level(("||",), self._and)

    def _and(self) -> Expression:
        return self._binary_level(("&&",), self._equality)

    def _equality(self) -> Expression:
        return self._binary_level(("==", "!="), self._comparison)

    def _comparison(self) -> Expression:
        return self._binary_level(("<", "<=", ">", ">="), self._additive)

    def _additive(self) -> Expression:
        return self._binary_level(("+", "-"), self._term)

    def _term(self) -> Expression:
        return self._binary_level(("*", "/", "%"), self._unary)

    def _unary(self) -> Expression:
        token = self._match("-", "+", "!")
        if token is None:
            return self._primary()
        self._enter()
        try:
            return Unary(token.text, self._unary())
        finally:
            self._leave()

    def _primary(self) -> Expression:
        token = self._peek()

        if token.kind == "NUMBER":
            self._advance()
            return Number(Decimal(token.text))

        if token.kind == "IDENT":
            self._advance()
            if token.text in _KEYWORDS:
                return Boolean(token.text == "true")
            if self._match("("):
                return self._call(token)
            return Identifier(token.text)

        if self._match("("):
            node = self._expression()
            self._expect(")")
            return node

        found = token.text or "end of formula"
        raise FormulaSyntaxError(f"Unexpected token '{found}'", self.formula, token.position)

    def _call(self, name_token: Token) -> Call:
        name = name_token.text
        if name not in FUNCTION_ARITY:
            raise FormulaSyntaxError(
                f"Unknown function '{name}'", self.formula, name_token.position
            )

        args: list[Expression] = []
        if not self._match(")"):
            while True:
                args.append(self._expression())
                if self._match(")"):
                    break
                self._expect(",")

        min_args, max_args = FUNCTION_ARITY[name]
        if len(args) < min_args or (max_args is not None and len(args) > max_args):
            expected = str(min_args) if min_args == max_args else f"at least {min_args}"
            if max_args is not None and max_args != min_args:
                expected = f"{min_args} to {max_args}"
            raise FormulaSyntaxError(
                f"Function '{name}' expects {expected} argument(s), got {len(args)}",
                self.formula,
                name_token.position,
            )
        return Call(name, tuple(args))


def parse_formula(formula: str, max_depth: int = DEFAULT_MAX_DEPTH) -> Expression:
    """Parse a formula string into an expression tree."""
    return FormulaParser(formula, max_depth=max_depth).parse()
