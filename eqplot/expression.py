"""Single-variable expression evaluation and series sampling.

Expressions are tokenized with a regular expression and parsed by a small
recursive-descent parser into an immutable tree. Nothing is ever handed to
``eval``; only the whitelisted functions below can be called.
"""

import logging
import math
import operator
import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)


class ExpressionError(ValueError):
    """Base class for expression failures."""


class ParseError(ExpressionError):
    """The expression text is malformed or uses something unsupported."""


class EvaluationError(ExpressionError):
    """The expression is undefined at a particular variable value."""


# --- Function Whitelist ---


def _cbrt(value: float) -> float:
    return math.copysign(abs(value) ** (1.0 / 3.0), value)


def _signum(value: float) -> float:
    if value == 0:
        return 0.0
    return math.copysign(1.0, value)


DEFAULT_FUNCTIONS: Dict[str, Callable[[float], float]] = {
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "asin": math.asin,
    "acos": math.acos,
    "atan": math.atan,
    "sinh": math.sinh,
    "cosh": math.cosh,
    "tanh": math.tanh,
    "exp": math.exp,
    "log": math.log,  # natural log, like most calculator libraries
    "ln": math.log,
    "log10": math.log10,
    "log2": math.log2,
    "sqrt": math.sqrt,
    "cbrt": _cbrt,
    "abs": abs,
    "floor": math.floor,
    "ceil": math.ceil,
    "signum": _signum,
}

CONSTANTS = {
    "pi": math.pi,
    "π": math.pi,
    "e": math.e,
}

# OCR output and pasted text often carry typographic operators
SYMBOL_ALIASES = {
    "×": "*",
    "·": "*",
    "÷": "/",
    "−": "-",
    "–": "-",
}

# --- Tokenizer ---
TOKEN_PATTERN = re.compile(
    r"\s*(?:"
    r"(?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)"
    r"|(?P<name>[A-Za-z_π][A-Za-z0-9_]*)"
    r"|(?P<op>\*\*|[+\-*/%^()])"
    r")"
)
VARIABLE_NAME_REGEX = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

Token = Tuple[str, str, int]  # (kind, text, position)

# Deepest allowed nesting of parentheses, function calls and exponents
MAX_NESTING = 64


def tokenize(text: str) -> List[Token]:
    """Splits expression text into (kind, text, position) tokens."""
    for symbol, replacement in SYMBOL_ALIASES.items():
        text = text.replace(symbol, replacement)

    tokens: List[Token] = []
    position = 0
    end = len(text.rstrip())
    while position < end:
        match = TOKEN_PATTERN.match(text, position)
        if not match:
            offending = text[position:].lstrip()[:1]
            raise ParseError(f"Unexpected character '{offending}' at position {position}")
        kind = match.lastgroup
        tokens.append((kind, match.group(kind), match.start(kind)))
        position = match.end()
    tokens.append(("end", "", end))
    return tokens


# --- Expression Tree ---


class _Number:
    __slots__ = ("value",)

    def __init__(self, value: float):
        self.value = value

    def evaluate(self, x: float) -> float:
        return self.value


class _Variable:
    __slots__ = ()

    def evaluate(self, x: float) -> float:
        return x


class _Negate:
    __slots__ = ("operand",)

    def __init__(self, operand):
        self.operand = operand

    def evaluate(self, x: float) -> float:
        return -self.operand.evaluate(x)


def _divide(left: float, right: float) -> float:
    if right == 0:
        raise EvaluationError("Division by zero")
    return left / right


def _modulo(left: float, right: float) -> float:
    if right == 0:
        raise EvaluationError("Modulo by zero")
    return math.fmod(left, right)


def _power(left: float, right: float) -> float:
    try:
        return math.pow(left, right)
    except (ValueError, OverflowError) as e:
        raise EvaluationError(f"{left} ^ {right} is undefined: {e}") from e


BINARY_OPERATIONS: Dict[str, Callable[[float, float], float]] = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "/": _divide,
    "%": _modulo,
    "^": _power,
}


class _BinaryOp:
    __slots__ = ("symbol", "operation", "left", "right")

    def __init__(self, symbol: str, left, right):
        self.symbol = symbol
        self.operation = BINARY_OPERATIONS[symbol]
        self.left = left
        self.right = right

    def evaluate(self, x: float) -> float:
        return self.operation(self.left.evaluate(x), self.right.evaluate(x))


class _Chain:
    """Left-to-right run of same-precedence operations, evaluated in a loop."""

    __slots__ = ("first", "rest")

    def __init__(self, first, rest):
        self.first = first
        self.rest = tuple(rest)

    def evaluate(self, x: float) -> float:
        value = self.first.evaluate(x)
        for operation, operand in self.rest:
            value = operation(value, operand.evaluate(x))
        return value


class _FunctionCall:
    __slots__ = ("name", "function", "argument")

    def __init__(self, name: str, function: Callable[[float], float], argument):
        self.name = name
        self.function = function
        self.argument = argument

    def evaluate(self, x: float) -> float:
        value = self.argument.evaluate(x)
        try:
            return float(self.function(value))
        except (ValueError, OverflowError, ZeroDivisionError) as e:
            raise EvaluationError(f"{self.name}({value}) is undefined: {e}") from e


# --- Parser ---


class _Parser:
    """Recursive-descent parser, one method per precedence level.

    expression := term (("+" | "-") term)*
    term       := unary (("*" | "/" | "%") unary | <implicit> unary)*
    unary      := ("+" | "-")* power
    power      := primary (("^" | "**") unary)?
    primary    := number | constant | variable | function "(" expression ")"
                | "(" expression ")"
    """

    def __init__(self, tokens: List[Token], variable_name: str, functions: Mapping[str, Callable]):
        self.tokens = tokens
        self.index = 0
        self.variable_name = variable_name
        self.functions = functions
        self.depth = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _is_op(self, *symbols: str) -> bool:
        kind, text, _ = self.current
        return kind == "op" and text in symbols

    def _starts_operand(self) -> bool:
        kind, text, _ = self.current
        return kind in ("number", "name") or (kind == "op" and text == "(")

    def _unexpected(self) -> ParseError:
        kind, text, position = self.current
        if kind == "end":
            return ParseError("Unexpected end of expression")
        return ParseError(f"Unexpected '{text}' at position {position}")

    def _expect_close(self, opened_at: int) -> None:
        if not self._is_op(")"):
            if self.current[0] == "end":
                raise ParseError(f"Unbalanced parenthesis opened at position {opened_at}")
            raise self._unexpected()
        self._advance()

    def parse(self):
        if self.current[0] == "end":
            raise ParseError("Expression is empty")
        node = self._expression()
        if self.current[0] != "end":
            if self._is_op(")"):
                raise ParseError(f"Unbalanced ')' at position {self.current[2]}")
            raise self._unexpected()
        return node

    def _nested(self, parse):
        self.depth += 1
        try:
            if self.depth > MAX_NESTING:
                raise ParseError(f"Expression nests deeper than {MAX_NESTING} levels")
            return parse()
        finally:
            self.depth -= 1

    def _expression(self):
        first = self._term()
        rest = []
        while self._is_op("+", "-"):
            symbol = self._advance()[1]
            rest.append((BINARY_OPERATIONS[symbol], self._term()))
        return _Chain(first, rest) if rest else first

    def _term(self):
        first = self._unary()
        rest = []
        while True:
            if self._is_op("*", "/", "%"):
                symbol = self._advance()[1]
                rest.append((BINARY_OPERATIONS[symbol], self._unary()))
            elif self._starts_operand():
                # Implicit multiplication: "2x", "3(x + 1)", "x sin(x)"
                rest.append((BINARY_OPERATIONS["*"], self._unary()))
            else:
                return _Chain(first, rest) if rest else first

    def _unary(self):
        # Runs of signs collapse into at most one negation
        negative = False
        while self._is_op("+", "-"):
            if self._advance()[1] == "-":
                negative = not negative
        node = self._power()
        return _Negate(node) if negative else node

    def _power(self):
        base = self._primary()
        if self._is_op("^", "**"):
            self._advance()
            return _BinaryOp("^", base, self._nested(self._unary))
        return base

    def _primary(self):
        kind, text, position = self.current
        if kind == "number":
            self._advance()
            return _Number(float(text))
        if kind == "name":
            self._advance()
            if text in self.functions:
                if not self._is_op("("):
                    raise ParseError(f"Function '{text}' at position {position} needs parentheses")
                opened_at = self._advance()[2]
                argument = self._nested(self._expression)
                self._expect_close(opened_at)
                return _FunctionCall(text, self.functions[text], argument)
            if text == self.variable_name:
                return _Variable()
            if text in CONSTANTS:
                return _Number(CONSTANTS[text])
            raise ParseError(f"Unknown symbol '{text}' at position {position}")
        if self._is_op("("):
            opened_at = self._advance()[2]
            node = self._nested(self._expression)
            self._expect_close(opened_at)
            return node
        raise self._unexpected()


class ParsedExpression:
    """A compiled expression bound to one free variable.

    Instances are immutable and safe to evaluate repeatedly with different
    variable values.
    """

    __slots__ = ("text", "variable_name", "_root")

    def __init__(self, text: str, variable_name: str, root):
        self.text = text
        self.variable_name = variable_name
        self._root = root

    def evaluate(self, variable_value: float) -> float:
        return evaluate(self, variable_value)

    def __repr__(self):
        return f"ParsedExpression({self.text!r}, variable={self.variable_name!r})"


def compile_expression(
    expression_text: str,
    variable_name: str = "x",
    functions: Optional[Mapping[str, Callable[[float], float]]] = None,
) -> ParsedExpression:
    """Parses expression text into a ParsedExpression.

    Raises ParseError for unknown symbols, unbalanced parentheses,
    unsupported operators or functions, and empty input.
    """
    if functions is None:
        functions = DEFAULT_FUNCTIONS
    if not VARIABLE_NAME_REGEX.match(variable_name or ""):
        raise ParseError(f"Invalid variable name: '{variable_name}'")
    if variable_name in functions or variable_name in CONSTANTS:
        raise ParseError(f"Variable name '{variable_name}' is reserved")

    tokens = tokenize(expression_text or "")
    root = _Parser(tokens, variable_name, dict(functions)).parse()
    logger.debug(f"Compiled expression '{expression_text}' in variable '{variable_name}'")
    return ParsedExpression(expression_text, variable_name, root)


def evaluate(parsed: ParsedExpression, variable_value: float) -> float:
    """Evaluates a compiled expression at one point.

    Raises EvaluationError when the expression is undefined there, e.g.
    division by zero or the log of a negative number.
    """
    try:
        return float(parsed._root.evaluate(float(variable_value)))
    except ZeroDivisionError as e:
        raise EvaluationError(f"Division by zero: {e}") from e
    except OverflowError as e:
        raise EvaluationError(f"Overflow: {e}") from e


# --- Sampling ---


@dataclass(frozen=True)
class Series:
    """Ordered (x, y) samples, x strictly increasing, y always finite."""

    points: Tuple[Tuple[float, float], ...] = ()

    def __len__(self) -> int:
        return len(self.points)

    def __iter__(self) -> Iterator[Tuple[float, float]]:
        return iter(self.points)

    @property
    def xs(self) -> List[float]:
        return [x for x, _ in self.points]

    @property
    def ys(self) -> List[float]:
        return [y for _, y in self.points]

    def to_list(self) -> List[List[float]]:
        return [[x, y] for x, y in self.points]


def sample(parsed: ParsedExpression, domain_start: float, domain_end: float, step: float) -> Series:
    """Evaluates `parsed` at every step of [domain_start, domain_end].

    Points that are undefined or not finite are left out, so the result can
    be shorter than the number of steps.
    """
    if not step > 0:
        raise ValueError(f"Step must be positive, got {step}")
    if not domain_end > domain_start:
        raise ValueError(f"Empty domain [{domain_start}, {domain_end}]")

    # Index-based so x never accumulates drift; the tolerance keeps the end point
    count = int(math.floor((domain_end - domain_start) / step + 1e-9))
    points = []
    skipped = 0
    for i in range(count + 1):
        x = round(domain_start + i * step, 10)
        try:
            y = evaluate(parsed, x)
        except EvaluationError as e:
            skipped += 1
            logger.debug(f"Skipping x={x} for '{parsed.text}': {e}")
            continue
        if not math.isfinite(y):
            skipped += 1
            continue
        points.append((x, y))

    if skipped:
        logger.debug(f"Sampled '{parsed.text}': {len(points)} points kept, {skipped} skipped")
    return Series(tuple(points))
