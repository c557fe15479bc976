import html
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Any, List, Mapping, Tuple, Union

# -----------------------------------------------------------------------------
# CONDITIONAL EXPRESSIONS
# Purpose: evaluate "conditional" validation rules such as "discount > 0 && price > 100".
# The text is tokenized, parsed into a small AST and interpreted; it is never
# handed to eval().
#
# Grammar:
#   or    := and ('||' and)*
#   and   := cmp ('&&' cmp)*
#   cmp   := sum (('<' | '<=' | '>' | '>=' | '==' | '!=' | '===' | '!==') sum)?
#   sum   := term (('+' | '-') term)*
#   term  := unary (('*' | '/') unary)*
#   unary := ('-' | '+' | '!') unary | atom
#   atom  := NUMBER | NAME | '(' or ')'
# -----------------------------------------------------------------------------

ALLOWED_CHARS = re.compile(r"^[A-Za-z0-9_.\s+\-*/()<>=!&|]+$")

TOKEN_PATTERN = re.compile(
    r"\s*(?:"
    r"(?P<number>\d+(?:\.\d*)?|\.\d+)"
    r"|(?P<name>[A-Za-z_][A-Za-z0-9_]*)"
    r"|(?P<op>===|!==|==|!=|<=|>=|&&|\|\||[<>+\-*/()!])"
    r")"
)

COMPARISONS = {"<", "<=", ">", ">=", "==", "!=", "===", "!=="}


class ExpressionError(ValueError):
    pass


@dataclass(frozen=True)
class Number:
    value: Decimal


@dataclass(frozen=True)
class Name:
    name: str


@dataclass(frozen=True)
class Unary:
    op: str
    operand: "Node"


@dataclass(frozen=True)
class Binary:
    op: str
    left: "Node"
    right: "Node"


Node = Union[Number, Name, Unary, Binary]
Token = Tuple[str, str]


def tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    text = text.rstrip()

    while pos < len(text):
        match = TOKEN_PATTERN.match(text, pos)
        if match is None or match.end() == pos:
            raise ExpressionError(f"Unexpected character at {pos}: {text[pos:pos + 10]!r}")
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))
        pos = match.end()

    return tokens


class Parser:
    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.pos = 0

    def parse(self) -> Node:
        if not self.tokens:
            raise ExpressionError("Empty expression")
        node = self._or()
        if self.pos != len(self.tokens):
            raise ExpressionError(f"Unexpected token {self.tokens[self.pos][1]!r}")
        return node

    def _peek(self) -> str:
        if self.pos < len(self.tokens):
            kind, value = self.tokens[self.pos]
            return value if kind == "op" else ""
        return ""

    def _advance(self) -> Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def _or(self) -> Node:
        node = self._and()
        while self._peek() == "||":
            self._advance()
            node = Binary("||", node, self._and())
        return node

    def _and(self) -> Node:
        node = self._cmp()
        while self._peek() == "&&":
            self._advance()
            node = Binary("&&", node, self._cmp())
        return node

    def _cmp(self) -> Node:
        node = self._sum()
        if self._peek() in COMPARISONS:
            op = self._advance()[1]
            node = Binary(op, node, self._sum())
        return node

    def _sum(self) -> Node:
        node = self._term()
        while self._peek() in ("+", "-"):
            op = self._advance()[1]
            node = Binary(op, node, self._term())
        return node

    def _term(self) -> Node:
        node = self._unary()
        while self._peek() in ("*", "/"):
            op = self._advance()[1]
            node = Binary(op, node, self._unary())
        return node

    def _unary(self) -> Node:
        if self._peek() in ("-", "+", "!"):
            op = self._advance()[1]
            return Unary(op, self._unary())
        return self._atom()

    def _atom(self) -> Node:
        if self.pos >= len(self.tokens):
            raise ExpressionError("Unexpected end of expression")

        kind, value = self._advance()
        if kind == "number":
            return Number(Decimal(value))
        if kind == "name":
            return Name(value)
        if value == "(":
            node = self._or()
            if self._peek() != ")":
                raise ExpressionError("Missing closing parenthesis")
            self._advance()
            return node
        raise ExpressionError(f"Unexpected token {value!r}")


@lru_cache(maxsize=256)
def compile_expression(text: str) -> Node:
    return Parser(tokenize(text)).parse()


def _number(value: Any) -> Decimal:
    if isinstance(value, bool):
        return Decimal(int(value))
    if isinstance(value, (int, float, Decimal)):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            pass
    raise ExpressionError(f"Not a number: {value!r}")


def evaluate(node: Node, values: Mapping[str, Any]) -> Decimal:
    """Interpret an AST; booleans come back as Decimal 1/0."""
    if isinstance(node, Number):
        return node.value

    if isinstance(node, Name):
        if node.name not in values:
            raise ExpressionError(f"Unknown field {node.name!r}")
        return _number(values[node.name])

    if isinstance(node, Unary):
        operand = evaluate(node.operand, values)
        if node.op == "-":
            return -operand
        if node.op == "!":
            return Decimal(int(not operand))
        return operand

    left = evaluate(node.left, values)
    # Short-circuit like the usual && / || semantics
    if node.op == "&&":
        return Decimal(int(bool(left) and bool(evaluate(node.right, values))))
    if node.op == "||":
        return Decimal(int(bool(left) or bool(evaluate(node.right, values))))

    right = evaluate(node.right, values)
    if node.op == "+":
        return left + right
    if node.op == "-":
        return left - right
    if node.op == "*":
        return left * right
    if node.op == "/":
        return left / right
    if node.op == "<":
        return Decimal(int(left < right))
    if node.op == "<=":
        return Decimal(int(left <= right))
    if node.op == ">":
        return Decimal(int(left > right))
    if node.op == ">=":
        return Decimal(int(left >= right))
    if node.op in ("==", "==="):
        return Decimal(int(left == right))
    if node.op in ("!=", "!=="):
        return Decimal(int(left != right))

    raise ExpressionError(f"Unknown operator {node.op!r}")


def unescape(text: str) -> str:
    # Comments may come back HTML-encoded more than once
    previous = None
    while previous != text:
        previous, text = text, html.unescape(text)
    return text


def evaluate_condition(condition: str, values: Mapping[str, Any]) -> bool:
    """
    True when the condition holds for the given field values.
    Disallowed characters, syntax errors, unknown or non-numeric fields and
    division by zero all make the condition false.
    """
    condition = unescape(condition)
    if not ALLOWED_CHARS.match(condition):
        return False

    try:
        return bool(evaluate(compile_expression(condition), values))
    except (ExpressionError, ArithmeticError, RecursionError):
        return False
