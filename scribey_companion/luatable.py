"""
Scribey Companion - SavedVariables Table Decoder

WoW writes addon SavedVariables as plain Lua assignments such as:

    ScribeyDB = {
        ["character_data"] = {
            ["Foo-Bar"] = {
                ["class"] = "MAGE",
            },
        },
    }

Decoding happens in two passes. ``parse`` turns the text into an immutable
tree of nodes, and ``reduce`` folds that tree into plain Python values
(``None``, ``bool``, ``int``/``float``, ``str``, ``list``, ``dict``). Only the
data subset of Lua is accepted; anything resembling code (calls, control
flow, arithmetic) raises ``DecodeError`` naming the offending node type.

Usage:
    from scribey_companion.luatable import decode_global

    db = decode_global(text, "ScribeyDB")
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Optional, Union

from .errors import DecodeError

RawValue = Union[None, bool, int, float, str, list, dict]


# =============================================================================
# Syntax Tree
# =============================================================================


@dataclass(frozen=True)
class Node:
    """Base class for syntax tree nodes."""

    @property
    def node_type(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class Identifier(Node):
    name: str


@dataclass(frozen=True)
class StringLiteral(Node):
    # value is None when the escapes in raw could not be resolved
    value: Optional[str]
    raw: str


@dataclass(frozen=True)
class NumericLiteral(Node):
    value: Union[int, float]
    raw: str


@dataclass(frozen=True)
class BooleanLiteral(Node):
    value: bool


@dataclass(frozen=True)
class NilLiteral(Node):
    pass


@dataclass(frozen=True)
class VarargLiteral(Node):
    pass


@dataclass(frozen=True)
class UnaryExpression(Node):
    operator: str
    argument: Node


@dataclass(frozen=True)
class BinaryExpression(Node):
    operator: str
    left: Node
    right: Node


@dataclass(frozen=True)
class CallExpression(Node):
    base: Node
    arguments: tuple[Node, ...]


@dataclass(frozen=True)
class MemberExpression(Node):
    base: Node
    identifier: Identifier


@dataclass(frozen=True)
class IndexExpression(Node):
    base: Node
    index: Node


@dataclass(frozen=True)
class TableKey(Node):
    key: Node
    value: Node


@dataclass(frozen=True)
class TableKeyString(Node):
    key: Identifier
    value: Node


@dataclass(frozen=True)
class TableValue(Node):
    value: Node


@dataclass(frozen=True)
class TableConstructorExpression(Node):
    fields: tuple[Node, ...]


@dataclass(frozen=True)
class AssignmentStatement(Node):
    variables: tuple[Node, ...]
    init: tuple[Node, ...]


@dataclass(frozen=True)
class LocalStatement(Node):
    variables: tuple[Identifier, ...]
    init: tuple[Node, ...]


@dataclass(frozen=True)
class ReturnStatement(Node):
    arguments: tuple[Node, ...]


@dataclass(frozen=True)
class CallStatement(Node):
    expression: CallExpression


@dataclass(frozen=True)
class Chunk(Node):
    body: tuple[Node, ...]


# =============================================================================
# Tokenizer
# =============================================================================


@dataclass(frozen=True)
class Token:
    kind: str  # NAME, KEYWORD, NUMBER, STRING, OP, EOF
    text: str
    line: int


KEYWORDS = frozenset({
    "and", "break", "do", "else", "elseif", "end", "false", "for",
    "function", "goto", "if", "in", "local", "nil", "not", "or",
    "repeat", "return", "then", "true", "until", "while",
})

# Statements that only make sense in executable code
CODE_STATEMENTS = {
    "if": "IfStatement",
    "for": "ForStatement",
    "while": "WhileStatement",
    "repeat": "RepeatStatement",
    "do": "DoStatement",
    "function": "FunctionDeclaration",
    "goto": "GotoStatement",
    "break": "BreakStatement",
}

# (left, right) binding power, as in the reference Lua parser
BINARY_PRIORITY = {
    "or": (1, 1), "and": (2, 2),
    "<": (3, 3), ">": (3, 3), "<=": (3, 3), ">=": (3, 3), "~=": (3, 3), "==": (3, 3),
    "|": (4, 4), "~": (5, 5), "&": (6, 6), "<<": (7, 7), ">>": (7, 7),
    "..": (9, 8), "+": (10, 10), "-": (10, 10),
    "*": (11, 11), "/": (11, 11), "//": (11, 11), "%": (11, 11),
    "^": (14, 13),
}
UNARY_OPERATORS = frozenset({"-", "not", "#", "~"})
UNARY_PRIORITY = 12

SIMPLE_ESCAPES = {
    "a": "\a", "b": "\b", "f": "\f", "n": "\n", "r": "\r", "t": "\t",
    "v": "\v", "\\": "\\", '"': '"', "'": "'", "\n": "\n",
}


class LuaTokenizer:
    """Split table literal text into tokens, dropping whitespace and comments."""

    TOKEN_PATTERNS = [
        ("WHITESPACE", r"\s+"),
        ("LONG_COMMENT", r"--\[(?P<comment_level>=*)\[.*?\](?P=comment_level)\]"),
        ("COMMENT", r"--[^\n]*"),
        ("LONG_STRING", r"\[(?P<string_level>=*)\[.*?\](?P=string_level)\]"),
        ("STRING", r"\"(?:[^\"\\\n]|\\.)*\"|'(?:[^'\\\n]|\\.)*'"),
        ("NUMBER", (
            r"0[xX](?:[0-9a-fA-F]+(?:\.[0-9a-fA-F]*)?|\.[0-9a-fA-F]+)(?:[pP][+-]?\d+)?"
            r"|(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?"
        )),
        ("NAME", r"[A-Za-z_][A-Za-z0-9_]*"),
        ("OP", r"\.\.\.|\.\.|==|~=|<=|>=|<<|>>|//|::|[-+*/%^#&~|<>=(){}\[\];:,.]"),
    ]

    def __init__(self):
        pattern = "|".join(
            f"(?P<{name}>{regex})" for name, regex in self.TOKEN_PATTERNS
        )
        self._tokenizer = re.compile(pattern, re.DOTALL)

    def tokenize(self, text: str) -> list[Token]:
        tokens: list[Token] = []
        pos = 0
        line = 1
        length = len(text)

        # Skip a leading shebang or UTF-8 BOM
        if text.startswith("\ufeff"):
            pos = 1
        if text.startswith("#", pos):
            newline = text.find("\n", pos)
            pos = length if newline == -1 else newline

        while pos < length:
            match = self._tokenizer.match(text, pos)
            if match is None:
                raise DecodeError(
                    "Syntax", line=line, detail=f"unexpected character {text[pos]!r}"
                )

            kind = match.lastgroup
            lexeme = match.group()

            if kind == "LONG_STRING":
                tokens.append(Token("STRING", lexeme, line))
            elif kind == "NAME":
                tokens.append(Token("KEYWORD" if lexeme in KEYWORDS else "NAME", lexeme, line))
            elif kind in ("STRING", "NUMBER", "OP"):
                tokens.append(Token(kind, lexeme, line))

            line += lexeme.count("\n")
            pos = match.end()

        tokens.append(Token("EOF", "", line))
        return tokens


def _number_value(raw: str) -> Union[int, float]:
    lowered = raw.lower()
    if lowered.startswith("0x"):
        if "." in lowered or "p" in lowered:
            if "p" not in lowered:
                lowered += "p0"
            return float.fromhex(lowered)
        return int(lowered, 16)
    if "." in lowered or "e" in lowered:
        return float(raw)
    return int(raw)


def _unescape(body: str) -> Optional[str]:
    """Resolve Lua escape sequences; None if the body is not valid UTF-8 Lua text."""
    if "\\" not in body:
        return body

    out = bytearray()
    i = 0
    n = len(body)
    while i < n:
        char = body[i]
        if char != "\\":
            out += char.encode("utf-8")
            i += 1
            continue

        if i + 1 >= n:
            return None
        esc = body[i + 1]

        if esc in SIMPLE_ESCAPES:
            out += SIMPLE_ESCAPES[esc].encode("utf-8")
            i += 2
        elif esc == "z":
            i += 2
            while i < n and body[i].isspace():
                i += 1
        elif esc == "x":
            digits = body[i + 2:i + 4]
            if len(digits) != 2 or not all(c in "0123456789abcdefABCDEF" for c in digits):
                return None
            out.append(int(digits, 16))
            i += 4
        elif esc in "0123456789":
            j = i + 1
            while j < n and j < i + 4 and body[j] in "0123456789":
                j += 1
            code = int(body[i + 1:j])
            if code > 255:
                return None
            out.append(code)
            i = j
        elif esc == "u":
            match = re.match(r"\{([0-9a-fA-F]+)\}", body[i + 2:])
            if not match:
                return None
            codepoint = int(match.group(1), 16)
            if codepoint > 0x10FFFF:
                return None
            out += chr(codepoint).encode("utf-8", "surrogatepass")
            i += 2 + match.end()
        else:
            return None

    try:
        return out.decode("utf-8")
    except UnicodeDecodeError:
        return None


def _string_literal(raw: str) -> StringLiteral:
    if raw.startswith("["):
        level = raw.index("[", 1) + 1
        body = raw[level:-level]
        # A newline right after the opening bracket is not part of the string
        if body.startswith("\r\n"):
            body = body[2:]
        elif body.startswith("\n"):
            body = body[1:]
        return StringLiteral(value=body, raw=raw)
    return StringLiteral(value=_unescape(raw[1:-1]), raw=raw)


# =============================================================================
# Parser
# =============================================================================


class LuaTableParser:
    """
    Recursive-descent parser for the data subset of Lua.

    Expressions are parsed with full Lua precedence so that code constructs
    show up as their own node types and can be rejected by name during
    reduction. Control-flow statements are rejected while parsing since their
    bodies never contain data.
    """

    def __init__(self):
        self._tokenizer = LuaTokenizer()
        self._tokens: list[Token] = []
        self._pos = 0

    def parse(self, text: str) -> Chunk:
        self._tokens = self._tokenizer.tokenize(text)
        self._pos = 0

        body: list[Node] = []
        while not self._check("EOF"):
            if self._accept_op(";"):
                continue
            body.append(self._statement())
        return Chunk(body=tuple(body))

    # --- token helpers -------------------------------------------------------

    @property
    def _current(self) -> Token:
        return self._tokens[self._pos]

    def _peek(self, offset: int = 1) -> Token:
        index = min(self._pos + offset, len(self._tokens) - 1)
        return self._tokens[index]

    def _advance(self) -> Token:
        token = self._tokens[self._pos]
        if token.kind != "EOF":
            self._pos += 1
        return token

    def _check(self, kind: str, text: Optional[str] = None) -> bool:
        token = self._current
        return token.kind == kind and (text is None or token.text == text)

    def _accept_op(self, text: str) -> bool:
        if self._check("OP", text):
            self._pos += 1
            return True
        return False

    def _expect_op(self, text: str) -> Token:
        if not self._check("OP", text):
            self._syntax_error(f"expected {text!r}")
        return self._advance()

    def _expect_name(self) -> Identifier:
        if not self._check("NAME"):
            self._syntax_error("expected a name")
        return Identifier(self._advance().text)

    def _syntax_error(self, detail: str):
        token = self._current
        near = token.text or "<eof>"
        raise DecodeError("Syntax", line=token.line, detail=f"{detail} near {near!r}")

    # --- statements ----------------------------------------------------------

    def _statement(self) -> Node:
        token = self._current

        if token.kind == "KEYWORD":
            if token.text in CODE_STATEMENTS:
                raise DecodeError(CODE_STATEMENTS[token.text], line=token.line)
            if token.text == "local":
                return self._local_statement()
            if token.text == "return":
                return self._return_statement()

        if self._check("OP", "::"):
            raise DecodeError("LabelStatement", line=token.line)

        expression = self._suffixed_expression()

        if self._check("OP", "=") or self._check("OP", ","):
            variables = [expression]
            while self._accept_op(","):
                variables.append(self._suffixed_expression())
            for variable in variables:
                if not isinstance(variable, (Identifier, MemberExpression, IndexExpression)):
                    self._syntax_error("cannot assign to expression")
            self._expect_op("=")
            return AssignmentStatement(
                variables=tuple(variables), init=tuple(self._expression_list())
            )

        if isinstance(expression, CallExpression):
            return CallStatement(expression=expression)

        self._syntax_error("unexpected expression")

    def _local_statement(self) -> LocalStatement:
        local = self._advance()
        if self._check("KEYWORD", "function"):
            raise DecodeError("FunctionDeclaration", line=local.line)

        names = [self._expect_name()]
        while self._accept_op(","):
            names.append(self._expect_name())

        init: list[Node] = []
        if self._accept_op("="):
            init = self._expression_list()
        return LocalStatement(variables=tuple(names), init=tuple(init))

    def _return_statement(self) -> ReturnStatement:
        self._advance()
        arguments: list[Node] = []
        block_end = self._check("KEYWORD") and self._current.text in ("end", "else", "elseif", "until")
        if not (self._check("EOF") or self._check("OP", ";") or block_end):
            arguments = self._expression_list()
        return ReturnStatement(arguments=tuple(arguments))

    # --- expressions ---------------------------------------------------------

    def _expression_list(self) -> list[Node]:
        expressions = [self._expression()]
        while self._accept_op(","):
            expressions.append(self._expression())
        return expressions

    def _expression(self, limit: int = 0) -> Node:
        token = self._current
        if token.text in UNARY_OPERATORS and token.kind in ("OP", "KEYWORD"):
            self._advance()
            left: Node = UnaryExpression(token.text, self._expression(UNARY_PRIORITY))
        else:
            left = self._simple_expression()

        while True:
            token = self._current
            if token.kind not in ("OP", "KEYWORD") or token.text not in BINARY_PRIORITY:
                break
            left_priority, right_priority = BINARY_PRIORITY[token.text]
            if left_priority <= limit:
                break
            self._advance()
            right = self._expression(right_priority)
            left = BinaryExpression(token.text, left, right)

        return left

    def _simple_expression(self) -> Node:
        token = self._current

        if token.kind == "NUMBER":
            self._advance()
            return NumericLiteral(value=_number_value(token.text), raw=token.text)
        if token.kind == "STRING":
            self._advance()
            return _string_literal(token.text)
        if token.kind == "KEYWORD":
            if token.text == "nil":
                self._advance()
                return NilLiteral()
            if token.text in ("true", "false"):
                self._advance()
                return BooleanLiteral(token.text == "true")
            if token.text == "function":
                raise DecodeError("FunctionDeclaration", line=token.line)
        if self._check("OP", "..."):
            self._advance()
            return VarargLiteral()
        if self._check("OP", "{"):
            return self._table_constructor()

        return self._suffixed_expression()

    def _primary_expression(self) -> Node:
        if self._check("NAME"):
            return Identifier(self._advance().text)
        if self._accept_op("("):
            expression = self._expression()
            self._expect_op(")")
            return expression
        self._syntax_error("unexpected symbol")

    def _suffixed_expression(self) -> Node:
        expression = self._primary_expression()
        while True:
            if self._accept_op("."):
                expression = MemberExpression(expression, self._expect_name())
            elif self._accept_op("["):
                index = self._expression()
                self._expect_op("]")
                expression = IndexExpression(expression, index)
            elif self._accept_op(":"):
                method = MemberExpression(expression, self._expect_name())
                expression = CallExpression(method, self._call_arguments())
            elif self._check("OP", "(") or self._check("OP", "{") or self._check("STRING"):
                expression = CallExpression(expression, self._call_arguments())
            else:
                return expression

    def _call_arguments(self) -> tuple[Node, ...]:
        if self._check("STRING"):
            return (_string_literal(self._advance().text),)
        if self._check("OP", "{"):
            return (self._table_constructor(),)

        self._expect_op("(")
        arguments: list[Node] = []
        if not self._check("OP", ")"):
            arguments = self._expression_list()
        self._expect_op(")")
        return tuple(arguments)

    def _table_constructor(self) -> TableConstructorExpression:
        self._expect_op("{")
        fields: list[Node] = []

        while not self._check("OP", "}"):
            if self._accept_op("["):
                key = self._expression()
                self._expect_op("]")
                self._expect_op("=")
                fields.append(TableKey(key=key, value=self._expression()))
            elif self._check("NAME") and self._peek().kind == "OP" and self._peek().text == "=":
                key = Identifier(self._advance().text)
                self._advance()
                fields.append(TableKeyString(key=key, value=self._expression()))
            else:
                fields.append(TableValue(value=self._expression()))

            if not (self._accept_op(",") or self._accept_op(";")):
                break

        self._expect_op("}")
        return TableConstructorExpression(fields=tuple(fields))


def parse(text: str) -> Chunk:
    """Parse table literal text into a syntax tree."""
    return LuaTableParser().parse(text)


# =============================================================================
# Reduction
# =============================================================================


def reduce(node: Node) -> RawValue:
    """
    Fold a syntax tree node into a plain Python value.

    Raises:
        DecodeError: For node types outside the table literal grammar.
    """
    if isinstance(node, StringLiteral):
        if node.value is not None:
            return node.value
        return node.raw[1:-1]
    if isinstance(node, (NumericLiteral, BooleanLiteral)):
        return node.value
    if isinstance(node, NilLiteral):
        return None
    if isinstance(node, UnaryExpression) and node.operator == "-":
        operand = reduce(node.argument)
        if isinstance(operand, (int, float)) and not isinstance(operand, bool):
            return -operand
        raise DecodeError(node.node_type, detail="negation of a non-numeric value")
    if isinstance(node, Identifier):
        return node.name
    if isinstance(node, TableConstructorExpression):
        return _reduce_table(node)
    if isinstance(node, TableValue):
        return reduce(node.value)

    if isinstance(node, AssignmentStatement):
        result: dict[str, RawValue] = {}
        for variable, init in zip(node.variables, node.init):
            if isinstance(variable, Identifier):
                result[variable.name] = reduce(init)
        return result
    if isinstance(node, LocalStatement):
        return _reduce_many(node.init)
    if isinstance(node, ReturnStatement):
        return _reduce_many(node.arguments)
    if isinstance(node, Chunk):
        return reduce(node.body[0]) if node.body else None

    raise DecodeError(node.node_type)


def _reduce_many(nodes: tuple[Node, ...]) -> RawValue:
    values = [reduce(n) for n in nodes]
    return values[0] if len(values) == 1 else values


def _reduce_key(node: Node) -> Union[str, int, float]:
    key = node.name if isinstance(node, Identifier) else reduce(node)
    if isinstance(key, bool) or not isinstance(key, (str, int, float)):
        raise DecodeError("TableKey", detail=f"unsupported key type {type(key).__name__}")
    return key


def _reduce_field(field: Node) -> tuple[Union[str, int, float], RawValue]:
    if isinstance(field, TableKeyString):
        return field.key.name, reduce(field.value)
    if isinstance(field, TableKey):
        return _reduce_key(field.key), reduce(field.value)
    raise DecodeError(field.node_type)


def _reduce_table(node: TableConstructorExpression) -> RawValue:
    fields = node.fields

    # Only the first field decides between map and array
    if fields and not isinstance(fields[0], TableValue):
        mapping: dict[Union[str, int, float], RawValue] = {}
        position = 0
        for field in fields:
            if isinstance(field, TableValue):
                position += 1
                mapping[position] = reduce(field.value)
            else:
                key, value = _reduce_field(field)
                mapping[key] = value
        return mapping if mapping else []

    values: list[RawValue] = []
    for field in fields:
        if isinstance(field, TableValue):
            values.append(reduce(field.value))
        else:
            key, value = _reduce_field(field)
            values.append([key, value])
    return values


class _NotFound:
    def __repr__(self) -> str:
        return "NOT_FOUND"

    def __bool__(self) -> bool:
        return False


NOT_FOUND: Any = _NotFound()


def find_global(chunk: Chunk, name: str) -> RawValue:
    """
    Reduce the value assigned to a top-level global.

    The first matching assignment wins; later assignments to the same name
    are ignored.

    Returns:
        The reduced value, or NOT_FOUND if nothing assigns to ``name``.
    """
    for statement in chunk.body:
        if not isinstance(statement, AssignmentStatement):
            continue
        for variable, init in zip(statement.variables, statement.init):
            if isinstance(variable, Identifier) and variable.name == name:
                return reduce(init)
    return NOT_FOUND


def decode_global(text: str, name: str) -> RawValue:
    """Parse ``text`` and return the value of global ``name`` (or NOT_FOUND)."""
    return find_global(parse(text), name)


# =============================================================================
# Encoding
# =============================================================================


def _encode_string(value: str) -> str:
    out = ['"']
    for char in value:
        if char == "\\":
            out.append("\\\\")
        elif char == '"':
            out.append('\\"')
        elif char == "\n":
            out.append("\\n")
        elif char == "\r":
            out.append("\\r")
        elif char == "\t":
            out.append("\\t")
        elif ord(char) < 32 or ord(char) == 127:
            out.append(f"\\{ord(char):03d}")
        else:
            out.append(char)
    out.append('"')
    return "".join(out)


def _encode_number(value: Union[int, float]) -> str:
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"Cannot encode non-finite number: {value}")
    return repr(value)


def _encode(value: RawValue, depth: int, indent: str) -> str:
    pad = indent * (depth + 1)
    close = indent * depth

    if value is None:
        return "nil"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return _encode_number(value)
    if isinstance(value, str):
        return _encode_string(value)
    if isinstance(value, list):
        if not value:
            return "{}"
        items = [f"{pad}{_encode(v, depth + 1, indent)}," for v in value]
        return "{\n" + "\n".join(items) + f"\n{close}}}"
    if isinstance(value, dict):
        if not value:
            return "{}"
        items = []
        for key, item in value.items():
            if isinstance(key, bool) or not isinstance(key, (str, int, float)):
                raise ValueError(f"Cannot encode table key: {key!r}")
            encoded_key = _encode_string(key) if isinstance(key, str) else _encode_number(key)
            items.append(f"{pad}[{encoded_key}] = {_encode(item, depth + 1, indent)},")
        return "{\n" + "\n".join(items) + f"\n{close}}}"

    raise ValueError(f"Cannot encode value of type {type(value).__name__}")


def encode(value: RawValue, name: Optional[str] = None, indent: str = "\t") -> str:
    """
    Write a value as table literal text in the layout WoW uses.

    Args:
        value: The value to encode.
        name: Optional global to assign the value to.
        indent: Indentation unit.
    """
    body = _encode(value, 0, indent)
    if name is None:
        return body
    return f"{name} = {body}\n"
