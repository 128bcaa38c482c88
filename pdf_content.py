"""
PDF content stream lexing, parsing and serialization.

A page's content stream is mostly operator text (operands followed by an
operator keyword), interrupted by inline images whose sample data is raw
binary. This module:

  - splits raw stream bytes into operator-text and binary segments
  - lexes operator text into tokens
  - parses tokens into Operator records with structured operands
  - renders Operator records back to bytes

Operator text is always handled as latin-1 so that every byte maps to exactly
one character and offsets never shift, whatever 8-bit content the stream holds.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

CONTENT_ENCODING = "latin-1"

WHITESPACE = "\x00\t\n\x0c\r "
DELIMITERS = "()<>[]{}/%"
DIGITS = "0123456789"

_WHITESPACE_BYTES = frozenset(WHITESPACE.encode(CONTENT_ENCODING))
_DELIMITER_BYTES = frozenset(DELIMITERS.encode(CONTENT_ENCODING))

INLINE_IMAGE_BEGIN = b"BI"
INLINE_IMAGE_DATA = b"ID"
INLINE_IMAGE_END = b"EI"

KEYWORD_VALUES = {"true": True, "false": False}


class UnknownOperandError(TypeError):
    """Raised when an operand is not one of the known operand kinds."""

    def __init__(self, operand: Any):
        super().__init__(f"Unknown operand kind: {type(operand).__name__}")
        self.operand = operand


# ============================================================================
# Data model
# ============================================================================


class TokenType(Enum):
    NUMBER = "number"
    NAME = "name"
    STRING = "string"
    HEX_STRING = "hex_string"
    BOOLEAN = "boolean"
    NULL = "null"
    ARRAY_START = "["
    ARRAY_END = "]"
    DICT_START = "<<"
    DICT_END = ">>"
    OPERATOR = "operator"


@dataclass(frozen=True)
class Token:
    type: TokenType
    value: Any = None
    offset: int = 0


@dataclass(frozen=True)
class Number:
    """
    A numeric operand.

    ``raw`` holds the literal text of a number too large to represent as an
    int or a finite float; it is written back verbatim.
    """

    value: Union[int, float]
    raw: Optional[str] = None


@dataclass(frozen=True)
class Name:
    """A name operand, stored without its leading slash."""

    value: str


@dataclass(frozen=True)
class String:
    """
    A literal string operand.

    The value is the raw text between the outer parentheses; escape sequences
    are kept exactly as written so serialization reproduces the source bytes.
    """

    value: str


@dataclass(frozen=True)
class HexString:
    """A hex string operand holding the raw text between ``<`` and ``>``."""

    value: str


@dataclass(frozen=True)
class Boolean:
    value: bool


@dataclass(frozen=True)
class Null:
    pass


@dataclass(frozen=True)
class Array:
    items: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class Dictionary:
    """An ordered name-to-operand mapping, as written in the stream."""

    entries: Tuple[Tuple[str, Any], ...] = ()

    def get(self, key: str, default: Any = None) -> Any:
        # Later entries win
        for entry_key, value in reversed(self.entries):
            if entry_key == key:
                return value
        return default

    def keys(self) -> List[str]:
        return [key for key, _ in self.entries]


Operand = Union[Number, Name, String, HexString, Boolean, Null, Array, Dictionary]


@dataclass(frozen=True)
class Operator:
    """An operator keyword with the operands that preceded it."""

    name: str
    operands: Tuple[Operand, ...] = field(default_factory=tuple)


class SegmentKind(Enum):
    OPERATORS = "operators"
    BINARY = "binary"


@dataclass(frozen=True)
class ContentStreamSegment:
    kind: SegmentKind
    data: bytes


# ============================================================================
# Segmenter
# ============================================================================


def _is_boundary_byte(data: bytes, index: int) -> bool:
    """Whitespace, a delimiter, or a position outside the data."""
    if index < 0 or index >= len(data):
        return True
    byte = data[index]
    return byte in _WHITESPACE_BYTES or byte in _DELIMITER_BYTES


def _keyword_at(data: bytes, index: int, keyword: bytes) -> bool:
    return (
        data.startswith(keyword, index)
        and _is_boundary_byte(data, index - 1)
        and _is_boundary_byte(data, index + len(keyword))
    )


def _skip_literal_string_bytes(data: bytes, index: int) -> int:
    """Return the index just past the literal string opening at ``index``."""
    depth = 0
    n = len(data)
    while index < n:
        byte = data[index]
        if byte == 0x5C:  # backslash
            index += 2
            continue
        if byte == 0x28:  # (
            depth += 1
        elif byte == 0x29:  # )
            depth -= 1
            if depth == 0:
                return index + 1
        index += 1
    return n


def _skip_comment_bytes(data: bytes, index: int) -> int:
    n = len(data)
    while index < n and data[index] not in (0x0A, 0x0D):
        index += 1
    return index


def _skip_name_bytes(data: bytes, index: int) -> int:
    """Return the index just past the name token starting with ``/`` at ``index``."""
    n = len(data)
    index += 1
    while (
        index < n
        and data[index] not in _WHITESPACE_BYTES
        and data[index] not in _DELIMITER_BYTES
    ):
        index += 1
    return index


def _skip_angle_bytes(data: bytes, index: int) -> int:
    """Step over ``<<`` or a whole ``<...>`` hex string."""
    if data.startswith(b"<<", index):
        return index + 2
    end = data.find(b">", index + 1)
    return len(data) if end == -1 else end + 1


def _find_operator_keyword(data: bytes, keyword: bytes, start: int) -> int:
    """
    Find ``keyword`` as a standalone token in operator text.

    Literal strings, hex strings, names and comments are skipped so that
    text such as ``(A BI C) Tj`` or a font resource named ``/BI`` is never
    mistaken for an inline image. Returns -1 when the keyword does not occur.
    """
    first = keyword[0]
    n = len(data)
    index = start
    while index < n:
        byte = data[index]
        if byte == 0x28:  # (
            index = _skip_literal_string_bytes(data, index)
            continue
        if byte == 0x25:  # %
            index = _skip_comment_bytes(data, index)
            continue
        if byte == 0x2F:  # /
            index = _skip_name_bytes(data, index)
            continue
        if byte == 0x3C:  # <
            index = _skip_angle_bytes(data, index)
            continue
        if byte == first and _keyword_at(data, index, keyword):
            return index
        index += 1
    return -1


def _find_binary_keyword(data: bytes, keyword: bytes, start: int) -> int:
    """Find ``keyword`` bounded by whitespace/delimiters inside raw binary data."""
    index = data.find(keyword, start)
    while index != -1:
        if _keyword_at(data, index, keyword):
            return index
        index = data.find(keyword, index + 1)
    return -1


def _inline_image_end(data: bytes, start: int) -> int:
    """
    Return the offset just past the ``EI`` closing the inline image at ``start``.

    When ``ID`` or ``EI`` cannot be found the image runs to the end of the data.
    """
    data_keyword = _find_operator_keyword(
        data, INLINE_IMAGE_DATA, start + len(INLINE_IMAGE_BEGIN)
    )
    if data_keyword == -1:
        logger.debug("Inline image at offset %d has no ID keyword", start)
        return len(data)

    # Exactly one whitespace byte separates ID from the sample data
    data_start = data_keyword + len(INLINE_IMAGE_DATA)
    if data_start < len(data) and data[data_start] in _WHITESPACE_BYTES:
        data_start += 1

    end_keyword = _find_binary_keyword(data, INLINE_IMAGE_END, data_start)
    if end_keyword == -1:
        logger.debug("Inline image at offset %d has no EI keyword", start)
        return len(data)
    return end_keyword + len(INLINE_IMAGE_END)


def segment(data: bytes) -> List[ContentStreamSegment]:
    """
    Split content stream bytes into ordered operator and binary segments.

    Each inline image, from ``BI`` through ``EI`` inclusive, becomes one
    BINARY segment; everything around them becomes OPERATORS segments.
    Concatenating the segment data always reproduces the input exactly.
    """
    data = bytes(data)
    segments: List[ContentStreamSegment] = []
    offset = 0
    n = len(data)

    while offset < n:
        start = _find_operator_keyword(data, INLINE_IMAGE_BEGIN, offset)
        if start == -1:
            segments.append(ContentStreamSegment(SegmentKind.OPERATORS, data[offset:]))
            break

        if start > offset:
            segments.append(
                ContentStreamSegment(SegmentKind.OPERATORS, data[offset:start])
            )

        end = _inline_image_end(data, start)
        segments.append(ContentStreamSegment(SegmentKind.BINARY, data[start:end]))
        offset = end

    return segments


# ============================================================================
# Tokenizer
# ============================================================================


def _is_regular(ch: str) -> bool:
    return ch not in WHITESPACE and ch not in DELIMITERS


def _read_literal_string(text: str, index: int) -> Tuple[str, int]:
    """
    Read a ``(...)`` string starting at ``index``.

    Nested parentheses are balanced. A backslash shields the next character
    from the depth count but the escape itself is left uninterpreted.
    """
    depth = 1
    n = len(text)
    pos = index + 1
    while pos < n:
        ch = text[pos]
        if ch == "\\":
            pos += 2
            continue
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return text[index + 1 : pos], pos + 1
        pos += 1

    logger.debug("Unterminated string at offset %d", index)
    return text[index + 1 : n], n


def _read_hex_string(text: str, index: int) -> Tuple[str, int]:
    end = text.find(">", index + 1)
    if end == -1:
        logger.debug("Unterminated hex string at offset %d", index)
        return text[index + 1 :], len(text)
    return text[index + 1 : end], end + 1


def _read_name(text: str, index: int) -> Tuple[str, int]:
    pos = index + 1
    n = len(text)
    while pos < n and _is_regular(text[pos]):
        pos += 1
    return text[index + 1 : pos], pos


def _read_number(text: str, index: int) -> Tuple[Optional[Union[int, float, str]], int]:
    """
    Read an optionally signed number with at most one decimal point.

    Returns ``(None, index)`` when no digits follow, so the caller can lex
    the run as a keyword instead. A literal too large for an int or a finite
    float comes back as its raw text.
    """
    pos = index
    n = len(text)
    if text[pos] in "+-":
        pos += 1

    seen_point = False
    digits = 0
    while pos < n:
        ch = text[pos]
        if ch in DIGITS:
            digits += 1
        elif ch == "." and not seen_point:
            seen_point = True
        else:
            break
        pos += 1

    if digits == 0:
        return None, index

    raw = text[index:pos]
    try:
        value = float(raw) if seen_point else int(raw)
    except ValueError:
        return raw, pos
    if isinstance(value, float) and not math.isfinite(value):
        return raw, pos
    return value, pos


def _read_keyword(text: str, index: int) -> Tuple[str, int]:
    pos = index
    n = len(text)
    while pos < n and _is_regular(text[pos]):
        pos += 1
    return text[index:pos], pos


def tokenize(data: Union[bytes, str]) -> List[Token]:
    """
    Lex operator text into tokens, in strict byte order.

    Whitespace and ``%`` comments are skipped. Malformed input never raises:
    an unterminated string or hex string runs to the end of the input, and a
    stray delimiter becomes a one-character OPERATOR token.
    """
    text = data.decode(CONTENT_ENCODING) if isinstance(data, (bytes, bytearray)) else data
    tokens: List[Token] = []
    i = 0
    n = len(text)

    while i < n:
        ch = text[i]

        if ch in WHITESPACE:
            i += 1
            continue

        if ch == "%":
            while i < n and text[i] not in "\r\n":
                i += 1
            continue

        if ch == "/":
            value, end = _read_name(text, i)
            tokens.append(Token(TokenType.NAME, value, i))
            i = end
            continue

        if ch == "(":
            value, end = _read_literal_string(text, i)
            tokens.append(Token(TokenType.STRING, value, i))
            i = end
            continue

        if ch == "[":
            tokens.append(Token(TokenType.ARRAY_START, None, i))
            i += 1
            continue

        if ch == "]":
            tokens.append(Token(TokenType.ARRAY_END, None, i))
            i += 1
            continue

        if text.startswith("<<", i):
            tokens.append(Token(TokenType.DICT_START, None, i))
            i += 2
            continue

        if text.startswith(">>", i):
            tokens.append(Token(TokenType.DICT_END, None, i))
            i += 2
            continue

        if ch == "<":
            value, end = _read_hex_string(text, i)
            tokens.append(Token(TokenType.HEX_STRING, value, i))
            i = end
            continue

        if ch in DIGITS or ch in "+-.":
            number, end = _read_number(text, i)
            if number is not None:
                tokens.append(Token(TokenType.NUMBER, number, i))
                i = end
                continue

        if ch in DELIMITERS:
            # Stray ')', '>', '{' or '}'
            tokens.append(Token(TokenType.OPERATOR, ch, i))
            i += 1
            continue

        keyword, end = _read_keyword(text, i)
        if keyword in KEYWORD_VALUES:
            tokens.append(Token(TokenType.BOOLEAN, KEYWORD_VALUES[keyword], i))
        elif keyword == "null":
            tokens.append(Token(TokenType.NULL, None, i))
        else:
            tokens.append(Token(TokenType.OPERATOR, keyword, i))
        i = end

    return tokens


# ============================================================================
# Operator parser
# ============================================================================


def _scalar_operand(token: Token) -> Operand:
    if token.type is TokenType.NUMBER:
        if isinstance(token.value, str):
            return Number(float(token.value), raw=token.value)
        return Number(token.value)
    if token.type is TokenType.NAME:
        return Name(token.value)
    if token.type is TokenType.STRING:
        return String(token.value)
    if token.type is TokenType.HEX_STRING:
        return HexString(token.value)
    if token.type is TokenType.BOOLEAN:
        return Boolean(token.value)
    if token.type is TokenType.NULL:
        return Null()
    raise ValueError(f"Token {token.type.name} is not a scalar operand")


def _parse_array(tokens: Sequence[Token], index: int) -> Tuple[Array, int]:
    """Parse array items from ``index`` (just past ``[``) up to its ``]``."""
    items: List[Operand] = []
    n = len(tokens)

    while index < n:
        token = tokens[index]

        if token.type is TokenType.ARRAY_END:
            return Array(tuple(items)), index + 1

        if token.type is TokenType.OPERATOR:
            logger.debug(
                "Array at offset %d closed early by operator %r",
                token.offset,
                token.value,
            )
            return Array(tuple(items)), index

        if token.type is TokenType.ARRAY_START:
            value, index = _parse_array(tokens, index + 1)
            items.append(value)
            continue

        if token.type is TokenType.DICT_START:
            value, index = _parse_dict(tokens, index + 1)
            items.append(value)
            continue

        if token.type is TokenType.DICT_END:
            logger.debug("Ignoring stray '>>' at offset %d", token.offset)
            index += 1
            continue

        items.append(_scalar_operand(token))
        index += 1

    logger.debug("Array not closed before end of input")
    return Array(tuple(items)), index


def _parse_dict(tokens: Sequence[Token], index: int) -> Tuple[Dictionary, int]:
    """
    Parse dictionary entries from ``index`` (just past ``<<``) up to its ``>>``.

    Keys must be names; anything else in key position is skipped. A key
    left without a value when the input ends terminates the dictionary.
    """
    entries: List[Tuple[str, Operand]] = []
    key: Optional[str] = None
    n = len(tokens)

    while index < n:
        token = tokens[index]

        if token.type is TokenType.DICT_END:
            if key is not None:
                logger.debug("Dropping dictionary key /%s with no value", key)
            return Dictionary(tuple(entries)), index + 1

        if token.type is TokenType.OPERATOR:
            logger.debug(
                "Dictionary at offset %d closed early by operator %r",
                token.offset,
                token.value,
            )
            return Dictionary(tuple(entries)), index

        if token.type is TokenType.ARRAY_END:
            logger.debug("Ignoring stray ']' at offset %d", token.offset)
            index += 1
            continue

        if token.type is TokenType.ARRAY_START:
            value, index = _parse_array(tokens, index + 1)
        elif token.type is TokenType.DICT_START:
            value, index = _parse_dict(tokens, index + 1)
        else:
            value = _scalar_operand(token)
            index += 1

        if key is None:
            if isinstance(value, Name):
                key = value.value
            else:
                logger.debug("Skipping non-name dictionary key at offset %d", token.offset)
            continue

        entries.append((key, value))
        key = None

    if key is not None:
        logger.debug("Dictionary ended with dangling key /%s", key)
    return Dictionary(tuple(entries)), index


def parse_operators(tokens: Sequence[Token]) -> List[Operator]:
    """
    Group tokens into operators.

    Operands accumulate until an OPERATOR token, which emits
    ``Operator(name, operands)`` and starts a fresh operand list. Arrays and
    dictionaries are parsed recursively. Unbalanced brackets are consumed on a
    best-effort basis; this never raises.
    """
    operators: List[Operator] = []
    pending: List[Operand] = []
    index = 0
    n = len(tokens)

    while index < n:
        token = tokens[index]

        if token.type is TokenType.OPERATOR:
            operators.append(Operator(token.value, tuple(pending)))
            pending = []
            index += 1
        elif token.type is TokenType.ARRAY_START:
            value, index = _parse_array(tokens, index + 1)
            pending.append(value)
        elif token.type is TokenType.DICT_START:
            value, index = _parse_dict(tokens, index + 1)
            pending.append(value)
        elif token.type in (TokenType.ARRAY_END, TokenType.DICT_END):
            logger.debug("Ignoring stray %r at offset %d", token.type.value, token.offset)
            index += 1
        else:
            pending.append(_scalar_operand(token))
            index += 1

    if pending:
        logger.debug("Dropping %d trailing operand(s) with no operator", len(pending))

    return operators


def parse_content(data: Union[bytes, str]) -> List[Operator]:
    """Tokenize and parse operator text in one step."""
    return parse_operators(tokenize(data))


# ============================================================================
# Serializer
# ============================================================================


def format_number(value: Union[int, float]) -> str:
    """Canonical decimal text: no exponent, no trailing zeros."""
    if isinstance(value, bool):
        raise UnknownOperandError(value)
    if isinstance(value, int):
        return str(value)
    if not math.isfinite(value):
        raise ValueError(f"Cannot write non-finite number {value!r}")
    if value.is_integer():
        return str(int(value))
    text = repr(value)
    if "e" in text or "E" in text:
        text = f"{value:.10f}".rstrip("0").rstrip(".")
    return text


def serialize_operand(operand: Operand) -> str:
    if isinstance(operand, Number):
        if operand.raw is not None:
            return operand.raw
        return format_number(operand.value)
    if isinstance(operand, Name):
        return "/" + operand.value
    if isinstance(operand, String):
        return f"({operand.value})"
    if isinstance(operand, HexString):
        return f"<{operand.value}>"
    if isinstance(operand, Boolean):
        return "true" if operand.value else "false"
    if isinstance(operand, Null):
        return "null"
    if isinstance(operand, Array):
        return "[" + " ".join(serialize_operand(item) for item in operand.items) + "]"
    if isinstance(operand, Dictionary):
        body = " ".join(
            f"/{key} {serialize_operand(value)}" for key, value in operand.entries
        )
        return f"<<{body}>>"
    raise UnknownOperandError(operand)


def serialize_operator(operator: Operator) -> str:
    """Render one operator as a single line ending in a newline."""
    if operator.operands:
        operands = " ".join(serialize_operand(o) for o in operator.operands)
        return f"{operands} {operator.name}\n"
    return f"{operator.name}\n"


def serialize_operators(operators: Sequence[Operator]) -> bytes:
    text = "".join(serialize_operator(op) for op in operators)
    return text.encode(CONTENT_ENCODING)
