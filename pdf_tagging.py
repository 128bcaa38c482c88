"""
Marked-content tagging of page content streams.

Every text-showing operator inside a BT...ET text object is bracketed with

    /Span <</MCID n>> BDC
    ...the text operator...
    EMC

where ``n`` is unique and strictly increasing across the whole document.
Callers thread the MCID through every stream by value: each stream starts
from the ``next_mcid`` of the stream before it.
"""

from __future__ import annotations

import logging
import zlib
from dataclasses import dataclass, field
from typing import Callable, List, Sequence, Tuple

from pdf_content import (
    ContentStreamSegment,
    Dictionary,
    Name,
    Number,
    Operator,
    SegmentKind,
    parse_content,
    segment,
    serialize_operators,
)

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

BEGIN_TEXT = "BT"
END_TEXT = "ET"

# Tj, TJ, ' (move to next line and show) and " (set spacing, next line, show)
TEXT_SHOWING_OPERATORS = frozenset({"Tj", "TJ", "'", '"'})

MARKED_CONTENT_OPERATORS = frozenset({"BDC", "BMC", "EMC"})
MARKED_CONTENT_TAG = "Span"

SUPPORTED_FILTER = "/FlateDecode"

Stage = Callable[[bytes], bytes]


class TaggingError(Exception):
    """Base class for errors raised while tagging a document."""


class StreamProcessingError(TaggingError):
    """A single content stream could not be decoded or rewritten."""

    def __init__(self, message: str, page_number: int = 0, objgen: Tuple[int, int] = (0, 0)):
        super().__init__(message)
        self.page_number = page_number
        self.objgen = objgen


# ============================================================================
# Text blocks
# ============================================================================


@dataclass
class TextBlock:
    """
    The operators of one text object, from BT through its ET inclusive.

    ``start`` is the index of the BT operator in the sequence the block was
    extracted from.
    """

    start: int
    operators: List[Operator] = field(default_factory=list)

    @property
    def end(self) -> int:
        return self.start + len(self.operators)


def extract_text_blocks(operators: Sequence[Operator]) -> List[TextBlock]:
    """
    Group operators into BT...ET text blocks.

    Operators outside any text object are not part of a block. A BT with no
    ET before the end of the sequence, or before the next BT, is dropped: it
    is not emitted as a block and is never closed on the caller's behalf.
    """
    blocks: List[TextBlock] = []
    current: List[Operator] = []
    start = -1

    for index, op in enumerate(operators):
        if op.name == BEGIN_TEXT:
            if start != -1:
                logger.warning(
                    "Text object at operator %d has no ET before the next BT; "
                    "leaving it untagged",
                    start,
                )
            current = [op]
            start = index
        elif op.name == END_TEXT:
            if start != -1:
                current.append(op)
                blocks.append(TextBlock(start, current))
                current = []
                start = -1
        elif start != -1:
            current.append(op)

    if start != -1:
        logger.warning(
            "Text object at operator %d is never closed; leaving it untagged", start
        )

    return blocks


# ============================================================================
# Tag injection
# ============================================================================


def begin_marked_content(mcid: int, tag: str = MARKED_CONTENT_TAG) -> Operator:
    return Operator("BDC", (Name(tag), Dictionary((("MCID", Number(mcid)),))))


def end_marked_content() -> Operator:
    return Operator("EMC")


def inject_mcids(
    block: Sequence[Operator], start_mcid: int, tag: str = MARKED_CONTENT_TAG
) -> Tuple[List[Operator], int]:
    """
    Wrap each text-showing operator of a block in BDC/EMC.

    Returns the rewritten operators and the next unused MCID.
    """
    out: List[Operator] = []
    mcid = start_mcid

    for op in block:
        if op.name in TEXT_SHOWING_OPERATORS:
            out.append(begin_marked_content(mcid, tag))
            out.append(op)
            out.append(end_marked_content())
            mcid += 1
        else:
            out.append(op)

    return out, mcid


def strip_marked_content(operators: Sequence[Operator]) -> List[Operator]:
    """Drop existing BDC/BMC/EMC so re-tagging never nests marked content."""
    return [op for op in operators if op.name not in MARKED_CONTENT_OPERATORS]


def find_mcids(operators: Sequence[Operator]) -> List[int]:
    """MCIDs carried by BDC property dictionaries, in stream order."""
    mcids = []
    for op in operators:
        if op.name != "BDC":
            continue
        for operand in op.operands:
            if isinstance(operand, Dictionary):
                mcid = operand.get("MCID")
                if isinstance(mcid, Number) and isinstance(mcid.value, int):
                    mcids.append(mcid.value)
    return mcids


def tag_operators(
    operators: Sequence[Operator], start_mcid: int, tag: str = MARKED_CONTENT_TAG
) -> Tuple[List[Operator], int]:
    """
    Tag every text block in an operator sequence.

    Operators outside text blocks, including those of an unterminated text
    object, are kept in place unchanged.
    """
    out: List[Operator] = []
    mcid = start_mcid
    cursor = 0

    for block in extract_text_blocks(operators):
        out.extend(operators[cursor : block.start])
        tagged, mcid = inject_mcids(block.operators, mcid, tag)
        out.extend(tagged)
        cursor = block.end

    out.extend(operators[cursor:])
    return out, mcid


@dataclass
class RewriteResult:
    data: bytes
    mcids: List[int]
    next_mcid: int


def _rewrite_segment(
    seg: ContentStreamSegment, start_mcid: int, strip_existing: bool, tag: str
) -> Tuple[bytes, int]:
    operators = parse_content(seg.data)
    if not operators:
        # Whitespace or comments only
        return seg.data, start_mcid

    if strip_existing:
        operators = strip_marked_content(operators)

    tagged, next_mcid = tag_operators(operators, start_mcid, tag)
    return serialize_operators(tagged) or b"\n", next_mcid


def rewrite_content(
    data: bytes,
    start_mcid: int,
    strip_existing: bool = False,
    tag: str = MARKED_CONTENT_TAG,
) -> RewriteResult:
    """
    Tag the decoded bytes of one content stream.

    Inline-image segments are copied byte for byte; every operator segment is
    tokenized, parsed, tagged and serialized again.
    """
    chunks: List[bytes] = []
    mcid = start_mcid
    after_binary = False

    for seg in segment(data):
        if seg.kind is SegmentKind.BINARY:
            chunks.append(seg.data)
            after_binary = True
            continue

        text, mcid = _rewrite_segment(seg, mcid, strip_existing, tag)
        if after_binary and text[:1] not in (b"\n", b"\r", b" "):
            # EI must stay separated from the next token
            text = b"\n" + text
        chunks.append(text)
        after_binary = False

    return RewriteResult(b"".join(chunks), list(range(start_mcid, mcid)), mcid)


# ============================================================================
# MCID counter
# ============================================================================


class McidCounter:
    """
    The document-wide MCID counter.

    One instance belongs to the code processing a document. Stages receive
    ``value`` and report back the next unused MCID; only the owner moves the
    counter, and never backwards.
    """

    def __init__(self, start: int = 0):
        if start < 0:
            raise ValueError(f"MCIDs must be non-negative, got {start}")
        self._value = start

    @property
    def value(self) -> int:
        return self._value

    def advance_to(self, next_mcid: int) -> None:
        if next_mcid < self._value:
            raise ValueError(
                f"MCID counter cannot move backwards ({self._value} -> {next_mcid})"
            )
        self._value = next_mcid


# ============================================================================
# Stream-transform pipeline
# ============================================================================


def inflate(data: bytes) -> bytes:
    decompressor = zlib.decompressobj()
    try:
        return decompressor.decompress(data) + decompressor.flush()
    except zlib.error as e:
        raise StreamProcessingError(f"Could not inflate stream: {e}") from e


def deflate(data: bytes) -> bytes:
    return zlib.compress(data)


def _filter_name(name) -> str:
    return "/" + str(name).lstrip("/")


def normalize_filters(filters) -> List[str]:
    """
    A stream's /Filter entry as a list of names.

    Accepts None (no filter), a single name, or a list/tuple of names.
    """
    if filters is None:
        return []
    if isinstance(filters, (list, tuple)):
        return [_filter_name(f) for f in filters]
    return [_filter_name(filters)]


def is_flate_encoded(filters: Sequence[str]) -> bool:
    return SUPPORTED_FILTER in (_filter_name(f) for f in filters)


class McidInjectStage:
    """
    Pipeline stage that tags one decoded content stream.

    Numbering starts at the counter's current value when the stage runs.
    Afterwards ``mcids`` holds the identifiers it assigned and ``next_mcid``
    the first one left unused. The stage never moves the counter itself; the
    owner advances it once the whole pipeline has succeeded.
    """

    def __init__(
        self,
        counter: McidCounter,
        strip_existing: bool = False,
        tag: str = MARKED_CONTENT_TAG,
    ):
        self.counter = counter
        self.strip_existing = strip_existing
        self.tag = tag
        self.mcids: List[int] = []
        self.next_mcid = counter.value

    def __call__(self, data: bytes) -> bytes:
        result = rewrite_content(
            data, self.counter.value, strip_existing=self.strip_existing, tag=self.tag
        )
        self.mcids = result.mcids
        self.next_mcid = result.next_mcid
        return result.data


def build_pipeline(filters: Sequence[str], inject: Stage) -> List[Stage]:
    """
    Choose the stages for a stream with the given /Filter names.

    FlateDecode streams are inflated, tagged and deflated again. Any other
    stream is tagged as is, which corrupts it if another filter actually
    encodes it.
    """
    if is_flate_encoded(filters):
        return [inflate, inject, deflate]

    if filters:
        logger.warning(
            "Unsupported stream filter(s) %s; tagging the encoded bytes",
            ", ".join(_filter_name(f) for f in filters),
        )
    return [inject]


def run_pipeline(stages: Sequence[Stage], data: bytes) -> bytes:
    for stage in stages:
        data = stage(data)
    return data


@dataclass
class StreamResult:
    data: bytes
    mcids: List[int]
    next_mcid: int
    flate_encoded: bool


def transform_stream(
    data: bytes,
    filters: Sequence[str],
    counter: McidCounter,
    strip_existing: bool = False,
    tag: str = MARKED_CONTENT_TAG,
) -> StreamResult:
    """
    Run one stream's raw bytes through its pipeline.

    ``counter`` is read, not advanced; pass ``result.next_mcid`` to
    ``counter.advance_to`` after writing the stream back.
    """
    inject = McidInjectStage(counter, strip_existing=strip_existing, tag=tag)
    output = run_pipeline(build_pipeline(filters, inject), data)
    return StreamResult(output, inject.mcids, inject.next_mcid, is_flate_encoded(filters))
