#!/usr/bin/env python3
# /// script
# requires-python = ">=3.9"
# dependencies = ["pikepdf", "pymupdf"]
# ///
"""
PDF MCID Tagger

Wraps every text-showing operator of every page in marked content with a
document-wide unique MCID, then builds the matching structure tree
(StructElem, MCR, ParentTree) so screen readers can follow the text.

Usage:
  uv run pdf_tagger.py document.pdf               # Tag PDF (writes document_tagged.pdf)
  uv run pdf_tagger.py document.pdf -o out.pdf    # Tag PDF to a chosen path
  uv run pdf_tagger.py --strict document.pdf      # Stop at the first unreadable stream
  uv run pdf_tagger.py --force document.pdf       # Re-tag a PDF that is already tagged
  uv run pdf_tagger.py --check file.pdf           # Check tagging status
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

import fitz
import pikepdf

from pdf_content import SegmentKind, UnknownOperandError, parse_content, segment
from pdf_structure import (
    DEFAULT_ROLE,
    StreamMcids,
    build_struct_tree,
    walk_page_tree,
    walk_struct_tree,
    write_struct_tree,
)
from pdf_tagging import (
    MARKED_CONTENT_TAG,
    McidCounter,
    StreamProcessingError,
    StreamResult,
    TaggingError,
    find_mcids,
    is_flate_encoded,
    normalize_filters,
    transform_stream,
)

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

KNOWN_ROLES = ["Document", "P", "Span", "Figure"]
CATEGORIES = [
    "Document Settings",
    "Structure Tree",
    "Marked Content",
    "Page Tree",
    "Text",
]
STATUS_MARKERS = {
    False: {"pass": "[PASS]", "warn": "[WARN]", "fail": "[FAIL]"},
    True: {"pass": "✓", "warn": "⚠", "fail": "✗"},
}
SUMMARY_ROWS = [
    ("pass", "Passed", "passed"),
    ("warn", "Warnings", "warned"),
    ("fail", "Failed", "failed"),
]


class AlreadyTaggedError(TaggingError):
    """The document already has a structure tree and re-tagging was not forced."""


# ============================================================================
# Results
# ============================================================================


@dataclass
class StreamFailure:
    page_number: int
    objgen: Tuple[int, int]
    error: str


@dataclass
class TaggingResult:
    """
    What ``tag_document`` did to a document.

    ``mcids`` is the number of MCIDs assigned, which is also the counter's
    final value. ``blocks`` holds one entry per stream that was rewritten.
    """

    pages: int = 0
    streams: int = 0
    mcids: int = 0
    blocks: List[StreamMcids] = field(default_factory=list)
    failures: List[StreamFailure] = field(default_factory=list)
    struct_tree_root: Any = None


# ============================================================================
# pikepdf helpers (content streams)
# ============================================================================


def stream_filters(stream) -> List[str]:
    """The /Filter names of a stream; /Filter may be a Name, an Array or absent."""
    filters = stream.get("/Filter")
    if isinstance(filters, pikepdf.Array):
        return normalize_filters([str(f) for f in filters])
    if filters is None:
        return []
    return normalize_filters(str(filters))


def iter_content_streams(page) -> Iterator[pikepdf.Stream]:
    """Yield a page's content streams in drawing order."""
    page_obj = getattr(page, "obj", page)
    contents = page_obj.get("/Contents")
    if contents is None:
        return

    if isinstance(contents, pikepdf.Array):
        for item in contents:
            if isinstance(item, pikepdf.Stream):
                yield item
    elif isinstance(contents, pikepdf.Stream):
        yield contents


def _filter_object(filters: List[str]):
    if len(filters) == 1:
        return pikepdf.Name(filters[0])
    return pikepdf.Array([pikepdf.Name(f) for f in filters])


def has_predictor(stream) -> bool:
    """True when any /DecodeParms entry asks for a PNG or TIFF predictor."""
    parms = stream.get("/DecodeParms")
    if parms is None:
        return False
    entries = parms if isinstance(parms, pikepdf.Array) else [parms]
    for entry in entries:
        if isinstance(entry, pikepdf.Dictionary) and int(entry.get("/Predictor", 1)) > 1:
            return True
    return False


def _write_back(stream, result: StreamResult, filters: List[str]) -> None:
    if result.flate_encoded:
        stream.write(result.data, filter=pikepdf.Name("/FlateDecode"))
    elif filters:
        stream.write(
            result.data,
            filter=_filter_object(filters),
            decode_parms=stream.get("/DecodeParms"),
        )
    else:
        stream.write(result.data)


def tag_stream(
    stream,
    counter: McidCounter,
    page_number: int = 0,
    strip_existing: bool = False,
    tag: str = MARKED_CONTENT_TAG,
) -> StreamResult:
    """
    Tag one content stream in place.

    The counter is only read here. Raises StreamProcessingError, carrying the
    page number and the stream's object id, when the stream cannot be read,
    decoded or written back, or when it is Flate-encoded with a predictor; the
    stream is left unchanged in that case.
    """
    objgen = stream.objgen
    filters = stream_filters(stream)

    try:
        if is_flate_encoded(filters) and has_predictor(stream):
            logger.warning(
                "Stream %d %d R uses a FlateDecode predictor; leaving it untagged",
                objgen[0],
                objgen[1],
            )
            raise StreamProcessingError("FlateDecode predictor not supported")
        raw = stream.read_raw_bytes()
        result = transform_stream(
            raw, filters, counter, strip_existing=strip_existing, tag=tag
        )
        _write_back(stream, result, filters)
    except UnknownOperandError:
        raise
    except Exception as e:
        raise StreamProcessingError(
            f"Page {page_number}, stream {objgen[0]} {objgen[1]} R: {e}",
            page_number=page_number,
            objgen=objgen,
        ) from e

    return result


# ============================================================================
# Document tagging
# ============================================================================


def tag_document(
    pdf,
    strict: bool = False,
    force: bool = False,
    role: str = DEFAULT_ROLE,
    tag: str = MARKED_CONTENT_TAG,
) -> TaggingResult:
    """
    Tag every content stream of an open pikepdf document and build its structure tree.

    Pages and their streams are processed in order with one MCID counter. A
    stream shared by several pages is rewritten once, for the first page that
    uses it. A stream that fails is left untouched and recorded in
    ``failures``; with ``strict`` the failure is raised instead.

    Args:
        pdf: Open pikepdf.Pdf, modified in place
        strict: Raise StreamProcessingError on the first failed stream
        force: Re-tag a document that already has a StructTreeRoot, stripping
            its existing marked content
        role: Structure type of the StructElem created for each stream
        tag: Marked-content tag written before each MCID

    Raises:
        AlreadyTaggedError: The document has a StructTreeRoot and force is False.
    """
    if "/StructTreeRoot" in pdf.Root:
        if not force:
            raise AlreadyTaggedError(
                "PDF already has a structure tree (use force to re-tag)"
            )
        logger.info("Replacing existing structure tree")

    result = TaggingResult(pages=len(pdf.pages))
    counter = McidCounter()
    seen: Set[Tuple[int, int]] = set()

    for page_number, page in enumerate(pdf.pages, start=1):
        if force and "/StructParents" in page.obj:
            del page.obj["/StructParents"]

        for stream in iter_content_streams(page):
            objgen = stream.objgen
            if objgen in seen:
                logger.debug(
                    "Stream %d %d R on page %d already tagged", *objgen, page_number
                )
                continue
            seen.add(objgen)

            try:
                stream_result = tag_stream(
                    stream,
                    counter,
                    page_number=page_number,
                    strip_existing=force,
                    tag=tag,
                )
            except StreamProcessingError as e:
                if strict:
                    raise
                logger.warning("Skipping stream: %s", e)
                result.failures.append(StreamFailure(page_number, objgen, str(e)))
                continue

            counter.advance_to(stream_result.next_mcid)
            result.streams += 1
            result.blocks.append(StreamMcids(page.obj, stream_result.mcids))

        # Tab order follows the structure tree
        page.obj.Tabs = pikepdf.Name("/S")

    plan = build_struct_tree(result.blocks, role=role)
    result.struct_tree_root = write_struct_tree(pdf, plan)
    result.mcids = counter.value

    logger.debug(
        "Tagged %d stream(s) on %d page(s) with %d MCID(s)",
        result.streams,
        result.pages,
        result.mcids,
    )
    return result


def tag_pdf(
    input_path: Path | str,
    output_path: Path | str,
    strict: bool = False,
    force: bool = False,
) -> TaggingResult:
    """Open a PDF, tag it and save the result to output_path."""
    with pikepdf.open(str(input_path), allow_overwriting_input=True) as pdf:
        result = tag_document(pdf, strict=strict, force=force)
        pdf.save(str(output_path))
    return result


# ============================================================================
# Tagging status check
# ============================================================================


def _content_stream_mcids(pdf) -> Dict[str, Any]:
    """MCIDs found in BDC operators of all content streams, in document order."""
    info: Dict[str, Any] = {"mcids": [], "unreadable": 0}
    seen: Set[Tuple[int, int]] = set()

    for page in pdf.pages:
        for stream in iter_content_streams(page):
            if stream.objgen in seen:
                continue
            seen.add(stream.objgen)

            try:
                data = stream.read_bytes()
            except pikepdf.PdfError as e:
                logger.warning("Cannot decode stream %d %d R: %s", *stream.objgen, e)
                info["unreadable"] += 1
                continue

            for seg in segment(data):
                if seg.kind is SegmentKind.OPERATORS:
                    info["mcids"].extend(find_mcids(parse_content(seg.data)))

    return info


def _parent_tree_size(parent_tree) -> int:
    """Number of (key, value) pairs in a number tree, following /Kids once each."""
    size = 0
    visited: Set[Tuple[int, int]] = set()
    pending = [parent_tree]

    while pending:
        node = pending.pop()
        if node.is_indirect:
            if node.objgen in visited:
                continue
            visited.add(node.objgen)

        nums = node.get("/Nums")
        if isinstance(nums, pikepdf.Array):
            size += len(nums) // 2
        kids = node.get("/Kids")
        if isinstance(kids, pikepdf.Array):
            pending.extend(k for k in kids if isinstance(k, pikepdf.Dictionary))

    return size


def gather_tagging_info(pdf_path: Path) -> Dict[str, Any]:
    """Gather tagging information from a PDF without printing."""
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    results: Dict[str, Any] = {
        "filename": pdf_path.name,
        "filepath": str(pdf_path),
        "timestamp": timestamp,
        "pages": 0,
        "checks": [],  # List of (status, category, message) tuples
        "tag_counts": {},
        "summary": {"passed": 0, "warned": 0, "failed": 0},
        "flags": {},
    }

    def add_check(status: str, category: str, message: str):
        results["checks"].append((status, category, message))
        if status == "pass":
            results["summary"]["passed"] += 1
        elif status == "warn":
            results["summary"]["warned"] += 1
        elif status == "fail":
            results["summary"]["failed"] += 1

    # Open with both libraries
    try:
        pdf = pikepdf.open(str(pdf_path))
    except Exception as e:
        results["error"] = str(e)
        return results

    try:
        doc = fitz.open(str(pdf_path))
    except Exception as e:
        pdf.close()
        results["error"] = str(e)
        return results

    results["pages"] = len(doc)

    # === Document Settings ===
    mark_info = pdf.Root.get("/MarkInfo")
    if mark_info and mark_info.get("/Marked"):
        add_check("pass", "Document Settings", "Tagged PDF: Yes")
        results["flags"]["tagged"] = True
    else:
        add_check("fail", "Document Settings", "Tagged PDF: No")
        results["flags"]["tagged"] = False

    # === Structure Tree ===
    struct_tree = pdf.Root.get("/StructTreeRoot")
    tree_mcids: List[int] = []
    results["flags"]["struct_tree"] = struct_tree is not None

    if struct_tree is None:
        add_check("fail", "Structure Tree", "No structure tree (StructTreeRoot)")
    else:
        walk = walk_struct_tree(struct_tree)
        tree_mcids = walk["mcids"]
        results["tag_counts"] = walk["roles"]

        if walk["elements"] > 0:
            add_check(
                "pass", "Structure Tree", f"Structure elements: {walk['elements']}"
            )
        else:
            add_check("warn", "Structure Tree", "Structure tree has no elements")

        add_check("info", "Structure Tree", f"Marked-content references: {len(tree_mcids)}")

        if walk["cycles"]:
            add_check(
                "fail",
                "Structure Tree",
                f"{walk['cycles']} reference(s) loop back into the structure tree",
            )

        parent_tree = struct_tree.get("/ParentTree")
        if parent_tree is None:
            add_check("fail", "Structure Tree", "No ParentTree")
        else:
            entries = _parent_tree_size(parent_tree)
            if entries == len(tree_mcids):
                add_check("pass", "Structure Tree", f"ParentTree entries: {entries}")
            else:
                add_check(
                    "warn",
                    "Structure Tree",
                    f"ParentTree has {entries} entries for {len(tree_mcids)} MCID(s)",
                )

    # === Marked Content ===
    content = _content_stream_mcids(pdf)
    mcids = content["mcids"]
    results["flags"]["mcids"] = bool(mcids)

    if content["unreadable"]:
        add_check(
            "warn",
            "Marked Content",
            f"{content['unreadable']} content stream(s) could not be decoded",
        )

    if not mcids:
        add_check("fail", "Marked Content", "No MCIDs in content streams")
    else:
        add_check("pass", "Marked Content", f"MCIDs in content streams: {len(mcids)}")

        duplicates = len(mcids) - len(set(mcids))
        if duplicates:
            add_check("fail", "Marked Content", f"{duplicates} duplicate MCID(s)")
        elif all(a < b for a, b in zip(mcids, mcids[1:])):
            add_check("pass", "Marked Content", "MCIDs are unique and increasing")
        else:
            add_check("warn", "Marked Content", "MCIDs are unique but out of order")

        if struct_tree is not None:
            unreferenced = set(mcids) - set(tree_mcids)
            if unreferenced:
                add_check(
                    "warn",
                    "Marked Content",
                    f"{len(unreferenced)} MCID(s) not referenced by the structure tree",
                )

    # === Page Tree ===
    page_tree = walk_page_tree(pdf)
    if page_tree["issues"]:
        for issue in page_tree["issues"]:
            add_check("fail", "Page Tree", issue)
    else:
        add_check("pass", "Page Tree", f"Page tree consistent ({page_tree['pages']} page(s))")

    # === Text ===
    text_pages = sum(1 for page in doc if page.get_text().strip())
    if text_pages:
        add_check(
            "pass",
            "Text",
            f"Extractable text on {text_pages} of {len(doc)} page(s)",
        )
    else:
        add_check("warn", "Text", "No extractable text (scanned or image-only PDF?)")

    doc.close()
    pdf.close()

    return results


def _check_line(status: str, message: str, use_symbols: bool) -> str:
    marker = STATUS_MARKERS[use_symbols].get(status)
    return f"  {marker} {message}" if marker else f"  {message}"


def _role_lines(tag_counts: Dict[str, int]) -> List[str]:
    """Known roles in their fixed order, then any others alphabetically."""
    ordered = [r for r in KNOWN_ROLES if r in tag_counts]
    ordered += sorted(r for r in tag_counts if r not in KNOWN_ROLES)
    return ["    Roles found:"] + [f"      - {r}: {tag_counts[r]}" for r in ordered]


def _verdict(summary: Dict[str, int]) -> str:
    if summary["failed"]:
        return "This PDF is not fully tagged."
    if summary["warned"]:
        return "Tagging is in place but some checks raised warnings."
    return "Every text operator is tagged and referenced from the structure tree."


def _summary_lines(summary: Dict[str, int], use_symbols: bool) -> List[str]:
    lines = ["=" * 50, "Summary:"]
    for status, label, key in SUMMARY_ROWS:
        marker = STATUS_MARKERS[True][status] + " " if use_symbols else ""
        lines.append(f"  {marker}{label + ':':<10}{summary[key]}")
    return lines + ["", _verdict(summary)]


def format_tagging_report(results: Dict[str, Any], use_symbols: bool = False) -> str:
    """
    Format tagging results as a string report.

    Args:
        results: Check results from gather_tagging_info()
        use_symbols: If True, use Unicode symbols (✓/⚠/✗). If False, use [PASS]/[WARN]/[FAIL].
    """
    if "error" in results:
        prefix = "✗ " if use_symbols else ""
        return f"{prefix}Error opening PDF: {results['error']}"

    lines = [
        f"Document: {results['filename']}",
        f"Checked: {results['timestamp']}",
        f"Pages: {results['pages']}",
        "",
    ]

    for category in CATEGORIES:
        checks = [(s, m) for s, c, m in results["checks"] if c == category]
        if not checks:
            continue
        lines.append(f"{category}:")
        lines.extend(_check_line(s, m, use_symbols) for s, m in checks)
        if category == "Structure Tree" and results.get("tag_counts"):
            lines.extend(_role_lines(results["tag_counts"]))
        lines.append("")

    lines.extend(_summary_lines(results["summary"], use_symbols))
    return "\n".join(lines)


def print_tagging_report(results: Dict[str, Any]) -> None:
    """Print tagging results with symbols to terminal."""
    print(format_tagging_report(results, use_symbols=True))


def save_check_report(results: Dict[str, Any], report_path: Path, label: str) -> None:
    """Save tagging check results to a file."""
    report = format_tagging_report(results)
    with open(report_path, "w") as f:
        f.write(f"# Tagging Report ({label})\n\n")
        f.write(f"```\n{report}\n```\n")


def check_tagging(pdf_path: Path) -> int:
    """Check PDF tagging status and report issues."""
    results = gather_tagging_info(pdf_path)

    if "error" in results:
        print(f"\n✗ Error opening PDF: {results['error']}")
        return 1

    print_tagging_report(results)

    return 0 if results["summary"]["failed"] == 0 else 1


# ============================================================================
# Command line
# ============================================================================


def process_pdf(
    input_path: Path,
    output_path: Optional[Path] = None,
    strict: bool = False,
    force: bool = False,
) -> int:
    """Tag a PDF file and verify the result."""
    if output_path is None:
        output_path = input_path.parent / f"{input_path.stem}_tagged.pdf"
    review_dir = output_path.parent / f"{input_path.stem}_review"

    print("Checking current tagging status...")
    pre_results = gather_tagging_info(input_path)
    if "error" in pre_results:
        print(f"Error opening PDF: {pre_results['error']}")
        return 1
    if pre_results["flags"].get("struct_tree"):
        print("  ✓ PDF already has a structure tree")
    print(f"  - Found {pre_results['summary']['failed']} issue(s) to fix")
    print()

    print("Tagging content streams...")
    try:
        result = tag_pdf(input_path, output_path, strict=strict, force=force)
    except AlreadyTaggedError as e:
        print(f"Error: {e}")
        print("Run again with --force to strip existing marked content and re-tag.")
        return 1
    except TaggingError as e:
        print(f"Error tagging document: {e}")
        return 1

    print(f"  - Tagged {result.streams} content stream(s) on {result.pages} page(s)")
    print(f"  - Assigned {result.mcids} MCID(s)")
    for failure in result.failures:
        print(
            f"  ⚠ Skipped stream {failure.objgen[0]} {failure.objgen[1]} R "
            f"on page {failure.page_number}"
        )
    print(f"Saving: {output_path}")

    print()
    print("Verifying tagging...")
    post_results = gather_tagging_info(output_path)

    review_dir.mkdir(exist_ok=True)
    pre_report_path = review_dir / "check_before.md"
    post_report_path = review_dir / "check_after.md"
    save_check_report(pre_results, pre_report_path, "Before Processing")
    save_check_report(post_results, post_report_path, "After Processing")

    pre_failed = pre_results["summary"]["failed"]
    post_failed = post_results["summary"]["failed"]
    post_warned = post_results["summary"]["warned"]
    post_passed = post_results["summary"]["passed"]

    print(f"  - Before: {pre_failed} failed")
    print(
        f"  - After:  {post_passed} passed, {post_warned} warnings, {post_failed} failed"
    )
    print()

    print(f"Done! Tagged PDF saved to:\n  {output_path}")
    print()
    print("Tagging reports saved to:")
    print(f"  - {pre_report_path}")
    print(f"  - {post_report_path}")

    return 0


def main() -> int:
    """Main entry point."""
    print("\n=== PDF MCID Tagger ===\n")

    # Parse arguments
    args = sys.argv[1:]
    check_mode = False
    force_mode = False
    strict_mode = False
    verbose = False
    input_path = None
    output_path = None

    i = 0
    while i < len(args):
        arg = args[i]
        if arg in ("--check", "-c"):
            check_mode = True
        elif arg in ("--force", "-f"):
            force_mode = True
        elif arg in ("--strict", "-s"):
            strict_mode = True
        elif arg in ("--verbose", "-v"):
            verbose = True
        elif arg in ("--output", "-o"):
            i += 1
            if i >= len(args):
                print("Error: --output needs a file name")
                return 1
            output_path = args[i]
        elif not arg.startswith("-"):
            input_path = arg
        i += 1

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not input_path:
        print(__doc__.strip())
        return 1

    input_file = Path(input_path)
    if not input_file.exists():
        print(f"Error: File not found: {input_path}")
        return 1
    if input_file.suffix.lower() != ".pdf":
        print(f"Error: Unsupported file type: {input_file.suffix}")
        return 1

    try:
        if check_mode:
            return check_tagging(input_file)

        return process_pdf(
            input_file,
            output_path=Path(output_path) if output_path else None,
            strict=strict_mode,
            force=force_mode,
        )
    except Exception as e:
        print(f"\nError: {e}\n")
        return 1


if __name__ == "__main__":
    sys.exit(main())
