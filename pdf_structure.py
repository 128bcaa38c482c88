"""
Logical structure tree for tagged content.

``build_struct_tree`` turns the MCIDs assigned to each content stream into a
plain plan (one StructElem per stream, one MCR per MCID, one ParentTree entry
per MCID). ``write_struct_tree`` registers that plan in a pikepdf document.
The walkers at the bottom read structure back out of a document and refuse
to re-enter any indirect object they have already visited.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Set, Tuple

import pikepdf

# ============================================================================
# Constants
# ============================================================================

DEFAULT_ROLE = "P"

# Standard structure types (PDF 1.7, section 14.8.4); these need no RoleMap entry
STANDARD_ROLES = frozenset(
    {
        "Document", "Part", "Art", "Sect", "Div", "BlockQuote", "Caption",
        "TOC", "TOCI", "Index", "NonStruct", "Private",
        "P", "H", "H1", "H2", "H3", "H4", "H5", "H6",
        "L", "LI", "Lbl", "LBody",
        "Table", "TR", "TH", "TD", "THead", "TBody", "TFoot",
        "Span", "Quote", "Note", "Reference", "BibEntry", "Code", "Link", "Annot",
        "Ruby", "RB", "RT", "RP", "Warichu", "WT", "WP",
        "Figure", "Formula", "Form",
    }
)  # fmt: skip


# ============================================================================
# Structure plan
# ============================================================================


class StreamMcids(NamedTuple):
    """The MCIDs assigned in one content stream and the page that owns it."""

    page: Any
    mcids: List[int]


@dataclass
class McrPlan:
    page: Any
    mcid: int


@dataclass
class StructElemPlan:
    role: str
    page: Any
    children: List[McrPlan] = field(default_factory=list)


@dataclass
class StructTreePlan:
    """
    Everything the document needs for its structure tree.

    ``parent_tree`` pairs each MCID with the index of its element in
    ``elements``, in the order the MCIDs were assigned.
    """

    elements: List[StructElemPlan] = field(default_factory=list)
    parent_tree: List[Tuple[int, int]] = field(default_factory=list)
    role_map: Dict[str, str] = field(default_factory=dict)


def build_struct_tree(
    blocks: Iterable[Tuple[Any, List[int]]], role: str = DEFAULT_ROLE
) -> StructTreePlan:
    """
    Plan one StructElem per processed content stream.

    Args:
        blocks: ``(page, mcids)`` pairs in processing order, one per stream.
        role: Structure type given to every element.
    """
    plan = StructTreePlan()

    for page, mcids in blocks:
        elem = StructElemPlan(role, page, [McrPlan(page, mcid) for mcid in mcids])
        index = len(plan.elements)
        plan.elements.append(elem)
        plan.parent_tree.extend((mcid, index) for mcid in mcids)

    if role not in STANDARD_ROLES:
        plan.role_map[role] = DEFAULT_ROLE

    return plan


def write_struct_tree(pdf, plan: StructTreePlan):
    """
    Register a structure plan in a pikepdf document and attach it to the catalog.

    Returns the StructTreeRoot indirect object.
    """
    struct_tree_root = pdf.make_indirect(
        pikepdf.Dictionary({"/Type": pikepdf.Name("/StructTreeRoot")})
    )

    elem_refs = []
    for elem in plan.elements:
        mcrs = [
            pdf.make_indirect(
                pikepdf.Dictionary(
                    {
                        "/Type": pikepdf.Name("/MCR"),
                        "/Pg": mcr.page,
                        "/MCID": mcr.mcid,
                    }
                )
            )
            for mcr in elem.children
        ]
        struct_elem = pdf.make_indirect(
            pikepdf.Dictionary(
                {
                    "/Type": pikepdf.Name("/StructElem"),
                    "/S": pikepdf.Name(f"/{elem.role}"),
                    "/P": struct_tree_root,
                    "/Pg": elem.page,
                    "/K": pikepdf.Array(mcrs),
                }
            )
        )
        elem_refs.append(struct_elem)

    nums = []
    for mcid, index in plan.parent_tree:
        nums.append(mcid)
        nums.append(elem_refs[index])
    parent_tree = pdf.make_indirect(pikepdf.Dictionary({"/Nums": pikepdf.Array(nums)}))

    role_map = pdf.make_indirect(
        pikepdf.Dictionary(
            {f"/{role}": pikepdf.Name(f"/{target}") for role, target in plan.role_map.items()}
        )
    )

    struct_tree_root["/K"] = pikepdf.Array(elem_refs)
    struct_tree_root["/ParentTree"] = parent_tree
    struct_tree_root["/ParentTreeNextKey"] = len(plan.parent_tree)
    struct_tree_root["/RoleMap"] = role_map

    pdf.Root.StructTreeRoot = struct_tree_root
    pdf.Root.MarkInfo = pikepdf.Dictionary({"/Marked": True})

    return struct_tree_root


# ============================================================================
# Guarded walkers
# ============================================================================


def _visit_key(obj) -> Optional[Tuple[int, int]]:
    """Identity of an indirect object; direct objects cannot form cycles."""
    try:
        return obj.objgen if obj.is_indirect else None
    except AttributeError:
        return None


def walk_struct_tree(struct_tree_root) -> Dict[str, Any]:
    """
    Count structure elements and collect MCIDs below a StructTreeRoot.

    Returns dict with 'elements', 'roles' (role -> count), 'mcids' (in tree
    order) and 'cycles' (references that pointed back at a visited node).
    """
    result: Dict[str, Any] = {"elements": 0, "roles": {}, "mcids": [], "cycles": 0}
    visited: Set[Tuple[int, int]] = set()

    def visit(node):
        if isinstance(node, int) and not isinstance(node, bool):
            result["mcids"].append(node)
            return
        if not isinstance(node, pikepdf.Dictionary):
            return

        key = _visit_key(node)
        if key is not None:
            if key in visited:
                result["cycles"] += 1
                return
            visited.add(key)

        mcid = node.get("/MCID")
        if mcid is not None:
            result["mcids"].append(int(mcid))
            return

        role = node.get("/S")
        if role is not None:
            tag = str(role).lstrip("/")
            result["elements"] += 1
            result["roles"][tag] = result["roles"].get(tag, 0) + 1

        kids = node.get("/K")
        if kids is None:
            return
        if isinstance(kids, pikepdf.Array):
            for kid in kids:
                visit(kid)
        else:
            visit(kids)

    kids = struct_tree_root.get("/K")
    if isinstance(kids, pikepdf.Array):
        for kid in kids:
            visit(kid)
    elif kids is not None:
        visit(kids)

    return result


def walk_page_tree(pdf) -> Dict[str, Any]:
    """
    Walk the /Pages tree from the catalog and validate each node.

    Pages nodes need /Kids and /Count, Page nodes need /Parent. A kid that
    points back at a node already on the walk is reported and not followed.
    Returns dict with 'pages' (leaf count) and 'issues' (list of messages).
    """
    result: Dict[str, Any] = {"pages": 0, "issues": []}
    issues = result["issues"]
    visited: Set[Tuple[int, int]] = set()

    def visit(node, depth: int):
        key = _visit_key(node)
        label = f"{key[0]} {key[1]} R" if key else "direct node"
        if key is not None:
            if key in visited:
                issues.append(f"Node {label} is referenced more than once")
                return
            visited.add(key)

        node_type = str(node.get("/Type", "")).lstrip("/")
        if not node_type:
            issues.append(f"Node {label} has no /Type")
            return

        if node_type == "Page":
            result["pages"] += 1
            if depth > 0 and node.get("/Parent") is None:
                issues.append(f"Page {label} has no /Parent")
            return

        if node_type != "Pages":
            issues.append(f"Node {label} has invalid /Type /{node_type}")
            return

        kids = node.get("/Kids")
        if node.get("/Count") is None:
            issues.append(f"Pages node {label} has no /Count")
        if not isinstance(kids, pikepdf.Array):
            issues.append(f"Pages node {label} has no /Kids array")
            return

        for kid in kids:
            if not isinstance(kid, pikepdf.Dictionary):
                issues.append(f"Pages node {label} has a kid that is not a dictionary")
                continue
            visit(kid, depth + 1)

    pages = pdf.Root.get("/Pages")
    if pages is None:
        issues.append("Catalog has no /Pages")
    else:
        visit(pages, 0)

    return result
