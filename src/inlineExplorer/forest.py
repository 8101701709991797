"""Inline forests: which calls were inlined, for which root, to what depth.

A forest is parsed from the JIT's XML inline dump (``JitInlineDumpXml``)::

    <InlineForest>
      <Methods>
        <Method>
          <Token>100663322</Token>
          <Hash>3735928559</Hash>
          <InlineCount>2</InlineCount>
          <CallCount>1000</CallCount>
          <Inlines>
            <Inline>
              <MethodToken>100663323</MethodToken>
              <Offset>5</Offset>
              <Reason>profitable inline</Reason>
              <Data><ILSize>12</ILSize>...</Data>
              <Inlines>...</Inlines>
            </Inline>
          </Inlines>
        </Method>
      </Methods>
    </InlineForest>

Trees and decisions are immutable values. Growing or shrinking a tree
always yields a new ``InlineTree``.
"""

import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional, Tuple

from .errors import AmbiguousRoot, MalformedForest, StructuralError

# Elements of <Inline> / <Method> that are structure rather than features
_INLINE_STRUCTURE = {"Inlines", "MethodToken", "Hash", "Offset", "Reason", "Data"}
_METHOD_FIELDS = {
    "InlineCount": "inline_count",
    "HotSize": "hot_size",
    "ColdSize": "cold_size",
    "JitTime": "jit_time",
    "SizeEstimate": "size_estimate",
    "TimeEstimate": "time_estimate",
    "CallCount": "call_count",
}

_FOREST_RE = re.compile(r"<InlineForest\b.*?</InlineForest>", re.DOTALL)


# ---------------------------------------------------------------------------
# Values
# ---------------------------------------------------------------------------

@dataclass(frozen=True, order=True)
class MethodId:
    """Method identity as reported by the JIT: metadata token plus IL hash."""

    token: int
    hash: int = 0

    def __str__(self):
        return f"{self.token:08x}:{self.hash:08x}"

    @classmethod
    def parse(cls, text: str) -> "MethodId":
        """Parse ``token[:hash]`` written in hex, as produced by ``str()``."""
        token, _, hash_ = text.strip().partition(":")
        return cls(int(token, 16), int(hash_, 16) if hash_ else 0)


Step = Tuple[int, int]  # (IL offset of the call site, callee token)


@dataclass(frozen=True)
class InlineDecision:
    """One inline edge, identified by its path of call sites from the root.

    ``attributes`` is the observational feature bag the JIT reported for
    the call site; it does not take part in equality.
    """

    path: Tuple[Step, ...]
    callee_hash: int = 0
    caller: Optional[MethodId] = field(default=None, compare=False)
    reason: str = field(default="", compare=False)
    attributes: Dict[str, object] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self):
        if not self.path:
            raise StructuralError("An inline decision needs at least one call site")

    @property
    def depth(self) -> int:
        return len(self.path)

    @property
    def offset(self) -> int:
        return self.path[-1][0]

    @property
    def callee(self) -> MethodId:
        return MethodId(self.path[-1][1], self.callee_hash)

    @property
    def parent_path(self) -> Tuple[Step, ...]:
        return self.path[:-1]

    @property
    def context(self) -> Tuple[Optional[MethodId], int, MethodId]:
        """Call site this decision is made at, independent of the root."""
        return (self.caller, self.offset, self.callee)

    def sort_key(self):
        # Breadth-first, call-site order within a level
        return (self.depth, self.path)

    def __str__(self):
        return "/".join(f"{off}->{tok:08x}" for off, tok in self.path)


@dataclass(frozen=True)
class InlineTree:
    """The set of inline decisions in effect for one root method.

    Every decision's ancestors must also be in the tree.
    """

    root: MethodId
    decisions: FrozenSet[InlineDecision] = frozenset()

    def __post_init__(self):
        object.__setattr__(self, "decisions", frozenset(self.decisions))
        paths = {d.path for d in self.decisions}
        if len(paths) != len(self.decisions):
            raise StructuralError(f"Duplicate call-site path in tree for {self.root}")
        for d in self.decisions:
            if d.depth > 1 and d.parent_path not in paths:
                raise StructuralError(
                    f"Decision {d} for {self.root} is missing its parent decision"
                )

    def __len__(self):
        return len(self.decisions)

    def __contains__(self, decision):
        return decision in self.decisions

    def __iter__(self) -> Iterator[InlineDecision]:
        return iter(self.ordered())

    def ordered(self) -> List[InlineDecision]:
        """Decisions in breadth-first, call-site order."""
        return sorted(self.decisions, key=InlineDecision.sort_key)

    def find(self, path) -> Optional[InlineDecision]:
        path = tuple(tuple(step) for step in path)
        for d in self.decisions:
            if d.path == path:
                return d
        return None

    def children(self, decision: Optional[InlineDecision] = None) -> List[InlineDecision]:
        """Direct children of *decision*, or the depth-1 decisions if None."""
        parent_path = decision.path if decision is not None else ()
        return sorted(
            (d for d in self.decisions if d.parent_path == parent_path),
            key=InlineDecision.sort_key,
        )

    def is_leaf(self, decision: InlineDecision) -> bool:
        return decision in self.decisions and not any(
            d.parent_path == decision.path for d in self.decisions
        )

    def leaves(self) -> List[InlineDecision]:
        parent_paths = {d.parent_path for d in self.decisions}
        return sorted(
            (d for d in self.decisions if d.path not in parent_paths),
            key=InlineDecision.sort_key,
        )

    def with_decision(self, decision: InlineDecision) -> "InlineTree":
        if decision in self.decisions:
            raise StructuralError(f"Decision {decision} is already in the tree")
        return InlineTree(self.root, self.decisions | {decision})

    def without(self, decision: InlineDecision) -> "InlineTree":
        """Remove a leaf decision. Removing an inner node is an error."""
        if decision not in self.decisions:
            raise StructuralError(f"Decision {decision} is not in the tree")
        if not self.is_leaf(decision):
            raise StructuralError(
                f"Decision {decision} has inlined descendants and cannot be removed"
            )
        return InlineTree(self.root, self.decisions - {decision})

    def empty(self) -> "InlineTree":
        return InlineTree(self.root)


@dataclass
class MethodRecord:
    """Per-root statistics the JIT reported alongside the tree."""

    root: MethodId
    inline_count: int = 0
    hot_size: int = 0
    cold_size: int = 0
    jit_time: int = 0
    size_estimate: int = 0
    time_estimate: int = 0
    call_count: int = 0


@dataclass
class InlineForest:
    """Inline trees for every unambiguous root method of one run.

    Roots whose identity occurs more than once in the dump are listed in
    ``ambiguous`` and have no tree.
    """

    trees: Dict[MethodId, InlineTree] = field(default_factory=dict)
    methods: Dict[MethodId, MethodRecord] = field(default_factory=dict)
    ambiguous: FrozenSet[MethodId] = frozenset()

    def __len__(self):
        return len(self.trees)

    def __contains__(self, root):
        return root in self.trees

    def roots(self) -> List[MethodId]:
        return sorted(self.trees)

    def tree(self, root: MethodId) -> InlineTree:
        if root in self.ambiguous:
            raise AmbiguousRoot(root)
        return self.trees[root]

    def inline_count(self) -> int:
        return sum(len(t) for t in self.trees.values())

    def roots_by_call_count(self, call_counts: Optional[Dict[MethodId, int]] = None) -> List[MethodId]:
        """Roots ordered by descending call count, ties broken by identity."""
        def calls(root):
            if call_counts and root in call_counts:
                return call_counts[root]
            return self.methods[root].call_count if root in self.methods else 0
        return sorted(self.trees, key=lambda r: (-calls(r), r))


# ---------------------------------------------------------------------------
# Relations
# ---------------------------------------------------------------------------

def is_subtree_of(x: InlineTree, y: InlineTree) -> bool:
    return x.root == y.root and x.decisions <= y.decisions


def is_proper_parent_of(x: InlineTree, y: InlineTree) -> bool:
    return is_subtree_of(x, y) and len(y) == len(x) + 1


def proper_parents(tree: InlineTree) -> Iterator[InlineTree]:
    """Yield every tree obtained by removing exactly one leaf decision."""
    for leaf in tree.leaves():
        yield tree.without(leaf)


def extract_subtree(forest: InlineForest, root: MethodId, decision_set: Iterable) -> InlineTree:
    """Restrict the root's full tree to *decision_set*.

    *decision_set* holds ``InlineDecision`` values or call-site paths. Every
    decision must belong to the full tree and bring its ancestors along.
    """
    full = forest.tree(root)
    chosen = set()
    for item in decision_set:
        path = item.path if isinstance(item, InlineDecision) else tuple(tuple(s) for s in item)
        decision = full.find(path)
        if decision is None:
            raise StructuralError(f"Call site {path} is not part of the tree for {root}")
        chosen.add(decision)
    return InlineTree(root, frozenset(chosen))


# ---------------------------------------------------------------------------
# XML dump format
# ---------------------------------------------------------------------------

def _int(text: Optional[str], what: str) -> int:
    if text is None or not text.strip():
        raise MalformedForest(f"Missing value for {what}")
    text = text.strip()
    try:
        return int(text, 16) if text.lower().startswith("0x") else int(text)
    except ValueError:
        raise MalformedForest(f"Bad integer for {what}: {text!r}") from None


def _scalar(text: Optional[str]):
    text = (text or "").strip()
    for conv in (int, float):
        try:
            return conv(text)
        except ValueError:
            pass
    return text


def _attributes(elem) -> Dict[str, object]:
    attrs = {}
    for child in elem:
        if child.tag not in _INLINE_STRUCTURE and len(child) == 0:
            attrs[child.tag] = _scalar(child.text)
    data = elem.find("Data")
    if data is not None:
        for child in data:
            attrs[child.tag] = _scalar(child.text)
    return attrs


def _parse_inlines(parent_elem, caller: MethodId, prefix, out: List[InlineDecision]):
    inlines = parent_elem.find("Inlines")
    if inlines is None:
        return
    for elem in inlines.findall("Inline"):
        token = _int(elem.findtext("MethodToken"), "Inline/MethodToken")
        offset = _int(elem.findtext("Offset"), "Inline/Offset")
        hash_text = elem.findtext("Hash")
        callee_hash = _int(hash_text, "Inline/Hash") if hash_text else 0
        decision = InlineDecision(
            path=prefix + ((offset, token),),
            callee_hash=callee_hash,
            caller=caller,
            reason=(elem.findtext("Reason") or "").strip(),
            attributes=_attributes(elem),
        )
        out.append(decision)
        _parse_inlines(elem, decision.callee, decision.path, out)


def parse_forest(text: str) -> InlineForest:
    """Parse an inline forest from a JIT log that contains an XML dump.

    Roots that appear more than once, or whose trees repeat a call site,
    are excluded and reported through ``InlineForest.ambiguous``.
    """
    match = _FOREST_RE.search(text)
    if match is None:
        raise MalformedForest("No <InlineForest> element found")
    try:
        doc = ET.fromstring(match.group(0))
    except ET.ParseError as e:
        raise MalformedForest(f"Inline forest XML is malformed: {e}") from e

    methods_elem = doc.find("Methods")
    method_elems = methods_elem.findall("Method") if methods_elem is not None else []

    seen: Dict[MethodId, int] = {}
    parsed = []
    for elem in method_elems:
        root = MethodId(
            _int(elem.findtext("Token"), "Method/Token"),
            _int(elem.findtext("Hash"), "Method/Hash") if elem.findtext("Hash") else 0,
        )
        seen[root] = seen.get(root, 0) + 1
        record = MethodRecord(root)
        for tag, attr in _METHOD_FIELDS.items():
            value = elem.findtext(tag)
            if value is not None and value.strip():
                setattr(record, attr, _int(value, f"Method/{tag}"))
        decisions: List[InlineDecision] = []
        _parse_inlines(elem, root, (), decisions)
        parsed.append((root, record, decisions))

    ambiguous = {root for root, count in seen.items() if count > 1}
    forest = InlineForest()
    for root, record, decisions in parsed:
        if root in ambiguous:
            continue
        if len({d.path for d in decisions}) != len(decisions):
            ambiguous.add(root)
            continue
        try:
            forest.trees[root] = InlineTree(root, frozenset(decisions))
        except StructuralError:
            ambiguous.add(root)
            continue
        forest.methods[root] = record
    forest.ambiguous = frozenset(ambiguous)
    return forest


def load_forest(path) -> InlineForest:
    try:
        with open(path, errors="replace") as f:
            return parse_forest(f.read())
    except OSError as e:
        raise MalformedForest(f"Cannot read inline forest {path}: {e}") from e


def dump_forest(trees: Iterable[InlineTree]) -> str:
    """Serialize trees to the dump format, in a canonical order."""
    doc = ET.Element("InlineForest")
    methods = ET.SubElement(doc, "Methods")
    for tree in sorted(trees, key=lambda t: t.root):
        method = ET.SubElement(methods, "Method")
        ET.SubElement(method, "Token").text = str(tree.root.token)
        ET.SubElement(method, "Hash").text = str(tree.root.hash)
        ET.SubElement(method, "InlineCount").text = str(len(tree))
        _dump_inlines(method, tree, None)
    ET.indent(doc)
    return ET.tostring(doc, encoding="unicode") + "\n"


def _dump_inlines(parent_elem, tree: InlineTree, decision: Optional[InlineDecision]):
    children = tree.children(decision)
    if not children:
        return
    inlines = ET.SubElement(parent_elem, "Inlines")
    for child in children:
        elem = ET.SubElement(inlines, "Inline")
        ET.SubElement(elem, "MethodToken").text = str(child.path[-1][1])
        ET.SubElement(elem, "Hash").text = str(child.callee_hash)
        ET.SubElement(elem, "Offset").text = str(child.offset)
        _dump_inlines(elem, tree, child)
