"""Access-path heuristic over the contact network.

Suggests a warm route from you to a target founder or company:

1. A contact whose name contains the target founder, or whose organization
   contains the target company, is reached directly and short-circuits the
   search.
2. Otherwise candidate *bridge* contacts are those whose organization matches
   the search term, whose tier is ``capital_allocator`` or ``founder``, or
   whose warmth is at least 7.  They are ranked by warmth, highest first.
3. The path is ``You -> bridge -> optional second hop -> target``.  The second
   hop is the warmest candidate adjacent to the bridge in the contact graph,
   falling back to the next-ranked candidate.

The contact graph is the union of explicit ``access_paths`` references and
same-organization co-membership, stored in both directions.  This is a
greedy suggestion; it never searches for a true shortest path.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Sequence

from dealdesk.utils import json_parse

log = logging.getLogger(__name__)

BRIDGE_TIERS = frozenset({"capital_allocator", "founder"})
WARM_BRIDGE_THRESHOLD = 7.0
DEFAULT_WARMTH = 5.0
YOU_WARMTH = 10.0
NO_PATH_REASON = "no path found"


@dataclass
class ContactNode:
    """Minimal view of a contact used for path finding."""
    id: int
    name: str
    organization: str = ""
    tier: str = "connector"
    warmth_score: float | None = None
    access_paths: Any = None

    @property
    def effective_warmth(self) -> float:
        return self.warmth_score if self.warmth_score is not None else DEFAULT_WARMTH

    @property
    def display_warmth(self) -> float:
        # an unscored or zero warmth shows as the default on the path
        return self.warmth_score or DEFAULT_WARMTH

    @classmethod
    def from_contact(cls, contact: Any) -> ContactNode:
        """Build from an ORM ``Contact`` or a plain dict."""
        if isinstance(contact, ContactNode):
            return contact
        if isinstance(contact, dict):
            get = contact.get
        else:
            def get(key: str, default: Any = None) -> Any:
                return getattr(contact, key, default)
        access_paths = get("access_paths")
        if access_paths is None:
            access_paths = json_parse(get("access_paths_json"), [])
        return cls(
            id=int(get("id")),
            name=get("name") or "",
            organization=get("organization") or "",
            tier=get("tier") or "connector",
            warmth_score=get("warmth_score"),
            access_paths=access_paths,
        )


@dataclass
class PathNode:
    name: str
    organization: str | None
    relationship: str
    warmth: float
    contact_id: int | None = None


@dataclass
class AccessPath:
    target_name: str
    target_company: str
    found: bool
    kind: str  # direct | bridge | two_hop | none
    path: list[PathNode] = field(default_factory=list)
    reason: str = ""

    @property
    def degrees(self) -> int:
        return max(len(self.path) - 1, 0)

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["degrees"] = self.degrees
        return out


# ---------------------------------------------------------------------------
# Graph construction
# ---------------------------------------------------------------------------


def _norm(value: str | None) -> str:
    return (value or "").strip().casefold()


def _iter_references(raw: Any) -> Iterable[Any]:
    """Yield individual references from an ``access_paths`` payload."""
    if raw is None or raw == "":
        return
    if isinstance(raw, str):
        parsed = json_parse(raw, None)
        if parsed is None:
            yield raw
            return
        raw = parsed
    if isinstance(raw, dict):
        nested = raw.get("contacts", raw.get("via"))
        if isinstance(nested, list):
            yield from nested
        else:
            yield raw
        return
    if isinstance(raw, (list, tuple)):
        yield from raw
        return
    yield raw


def _resolve_reference(ref: Any, by_id: dict[int, ContactNode], by_name: dict[str, int]) -> int | None:
    if isinstance(ref, dict):
        for key in ("contact_id", "id"):
            if ref.get(key) is not None:
                return _resolve_reference(ref[key], by_id, by_name)
        if ref.get("name"):
            return by_name.get(_norm(ref["name"]))
        return None
    if isinstance(ref, bool):
        return None
    if isinstance(ref, int):
        return ref if ref in by_id else None
    if isinstance(ref, str):
        stripped = ref.strip()
        if stripped.isdigit() and int(stripped) in by_id:
            return int(stripped)
        return by_name.get(_norm(stripped))
    return None


class ContactGraph:
    """Undirected adjacency between contact ids."""

    def __init__(self, nodes: Sequence[ContactNode]):
        self.nodes: dict[int, ContactNode] = {n.id: n for n in nodes}
        self._adjacency: dict[int, set[int]] = defaultdict(set)

    def add_edge(self, a: int, b: int) -> None:
        if a == b or a not in self.nodes or b not in self.nodes:
            return
        self._adjacency[a].add(b)
        self._adjacency[b].add(a)

    def neighbors(self, contact_id: int) -> set[int]:
        return set(self._adjacency.get(contact_id, ()))

    def has_edge(self, a: int, b: int) -> bool:
        return b in self._adjacency.get(a, ())

    @property
    def edge_count(self) -> int:
        return sum(len(v) for v in self._adjacency.values()) // 2


def build_contact_graph(contacts: Sequence[Any]) -> ContactGraph:
    """Build the bidirectional contact graph from join fields and co-membership."""
    nodes = [ContactNode.from_contact(c) for c in contacts]
    graph = ContactGraph(nodes)
    by_name: dict[str, int] = {}
    for node in nodes:
        by_name.setdefault(_norm(node.name), node.id)

    for node in nodes:
        for ref in _iter_references(node.access_paths):
            other = _resolve_reference(ref, graph.nodes, by_name)
            if other is None:
                log.debug("Ignoring unresolved access path %r on contact %s", ref, node.id)
                continue
            graph.add_edge(node.id, other)

    by_org: dict[str, list[int]] = defaultdict(list)
    for node in nodes:
        org = _norm(node.organization)
        if org:
            by_org[org].append(node.id)
    for members in by_org.values():
        for i, a in enumerate(members):
            for b in members[i + 1:]:
                graph.add_edge(a, b)

    return graph


# ---------------------------------------------------------------------------
# Path finding
# ---------------------------------------------------------------------------


def _you() -> PathNode:
    return PathNode(name="You", organization=None, relationship="Start", warmth=YOU_WARMTH)


def _contact_node(node: ContactNode, relationship: str) -> PathNode:
    return PathNode(
        name=node.name, organization=node.organization or None,
        relationship=relationship, warmth=node.display_warmth, contact_id=node.id,
    )


def _target_node(target_name: str, target_company: str) -> PathNode:
    return PathNode(
        name=target_name or "Target Founder", organization=target_company or None,
        relationship="Target", warmth=0.0,
    )


def _rank(nodes: Iterable[ContactNode]) -> list[ContactNode]:
    # sorted() is stable, so equal warmth keeps input order
    return sorted(nodes, key=lambda n: n.effective_warmth, reverse=True)


def _is_candidate(node: ContactNode, term: str) -> bool:
    org = _norm(node.organization)
    return (
        (bool(term) and term in org)
        or node.tier in BRIDGE_TIERS
        or (node.warmth_score is not None and node.warmth_score >= WARM_BRIDGE_THRESHOLD)
    )


def find_access_path(
    contacts: Sequence[Any],
    target_name: str = "",
    target_company: str = "",
    graph: ContactGraph | None = None,
) -> AccessPath:
    """Suggest a path of at most three hops from you to the target."""
    target_name = (target_name or "").strip()
    target_company = (target_company or "").strip()
    if not target_name and not target_company:
        raise ValueError("A target founder or target company is required")

    nodes = [ContactNode.from_contact(c) for c in contacts]
    name_q = _norm(target_name)
    company_q = _norm(target_company)

    # Direct: we already know the target (or someone inside the target company)
    by_name = [n for n in nodes if name_q and name_q in _norm(n.name)]
    if by_name:
        hit = _rank(by_name)[0]
        return AccessPath(
            target_name=target_name, target_company=target_company, found=True, kind="direct",
            path=[_you(), _contact_node(hit, "Direct connection")],
        )
    by_org = [n for n in nodes if company_q and company_q in _norm(n.organization)]
    if by_org:
        hit = _rank(by_org)[0]
        path = [_you(), _contact_node(hit, f"Works at {target_company}")]
        if target_name:
            path.append(_target_node(target_name, target_company))
        return AccessPath(
            target_name=target_name, target_company=target_company, found=True, kind="direct",
            path=path,
        )

    term = company_q or name_q
    ranked = _rank(n for n in nodes if _is_candidate(n, term))
    if not ranked:
        return AccessPath(
            target_name=target_name, target_company=target_company, found=False, kind="none",
            reason=NO_PATH_REASON,
        )

    if graph is None:
        graph = build_contact_graph(nodes)

    bridge = ranked[0]
    path = [_you(), _contact_node(bridge, f"{bridge.tier} connection")]
    kind = "bridge"

    adjacent = graph.neighbors(bridge.id)
    second = next((n for n in ranked[1:] if n.id in adjacent), None)
    if second is not None:
        path.append(_contact_node(second, f"Connected to {bridge.name}"))
        kind = "two_hop"
    elif len(ranked) > 1:
        path.append(_contact_node(ranked[1], "Potential intro"))
        kind = "two_hop"

    path.append(_target_node(target_name, target_company))
    return AccessPath(
        target_name=target_name, target_company=target_company, found=True, kind=kind, path=path,
    )
