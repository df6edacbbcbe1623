"""
Read-only talent tree schema built from the Raidbots talents.json export.

The decoder only needs three things per specialization: the canonical node order
(fullNodeOrder), an id -> node lookup and, for calibration, the hero subtree
grouping. Everything else in talents.json (positions, icons, links) belongs to
the renderer and is ignored here apart from entry names kept for display.
"""
from __future__ import annotations
import enum
import json
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

BASE_DIR = Path(__file__).parent
TALENTS_JSON = BASE_DIR / "talents.json"

# Node sources in talents.json, in index build order
NODE_SOURCES = (("classNodes", "class"), ("specNodes", "spec"), ("heroNodes", "hero"))


class SchemaNotFound(LookupError):
    '''
    Raised when talents.json has no specialization matching the requested
    class/spec combination.
    '''


class NodeKind(enum.Enum):
    SINGLE = "single"
    CHOICE = "choice"


@dataclass(frozen=True)
class TalentNode:
    '''
    TalentNode is the decoder's view of a single talent tree node.

    Tiered nodes are treated as single nodes: the bitstream only carries a
    rank for them. alternative_count is the number of entries of the node and
    only matters for choice nodes.
    '''
    id: int
    kind: NodeKind = NodeKind.SINGLE
    max_ranks: int = 1
    alternative_count: int = 1
    origin: str = "class"
    sub_tree_id: int | None = None
    entry_names: tuple[str, ...] = ()

    @property
    def is_choice(self) -> bool:
        return self.kind is NodeKind.CHOICE

    def display_name(self, alternative: int | None = None) -> str:
        '''
        Name of the given alternative, falling back to the first entry.
        '''
        if not self.entry_names:
            return f"Node {self.id}"
        if alternative is not None and 0 <= alternative < len(self.entry_names):
            return self.entry_names[alternative]
        return self.entry_names[0]

    @classmethod
    def from_json(cls, raw_json: dict, origin: str) -> 'TalentNode':
        entries = raw_json.get("entries") or []
        max_ranks = raw_json.get("maxRanks") or 1
        return cls(
            id=int(raw_json["id"]),
            kind=NodeKind.CHOICE if raw_json.get("type") == "choice" else NodeKind.SINGLE,
            max_ranks=max(1, int(max_ranks)),
            alternative_count=max(1, len(entries)),
            origin=origin,
            sub_tree_id=raw_json.get("subTreeId"),
            entry_names=tuple(str(e.get("name", "")) for e in entries),
        )


class NodeSchema:
    '''
    NodeSchema represents one specialization's decoding schema.

    node_order is the canonical bitstream order and may contain ids that are
    not in nodes (free or hidden nodes); the decoder still has to consume their
    bits. nodes is an immutable mapping built once when the schema is loaded.
    '''
    def __init__(self, node_order, nodes: Mapping[int, TalentNode],
                 class_name: str = "", spec_name: str = "",
                 class_id: int | None = None, spec_id: int | None = None):
        self.node_order: tuple[int, ...] = tuple(node_order)
        self.nodes: Mapping[int, TalentNode] = MappingProxyType(dict(nodes))
        self.class_name = class_name
        self.spec_name = spec_name
        self.class_id = class_id
        self.spec_id = spec_id

    def __repr__(self) -> str:
        return f'NodeSchema({self.class_name}/{self.spec_name}, {len(self.node_order)} ordered, {len(self.nodes)} indexed)'

    def __reduce__(self):
        # MappingProxyType cannot be pickled; rebuild it from a plain dict
        return (NodeSchema, (self.node_order, dict(self.nodes), self.class_name, self.spec_name,
                             self.class_id, self.spec_id))

    def get(self, node_id: int) -> TalentNode | None:
        return self.nodes.get(node_id)

    def ordered_nodes(self) -> list[TalentNode]:
        '''
        Indexed nodes in canonical order. Indexed nodes missing from the order
        are appended by id so that nothing is lost for display.
        '''
        seen = set()
        result = []
        for node_id in self.node_order:
            node = self.nodes.get(node_id)
            if node is not None and node_id not in seen:
                seen.add(node_id)
                result.append(node)
        result.extend(self.nodes[i] for i in sorted(self.nodes) if i not in seen)
        return result

    def hero_tracks(self) -> tuple[tuple[int, ...], ...]:
        '''
        Hero node ids grouped by hero subtree, ordered by subtree id. These are
        the mutually exclusive alternative tracks of the hero tree: a valid
        build fully takes exactly one of them.
        '''
        groups: dict[int, list[int]] = {}
        for node in self.ordered_nodes():
            if node.origin == "hero" and node.sub_tree_id is not None:
                groups.setdefault(node.sub_tree_id, []).append(node.id)
        return tuple(tuple(groups[k]) for k in sorted(groups))


def build_schema(raw_json: dict) -> NodeSchema:
    '''
    Builds a NodeSchema from a single specialization block of talents.json.
    '''
    nodes: dict[int, TalentNode] = {}
    for source, origin in NODE_SOURCES:
        for raw_node in raw_json.get(source, []):
            if "id" not in raw_node:
                continue
            node = TalentNode.from_json(raw_node, origin)
            nodes[node.id] = node
    # Non-integer entries in fullNodeOrder carry no bits
    order = [n for n in raw_json.get("fullNodeOrder", []) if isinstance(n, int) and not isinstance(n, bool)]
    return NodeSchema(order, nodes,
                      class_name=raw_json.get("className", ""),
                      spec_name=raw_json.get("specName", ""),
                      class_id=raw_json.get("classId"),
                      spec_id=raw_json.get("specId"))


def load_models(path: str | Path = TALENTS_JSON) -> list[dict]:
    '''
    Loads the raw talents.json list of specialization blocks.
    '''
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    return [block for block in data if isinstance(block, dict)]


def pick_schema(models: list[dict], class_name: str, spec_name: str) -> NodeSchema:
    '''
    Finds the specialization block for class_name/spec_name (case-insensitive)
    and builds its schema.
    '''
    want = (str(class_name).strip().lower(), str(spec_name).strip().lower())
    for block in models:
        have = (str(block.get("className", "")).lower(), str(block.get("specName", "")).lower())
        if have == want:
            return build_schema(block)
    raise SchemaNotFound(f"No talent schema for class={class_name!r} spec={spec_name!r}")


def available_specs(models: list[dict]) -> list[tuple[str, str]]:
    return sorted({(str(b.get("className", "")), str(b.get("specName", ""))) for b in models})
