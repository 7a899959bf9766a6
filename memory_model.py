"""
memory_model.py

Data model for the memory-layout graph engine.

This module provides:
- Graph configuration (node geometry, synthetic address bases, capacity)
- Input structures mirroring the analyzer's JSON (stack symbols, heap blocks)
- Parsing of analysis results from dicts or JSON text
- Output structures consumed by the renderer (nodes, edges, graph description)
- Console rendering and a textual diff between two graphs

Example:
    >>> from memory_model import parse_analysis_result
    >>>
    >>> result = parse_analysis_result({
    ...     "stack": [
    ...         {"Variable": {"name": "x", "size": 4, "value": "12", "vtype": "Integer"}},
    ...         {"Pointer": {"name": "p", "pointer_size": 8,
    ...                      "value": {"Variable": {"name": "x"}}}},
    ...     ],
    ...     "heap": [],
    ... })
    >>> result.is_valid
    True
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

_log = logging.getLogger(__name__)


# ============================================================
#  Graph configuration
# ============================================================

@dataclass
class GraphConfig:
    """Configuration for graph geometry and capacity.

    Attributes:
        unit_height: Pixels of node height per size unit
        node_width: Fixed pixel width of every memory node
        layer_offset: Bottom margin below the first node of a layer
        stack_base_address: First synthetic stack address
        heap_base_address: First synthetic heap address
        max_memory: Per-layer capacity used for the full flags
        stack_x: Horizontal position of the stack layer
        layer_margin: Right margin of the heap layer inside the panel
        label_offset: Distance between a layer label and its topmost node
        warning_color: Stroke color of dangling pointer edges
    """
    unit_height: int = 10
    node_width: int = 250
    layer_offset: int = 80
    stack_base_address: int = 0xBFFFFFFF
    heap_base_address: int = 0x00400000
    max_memory: int = 64
    stack_x: int = 50
    layer_margin: int = 50
    label_offset: int = 50
    warning_color: str = "red"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> GraphConfig:
        """Build a configuration from a dict, keeping defaults for missing keys.

        Values are converted to the type of the field default, so "10" is
        accepted for an integer field.

        Raises:
            ValueError: If the dict contains an unknown key or a value that
                cannot be converted
        """
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(data) - set(known))
        if unknown:
            raise ValueError(f"Unknown configuration key(s): {', '.join(unknown)}")

        values = {}
        for name, raw in data.items():
            kind = type(known[name].default)
            if kind is int and (isinstance(raw, bool) or not isinstance(raw, (int, float, str))):
                raise ValueError(f"Invalid value for configuration key {name!r}: {raw!r}")
            try:
                values[name] = kind(raw)
            except (TypeError, ValueError, OverflowError) as exc:
                raise ValueError(
                    f"Invalid value for configuration key {name!r}: {raw!r}"
                ) from exc
        return cls(**values)

    def height_for(self, size: int) -> int:
        """Return the pixel height of a node of the given size."""
        return size * self.unit_height


# Default configuration instance
graph_config = GraphConfig()


# ============================================================
#  Themes, colors & enums
# ============================================================

class Theme(Enum):
    """Color theme of the rendering surface."""
    LIGHT = "light"
    DARK = "dark"


class ColorScheme:
    """Label colors per type tag, one palette per theme."""

    LIGHT_TYPES = {
        "Integer": "#8b4513",
        "Float": "#f78092",
        "Double": "#fb7500",
        "Char": "#a31b03",
        "Bool": "#118a11",
        "Pointer": "#3484da",
        "LB": "red",
    }

    DARK_TYPES = {
        "Integer": "#a76638",
        "Float": "#f78092",
        "Double": "#fb7500",
        "Char": "#ff2600",
        "Bool": "#11bd11",
        "Pointer": "#3484da",
        "LB": "red",
    }

    @classmethod
    def type_color(cls, type_tag: str, theme: Theme = Theme.LIGHT) -> str:
        """Return the label color for a type tag, "" when it has none."""
        palette = cls.DARK_TYPES if theme is Theme.DARK else cls.LIGHT_TYPES
        return palette.get(type_tag, "")


class HeapBlockState(Enum):
    """Lifecycle state of a heap block."""
    ALLOCATED = "Allocated"
    FREE = "Free"
    UNALLOCATED = "Unallocated"
    LEAKED = "Leaked"


class NodeKind(Enum):
    """Layer a node belongs to."""
    STACK = "stack"
    HEAP = "heap"
    LABEL = "label"


class EdgeKind(Enum):
    """Relation an edge represents."""
    STACK = "stack"
    ACTIVE = "active"
    DANGLING = "dangling"


class Anchor(Enum):
    """Side of a node where an edge handle is attached."""
    LEFT = "left"
    RIGHT = "right"


# ============================================================
#  Input: stack symbols & heap blocks
# ============================================================

@dataclass
class StackVariable:
    """A plain variable declared in the analyzed scope.

    Attributes:
        name: Variable name, unique within one snapshot
        size: Size in bytes
        value: Current value, None when uninitialized
        vtype: Declared type (Integer, Float, Double, Char, Bool)
    """
    name: str
    size: int
    value: Optional[str]
    vtype: str


@dataclass
class StackPointer:
    """A pointer declared in the analyzed scope.

    Attributes:
        name: Pointer name, unique within one snapshot
        pointer_size: Size of the pointer itself in bytes
        target_name: Name of the stack symbol it points to, if any
    """
    name: str
    pointer_size: int
    target_name: Optional[str] = None


@dataclass
class UnknownSymbol:
    """A stack entry whose variant is neither Variable nor Pointer."""
    kind: str
    payload: Any = None


StackSymbol = Union[StackVariable, StackPointer, UnknownSymbol]


@dataclass
class HeapBlock:
    """A simulated heap block, identified by its position in the heap list.

    Attributes:
        size: Size in bytes
        state: Lifecycle state of the block
        metadata: Display label, None when absent
        current_pointer_id: Stack pointer currently referencing the block
        dangling_pointer_ids: Stack pointers that referenced it after free()
    """
    size: int
    state: HeapBlockState
    metadata: Optional[str] = None
    current_pointer_id: Optional[str] = None
    dangling_pointer_ids: List[str] = field(default_factory=list)

    @property
    def is_free(self) -> bool:
        return self.state is HeapBlockState.FREE

    @property
    def is_unallocated(self) -> bool:
        return self.state is HeapBlockState.UNALLOCATED


@dataclass
class AnalysisError:
    """Error reported by the analyzer for the current source text."""
    message: str
    line_number: Optional[int] = None
    column_number: Optional[int] = None

    def __str__(self) -> str:
        if self.line_number is None:
            return self.message
        return f"{self.message} (line {self.line_number}, column {self.column_number})"


@dataclass(eq=False)
class AnalysisResult:
    """One analyzer response: the stack, the heap, and an optional error.

    Results compare by identity: a new response object is a new snapshot even
    when its content matches an older one.
    """
    stack: List[StackSymbol] = field(default_factory=list)
    heap: List[HeapBlock] = field(default_factory=list)
    error: Optional[AnalysisError] = None

    @property
    def is_valid(self) -> bool:
        """True when there is no error and at least one stack or heap entry."""
        return self.error is None and bool(self.stack or self.heap)


class AnalysisFormatError(ValueError):
    """Raised when an analysis document is structurally unusable."""


# ============================================================
#  Parsing
# ============================================================

def _pointer_target(pointer: Dict[str, Any]) -> Optional[str]:
    if pointer.get("target_name"):
        return pointer["target_name"]
    value = pointer.get("value")
    if not isinstance(value, dict):
        return None
    for variant in ("Variable", "Pointer"):
        inner = value.get(variant)
        if isinstance(inner, dict) and inner.get("name"):
            return inner["name"]
    return None


def parse_stack_symbol(entry: Any) -> StackSymbol:
    """Convert one externally tagged stack entry into a StackSymbol.

    Entries that are not a well-formed Variable or Pointer come back as
    UnknownSymbol so the stack builder can report and skip them.
    """
    if not isinstance(entry, dict) or len(entry) != 1:
        return UnknownSymbol(kind=type(entry).__name__, payload=entry)

    kind, body = next(iter(entry.items()))
    if not isinstance(body, dict):
        return UnknownSymbol(kind=kind, payload=body)

    try:
        if kind == "Variable":
            return StackVariable(
                name=str(body["name"]),
                size=int(body["size"]),
                value=None if body.get("value") is None else str(body["value"]),
                vtype=str(body.get("vtype", "")),
            )
        if kind == "Pointer":
            return StackPointer(
                name=str(body["name"]),
                pointer_size=int(body["pointer_size"]),
                target_name=_pointer_target(body),
            )
    except (KeyError, TypeError, ValueError):
        _log.debug("Malformed %s entry: %r", kind, body)
    return UnknownSymbol(kind=kind, payload=body)


def parse_heap_block(entry: Dict[str, Any]) -> Optional[HeapBlock]:
    """Convert one heap entry into a HeapBlock, or None if it is unusable."""
    try:
        state = HeapBlockState(entry.get("block_state", entry.get("state")))
        size = int(entry["size"])
    except (KeyError, TypeError, ValueError, AttributeError):
        _log.warning("Skipping heap block with unusable state or size: %r", entry)
        return None

    dangling = entry.get("dangling_pointer_identifiers") or []
    if not isinstance(dangling, list):
        _log.warning("Skipping heap block with unusable dangling pointer list: %r", entry)
        return None
    return HeapBlock(
        size=size,
        state=state,
        metadata=entry.get("metadata") or None,
        current_pointer_id=entry.get("current_pointer_identifier"),
        dangling_pointer_ids=[str(d) for d in dangling],
    )


def parse_analysis_result(data: Dict[str, Any]) -> AnalysisResult:
    """Build an AnalysisResult from the analyzer's JSON object.

    Args:
        data: Decoded JSON object with ``stack``, ``heap`` and ``error`` keys

    Returns:
        A new AnalysisResult

    Raises:
        AnalysisFormatError: If data is not a JSON object, or its stack or
            heap is not a list
    """
    if not isinstance(data, dict):
        raise AnalysisFormatError(
            f"Analysis result must be an object, got {type(data).__name__}"
        )

    error = None
    raw_error = data.get("error")
    if raw_error is not None:
        if isinstance(raw_error, dict):
            error = AnalysisError(
                message=str(raw_error.get("message", "")),
                line_number=raw_error.get("line_number"),
                column_number=raw_error.get("column_number"),
            )
        else:
            error = AnalysisError(message=str(raw_error))

    raw_stack = data.get("stack") or []
    raw_heap = data.get("heap") or []
    for key, value in (("stack", raw_stack), ("heap", raw_heap)):
        if not isinstance(value, list):
            raise AnalysisFormatError(
                f"Analysis {key} must be a list, got {type(value).__name__}"
            )

    stack = [parse_stack_symbol(entry) for entry in raw_stack]
    heap = []
    for entry in raw_heap:
        block = parse_heap_block(entry) if isinstance(entry, dict) else None
        if block is not None:
            heap.append(block)

    return AnalysisResult(stack=stack, heap=heap, error=error)


def load_analysis_result(source: Union[str, Path]) -> AnalysisResult:
    """Load an analysis result from a JSON file path or JSON text.

    Raises:
        AnalysisFormatError: If the text is not valid JSON or not an object
    """
    if isinstance(source, Path):
        text = source.read_text(encoding="utf-8")
    else:
        text = source
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise AnalysisFormatError(f"Invalid analysis JSON: {exc}") from exc
    return parse_analysis_result(data)


# ============================================================
#  Output: nodes, edges, graph
# ============================================================

@dataclass
class Position:
    x: float
    y: float


@dataclass
class ExtraInfo:
    """Secondary node details shown when a node is expanded.

    Attributes:
        address: Synthetic address of the node
        pointing_to_address: Address of the node this pointer targets
        pointing_to_label: Declared target name of a stack pointer
        metadata: Free-form annotation such as "Dangling Pointer"
        is_free: Whether a heap block has been freed
        block_state: State of a heap block, None for stack nodes
    """
    address: str = ""
    pointing_to_address: Optional[str] = None
    pointing_to_label: Optional[str] = None
    metadata: Optional[str] = None
    is_free: bool = False
    block_state: Optional[HeapBlockState] = None


@dataclass
class Node:
    """A positioned node of the memory graph.

    Attributes:
        id: Node id, unique within its layer
        kind: Layer of the node
        position: Top-left corner in screen coordinates
        size: Size in bytes
        width: Pixel width
        height: Pixel height
        label: Display label
        value: Display value
        type_tag: Type shown on the node (declared type, Pointer, LB)
        extra_info: Address and relation annotations
        source_anchor: Side of the outgoing edge handle, if any
        target_anchor: Side of the incoming edge handle, if any
        draggable: Whether the renderer lets the user move it
        selectable: Whether the renderer lets the user select it
    """
    id: str
    kind: NodeKind
    position: Position
    size: int = 0
    width: int = 0
    height: int = 0
    label: str = ""
    value: str = ""
    type_tag: str = ""
    extra_info: ExtraInfo = field(default_factory=ExtraInfo)
    source_anchor: Optional[Anchor] = None
    target_anchor: Optional[Anchor] = None
    draggable: bool = True
    selectable: bool = True

    @property
    def address(self) -> str:
        return self.extra_info.address

    def to_dict(self, theme: Theme = Theme.LIGHT) -> Dict[str, Any]:
        """Return the JSON-ready form handed to the renderer."""
        info = self.extra_info
        extra: Dict[str, Any] = {"address": info.address}
        if info.pointing_to_address is not None:
            extra["pointingToAddress"] = info.pointing_to_address
        if info.pointing_to_label is not None:
            extra["pointingToLabel"] = info.pointing_to_label
        if info.metadata is not None:
            extra["metadata"] = info.metadata
        if self.kind is NodeKind.HEAP:
            extra["isFree"] = info.is_free

        return {
            "id": self.id,
            "kind": self.kind.value,
            "position": {"x": self.position.x, "y": self.position.y},
            "size": self.size,
            "width": self.width,
            "height": self.height,
            "displayLabel": self.label,
            "displayValue": self.value,
            "typeTag": self.type_tag,
            "labelColor": ColorScheme.type_color(self.type_tag, theme),
            "address": info.address,
            "extraInfo": extra,
            "sourcePosition": self.source_anchor.value if self.source_anchor else None,
            "targetPosition": self.target_anchor.value if self.target_anchor else None,
            "draggable": self.draggable,
            "selectable": self.selectable,
        }


def edge_id(source: str, target: str) -> str:
    """Return the deterministic id of the edge source -> target."""
    return f"e{source}-{target}"


@dataclass
class Edge:
    """A directed pointer edge.

    Attributes:
        id: Deterministic id "e<source>-<target>"
        source: Id of the pointing stack node
        target: Id of the pointed-to node
        color: Stroke color
        kind: Relation the edge represents
        line_style: "step" for stack edges, "straight" for heap edges
    """
    id: str
    source: str
    target: str
    color: str
    kind: EdgeKind = EdgeKind.STACK
    line_style: str = "step"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "colorLabel": self.color,
            "kind": self.kind.value,
            "type": self.line_style,
        }


@dataclass
class GraphDescription:
    """The renderable graph: nodes, edges and per-layer capacity flags."""
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)
    stack_full: bool = False
    heap_full: bool = False

    def get_node(self, node_id: str, kind: Optional[NodeKind] = None) -> Optional[Node]:
        """Get a node by id, optionally restricted to one layer."""
        for node in self.nodes:
            if node.id == node_id and (kind is None or node.kind is kind):
                return node
        return None

    def get_edge(self, eid: str) -> Optional[Edge]:
        """Get an edge by id."""
        for edge in self.edges:
            if edge.id == eid:
                return edge
        return None

    def nodes_of(self, kind: NodeKind) -> List[Node]:
        return [n for n in self.nodes if n.kind is kind]

    @property
    def is_empty(self) -> bool:
        return not self.nodes and not self.edges

    def to_dict(self, theme: Theme = Theme.LIGHT) -> Dict[str, Any]:
        return {
            "nodes": [n.to_dict(theme) for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "stackFull": self.stack_full,
            "heapFull": self.heap_full,
        }

    def to_console(self) -> str:
        """Render the graph to console format."""
        lines: List[str] = []
        lines.append(self._layer_to_console("Stack", NodeKind.STACK, self.stack_full))
        lines.append("")
        lines.append(self._layer_to_console("Heap", NodeKind.HEAP, self.heap_full))
        lines.append("")
        lines.append("=== Edges ===")
        if not self.edges:
            lines.append("(no edges)")
        for edge in self.edges:
            lines.append(
                f"{edge.source:>12} → {edge.target:<16} {edge.kind.value:8} {edge.color}"
            )
        return "\n".join(lines)

    def _layer_to_console(self, title: str, kind: NodeKind, full: bool) -> str:
        nodes = self.nodes_of(kind)
        lines = [f"=== {title}{' (FULL)' if full else ''} ==="]
        if not nodes:
            lines.append("(empty)")
            return "\n".join(lines)

        header = f"{'Id':16} {'Address':12} {'Size':6} {'Type':10} {'Label':16} {'Value'}"
        lines.append(header)
        lines.append("-" * len(header))
        for node in nodes:
            lines.append(
                f"{node.id:16} {node.address:12} {node.size:<6} "
                f"{node.type_tag:10} {node.label:16} {_format_value(node.value)}"
            )
            if node.extra_info.metadata:
                lines.append(f"  └─ {node.extra_info.metadata}")
        return "\n".join(lines)

    def print(self) -> None:
        """Print the graph to console."""
        print(self.to_console())


def _format_value(value: str) -> str:
    return value if len(value) < 30 else value[:27] + "..."


# ============================================================
#  Utility functions
# ============================================================

def diff_graphs(old: GraphDescription, new: GraphDescription) -> str:
    """Create a textual diff between two graphs.

    Nodes are matched by (layer, id) and edges by id.

    Args:
        old: Earlier graph
        new: Later graph

    Returns:
        A string describing the changes
    """
    changes: List[str] = []
    changes.append("=== Graph changes ===")
    changes.append("")

    old_nodes = {(n.kind, n.id): n for n in old.nodes if n.kind is not NodeKind.LABEL}
    new_nodes = {(n.kind, n.id): n for n in new.nodes if n.kind is not NodeKind.LABEL}

    node_changes = []
    for key, node in new_nodes.items():
        old_node = old_nodes.get(key)
        if old_node is None:
            node_changes.append(f"  + Added {key[0].value} node '{node.id}' ({node.size} bytes)")
        elif old_node.value != node.value:
            node_changes.append(
                f"  ~ Changed '{node.id}': {old_node.value or '-'} → {node.value or '-'}"
            )
        elif old_node.extra_info.metadata != node.extra_info.metadata:
            node_changes.append(f"  ~ '{node.id}' is now {node.extra_info.metadata or 'unannotated'}")
    for key, node in old_nodes.items():
        if key not in new_nodes:
            node_changes.append(f"  - Removed {key[0].value} node '{node.id}'")

    if node_changes:
        changes.append("Nodes:")
        changes.extend(node_changes)
        changes.append("")

    old_edges = {e.id: e for e in old.edges}
    new_edges = {e.id: e for e in new.edges}
    edge_changes = []
    for eid, edge in new_edges.items():
        previous = old_edges.get(eid)
        if previous is None:
            edge_changes.append(f"  + {edge.source} → {edge.target} ({edge.kind.value})")
        elif previous.kind is not edge.kind:
            edge_changes.append(
                f"  ~ {edge.source} → {edge.target}: {previous.kind.value} → {edge.kind.value}"
            )
    for eid, edge in old_edges.items():
        if eid not in new_edges:
            edge_changes.append(f"  - {edge.source} → {edge.target}")

    if edge_changes:
        changes.append("Edges:")
        changes.extend(edge_changes)
        changes.append("")

    if len(changes) == 2:
        changes.append("(no changes)")

    return "\n".join(changes)
