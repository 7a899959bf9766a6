"""
memory_graph.py

Builds the positioned node/edge graph from an analysis result.

The layers are built in a fixed order: the stack first, then the heap (heap
edges are resolved against the finished stack nodes), then the assembler adds
the layer labels and the capacity flags.

Usage:
    from memory_graph import build_graph

    graph = build_graph(result, viewport_height=900, stack_x=50, heap_x=700)
    graph.print()
"""

from __future__ import annotations

import colorsys
import logging
import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from memory_model import (
    AnalysisResult,
    Anchor,
    Edge,
    EdgeKind,
    ExtraInfo,
    GraphConfig,
    GraphDescription,
    HeapBlock,
    HeapBlockState,
    Node,
    NodeKind,
    Position,
    StackPointer,
    StackSymbol,
    StackVariable,
    Theme,
    edge_id,
    graph_config,
)

_log = logging.getLogger(__name__)

DANGLING_POINTER = "Dangling Pointer"
UNINITIALIZED = "Uninitialized"
LEAKED_BLOCK_TAG = "LB"
POINTER_TAG = "Pointer"


# ============================================================
#  Addresses & positions
# ============================================================

def format_address(address: int) -> str:
    """Format an address as 0x followed by uppercase hex digits."""
    return f"0x{address:X}"


class AddressSynthesizer:
    """Hands out display-only addresses in traversal order.

    Each entry receives the current cursor; the cursor then advances by the
    entry size.
    """

    def __init__(self, base: int) -> None:
        self.base = base
        self.cursor = base

    def next(self, size: int) -> str:
        address = format_address(self.cursor)
        self.cursor += size
        return address


class PositionCalculator:
    """Stacks the nodes of one layer upward from the bottom of the viewport."""

    def __init__(self, viewport_height: float, config: Optional[GraphConfig] = None) -> None:
        self.viewport_height = viewport_height
        self.config = config or graph_config
        self._previous_y: Optional[float] = None

    def next(self, size: int) -> float:
        """Return the y position of the next node of the given size."""
        height = self.config.height_for(size)
        if self._previous_y is None:
            y = self.viewport_height - height - self.config.layer_offset
        else:
            y = self._previous_y - height
        self._previous_y = y
        return y


def heap_node_id(index: int, state: HeapBlockState) -> str:
    """Return the id of the heap node at a traversal index."""
    if state is HeapBlockState.UNALLOCATED:
        return f"unallocated-{index}"
    if state is HeapBlockState.FREE:
        return f"free-{index}"
    return str(index)


# ============================================================
#  Edge colors
# ============================================================

class EdgeColorPolicy:
    """Chooses edge stroke colors.

    Dangling edges always get the warning color. Otherwise a color already
    used for the same (source, target) pair in the current pass is reused,
    and a new pair gets a random hue outside the red range: light on the dark
    theme, dark on the light theme.
    """

    def __init__(
        self,
        theme: Theme = Theme.LIGHT,
        rng: Optional[random.Random] = None,
        warning_color: Optional[str] = None,
    ) -> None:
        self.theme = theme
        self.rng = rng or random.Random()
        self.warning_color = warning_color or graph_config.warning_color

    def color_for(self, kind: EdgeKind, existing: Optional[str] = None) -> str:
        if kind is EdgeKind.DANGLING:
            return self.warning_color
        if existing is not None:
            return existing
        return self.random_color()

    def random_color(self) -> str:
        hue = (self.rng.random() * 240 + 60) / 360
        saturation = self.rng.uniform(0.55, 0.9)
        if self.theme is Theme.DARK:
            lightness = self.rng.uniform(0.65, 0.8)
        else:
            lightness = self.rng.uniform(0.25, 0.4)
        r, g, b = colorsys.hls_to_rgb(hue, lightness, saturation)
        return "#{:02x}{:02x}{:02x}".format(round(r * 255), round(g * 255), round(b * 255))


# ============================================================
#  Layer builders
# ============================================================

@dataclass
class MalformedSymbol:
    """A stack entry skipped because its variant is unknown."""
    index: int
    kind: str


@dataclass
class LayerGraph:
    """Nodes and edges produced for one layer."""
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)


class StackGraphBuilder:
    """Turns stack symbols into nodes and stack-internal pointer edges."""

    def __init__(
        self,
        viewport_height: float,
        x: float,
        color_policy: Optional[EdgeColorPolicy] = None,
        config: Optional[GraphConfig] = None,
    ) -> None:
        self.viewport_height = viewport_height
        self.x = x
        self.config = config or graph_config
        self.color_policy = color_policy or EdgeColorPolicy(
            warning_color=self.config.warning_color
        )
        self.skipped: List[MalformedSymbol] = []

    def build(self, symbols: Sequence[StackSymbol]) -> LayerGraph:
        self.skipped = []
        addresses = AddressSynthesizer(self.config.stack_base_address)
        positions = PositionCalculator(self.viewport_height, self.config)
        nodes: List[Node] = []
        pointers: List[Node] = []

        for index, symbol in enumerate(symbols):
            if isinstance(symbol, StackVariable):
                size = symbol.size
                node = self._node(symbol.name, size, positions.next(size), addresses.next(size))
                node.label = symbol.name
                node.value = symbol.value if symbol.value else UNINITIALIZED
                node.type_tag = symbol.vtype
            elif isinstance(symbol, StackPointer):
                size = symbol.pointer_size
                node = self._node(symbol.name, size, positions.next(size), addresses.next(size))
                node.label = f"*{symbol.name}"
                node.type_tag = POINTER_TAG
                node.source_anchor = Anchor.RIGHT
                node.extra_info.pointing_to_label = symbol.target_name
                pointers.append(node)
            else:
                kind = getattr(symbol, "kind", type(symbol).__name__)
                _log.warning("Skipping stack entry %d with unknown variant %r", index, kind)
                self.skipped.append(MalformedSymbol(index=index, kind=kind))
                continue
            nodes.append(node)

        return LayerGraph(nodes=nodes, edges=self._connect(nodes, pointers))

    def _node(self, name: str, size: int, y: float, address: str) -> Node:
        return Node(
            id=name,
            kind=NodeKind.STACK,
            position=Position(self.x, y),
            size=size,
            width=self.config.node_width,
            height=self.config.height_for(size),
            extra_info=ExtraInfo(address=address),
        )

    def _connect(self, nodes: List[Node], pointers: List[Node]) -> List[Edge]:
        edges: List[Edge] = []
        for node in pointers:
            if not node.extra_info.pointing_to_label:
                continue
            target_name = node.extra_info.pointing_to_label
            for target in nodes:
                if target.id != target_name:
                    continue
                node.extra_info.pointing_to_address = target.address
                node.value = f"&{target_name}"
                target.source_anchor = Anchor.RIGHT
                target.target_anchor = Anchor.RIGHT
                edges.append(Edge(
                    id=edge_id(node.id, target.id),
                    source=node.id,
                    target=target.id,
                    color=self.color_policy.color_for(EdgeKind.STACK),
                    kind=EdgeKind.STACK,
                    line_style="step",
                ))
        return edges


class HeapGraphBuilder:
    """Turns heap blocks into nodes and stack-to-heap edges.

    Stack nodes passed to build() are annotated in place with the address they
    point to and, for dangling references, with a "Dangling Pointer" note.
    """

    def __init__(
        self,
        viewport_height: float,
        x: float,
        color_policy: Optional[EdgeColorPolicy] = None,
        config: Optional[GraphConfig] = None,
    ) -> None:
        self.viewport_height = viewport_height
        self.x = x
        self.config = config or graph_config
        self.color_policy = color_policy or EdgeColorPolicy(
            warning_color=self.config.warning_color
        )

    def build(
        self,
        blocks: Sequence[HeapBlock],
        stack_nodes: Sequence[Node],
        stack_is_empty: bool = False,
    ) -> LayerGraph:
        """Build the heap layer.

        Args:
            blocks: Heap blocks in traversal order
            stack_nodes: Finished stack nodes, in building order
            stack_is_empty: Whether the analyzed stack list was empty; no heap
                is shown without at least one stack entry

        Returns:
            The heap layer's nodes and edges
        """
        if stack_is_empty:
            return LayerGraph()

        addresses = AddressSynthesizer(self.config.heap_base_address)
        positions = PositionCalculator(self.viewport_height, self.config)
        stack_ids = {n.id for n in stack_nodes}
        nodes: List[Node] = []
        edges: List[Edge] = []
        queued: Dict[Tuple[str, str], str] = {}

        for index, block in enumerate(blocks):
            node_id = heap_node_id(index, block.state)
            node = Node(
                id=node_id,
                kind=NodeKind.HEAP,
                position=Position(self.x, positions.next(block.size)),
                size=block.size,
                width=self.config.node_width,
                height=self.config.height_for(block.size),
                label=block.metadata if block.metadata else "null",
                type_tag=LEAKED_BLOCK_TAG if block.state is HeapBlockState.LEAKED else "",
                extra_info=ExtraInfo(
                    address=addresses.next(block.size),
                    is_free=block.is_free,
                    block_state=block.state,
                ),
            )
            if node_id in stack_ids:
                _log.warning("Heap node id %r collides with a stack symbol name", node_id)

            if not block.is_unallocated:
                self._check_references(block, stack_ids)
                for stack_node in stack_nodes:
                    edge = self._connect(stack_node, node, block, queued)
                    if edge is not None:
                        queued[(edge.source, edge.target)] = edge.color
                        edges.append(edge)

            nodes.append(node)

        return LayerGraph(nodes=nodes, edges=edges)

    def _connect(
        self,
        stack_node: Node,
        heap_node: Node,
        block: HeapBlock,
        queued: Dict[Tuple[str, str], str],
    ) -> Optional[Edge]:
        is_current = stack_node.id == block.current_pointer_id
        is_dangling = stack_node.id in block.dangling_pointer_ids
        if not (is_current or is_dangling):
            return None

        stack_node.extra_info.pointing_to_address = heap_node.address
        heap_node.target_anchor = Anchor.LEFT

        if is_dangling:
            stack_node.extra_info.metadata = DANGLING_POINTER
            kind = EdgeKind.DANGLING
        else:
            kind = EdgeKind.ACTIVE
        color = self.color_policy.color_for(
            kind, existing=queued.get((stack_node.id, heap_node.id))
        )

        return Edge(
            id=edge_id(stack_node.id, heap_node.id),
            source=stack_node.id,
            target=heap_node.id,
            color=color,
            kind=kind,
            line_style="straight",
        )

    @staticmethod
    def _check_references(block: HeapBlock, stack_ids: set) -> None:
        referenced = list(block.dangling_pointer_ids)
        if block.current_pointer_id is not None:
            referenced.append(block.current_pointer_id)
        for pointer_id in referenced:
            if pointer_id not in stack_ids:
                _log.debug("Pointer id %r matches no stack node; no edge created", pointer_id)


# ============================================================
#  Assembly
# ============================================================

def calculate_memory_usage(nodes: Sequence[Node]) -> int:
    """Sum the sizes of nodes that are neither free nor unallocated."""
    return sum(
        n.size for n in nodes
        if not n.extra_info.is_free
        and n.extra_info.block_state is not HeapBlockState.UNALLOCATED
    )


def is_layer_full(nodes: Sequence[Node], max_memory: int) -> bool:
    return calculate_memory_usage(nodes) >= max_memory


class GraphAssembler:
    """Merges the layers, adds the "Stack"/"Heap" labels and capacity flags."""

    def __init__(self, stack_x: float, heap_x: float, config: Optional[GraphConfig] = None) -> None:
        self.stack_x = stack_x
        self.heap_x = heap_x
        self.config = config or graph_config

    def assemble(self, stack: LayerGraph, heap: LayerGraph) -> GraphDescription:
        labels = []
        stack_label = self._label("stack-label", "Stack", stack.nodes, self.stack_x)
        if stack_label is not None:
            labels.append(stack_label)
        heap_label = self._label("heap-label", "Heap", heap.nodes, self.heap_x)
        if heap_label is not None:
            labels.append(heap_label)

        return GraphDescription(
            nodes=[*stack.nodes, *heap.nodes, *labels],
            edges=[*stack.edges, *heap.edges],
            stack_full=is_layer_full(stack.nodes, self.config.max_memory),
            heap_full=is_layer_full(heap.nodes, self.config.max_memory),
        )

    def _label(self, node_id: str, text: str, nodes: List[Node], x: float) -> Optional[Node]:
        if not nodes:
            return None
        top = min(nodes, key=lambda n: n.position.y)
        return Node(
            id=node_id,
            kind=NodeKind.LABEL,
            position=Position(
                x + self.config.node_width / 2 - 30,
                top.position.y - self.config.label_offset,
            ),
            label=text,
            draggable=False,
            selectable=False,
        )


def build_graph(
    result: Optional[AnalysisResult],
    viewport_height: float,
    stack_x: float,
    heap_x: float,
    theme: Theme = Theme.LIGHT,
    config: Optional[GraphConfig] = None,
    rng: Optional[random.Random] = None,
) -> GraphDescription:
    """Build the complete graph for one analysis result.

    Args:
        result: Analysis result to draw, None for an empty graph
        viewport_height: Height of the rendering viewport in pixels
        stack_x: Horizontal position of the stack layer
        heap_x: Horizontal position of the heap layer
        theme: Theme used for random edge colors
        config: Geometry configuration (defaults to graph_config)
        rng: Random source for edge colors

    Returns:
        A new GraphDescription
    """
    if result is None:
        return GraphDescription()

    config = config or graph_config
    policy = EdgeColorPolicy(theme, rng=rng, warning_color=config.warning_color)

    stack_builder = StackGraphBuilder(viewport_height, stack_x, policy, config)
    stack = stack_builder.build(result.stack)
    heap = HeapGraphBuilder(viewport_height, heap_x, policy, config).build(
        result.heap, stack.nodes, stack_is_empty=not result.stack
    )
    if stack_builder.skipped:
        _log.info("Skipped %d malformed stack entr%s",
                  len(stack_builder.skipped), "y" if len(stack_builder.skipped) == 1 else "ies")

    return GraphAssembler(stack_x, heap_x, config).assemble(stack, heap)
