"""
memory_visualizer.py

Recomputation loop of the memory visualizer.

This module provides:
- Viewport and per-layer x-coordinates
- ResultStabilizer: picks the analysis result to draw (fresh, frozen or none)
- recompute(): the pure state transition run on every source/analysis change
- A command-line tool replaying analysis results through recompute()

Usage:
    from memory_visualizer import VisualizerState, Viewport, recompute

    state = VisualizerState.initial(Viewport(width=1280, height=800))
    state = recompute(state, source_code, analysis_result)
    state.graph.print()
"""

from __future__ import annotations

import argparse
import json
import logging
import random
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple

from memory_graph import build_graph
from memory_model import (
    AnalysisError,
    AnalysisFormatError,
    AnalysisResult,
    GraphConfig,
    GraphDescription,
    NodeKind,
    Theme,
    diff_graphs,
    graph_config,
    parse_analysis_result,
)

_log = logging.getLogger(__name__)


# ============================================================
#  Viewport & layer coordinates
# ============================================================

@dataclass(frozen=True)
class Viewport:
    """Size of the rendering surface.

    Attributes:
        width: Window width in pixels
        height: Window height in pixels
        panel_split: Percentage of the window width given to the visualizer
    """
    width: float = 1280
    height: float = 800
    panel_split: float = 50.0


@dataclass(frozen=True)
class LayerCoordinates:
    """Fixed x-coordinates of the stack and heap layers."""
    stack_x: float
    heap_x: float

    @classmethod
    def from_viewport(cls, viewport: Viewport, config: Optional[GraphConfig] = None) -> LayerCoordinates:
        config = config or graph_config
        panel_width = viewport.width * viewport.panel_split / 100
        return cls(
            stack_x=config.stack_x,
            heap_x=panel_width - config.node_width - config.layer_margin,
        )


# ============================================================
#  Result stabilizer
# ============================================================

class StabilizerAction(Enum):
    """What the visualizer shows after a recomputation."""
    PLACEHOLDER = "placeholder"
    RENDER = "render"
    FREEZE = "freeze"
    CLEAR = "clear"


@dataclass(frozen=True)
class StabilizerDecision:
    """Outcome of ResultStabilizer.decide().

    Attributes:
        action: Which rule applied
        effective_result: Result to draw, None when nothing is drawn
        last_valid_result: Result retained after this decision
        full_rebuild: Whether a new valid result replaced the retained one
    """
    action: StabilizerAction
    effective_result: Optional[AnalysisResult]
    last_valid_result: Optional[AnalysisResult]
    full_rebuild: bool = False


class ResultStabilizer:
    """Chooses between the fresh analysis result and the last valid one.

    Rules, in order:
      1. Empty source and nothing retained: draw nothing, show the placeholder.
      2. Valid result: retain it and draw it; a result that is not the
         retained object forces a full rebuild.
      3. Invalid result, non-empty source, something retained: keep drawing
         the retained result.
      4. Otherwise: clear everything.

    Under rule 1 a valid result that arrives with an empty editor is not
    retained; retention starts with the first result for non-empty source.
    """

    def decide(
        self,
        source_text: str,
        result: Optional[AnalysisResult],
        last_valid: Optional[AnalysisResult],
    ) -> StabilizerDecision:
        has_source = bool(source_text.strip())

        if not has_source and last_valid is None:
            return StabilizerDecision(StabilizerAction.PLACEHOLDER, None, None)

        if result is not None and result.is_valid:
            return StabilizerDecision(
                StabilizerAction.RENDER,
                effective_result=result,
                last_valid_result=result,
                full_rebuild=result is not last_valid,
            )

        if has_source and last_valid is not None:
            return StabilizerDecision(StabilizerAction.FREEZE, last_valid, last_valid)

        return StabilizerDecision(StabilizerAction.CLEAR, None, last_valid)


# ============================================================
#  Visualizer state
# ============================================================

@dataclass(frozen=True)
class VisualizerState:
    """Everything that survives from one recomputation to the next.

    Attributes:
        graph: Graph currently shown
        last_valid_result: Last analysis result that was valid
        rendered_result: Result the current graph was built from
        viewport: Viewport the graph was laid out for
        coordinates: Layer x-coordinates for the viewport
        theme: Theme used for edge colors
        config: Geometry configuration
        decision: Stabilizer decision of the last recomputation
        error: Analysis error of the latest result, passed through unchanged
    """
    graph: GraphDescription = field(default_factory=GraphDescription)
    last_valid_result: Optional[AnalysisResult] = None
    rendered_result: Optional[AnalysisResult] = None
    viewport: Viewport = field(default_factory=Viewport)
    coordinates: Optional[LayerCoordinates] = None
    theme: Theme = Theme.LIGHT
    config: GraphConfig = field(default_factory=lambda: graph_config)
    decision: Optional[StabilizerDecision] = None
    error: Optional[AnalysisError] = None

    @classmethod
    def initial(
        cls,
        viewport: Optional[Viewport] = None,
        theme: Theme = Theme.LIGHT,
        config: Optional[GraphConfig] = None,
    ) -> VisualizerState:
        viewport = viewport or Viewport()
        config = config or graph_config
        return cls(
            viewport=viewport,
            coordinates=LayerCoordinates.from_viewport(viewport, config),
            theme=theme,
            config=config,
        )

    @property
    def show_placeholder(self) -> bool:
        """True when the renderer should show its "write some code" message.

        That is the case before the first recomputation, for the placeholder
        decision, and whenever no stack or heap node is drawn outside a freeze.
        """
        if self.decision is None or self.decision.action is StabilizerAction.PLACEHOLDER:
            return True
        if self.is_frozen:
            return False
        return not (self.graph.nodes_of(NodeKind.STACK) or self.graph.nodes_of(NodeKind.HEAP))

    @property
    def is_frozen(self) -> bool:
        return self.decision is not None and self.decision.action is StabilizerAction.FREEZE


def recompute(
    prev: VisualizerState,
    source_text: str,
    result: Optional[AnalysisResult],
    viewport: Optional[Viewport] = None,
    theme: Optional[Theme] = None,
    config: Optional[GraphConfig] = None,
    rng: Optional[random.Random] = None,
) -> VisualizerState:
    """Compute the next visualizer state for the latest source and result.

    The previous state is not modified. When the result to draw, the viewport,
    the theme and the configuration are all unchanged, the previous graph
    object is kept as is, so edge colors do not change between identical
    recomputations.

    Args:
        prev: State returned by the previous call (or VisualizerState.initial())
        source_text: Current editor contents
        result: Latest analysis result, None if none has arrived yet
        viewport: New viewport, defaults to the previous one
        theme: New theme, defaults to the previous one
        config: New configuration, defaults to the previous one
        rng: Random source for new edge colors

    Returns:
        A new VisualizerState
    """
    viewport = viewport or prev.viewport
    theme = theme or prev.theme
    config = config or prev.config

    decision = ResultStabilizer().decide(source_text, result, prev.last_valid_result)

    same_layout = config is prev.config and prev.coordinates is not None
    if (
        same_layout
        and viewport.width == prev.viewport.width
        and viewport.panel_split == prev.viewport.panel_split
    ):
        coordinates = prev.coordinates
    else:
        coordinates = LayerCoordinates.from_viewport(viewport, config)

    effective = decision.effective_result
    if effective is None:
        graph = GraphDescription()
    elif (
        not decision.full_rebuild
        and effective is prev.rendered_result
        and coordinates == prev.coordinates
        and viewport.height == prev.viewport.height
        and theme is prev.theme
        and config is prev.config
    ):
        graph = prev.graph
    else:
        if decision.full_rebuild:
            _log.debug("New analysis result; rebuilding the graph")
        graph = build_graph(
            effective,
            viewport_height=viewport.height,
            stack_x=coordinates.stack_x,
            heap_x=coordinates.heap_x,
            theme=theme,
            config=config,
            rng=rng,
        )

    if decision.action is StabilizerAction.FREEZE:
        _log.debug("Analysis failed; keeping the last valid graph")

    return VisualizerState(
        graph=graph,
        last_valid_result=decision.last_valid_result,
        rendered_result=effective,
        viewport=viewport,
        coordinates=coordinates,
        theme=theme,
        config=config,
        decision=decision,
        error=result.error if result is not None else None,
    )


# ============================================================
#  Command-line interface
# ============================================================

# Stands in for editor contents when a single result is given.
_NON_EMPTY_SOURCE = "<input>"


def load_updates(path: Path) -> List[Tuple[str, Optional[AnalysisResult]]]:
    """Read (source_code, analysis_result) pairs from a JSON file.

    The file holds either one analysis result object, or a list of
    ``{"source_code": ..., "analysis": ...}`` updates.

    Raises:
        AnalysisFormatError: If the file is not valid JSON of either shape
    """
    try:
        data: Any = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise AnalysisFormatError(f"{path}: invalid JSON: {exc}") from exc

    if isinstance(data, dict):
        return [(_NON_EMPTY_SOURCE, parse_analysis_result(data))]
    if not isinstance(data, list):
        raise AnalysisFormatError(f"{path}: expected an object or a list of updates")

    updates = []
    for i, item in enumerate(data):
        if not isinstance(item, dict):
            raise AnalysisFormatError(f"{path}: update {i} is not an object")
        analysis = item.get("analysis")
        result = parse_analysis_result(analysis) if analysis is not None else None
        updates.append((str(item.get("source_code", "")), result))
    return updates


def load_config(path: Optional[Path]) -> GraphConfig:
    if path is None:
        return graph_config
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path}: configuration must be a JSON object")
    return GraphConfig.from_dict(data)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="memory-visualizer",
        description="Turn analyzer stack/heap results into a memory layout graph.",
    )
    parser.add_argument("input", type=Path,
                        help="JSON file with one analysis result or a list of updates")
    parser.add_argument("--config", type=Path, help="JSON file overriding graph settings")
    parser.add_argument("--width", type=float, default=1280, help="viewport width (default: 1280)")
    parser.add_argument("--height", type=float, default=800, help="viewport height (default: 800)")
    parser.add_argument("--split", type=float, default=50.0,
                        help="visualizer panel width in percent (default: 50)")
    parser.add_argument("--theme", choices=[t.value for t in Theme], default=Theme.LIGHT.value)
    parser.add_argument("--json", action="store_true", help="print graphs as JSON")
    parser.add_argument("--diff", action="store_true",
                        help="print changes between consecutive graphs")
    parser.add_argument("--seed", type=int, help="seed for edge colors")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_config(args.config)
        updates = load_updates(args.input)
    except (OSError, ValueError) as exc:
        print(f"memory-visualizer: {exc}", file=sys.stderr)
        return 1

    theme = Theme(args.theme)
    rng = random.Random(args.seed)
    state = VisualizerState.initial(Viewport(args.width, args.height, args.split), theme, config)

    graphs = []
    previous: Optional[GraphDescription] = None
    for i, (source_text, result) in enumerate(updates):
        state = recompute(state, source_text, result, rng=rng)
        graphs.append(state.graph.to_dict(theme))
        if args.json:
            continue

        print(f"--- Update {i}: {state.decision.action.value} ---")
        if state.error is not None:
            print(f"Analysis error: {state.error}")
        if args.diff and previous is not None:
            print(diff_graphs(previous, state.graph))
        else:
            print(state.graph.to_console())
        print()
        previous = state.graph

    if args.json:
        print(json.dumps(graphs if len(graphs) != 1 else graphs[0], indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
