"""
example_usage.py

Replays a short editing session through the visualizer and prints the graph
after every keystroke batch, showing freeze-on-error and dangling pointers.
"""

import random

from memory_model import (
    AnalysisError,
    AnalysisResult,
    HeapBlock,
    HeapBlockState,
    StackPointer,
    StackVariable,
    diff_graphs,
)
from memory_visualizer import Viewport, VisualizerState, recompute


def create_session():
    """Return (source_code, analysis_result) pairs for a small C program."""
    step1 = AnalysisResult(
        stack=[
            StackVariable("x", 4, "10", "Integer"),
            StackPointer("p", 8, "x"),
        ],
    )
    step2 = AnalysisResult(
        stack=[
            StackVariable("x", 4, "10", "Integer"),
            StackPointer("p", 8, "x"),
            StackPointer("h", 8, None),
        ],
        heap=[
            HeapBlock(4, HeapBlockState.ALLOCATED, "0", current_pointer_id="h"),
            HeapBlock(12, HeapBlockState.UNALLOCATED),
        ],
    )
    typo = AnalysisResult(error=AnalysisError("Parser Error: unexpected token", 5, 3))
    step3 = AnalysisResult(
        stack=[
            StackVariable("x", 4, "10", "Integer"),
            StackPointer("p", 8, "x"),
            StackPointer("h", 8, None),
        ],
        heap=[
            HeapBlock(4, HeapBlockState.FREE, "0", dangling_pointer_ids=["h"]),
            HeapBlock(12, HeapBlockState.UNALLOCATED),
        ],
    )

    return [
        ("int x = 10;\nint* p = &x;", step1),
        ("int x = 10;\nint* p = &x;\nint* h = malloc(sizeof(int));", step2),
        ("int x = 10;\nint* p = &x;\nint* h = malloc(sizeof(int));\nfr", typo),
        ("int x = 10;\nint* p = &x;\nint* h = malloc(sizeof(int));\nfree(h);", step3),
    ]


def main():
    """Run the example session."""
    print("=" * 70)
    print("Memory Layout Graph - Editing Session")
    print("=" * 70)
    print()

    rng = random.Random(42)
    state = VisualizerState.initial(Viewport(width=1280, height=800, panel_split=50))
    previous = None

    for source, result in create_session():
        state = recompute(state, source, result, rng=rng)
        print("-" * 70)
        print(source)
        print("-" * 70)
        print(f"[{state.decision.action.value}]", state.error or "")
        if previous is None:
            state.graph.print()
        else:
            print(diff_graphs(previous, state.graph))
        print()
        previous = state.graph


if __name__ == "__main__":
    main()
