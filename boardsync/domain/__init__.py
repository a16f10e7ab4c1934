"""
Domain logic for boardsync.

This package contains:
- Pure algorithms: composite evaluation, bingo detection, board layout
- Schemas (pydantic) and store-aware validation
- Derived-data recomputers
- LocalDataLayer, the synchronous API used by the UI

The algorithms never touch the store; the recomputers and the data layer
feed them rows and write the results back through LocalWriter.
"""

from .bingo import BingoResult, detect_bingo_lines, format_bingo_message
from .evaluator import (
    LeafNode,
    Operator,
    OperatorNode,
    clamp_threshold,
    evaluate_composite_tree,
)
from .layout import fisher_yates_shuffle, generate_counter_task_title, plan_layout
from .recompute import DerivedDataRecomputer
from .services import LocalDataLayer, WriteResult

__all__ = [
    # Algorithms
    "BingoResult",
    "detect_bingo_lines",
    "format_bingo_message",
    "Operator",
    "OperatorNode",
    "LeafNode",
    "clamp_threshold",
    "evaluate_composite_tree",
    "fisher_yates_shuffle",
    "generate_counter_task_title",
    "plan_layout",
    # Services
    "DerivedDataRecomputer",
    "LocalDataLayer",
    "WriteResult",
]
