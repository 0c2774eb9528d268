"""Request decomposition: architect, builder, validator and the refinement loop."""

from taskpilot.planning.catalog import KeywordToolCategorizer, ToolCategorizer
from taskpilot.planning.workflow import RequestDecomposer, build_decomposition_graph

__all__ = [
    "KeywordToolCategorizer",
    "RequestDecomposer",
    "ToolCategorizer",
    "build_decomposition_graph",
]
