"""
ProductMiner Graph Workflow

Builds and compiles the per-URL LangGraph workflow.
"""

from langgraph.graph import StateGraph, START, END

from .graph_state import UrlPipelineState
from .graph_nodes import (
    PipelineServices,
    fetch_node,
    route_after_fetch,
    reduce_node,
    extract_node,
    route_after_extract,
    parse_node,
)

_COMPILED = None


def build_url_graph():
    """
    Builds and compiles the workflow for one product URL.

    START -> fetch -> [salvaged: END] or [html: reduce]
    reduce -> extract -> [model failed: END] or [text: parse]
    parse -> END

    Returns:
        CompiledGraph: The compiled LangGraph workflow
    """
    builder = StateGraph(UrlPipelineState)

    builder.add_node("fetch", fetch_node)
    builder.add_node("reduce", reduce_node)
    builder.add_node("extract", extract_node)
    builder.add_node("parse", parse_node)

    builder.add_edge(START, "fetch")
    builder.add_conditional_edges(
        "fetch",
        route_after_fetch,
        {
            "reduce": "reduce",
            "done": END,
        }
    )
    builder.add_edge("reduce", "extract")
    builder.add_conditional_edges(
        "extract",
        route_after_extract,
        {
            "parse": "parse",
            "done": END,
        }
    )
    builder.add_edge("parse", END)

    return builder.compile()


def get_url_graph():
    global _COMPILED
    if _COMPILED is None:
        _COMPILED = build_url_graph()
    return _COMPILED


def run_url_workflow(
    url: str,
    instruction: str,
    services: PipelineServices,
    index: int = 0,
    run_id: str = "",
) -> dict:
    """
    Runs the workflow for one URL and returns its ProductRecord.

    FetchError and ExtractionCancelled propagate to the caller.
    """
    final_state = get_url_graph().invoke({
        "run_id": run_id,
        "url": url,
        "instruction": instruction,
        "index": index,
        "services": services,
    })
    record = final_state.get("record")
    if record is None:
        return {"error": "No data extracted", "url": url}
    return record
