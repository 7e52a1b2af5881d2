from langgraph.graph import END, StateGraph

from pipeline.nodes import node_detect, node_ingest, node_interpret, node_normalize, respond
from pipeline.state import DetectionState


def continue_unless_error(next_node: str):
    """Router factory: on error skip to `respond`, else go to `next_node`."""

    def router(state: DetectionState) -> str:
        if state.get("error") is not None:
            return "respond"
        return next_node

    return router


def build_graph():
    workflow = StateGraph(DetectionState)

    workflow.add_node("ingest", node_ingest)
    workflow.add_node("normalize", node_normalize)
    workflow.add_node("detect", node_detect)
    workflow.add_node("interpret", node_interpret)
    workflow.add_node("respond", respond)

    workflow.set_entry_point("ingest")

    # Every stage either hands over to the next one or short-circuits
    for stage, next_stage in (
        ("ingest", "normalize"),
        ("normalize", "detect"),
        ("detect", "interpret"),
    ):
        workflow.add_conditional_edges(
            stage,
            continue_unless_error(next_stage),
            {next_stage: next_stage, "respond": "respond"},
        )

    workflow.add_edge("interpret", "respond")
    workflow.add_edge("respond", END)

    return workflow.compile()


pipeline = build_graph()
