from typing import Optional, List, Tuple

# Utils
from utils.log_utils import LogUtil

# Models
from models.flow_data import FlowData, StartNode


class TriggerIdentificationService:
    """
    Service for matching inbound text against the keyword triggers of start nodes.
    Used by the engine to pick an entry point and by the runtime to pick a flow.
    """

    def __init__(self, log_util: LogUtil):
        self.log_util = log_util

    @staticmethod
    def keyword_matches(text: str, keyword: str, case_sensitive: bool) -> bool:
        """
        Case-sensitive triggers need the whole input to equal the keyword.
        Otherwise the keyword only has to appear somewhere in the input, ignoring case.
        """
        if not keyword:
            return False
        if case_sensitive:
            return text == keyword
        return keyword.lower() in text.lower()

    def find_matching_start_node(self, flow: FlowData, text: str) -> Optional[StartNode]:
        """
        Return the first start node with a keyword matching the text, or None.
        """
        if text is None:
            return None

        for node in flow.start_nodes():
            trigger = node.data.trigger
            if not trigger.keywords:
                continue

            for keyword in trigger.keywords:
                if self.keyword_matches(text, keyword, trigger.caseSensitive):
                    self.log_util.info(
                        service_name="TriggerIdentificationService",
                        message=f"[TRIGGER_MATCH] Input '{text}' matched keyword '{keyword}' on start node {node.id} of flow {flow.id}"
                    )
                    return node

        return None

    def find_matching_flow(self, flows: List[FlowData], text: str) -> Optional[Tuple[FlowData, StartNode]]:
        """
        Scan flows in order and return the first (flow, start node) whose trigger matches.
        """
        for flow in flows:
            start_node = self.find_matching_start_node(flow, text)
            if start_node is not None:
                return flow, start_node

        self.log_util.info(
            service_name="TriggerIdentificationService",
            message=f"[TRIGGER_MATCH] No trigger matched input '{text}' across {len(flows)} flow(s)"
        )
        return None
