"""Shared fixtures for flow engine tests."""

from datetime import datetime
from types import SimpleNamespace
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from models.flow_data import FlowData
from models.execution_state import ExecutionState
from models.scheduled_step_data import ScheduledStepData


class InMemoryFlowDB:
    """Stand-in for FlowDB keeping everything in dicts, same async surface."""

    def __init__(self):
        self.flows: Dict[str, FlowData] = {}
        self.states: Dict[str, ExecutionState] = {}
        self.archive: List[ExecutionState] = []
        self.steps: Dict[str, ScheduledStepData] = {}
        self._next_id = 1

    async def create_flow(self, flow: FlowData) -> FlowData:
        saved = flow.model_copy(deep=True)
        saved.id = f"flow-{self._next_id}"
        self._next_id += 1
        self.flows[saved.id] = saved
        return saved.model_copy(deep=True)

    async def get_flow_by_id(self, flow_id: str) -> Optional[FlowData]:
        flow = self.flows.get(flow_id)
        return flow.model_copy(deep=True) if flow else None

    async def get_flows(self, status: Optional[str] = None) -> List[FlowData]:
        return [
            flow.model_copy(deep=True) for flow in self.flows.values()
            if status is None or flow.status == status
        ]

    async def get_published_flows(self) -> List[FlowData]:
        return await self.get_flows(status="published")

    async def update_flow(self, flow_id: str, flow: FlowData) -> Optional[FlowData]:
        if flow_id not in self.flows:
            return None
        saved = flow.model_copy(deep=True)
        saved.id = flow_id
        saved.updated_at = datetime.utcnow()
        self.flows[flow_id] = saved
        return saved.model_copy(deep=True)

    async def delete_flow(self, flow_id: str) -> bool:
        return self.flows.pop(flow_id, None) is not None

    async def save_execution_state(self, state: ExecutionState) -> ExecutionState:
        self.states[state.instance_id] = state.model_copy(deep=True)
        return state

    async def get_execution_state(self, instance_id: str) -> Optional[ExecutionState]:
        state = self.states.get(instance_id)
        return state.model_copy(deep=True) if state else None

    async def archive_execution_state(self, state: ExecutionState) -> bool:
        self.archive.append(state.model_copy(deep=True))
        return self.states.pop(state.instance_id, None) is not None

    async def save_scheduled_step(self, step: ScheduledStepData) -> ScheduledStepData:
        if step.dedupe_key not in self.steps:
            self.steps[step.dedupe_key] = step.model_copy(deep=True)
        return self.steps[step.dedupe_key].model_copy(deep=True)

    async def get_due_scheduled_steps(self, limit: int = 100) -> List[ScheduledStepData]:
        now = datetime.utcnow()
        due = [s for s in self.steps.values() if not s.processed and s.fire_at <= now]
        due.sort(key=lambda s: s.fire_at)
        return [s.model_copy(deep=True) for s in due[:limit]]

    async def mark_scheduled_step_processed(self, dedupe_key: str) -> bool:
        step = self.steps.get(dedupe_key)
        if step is None:
            return False
        step.processed = True
        step.attempts += 1
        return True

    async def record_scheduled_step_failure(self, dedupe_key: str, error: str) -> bool:
        step = self.steps.get(dedupe_key)
        if step is None:
            return False
        step.last_error = error
        step.attempts += 1
        return True

    async def cancel_scheduled_steps(self, instance_id: str, execution_id: str) -> int:
        cancelled = 0
        for step in self.steps.values():
            if step.instance_id == instance_id and not step.processed and step.step_id.startswith(f"{execution_id}:"):
                step.processed = True
                step.cancelled = True
                cancelled += 1
        return cancelled


@pytest.fixture
def log_util():
    return MagicMock()


@pytest.fixture
def flow_db():
    return InMemoryFlowDB()


def node(node_id: str, node_type: str, **data) -> dict:
    return {"id": node_id, "type": node_type, "position": {"x": 0, "y": 0}, "data": data}


def edge(source: str, target: str, handle: Optional[str] = None, edge_id: Optional[str] = None) -> dict:
    return {
        "id": edge_id or f"e-{source}-{handle or 'default'}-{target}",
        "source": source,
        "target": target,
        "sourceHandle": handle,
    }


def start(node_id: str = "start", keywords=("hi",), case_sensitive: bool = False) -> dict:
    return node(node_id, "start", trigger={"type": "keyword", "keywords": list(keywords), "caseSensitive": case_sensitive})


def make_flow(nodes: List[dict], edges: List[dict], **fields) -> FlowData:
    return FlowData.model_validate({
        "id": fields.pop("id", "flow-test"),
        "name": fields.pop("name", "Test flow"),
        "nodes": nodes,
        "edges": edges,
        **fields,
    })


@pytest.fixture
def graph():
    """Builders for flow graphs: graph.node, graph.edge, graph.start, graph.flow."""
    return SimpleNamespace(node=node, edge=edge, start=start, flow=make_flow)
