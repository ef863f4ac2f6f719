"""Shared fixtures for flowgate tests."""

from typing import Dict, Iterable, Optional, Tuple

import pytest

import flowgate.persistence as persistence
from flowgate.contracts import Edge, EdgeData, Node, NodeData, Workflow
from flowgate.persistence import InMemoryWorkflowStore, SQLWorkflowStore

EdgeSpec = Tuple[str, str, str, Dict]


def build_workflow(
    workflow_id: str,
    nodes: Iterable[str],
    edges: Iterable[EdgeSpec] = (),
    name: Optional[str] = None,
    params: Optional[Dict[str, Dict[str, str]]] = None,
) -> Workflow:
    """Workflow with one node per id; ``edges`` are ``(id, source, target, data)``."""
    params = params or {}
    return Workflow(
        id=workflow_id,
        name=name or workflow_id,
        created_by="designer",
        nodes=[
            Node(
                id=node_id,
                data=NodeData(
                    stage_name=f"Stage {node_id}",
                    parameters={"step": node_id, **params.get(node_id, {})},
                ),
            )
            for node_id in nodes
        ],
        edges=[
            Edge(id=edge_id, source=source, target=target, data=EdgeData(**data))
            for edge_id, source, target, data in edges
        ],
    )


AUTO = {"auto_approve": True}
MANUAL = {"requires_approval": True, "auto_approve": False, "approver_role": "ROLE_X"}


@pytest.fixture
def workflow_factory():
    return build_workflow


@pytest.fixture
def linear_workflow():
    return build_workflow("W1", ["A", "B"], [("e1", "A", "B", AUTO)])


@pytest.fixture
def approval_workflow():
    return build_workflow("W2", ["A", "B"], [("e1", "A", "B", MANUAL)])


@pytest.fixture
def join_workflow():
    return build_workflow(
        "W3",
        ["A", "B", "C"],
        [("e1", "A", "C", AUTO), ("e2", "B", "C", AUTO)],
        params={"C": {"slow": "true"}},
    )


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Each store backend; tests close it when done."""
    if request.param == "memory":
        return InMemoryWorkflowStore()
    return SQLWorkflowStore(f"sqlite+aiosqlite:///{tmp_path / 'flowgate.db'}")


@pytest.fixture(autouse=True)
def reset_store_singleton(monkeypatch):
    monkeypatch.setattr(persistence, "_store_instance", None)
    for var in ("FLOWGATE_CONFIG", "FLOWGATE_DATABASE_URL", "DATABASE_URL"):
        monkeypatch.delenv(var, raising=False)
