"""Shared fixtures for the Matrix Framework test suite."""

from datetime import datetime, timedelta

import pytest

from matrix_framework.agents import AgentRole, create_agent
from matrix_framework.config import AgentConfig, PipelineConfig
from matrix_framework.coordinator import Coordinator
from matrix_framework.metrics import MetricsManager
from matrix_framework.pipeline import PipelineOrchestrator
from matrix_framework.tasks import Task


@pytest.fixture
def agent_cfg():
    """Agent config with no simulated work delay."""
    return AgentConfig(work_delay=0.0)


@pytest.fixture
def metrics():
    return MetricsManager()


@pytest.fixture
def coordinator(metrics):
    return Coordinator(metrics=metrics)


@pytest.fixture
def orchestrator(coordinator):
    return PipelineOrchestrator(
        coordinator, config=PipelineConfig(acceptance_threshold=0.8, max_retries=1)
    )


@pytest.fixture
def make_agent(agent_cfg):
    """Factory: make_agent("doer", agent_id="d1", **behaviour_kwargs)."""
    def _make(role, name=None, agent_id=None, **kwargs):
        role = AgentRole(role)
        return create_agent(role, name or role.value.title(), agent_id=agent_id,
                            config=agent_cfg, **kwargs)
    return _make


@pytest.fixture
def full_team(make_agent):
    """One planner, one doer and one reviewer."""
    return [
        make_agent("planner", agent_id="planner-1"),
        make_agent("doer", agent_id="doer-1"),
        make_agent("reviewer", agent_id="reviewer-1"),
    ]


@pytest.fixture
def coding_task():
    return Task(
        id="t1",
        type="coding",
        data={
            "description": "Calculator with add and subtract",
            "requirements": ["add two numbers", "subtract two numbers"],
        },
    )


@pytest.fixture
def optimization_task():
    return Task(
        id="opt-1",
        type="optimization",
        data={
            "code": "def count_pairs(n):\n    total = 0\n    for i in range(n):\n"
                    "        for j in range(i + 1, n):\n            total += 1\n    return total",
            "goal": "reduce complexity",
        },
    )


@pytest.fixture
def expired_deadline():
    return datetime.now() - timedelta(seconds=1)


@pytest.fixture
def register(coordinator):
    """Async helper: await register(agent, ...) on the coordinator fixture."""
    async def _register(*agents):
        for agent in agents:
            await coordinator.register_agent(agent)
    return _register
