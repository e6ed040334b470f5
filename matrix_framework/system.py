"""
High-level facade: one coordinator, a default agent population and the
pipeline orchestrator, constructed at startup and torn down explicitly.

Usage:
    system = AgentSystem()
    await system.initialize()

    outcome = await system.submit(Task(id="t1", type="coding",
                                       data={"description": "calculator"}))
    status = system.get_status()

    await system.shutdown()
"""

from typing import Any, Dict, Iterable, List, Optional

from .agents import AgentRole, ArtifactProducer, create_agent
from .agents.base import Agent
from .config import AgentConfig, PipelineConfig
from .coordinator import Coordinator
from .metrics import MetricsManager
from .pipeline import PipelineOrchestrator, PipelineOutcome
from .tasks import Task


class AgentSystem:
    """Facade over coordinator, agents and orchestrator."""

    def __init__(self, pipeline_config: Optional[PipelineConfig] = None,
                 agent_config: Optional[AgentConfig] = None,
                 metrics: Optional[MetricsManager] = None,
                 artifact_producer: Optional[ArtifactProducer] = None):
        self.metrics = metrics or MetricsManager()
        self.coordinator = Coordinator(metrics=self.metrics)
        self.orchestrator = PipelineOrchestrator(
            self.coordinator, config=pipeline_config, metrics=self.metrics
        )
        self.agent_config = agent_config
        self.artifact_producer = artifact_producer
        self._initialized = False

    async def initialize(self, planners: int = 1, doers: int = 1, reviewers: int = 1):
        """Create and register the default agent population."""
        if self._initialized:
            return

        population = [
            (AgentRole.PLANNER, "Planner", planners, {}),
            (AgentRole.DOER, "Doer", doers, {"artifact_producer": self.artifact_producer}),
            (AgentRole.REVIEWER, "Reviewer", reviewers, {}),
        ]
        for role, base_name, count, kwargs in population:
            for i in range(count):
                name = base_name if count == 1 else f"{base_name} {i + 1}"
                agent = create_agent(role, name, config=self.agent_config, **kwargs)
                await self.add_agent(agent)

        self._initialized = True

    async def add_agent(self, agent: Agent) -> str:
        await agent.initialize()
        return await self.coordinator.register_agent(agent)

    async def submit(self, task: Task) -> PipelineOutcome:
        """Run one task through the pipeline."""
        if not self._initialized:
            await self.initialize()
        return await self.orchestrator.run(task)

    async def submit_many(self, tasks: Iterable[Task]) -> List[PipelineOutcome]:
        if not self._initialized:
            await self.initialize()
        return await self.orchestrator.run_many(tasks)

    def get_status(self) -> Dict[str, Any]:
        """Get full system status."""
        return {
            "initialized": self._initialized,
            "registry": self.coordinator.get_registry_info(),
            "metrics": self.metrics.get_summary(),
        }

    def list_capabilities(self) -> List[Dict[str, Any]]:
        """List all capabilities across all agents."""
        caps = []
        for agent in self.coordinator.get_all_agents():
            for cap in agent.capabilities:
                caps.append({
                    "name": cap.name,
                    "confidence": cap.confidence,
                    "agent": agent.name,
                    "agent_id": agent.agent_id,
                    "role": agent.role.value,
                })
        return caps

    async def shutdown(self):
        await self.coordinator.shutdown()
        self._initialized = False
