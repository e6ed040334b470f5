"""
Matrix Framework

Multi-agent coordination core: planner, doer and reviewer agents routed by
capability through a plan -> implement -> review pipeline with a bounded
feedback loop.
"""

__version__ = "1.0.0"

from .agents import Agent, AgentRole, ArtifactProducer, ArtifactResult, create_agent
from .coordinator import Coordinator
from .pipeline import AbortReason, PipelineOrchestrator, PipelineOutcome, PipelineState
from .system import AgentSystem
from .tasks import Task, TaskResult, TaskStatus, TaskType

__all__ = [
    "Agent", "AgentRole", "ArtifactProducer", "ArtifactResult", "create_agent",
    "Coordinator", "PipelineOrchestrator", "PipelineOutcome", "PipelineState",
    "AbortReason", "AgentSystem", "Task", "TaskResult", "TaskStatus", "TaskType",
]
