"""
Doer behaviour.

Executes a plan strictly in step id order. Each step action maps to a
handler; actions without a handler complete as a no-op. Steps that produce
material output (files, project trees) are delegated to an external
ArtifactProducer whose result is treated as opaque apart from its success
flag and message.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from ..events import LifecycleEvent
from ..exceptions import ImplementationFailed, MatrixError
from ..tasks import (
    Assessment, Implementation, OptimizationPayload, ResultMetrics, Step, StepStatus,
    Task, TaskResult, TaskStatus, TaskType,
)
from .base import Agent, AgentRole, StageBehaviour, WorkingMemory


# ══════════════════════════════════════════════════════════════════════════════
# ARTIFACT PRODUCER
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class ArtifactResult:
    """What an artifact producer reports back."""
    success: bool
    artifact_ref: Optional[str] = None
    message: str = ""


class ArtifactProducer(ABC):
    """External collaborator that writes material output for a task."""

    @abstractmethod
    async def produce(self, task: Task) -> ArtifactResult:
        ...


# ══════════════════════════════════════════════════════════════════════════════
# WORKSPACE
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class Workspace:
    """Scratch state shared by the step handlers of one implementation run."""
    task: Task
    code_lines: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    artifact: Optional[ArtifactResult] = None

    @property
    def code(self) -> str:
        return "\n".join(self.code_lines)


StepHandler = Callable[[Step, Workspace], Awaitable[None]]


# ══════════════════════════════════════════════════════════════════════════════
# DOER
# ══════════════════════════════════════════════════════════════════════════════

class Doer(StageBehaviour):
    """Executes plans step by step."""

    role = AgentRole.DOER
    default_capabilities = (
        ("task_execution", 1.0),
        ("progress_tracking", 1.0),
    )

    def __init__(self, artifact_producer: Optional[ArtifactProducer] = None):
        self.artifact_producer = artifact_producer
        self._step_handlers: Dict[str, StepHandler] = {
            # coding
            "analyze_requirements": self._analyze_requirements,
            "design_solution": self._design_solution,
            "implement_code": self._implement_code,
            "add_tests": self._add_tests,
            # optimization
            "analyze_current_code": self._analyze_current_code,
            "identify_optimizations": self._identify_optimizations,
            "implement_optimizations": self._implement_optimizations,
            "benchmark": self._benchmark,
            # project
            "generate_artifacts": self._generate_artifacts,
            "verify_artifacts": self._verify_artifacts,
            # replanning
            "apply_review_feedback": self._apply_review_feedback,
        }

    def register_step_handler(self, action: str, handler: StepHandler):
        """Register (or replace) the handler for a step action."""
        self._step_handlers[action] = handler

    async def process(self, agent: Agent, task: Task, memory: WorkingMemory) -> TaskResult:
        start_time = time.monotonic()
        agent.emit(LifecycleEvent.TASK_STARTED, task.to_dict())

        plan = task.plan
        if plan is None:
            raise ImplementationFailed(task.id, "task has no plan")
        plan.validate()

        workspace = Workspace(task=task)
        for step in plan.steps:
            if step.status == StepStatus.COMPLETED:
                continue
            if plan.next_step() is not step:
                raise ImplementationFailed(task.id, f"step {step.id} reached out of order", step_id=step.id)

            step.status = StepStatus.IN_PROGRESS
            memory.focus(f"step:{task.id}:{step.id}")
            await agent.work()

            handler = self._step_handlers.get(step.action, self._default_step)
            try:
                await handler(step, workspace)
            except MatrixError:
                step.status = StepStatus.FAILED
                raise
            except Exception as e:
                step.status = StepStatus.FAILED
                raise ImplementationFailed(task.id, str(e), step_id=step.id, cause=e) from e
            finally:
                memory.release(f"step:{task.id}:{step.id}")

            step.status = StepStatus.COMPLETED
            agent.logger.debug(f"Step {step.id} ({step.action}) completed for task {task.id}")
            agent.emit(LifecycleEvent.STEP_COMPLETED, step.to_dict())

        implementation = self._build_implementation(task, workspace)
        memory.remember(f"implementation:{task.id}", implementation.message)

        return TaskResult(
            task_id=task.id,
            status=TaskStatus.COMPLETED,
            agent_id=agent.agent_id,
            implementation=implementation,
            assessment=Assessment(quality=0.85, completeness=0.9, efficiency=0.8),
            suggestions=list(workspace.notes),
            metrics=ResultMetrics(
                time_spent=round((time.monotonic() - start_time) * 1000, 3),
                confidence=0.85,
            ),
        )

    def _build_implementation(self, task: Task, workspace: Workspace) -> Implementation:
        completed = [s.id for s in task.plan.completed_steps()]
        if workspace.artifact is not None:
            return Implementation(
                success=workspace.artifact.success,
                message=workspace.artifact.message or "Artifacts produced",
                artifact_ref=workspace.artifact.artifact_ref,
                completed_steps=completed,
            )
        if task.type == TaskType.CODING.value:
            message = "Implementation completed successfully"
        elif task.type == TaskType.OPTIMIZATION.value:
            message = "Code optimized successfully"
        else:
            message = "Task executed successfully"
        return Implementation(
            success=True,
            message=message,
            code=workspace.code or None,
            completed_steps=completed,
        )

    # ── Default ──────────────────────────────────────────────────────────

    async def _default_step(self, step: Step, workspace: Workspace):
        workspace.notes.append(f"No handler for '{step.action}', step completed as no-op")

    # ── Coding ───────────────────────────────────────────────────────────

    async def _analyze_requirements(self, step: Step, workspace: Workspace):
        payload = workspace.task.payload
        requirements = getattr(payload, "requirements", None) or [getattr(payload, "description", "")]
        workspace.code_lines.append(f"# Requirements: {'; '.join(r for r in requirements if r)}")

    async def _design_solution(self, step: Step, workspace: Workspace):
        workspace.code_lines.append("def solution(a, b, operation):")

    async def _implement_code(self, step: Step, workspace: Workspace):
        workspace.code_lines.extend([
            "    if not isinstance(a, (int, float)) or not isinstance(b, (int, float)):",
            "        raise TypeError(\"Invalid input: numbers required\")",
            "    if operation == \"add\":",
            "        return a + b",
            "    if operation == \"subtract\":",
            "        return a - b",
            "    raise ValueError(f\"Invalid operation: {operation}\")",
        ])

    async def _add_tests(self, step: Step, workspace: Workspace):
        workspace.code_lines.extend([
            "",
            "",
            "# Tests",
            "assert solution(2, 3, \"add\") == 5",
            "assert solution(5, 2, \"subtract\") == 3",
        ])

    # ── Optimization ─────────────────────────────────────────────────────

    async def _analyze_current_code(self, step: Step, workspace: Workspace):
        payload = workspace.task.payload
        if isinstance(payload, OptimizationPayload):
            workspace.notes.append(f"Original code: {len(payload.code.splitlines())} line(s)")

    async def _identify_optimizations(self, step: Step, workspace: Workspace):
        workspace.notes.append("Nested loop over pairs can be replaced by a closed form")

    async def _implement_optimizations(self, step: Step, workspace: Workspace):
        workspace.code_lines = [
            "def optimized_function(n):",
            "    # Use mathematical formula instead of loop",
            "    return (n * (n - 1)) // 2",
        ]

    async def _benchmark(self, step: Step, workspace: Workspace):
        workspace.notes.append("Complexity reduced from O(n^2) to O(1)")

    # ── Project ──────────────────────────────────────────────────────────

    async def _generate_artifacts(self, step: Step, workspace: Workspace):
        if self.artifact_producer is None:
            raise ImplementationFailed(
                workspace.task.id, "no artifact producer configured", step_id=step.id
            )
        workspace.artifact = await self.artifact_producer.produce(workspace.task)

    async def _verify_artifacts(self, step: Step, workspace: Workspace):
        if workspace.artifact is None:
            workspace.notes.append("No artifacts to verify")
        elif not workspace.artifact.success:
            workspace.notes.append(f"Artifact producer reported failure: {workspace.artifact.message}")

    # ── Replanning ───────────────────────────────────────────────────────

    async def _apply_review_feedback(self, step: Step, workspace: Workspace):
        review = workspace.task.review
        if review is not None and review.suggestions:
            workspace.notes.append(f"Addressed: {'; '.join(review.suggestions)}")
