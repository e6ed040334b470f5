"""
Reviewer behaviour.

Scores an implementation with fixed, inspectable rules. Nothing here
understands code: each rule looks for textual markers of an expected
safeguard and applies a fixed penalty when the marker is missing.

Rules by task type:
    coding:        base quality 0.9, -0.1 per missing safeguard
                   (error handling, input validation, embedded tests)
    optimization:  efficiency 0.9, -0.2 without the closed-form marker,
                   -0.1 without the explanatory comment
    project:       quality -0.3 when the artifact producer failed
    other:         fixed assessment
"""

import time
from typing import Callable, Dict, List, Optional

from ..events import LifecycleEvent
from ..tasks import Assessment, ResultMetrics, Task, TaskResult, TaskStatus, TaskType
from .base import Agent, AgentMessage, AgentRole, StageBehaviour, WorkingMemory


ERROR_HANDLING_MARKER = "raise "
INPUT_VALIDATION_MARKER = "isinstance("
EMBEDDED_TEST_MARKER = "assert "
CLOSED_FORM_MARKER = "n * (n - 1)"
EXPLANATION_MARKER = "# Use mathematical formula"

SAFEGUARD_PENALTY = 0.1
CLOSED_FORM_PENALTY = 0.2
EXPLANATION_PENALTY = 0.1
ARTIFACT_FAILURE_PENALTY = 0.3

REVIEW_REQUEST = "review_request"

ReviewRule = Callable[[Task], TaskResult]


class Reviewer(StageBehaviour):
    """Assesses implementations."""

    role = AgentRole.REVIEWER
    default_capabilities = (
        ("quality_assessment", 0.9),
        ("improvement_suggestions", 0.85),
        ("performance_analysis", 0.8),
    )

    def __init__(self, rules: Optional[Dict[str, ReviewRule]] = None):
        self._rules: Dict[str, ReviewRule] = {
            TaskType.CODING.value: self.review_code,
            TaskType.OPTIMIZATION.value: self.review_optimization,
            TaskType.PROJECT.value: self.review_project,
        }
        self._rules.update(rules or {})
        self.review_requests: List[AgentMessage] = []

    async def process(self, agent: Agent, task: Task, memory: WorkingMemory) -> TaskResult:
        start_time = time.monotonic()
        agent.emit(LifecycleEvent.REVIEW_STARTED, task.to_dict())

        rule = self._rules.get(task.type, self.review_default)
        await agent.work()
        result = rule(task)

        result.agent_id = agent.agent_id
        result.metrics.time_spent = round((time.monotonic() - start_time) * 1000, 3)
        memory.remember(f"review:{task.id}", result.assessment.to_dict())
        agent.logger.info(
            f"Reviewed task {task.id}: quality={result.assessment.quality:.2f} "
            f"completeness={result.assessment.completeness:.2f} "
            f"efficiency={result.assessment.efficiency:.2f}"
        )
        return result

    async def handle_message(self, agent: Agent, message: AgentMessage) -> None:
        """Keep review requests (content ``{"type": "review_request", ...}``) apart."""
        content = message.content
        if isinstance(content, dict) and content.get("type") == REVIEW_REQUEST:
            self.review_requests.append(message)
            agent.logger.info(f"Reviewer {agent.name} received review request from {message.sender}")
            return
        await super().handle_message(agent, message)

    @staticmethod
    def _code(task: Task) -> str:
        impl = task.implementation
        return (impl.code or "") if impl else ""

    # ── Rules ────────────────────────────────────────────────────────────

    def review_code(self, task: Task) -> TaskResult:
        code = self._code(task)
        quality = 0.9
        suggestions: List[str] = []

        if ERROR_HANDLING_MARKER not in code:
            quality -= SAFEGUARD_PENALTY
            suggestions.append("Add error handling")
        if INPUT_VALIDATION_MARKER not in code:
            quality -= SAFEGUARD_PENALTY
            suggestions.append("Add input validation")
        if EMBEDDED_TEST_MARKER not in code:
            quality -= SAFEGUARD_PENALTY
            suggestions.append("Add unit tests")

        return TaskResult(
            task_id=task.id,
            status=TaskStatus.COMPLETED,
            assessment=Assessment(
                quality=round(quality, 2),
                completeness=0.9 if len(code) > 100 else 0.7,
                efficiency=0.85,
            ),
            suggestions=suggestions,
            metrics=ResultMetrics(confidence=0.9),
        )

    def review_optimization(self, task: Task) -> TaskResult:
        code = self._code(task)
        efficiency = 0.9
        suggestions: List[str] = []

        if CLOSED_FORM_MARKER not in code:
            efficiency -= CLOSED_FORM_PENALTY
            suggestions.append("Consider using mathematical formula")
        if EXPLANATION_MARKER not in code:
            efficiency -= EXPLANATION_PENALTY
            suggestions.append("Add comments explaining optimization")

        efficiency = round(efficiency, 2)
        return TaskResult(
            task_id=task.id,
            status=TaskStatus.COMPLETED,
            assessment=Assessment(quality=0.85, completeness=0.9, efficiency=efficiency),
            suggestions=suggestions,
            metrics=ResultMetrics(
                confidence=0.85,
                performance_improvement="significant" if efficiency > 0.8 else "moderate",
            ),
        )

    def review_project(self, task: Task) -> TaskResult:
        impl = task.implementation
        quality = 0.85
        suggestions: List[str] = []

        if impl is None or not impl.success:
            quality -= ARTIFACT_FAILURE_PENALTY
            reason = impl.message if impl else "no implementation"
            suggestions.append(f"Fix artifact production: {reason}")

        return TaskResult(
            task_id=task.id,
            status=TaskStatus.COMPLETED,
            assessment=Assessment(quality=round(quality, 2), completeness=0.9, efficiency=0.8),
            suggestions=suggestions,
            metrics=ResultMetrics(confidence=0.8),
        )

    def review_default(self, task: Task) -> TaskResult:
        return TaskResult(
            task_id=task.id,
            status=TaskStatus.COMPLETED,
            assessment=Assessment(quality=0.85, completeness=0.9, efficiency=0.8),
            suggestions=["Consider adding more detailed documentation"],
            metrics=ResultMetrics(confidence=0.85),
        )
