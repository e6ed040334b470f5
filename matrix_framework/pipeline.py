"""
Pipeline Orchestrator - Plan / Implement / Review state machine

    PLANNING -> IMPLEMENTING -> REVIEWING -> DONE
        ^                           |
        +------- REPLANNING <-------+   (quality below threshold)

Any stage failure, deadline overrun or exhausted replan budget ends in
ABORTED with an AbortReason. The orchestrator owns the Task and hands it to
exactly one agent at a time; stages of one task never overlap.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .config import PipelineConfig, pipeline_config
from .coordinator import Coordinator
from .exceptions import (
    DeadlineExceeded, ImplementationFailed, MatrixError, PlanningFailed,
    PlanValidationError, QualityThresholdNotMet, ReviewFailed,
)
from .metrics import MetricsManager
from .tasks import PipelineStage, Task, TaskResult, TaskStatus


class PipelineState(Enum):
    PLANNING = "planning"
    IMPLEMENTING = "implementing"
    REVIEWING = "reviewing"
    REPLANNING = "replanning"
    DONE = "done"
    ABORTED = "aborted"


class AbortReason(Enum):
    PLANNING_FAILED = "PlanningFailed"
    IMPLEMENTATION_FAILED = "ImplementationFailed"
    REVIEW_FAILED = "ReviewFailed"
    QUALITY_THRESHOLD_NOT_MET = "QualityThresholdNotMet"
    DEADLINE_EXCEEDED = "DeadlineExceeded"


_STAGE_FAILURES = {
    PipelineStage.PLANNING: (AbortReason.PLANNING_FAILED, PlanningFailed),
    PipelineStage.IMPLEMENTING: (AbortReason.IMPLEMENTATION_FAILED, ImplementationFailed),
    PipelineStage.REVIEWING: (AbortReason.REVIEW_FAILED, ReviewFailed),
}


@dataclass
class Transition:
    from_state: Optional[PipelineState]
    to_state: PipelineState
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_state.value if self.from_state else None,
            "to": self.to_state.value,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class PipelineOutcome:
    """Terminal state of one pipeline run."""
    task: Task
    state: PipelineState
    result: TaskResult
    reason: Optional[AbortReason] = None
    error: Optional[MatrixError] = None
    replans: int = 0
    transitions: List[Transition] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == PipelineState.DONE

    @property
    def states(self) -> List[PipelineState]:
        return [t.to_state for t in self.transitions]

    def raise_for_status(self):
        """Raise the abort error, if the pipeline aborted."""
        if self.error is not None:
            raise self.error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task.id,
            "state": self.state.value,
            "reason": self.reason.value if self.reason else None,
            "error": self.error.to_dict() if self.error else None,
            "replans": self.replans,
            "transitions": [t.to_dict() for t in self.transitions],
            "result": self.result.to_dict(),
        }


class _StageTimeout(Exception):
    pass


class PipelineOrchestrator:
    """Sequences planner, doer and reviewer for a task.

    Responsibilities:
        - Stage sequencing through the coordinator
        - Feedback loop bounded by max_retries
        - Deadline enforcement per stage
        - Terminal task status (completed only at DONE)
    """

    def __init__(self, coordinator: Coordinator,
                 config: Optional[PipelineConfig] = None,
                 metrics: Optional[MetricsManager] = None):
        self.coordinator = coordinator
        self.config = config or pipeline_config
        self.metrics = metrics or coordinator.metrics
        self.logger = logging.getLogger("pipeline")

    async def run(self, task: Task) -> PipelineOutcome:
        """Drive a task to DONE or ABORTED."""
        transitions: List[Transition] = []
        replans = 0
        state = self._enter(task, transitions, None, PipelineState.PLANNING)
        self.logger.info(f"Pipeline started for task {task.id} ({task.type})")

        while True:
            if state == PipelineState.PLANNING:
                result, error = await self._stage(task, PipelineStage.PLANNING)
                if error is None:
                    try:
                        result.plan.validate()
                    except (AttributeError, PlanValidationError) as e:
                        error = PlanningFailed(task.id, f"invalid plan: {e}", cause=e)
                if error is not None:
                    return self._abort(task, transitions, state, error, replans, result)
                task.plan = result.plan
                task.touch()
                state = self._enter(task, transitions, state, PipelineState.IMPLEMENTING)

            elif state == PipelineState.IMPLEMENTING:
                result, error = await self._stage(task, PipelineStage.IMPLEMENTING)
                if error is not None:
                    return self._abort(task, transitions, state, error, replans, result)
                task.implementation = result.implementation
                task.touch()
                state = self._enter(task, transitions, state, PipelineState.REVIEWING)

            elif state == PipelineState.REVIEWING:
                result, error = await self._stage(task, PipelineStage.REVIEWING)
                if error is not None:
                    return self._abort(task, transitions, state, error, replans, result)
                task.review = result
                quality = result.assessment.quality

                if quality >= self.config.acceptance_threshold:
                    task.set_status(TaskStatus.COMPLETED)
                    self._enter(task, transitions, state, PipelineState.DONE)
                    self.metrics.record_pipeline_outcome(PipelineState.DONE.value)
                    self.logger.info(
                        f"Task {task.id} done: quality {quality:.2f} after {replans} replan(s)"
                    )
                    return PipelineOutcome(
                        task=task, state=PipelineState.DONE, result=result,
                        replans=replans, transitions=transitions,
                    )

                if replans >= self.config.max_retries:
                    error = QualityThresholdNotMet(
                        task.id, quality, self.config.acceptance_threshold, attempts=replans
                    )
                    return self._abort(task, transitions, state, error, replans, result)

                replans += 1
                task.record_attempt(replans)
                self.metrics.record_replan()
                self.logger.info(
                    f"Task {task.id} quality {quality:.2f} below "
                    f"{self.config.acceptance_threshold:.2f}, replanning ({replans}/{self.config.max_retries})"
                )
                state = self._enter(task, transitions, state, PipelineState.REPLANNING)
                state = self._enter(task, transitions, state, PipelineState.PLANNING)

    async def run_many(self, tasks: Iterable[Task]) -> List[PipelineOutcome]:
        """Run several pipelines concurrently. Results follow input order."""
        return await asyncio.gather(*(self.run(task) for task in tasks))

    # ── Internals ────────────────────────────────────────────────────────

    def _enter(self, task: Task, transitions: List[Transition],
               current: Optional[PipelineState], target: PipelineState) -> PipelineState:
        transitions.append(Transition(from_state=current, to_state=target))
        self.logger.debug(
            f"Task {task.id}: {current.value if current else 'start'} -> {target.value}"
        )
        return target

    async def _stage(self, task: Task,
                     stage: PipelineStage) -> Tuple[Optional[TaskResult], Optional[MatrixError]]:
        """Dispatch one stage. Returns (result, None) or (result_or_None, error)."""
        task.stage = stage
        start = time.monotonic()
        try:
            result = await self._dispatch(task)
        except _StageTimeout:
            return None, DeadlineExceeded(task.id, stage=stage.value)
        finally:
            self.metrics.record_stage(stage.value, time.monotonic() - start)

        if result.succeeded:
            return result, None

        _, error_cls = _STAGE_FAILURES[stage]
        cause = result.cause
        if isinstance(cause, error_cls):
            return result, cause
        return result, error_cls(task.id, result.error or "stage failed", cause=cause)

    async def _dispatch(self, task: Task) -> TaskResult:
        remaining = task.remaining_time()
        if remaining is None:
            return await self.coordinator.dispatch_task(task, wait=True)
        if remaining <= 0:
            raise _StageTimeout()
        try:
            return await asyncio.wait_for(self.coordinator.dispatch_task(task, wait=True), remaining)
        except asyncio.TimeoutError:
            raise _StageTimeout()

    def _abort(self, task: Task, transitions: List[Transition],
               current: PipelineState, error: MatrixError, replans: int,
               result: Optional[TaskResult]) -> PipelineOutcome:
        reason = self._reason_for(error, task.stage)
        task.mark_failed(str(error), error)
        self._enter(task, transitions, current, PipelineState.ABORTED)
        self.metrics.record_pipeline_outcome(PipelineState.ABORTED.value, reason.value)
        self.logger.warning(f"Task {task.id} aborted ({reason.value}): {error}")

        if result is None or result.succeeded:
            failed = TaskResult.failed(task.id, str(error), cause=error)
            if result is not None:
                failed.agent_id = result.agent_id
                failed.assessment = result.assessment
                failed.suggestions = list(result.suggestions)
            result = failed
        return PipelineOutcome(
            task=task, state=PipelineState.ABORTED, result=result, reason=reason,
            error=error, replans=replans, transitions=transitions,
        )

    @staticmethod
    def _reason_for(error: MatrixError, stage: PipelineStage) -> AbortReason:
        if isinstance(error, DeadlineExceeded):
            return AbortReason.DEADLINE_EXCEEDED
        if isinstance(error, QualityThresholdNotMet):
            return AbortReason.QUALITY_THRESHOLD_NOT_MET
        return _STAGE_FAILURES[stage][0]
