"""
Agent Runtime - Identity, Capabilities, Lifecycle, Messaging, Reputation

One concrete ``Agent`` hosts every pipeline role. What an agent does with a
task is delegated to its ``StageBehaviour`` (Planner, Doer or Reviewer),
selected by the closed ``AgentRole`` tag.

Architecture:
    Coordinator (registry + capability index + router)
        -> Agent (identity, capabilities, metrics, working memory)
            -> StageBehaviour (process, handle_message)

Features:
    - Lifecycle management (initialize, shutdown)
    - Metrics and reputation updated exactly once per processed task
    - Fire-and-forget messaging through the coordinator router
    - Isolated message handler failures
    - Lifecycle events on a per-agent EventChannel
"""

import asyncio
import copy
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from ..config import AgentConfig, agent_config
from ..events import EventChannel, LifecycleEvent
from ..exceptions import AgentInactiveError, ValidationError
from ..tasks import Task, TaskResult, TaskStatus


BROADCAST = "broadcast"


# ══════════════════════════════════════════════════════════════════════════════
# ENUMS & DATA STRUCTURES
# ══════════════════════════════════════════════════════════════════════════════

class AgentRole(Enum):
    """Pipeline stage an agent performs."""
    PLANNER = "planner"
    DOER = "doer"
    REVIEWER = "reviewer"


class AgentStatus(Enum):
    """Agent work status."""
    IDLE = "idle"
    WORKING = "working"
    WAITING = "waiting"


class MessageType(Enum):
    """Types of inter-agent messages."""
    TASK = "task"             # Work hand-off
    KNOWLEDGE = "knowledge"   # Shared findings
    STATUS = "status"         # Status broadcast
    REQUEST = "request"       # Information request
    RESPONSE = "response"     # Request answer


@dataclass(frozen=True)
class AgentIdentity:
    """Immutable agent identity."""
    agent_id: str
    name: str
    role: AgentRole


@dataclass
class Capability:
    """A named skill an agent advertises. ``last_used`` is informational."""
    name: str
    confidence: float = 1.0
    last_used: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "confidence": self.confidence,
            "last_used": self.last_used.isoformat(),
        }


@dataclass
class AgentMetrics:
    """Runtime metrics and reputation for an agent."""
    success_rate: float = 1.0
    tasks_completed: int = 0
    tasks_failed: int = 0
    avg_response_time: float = 0.0  # milliseconds
    reputation_score: float = 1.0
    messages_sent: int = 0
    messages_received: int = 0
    last_active: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success_rate": round(self.success_rate, 4),
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
            "avg_response_time": round(self.avg_response_time, 2),
            "reputation_score": round(self.reputation_score, 4),
            "messages_sent": self.messages_sent,
            "messages_received": self.messages_received,
            "last_active": self.last_active.isoformat() if self.last_active else None,
        }


@dataclass
class WorkingMemory:
    """Short-term key/value memory plus the set of keys currently in focus."""
    short_term: Dict[str, Any] = field(default_factory=dict)
    working_set: Set[str] = field(default_factory=set)

    def remember(self, key: str, value: Any) -> None:
        self.short_term[key] = value

    def recall(self, key: str, default: Any = None) -> Any:
        return self.short_term.get(key, default)

    def focus(self, key: str) -> None:
        self.working_set.add(key)

    def release(self, key: str) -> None:
        self.working_set.discard(key)


@dataclass
class AgentState:
    """Runtime state. ``in_flight`` holds running task ids, oldest first."""
    is_active: bool = True
    last_active: datetime = field(default_factory=datetime.now)
    in_flight: List[str] = field(default_factory=list)
    memory: WorkingMemory = field(default_factory=WorkingMemory)

    @property
    def status(self) -> AgentStatus:
        return AgentStatus.WORKING if self.in_flight else AgentStatus.IDLE

    @property
    def current_task(self) -> Optional[str]:
        return self.in_flight[-1] if self.in_flight else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_active": self.is_active,
            "status": self.status.value,
            "last_active": self.last_active.isoformat(),
            "current_task": self.current_task,
            "in_flight": list(self.in_flight),
            "memory": {
                "short_term": copy.deepcopy(self.memory.short_term),
                "working_set": sorted(self.memory.working_set),
            },
        }


@dataclass
class AgentMessage:
    """Inter-agent message. Delivery is at-most-once, with no acknowledgement."""
    message_id: str
    sender: str
    recipient: str  # Agent ID or "broadcast"
    message_type: MessageType
    content: Any
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "sender": self.sender,
            "recipient": self.recipient,
            "message_type": self.message_type.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }


# ══════════════════════════════════════════════════════════════════════════════
# STAGE BEHAVIOUR
# ══════════════════════════════════════════════════════════════════════════════

class StageBehaviour(ABC):
    """What an agent does for its pipeline stage.

    Subclasses set:
        - role: the AgentRole they implement
        - default_capabilities: (name, confidence) pairs advertised on creation

    and implement process(). The agent hands its own working memory to the
    behaviour; nothing else sees it.
    """

    role: AgentRole
    default_capabilities: Tuple[Tuple[str, float], ...] = ()

    @abstractmethod
    async def process(self, agent: "Agent", task: Task, memory: WorkingMemory) -> TaskResult:
        """Run this stage for a task.

        Returns:
            The stage's TaskResult. Raising marks the task failed.
        """
        ...

    async def handle_message(self, agent: "Agent", message: AgentMessage) -> None:
        """Handle a received message. Default: log it."""
        agent.logger.info(
            f"Agent {agent.name} received {message.message_type.value} message from {message.sender}"
        )


# ══════════════════════════════════════════════════════════════════════════════
# AGENT
# ══════════════════════════════════════════════════════════════════════════════

class Agent:
    """Concrete agent runtime.

    Provides:
        - Lifecycle management (initialize, shutdown)
        - Capability set keyed by name
        - Metrics tracking and reputation
        - Message envelope construction and delivery
        - Structured logging
    """

    def __init__(self, behaviour: StageBehaviour, name: str,
                 agent_id: Optional[str] = None,
                 config: Optional[AgentConfig] = None):
        self.identity = AgentIdentity(
            agent_id=agent_id or str(uuid.uuid4()),
            name=name,
            role=behaviour.role,
        )
        self.behaviour = behaviour
        self.config = config or agent_config
        self.logger = logging.getLogger(f"agent.{self.identity.agent_id}")
        self.events = EventChannel(self.identity.agent_id)
        self.created_at = datetime.now()

        self._capabilities: Dict[str, Capability] = {}
        self._connections: Dict[str, float] = {}
        self._metrics = AgentMetrics(
            success_rate=self.config.initial_success_rate,
            reputation_score=self.config.initial_reputation,
        )
        self._metrics_lock = threading.Lock()
        self._state = AgentState()
        self._message_queue: Deque[AgentMessage] = deque()
        self._router = None

        for cap_name, confidence in behaviour.default_capabilities:
            self.add_capability(cap_name, confidence)

    # ── Identity ─────────────────────────────────────────────────────────

    @property
    def agent_id(self) -> str:
        return self.identity.agent_id

    @property
    def name(self) -> str:
        return self.identity.name

    @property
    def role(self) -> AgentRole:
        return self.identity.role

    @property
    def is_active(self) -> bool:
        return self._state.is_active

    @property
    def status(self) -> AgentStatus:
        return self._state.status

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def initialize(self):
        """Mark the agent active and idle. Safe to call repeatedly."""
        self.logger.info(f"Initializing {self.role.value} agent {self.name} [{self.agent_id}]")
        self._state.is_active = True
        self._state.last_active = datetime.now()

    async def shutdown(self):
        """Stop accepting tasks."""
        self._state.is_active = False
        self.logger.info(f"Agent {self.name} [{self.agent_id}] shut down")

    # ── Task processing ──────────────────────────────────────────────────

    async def process_task(self, task: Task) -> TaskResult:
        """Run the behaviour for a task with metrics tracking.

        Metrics are updated exactly once, whether the behaviour returns,
        raises or is cancelled. Overlapping calls are allowed; the agent
        reports working until the last of them ends.

        A call on an inactive agent raises AgentInactiveError before any
        work starts and is not counted in the metrics.
        """
        if not self._state.is_active:
            raise AgentInactiveError(self.agent_id)

        self._state.in_flight.append(task.id)
        task.set_status(TaskStatus.IN_PROGRESS, assigned_to=self.agent_id)
        start_time = time.monotonic()

        try:
            result = await self.behaviour.process(self, task, self._state.memory)
        except (Exception, asyncio.CancelledError) as e:
            self._update_task_metrics(start_time, success=False, task=task)
            if isinstance(e, asyncio.CancelledError):
                self.logger.warning(f"Task {task.id} cancelled on {self.name}")
            else:
                self.logger.error(f"Task {task.id} failed on {self.name}: {e}")
            raise
        else:
            self._update_task_metrics(start_time, success=True, task=task)
            if result.agent_id is None:
                result.agent_id = self.agent_id
            return result
        finally:
            self._state.in_flight.remove(task.id)
            self._state.last_active = datetime.now()

    async def work(self):
        """One unit of simulated work. Also a cancellation point."""
        await asyncio.sleep(self.config.work_delay)

    def emit(self, event: LifecycleEvent, payload: Dict[str, Any]):
        return self.events.emit(event, payload)

    # ── Metrics ──────────────────────────────────────────────────────────

    def _update_task_metrics(self, start_time: float, success: bool, task: Task):
        elapsed_ms = (time.monotonic() - start_time) * 1000
        now = datetime.now()
        step = self.config.reputation_step
        with self._metrics_lock:
            m = self._metrics
            m.tasks_completed += 1
            m.avg_response_time += (elapsed_ms - m.avg_response_time) / m.tasks_completed
            if success:
                m.success_rate = round((m.success_rate + 1) / 2, 6)
                m.reputation_score = round(min(1.0, m.reputation_score + step), 6)
            else:
                m.tasks_failed += 1
                m.success_rate = round(m.success_rate / 2, 6)
                m.reputation_score = round(max(0.0, m.reputation_score - step), 6)
            m.last_active = now

        if success:
            for cap_name in task.stage_requirements():
                cap = self._capabilities.get(cap_name)
                if cap:
                    cap.last_used = now

    def update_metrics(self, **partial):
        """Overwrite metric fields.

        Rates are clamped to [0, 1]; counters may not decrease.
        """
        known = {f.name for f in fields(AgentMetrics)}
        unknown = set(partial) - known
        if unknown:
            raise ValidationError(f"Unknown metric fields: {sorted(unknown)}")

        with self._metrics_lock:
            m = self._metrics
            for key in ("tasks_completed", "tasks_failed", "messages_sent", "messages_received"):
                if key in partial and partial[key] < getattr(m, key):
                    raise ValidationError(f"{key} cannot decrease ({getattr(m, key)} -> {partial[key]})")
            for key in ("success_rate", "reputation_score"):
                if key in partial:
                    partial[key] = min(1.0, max(0.0, float(partial[key])))
            if "avg_response_time" in partial and partial["avg_response_time"] < 0:
                raise ValidationError("avg_response_time cannot be negative")
            for key, value in partial.items():
                setattr(m, key, value)

    def get_metrics(self) -> AgentMetrics:
        """Snapshot copy of the metrics."""
        with self._metrics_lock:
            return replace(self._metrics)

    def get_status(self) -> Dict[str, Any]:
        """Get agent status snapshot."""
        return {
            "agent_id": self.agent_id,
            "name": self.name,
            "role": self.role.value,
            "state": self._state.to_dict(),
            "capabilities": [c.to_dict() for c in self._capabilities.values()],
            "connections": dict(self._connections),
            "metrics": self.get_metrics().to_dict(),
            "queued_messages": len(self._message_queue),
            "uptime": str(datetime.now() - self.created_at),
        }

    # ── Capabilities ─────────────────────────────────────────────────────

    def add_capability(self, name: str, confidence: float = 1.0):
        """Add a capability, or overwrite the one with the same name."""
        if not name:
            raise ValidationError("Capability name cannot be empty")
        if not 0.0 <= confidence <= 1.0:
            raise ValidationError(f"Capability confidence must be in [0, 1], got {confidence}")
        self._capabilities[name] = Capability(name=name, confidence=confidence)

    def remove_capability(self, name: str) -> bool:
        return self._capabilities.pop(name, None) is not None

    @property
    def capabilities(self) -> List[Capability]:
        return [replace(c) for c in self._capabilities.values()]

    def capability_names(self) -> FrozenSet[str]:
        return frozenset(self._capabilities)

    def has_capabilities(self, required: Iterable[str]) -> bool:
        return set(required) <= self._capabilities.keys()

    # ── Peer connections ─────────────────────────────────────────────────

    def connect(self, peer_id: str, weight: float = 1.0):
        if peer_id == self.agent_id:
            raise ValidationError("An agent cannot connect to itself")
        self._connections[peer_id] = float(weight)

    def disconnect(self, peer_id: str) -> bool:
        return self._connections.pop(peer_id, None) is not None

    def get_connections(self) -> Dict[str, float]:
        return dict(self._connections)

    # ── Message handling ─────────────────────────────────────────────────

    def attach_router(self, router):
        """Set by the coordinator on registration."""
        self._router = router

    def detach_router(self):
        self._router = None

    async def send_message(self, recipient: str, content: Any,
                           message_type: MessageType = MessageType.TASK) -> AgentMessage:
        """Send a message to another agent, or to every other agent with "broadcast"."""
        message = AgentMessage(
            message_id=str(uuid.uuid4()),
            sender=self.agent_id,
            recipient=recipient,
            message_type=message_type,
            content=content,
        )
        with self._metrics_lock:
            self._metrics.messages_sent += 1
        self.emit(LifecycleEvent.MESSAGE_SENT, message.to_dict())

        if self._router is None:
            self.logger.warning(f"No router connected, message {message.message_id} dropped")
            return message
        await self._router.send(message)
        return message

    async def receive_message(self, sender: str, content: Any,
                              message_type: MessageType = MessageType.TASK,
                              message_id: Optional[str] = None) -> AgentMessage:
        """Enqueue a message, then hand it to the behaviour."""
        message = AgentMessage(
            message_id=message_id or str(uuid.uuid4()),
            sender=sender,
            recipient=self.agent_id,
            message_type=message_type,
            content=content,
        )
        self._message_queue.append(message)
        with self._metrics_lock:
            self._metrics.messages_received += 1
        self.emit(LifecycleEvent.MESSAGE_RECEIVED, message.to_dict())

        try:
            await self.behaviour.handle_message(self, message)
        except Exception as e:
            self.logger.error(f"Message handler error: {e}")
        return message

    def pending_messages(self) -> List[AgentMessage]:
        """Received messages, oldest first."""
        return list(self._message_queue)

    def next_message(self) -> Optional[AgentMessage]:
        return self._message_queue.popleft() if self._message_queue else None

    def __repr__(self) -> str:
        return f"<Agent {self.name} [{self.agent_id}] role={self.role.value}>"
