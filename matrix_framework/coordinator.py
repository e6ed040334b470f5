"""
Coordinator - Agent Registry, Capability Index, Routing

Owns the only state shared by concurrently running pipelines: the agent
registry, the capability index and the pending-task queue. Registry
mutation and candidate selection happen under one asyncio.Lock; agent work
always runs outside it.

Routing:
    candidates = active agents playing the role of the task's stage
                 whose capabilities cover the stage's requirements
    winner     = min(candidates, key=(-reputation, -success_rate,
                                      avg_response_time, agent_id))

A task with no candidate waits in a FIFO queue. Every registration scans
the queue once, in order, and assigns a winner to whatever became routable.
A waiting caller runs its stage itself, so the stage stays inside the
caller's task and deadline; fire-and-forget entries run as tracked
background tasks. Registration never waits for the stages it unblocks.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

import networkx as nx

from .agents.base import BROADCAST, Agent, AgentMessage, AgentRole
from .events import EventChannel, LifecycleEvent
from .exceptions import InvalidAgentError, NoSuitableAgentError
from .metrics import MetricsManager
from .tasks import PipelineStage, Task, TaskResult, TaskStatus


STAGE_ROLES: Dict[PipelineStage, AgentRole] = {
    PipelineStage.PLANNING: AgentRole.PLANNER,
    PipelineStage.IMPLEMENTING: AgentRole.DOER,
    PipelineStage.REVIEWING: AgentRole.REVIEWER,
}


@dataclass
class PendingTask:
    """A task waiting for a suitable agent.

    ``future`` is set for waiting callers and resolves to the assigned
    agent, or to None when the coordinator shuts down.
    """
    task: Task
    stage: PipelineStage
    future: Optional[asyncio.Future] = None
    queued_at: datetime = field(default_factory=datetime.now)

    @property
    def abandoned(self) -> bool:
        return self.future is not None and self.future.done()


def selection_key(agent: Agent) -> Tuple[float, float, float, str]:
    """Sort key: best agent first, agent id as the final tie-break."""
    m = agent.get_metrics()
    return (-m.reputation_score, -m.success_rate, m.avg_response_time, agent.agent_id)


class Coordinator:
    """Agent registry and task router.

    Features:
        - Registration with capability indexing and stale-entry cleanup
        - Deterministic agent selection
        - FIFO pending queue drained on registration
        - Message routing between registered agents
        - Peer connection graph (networkx)
    """

    def __init__(self, metrics: Optional[MetricsManager] = None):
        self.logger = logging.getLogger("coordinator")
        self.events = EventChannel("coordinator")
        self.metrics = metrics or MetricsManager()
        self._agents: Dict[str, Agent] = {}
        self._capability_index: Dict[str, Set[str]] = {}
        self._pending: Deque[PendingTask] = deque()
        self._graph = nx.DiGraph()
        self._lock = asyncio.Lock()
        self._background: Set[asyncio.Task] = set()
        self.stats = {
            "dispatched": 0,
            "queued": 0,
            "failed": 0,
            "messages_routed": 0,
            "messages_dropped": 0,
        }

    # ── Registry ─────────────────────────────────────────────────────────

    async def register_agent(self, agent: Agent) -> str:
        """Register (or re-register) an agent, then drain the pending queue once.

        Returns as soon as drained tasks have their winners; the stages
        themselves run in the waiting callers or in background tasks.
        """
        agent_id = getattr(agent, "agent_id", None)
        if not agent_id or not isinstance(agent_id, str):
            raise InvalidAgentError("missing agent id")

        async with self._lock:
            previous = self._agents.get(agent_id)
            if previous is not None:
                self._unindex(agent_id)
                if previous is not agent:
                    previous.detach_router()

            self._agents[agent_id] = agent
            for cap_name in agent.capability_names():
                self._capability_index.setdefault(cap_name, set()).add(agent_id)
            self._graph.add_node(agent_id, name=agent.name, role=agent.role.value)
            agent.attach_router(self)

            ready = self._take_routable()
            self.metrics.set_registered(len(self._agents))
            self.metrics.set_pending(len(self._pending))

        self.logger.info(
            f"Registered agent: {agent.name} [{agent_id}] role={agent.role.value} "
            f"capabilities={sorted(agent.capability_names())}"
        )
        self.events.emit(LifecycleEvent.AGENT_REGISTERED, {
            "agent_id": agent_id,
            "name": agent.name,
            "role": agent.role.value,
            "capabilities": sorted(agent.capability_names()),
            "replaced": previous is not None,
        })

        for entry, winner in ready:
            self.logger.info(f"Draining pending task {entry.task.id} to {winner.name} [{winner.agent_id}]")
            self.metrics.record_dispatch(winner.role.value, "drained")
            if entry.future is None:
                self._start_background(winner, entry.task)
            elif not entry.future.done():
                entry.future.set_result(winner)
        return agent_id

    async def remove_agent(self, agent_id: str) -> bool:
        """Unregister an agent. Returns False when it was not registered."""
        async with self._lock:
            agent = self._agents.pop(agent_id, None)
            if agent is None:
                return False
            self._unindex(agent_id)
            if self._graph.has_node(agent_id):
                self._graph.remove_node(agent_id)
            agent.detach_router()
            self.metrics.set_registered(len(self._agents))
            self.metrics.remove_agent(agent_id, agent.role.value)

        self.logger.info(f"Unregistered agent: {agent.name} [{agent_id}]")
        self.events.emit(LifecycleEvent.AGENT_REMOVED, {
            "agent_id": agent_id,
            "name": agent.name,
            "role": agent.role.value,
        })
        return True

    def _unindex(self, agent_id: str):
        for cap_name in list(self._capability_index):
            bucket = self._capability_index[cap_name]
            bucket.discard(agent_id)
            if not bucket:
                del self._capability_index[cap_name]

    # ── Lookup ───────────────────────────────────────────────────────────

    def get_agent_by_id(self, agent_id: str) -> Optional[Agent]:
        return self._agents.get(agent_id)

    def get_agents_by_capability(self, capability: str) -> List[Agent]:
        """Agents advertising a capability, ordered by id."""
        ids = self._capability_index.get(capability, set())
        return [self._agents[aid] for aid in sorted(ids) if aid in self._agents]

    def get_all_agents(self) -> List[Agent]:
        return list(self._agents.values())

    def get_capability_index(self) -> Dict[str, List[str]]:
        """Read-only copy of the index: capability -> sorted agent ids."""
        return {cap: sorted(ids) for cap, ids in self._capability_index.items()}

    def get_connected_agents(self, agent_id: str) -> List[Agent]:
        """Registered peers of an agent, strongest connection first."""
        if agent_id not in self._agents:
            return []
        self._sync_edges(agent_id)
        edges = self._graph[agent_id]
        ordered = sorted(edges, key=lambda peer: (-edges[peer]["weight"], peer))
        return [self._agents[p] for p in ordered]

    def get_connection_graph(self) -> nx.DiGraph:
        """Copy of the peer graph: nodes are agents, edges carry ``weight``."""
        for agent_id in self._agents:
            self._sync_edges(agent_id)
        return self._graph.copy()

    def _sync_edges(self, agent_id: str):
        agent = self._agents[agent_id]
        self._graph.remove_edges_from(list(self._graph.out_edges(agent_id)))
        for peer_id, weight in agent.get_connections().items():
            if peer_id in self._agents:
                self._graph.add_edge(agent_id, peer_id, weight=weight)

    def pending_tasks(self) -> List[Task]:
        """Queued tasks, oldest first."""
        return [entry.task for entry in self._pending if not entry.abandoned]

    # ── Routing ──────────────────────────────────────────────────────────

    def find_candidates(self, task: Task, stage: Optional[PipelineStage] = None) -> List[Agent]:
        """Active agents able to take ``task`` at ``stage`` (default: task.stage)."""
        stage = stage or task.stage
        role = STAGE_ROLES[stage]
        required = task.stage_requirements(stage)
        if required:
            buckets = [self._capability_index.get(cap, set()) for cap in required]
            ids = set.intersection(*buckets)
            pool = [self._agents[aid] for aid in ids if aid in self._agents]
        else:
            pool = list(self._agents.values())
        return [a for a in pool if a.is_active and a.role == role]

    @staticmethod
    def select_agent(candidates: List[Agent]) -> Optional[Agent]:
        if not candidates:
            return None
        return min(candidates, key=selection_key)

    async def dispatch_task(self, task: Task, wait: bool = False) -> Optional[TaskResult]:
        """Route a task to the best agent for its current stage.

        Returns the stage result, or None when no agent fits and the task was
        queued. With ``wait=True`` a queued task is awaited until a later
        registration assigns it an agent; the stage then runs in the
        caller's task.

        ``task.required_capabilities`` only constrain the implementing stage.
        At planning and reviewing any active agent of the stage's role is a
        candidate, whatever capabilities the task lists.
        """
        stage = task.stage
        role = STAGE_ROLES[stage]

        while True:
            async with self._lock:
                winner = self.select_agent(self.find_candidates(task, stage))
                if winner is None:
                    future = asyncio.get_running_loop().create_future() if wait else None
                    entry = PendingTask(task=task, stage=stage, future=future)
                    self._pending.append(entry)
                    self.stats["queued"] += 1
                    self.metrics.set_pending(len(self._pending))
                else:
                    task.set_status(TaskStatus.ASSIGNED, assigned_to=winner.agent_id)

            if winner is not None:
                self.logger.info(f"Routing task {task.id} ({stage.value}) to {winner.name} [{winner.agent_id}]")
                self.metrics.record_dispatch(role.value, "routed")
                return await self._run(winner, task)

            error = NoSuitableAgentError(
                task.id, required=sorted(task.stage_requirements(stage)), role=role.value
            )
            self.logger.info(f"{error}, queued ({len(self._pending)} pending)")
            self.metrics.record_dispatch(role.value, "queued")
            if future is None:
                return None
            try:
                winner = await future
            except asyncio.CancelledError:
                self._discard_pending(entry)
                raise

            if winner is None:
                task.mark_failed("coordinator shut down")
                return TaskResult.failed(task.id, "coordinator shut down")
            if self._agents.get(winner.agent_id) is winner and winner.is_active:
                return await self._run(winner, task)
            self.logger.info(f"Agent {winner.agent_id} left before task {task.id} started, rerouting")

    async def _run(self, agent: Agent, task: Task) -> TaskResult:
        """Run one stage on an agent. Agent errors become a failed result."""
        self.stats["dispatched"] += 1
        try:
            result = await agent.process_task(task)
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            task.mark_failed(reason, e)
            self.stats["failed"] += 1
            self.logger.error(f"Agent {agent.name} [{agent.agent_id}] failed task {task.id}: {e}")
            self.metrics.record_dispatch(agent.role.value, "failed")
            self._record_agent(agent, success=False)
            return TaskResult.failed(task.id, reason, agent_id=agent.agent_id, cause=e)
        except asyncio.CancelledError:
            self._record_agent(agent, success=False)
            raise
        self._record_agent(agent, success=True)
        return result

    def _record_agent(self, agent: Agent, success: bool):
        self.metrics.record_agent_task(
            agent.agent_id, agent.role.value, success, agent.get_metrics().reputation_score
        )

    def _take_routable(self) -> List[Tuple[PendingTask, Agent]]:
        """Pop every pending task that now has a winner. Caller holds the lock."""
        ready: List[Tuple[PendingTask, Agent]] = []
        remaining: Deque[PendingTask] = deque()
        for entry in self._pending:
            if entry.abandoned:
                continue
            winner = self.select_agent(self.find_candidates(entry.task, entry.stage))
            if winner is None:
                remaining.append(entry)
            else:
                entry.task.set_status(TaskStatus.ASSIGNED, assigned_to=winner.agent_id)
                ready.append((entry, winner))
        self._pending = remaining
        return ready

    def _start_background(self, agent: Agent, task: Task):
        job = asyncio.get_running_loop().create_task(self._run(agent, task))
        self._background.add(job)
        job.add_done_callback(self._background.discard)

    async def join(self):
        """Wait until every background stage started by draining has finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _discard_pending(self, entry: PendingTask):
        try:
            self._pending.remove(entry)
        except ValueError:
            return
        self.metrics.set_pending(len(self._pending))

    # ── Messaging ────────────────────────────────────────────────────────

    async def send(self, message: AgentMessage) -> int:
        """Deliver a message to its recipient, or to every other agent on broadcast.

        Returns the number of agents the message reached.
        """
        if message.recipient == BROADCAST:
            targets = [a for aid, a in self._agents.items() if aid != message.sender]
        else:
            target = self._agents.get(message.recipient)
            if target is None:
                self.stats["messages_dropped"] += 1
                self.logger.warning(f"Agent {message.recipient} not found, message dropped")
                return 0
            targets = [target]

        for target in targets:
            await target.receive_message(
                message.sender, message.content, message.message_type,
                message_id=message.message_id,
            )
        self.stats["messages_routed"] += len(targets)
        return len(targets)

    # ── Status & teardown ────────────────────────────────────────────────

    def get_registry_info(self) -> Dict[str, Any]:
        """Get full registry information."""
        agents_info = []
        for agent in self._agents.values():
            m = agent.get_metrics()
            agents_info.append({
                "agent_id": agent.agent_id,
                "name": agent.name,
                "role": agent.role.value,
                "status": agent.status.value,
                "active": agent.is_active,
                "capabilities": sorted(agent.capability_names()),
                "tasks_completed": m.tasks_completed,
                "tasks_failed": m.tasks_failed,
                "reputation_score": m.reputation_score,
            })

        return {
            "total_agents": len(self._agents),
            "agents": agents_info,
            "capabilities": {k: len(v) for k, v in self._capability_index.items()},
            "pending_tasks": [t.id for t in self.pending_tasks()],
            "connections": self._graph.number_of_edges(),
            "stats": dict(self.stats),
        }

    async def shutdown(self):
        """Shut down every agent once background stages finish.

        Waiters on pending tasks get a failed result.
        """
        async with self._lock:
            pending, self._pending = list(self._pending), deque()
            agents = list(self._agents.values())
            self.metrics.set_pending(0)

        for entry in pending:
            if entry.future is not None and not entry.future.done():
                entry.future.set_result(None)
        await self.join()
        for agent in agents:
            await agent.shutdown()
        self.logger.info(f"Coordinator shut down ({len(agents)} agents, {len(pending)} pending dropped)")
