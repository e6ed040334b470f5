"""
Matrix Framework - Coordinator Test Suite

Covers registry, capability index, routing and messaging:
  1. Registration and capability indexing
  2. Agent selection
  3. Pending queue and draining
  4. Failure semantics
  5. Message routing
  6. Peer connections, status and teardown

Run with:  pytest tests/test_coordinator.py -v
"""

import asyncio

import pytest

from matrix_framework.agents import Agent, AgentRole, AgentStatus, MessageType, StageBehaviour
from matrix_framework.config import AgentConfig
from matrix_framework.coordinator import Coordinator, selection_key
from matrix_framework.events import LifecycleEvent
from matrix_framework.exceptions import InvalidAgentError
from matrix_framework.tasks import PipelineStage, Task, TaskResult, TaskStatus


# ══════════════════════════════════════════════════════════════════════════════
# HELPERS
# ══════════════════════════════════════════════════════════════════════════════

class Recorder(StageBehaviour):
    """Behaviour that logs (agent_id, task_id) for every task it processes."""

    def __init__(self, role, log, capabilities=(), fail=False, delay=0.0):
        self.role = AgentRole(role)
        self.default_capabilities = tuple((c, 1.0) for c in capabilities)
        self.log = log
        self.fail = fail
        self.delay = delay
        self.inbox = []

    async def process(self, agent, task, memory):
        self.log.append((agent.agent_id, task.id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("agent crashed")
        return TaskResult(task_id=task.id)

    async def handle_message(self, agent, message):
        self.inbox.append((message.sender, message.content))


def recorder(agent_id, role="doer", capabilities=("task_execution",), log=None, **kwargs):
    behaviour = Recorder(role, log if log is not None else [], capabilities, **kwargs)
    return Agent(behaviour, agent_id.title(), agent_id=agent_id, config=AgentConfig(work_delay=0.0))


def implementing(task_id, *required):
    return Task(id=task_id, type="coding", required_capabilities=set(required),
                stage=PipelineStage.IMPLEMENTING)


# ══════════════════════════════════════════════════════════════════════════════
# 1. REGISTRATION & INDEXING
# ══════════════════════════════════════════════════════════════════════════════

class TestRegistry:
    """Capability index invariant."""

    @pytest.mark.asyncio
    async def test_index_matches_capabilities(self, coordinator, register):
        a = recorder("a", capabilities=("task_execution", "debugging"))
        b = recorder("b", capabilities=("task_execution",))
        c = recorder("c", role="reviewer", capabilities=("quality_assessment",))
        await register(a, b, c)

        for agent in (a, b, c):
            for cap in ("task_execution", "debugging", "quality_assessment"):
                ids = [x.agent_id for x in coordinator.get_agents_by_capability(cap)]
                assert (agent.agent_id in ids) == (cap in agent.capability_names())

        assert coordinator.get_agent_by_id("b") is b
        assert coordinator.get_agent_by_id("zzz") is None
        assert len(coordinator.get_all_agents()) == 3

    @pytest.mark.asyncio
    async def test_remove_clears_every_bucket(self, coordinator, register):
        a = recorder("a", capabilities=("task_execution", "debugging"))
        b = recorder("b", capabilities=("task_execution",))
        await register(a, b)

        assert await coordinator.remove_agent("a")

        index = coordinator.get_capability_index()
        assert all("a" not in ids for ids in index.values())
        assert "debugging" not in index
        assert index["task_execution"] == ["b"]
        assert not await coordinator.remove_agent("a")

    @pytest.mark.asyncio
    async def test_reregister_drops_stale_entries(self, coordinator, register):
        old = recorder("a", capabilities=("task_execution", "debugging"))
        new = recorder("a", capabilities=("task_execution",))
        await register(old, new)

        assert coordinator.get_agent_by_id("a") is new
        assert coordinator.get_agents_by_capability("debugging") == []
        assert coordinator.get_agents_by_capability("task_execution") == [new]

    @pytest.mark.asyncio
    async def test_reregister_same_object_reindexes(self, coordinator, register):
        agent = recorder("a", capabilities=("task_execution",))
        await register(agent)
        agent.add_capability("debugging")
        agent.remove_capability("task_execution")
        await register(agent)

        assert coordinator.get_capability_index() == {"debugging": ["a"]}

    @pytest.mark.asyncio
    async def test_missing_id_rejected(self, coordinator):
        with pytest.raises(InvalidAgentError):
            await coordinator.register_agent(object())
        assert coordinator.get_all_agents() == []

    @pytest.mark.asyncio
    async def test_lifecycle_events(self, coordinator, register):
        seen = []
        coordinator.events.subscribe(None, lambda e: seen.append((e.event, e.payload["agent_id"])))

        await register(recorder("a"))
        await coordinator.remove_agent("a")

        assert seen == [
            (LifecycleEvent.AGENT_REGISTERED, "a"),
            (LifecycleEvent.AGENT_REMOVED, "a"),
        ]


# ══════════════════════════════════════════════════════════════════════════════
# 2. SELECTION
# ══════════════════════════════════════════════════════════════════════════════

class TestSelection:
    """Deterministic comparator: reputation, success rate, latency, id."""

    def test_comparator_order(self):
        a, b, c, d = (recorder(x) for x in "abcd")
        a.update_metrics(reputation_score=0.8)
        b.update_metrics(reputation_score=0.9, success_rate=0.5)
        c.update_metrics(reputation_score=0.9, success_rate=0.9, avg_response_time=20.0)
        d.update_metrics(reputation_score=0.9, success_rate=0.9, avg_response_time=10.0)

        ranked = sorted([a, b, c, d], key=selection_key)
        assert [x.agent_id for x in ranked] == ["d", "c", "b", "a"]

    def test_id_breaks_full_ties(self):
        agents = [recorder(x) for x in ("doer-c", "doer-a", "doer-b")]
        for _ in range(5):
            assert Coordinator.select_agent(agents).agent_id == "doer-a"
        assert Coordinator.select_agent([]) is None

    @pytest.mark.asyncio
    async def test_dispatch_picks_same_winner(self, register, coordinator):
        log = []
        agents = [recorder(x, log=log) for x in ("d3", "d1", "d2")]
        await register(*agents)

        result = await coordinator.dispatch_task(implementing("t1", "task_execution"))

        assert result.succeeded
        assert log == [("d1", "t1")]

    @pytest.mark.asyncio
    async def test_role_filter_by_stage(self, register, coordinator):
        log = []
        await register(
            recorder("doer", log=log),
            recorder("planner", role="planner", capabilities=("task_analysis",), log=log),
        )

        task = Task(id="t1", type="coding", required_capabilities={"task_execution"})
        assert task.stage == PipelineStage.PLANNING
        await coordinator.dispatch_task(task)

        assert log == [("planner", "t1")]

    @pytest.mark.asyncio
    async def test_inactive_agents_are_skipped(self, register, coordinator):
        log = []
        a, b = recorder("a", log=log), recorder("b", log=log)
        await register(a, b)
        await a.shutdown()

        await coordinator.dispatch_task(implementing("t1"))

        assert log == [("b", "t1")]


# ══════════════════════════════════════════════════════════════════════════════
# 3. PENDING QUEUE
# ══════════════════════════════════════════════════════════════════════════════

class TestPendingQueue:
    """Queueing when no agent fits, draining on registration."""

    @pytest.mark.asyncio
    async def test_unroutable_task_is_queued(self, coordinator, metrics):
        task = implementing("t1", "task_execution")

        assert await coordinator.dispatch_task(task) is None

        assert coordinator.pending_tasks() == [task]
        assert task.status == TaskStatus.PENDING
        assert metrics.get_sample("matrix_dispatch_total", {"role": "doer", "outcome": "queued"}) == 1.0
        assert metrics.get_sample("matrix_pending_tasks") == 1.0

    @pytest.mark.asyncio
    async def test_registration_drains_in_order(self, coordinator, register):
        log = []
        t1, t2, t3 = implementing("t1", "a"), implementing("t2", "b"), implementing("t3", "a")
        for task in (t1, t2, t3):
            await coordinator.dispatch_task(task)

        await register(recorder("doer-a", capabilities=("a",), log=log))
        assert coordinator.pending_tasks() == [t2]
        assert t1.assigned_to == "doer-a"

        await coordinator.join()
        assert log == [("doer-a", "t1"), ("doer-a", "t3")]

        await register(recorder("doer-b", capabilities=("b",), log=log))
        await coordinator.join()
        assert log[-1] == ("doer-b", "t2")
        assert coordinator.pending_tasks() == []

    @pytest.mark.asyncio
    async def test_unrelated_registration_keeps_queue(self, coordinator, register):
        t1, t2 = implementing("t1", "a"), implementing("t2", "a")
        await coordinator.dispatch_task(t1)
        await coordinator.dispatch_task(t2)

        await register(recorder("planner", role="planner", capabilities=("a",)))
        await register(recorder("doer-x", capabilities=("x",)))

        assert coordinator.pending_tasks() == [t1, t2]

    @pytest.mark.asyncio
    async def test_waiter_receives_drained_result(self, coordinator, register):
        task = implementing("t1", "task_execution")
        waiter = asyncio.create_task(coordinator.dispatch_task(task, wait=True))
        await asyncio.sleep(0)
        assert not waiter.done()

        await register(recorder("doer"))
        result = await asyncio.wait_for(waiter, timeout=1.0)

        assert result.succeeded
        assert result.agent_id == "doer"

    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_queue(self, coordinator, register):
        log = []
        task = implementing("t1", "task_execution")
        waiter = asyncio.create_task(coordinator.dispatch_task(task, wait=True))
        await asyncio.sleep(0)

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        assert coordinator.pending_tasks() == []
        await register(recorder("doer", log=log))
        await coordinator.join()
        assert log == []

    @pytest.mark.asyncio
    async def test_registration_does_not_wait_for_drained_stages(self, coordinator, register):
        log = []
        tasks = [implementing(f"t{i}", "task_execution") for i in range(3)]
        waiters = [asyncio.create_task(coordinator.dispatch_task(t, wait=True)) for t in tasks]
        for _ in range(3):
            await asyncio.sleep(0)
        assert len(coordinator.pending_tasks()) == 3

        loop = asyncio.get_running_loop()
        start = loop.time()
        await register(recorder("doer", log=log, delay=0.3))
        assert loop.time() - start < 0.1
        assert not any(w.done() for w in waiters)

        results = await asyncio.wait_for(asyncio.gather(*waiters), timeout=2.0)

        assert loop.time() - start < 0.6
        assert all(r.succeeded for r in results)
        assert sorted(task_id for _, task_id in log) == ["t0", "t1", "t2"]

    @pytest.mark.asyncio
    async def test_drained_stage_runs_under_callers_timeout(self, coordinator, register):
        slow = recorder("slow", delay=1.0)
        task = implementing("t1", "task_execution")
        waiter = asyncio.create_task(asyncio.wait_for(coordinator.dispatch_task(task, wait=True), 0.2))
        await asyncio.sleep(0.05)

        await register(slow)
        with pytest.raises(asyncio.TimeoutError):
            await waiter

        assert slow.status == AgentStatus.IDLE
        assert slow.get_metrics().tasks_failed == 1

    @pytest.mark.asyncio
    async def test_fire_and_forget_drains_run_in_background(self, coordinator, register):
        log = []
        for i in range(2):
            await coordinator.dispatch_task(implementing(f"t{i}", "task_execution"))

        loop = asyncio.get_running_loop()
        start = loop.time()
        await register(recorder("doer", log=log, delay=0.2))
        assert loop.time() - start < 0.1

        await coordinator.join()
        assert loop.time() - start < 0.4
        assert [task_id for _, task_id in log] == ["t0", "t1"]


# ══════════════════════════════════════════════════════════════════════════════
# 3b. REGISTRY MUTATION DURING DISPATCH
# ══════════════════════════════════════════════════════════════════════════════

class TestRegistryMutation:
    """Removals interleaved with dispatch and draining."""

    @pytest.mark.asyncio
    async def test_removed_doer_is_never_chosen(self, coordinator, register):
        log = []
        await register(recorder("doer-1", log=log))
        await coordinator.remove_agent("doer-1")

        task = implementing("t1")
        assert await coordinator.dispatch_task(task) is None
        assert coordinator.pending_tasks() == [task]

        await register(recorder("doer-2", log=log))
        await coordinator.join()

        assert log == [("doer-2", "t1")]
        assert task.assigned_to == "doer-2"

    @pytest.mark.asyncio
    async def test_removal_while_stage_in_flight(self, coordinator, register):
        log = []
        await register(recorder("doer-1", log=log, delay=0.2))
        first = asyncio.create_task(coordinator.dispatch_task(implementing("t1")))
        await asyncio.sleep(0.05)

        assert await coordinator.remove_agent("doer-1")
        second = implementing("t2")
        assert await coordinator.dispatch_task(second) is None

        result = await asyncio.wait_for(first, timeout=1.0)
        assert result.succeeded
        assert coordinator.pending_tasks() == [second]

        await register(recorder("doer-2", log=log))
        await coordinator.join()
        assert log == [("doer-1", "t1"), ("doer-2", "t2")]

    @pytest.mark.asyncio
    async def test_winner_removed_before_waiter_resumes(self, coordinator, register):
        log = []
        task = implementing("t1")
        waiter = asyncio.create_task(coordinator.dispatch_task(task, wait=True))
        await asyncio.sleep(0)

        await register(recorder("doer-1", log=log))
        await coordinator.remove_agent("doer-1")
        for _ in range(3):
            await asyncio.sleep(0)
        assert coordinator.pending_tasks() == [task]

        await register(recorder("doer-2", log=log))
        result = await asyncio.wait_for(waiter, timeout=1.0)

        assert result.agent_id == "doer-2"
        assert log == [("doer-2", "t1")]


# ══════════════════════════════════════════════════════════════════════════════
# 4. FAILURE SEMANTICS
# ══════════════════════════════════════════════════════════════════════════════

class TestFailures:
    """Agent failures are contained and never retried."""

    @pytest.mark.asyncio
    async def test_agent_failure_marks_task_failed(self, coordinator, register):
        log = []
        agent = recorder("crashy", log=log, fail=True)
        await register(agent)
        task = implementing("t1")

        result = await coordinator.dispatch_task(task)

        assert not result.succeeded
        assert "agent crashed" in result.error
        assert isinstance(result.cause, RuntimeError)
        assert task.status == TaskStatus.FAILED
        assert task.error["exception_type"] == "RuntimeError"
        assert log == [("crashy", "t1")]
        assert coordinator.get_agent_by_id("crashy") is agent
        assert agent.get_metrics().tasks_failed == 1

    @pytest.mark.asyncio
    async def test_failed_agent_loses_to_healthy_peer(self, coordinator, register):
        log = []
        await register(recorder("a", log=log, fail=True), recorder("b", log=log))

        await coordinator.dispatch_task(implementing("t1"))
        await coordinator.dispatch_task(implementing("t2"))

        assert log == [("a", "t1"), ("b", "t2")]


# ══════════════════════════════════════════════════════════════════════════════
# 5. MESSAGING
# ══════════════════════════════════════════════════════════════════════════════

class TestRouting:
    """Fire-and-forget delivery through the coordinator."""

    @pytest.mark.asyncio
    async def test_direct_message(self, coordinator, register):
        a, b = recorder("a"), recorder("b")
        await register(a, b)

        await a.send_message("b", {"note": "hi"}, MessageType.KNOWLEDGE)

        assert b.behaviour.inbox == [("a", {"note": "hi"})]
        assert b.pending_messages()[0].message_type == MessageType.KNOWLEDGE
        assert a.behaviour.inbox == []

    @pytest.mark.asyncio
    async def test_broadcast_skips_sender(self, coordinator, register):
        a, b, c = recorder("a"), recorder("b"), recorder("c")
        await register(a, b, c)

        message = await a.send_message("broadcast", "status update", MessageType.STATUS)

        assert a.behaviour.inbox == []
        assert b.behaviour.inbox == c.behaviour.inbox == [("a", "status update")]
        assert b.pending_messages()[0].message_id == message.message_id

    @pytest.mark.asyncio
    async def test_unknown_recipient_dropped(self, coordinator, register):
        a = recorder("a")
        await register(a)

        await a.send_message("ghost", "anyone?")

        assert coordinator.stats["messages_dropped"] == 1

    @pytest.mark.asyncio
    async def test_removed_agent_loses_router(self, coordinator, register):
        a, b = recorder("a"), recorder("b")
        await register(a, b)
        await coordinator.remove_agent("a")

        await a.send_message("b", "late")

        assert b.behaviour.inbox == []


# ══════════════════════════════════════════════════════════════════════════════
# 6. CONNECTIONS, STATUS, TEARDOWN
# ══════════════════════════════════════════════════════════════════════════════

class TestConnectionsAndStatus:
    """Peer graph and registry introspection."""

    @pytest.mark.asyncio
    async def test_connected_agents_by_weight(self, coordinator, register):
        a, b, c = recorder("a"), recorder("b"), recorder("c")
        a.connect("b", 0.5)
        a.connect("c", 0.9)
        a.connect("ghost", 1.0)
        await register(a, b, c)

        assert [x.agent_id for x in coordinator.get_connected_agents("a")] == ["c", "b"]
        assert coordinator.get_connected_agents("b") == []
        assert coordinator.get_connected_agents("nobody") == []

        a.disconnect("c")
        assert [x.agent_id for x in coordinator.get_connected_agents("a")] == ["b"]

    @pytest.mark.asyncio
    async def test_connection_graph_is_a_copy(self, coordinator, register):
        a, b = recorder("a"), recorder("b")
        b.connect("a", 0.3)
        await register(a, b)

        graph = coordinator.get_connection_graph()
        assert set(graph.nodes) == {"a", "b"}
        assert graph["b"]["a"]["weight"] == 0.3

        graph.remove_node("a")
        assert set(coordinator.get_connection_graph().nodes) == {"a", "b"}

        await coordinator.remove_agent("a")
        assert set(coordinator.get_connection_graph().nodes) == {"b"}

    @pytest.mark.asyncio
    async def test_registry_info(self, coordinator, register):
        await register(recorder("a"), recorder("r", role="reviewer", capabilities=("quality_assessment",)))
        await coordinator.dispatch_task(Task(id="t9", type="coding", stage=PipelineStage.PLANNING))

        info = coordinator.get_registry_info()

        assert info["total_agents"] == 2
        assert info["capabilities"] == {"task_execution": 1, "quality_assessment": 1}
        assert info["pending_tasks"] == ["t9"]
        assert {a["role"] for a in info["agents"]} == {"doer", "reviewer"}

    @pytest.mark.asyncio
    async def test_shutdown(self, coordinator, register):
        a = recorder("a")
        await register(a)
        task = implementing("t1", "missing")
        waiter = asyncio.create_task(coordinator.dispatch_task(task, wait=True))
        await asyncio.sleep(0)

        await coordinator.shutdown()
        result = await asyncio.wait_for(waiter, timeout=1.0)

        assert not a.is_active
        assert not result.succeeded
        assert task.status == TaskStatus.FAILED
        assert coordinator.pending_tasks() == []
