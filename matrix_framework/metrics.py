"""
Matrix Framework - Prometheus Metrics

Metrics collection and export for:
- Task dispatch (routed, queued, failed) by agent role
- Coordinator registry and pending queue size
- Agent reputation
- Pipeline stage latency and terminal outcomes

Each MetricsManager owns its own CollectorRegistry, so several coordinators
(or test cases) never collide on metric names.
"""

import logging
from typing import Any, Dict, Optional

from prometheus_client import (
    CollectorRegistry, Counter, Gauge, Histogram, Info,
    generate_latest, start_http_server,
)

from .config import MetricsConfig, metrics_config

logger = logging.getLogger("matrix_metrics")


class MetricsManager:
    """Central metrics management."""

    def __init__(self, config: Optional[MetricsConfig] = None):
        self.config = config or metrics_config
        self._enabled = self.config.enabled
        self._server_started = False
        self.registry = CollectorRegistry()
        ns = self.config.namespace

        # ── Routing ──
        self.dispatches = Counter(
            f"{ns}_dispatch_total",
            "Task dispatches by stage role and outcome",
            ["role", "outcome"],
            registry=self.registry,
        )
        self.pending_tasks = Gauge(
            f"{ns}_pending_tasks",
            "Tasks waiting for a suitable agent",
            registry=self.registry,
        )
        self.registered_agents = Gauge(
            f"{ns}_registered_agents",
            "Agents currently registered with the coordinator",
            registry=self.registry,
        )

        # ── Agents ──
        self.agent_reputation = Gauge(
            f"{ns}_agent_reputation",
            "Agent reputation score",
            ["agent_id", "role"],
            registry=self.registry,
        )
        self.agent_tasks = Counter(
            f"{ns}_agent_tasks_total",
            "Tasks processed by agents",
            ["role", "status"],
            registry=self.registry,
        )

        # ── Pipeline ──
        self.stage_duration = Histogram(
            f"{ns}_stage_duration_seconds",
            "Duration of pipeline stages in seconds",
            ["stage"],
            buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1, 5, 30, 120],
            registry=self.registry,
        )
        self.pipeline_outcomes = Counter(
            f"{ns}_pipeline_outcomes_total",
            "Pipelines reaching a terminal state",
            ["state", "reason"],
            registry=self.registry,
        )
        self.replans = Counter(
            f"{ns}_replans_total",
            "Replanning cycles triggered by reviews below threshold",
            registry=self.registry,
        )

        self.info = Info(f"{ns}_framework", "Framework information", registry=self.registry)
        self.info.info({"name": "Matrix Framework"})

    def start_server(self, port: Optional[int] = None):
        """Start Prometheus metrics HTTP server."""
        if not self._enabled:
            logger.warning("Metrics disabled, server not started")
            return

        if self._server_started:
            return

        port = port or self.config.port
        try:
            start_http_server(port, registry=self.registry)
            self._server_started = True
            logger.info(f"Prometheus metrics server started on port {port}")
        except OSError as e:
            logger.error(f"Failed to start metrics server: {e}")

    def record_dispatch(self, role: str, outcome: str):
        """Record a dispatch outcome: routed, queued, failed or drained."""
        if not self._enabled:
            return
        self.dispatches.labels(role=role, outcome=outcome).inc()

    def set_pending(self, count: int):
        if not self._enabled:
            return
        self.pending_tasks.set(count)

    def set_registered(self, count: int):
        if not self._enabled:
            return
        self.registered_agents.set(count)

    def record_agent_task(self, agent_id: str, role: str, success: bool, reputation: float):
        """Record a processed task and the agent's resulting reputation."""
        if not self._enabled:
            return
        self.agent_tasks.labels(role=role, status="success" if success else "failure").inc()
        self.agent_reputation.labels(agent_id=agent_id, role=role).set(reputation)

    def remove_agent(self, agent_id: str, role: str):
        """Drop the reputation series of an unregistered agent."""
        if not self._enabled:
            return
        try:
            self.agent_reputation.remove(agent_id, role)
        except KeyError:
            pass

    def record_stage(self, stage: str, duration: float):
        if not self._enabled:
            return
        self.stage_duration.labels(stage=stage).observe(duration)

    def record_pipeline_outcome(self, state: str, reason: str = ""):
        if not self._enabled:
            return
        self.pipeline_outcomes.labels(state=state, reason=reason or "none").inc()

    def record_replan(self):
        if not self._enabled:
            return
        self.replans.inc()

    def get_metrics_text(self) -> str:
        """Get metrics in Prometheus exposition format."""
        if not self._enabled:
            return "# Prometheus metrics disabled\n"
        return generate_latest(self.registry).decode("utf-8")

    def get_sample(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Current value of one sample, or None when it was never recorded."""
        return self.registry.get_sample_value(name, labels or {})

    def get_summary(self) -> Dict[str, Any]:
        """Get a human-readable metrics summary."""
        return {
            "enabled": self._enabled,
            "server_started": self._server_started,
            "namespace": self.config.namespace,
        }
