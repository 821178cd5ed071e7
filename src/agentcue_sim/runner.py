"""Simulation runner for agentcue-sim.

This module handles the actual simulation logic, decoupled from display.
It updates a SimulationState object that can be rendered by any display.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import agentcue
from agentcue import EventKind, MemoryTaskStore, QueueEvent
from agentcue_sim.scenarios import get_scenario

if TYPE_CHECKING:
    from agentcue_sim.display import SimulationState

logger = logging.getLogger(__name__)


@dataclass
class SimConfig:
    """Configuration for a simulation run."""

    scenario: str = "mixed_agents"
    count: int = 20
    latency_ms: int = 100
    latency_jitter: float = 0.2  # ±20% variance
    error_rate: float = 0.0
    duration: float | None = None
    db_path: str = ":memory:"
    concurrency: int = 4
    max_attempts: int = 3
    backoff_ms: int = 100
    submit_rate: float | None = None  # tasks/second, None = batch


class SimulationRunner:
    """Runs simulations and updates state for display.

    Usage:
        config = SimConfig(count=20, latency_ms=50)
        state = SimulationState()
        runner = SimulationRunner(config, state)

        # In your event loop:
        await runner.run()
    """

    def __init__(self, config: SimConfig, state: SimulationState):
        self.config = config
        self.state = state
        self.store = MemoryTaskStore()
        self.scenario = get_scenario(config.scenario)

        self._queue: agentcue.TaskQueue | None = None
        self._events_task: asyncio.Task | None = None
        self._running = False

    async def run(self) -> None:
        """Run the simulation to completion."""
        self._running = True
        self.state.start_time = time.time()
        self.state.scenario_name = self.scenario.info.name
        self.state.target_count = self.config.count
        self.state.latency_ms = self.config.latency_ms
        self.state.error_rate = self.config.error_rate
        self.state.concurrency = self.config.concurrency

        self._queue = agentcue.TaskQueue(
            self.config.db_path,
            registry=agentcue.StrategyRegistry(placeholder_delay=self.config.latency_ms / 10_000),
            task_store=self.store,
            concurrency=self.config.concurrency,
            max_attempts=self.config.max_attempts,
            backoff=agentcue.BackoffPolicy("exponential", self.config.backoff_ms),
            refresh_interval=1.0,
        )
        self.scenario.setup(self._queue, self.config, self.state)

        subscription = self._queue.subscribe()
        self._events_task = asyncio.create_task(self._consume(subscription))
        self._queue.start()

        await self.scenario.submit_workload(self._queue, self.config, self.state)
        await self._monitor()

        self.state.dashboard = await self._queue.get_dashboard_data()
        await self.cleanup()

    async def _consume(self, subscription) -> None:
        async for event in subscription:
            self._observe(event)

    def _observe(self, event: QueueEvent) -> None:
        """Mirror queue events into display state."""
        agent = self.state.agent(event.agent_type)
        detail = ""
        if event.kind is EventKind.PROGRESS:
            return
        if event.kind is EventKind.SUBMITTED:
            agent.submitted += 1
            detail = event.task_id
        elif event.kind is EventKind.ACTIVE:
            detail = f"attempt {event.attempt}"
        elif event.kind is EventKind.COMPLETED:
            agent.completed += 1
            agent.total_ms += event.duration_ms or 0.0
            detail = f"{event.duration_ms or 0:.0f}ms"
        elif event.kind is EventKind.RETRYING:
            self.state.retried += 1
            detail = event.error or ""
        elif event.kind is EventKind.STALLED:
            self.state.stalled += 1
        elif event.kind is EventKind.FAILED:
            agent.failed += 1
            detail = event.error or ""
        self.state.add_event(event.kind.value, event.job_id, event.agent_type, detail)

    async def _monitor(self) -> None:
        """Poll queue counts until all work finishes or duration is exceeded."""
        while self._running:
            await self._update_state()

            if self.state.submitted and self.state.pending == 0:
                break
            if self.config.duration and self._elapsed >= self.config.duration:
                break

            await asyncio.sleep(0.05)

    async def _update_state(self) -> None:
        if not self._queue:
            return

        self.state.elapsed = self._elapsed
        stats = await self._queue.get_stats()
        self.state.waiting = stats.waiting
        self.state.active = stats.active
        self.state.delayed = stats.delayed
        self.state.completed = stats.completed
        self.state.failed = stats.failed

        health = await self._queue.get_health()
        self.state.health_status = health["status"]
        self.state.health_warnings = health["warnings"]

    @property
    def _elapsed(self) -> float:
        return time.time() - self.state.start_time

    def stop(self) -> None:
        """Request simulation stop."""
        self._running = False

    async def cleanup(self) -> None:
        """Release the queue. Safe to call after interrupt or completion."""
        self._running = False
        if self._queue is not None:
            try:
                await self._queue.stop(timeout=1.0)
                await self._queue.close()
            except Exception:
                logger.exception("Error while shutting down the simulation queue")
            self._queue = None
        if self._events_task is not None:
            self._events_task.cancel()
            try:
                await self._events_task
            except asyncio.CancelledError:
                pass
            self._events_task = None
