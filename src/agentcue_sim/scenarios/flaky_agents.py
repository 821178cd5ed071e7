"""Flaky agents scenario - retries, timeouts and partial file failures.

The model fails often enough to exercise retry with backoff. Some tasks
carry unreadable attachments, some get a timeout shorter than the model's
latency, and some arrive without files.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from agentcue.agents import NoteTakerStrategy
from agentcue.models import AgentType, TaskData, TaskFile
from agentcue_sim.scenarios import Scenario, ScenarioInfo, SimulatedModel, sample_files

if TYPE_CHECKING:
    import agentcue
    from agentcue_sim.display import SimulationState
    from agentcue_sim.runner import SimConfig

DEFAULT_ERROR_RATE = 0.3


class FlakyAgentsScenario(Scenario):
    """Note-taker tasks against an unreliable model."""

    @property
    def info(self) -> ScenarioInfo:
        return ScenarioInfo(
            name="flaky_agents",
            description="Unreliable model: retries, timeouts, bad files",
        )

    def setup(self, queue: agentcue.TaskQueue, config: SimConfig, state: SimulationState) -> None:
        error_rate = config.error_rate or DEFAULT_ERROR_RATE
        state.error_rate = error_rate
        model = SimulatedModel(config.latency_ms, config.latency_jitter, error_rate)
        queue.registry.register(AgentType.NOTE_TAKER.value, NoteTakerStrategy(model))

    async def submit_workload(self, queue: agentcue.TaskQueue, config: SimConfig, state: SimulationState) -> None:
        for i in range(config.count):
            files = sample_files(i)
            timeout_ms = None

            if i % 7 == 3:
                # Unreadable attachment next to a good one
                files.append(TaskFile(
                    file_id=f"scan_{i:04d}",
                    file_name=f"scan_{i:04d}.png",
                    mime_type="image/png",
                    size=2048,
                ))
            if i % 10 == 9:
                # Budget shorter than the model's latency
                timeout_ms = max(config.latency_ms // 4, 1)
            if i % 13 == 12:
                files = []

            await queue.submit(
                TaskData(
                    task_id=f"task_{i:04d}",
                    agent_type=AgentType.NOTE_TAKER.value,
                    files=files,
                    user_id=f"user_{i % 3}",
                    task_name=f"flaky #{i}",
                ),
                timeout_ms=timeout_ms,
            )
            state.submitted += 1

            if config.submit_rate:
                await asyncio.sleep(1.0 / config.submit_rate)
