"""Mixed agents scenario - the default workload pattern.

Note-taker and researcher tasks run through the prompt strategies against a
simulated model; study-buddy and assignment tasks go to the placeholder.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from agentcue.agents import NoteTakerStrategy, ResearcherStrategy
from agentcue.models import AgentType, TaskData
from agentcue_sim.scenarios import Scenario, ScenarioInfo, SimulatedModel, sample_files

if TYPE_CHECKING:
    import agentcue
    from agentcue_sim.display import SimulationState
    from agentcue_sim.runner import SimConfig

# Submission mix, cycled in order
AGENT_MIX = [
    AgentType.NOTE_TAKER,
    AgentType.RESEARCHER,
    AgentType.NOTE_TAKER,
    AgentType.STUDY_BUDDY,
    AgentType.ASSIGNMENT,
]


class MixedAgentsScenario(Scenario):
    """Every agent type, independent tasks."""

    @property
    def info(self) -> ScenarioInfo:
        return ScenarioInfo(
            name="mixed_agents",
            description="All agent types, live and placeholder (default)",
        )

    def setup(self, queue: agentcue.TaskQueue, config: SimConfig, state: SimulationState) -> None:
        model = SimulatedModel(config.latency_ms, config.latency_jitter, config.error_rate)
        queue.registry.register(AgentType.NOTE_TAKER.value, NoteTakerStrategy(model))
        queue.registry.register(AgentType.RESEARCHER.value, ResearcherStrategy(model))

    async def submit_workload(self, queue: agentcue.TaskQueue, config: SimConfig, state: SimulationState) -> None:
        for i in range(config.count):
            agent_type = AGENT_MIX[i % len(AGENT_MIX)]
            config_options = {}
            files = sample_files(i)
            # Every other research task runs from a prompt alone
            if agent_type is AgentType.RESEARCHER and i % 2:
                files = []
                config_options = {"researchPrompt": "Compare approaches to the topic"}

            await queue.submit(TaskData(
                task_id=f"task_{i:04d}",
                agent_type=agent_type.value,
                files=files,
                user_id=f"user_{i % 3}",
                task_name=f"{agent_type.value} #{i}",
                config=config_options,
            ))
            state.submitted += 1

            if config.submit_rate:
                await asyncio.sleep(1.0 / config.submit_rate)
