"""Built-in scenarios for agentcue-sim.

Scenarios define workload patterns - which agents are live, how the
simulated model behaves, and what gets submitted.
"""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

from agentcue.agents import Completion
from agentcue.models import TaskFile

if TYPE_CHECKING:
    import agentcue
    from agentcue_sim.display import SimulationState
    from agentcue_sim.runner import SimConfig


@dataclass
class ScenarioInfo:
    """Metadata about a scenario."""
    name: str
    description: str


class Scenario(ABC):
    """Base class for simulation scenarios.

    A scenario defines:
    - Strategies (which agent types are live)
    - Initial workload (what to submit)
    """

    @property
    @abstractmethod
    def info(self) -> ScenarioInfo:
        """Return scenario metadata."""
        ...

    @abstractmethod
    def setup(self, queue: "agentcue.TaskQueue", config: "SimConfig", state: "SimulationState") -> None:
        """Register strategies on the queue's registry."""
        ...

    @abstractmethod
    async def submit_workload(self, queue: "agentcue.TaskQueue", config: "SimConfig", state: "SimulationState") -> None:
        """Submit the initial workload."""
        ...


SAMPLE_MARKDOWN = """\
# Summary
The lecture covers {topic} and how it applies in practice.

# Key Topics
- {topic}
- Worked examples
- Common mistakes

# Diagram and Figure References
- Figure 1

# Detailed Notes
- Definitions and notation for {topic}.
"""

SAMPLE_RESEARCH = """\
## Research Summary
The sources agree on the fundamentals of {topic}.

## Key Themes and Patterns
### Theme 1: Foundations
Every source starts from the same definitions.
### Theme 2: Open problems
Scaling remains unresolved.

## Critical Insights
1. **Consensus**: The basics are settled.
2. **Gap**: Few sources test at scale.

## Knowledge Gaps and Future Directions
- Larger empirical studies
"""

TOPICS = ["linear algebra", "thermodynamics", "cell biology", "macroeconomics", "graph theory"]


class SimulatedModel:
    """Language model stand-in with configurable latency and error rate."""

    provider = "simulated"

    def __init__(self, latency_ms: int, jitter: float = 0.2, error_rate: float = 0.0) -> None:
        self.latency_ms = latency_ms
        self.jitter = jitter
        self.error_rate = error_rate
        self.calls = 0

    async def complete(self, prompt: str) -> Completion:
        self.calls += 1
        if self.latency_ms > 0:
            base = self.latency_ms / 1000.0
            await asyncio.sleep(base * random.uniform(1 - self.jitter, 1 + self.jitter))
        if random.random() < self.error_rate:
            raise RuntimeError("Simulated upstream error (503)")

        topic = random.choice(TOPICS)
        template = SAMPLE_RESEARCH if "researcher" in prompt else SAMPLE_MARKDOWN
        text = template.format(topic=topic)
        return Completion(text=text, prompt_tokens=len(prompt) // 4, completion_tokens=len(text) // 4)


def sample_files(index: int, count: int = 2) -> list[TaskFile]:
    """Synthetic text attachments of varying size."""
    files = []
    for n in range(count):
        topic = TOPICS[(index + n) % len(TOPICS)]
        body = f"Lecture {index}.{n} on {topic}. " * random.randint(20, 200)
        files.append(TaskFile(
            file_id=f"file_{index:04d}_{n}",
            file_name=f"lecture_{index:04d}_{n}.txt",
            mime_type="text/plain",
            size=len(body),
            content=body,
        ))
    return files


# Import built-in scenarios
from agentcue_sim.scenarios.mixed_agents import MixedAgentsScenario
from agentcue_sim.scenarios.flaky_agents import FlakyAgentsScenario

# Registry of built-in scenarios
SCENARIOS: dict[str, type[Scenario]] = {
    "mixed_agents": MixedAgentsScenario,
    "flaky_agents": FlakyAgentsScenario,
}


def get_scenario(name: str) -> Scenario:
    """Get a scenario instance by name."""
    if name not in SCENARIOS:
        available = ", ".join(SCENARIOS.keys())
        raise ValueError(f"Unknown scenario: {name}. Available: {available}")
    return SCENARIOS[name]()


def list_scenarios() -> list[ScenarioInfo]:
    """List all available scenarios."""
    return [cls().info for cls in SCENARIOS.values()]
