"""Agent strategy registry.

Maps an agent type to the strategy that produces its result. Unknown and
disabled types resolve to `PlaceholderStrategy`, so the pipeline always has
something well-defined to run.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from agentcue.models import AgentContext, AgentType, StrategyResult

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], Awaitable[None]]

# Config key that lets the researcher run without attachments
RESEARCH_PROMPT_KEY = "researchPrompt"


class AgentStrategy(ABC):
    """Agent-specific processing invoked by the worker's strategy stage.

    Strategies may retry their own upstream calls but must never retry the
    whole job; that is the queue's decision.
    """

    name: str = "strategy"

    @abstractmethod
    async def run(
        self,
        context: AgentContext,
        config: dict[str, Any],
        progress: ProgressCallback,
    ) -> StrategyResult:
        """Produce a result. `progress` takes a 0-100 percentage."""
        ...


class FunctionStrategy(AgentStrategy):
    """Adapts a plain (sync or async) function to `AgentStrategy`."""

    def __init__(self, name: str, func: Callable[..., Any]) -> None:
        self.name = name
        self.func = func

    async def run(self, context, config, progress):
        if inspect.iscoroutinefunction(self.func):
            result = await self.func(context, config, progress)
        else:
            result = self.func(context, config, progress)
        if isinstance(result, dict):
            result = StrategyResult(
                content=result["content"],
                format=result.get("format", "markdown"),
                metadata=result.get("metadata", {}),
                tokens_used=result.get("tokensUsed", 0),
                cost=result.get("cost", 0.0),
                model=result.get("model"),
            )
        return result


@dataclass(frozen=True)
class AgentInfo:
    """Catalog entry describing an agent type."""

    name: str
    description: str
    config_options: dict[str, Any] = field(default_factory=dict)
    coming_soon: bool = False


AGENT_CATALOG: dict[str, AgentInfo] = {
    AgentType.NOTE_TAKER.value: AgentInfo(
        name="Note Taker",
        description="Extracts and organizes key information from documents",
        config_options={
            "noteStyle": ["bullet", "outline", "paragraph"],
            "summaryLength": ["brief", "moderate", "detailed"],
            "includeFormulas": True,
        },
    ),
    AgentType.RESEARCHER.value: AgentInfo(
        name="Researcher",
        description="Analyzes multiple documents for research insights",
        config_options={
            "analysisDepth": ["quick", "moderate", "deep"],
            "compareSources": True,
            "extractCitations": True,
        },
    ),
    AgentType.STUDY_BUDDY.value: AgentInfo(
        name="Study Buddy",
        description="Creates study materials and practice questions",
        config_options={
            "materialTypes": ["flashcards", "quiz", "summary"],
            "difficulty": ["easy", "medium", "hard"],
            "questionCount": 20,
        },
        coming_soon=True,
    ),
    AgentType.ASSIGNMENT.value: AgentInfo(
        name="Assignment Assistant",
        description="Helps plan and structure assignments",
        config_options={
            "assignmentType": ["essay", "report", "presentation"],
            "includeOutline": True,
            "suggestThesis": True,
            "citationStyle": ["APA", "MLA", "Chicago"],
        },
        coming_soon=True,
    ),
}


def requires_files(agent_type: str, config: dict[str, Any] | None = None) -> bool:
    """Whether a task of this type needs at least one attachment."""
    if agent_type == AgentType.RESEARCHER.value:
        return not (config or {}).get(RESEARCH_PROMPT_KEY)
    return True


class PlaceholderStrategy(AgentStrategy):
    """
    Stand-in for agent types without a real strategy.

    Reports progress in steps of 10 and returns a deterministic stub that
    records what the pipeline handed it.
    """

    name = "placeholder"

    def __init__(self, agent_type: str, step_delay: float = 0.2) -> None:
        self.agent_type = agent_type
        self.step_delay = step_delay

    async def run(self, context, config, progress):
        for pct in range(0, 101, 10):
            if self.step_delay > 0:
                await asyncio.sleep(self.step_delay)
            await progress(pct)

        files, words = context.file_count, context.total_words
        metadata = {
            "agentType": self.agent_type,
            "placeholder": True,
            "fileCount": files,
            "totalWords": words,
        }

        if self.agent_type == AgentType.STUDY_BUDDY.value:
            content = json.dumps(
                {
                    "summary": f"Study materials prepared from {files} files",
                    "readyForProcessing": True,
                    "fileStats": {"count": files, "totalWords": words},
                    "placeholder": True,
                },
                indent=2,
            )
            return StrategyResult(
                content=content,
                format="json",
                metadata=metadata,
                tokens_used=round(context.total_tokens * 0.7),
                cost=0.004,
            )

        if self.agent_type == AgentType.RESEARCHER.value:
            content = (
                f"# Research Analysis\n\nAnalyzed {files} documents.\n\n"
                f"## Findings\n- Documents processed successfully\n"
                f"- {words} words analyzed\n- Ready for cross-document analysis\n"
            )
            ratio, cost = 0.6, 0.003
        elif self.agent_type == AgentType.ASSIGNMENT.value:
            content = (
                f"# Assignment Assistant\n\nAnalyzed {files} reference materials.\n\n"
                f"## Overview\n- {words} words of content processed\n"
                f"- Ready for assignment planning\n"
            )
            ratio, cost = 0.5, 0.002
        else:
            content = (
                f"# Notes Summary\n\nProcessed {files} files with {words} words.\n\n"
                f"## Key Points\n- Content extraction successful\n- Ready for AI processing\n"
            )
            ratio, cost = 0.5, 0.002

        return StrategyResult(
            content=content,
            format="markdown",
            metadata=metadata,
            tokens_used=round(context.total_tokens * ratio),
            cost=cost,
        )


class StrategyRegistry:
    """
    Dispatch table from agent type to strategy.

    Example:
        registry = StrategyRegistry()
        registry.register("note-taker", NoteTakerStrategy(model))

        @registry.strategy("summarizer")
        async def summarize(context, config, progress):
            await progress(100)
            return {"content": "...", "format": "markdown"}
    """

    def __init__(self, placeholder_delay: float = 0.2) -> None:
        self.placeholder_delay = placeholder_delay
        self._strategies: dict[str, AgentStrategy] = {}
        self._disabled: set[str] = set()

    def register(self, agent_type: str, strategy: AgentStrategy) -> AgentStrategy:
        if not isinstance(strategy, AgentStrategy):
            raise TypeError(f"Strategy for {agent_type} must be an AgentStrategy")
        self._strategies[agent_type] = strategy
        self._disabled.discard(agent_type)
        return strategy

    def strategy(self, agent_type: str):
        """Decorator registering a function as the strategy for `agent_type`."""
        def decorator(func):
            self.register(agent_type, FunctionStrategy(agent_type, func))
            return func
        return decorator

    def disable(self, agent_type: str) -> None:
        """Route `agent_type` to the placeholder without unregistering it."""
        self._disabled.add(agent_type)

    def enable(self, agent_type: str) -> None:
        self._disabled.discard(agent_type)

    def resolve(self, agent_type: str) -> AgentStrategy | None:
        if agent_type in self._disabled:
            return None
        return self._strategies.get(agent_type)

    def resolve_or_placeholder(self, agent_type: str) -> AgentStrategy:
        strategy = self.resolve(agent_type)
        if strategy is None:
            logger.info("Agent %s not yet implemented, using placeholder", agent_type)
            return PlaceholderStrategy(agent_type, step_delay=self.placeholder_delay)
        return strategy

    def available(self) -> dict[str, dict[str, Any]]:
        """Catalog view with whether each type has a live strategy."""
        agents: dict[str, dict[str, Any]] = {}
        for agent_type, info in AGENT_CATALOG.items():
            agents[agent_type] = {
                "name": info.name,
                "description": info.description,
                "configOptions": info.config_options,
                "comingSoon": info.coming_soon,
                "implemented": self.resolve(agent_type) is not None,
            }
        return agents
