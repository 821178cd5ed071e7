"""Prompt-driven agent strategies.

The language model is injected as anything satisfying `LanguageModel`; how
it talks to a provider is not this module's concern.
"""

from __future__ import annotations

import logging
import math
import re
from abc import abstractmethod
from dataclasses import dataclass
from typing import Any, Protocol

from agentcue.models import AgentContext, AgentType, StrategyResult
from agentcue.strategies import RESEARCH_PROMPT_KEY, AgentStrategy

logger = logging.getLogger(__name__)

# Blended input/output price per 1K tokens
COST_PER_1K_TOKENS: dict[str, float] = {
    "openai": (0.01 + 0.03) / 2,
    "anthropic": (0.003 + 0.015) / 2,
}
DEFAULT_COST_PER_1K = 0.002

CHUNK_SEPARATOR = "\n\n---\n\n"


@dataclass
class Completion:
    """Text returned by a language model, with token counts when known."""

    text: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None

    @property
    def total_tokens(self) -> int | None:
        if self.prompt_tokens is None or self.completion_tokens is None:
            return None
        return self.prompt_tokens + self.completion_tokens


class LanguageModel(Protocol):
    provider: str

    async def complete(self, prompt: str) -> Completion: ...


def estimate_cost(tokens: int, provider: str) -> float:
    rate = COST_PER_1K_TOKENS.get(provider, DEFAULT_COST_PER_1K)
    return tokens / 1000 * rate


def extract_section(text: str, heading: str) -> str | None:
    """Body of a markdown section (any heading level) up to the next heading."""
    pattern = re.compile(
        rf"^#+\s*{re.escape(heading)}\s*\n(.*?)(?=^#|\Z)",
        re.MULTILINE | re.DOTALL,
    )
    match = pattern.search(text)
    return match.group(1).strip() if match else None


def bullet_items(section: str | None) -> list[str]:
    if not section:
        return []
    items = []
    for line in section.splitlines():
        line = line.strip()
        if line.startswith("-"):
            item = line.lstrip("-").strip()
            if item:
                items.append(item)
    return items


class PromptStrategy(AgentStrategy):
    """Builds a prompt from context, calls the model, parses the reply."""

    agent_type: str = ""
    result_format = "markdown"

    def __init__(self, model: LanguageModel) -> None:
        self.model = model
        self.name = self.agent_type

    @abstractmethod
    def build_prompt(self, context: AgentContext, config: dict[str, Any]) -> str:
        ...

    @abstractmethod
    def parse(self, text: str, context: AgentContext, config: dict[str, Any]) -> dict[str, Any]:
        """Structured metadata extracted from the model's reply."""
        ...

    async def run(self, context, config, progress):
        await progress(10)
        prompt = self.build_prompt(context, config)
        await progress(20)

        completion = await self.model.complete(prompt)
        await progress(80)

        metadata = {"agentType": self.agent_type, **self.parse(completion.text, context, config)}
        tokens = completion.total_tokens
        if tokens is None:
            tokens = math.ceil((len(prompt) + len(completion.text)) / 4)
        provider = getattr(self.model, "provider", "unknown")
        await progress(100)

        logger.debug("%s produced %d tokens via %s", self.agent_type, tokens, provider)
        return StrategyResult(
            content=completion.text,
            format=self.result_format,
            metadata=metadata,
            tokens_used=tokens,
            cost=estimate_cost(tokens, provider),
            model=provider,
        )


NOTE_TAKER_TEMPLATE = """\
You are an expert academic note-taker. Extract, organize and summarize key
information solely from the documents below. Do not use outside knowledge.

Context:
- Number of documents: {file_count}
- Total words: {total_words}
- Note style: {note_style}
- Summary length: {summary_length}

Documents Content:
{content}

Instructions:
1. Extract main topics, concepts and key points.
2. Write a {summary_length} summary of the entire content.
3. {formula_instruction}
4. {diagram_instruction}
5. List key topics separately.
6. Organize the detailed notes in {note_style} style.

Format your response with exactly these headings:

# Summary
# Key Topics
# Diagram and Figure References
# Detailed Notes
"""


class NoteTakerStrategy(PromptStrategy):
    """Structured study notes from course documents."""

    agent_type = AgentType.NOTE_TAKER.value
    max_chunks = 10

    def build_prompt(self, context, config):
        include_formulas = config.get("includeFormulas", True)
        include_diagrams = config.get("includeDiagramReferences", True)
        return NOTE_TAKER_TEMPLATE.format(
            file_count=context.file_count,
            total_words=context.total_words,
            note_style=config.get("noteStyle", "bullet"),
            summary_length=config.get("summaryLength", "moderate"),
            formula_instruction=(
                "Preserve all mathematical formulas and equations."
                if include_formulas
                else "Focus on conceptual understanding without formulas."
            ),
            diagram_instruction=(
                "List each unique textual reference to a diagram, figure, table or chart."
                if include_diagrams
                else "Do not list references to diagrams, figures or tables."
            ),
            content=CHUNK_SEPARATOR.join(context.chunks[: self.max_chunks]),
        )

    def parse(self, text, context, config):
        return {
            "noteStyle": config.get("noteStyle", "bullet"),
            "summaryLength": config.get("summaryLength", "moderate"),
            "keyTopics": bullet_items(extract_section(text, "Key Topics")),
            "diagramReferences": bullet_items(extract_section(text, "Diagram and Figure References")),
        }


RESEARCHER_TEMPLATE = """\
You are an expert academic researcher. Analyze the material below and
synthesize research insights.

Context:
- Number of documents: {file_count}
- Total words: {total_words}
- Research depth: {depth}
- Include citations: {include_citations}
{question}
Documents Content:
{content}

Structure your response in markdown with exactly these sections:

## Research Summary
## Key Themes and Patterns
(one "### Theme N: <name>" subsection per theme)
## Comparative Analysis
## Critical Insights
(numbered, each as "N. **Insight**: explanation")
## Knowledge Gaps and Future Directions
{citation_section}## Recommendations
"""

_THEME = re.compile(r"^###\s*Theme\s+\d+:\s*(.+?)\s*\n(.*?)(?=^#|\Z)", re.MULTILINE | re.DOTALL)
_INSIGHT = re.compile(r"^\d+\.\s*\*\*(.+?)\*\*:\s*(.+)$", re.MULTILINE)


class ResearcherStrategy(PromptStrategy):
    """Cross-document research synthesis; can run from a prompt alone."""

    agent_type = AgentType.RESEARCHER.value
    max_chunks = 20

    def build_prompt(self, context, config):
        include_citations = config.get("includeCitations", True)
        research_prompt = config.get(RESEARCH_PROMPT_KEY)
        content = CHUNK_SEPARATOR.join(context.chunks[: self.max_chunks])
        return RESEARCHER_TEMPLATE.format(
            file_count=context.file_count,
            total_words=context.total_words,
            depth=config.get("analysisDepth", "moderate"),
            include_citations="yes" if include_citations else "no",
            question=f"- Research question: {research_prompt}\n" if research_prompt else "",
            content=content or "(no documents supplied; answer from the research question)",
            citation_section="## Citations and References\n" if include_citations else "",
        )

    def parse(self, text, context, config):
        # Theme subsections are headings themselves, so match them on the full text
        themes = [
            {"theme": name.strip(), "description": body.strip()}
            for name, body in _THEME.findall(text)
        ]
        insights_section = extract_section(text, "Critical Insights") or ""
        insights = [
            {"insight": name.strip(), "explanation": body.strip()}
            for name, body in _INSIGHT.findall(insights_section)
        ]
        return {
            "analysisDepth": config.get("analysisDepth", "moderate"),
            "researchSummary": extract_section(text, "Research Summary"),
            "keyThemes": themes,
            "criticalInsights": insights,
            "knowledgeGaps": bullet_items(extract_section(text, "Knowledge Gaps and Future Directions")),
            "promptOnly": context.file_count == 0,
        }
