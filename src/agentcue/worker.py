"""Five-stage execution pipeline for a single job.

    validate_inputs (10%) -> process_files (20-30%) -> build_context (40%)
        -> run_agent_strategy (50-90%) -> finalize_and_persist (95-100%)

Stages run strictly in order. Any stage error aborts the attempt and
propagates to the queue, which decides between retry and terminal failure.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable

from agentcue.cache import TTLCache
from agentcue.errors import InvalidInput, StrategyError
from agentcue.files import FileProcessor, TextFileProcessor, estimate_tokens
from agentcue.models import (
    AgentContext,
    Job,
    ProcessedFile,
    StatusUpdate,
    StrategyResult,
    TaskData,
    TaskFile,
    TaskStatus,
)
from agentcue.store import StatusReporter
from agentcue.strategies import AgentStrategy, StrategyRegistry, requires_files

logger = logging.getLogger(__name__)

ProgressHook = Callable[[int], Awaitable[None]]

# Overall progress band reserved for the strategy stage
STRATEGY_START = 50
STRATEGY_END = 90


class _ProgressTracker:
    """Keeps one attempt's progress non-decreasing and fans it out."""

    def __init__(self, task_id: str, reporter: StatusReporter, hook: ProgressHook | None) -> None:
        self.task_id = task_id
        self.reporter = reporter
        self.hook = hook
        self.current = 0

    async def report(self, progress: int, message: str) -> int:
        self.current = max(self.current, min(int(progress), 100))
        self.reporter.push(StatusUpdate(
            task_id=self.task_id,
            status=TaskStatus.PROCESSING,
            progress=self.current,
            message=message,
        ))
        if self.hook is not None:
            await self.hook(self.current)
        return self.current


class Worker:
    """
    Runs jobs through the pipeline. One call to `process` per job attempt.

    Example:
        worker = Worker(registry=registry, reporter=StatusReporter(store))
        result = await worker.process(job)
    """

    def __init__(
        self,
        *,
        registry: StrategyRegistry,
        reporter: StatusReporter,
        file_processor: FileProcessor | None = None,
        cache: TTLCache[ProcessedFile] | None = None,
    ) -> None:
        self.registry = registry
        self.reporter = reporter
        self.file_processor = file_processor or TextFileProcessor()
        self.cache = cache

    async def process(self, job: Job, on_progress: ProgressHook | None = None) -> dict[str, Any]:
        """Execute every stage for `job`. Returns the job's result payload."""
        data = job.data
        started = time.perf_counter()
        tracker = _ProgressTracker(data.task_id, self.reporter, on_progress)
        logger.info(
            "Processing task %s (job %s, attempt %d/%d)",
            data.task_id, job.id, job.attempts, job.max_attempts,
        )

        await tracker.report(0, "Starting...")
        strategy = await self.validate_inputs(data, tracker)
        processed = await self.process_files(data, tracker)
        context = await self.build_context(data, processed, tracker)
        result = await self.run_agent_strategy(data, strategy, context, tracker)
        return await self.finalize_and_persist(data, context, result, started, tracker)

    async def validate_inputs(self, data: TaskData, tracker: _ProgressTracker) -> AgentStrategy:
        if not data.files and requires_files(data.agent_type, data.config):
            if data.agent_type == "researcher":
                raise InvalidInput("No files provided. Attach files or supply a research prompt.")
            raise InvalidInput(f"No files provided. The {data.agent_type} agent needs at least one file.")
        strategy = self.registry.resolve_or_placeholder(data.agent_type)
        await tracker.report(10, "Inputs validated")
        return strategy

    async def process_files(self, data: TaskData, tracker: _ProgressTracker) -> list[ProcessedFile]:
        if not data.files:
            await tracker.report(20, "No files to process...")
            return []

        await tracker.report(20, f"Processing {len(data.files)} files...")
        processed: list[ProcessedFile] = []
        for file in data.files:
            key = self._cache_key(file)
            cached = self.cache.get(key) if key is not None else None
            if cached is not None:
                processed.append(cached)
                continue
            try:
                result = await self.file_processor.process(file)
            except Exception as e:
                logger.warning("Failed to process file %s for task %s: %s", file.file_name, data.task_id, e)
                result = ProcessedFile(file_name=file.file_name, error=str(e) or type(e).__name__)
            if result.ok and key is not None:
                self.cache.set(key, result)
            processed.append(result)

        failed = sum(1 for p in processed if not p.ok)
        if failed == len(processed) and requires_files(data.agent_type, data.config):
            raise InvalidInput(f"None of the {failed} files could be processed")
        await tracker.report(30, "Files processed")
        return processed

    def _cache_key(self, file: TaskFile) -> tuple | None:
        """Files without a real id are never cached."""
        if self.cache is None or not file.file_id:
            return None
        return (file.file_id, file.size, hash(file.content))

    async def build_context(
        self,
        data: TaskData,
        processed: list[ProcessedFile],
        tracker: _ProgressTracker,
    ) -> AgentContext:
        valid = [p for p in processed if p.ok]
        context = AgentContext(
            files=valid,
            file_count=len(valid),
            total_words=sum(p.word_count for p in valid),
            total_tokens=sum(estimate_tokens(p.content) for p in valid),
            chunks=[chunk for p in valid for chunk in (p.chunks or [p.content])],
            skipped_files=[{"fileName": p.file_name, "error": p.error} for p in processed if not p.ok],
            course_context=dict(data.course_context),
        )
        await tracker.report(40, "Context ready")
        return context

    async def run_agent_strategy(
        self,
        data: TaskData,
        strategy: AgentStrategy,
        context: AgentContext,
        tracker: _ProgressTracker,
    ) -> StrategyResult:
        await tracker.report(STRATEGY_START, "AI processing...")

        async def progress(pct: int) -> None:
            pct = max(0, min(int(pct), 100))
            overall = STRATEGY_START + round(pct * (STRATEGY_END - STRATEGY_START) / 100)
            await tracker.report(overall, f"AI processing: {pct}%")

        try:
            result = await strategy.run(context, dict(data.config), progress)
        except StrategyError:
            raise
        except InvalidInput:
            raise
        except Exception as e:
            raise StrategyError(f"Agent processing failed: {str(e) or type(e).__name__}") from e

        if not isinstance(result, StrategyResult):
            raise StrategyError(f"{strategy.name} returned {type(result).__name__}, expected StrategyResult")
        await tracker.report(STRATEGY_END, "AI processing complete")
        return result

    async def finalize_and_persist(
        self,
        data: TaskData,
        context: AgentContext,
        result: StrategyResult,
        started: float,
        tracker: _ProgressTracker,
    ) -> dict[str, Any]:
        await tracker.report(95, "Finalizing results...")
        processing_time = round((time.perf_counter() - started) * 1000)

        final_result = {
            "content": result.content,
            "format": result.format,
            "metadata": {
                **result.metadata,
                "processingTime": processing_time,
                "processedFiles": context.file_count,
                "fileCount": context.file_count,
                "totalWords": context.total_words,
                "skippedFiles": context.skipped_files,
            },
        }
        usage = {
            "tokensUsed": result.tokens_used,
            "processingTime": processing_time,
            "cost": result.cost,
            "model": result.model,
        }

        tracker.current = 100
        if tracker.hook is not None:
            await tracker.hook(100)

        # Nothing may await after this push: a late cancel would follow "completed"
        self.reporter.push(StatusUpdate(
            task_id=data.task_id,
            status=TaskStatus.COMPLETED,
            progress=100,
            message="Complete",
            result=final_result,
            usage=usage,
        ))
        logger.info("Task %s completed in %dms", data.task_id, processing_time)
        return {
            "taskId": data.task_id,
            "status": TaskStatus.COMPLETED.value,
            "result": final_result,
            "usage": usage,
        }
