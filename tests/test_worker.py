"""Worker pipeline tests."""

import pytest

from agentcue.cache import TTLCache
from agentcue.errors import InvalidInput, StrategyError
from agentcue.files import TextFileProcessor
from agentcue.models import Job, StrategyResult, TaskData, TaskFile, TaskStatus
from agentcue.store import MemoryTaskStore, StatusReporter
from agentcue.strategies import StrategyRegistry
from agentcue.worker import Worker


def text_file(name, text="Some lecture text. It has two sentences."):
    return TaskFile(file_id=name, file_name=name, size=len(text), content=text)


def make_job(agent_type="note-taker", files=None, config=None):
    data = TaskData(
        task_id="t1",
        agent_type=agent_type,
        files=[text_file("a.txt")] if files is None else files,
        user_id="u1",
        config=config or {},
    )
    return Job(id="j1", task_id="t1", data=data, attempts=1)


class CountingProcessor(TextFileProcessor):
    def __init__(self):
        super().__init__()
        self.calls = 0

    async def process(self, file):
        self.calls += 1
        return await super().process(file)


@pytest.fixture
async def store():
    return MemoryTaskStore()


@pytest.fixture
async def worker(store):
    reporter = StatusReporter(store)
    w = Worker(registry=StrategyRegistry(placeholder_delay=0), reporter=reporter)
    yield w
    await reporter.close()


async def record_progress(worker, job):
    seen = []

    async def hook(pct):
        seen.append(pct)

    result = await worker.process(job, hook)
    return result, seen


class TestPipeline:
    """Stages run in order and produce the result payload."""

    async def test_completes_with_placeholder(self, worker, store):
        result, _ = await record_progress(worker, make_job())
        await worker.reporter.flush(1.0)

        assert result["taskId"] == "t1"
        assert result["status"] == "completed"
        assert "Notes Summary" in result["result"]["content"]
        meta = result["result"]["metadata"]
        assert meta["fileCount"] == 1
        assert meta["processedFiles"] == 1
        assert meta["totalWords"] == 7
        assert meta["skippedFiles"] == []
        assert meta["placeholder"] is True
        assert "processingTime" in meta
        assert set(result["usage"]) == {"tokensUsed", "processingTime", "cost", "model"}

        record = store.get("t1")
        assert record.status is TaskStatus.COMPLETED
        assert record.progress == 100
        assert record.result == result["result"]

    async def test_progress_is_monotonic_and_hits_stage_marks(self, worker, store):
        _, seen = await record_progress(worker, make_job())
        await worker.reporter.flush(1.0)

        assert seen == sorted(seen)
        assert seen[-1] == 100
        for mark in (10, 20, 30, 40, 50, 90, 95):
            assert mark in seen

        pushed = [u.progress for u in store.get("t1").history if u.progress is not None]
        assert pushed == sorted(pushed)

    async def test_strategy_progress_maps_into_band(self, worker):
        @worker.registry.strategy("note-taker")
        async def notes(context, config, progress):
            await progress(50)
            await progress(100)
            return StrategyResult(content="ok")

        _, seen = await record_progress(worker, make_job())
        assert 70 in seen
        assert seen.count(90) >= 1
        assert all(50 <= p <= 90 for p in seen[seen.index(50):seen.index(90)])


class TestValidation:
    """validate_inputs rejects unusable submissions."""

    async def test_note_taker_without_files(self, worker, store):
        with pytest.raises(InvalidInput, match="No files provided"):
            await worker.process(make_job(files=[]))
        await worker.reporter.flush(1.0)
        assert store.get("t1").status is TaskStatus.PROCESSING

    async def test_researcher_with_prompt_needs_no_files(self, worker):
        job = make_job("researcher", files=[], config={"researchPrompt": "Compare theories"})
        result = await worker.process(job)
        assert result["result"]["metadata"]["fileCount"] == 0

    async def test_researcher_without_prompt_or_files(self, worker):
        with pytest.raises(InvalidInput, match="research prompt"):
            await worker.process(make_job("researcher", files=[]))


class TestFileProcessing:
    """Per-file failures are soft."""

    async def test_partial_file_failure(self, worker):
        files = [
            text_file("good.txt"),
            TaskFile(file_id="scan", file_name="scan.png", mime_type="image/png", size=10),
        ]
        result = await worker.process(make_job(files=files))

        meta = result["result"]["metadata"]
        assert meta["processedFiles"] == 1
        assert meta["fileCount"] == 1
        assert len(meta["skippedFiles"]) == 1
        assert meta["skippedFiles"][0]["fileName"] == "scan.png"
        assert "Unsupported file type" in meta["skippedFiles"][0]["error"]

    async def test_all_files_failing_is_invalid_input(self, worker):
        files = [TaskFile(file_id="scan", file_name="scan.png", mime_type="image/png")]
        with pytest.raises(InvalidInput, match="None of the 1 files"):
            await worker.process(make_job(files=files))

    async def test_processed_files_are_cached_by_id(self, store):
        processor = CountingProcessor()
        reporter = StatusReporter(store)
        worker = Worker(
            registry=StrategyRegistry(placeholder_delay=0),
            reporter=reporter,
            file_processor=processor,
            cache=TTLCache(),
        )

        await worker.process(make_job())
        await worker.process(make_job())

        assert processor.calls == 1
        await reporter.close()

    async def test_same_file_name_in_different_tasks_is_not_shared(self, store):
        """Tasks only ever see their own file contents."""
        reporter = StatusReporter(store)
        worker = Worker(
            registry=StrategyRegistry(placeholder_delay=0),
            reporter=reporter,
            cache=TTLCache(),
        )

        def upload(text):
            return TaskFile.from_dict({"fileName": "notes.txt", "size": len(text), "content": text})

        first = await worker.process(make_job(files=[upload("one two")]))
        second = await worker.process(make_job(files=[upload("alpha beta gamma delta epsilon")]))
        await reporter.close()

        assert first["result"]["metadata"]["totalWords"] == 2
        assert second["result"]["metadata"]["totalWords"] == 5

    async def test_changed_content_under_same_id_is_reprocessed(self, store):
        processor = CountingProcessor()
        reporter = StatusReporter(store)
        worker = Worker(
            registry=StrategyRegistry(placeholder_delay=0),
            reporter=reporter,
            file_processor=processor,
            cache=TTLCache(),
        )

        await worker.process(make_job(files=[text_file("a.txt", "First draft.")]))
        result = await worker.process(make_job(files=[text_file("a.txt", "Second, longer draft here.")]))
        await reporter.close()

        assert processor.calls == 2
        assert result["result"]["metadata"]["totalWords"] == 4

    async def test_files_without_id_are_not_cached(self):
        cache = TTLCache()
        worker = Worker(registry=StrategyRegistry(placeholder_delay=0), reporter=StatusReporter(None), cache=cache)

        await worker.process(make_job(files=[TaskFile(file_id="", file_name="x.txt", size=3, content="abc")]))
        assert len(cache) == 0


class TestStrategyFailures:
    """Strategy errors abort the attempt."""

    async def test_errors_wrapped_in_strategy_error(self, worker, store):
        @worker.registry.strategy("note-taker")
        async def broken(context, config, progress):
            raise RuntimeError("upstream 503")

        with pytest.raises(StrategyError, match="upstream 503") as excinfo:
            await worker.process(make_job())
        assert isinstance(excinfo.value.__cause__, RuntimeError)

        await worker.reporter.flush(1.0)
        assert TaskStatus.COMPLETED not in store.get("t1").statuses

    async def test_empty_error_message_names_the_exception(self, worker):
        @worker.registry.strategy("note-taker")
        async def broken(context, config, progress):
            raise ConnectionResetError()

        with pytest.raises(StrategyError) as excinfo:
            await worker.process(make_job())
        assert str(excinfo.value) == "Agent processing failed: ConnectionResetError"

    async def test_wrong_return_type(self, worker):
        @worker.registry.strategy("note-taker")
        async def sloppy(context, config, progress):
            return "just a string"

        with pytest.raises(StrategyError, match="expected StrategyResult"):
            await worker.process(make_job())
