import asyncio

import pytest

from phasegate.contracts import Artifact, ArtifactOutput, ScoreReport, TaskRequest, TaskResult
from phasegate.errors import ExecutorFailure
from phasegate.pipeline import CriterionSpec
from phasegate.registry import (
    ScorerRegistry,
    TaskExecutor,
    TaskExecutorRegistry,
    WeightedAverageScorer,
)


def _request(task_name="write", deadline=None):
    return TaskRequest(
        run_id="run",
        task_name=task_name,
        step_id="s1",
        phase_id="p1",
        iteration=1,
        deadline_seconds=deadline,
    )


class Summarizer(TaskExecutor):
    name = "summarize"
    version = "1.2.0"

    async def run(self, request):
        return TaskResult(outputs=[ArtifactOutput(kind="summary", content="short")])


@pytest.mark.asyncio
async def test_invoke_normalises_plain_outputs():
    registry = TaskExecutorRegistry()

    @registry.task("write", version="0.3.0")
    def write(request):
        return [{"kind": "draft", "content": f"for {request.step_id}"}]

    result = await registry.invoke(_request())

    assert result.outputs == [ArtifactOutput(kind="draft", content="for s1")]
    assert result.metadata.executor_version == "0.3.0"
    assert result.metadata.duration_ms >= 0
    assert "write" in registry
    assert registry.names() == ["write"]


@pytest.mark.asyncio
async def test_task_executor_subclass():
    registry = TaskExecutorRegistry()
    registry.register("summarize", Summarizer())

    result = await registry.invoke(_request("summarize"))

    assert result.outputs[0].kind == "summary"


def test_registration_errors():
    registry = TaskExecutorRegistry()
    registry.register("write", lambda request: [])

    with pytest.raises(ValueError):
        registry.register("write", lambda request: [])
    with pytest.raises(TypeError):
        registry.register("other", "not callable")
    with pytest.raises(KeyError, match="Available executors: write"):
        registry.get("missing")


@pytest.mark.asyncio
async def test_invoke_failures():
    registry = TaskExecutorRegistry()

    async def slow(request):
        await asyncio.sleep(5)

    def broken(request):
        raise RuntimeError("boom")

    def flaky(request):
        raise ExecutorFailure("rate limited", retryable=True)

    registry.register("slow", slow)
    registry.register("broken", broken)
    registry.register("flaky", flaky)
    registry.register("garbage", lambda request: [{"content": "no kind"}])

    with pytest.raises(ExecutorFailure) as exc:
        await registry.invoke(_request("missing"))
    assert not exc.value.retryable

    with pytest.raises(ExecutorFailure) as exc:
        await registry.invoke(_request("slow", deadline=0.01))
    assert exc.value.retryable
    assert "deadline" in exc.value.reason

    with pytest.raises(ExecutorFailure) as exc:
        await registry.invoke(_request("broken"))
    assert not exc.value.retryable
    assert "RuntimeError: boom" in exc.value.reason

    with pytest.raises(ExecutorFailure) as exc:
        await registry.invoke(_request("flaky"))
    assert exc.value.retryable
    assert exc.value.reason == "rate limited"

    with pytest.raises(ExecutorFailure, match="malformed outputs"):
        await registry.invoke(_request("garbage"))


@pytest.mark.asyncio
async def test_scorer_registry_normalises_reports():
    registry = ScorerRegistry()

    @registry.scorer("plain")
    def plain(artifacts, criteria):
        return 88

    @registry.scorer("mapping")
    async def mapping(artifacts, criteria):
        return {"aggregate_score": 70, "sub_scores": {"style": 70}}

    assert await registry.score("plain", [], []) == ScoreReport(aggregate_score=88)
    report = await registry.score("mapping", [], [])
    assert report.sub_scores == {"style": 70}
    assert registry.names() == ["mapping", "plain"]

    with pytest.raises(KeyError, match="Available scorers"):
        registry.get("missing")


@pytest.mark.asyncio
async def test_scorer_registry_rejects_out_of_range_scores():
    registry = ScorerRegistry()
    registry.register("wild", lambda artifacts, criteria: 140)

    with pytest.raises(ValueError):
        await registry.score("wild", [], [])


@pytest.mark.asyncio
async def test_weighted_average_scorer():
    artifacts = [Artifact.create(kind="code", content="x", step_id="s", phase_id="p", iteration=1)]
    scores = {"tests": 100.0, "style": 70.0}
    scorer = WeightedAverageScorer("weighted", lambda criterion, arts: scores[criterion.name])
    criteria = [
        CriterionSpec(name="tests", step="s", weight=3),
        CriterionSpec(name="style", step="s", weight=1),
    ]

    report = await scorer.score(artifacts, criteria)

    assert report.sub_scores == scores
    assert report.aggregate_score == pytest.approx(92.5)
    assert (await scorer.score(artifacts, [])).aggregate_score == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("deadline", [None, 5])
async def test_executor_raising_timeout_error_is_not_a_deadline(deadline):
    registry = TaskExecutorRegistry()

    def socket_timeout(request):
        raise TimeoutError("socket timed out")

    registry.register("fetch", socket_timeout)

    with pytest.raises(ExecutorFailure) as exc:
        await registry.invoke(_request("fetch", deadline=deadline))

    assert not exc.value.retryable
    assert "TimeoutError: socket timed out" in exc.value.reason
    assert "deadline" not in exc.value.reason
