import asyncio
from typing import List, Optional

import pytest

from clipthread.app.core.exceptions import PipelineFatalStep, PipelineNotFound, PipelineTimeout
from clipthread.app.models.pipeline import RunStatus
from clipthread.app.services.pipeline import TERMINATE, Pipeline, PipelineExecutor, PipelineState
from clipthread.tests.fakes import FixedClock


class CounterState(PipelineState, total=False):
    value: int
    path: List[str]
    fallback: Optional[str]


def counter_pipeline(name="counter") -> Pipeline:
    return (
        Pipeline(name=name, state_schema=CounterState)
        .add_step("double", lambda s: {"value": s["value"] * 2, "path": s.get("path", []) + ["double"]})
        .add_step("increment", lambda s: {"value": s["value"] + 1, "path": s["path"] + ["increment"]})
        .add_edge("double", "increment")
    )


@pytest.mark.asyncio
async def test_steps_run_in_order_and_merge_updates():
    executor = PipelineExecutor()
    executor.register(counter_pipeline())

    run = await executor.run("counter", {"value": 3})

    assert run.status == RunStatus.COMPLETED
    assert run.state["value"] == 7
    assert run.state["path"] == ["double", "increment"]
    assert [o.step for o in run.step_log] == ["double", "increment"]
    assert all(o.ok for o in run.step_log)
    assert run.ended_at is not None


@pytest.mark.asyncio
async def test_branch_can_terminate_early():
    pipeline = (
        Pipeline(name="gate", state_schema=CounterState)
        .add_step("check", lambda s: {"path": ["check"]})
        .add_step("expensive", lambda s: {"path": s["path"] + ["expensive"]})
        .add_branch("check", lambda s: "expensive" if s["value"] > 10 else TERMINATE, ["expensive"])
    )
    executor = PipelineExecutor()
    executor.register(pipeline)

    low = await executor.run("gate", {"value": 1})
    high = await executor.run("gate", {"value": 50})

    assert low.state["path"] == ["check"]
    assert high.state["path"] == ["check", "expensive"]


@pytest.mark.asyncio
async def test_failed_step_records_error_and_routes_to_fallback():
    def flaky(state):
        raise RuntimeError("upstream down")

    pipeline = (
        Pipeline(name="flaky", state_schema=CounterState)
        .add_step("fetch", flaky)
        .add_step("fallback", lambda s: {"fallback": s["last_error"]["step"]})
        .add_step("done", lambda s: {"fallback": "unused"})
        .add_branch("fetch", lambda s: "fallback" if s.get("last_error") else "done", ["fallback", "done"])
    )
    executor = PipelineExecutor()
    executor.register(pipeline)

    run = await executor.run("flaky", {"value": 0})

    assert run.status == RunStatus.COMPLETED
    assert run.state["last_error"]["type"] == "RuntimeError"
    assert run.state["fallback"] == "fetch"
    assert run.step_log[0].ok is False
    assert "upstream down" in run.step_log[0].error


@pytest.mark.asyncio
async def test_fatal_step_fails_the_run():
    def broken(state):
        raise ValueError("bad input")

    pipeline = Pipeline(name="fatal", state_schema=CounterState).add_step("parse", broken, fatal=True)
    executor = PipelineExecutor()
    executor.register(pipeline)

    run = await executor.run("fatal", {"value": 0})

    assert run.status == RunStatus.FAILED
    assert isinstance(run.error, PipelineFatalStep)
    assert run.error.step == "parse"


@pytest.mark.asyncio
async def test_step_budget_stops_cycles():
    pipeline = (
        Pipeline(name="loop", state_schema=CounterState)
        .add_step("spin", lambda s: {"value": s["value"] + 1})
        .add_branch("spin", lambda s: "spin", ["spin"])
    )
    executor = PipelineExecutor()
    executor.register(pipeline)

    run = await executor.run("loop", {"value": 0}, max_steps=5)

    assert run.status == RunStatus.FAILED
    assert isinstance(run.error, PipelineTimeout)
    assert run.error.reason == "step_budget"


@pytest.mark.asyncio
async def test_wall_clock_timeout():
    async def slow(state):
        await asyncio.sleep(1)
        return {"value": 1}

    executor = PipelineExecutor()
    executor.register(Pipeline(name="slow", state_schema=CounterState).add_step("wait", slow))

    run = await executor.run("slow", {"value": 0}, timeout=0.05)

    assert run.status == RunStatus.FAILED
    assert run.error.reason == "wall_clock"


@pytest.mark.asyncio
async def test_listeners_see_each_step_and_failures_are_isolated():
    seen = []

    def sync_listener(run, outcome):
        seen.append(("sync", outcome.step))

    async def async_listener(run, outcome):
        seen.append(("async", outcome.step))

    def broken_listener(run, outcome):
        raise RuntimeError("listener bug")

    executor = PipelineExecutor()
    executor.register(counter_pipeline())

    run = await executor.run("counter", {"value": 1}, listeners=[broken_listener, sync_listener, async_listener])

    assert run.succeeded
    assert seen == [
        ("sync", "double"), ("async", "double"),
        ("sync", "increment"), ("async", "increment"),
    ]


@pytest.mark.asyncio
async def test_unknown_pipeline_raises():
    with pytest.raises(PipelineNotFound):
        await PipelineExecutor().run("missing", {})


@pytest.mark.asyncio
async def test_undeclared_keys_are_dropped():
    pipeline = Pipeline(name="extra", state_schema=CounterState).add_step(
        "emit", lambda s: {"value": 9, "not_in_schema": True}
    )
    executor = PipelineExecutor()
    executor.register(pipeline)

    run = await executor.run("extra", {"value": 0})

    assert run.state["value"] == 9
    assert "not_in_schema" not in run.state


def test_validation_rejects_bad_graphs():
    unknown = Pipeline(name="a", state_schema=CounterState).add_step("one", lambda s: {}).add_edge("one", "two")
    clash = Pipeline(name="b", state_schema=CounterState).add_step("value", lambda s: {})
    two_exits = (
        Pipeline(name="c", state_schema=CounterState)
        .add_step("one", lambda s: {})
        .add_step("two", lambda s: {})
        .add_edge("one", "two")
        .add_branch("one", lambda s: "two", ["two"])
    )
    empty = Pipeline(name="d", state_schema=CounterState)

    for pipeline in (unknown, clash, two_exits, empty):
        with pytest.raises(ValueError):
            pipeline.validate()


def test_duplicate_step_name_rejected():
    pipeline = Pipeline(name="dup", state_schema=CounterState).add_step("one", lambda s: {})
    with pytest.raises(ValueError):
        pipeline.add_step("one", lambda s: {})


@pytest.mark.asyncio
async def test_finished_runs_are_pruned_after_retention():
    clock = FixedClock()
    executor = PipelineExecutor(clock=clock)
    executor.register(counter_pipeline())

    run = await executor.run("counter", {"value": 1})
    assert executor.get_run(run.id) is run

    clock.advance(200)
    assert executor.prune() == 0
    clock.advance(200)
    assert executor.prune() == 1
    assert executor.get_run(run.id) is None
    assert executor.list_runs() == []
