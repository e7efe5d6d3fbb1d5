import asyncio
import inspect
import logging
import operator
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import (
    Annotated, Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple, TypedDict,
    Union, get_type_hints,
)

from langgraph.errors import GraphRecursionError
from langgraph.graph import END, StateGraph

from clipthread.app.core.exceptions import PipelineFatalStep, PipelineNotFound, PipelineTimeout
from clipthread.app.models.pipeline import PipelineRun, RunStatus, StepOutcome

logger = logging.getLogger(__name__)

TERMINATE = END

StepFn = Callable[[Dict[str, Any]], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]
Selector = Callable[[Dict[str, Any]], str]
RunListener = Callable[[PipelineRun, StepOutcome], Optional[Awaitable[None]]]


class PipelineState(TypedDict, total=False):
    """Keys every pipeline state carries. Pipeline schemas subclass this."""
    last_error: Optional[Dict[str, Any]]
    step_log: Annotated[List[Dict[str, Any]], operator.add]


@dataclass
class Step:
    name: str
    fn: StepFn
    fatal: bool = False


@dataclass
class Pipeline:
    """
    A named set of steps joined by directed edges.

    Each step receives the current state and returns a partial update, which is
    merged into the state key by key. A step has at most one way out: a plain
    edge or a branch whose selector names the next step (or TERMINATE).
    Steps without a way out end the run.
    """
    name: str
    state_schema: type
    entry: Optional[str] = None
    steps: Dict[str, Step] = field(default_factory=dict)
    edges: List[Tuple[str, str]] = field(default_factory=list)
    branches: List[Tuple[str, Selector, Tuple[str, ...]]] = field(default_factory=list)

    def add_step(self, name: str, fn: StepFn, fatal: bool = False) -> "Pipeline":
        if name in self.steps:
            raise ValueError(f"Step '{name}' already defined in pipeline '{self.name}'")
        self.steps[name] = Step(name=name, fn=fn, fatal=fatal)
        if self.entry is None:
            self.entry = name
        return self

    def add_edge(self, source: str, target: str) -> "Pipeline":
        self.edges.append((source, target))
        return self

    def add_branch(self, source: str, selector: Selector, targets: Iterable[str]) -> "Pipeline":
        self.branches.append((source, selector, tuple(targets)))
        return self

    def state_keys(self) -> Set[str]:
        return set(get_type_hints(self.state_schema, include_extras=True))

    def validate(self) -> None:
        if not self.steps:
            raise ValueError(f"Pipeline '{self.name}' has no steps")
        if self.entry not in self.steps:
            raise ValueError(f"Pipeline '{self.name}' entry step '{self.entry}' is not defined")

        clashes = self.state_keys() & set(self.steps)
        if clashes:
            raise ValueError(f"Pipeline '{self.name}' step names clash with state keys: {sorted(clashes)}")

        sources = [s for s, _ in self.edges] + [s for s, _, _ in self.branches]
        duplicated = {s for s in sources if sources.count(s) > 1}
        if duplicated:
            raise ValueError(f"Pipeline '{self.name}' steps with more than one exit: {sorted(duplicated)}")

        targets = [t for _, t in self.edges] + [t for _, _, ts in self.branches for t in ts]
        for name in sources + targets:
            if name != TERMINATE and name not in self.steps:
                raise ValueError(f"Pipeline '{self.name}' references unknown step '{name}'")


def _log_entry(step: str, ok: bool, started: float, error: Optional[BaseException] = None) -> Dict[str, Any]:
    return {
        "step": step,
        "ok": ok,
        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
        "error": f"{type(error).__name__}: {error}" if error else None,
    }


class PipelineExecutor:
    def __init__(
        self,
        max_steps: int = 25,
        retention: timedelta = timedelta(minutes=5),
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.max_steps = max_steps
        self.retention = retention
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._pipelines: Dict[str, Pipeline] = {}
        self._graphs: Dict[str, Any] = {}
        self._runs: Dict[str, PipelineRun] = {}

    def register(self, pipeline: Pipeline) -> None:
        pipeline.validate()
        self._graphs[pipeline.name] = self._compile(pipeline)
        self._pipelines[pipeline.name] = pipeline
        logger.debug("Registered pipeline %s (%d steps)", pipeline.name, len(pipeline.steps))

    def registered(self) -> List[str]:
        return sorted(self._pipelines)

    def _compile(self, pipeline: Pipeline):
        keys = pipeline.state_keys()
        graph = StateGraph(pipeline.state_schema)
        for step in pipeline.steps.values():
            graph.add_node(step.name, self._guard(pipeline.name, step, keys))
        graph.set_entry_point(pipeline.entry)

        with_exit = set()
        for source, target in pipeline.edges:
            graph.add_edge(source, target)
            with_exit.add(source)
        for source, selector, targets in pipeline.branches:
            path_map = {t: t for t in targets}
            path_map[TERMINATE] = END
            graph.add_conditional_edges(source, selector, path_map)
            with_exit.add(source)
        for name in pipeline.steps:
            if name not in with_exit:
                graph.add_edge(name, END)
        return graph.compile()

    @staticmethod
    def _guard(pipeline_name: str, step: Step, keys: Set[str]):
        async def node(state: Dict[str, Any]) -> Dict[str, Any]:
            started = time.perf_counter()
            try:
                update = step.fn(state)
                if inspect.isawaitable(update):
                    update = await update
            except Exception as exc:
                if step.fatal:
                    raise PipelineFatalStep(pipeline_name, step.name, exc) from exc
                logger.warning("Step %s.%s failed: %s", pipeline_name, step.name, exc)
                return {
                    "last_error": {"step": step.name, "type": type(exc).__name__, "message": str(exc)},
                    "step_log": [_log_entry(step.name, False, started, exc)],
                }

            merged = {}
            for key, value in (update or {}).items():
                if key in keys and key != "step_log":
                    merged[key] = value
                else:
                    logger.debug("Step %s.%s returned undeclared key %r", pipeline_name, step.name, key)
            merged["step_log"] = [_log_entry(step.name, True, started)]
            return merged

        return node

    async def run(
        self,
        name: str,
        initial_state: Dict[str, Any],
        max_steps: Optional[int] = None,
        timeout: Optional[float] = None,
        listeners: Iterable[RunListener] = (),
    ) -> PipelineRun:
        """
        Executes one pipeline to completion and returns its run record.
        Step failures, budget overruns and fatal steps are reported on the
        record (status FAILED, error set) rather than raised.
        """
        graph = self._graphs.get(name)
        if graph is None:
            raise PipelineNotFound(name)

        self.prune()
        state = dict(initial_state)
        state["step_log"] = []
        run = PipelineRun(id=str(uuid.uuid4()), pipeline_name=name, started_at=self._clock(), state=dict(state))
        self._runs[run.id] = run
        config = {"recursion_limit": max_steps or self.max_steps}

        try:
            if timeout:
                await asyncio.wait_for(self._drive(graph, run, state, config, list(listeners)), timeout)
            else:
                await self._drive(graph, run, state, config, list(listeners))
            run.status = RunStatus.COMPLETED
        except asyncio.TimeoutError:
            run.status = RunStatus.FAILED
            run.error = PipelineTimeout(name, "wall_clock")
        except GraphRecursionError:
            run.status = RunStatus.FAILED
            run.error = PipelineTimeout(name, "step_budget")
        except PipelineFatalStep as exc:
            run.status = RunStatus.FAILED
            run.error = exc
        except asyncio.CancelledError:
            run.status = RunStatus.CANCELLED
            raise
        except Exception as exc:
            run.status = RunStatus.FAILED
            run.error = exc
            raise
        finally:
            run.ended_at = self._clock()

        if run.error:
            logger.warning("Pipeline run %s (%s) failed: %s", run.id, name, run.error)
        else:
            logger.debug("Pipeline run %s (%s) completed in %d steps", run.id, name, len(run.step_log))
        return run

    async def _drive(self, graph, run: PipelineRun, state, config, listeners: List[RunListener]):
        seen = 0
        async for snapshot in graph.astream(state, config=config, stream_mode="values"):
            run.state = dict(snapshot)
            log = snapshot.get("step_log") or []
            for entry in log[seen:]:
                outcome = StepOutcome.from_log(entry)
                run.step_log.append(outcome)
                await self._notify(listeners, run, outcome)
            seen = len(log)

    @staticmethod
    async def _notify(listeners: List[RunListener], run: PipelineRun, outcome: StepOutcome):
        for listener in listeners:
            try:
                result = listener(run, outcome)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Pipeline listener failed for run %s", run.id)

    def get_run(self, run_id: str) -> Optional[PipelineRun]:
        return self._runs.get(run_id)

    def list_runs(self) -> List[PipelineRun]:
        return sorted(self._runs.values(), key=lambda r: r.started_at, reverse=True)

    def prune(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or self._clock()) - self.retention
        expired = [rid for rid, r in self._runs.items() if r.ended_at and r.ended_at < cutoff]
        for rid in expired:
            del self._runs[rid]
        return len(expired)
