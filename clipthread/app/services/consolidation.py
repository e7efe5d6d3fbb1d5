import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from clipthread.app.core.config import Settings, settings as default_settings
from clipthread.app.core.exceptions import ResearchFailed, SessionEngineError, SessionNotFound
from clipthread.app.db.store import SessionStore
from clipthread.app.models.capture_event import CaptureEvent
from clipthread.app.models.pipeline import PipelineRun, StepOutcome
from clipthread.app.models.research import ConsolidationResult, ResearchFinding, ResearchProgress
from clipthread.app.models.session import Session
from clipthread.app.services.lifecycle import LifecycleManager
from clipthread.app.services.notifications import SessionObserver
from clipthread.app.services.pipeline import PipelineExecutor
from clipthread.app.services.taxonomy import SessionTaxonomy, find_all_keywords
from clipthread.app.workflows.consolidation import SESSION_CONSOLIDATION, template_result
from clipthread.app.workflows.research import MAX_QUERIES_PER_ITEM, RESEARCH, RESEARCH_QUERY_GENERATION

logger = logging.getLogger(__name__)

MAX_ENTITIES = 5
MAX_KEY_FINDINGS = 10
MAX_SOURCES = 10


@dataclass
class ResearchDigest:
    findings: List[ResearchFinding]
    failed_queries: List[Dict[str, Any]]
    entities: List[str]
    comparables: List[str]
    aspects: List[str]
    key_findings: List[str]
    sources: List[Dict[str, Any]]
    quality: str
    confidence: float

    def to_record(self, result: ConsolidationResult, used_template: bool) -> Dict[str, Any]:
        return {
            "research_completed": True,
            "research_objective": result.objective,
            "key_findings": self.key_findings,
            "comprehensive_summary": result.summary,
            "total_sources": len(self.sources),
            "research_quality": self.quality,
            "entities_researched": self.entities,
            "entities": self.entities,
            "aspects_covered": self.aspects,
            "sources": self.sources[:MAX_SOURCES],
            "confidence": self.confidence,
            "failed_queries": self.failed_queries,
            "used_template": used_template,
        }

    def metrics(self) -> Dict[str, Any]:
        total = len(self.findings) + len(self.failed_queries)
        return {
            "total_queries": total,
            "successful_queries": len(self.findings),
            "failed_queries": len(self.failed_queries),
            "total_findings": len(self.key_findings),
            "research_quality": self.quality,
        }


@dataclass
class ConsolidationOutcome:
    session: Session
    result: ConsolidationResult
    digest: ResearchDigest
    used_template: bool = False


def research_quality(finding_count: int, source_count: int) -> str:
    if finding_count >= 10 and source_count >= 5:
        return "high"
    if finding_count >= 5 and source_count >= 3:
        return "good"
    if finding_count >= 2 and source_count >= 1:
        return "moderate"
    return "basic"


def research_confidence(finding_count: int, aspect_count: int, runs: int, source_count: int) -> float:
    avg_sources = source_count / runs if runs else 0.0
    score = min(finding_count / 10, 1.0) + min(aspect_count / 5, 0.2) + min(avg_sources / 3, 0.2)
    return round(min(score, 1.0), 2)


@dataclass
class _Tracker:
    total: int
    completed: int = 0

    @property
    def percent(self) -> int:
        return int(self.completed / self.total * 100) if self.total else 100


class ConsolidationEngine:
    """
    Background research and consolidation for sessions with two or more members.

    At most one pass runs per session. A request that arrives while a pass is
    in flight is folded into a single follow-up pass.
    """

    def __init__(
        self,
        store: SessionStore,
        executor: PipelineExecutor,
        lifecycle: LifecycleManager,
        taxonomy: SessionTaxonomy,
        notifier: SessionObserver,
        config: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.executor = executor
        self.lifecycle = lifecycle
        self.taxonomy = taxonomy
        self.notifier = notifier
        self.settings = config or default_settings
        self._sleep = sleep
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._pending: Set[str] = set()

    def is_running(self, session_id: str) -> bool:
        task = self._in_flight.get(session_id)
        return task is not None and not task.done()

    def schedule(self, session_id: str) -> asyncio.Task:
        task = self._in_flight.get(session_id)
        if task is not None and not task.done():
            self._pending.add(session_id)
            logger.debug("Consolidation for %s already running; coalescing", session_id)
            return task

        task = asyncio.create_task(self._drive(session_id), name=f"consolidate-{session_id}")
        task.add_done_callback(self._report)
        self._in_flight[session_id] = task
        return task

    async def run_now(self, session_id: str) -> ConsolidationOutcome:
        """Runs (or joins) a pass and waits for its outcome."""
        return await asyncio.shield(self.schedule(session_id))

    async def _drive(self, session_id: str) -> Optional[ConsolidationOutcome]:
        outcome, error = None, None
        try:
            while True:
                self._pending.discard(session_id)
                try:
                    outcome, error = await self.run_pass(session_id), None
                except SessionNotFound:
                    raise
                except SessionEngineError as exc:
                    outcome, error = None, exc
                if session_id not in self._pending:
                    break
        finally:
            self._in_flight.pop(session_id, None)
            self._pending.discard(session_id)
        if error is not None:
            raise error
        return outcome

    @staticmethod
    def _report(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Consolidation task %s ended without result: %s", task.get_name(), exc)

    async def drain(self) -> None:
        """Waits for in-flight passes, including any coalesced follow-up."""
        while True:
            tasks = [t for t in self._in_flight.values() if not t.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = [t for t in self._in_flight.values() if not t.done()]
        self._pending.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()

    async def run_pass(self, session_id: str) -> ConsolidationOutcome:
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        items = self.store.get_session_items(session_id)
        self.notifier.session_research_started(session_id, session.session_type, len(items))
        logger.info("Consolidating session %s (%d items)", session_id, len(items))

        try:
            queries = await self._generate_queries(session, items)
            if not queries:
                raise ResearchFailed("No analyzed items to research", {"session_id": session_id})

            findings, failed = await self._research(session_id, queries)
            if not findings:
                raise ResearchFailed(
                    "All research queries failed", {"session_id": session_id, "failed": len(failed)}
                )

            digest = self._digest(session, items, findings, failed)
            result, used_template = await self._consolidate(session, items, digest)
            self._progress(session_id, ResearchProgress(
                phase="consolidating", progress=100, total_queries=len(queries), completed_queries=len(queries),
            ))
            updated = self.lifecycle.complete_consolidation(
                session_id, result, digest.to_record(result, used_template), digest.metrics()
            )
        except SessionEngineError as exc:
            logger.warning("Consolidation pass for %s failed: %s", session_id, exc)
            self.notifier.session_research_failed(session_id, exc.message)
            raise

        self.notifier.session_research_completed(session_id, {
            "label": updated.label,
            "objective": result.objective,
            "summary": result.summary,
            "primary_intent": result.primary_intent,
            "research_quality": digest.quality,
            "confidence": digest.confidence,
            "used_template": used_template,
        })
        return ConsolidationOutcome(updated, result, digest, used_template)

    async def _generate_queries(self, session: Session, items: List[CaptureEvent]) -> List[Dict[str, Any]]:
        per_item: List[List[Dict[str, Any]]] = []
        for item in items:
            if item.analysis is None:
                continue
            run = await self.executor.run(RESEARCH_QUERY_GENERATION, {
                "event": item.model_dump(mode="json"),
                "session_type": session.session_type,
                "max_queries": MAX_QUERIES_PER_ITEM,
            })
            queries = run.state.get("queries") or []
            if not run.succeeded or not queries:
                logger.warning("Query generation failed for event %s: %s", item.id, run.error)
                continue
            per_item.append(queries)

        # Anchor queries for every item come before any contextual query.
        ordered = []
        for position in range(MAX_QUERIES_PER_ITEM):
            ordered.extend(qs[position] for qs in per_item if position < len(qs))
        return ordered[: self.settings.MAX_QUERIES_PER_PASS]

    async def _research(self, session_id: str, queries: List[Dict[str, Any]]):
        tracker = _Tracker(total=len(queries))
        self._progress(session_id, ResearchProgress(phase="queries_generated", total_queries=len(queries)))

        findings: List[ResearchFinding] = []
        failed: List[Dict[str, Any]] = []
        for index, query in enumerate(queries):
            if index:
                await self._sleep(self.settings.INTER_QUERY_DELAY_SECONDS)

            self._progress(session_id, ResearchProgress(
                phase="searching",
                progress=tracker.percent,
                total_queries=tracker.total,
                completed_queries=tracker.completed,
                current_query=query["search_query"],
                current_aspect=query["aspect"],
            ))
            run = await self.executor.run(
                RESEARCH,
                {"query": query},
                timeout=self.settings.RESEARCH_TIMEOUT_SECONDS,
                listeners=[self._step_listener(session_id, tracker, query)],
            )
            finding = run.state.get("finding")
            tracker.completed += 1
            if run.succeeded and finding:
                findings.append(ResearchFinding.model_validate(finding))
                continue

            reason = str(run.error or (run.state.get("last_error") or {}).get("message") or "no results")
            failed.append({"query": query["search_query"], "aspect": query["aspect"], "reason": reason})
            logger.warning("Research query failed for %s: %s", session_id, reason)
            self._progress(session_id, ResearchProgress(
                phase="query_failed",
                progress=tracker.percent,
                total_queries=tracker.total,
                completed_queries=tracker.completed,
                current_query=query["search_query"],
                current_aspect=query["aspect"],
                detail=reason,
            ))
        return findings, failed

    def _step_listener(self, session_id: str, tracker: _Tracker, query: Dict[str, Any]):
        def on_step(run: PipelineRun, outcome: StepOutcome):
            self._progress(session_id, ResearchProgress(
                phase="step",
                progress=tracker.percent,
                total_queries=tracker.total,
                completed_queries=tracker.completed,
                current_query=query["search_query"],
                current_aspect=query["aspect"],
                detail=f"{outcome.step}: {'ok' if outcome.ok else outcome.error}",
            ))
        return on_step

    def _digest(
        self,
        session: Session,
        items: List[CaptureEvent],
        findings: List[ResearchFinding],
        failed: List[Dict[str, Any]],
    ) -> ResearchDigest:
        profile = self.taxonomy.get(session.session_type)
        text = " ".join(item.content for item in items)

        comparables: List[str] = []
        for table in profile.entity_tables[1:]:
            comparables.extend(find_all_keywords(text, table))
        places = find_all_keywords(text, profile.entity_tables[0]) if profile.entity_tables else []
        tags = [tag for item in items if item.analysis for tag in item.analysis.tags]
        entities = list(dict.fromkeys(comparables + places + tags))[:MAX_ENTITIES]

        aspects = list(dict.fromkeys(f.aspect for f in findings))
        key_findings = list(dict.fromkeys(point for f in findings for point in f.findings))[:MAX_KEY_FINDINGS]
        sources = list({s["url"]: s for f in findings for s in f.sources if s.get("url")}.values())

        return ResearchDigest(
            findings=findings,
            failed_queries=failed,
            entities=entities,
            comparables=comparables,
            aspects=aspects,
            key_findings=key_findings,
            sources=sources,
            quality=research_quality(len(key_findings), len(sources)),
            confidence=research_confidence(len(key_findings), len(aspects), len(findings), len(sources)),
        )

    async def _consolidate(self, session: Session, items: List[CaptureEvent], digest: ResearchDigest):
        session_context = {
            "session_id": session.id,
            "session_type": session.session_type,
            "label": session.label,
            "item_count": len(items),
            "entities": digest.entities,
            "comparables": digest.comparables,
            "aspects": digest.aspects,
            "findings_count": len(digest.key_findings),
            "total_sources": len(digest.sources),
            "contents": [item.content for item in items],
        }
        run = await self.executor.run(
            SESSION_CONSOLIDATION,
            {"session_context": session_context, "findings": [f.model_dump(mode="json") for f in digest.findings]},
            timeout=self.settings.CLASSIFIER_TIMEOUT_SECONDS,
        )
        if run.succeeded and run.state.get("result"):
            used_template = bool(run.state.get("used_template"))
            if used_template:
                logger.warning("Consolidation for %s used the %s template", session.id, session.session_type)
            return ConsolidationResult.model_validate(run.state["result"]), used_template

        logger.warning("Consolidation pipeline failed for %s: %s; using template", session.id, run.error)
        return template_result(self.taxonomy, session_context), True

    def _progress(self, session_id: str, progress: ResearchProgress) -> None:
        self.notifier.session_research_progress(session_id, progress)
