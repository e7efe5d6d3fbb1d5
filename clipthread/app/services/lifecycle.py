import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from clipthread.app.core.config import Settings, settings as default_settings
from clipthread.app.core.exceptions import InvalidTransition, SessionEngineError, SessionNotFound
from clipthread.app.db.store import SessionStore
from clipthread.app.models.capture_event import CaptureEvent
from clipthread.app.models.research import ConsolidationResult
from clipthread.app.models.session import RetypeProposal, Session, SessionStatus, can_transition
from clipthread.app.services.analysis import build_progress_metadata, derive_progress_status
from clipthread.app.services.labels import focused_title, generate_label
from clipthread.app.services.notifications import SessionObserver
from clipthread.app.services.pipeline import PipelineExecutor
from clipthread.app.services.taxonomy import SessionTaxonomy
from clipthread.app.services.themes import ThemeDetector
from clipthread.app.workflows.classification import SESSION_TYPE_DETECTION

logger = logging.getLogger(__name__)

DETECTION_CONFIDENCE = 0.6
MAX_RETYPE_PROPOSALS = 10


@dataclass(frozen=True)
class MemberAddition:
    session: Session
    created: bool
    activated: bool
    reactivated: bool


class LifecycleManager:
    """
    Owns session creation, labels and status transitions:

        Dormant -(2nd member)-> Active -(consolidation)-> Consolidated -(new member)-> Active
    """

    def __init__(
        self,
        store: SessionStore,
        executor: PipelineExecutor,
        taxonomy: SessionTaxonomy,
        themes: ThemeDetector,
        notifier: SessionObserver,
        config: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.executor = executor
        self.taxonomy = taxonomy
        self.themes = themes
        self.notifier = notifier
        self.settings = config or default_settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _require(self, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def detect_session_type(self, event: CaptureEvent) -> Optional[str]:
        run = await self.executor.run(
            SESSION_TYPE_DETECTION,
            {
                "content": event.content,
                "context": {"source_app": event.source_app, "window_title": event.window_title},
            },
            timeout=self.settings.CLASSIFIER_TIMEOUT_SECONDS,
        )
        state = run.state
        if run.succeeded and not state.get("last_error") and state.get("session_type"):
            if state.get("confidence", 0.0) > DETECTION_CONFIDENCE:
                return state["session_type"]
            logger.info("Classifier type %s below threshold (%.2f)", state["session_type"], state.get("confidence", 0.0))
        else:
            logger.warning("Session type classifier unavailable for event %s, using keyword table", event.id)

        return self.taxonomy.detect_fallback(event.content, event.source_app, self.settings.BROWSER_APPS)

    async def create_session(self, event: CaptureEvent) -> Optional[Session]:
        """New Dormant session seeded with `event`, or None when no type applies."""
        session_type = await self.detect_session_type(event)
        if session_type is None:
            logger.info("No session created for event %s from %r", event.id, event.source_app)
            return None

        profile = self.taxonomy.get(session_type)
        now = self._clock()
        session = Session(
            id=str(uuid.uuid4()),
            session_type=session_type,
            label=generate_label(profile, event.content),
            start_time=now,
            last_activity=now,
            status=SessionStatus.DORMANT,
        )
        session = self.store.insert_session(session, event.id)
        self.refresh_metadata(session.id)
        logger.info("Created %s session %s: %s", session_type, session.id, session.label)
        return self._require(session.id)

    def transition(self, session: Session, target: SessionStatus) -> None:
        if not can_transition(session.status, target):
            raise InvalidTransition(session.id, session.status.value, target.value)
        if session.status != target:
            self.store.update_session_status(session.id, target)
            logger.info("Session %s: %s -> %s", session.id, session.status.value, target.value)

    def add_member(self, session_id: str, event: CaptureEvent) -> MemberAddition:
        now = self._clock()
        _, created = self.store.add_member(session_id, event.id, now)
        self.store.touch_session(session_id, now)
        session = self._require(session_id)

        activated = reactivated = False
        if created:
            if session.status == SessionStatus.DORMANT and session.item_count >= 2:
                self.transition(session, SessionStatus.ACTIVE)
                activated = True
            elif session.status == SessionStatus.CONSOLIDATED:
                self.transition(session, SessionStatus.ACTIVE)
                reactivated = True
            self.refresh_metadata(session_id)

        return MemberAddition(self._require(session_id), created, activated, reactivated)

    def refresh_metadata(self, session_id: str) -> None:
        session = self._require(session_id)
        items = self.store.get_session_items(session_id)
        summary, intent = build_progress_metadata(
            self.taxonomy.get(session.session_type),
            items,
            session.context_summary,
            session.intent_analysis,
            self._clock(),
        )
        self.store.update_session_summary(session_id, summary, intent)

    def analyze_intent(self, session_id: str) -> Dict[str, Any]:
        session = self._require(session_id)
        contents = [item.content for item in self.store.get_session_items(session_id)]
        profile = self.taxonomy.get(session.session_type)

        analysis = {
            "primary_intent": profile.primary_intent(" ".join(contents)),
            "progress_status": derive_progress_status(contents),
            "content_themes": self.themes.content_themes(contents),
            "analyzed_at": self._clock().isoformat(),
        }
        intent = dict(session.intent_analysis)
        intent.update(analysis)
        self.store.update_session_summary(session_id, intent_analysis=intent)

        self.notifier.session_intent_analyzed(
            session_id, analysis["primary_intent"], analysis["progress_status"], analysis["content_themes"]
        )
        return analysis

    def handle_retype(self, proposal: RetypeProposal) -> bool:
        """Applies the proposal or parks it for approval. Returns True when applied."""
        if self.settings.AUTO_APPLY_RETYPE:
            self.apply_retype(proposal)
            return True

        session = self._require(proposal.session_id)
        summary = dict(session.context_summary)
        proposals = [p for p in summary.get("retype_proposals", []) if p["proposed_type"] != proposal.proposed_type]
        proposals.append(proposal.model_dump())
        summary["retype_proposals"] = proposals[-MAX_RETYPE_PROPOSALS:]
        self.store.update_session_summary(proposal.session_id, context_summary=summary)
        logger.info("Recorded retype proposal for %s: %s", proposal.session_id, proposal.proposed_label)
        return False

    def apply_retype(self, proposal: RetypeProposal) -> Session:
        session = self._require(proposal.session_id)
        self.store.update_session_label(session.id, proposal.proposed_label, proposal.proposed_type)

        summary = dict(session.context_summary)
        summary.pop("retype_proposals", None)
        history = list(summary.get("retype_history", []))
        history.append({
            "from_type": session.session_type,
            "from_label": session.label,
            "to_type": proposal.proposed_type,
            "to_label": proposal.proposed_label,
            "theme": f"{proposal.theme_kind}:{proposal.theme_value}",
            "at": self._clock().isoformat(),
        })
        summary["retype_history"] = history
        self.store.update_session_summary(session.id, context_summary=summary)
        logger.info(
            "Retyped session %s: %s -> %s (%s)",
            session.id, session.session_type, proposal.proposed_type, proposal.proposed_label,
        )
        return self._require(session.id)

    def apply_pending_retype(self, session_id: str) -> Session:
        session = self._require(session_id)
        pending = session.context_summary.get("retype_proposals") or []
        if not pending:
            raise SessionEngineError("No pending retype proposal", {"session_id": session_id})
        return self.apply_retype(RetypeProposal.model_validate(pending[-1]))

    def complete_consolidation(
        self,
        session_id: str,
        result: ConsolidationResult,
        research: Dict[str, Any],
        metrics: Dict[str, Any],
    ) -> Session:
        """
        Writes the consolidated summary and focused title, then marks the session
        Consolidated. Each blob is overwritten whole, so an interrupted pass
        leaves the previous summary intact.
        """
        session = self._require(session_id)
        now = self._clock()

        summary = dict(session.context_summary)
        summary["session_research"] = {**research, "last_researched": now.isoformat()}
        summary["session_summary"] = result.summary

        intent = dict(session.intent_analysis)
        intent["session_intent"] = {
            "primary_goal": result.primary_intent,
            "research_objective": result.objective,
            "research_goals": result.goals,
            "next_steps": result.next_steps,
            "progress_status": "research_completed",
            "confidence_level": research.get("confidence", 0.0),
        }
        intent["research_metrics"] = metrics
        intent["research_based"] = True
        self.store.update_session_summary(session_id, summary, intent)

        contents = [item.content for item in self.store.get_session_items(session_id)]
        title = focused_title(
            self.taxonomy.get(session.session_type),
            contents + list(research.get("entities", [])),
            result.primary_intent,
            result.objective,
            fallback=session.label,
        )
        self.store.update_session_label(session_id, title)

        if session.status == SessionStatus.ACTIVE:
            self.transition(session, SessionStatus.CONSOLIDATED)
        return self._require(session_id)
