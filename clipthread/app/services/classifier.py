import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Type, TypeVar

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, ValidationError

from clipthread.app.core.config import Settings, settings as default_settings
from clipthread.app.core.exceptions import ClassifierMalformed, ClassifierUnavailable
from clipthread.app.core.prompts import PromptLoader
from clipthread.app.core.rate_limiter import TokenBucket
from clipthread.app.models.research import ConsolidationResult, MembershipResult, SessionTypeResult
from clipthread.app.services.llm import get_llm

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT", bound=BaseModel)


class ClassifierService(ABC):
    """
    Semantic analysis capability. Every call either returns a validated result
    or raises ClassifierUnavailable / ClassifierMalformed.
    """

    @abstractmethod
    async def detect_session_type(self, content: str, context: Dict[str, Any]) -> SessionTypeResult: ...

    @abstractmethod
    async def evaluate_membership(
        self, content: str, context: Dict[str, Any], existing_session: Dict[str, Any]
    ) -> MembershipResult: ...

    @abstractmethod
    async def consolidate(
        self, session_context: Dict[str, Any], findings: List[Dict[str, Any]]
    ) -> ConsolidationResult: ...


def parse_json_payload(content: Any) -> Dict[str, Any]:
    if not isinstance(content, str):
        raise ClassifierMalformed("Classifier returned non-text content", {"type": type(content).__name__})
    cleaned = content.strip().replace("```json", "").replace("```", "").strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ClassifierMalformed("Classifier returned invalid JSON", {"error": str(e), "raw": cleaned[:200]}) from e
    if not isinstance(data, dict):
        raise ClassifierMalformed("Classifier returned a non-object JSON payload", {"raw": cleaned[:200]})
    return data


class LLMClassifier(ClassifierService):
    def __init__(
        self,
        config: Optional[Settings] = None,
        llm=None,
        prompts: Optional[PromptLoader] = None,
        limiter: Optional[TokenBucket] = None,
        session_types: Optional[List[str]] = None,
    ):
        self.settings = config or default_settings
        self.prompts = prompts or PromptLoader()
        self.limiter = limiter or TokenBucket(
            capacity=self.settings.CLASSIFIER_RATE_CAPACITY,
            refill_rate=self.settings.CLASSIFIER_RATE_PER_SECOND,
        )
        self.timeout = self.settings.CLASSIFIER_TIMEOUT_SECONDS
        self.session_types = session_types or []
        self._llm = llm

    @property
    def configured(self) -> bool:
        return self._llm is not None or bool(self.settings.OPEN_ROUTER_API_KEY)

    def _get_llm(self):
        if self._llm is None:
            self._llm = get_llm(self.settings)
        return self._llm

    async def _invoke(self, prompt_key: str, result_model: Type[ResultT], **kwargs) -> ResultT:
        if not self.configured:
            raise ClassifierUnavailable("No classifier API key configured", {"prompt": prompt_key})

        messages = [
            SystemMessage(content=self.prompts.get("classifier_system")),
            HumanMessage(content=self.prompts.get(prompt_key, **kwargs)),
        ]

        await self.limiter.wait_for_token()
        try:
            response = await asyncio.wait_for(self._get_llm().ainvoke(messages), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ClassifierUnavailable("Classifier call timed out", {"prompt": prompt_key, "timeout": self.timeout}) from e
        except Exception as e:
            # Transport errors surface as many exception types from the OpenAI client.
            raise ClassifierUnavailable("Classifier call failed", {"prompt": prompt_key, "error": str(e)}) from e

        payload = parse_json_payload(response.content)
        try:
            return result_model.model_validate(payload)
        except ValidationError as e:
            raise ClassifierMalformed(
                "Classifier payload failed validation",
                {"prompt": prompt_key, "errors": e.error_count()},
            ) from e

    async def detect_session_type(self, content: str, context: Dict[str, Any]) -> SessionTypeResult:
        return await self._invoke(
            "session_type_detection",
            SessionTypeResult,
            content=content[:1000],
            source_app=context.get("source_app", ""),
            window_title=context.get("window_title", ""),
            session_types=", ".join(self.session_types),
        )

    async def evaluate_membership(
        self, content: str, context: Dict[str, Any], existing_session: Dict[str, Any]
    ) -> MembershipResult:
        items = existing_session.get("items", [])
        session_items = "\n".join(f"  - {item.get('content', '')[:200]}" for item in items[-5:])
        return await self._invoke(
            "session_membership",
            MembershipResult,
            content=content[:1000],
            source_app=context.get("source_app", ""),
            window_title=context.get("window_title", ""),
            session_type=existing_session.get("session_type", ""),
            session_label=existing_session.get("label", ""),
            item_count=len(items),
            session_items=session_items or "  (none)",
        )

    async def consolidate(
        self, session_context: Dict[str, Any], findings: List[Dict[str, Any]]
    ) -> ConsolidationResult:
        lines = []
        for finding in findings:
            points = "; ".join(finding.get("findings", [])[:5])
            lines.append(f"- [{finding.get('aspect', 'research')}] {finding.get('query', '')}: {points}")
        return await self._invoke(
            "session_consolidation",
            ConsolidationResult,
            session_type=session_context.get("session_type", ""),
            session_label=session_context.get("label", ""),
            item_count=session_context.get("item_count", 0),
            entities=", ".join(session_context.get("entities", [])) or "none",
            aspects=", ".join(session_context.get("aspects", [])) or "none",
            findings="\n".join(lines) or "(no findings)",
        )
