from typing import Any, Dict, Optional


class SessionEngineError(Exception):
    """Base error for the session engine. Carries a context dict for logging."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.context:
            details = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} ({details})"
        return self.message


class ClassifierError(SessionEngineError):
    pass


class ClassifierUnavailable(ClassifierError):
    """Network failure, timeout, or no classifier configured."""


class ClassifierMalformed(ClassifierError):
    """The classifier answered but the payload could not be parsed or validated."""


class StoreError(SessionEngineError):
    pass


class SessionNotFound(SessionEngineError):
    def __init__(self, session_id: str):
        super().__init__("Session not found", {"session_id": session_id})
        self.session_id = session_id


class InvalidTransition(SessionEngineError):
    def __init__(self, session_id: str, current: str, target: str):
        super().__init__(
            "Invalid session status transition",
            {"session_id": session_id, "from": current, "to": target},
        )


class PipelineError(SessionEngineError):
    pass


class PipelineNotFound(PipelineError):
    def __init__(self, name: str):
        super().__init__("Pipeline not registered", {"pipeline": name})


class PipelineTimeout(PipelineError):
    def __init__(self, pipeline: str, reason: str):
        super().__init__("Pipeline run timed out", {"pipeline": pipeline, "reason": reason})
        self.reason = reason


class PipelineFatalStep(PipelineError):
    def __init__(self, pipeline: str, step: str, cause: BaseException):
        super().__init__(
            "Fatal pipeline step failed",
            {"pipeline": pipeline, "step": step, "cause": f"{type(cause).__name__}: {cause}"},
        )
        self.step = step


class SearchUnavailable(SessionEngineError):
    pass


class ResearchFailed(SessionEngineError):
    """A consolidation pass produced nothing to consolidate."""
