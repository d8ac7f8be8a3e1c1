"""
Error types raised inside the policy engine.

The engine turns these into denied decisions; ``to_response`` gives the
structured form used in logs and by callers that surface errors directly.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from shared.tracing import current_trace_id


class ErrorResponse(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    trace_id: Optional[str] = None


class PolicyEngineException(Exception):
    """Base exception carrying a stable error code."""

    code = "POLICY_ENGINE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            code=self.code,
            message=self.message,
            details=self.details,
            trace_id=current_trace_id(),
        )


class ConfigurationError(PolicyEngineException):
    """Malformed policy or unknown policy kind."""

    code = "CONFIGURATION_ERROR"

    def __init__(self, message: str = "Invalid policy configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class EvaluationTimeout(PolicyEngineException):
    """Evaluation deadline exceeded."""

    code = "EVALUATION_TIMEOUT"

    def __init__(self, message: str = "Evaluation timeout", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class CollaboratorError(PolicyEngineException):
    """Rate limit store or audit sink failure."""

    code = "COLLABORATOR_ERROR"

    def __init__(self, collaborator: str, message: str = "Collaborator error", details: Optional[Dict[str, Any]] = None):
        self.collaborator = collaborator
        super().__init__(f"{collaborator}: {message}", details)
