"""Planner error taxonomy.

Each error carries a machine-readable ``kind`` so clients can route to the
right recovery: top-up for credits, resend for transient upstream failures,
nothing automatic for validation failures.
"""

from typing import Optional


class PlannerError(Exception):
    kind = "internal"
    status_code = 500
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "retryable": self.retryable}


class InsufficientCreditsError(PlannerError):
    kind = "insufficient_credits"
    status_code = 402

    def __init__(self, required: int, balance: int):
        super().__init__(f"Not enough credits: {required} required, {balance} available.")
        self.required = required
        self.balance = balance

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update(required=self.required, balance=self.balance)
        return data


class TransientUpstreamError(PlannerError):
    kind = "transient_upstream"
    status_code = 503
    retryable = True


class UpstreamError(PlannerError):
    """Non-retryable model provider failure (bad request, auth, unknown status)."""
    kind = "upstream"
    status_code = 502


class PlanValidationError(PlannerError):
    kind = "validation"
    status_code = 502


class PartialApplicationError(PlannerError):
    kind = "partial_application"
    status_code = 500
    retryable = True

    def __init__(self, message: str, partial_result: dict):
        super().__init__(message)
        self.partial_result = partial_result

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["partial_result"] = self.partial_result
        return data


class InvalidPhaseError(PlannerError):
    kind = "invalid_phase"
    status_code = 409


class TurnInProgressError(PlannerError):
    kind = "turn_in_progress"
    status_code = 409
    retryable = True

    def __init__(self, message: str = "Another request for this conversation is still running."):
        super().__init__(message)


class NotFoundError(PlannerError):
    kind = "not_found"
    status_code = 404


class LLMNotConfiguredError(PlannerError):
    kind = "not_configured"
    status_code = 500

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or "ANTHROPIC_API_KEY not configured")


class ConversationNotFoundError(NotFoundError):
    pass


class JobNotFoundError(NotFoundError):
    pass
