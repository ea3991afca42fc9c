"""
Error taxonomy for the ask pipeline.

Every error carries a short public message that is safe to hand back to the
caller. Provider responses, SQL and regex details stay in the logs.
"""


class KhobotError(Exception):
    """Base class for errors surfaced to callers."""
    status_code = 500

    def __init__(self, message: str = ""):
        self.message = message or (type(self).__doc__ or "").strip()
        super().__init__(self.message)


class InvalidInput(KhobotError):
    """Invalid request."""
    status_code = 400


class Forbidden(KhobotError):
    """Conversation does not belong to user."""
    status_code = 403


class NotFound(KhobotError):
    """Conversation not found."""
    status_code = 404


class QuotaExceeded(KhobotError):
    """Daily AI limit reached."""
    status_code = 429


class BudgetExhausted(KhobotError):
    """AI budget reached for this month."""
    status_code = 402


class ModelUnavailable(KhobotError):
    """AI request failed."""
    status_code = 503


class Misconfigured(KhobotError):
    """AI is not configured."""
    status_code = 500


class PipelineError(KhobotError):
    """Internal error."""
    status_code = 500
