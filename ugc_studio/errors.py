"""
Error taxonomy for the generation pipeline.

Every error carries the HTTP status the route adapters answer with, so the
orchestrator can raise domain errors without knowing about FastAPI.
"""


class PipelineError(Exception):
    status_code = 500

    def __init__(self, message: str = "", detail=None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(PipelineError):
    """Missing or malformed caller input. Nothing is written."""
    status_code = 400


class InsufficientScenes(PipelineError):
    """Combine requested with fewer than 2 usable scene URLs."""
    status_code = 400


class GenerationNotFound(PipelineError):
    status_code = 404


class InvalidTransition(PipelineError):
    """The requested step is not allowed from the record's current state."""
    status_code = 409


class StepInProgress(PipelineError):
    """Another request holds the generation's step lock. Retry shortly."""
    status_code = 409


class ProviderRequestError(PipelineError):
    """Transport, auth or rejection error from a provider call. Retryable."""
    status_code = 502

    def __init__(self, message: str = "", provider: str = "", http_status=None, detail=None):
        super().__init__(message, detail)
        self.provider = provider
        self.http_status = http_status


class ProviderJobFailed(PipelineError):
    """The provider reports the job itself failed. Terminal for the generation."""
    status_code = 502


class ResultNotReady(PipelineError):
    """fetch_result called before the job succeeded (a sequencing bug)."""
    status_code = 500
