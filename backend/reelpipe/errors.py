"""Exception hierarchy for the pipeline engine.

Every error the engine raises on purpose derives from PipelineError so that
the API layer and the work queue can map failures to a response or a retry
decision by class alone.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for engine errors."""


class ConfigurationError(PipelineError):
    """Unknown pipeline type, step outside the type's list, or unmapped agent.

    Fatal: never retried.
    """


class PreconditionError(PipelineError):
    """Operation is not legal for the pipeline's current status or mode."""


class PipelineNotFound(PipelineError):
    """No pipeline with the given id."""

    def __init__(self, pipeline_id):
        super().__init__(f"Pipeline {pipeline_id} not found")
        self.pipeline_id = pipeline_id


class SignatureError(PipelineError):
    """Inbound completion signal failed HMAC verification."""


class ProviderError(PipelineError):
    """External generation service returned an error or an unusable payload."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AgentExecutionError(PipelineError):
    """A step's agent failed. Retryable at the queue layer."""

    def __init__(self, step: str, message: str):
        super().__init__(f"{step} failed: {message}")
        self.step = step
        self.reason = message
