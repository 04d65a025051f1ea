"""Exception taxonomy shared by the agents, the orchestrator and the server."""


class PipelineError(Exception):
    """A failed call to the text-generation service at a given stage."""

    stage = "pipeline"

    def __init__(self, message: str, cause: str = "transport"):
        super().__init__(message)
        self.cause = cause


class ExpansionError(PipelineError):
    stage = "expand"


class GenerationError(PipelineError):
    stage = "generate"


class NotFoundError(LookupError):
    pass


class PostStateError(Exception):
    """Raised when an operation is not allowed in the post's current status."""


class ConfigurationError(Exception):
    pass


class PreviewError(RuntimeError):
    """The headless browser could not mount the artifact."""
