"""Exception taxonomy shared by the pipeline stages."""


class PipelineError(RuntimeError):
    """Base class for pipeline failures."""


# Orchestration: surfaced synchronously to the caller, no run is created.


class CampaignNotFound(PipelineError):
    pass


class RunNotFound(PipelineError):
    pass


class NotReady(PipelineError):
    """The campaign has no confirmed, non-empty query set."""


class RunAlreadyActive(PipelineError):
    """The campaign already has a run in status=running."""


# External calls.


class TransientError(PipelineError):
    """Rate limits, timeouts and upstream outages; safe to retry."""


class PermanentError(PipelineError):
    """Failures that will not succeed on retry (bad request, auth, not found)."""


# Task failures; the queue's redelivery policy decides what happens next.


class ScrapeFailed(PipelineError):
    pass


class ScoringFailed(PipelineError):
    pass


class MalformedMessage(PipelineError):
    """A queue payload that cannot be decoded into a pipeline message."""
