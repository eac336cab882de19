from typing import Optional


class PipelineError(Exception):
    """Base class for feed pipeline errors."""


class FeedValidationError(PipelineError):
    """Feed URL is malformed or the document cannot be parsed. Never retried."""


class FetchError(PipelineError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientFetchError(FetchError):
    """Network failure, timeout or 5xx. Retried with backoff."""


class PermanentFetchError(FetchError):
    """404/403-class response. Surfaced immediately."""


class EnrichmentStepError(PipelineError):
    def __init__(self, step: str, item_id: str, cause: Exception):
        super().__init__(f"{step} failed for item {item_id}: {cause}")
        self.step = step
        self.item_id = item_id
        self.cause = cause


class NotFoundError(PipelineError):
    def __init__(self, kind: str, entity_id: str):
        super().__init__(f"{kind} not found: {entity_id}")
        self.kind = kind
        self.entity_id = entity_id
