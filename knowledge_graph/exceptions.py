"""
Knowledge base errors.

Record store failures are fatal and propagate to the caller. Secondary store
failures on the write path are captured as PartialSyncWarning objects, logged,
and recorded in the write result. They are never raised.
"""

from typing import Any, Optional


class KnowledgeBaseError(Exception):
    """Base class for all knowledge base errors"""


class ValidationError(KnowledgeBaseError):
    """Malformed entity, relationship or domain-feed input"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFoundError(KnowledgeBaseError):
    """Id absent in the authoritative record store"""

    def __init__(self, resource_type: str, resource_id: Any):
        super().__init__(f"{resource_type} not found: {resource_id}")
        self.resource_type = resource_type
        self.resource_id = resource_id


class UpstreamProviderError(KnowledgeBaseError):
    """Embedding provider failure, including rate limiting"""

    def __init__(self, message: str, rate_limited: bool = False, retry_after: Optional[float] = None):
        super().__init__(message)
        self.rate_limited = rate_limited
        self.retry_after = retry_after


class StoreUnavailableError(KnowledgeBaseError):
    """A store could not be reached. Fatal when raised by the record store."""

    def __init__(self, store: str, cause: Optional[BaseException] = None):
        message = f"{store} store unavailable"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.store = store
        self.cause = cause


class PartialSyncWarning(UserWarning):
    """A secondary store write failed; the operation still succeeded."""

    def __init__(self, store: str, entity_id: str, cause: Optional[BaseException] = None):
        super().__init__(f"{store} store sync failed for {entity_id}: {cause}")
        self.store = store
        self.entity_id = entity_id
        self.cause = cause
