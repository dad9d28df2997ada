"""Error taxonomy for ingestion, storage and analysis"""


class CIMemoryError(Exception):
    """Base class for all service errors"""


class MalformedEventError(CIMemoryError):
    """Inbound event is missing job, build or category. Dead-letter, never retry."""


class EventRejectedError(CIMemoryError):
    """Event is well formed but outside the accepted time window"""


class StorageError(CIMemoryError):
    """Conversation store could not durably apply an operation"""


class AnalysisError(CIMemoryError):
    """Remote analysis call failed in a way worth retrying"""


class AnalysisTimeoutError(AnalysisError):
    pass


class MalformedAnalysisError(AnalysisError):
    """Response could not be recovered into a JSON verdict"""


class DispatchRejectedError(CIMemoryError):
    """Analysis pool is saturated; the build stays READY for a later attempt"""
