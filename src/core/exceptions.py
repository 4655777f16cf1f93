"""
Error taxonomy for the review pipeline.

- TransientExternalError: network / rate limit / timeout, retried with backoff
- ValidationError: malformed or ineligible candidate, skipped and counted
- FatalPipelineError: storage failure or broken state, aborts the run
- LockBusyError: a run is already in flight, trigger is ignored
"""

from typing import Optional


class ReviewPipelineError(Exception):
    """Base class for all pipeline errors"""
    pass


class TransientExternalError(ReviewPipelineError):
    """Raised when an external provider fails in a way worth retrying"""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class ValidationError(ReviewPipelineError):
    """Raised for a malformed or ineligible candidate"""

    def __init__(self, message: str, symbol: Optional[str] = None):
        super().__init__(message)
        self.symbol = symbol


class FatalPipelineError(ReviewPipelineError):
    """Raised when a phase cannot complete (e.g. storage failure)"""
    pass


class LockBusyError(ReviewPipelineError):
    """Raised when a run is requested while another one holds the run lock"""
    pass
