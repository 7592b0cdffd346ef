"""
Error Taxonomy
==============
Typed failures shared by the classifier, the scan processor and the poller.
"""


class ScanwatchError(Exception):
    """Base class for all service errors."""


class ValidationError(ScanwatchError):
    """Payload failed structural checks. User-correctable, never retried."""


class DuplicateError(ScanwatchError):
    """Business or cache level duplicate. Terminal for the event."""


class TransientStoreError(ScanwatchError):
    """Store or network failure. Retryable, drives poller backoff."""


class AuthorizationError(ScanwatchError):
    """Caller rejected before any read or write."""


class StoreTimeoutError(ScanwatchError, TimeoutError):
    """An external call exceeded its deadline.

    Kept apart from TransientStoreError: the poller dampens lone timeouts
    after a recent success instead of backing off.
    """
