# src/common/errors.py

"""
Exception taxonomy for the fulfillment pipeline.

- ConfigError: missing/invalid configuration; fatal at startup.
- RetryableError: the current attempt is abandoned and the request's guard is
  released, so the next trigger (live event or reconciliation scan) retries it.
- StorageError: the storage layer failed; publication degrades to a fallback
  pointer instead of failing the request.

Client input errors never get this far: the registry bridge rejects them with
a 400 before anything is stored.
"""

from __future__ import annotations


class VerifaiError(Exception):
    """Base class for all worker errors."""


class ConfigError(VerifaiError):
    pass


class RetryableError(VerifaiError):
    """
    Raised by a pipeline stage when the request should be retried later.

    `stage` names the stage that failed; it is recorded on the guard entry.
    """

    stage = "unknown"


class DecryptionError(RetryableError):
    stage = "decrypting"


class PromptMismatchError(RetryableError):
    stage = "decrypting"


class ProviderError(RetryableError):
    stage = "inferring"


class SubmissionError(RetryableError):
    stage = "submitting"


class StorageError(VerifaiError):
    pass
