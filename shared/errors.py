"""
shared/errors.py

Error taxonomy for the conversation orchestrator.

Configuration errors are fatal at startup. Storage and generation errors
propagate to the caller of a turn. Stage failures are either absorbed by
fail-open stages or wrapped in `PipelineError`.
"""

from typing import Optional


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class ConfigurationError(OrchestratorError):
    """Invalid plugin registration or application configuration."""


class DuplicateKeyError(ConfigurationError):
    """A registry already holds an entry with this key."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} with id '{key}' is already registered")


class UnsupportedStorageError(ConfigurationError):
    """A domain requested a storage backend that is not implemented."""

    def __init__(self, storage_type: str):
        self.storage_type = storage_type
        super().__init__(f"Unsupported storage type: {storage_type}")


class StorageError(OrchestratorError):
    """A persistence operation failed."""

    def __init__(self, operation: str, original: Optional[BaseException] = None):
        self.operation = operation
        self.original = original
        message = f"Storage operation '{operation}' failed"
        if original is not None:
            message = f"{message}: {original}"
        super().__init__(message)


class GenerationError(OrchestratorError):
    """The text-generation collaborator failed to produce a reply."""


class PipelineError(OrchestratorError):
    """A non-recoverable failure inside a pipeline stage."""

    def __init__(self, stage: str, original: BaseException):
        self.stage = stage
        self.original = original
        super().__init__(f"Pipeline stage '{stage}' failed: {original}")
