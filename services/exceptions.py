# -*- coding: utf-8 -*-
"""Custom exceptions for the import and reconciliation pipeline."""

from typing import List, Optional


class ImportPipelineError(Exception):
    """Base class for pipeline errors."""

    def __init__(self, message: str, context: str = None):
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self):
        if self.context:
            return f"[{self.context}] {self.message}"
        return self.message


class ValidationError(ImportPipelineError):
    """Invalid input: a bad field value or a missing mandatory reason."""

    def __init__(self, message: str, field: str = None,
                 errors: Optional[List[str]] = None, context: str = None):
        super().__init__(message, context)
        self.field = field
        self.errors = errors or []


class IntegrityError(ImportPipelineError):
    """Checksum or signature verification failed."""

    def __init__(self, message: str, package_id: str = None,
                 expected: str = None, actual: str = None, context: str = None):
        super().__init__(message, context)
        self.package_id = package_id
        self.expected = expected
        self.actual = actual


class DuplicateUploadError(ImportPipelineError):
    """A package with this identifier was already received."""

    def __init__(self, message: str, package=None, context: str = None):
        super().__init__(message, context)
        self.package = package


class ConflictBlockingError(ImportPipelineError):
    """Approval refused while unresolved conflicts remain."""

    def __init__(self, message: str, unresolved_count: int = 0, context: str = None):
        super().__init__(message, context)
        self.unresolved_count = unresolved_count


class ReferentialCommitError(ImportPipelineError):
    """A staged row cannot commit because a row it references did not."""

    def __init__(self, message: str, entity_type: str = None,
                 original_id: str = None, context: str = None):
        super().__init__(message, context)
        self.entity_type = entity_type
        self.original_id = original_id


class InvalidStateTransitionError(ImportPipelineError):
    """The requested command is not permitted from the current status."""

    def __init__(self, message: str, current_status: str = None,
                 target_status: str = None, context: str = None):
        super().__init__(message, context)
        self.current_status = current_status
        self.target_status = target_status


class PackageFormatError(ImportPipelineError):
    """The package container is corrupt or structurally invalid."""


class UploadTooLargeError(ImportPipelineError):
    """Upload exceeded the configured size bound."""

    def __init__(self, message: str, limit: int = 0, context: str = None):
        super().__init__(message, context)
        self.limit = limit


class IncompleteUploadError(ImportPipelineError):
    """Stream ended before the declared number of bytes arrived."""

    def __init__(self, message: str, expected: int = 0, received: int = 0,
                 context: str = None):
        super().__init__(message, context)
        self.expected = expected
        self.received = received


class NotFoundError(ImportPipelineError):
    """Requested entity does not exist."""

    def __init__(self, message: str, entity_type: str = None,
                 entity_id: str = None, context: str = None):
        super().__init__(message, context)
        self.entity_type = entity_type
        self.entity_id = entity_id


class AuthorizationError(ImportPipelineError):
    """Caller is not allowed to act on the requested resource."""
