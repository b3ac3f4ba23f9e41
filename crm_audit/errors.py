"""Custom exceptions for the CRM audit backend.

Every error carries the HTTP status it maps to. The API layer only ever
answers 400 (caller error), 404 (unknown id) or 500 (everything else).
"""

from typing import Any


class CRMAuditError(Exception):
    """Base exception for all application errors."""

    status_code = 500

    def __init__(self, message: str, error_type: str, details: Any = None):
        self.message = message
        self.error_type = error_type
        self.details = details
        # Set by the analysis orchestrator to the step that failed
        self.stage: str | None = None
        super().__init__(message)


class ValidationError(CRMAuditError):
    """Raised when a request is missing a required field or carries a bad value."""

    status_code = 400

    def __init__(self, message: str, details: Any = None):
        super().__init__(message, "validation_error", details)


class NotFoundError(CRMAuditError):
    """Raised when a referenced id does not exist."""

    status_code = 404

    def __init__(self, resource: str, resource_id: str):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} '{resource_id}' not found", "not_found")


class NoActivePromptError(CRMAuditError):
    """Raised when no prompt can be resolved for an analysis run."""

    status_code = 400

    def __init__(self, prompt_type: str, prompt_id: str | None = None):
        self.prompt_type = prompt_type
        self.prompt_id = prompt_id
        if prompt_id:
            message = f"Prompt '{prompt_id}' does not exist. Choose an existing prompt version."
        else:
            message = (
                f"No active prompt configured for type '{prompt_type}'. "
                "Create or restore a prompt of this type before running an analysis."
            )
        super().__init__(message, "no_active_prompt")


class UpstreamError(CRMAuditError):
    """Raised when the CRM, the language model or the transcription service fails."""

    def __init__(
        self,
        service: str,
        message: str,
        status_code: int | None = None,
        raw_body: str | None = None,
    ):
        self.service = service
        self.upstream_status = status_code
        self.raw_body = raw_body
        details = None
        if status_code is not None or raw_body:
            details = {"statusCode": status_code, "rawBody": raw_body}
        super().__init__(f"{service} request failed: {message}", "upstream_error", details)


class UpstreamTimeoutError(UpstreamError):
    """Raised when an upstream call exceeds its timeout."""

    def __init__(self, service: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(service, f"timed out after {timeout_seconds:g} seconds")
        self.error_type = "upstream_timeout"


class RecordingTooLargeError(UpstreamError):
    """Raised when a call recording exceeds the download size limit."""

    def __init__(self, message_id: str, max_bytes: int):
        self.message_id = message_id
        self.max_bytes = max_bytes
        super().__init__(
            "HighLevel",
            f"recording for message {message_id} exceeds {max_bytes / (1024 * 1024):.0f}MB",
        )
        self.error_type = "recording_too_large"


class PersistenceError(CRMAuditError):
    """Raised when the local store cannot be read or written."""

    def __init__(self, operation: str, original_error: str):
        self.operation = operation
        self.original_error = original_error
        super().__init__(
            f"Database operation '{operation}' failed: {original_error}",
            "persistence_error",
        )
