"""
Error types for the lifecycle pipeline.

Handlers never answer a synchronous caller, so errors surface only as logs
and as queue redeliveries (batch item failures or a failed invocation).
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for pipeline errors."""

    def __init__(self, code: str, message: str, details: Optional[dict] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class StreamRecordError(PipelineError):
    """Raised when a change message or stream image cannot be decoded."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(code="invalid_stream_record", message=message, details=details)


class ConfigurationError(PipelineError):
    """Raised when required configuration is missing."""

    def __init__(self, message: str):
        super().__init__(code="configuration_error", message=message)


class TemplateNotFoundError(PipelineError):
    """Raised when an email template name is not in the template set."""

    def __init__(self, template_name: str):
        super().__init__(
            code="template_not_found",
            message=f"Unknown email template: {template_name}",
            details={"template": template_name},
        )
