"""Service error hierarchy for the generation orchestrator.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors (carries a machine-readable reason)
- TransientError: "Try later" errors (queue full, client busy, size caps)
- PermanentError: Errors that will not succeed on retry (validation, policy, security)
- DownstreamError: Render backend or remote host failures

Every error exposes ``reason`` (stable code for clients), ``status_code`` (HTTP
mapping used by the API layer) and ``retryable``.
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    reason: str = "internal_error"
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str = "", *, reason: str | None = None) -> None:
        if not message:
            doc = (self.__class__.__doc__ or "").strip()
            message = doc.splitlines()[0] if doc else self.reason
        super().__init__(message)
        if reason is not None:
            self.reason = reason

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> dict:
        return {"reason": self.reason, "message": self.message, "retryable": self.retryable}


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Queue at capacity
    - Client already has an in-flight job
    - Rate limit exceeded
    """

    retryable = True


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Malformed session id, filename or URL
    - Blocked content or missing entitlement
    - Security violations (SSRF, path traversal)
    """

    retryable = False


class DownstreamError(ServiceError):
    """Failure reported by (or while talking to) an external service."""

    reason = "downstream_error"
    status_code = 502
    retryable = False


# Resource-limit errors
class ResourceLimitError(TransientError):
    """Resource limit reached, try again later."""

    reason = "resource_limit"
    status_code = 429


class QueueFullError(ResourceLimitError):
    """Generation queue is at capacity."""

    reason = "queue_full"


class ClientBusyError(ResourceLimitError):
    """Client already has a queued or running job."""

    reason = "client_busy"


class RateLimitedError(ResourceLimitError):
    """Too many requests from this client."""

    reason = "rate_limited"


class ImportInProgressError(ResourceLimitError):
    """Another URL import is already running for this session."""

    reason = "import_in_progress"


class AssetTooLargeError(ResourceLimitError):
    """Asset exceeds the maximum allowed size."""

    reason = "asset_too_large"
    status_code = 413


# Validation errors
class ValidationError(PermanentError):
    """Request failed validation."""

    reason = "invalid_request"
    status_code = 400


class InvalidSessionError(ValidationError):
    """Malformed session identifier."""

    reason = "invalid_session"


class InvalidFilenameError(ValidationError):
    """Filename is empty or unusable after sanitization."""

    reason = "invalid_filename"


class InvalidUrlError(ValidationError):
    """URL is malformed, too long or uses a disallowed protocol."""

    reason = "invalid_url"


class InvalidPromptError(ValidationError):
    """Prompt is empty or not text."""

    reason = "invalid_prompt"


class AssetExistsError(ValidationError):
    """An asset with this name already exists in the session."""

    reason = "asset_exists"
    status_code = 409


class AssetNotFoundError(ValidationError):
    """Referenced asset does not exist in the session."""

    reason = "asset_not_found"


class AssetTooSmallError(ValidationError):
    """Asset is too small to be a real model file."""

    reason = "asset_too_small"


# Policy / entitlement errors
class PolicyError(PermanentError):
    """Request denied by content policy or entitlement rules."""

    reason = "policy_violation"
    status_code = 403


class ContentBlockedError(PolicyError):
    """Prompt contains content that is never permitted."""

    reason = "content_blocked"


class ContentRestrictedError(PolicyError):
    """Prompt contains content that requires a paid tier."""

    reason = "content_restricted"


class PremiumFeatureError(PolicyError):
    """Requested feature requires a paid tier."""

    reason = "premium_required"


class UsageLimitError(PolicyError):
    """Metered token has no remaining uses."""

    reason = "limit_reached"


class InvalidActivationKeyError(PolicyError):
    """Activation key was not recognized."""

    reason = "invalid_activation_key"


# Security violations
class SecurityViolationError(PermanentError):
    """Request rejected for security reasons."""

    reason = "security_violation"
    status_code = 400


class BlockedHostError(SecurityViolationError):
    """Target host resolves to a loopback, private or link-local address."""

    reason = "blocked_host"


class DisallowedContentTypeError(SecurityViolationError):
    """Remote response declared a non-binary content type."""

    reason = "disallowed_content_type"


class HtmlPayloadError(SecurityViolationError):
    """Remote response body looks like an HTML document."""

    reason = "html_payload"


class UnsafeArtifactError(SecurityViolationError):
    """Render backend returned an artifact reference that failed validation."""

    reason = "unsafe_artifact"


# Lookup errors
class NotFoundError(PermanentError):
    """Requested resource does not exist."""

    reason = "not_found"
    status_code = 404


class JobNotFoundError(NotFoundError):
    """Job is unknown or has already been purged."""

    reason = "job_not_found"


class OutputNotFoundError(NotFoundError):
    """Requested output file does not exist."""

    reason = "output_not_found"


# Render backend errors
class RenderUnavailableError(DownstreamError):
    """Render backend could not be reached."""

    reason = "render_unavailable"


class RenderSubmissionError(DownstreamError):
    """Render backend rejected the submitted graph."""

    reason = "render_rejected"


class RenderTimeoutError(DownstreamError):
    """Render backend did not report completion in time."""

    reason = "render_timeout"


class RenderExecutionError(DownstreamError):
    """Render backend reported a failure while executing the graph."""

    reason = "render_failed"


class ImportFailedError(DownstreamError):
    """Remote host failed to deliver the requested file."""

    reason = "import_failed"
