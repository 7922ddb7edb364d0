"""Custom exception hierarchy for releaselib.

Provides structured exceptions that carry an HTTP-style status code and a
machine-readable error code so callers can surface consistent responses.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ReleaseLibException(Exception):
    """Base exception for all releaselib errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code (e.g., "RELEASE_NOT_FOUND")
        status_code: HTTP status code to return
        details: Additional error context
    """

    status_code: int = 500
    default_code: str = "INTERNAL_ERROR"
    default_message: str = "An internal error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message or self.default_message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self, request_id: Optional[str] = None) -> Dict[str, Any]:
        """Convert exception to API response format."""
        response = {
            "error": self.message,
            "code": self.code,
            "details": self.details,
        }
        if request_id:
            response["request_id"] = request_id
        return response


# ========== Not Found ==========


class NotFoundError(ReleaseLibException):
    """Requested resource not found."""

    status_code = 404
    default_code = "NOT_FOUND"
    default_message = "Resource not found"


class NoReleaseFoundError(NotFoundError):
    """Release key does not resolve to a release."""

    default_code = "RELEASE_NOT_FOUND"
    default_message = "Release not found"

    def __init__(self, release_key: str, message: Optional[str] = None):
        self.release_key = release_key
        super().__init__(
            message or f"Release {release_key} not found",
            details={"release_key": release_key},
        )


class InstalledStackNotFoundError(NotFoundError):
    """No access point stack is installed for the release."""

    default_code = "STACK_NOT_INSTALLED"
    default_message = "The release does not have an installed access point stack"


class ReleaseNotActivatedError(NotFoundError):
    """The release has no active manifest snapshot."""

    default_code = "RELEASE_NOT_ACTIVATED"
    default_message = "Release is not activated"

    def __init__(self, release_key: str):
        self.release_key = release_key
        super().__init__(
            f"Release {release_key} is not activated",
            details={"release_key": release_key},
        )


# ========== Release Activation ==========


class NothingToShareError(ReleaseLibException):
    """Applying the release permissions left nothing to share.

    The release operator must change permissions or selections.
    """

    status_code = 400
    default_code = "RELEASE_ACTIVATED_NOTHING"
    default_message = "Release activation would share nothing"


class MismatchedExpectationsError(ReleaseLibException):
    """A data type is enabled but no artifacts of that type exist.

    Usually points at missing data upstream rather than a releasing mistake.
    """

    status_code = 409
    default_code = "RELEASE_MISMATCHED_EXPECTATIONS"
    default_message = "Release permissions do not match the available data"


# Names used by the release activation code paths
ReleaseActivatedNothingError = NothingToShareError
ReleaseActivatedMismatchedExpectationsError = MismatchedExpectationsError


# ========== Data Integrity / Usage ==========


class MalformedObjectUrlError(ReleaseLibException):
    """A stored file URL does not parse as scheme://bucket/key."""

    default_code = "MALFORMED_OBJECT_URL"
    default_message = "Object URL is malformed"

    def __init__(self, url: str):
        self.url = url
        super().__init__(
            f"Object URL {url!r} does not match scheme://bucket/key",
            details={"url": url},
        )


class GenerationUsageError(ReleaseLibException):
    """A generator was called with arguments guaranteeing empty output."""

    status_code = 400
    default_code = "GENERATION_USAGE_ERROR"
    default_message = "Invalid arguments passed to a manifest generator"


class UnknownProtocolError(GenerationUsageError):
    """No signer is registered for the requested object store protocol."""

    default_code = "UNKNOWN_PROTOCOL"
    default_message = "Unhandled object store protocol"


# ========== External Services ==========


class AccessPointPolicyError(ReleaseLibException):
    """An installed access point policy is not in the expected shape."""

    status_code = 502
    default_code = "ACCESS_POINT_POLICY_MISMATCH"
    default_message = "Access point policy does not match the expected shape"


class ExternalServiceError(ReleaseLibException):
    """Object store or cloud resource description call failed."""

    status_code = 502
    default_code = "EXTERNAL_SERVICE_ERROR"
    default_message = "External service error"


class FeatureNotConfiguredError(ReleaseLibException):
    """A sharing mechanism was used without the settings it needs."""

    status_code = 503
    default_code = "FEATURE_NOT_CONFIGURED"
    default_message = "Sharing mechanism is not configured"
