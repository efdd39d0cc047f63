"""Custom exceptions for the ASO gateway."""


class AsoGatewayError(Exception):
    """Base class for gateway exceptions with HTTP status code.

    All custom exceptions inherit from this class and define their
    status_code so the tool layer can report them uniformly.
    """
    status_code: int = 500
    error_type: str = "internal_error"

    def __init__(self, message: str = "Gateway error"):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.error_type, "message": self.message}


class UpstreamError(AsoGatewayError):
    """Raised when an upstream provider answers with a non-success status.

    The status code of the upstream response is preserved so the retry
    policy can tell throttling (429) and outages (503) apart from
    permanent failures.
    """
    status_code = 502
    error_type = "upstream_error"

    def __init__(
        self,
        source: str,
        upstream_status: int,
        detail: str | None = None,
    ):
        self.source = source
        self.upstream_status = upstream_status
        self.detail = detail
        message = f"{source} error: HTTP {upstream_status}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["upstream_status"] = self.upstream_status
        data["source"] = self.source
        return data


class ConfigurationError(AsoGatewayError):
    """Raised when credentials, key files or provider URLs are missing.

    Configuration problems are fatal for the calling operation and are
    never retried.
    """
    status_code = 400
    error_type = "configuration_error"


class ValidationError(AsoGatewayError):
    """Raised when input is rejected before any network call is made.

    Carries the full list of violations (character limits, missing
    required fields) so callers can fix everything in one pass.
    """
    status_code = 422
    error_type = "validation_failed"

    def __init__(
        self,
        violations: list[str],
        warnings: list[str] | None = None,
        message: str | None = None,
    ):
        self.violations = list(violations)
        self.warnings = list(warnings or [])
        super().__init__(message or "; ".join(self.violations) or "Validation failed")

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["errors"] = self.violations
        if self.warnings:
            data["warnings"] = self.warnings
        return data


class ResourceNotFoundError(AsoGatewayError):
    """Raised when an upstream resource required for an operation is absent.

    Examples: no app for a bundle id, no editable version, no app info
    container. The message tells the user what to create first.
    """
    status_code = 404
    error_type = "not_found"
