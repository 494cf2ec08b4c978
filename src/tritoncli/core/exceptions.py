"""tritoncli exception hierarchy.

Every error carries a ``code`` (camel-case taxonomy shown to the user) and an
``exit_status`` the CLI exits with.  Server-originated errors also carry the
HTTP ``status_code``.
"""

from __future__ import annotations

from collections.abc import Sequence

from tritoncli.core.constants import ExitCode


class TritonError(Exception):
    """Base exception for all tritoncli errors."""

    code = "Generic"
    exit_status = ExitCode.ERROR

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.status_code = status_code
        if cause is not None:
            self.__cause__ = cause


class InternalError(TritonError):
    """Raised on a programming error inside tritoncli."""

    code = "InternalError"


class ConfigError(TritonError):
    """Raised when the config or a profile is invalid or cannot be read."""

    code = "Config"


class ProfileNotFoundError(ConfigError):
    """Raised when a named profile does not exist."""


class SetupError(TritonError):
    """Raised when Docker/CMON setup cannot complete."""

    code = "Setup"


class UsageError(TritonError):
    """Raised on invalid command-line usage."""

    code = "Usage"


class SigningError(TritonError):
    """Raised when a request or certificate cannot be signed."""

    code = "Signing"

    def __init__(self, message: str = "error signing request", cause: BaseException | None = None) -> None:
        super().__init__(message, cause=cause)


class SelfSignedCertError(TritonError):
    """Raised when CloudAPI presents a self-signed certificate and insecure is off."""

    code = "SelfSignedCert"

    def __init__(self, url: str, cause: BaseException | None = None) -> None:
        super().__init__(
            f"could not access CloudAPI {url} because it uses a self-signed TLS "
            "certificate and your current profile is not configured for insecure "
            "access (set `insecure: true` on the profile or pass --insecure)",
            cause=cause,
        )
        self.url = url


class TritonTimeoutError(TritonError):
    """Raised when a wait/poll exceeds its deadline."""

    code = "Timeout"


class ResourceNotFoundError(TritonError):
    """Raised when a resource (key, user, profile...) cannot be found."""

    code = "ResourceNotFound"
    exit_status = ExitCode.NOT_FOUND


class InstanceDeletedError(TritonError):
    """Raised when an instance was deleted while waiting on it."""

    code = "InstanceDeleted"
    exit_status = ExitCode.NOT_FOUND


class CloudApiError(TritonError):
    """Raised for a non-success CloudAPI response or a transport failure."""

    code = "CloudApi"

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        status_code: int | None = None,
        code: str | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message, cause=cause, status_code=status_code)
        if code:
            self.code = code
        self.retryable = retryable


class AuthError(CloudApiError):
    """Raised on 401: the account/key pair was rejected."""

    code = "InvalidCredentials"


class MultiError(TritonError):
    """Aggregates the failures of a bulk operation; the first is the cause."""

    code = "MultiError"

    def __init__(self, errors: Sequence[BaseException]) -> None:
        if not errors:
            raise InternalError("MultiError requires at least one error")
        lines = [f"multiple ({len(errors)}) errors"]
        for err in errors:
            lines.append(f"    error ({error_code(err)}): {err}")
        super().__init__("\n".join(lines), cause=errors[0])
        self.errors = list(errors)


def error_code(exc: BaseException) -> str:
    """Return the taxonomy code for *exc* (class name for foreign errors)."""
    if isinstance(exc, TritonError):
        return exc.code
    return type(exc).__name__
