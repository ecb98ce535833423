"""Exception hierarchy for hostplay.

Every error raised by the runner derives from HostplayError. Each carries an
``error_type`` classification used by the retry logic to decide whether a
failure is transient.
"""

from typing import Any


class ErrorTypes:
    """Error classification constants."""

    CONNECTION_TIMEOUT = "ConnectionTimeout"
    CONNECTION_REFUSED = "ConnectionRefused"
    HOST_UNREACHABLE = "HostUnreachable"
    AUTHENTICATION_FAILED = "AuthenticationFailed"
    PROBE_FAILED = "ProbeFailed"
    ACTION_FAILED = "ActionFailed"
    TEMPLATE_ERROR = "TemplateError"
    PLAYBOOK_ERROR = "PlaybookError"
    INVENTORY_ERROR = "InventoryError"
    STORE_ERROR = "StoreError"
    UNKNOWN = "Unknown"


class HostplayError(Exception):
    """Base class for all hostplay errors.

    Attributes:
        message: Human-readable error message
        host: Host the error relates to, if any
        error_type: Classification from ErrorTypes
    """

    error_type = ErrorTypes.UNKNOWN

    def __init__(self, message: str, host: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.host = host

    def __str__(self) -> str:
        return self.message


class ConnectionError(HostplayError):
    """A host could not be reached or the channel broke.

    Fatal for that host only; other hosts continue.
    """

    def __init__(
        self,
        message: str,
        host: str | None = None,
        error_type: str = ErrorTypes.HOST_UNREACHABLE,
    ) -> None:
        super().__init__(message, host)
        self.error_type = error_type


class AuthenticationError(ConnectionError):
    """The host refused our credentials. Never retried."""

    def __init__(self, message: str, host: str | None = None) -> None:
        super().__init__(message, host, ErrorTypes.AUTHENTICATION_FAILED)


class ProbeError(HostplayError):
    """A single fact probe failed. Recorded as unavailable, non-fatal."""

    error_type = ErrorTypes.PROBE_FAILED

    def __init__(self, probe: str, reason: str, host: str | None = None) -> None:
        super().__init__(f"Probe '{probe}' failed: {reason}", host)
        self.probe = probe
        self.reason = reason


class ActionError(HostplayError):
    """A task action failed.

    Attributes:
        rc: Exit status of the failing command, if one ran
        stdout: Captured standard output
        stderr: Captured standard error
        output: Structured data gathered before the failure
    """

    error_type = ErrorTypes.ACTION_FAILED

    def __init__(
        self,
        message: str,
        rc: int | None = None,
        stdout: str = "",
        stderr: str = "",
        host: str | None = None,
        **output: Any,
    ) -> None:
        super().__init__(message, host)
        self.rc = rc
        self.stdout = stdout
        self.stderr = stderr
        self.output: dict[str, Any] = output


class TemplateError(HostplayError):
    """A template referenced an undefined name or could not be parsed."""

    error_type = ErrorTypes.TEMPLATE_ERROR


class PlaybookError(HostplayError):
    """The playbook is malformed or violates task ordering rules."""

    error_type = ErrorTypes.PLAYBOOK_ERROR


class InventoryError(HostplayError):
    """The inventory is malformed or empty."""

    error_type = ErrorTypes.INVENTORY_ERROR


class StoreError(HostplayError):
    """A result store key was written twice, or written after freeze."""

    error_type = ErrorTypes.STORE_ERROR
