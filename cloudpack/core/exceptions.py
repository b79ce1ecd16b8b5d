"""Custom exception hierarchy for cloudpack.

All cloudpack-specific exceptions inherit from CloudpackError, enabling
callers to catch every provisioning failure with a single except clause.

Errors that a retry policy may recognise carry a ``kind`` (see FailureKind).
"""

from __future__ import annotations

from enum import StrEnum


class FailureKind(StrEnum):
    """Failure categories a RetryPolicy can be told to retry."""

    AUTHENTICATION = "authentication"
    HOST_UNREACHABLE = "host-unreachable"
    CONNECTION_REFUSED = "connection-refused"
    CONNECTION_RESET = "connection-reset"
    NETWORK_UNREACHABLE = "network-unreachable"
    TIMEOUT = "timeout"
    PROVIDER = "provider"


class CloudpackError(Exception):
    """Base exception for all cloudpack errors."""

    kind: FailureKind | None = None


class ConfigurationError(CloudpackError):
    """Raised for invalid options or missing required settings."""


# =============================================================================
# Remote shell
# =============================================================================


class AuthenticationFailed(CloudpackError):
    """The remote shell rejected our credentials."""

    kind = FailureKind.AUTHENTICATION

    def __init__(self, login: str, host: str) -> None:
        self.login = login
        self.host = host
        super().__init__(
            f"Authentication failure for user {login} on {host}. "
            "Please check the keyfile and try again."
        )


class ConnectionFailed(CloudpackError):
    """Transport-level failure talking to a remote host."""

    def __init__(self, host: str, kind: FailureKind | None, reason: str = "") -> None:
        self.host = host
        self.kind = kind
        self.reason = reason
        what = f" ({kind})" if kind else ""
        detail = f": {reason}" if reason else ""
        super().__init__(f"Could not connect to {host}{what}{detail}")


class AttemptTimedOut(CloudpackError):
    """A single bounded attempt ran past its own timeout."""

    kind = FailureKind.TIMEOUT

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Attempt timed out after {timeout:g}s")


class TimeoutExceeded(CloudpackError):
    """A bounded operation ran out of its overall time budget."""

    def __init__(
        self,
        operation: str,
        budget: float,
        elapsed: float,
        attempts: int | None = None,
    ) -> None:
        self.operation = operation
        self.budget = budget
        self.elapsed = elapsed
        self.attempts = attempts
        tried = f" after {attempts} attempt(s)" if attempts is not None else ""
        super().__init__(
            f"{operation} did not finish within {budget:g}s "
            f"(elapsed {elapsed:.1f}s{tried})"
        )


class InstanceUnreachable(CloudpackError):
    """The host never accepted an SSH connection within the budget."""

    def __init__(self, host: str) -> None:
        self.host = host
        super().__init__(f"Timeout while establishing SSH connection to: {host}")


class NonZeroExit(CloudpackError):
    """A remote command completed but signalled failure."""

    def __init__(self, command: str, exit_code: int | None, hint: str = "") -> None:
        self.command = command
        self.exit_code = exit_code
        self.hint = hint
        message = f"Remote command exited with status {exit_code}: {command}"
        if hint:
            message = f"{message}. {hint}"
        super().__init__(message)


# =============================================================================
# Provider
# =============================================================================


class ProviderError(CloudpackError):
    """The cloud provider's control plane rejected or failed a request."""

    kind = FailureKind.PROVIDER

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        self.reason = reason
        super().__init__(f"Provider call '{operation}' failed: {reason}")


class InstanceErrorState(CloudpackError):
    """The provider reports that the instance cannot become ready."""

    def __init__(self, instance_id: str, state: str = "error") -> None:
        self.instance_id = instance_id
        self.state = state
        super().__init__(f"Instance {instance_id} has entered the {state} state")


class ReadinessUnconfirmed(CloudpackError):
    """Polling the provider failed, so readiness is unknown."""

    def __init__(self, instance_id: str, reason: str) -> None:
        self.instance_id = instance_id
        self.reason = reason
        super().__init__(
            f"Could not confirm readiness of {instance_id}: {reason}. "
            "Please check your network connection and try again."
        )


# =============================================================================
# Install
# =============================================================================


class TemplateNotFound(CloudpackError):
    """No install script template is registered under that name."""

    def __init__(self, name: str, available: tuple[str, ...]) -> None:
        self.name = name
        self.available = available
        super().__init__(
            f"Could not find install script template '{name}'. "
            f"Available: {', '.join(available)}"
        )


# =============================================================================
# Classification / certificates
# =============================================================================


class GroupNotFound(CloudpackError):
    """The classification group does not exist; groups are never auto-created."""

    def __init__(self, group: str) -> None:
        self.group = group
        super().__init__(
            f"Group {group} does not exist in the console/Dashboard. "
            "Groups must exist before they can be assigned to nodes."
        )


class ClassificationRequestFailed(CloudpackError):
    """The classifier answered with an unexpected status code."""

    def __init__(self, action: str, expected: int, actual: int) -> None:
        self.action = action
        self.expected = expected
        self.actual = actual
        super().__init__(f"Could not: {action}, got {actual} expected {expected}")


class ClassificationResponseInvalid(CloudpackError):
    """The classifier answered with the expected status but an unreadable body."""

    def __init__(self, action: str, reason: str) -> None:
        self.action = action
        self.reason = reason
        super().__init__(f"Could not: {action}, response was not JSON: {reason}")


class ClassificationUnreachable(CloudpackError):
    """The classifier could not be contacted at all."""

    def __init__(self, server: str, port: int, reason: str) -> None:
        self.server = server
        self.port = port
        self.reason = reason
        super().__init__(
            f"Could not connect to host {server} on port {port}: {reason}"
        )


class CertificateSigningFailed(CloudpackError):
    """The certificate authority refused or failed to sign a certificate."""

    def __init__(self, certname: str, reason: str) -> None:
        self.certname = certname
        self.reason = reason
        super().__init__(f"Signing certificate {certname} failed: {reason}")
