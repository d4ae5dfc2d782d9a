"""
Custom exceptions for the iloader package.

All iloader-specific exceptions inherit from IloaderError to allow
catching all package exceptions with a single except clause. Messages
and details are meant for display: they never carry filesystem paths,
session tokens or passwords.
"""

from typing import Optional


class IloaderError(Exception):
    """Base exception for all iloader errors."""

    retryable = False

    def __init__(self, message: str, details: Optional[str] = None):
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message

    @property
    def user_message(self) -> str:
        """Message suitable for showing to the user."""
        return str(self)


# Transport errors
class NetworkError(IloaderError):
    """Transport-level failure talking to a remote service."""

    retryable = True

    def __init__(self, stage: str, reason: Optional[str] = None):
        self.stage = stage
        details = f"Stage: {stage}"
        if reason:
            details += f", Reason: {reason}"
        super().__init__("Network error", details)


class RequestTimeoutError(NetworkError):
    """A remote call did not answer within its timeout."""

    def __init__(self, stage: str, timeout: float):
        self.timeout = timeout
        super().__init__(stage, f"no response within {timeout:g} seconds")
        self.message = "Request timed out"


class AnisetteUnreachableError(NetworkError):
    """No Anisette endpoint variant returned HTTP 200."""

    def __init__(self, server: str, reason: Optional[str] = None):
        self.server = server
        NetworkError.__init__(
            self, "anisette", reason or f"no endpoint of {server} answered"
        )
        self.message = "Anisette server unreachable"


class AnisetteTimeoutError(AnisetteUnreachableError, RequestTimeoutError):
    """Every Anisette endpoint variant timed out."""

    def __init__(self, server: str, timeout: float):
        self.timeout = timeout
        AnisetteUnreachableError.__init__(
            self, server, f"no response within {timeout:g} seconds"
        )
        self.message = "Anisette server timed out"


class MalformedAnisetteResponseError(IloaderError):
    """Anisette server answered but no body contained the required headers."""

    def __init__(self, server: str):
        self.server = server
        super().__init__(
            "Malformed Anisette response",
            f"{server} did not return the required device headers",
        )


# Authentication errors
class AuthError(IloaderError):
    """Base class for Apple ID authentication errors."""

    pass


class ServerError(AuthError):
    """Apple rejected the request."""

    def __init__(self, code: int, message: Optional[str] = None):
        self.code = code
        self.server_message = message or "Unknown error"
        super().__init__("Server error", f"{self.server_message} ({code})")


class InvalidCredentialsError(ServerError):
    """Apple ID or password rejected (-20101)."""

    def __init__(self, code: int = -20101, message: Optional[str] = None):
        super().__init__(code, message)
        self.message = "Invalid Apple ID or password"
        self.details = None


class SessionInProgressError(AuthError):
    """Another login for the same Apple ID is still pending."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(
            "Session in progress",
            f"A sign-in for {identifier} is already in progress",
        )


class SessionNotFoundError(AuthError):
    """The session handle is unknown, finished or was cancelled."""

    def __init__(self):
        super().__init__(
            "Sign-in session expired",
            "Start the sign-in again",
        )


class SRPError(AuthError):
    """The SRP handshake could not be completed."""

    def __init__(self, reason: Optional[str] = None):
        super().__init__("Authentication protocol failed", reason)


class AccountNotFoundError(AuthError):
    """No stored account with this identifier."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__("Account not found", f"No account for {identifier}")


class NotSignedInError(AuthError):
    """An operation needs an active account."""

    def __init__(self):
        super().__init__("Not signed in", "Sign in with your Apple ID first")


# Developer services errors
class DeveloperServicesError(IloaderError):
    """Base class for developer services errors."""

    pass


class ApiError(DeveloperServicesError):
    """Developer services returned an error or an unreadable response."""

    def __init__(self, status: int, message: Optional[str] = None, result_code: int = 0):
        self.status = status
        self.raw_message = message or ""
        self.result_code = result_code
        details = f"HTTP {status}"
        if result_code:
            details += f", code {result_code}"
        if message:
            details += f", {message}"
        super().__init__("Developer services error", details)


class ProfileGenerationFailedError(DeveloperServicesError):
    """No provisioning profile could be produced."""

    def __init__(self, reason: Optional[str] = None):
        super().__init__("Provisioning profile generation failed", reason)


class DeletionDisabledError(DeveloperServicesError):
    """Deletion was requested while the policy forbids it."""

    def __init__(self, kind: str = "App ID"):
        super().__init__(
            "Deletion disabled",
            f"{kind} deletion is turned off in the settings",
        )


# Signing errors
class SigningError(IloaderError):
    """Base class for signing pipeline errors."""

    pass


class ExtractionFailedError(SigningError):
    """The IPA could not be unpacked or holds no single app bundle."""

    def __init__(self, reason: Optional[str] = None):
        super().__init__("Failed to extract IPA", reason)


class CertificateNotFoundError(SigningError):
    """No usable signing identity could be resolved."""

    def __init__(self, reason: Optional[str] = None):
        super().__init__("Signing certificate not found", reason)


class RepackageFailedError(SigningError):
    """The signed bundle could not be zipped back into an IPA."""

    def __init__(self, reason: Optional[str] = None):
        super().__init__("Failed to repackage IPA", reason)


class MachOParseError(SigningError):
    """A binary is not a Mach-O file this package can sign."""

    def __init__(self, reason: str):
        super().__init__("Invalid Mach-O binary", reason)


class MachOSignError(SigningError):
    """A Mach-O binary could not be signed."""

    def __init__(self, binary: str, reason: Optional[str] = None):
        self.binary = binary
        details = f"Binary: {binary}"
        if reason:
            details += f", Reason: {reason}"
        super().__init__("Code signing failed", details)


class PermissionDeniedError(SigningError):
    """A file or scoped resource could not be accessed."""

    def __init__(self, resource: str):
        self.resource = resource
        super().__init__("Permission denied", f"Cannot access {resource}")


# Operation errors
class OperationError(IloaderError):
    """Base class for orchestrated operation errors."""

    pass


class OperationCancelledError(OperationError):
    """The operation was cancelled between steps."""

    def __init__(self, step: Optional[str] = None):
        self.step = step
        super().__init__("Operation cancelled", f"Stopped before: {step}" if step else None)


class OperationInProgressError(OperationError, SessionInProgressError):
    """Another operation is already running for this account."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        IloaderError.__init__(
            self,
            "Operation in progress",
            f"Another operation is running for {identifier}",
        )


class InstallError(OperationError):
    """Installing the signed app onto the device failed."""

    def __init__(self, reason: Optional[str] = None):
        super().__init__("Installation failed", reason)


class DeviceNotFoundError(OperationError):
    """No connected device matches the requested UDID."""

    def __init__(self, udid: str):
        self.udid = udid
        super().__init__("Device not found", f"No device found with UDID: {udid}")


class SealVerificationError(SigningError):
    """A signed bundle's files do not match its resource manifest."""

    def __init__(self, mismatches: list):
        self.mismatches = list(mismatches)
        super().__init__(
            "Signed bundle failed verification",
            f"{len(self.mismatches)} file(s) do not match the resource seal",
        )
