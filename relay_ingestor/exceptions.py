"""Custom exceptions for Relay_Ingestor."""

from __future__ import annotations


class RelayIngestorError(Exception):
    """Base exception for all Relay_Ingestor errors."""

    pass


class ConfigurationError(RelayIngestorError):
    """Raised when configuration is invalid or missing."""

    pass


class AdapterNotFoundError(ConfigurationError):
    """Raised when a source references an adapter type that is not registered."""

    pass


class PluginLoadError(RelayIngestorError):
    """Raised when a plugin cannot be loaded or declares inconsistent capabilities."""

    pass


class SecretNotFoundError(RelayIngestorError):
    """Raised when a named secret cannot be resolved."""

    def __init__(self, name: str, detail: str | None = None) -> None:
        message = f"Secret '{name}' could not be resolved"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.name = name


class AccessError(RelayIngestorError):
    """Base class for credential, scope and missing-resource failures."""

    category = "access"
    guidance = ""

    def describe(self) -> str:
        """Return the error message followed by operator guidance."""

        if self.guidance:
            return f"{self} ({self.guidance})"
        return str(self)


class AuthenticationError(AccessError):
    """Raised when the remote service rejects the credential itself."""

    category = "authentication"
    guidance = "check that the configured secret holds a valid, unexpired token"


class AuthorizationError(AccessError):
    """Raised when the credential is valid but lacks the required scope."""

    category = "authorization"
    guidance = "grant the integration the missing scope or permission"


class ResourceNotFoundError(AccessError):
    """Raised when the configured channel, room, folder or feed does not exist."""

    category = "not_found"
    guidance = "verify the configured channel, room, folder or URL"


class TransientTransportError(RelayIngestorError):
    """Raised for timeouts, rate limiting and dropped connections."""

    category = "transport"

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ProtocolError(RelayIngestorError):
    """Raised when the remote service returns a malformed payload."""

    category = "protocol"


class SessionNotConnectedError(RelayIngestorError):
    """Raised when sending through a realtime session that is not connected."""

    def __init__(self, source_id: str) -> None:
        super().__init__(f"Source '{source_id}' has no active realtime connection")
        self.source_id = source_id


class MaterializationError(RelayIngestorError):
    """Raised when the downstream work-item collaborator fails."""

    def __init__(self, item_id: str, message: str) -> None:
        super().__init__(f"Failed to materialize item '{item_id}': {message}")
        self.item_id = item_id
