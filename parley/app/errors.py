"""Exception taxonomy for the translation session core.

Errors are split by who has to act on them. Transport and parse failures are
absorbed by the component that detects them (reconnect with backoff, raw-text
fallback). Permission, resource-setup, credential and exhausted-reconnect
failures are raised to the caller of the public session coroutines and are also
published as ``SessionErrorEvent`` for the UI shell.
"""
from typing import Optional


class ParleyError(Exception):
    """Root of all errors raised by the session core."""

    kind: str = "internal"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TransportError(ParleyError):
    """Connect failure, send failure or abnormal close of the streaming socket."""

    kind = "transport"


class ReconnectExhaustedError(TransportError):
    """Automatic reconnection gave up after the configured number of attempts."""

    kind = "transport"

    def __init__(self, attempts: int) -> None:
        super().__init__(f"Reconnection failed after {attempts} attempts, reconnect manually")
        self.attempts = attempts


class RemoteProtocolError(ParleyError):
    """The remote service sent an explicit error event."""

    kind = "remote"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class PayloadParseError(ParleyError):
    """A structured response payload could not be decoded."""

    kind = "parse"

    def __init__(self, message: str, raw_payload: str) -> None:
        super().__init__(message)
        self.raw_payload = raw_payload


class PermissionDeniedError(ParleyError):
    """Microphone or speech recognizer access was refused or is unavailable."""

    kind = "permission"


class ResourceSetupError(ParleyError):
    """The audio input stream or detector could not be configured."""

    kind = "resource"


class InvalidCredentialError(ParleyError):
    """The API credential is missing or does not look like a valid key."""

    kind = "credential"
