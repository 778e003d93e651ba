"""Exceptions raised by the signal-cli RPC layer."""

from typing import Any


class SignalRelayError(Exception):
    """Base class for signalrelay errors."""


class TransportError(SignalRelayError):
    """The RPC transport could not complete a call."""


class TransportNotWritableError(TransportError):
    """signal-cli's stdin is closed or not attached."""


class PendingCallLimitError(TransportError):
    """Too many calls are waiting for a response."""


class RpcTimeoutError(TransportError):
    """A call got no response in time."""


class TransportClosedError(TransportError):
    """The transport was torn down while the call was pending."""


class RpcError(SignalRelayError):
    """signal-cli answered a call with an error object."""

    def __init__(self, error: Any):
        if isinstance(error, dict):
            self.code = error.get("code")
            self.message = str(error.get("message") or error)
            self.data = error.get("data")
        else:
            self.code = None
            self.message = str(error)
            self.data = None
        super().__init__(self.message)


class SupervisorError(SignalRelayError):
    """signal-cli could not be started or never became healthy."""
