"""signal-cli JSON-RPC transport and process supervision."""

from signalrelay.rpc.errors import (
    PendingCallLimitError,
    RpcError,
    RpcTimeoutError,
    SignalRelayError,
    SupervisorError,
    TransportClosedError,
    TransportError,
    TransportNotWritableError,
)
from signalrelay.rpc.supervisor import ProcessSupervisor, SupervisorState
from signalrelay.rpc.transport import RpcTransport

__all__ = [
    "PendingCallLimitError",
    "ProcessSupervisor",
    "RpcError",
    "RpcTimeoutError",
    "RpcTransport",
    "SignalRelayError",
    "SupervisorError",
    "SupervisorState",
    "TransportClosedError",
    "TransportError",
    "TransportNotWritableError",
]
