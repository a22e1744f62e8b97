from __future__ import annotations

import signal
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, NamedTuple, Optional

from startserver.core.models import ReloadMode, SupervisorConfig
from startserver.runtime.channel import ChannelMessage, MessageKind
from startserver.runtime.reload_contracts import ReloadSessionState
from startserver.utils.diagnostics import ReloadRejected, StartServerError

if TYPE_CHECKING:
    from startserver.runtime.supervisor import WorkerHandle


class DeliveryResult(NamedTuple):
    state: ReloadSessionState
    reason: Optional[StartServerError] = None


class ReloadTransport(ABC):
    """Strategy that tells a live worker to pick up a new build."""

    mode: ReloadMode
    expects_reply = False

    @abstractmethod
    def deliver(self, handle: "WorkerHandle") -> Optional[DeliveryResult]:
        """Instruct the worker.

        Returns the final session result, or None when the answer will arrive on
        the message channel.
        """


class SignalTransport(ReloadTransport):
    """Sends an OS signal; successful delivery is the whole protocol."""

    mode = ReloadMode.SIGNAL

    def __init__(self, signal_name: str) -> None:
        self.signal_name = signal_name
        self.signum = signal.Signals[signal_name]

    def deliver(self, handle: "WorkerHandle") -> Optional[DeliveryResult]:
        try:
            handle.process.send_signal(self.signum)
        except ProcessLookupError:
            return DeliveryResult(ReloadSessionState.REJECTED, ReloadRejected(f"worker pid={handle.pid} no longer exists"))
        except OSError as exc:
            return DeliveryResult(ReloadSessionState.REJECTED, ReloadRejected(f"could not send {self.signal_name}: {exc}"))
        return DeliveryResult(ReloadSessionState.ACKNOWLEDGED)


class MessageTransport(ReloadTransport):
    """Sends HMR_REQUEST and waits for HMR_ACK / HMR_FAIL on the channel."""

    mode = ReloadMode.MESSAGE
    expects_reply = True

    def deliver(self, handle: "WorkerHandle") -> Optional[DeliveryResult]:
        try:
            handle.process.send(ChannelMessage.of(MessageKind.HMR_REQUEST))
        except OSError as exc:
            return DeliveryResult(ReloadSessionState.REJECTED, ReloadRejected(f"could not reach worker channel: {exc}"))
        return None


class RestartOnlyTransport(ReloadTransport):
    """Live reload disabled; every refresh becomes a kill and relaunch."""

    mode = ReloadMode.NONE

    def deliver(self, handle: "WorkerHandle") -> Optional[DeliveryResult]:
        return DeliveryResult(ReloadSessionState.REJECTED, ReloadRejected("live reload is disabled"))


def build_reload_transport(config: SupervisorConfig) -> ReloadTransport:
    if config.reload_mode == ReloadMode.SIGNAL:
        return SignalTransport(config.reload_signal)
    if config.reload_mode == ReloadMode.MESSAGE:
        return MessageTransport()
    return RestartOnlyTransport()
