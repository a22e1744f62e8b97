"""
Message channel between the supervisor and its worker.

One JSON object per line over an inherited socketpair, e.g. ``{"type": "LOADED"}``.
Payloads are decoded into a closed set of kinds at the boundary; anything
unrecognised becomes ``IGNORED`` instead of raising.
"""

from __future__ import annotations

import json
import os
import socket
import threading
from enum import Enum
from typing import Callable, Optional, Union

from pydantic import BaseModel


CHANNEL_FD_ENV = "STARTSERVER_CHANNEL_FD"
HOT_ENV = "STARTSERVER_HOT"
HOT_ROOT_ENV = "STARTSERVER_HOT_ROOT"
RELOAD_SIGNAL_ENV = "STARTSERVER_RELOAD_SIGNAL"
READY_DELAY_ENV = "STARTSERVER_READY_DELAY"


class MessageKind(str, Enum):
    LOADED = "LOADED"
    HMR_REQUEST = "HMR_REQUEST"
    HMR_ACK = "HMR_ACK"
    HMR_FAIL = "HMR_FAIL"
    IGNORED = "IGNORED"


class ChannelMessage(BaseModel):
    kind: MessageKind
    detail: Optional[str] = None

    @classmethod
    def of(cls, kind: MessageKind, detail: Optional[str] = None) -> "ChannelMessage":
        return cls(kind=kind, detail=detail)


_WIRE_KINDS = {kind.value: kind for kind in MessageKind if kind != MessageKind.IGNORED}


def encode_message(message: ChannelMessage) -> bytes:
    payload = {"type": message.kind.value}
    if message.detail is not None:
        payload["detail"] = message.detail
    return (json.dumps(payload) + "\n").encode("utf-8")


def decode_message(raw: Union[bytes, str]) -> ChannelMessage:
    """Decode one line from the channel. Never raises."""
    try:
        text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        payload = json.loads(text)
    except (UnicodeDecodeError, ValueError):
        return ChannelMessage(kind=MessageKind.IGNORED)

    if isinstance(payload, str):
        tag, detail = payload, None
    elif isinstance(payload, dict) and isinstance(payload.get("type"), str):
        tag = payload["type"]
        detail = payload.get("detail") if isinstance(payload.get("detail"), str) else None
    else:
        return ChannelMessage(kind=MessageKind.IGNORED)

    kind = _WIRE_KINDS.get(tag)
    if kind is None:
        return ChannelMessage(kind=MessageKind.IGNORED)
    return ChannelMessage(kind=kind, detail=detail)


class WorkerChannel:
    """Worker-side end of the channel.

    Sends are synchronous and thread-safe; incoming messages are read on a daemon
    thread and handed to ``on_message``. A worker started without a channel gets
    a disconnected instance whose sends are no-ops.
    """

    def __init__(self, sock: Optional[socket.socket]) -> None:
        self._sock = sock
        self._send_lock = threading.Lock()
        self._reader: Optional[threading.Thread] = None

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "WorkerChannel":
        environ = os.environ if environ is None else environ
        raw_fd = environ.get(CHANNEL_FD_ENV)
        if not raw_fd:
            return cls(None)
        try:
            sock = socket.socket(fileno=int(raw_fd))
        except (ValueError, OSError):
            return cls(None)
        sock.set_inheritable(False)
        return cls(sock)

    @property
    def connected(self) -> bool:
        return self._sock is not None

    def send(self, message: ChannelMessage) -> bool:
        if self._sock is None:
            return False
        try:
            with self._send_lock:
                self._sock.sendall(encode_message(message))
        except OSError:
            return False
        return True

    def listen(self, on_message: Callable[[ChannelMessage], None]) -> None:
        if self._sock is None or self._reader is not None:
            return
        self._reader = threading.Thread(
            target=self._read_loop,
            args=(on_message,),
            name="startserver-channel",
            daemon=True,
        )
        self._reader.start()

    def close(self) -> None:
        if self._sock is None:
            return
        try:
            self._sock.close()
        finally:
            self._sock = None

    def _read_loop(self, on_message: Callable[[ChannelMessage], None]) -> None:
        sock = self._sock
        if sock is None:
            return
        with sock.makefile("rb") as stream:
            try:
                for line in stream:
                    message = decode_message(line)
                    if message.kind != MessageKind.IGNORED:
                        on_message(message)
            except (OSError, ValueError):
                return
