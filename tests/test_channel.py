import json
import socket
import threading

import pytest

from startserver.runtime.channel import (
    CHANNEL_FD_ENV,
    ChannelMessage,
    MessageKind,
    WorkerChannel,
    decode_message,
    encode_message,
)


def test_encode_message_writes_one_json_line():
    raw = encode_message(ChannelMessage.of(MessageKind.HMR_FAIL, "boom"))

    assert raw.endswith(b"\n")
    assert json.loads(raw) == {"type": "HMR_FAIL", "detail": "boom"}


def test_decode_accepts_object_and_bare_string_tags():
    assert decode_message(b'{"type": "LOADED"}\n').kind == MessageKind.LOADED
    assert decode_message('"HMR_ACK"').kind == MessageKind.HMR_ACK

    failure = decode_message('{"type": "HMR_FAIL", "detail": "declined"}')
    assert failure.kind == MessageKind.HMR_FAIL
    assert failure.detail == "declined"


@pytest.mark.parametrize(
    "raw",
    [
        b"not json",
        b"\xff\xfe",
        b"42",
        b'{"kind": "LOADED"}',
        b'{"type": "SSWP_LOADED"}',
        b'{"type": "IGNORED"}',
        b"[]",
    ],
)
def test_decode_never_raises_on_garbage(raw):
    assert decode_message(raw).kind == MessageKind.IGNORED


def test_worker_channel_without_fd_is_disconnected():
    channel = WorkerChannel.from_env({})

    assert channel.connected is False
    assert channel.send(ChannelMessage.of(MessageKind.LOADED)) is False


def test_worker_channel_with_bad_fd_is_disconnected():
    assert WorkerChannel.from_env({CHANNEL_FD_ENV: "nope"}).connected is False


def test_worker_channel_sends_and_listens_over_socketpair():
    parent, child = socket.socketpair()
    channel = WorkerChannel.from_env({CHANNEL_FD_ENV: str(child.detach())})
    received = []
    done = threading.Event()

    def on_message(message):
        received.append(message)
        done.set()

    try:
        assert channel.send(ChannelMessage.of(MessageKind.LOADED)) is True
        assert decode_message(parent.makefile("rb").readline()).kind == MessageKind.LOADED

        channel.listen(on_message)
        parent.sendall(b'{"type": "unknown"}\n' + encode_message(ChannelMessage.of(MessageKind.HMR_REQUEST)))

        assert done.wait(timeout=5)
        assert [message.kind for message in received] == [MessageKind.HMR_REQUEST]
    finally:
        channel.close()
        parent.close()
