"""Unit tests for the Votifier orchestrator lifecycle."""

import functools
import os
import socket
import sys

import pytest
from cryptography.hazmat.primitives.asymmetric import padding

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import modules.votifier_service as votifier_service
from modules.crypto import KeyManager, KeyPair
from modules.errors import StartupError
from modules.votifier_service import Votifier, VotifierConfig


@functools.lru_cache(maxsize=None)
def _key_pair() -> KeyPair:
    return KeyManager().generate(2048)


class _RecordingListener:
    def __init__(self, name):
        self.name = name
        self.votes = []

    def process(self, vote):
        self.votes.append(vote)


def _config(**kwargs):
    kwargs.setdefault("key_pair", _key_pair())
    kwargs.setdefault("host", "127.0.0.1")
    kwargs.setdefault("port", 0)
    kwargs.setdefault("accept_poll_interval", 0.05)
    return VotifierConfig(**kwargs)


def _send_block(port: int, block: bytes) -> None:
    with socket.create_connection(("127.0.0.1", port), timeout=5) as sock:
        greeting = b""
        while not greeting.endswith(b"\n"):
            chunk = sock.recv(64)
            if not chunk:
                break
            greeting += chunk
        assert greeting.startswith(b"VOTIFIER ")
        sock.sendall(block)
        sock.shutdown(socket.SHUT_WR)
        while sock.recv(64):
            pass


def test_config_defaults():
    config = VotifierConfig(key_pair=_key_pair())
    assert config.host == "0.0.0.0"
    assert config.port == 8192
    assert config.debug is False
    assert config.read_timeout == 5.0
    assert config.max_payload_bytes is None


def test_start_status_and_stop():
    messages = []
    listener = _RecordingListener("rewards")
    service = Votifier(
        listeners=[listener],
        logger=lambda msg, level="info": messages.append((level, msg)),
    )
    assert service.status()["running"] is False

    service.start(_config(debug=True))
    try:
        status = service.status()
        assert status["ok"] is True
        assert status["running"] is True
        assert status["version"] == "1.9"
        assert status["listeners"] == ["rewards"]
        assert status["host"] == "127.0.0.1"
        assert status["port"] > 0
        assert status["stats"]["accepted"] == 0

        block = _key_pair().public_key.encrypt(
            b"VOTE\nSiteA\nAlice\n203.0.113.5\n1700000000\n", padding.PKCS1v15()
        )
        _send_block(status["port"], block)

        assert [vote.username for vote in listener.votes] == ["Alice"]
        assert service.status()["stats"]["dispatched"] == 1
        assert any(level == "debug" and "Alice" in msg for level, msg in messages)
    finally:
        service.stop()

    assert service.is_running is False
    assert service.status()["running"] is False
    assert any("enabled" in msg for _, msg in messages)
    assert any("disabled" in msg for _, msg in messages)


def test_stop_is_idempotent():
    service = Votifier()
    service.stop()
    service.start(_config())
    service.stop()
    service.stop()
    assert service.is_running is False


def test_start_twice_is_rejected():
    service = Votifier()
    service.start(_config())
    try:
        with pytest.raises(StartupError):
            service.start(_config())
    finally:
        service.stop()


def test_public_key_export():
    service = Votifier()
    assert "error" in service.public_key()

    service.start(_config())
    try:
        exported = service.public_key()
        assert exported["ok"] is True
        assert exported["key_size"] == 2048
        assert exported["pem"].startswith("-----BEGIN PUBLIC KEY-----")
    finally:
        service.stop()


@pytest.mark.parametrize(
    "overrides",
    [
        {"key_pair": None},
        {"host": ""},
        {"port": 70000},
        {"port": -1},
        {"read_timeout": 0},
        {"read_timeout": float("nan")},
        {"read_timeout": float("inf")},
        {"accept_poll_interval": float("nan")},
        {"accept_poll_interval": 0},
        {"max_connections": 0},
        {"max_payload_bytes": 128},
    ],
)
def test_invalid_config_raises_startup_error(overrides):
    service = Votifier()
    with pytest.raises(StartupError):
        service.start(_config(**overrides))
    assert service.is_running is False
    assert service.receiver is None


def test_matching_max_payload_is_accepted():
    service = Votifier()
    service.start(_config(max_payload_bytes=256))
    try:
        assert service.receiver.max_payload_bytes == 256
    finally:
        service.stop()


def test_bind_failure_leaves_nothing_listening():
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", 0))
    blocker.listen(1)
    try:
        service = Votifier()
        with pytest.raises(StartupError):
            service.start(_config(port=blocker.getsockname()[1]))
        assert service.receiver is None
        assert service.status()["running"] is False
    finally:
        blocker.close()


def test_listener_without_process_is_rejected():
    with pytest.raises(TypeError):
        Votifier(listeners=[object()])


def test_module_level_start_and_stop():
    listener = _RecordingListener("l")
    handle = votifier_service.start(_config(), listeners=[listener])
    try:
        assert handle.is_running
        block = _key_pair().public_key.encrypt(b"VOTE\nS\nU\nA\nT\n", padding.PKCS1v15())
        _send_block(handle.status()["port"], block)
        assert len(listener.votes) == 1
    finally:
        votifier_service.stop(handle)
    assert handle.is_running is False
