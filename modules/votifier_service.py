"""Votifier orchestrator: wires key store, listeners and receiver together."""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional

from modules.crypto import KeyPair, KeyStore
from modules.errors import StartupError
from modules.listeners import ListenerRegistry
from modules.receiver import PROTOCOL_VERSION, VoteReceiver
from modules.vote import VoteCodec

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8192


@dataclass
class VotifierConfig:
    key_pair: KeyPair
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    debug: bool = False
    read_timeout: float = VoteReceiver.DEFAULT_READ_TIMEOUT
    max_payload_bytes: Optional[int] = None
    max_connections: int = VoteReceiver.DEFAULT_MAX_CONNECTIONS
    accept_poll_interval: float = VoteReceiver.DEFAULT_ACCEPT_POLL_INTERVAL


class Votifier:
    """Start/stop lifecycle and status for one vote receiver."""

    def __init__(
        self,
        listeners: Iterable[Any] = (),
        logger: Optional[Callable[[str, str], None]] = None,
    ):
        self._logger = logger
        self.registry = ListenerRegistry(logger=logger)
        for listener in listeners:
            self.registry.register(listener)
        self.config: Optional[VotifierConfig] = None
        self.key_store: Optional[KeyStore] = None
        self.receiver: Optional[VoteReceiver] = None
        self._lock = threading.Lock()

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    @property
    def version(self) -> str:
        return PROTOCOL_VERSION

    @property
    def is_running(self) -> bool:
        return self.receiver is not None and self.receiver.is_running

    def _validate(self, config: VotifierConfig) -> None:
        if not isinstance(config.key_pair, KeyPair):
            raise StartupError("key pair not available")
        if not isinstance(config.host, str) or not config.host.strip():
            raise StartupError("host must be a non-empty string")
        if not isinstance(config.port, int) or not 0 <= config.port <= 65535:
            raise StartupError(f"invalid port {config.port!r}")
        if not math.isfinite(config.read_timeout) or config.read_timeout <= 0:
            raise StartupError("read_timeout must be positive")
        if config.max_connections < 1:
            raise StartupError("max_connections must be at least 1")
        if not math.isfinite(config.accept_poll_interval) or config.accept_poll_interval <= 0:
            raise StartupError("accept_poll_interval must be positive")
        block_size = config.key_pair.block_size
        if config.max_payload_bytes is not None and config.max_payload_bytes != block_size:
            raise StartupError(
                f"max_payload_bytes {config.max_payload_bytes} does not match "
                f"the {config.key_pair.key_size}-bit key block size {block_size}"
            )

    def start(self, config: VotifierConfig) -> None:
        """Bind the receiver and begin accepting votes.

        Raises:
            StartupError: invalid configuration, missing key pair, or the
                port cannot be bound. Nothing is left listening.
        """
        with self._lock:
            if self.is_running:
                raise StartupError("votifier already running")
            self._validate(config)

            key_store = KeyStore(config.key_pair)
            receiver = VoteReceiver(
                host=config.host,
                port=config.port,
                key_store=key_store,
                registry=self.registry,
                codec=VoteCodec(),
                logger=self._logger,
                debug=config.debug,
                read_timeout=config.read_timeout,
                max_payload_bytes=config.max_payload_bytes,
                max_connections=config.max_connections,
                accept_poll_interval=config.accept_poll_interval,
            )
            receiver.start()

            self.config = config
            self.key_store = key_store
            self.receiver = receiver

        if config.debug:
            self._log("votifier: DEBUG mode enabled!")
        if not len(self.registry):
            self._log("votifier: no vote listeners registered", "warn")
        self._log(f"votifier {PROTOCOL_VERSION} enabled with {len(self.registry)} listener(s)")

    def stop(self) -> None:
        with self._lock:
            receiver, self.receiver = self.receiver, None
        if receiver is not None:
            receiver.shutdown()
            self._log("votifier: disabled")

    def public_key(self) -> Dict[str, Any]:
        if self.key_store is None:
            return {"error": "votifier not started"}
        return {
            "ok": True,
            "key_size": self.key_store.key_size,
            "public_key": self.key_store.public_key_base64(),
            "pem": self.key_store.public_key_pem(),
        }

    def status(self) -> Dict[str, Any]:
        receiver = self.receiver
        result: Dict[str, Any] = {
            "ok": True,
            "version": PROTOCOL_VERSION,
            "running": self.is_running,
            "listeners": self.registry.names(),
        }
        if self.config is not None:
            result["host"] = self.config.host
            result["port"] = self.config.port
            result["debug"] = self.config.debug
        if receiver is not None:
            address = receiver.address
            if address is not None:
                result["port"] = address[1]
            result["stats"] = receiver.stats()
        return result


def start(
    config: VotifierConfig,
    listeners: Iterable[Any] = (),
    logger: Optional[Callable[[str, str], None]] = None,
) -> Votifier:
    votifier = Votifier(listeners=listeners, logger=logger)
    votifier.start(config)
    return votifier


def stop(votifier: Votifier) -> None:
    votifier.stop()
