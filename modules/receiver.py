"""TCP receiver: accept loop plus one handler thread per connection."""

from __future__ import annotations

import socket
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from modules.crypto import KeyStore
from modules.errors import CryptoError, ProtocolError, StartupError
from modules.listeners import ListenerRegistry
from modules.vote import VoteCodec

PROTOCOL_VERSION = "1.9"


class VoteReceiver:
    """Listens for vote submissions and runs the protocol for each connection.

    Per connection: send greeting, read one block, decrypt, parse, dispatch,
    close. Every step runs on the connection's own thread; the accept thread
    only accepts and hands off.
    """

    DEFAULT_READ_TIMEOUT = 5.0
    DEFAULT_MAX_CONNECTIONS = 64
    DEFAULT_ACCEPT_POLL_INTERVAL = 0.5
    LISTEN_BACKLOG = 50

    def __init__(
        self,
        host: str,
        port: int,
        key_store: KeyStore,
        registry: ListenerRegistry,
        codec: Optional[VoteCodec] = None,
        logger: Optional[Callable[[str, str], None]] = None,
        debug: bool = False,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
        max_payload_bytes: Optional[int] = None,
        max_connections: int = DEFAULT_MAX_CONNECTIONS,
        accept_poll_interval: float = DEFAULT_ACCEPT_POLL_INTERVAL,
    ):
        self.host = host
        self.port = int(port)
        self.key_store = key_store
        self.registry = registry
        self.codec = codec or VoteCodec()
        self._logger = logger
        self.debug = bool(debug)
        self.read_timeout = float(read_timeout)
        self.max_payload_bytes = int(max_payload_bytes or key_store.block_size)
        self.max_connections = max(1, int(max_connections))
        self.accept_poll_interval = float(accept_poll_interval)

        self._server: Optional[socket.socket] = None
        self._accept_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._slots = threading.BoundedSemaphore(self.max_connections)
        self._stats_lock = threading.Lock()
        self._stats = {
            "accepted": 0,
            "dispatched": 0,
            "failed": 0,
            "rejected": 0,
            "listener_errors": 0,
        }

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def _count(self, key: str, amount: int = 1) -> None:
        with self._stats_lock:
            self._stats[key] += amount

    def greeting(self) -> bytes:
        return f"VOTIFIER {PROTOCOL_VERSION}\n".encode("ascii")

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        server = self._server
        if server is None:
            return None
        try:
            sockname = server.getsockname()
        except OSError:
            return None
        return sockname[0], sockname[1]

    @property
    def is_running(self) -> bool:
        return self._accept_thread is not None and self._accept_thread.is_alive()

    def stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return dict(self._stats)

    def start(self) -> None:
        if self._accept_thread is not None:
            raise StartupError("receiver already started")
        try:
            server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        except OSError as exc:
            raise StartupError(f"unable to create socket: {exc}") from exc
        try:
            server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            server.bind((self.host, self.port))
            server.listen(self.LISTEN_BACKLOG)
            server.settimeout(self.accept_poll_interval)
        except OSError as exc:
            server.close()
            raise StartupError(f"unable to bind {self.host}:{self.port}: {exc}") from exc

        self._server = server
        self._stop_event.clear()
        self._accept_thread = threading.Thread(
            target=self._accept_loop,
            name="votifier-accept",
            daemon=True,
        )
        self._accept_thread.start()
        bound_host, bound_port = self.address or (self.host, self.port)
        self._log(f"votifier: listening on {bound_host}:{bound_port}")

    def shutdown(self, join_timeout: float = 5.0) -> None:
        """Stop accepting and close the listening socket.

        Handlers already running finish on their own, bounded by the read
        timeout.
        """
        self._stop_event.set()
        thread = self._accept_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=join_timeout)
            if thread.is_alive():
                self._log("votifier: accept thread did not stop in time", "warn")
        self._close_server()

    def _close_server(self) -> None:
        server, self._server = self._server, None
        if server is not None:
            try:
                server.close()
            except OSError:
                pass

    def _accept_loop(self) -> None:
        try:
            while not self._stop_event.is_set():
                server = self._server
                if server is None:
                    break
                try:
                    conn, peer = server.accept()
                except socket.timeout:
                    continue
                except OSError as exc:
                    if self._stop_event.is_set():
                        break
                    self._log(f"votifier: accept failed: {exc}", "warn")
                    self._stop_event.wait(self.accept_poll_interval)
                    continue

                if not self._slots.acquire(blocking=False):
                    self._count("rejected")
                    self._log(f"votifier: connection limit reached, dropping {peer[0]}", "warn")
                    conn.close()
                    continue

                self._count("accepted")
                handler = threading.Thread(
                    target=self._handle_connection,
                    args=(conn, peer),
                    name=f"votifier-conn-{peer[0]}:{peer[1]}",
                    daemon=True,
                )
                try:
                    handler.start()
                except RuntimeError as exc:
                    self._slots.release()
                    self._count("failed")
                    self._log(f"votifier: unable to start handler: {exc}", "error")
                    conn.close()
        finally:
            self._close_server()
            self._log("votifier: receiver stopped")

    def _fail(self, peer: Any, reason: str) -> None:
        self._count("failed")
        self._log(f"votifier: dropped submission from {peer[0]}: {reason}", "warn")

    def _handle_connection(self, conn: socket.socket, peer: Any) -> None:
        deadline = time.monotonic() + self.read_timeout
        try:
            try:
                conn.settimeout(self.read_timeout)
                conn.sendall(self.greeting())
            except OSError as exc:
                self._fail(peer, f"greeting write failed: {exc}")
                return

            try:
                block = self._read_block(conn, deadline)
            except socket.timeout:
                self._fail(peer, f"no complete block within {self.read_timeout:g}s")
                return
            except OSError as exc:
                self._fail(peer, str(exc))
                return

            try:
                plaintext = self.key_store.decrypt(block)
                vote = self.codec.parse(plaintext)
            except (CryptoError, ProtocolError) as exc:
                self._fail(peer, str(exc))
                return

            if self.debug:
                self._log(f"votifier: received vote record -> {vote}", "debug")

            failures = self.registry.dispatch_all(vote)
            self._count("dispatched")
            if failures:
                self._count("listener_errors", len(failures))
        except Exception as exc:
            self._fail(peer, f"unexpected error: {exc}")
        finally:
            try:
                conn.close()
            except OSError:
                pass
            self._slots.release()

    def _read_block(self, conn: socket.socket, deadline: float) -> bytes:
        expected = self.max_payload_bytes
        buf = bytearray()
        while len(buf) < expected:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise socket.timeout("read deadline exceeded")
            conn.settimeout(remaining)
            chunk = conn.recv(expected - len(buf))
            if not chunk:
                raise ConnectionError(
                    f"connection closed after {len(buf)} of {expected} bytes"
                )
            buf.extend(chunk)
        return bytes(buf)
