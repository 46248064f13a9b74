"""Vote listener registration and isolated dispatch."""

from __future__ import annotations

import importlib
from typing import Any, Callable, Iterator, List, Optional

from modules.errors import ListenerError, StartupError
from modules.vote import Vote


def listener_name(listener: Any) -> str:
    name = getattr(listener, "name", None)
    if isinstance(name, str) and name:
        return name
    return type(listener).__name__


class LoggingListener:
    """Logs every vote it receives."""

    name = "LoggingListener"

    def __init__(self, logger: Optional[Callable[[str, str], None]] = None):
        self._logger = logger

    def process(self, vote: Vote) -> None:
        if self._logger:
            self._logger(f"votifier: received {vote}", "info")


class ListenerRegistry:
    """Ordered listeners; every vote goes to each of them exactly once.

    Registration happens during startup only. Afterwards the list is read
    concurrently by connection threads and never mutated.
    """

    def __init__(self, logger: Optional[Callable[[str, str], None]] = None):
        self._logger = logger
        self._listeners: List[Any] = []

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def register(self, listener: Any) -> None:
        if not callable(getattr(listener, "process", None)):
            raise TypeError(f"{listener_name(listener)} has no process(vote) method")
        self._listeners.append(listener)

    def names(self) -> List[str]:
        return [listener_name(listener) for listener in self._listeners]

    def __len__(self) -> int:
        return len(self._listeners)

    def __iter__(self) -> Iterator[Any]:
        return iter(list(self._listeners))

    def dispatch_all(self, vote: Vote) -> List[ListenerError]:
        """Deliver ``vote`` to every listener in registration order.

        A listener that raises does not stop delivery to the rest; its
        failure is logged and returned instead of propagated.
        """
        failures: List[ListenerError] = []
        for listener in list(self._listeners):
            try:
                listener.process(vote)
            except Exception as exc:
                failure = ListenerError(listener_name(listener), exc)
                self._log(f"votifier: {failure} (vote from {vote.service_name})", "error")
                failures.append(failure)
        return failures


def load_listeners(
    specs: List[str],
    logger: Optional[Callable[[str, str], None]] = None,
) -> List[Any]:
    """Instantiate listeners from ``package.module:ClassName`` import paths.

    The built-in ``LoggingListener`` receives the logger; other classes are
    constructed with no arguments.
    """
    listeners: List[Any] = []
    for raw in specs:
        spec = raw.strip()
        if not spec:
            continue
        module_name, sep, attr = spec.partition(":")
        if not sep or not module_name or not attr:
            raise StartupError(f"invalid listener spec {spec!r} (expected module:ClassName)")
        try:
            module = importlib.import_module(module_name)
            cls = getattr(module, attr)
        except Exception as exc:
            raise StartupError(f"unable to load listener {spec}: {exc}") from exc
        try:
            listener = cls(logger=logger) if cls is LoggingListener else cls()
        except Exception as exc:
            raise StartupError(f"unable to instantiate listener {spec}: {exc}") from exc
        if logger:
            logger(f"votifier: loaded listener {listener_name(listener)}", "info")
        listeners.append(listener)
    return listeners
