#!/usr/bin/env python3
"""cl-votifier: Votifier vote receiver plugin."""

from __future__ import annotations

import os
import sys
from typing import Any, Dict

# Ensure this script's real directory is on sys.path so that `from modules.X`
# works even when CLN loads the plugin via a symlink in the plugins directory.
sys.path.insert(0, os.path.dirname(os.path.realpath(__file__)))

from pyln.client import Plugin

from modules.crypto import DEFAULT_KEY_BITS, KeyManager
from modules.errors import VotifierError
from modules.listeners import load_listeners
from modules.votifier_service import DEFAULT_HOST, DEFAULT_PORT, Votifier, VotifierConfig

plugin = Plugin()
votifier: Votifier | None = None


plugin.add_option(
    name="votifier-host",
    default=DEFAULT_HOST,
    description="Address the vote receiver binds to",
)

plugin.add_option(
    name="votifier-port",
    default=str(DEFAULT_PORT),
    description="TCP port voting sites connect to",
)

plugin.add_option(
    name="votifier-debug",
    default="false",
    description="Log every received vote record",
)

plugin.add_option(
    name="votifier-rsa-dir",
    default="votifier/rsa",
    description="Directory holding public.key/private.key (relative to lightning-dir)",
)

plugin.add_option(
    name="votifier-key-bits",
    default=str(DEFAULT_KEY_BITS),
    description="RSA key size used when a new key pair is generated",
)

plugin.add_option(
    name="votifier-listeners",
    default="modules.listeners:LoggingListener",
    description="Comma separated module:ClassName vote listeners, in dispatch order",
)

plugin.add_option(
    name="votifier-read-timeout",
    default="5",
    description="Seconds a voting site has to deliver its encrypted block",
)

plugin.add_option(
    name="votifier-max-payload",
    default="0",
    description="Encrypted block size in bytes (0 = derive from the key size)",
)

plugin.add_option(
    name="votifier-max-connections",
    default="64",
    description="Maximum concurrent vote connections",
)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return False


def _parse_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _logger(message: str, level: str = "info") -> None:
    plugin.log(message, level=level)


def _resolve_path(path_opt: str, configuration: Dict[str, Any]) -> str:
    path = os.path.expanduser(path_opt)
    if not os.path.isabs(path):
        lightning_dir = str(configuration.get("lightning-dir") or os.path.expanduser("~/.lightning"))
        path = os.path.join(lightning_dir, path)
    return path


@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs: Any) -> None:
    del kwargs

    rsa_dir = _resolve_path(str(options.get("votifier-rsa-dir") or "votifier/rsa"), configuration)
    key_bits = _parse_int(options.get("votifier-key-bits"), DEFAULT_KEY_BITS)
    listener_specs = str(options.get("votifier-listeners") or "").split(",")
    max_payload = _parse_int(options.get("votifier-max-payload"), 0)

    global votifier
    try:
        key_pair = KeyManager(logger=_logger).load_or_generate(rsa_dir, bits=key_bits)
        listeners = load_listeners(listener_specs, logger=_logger)
        config = VotifierConfig(
            key_pair=key_pair,
            host=str(options.get("votifier-host") or DEFAULT_HOST).strip(),
            port=_parse_int(options.get("votifier-port"), DEFAULT_PORT),
            debug=_parse_bool(options.get("votifier-debug")),
            read_timeout=_parse_float(options.get("votifier-read-timeout"), 5.0),
            max_payload_bytes=max_payload if max_payload > 0 else None,
            max_connections=_parse_int(options.get("votifier-max-connections"), 64),
        )
        service = Votifier(listeners=listeners, logger=_logger)
        service.start(config)
    except (VotifierError, TypeError) as exc:
        plugin.log(f"votifier: did not initialize properly: {exc}", level="error")
        return

    votifier = service
    plugin.log(f"cl-votifier initialized (rsa_dir={rsa_dir}, listeners={service.registry.names()})")


@plugin.method("votifier-status")
def votifier_status(plugin: Plugin) -> Dict[str, Any]:
    del plugin
    if votifier is None:
        return {"ok": True, "running": False}
    return votifier.status()


@plugin.method("votifier-public-key")
def votifier_public_key(plugin: Plugin) -> Dict[str, Any]:
    del plugin
    if votifier is None:
        return {"error": "votifier not initialized"}
    return votifier.public_key()


@plugin.subscribe("shutdown")
def on_shutdown(plugin: Plugin, **kwargs: Any) -> None:
    del kwargs
    if votifier is not None:
        votifier.stop()
    plugin.log("cl-votifier stopped")
    sys.exit(0)


if __name__ == "__main__":
    plugin.run()
