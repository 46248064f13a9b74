"""Exception types raised by the cl-votifier core."""

from __future__ import annotations


class VotifierError(Exception):
    """Base class for every error raised by cl-votifier."""


class CryptoError(VotifierError):
    """A ciphertext block could not be decrypted, or key material is unusable."""


class ProtocolError(VotifierError):
    """A decrypted block does not follow the vote wire format."""


class StartupError(VotifierError):
    """The receiver could not be started; nothing is left listening."""


class ListenerError(VotifierError):
    """A registered listener raised while processing a vote."""

    def __init__(self, listener_name: str, cause: BaseException):
        super().__init__(f"listener {listener_name} failed: {cause}")
        self.listener_name = listener_name
        self.cause = cause
