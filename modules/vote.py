"""Vote record and the plaintext wire format carried inside an RSA block."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List

from modules.errors import ProtocolError

VOTE_HEADER = "VOTE"
VOTE_FIELDS = ("service_name", "username", "address", "timestamp")


@dataclass(frozen=True)
class Vote:
    service_name: str
    username: str
    address: str
    timestamp: str

    def __post_init__(self) -> None:
        for field_name in VOTE_FIELDS:
            value = getattr(self, field_name)
            if not isinstance(value, str) or not value:
                raise ProtocolError(f"vote field {field_name} must be a non-empty string")

    def to_dict(self) -> Dict[str, Any]:
        return {field_name: getattr(self, field_name) for field_name in VOTE_FIELDS}

    def __str__(self) -> str:
        return (
            f"Vote (from:{self.service_name} username:{self.username} "
            f"address:{self.address} timeStamp:{self.timestamp})"
        )


class VoteCodec:
    """Parses and builds the ``VOTE`` record.

    Layout: the header token and four fields, each terminated by ``\\n``::

        VOTE\\n<service>\\n<username>\\n<address>\\n<timestamp>\\n

    Anything after the fifth newline is padding and is never decoded.
    """

    def parse(self, plaintext: bytes) -> Vote:
        if not isinstance(plaintext, (bytes, bytearray)):
            raise ProtocolError("vote payload must be bytes")
        data = bytes(plaintext)

        tokens: List[str] = []
        position = 0
        for index in range(1 + len(VOTE_FIELDS)):
            end = data.find(b"\n", position)
            if end < 0:
                if index == 0:
                    raise ProtocolError("missing vote header terminator")
                raise ProtocolError(
                    f"expected {len(VOTE_FIELDS)} fields, found {index - 1}"
                )
            raw = data[position:end]
            try:
                tokens.append(raw.decode("utf-8"))
            except UnicodeDecodeError as exc:
                raise ProtocolError(f"vote token {index} is not valid UTF-8") from exc
            position = end + 1

        header, fields = tokens[0], tokens[1:]
        if header != VOTE_HEADER:
            raise ProtocolError(f"invalid header: expected {VOTE_HEADER!r}, got {header[:16]!r}")
        for field_name, value in zip(VOTE_FIELDS, fields):
            if not value:
                raise ProtocolError(f"vote field {field_name} is empty")

        return Vote(*fields)

    def encode(self, vote: Vote) -> bytes:
        fields = [VOTE_HEADER] + [getattr(vote, name) for name in VOTE_FIELDS]
        for value in fields:
            if "\n" in value:
                raise ProtocolError("vote fields must not contain newlines")
        return ("\n".join(fields) + "\n").encode("utf-8")
