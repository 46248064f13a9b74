"""RSA key handling for cl-votifier: key pairs, on-disk storage, block decryption."""

from __future__ import annotations

import base64
import binascii
import os
from typing import Callable, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from modules.errors import CryptoError

PUBLIC_KEY_FILE = "public.key"
PRIVATE_KEY_FILE = "private.key"

DEFAULT_KEY_BITS = 2048
MIN_KEY_BITS = 1024
PUBLIC_EXPONENT = 65537


class KeyPair:
    """An RSA private key together with its public half."""

    def __init__(self, private_key: rsa.RSAPrivateKey):
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise CryptoError("key pair requires an RSA private key")
        self._private_key = private_key
        self._public_key = private_key.public_key()

    @property
    def private_key(self) -> rsa.RSAPrivateKey:
        return self._private_key

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        return self._public_key

    @property
    def key_size(self) -> int:
        return self._private_key.key_size

    @property
    def block_size(self) -> int:
        return (self._private_key.key_size + 7) // 8

    def public_der(self) -> bytes:
        return self._public_key.public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    def private_der(self) -> bytes:
        return self._private_key.private_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )


class KeyStore:
    """Holds the receiver's key pair and decrypts submitted vote blocks.

    Read-only after construction, so a single instance is shared by every
    connection handler thread.
    """

    def __init__(self, key_pair: KeyPair):
        self.key_pair = key_pair

    @property
    def block_size(self) -> int:
        return self.key_pair.block_size

    @property
    def key_size(self) -> int:
        return self.key_pair.key_size

    def decrypt(self, ciphertext: bytes) -> bytes:
        """Decrypt exactly one PKCS#1 v1.5 block with the private key.

        Raises:
            CryptoError: the block has the wrong length or its padding is rejected.
        """
        if not isinstance(ciphertext, (bytes, bytearray)):
            raise CryptoError("ciphertext must be bytes")
        if len(ciphertext) != self.block_size:
            raise CryptoError(
                f"invalid block size: expected {self.block_size}, got {len(ciphertext)}"
            )
        try:
            return self.key_pair.private_key.decrypt(bytes(ciphertext), padding.PKCS1v15())
        except ValueError as exc:
            raise CryptoError(f"unable to decrypt block: {exc}") from exc

    def public_key_pem(self) -> str:
        return self.key_pair.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")

    def public_key_base64(self) -> str:
        return base64.b64encode(self.key_pair.public_der()).decode("ascii")


class KeyManager:
    """Generates key pairs and persists them in an ``rsa/`` style directory.

    ``public.key`` holds base64 X.509 SubjectPublicKeyInfo DER and
    ``private.key`` holds base64 PKCS#8 DER, which is the layout voting site
    operators expect to copy the public key from.
    """

    def __init__(self, logger: Optional[Callable[[str, str], None]] = None):
        self._logger = logger

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def generate(self, bits: int = DEFAULT_KEY_BITS) -> KeyPair:
        if not isinstance(bits, int) or bits < MIN_KEY_BITS:
            raise CryptoError(f"key size must be at least {MIN_KEY_BITS} bits")
        self._log(f"votifier: generating {bits}-bit RSA key pair")
        private_key = rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=bits)
        return KeyPair(private_key)

    def save(self, path: str, key_pair: KeyPair) -> None:
        key_dir = os.path.expanduser(path)
        public_path = os.path.join(key_dir, PUBLIC_KEY_FILE)
        private_path = os.path.join(key_dir, PRIVATE_KEY_FILE)
        try:
            os.makedirs(key_dir, exist_ok=True)
            with open(public_path, "wb") as fh:
                fh.write(base64.b64encode(key_pair.public_der()))
            fd = os.open(private_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as fh:
                fh.write(base64.b64encode(key_pair.private_der()))
        except OSError as exc:
            raise CryptoError(f"unable to save RSA key pair to {key_dir}: {exc}") from exc

        self._log(f"votifier: saved RSA key pair to {key_dir}")

    def load(self, path: str) -> KeyPair:
        key_dir = os.path.expanduser(path)
        private_der = self._read_base64(os.path.join(key_dir, PRIVATE_KEY_FILE))
        try:
            private_key = serialization.load_der_private_key(private_der, password=None)
        except (ValueError, TypeError) as exc:
            raise CryptoError(f"invalid private key in {key_dir}: {exc}") from exc
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise CryptoError(f"private key in {key_dir} is not an RSA key")
        key_pair = KeyPair(private_key)

        public_path = os.path.join(key_dir, PUBLIC_KEY_FILE)
        if os.path.exists(public_path):
            if self._read_base64(public_path) != key_pair.public_der():
                raise CryptoError(f"{PUBLIC_KEY_FILE} does not match {PRIVATE_KEY_FILE} in {key_dir}")

        self._log(f"votifier: loaded {key_pair.key_size}-bit RSA key pair from {key_dir}")
        return key_pair

    def load_or_generate(self, path: str, bits: int = DEFAULT_KEY_BITS) -> KeyPair:
        key_dir = os.path.expanduser(path)
        if os.path.exists(os.path.join(key_dir, PRIVATE_KEY_FILE)):
            return self.load(key_dir)
        key_pair = self.generate(bits)
        self.save(key_dir, key_pair)
        return key_pair

    def _read_base64(self, file_path: str) -> bytes:
        try:
            with open(file_path, "rb") as fh:
                encoded = fh.read()
        except OSError as exc:
            raise CryptoError(f"unable to read {file_path}: {exc}") from exc
        try:
            return base64.b64decode(encoded.strip(), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise CryptoError(f"{file_path} is not valid base64: {exc}") from exc
