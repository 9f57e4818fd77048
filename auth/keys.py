"""
auth/keys.py -- Key material for the three supported signing algorithms.

Variants:
  HS256Key / HS512Key -- a shared secret used for both signing and verifying.
  RS256Key            -- an RSA keypair in PEM form. Signs with the private
                         half, verifies with the public half.

Each variant carries only the material it needs. The algorithm is fixed by
the variant, so nothing downstream switches on a mutable algorithm field.

RSA bootstrap:
  load_or_generate_rsa_keys() looks for <name>.rsa and <name>.rsa.pub under
  key_dir. When the private key is missing it generates a 2048-bit keypair
  with `cryptography` and persists both halves before loading them back.
  Each file is written to a temp file in the same directory and moved into
  place with os.replace(), so a concurrent reader sees either no file or a
  complete one. Two processes racing the first bootstrap can still each
  generate a different keypair; provision keys out-of-band for multi-instance
  deployments (`python main.py keys`).

Layer rule: may import from auth.errors only. Settings are passed in, not imported.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from auth.errors import KeyInitializationError

logger = logging.getLogger("sessionguard.keys")

HMAC_FAMILY = "HMAC"
RSA_FAMILY = "RSA"

_RSA_KEY_SIZE = 2048
_RSA_PUBLIC_EXPONENT = 65537

# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _SymmetricKey:
    algorithm: ClassVar[str]
    family: ClassVar[str] = HMAC_FAMILY

    secret: str = field(repr=False)

    def __post_init__(self) -> None:
        if not self.secret:
            raise KeyInitializationError(f"{self.algorithm} requires a non-empty secret.")

    @property
    def signing_key(self) -> str:
        return self.secret

    @property
    def verification_key(self) -> str:
        return self.secret


@dataclass(frozen=True)
class HS256Key(_SymmetricKey):
    algorithm: ClassVar[str] = "HS256"


@dataclass(frozen=True)
class HS512Key(_SymmetricKey):
    algorithm: ClassVar[str] = "HS512"


@dataclass(frozen=True)
class RS256Key:
    algorithm: ClassVar[str] = "RS256"
    family: ClassVar[str] = RSA_FAMILY

    private_pem: str = field(repr=False)
    public_pem: str

    @property
    def signing_key(self) -> str:
        return self.private_pem

    @property
    def verification_key(self) -> str:
        return self.public_pem


KeyMaterial = Union[HS256Key, HS512Key, RS256Key]


# ---------------------------------------------------------------------------
# RSA bootstrap
# ---------------------------------------------------------------------------


def rsa_key_paths(key_dir: str | Path, name: str) -> tuple[Path, Path]:
    """Return (private_path, public_path) for a keypair name."""
    base = Path(key_dir)
    return base / f"{name}.rsa", base / f"{name}.rsa.pub"


def _atomic_write(path: Path, data: bytes, mode: int) -> None:
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def _public_pem_of(private_key: rsa.RSAPrivateKey) -> bytes:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def generate_rsa_keys(key_dir: str | Path, name: str) -> None:
    """Generate a fresh keypair and persist both halves as PEM.

    Private key: PKCS#1 ("RSA PRIVATE KEY"), mode 0600.
    Public key:  SubjectPublicKeyInfo ("PUBLIC KEY"), mode 0644.
    """
    private_path, public_path = rsa_key_paths(key_dir, name)
    try:
        private_path.parent.mkdir(parents=True, exist_ok=True)
        private_key = rsa.generate_private_key(public_exponent=_RSA_PUBLIC_EXPONENT, key_size=_RSA_KEY_SIZE)
        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
        # Public half first: a reader that finds the private file always finds its pair.
        _atomic_write(public_path, _public_pem_of(private_key), 0o644)
        _atomic_write(private_path, private_pem, 0o600)
    except (OSError, ValueError, UnsupportedAlgorithm) as e:
        raise KeyInitializationError(f"Could not generate RSA keypair in {private_path.parent}: {e}") from e
    logger.info("Generated new RSA keypair '%s' in %s", name, private_path.parent)


def load_or_generate_rsa_keys(key_dir: str | Path = "assets/keys", name: str = "jwt") -> RS256Key:
    """Load the named keypair, bootstrapping it on first use.

    Idempotent: once the files exist, later calls only read them. A missing
    public half is re-derived from the private half and written back.
    """
    private_path, public_path = rsa_key_paths(key_dir, name)
    if not private_path.exists():
        generate_rsa_keys(key_dir, name)

    try:
        private_bytes = private_path.read_bytes()
        private_key = serialization.load_pem_private_key(private_bytes, password=None)
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise KeyInitializationError(f"{private_path} does not hold an RSA private key.")

        if public_path.exists():
            public_bytes = public_path.read_bytes()
            public_key = serialization.load_pem_public_key(public_bytes)
            if not isinstance(public_key, rsa.RSAPublicKey):
                raise KeyInitializationError(f"{public_path} does not hold an RSA public key.")
            if public_key.public_numbers() != private_key.public_key().public_numbers():
                raise KeyInitializationError(f"{public_path} does not match {private_path}.")
        else:
            logger.warning("Public key %s missing; deriving it from the private key", public_path)
            public_bytes = _public_pem_of(private_key)
            _atomic_write(public_path, public_bytes, 0o644)
    except (OSError, ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise KeyInitializationError(f"Could not load RSA keypair '{name}' from {private_path.parent}: {e}") from e

    return RS256Key(private_pem=private_bytes.decode("ascii"), public_pem=public_bytes.decode("ascii"))


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


def key_material_from_settings(settings) -> KeyMaterial:
    """Build the key variant named by settings.signing_algorithm."""
    algorithm = settings.signing_algorithm
    if algorithm == "HS256":
        return HS256Key(secret=settings.secret_key)
    if algorithm == "HS512":
        return HS512Key(secret=settings.secret_key)
    if algorithm == "RS256":
        return load_or_generate_rsa_keys(settings.key_dir, settings.key_name)
    raise KeyInitializationError(f"Unsupported signing algorithm: {algorithm!r}")
