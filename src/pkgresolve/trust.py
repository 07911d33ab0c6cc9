"""Keyring of accepted signers and detached signature verification.

Keys are PEM ``PUBLIC KEY`` blocks (Ed25519, RSA or ECDSA). A key file may hold
several blocks, e.g. a primary key and its subkeys; each one is added.

Detached signatures are base64 text, optionally wrapped as::

    -----BEGIN PKG SIGNATURE-----
    <base64>
    -----END PKG SIGNATURE-----

RSA signatures use PKCS#1 v1.5 and ECDSA signatures use SHA-256.
"""

import base64
import binascii
import hashlib
import logging
import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa

from pkgresolve.constants import KEYS_DIR, SIGNATURE_SUFFIX
from pkgresolve.errors import ErrorKind, TrustError

logger = logging.getLogger(__name__)

_PEM_BLOCK_RE = re.compile(rb"-----BEGIN PUBLIC KEY-----.+?-----END PUBLIC KEY-----", re.DOTALL)
_ARMOR_RE = re.compile(r"-----(?:BEGIN|END) PKG SIGNATURE-----")
_ARMOR_BEGIN = "-----BEGIN PKG SIGNATURE-----"
_ARMOR_END = "-----END PKG SIGNATURE-----"


class KeyImport(str, Enum):
    ADDED = "added"
    ALREADY_PRESENT = "already-present"


@dataclass(frozen=True)
class PublicKey:
    """A signer's identity. ``fingerprint`` is the SHA-256 of the DER public key."""

    key_id: str
    fingerprint: str
    algorithm: str
    raw: bytes = field(repr=False)
    _key: Any = field(repr=False, compare=False)

    def verify(self, payload: bytes, signature: bytes) -> bool:
        """Return True if ``signature`` over ``payload`` was made by this key."""
        try:
            match self._key:
                case ed25519.Ed25519PublicKey():
                    self._key.verify(signature, payload)
                case rsa.RSAPublicKey():
                    self._key.verify(signature, payload, padding.PKCS1v15(), hashes.SHA256())
                case ec.EllipticCurvePublicKey():
                    self._key.verify(signature, payload, ec.ECDSA(hashes.SHA256()))
                case _:
                    return False
        except (InvalidSignature, ValueError):
            return False
        return True


def _algorithm_name(key: Any) -> str | None:
    match key:
        case ed25519.Ed25519PublicKey():
            return "ed25519"
        case rsa.RSAPublicKey():
            return f"rsa{key.key_size}"
        case ec.EllipticCurvePublicKey():
            return f"ecdsa-{key.curve.name}"
    return None


def parse_public_keys(raw: bytes | str) -> list[PublicKey]:
    """Parse every PEM public key block in ``raw``.

    Raises:
        TrustError: MALFORMED_KEY if there is no block or any block is not a supported public key
    """
    data = raw.encode("ascii", errors="replace") if isinstance(raw, str) else raw
    blocks = _PEM_BLOCK_RE.findall(data)
    if not blocks:
        raise TrustError(ErrorKind.MALFORMED_KEY, "no PEM public key block found")

    keys = []
    for block in blocks:
        try:
            loaded = serialization.load_pem_public_key(block)
        except (ValueError, UnsupportedAlgorithm) as e:
            raise TrustError(ErrorKind.MALFORMED_KEY, f"failed to parse public key: {e}") from e
        algorithm = _algorithm_name(loaded)
        if algorithm is None:
            raise TrustError(ErrorKind.MALFORMED_KEY, f"unsupported key type {type(loaded).__name__}")
        der = loaded.public_bytes(serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)
        fingerprint = hashlib.sha256(der).hexdigest().upper()
        keys.append(
            PublicKey(key_id=fingerprint[-16:], fingerprint=fingerprint, algorithm=algorithm, raw=block, _key=loaded)
        )
    return keys


def decode_signature(signature: bytes | str) -> bytes:
    """Strip the optional armor and base64-decode a detached signature.

    Raises:
        TrustError: SIGNATURE_INVALID if the signature does not parse
    """
    try:
        text = signature.decode("ascii") if isinstance(signature, bytes) else signature
        text = "".join(_ARMOR_RE.sub("", text).split())
        decoded = base64.b64decode(text, validate=True)
    except (UnicodeDecodeError, binascii.Error) as e:
        raise TrustError(ErrorKind.SIGNATURE_INVALID, f"signature does not parse: {e}") from e
    if not decoded:
        raise TrustError(ErrorKind.SIGNATURE_INVALID, "signature is empty")
    return decoded


def armor_signature(signature: bytes) -> str:
    """Wrap a raw signature in the armor ``decode_signature`` accepts."""
    body = base64.b64encode(signature).decode("ascii")
    lines = [body[i : i + 64] for i in range(0, len(body), 64)]
    return "\n".join([_ARMOR_BEGIN, *lines, _ARMOR_END]) + "\n"


class TrustStore:
    """Append-only set of accepted signers.

    ``add_key`` publishes a new mapping under a lock; readers grab the current
    mapping once, so ``verify`` never observes a half-added key.
    """

    def __init__(self):
        self._keys: dict[str, PublicKey] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, fingerprint: str) -> bool:
        return self.has_signer(fingerprint)

    def keys(self) -> list[PublicKey]:
        return sorted(self._keys.values(), key=lambda key: key.fingerprint)

    def has_signer(self, fingerprint: str) -> bool:
        return fingerprint.upper() in self._keys

    def _add_keys(self, raw: bytes | str) -> int:
        parsed = parse_public_keys(raw)
        with self._lock:
            new_keys = {key.fingerprint: key for key in parsed if key.fingerprint not in self._keys}
            if new_keys:
                self._keys = {**self._keys, **new_keys}
        for key in new_keys.values():
            logger.debug(f"Added {key.algorithm} key {key.key_id}")
        return len(new_keys)

    def add_key(self, raw_key: bytes | str) -> KeyImport:
        """Add a public key; a key already present (by fingerprint) is not an error.

        Raises:
            TrustError: MALFORMED_KEY if the key does not parse
        """
        if self._add_keys(raw_key):
            return KeyImport.ADDED
        return KeyImport.ALREADY_PRESENT

    def import_directory(self, path: Path | str = KEYS_DIR) -> int:
        """Add every key file in a directory.

        Only regular files are read; symlinks and subdirectories are ignored.
        A bad file is logged and skipped, and a missing directory means no keys.

        Returns:
            The number of keys added
        """
        path = Path(path)
        if not path.is_dir():
            if path.exists():
                logger.warning(f"Key location {path} is not a directory, ignoring")
            else:
                logger.debug(f"Key directory {path} does not exist")
            return 0

        added = 0
        for entry in sorted(path.iterdir()):
            if entry.is_symlink() or not entry.is_file():
                continue
            try:
                added += self._add_keys(entry.read_bytes())
            except (TrustError, OSError) as e:
                logger.warning(f"Skipping key file {entry}: {e}")
                continue
        logger.info(f"Imported {added} keys from {path}")
        return added

    def verify(
        self,
        payload: bytes,
        signature: bytes | str | None,
        *,
        required: bool = True,
        diagnostics: list[str] | None = None,
    ) -> str | None:
        """Verify a detached signature against the held keys.

        Args:
            payload: The signed bytes
            signature: The detached signature, or None if the payload is unsigned
            required: Whether a missing signature is an error
            diagnostics: Optional list that receives per-key failure notes

        Returns:
            The signer's fingerprint, or None for an unsigned payload that was not required to be signed

        Raises:
            TrustError: UNSIGNED or SIGNATURE_INVALID
        """
        if not signature:
            if required:
                raise TrustError(ErrorKind.UNSIGNED, "payload is not signed")
            return None

        signature_raw = decode_signature(signature)
        keys = self._keys
        for fingerprint, key in keys.items():
            if key.verify(payload, signature_raw):
                return fingerprint
            if diagnostics is not None:
                diagnostics.append(f"key {key.key_id} ({key.algorithm}) does not match")

        if not keys and diagnostics is not None:
            diagnostics.append("keyring is empty")
        raise TrustError(ErrorKind.SIGNATURE_INVALID, f"signature matches none of {len(keys)} trusted keys")

    def verify_file(self, path: Path | str, signature_path: Path | str | None = None) -> str:
        """Check a package payload on disk against its detached signature.

        The signature defaults to ``<path>.asc``. Failure is always fatal.

        Raises:
            TrustError: FILE_INVALID, UNSIGNED or SIGNATURE_INVALID
        """
        path = Path(path)
        sig_path = Path(signature_path) if signature_path else path.with_name(path.name + SIGNATURE_SUFFIX)
        try:
            with path.open("rb") as handle:
                payload = handle.read()
        except OSError as e:
            raise TrustError(ErrorKind.FILE_INVALID, f"failed to open {path}: {e}", path=str(path)) from e

        try:
            with sig_path.open("rb") as handle:
                signature = handle.read()
        except FileNotFoundError:
            signature = None
        except OSError as e:
            raise TrustError(ErrorKind.FILE_INVALID, f"failed to open {sig_path}: {e}", path=str(sig_path)) from e

        diagnostics: list[str] = []
        try:
            signer = self.verify(payload, signature, diagnostics=diagnostics)
        except TrustError as e:
            raise TrustError(
                e.kind, f"{path.name} could not be verified: {e.message}", path=str(path), diagnostics=diagnostics
            ) from e
        logger.debug(f"{path} has been verified as trusted")
        return signer
