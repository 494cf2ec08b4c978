"""SSH public key parsing, fingerprints, and signature format helpers."""

from __future__ import annotations

import base64
import binascii
import hashlib
import re
from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from cryptography.hazmat.primitives.asymmetric.types import PublicKeyTypes
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature
from paramiko.message import Message

_MD5_HEX_RE = re.compile(r"^([0-9a-f]{2}:){15}[0-9a-f]{2}$")

HASHES: dict[str, type[hashes.HashAlgorithm]] = {
    "sha1": hashes.SHA1,
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}

# SSH signature algorithm -> (key kind, hash name)
SSH_SIGNATURE_ALGORITHMS: dict[str, tuple[str, str]] = {
    "ssh-rsa": ("rsa", "sha1"),
    "rsa-sha2-256": ("rsa", "sha256"),
    "rsa-sha2-512": ("rsa", "sha512"),
    "ecdsa-sha2-nistp256": ("ecdsa", "sha256"),
    "ecdsa-sha2-nistp384": ("ecdsa", "sha384"),
    "ecdsa-sha2-nistp521": ("ecdsa", "sha512"),
    "ssh-ed25519": ("ed25519", "sha512"),
}

_EC_CURVE_HASH = {256: "sha256", 384: "sha384", 521: "sha512"}


# ---------------------------------------------------------------------------
# Fingerprints
# ---------------------------------------------------------------------------


def md5_digest(blob: bytes) -> bytes:
    return hashlib.md5(blob, usedforsecurity=False).digest()


def md5_fingerprint(blob: bytes) -> str:
    """Colon-separated MD5 hex of the key blob, as CloudAPI reports it."""
    return ":".join(f"{b:02x}" for b in md5_digest(blob))


def sha256_fingerprint(blob: bytes) -> str:
    digest = hashlib.sha256(blob).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def normalize_fingerprint(fp: str) -> str:
    """
    Canonicalize a fingerprint for comparison.

    ``md5:aa:bb:..``, ``MD5:AA:BB:..`` and ``aa:bb:..`` all become
    ``aa:bb:..``; SHA-256 fingerprints become ``SHA256:<base64, unpadded>``.

    Raises:
        ValueError: if *fp* is not a recognizable fingerprint.
    """
    value = fp.strip()
    lower = value.lower()
    if lower.startswith("sha256:"):
        return "SHA256:" + value[len("sha256:"):].rstrip("=")
    if lower.startswith("md5:"):
        lower = lower[len("md5:"):]
    if not _MD5_HEX_RE.match(lower):
        raise ValueError(f"invalid SSH key fingerprint: {fp!r}")
    return lower


def fingerprint_matches(fp: str, blob: bytes) -> bool:
    try:
        wanted = normalize_fingerprint(fp)
    except ValueError:
        return False
    if wanted.startswith("SHA256:"):
        return wanted == sha256_fingerprint(blob)
    return wanted == md5_fingerprint(blob)


# ---------------------------------------------------------------------------
# Public keys
# ---------------------------------------------------------------------------


def public_key_blob(public_key: PublicKeyTypes) -> bytes:
    """Return the SSH wire-format blob of *public_key*."""
    line = public_key.public_bytes(serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH)
    return base64.b64decode(line.split()[1])


def key_kind(public_key: PublicKeyTypes) -> str:
    if isinstance(public_key, rsa.RSAPublicKey):
        return "rsa"
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        return "ecdsa"
    if isinstance(public_key, ed25519.Ed25519PublicKey):
        return "ed25519"
    raise ValueError(f"unsupported key type: {type(public_key).__name__}")


def default_hash_name(public_key: PublicKeyTypes) -> str:
    """Hash used when signing with local key material."""
    kind = key_kind(public_key)
    if kind == "ecdsa":
        return _EC_CURVE_HASH[public_key.curve.key_size]
    if kind == "ed25519":
        return "sha512"
    return "sha256"


def key_size(public_key: PublicKeyTypes) -> int:
    if isinstance(public_key, (rsa.RSAPublicKey, ec.EllipticCurvePublicKey)):
        return public_key.key_size
    return 256


@dataclass(frozen=True)
class PublicKeyInfo:
    """A parsed OpenSSH public key."""

    key_type: str  # e.g. "ssh-rsa"
    blob: bytes
    public_key: PublicKeyTypes
    comment: str = ""

    @classmethod
    def from_blob(cls, blob: bytes, comment: str = "") -> PublicKeyInfo:
        key_type = Message(blob).get_text()
        b64 = base64.b64encode(blob).decode("ascii")
        try:
            public_key = serialization.load_ssh_public_key(f"{key_type} {b64}".encode())
        except (ValueError, UnsupportedAlgorithm) as exc:
            raise ValueError(f"unsupported SSH public key type {key_type!r}: {exc}") from exc
        return cls(key_type=key_type, blob=blob, public_key=public_key, comment=comment)

    @classmethod
    def from_public_key(cls, public_key: PublicKeyTypes, comment: str = "") -> PublicKeyInfo:
        return cls.from_blob(public_key_blob(public_key), comment=comment)

    @property
    def fingerprint(self) -> str:
        return md5_fingerprint(self.blob)

    @property
    def sha256_fingerprint(self) -> str:
        return sha256_fingerprint(self.blob)

    @property
    def kind(self) -> str:
        return key_kind(self.public_key)

    def openssh(self, with_comment: bool = True) -> str:
        line = f"{self.key_type} {base64.b64encode(self.blob).decode('ascii')}"
        if with_comment and self.comment:
            line += f" {self.comment}"
        return line


def parse_public_key_line(line: str) -> PublicKeyInfo:
    """
    Parse one OpenSSH public key line (``<type> <base64> [comment]``).

    Raises:
        ValueError: on malformed or unsupported keys.
    """
    parts = line.strip().split(None, 2)
    if len(parts) < 2:
        raise ValueError(f"not an OpenSSH public key: {line.strip()[:40]!r}")
    try:
        blob = base64.b64decode(parts[1], validate=True)
    except binascii.Error as exc:
        raise ValueError(f"invalid base64 in public key: {exc}") from exc
    info = PublicKeyInfo.from_blob(blob, comment=parts[2].strip() if len(parts) > 2 else "")
    if info.key_type != parts[0]:
        raise ValueError(f"key type mismatch: line says {parts[0]!r}, key is {info.key_type!r}")
    return info


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------


def http_signature_algorithm(kind: str, hash_name: str) -> str:
    """HTTP-Signature algorithm string, e.g. ``rsa-sha256`` or ``ed25519-sha512``."""
    return f"{kind}-{hash_name}"


def parse_ssh_signature(sig_blob: bytes) -> tuple[str, str, bytes]:
    """
    Convert an SSH signature blob (as returned by an agent) to
    ``(kind, hash_name, signature)`` where *signature* is in X.509 /
    HTTP-Signature form: raw PKCS#1 for RSA, DER for ECDSA, raw for Ed25519.
    """
    msg = Message(sig_blob)
    ssh_alg = msg.get_text()
    if ssh_alg not in SSH_SIGNATURE_ALGORITHMS:
        raise ValueError(f"unsupported agent signature algorithm {ssh_alg!r}")
    kind, hash_name = SSH_SIGNATURE_ALGORITHMS[ssh_alg]
    raw = msg.get_binary()
    if kind == "ecdsa":
        inner = Message(raw)
        r = inner.get_mpint()
        s = inner.get_mpint()
        raw = encode_dss_signature(r, s)
    return kind, hash_name, raw


def verify_signature(public_key: PublicKeyTypes, data: bytes, signature: bytes, hash_name: str) -> bool:
    """Return True if *signature* over *data* verifies against *public_key*."""
    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, data, padding.PKCS1v15(), HASHES[hash_name]())
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, data, ec.ECDSA(HASHES[hash_name]()))
        elif isinstance(public_key, ed25519.Ed25519PublicKey):
            public_key.verify(signature, data)
        else:
            return False
    except InvalidSignature:
        return False
    return True
