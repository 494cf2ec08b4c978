"""
Key ring — find the SSH key pair a profile's ``keyId`` refers to.

Sources, in preference order:
  agent     keys held by ssh-agent ($SSH_AUTH_SOCK), via paramiko
  homedir   ``~/.ssh/<name>.pub`` with the matching private key ``~/.ssh/<name>``
  other     private key paths given explicitly by the caller

Agent keys never expose private material and never need unlocking.  Local
keys may be passphrase-protected ("locked") and must be unlocked before they
can sign.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any

import paramiko
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes

from tritoncli.auth.sshkey import (
    HASHES,
    PublicKeyInfo,
    default_hash_name,
    fingerprint_matches,
    http_signature_algorithm,
    normalize_fingerprint,
    parse_public_key_line,
    parse_ssh_signature,
)
from tritoncli.core.exceptions import ResourceNotFoundError, SigningError

logger = logging.getLogger(__name__)

# Signed once per agent key to learn which algorithm the agent actually uses.
PROBE_DATA = b"tritoncli signature algorithm probe"

_AGENT_RSA_ALGORITHMS = {"sha256": "rsa-sha2-256", "sha512": "rsa-sha2-512"}


class KeySource(StrEnum):
    AGENT = "agent"
    HOMEDIR = "homedir"
    OTHER = "other"


@dataclass(frozen=True)
class KeySignature:
    """A signature plus the algorithm that produced it."""

    kind: str  # rsa | ecdsa | ed25519
    hash_name: str  # sha1 | sha256 | sha384 | sha512
    signature: bytes

    @property
    def algorithm(self) -> str:
        return http_signature_algorithm(self.kind, self.hash_name)


# ---------------------------------------------------------------------------
# Key pairs
# ---------------------------------------------------------------------------


class KeyPair(ABC):
    """Uniform handle over an SSH key, whatever its source."""

    source: KeySource
    plugin: str

    def __init__(self, info: PublicKeyInfo) -> None:
        self.info = info
        self._lock = threading.RLock()

    @property
    def fingerprint(self) -> str:
        return self.info.fingerprint

    @property
    def sha256_fingerprint(self) -> str:
        return self.info.sha256_fingerprint

    @property
    def public_key(self):
        return self.info.public_key

    @property
    def comment(self) -> str:
        return self.info.comment

    @property
    @abstractmethod
    def locked(self) -> bool: ...

    def matches(self, fingerprint: str) -> bool:
        return fingerprint_matches(fingerprint, self.info.blob)

    @abstractmethod
    def signing_hash(self) -> str:
        """Hash this pair will sign with (negotiated for agent keys)."""

    def sign(self, data: bytes) -> KeySignature:
        """Sign *data*; calls on one pair are serialized."""
        with self._lock:
            return self._sign(data)

    @abstractmethod
    def _sign(self, data: bytes) -> KeySignature: ...

    def unlock(self, passphrase: str) -> None:
        """Unlock passphrase-protected key material (no-op when already unlocked)."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "plugin": self.plugin,
            "source": str(self.source),
            "fingerprint": self.fingerprint,
            "sha256": self.sha256_fingerprint,
            "type": self.info.key_type,
            "comment": self.comment,
            "locked": self.locked,
            "publicKey": self.info.openssh(with_comment=False),
        }

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.source} {self.fingerprint} {self.comment!r}>"


class AgentKeyPair(KeyPair):
    """A key held by ssh-agent; signs through the agent protocol."""

    source = KeySource.AGENT
    plugin = "agent"

    def __init__(self, info: PublicKeyInfo, agent_key: Any) -> None:
        super().__init__(info)
        self._agent_key = agent_key
        self._negotiated: str | None = None

    @property
    def locked(self) -> bool:
        return False

    def negotiate(self) -> str:
        """
        Probe the agent once and return the hash it signs with.

        Old agents answer an RSA SHA-2 request with an ``ssh-rsa`` (SHA-1)
        signature; the only way to know is to ask.
        """
        with self._lock:
            if self._negotiated is None:
                sig = self._agent_sign(PROBE_DATA, default_hash_name(self.public_key))
                self._negotiated = sig.hash_name
                logger.debug("agent key %s negotiated %s", self.fingerprint, sig.algorithm)
            return self._negotiated

    def signing_hash(self) -> str:
        return self.negotiate()

    def _sign(self, data: bytes) -> KeySignature:
        wanted = self.negotiate()
        sig = self._agent_sign(data, wanted)
        if sig.hash_name != wanted:
            raise SigningError(
                f"ssh-agent signed with {sig.algorithm} after negotiating "
                f"{http_signature_algorithm(sig.kind, wanted)}"
            )
        return sig

    def _agent_sign(self, data: bytes, hash_name: str) -> KeySignature:
        algorithm = None
        if self.info.kind == "rsa":
            algorithm = _AGENT_RSA_ALGORITHMS.get(hash_name)
        try:
            blob = self._agent_key.sign_ssh_data(data, algorithm)
            kind, got_hash, raw = parse_ssh_signature(bytes(blob))
        except (paramiko.SSHException, OSError, ValueError) as exc:
            raise SigningError(f"ssh-agent failed to sign with key {self.fingerprint}: {exc}", cause=exc) from exc
        return KeySignature(kind=kind, hash_name=got_hash, signature=raw)


class LocalKeyPair(KeyPair):
    """A key whose private material is in a file."""

    plugin = "file"

    def __init__(
        self,
        info: PublicKeyInfo,
        private_path: Path,
        source: KeySource = KeySource.OTHER,
        private_key: PrivateKeyTypes | None = None,
    ) -> None:
        super().__init__(info)
        self.private_path = private_path
        self.source = source
        self._private_key = private_key

    @classmethod
    def from_files(
        cls,
        private_path: Path,
        public_path: Path | None = None,
        source: KeySource = KeySource.OTHER,
    ) -> LocalKeyPair:
        """
        Build a pair from a private key file and (optionally) its ``.pub``.

        Encrypted keys without a ``.pub`` cannot be fingerprinted and are
        rejected with ValueError.
        """
        info = None
        if public_path is not None and public_path.exists():
            info = parse_public_key_line(public_path.read_text(encoding="utf-8").strip())

        try:
            private_key = _load_private_key(private_path.read_bytes(), None)
        except TypeError:
            private_key = None  # encrypted
            if info is None:
                raise ValueError(f"{private_path} is encrypted and has no .pub file") from None

        if info is None:
            info = PublicKeyInfo.from_public_key(private_key.public_key())
        elif private_key is not None and not _same_public_key(info, private_key):
            raise ValueError(f"{public_path} does not match private key {private_path}")
        return cls(info, private_path, source=source, private_key=private_key)

    @property
    def locked(self) -> bool:
        return self._private_key is None

    def unlock(self, passphrase: str) -> None:
        with self._lock:
            if self._private_key is not None:
                return
            try:
                key = _load_private_key(self.private_path.read_bytes(), passphrase.encode())
            except (TypeError, ValueError) as exc:
                raise SigningError(
                    f"could not unlock key {self.fingerprint} ({self.private_path}): bad passphrase",
                    cause=exc,
                ) from exc
            if not _same_public_key(self.info, key):
                raise SigningError(f"{self.private_path} does not match key {self.fingerprint}")
            self._private_key = key
            logger.debug("unlocked key %s", self.fingerprint)

    def signing_hash(self) -> str:
        return default_hash_name(self.public_key)

    def _sign(self, data: bytes) -> KeySignature:
        key = self._private_key
        if key is None:
            raise SigningError(f"key {self.fingerprint} ({self.private_path}) is locked")
        hash_name = self.signing_hash()
        try:
            if isinstance(key, rsa.RSAPrivateKey):
                raw = key.sign(data, padding.PKCS1v15(), HASHES[hash_name]())
            elif isinstance(key, ec.EllipticCurvePrivateKey):
                raw = key.sign(data, ec.ECDSA(HASHES[hash_name]()))
            elif isinstance(key, ed25519.Ed25519PrivateKey):
                raw = key.sign(data)
            else:
                raise SigningError(f"unsupported private key type {type(key).__name__}")
        except (ValueError, UnsupportedAlgorithm) as exc:
            raise SigningError(cause=exc) from exc
        return KeySignature(kind=self.info.kind, hash_name=hash_name, signature=raw)


def _load_private_key(data: bytes, password: bytes | None) -> PrivateKeyTypes:
    """Load PEM or OpenSSH private key bytes; TypeError means a passphrase is needed."""
    if b"BEGIN OPENSSH PRIVATE KEY" in data:
        return serialization.load_ssh_private_key(data, password=password)
    return serialization.load_pem_private_key(data, password=password)


def _same_public_key(info: PublicKeyInfo, private_key: PrivateKeyTypes) -> bool:
    return PublicKeyInfo.from_public_key(private_key.public_key()).blob == info.blob


# ---------------------------------------------------------------------------
# Key ring
# ---------------------------------------------------------------------------


class KeyRing:
    """Enumerates candidate key pairs across the agent, ~/.ssh, and explicit paths."""

    def __init__(
        self,
        use_agent: bool = True,
        ssh_dir: Path | None = None,
        key_paths: Sequence[Path] = (),
        agent: Any = None,
    ) -> None:
        self.use_agent = use_agent
        self.ssh_dir = ssh_dir if ssh_dir is not None else Path.home() / ".ssh"
        self.key_paths = list(key_paths)
        self._agent = agent
        self._pairs: list[KeyPair] | None = None

    def _connect_agent(self) -> Any:
        if self._agent is None:
            try:
                self._agent = paramiko.Agent()
            except paramiko.SSHException as exc:
                logger.debug("ssh-agent unavailable: %s", exc)
                return None
        return self._agent

    def _agent_pairs(self) -> list[KeyPair]:
        agent = self._connect_agent()
        if agent is None:
            return []
        pairs: list[KeyPair] = []
        for agent_key in agent.get_keys():
            try:
                info = PublicKeyInfo.from_blob(agent_key.asbytes(), comment=getattr(agent_key, "comment", "") or "")
            except ValueError as exc:
                logger.debug("skipping agent key: %s", exc)
                continue
            pairs.append(AgentKeyPair(info, agent_key))
        return pairs

    def _homedir_pairs(self) -> list[KeyPair]:
        if not self.ssh_dir.is_dir():
            return []
        pairs: list[KeyPair] = []
        for pub_path in sorted(self.ssh_dir.glob("*.pub")):
            private_path = pub_path.with_suffix("")
            if not private_path.is_file():
                continue
            pairs.extend(_try_local(private_path, pub_path, KeySource.HOMEDIR))
        return pairs

    def _explicit_pairs(self) -> list[KeyPair]:
        pairs: list[KeyPair] = []
        for path in self.key_paths:
            path = Path(path).expanduser()
            pub_path = path.with_name(path.name + ".pub")
            pairs.extend(_try_local(path, pub_path, KeySource.OTHER))
        return pairs

    def list(self) -> list[KeyPair]:
        """All key pairs, agent first (cached for the life of the ring)."""
        if self._pairs is None:
            pairs: list[KeyPair] = []
            if self.use_agent:
                pairs.extend(self._agent_pairs())
            pairs.extend(self._homedir_pairs())
            pairs.extend(self._explicit_pairs())
            self._pairs = pairs
        return list(self._pairs)

    def find(self, fingerprint: str) -> list[KeyPair]:
        """Every pair matching *fingerprint*, in source order."""
        try:
            normalize_fingerprint(fingerprint)
        except ValueError as exc:
            raise ResourceNotFoundError(str(exc), cause=exc) from exc
        matches = [p for p in self.list() if p.matches(fingerprint)]
        if not matches:
            where = "the SSH agent or " if self.use_agent else ""
            raise ResourceNotFoundError(
                f"no SSH key with fingerprint {fingerprint} found in {where}{self.ssh_dir}"
            )
        return matches

    def find_signing_key_pair(self, fingerprint: str) -> KeyPair:
        """Best pair for signing: agent, then unlocked local, then locked local."""
        return sorted(self.find(fingerprint), key=_signing_preference)[0]

    def unlock(self, pair: KeyPair, passphrase: str) -> None:
        pair.unlock(passphrase)


def _signing_preference(pair: KeyPair) -> int:
    if pair.source is KeySource.AGENT:
        return 0
    return 2 if pair.locked else 1


def _try_local(private_path: Path, pub_path: Path, source: KeySource) -> Iterable[KeyPair]:
    try:
        return [LocalKeyPair.from_files(private_path, pub_path, source=source)]
    except (OSError, ValueError, UnsupportedAlgorithm) as exc:
        logger.debug("skipping key %s: %s", private_path, exc)
        return []
