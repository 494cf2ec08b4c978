"""
X.509 client certificates signed by an account SSH key.

Triton's Docker and CMON endpoints authenticate clients with a TLS
certificate whose issuer is the account's SSH key:

    subject  CN=<account>
    issuer   CN=<base64 of the key's raw MD5 fingerprint>
    key      a fresh ECDSA P-256 key, written beside the certificate

The SSH key may live in ssh-agent, which will sign arbitrary bytes but never
hand out the private key.  So the certificate is first built and signed with
a throw-away key of the same type (fixing the signature algorithm inside the
tbsCertificate), then the tbsCertificate is re-signed through
:meth:`KeyPair.sign` and that signature replaces the throw-away one.
"""

from __future__ import annotations

import base64
import datetime
import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa
from cryptography.x509 import ObjectIdentifier
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from tritoncli.auth.keyring import KeyPair
from tritoncli.auth.sshkey import HASHES, md5_digest, verify_signature
from tritoncli.core.constants import (
    CERT_CLOCK_SKEW_SECONDS,
    CERT_SERIAL_BYTES,
    DEFAULT_CERT_LIFETIME_DAYS,
)
from tritoncli.core.exceptions import InternalError, SigningError

logger = logging.getLogger(__name__)

JOYENT_DOCKER_OID = ObjectIdentifier("1.3.6.1.4.1.38678.1.4.1")
JOYENT_CMON_OID = ObjectIdentifier("1.3.6.1.4.1.38678.1.4.2")


class Purpose(StrEnum):
    CLIENT_AUTH = "clientAuth"
    JOYENT_DOCKER = "joyentDocker"
    JOYENT_CMON = "joyentCmon"
    SIGNATURE = "signature"  # keyUsage digitalSignature
    IDENTITY = "identity"  # keyUsage nonRepudiation


DOCKER_PURPOSES = frozenset({Purpose.CLIENT_AUTH, Purpose.JOYENT_DOCKER})
CMON_PURPOSES = frozenset({Purpose.SIGNATURE, Purpose.IDENTITY, Purpose.CLIENT_AUTH, Purpose.JOYENT_CMON})

_EXTENDED_USAGES = {
    Purpose.CLIENT_AUTH: ExtendedKeyUsageOID.CLIENT_AUTH,
    Purpose.JOYENT_DOCKER: JOYENT_DOCKER_OID,
    Purpose.JOYENT_CMON: JOYENT_CMON_OID,
}


@dataclass(frozen=True)
class IssuedCert:
    key: ec.EllipticCurvePrivateKey
    cert: x509.Certificate

    @property
    def key_pem(self) -> bytes:
        return self.key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.TraditionalOpenSSL,
            serialization.NoEncryption(),
        )

    @property
    def cert_pem(self) -> bytes:
        return self.cert.public_bytes(serialization.Encoding.PEM)


def issuer_common_name(key_pair: KeyPair) -> str:
    return base64.b64encode(md5_digest(key_pair.info.blob)).decode("ascii")


def generate_client_cert(
    key_pair: KeyPair,
    subject: str,
    purposes: Iterable[Purpose | str],
    lifetime_days: int = DEFAULT_CERT_LIFETIME_DAYS,
    now: datetime.datetime | None = None,
) -> IssuedCert:
    """
    Issue a client certificate for a fresh ECDSA key, signed by *key_pair*.

    Raises:
        SigningError: if signing fails or the result does not verify against
            the account public key.
    """
    if lifetime_days <= 0:
        raise SigningError(f"certificate lifetime must be positive (got {lifetime_days} days)")
    now = now or datetime.datetime.now(datetime.timezone.utc)
    not_before = (now - datetime.timedelta(seconds=CERT_CLOCK_SKEW_SECONDS)).replace(microsecond=0)
    purposes = {Purpose(p) for p in purposes}
    subject_key = ec.generate_private_key(ec.SECP256R1())

    # Agent keys probe here; the hash is baked into the tbsCertificate.
    hash_name = key_pair.signing_hash()

    builder = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject)]))
        .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_common_name(key_pair))]))
        .public_key(subject_key.public_key())
        .serial_number(int.from_bytes(os.urandom(CERT_SERIAL_BYTES), "big") or 1)
        .not_valid_before(not_before)
        .not_valid_after(not_before + datetime.timedelta(days=lifetime_days))
    )
    builder = _add_purposes(builder, purposes)

    placeholder = _placeholder_key(key_pair)
    algorithm = None if isinstance(placeholder, ed25519.Ed25519PrivateKey) else HASHES[hash_name]()
    draft = builder.sign(private_key=placeholder, algorithm=algorithm)
    tbs = draft.tbs_certificate_bytes

    sig = key_pair.sign(tbs)
    if sig.hash_name != hash_name:
        raise SigningError(f"key {key_pair.fingerprint} signed with {sig.algorithm}, expected {hash_name}")

    cert = x509.load_der_x509_certificate(
        splice_signature(draft.public_bytes(serialization.Encoding.DER), tbs, sig.signature)
    )
    if not verify_signature(key_pair.public_key, cert.tbs_certificate_bytes, cert.signature, hash_name):
        raise SigningError(f"certificate signature does not verify against key {key_pair.fingerprint}")

    logger.debug(
        "issued cert serial=%x subject=%s purposes=%s via %s",
        cert.serial_number,
        subject,
        sorted(purposes),
        sig.algorithm,
    )
    return IssuedCert(key=subject_key, cert=cert)


def _add_purposes(builder: x509.CertificateBuilder, purposes: set[Purpose]) -> x509.CertificateBuilder:
    if purposes & {Purpose.SIGNATURE, Purpose.IDENTITY}:
        builder = builder.add_extension(
            x509.KeyUsage(
                digital_signature=Purpose.SIGNATURE in purposes,
                content_commitment=Purpose.IDENTITY in purposes,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=False,
        )
    usages = [_EXTENDED_USAGES[p] for p in sorted(purposes) if p in _EXTENDED_USAGES]
    if usages:
        builder = builder.add_extension(x509.ExtendedKeyUsage(usages), critical=False)
    return builder


def _placeholder_key(key_pair: KeyPair):
    public_key = key_pair.public_key
    if isinstance(public_key, rsa.RSAPublicKey):
        return rsa.generate_private_key(public_exponent=65537, key_size=2048)
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        return ec.generate_private_key(public_key.curve)
    if isinstance(public_key, ed25519.Ed25519PublicKey):
        return ed25519.Ed25519PrivateKey.generate()
    raise SigningError(f"cannot issue certificates with a {key_pair.info.key_type} key")


# ---------------------------------------------------------------------------
# DER splicing
# ---------------------------------------------------------------------------


def _der_length(n: int) -> bytes:
    if n < 0x80:
        return bytes([n])
    raw = n.to_bytes((n.bit_length() + 7) // 8, "big")
    return bytes([0x80 | len(raw)]) + raw


def _der_header(data: bytes, offset: int = 0) -> tuple[int, int]:
    """Return (header length, content length) of the TLV at *offset*."""
    first = data[offset + 1]
    if first < 0x80:
        return 2, first
    n = first & 0x7F
    return 2 + n, int.from_bytes(data[offset + 2 : offset + 2 + n], "big")


def splice_signature(cert_der: bytes, tbs: bytes, signature: bytes) -> bytes:
    """
    Rebuild ``Certificate ::= SEQUENCE { tbs, signatureAlgorithm, signature }``
    from *cert_der* with *signature* as the signature value.
    """
    header_len, _ = _der_header(cert_der)
    body = cert_der[header_len:]
    if not body.startswith(tbs):
        raise InternalError("certificate DER does not start with its tbsCertificate")
    rest = body[len(tbs):]
    alg_header, alg_len = _der_header(rest)
    sig_alg = rest[: alg_header + alg_len]
    bit_string = b"\x03" + _der_length(len(signature) + 1) + b"\x00" + signature
    content = tbs + sig_alg + bit_string
    return b"\x30" + _der_length(len(content)) + content
