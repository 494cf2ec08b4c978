"""
HTTP-Signature request signing.

A signed request carries::

    Date: Tue, 07 Jun 2016 20:51:35 GMT
    Authorization: Signature keyId="/<account>/keys/<md5 fp>",algorithm="rsa-sha256",headers="date",signature="<b64>"

The signing string is ``date: <Date header value>``.  When acting as an RBAC
sub-user the key id is ``/<account>/users/<user>/keys/<md5 fp>``.
"""

from __future__ import annotations

import base64
import logging
from collections.abc import Generator, MutableMapping
from email.utils import formatdate

import httpx

from tritoncli.auth.keyring import KeyPair, KeySignature
from tritoncli.core.exceptions import SigningError

logger = logging.getLogger(__name__)


def date_header() -> str:
    """Current time in RFC 1123 format (UTC)."""
    return formatdate(usegmt=True)


def signing_string(date: str) -> bytes:
    return f"date: {date}".encode()


def key_id_for(account: str, fingerprint: str, user: str | None = None) -> str:
    if user:
        return f"/{account}/users/{user}/keys/{fingerprint}"
    return f"/{account}/keys/{fingerprint}"


def authorization_header(key_id: str, sig: KeySignature) -> str:
    b64 = base64.b64encode(sig.signature).decode("ascii")
    return f'Signature keyId="{key_id}",algorithm="{sig.algorithm}",headers="date",signature="{b64}"'


def sign_headers(
    headers: MutableMapping[str, str],
    key_pair: KeyPair,
    account: str,
    user: str | None = None,
) -> MutableMapping[str, str]:
    """Add ``Date`` (if absent) and ``Authorization`` to *headers* in place."""
    date = headers.get("date") or headers.get("Date")
    if not date:
        date = date_header()
        headers["Date"] = date
    key_id = key_id_for(account, key_pair.fingerprint, user)
    try:
        sig = key_pair.sign(signing_string(date))
    except SigningError:
        raise
    except (ValueError, OSError) as exc:
        raise SigningError(cause=exc) from exc
    headers["Authorization"] = authorization_header(key_id, sig)
    logger.debug("signed request as %s with %s", key_id, sig.algorithm)
    return headers


class RequestSigner(httpx.Auth):
    """httpx auth flow that signs each request with an SSH key pair."""

    def __init__(self, key_pair: KeyPair, account: str, user: str | None = None) -> None:
        self.key_pair = key_pair
        self.account = account
        self.user = user

    @property
    def key_id(self) -> str:
        return key_id_for(self.account, self.key_pair.fingerprint, self.user)

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        sign_headers(request.headers, self.key_pair, self.account, self.user)
        yield request
