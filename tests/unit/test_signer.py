"""Unit tests for HTTP-Signature request signing."""

from __future__ import annotations

import base64
import re

import httpx

from tritoncli.auth.signer import RequestSigner, authorization_header, key_id_for, sign_headers, signing_string
from tritoncli.auth.sshkey import verify_signature

_AUTH_RE = re.compile(
    r'^Signature keyId="(?P<key_id>[^"]+)",algorithm="(?P<alg>[^"]+)",'
    r'headers="date",signature="(?P<sig>[^"]+)"$'
)


class TestSignHeaders:
    def test_signature_verifies_over_date(self, key_pair) -> None:
        headers = {"Date": "Tue, 07 Jun 2016 20:51:35 GMT"}
        sign_headers(headers, key_pair, "acme")
        m = _AUTH_RE.match(headers["Authorization"])
        assert m is not None
        assert m["key_id"] == f"/acme/keys/{key_pair.fingerprint}"
        assert m["alg"] == "rsa-sha256"
        sig = base64.b64decode(m["sig"])
        assert verify_signature(key_pair.public_key, b"date: Tue, 07 Jun 2016 20:51:35 GMT", sig, "sha256")

    def test_adds_date_when_missing(self, key_pair) -> None:
        headers: dict[str, str] = {}
        sign_headers(headers, key_pair, "acme")
        assert headers["Date"].endswith("GMT")
        assert "Authorization" in headers

    def test_sub_user_key_id(self, key_pair) -> None:
        headers = {"Date": "Tue, 07 Jun 2016 20:51:35 GMT"}
        sign_headers(headers, key_pair, "acme", user="bob")
        assert f'keyId="/acme/users/bob/keys/{key_pair.fingerprint}"' in headers["Authorization"]


class TestHelpers:
    def test_signing_string(self) -> None:
        assert signing_string("D") == b"date: D"

    def test_key_id(self) -> None:
        assert key_id_for("acme", "aa:bb") == "/acme/keys/aa:bb"
        assert key_id_for("acme", "aa:bb", "bob") == "/acme/users/bob/keys/aa:bb"

    def test_authorization_header(self, key_pair) -> None:
        header = authorization_header("/acme/keys/x", key_pair.sign(b"x"))
        assert header.startswith('Signature keyId="/acme/keys/x",algorithm="rsa-sha256",headers="date"')


class TestRequestSigner:
    def test_auth_flow_signs_every_request(self, key_pair) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        auth = RequestSigner(key_pair, "acme", "bob")
        with httpx.Client(transport=httpx.MockTransport(handler), auth=auth) as client:
            client.get("https://cloudapi.test/acme/users")
            client.get("https://cloudapi.test/acme/roles")
        assert len(seen) == 2
        for request in seen:
            assert request.headers["authorization"].startswith(f'Signature keyId="{auth.key_id}"')
            assert request.headers["date"]
