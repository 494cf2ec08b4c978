"""Shared fixtures: throw-away SSH keys, a fake ssh-agent, and an in-memory CloudAPI."""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from paramiko.message import Message

from tritoncli.auth.keyring import LocalKeyPair
from tritoncli.auth.sshkey import HASHES, PublicKeyInfo, parse_public_key_line
from tritoncli.cloudapi.client import CloudApi

ACCOUNT = "acme"
CLOUDAPI_URL = "https://cloudapi.test"
DOCKER_HOST = "tcp://docker.test:2376"


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def ecdsa_private_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def ed25519_private_key() -> ed25519.Ed25519PrivateKey:
    return ed25519.Ed25519PrivateKey.generate()


def public_key_line(private_key: Any, comment: str = "") -> str:
    line = private_key.public_key().public_bytes(
        serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH
    ).decode("ascii")
    return f"{line} {comment}" if comment else line


def write_key_files(
    directory: Path, name: str, private_key: Any, comment: str = "", passphrase: bytes | None = None
) -> tuple[Path, Path]:
    """Write ``<name>`` and ``<name>.pub``; a passphrase makes an encrypted PKCS#8 PEM."""
    directory.mkdir(parents=True, exist_ok=True)
    if passphrase:
        data = private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.BestAvailableEncryption(passphrase),
        )
    else:
        data = private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.OpenSSH,
            serialization.NoEncryption(),
        )
    private_path = directory / name
    private_path.write_bytes(data)
    pub_path = directory / f"{name}.pub"
    pub_path.write_text(public_key_line(private_key, comment) + "\n", encoding="utf-8")
    return private_path, pub_path


@pytest.fixture
def key_pair(rsa_private_key, tmp_path: Path) -> LocalKeyPair:
    """An unlocked RSA key pair (no files needed for signing)."""
    info = PublicKeyInfo.from_public_key(rsa_private_key.public_key(), comment="test@example")
    return LocalKeyPair(info, tmp_path / "id_rsa", private_key=rsa_private_key)


# ---------------------------------------------------------------------------
# Fake ssh-agent
# ---------------------------------------------------------------------------

_RSA_AGENT_HASHES = {None: "sha1", "rsa-sha2-256": "sha256", "rsa-sha2-512": "sha512"}
_SSH_RSA_NAMES = {"sha1": "ssh-rsa", "sha256": "rsa-sha2-256", "sha512": "rsa-sha2-512"}


class FakeAgentKey:
    """Quacks like paramiko.AgentKey; ``sha1_only`` mimics an agent without RSA SHA-2."""

    def __init__(self, private_key: Any, comment: str = "", sha1_only: bool = False) -> None:
        self.private_key = private_key
        self.comment = comment
        self.sha1_only = sha1_only
        self.sign_calls: list[str | None] = []
        self._blob = PublicKeyInfo.from_public_key(private_key.public_key()).blob

    def asbytes(self) -> bytes:
        return self._blob

    def sign_ssh_data(self, data: bytes, algorithm: str | None = None) -> bytes:
        self.sign_calls.append(algorithm)
        key = self.private_key
        m = Message()
        if isinstance(key, rsa.RSAPrivateKey):
            hash_name = "sha1" if self.sha1_only else _RSA_AGENT_HASHES[algorithm]
            m.add_string(_SSH_RSA_NAMES[hash_name])
            m.add_string(key.sign(data, padding.PKCS1v15(), HASHES[hash_name]()))
        elif isinstance(key, ec.EllipticCurvePrivateKey):
            r, s = decode_dss_signature(key.sign(data, ec.ECDSA(HASHES["sha256"]())))
            inner = Message()
            inner.add_mpint(r)
            inner.add_mpint(s)
            m.add_string("ecdsa-sha2-nistp256")
            m.add_string(inner.asbytes())
        else:
            m.add_string("ssh-ed25519")
            m.add_string(key.sign(data))
        return m.asbytes()


class FakeAgent:
    def __init__(self, keys: list[FakeAgentKey]) -> None:
        self.keys = keys

    def get_keys(self) -> list[FakeAgentKey]:
        return list(self.keys)


# ---------------------------------------------------------------------------
# In-memory CloudAPI
# ---------------------------------------------------------------------------


class FakeCloudApi:
    """
    Just enough of CloudAPI for the RBAC, docker-setup and role-tag flows.

    Users, policies and roles are addressable by name or by id.  Every
    request is recorded as ``(method, path)`` in ``calls``.
    """

    def __init__(self, account: str = ACCOUNT, services: dict[str, str] | None = None) -> None:
        self.account = account
        self.services = {"docker": DOCKER_HOST} if services is None else services
        self.users: dict[str, dict[str, Any]] = {}
        self.keys: dict[str, dict[str, dict[str, Any]]] = {}
        self.policies: dict[str, dict[str, Any]] = {}
        self.roles: dict[str, dict[str, Any]] = {}
        self.role_tags: dict[str, list[str]] = {}
        self.calls: list[tuple[str, str]] = []
        self.unsigned: list[str] = []
        self.fail: dict[tuple[str, str], tuple[int, dict[str, Any]]] = {}
        self._next_id = 0

    # -- seeding -------------------------------------------------------------

    def _id(self, kind: str) -> str:
        self._next_id += 1
        return f"{kind}-{self._next_id:04d}"

    def add_user(self, login: str, **fields: Any) -> dict[str, Any]:
        user = {"id": self._id("user"), "login": login, **fields}
        self.users[login] = user
        self.keys.setdefault(login, {})
        return user

    def add_key(self, login: str, key: str, name: str | None = None) -> dict[str, Any]:
        info = parse_public_key_line(key)
        record = {"fingerprint": info.fingerprint, "key": key}
        if name:
            record["name"] = name
        self.keys.setdefault(login, {})[info.fingerprint] = record
        return record

    def add_policy(self, name: str, rules: list[str], description: str | None = None) -> dict[str, Any]:
        policy = {"id": self._id("policy"), "name": name, "rules": list(rules)}
        if description is not None:
            policy["description"] = description
        self.policies[name] = policy
        return policy

    def add_role(
        self,
        name: str,
        members: list[str] = (),
        default_members: list[str] = (),
        policies: list[str] = (),
    ) -> dict[str, Any]:
        role = {
            "id": self._id("role"),
            "name": name,
            "members": list(members),
            "default_members": list(default_members),
            "policies": list(policies),
        }
        self.roles[name] = role
        return role

    # -- transport -----------------------------------------------------------

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self, key_pair: Any, **kwargs: Any) -> CloudApi:
        return CloudApi(CLOUDAPI_URL, self.account, key_pair=key_pair, transport=self.transport(), **kwargs)

    def handle(self, request: httpx.Request) -> httpx.Response:
        method, path = request.method, request.url.path
        self.calls.append((method, path))
        if (method, path) in self.fail:
            status, body = self.fail[(method, path)]
            return httpx.Response(status, json=body)
        if path == "/--ping":
            return httpx.Response(200, json={"ping": "pong", "cloudapi": {"versions": ["9.0.0"]}})
        if "authorization" not in request.headers:
            self.unsigned.append(path)
            return httpx.Response(401, json={"code": "InvalidCredentials", "message": "missing signature"})

        parts = path.strip("/").split("/")
        if parts[0] != self.account:
            return httpx.Response(403, json={"code": "NotAuthorized", "message": "wrong account"})
        body = json.loads(request.content) if request.content else {}
        return self._route(method, parts[1:], body)

    def _route(self, method: str, parts: list[str], body: dict[str, Any]) -> httpx.Response:
        kind = parts[0]
        if kind == "services" and method == "GET":
            return httpx.Response(200, json=self.services)
        if kind == "users":
            return self._users(method, parts[1:], body)
        if kind in ("policies", "roles"):
            return self._named(kind, method, parts[1:], body)
        if method == "PUT" and len(parts) == 2:
            self.role_tags["/".join(parts)] = list(body.get("role-tag") or [])
            return httpx.Response(200, json={"name": parts[1], "role-tag": body.get("role-tag") or []})
        return _not_found(kind)

    def _lookup(self, table: dict[str, dict[str, Any]], ident: str) -> str | None:
        if ident in table:
            return ident
        return next((name for name, thing in table.items() if thing["id"] == ident), None)

    def _users(self, method: str, parts: list[str], body: dict[str, Any]) -> httpx.Response:
        if not parts:
            if method == "GET":
                return httpx.Response(200, json=[_public_user(u) for u in self.users.values()])
            fields = {k: v for k, v in body.items() if k != "password"}
            user = self.add_user(fields.pop("login"), **fields)
            return httpx.Response(201, json=_public_user(user))

        login = self._lookup(self.users, parts[0])
        if login is None:
            return _not_found(f"user {parts[0]}")
        if len(parts) == 1:
            if method == "GET":
                return httpx.Response(200, json=_public_user(self.users[login]))
            if method == "DELETE":
                del self.users[login]
                self.keys.pop(login, None)
                return httpx.Response(204)
            self.users[login].update(body)
            return httpx.Response(200, json=_public_user(self.users[login]))

        keys = self.keys.setdefault(login, {})
        if len(parts) == 2:
            if method == "GET":
                return httpx.Response(200, json=list(keys.values()))
            return httpx.Response(201, json=self.add_key(login, body["key"], body.get("name")))
        fp = parts[2]
        if fp not in keys:
            return _not_found(f"key {fp}")
        if method == "DELETE":
            del keys[fp]
            return httpx.Response(204)
        return httpx.Response(200, json=keys[fp])

    def _named(self, kind: str, method: str, parts: list[str], body: dict[str, Any]) -> httpx.Response:
        table = self.policies if kind == "policies" else self.roles
        if not parts:
            if method == "GET":
                return httpx.Response(200, json=list(table.values()))
            thing = {"id": self._id(kind), **body}
            table[body["name"]] = thing
            return httpx.Response(201, json=thing)
        name = self._lookup(table, parts[0])
        if name is None:
            return _not_found(f"{kind} {parts[0]}")
        if method == "DELETE":
            del table[name]
            return httpx.Response(204)
        if method == "POST":
            table[name].update(body)
        return httpx.Response(200, json=table[name])


def _public_user(user: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in user.items() if k != "password"}


def _not_found(what: str) -> httpx.Response:
    return httpx.Response(404, json={"code": "ResourceNotFound", "message": f"{what} not found"})


@pytest.fixture
def fake_cloudapi() -> FakeCloudApi:
    return FakeCloudApi()


@pytest.fixture
def cloudapi(fake_cloudapi: FakeCloudApi, key_pair: LocalKeyPair) -> CloudApi:
    api = fake_cloudapi.client(key_pair)
    yield api
    api.close()


# ---------------------------------------------------------------------------
# Config dir
# ---------------------------------------------------------------------------


@pytest.fixture
def cfg_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """An empty config dir; triton/smartdc env vars are cleared so "env" starts empty."""
    for var in list(os.environ):
        if re.match(r"^(TRITON|SDC)_", var):
            monkeypatch.delenv(var, raising=False)
    path = tmp_path / "triton"
    path.mkdir()
    return path


def write_profile(cfg_dir: Path, profile_name: str, **fields: Any) -> Path:
    data = {"url": CLOUDAPI_URL, "account": ACCOUNT, "keyId": "00:" * 15 + "00", **fields}
    path = cfg_dir / "profiles.d" / f"{profile_name}.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


@pytest.fixture
def profile_writer(cfg_dir: Path):
    """``profile_writer(profile_name, **fields)`` writes profiles.d/<profile_name>.json."""
    return lambda profile_name, **fields: write_profile(cfg_dir, profile_name, **fields)


@pytest.fixture
def key_files():
    """``key_files(dir, name, private_key, comment="", passphrase=None)`` -> (private, pub) paths."""
    return write_key_files


@pytest.fixture
def pubkey_line():
    """``pubkey_line(private_key, comment="")`` -> OpenSSH public key line."""
    return public_key_line


@pytest.fixture
def agent_key():
    """``agent_key(private_key, comment="", sha1_only=False)`` -> FakeAgentKey."""
    return FakeAgentKey


@pytest.fixture
def agent():
    """``agent([agent keys])`` -> FakeAgent."""
    return FakeAgent
