"""
CloudAPI client — typed HTTPS access to the CloudAPI REST surface.

Every authenticated call is signed by :class:`tritoncli.auth.signer.RequestSigner`.
The signing key is resolved from the key ring on first use and cached for
the lifetime of the client.  Non-success responses are mapped onto the
tritoncli error taxonomy:

    401            AuthError (with a portal hint for public Joyent clouds)
    404            ResourceNotFoundError
    503            CloudApiError "in maintenance"
    other 4xx/5xx  CloudApiError (body ``code``/``message``/``errors[]``)
    self-signed    SelfSignedCertError
    timeouts       CloudApiError(retryable=True)

Nothing is retried here; retry is the caller's decision.
"""

from __future__ import annotations

import logging
import platform
import re
import ssl
import sys
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any
from urllib.parse import quote

import httpx

from tritoncli import __version__
from tritoncli.auth.keyring import KeyPair, KeyRing
from tritoncli.auth.signer import RequestSigner
from tritoncli.core.config import Profile, portal_url_from_cloudapi_url
from tritoncli.core.constants import CLOUDAPI_VERSION, DEFAULT_CONNECT_TIMEOUT, DEFAULT_READ_TIMEOUT
from tritoncli.core.exceptions import (
    AuthError,
    CloudApiError,
    ConfigError,
    ResourceNotFoundError,
    SelfSignedCertError,
    SigningError,
    UsageError,
)

logger = logging.getLogger(__name__)

# X509_V_ERR_DEPTH_ZERO_SELF_SIGNED_CERT, X509_V_ERR_SELF_SIGNED_CERT_IN_CHAIN
_SELF_SIGNED_VERIFY_CODES = {18, 19}

CREATE_USER_FIELDS = (
    "login",
    "password",
    "email",
    "companyName",
    "firstName",
    "lastName",
    "address",
    "postalCode",
    "city",
    "state",
    "country",
    "phone",
)
UPDATE_USER_FIELDS = tuple(f for f in CREATE_USER_FIELDS if f != "password")

ROLE_TAG_RESOURCE_TYPES = frozenset(
    {
        "machines",
        "packages",
        "images",
        "fwrules",
        "networks",
        "users",
        "roles",
        "policies",
        "keys",
        "datacenters",
    }
)
_ROLE_TAG_RESOURCE_RE = re.compile(r"^/[^/]{2,}/[^/]+")

UnlockCallback = Callable[[KeyPair], str]


def user_agent() -> str:
    return f"triton/{__version__} ({platform.machine()}-{sys.platform}; python/{platform.python_version()})"


class CloudApi:
    """Synchronous CloudAPI client bound to one account and one signing key."""

    def __init__(
        self,
        url: str,
        account: str,
        key_id: str | None = None,
        key_ring: KeyRing | None = None,
        key_pair: KeyPair | None = None,
        user: str | None = None,
        act_as_account: str | None = None,
        roles: Sequence[str] = (),
        insecure: bool = False,
        unlock: UnlockCallback | None = None,
        timeout: httpx.Timeout | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.principal_account = account
        self.account = act_as_account or account
        self.key_id = key_id
        self.key_ring = key_ring
        self.user = user
        self.roles = list(roles)
        self.insecure = insecure
        self._key_pair = key_pair
        self._unlock = unlock
        self._client = httpx.Client(
            base_url=self.url,
            verify=not insecure,
            timeout=timeout or httpx.Timeout(DEFAULT_READ_TIMEOUT, connect=DEFAULT_CONNECT_TIMEOUT),
            headers={
                "Accept": "application/json",
                "Accept-Version": CLOUDAPI_VERSION,
                "User-Agent": user_agent(),
            },
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> CloudApi:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -----------------------------------------------------------------------
    # Key handling
    # -----------------------------------------------------------------------

    @property
    def key_pair(self) -> KeyPair:
        """The signing key pair, resolved (and unlocked) on first use."""
        if self._key_pair is None:
            if self.key_ring is None or not self.key_id:
                raise ConfigError("no signing key configured (set keyId on the profile)")
            pair = self.key_ring.find_signing_key_pair(self.key_id)
            if pair.locked:
                if self._unlock is None:
                    raise SigningError(f"key {pair.fingerprint} is locked and no passphrase is available")
                self.key_ring.unlock(pair, self._unlock(pair))
            logger.debug("using key %r for %s", pair, self.url)
            self._key_pair = pair
        return self._key_pair

    def _auth(self) -> RequestSigner:
        return RequestSigner(self.key_pair, self.principal_account, self.user)

    # -----------------------------------------------------------------------
    # Request plumbing
    # -----------------------------------------------------------------------

    def _path(self, *parts: str) -> str:
        return "/" + "/".join(quote(p, safe="") for p in (self.account, *parts))

    def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        params: Mapping[str, Any] | None = None,
        signed: bool = True,
    ) -> httpx.Response:
        """Send one request and return the response, raising on any non-2xx."""
        query = {k: v for k, v in (params or {}).items() if v is not None}
        if self.roles:
            query["as-role"] = ",".join(self.roles)
        kwargs: dict[str, Any] = {"params": query}
        if body is not None:
            kwargs["json"] = body
        if signed:
            kwargs["auth"] = self._auth()

        logger.debug("%s %s%s", method, self.url, path)
        try:
            resp = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise CloudApiError(
                f"{method} {self.url}{path} timed out: {exc}", cause=exc, retryable=True
            ) from exc
        except httpx.ConnectError as exc:
            if _is_self_signed(exc):
                raise SelfSignedCertError(self.url, cause=exc) from exc
            raise CloudApiError(
                f"could not connect to CloudAPI {self.url}: {exc}", cause=exc, retryable=True
            ) from exc
        except httpx.HTTPError as exc:
            raise CloudApiError(f"{method} {self.url}{path} failed: {exc}", cause=exc) from exc

        self._check(resp)
        return resp

    def _json(self, method: str, path: str, body: Any = None, **kwargs: Any) -> Any:
        resp = self.request(method, path, body=body, **kwargs)
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise CloudApiError(
                f"invalid JSON in response from {method} {path}: {exc}",
                cause=exc,
                status_code=resp.status_code,
            ) from exc

    def _check(self, resp: httpx.Response) -> None:
        status = resp.status_code
        if status < 400:
            return
        body = _body_or_empty(resp)
        message = error_message(resp, body)
        code = body.get("code") if isinstance(body.get("code"), str) else None

        if status == 401:
            portal = portal_url_from_cloudapi_url(self.url)
            if portal:
                hint = (
                    f'Visit <{portal}> to create the "{self.principal_account}" '
                    "account and/or add your SSH public key"
                )
            else:
                hint = f'You must create the "{self.principal_account}" account and/or add your SSH public key'
            raise AuthError(f"invalid credentials ({message}). {hint}", status_code=status, code=code)
        if status == 404:
            raise ResourceNotFoundError(message, status_code=status)
        if status == 503:
            raise CloudApiError(
                f"CloudAPI <{self.url}> is in maintenance, please try again later",
                status_code=status,
                code=code,
                retryable=True,
            )
        raise CloudApiError(message, status_code=status, code=code)

    # -----------------------------------------------------------------------
    # General
    # -----------------------------------------------------------------------

    def ping(self) -> dict[str, Any]:
        return self._json("GET", "/--ping", signed=False) or {}

    def list_services(self) -> dict[str, str]:
        return self._json("GET", self._path("services")) or {}

    # -----------------------------------------------------------------------
    # Users
    # -----------------------------------------------------------------------

    def list_users(self) -> list[dict[str, Any]]:
        return self._json("GET", self._path("users")) or []

    def get_user(self, user_id: str) -> dict[str, Any]:
        return self._json("GET", self._path("users", user_id))

    def create_user(self, **fields: Any) -> dict[str, Any]:
        body = _pick(fields, CREATE_USER_FIELDS, "CreateUser")
        if "login" not in body or "password" not in body:
            raise UsageError("CreateUser requires login and password")
        return self._json("POST", self._path("users"), body)

    def update_user(self, user_id: str, **fields: Any) -> dict[str, Any]:
        body = _pick(fields, UPDATE_USER_FIELDS, "UpdateUser")
        return self._json("POST", self._path("users", user_id), body)

    def delete_user(self, user_id: str) -> None:
        self._json("DELETE", self._path("users", user_id))

    def list_user_keys(self, user_id: str) -> list[dict[str, Any]]:
        return self._json("GET", self._path("users", user_id, "keys")) or []

    def get_user_key(self, user_id: str, fingerprint: str) -> dict[str, Any]:
        return self._json("GET", self._path("users", user_id, "keys", fingerprint))

    def create_user_key(self, user_id: str, key: str, name: str | None = None) -> dict[str, Any]:
        body = {"key": key}
        if name:
            body["name"] = name
        return self._json("POST", self._path("users", user_id, "keys"), body)

    def delete_user_key(self, user_id: str, fingerprint: str) -> None:
        self._json("DELETE", self._path("users", user_id, "keys", fingerprint))

    # -----------------------------------------------------------------------
    # Policies
    # -----------------------------------------------------------------------

    def list_policies(self) -> list[dict[str, Any]]:
        return self._json("GET", self._path("policies")) or []

    def get_policy(self, policy_id: str) -> dict[str, Any]:
        return self._json("GET", self._path("policies", policy_id))

    def create_policy(self, name: str, rules: Iterable[str], description: str | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {"name": name, "rules": list(rules)}
        if description is not None:
            body["description"] = description
        return self._json("POST", self._path("policies"), body)

    def update_policy(self, policy_id: str, **fields: Any) -> dict[str, Any]:
        body = _pick(fields, ("name", "rules", "description"), "UpdatePolicy")
        return self._json("POST", self._path("policies", policy_id), body)

    def delete_policy(self, policy_id: str) -> None:
        self._json("DELETE", self._path("policies", policy_id))

    # -----------------------------------------------------------------------
    # Roles
    # -----------------------------------------------------------------------

    def list_roles(self) -> list[dict[str, Any]]:
        return self._json("GET", self._path("roles")) or []

    def get_role(self, role_id: str) -> dict[str, Any]:
        return self._json("GET", self._path("roles", role_id))

    def create_role(
        self,
        name: str,
        members: Iterable[str] = (),
        default_members: Iterable[str] = (),
        policies: Iterable[str] = (),
    ) -> dict[str, Any]:
        body = {
            "name": name,
            "members": list(members),
            "default_members": list(default_members),
            "policies": list(policies),
        }
        return self._json("POST", self._path("roles"), body)

    def update_role(self, role_id: str, **fields: Any) -> dict[str, Any]:
        body = _pick(fields, ("name", "members", "default_members", "policies"), "UpdateRole")
        return self._json("POST", self._path("roles", role_id), body)

    def delete_role(self, role_id: str) -> None:
        self._json("DELETE", self._path("roles", role_id))

    def set_role_tags(self, resource: str, role_tags: Iterable[str]) -> list[str]:
        """
        Replace the role tags on *resource* (e.g. ``/<account>/machines/<id>``).

        Raises:
            UsageError: if the resource path or type is not taggable.
        """
        if not _ROLE_TAG_RESOURCE_RE.match(resource):
            raise UsageError(f'invalid resource "{resource}": must match {_ROLE_TAG_RESOURCE_RE.pattern}')
        resource_type = resource.split("/")[2]
        if resource_type not in ROLE_TAG_RESOURCE_TYPES:
            raise UsageError(
                f'invalid resource type "{resource_type}": must be one of '
                + ", ".join(sorted(ROLE_TAG_RESOURCE_TYPES))
            )
        result = self._json("PUT", resource, {"role-tag": list(role_tags)}) or {}
        return result.get("role-tag", [])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def cloudapi_from_profile(
    profile: Profile,
    key_ring: KeyRing | None = None,
    roles: Sequence[str] = (),
    unlock: UnlockCallback | None = None,
    transport: httpx.BaseTransport | None = None,
) -> CloudApi:
    return CloudApi(
        url=profile.url,
        account=profile.account,
        key_id=profile.key_id,
        key_ring=key_ring if key_ring is not None else KeyRing(),
        user=profile.user,
        act_as_account=profile.act_as_account,
        roles=roles,
        insecure=profile.insecure,
        unlock=unlock,
        transport=transport,
    )


def error_message(resp: httpx.Response, body: Mapping[str, Any]) -> str:
    """Server message with each ``errors[]`` entry appended as ``field: code: message``."""
    message = body.get("message") or f"{resp.status_code} {resp.reason_phrase}".strip()
    details = []
    for err in body.get("errors") or []:
        if isinstance(err, Mapping):
            details.append(f"{err.get('field', '?')}: {err.get('code', '?')}: {err.get('message', '')}")
    if details:
        message = f"{message} ({'; '.join(details)})"
    return str(message)


def _body_or_empty(resp: httpx.Response) -> dict[str, Any]:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _pick(fields: Mapping[str, Any], allowed: Sequence[str], op: str) -> dict[str, Any]:
    unknown = set(fields) - set(allowed)
    if unknown:
        raise UsageError(f"unknown field(s) for {op}: {', '.join(sorted(unknown))}")
    return {k: v for k, v in fields.items() if v is not None}


def _is_self_signed(exc: BaseException) -> bool:
    seen: set[int] = set()
    cur: BaseException | None = exc
    while cur is not None and id(cur) not in seen:
        seen.add(id(cur))
        if isinstance(cur, ssl.SSLCertVerificationError) and cur.verify_code in _SELF_SIGNED_VERIFY_CODES:
            return True
        if "self signed certificate" in str(cur) or "self-signed certificate" in str(cur):
            return True
        cur = cur.__cause__ or cur.__context__
    return False
