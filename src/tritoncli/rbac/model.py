"""
RBAC desired-state document: users, policies and roles for one account.

The document is JSON (or YAML for ``.yaml``/``.yml`` files)::

    {
        "users":    [{"login": "bob", "email": "bob@example.com", "keys": [...]}],
        "policies": [{"name": "ro", "rules": ["CAN getmachine"]}],
        "roles":    [{"name": "eng", "members": ["bob"], "policies": ["ro"]}]
    }

A user's ``keys`` may be a list of ``{fingerprint?, name?, key}`` objects or a
path to a public key file (or a directory holding ``<login>.pub``).  Without
``keys`` the ``rbac-user-keys`` directory beside the config is consulted and
silently skipped when it has nothing for the user.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from tritoncli.auth.sshkey import normalize_fingerprint, parse_public_key_line
from tritoncli.core.constants import RBAC_USER_KEYS_DIRNAME
from tritoncli.core.exceptions import ConfigError

logger = logging.getLogger(__name__)

_YAML_SUFFIXES = {".yaml", ".yml"}


class UserKey(BaseModel):
    model_config = ConfigDict(extra="ignore")

    fingerprint: str | None = None
    name: str | None = None
    key: str

    @model_validator(mode="after")
    def check_fingerprint(self) -> UserKey:
        try:
            info = parse_public_key_line(self.key)
        except ValueError as exc:
            raise ValueError(f"invalid public key: {exc}") from exc
        if self.fingerprint and normalize_fingerprint(self.fingerprint) != info.fingerprint:
            raise ValueError(
                f"fingerprint {self.fingerprint} does not match key (expected {info.fingerprint})"
            )
        self.fingerprint = info.fingerprint
        if self.name is None and info.comment:
            self.name = info.comment
        return self

    @property
    def body(self) -> str:
        """``<type> <base64>`` without the comment."""
        return " ".join(self.key.split()[:2])


class RbacUser(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    login: str
    email: str | None = None
    company_name: str | None = Field(default=None, alias="companyName")
    first_name: str | None = Field(default=None, alias="firstName")
    last_name: str | None = Field(default=None, alias="lastName")
    address: str | None = None
    postal_code: str | None = Field(default=None, alias="postalCode")
    city: str | None = None
    state: str | None = None
    country: str | None = None
    phone: str | None = None
    password: str | None = None
    keys: list[UserKey] | None = None

    @field_validator("login")
    @classmethod
    def validate_login(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("login must not be empty")
        return v

    def cloudapi_fields(self) -> dict[str, Any]:
        """Fields this document sets on the user, in CloudAPI naming."""
        return self.model_dump(by_alias=True, exclude_none=True, exclude={"keys"})


class RbacPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    description: str | None = None
    rules: list[str] = []


class RbacRole(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    members: list[str] = []
    default_members: list[str] = []
    policies: list[str] = []

    @model_validator(mode="after")
    def check_default_members(self) -> RbacRole:
        extra = sorted(set(self.default_members) - set(self.members))
        if extra:
            raise ValueError(f"default_members must also be members: {', '.join(extra)}")
        return self


class RbacConfig(BaseModel):
    """The desired RBAC state for an account."""

    model_config = ConfigDict(extra="forbid")

    users: list[RbacUser] = []
    policies: list[RbacPolicy] = []
    roles: list[RbacRole] = []

    @model_validator(mode="after")
    def check_references(self) -> RbacConfig:
        logins = _unique([u.login for u in self.users], "user login")
        policy_names = _unique([p.name for p in self.policies], "policy name")
        _unique([r.name for r in self.roles], "role name")
        for role in self.roles:
            unknown = sorted(set(role.members) - logins)
            if unknown:
                raise ValueError(f'role "{role.name}" members are not users in this config: {", ".join(unknown)}')
            unknown = sorted(set(role.policies) - policy_names)
            if unknown:
                raise ValueError(
                    f'role "{role.name}" policies are not policies in this config: {", ".join(unknown)}'
                )
        return self

    def user(self, login: str) -> RbacUser | None:
        return next((u for u in self.users if u.login == login), None)


def _unique(values: list[str], what: str) -> set[str]:
    seen: set[str] = set()
    for v in values:
        if v in seen:
            raise ValueError(f'duplicate {what} "{v}"')
        seen.add(v)
    return seen


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_rbac_config(path: str | Path, cfg_dir: Path) -> RbacConfig:
    """
    Read and validate the RBAC document at *path*.

    Relative ``keys`` paths resolve against the document's directory.

    Raises:
        ConfigError: unreadable file, invalid JSON/YAML, missing key files,
            unparseable keys, or a document that fails validation.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f'could not read RBAC config file "{path}": {exc}', cause=exc) from exc

    if path.suffix.lower() in _YAML_SUFFIXES:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ConfigError(f"RBAC config file, {path}, is not valid YAML: {exc}", cause=exc) from exc
    else:
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise ConfigError(f"RBAC config file, {path}, is not valid JSON: {exc}", cause=exc) from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f'RBAC config file "{path}" is not an object')

    default_keys_dir = cfg_dir / RBAC_USER_KEYS_DIRNAME
    for user in data.get("users") or []:
        if isinstance(user, dict):
            _load_user_keys(user, path.parent, default_keys_dir)

    return validate_rbac_config(data, source=str(path))


def validate_rbac_config(data: Mapping[str, Any], source: str = "RBAC config") -> RbacConfig:
    try:
        return RbacConfig.model_validate(dict(data))
    except ValidationError as exc:
        lines = [f"invalid {source}:"]
        for err in exc.errors():
            loc = " → ".join(str(x) for x in err["loc"]) if err["loc"] else "(root)"
            lines.append(f"  {loc}: {err['msg']}")
        raise ConfigError("\n".join(lines), cause=exc) from exc


def _load_user_keys(user: dict[str, Any], base_dir: Path, default_dir: Path) -> None:
    """Replace a string ``keys`` (or a missing one) with parsed key records, in place."""
    implicit = "keys" not in user
    keys = default_dir if implicit else user["keys"]
    if not isinstance(keys, (str, Path)) or not keys:
        return
    login = user.get("login")

    keys_file = Path(keys).expanduser()
    if not keys_file.is_absolute():
        keys_file = base_dir / keys_file
    if keys_file.is_dir():
        keys_file = keys_file / f"{login}.pub"
    if not keys_file.exists():
        if implicit:
            user.pop("keys", None)
            return
        raise ConfigError(f'User {login} keys not found in "{keys_file}"')
    if not keys_file.is_file():
        if implicit:
            user.pop("keys", None)
            return
        raise ConfigError(f'Expected "{keys_file}" to be a regular file')

    try:
        lines = keys_file.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise ConfigError(f'could not read user {login} keys from "{keys_file}": {exc}', cause=exc) from exc

    records = []
    for lineno, line in enumerate(lines, 1):
        if not line.strip():
            continue
        try:
            info = parse_public_key_line(line)
        except ValueError as exc:
            raise ConfigError(f'invalid public key at "{keys_file}" line {lineno}: {exc}', cause=exc) from exc
        records.append({"fingerprint": info.fingerprint, "name": info.comment or None, "key": line.strip()})
    logger.debug("loaded %d key(s) for user %s from %s", len(records), login, keys_file)
    user["keys"] = records
