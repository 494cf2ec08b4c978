"""tritoncli configuration: process-wide config, profiles, load and save.

Layout under the config dir (default ``~/.triton``)::

    config.json              user config, overlaid on etc/defaults.json
    profiles.d/<name>.json   one profile per file; ``name`` comes from the filename
    docker/<slug>/           Docker client certificates (see tritoncli.certs)
    rbac-user-keys/          public keys referenced by RBAC documents
"""

from __future__ import annotations

import copy
import json
import logging
import os
import re
from collections.abc import Mapping
from importlib import resources
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from tritoncli.core.constants import (
    CONFIG_DIR_NAME,
    CONFIG_FILENAME,
    ENV_CONFIG_DIR,
    ENV_PROFILE_NAME,
    JPC_URL_PATTERN,
    OVERRIDE_KEYS,
    PORTAL_URL,
    PREVIOUS_PROFILE_ALIAS,
    PROFILE_ENV_VARS,
    PROFILE_NAME_PATTERN,
    PROFILES_DIRNAME,
)
from tritoncli.core.exceptions import ConfigError, ProfileNotFoundError

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(PROFILE_NAME_PATTERN)
_URL_RE = re.compile(r"^https?://", re.IGNORECASE)
_JPC_RE = re.compile(JPC_URL_PATTERN)
_FALSE_STRINGS = {"", "0", "false", "no", "off"}


def config_dir(path: str | Path | None = None) -> Path:
    """Return the config dir: explicit path, then $TRITON_CONFIG_DIR, then ~/.triton."""
    if path:
        return Path(path).expanduser()
    if env_path := os.environ.get(ENV_CONFIG_DIR):
        return Path(env_path).expanduser()
    return Path.home() / CONFIG_DIR_NAME


# ---------------------------------------------------------------------------
# Field checks (shared by the model and the interactive prompts)
# ---------------------------------------------------------------------------


def check_profile_name(v: str) -> str:
    if not _NAME_RE.match(v):
        raise ValueError(
            'Must start with a lowercase letter followed by lowercase letters, '
            'numbers and "_", "." and "-".'
        )
    return v


def check_url(v: str) -> str:
    if not _URL_RE.match(v):
        raise ValueError("Must be an http:// or https:// URL.")
    return v


def check_account(v: str) -> str:
    if len(v) < 3:
        raise ValueError("Must be at least 3 characters")
    if "\\" in v:
        raise ValueError("Cannot include a backslash")
    return v


# ---------------------------------------------------------------------------
# Profile model
# ---------------------------------------------------------------------------


class Profile(BaseModel):
    """One CloudAPI endpoint plus the acting principal's credential reference."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    name: str
    url: str
    account: str
    key_id: str = Field(alias="keyId")
    user: str | None = None
    act_as_account: str | None = Field(default=None, alias="actAsAccount")
    insecure: bool = False

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return check_profile_name(v)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return check_url(v)

    @field_validator("account")
    @classmethod
    def validate_account(cls, v: str) -> str:
        return check_account(v)

    @field_validator("key_id")
    @classmethod
    def validate_key_id(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("A key fingerprint is required")
        return v.strip()

    @field_validator("insecure", mode="before")
    @classmethod
    def parse_insecure(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower() not in _FALSE_STRINGS
        return v

    @property
    def is_env(self) -> bool:
        return self.name == ENV_PROFILE_NAME

    def to_json_dict(self) -> dict[str, Any]:
        """Serialize as persisted in profiles.d (camel-case keys, no name)."""
        return self.model_dump(by_alias=True, exclude_none=True, exclude={"name"})


def validate_profile(data: Mapping[str, Any] | Profile, source: str = "profile") -> Profile:
    """Validate *data* as a profile, raising ConfigError with one line per field."""
    if isinstance(data, Profile):
        data = data.model_dump(by_alias=True, exclude_none=True)
    try:
        return Profile.model_validate(dict(data))
    except ValidationError as exc:
        lines = [f"invalid {source}:"]
        for err in exc.errors():
            loc = " → ".join(str(x) for x in err["loc"]) if err["loc"] else "(root)"
            lines.append(f"  {loc}: {err['msg']}")
        raise ConfigError("\n".join(lines), cause=exc) from exc


def effective_profile(profile: Profile, overrides: Mapping[str, Any] | None = None) -> Profile:
    """Return a new profile with every non-empty override applied on top of *profile*."""
    if not overrides:
        return profile
    merged = profile.model_dump(by_alias=True, exclude_none=True)
    for key, value in overrides.items():
        if value is None or value == "":
            continue
        field = Profile.model_fields.get(key)
        merged[field.alias if field and field.alias else key] = value
    return validate_profile(merged, source=f'profile "{profile.name}"')


def env_profile(env: Mapping[str, str] | None = None, overrides: Mapping[str, Any] | None = None) -> Profile:
    """
    Synthesize the reserved "env" profile.

    Sources (highest to lowest): *overrides* (CLI options), TRITON_* vars,
    SDC_* vars.  Nothing is read from disk.
    """
    env = os.environ if env is None else env
    data: dict[str, Any] = {"name": ENV_PROFILE_NAME}
    for field, names in PROFILE_ENV_VARS.items():
        for var in names:
            if (value := env.get(var)) is not None and value != "":
                data[field] = value
                break
    for key, value in (overrides or {}).items():
        if value is None or value == "":
            continue
        field = Profile.model_fields.get(key)
        data[field.alias if field and field.alias else key] = value

    missing = [f for f in ("url", "account", "keyId") if f not in data]
    if missing:
        hints = ", ".join(f"{f} ({' or '.join(PROFILE_ENV_VARS[f])})" for f in missing)
        raise ConfigError(f'"env" profile is incomplete: missing {hints}')
    return validate_profile(data, source='"env" profile')


def profile_slug(name: str) -> str:
    """Filesystem-safe form of a profile name for per-profile artifact dirs."""
    return re.sub(r"[^A-Za-z0-9_-]", "_", name)


def portal_url_from_cloudapi_url(url: str) -> str | None:
    """Return the account portal URL for public Joyent cloud endpoints, else None."""
    if _JPC_RE.match(url):
        return PORTAL_URL
    return None


# ---------------------------------------------------------------------------
# Process-wide config
# ---------------------------------------------------------------------------


def _load_defaults() -> dict[str, Any]:
    text = resources.files("tritoncli").joinpath("etc/defaults.json").read_text(encoding="utf-8")
    return json.loads(text)


def _read_json(path: Path) -> Any:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read {path}: {exc}", cause=exc) from exc
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigError(f'"{path}" is not valid JSON: {exc}', cause=exc) from exc


def load_config(cfg_dir: Path) -> dict[str, Any]:
    """
    Load the merged process-wide config.

    Built-in defaults are overlaid with ``<cfg_dir>/config.json`` when it
    exists.  Keys in OVERRIDE_KEYS are merged one level deep (a null subkey
    deletes it); all other keys replace.  Provenance is recorded under
    ``_defaults``, ``_user`` and ``_configDir``.
    """
    defaults = _load_defaults()
    config = copy.deepcopy(defaults)

    cfg_path = cfg_dir / CONFIG_FILENAME
    if cfg_path.exists():
        user = _read_json(cfg_path)
        if not isinstance(user, dict):
            raise ConfigError(f'"{cfg_path}" is not an object')
        _merge_user_config(config, user)
        config["_user"] = user

    config["_defaults"] = defaults
    config["_configDir"] = str(cfg_dir)
    return config


def _merge_user_config(config: dict[str, Any], user: Mapping[str, Any]) -> None:
    for key, value in user.items():
        if key in OVERRIDE_KEYS and isinstance(config.get(key), dict) and isinstance(value, dict):
            merged = dict(config[key])
            for sub_key, sub_value in value.items():
                if sub_value is None:
                    merged.pop(sub_key, None)
                else:
                    merged[sub_key] = sub_value
            config[key] = merged
        else:
            config[key] = copy.deepcopy(value)


def set_config_vars(cfg_dir: Path, updates: Mapping[str, Any]) -> Path:
    """Apply *updates* to the user config.json (None removes a key) and save atomically."""
    cfg_path = cfg_dir / CONFIG_FILENAME
    user: dict[str, Any] = {}
    if cfg_path.exists():
        data = _read_json(cfg_path)
        if not isinstance(data, dict):
            raise ConfigError(f'"{cfg_path}" is not an object')
        user = data

    for key, value in updates.items():
        if key.startswith("_"):
            raise ConfigError(f'cannot set reserved config key "{key}"')
        if value is None:
            user.pop(key, None)
        else:
            user[key] = value

    user = {k: v for k, v in user.items() if not k.startswith("_")}
    write_json_atomic(cfg_path, user)
    logger.debug("updated config %s: %s", cfg_path, sorted(updates))
    return cfg_path


def write_json_atomic(path: Path, data: Any, indent: int = 4) -> Path:
    """Write *data* as JSON to a temp file beside *path*, then rename over it (0600)."""
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=indent)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        tmp_path.chmod(0o600)
        tmp_path.replace(path)
    except OSError as exc:
        tmp_path.unlink(missing_ok=True)
        raise ConfigError(f"Cannot write {path}: {exc}", cause=exc) from exc
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return path


# ---------------------------------------------------------------------------
# Profiles: load / save / delete
# ---------------------------------------------------------------------------


def _profile_path(cfg_dir: Path, name: str) -> Path:
    try:
        check_profile_name(name)
    except ValueError as exc:
        raise ConfigError(f'invalid profile name "{name}": {exc}', cause=exc) from exc
    return cfg_dir / PROFILES_DIRNAME / f"{name}.json"


def load_profile(
    cfg_dir: Path,
    name: str,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Profile:
    """Load the named profile; "env" is synthesized and never read from disk."""
    if name == ENV_PROFILE_NAME:
        return env_profile(env, overrides)

    path = _profile_path(cfg_dir, name)
    if not path.exists():
        raise ProfileNotFoundError(f'no such profile "{name}"')
    data = _read_json(path)
    if not isinstance(data, dict):
        raise ConfigError(f'"{path}" is not an object')
    data["name"] = name
    return effective_profile(validate_profile(data, source=f'profile "{name}" ({path})'), overrides)


def load_all_profiles(cfg_dir: Path) -> list[Profile]:
    """Return all valid on-disk profiles sorted by name; invalid files are logged."""
    profiles_dir = cfg_dir / PROFILES_DIRNAME
    if not profiles_dir.is_dir():
        return []

    profiles: list[Profile] = []
    for path in sorted(profiles_dir.glob("*.json")):
        name = path.stem
        if name == ENV_PROFILE_NAME:
            continue
        try:
            profiles.append(load_profile(cfg_dir, name))
        except ConfigError as exc:
            logger.warning("skipping invalid profile %s: %s", path, exc)
    return profiles


def save_profile(cfg_dir: Path, profile: Profile) -> Path:
    """Persist *profile* to profiles.d/<name>.json."""
    if profile.is_env:
        raise ConfigError(f'cannot save profile with reserved name "{ENV_PROFILE_NAME}"')
    path = write_json_atomic(_profile_path(cfg_dir, profile.name), profile.to_json_dict())
    logger.debug("saved profile %s to %s", profile.name, path)
    return path


def delete_profile(cfg_dir: Path, name: str) -> Path:
    if name == ENV_PROFILE_NAME:
        raise ConfigError(f'cannot delete profile "{ENV_PROFILE_NAME}"')
    path = _profile_path(cfg_dir, name)
    try:
        path.unlink()
    except FileNotFoundError as exc:
        raise ProfileNotFoundError(f'no such profile "{name}"', cause=exc) from exc
    return path


def profile_exists(cfg_dir: Path, name: str) -> bool:
    return name == ENV_PROFILE_NAME or _profile_path(cfg_dir, name).exists()


def set_current_profile(cfg_dir: Path, name: str) -> str:
    """
    Make *name* the current profile and return a status line.

    ``-`` selects the previous profile (``oldProfile`` in config.json).
    """
    config = load_config(cfg_dir)
    current = config.get("profile")

    if name == PREVIOUS_PROFILE_ALIAS:
        name = config.get("oldProfile") or ""
        if not name:
            raise ConfigError('"oldProfile" is not set in config')

    if not profile_exists(cfg_dir, name):
        raise ProfileNotFoundError(f'no such profile "{name}"')

    if current == name:
        return f'"{name}" is already the current profile'

    set_config_vars(cfg_dir, {"profile": name, "oldProfile": current})
    return f'Set "{name}" as current profile'
