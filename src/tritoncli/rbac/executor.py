"""
RBAC executor: apply a change plan against CloudAPI, one change at a time.

Execution stops at the first failure and raises :class:`RbacApplyError`
carrying the change; changes already applied stay applied.
"""

from __future__ import annotations

import logging
import secrets
import shutil
import string
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from rich.console import Console

from tritoncli.cloudapi.client import CloudApi
from tritoncli.core.config import Profile, save_profile, validate_profile
from tritoncli.core.constants import RBAC_USER_KEY_BITS, RBAC_USER_KEYS_DIRNAME
from tritoncli.core.exceptions import ConfigError, InternalError, TritonError
from tritoncli.core.prompt import Outcome, confirm
from tritoncli.rbac.model import RbacConfig, UserKey
from tritoncli.rbac.planner import Change

logger = logging.getLogger(__name__)

_PASSWORD_ALPHABET = string.ascii_letters + string.digits


class RbacApplyError(TritonError):
    """A change in the plan failed; ``change`` is the failing change."""

    def __init__(self, change: Change, cause: BaseException) -> None:
        detail = cause.message if isinstance(cause, TritonError) else str(cause)
        super().__init__(
            f"could not {change.action} {change.desc or change.type} {change.id}: {detail}",
            cause=cause,
            status_code=getattr(cause, "status_code", None),
        )
        self.change = change
        if isinstance(cause, TritonError):
            self.code = cause.code
            self.exit_status = cause.exit_status


def generate_password(length: int = 20) -> str:
    """Throw-away password for new users; CloudAPI requires letters and digits."""
    while True:
        pw = "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))
        if any(c.isdigit() for c in pw) and any(c.isalpha() for c in pw):
            return pw


def print_plan(plan: Sequence[Change], console: Console) -> None:
    console.print()
    console.print("This will make the following RBAC config changes:")
    for change in plan:
        console.print(f"    {change.summary()}", markup=False)
    console.print()


def confirm_plan(plan: Sequence[Change], console: Console, dry_run: bool = False, yes: bool = False) -> Outcome:
    """List *plan* and ask to continue; an empty plan or *yes* skips the question."""
    if not plan or yes:
        return Outcome.DONE
    print_plan(plan, console)
    question = f"Would you like to continue{' (dry-run)' if dry_run else ''}?"
    if not confirm(console, question):
        console.print("Aborting update")
        return Outcome.ABORTED
    console.print()
    return Outcome.DONE


class RbacExecutor:
    """Runs a plan sequentially, printing one progress line per change."""

    def __init__(
        self,
        cloudapi: CloudApi,
        config: RbacConfig,
        console: Console,
        dry_run: bool = False,
        cfg_dir: Path | None = None,
        home_dir: Path | None = None,
        current_profile: Profile | None = None,
    ) -> None:
        self.cloudapi = cloudapi
        self.config = config
        self.console = console
        self.dry_run = dry_run
        self.cfg_dir = cfg_dir
        self.home_dir = home_dir or Path.home()
        self.current_profile = current_profile

    def execute(self, plan: Sequence[Change]) -> None:
        for change in plan:
            logger.info("execute rbac change %s (dry_run=%s)", change.summary(), self.dry_run)
            if self.dry_run:
                self._print(f"[dry-run] {change.action} {change.desc or change.type} {change.id}")
                continue
            handler = getattr(self, f"_{change.action}_{change.type}", None)
            if handler is None:
                raise InternalError(f"unknown action-type: {change.action}-{change.type}")
            try:
                handler(change)
            except (TritonError, OSError, ValueError, subprocess.SubprocessError) as exc:
                raise RbacApplyError(change, exc) from exc

    def _print(self, line: str) -> None:
        self.console.print(line, markup=False, highlight=False)

    # -----------------------------------------------------------------------
    # Users
    # -----------------------------------------------------------------------

    def _create_user(self, c: Change) -> None:
        fields = dict(c.want or {})
        fields.pop("keys", None)
        if not fields.get("password"):
            fields["password"] = generate_password()
        self.cloudapi.create_user(**fields)
        login = fields["login"]
        self._print(f"Created user {login} (use `triton rbac passwd {login}` to change password)")

    def _update_user(self, c: Change) -> None:
        want = c.want or {}
        fields = {f: want.get(f) for f in c.diff or {}}
        self.cloudapi.update_user(c.id, **fields)
        extra = ", ".join(f"{f}={v}" for f, v in fields.items())
        self._print(f"Updated user {c.id}: {extra}")

    def _delete_user(self, c: Change) -> None:
        self.cloudapi.delete_user(c.id)
        self._print(f"Deleted user {c.id}")

    # -----------------------------------------------------------------------
    # Keys
    # -----------------------------------------------------------------------

    def _create_key(self, c: Change) -> None:
        want = c.want or {}
        key = self.cloudapi.create_user_key(c.user, want["key"], name=want.get("name"))
        self._print(f"Created user {c.user} key {key.get('fingerprint', c.id)}{_name_suffix(key)}")

    def _delete_key(self, c: Change) -> None:
        self.cloudapi.delete_user_key(c.user, c.id)
        self._print(f"Deleted user {c.user} key {c.id}")

    def _generate_key(self, c: Change) -> None:
        if self.current_profile is None or self.cfg_dir is None:
            raise ConfigError("generating user keys requires a current profile and config dir")
        login = c.user
        key_name = f"{self.current_profile.name} user {login}"
        key_path = self.home_dir / ".ssh" / f"{self.current_profile.name}-user-{login}.id_rsa"
        pub_path = key_path.with_name(key_path.name + ".pub")
        self._print(f"Generating and adding new SSH key for user {login}:")

        key_path.unlink(missing_ok=True)
        pub_path.unlink(missing_ok=True)
        key_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        ssh_keygen = shutil.which("ssh-keygen") or "ssh-keygen"
        self._print(f"    Generate {RBAC_USER_KEY_BITS} bit RSA key: {key_path}[.pub]")
        cmd = [ssh_keygen, "-t", "rsa", "-m", "PEM", "-C", key_name, "-f", str(key_path),
               "-b", str(RBAC_USER_KEY_BITS), "-N", ""]
        logger.debug("running %s", " ".join(cmd))
        subprocess.run(cmd, check=True, capture_output=True)
        pub_content = pub_path.read_text(encoding="utf-8")

        keys_dir = self.cfg_dir / RBAC_USER_KEYS_DIRNAME
        keys_dir.mkdir(parents=True, exist_ok=True)
        config_key_path = keys_dir / f"{login}.pub"
        self._print(f"    Copy pubkey to {config_key_path}")
        config_key_path.write_text(pub_content, encoding="utf-8")

        key = self.cloudapi.create_user_key(login, pub_content.strip(), name=key_name)
        self._print(f"    Created user {login} key {key.get('fingerprint')}{_name_suffix(key)}")

        user = self.config.user(login)
        if user is not None:
            user.keys = [UserKey(fingerprint=key.get("fingerprint"), name=key_name, key=pub_content.strip())]

    # -----------------------------------------------------------------------
    # Policies
    # -----------------------------------------------------------------------

    def _create_policy(self, c: Change) -> None:
        want = c.want or {}
        rules = want.get("rules") or []
        self.cloudapi.create_policy(want["name"], rules, description=want.get("description"))
        self._print(f"Created policy {c.id} ({len(rules)} rule{'' if len(rules) == 1 else 's'})")

    def _update_policy(self, c: Change) -> None:
        want = c.want or {}
        fields: dict[str, Any] = {}
        extra = []
        for f in c.diff or {}:
            value = want.get(f)
            if f == "description" and value is None:
                value = ""
            fields[f] = value
            shown = ";".join(value) if f == "rules" else value
            extra.append(f"{f}={shown}")
        self.cloudapi.update_policy((c.have or {}).get("id", c.id), **fields)
        self._print(f"Updated policy {c.id}: {', '.join(extra)}")

    def _delete_policy(self, c: Change) -> None:
        self.cloudapi.delete_policy((c.have or {}).get("id", c.id))
        self._print(f"Deleted policy {c.id}")

    # -----------------------------------------------------------------------
    # Roles
    # -----------------------------------------------------------------------

    def _create_role(self, c: Change) -> None:
        want = c.want or {}
        members = want.get("members") or []
        self.cloudapi.create_role(
            want["name"],
            members=members,
            default_members=want.get("default_members") or [],
            policies=want.get("policies") or [],
        )
        self._print(f"Created role {c.id} ({len(members)} member{'' if len(members) == 1 else 's'})")

    def _update_role(self, c: Change) -> None:
        want = c.want or {}
        fields = {f: want.get(f) or [] for f in c.diff or {}}
        self.cloudapi.update_role(c.id, **fields)
        extra = ", ".join(f"{f}={','.join(v)}" for f, v in fields.items())
        self._print(f"Updated role {c.id}: {extra}")

    def _delete_role(self, c: Change) -> None:
        self.cloudapi.delete_role((c.have or {}).get("id", c.id))
        self._print(f"Deleted role {c.id}")

    # -----------------------------------------------------------------------
    # Profiles
    # -----------------------------------------------------------------------

    def _save_profile(self, c: Change) -> Profile:
        if self.cfg_dir is None:
            raise ConfigError("saving profiles requires a config dir")
        want = dict(c.want or {})
        if not want.get("keyId"):
            user = self.config.user(c.user or "")
            if user is None or not user.keys:
                raise ConfigError(f'no key for user "{c.user}" to use in profile "{c.id}"')
            want["keyId"] = user.keys[0].fingerprint
        profile = validate_profile(want, source=f'profile "{c.id}"')
        save_profile(self.cfg_dir, profile)
        return profile

    def _create_profile(self, c: Change) -> None:
        profile = self._save_profile(c)
        self._print(f'Created profile "{profile.name}"')

    def _update_profile(self, c: Change) -> None:
        profile = self._save_profile(c)
        self._print(f'Updated profile "{profile.name}"')


def _name_suffix(key: dict[str, Any]) -> str:
    return f" ({key['name']})" if key.get("name") else ""
