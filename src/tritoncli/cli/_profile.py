"""triton profile — list, show, create, delete and set up profiles."""

from __future__ import annotations

import json
import shutil
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

from rich.console import Console

from tritoncli.auth.keyring import KeyPair, KeyRing
from tritoncli.auth.sshkey import key_size, normalize_fingerprint
from tritoncli.certs.setup import cmon_certgen, docker_cert_dir, docker_setup
from tritoncli.core.config import (
    Profile,
    check_account,
    check_profile_name,
    check_url,
    delete_profile,
    env_profile,
    load_all_profiles,
    profile_exists,
    save_profile,
    set_config_vars,
    set_current_profile,
    validate_profile,
)
from tritoncli.core.constants import DEFAULT_CERT_LIFETIME_DAYS, DEFAULT_CLOUDAPI_URL, ENV_PROFILE_NAME
from tritoncli.core.exceptions import ConfigError, TritonError, UsageError
from tritoncli.core.prompt import Outcome, PromptField, confirm, run_prompts

if TYPE_CHECKING:
    from tritoncli.cli.main import CliContext


# ---------------------------------------------------------------------------
# list / get
# ---------------------------------------------------------------------------


def _listed_profiles(cli_ctx: CliContext) -> list[Profile]:
    profiles = load_all_profiles(cli_ctx.cfg_dir)
    try:
        profiles.insert(0, env_profile())
    except ConfigError:
        pass  # incomplete env profile is simply not listed
    return profiles


def _row(profile: Profile, current: str) -> dict[str, Any]:
    return {
        "name": profile.name,
        "curr": profile.name == current,
        "account": profile.account,
        "user": profile.user,
        "url": profile.url,
        "keyId": profile.key_id,
        "insecure": profile.insecure,
    }


def cmd_profile_list(cli_ctx: CliContext, as_json: bool, console: Console) -> None:
    current = cli_ctx.current_profile_name()
    rows = [_row(p, current) for p in _listed_profiles(cli_ctx)]
    if as_json:
        for row in rows:
            print(json.dumps(row))
        return

    headers = ("NAME", "CURR", "ACCOUNT", "USER", "URL")
    table = [headers] + [
        (r["name"], "*" if r["curr"] else "", r["account"], r["user"] or "-", r["url"]) for r in rows
    ]
    widths = [max(len(str(row[i])) for row in table) for i in range(len(headers))]
    for row in table:
        console.print("  ".join(str(v).ljust(w) for v, w in zip(row, widths)).rstrip(), markup=False)


def cmd_profile_get(cli_ctx: CliContext, name: str | None, as_json: bool, console: Console) -> None:
    profile = cli_ctx.profile(name)
    data = profile.model_dump(by_alias=True, exclude_none=True)
    if as_json:
        print(json.dumps(data, indent=4))
        return
    data["curr"] = profile.name == cli_ctx.current_profile_name()
    for key, value in data.items():
        console.print(f"{key}: {value}", markup=False, highlight=False)


# ---------------------------------------------------------------------------
# create
# ---------------------------------------------------------------------------


def _read_profile_file(file: str) -> dict[str, Any]:
    try:
        text = sys.stdin.read() if file == "-" else Path(file).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f'could not read profile file "{file}": {exc}', cause=exc) from exc
    try:
        data = json.loads(text)
    except ValueError as exc:
        source = "stdin" if file == "-" else f'"{file}"'
        raise ConfigError(f"profile data from {source} is not valid JSON: {exc}", cause=exc) from exc
    if not isinstance(data, dict):
        raise ConfigError(f'profile data from "{file}" is not an object')
    return data


def describe_key_choices(key_ring: KeyRing, console: Console) -> dict[str, str]:
    """Print the numbered list of usable keys and return ``{index: fingerprint}``."""
    by_fp: dict[str, list[KeyPair]] = {}
    for pair in key_ring.list():
        by_fp.setdefault(pair.fingerprint, []).append(pair)

    choices: dict[str, str] = {}
    console.print("Available SSH keys:")
    for fp, pairs in by_fp.items():
        index = str(len(choices) + 1)
        first = pairs[0]
        console.print(
            f" {index}. {key_size(first.public_key)}-bit {first.info.kind.upper()} key with fingerprint {fp}",
            markup=False,
        )
        for pair in pairs:
            locked = " [locked]" if pair.locked else ""
            console.print(f"  * [in {pair.plugin}] {pair.comment} {pair.source}{locked}", markup=False)
        console.print()
        choices[index] = fp
    return choices


def _profile_fields(cli_ctx: CliContext, defaults: dict[str, Any], key_choices: dict[str, str]) -> list[PromptField]:
    existing = {p.name for p in load_all_profiles(cli_ctx.cfg_dir)} | {ENV_PROFILE_NAME}

    def check_name(value: str, _values: dict[str, Any]) -> str:
        check_profile_name(value)
        if value in existing:
            raise ValueError(f'Profile "{value}" already exists.')
        return value

    def check_key_id(value: str, _values: dict[str, Any]) -> str:
        try:
            normalize_fingerprint(value)
            return value
        except ValueError:
            pass
        if value in key_choices:
            return key_choices[value]
        raise ValueError(f'"{value}" is neither a valid fingerprint, nor an index from the list of available keys')

    return [
        PromptField(
            "name",
            "Profile name",
            None,
            check_name,
            hint="A profile name. A short string to identify a CloudAPI endpoint to the `triton` CLI.",
        ),
        PromptField(
            "url",
            "CloudAPI URL",
            defaults.get("url") or DEFAULT_CLOUDAPI_URL,
            lambda value, _values: check_url(value),
        ),
        PromptField(
            "account",
            "Account",
            defaults.get("account"),
            lambda value, _values: check_account(value),
            hint="Your account login name.",
        ),
        PromptField(
            "keyId",
            "Key fingerprint or index",
            defaults.get("keyId"),
            check_key_id,
            hint=(
                "The fingerprint of the SSH key you want to use, or its index in the list above. "
                "If the key you want is not listed, make sure it is in your SSH keys directory or "
                "loaded into the SSH agent."
            ),
        ),
    ]


def cmd_profile_create(
    cli_ctx: CliContext,
    file: str | None,
    copy_name: str | None,
    no_docker: bool,
    yes: bool,
    console: Console,
) -> None:
    had_profiles = bool(load_all_profiles(cli_ctx.cfg_dir))

    if file:
        data = _read_profile_file(file)
        source = "stdin" if file == "-" else f'"{file}"'
    else:
        if not sys.stdin.isatty():
            raise UsageError("cannot interactively create profile: stdin is not a TTY")
        defaults: dict[str, Any] = {}
        if copy_name:
            defaults = cli_ctx.profile(copy_name).model_dump(by_alias=True, exclude_none=True)
            defaults.pop("name", None)
        key_ring = KeyRing()
        choices = describe_key_choices(key_ring, console)
        # Fields we do not prompt for are carried over from the copied profile.
        data = {**defaults, **run_prompts(_profile_fields(cli_ctx, defaults, choices), console)}
        source = "profile"

    name = data.get("name")
    if name and profile_exists(cli_ctx.cfg_dir, name):
        raise ConfigError(f'profile "{name}" already exists')
    data.pop("curr", None)
    profile = validate_profile(data, source=source)
    path = save_profile(cli_ctx.cfg_dir, profile)
    console.print(f'Saved profile "{profile.name}" to {path}', markup=False)

    if not no_docker:
        try:
            docker_setup(
                profile, cli_ctx.cloudapi(profile), cli_ctx.cfg_dir, console, implicit=True, yes=yes
            )
        except TritonError as exc:
            console.print(
                f"[yellow]Warning: Docker setup for profile \"{profile.name}\" failed: {exc.message}[/yellow]\n"
                f"    Run `triton profile docker-setup {profile.name}` to retry."
            )

    if not had_profiles:
        set_config_vars(cli_ctx.cfg_dir, {"profile": profile.name})
        console.print(f'\nSet "{profile.name}" as current profile (because it is your only profile).')


# ---------------------------------------------------------------------------
# delete / set-current
# ---------------------------------------------------------------------------


def cmd_profile_delete(cli_ctx: CliContext, names: list[str], force: bool, console: Console) -> None:
    current = cli_ctx.current_profile_name()
    for name in names:
        if name == ENV_PROFILE_NAME:
            raise UsageError(f'cannot delete profile "{ENV_PROFILE_NAME}"')
        if not force and not confirm(console, f'Delete profile "{name}"?'):
            console.print("Aborting")
            continue
        delete_profile(cli_ctx.cfg_dir, name)
        cert_dir = docker_cert_dir(cli_ctx.cfg_dir, name)
        if cert_dir.exists():
            shutil.rmtree(cert_dir)
        if name == current:
            set_config_vars(cli_ctx.cfg_dir, {"profile": ENV_PROFILE_NAME})
            console.print(f'Set "{ENV_PROFILE_NAME}" as current profile (because you deleted the current one).')
        console.print(f'Deleted profile "{name}"')


def cmd_profile_set_current(cli_ctx: CliContext, name: str, console: Console) -> None:
    console.print(set_current_profile(cli_ctx.cfg_dir, name))


# ---------------------------------------------------------------------------
# docker-setup / cmon-certgen
# ---------------------------------------------------------------------------


def cmd_profile_docker_setup(
    cli_ctx: CliContext, name: str | None, yes: bool, lifetime: int | None, console: Console
) -> None:
    profile = cli_ctx.profile(name)
    outcome = docker_setup(
        profile,
        cli_ctx.cloudapi(profile),
        cli_ctx.cfg_dir,
        console,
        yes=yes,
        lifetime_days=lifetime or DEFAULT_CERT_LIFETIME_DAYS,
    )
    if outcome is Outcome.ABORTED:
        sys.exit(1)


def cmd_profile_cmon_certgen(
    cli_ctx: CliContext, name: str | None, yes: bool, lifetime: int | None, dest: str, console: Console
) -> None:
    profile = cli_ctx.profile(name)
    out_dir = Path(dest).expanduser()
    if not out_dir.is_dir():
        raise UsageError(f'"{dest}" is not a directory')
    outcome = cmon_certgen(
        profile,
        cli_ctx.cloudapi(profile),
        console,
        out_dir,
        yes=yes,
        lifetime_days=lifetime or DEFAULT_CERT_LIFETIME_DAYS,
    )
    if outcome is Outcome.ABORTED:
        sys.exit(1)
