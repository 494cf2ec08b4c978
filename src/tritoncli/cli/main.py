"""
triton CLI entry point.

Commands:
  triton env [PROFILE]            — emit shell exports for a profile
  triton profile list             — list profiles
  triton profile get [NAME]       — show a profile
  triton profile create           — create a profile (interactive, --file or --copy)
  triton profile delete NAME...   — delete profiles
  triton profile set-current NAME — switch the current profile ("-" for previous)
  triton profile docker-setup     — issue Docker client certificates for a profile
  triton profile cmon-certgen     — issue CMON client certificates
  triton rbac info                — summarize the account's RBAC state
  triton rbac apply               — reconcile RBAC state with rbac.json
  triton rbac reset               — delete all RBAC users, policies and roles
  triton rbac user delete LOGIN.. — delete RBAC users
  triton rbac key delete USER FP..— delete RBAC user keys
  triton rbac role-tags RESOURCE  — set role tags on a resource
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any

import click
from rich.console import Console

from tritoncli import __version__
from tritoncli.core.exceptions import TritonError

console = Console()
err_console = Console(stderr=True)


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


class CliContext:
    """Global options plus lazily resolved config, profile and CloudAPI client."""

    def __init__(
        self,
        cfg_dir: Path,
        profile_name: str | None = None,
        overrides: dict[str, Any] | None = None,
        roles: tuple[str, ...] = (),
    ) -> None:
        self.cfg_dir = cfg_dir
        self.profile_name = profile_name
        self.overrides = overrides or {}
        self.roles = roles
        self._config: dict[str, Any] | None = None
        self._cloudapis: dict[str, Any] = {}

    @property
    def config(self) -> dict[str, Any]:
        from tritoncli.core.config import load_config

        if self._config is None:
            self._config = load_config(self.cfg_dir)
        return self._config

    def current_profile_name(self) -> str:
        from tritoncli.core.constants import ENV_PROFILE, ENV_PROFILE_NAME

        return self.profile_name or os.environ.get(ENV_PROFILE) or self.config.get("profile") or ENV_PROFILE_NAME

    def profile(self, name: str | None = None):
        """Load *name* (default: the current profile); CLI overrides apply to the current one."""
        from tritoncli.core.config import load_profile

        current = self.current_profile_name()
        name = name or current
        return load_profile(self.cfg_dir, name, overrides=self.overrides if name == current else None)

    def cloudapi(self, profile=None):
        from tritoncli.cloudapi.client import cloudapi_from_profile
        from tritoncli.core.prompt import ask_passphrase

        profile = profile or self.profile()
        if profile.name not in self._cloudapis:

            def unlock(pair) -> str:
                label = f" ({pair.comment})" if pair.comment else ""
                return ask_passphrase(err_console, f"Enter passphrase for key {pair.fingerprint}{label}")

            api = cloudapi_from_profile(profile, roles=self.roles, unlock=unlock)
            self._cloudapis[profile.name] = api
            click.get_current_context().call_on_close(api.close)
        return self._cloudapis[profile.name]


pass_cli = click.make_pass_decorator(CliContext)


def report_error(exc: TritonError) -> None:
    err_console.print(f"triton: error ({exc.code}): {exc.message}", markup=False, highlight=False)


class TritonGroup(click.Group):
    """Maps TritonError to ``triton: error (<code>): <message>`` and its exit status."""

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except TritonError as exc:
            report_error(exc)
            ctx.exit(int(exc.exit_status))


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group(cls=TritonGroup, context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, "--version", "-V", message="triton %(version)s")
@click.option("--profile", "-p", "profile_name", default=None, help="Profile to use (default: current profile)")
@click.option("--url", "-U", default=None, help="CloudAPI URL (overrides the profile)")
@click.option("--account", "-a", default=None, help="Account login (overrides the profile)")
@click.option("--user", "-u", default=None, help="RBAC sub-user login (overrides the profile)")
@click.option("--key-id", "-k", default=None, help="SSH key fingerprint (overrides the profile)")
@click.option("--insecure", "-i", is_flag=True, default=False, help="Do not validate the CloudAPI TLS certificate")
@click.option("--act-as", "act_as", default=None, help="Masquerade as the given account (operators only)")
@click.option("--role", "-r", "roles", multiple=True, help="Assume an RBAC role (repeatable)")
@click.option("--config-dir", "-J", default=None, help="Config dir (default: $TRITON_CONFIG_DIR or ~/.triton)")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Debug logging to stderr")
@click.pass_context
def cli(
    ctx: click.Context,
    profile_name: str | None,
    url: str | None,
    account: str | None,
    user: str | None,
    key_id: str | None,
    insecure: bool,
    act_as: str | None,
    roles: tuple[str, ...],
    config_dir: str | None,
    verbose: bool,
) -> None:
    """Manage profiles, credentials and RBAC on a Triton cloud."""
    from tritoncli.core.config import config_dir as resolve_config_dir
    from tritoncli.core.log import configure_logging

    configure_logging(verbose)
    overrides = {
        "url": url,
        "account": account,
        "user": user,
        "key_id": key_id,
        "insecure": True if insecure else None,
        "act_as_account": act_as,
    }
    ctx.obj = CliContext(
        cfg_dir=resolve_config_dir(config_dir),
        profile_name=profile_name,
        overrides={k: v for k, v in overrides.items() if v is not None},
        roles=tuple(r for spec in roles for r in spec.split(",") if r),
    )


# ---------------------------------------------------------------------------
# env
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("profile_name", metavar="[PROFILE]", required=False)
@click.option("--triton", "-t", is_flag=True, default=False, help="Emit TRITON_PROFILE for the triton CLI")
@click.option("--docker", "-d", is_flag=True, default=False, help="Emit Docker client environment")
@click.option("--smartdc", "-s", is_flag=True, default=False, help="Emit SDC_* environment for node-smartdc")
@click.option("--unset", "-u", is_flag=True, default=False, help="Emit commands to unset the environment")
@pass_cli
def env(cli_ctx: CliContext, profile_name: str | None, triton: bool, docker: bool, smartdc: bool, unset: bool) -> None:
    """Emit shell commands to set up clients for a profile."""
    from tritoncli.cli._env import cmd_env

    cmd_env(
        cli_ctx,
        profile_name=profile_name,
        triton=triton,
        docker=docker,
        smartdc=smartdc,
        unset=unset,
        console=console,
    )


# ---------------------------------------------------------------------------
# profile
# ---------------------------------------------------------------------------


@cli.group()
def profile() -> None:
    """Manage CLI profiles."""


@profile.command("list")
@click.option("--json", "as_json", is_flag=True, default=False)
@pass_cli
def profile_list(cli_ctx: CliContext, as_json: bool) -> None:
    """List profiles."""
    from tritoncli.cli._profile import cmd_profile_list

    cmd_profile_list(cli_ctx, as_json=as_json, console=console)


@profile.command("get")
@click.argument("name", required=False)
@click.option("--json", "as_json", is_flag=True, default=False)
@pass_cli
def profile_get(cli_ctx: CliContext, name: str | None, as_json: bool) -> None:
    """Show a profile (default: the current one)."""
    from tritoncli.cli._profile import cmd_profile_get

    cmd_profile_get(cli_ctx, name=name, as_json=as_json, console=console)


@profile.command("create")
@click.option("--file", "-f", "file", default=None, help='Profile JSON file ("-" for stdin)')
@click.option("--copy", "copy_name", default=None, help="Use an existing profile's values as defaults")
@click.option("--no-docker", is_flag=True, default=False, help="Skip Docker setup")
@click.option("--yes", "-y", is_flag=True, default=False, help="Answer yes to confirmations")
@pass_cli
def profile_create(cli_ctx: CliContext, file: str | None, copy_name: str | None, no_docker: bool, yes: bool) -> None:
    """Create a profile."""
    from tritoncli.cli._profile import cmd_profile_create

    cmd_profile_create(cli_ctx, file=file, copy_name=copy_name, no_docker=no_docker, yes=yes, console=console)


@profile.command("delete")
@click.argument("names", nargs=-1, required=True)
@click.option("--force", "-f", is_flag=True, default=False, help="Do not ask for confirmation")
@pass_cli
def profile_delete(cli_ctx: CliContext, names: tuple[str, ...], force: bool) -> None:
    """Delete one or more profiles."""
    from tritoncli.cli._profile import cmd_profile_delete

    cmd_profile_delete(cli_ctx, names=list(names), force=force, console=console)


@profile.command("set-current")
@click.argument("name")
@pass_cli
def profile_set_current(cli_ctx: CliContext, name: str) -> None:
    """Set the current profile ("-" switches to the previous one)."""
    from tritoncli.cli._profile import cmd_profile_set_current

    cmd_profile_set_current(cli_ctx, name=name, console=console)


@profile.command("docker-setup")
@click.argument("name", required=False)
@click.option("--yes", "-y", is_flag=True, default=False, help="Overwrite existing certificates")
@click.option("--lifetime", "-t", type=int, default=None, help="Certificate lifetime in days")
@pass_cli
def profile_docker_setup(cli_ctx: CliContext, name: str | None, yes: bool, lifetime: int | None) -> None:
    """Set up a profile for the Triton Docker service."""
    from tritoncli.cli._profile import cmd_profile_docker_setup

    cmd_profile_docker_setup(cli_ctx, name=name, yes=yes, lifetime=lifetime, console=console)


@profile.command("cmon-certgen")
@click.argument("name", required=False)
@click.option("--yes", "-y", is_flag=True, default=False, help="Overwrite existing files")
@click.option("--lifetime", "-t", type=int, default=None, help="Certificate lifetime in days")
@click.option("--dest", "-d", default=".", show_default=True, help="Output directory")
@pass_cli
def profile_cmon_certgen(
    cli_ctx: CliContext, name: str | None, yes: bool, lifetime: int | None, dest: str
) -> None:
    """Generate a client certificate for Container Monitor (CMON)."""
    from tritoncli.cli._profile import cmd_profile_cmon_certgen

    cmd_profile_cmon_certgen(cli_ctx, name=name, yes=yes, lifetime=lifetime, dest=dest, console=console)


# ---------------------------------------------------------------------------
# rbac
# ---------------------------------------------------------------------------


@cli.group()
def rbac() -> None:
    """Role-based access control: users, keys, policies and roles."""


@rbac.command("info")
@click.option("--json", "as_json", is_flag=True, default=False)
@pass_cli
def rbac_info(cli_ctx: CliContext, as_json: bool) -> None:
    """Summarize the account's RBAC users, policies and roles."""
    from tritoncli.cli._rbac import cmd_rbac_info

    cmd_rbac_info(cli_ctx, as_json=as_json, console=console)


@rbac.command("apply")
@click.option("--file", "-f", "file", default=None, help="RBAC config JSON or YAML file (default: ./rbac.json)")
@click.option("--dry-run", "-n", is_flag=True, default=False, help="Show what would be done without doing it")
@click.option("--yes", "-y", is_flag=True, default=False, help="Answer yes to confirmation")
@click.option(
    "--dev-create-keys-and-profiles",
    is_flag=True,
    default=False,
    help="Generate keys for users without any and create a profile per user (development only)",
)
@click.option("--wait", "-w", is_flag=True, default=False, help="Wait until the account state matches the file")
@pass_cli
def rbac_apply(
    cli_ctx: CliContext, file: str | None, dry_run: bool, yes: bool, dev_create_keys_and_profiles: bool, wait: bool
) -> None:
    """Apply an RBAC configuration."""
    from tritoncli.cli._rbac import cmd_rbac_apply

    cmd_rbac_apply(
        cli_ctx,
        file=file,
        dry_run=dry_run,
        yes=yes,
        dev_create_keys_and_profiles=dev_create_keys_and_profiles,
        wait=wait,
        console=console,
    )


@rbac.command("reset")
@click.option("--dry-run", "-n", is_flag=True, default=False, help="Show what would be done without doing it")
@click.option("--yes", "-y", is_flag=True, default=False, help="Answer yes to confirmation")
@pass_cli
def rbac_reset(cli_ctx: CliContext, dry_run: bool, yes: bool) -> None:
    """Delete all RBAC users, keys, policies and roles."""
    from tritoncli.cli._rbac import cmd_rbac_reset

    cmd_rbac_reset(cli_ctx, dry_run=dry_run, yes=yes, console=console)


@rbac.group("user")
def rbac_user() -> None:
    """RBAC users."""


@rbac_user.command("delete")
@click.argument("logins", nargs=-1, required=True)
@click.option("--yes", "-y", is_flag=True, default=False, help="Answer yes to confirmation")
@pass_cli
def rbac_user_delete(cli_ctx: CliContext, logins: tuple[str, ...], yes: bool) -> None:
    """Delete one or more RBAC users."""
    from tritoncli.cli._rbac import cmd_rbac_user_delete

    cmd_rbac_user_delete(cli_ctx, logins=list(logins), yes=yes, console=console)


@rbac.group("key")
def rbac_key() -> None:
    """RBAC user keys."""


@rbac_key.command("delete")
@click.argument("user")
@click.argument("fingerprints", nargs=-1, required=True)
@click.option("--yes", "-y", is_flag=True, default=False, help="Answer yes to confirmation")
@pass_cli
def rbac_key_delete(cli_ctx: CliContext, user: str, fingerprints: tuple[str, ...], yes: bool) -> None:
    """Delete one or more keys of an RBAC user."""
    from tritoncli.cli._rbac import cmd_rbac_key_delete

    cmd_rbac_key_delete(cli_ctx, user=user, fingerprints=list(fingerprints), yes=yes, console=console)


@rbac.command("role-tags")
@click.argument("resource")
@click.argument("tags", nargs=-1)
@click.option("--clear", is_flag=True, default=False, help="Remove all role tags")
@pass_cli
def rbac_role_tags(cli_ctx: CliContext, resource: str, tags: tuple[str, ...], clear: bool) -> None:
    """Set the role tags on a resource, e.g. /<account>/machines/<id>."""
    from tritoncli.cli._rbac import cmd_rbac_role_tags

    cmd_rbac_role_tags(cli_ctx, resource=resource, tags=list(tags), clear=clear, console=console)


def main() -> None:
    """Console-script entry point."""
    try:
        cli(prog_name="triton")
    except TritonError as exc:
        report_error(exc)
        sys.exit(int(exc.exit_status))


if __name__ == "__main__":
    main()
