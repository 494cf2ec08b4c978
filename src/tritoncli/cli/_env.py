"""triton env — emit shell commands for a profile's client environment."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from rich.console import Console

from tritoncli.certs.setup import load_docker_setup
from tritoncli.core.config import Profile
from tritoncli.core.constants import ENV_PROFILE
from tritoncli.core.exceptions import SetupError

if TYPE_CHECKING:
    from tritoncli.cli.main import CliContext

logger = logging.getLogger(__name__)

_DOCKER_VARS = ("DOCKER_HOST", "DOCKER_CERT_PATH", "DOCKER_TLS_VERIFY", "COMPOSE_HTTP_TIMEOUT", "DOCKER_CLIENT_TIMEOUT")
_SMARTDC_VARS = ("SDC_URL", "SDC_ACCOUNT", "SDC_USER", "SDC_KEY_ID", "SDC_TESTING")


def _export(name: str, value: object) -> str:
    return f'export {name}="{value}"'


def triton_lines(profile: Profile, unset: bool) -> list[str]:
    if unset:
        return [f"unset {ENV_PROFILE}"]
    return [_export(ENV_PROFILE, profile.name)]


def smartdc_lines(profile: Profile, unset: bool) -> list[str]:
    if unset:
        return [f"unset {name}" for name in _SMARTDC_VARS]
    lines = [_export("SDC_URL", profile.url), _export("SDC_ACCOUNT", profile.account)]
    lines.append(_export("SDC_USER", profile.user) if profile.user else "unset SDC_USER")
    lines.append(_export("SDC_KEY_ID", profile.key_id))
    lines.append(_export("SDC_TESTING", "true") if profile.insecure else "unset SDC_TESTING")
    return lines


def docker_lines(cli_ctx: CliContext, profile: Profile, unset: bool, explicit: bool) -> list[str]:
    if unset:
        return [f"unset {name}" for name in _DOCKER_VARS]
    try:
        setup = load_docker_setup(cli_ctx.cfg_dir, profile.name)
    except SetupError:
        if explicit:
            raise
        logger.debug("no docker setup for profile %s", profile.name)
        return [f'# docker: not set up for profile "{profile.name}" (run `triton profile docker-setup`)']
    lines = []
    for name, value in sorted((setup.get("env") or {}).items()):
        lines.append(f"unset {name}" if value is None else _export(name, value))
    return lines


def cmd_env(
    cli_ctx: CliContext,
    profile_name: str | None,
    triton: bool,
    docker: bool,
    smartdc: bool,
    unset: bool,
    console: Console,
) -> None:
    """Print export/unset lines; with no section flags all sections are emitted."""
    profile = cli_ctx.profile(profile_name)
    all_sections = not (triton or docker or smartdc)

    lines: list[str] = []
    if triton or all_sections:
        lines += triton_lines(profile, unset)
    if docker or all_sections:
        lines += docker_lines(cli_ctx, profile, unset, explicit=docker)
    if smartdc or all_sections:
        lines += smartdc_lines(profile, unset)

    flags = "".join(
        flag for flag, on in (("t", triton), ("d", docker), ("s", smartdc), ("u", unset)) if on
    )
    lines.append("# Run this command to configure your shell:")
    lines.append(f'#     eval "$(triton env{" -" + flags if flags else ""} {profile.name})"')
    for line in lines:
        console.print(line, markup=False, highlight=False, soft_wrap=True)
