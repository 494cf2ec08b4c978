"""Docker and CMON client-certificate setup flows for a profile."""

from __future__ import annotations

import datetime
import json
import logging
import os
import re
import shutil
import subprocess
from pathlib import Path
from typing import Any

import httpx
from rich.console import Console

from tritoncli.certs.issuer import CMON_PURPOSES, DOCKER_PURPOSES, IssuedCert, generate_client_cert
from tritoncli.cloudapi.client import CloudApi
from tritoncli.core.config import Profile, profile_slug, write_json_atomic
from tritoncli.core.constants import (
    DEFAULT_CERT_LIFETIME_DAYS,
    DEFAULT_CONNECT_TIMEOUT,
    DOCKER_COMPOSE_TIMEOUT_MIN_VERSION,
    DOCKER_DIRNAME,
    DOCKER_SETUP_FILENAME,
    DOCKER_TIMEOUT_SECONDS,
)
from tritoncli.core.exceptions import AuthError, CloudApiError, SetupError
from tritoncli.core.prompt import Outcome, confirm

logger = logging.getLogger(__name__)

_DOCKER_VERSION_RE = re.compile(r"^Docker version (.*?), build")


def docker_cert_dir(cfg_dir: Path, profile_name: str) -> Path:
    return cfg_dir / DOCKER_DIRNAME / profile_slug(profile_name)


# ---------------------------------------------------------------------------
# Docker client detection
# ---------------------------------------------------------------------------


def detect_docker_version(console: Console) -> str | None:
    """Return the local ``docker`` client version, or None (with a note) if unknown."""
    docker = shutil.which("docker")
    if docker is None:
        console.print(
            '\nNote: No "docker" was found on your PATH. It is not needed for this '
            "setup, but will be to run docker commands against Triton."
        )
        return None
    try:
        proc = subprocess.run(
            [docker, "--version"], capture_output=True, text=True, timeout=10, check=True
        )
    except (OSError, subprocess.SubprocessError) as exc:
        console.print(f"\nWarning: Could not determine Docker version:\n    {exc}")
        return None
    match = _DOCKER_VERSION_RE.match(proc.stdout.strip())
    if not match:
        console.print(
            f"\nWarning: Could not determine Docker version: output of `{docker} --version` "
            f"does not match {_DOCKER_VERSION_RE.pattern}: {proc.stdout.strip()!r}"
        )
        return None
    logger.debug("docker client version %s", match.group(1))
    return match.group(1)


def docker_timeout_env(version: str | None) -> dict[str, str]:
    """COMPOSE_HTTP_TIMEOUT for docker >= 1.9.0, DOCKER_CLIENT_TIMEOUT before; both if unknown."""
    timeout = str(DOCKER_TIMEOUT_SECONDS)
    if version is None:
        return {"DOCKER_CLIENT_TIMEOUT": timeout, "COMPOSE_HTTP_TIMEOUT": timeout}
    parts = tuple(int(n) for n in re.findall(r"\d+", version)[:3])
    if parts >= DOCKER_COMPOSE_TIMEOUT_MIN_VERSION:
        return {"COMPOSE_HTTP_TIMEOUT": timeout}
    return {"DOCKER_CLIENT_TIMEOUT": timeout}


# ---------------------------------------------------------------------------
# Docker setup
# ---------------------------------------------------------------------------


def _check_cloudapi(cloudapi: CloudApi) -> None:
    try:
        cloudapi.ping()
    except CloudApiError as exc:
        if exc.status_code == 503:
            raise SetupError(
                f"CloudAPI <{cloudapi.url}> is in maintenance, please try again later", cause=exc
            ) from exc
        raise SetupError(f"error pinging CloudAPI <{cloudapi.url}>: {exc}", cause=exc) from exc


def _docker_host(cloudapi: CloudApi, implicit: bool) -> str | None:
    try:
        services = cloudapi.list_services()
    except AuthError as exc:
        raise SetupError(exc.message, cause=exc) from exc
    except CloudApiError as exc:
        raise SetupError(f"could not list services on cloudapi {cloudapi.url}: {exc}", cause=exc) from exc
    if docker_host := services.get("docker"):
        return docker_host
    if implicit:
        return None
    raise SetupError(f'no "docker" service on this datacenter ({cloudapi.url})')


def _download_ca(docker_host: str, insecure: bool) -> bytes:
    url = re.sub(r"^tcp:", "https:", docker_host).rstrip("/") + "/ca.pem"
    try:
        resp = httpx.get(url, verify=not insecure, timeout=DEFAULT_CONNECT_TIMEOUT * 3)
        resp.raise_for_status()
    except httpx.HTTPError as exc:
        raise SetupError(f"could not download Docker CA certificate from {url}: {exc}", cause=exc) from exc
    return resp.content


def _write_private(path: Path, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    path.chmod(0o600)


def docker_setup(
    profile: Profile,
    cloudapi: CloudApi,
    cfg_dir: Path,
    console: Console,
    implicit: bool = False,
    yes: bool = False,
    lifetime_days: int = DEFAULT_CERT_LIFETIME_DAYS,
) -> Outcome:
    """
    Set up *profile* for the Triton Docker service.

    Writes key.pem, cert.pem, ca.pem and setup.json under
    ``<cfg_dir>/docker/<slug>/``.  Returns SKIPPED when *implicit* and the
    datacenter has no docker service, ABORTED when the user declines to
    overwrite existing certificates.
    """
    _check_cloudapi(cloudapi)
    docker_host = _docker_host(cloudapi, implicit)
    if docker_host is None:
        logger.debug("no docker service at %s; skipping implicit docker setup", cloudapi.url)
        return Outcome.SKIPPED

    cert_dir = docker_cert_dir(cfg_dir, profile.name)
    if (cert_dir / "cert.pem").exists() and not yes:
        if not confirm(console, f'Overwrite existing Docker certificates for profile "{profile.name}"?'):
            console.print('Skipping Docker setup (you can run "triton profile docker-setup" later).')
            return Outcome.ABORTED

    console.print(f'Setting up profile "{profile.name}" to use Docker.')
    docker_version = detect_docker_version(console)

    issued = generate_client_cert(
        cloudapi.key_pair,
        profile.act_as_account or profile.account,
        DOCKER_PURPOSES,
        lifetime_days=lifetime_days,
    )
    ca_pem = _download_ca(docker_host, profile.insecure)

    cert_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    _write_private(cert_dir / "key.pem", issued.key_pem)
    (cert_dir / "cert.pem").write_bytes(issued.cert_pem)
    (cert_dir / "ca.pem").write_bytes(ca_pem)

    setup = {
        "profile": profile.name,
        "time": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "env": {
            "DOCKER_CERT_PATH": str(cert_dir),
            "DOCKER_HOST": docker_host,
            "DOCKER_TLS_VERIFY": None if profile.insecure else "1",
            **docker_timeout_env(docker_version),
        },
    }
    write_json_atomic(cert_dir / DOCKER_SETUP_FILENAME, setup)

    console.print(
        f'Docker setup for profile "{profile.name}" complete. '
        "Run the following to set up your environment:"
    )
    console.print(f'    eval "$(triton env --docker {profile.name})"', markup=False)
    return Outcome.DONE


def load_docker_setup(cfg_dir: Path, profile_name: str) -> dict[str, Any]:
    """Read the setup.json written by :func:`docker_setup`."""
    path = docker_cert_dir(cfg_dir, profile_name) / DOCKER_SETUP_FILENAME
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise SetupError(
            f'could not find Docker environment setup for profile "{profile_name}": {exc}\n'
            f"    Run `triton profile docker-setup {profile_name}` to set up.",
            cause=exc,
        ) from exc
    return data


# ---------------------------------------------------------------------------
# CMON
# ---------------------------------------------------------------------------


def cmon_certgen(
    profile: Profile,
    cloudapi: CloudApi,
    console: Console,
    out_dir: Path,
    yes: bool = False,
    lifetime_days: int = DEFAULT_CERT_LIFETIME_DAYS,
) -> Outcome:
    """Write ``<account>-key.pem`` and ``<account>-cert.pem`` for CMON into *out_dir*."""
    account = profile.act_as_account or profile.account
    key_path = out_dir / f"{account}-key.pem"
    cert_path = out_dir / f"{account}-cert.pem"
    if (key_path.exists() or cert_path.exists()) and not yes:
        if not confirm(console, f"Overwrite {key_path.name} and {cert_path.name}?"):
            console.print("Aborting CMON certificate generation")
            return Outcome.ABORTED

    issued: IssuedCert = generate_client_cert(
        cloudapi.key_pair, account, CMON_PURPOSES, lifetime_days=lifetime_days
    )
    _write_private(key_path, issued.key_pem)
    cert_path.write_bytes(issued.cert_pem)

    console.print(f"Generated CMON certificate for account {account}:")
    console.print(f"    key:  {key_path}")
    console.print(f"    cert: {cert_path}")
    console.print(f"    expires: {issued.cert.not_valid_after_utc.isoformat()}")
    return Outcome.DONE
