"""Unit tests for the Docker and CMON certificate setup flows."""

from __future__ import annotations

import io
import json
import stat
import subprocess
from pathlib import Path
from unittest.mock import Mock

import pytest
from cryptography import x509
from rich.console import Console

from tritoncli.certs import setup as setup_mod
from tritoncli.certs.issuer import JOYENT_CMON_OID, JOYENT_DOCKER_OID
from tritoncli.certs.setup import (
    cmon_certgen,
    detect_docker_version,
    docker_cert_dir,
    docker_setup,
    docker_timeout_env,
    load_docker_setup,
)
from tritoncli.core.config import validate_profile
from tritoncli.core.exceptions import SetupError
from tritoncli.core.prompt import Outcome

DOCKER_HOST = "tcp://docker.test:2376"
CA_PEM = b"-----BEGIN CERTIFICATE-----\nCA\n-----END CERTIFICATE-----\n"


@pytest.fixture
def console() -> Console:
    return Console(file=io.StringIO(), width=200, color_system=None)


@pytest.fixture
def profile():
    return validate_profile(
        {"name": "us-east", "url": "https://cloudapi.test", "account": "acme", "keyId": "00:" * 15 + "00"}
    )


@pytest.fixture
def no_docker(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(setup_mod.shutil, "which", lambda name: None)


@pytest.fixture
def ca_downloads(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, bool]]:
    """Record CA downloads instead of hitting the network."""
    seen: list[tuple[str, bool]] = []

    def download(docker_host: str, insecure: bool) -> bytes:
        seen.append((docker_host, insecure))
        return CA_PEM

    monkeypatch.setattr(setup_mod, "_download_ca", download)
    return seen


def _extended_key_usage(cert_path: Path) -> set:
    cert = x509.load_pem_x509_certificate(cert_path.read_bytes())
    return set(cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value)


# ---------------------------------------------------------------------------
# Docker client detection
# ---------------------------------------------------------------------------


class TestDockerTimeoutEnv:
    def test_unknown_version_sets_both(self) -> None:
        assert docker_timeout_env(None) == {"DOCKER_CLIENT_TIMEOUT": "300", "COMPOSE_HTTP_TIMEOUT": "300"}

    @pytest.mark.parametrize("version", ["1.9.0", "1.12.3", "24.0.7"])
    def test_new_docker(self, version: str) -> None:
        assert docker_timeout_env(version) == {"COMPOSE_HTTP_TIMEOUT": "300"}

    @pytest.mark.parametrize("version", ["1.8.3", "1.6.0-rc1"])
    def test_old_docker(self, version: str) -> None:
        assert docker_timeout_env(version) == {"DOCKER_CLIENT_TIMEOUT": "300"}


class TestDetectDockerVersion:
    def test_not_installed(self, console, no_docker) -> None:
        assert detect_docker_version(console) is None
        assert 'No "docker" was found on your PATH' in console.file.getvalue()

    def test_parses_version(self, console, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(setup_mod.shutil, "which", lambda name: "/usr/bin/docker")
        proc = subprocess.CompletedProcess([], 0, stdout="Docker version 24.0.7, build afdd53b\n", stderr="")
        monkeypatch.setattr(setup_mod.subprocess, "run", Mock(return_value=proc))
        assert detect_docker_version(console) == "24.0.7"

    def test_unexpected_output(self, console, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(setup_mod.shutil, "which", lambda name: "/usr/bin/docker")
        proc = subprocess.CompletedProcess([], 0, stdout="podman version 4.9.3\n", stderr="")
        monkeypatch.setattr(setup_mod.subprocess, "run", Mock(return_value=proc))
        assert detect_docker_version(console) is None
        assert "Could not determine Docker version" in console.file.getvalue()


# ---------------------------------------------------------------------------
# Docker setup
# ---------------------------------------------------------------------------


class TestDockerSetup:
    def test_writes_certs_and_setup(self, profile, cloudapi, cfg_dir, console, no_docker, ca_downloads) -> None:
        outcome = docker_setup(profile, cloudapi, cfg_dir, console)
        assert outcome is Outcome.DONE

        cert_dir = docker_cert_dir(cfg_dir, "us-east")
        assert cert_dir == cfg_dir / "docker" / "us-east"
        assert stat.S_IMODE((cert_dir / "key.pem").stat().st_mode) == 0o600
        assert (cert_dir / "ca.pem").read_bytes() == CA_PEM
        assert _extended_key_usage(cert_dir / "cert.pem") >= {JOYENT_DOCKER_OID}
        assert ca_downloads == [(DOCKER_HOST, False)]

        setup = json.loads((cert_dir / "setup.json").read_text())
        assert setup["profile"] == "us-east"
        assert setup["env"] == {
            "DOCKER_CERT_PATH": str(cert_dir),
            "DOCKER_HOST": DOCKER_HOST,
            "DOCKER_TLS_VERIFY": "1",
            "DOCKER_CLIENT_TIMEOUT": "300",
            "COMPOSE_HTTP_TIMEOUT": "300",
        }
        assert load_docker_setup(cfg_dir, "us-east") == setup
        assert 'eval "$(triton env --docker us-east)"' in console.file.getvalue()

    def test_insecure_profile_skips_tls_verify(self, cloudapi, cfg_dir, console, no_docker, ca_downloads) -> None:
        profile = validate_profile(
            {"name": "lab", "url": "https://cloudapi.test", "account": "acme", "keyId": "md5:aa", "insecure": True}
        )
        docker_setup(profile, cloudapi, cfg_dir, console)
        assert load_docker_setup(cfg_dir, "lab")["env"]["DOCKER_TLS_VERIFY"] is None
        assert ca_downloads == [(DOCKER_HOST, True)]

    def test_implicit_without_docker_service_is_skipped(
        self, profile, fake_cloudapi, key_pair, cfg_dir, console
    ) -> None:
        fake_cloudapi.services = {"cloudapi": "https://cloudapi.test"}
        with fake_cloudapi.client(key_pair) as api:
            assert docker_setup(profile, api, cfg_dir, console, implicit=True) is Outcome.SKIPPED
        assert not (cfg_dir / "docker").exists()

    def test_explicit_without_docker_service_fails(
        self, profile, fake_cloudapi, key_pair, cfg_dir, console
    ) -> None:
        fake_cloudapi.services = {}
        with fake_cloudapi.client(key_pair) as api:
            with pytest.raises(SetupError, match='no "docker" service on this datacenter'):
                docker_setup(profile, api, cfg_dir, console)

    def test_maintenance(self, profile, fake_cloudapi, cloudapi, cfg_dir, console) -> None:
        fake_cloudapi.fail[("GET", "/--ping")] = (503, {"code": "ServiceUnavailable", "message": "down"})
        with pytest.raises(SetupError, match="is in maintenance"):
            docker_setup(profile, cloudapi, cfg_dir, console)

    def test_bad_credentials(self, profile, fake_cloudapi, cloudapi, cfg_dir, console) -> None:
        fake_cloudapi.fail[("GET", "/acme/services")] = (401, {"code": "InvalidCredentials", "message": "nope"})
        with pytest.raises(SetupError, match="invalid credentials"):
            docker_setup(profile, cloudapi, cfg_dir, console)

    def test_declined_overwrite(
        self, profile, cloudapi, cfg_dir, console, no_docker, ca_downloads, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        docker_setup(profile, cloudapi, cfg_dir, console)
        cert_path = docker_cert_dir(cfg_dir, "us-east") / "cert.pem"
        before = cert_path.read_bytes()

        monkeypatch.setattr(setup_mod, "confirm", Mock(return_value=False))
        assert docker_setup(profile, cloudapi, cfg_dir, console) is Outcome.ABORTED
        assert cert_path.read_bytes() == before
        assert "Skipping Docker setup" in console.file.getvalue()

    def test_yes_overwrites(self, profile, cloudapi, cfg_dir, console, no_docker, ca_downloads, monkeypatch) -> None:
        docker_setup(profile, cloudapi, cfg_dir, console)
        monkeypatch.setattr(setup_mod, "confirm", Mock(side_effect=AssertionError("asked")))
        assert docker_setup(profile, cloudapi, cfg_dir, console, yes=True) is Outcome.DONE
        assert len(ca_downloads) == 2

    def test_ca_download_failure(self, profile, cloudapi, cfg_dir, console, no_docker, monkeypatch) -> None:
        def refuse(url, **kwargs):
            raise setup_mod.httpx.ConnectError("connection refused")

        monkeypatch.setattr(setup_mod.httpx, "get", refuse)
        with pytest.raises(SetupError, match="https://docker.test:2376/ca.pem"):
            docker_setup(profile, cloudapi, cfg_dir, console)


class TestLoadDockerSetup:
    def test_missing(self, cfg_dir) -> None:
        with pytest.raises(SetupError, match='could not find Docker environment setup for profile "coal"'):
            load_docker_setup(cfg_dir, "coal")


# ---------------------------------------------------------------------------
# CMON
# ---------------------------------------------------------------------------


class TestCmonCertgen:
    def test_writes_key_and_cert(self, profile, cloudapi, console, tmp_path: Path) -> None:
        assert cmon_certgen(profile, cloudapi, console, tmp_path) is Outcome.DONE
        key_path, cert_path = tmp_path / "acme-key.pem", tmp_path / "acme-cert.pem"
        assert stat.S_IMODE(key_path.stat().st_mode) == 0o600
        assert _extended_key_usage(cert_path) >= {JOYENT_CMON_OID}
        assert "Generated CMON certificate for account acme:" in console.file.getvalue()

    def test_act_as_account_names_files(self, cloudapi, console, tmp_path: Path) -> None:
        profile = validate_profile(
            {
                "name": "ops",
                "url": "https://cloudapi.test",
                "account": "operator",
                "actAsAccount": "acme",
                "keyId": "md5:aa",
            }
        )
        cmon_certgen(profile, cloudapi, console, tmp_path)
        assert (tmp_path / "acme-cert.pem").exists()

    def test_declined_overwrite(self, profile, cloudapi, console, tmp_path: Path, monkeypatch) -> None:
        (tmp_path / "acme-cert.pem").write_text("old")
        monkeypatch.setattr(setup_mod, "confirm", Mock(return_value=False))
        assert cmon_certgen(profile, cloudapi, console, tmp_path) is Outcome.ABORTED
        assert (tmp_path / "acme-cert.pem").read_text() == "old"

    def test_key_file_is_created_private(self, profile, cloudapi, console, tmp_path: Path, monkeypatch) -> None:
        modes: dict[str, int] = {}
        real_open = setup_mod.os.open

        def recording_open(path, flags, mode=0o777):
            modes[Path(path).name] = mode
            return real_open(path, flags, mode)

        monkeypatch.setattr(setup_mod.os, "open", recording_open)
        (tmp_path / "acme-key.pem").write_text("old")
        (tmp_path / "acme-key.pem").chmod(0o644)
        cmon_certgen(profile, cloudapi, console, tmp_path, yes=True)
        assert modes == {"acme-key.pem": 0o600}
        assert stat.S_IMODE((tmp_path / "acme-key.pem").stat().st_mode) == 0o600
        assert (tmp_path / "acme-key.pem").read_bytes().startswith(b"-----BEGIN")
