"""Fixtures for driving the ``triton`` CLI against the in-memory CloudAPI."""

from __future__ import annotations

from pathlib import Path

import pytest
from click.testing import CliRunner

from tritoncli.certs import setup as setup_mod
from tritoncli.cli import main as main_mod

CA_PEM = b"-----BEGIN CERTIFICATE-----\nCA\n-----END CERTIFICATE-----\n"


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def wide_consoles(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep long lines on one line in captured output."""
    monkeypatch.setattr(main_mod.console, "width", 200)
    monkeypatch.setattr(main_mod.err_console, "width", 200)


@pytest.fixture
def cli_env(cfg_dir: Path) -> dict[str, str]:
    return {"TRITON_CONFIG_DIR": str(cfg_dir)}


@pytest.fixture
def patched_cloudapi(fake_cloudapi, key_pair, monkeypatch: pytest.MonkeyPatch):
    """Route every profile's CloudAPI client to ``fake_cloudapi``; returns the profiles used."""
    used = []

    def from_profile(profile, **kwargs):
        used.append(profile)
        return fake_cloudapi.client(key_pair)

    monkeypatch.setattr("tritoncli.cloudapi.client.cloudapi_from_profile", from_profile)
    return used


@pytest.fixture
def offline_docker(monkeypatch: pytest.MonkeyPatch) -> None:
    """No local docker client, and the CA download returns a canned PEM."""
    monkeypatch.setattr(setup_mod.shutil, "which", lambda name: None)
    monkeypatch.setattr(setup_mod, "_download_ca", lambda docker_host, insecure: CA_PEM)
