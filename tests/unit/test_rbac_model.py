"""Unit tests for the RBAC document model and loader."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest
import yaml
from cryptography.hazmat.primitives.asymmetric import ed25519

from tritoncli.auth.sshkey import parse_public_key_line
from tritoncli.core.exceptions import ConfigError
from tritoncli.rbac.model import RbacConfig, UserKey, load_rbac_config, validate_rbac_config


@pytest.fixture
def bob_key(pubkey_line) -> str:
    return pubkey_line(ed25519.Ed25519PrivateKey.generate(), "bob@laptop")


def _doc(**sections) -> dict:
    return {"users": [], "policies": [], "roles": [], **sections}


class TestUserKey:
    def test_fingerprint_and_name_are_derived(self, bob_key: str) -> None:
        key = UserKey(key=bob_key)
        assert key.fingerprint == parse_public_key_line(bob_key).fingerprint
        assert key.name == "bob@laptop"
        assert key.body == " ".join(bob_key.split()[:2])

    def test_explicit_fingerprint_is_normalized(self, bob_key: str) -> None:
        fp = parse_public_key_line(bob_key).fingerprint
        assert UserKey(key=bob_key, fingerprint="MD5:" + fp.upper()).fingerprint == fp

    def test_mismatched_fingerprint(self, bob_key: str) -> None:
        with pytest.raises(ValueError, match="does not match"):
            UserKey(key=bob_key, fingerprint="00:" * 15 + "00")

    def test_invalid_key(self) -> None:
        with pytest.raises(ValueError, match="invalid public key"):
            UserKey(key="ssh-rsa !!!")


class TestValidation:
    def test_minimal(self) -> None:
        config = validate_rbac_config({})
        assert config == RbacConfig()

    def test_user_fields_use_cloudapi_names(self) -> None:
        config = validate_rbac_config(_doc(users=[{"login": "bob", "firstName": "Bob", "companyName": "Acme"}]))
        assert config.users[0].cloudapi_fields() == {"login": "bob", "firstName": "Bob", "companyName": "Acme"}

    def test_unknown_user_field(self) -> None:
        with pytest.raises(ConfigError, match="favoriteColor"):
            validate_rbac_config(_doc(users=[{"login": "bob", "favoriteColor": "blue"}]))

    def test_duplicate_login(self) -> None:
        with pytest.raises(ConfigError, match='duplicate user login "bob"'):
            validate_rbac_config(_doc(users=[{"login": "bob"}, {"login": "bob"}]))

    def test_role_member_must_be_a_user(self) -> None:
        doc = _doc(users=[{"login": "bob"}], roles=[{"name": "eng", "members": ["bob", "eve"]}])
        with pytest.raises(ConfigError, match='role "eng" members are not users in this config: eve'):
            validate_rbac_config(doc)

    def test_role_policy_must_exist(self) -> None:
        doc = _doc(roles=[{"name": "eng", "policies": ["ro"]}])
        with pytest.raises(ConfigError, match="policies are not policies in this config: ro"):
            validate_rbac_config(doc)

    def test_default_members_must_be_members(self) -> None:
        doc = _doc(
            users=[{"login": "bob"}, {"login": "amy"}],
            roles=[{"name": "eng", "members": ["bob"], "default_members": ["amy"]}],
        )
        with pytest.raises(ConfigError, match="default_members must also be members: amy"):
            validate_rbac_config(doc)

    def test_error_location_is_reported(self) -> None:
        with pytest.raises(ConfigError) as exc_info:
            validate_rbac_config(_doc(policies=[{"name": "ro", "rules": "CAN x"}]), source="rbac.json")
        message = exc_info.value.message
        assert message.startswith("invalid rbac.json:")
        assert "policies → 0 → rules" in message


class TestLoad:
    def test_json(self, tmp_path: Path, bob_key: str) -> None:
        path = tmp_path / "rbac.json"
        path.write_text(
            json.dumps(
                _doc(
                    users=[{"login": "bob", "keys": [{"key": bob_key}]}],
                    policies=[{"name": "ro", "rules": ["CAN getmachine"]}],
                    roles=[{"name": "eng", "members": ["bob"], "policies": ["ro"]}],
                )
            )
        )
        config = load_rbac_config(path, tmp_path / "cfg")
        assert config.user("bob").keys[0].name == "bob@laptop"
        assert config.roles[0].policies == ["ro"]
        assert config.user("nobody") is None

    def test_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "rbac.yaml"
        path.write_text(yaml.safe_dump({"policies": [{"name": "ro", "rules": ["CAN getmachine"]}]}))
        assert load_rbac_config(path, tmp_path).policies[0].name == "ro"

    def test_empty_yaml_is_empty_config(self, tmp_path: Path) -> None:
        path = tmp_path / "rbac.yml"
        path.write_text("")
        assert load_rbac_config(path, tmp_path) == RbacConfig()

    def test_invalid_json(self, tmp_path: Path) -> None:
        path = tmp_path / "rbac.json"
        path.write_text("{")
        with pytest.raises(ConfigError, match="is not valid JSON"):
            load_rbac_config(path, tmp_path)

    def test_not_an_object(self, tmp_path: Path) -> None:
        path = tmp_path / "rbac.json"
        path.write_text("[]")
        with pytest.raises(ConfigError, match="is not an object"):
            load_rbac_config(path, tmp_path)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="could not read RBAC config file"):
            load_rbac_config(tmp_path / "nope.json", tmp_path)


class TestUserKeyFiles:
    def test_relative_keys_file(self, tmp_path: Path, bob_key: str) -> None:
        (tmp_path / "keys").mkdir()
        (tmp_path / "keys" / "bob.pub").write_text(bob_key + "\n\n")
        path = tmp_path / "rbac.json"
        path.write_text(json.dumps(_doc(users=[{"login": "bob", "keys": "keys/bob.pub"}])))
        keys = load_rbac_config(path, tmp_path / "cfg").user("bob").keys
        assert [k.key for k in keys] == [bob_key]

    def test_keys_directory_uses_login(self, tmp_path: Path, bob_key: str) -> None:
        (tmp_path / "keys").mkdir()
        (tmp_path / "keys" / "bob.pub").write_text(bob_key)
        path = tmp_path / "rbac.json"
        path.write_text(json.dumps(_doc(users=[{"login": "bob", "keys": "keys"}])))
        assert len(load_rbac_config(path, tmp_path).user("bob").keys) == 1

    def test_default_keys_dir(self, tmp_path: Path, bob_key: str) -> None:
        cfg = tmp_path / "cfg"
        (cfg / "rbac-user-keys").mkdir(parents=True)
        (cfg / "rbac-user-keys" / "bob.pub").write_text(bob_key)
        path = tmp_path / "rbac.json"
        path.write_text(json.dumps(_doc(users=[{"login": "bob"}, {"login": "amy"}])))
        config = load_rbac_config(path, cfg)
        assert len(config.user("bob").keys) == 1
        assert config.user("amy").keys is None

    def test_missing_explicit_keys_file(self, tmp_path: Path) -> None:
        path = tmp_path / "rbac.json"
        path.write_text(json.dumps(_doc(users=[{"login": "bob", "keys": "missing.pub"}])))
        with pytest.raises(ConfigError, match="User bob keys not found in"):
            load_rbac_config(path, tmp_path)

    def test_keys_file_not_regular(self, tmp_path: Path) -> None:
        os.mkfifo(tmp_path / "bob.pub")
        path = tmp_path / "rbac.json"
        path.write_text(json.dumps(_doc(users=[{"login": "bob", "keys": "bob.pub"}])))
        with pytest.raises(ConfigError, match="to be a regular file"):
            load_rbac_config(path, tmp_path)

    def test_bad_key_line_reports_line_number(self, tmp_path: Path, bob_key: str) -> None:
        (tmp_path / "bob.pub").write_text(bob_key + "\nssh-rsa garbage\n")
        path = tmp_path / "rbac.json"
        path.write_text(json.dumps(_doc(users=[{"login": "bob", "keys": "bob.pub"}])))
        with pytest.raises(ConfigError, match="line 2"):
            load_rbac_config(path, tmp_path)
