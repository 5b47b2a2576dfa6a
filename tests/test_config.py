"""Tests for hearth_config.py."""
import hashlib
import sys
from pathlib import Path

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from hearth_config import (
    DEFAULT_TOKEN_EXPIRATION,
    Identity,
    hash_password,
    load_settings,
    settings_from_dict,
)


def _write_config(tmp_path, raw):
    path = tmp_path / "hearth.yaml"
    path.write_text(yaml.safe_dump(raw))
    return path


@pytest.fixture(autouse=True)
def _no_env_overrides(monkeypatch):
    monkeypatch.delenv("HEARTH_ISSUER_URL", raising=False)
    monkeypatch.delenv("HEARTH_CONFIG", raising=False)


# ---------------------------------------------------------------------------
# load_settings
# ---------------------------------------------------------------------------

class TestLoadSettings:
    def test_loads_yaml(self, tmp_path):
        path = _write_config(tmp_path, {
            "issuer_url": "https://me.example/",
            "token_expiration": 60,
            "local_session_lifetime": 120,
            "scope_descriptions": {"create": "Create posts"},
            "identities": [{"profile_path": "/", "password_hash": hash_password("pw"),
                            "name": "Ada"}],
        })
        settings = load_settings(path)
        assert settings.issuer_url == "https://me.example"
        assert settings.token_expiration == 60
        assert settings.local_session_lifetime == 120
        identity = settings.identities.get("https://me.example/")
        assert identity.name == "Ada"
        assert identity.verify_password("pw")
        assert not identity.verify_password("nope")
        assert not identity.verify_password(None)

    def test_defaults(self, tmp_path):
        path = _write_config(tmp_path, {
            "issuer_url": "https://me.example",
            "identities": [{"password_hash": hash_password("pw")}],
        })
        settings = load_settings(path)
        assert settings.token_expiration == DEFAULT_TOKEN_EXPIRATION
        assert settings.local_session_lifetime is None
        assert settings.describe_scope("profile") == "View basic profile information"

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        path = _write_config(tmp_path, {
            "issuer_url": "https://me.example",
            "identities": [{"password_hash": hash_password("pw")}],
        })
        monkeypatch.setenv("HEARTH_CONFIG", str(path))
        assert load_settings().issuer_url == "https://me.example"

    def test_issuer_env_override(self, tmp_path, monkeypatch):
        path = _write_config(tmp_path, {
            "issuer_url": "https://me.example",
            "identities": [{"password_hash": hash_password("pw")}],
        })
        monkeypatch.setenv("HEARTH_ISSUER_URL", "https://other.example")
        settings = load_settings(path)
        assert next(iter(settings.identities)).me == "https://other.example/"

    def test_missing_file(self, tmp_path):
        with pytest.raises(SystemExit, match="Config not found"):
            load_settings(tmp_path / "absent.yaml")

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "hearth.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(SystemExit, match="expected a mapping"):
            load_settings(path)

    def test_requires_identity(self, tmp_path):
        path = _write_config(tmp_path, {"issuer_url": "https://me.example"})
        with pytest.raises(SystemExit, match="No identities"):
            load_settings(path)

    def test_requires_password_hash(self, tmp_path):
        path = _write_config(tmp_path, {
            "issuer_url": "https://me.example",
            "identities": [{"profile_path": "/"}],
        })
        with pytest.raises(SystemExit, match="password_hash"):
            load_settings(path)

    def test_rejects_non_argon2_hash(self, tmp_path):
        path = _write_config(tmp_path, {
            "issuer_url": "https://me.example",
            "identities": [{"password_hash": hashlib.sha256(b"pw").hexdigest()}],
        })
        with pytest.raises(SystemExit, match="expected an argon2 hash"):
            load_settings(path)

    def test_example_config_loads(self):
        example = Path(__file__).resolve().parent.parent / "hearth.example.yaml"
        settings = load_settings(example)
        identity = next(iter(settings.identities))
        assert identity.password_hash.startswith("$argon2id$")
        assert not identity.verify_password("password")


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

class TestPasswordHashing:
    def _identity(self, password_hash):
        return Identity(me="https://me.example/", profile_path="/", password_hash=password_hash)

    def test_hashes_are_salted(self):
        first, second = hash_password("pw"), hash_password("pw")
        assert first != second
        assert first.startswith("$argon2id$")
        assert self._identity(first).verify_password("pw")
        assert self._identity(second).verify_password("pw")

    def test_wrong_password(self):
        assert not self._identity(hash_password("pw")).verify_password("pw2")

    def test_unparseable_hash_fails_closed(self):
        assert not self._identity("not-a-hash").verify_password("pw")


# ---------------------------------------------------------------------------
# Scope descriptions
# ---------------------------------------------------------------------------

class TestScopeDescriptions:
    def test_unknown_scope_describes_itself(self):
        settings = settings_from_dict({
            "issuer_url": "https://me.example",
            "identities": [{"password_hash": hash_password("pw")}],
        })
        assert settings.describe_scope("media") == "media"

    def test_mapping_is_immutable(self):
        settings = settings_from_dict({
            "issuer_url": "https://me.example",
            "identities": [{"password_hash": hash_password("pw")}],
        })
        with pytest.raises(TypeError):
            settings.scope_descriptions["profile"] = "changed"


# ---------------------------------------------------------------------------
# IdentityDirectory
# ---------------------------------------------------------------------------

class TestIdentityDirectory:
    def _settings(self, paths):
        return settings_from_dict({
            "issuer_url": "https://me.example",
            "identities": [{"profile_path": p, "password_hash": hash_password("pw")}
                           for p in paths],
        })

    def test_find_by_url_path(self):
        directory = self._settings(["/", "/bob"]).identities
        assert directory.find_by_url("https://me.example/bob").me == "https://me.example/bob"
        assert directory.find_by_url("https://me.example").me == "https://me.example/"
        assert directory.find_by_url("https://me.example/carol") is None

    def test_missing_me_single_identity(self):
        directory = self._settings(["/"]).identities
        assert directory.find_by_url(None).me == "https://me.example/"

    def test_missing_me_many_identities(self):
        directory = self._settings(["/", "/bob"]).identities
        assert directory.find_by_url(None) is None

    def test_profile_path_normalized(self):
        directory = self._settings(["bob"]).identities
        assert directory.find_by_path("/bob") is not None
        assert len(directory) == 1
