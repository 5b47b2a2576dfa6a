"""
hearth_config.py — settings and identity registry for the Hearth IndieAuth server.

Configuration is loaded from hearth.yaml (path overridable with HEARTH_CONFIG).
The operator's identity lives in the same file; passwords are stored as
argon2 hashes (PHC string format).
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping
from urllib.parse import urlparse

import yaml
from argon2 import PasswordHasher, extract_parameters
from argon2.exceptions import InvalidHashError, VerificationError

DEFAULT_TOKEN_EXPIRATION = 4 * 7 * 86400  # 4 weeks

DEFAULT_SCOPE_DESCRIPTIONS = {
    "profile": "View basic profile information",
    "email": "View your email address",
    "offline_access": "Keep you logged in permanently (until revoked)",
}


ph = PasswordHasher()


def hash_password(password: str) -> str:
    return ph.hash(password)


@dataclass(frozen=True)
class Identity:
    """The subject this server vouches for, addressed by `me`."""

    me: str
    profile_path: str
    password_hash: str
    name: str | None = None
    url: str | None = None
    photo: str | None = None
    email: str | None = None

    def verify_password(self, password: str | None) -> bool:
        if not password:
            return False
        try:
            return ph.verify(self.password_hash, password)
        except (VerificationError, InvalidHashError):
            return False


def _normalize_path(path: str) -> str:
    path = path or "/"
    if not path.startswith("/"):
        path = "/" + path
    return path


class IdentityDirectory:
    """Read-only lookup of configured identities by profile path or URL."""

    def __init__(self, identities: list[Identity]):
        self._by_path = {i.profile_path: i for i in identities}
        self._by_me = {i.me: i for i in identities}

    def __len__(self) -> int:
        return len(self._by_path)

    def __iter__(self):
        return iter(self._by_path.values())

    def find_by_path(self, path: str) -> Identity | None:
        return self._by_path.get(_normalize_path(path))

    def find_by_url(self, url: str | None) -> Identity | None:
        if not url:
            # Single-user servers resolve an omitted `me` to the operator.
            if len(self._by_path) == 1:
                return next(iter(self._by_path.values()))
            return None
        return self.find_by_path(urlparse(url).path)

    def get(self, me: str) -> Identity | None:
        return self._by_me.get(me)


@dataclass
class Settings:
    issuer_url: str
    identities: IdentityDirectory
    token_expiration: int = DEFAULT_TOKEN_EXPIRATION
    local_session_lifetime: int | None = None
    scope_descriptions: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType(dict(DEFAULT_SCOPE_DESCRIPTIONS))
    )

    def describe_scope(self, scope: str) -> str:
        return self.scope_descriptions.get(scope, scope)


def _build_identity(issuer_url: str, raw: Any, config_path: Path) -> Identity:
    if not isinstance(raw, dict) or "password_hash" not in raw:
        raise SystemExit(f"Invalid identity in {config_path}: 'password_hash' is required")
    profile_path = _normalize_path(str(raw.get("profile_path", "/")))
    password_hash = str(raw["password_hash"])
    try:
        extract_parameters(password_hash)
    except InvalidHashError:
        raise SystemExit(
            f"Invalid password_hash for '{profile_path}' in {config_path}: expected an argon2 hash"
        )
    return Identity(
        me=issuer_url + profile_path,
        profile_path=profile_path,
        password_hash=password_hash,
        name=raw.get("name"),
        url=raw.get("url"),
        photo=raw.get("photo"),
        email=raw.get("email"),
    )


def settings_from_dict(raw: dict, config_path: Path = Path("<memory>")) -> Settings:
    issuer_url = os.environ.get("HEARTH_ISSUER_URL") or raw.get("issuer_url")
    if not issuer_url:
        raise SystemExit(f"Invalid config: 'issuer_url' is required in {config_path}")
    issuer_url = str(issuer_url).rstrip("/")

    identities = [_build_identity(issuer_url, i, config_path)
                  for i in raw.get("identities") or []]
    if not identities:
        raise SystemExit(f"No identities defined in {config_path}")

    descriptions = dict(DEFAULT_SCOPE_DESCRIPTIONS)
    descriptions.update(raw.get("scope_descriptions") or {})

    lifetime = raw.get("local_session_lifetime")
    return Settings(
        issuer_url=issuer_url,
        identities=IdentityDirectory(identities),
        token_expiration=int(raw.get("token_expiration", DEFAULT_TOKEN_EXPIRATION)),
        local_session_lifetime=int(lifetime) if lifetime else None,
        scope_descriptions=MappingProxyType(descriptions),
    )


def load_settings(config_path: Path | None = None) -> Settings:
    """Load settings from hearth.yaml."""
    if config_path is None:
        env_path = os.environ.get("HEARTH_CONFIG")
        config_path = Path(env_path) if env_path else Path(__file__).parent / "hearth.yaml"
    if not config_path.exists():
        example = Path(__file__).parent / "hearth.example.yaml"
        msg = f"Config not found: {config_path}"
        if example.exists():
            msg += f"\n  Copy the example:  cp {example} {config_path}"
        raise SystemExit(msg)

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise SystemExit(f"Invalid hearth.yaml: expected a mapping in {config_path}")

    return settings_from_dict(raw, config_path)
