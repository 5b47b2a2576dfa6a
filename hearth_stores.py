"""
hearth_stores.py — repositories for authorization requests and access tokens.

Both stores are in-memory maps guarded by an asyncio.Lock. Identities are
referenced by their canonical `me` URL, never owned.
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field

from hearth_errors import InvalidGrant, TokenExpired

logger = logging.getLogger("hearth-stores")

AUTH_CODE_TTL = 600  # 10 minutes


def split_scope(scope: str | None) -> list[str]:
    return scope.split() if scope else []


@dataclass
class AuthorizationRequest:
    code: str
    client_id: str
    redirect_uri: str
    identity: str
    scope: str | None = None
    code_challenge: str | None = None
    created_at: float = field(default_factory=time.time)

    @property
    def scopes(self) -> list[str]:
        return split_scope(self.scope)

    def is_stale(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now - self.created_at > AUTH_CODE_TTL


@dataclass
class AccessToken:
    auth_token: str
    identity: str
    client_id: str
    scope: str
    issued_at: float = field(default_factory=time.time)

    @property
    def scopes(self) -> list[str]:
        return split_scope(self.scope)

    def expires_at(self, lifetime: int) -> float:
        return self.issued_at + lifetime

    def is_expired(self, lifetime: int, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now > self.expires_at(lifetime)


class RequestStore:
    """Pending authorization requests, keyed by code.

    At most one request lives per (identity, client_id). Redemption pops the
    code under the lock, so a code succeeds at most once.
    """

    def __init__(self) -> None:
        self._requests: dict[str, AuthorizationRequest] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._requests)

    async def create(
        self,
        identity: str,
        client_id: str,
        redirect_uri: str,
        scope: str | None = None,
        code_challenge: str | None = None,
    ) -> AuthorizationRequest:
        async with self._lock:
            stale = [c for c, r in self._requests.items()
                     if r.identity == identity and r.client_id == client_id]
            for c in stale:
                del self._requests[c]
            if stale:
                logger.info("request_replaced: client=%s dropped=%d", client_id, len(stale))

            code = secrets.token_hex(20)
            while code in self._requests:
                code = secrets.token_hex(20)
            req = AuthorizationRequest(
                code=code,
                client_id=client_id,
                redirect_uri=redirect_uri,
                identity=identity,
                scope=scope or None,
                code_challenge=code_challenge or None,
            )
            self._requests[code] = req
            return req

    async def find_by_code(self, code: str) -> AuthorizationRequest | None:
        return self._requests.get(code)

    async def find_by_client_and_identity(
        self, client_id: str, identity: str,
    ) -> AuthorizationRequest | None:
        for req in self._requests.values():
            if req.client_id == client_id and req.identity == identity:
                return req
        return None

    async def update_scope(self, request: AuthorizationRequest, scope: str | None) -> None:
        async with self._lock:
            request.scope = scope or None

    async def redeem(self, code: str) -> AuthorizationRequest:
        async with self._lock:
            req = self._requests.pop(code, None) if code else None
        if req is None:
            raise InvalidGrant("code not found")
        return req


class TokenStore:
    """Issued bearer tokens. Expired tokens are evicted when verified."""

    def __init__(self, lifetime: int):
        self.lifetime = lifetime
        self._tokens: dict[str, AccessToken] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._tokens)

    async def issue(self, identity: str, scope: str | None, client_id: str) -> AccessToken:
        if not split_scope(scope):
            raise InvalidGrant("missing scope")
        async with self._lock:
            tok = secrets.token_urlsafe(32)
            while tok in self._tokens:
                tok = secrets.token_urlsafe(32)
            token = AccessToken(auth_token=tok, identity=identity,
                                client_id=client_id, scope=scope)
            self._tokens[tok] = token
        logger.info("token_stored: %s... stored=%d", tok[:8], len(self._tokens))
        return token

    async def find_by_token(self, token: str) -> AccessToken | None:
        return self._tokens.get(token)

    async def verify(self, token: str) -> AccessToken | None:
        """Return the token record, None if unknown, or raise TokenExpired."""
        at = self._tokens.get(token)
        if at is None:
            return None
        if at.is_expired(self.lifetime):
            async with self._lock:
                self._tokens.pop(token, None)
            logger.info("token_expired: client=%s", at.client_id)
            raise TokenExpired()
        return at

    async def revoke_all_for(self, identity: str) -> int:
        async with self._lock:
            doomed = [t for t, at in self._tokens.items() if at.identity == identity]
            for t in doomed:
                del self._tokens[t]
        return len(doomed)
