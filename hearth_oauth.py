"""
hearth_oauth.py — IndieAuth authorization core for Hearth.

Flow, per client request:
  initiate   → pending request stored, echo state bound to the browser session
  authorize  → user authenticates (remembered login or password), code issued
  redeem     → code popped once, client/redirect/age/PKCE checked together
  issue      → opaque bearer token minted for non-empty scope
  verify     → bearer token resolved, lazily expired

Security notes:
  - Codes are single-use: redemption removes the code before validating it.
  - Redemption failures share one message so callers learn nothing about
    which check failed.
  - A remembered login presented for another identity's flow, or with a
    forged validator, is a replay: the identity's logins and tokens are
    revoked before the error reaches the caller.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Mapping

from mcp.server.auth.provider import construct_redirect_uri

from hearth_config import Identity, IdentityDirectory, Settings
from hearth_errors import (
    AuthError,
    CsrfMismatch,
    InvalidGrant,
    InvalidPassword,
    InvalidUser,
    MissingParameter,
    NoPendingAuthorization,
    SessionReplayDetected,
    TokenExpired,
    TokenNotFound,
)
from hearth_stores import AccessToken, AuthorizationRequest, RequestStore, TokenStore

logger = logging.getLogger("hearth-oauth")
audit_logger = logging.getLogger("hearth-audit")

REQUIRED_INITIATE_PARAMS = ("client_id", "redirect_uri", "state", "code_challenge")


def _audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


# ---------------------------------------------------------------------------
# PKCE
# ---------------------------------------------------------------------------

def code_challenge_for(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_code_challenge(stored_challenge: str | None, code_verifier: str | None) -> bool:
    """Check a code_verifier against the stored S256 challenge.

    Requests stored without a challenge pass unconditionally. New requests
    always carry one because `initiate` requires it.
    """
    if not stored_challenge:
        logger.warning("pkce: request stored without code_challenge, skipping check")
        return True
    if not code_verifier:
        return False
    try:
        computed = code_challenge_for(code_verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(computed, stored_challenge)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

@dataclass
class PendingAuthorization:
    """Echo state for the one authorization in flight on a browser session."""

    client_id: str
    state: str
    code_challenge: str | None
    identity: str
    csrf: str
    created_at: float = field(default_factory=time.time)


@dataclass
class BrowserSession:
    """Server-side state behind the transport's session cookie.

    `identity` is set only while a remembered login is confirmed for the
    current call.
    """

    login_token: str | None = None
    identity: str | None = None
    pending: PendingAuthorization | None = None
    last_seen: float = field(default_factory=time.time)


@dataclass
class LoginSession:
    selector: str
    validator_hash: str
    identity: str
    expires_at: float


@dataclass
class Credentials:
    url: str | None = None
    password: str | None = None
    remember_me: bool = False


def _hash_validator(validator: str) -> str:
    return hashlib.sha256(validator.encode()).hexdigest()


class SessionGuard:
    """Binds browser sessions to identities and pending requests."""

    def __init__(self, identities: IdentityDirectory, login_lifetime: int | None = None):
        self.identities = identities
        self.login_lifetime = login_lifetime
        self.logins: dict[str, LoginSession] = {}
        self._lock = asyncio.Lock()

    def bind_pending_request(
        self,
        session: BrowserSession,
        client_id: str,
        state: str,
        code_challenge: str | None,
        identity: str,
    ) -> PendingAuthorization:
        session.pending = PendingAuthorization(
            client_id=client_id,
            state=state,
            code_challenge=code_challenge,
            identity=identity,
            csrf=secrets.token_urlsafe(32),
        )
        return session.pending

    def _purge_expired(self) -> None:
        now = time.time()
        expired = [s for s, rec in self.logins.items() if rec.expires_at < now]
        for s in expired:
            del self.logins[s]

    async def remember(self, identity: Identity) -> str:
        """Create a persistent login and return its cookie token."""
        selector = secrets.token_urlsafe(12)
        validator = secrets.token_urlsafe(32)
        async with self._lock:
            self._purge_expired()
            self.logins[selector] = LoginSession(
                selector=selector,
                validator_hash=_hash_validator(validator),
                identity=identity.me,
                expires_at=time.time() + (self.login_lifetime or 0),
            )
        _audit("session_created", identity=identity.me, lifetime=self.login_lifetime)
        return f"{selector}:{validator}"

    async def current_identity(self, session: BrowserSession) -> Identity | None:
        """Resolve the remembered login on `session`, if any."""
        session.identity = None
        if not session.login_token:
            return None
        selector, _, validator = session.login_token.partition(":")
        record = self.logins.get(selector)
        if record is None:
            session.login_token = None
            return None
        if record.expires_at < time.time():
            async with self._lock:
                self.logins.pop(selector, None)
            session.login_token = None
            return None
        if not hmac.compare_digest(_hash_validator(validator), record.validator_hash):
            raise SessionReplayDetected(record.identity, reason="validator_mismatch")
        identity = self.identities.get(record.identity)
        if identity is not None:
            session.identity = identity.me
        return identity

    async def authenticate(self, session: BrowserSession, credentials: Credentials) -> Identity:
        identity = await self.current_identity(session)
        if identity is not None:
            return identity

        identity = self.identities.find_by_url(credentials.url)
        if identity is None:
            raise InvalidUser("Invalid user")
        if not identity.verify_password(credentials.password):
            _audit("login_failed", identity=identity.me)
            raise InvalidPassword("Incorrect password. Try again.")

        if credentials.remember_me and self.login_lifetime:
            session.login_token = await self.remember(identity)
        return identity

    def detect_replay(
        self,
        session: BrowserSession,
        request: PendingAuthorization | AuthorizationRequest,
    ) -> bool:
        return session.identity is not None and session.identity != request.identity

    async def invalidate_all(self, identity: str) -> int:
        async with self._lock:
            doomed = [s for s, rec in self.logins.items() if rec.identity == identity]
            for s in doomed:
                del self.logins[s]
        return len(doomed)


# ---------------------------------------------------------------------------
# Profile projection
# ---------------------------------------------------------------------------

def project_profile(identity: Identity, scopes: list[str]) -> dict[str, Any]:
    """Disclose identity fields strictly by granted scope."""
    profile: dict[str, Any] = {"me": identity.me}
    if "profile" in scopes:
        card = {k: v for k, v in (("name", identity.name),
                                  ("url", identity.url),
                                  ("photo", identity.photo)) if v}
        if "email" in scopes and identity.email:
            card["email"] = identity.email
        profile["profile"] = card
    return profile


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class AuthorizationEngine:
    """Orchestrates initiate → authorize → redeem → issue/verify."""

    def __init__(
        self,
        settings: Settings,
        requests: RequestStore | None = None,
        tokens: TokenStore | None = None,
        guard: SessionGuard | None = None,
    ):
        self.settings = settings
        self.requests = requests if requests is not None else RequestStore()
        self.tokens = tokens if tokens is not None else TokenStore(settings.token_expiration)
        self.guard = guard or SessionGuard(settings.identities, settings.local_session_lifetime)

    @asynccontextmanager
    async def _replay_guard(self, session: BrowserSession):
        try:
            yield
        except SessionReplayDetected as exc:
            await self._remediate_replay(session, exc)
            raise

    async def _remediate_replay(self, session: BrowserSession, exc: SessionReplayDetected) -> None:
        logins = await self.guard.invalidate_all(exc.identity)
        tokens = await self.tokens.revoke_all_for(exc.identity)
        session.login_token = None
        session.identity = None
        session.pending = None
        logger.warning("session replay detected for %s (%s): revoked %d logins, %d tokens",
                       exc.identity, exc.reason, logins, tokens)
        _audit("session_replay_detected", identity=exc.identity, reason=exc.reason,
               logins_revoked=logins, tokens_revoked=tokens)

    # --- front channel ---

    async def initiate(
        self, session: BrowserSession, params: Mapping[str, str],
    ) -> AuthorizationRequest:
        for name in REQUIRED_INITIATE_PARAMS:
            if not params.get(name):
                raise MissingParameter(name)
        method = params.get("code_challenge_method") or "S256"
        if method != "S256":
            raise AuthError("Only S256 code_challenge_method is supported.")

        identity = self.settings.identities.find_by_url(params.get("me"))
        if identity is None:
            raise InvalidUser("Invalid user")

        req = await self.requests.create(
            identity=identity.me,
            client_id=params["client_id"],
            redirect_uri=params["redirect_uri"],
            scope=params.get("scope"),
            code_challenge=params["code_challenge"],
        )
        self.guard.bind_pending_request(
            session, req.client_id, params["state"], req.code_challenge, identity.me,
        )
        _audit("request_created", client_id=req.client_id, scope=req.scope)
        return req

    async def consent_context(
        self, session: BrowserSession, request: AuthorizationRequest,
    ) -> dict[str, Any]:
        """Data for the consent page: scope descriptions and sign-in state."""
        async with self._replay_guard(session):
            signed_in = await self.guard.current_identity(session)
        return {
            "identity": request.identity,
            "client_id": request.client_id,
            "scopes": [(s, self.settings.describe_scope(s)) for s in request.scopes],
            "signed_in": signed_in is not None,
            "rememberable": bool(self.settings.local_session_lifetime) and signed_in is None,
            "csrf_token": session.pending.csrf if session.pending else "",
        }

    async def authorize(
        self,
        session: BrowserSession,
        credentials: Credentials,
        scope_selection: list[str] | None = None,
        cancel: bool = False,
        csrf_token: str | None = None,
    ) -> str:
        """Authenticate, narrow scope, and return the client redirect URL."""
        pending = session.pending
        if pending is None:
            raise NoPendingAuthorization()
        if not hmac.compare_digest((csrf_token or "").encode(), pending.csrf.encode()):
            _audit("csrf_rejected", client_id=pending.client_id)
            raise CsrfMismatch()
        if cancel:
            _audit("authorize_cancelled", client_id=pending.client_id)
            return pending.client_id

        async with self._replay_guard(session):
            identity = await self.guard.authenticate(session, credentials)
            if self.guard.detect_replay(session, pending):
                raise SessionReplayDetected(session.identity)

        req = await self.requests.find_by_client_and_identity(pending.client_id, identity.me)
        if req is None:
            raise InvalidUser("Invalid user")

        if scope_selection is not None:
            narrowed = [s for s in req.scopes if s in scope_selection]
            await self.requests.update_scope(req, " ".join(narrowed))

        _audit("authorize_approved", client_id=req.client_id, scope=req.scope)
        return construct_redirect_uri(req.redirect_uri, code=req.code, state=pending.state)

    # --- back channel ---

    async def redeem(self, params: Mapping[str, str]) -> AuthorizationRequest:
        req = await self.requests.redeem(params.get("code") or "")
        if (req.redirect_uri != params.get("redirect_uri")
                or req.client_id != params.get("client_id")
                or req.is_stale()
                or not verify_code_challenge(req.code_challenge, params.get("code_verifier"))):
            _audit("grant_rejected", client_id=params.get("client_id"))
            raise InvalidGrant("validation failed")
        _audit("code_redeemed", client_id=req.client_id)
        return req

    def _identity_for(self, req: AuthorizationRequest | AccessToken) -> Identity:
        identity = self.settings.identities.get(req.identity)
        if identity is None:
            raise InvalidGrant("validation failed")
        return identity

    def fetch_profile(self, request: AuthorizationRequest) -> dict[str, Any]:
        return project_profile(self._identity_for(request), request.scopes)

    async def issue_token(self, request: AuthorizationRequest) -> dict[str, Any]:
        if not request.scopes:
            raise InvalidGrant("missing scope")
        identity = self._identity_for(request)
        token = await self.tokens.issue(identity.me, request.scope, request.client_id)
        _audit("token_issued", client_id=request.client_id, scope=token.scope,
               expires_in=self.tokens.lifetime)
        return {
            "access_token": token.auth_token,
            "scope": token.scope,
            "expires_in": self.tokens.lifetime,
            "token_type": "Bearer",
            **project_profile(identity, request.scopes),
        }

    async def exchange_for_profile(self, params: Mapping[str, str]) -> dict[str, Any]:
        return self.fetch_profile(await self.redeem(params))

    async def exchange_for_token(self, params: Mapping[str, str]) -> dict[str, Any]:
        return await self.issue_token(await self.redeem(params))

    async def verify_token(self, bearer_token: str) -> dict[str, Any]:
        try:
            token = await self.tokens.verify(bearer_token)
        except TokenExpired:
            _audit("token_expired")
            raise
        if token is None:
            raise TokenNotFound()
        return {
            "me": token.identity,
            "client_id": token.client_id,
            "scope": token.scope,
        }
