#!/usr/bin/env python3
"""
Hearth — single-user IndieAuth authorization server.

Runs as a Starlette app under uvicorn. Settings and the operator identity are
loaded from hearth.yaml; all authorization state lives in memory.

Endpoints:
  GET  /auth          — start a flow, show the consent page
  POST /auth/approve  — consent form (password or remembered login)
  POST /auth          — redeem a code for the profile only
  POST /token         — redeem a code for a bearer token
  GET  /token         — verify a bearer token
"""

import argparse
import html as html_mod
import logging
import secrets
import time
from pathlib import Path

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from starlette.routing import Route
from starlette.types import ASGIApp, Receive, Scope, Send

from hearth_config import Settings, load_settings
from hearth_errors import AuthError, TokenExpired
from hearth_oauth import AuthorizationEngine, BrowserSession, Credentials
from hearth_stores import AUTH_CODE_TTL

logger = logging.getLogger("hearth")

SESSION_COOKIE = "hearth_sid"
LOGIN_COOKIE = "hearth_login"


# ---------------------------------------------------------------------------
# Browser sessions
# ---------------------------------------------------------------------------

def _sweep_sessions(sessions: dict[str, BrowserSession], login_lifetime: int | None) -> None:
    """Drop sessions idle past the code TTL, or past the login lifetime when signed in."""
    now = time.time()
    stale = [sid for sid, s in sessions.items()
             if now - s.last_seen > (login_lifetime if s.login_token and login_lifetime
                                     else AUTH_CODE_TTL)]
    for sid in stale:
        del sessions[sid]


def _load_session(request: Request) -> tuple[str, BrowserSession]:
    sessions: dict[str, BrowserSession] = request.app.state.sessions
    _sweep_sessions(sessions, request.app.state.settings.local_session_lifetime)
    sid = request.cookies.get(SESSION_COOKIE, "")
    session = sessions.get(sid)
    if session is None:
        sid = secrets.token_urlsafe(32)
        session = BrowserSession()
        sessions[sid] = session
    session.login_token = request.cookies.get(LOGIN_COOKIE) or None
    session.last_seen = time.time()
    return sid, session


def _store_session(response: Response, request: Request, sid: str, session: BrowserSession) -> Response:
    secure = request.url.scheme == "https"
    response.set_cookie(SESSION_COOKIE, sid, httponly=True, secure=secure, samesite="lax")
    if session.login_token:
        if session.login_token != request.cookies.get(LOGIN_COOKIE):
            response.set_cookie(
                LOGIN_COOKIE, session.login_token,
                max_age=request.app.state.settings.local_session_lifetime,
                httponly=True, secure=secure, samesite="lax",
            )
    elif LOGIN_COOKIE in request.cookies:
        response.delete_cookie(LOGIN_COOKIE)
    return response


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------

def _oauth_error(exc: AuthError) -> JSONResponse:
    body = {"error": exc.error}
    if exc.message:
        body["error_description"] = exc.message
    headers = {"Cache-Control": "no-store"}
    if isinstance(exc, TokenExpired):
        headers["WWW-Authenticate"] = 'Bearer error="invalid_token"'
    return JSONResponse(body, status_code=exc.status, headers=headers)


def _bearer_token(request: Request) -> str | None:
    auth = request.headers.get("authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth[7:].strip() or None


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def authorization_interface(request: Request) -> Response:
    engine: AuthorizationEngine = request.app.state.engine
    sid, session = _load_session(request)
    params = dict(request.query_params)
    try:
        auth_req = await engine.initiate(session, params)
        context = await engine.consent_context(session, auth_req)
    except AuthError as exc:
        if exc.error == "invalid_request":
            return _store_session(_oauth_error(exc), request, sid, session)
        page = HTMLResponse(_error_page("Error", exc.message or exc.error), status_code=exc.status)
        return _store_session(page, request, sid, session)
    return _store_session(HTMLResponse(_consent_page(**context)), request, sid, session)


async def authorize_user(request: Request) -> Response:
    engine: AuthorizationEngine = request.app.state.engine
    sid, session = _load_session(request)
    form = await request.form()

    scope_selection = None
    if form.get("scope_selection"):
        scope_selection = [str(s) for s in form.getlist("scope")]
    credentials = Credentials(
        url=str(form.get("url", "")) or None,
        password=str(form.get("password", "")) or None,
        remember_me=bool(form.get("remember_me")),
    )
    try:
        target = await engine.authorize(
            session, credentials,
            scope_selection=scope_selection,
            cancel=form.get("action") == "cancel",
            csrf_token=str(form.get("csrf_token", "")),
        )
    except AuthError as exc:
        page = HTMLResponse(_error_page("Not authorized", exc.message or exc.error),
                            status_code=exc.status)
        return _store_session(page, request, sid, session)
    logger.info("authorize_redirect: %s", target.split("?")[0])
    return _store_session(RedirectResponse(target, status_code=302), request, sid, session)


async def send_profile(request: Request) -> Response:
    engine: AuthorizationEngine = request.app.state.engine
    form = await request.form()
    try:
        profile = await engine.exchange_for_profile({k: str(v) for k, v in form.items()})
    except AuthError as exc:
        return _oauth_error(exc)
    return JSONResponse(profile, headers={"Cache-Control": "no-store"})


async def issue_token(request: Request) -> Response:
    engine: AuthorizationEngine = request.app.state.engine
    form = await request.form()
    try:
        body = await engine.exchange_for_token({k: str(v) for k, v in form.items()})
    except AuthError as exc:
        return _oauth_error(exc)
    return JSONResponse(body, headers={"Cache-Control": "no-store"})


async def verify_token(request: Request) -> Response:
    engine: AuthorizationEngine = request.app.state.engine
    token = _bearer_token(request)
    if token is None:
        return JSONResponse({"error": "invalid_request",
                             "error_description": "Bearer token required"}, status_code=400)
    try:
        body = await engine.verify_token(token)
    except AuthError as exc:
        return _oauth_error(exc)
    return JSONResponse(body)


def create_app(settings: Settings | None = None,
               engine: AuthorizationEngine | None = None) -> Starlette:
    settings = settings or load_settings()
    app = Starlette(routes=[
        Route("/auth", authorization_interface, methods=["GET"]),
        Route("/auth", send_profile, methods=["POST"]),
        Route("/auth/approve", authorize_user, methods=["POST"]),
        Route("/token", issue_token, methods=["POST"]),
        Route("/token", verify_token, methods=["GET"]),
    ])
    app.state.settings = settings
    app.state.engine = engine or AuthorizationEngine(settings)
    app.state.sessions = {}
    return app


# ---------------------------------------------------------------------------
# HTML templates
# ---------------------------------------------------------------------------

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
            background: #faf7f2; color: #222;
            display: flex; justify-content: center; align-items: center;
            min-height: 100vh; margin: 0; }
        .card { background: #fff; border: 1px solid #e2d9cc; border-radius: 12px;
            padding: 2rem; max-width: 420px; width: 90%;
            box-shadow: 0 4px 24px rgba(0, 0, 0, 0.08); }
        h1 { font-size: 1.3rem; margin: 0 0 0.5rem 0; color: #b5542b; }
        .client { font-weight: 600; }
        .scopes { margin: 1rem 0; font-size: 0.9rem; }
        .buttons { display: flex; gap: 1rem; margin-top: 1.5rem; }
        button { flex: 1; padding: 0.75rem; border: none; border-radius: 8px;
            font-size: 1rem; cursor: pointer; font-weight: 600; }
        .approve { background: #b5542b; color: #fff; }
        .cancel { background: #e2d9cc; color: #222; }
        input[type=password] { width: 100%; padding: 0.6rem; margin-top: 0.4rem; }
"""


def _consent_page(identity: str, client_id: str, scopes: list[tuple[str, str]],
                  signed_in: bool, rememberable: bool, csrf_token: str) -> str:
    safe_client = html_mod.escape(client_id)
    safe_identity = html_mod.escape(identity, quote=True)
    scope_items = "".join(
        f'<li><label><input type="checkbox" name="scope" value="{html_mod.escape(name, quote=True)}"'
        f' checked> {html_mod.escape(desc)}</label></li>'
        for name, desc in scopes
    )
    scope_block = ""
    if scopes:
        scope_block = (f'<div class="scopes"><strong>Requested access:</strong>'
                       f'<input type="hidden" name="scope_selection" value="1">'
                       f'<ul>{scope_items}</ul></div>')
    password_block = ""
    if not signed_in:
        password_block = ('<label for="password">Password:</label>'
                          '<input type="password" id="password" name="password" required>')
    remember_block = ""
    if rememberable:
        remember_block = ('<p><label><input type="checkbox" name="remember_me" value="1">'
                          ' Remember me</label></p>')
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>Hearth — Authorize</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="card">
        <h1>Sign in</h1>
        <p><span class="client">{safe_client}</span> wants to sign you in as
            <strong>{html_mod.escape(identity)}</strong>.</p>
        <form method="POST" action="/auth/approve">
            <input type="hidden" name="url" value="{safe_identity}">
            <input type="hidden" name="csrf_token" value="{html_mod.escape(csrf_token, quote=True)}">
            {scope_block}
            {password_block}
            {remember_block}
            <div class="buttons">
                <button type="submit" name="action" value="cancel" class="cancel" formnovalidate>Cancel</button>
                <button type="submit" name="action" value="approve" class="approve">Approve</button>
            </div>
        </form>
    </div>
</body>
</html>"""


def _error_page(title: str, message: str) -> str:
    safe_title = html_mod.escape(title)
    safe_msg = html_mod.escape(message)
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>Hearth — {safe_title}</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="card">
        <h1>{safe_title}</h1>
        <p>{safe_msg}</p>
        <p style="margin-top:1.5rem"><a href="javascript:history.back()">Go back</a></p>
    </div>
</body>
</html>"""


# ---------------------------------------------------------------------------
# Request logging
# ---------------------------------------------------------------------------

class _RequestLogMiddleware:
    def __init__(self, inner: ASGIApp):
        self.inner = inner

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.inner(scope, receive, send)
            return

        hdrs = dict(scope.get("headers", []))
        auth = hdrs.get(b"authorization", b"").decode(errors="replace")
        ua = hdrs.get(b"user-agent", b"").decode(errors="replace")
        logger.info("recv: %s %s auth=%s ua=%s", scope.get("method", "?"), scope.get("path", "?"),
                    auth[:14] + "..." if len(auth) > 14 else (auth or "none"), ua[:60])
        await self.inner(scope, receive, send)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    # Audit logger — JSON-lines to ~/.hearth/audit.log
    _audit_log_path = Path.home() / ".hearth" / "audit.log"
    _audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    _audit_handler = logging.FileHandler(_audit_log_path)
    _audit_handler.setFormatter(logging.Formatter("%(message)s"))
    _audit_logger = logging.getLogger("hearth-audit")
    _audit_logger.addHandler(_audit_handler)
    _audit_logger.setLevel(logging.INFO)
    _audit_logger.propagate = False

    parser = argparse.ArgumentParser(description="Hearth IndieAuth server")
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument("--port", type=int, default=8222)
    parser.add_argument("--host", default="127.0.0.1")
    args = parser.parse_args()

    app = _RequestLogMiddleware(create_app(load_settings(args.config)))
    logger.info(f"hearth: starting HTTP server on {args.host}:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port, log_level="info",
                proxy_headers=True, forwarded_allow_ips="*")
