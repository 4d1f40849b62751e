"""
HTML for the interaction screens (login, account selection, consent/generic authorize, error).
Every interpolated value is escaped.
"""
import html
import json
from typing import Any


def e(s: Any) -> str:
    return html.escape("" if s is None else str(s))


def _page(title: str, body: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{e(title)}</title></head>
<body>
  <h1>{e(title)}</h1>
{body}
</body>
</html>"""


def _client_name(client, params: dict) -> str:
    if client is not None:
        return client.client_id
    return params.get("client_id") or "(unknown client)"


def _abort_link(uid: str) -> str:
    return f'  <p><a href="/interaction/{e(uid)}/abort">Cancel</a></p>'


def render_login(
    client,
    uid: str,
    params: dict,
    details: dict | None = None,
    title: str = "Sign-in",
    flash: str | None = None,
) -> str:
    """Credential form. params["login_hint"] pre-fills the login id (e.g. after a failed attempt)."""
    flash_html = f'  <p style="color:red;">{e(flash)}</p>\n' if flash else ""
    body = f"""{flash_html}  <p>Sign in to continue to <strong>{e(_client_name(client, params))}</strong>.</p>
  <form method="post" action="/interaction/{e(uid)}/login" autocomplete="off">
    <label>Login ID: <input type="text" name="loginId" value="{e(params.get("login_hint"))}" required autofocus/></label><br/>
    <label>Password: <input type="password" name="password" required/></label><br/>
    <button type="submit">Sign-in</button>
  </form>
{_abort_link(uid)}"""
    return _page(title, body)


def render_select_account(
    client,
    uid: str,
    params: dict,
    claims: dict,
    title: str = "Sign-in",
) -> str:
    """Confirm the already signed-in account or switch to another one."""
    who = claims.get("loginId") or claims.get("sub")
    body = f"""  <p><strong>{e(_client_name(client, params))}</strong> wants to know who you are.</p>
  <form method="post" action="/interaction/{e(uid)}/continue" style="display:inline;">
    <button type="submit">Continue as {e(who)}</button>
  </form>
  <form method="post" action="/interaction/{e(uid)}/continue" style="display:inline; margin-left: 0.5em;">
    <input type="hidden" name="switch" value="true"/>
    <button type="submit">Use another account</button>
  </form>
{_abort_link(uid)}"""
    return _page(title, body)


def render_interaction(
    client,
    uid: str,
    params: dict,
    prompt_name: str,
    details: dict | None = None,
    scopes: list[str] | None = None,
    claims_by_scope: dict[str, list[str]] | None = None,
    can_confirm: bool = True,
    title: str = "Authorize",
) -> str:
    """Consent screen; also the generic view for prompts with no dedicated screen."""
    scopes = scopes or []
    claims_by_scope = claims_by_scope or {}
    items = "".join(
        f"<li>{e(s)}"
        + (f" ({e(', '.join(claims_by_scope[s]))})" if claims_by_scope.get(s) else "")
        + "</li>"
        for s in scopes
    )
    details_html = ""
    if details:
        details_html = f"  <pre>{e(json.dumps(details, indent=2, sort_keys=True, default=str))}</pre>\n"
    confirm_html = ""
    if can_confirm:
        confirm_html = f"""  <form method="post" action="/interaction/{e(uid)}/confirm">
    <button type="submit">Continue</button>
  </form>
"""
    body = f"""  <p><strong>{e(_client_name(client, params))}</strong> is requesting access ({e(prompt_name)}).</p>
  <ul>{items or "<li>(no scopes)</li>"}</ul>
{details_html}{confirm_html}{_abort_link(uid)}"""
    return _page(title, body)


def render_error(title: str, message: str) -> str:
    return _page(title, f"  <p>{e(message)}</p>")
