"""
FastAPI dependencies handing out the per-app handles built at startup (see main.create_app).
Nothing here looks up module-level state: tests swap handles on app.state.
"""
from fastapi import Request

from idp_server.accounts import AccountResolver
from idp_server.audit import AuditLogger
from idp_server.authenticator import Authenticator
from idp_server.interaction_types import ProtocolEngine
from idp_server.provider import Provider
from idp_server.rate_limit import SlidingWindowLimiter


def get_authenticator(request: Request) -> Authenticator:
    return Authenticator(request.app.state.account_store)


def get_resolver(request: Request) -> AccountResolver:
    return AccountResolver(request.app.state.account_store)


def get_engine(request: Request) -> ProtocolEngine:
    return request.app.state.engine


def get_provider(request: Request) -> Provider:
    return request.app.state.provider


def get_audit(request: Request) -> AuditLogger:
    return request.app.state.audit


def get_login_limiter(request: Request) -> SlidingWindowLimiter:
    return request.app.state.login_limiter


def get_token_limiter(request: Request) -> SlidingWindowLimiter:
    return request.app.state.token_limiter
