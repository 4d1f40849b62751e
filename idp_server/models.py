"""
SQLAlchemy models for the identity provider: accounts (sql store), clients, and engine state
(interactions, login sessions, grants, authorization codes, refresh tokens, audit log).
"""
import json
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _loads(value: str | None, default):
    if not value:
        return default
    return json.loads(value)


class Base(DeclarativeBase):
    pass


class Account(Base):
    """Row behind the "sql" account store."""
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    login_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)


class Client(Base):
    __tablename__ = "clients"

    client_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    # bcrypt hash of client_secret; None = public client
    client_secret_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    application_type: Mapped[str] = mapped_column(String(32), default="web", nullable=False)
    # JSON arrays stored as text; redirect URIs are exact-match
    redirect_uris: Mapped[str] = mapped_column(Text, default="[]", nullable=False)
    post_logout_redirect_uris: Mapped[str] = mapped_column(Text, default="[]", nullable=False)
    response_types: Mapped[str] = mapped_column(Text, default='["code"]', nullable=False)
    grant_types: Mapped[str] = mapped_column(Text, default='["authorization_code"]', nullable=False)
    scope: Mapped[str | None] = mapped_column(Text, nullable=True)  # space-separated; None = any allowed
    token_endpoint_auth_method: Mapped[str] = mapped_column(String(64), default="client_secret_basic", nullable=False)
    # Dynamically registered clients only
    registration_access_token_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    def get_redirect_uris_list(self) -> list[str]:
        return _loads(self.redirect_uris, [])

    def redirect_uri_allowed(self, uri: str) -> bool:
        return uri in self.get_redirect_uris_list()

    def post_logout_redirect_uri_allowed(self, uri: str) -> bool:
        return uri in _loads(self.post_logout_redirect_uris, [])

    def grant_type_allowed(self, grant_type: str) -> bool:
        return grant_type in _loads(self.grant_types, [])

    def response_type_allowed(self, response_type: str) -> bool:
        return response_type in _loads(self.response_types, [])

    def scope_allowed(self, scopes: set[str]) -> bool:
        if self.scope is None:
            return True
        return scopes <= set(self.scope.split())

    @property
    def is_confidential(self) -> bool:
        return self.client_secret_hash is not None and len(self.client_secret_hash) > 0

    def to_metadata(self) -> dict:
        """Public client metadata (no secrets), as returned by registration reads."""
        data = {
            "client_id": self.client_id,
            "application_type": self.application_type,
            "redirect_uris": self.get_redirect_uris_list(),
            "post_logout_redirect_uris": _loads(self.post_logout_redirect_uris, []),
            "response_types": _loads(self.response_types, []),
            "grant_types": _loads(self.grant_types, []),
            "token_endpoint_auth_method": self.token_endpoint_auth_method,
        }
        if self.scope is not None:
            data["scope"] = self.scope
        return data


class Interaction(Base):
    """Pending authorization waiting for human input. Deleted once its result is consumed."""
    __tablename__ = "interactions"

    uid: Mapped[str] = mapped_column(String(64), primary_key=True)
    client_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    prompt_name: Mapped[str] = mapped_column(String(64), nullable=False)
    prompt_reasons: Mapped[str] = mapped_column(Text, default="[]", nullable=False)
    prompt_details: Mapped[str] = mapped_column(Text, default="{}", nullable=False)
    params: Mapped[str] = mapped_column(Text, nullable=False)  # authorization request params as JSON
    session_uid: Mapped[str | None] = mapped_column(String(64), nullable=True)
    account_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_submission: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[str | None] = mapped_column(Text, nullable=True)
    finished: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    def get_params(self) -> dict:
        return _loads(self.params, {})

    def get_result(self) -> dict:
        return _loads(self.result, {})

    def get_last_submission(self) -> dict:
        return _loads(self.last_submission, {})


class LoginSession(Base):
    __tablename__ = "login_sessions"

    uid: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    login_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class Grant(Base):
    """Scopes an account has consented to for a client. Consent accumulates."""
    __tablename__ = "grants"
    __table_args__ = (UniqueConstraint("account_id", "client_id", name="uq_grant_account_client"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    client_id: Mapped[str] = mapped_column(String(255), nullable=False)
    scope: Mapped[str] = mapped_column(Text, default="", nullable=False)  # space-separated
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def scopes(self) -> set[str]:
        return set(self.scope.split())


class AuthorizationCode(Base):
    __tablename__ = "authorization_codes"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    client_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    redirect_uri: Mapped[str] = mapped_column(Text, nullable=False)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    scope: Mapped[str] = mapped_column(Text, nullable=False)  # space-separated
    code_challenge: Mapped[str | None] = mapped_column(String(255), nullable=True)
    code_challenge_method: Mapped[str | None] = mapped_column(String(16), nullable=True)
    nonce: Mapped[str | None] = mapped_column(String(255), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)


class RefreshToken(Base):
    __tablename__ = "refresh_tokens"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    token: Mapped[str] = mapped_column(String(512), unique=True, nullable=False, index=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    client_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    scope: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)


class AuditLog(Base):
    """Security-relevant events. No tokens or passwords stored."""
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    client_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    account_id: Mapped[str | None] = mapped_column(String(64), nullable=True)  # None = anonymous
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)  # success | fail
