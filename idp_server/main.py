"""
Identity provider: OIDC engine endpoints plus the interaction screens (login, account selection,
consent, abort) backed by a pluggable account store.
The account store is chosen once here (IDP_ACCOUNT_STORE) and handed to handlers via app.state.
"""
import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI, Request  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402
from fastapi.responses import HTMLResponse, JSONResponse  # noqa: E402

from idp_server import config  # noqa: E402
from idp_server.account_store import AccountStore, SqlAccountStore, create_account_store  # noqa: E402
from idp_server.audit import AuditLogger  # noqa: E402
from idp_server.authorize import router as authorize_router  # noqa: E402
from idp_server.database import SessionLocal, init_db  # noqa: E402
from idp_server.errors import SessionStateError, StoreIOError  # noqa: E402
from idp_server.interaction import router as interaction_router, set_no_cache  # noqa: E402
from idp_server.interaction_types import ProtocolEngine  # noqa: E402
from idp_server.introspect import router as introspect_router  # noqa: E402
from idp_server.keys import get_signing_key  # noqa: E402
from idp_server.logout import router as logout_router  # noqa: E402
from idp_server.provider import Provider  # noqa: E402
from idp_server.rate_limit import SlidingWindowLimiter  # noqa: E402
from idp_server.registration import router as registration_router  # noqa: E402
from idp_server.revoke import router as revoke_router  # noqa: E402
from idp_server.seed import seed_clients, seed_sql_account  # noqa: E402
from idp_server.token_endpoint import router as token_router  # noqa: E402
from idp_server.userinfo import router as userinfo_router  # noqa: E402
from idp_server.views import render_error  # noqa: E402
from idp_server.well_known import router as well_known_router  # noqa: E402

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, load signing key, seed clients (and the sql store's account) on startup."""
    init_db()
    get_signing_key()
    db = SessionLocal()
    try:
        seed_clients(db)
        if isinstance(app.state.account_store, SqlAccountStore):
            seed_sql_account(db)
    finally:
        db.close()
    yield
    await app.state.account_store.close()


async def session_state_error_handler(request: Request, exc: SessionStateError):
    logger.info("interaction rejected (uid=%s): %s", exc.uid, exc)
    response = HTMLResponse(
        render_error("Interaction failed", "This sign-in request is no longer valid. Start again from the application."),
        status_code=400,
    )
    return set_no_cache(response)


async def store_io_error_handler(request: Request, exc: StoreIOError):
    logger.error("account store failure on %s: %s", request.url.path, exc)
    if request.url.path.startswith("/interaction"):
        response = HTMLResponse(
            render_error("Service unavailable", "Sign-in is temporarily unavailable. Try again later."),
            status_code=503,
        )
        return set_no_cache(response)
    return JSONResponse(
        {"error": "temporarily_unavailable", "error_description": "Account store unavailable"},
        status_code=503,
    )


def create_app(
    account_store: AccountStore | None = None,
    engine: ProtocolEngine | None = None,
) -> FastAPI:
    """
    Build the app. account_store defaults to the configured backend; engine defaults to the
    in-process Provider (the interaction controller only sees it through the ProtocolEngine interface).
    """
    app = FastAPI(title="OIDC Identity Provider", version="1.0.0", lifespan=lifespan)

    provider = Provider(SessionLocal)
    app.state.provider = provider
    app.state.engine = engine if engine is not None else provider
    app.state.account_store = (
        account_store if account_store is not None else create_account_store(config.ACCOUNT_STORE, SessionLocal)
    )
    app.state.audit = AuditLogger(SessionLocal)
    app.state.login_limiter = SlidingWindowLimiter(config.RATE_LIMIT_LOGIN_PER_MINUTE)
    app.state.token_limiter = SlidingWindowLimiter(config.RATE_LIMIT_TOKEN_PER_MINUTE)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type"],
    )

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        return response

    app.add_exception_handler(SessionStateError, session_state_error_handler)
    app.add_exception_handler(StoreIOError, store_io_error_handler)

    app.include_router(interaction_router, tags=["interaction"])
    app.include_router(authorize_router, tags=["authorize"])
    app.include_router(token_router, tags=["token"])
    app.include_router(userinfo_router, tags=["userinfo"])
    app.include_router(introspect_router, tags=["introspect"])
    app.include_router(revoke_router, tags=["revoke"])
    app.include_router(logout_router, tags=["logout"])
    app.include_router(registration_router, tags=["registration"])
    app.include_router(well_known_router, tags=["well-known"])

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok", "service": "idp_server", "account_store": app.state.account_store.name}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "idp_server.main:app",
        host="0.0.0.0",
        port=config.PORT,
        proxy_headers=True,
    )
