import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, settings as default_settings
from .db import Base, engine
from .exceptions import (
    ConfigurationError, RateLimitExceeded, SongMintError, rate_limit_exception_handler, songmint_exception_handler,
)
from .middleware import RequestIDMiddleware
from .routers import billing, credits, observability, songs, stripe, support
from .services.notifications import EmailNotifier
from .services.plans import PlanCatalog
from .services.rate_limit import build_webhook_limiter
from .services.stripe_client import StripeGateway


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def check_production_settings(settings: Settings) -> None:
    if not settings.is_production:
        return
    if settings.stripe_webhook_secret == "whsec_change_me":
        raise ConfigurationError("stripe_webhook_secret", "must be set in production")
    if settings.jwt_secret == "change-me":
        raise ConfigurationError("jwt_secret", "must be set in production")


def create_app(settings: Settings = default_settings) -> FastAPI:
    configure_logging(settings.log_level)
    check_production_settings(settings)
    Base.metadata.create_all(bind=engine)

    app = FastAPI(title=settings.app_name, debug=settings.debug)

    app.state.stripe_gateway = StripeGateway.from_settings(settings)
    app.state.notifier = EmailNotifier.from_settings(settings)
    app.state.plan_catalog = PlanCatalog(settings)
    app.state.webhook_limiter = build_webhook_limiter(settings)

    app.add_exception_handler(RateLimitExceeded, rate_limit_exception_handler)
    app.add_exception_handler(SongMintError, songmint_exception_handler)

    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(stripe.router, prefix="/stripe", tags=["stripe"])
    app.include_router(billing.router, prefix="/billing", tags=["billing"])
    app.include_router(credits.router, prefix="/credits", tags=["credits"])
    app.include_router(songs.router, prefix="/songs", tags=["songs"])
    app.include_router(support.router, prefix="/support", tags=["support"])

    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}

    # Observability endpoints
    app.include_router(observability.router, prefix="/ops", tags=["observability"])

    return app


app = create_app()
