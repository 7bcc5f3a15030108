"""FastAPI dependencies for the process-wide service objects.

The objects are built once in `create_app` and kept on `app.state`;
tests swap them through `app.dependency_overrides`.
"""
from fastapi import Request

from songmint.services.notifications import EmailNotifier
from songmint.services.plans import PlanCatalog
from songmint.services.rate_limit import RateLimiter
from songmint.services.stripe_client import StripeGateway


def get_stripe_gateway(request: Request) -> StripeGateway:
    return request.app.state.stripe_gateway


def get_notifier(request: Request) -> EmailNotifier:
    return request.app.state.notifier


def get_plan_catalog(request: Request) -> PlanCatalog:
    return request.app.state.plan_catalog


def get_webhook_limiter(request: Request) -> RateLimiter:
    return request.app.state.webhook_limiter
