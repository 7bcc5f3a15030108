import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from songmint.auth import CurrentUser, get_current_user
from songmint.config import settings
from songmint.db import get_db
from songmint.dependencies import get_plan_catalog, get_stripe_gateway
from songmint.exceptions import NotFoundError
from songmint.models import Profile
from songmint.schemas import (
    CheckoutRequest, CheckoutSessionOut, PortalSessionOut, SubscriptionCheckoutRequest,
    SubscriptionSummary, SubscriptionVerification,
)
from songmint.services.plans import PLANS_BY_TIER, PlanCatalog, get_credit_pack
from songmint.services.stripe_client import StripeGateway
from songmint.services.stripe_events import _object_id, subscription_period, subscription_product_id

router = APIRouter()
logger = logging.getLogger(__name__)


def _load_profile(db: Session, user_id: str) -> Profile:
    profile = db.get(Profile, user_id)
    if profile is None:
        raise NotFoundError("Profile", user_id)
    return profile


@router.post("/checkout", response_model=CheckoutSessionOut)
def create_checkout_session(
    payload: CheckoutRequest,
    user: CurrentUser = Depends(get_current_user),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    """One-time credit pack checkout. Pricing comes from the server-side pack table."""
    pack = get_credit_pack(payload.pack)
    if pack is None:
        raise HTTPException(status_code=400, detail="Invalid credit pack selected")

    session = gateway.create_payment_checkout(
        user_id=user.id,
        email=user.email,
        name=pack.name,
        credits=pack.credits,
        unit_amount=pack.price_cents,
        currency=settings.currency,
        success_url=f"{settings.app_url}/payment-success?session_id={{CHECKOUT_SESSION_ID}}&credits={pack.credits}",
        cancel_url=f"{settings.app_url}/pricing",
    )
    logger.info(f"Created checkout session {session.get('id')} for user {user.id} ({pack.key})")
    return CheckoutSessionOut(sessionId=session.get("id"), url=session.get("url"))


@router.post("/subscription-checkout", response_model=CheckoutSessionOut)
def create_subscription_checkout(
    payload: SubscriptionCheckoutRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    catalog: PlanCatalog = Depends(get_plan_catalog),
):
    profile = _load_profile(db, user.id)

    product_id = catalog.product_for_tier(payload.plan)
    if product_id is None:
        raise HTTPException(status_code=400, detail="Invalid plan selected")

    product = gateway.retrieve_product(product_id)
    default_price = product.get("default_price")
    if not default_price or isinstance(default_price, str):
        raise HTTPException(status_code=400, detail="Product price not found")

    customer_id = profile.stripe_customer_id
    if not customer_id:
        customer = gateway.create_customer(email=user.email or profile.email, user_id=user.id)
        customer_id = customer.get("id")
        profile.stripe_customer_id = customer_id
        if user.email and not profile.email:
            profile.email = user.email
        db.commit()
        logger.info(f"Created Stripe customer {customer_id} for user {user.id}")

    if profile.stripe_subscription_id:
        # Plan changes go through the customer portal
        portal = gateway.create_billing_portal_session(customer_id, f"{settings.app_url}/dashboard")
        return CheckoutSessionOut(url=portal.get("url"), redirectToPortal=True)

    session = gateway.create_subscription_checkout(
        customer_id=customer_id,
        price_id=default_price.get("id"),
        user_id=user.id,
        plan=payload.plan,
        success_url=f"{settings.app_url}/subscription-success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{settings.app_url}/pricing",
    )
    logger.info(f"Created subscription checkout {session.get('id')} for user {user.id} ({payload.plan})")
    return CheckoutSessionOut(sessionId=session.get("id"), url=session.get("url"))


@router.post("/portal", response_model=PortalSessionOut)
def create_portal_session(
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    profile = db.get(Profile, user.id)
    if profile is None or not profile.stripe_customer_id:
        raise HTTPException(status_code=404, detail="No customer found")

    portal = gateway.create_billing_portal_session(profile.stripe_customer_id, f"{settings.app_url}/dashboard")
    return PortalSessionOut(url=portal.get("url"))


@router.get("/verify-subscription", response_model=SubscriptionVerification)
def verify_subscription(
    session_id: Optional[str] = Query(None),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    catalog: PlanCatalog = Depends(get_plan_catalog),
):
    if not session_id:
        raise HTTPException(status_code=400, detail="Missing session ID")

    session = gateway.retrieve_checkout_session(session_id)
    profile = db.get(Profile, user.id)
    session_email = (session.get("customer_details") or {}).get("email") or session.get("customer_email")
    session_customer = _object_id(session.get("customer"))
    owns_session = (
        (session_email is not None and session_email == user.email)
        or (profile is not None and session_customer is not None and session_customer == profile.stripe_customer_id)
    )
    if not owns_session:
        raise HTTPException(status_code=403, detail="Session does not belong to user")

    if session.get("payment_status") != "paid":
        raise HTTPException(status_code=400, detail="Payment not completed")

    subscription = session.get("subscription")
    if not subscription or isinstance(subscription, str):
        raise HTTPException(status_code=400, detail="No subscription found")

    plan = catalog.plan_for_product(subscription_product_id(subscription))
    if plan is None:
        raise HTTPException(status_code=400, detail="Unknown product")

    items = (subscription.get("items") or {}).get("data") or []
    unit_amount = ((items[0].get("price") or {}).get("unit_amount")) if items else None
    _, period_end = subscription_period(subscription)

    return SubscriptionVerification(
        subscription=SubscriptionSummary(
            planName=PLANS_BY_TIER[plan.tier].name,
            creditsPerMonth=plan.credits,
            amount=f"{unit_amount / 100:.2f}" if unit_amount is not None else None,
            nextBilling=period_end,
            status=subscription.get("status"),
        )
    )
