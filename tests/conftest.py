import hashlib
import hmac
import os
import tempfile
import time

# Settings are read at import time; point them at a throwaway database first.
_TEST_DIR = tempfile.mkdtemp(prefix="songmint-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'songmint.db')}"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["JWT_SECRET"] = "test-jwt-secret-that-is-long-enough-for-hs256"
os.environ["ADMIN_API_KEY"] = "admin-test-key"
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ["APP_URL"] = "https://songmint.test"
os.environ.pop("RESEND_API_KEY", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from songmint.auth import create_access_token
from songmint.config import settings
from songmint.db import Base, SessionLocal, engine
from songmint.dependencies import get_notifier, get_plan_catalog, get_stripe_gateway, get_webhook_limiter
from songmint.exceptions import ExternalServiceError
from songmint.main import app
from songmint.models import Profile
from songmint.services.notifications import EmailNotifier
from songmint.services.plans import PlanCatalog
from songmint.services.rate_limit import MemoryWindowStore, RateLimiter
from songmint.services.stripe_client import StripeGateway

WEBHOOK_SECRET = "whsec_test_secret"
LITE_PRODUCT = settings.stripe_lite_product_id
PLUS_PRODUCT = settings.stripe_plus_product_id
MAX_PRODUCT = settings.stripe_max_product_id


class FakeStripeGateway(StripeGateway):
    """Real signature verification; canned Stripe objects for everything else."""

    def __init__(self):
        super().__init__(api_key="sk_test_dummy", webhook_secret=WEBHOOK_SECRET)
        self.subscriptions = {}
        self.customers = {}
        self.payment_intents = {}
        self.products = {}
        self.checkout_sessions = {}
        self.created_sessions = []
        self.created_customers = []
        self.portal_sessions = []

    def _lookup(self, store, object_id, kind):
        if object_id not in store:
            raise ExternalServiceError("stripe", f"No such {kind}: '{object_id}'", 404)
        return store[object_id]

    def retrieve_subscription(self, subscription_id):
        return self._lookup(self.subscriptions, subscription_id, "subscription")

    def retrieve_customer(self, customer_id):
        return self._lookup(self.customers, customer_id, "customer")

    def retrieve_payment_intent(self, payment_intent_id):
        return self._lookup(self.payment_intents, payment_intent_id, "payment_intent")

    def retrieve_product(self, product_id):
        return self._lookup(self.products, product_id, "product")

    def retrieve_checkout_session(self, session_id):
        return self._lookup(self.checkout_sessions, session_id, "checkout.session")

    def create_customer(self, email, user_id):
        customer = {"id": f"cus_new_{len(self.created_customers) + 1}", "email": email, "metadata": {"userId": user_id}}
        self.created_customers.append(customer)
        self.customers[customer["id"]] = customer
        return customer

    def create_payment_checkout(self, **kwargs):
        session = {"id": f"cs_test_{len(self.created_sessions) + 1}", "url": "https://checkout.stripe.test/pay", **kwargs}
        self.created_sessions.append(session)
        return session

    def create_subscription_checkout(self, **kwargs):
        session = {"id": f"cs_sub_{len(self.created_sessions) + 1}", "url": "https://checkout.stripe.test/sub", **kwargs}
        self.created_sessions.append(session)
        return session

    def create_billing_portal_session(self, customer_id, return_url):
        self.portal_sessions.append((customer_id, return_url))
        return {"id": "bps_test", "url": f"https://billing.stripe.test/{customer_id}"}


class RecordingNotifier(EmailNotifier):

    def __init__(self):
        super().__init__(api_key="re_test", from_email="billing@songmint.test", app_url="https://songmint.test",
                         support_inbox="support@songmint.test")
        self.sent = []
        self.fail = False

    def send(self, to_email, subject, html, reply_to=None):
        if self.fail:
            return False
        self.sent.append({"to": to_email, "subject": subject, "html": html, "reply_to": reply_to})
        return True


def create_webhook_signature(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Stripe-style signature header: HMAC-SHA256 over '<timestamp>.<payload>'."""
    timestamp = str(timestamp or int(time.time()))
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def auth_headers(user_id: str, email: str = None) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, email)}"}


def reload(db: Session, model, pk):
    db.expire_all()
    return db.get(model, pk)


@pytest.fixture(scope="session", autouse=True)
def create_test_schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clean_tables():
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def db_session() -> Session:
    session: Session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway() -> FakeStripeGateway:
    return FakeStripeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def catalog() -> PlanCatalog:
    return PlanCatalog(settings)


@pytest.fixture
def webhook_limiter() -> RateLimiter:
    return RateLimiter(max_requests=1000, window_seconds=300, store=MemoryWindowStore(), prefix="webhook:")


@pytest.fixture
def test_client(gateway, notifier, catalog, webhook_limiter) -> TestClient:
    app.dependency_overrides[get_stripe_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_plan_catalog] = lambda: catalog
    app.dependency_overrides[get_webhook_limiter] = lambda: webhook_limiter
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def test_user(db_session: Session) -> Profile:
    profile = Profile(
        id="u1",
        email="u1@example.com",
        full_name="Test User",
        credits_remaining=0,
        stripe_customer_id="cus_1",
    )
    db_session.add(profile)
    db_session.commit()
    db_session.refresh(profile)
    return profile


def make_subscription(subscription_id="sub_1", customer_id="cus_1", product_id=PLUS_PRODUCT, status="active",
                      period_start=1760000000, period_end=1762592000, anchor=1760000000, unit_amount=1900):
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "billing_cycle_anchor": anchor,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "items": {"data": [{"price": {"id": "price_1", "product": product_id, "unit_amount": unit_amount}}]},
    }
