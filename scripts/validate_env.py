#!/usr/bin/env python3
"""
Validate Song Mint configuration before deployment.
Checks secrets, Stripe product ids, database/redis connectivity and the Stripe account.
Exit code 0 = OK, 1 = problems detected.
"""
import os
import sys
import logging
from typing import List
from urllib.parse import urlparse

import redis
import stripe
from sqlalchemy import create_engine, text

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

PLACEHOLDER_VALUES = {"change-me", "changeme", "secret", "sk_test_change_me", "whsec_change_me"}


class EnvironmentValidator:
    """Validates Song Mint environment configuration."""

    def __init__(self, environ=None):
        self.env = environ if environ is not None else os.environ
        self.errors: List[str] = []
        self.warnings: List[str] = []
        self.info: List[str] = []

    def validate_all(self, check_connections: bool = True) -> bool:
        logger.info("Starting environment validation...")

        self.validate_required_variables()
        self.validate_stripe_configuration()
        self.validate_jwt_configuration()
        self.validate_email_configuration()
        self.validate_security_settings()
        if check_connections:
            self.validate_database_connection()
            self.validate_redis_connection()
            self.validate_stripe_account()

        self.print_results()
        return len(self.errors) == 0

    def validate_required_variables(self):
        required_vars = [
            ("DATABASE_URL", "Database connection string"),
            ("JWT_SECRET", "Supabase JWT signing secret"),
            ("STRIPE_SECRET_KEY", "Stripe API secret key"),
            ("STRIPE_WEBHOOK_SECRET", "Stripe webhook signing secret"),
        ]
        for var, description in required_vars:
            value = self.env.get(var)
            if not value:
                self.errors.append(f"Missing required variable {var}: {description}")
            elif value.strip() in PLACEHOLDER_VALUES:
                self.errors.append(f"Variable {var} is still set to a placeholder value")

    def validate_stripe_configuration(self):
        key = self.env.get("STRIPE_SECRET_KEY", "")
        if key and not key.startswith(("sk_", "rk_")):
            self.errors.append("STRIPE_SECRET_KEY should start with sk_ or rk_")
        if key.startswith("sk_test_") and self.env.get("ENVIRONMENT") == "production":
            self.warnings.append("Using a Stripe test key in production")

        webhook_secret = self.env.get("STRIPE_WEBHOOK_SECRET", "")
        if webhook_secret and not webhook_secret.startswith("whsec_"):
            self.errors.append("STRIPE_WEBHOOK_SECRET should start with whsec_")

        for tier in ("LITE", "PLUS", "MAX"):
            var = f"STRIPE_{tier}_PRODUCT_ID"
            value = self.env.get(var)
            if not value:
                self.warnings.append(f"{var} not set; using the built-in product id")
            elif not value.startswith("prod_"):
                self.errors.append(f"{var} should be a Stripe product id (prod_...)")

    def validate_jwt_configuration(self):
        jwt_secret = self.env.get("JWT_SECRET", "")
        if jwt_secret and len(jwt_secret) < 32:
            self.errors.append("JWT_SECRET must be at least 32 characters for security")
        jwt_algorithm = self.env.get("JWT_ALGORITHM", "HS256")
        if jwt_algorithm not in ["HS256", "HS384", "HS512"]:
            self.warnings.append(f"JWT_ALGORITHM '{jwt_algorithm}' may not be supported")

    def validate_email_configuration(self):
        if not self.env.get("RESEND_API_KEY"):
            self.warnings.append("RESEND_API_KEY not set: billing emails will not be sent")
        if not self.env.get("ADMIN_API_KEY"):
            self.warnings.append("ADMIN_API_KEY not set: admin credit grants are disabled")

    def validate_security_settings(self):
        debug = self.env.get("DEBUG", "false").lower() in ("1", "true", "yes")
        if debug:
            self.warnings.append("DEBUG is enabled; disable in production")
        app_url = self.env.get("APP_URL")
        if app_url and app_url.startswith("http://"):
            self.warnings.append("APP_URL should use HTTPS in production")

    def validate_database_connection(self):
        database_url = self.env.get("DATABASE_URL")
        if not database_url:
            return
        parsed = urlparse(database_url)
        if parsed.scheme.split('+')[0] not in ["postgresql", "postgres"]:
            self.warnings.append(f"Database scheme '{parsed.scheme}' - expected postgresql")
        try:
            engine = create_engine(database_url, pool_pre_ping=True)
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            self.info.append(f"Database connection successful ({parsed.scheme})")
        except Exception as e:
            self.errors.append(f"Database connection failed: {str(e)}")

    def validate_redis_connection(self):
        if self.env.get("RATE_LIMIT_BACKEND", "memory") != "redis":
            self.info.append("Rate limiting uses in-process memory; Redis not required")
            return
        redis_url = self.env.get("REDIS_URL")
        if not redis_url:
            self.errors.append("RATE_LIMIT_BACKEND=redis but REDIS_URL is not set")
            return
        try:
            client = redis.from_url(redis_url, decode_responses=True)
            client.ping()
            version = client.info().get("redis_version", "unknown")
            self.info.append(f"Redis connection successful: v{version}")
        except Exception as e:
            self.errors.append(f"Redis connection failed: {str(e)}")

    def validate_stripe_account(self):
        key = self.env.get("STRIPE_SECRET_KEY")
        if not key or key in PLACEHOLDER_VALUES:
            return
        try:
            account = stripe.Account.retrieve(api_key=key)
            self.info.append(f"Stripe account reachable: {account.get('id')}")
        except stripe.StripeError as e:
            self.errors.append(f"Stripe API check failed: {e.user_message or str(e)}")

    def print_results(self):
        print("\n===== Environment Validation Report =====\n")
        for title, messages in (("Info", self.info), ("Warnings", self.warnings), ("Errors", self.errors)):
            if messages:
                print(f"{title}:")
                for msg in messages:
                    print(f"  - {msg}")
                print("")
        overall = "PASS" if not self.errors else "FAIL"
        print(f"Overall: {overall}")
        print("")


def main() -> int:
    validator = EnvironmentValidator()
    ok = validator.validate_all()
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
