"""
Checkout Configuration
======================
Explicit settings object for the checkout backend.

Read once from the environment by Settings.from_env() and injected into
every component at construction. Request handlers never touch os.environ.
"""

import os
from typing import Optional, List

from pydantic import BaseModel, Field

from errors import ConfigurationError


# Human-readable names used in configuration error messages
ENV_NAMES = {
    "stripe_secret_key": "STRIPE_SECRET_KEY",
    "stripe_webhook_secret": "STRIPE_WEBHOOK_SECRET",
    "supabase_url": "SUPABASE_URL",
    "supabase_service_role_key": "SUPABASE_SERVICE_ROLE_KEY",
}


class Settings(BaseModel):
    """Server configuration"""

    # Server
    env: str = "development"
    host: str = "0.0.0.0"
    port: int = 8000

    # Stripe
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    currency: str = "eur"

    # Supabase (PostgREST)
    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    supabase_timeout_seconds: float = Field(default=10.0, gt=0)

    # CORS origins for the webhook endpoint
    webhook_dev_origin: str = "http://localhost:8080"
    webhook_prod_origin: str = "https://mytechgear.eu"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables (empty strings count as unset)."""
        return cls(
            env=os.getenv("ENV", "development"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
            currency=os.getenv("CHECKOUT_CURRENCY", "eur").lower(),
            supabase_url=os.getenv("SUPABASE_URL") or None,
            supabase_service_role_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY") or None,
            supabase_timeout_seconds=float(os.getenv("SUPABASE_TIMEOUT_SECONDS", "10")),
            webhook_dev_origin=os.getenv("WEBHOOK_DEV_ORIGIN", "http://localhost:8080"),
            webhook_prod_origin=os.getenv("WEBHOOK_PROD_ORIGIN", "https://mytechgear.eu"),
        )

    @property
    def is_development(self) -> bool:
        return self.env == "development"

    @property
    def webhook_origin(self) -> str:
        return self.webhook_dev_origin if self.is_development else self.webhook_prod_origin

    def missing(self, *fields: str) -> List[str]:
        """Return the env names of required fields that are unset."""
        return [ENV_NAMES.get(f, f.upper()) for f in fields if not getattr(self, f)]

    def require(self, *fields: str) -> None:
        missing = self.missing(*fields)
        if missing:
            raise ConfigurationError(f"Missing configuration: {', '.join(missing)}")
