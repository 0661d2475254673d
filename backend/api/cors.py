"""
CORS headers for the two function endpoints.

The checkout endpoint is called from any storefront origin. The webhook
endpoint only answers a single origin, chosen by environment.
"""

from typing import Dict

from config import Settings

CHECKOUT_CORS_HEADERS: Dict[str, str] = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}


def webhook_cors_headers(settings: Settings) -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": settings.webhook_origin,
        "Access-Control-Allow-Headers": (
            "authorization, x-client-info, apikey, content-type, stripe-signature"
        ),
        "Access-Control-Allow-Methods": "POST, OPTIONS",
        "Access-Control-Max-Age": "86400",
    }
