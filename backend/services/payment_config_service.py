"""Payment Configuration Service - builds hosted-checkout configuration server-side.

Key Principles:
- Gateway credentials come from the environment only; the browser never embeds them
- The integrity signature binds orderId + amount + currency to the merchant secret
- Missing credentials are a ConfigurationError (fatal for the current attempt)
"""
import os
import hashlib
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "COP"
DEFAULT_RENDER_MODE = "embedded"


class ConfigurationError(Exception):
    """The payment system could not be initialised (credentials or backend config)."""


def get_public_app_url(origin: Optional[str] = None) -> str:
    """Base URL for gateway redirects: request Origin, else PUBLIC_APP_URL."""
    base = (origin or os.getenv("PUBLIC_APP_URL") or "").strip().rstrip("/")
    if not base.startswith("http://") and not base.startswith("https://"):
        raise ConfigurationError(
            "Invalid redirect base URL: origin must be http or https. Set PUBLIC_APP_URL."
        )
    return base


def compute_integrity_signature(order_id: str, amount: int, currency: str, secret_key: str) -> str:
    """SHA-256 hex of {orderId}{amount}{currency}{secretKey}."""
    raw = f"{order_id}{amount}{currency}{secret_key}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def build_redirection_url(base_url: str, token: str) -> str:
    return f"{base_url}/?code={token}&payment=success"


def build_payment_config(
    order_id: str,
    amount: int,
    document_type: str,
    token: str,
    origin: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build the Bold checkout configuration for one payment attempt.

    Raises ValueError for missing/invalid request parameters and
    ConfigurationError when gateway credentials are not configured.
    """
    if not order_id or not amount:
        raise ValueError("Missing required parameters: orderId, amount")
    if not document_type or not token:
        raise ValueError("Missing required parameters for document payment")
    if int(amount) <= 0:
        raise ValueError("amount must be positive")

    api_key = (os.getenv("BOLD_API_KEY") or "").strip()
    secret_key = (os.getenv("BOLD_SECRET_KEY") or "").strip()
    merchant_id = (os.getenv("BOLD_MERCHANT_ID") or "").strip()
    if not api_key or not secret_key or not merchant_id:
        logger.error(
            "Bold credentials check failed: has_api_key=%s has_secret_key=%s has_merchant_id=%s",
            bool(api_key), bool(secret_key), bool(merchant_id),
        )
        raise ConfigurationError("Payment system not configured - missing credentials")

    currency = (os.getenv("BOLD_CURRENCY") or DEFAULT_CURRENCY).strip().upper()
    base_url = get_public_app_url(origin)

    config = {
        "orderId": order_id,
        "currency": currency,
        "amount": str(int(amount)),
        "apiKey": api_key,
        "integritySignature": compute_integrity_signature(order_id, int(amount), currency, secret_key),
        "merchantId": merchant_id,
        "description": f"Pago documento: {document_type}",
        "redirectionUrl": build_redirection_url(base_url, token),
        "renderMode": DEFAULT_RENDER_MODE,
    }

    logger.info("Payment configuration created for order %s", order_id)
    return config
