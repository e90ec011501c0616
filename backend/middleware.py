from fastapi import Request, HTTPException, status
import hmac
import os
import logging

logger = logging.getLogger(__name__)


async def require_review_key(request: Request) -> str:
    """Require the shared professional review key (X-Review-Key)."""
    configured = (os.getenv("REVIEW_API_KEY") or "").strip()
    if not configured:
        logger.error("REVIEW_API_KEY is not set; review endpoints are disabled")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Review endpoints not configured"
        )

    provided = (request.headers.get("X-Review-Key") or "").strip()
    if not provided or not hmac.compare_digest(provided, configured):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return provided


def get_payment_reconciler(request: Request):
    """The application's reconciler; owns every live polling loop."""
    return request.app.state.payment_reconciler


def get_payment_session_service(request: Request):
    return request.app.state.payment_session_service


def get_gateway_webhook_service(request: Request):
    return request.app.state.gateway_webhook_service
