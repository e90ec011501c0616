"""
Domain exception -> HTTPException translation shared by the public routes.
Every error body is {"error_code": ..., "message": ...}.
"""
from fastapi import HTTPException, status

from services.document_workflow import InvalidTransition, EmptyObservation
from services.document_store import DocumentNotFound, StatusConflict
from services.payment_config_service import ConfigurationError
from services.payment_gateway import GatewayUnavailable
from services.download_service import ArtifactDeliveryError


def api_error(status_code: int, error_code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"error_code": error_code, "message": message})


def document_not_found() -> HTTPException:
    return api_error(status.HTTP_404_NOT_FOUND, "DOCUMENT_NOT_FOUND", "No document matches this token")


def translate_domain_error(exc: Exception) -> HTTPException:
    """Map a domain exception onto its HTTP response; unknown errors become 500."""
    if isinstance(exc, DocumentNotFound):
        return document_not_found()
    if isinstance(exc, EmptyObservation):
        return api_error(status.HTTP_400_BAD_REQUEST, "EMPTY_OBSERVATION", str(exc))
    if isinstance(exc, (InvalidTransition, StatusConflict)):
        return api_error(status.HTTP_409_CONFLICT, "INVALID_TRANSITION", str(exc))
    if isinstance(exc, GatewayUnavailable):
        return api_error(
            status.HTTP_503_SERVICE_UNAVAILABLE, "GATEWAY_UNAVAILABLE",
            "The payment gateway is unavailable. Please try again in a few minutes.",
        )
    if isinstance(exc, ConfigurationError):
        return api_error(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "PAYMENT_CONFIGURATION_ERROR",
            "The payment system could not be initialised. Reload the page and try again.",
        )
    if isinstance(exc, ArtifactDeliveryError):
        return api_error(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "ARTIFACT_DELIVERY_FAILED",
            "The document could not be generated. Please try the download again.",
        )
    return api_error(status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_ERROR", "Internal server error")
