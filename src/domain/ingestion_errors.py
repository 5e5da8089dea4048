from __future__ import annotations

from typing import Any


class IngestionError(Exception):
    """Base for failures surfaced by the delivery status ingestion path."""

    category = "internal"
    retryable = False


class MalformedPayloadError(IngestionError):
    category = "malformed_input"


class WebhookAuthError(IngestionError):
    category = "webhook_auth_failed"


class MissingConfigurationError(IngestionError):
    category = "missing_configuration"


class DeliveryStoreError(IngestionError):
    category = "downstream_failure"
    retryable = True


def ingestion_error_http_status(exc: IngestionError) -> int:
    if isinstance(exc, MalformedPayloadError):
        return 400
    if isinstance(exc, WebhookAuthError):
        return 401
    return 500


def ingestion_error_body(*, provider: str, exc: IngestionError) -> dict[str, Any]:
    return {
        "error": str(exc),
        "type": exc.category,
        "provider": provider,
        "retryable": exc.retryable,
    }
