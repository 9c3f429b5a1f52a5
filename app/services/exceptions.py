"""Billing engine error taxonomy.

Every error carries the HTTP status the API layer renders it with, so the
service layer can raise domain errors without importing FastAPI.
"""

from __future__ import annotations


class BillingError(Exception):
    status_code = 400
    code = "billing_error"

    def __init__(self, message: str, *, details: object | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ConfigurationError(BillingError):
    """Gateway (or notification) credentials are missing for the environment."""

    status_code = 503
    code = "configuration_error"


class ValidationError(BillingError):
    """Input rejected before any network call."""

    status_code = 400
    code = "validation_error"


class GatewayError(BillingError):
    """Non-2xx, error payload, or timeout from the payment gateway.

    ``timed_out`` means the upstream outcome is unknown: the request may have
    been applied. Recovery is a re-query, never a blind retry.
    """

    status_code = 502
    code = "gateway_error"

    def __init__(
        self,
        message: str,
        *,
        upstream_status: int | None = None,
        upstream_code: str | None = None,
        description: str | None = None,
        timed_out: bool = False,
    ):
        super().__init__(
            message,
            details={
                "upstream_status": upstream_status,
                "upstream_code": upstream_code,
                "timed_out": timed_out,
            },
        )
        self.upstream_status = upstream_status
        self.upstream_code = upstream_code
        self.description = description
        self.timed_out = timed_out


class ChargeConflictError(BillingError):
    """The charge or invoice is not in a state that allows the operation."""

    status_code = 409
    code = "charge_conflict"


class DuplicateDocumentError(BillingError):
    status_code = 409
    code = "duplicate_document"


class ReconciliationSkip(Exception):
    """Webhook event that is acknowledged without changing state.

    Not an error: unknown charge ids and unmapped event kinds end here.
    """

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
