"""Typed failures raised by the ledger, billing and generation services.

Routers translate these into HTTP responses; provider exceptions never cross
the service boundary.
"""

from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for domain failures."""

    user_message = "Something went wrong. Please try again."


class AccountNotFound(ServiceError):
    user_message = "Account not found."

    def __init__(self, account_id: str):
        super().__init__(f"account {account_id} not found")
        self.account_id = account_id


class InvalidAmount(ServiceError):
    user_message = "Invalid credit amount."

    def __init__(self, amount: int):
        super().__init__(f"credit amount must be >= 0, got {amount}")
        self.amount = amount


class InsufficientCredits(ServiceError):
    user_message = "No credits remaining. Upgrade your plan to keep generating headshots."

    def __init__(self, account_id: str, credits_remaining: int = 0):
        super().__init__(f"account {account_id} has no credits remaining")
        self.account_id = account_id
        self.credits_remaining = credits_remaining


class DuplicateIdempotencyKey(ServiceError):
    """Internal: resolved by returning the recorded result."""


class WebhookSignatureInvalid(ServiceError):
    user_message = "Invalid signature."


class WebhookEventStale(ServiceError):
    """Internal: the event was superseded by a newer one already applied."""


class AccountResolutionFailed(ServiceError):
    def __init__(
        self,
        reason: str,
        *,
        customer_reference: Optional[str] = None,
        subscription_reference: Optional[str] = None,
    ):
        super().__init__(reason)
        self.reason = reason
        self.customer_reference = customer_reference
        self.subscription_reference = subscription_reference


class ExternalServiceTransient(ServiceError):
    user_message = "The service is temporarily unavailable. Please try again."

    def __init__(self, service: str, detail: str = ""):
        super().__init__(f"{service}: {detail}" if detail else service)
        self.service = service


class ExternalServicePermanent(ServiceError):
    user_message = "The request could not be completed."

    def __init__(self, service: str, detail: str = ""):
        super().__init__(f"{service}: {detail}" if detail else service)
        self.service = service
