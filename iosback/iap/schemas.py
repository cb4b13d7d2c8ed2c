"""
IAP API schemas.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from iosback.iap.state import AutoRenewable, SubscriptionState


class EntitlementState(str, Enum):
    """Subscription state as exposed over the API."""
    ACTIVE = "active"
    FREE = "free"
    EXPIRED = "expired"
    CANCELED = "canceled"

    @classmethod
    def from_flag(cls, state: SubscriptionState) -> "EntitlementState":
        return cls(state.name.lower())


def _unix(value: Optional[datetime]) -> Optional[int]:
    return int(value.timestamp()) if value is not None else None


class Entitlement(BaseModel):
    """Classified auto-renewable subscription."""
    product_id: str
    transaction_id: str
    original_transaction_id: str
    purchase_date: Optional[int] = None  # Unix timestamp in seconds
    original_purchase_date: Optional[int] = None
    expires_at: Optional[int] = None
    cancelled_at: Optional[int] = None
    is_trial: bool = False
    state: EntitlementState

    @classmethod
    def from_auto_renewable(cls, subscription: AutoRenewable) -> "Entitlement":
        return cls(
            product_id=subscription.product_id,
            transaction_id=subscription.transaction_id,
            original_transaction_id=subscription.original_transaction_id,
            purchase_date=_unix(subscription.purchase_date),
            original_purchase_date=_unix(subscription.original_purchase_date),
            expires_at=_unix(subscription.expires_date),
            cancelled_at=_unix(subscription.cancellation_date),
            is_trial=subscription.is_trial_period or subscription.is_in_intro_offer_period,
            state=EntitlementState.from_flag(subscription.state)
        )


class EntitlementsResponse(BaseModel):
    """Response for POST /iap/entitlements."""
    entitlements: List[Entitlement] = Field(
        description="Subscriptions in App Store order, renewals included"
    )


class ReceiptRejectedResponse(BaseModel):
    """App Store refused the receipt."""
    detail: str
    status: int


class NotificationResponse(BaseModel):
    """Acknowledgement of an App Store notification."""
    status: str = "received"
    state: Optional[EntitlementState] = None
