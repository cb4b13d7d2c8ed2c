"""
App Store status update notifications.

Apple posts these to the server on subscription events. Receipt info inside
a notification uses the iOS 6 style keys.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from iosback.iap.models import InApp, LegacyInApp, MsTime


class NotificationType(str, Enum):
    """Known notification types."""
    INITIAL_BUY = "INITIAL_BUY"
    CANCEL = "CANCEL"
    RENEWAL = "RENEWAL"
    INTERACTIVE_RENEWAL = "INTERACTIVE_RENEWAL"
    DID_CHANGE_RENEWAL_PREF = "DID_CHANGE_RENEWAL_PREF"
    # unsubscribe is this type with auto_renew_status "false"
    DID_CHANGE_RENEWAL_STATUS = "DID_CHANGE_RENEWAL_STATUS"


class Notification(BaseModel):
    """Apple App Store Server Notification (version 1)."""
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    notification_type: str
    environment: str = ""  # PROD or Sandbox
    password: str = ""  # shared secret
    original_transaction_id: str = ""
    web_order_line_item_id: str = ""

    # CANCEL only
    cancellation_date: MsTime = Field(default=None, alias="cancellation_date_ms")

    # INITIAL_BUY, and RENEWAL / INTERACTIVE_RENEWAL when the renewal succeeded
    latest_receipt: str = ""
    latest_receipt_info: Optional[LegacyInApp] = None

    # RENEWAL, CANCEL, or a failed renewal that expired the subscription
    latest_expired_receipt: str = ""
    latest_expired_receipt_info: Optional[LegacyInApp] = None

    auto_renew_status: str = ""  # "true" or "false"
    auto_renew_status_change_date: MsTime = Field(default=None, alias="auto_renew_status_change_date_ms")
    auto_renew_product_id: str = ""
    auto_renew_adam_id: str = ""
    expiration_intent: str = ""

    @property
    def known_type(self) -> Optional[NotificationType]:
        try:
            return NotificationType(self.notification_type)
        except ValueError:
            return None

    def get_subscription(self) -> Optional[InApp]:
        """
        Get the transaction the notification is about.

        Without a latest receipt (CANCEL) the expired slot is used. The
        notification level cancellation date is carried into the record.
        """
        if not self.latest_receipt:
            legacy = self.latest_expired_receipt_info
        else:
            legacy = self.latest_receipt_info

        if legacy is None:
            return None

        record = legacy.to_in_app()

        if record.cancellation_date is None and self.cancellation_date is not None:
            record = record.model_copy(update={"cancellation_date": self.cancellation_date})

        return record
