"""
Entitlement service.

Receipt bytes in, classified auto-renewable subscriptions out.
"""
from datetime import datetime
from typing import List, Optional, Union

from iosback.iap.state import (
    AutoRenewable,
    SubscriptionState,
    extract_auto_renewable,
    filter_by_state
)
from iosback.iap.verifier import AppleReceiptVerifier


class EntitlementService:
    """
    Service for turning an App Store receipt into live entitlements.

    Nothing is cached: every call verifies with Apple and builds a fresh
    list. Callers that need to spare Apple's endpoint cache on their side,
    keyed by original transaction id.
    """

    def __init__(self, verifier: AppleReceiptVerifier):
        self.verifier = verifier

    async def get_entitlements(
        self,
        receipt: Union[bytes, str],
        states: SubscriptionState = SubscriptionState.ANY,
        now: Optional[datetime] = None
    ) -> List[AutoRenewable]:
        """
        Verify a receipt and return its classified subscriptions.

        Args:
            receipt: Base64-encoded receipt, passed to Apple unmodified
            states: State mask, ANY returns every record
            now: Evaluation time for expiration checks

        Returns:
            AutoRenewable records in server order. Several records may share
            an original transaction id (renewal history).

        Raises:
            ReceiptTransportError: If Apple could not be reached
            ReceiptDecodeError: If the response could not be decoded
            VerifyReceiptError: If Apple rejected the receipt
        """
        request = self.verifier.build_request(receipt)
        response = await self.verifier.verify(request)

        records = response.parse_latest_receipt_info()
        subscriptions = extract_auto_renewable(records, now)

        return filter_by_state(subscriptions, states)
