"""
App Store receipt models.

Request/response of Apple's verifyReceipt endpoint and the canonical
in-app purchase record every response generation is normalized into.
"""
import base64
import binascii
import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError
)

from iosback.iap.exceptions import (
    AppStoreStatus,
    ReceiptDecodeError,
    check_status_error
)


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_MS_PATTERN = re.compile(r"-?\d+")


# ========== Timestamps ==========

def parse_ms_time(value: Any) -> Optional[datetime]:
    """
    Parse Apple's millisecond epoch timestamp.

    Apple sends these as string-encoded integers ("1546300800000"), sometimes
    as plain numbers. Zero is the unset value.

    Args:
        value: Raw JSON value

    Returns:
        Timezone-aware UTC datetime, or None when unset

    Raises:
        ValueError: If the value is not an integer number of milliseconds
    """
    if value is None or isinstance(value, datetime):
        return value

    if isinstance(value, bool):
        raise ValueError(f"invalid millisecond timestamp: {value!r}")

    if isinstance(value, int):
        ms = value
    elif isinstance(value, str) and _MS_PATTERN.fullmatch(value):
        ms = int(value)
    else:
        raise ValueError(f"invalid millisecond timestamp: {value!r}")

    if ms == 0:
        return None

    try:
        return EPOCH + timedelta(milliseconds=ms)
    except OverflowError as e:
        raise ValueError(f"millisecond timestamp out of range: {value!r}") from e


MsTime = Annotated[Optional[datetime], BeforeValidator(parse_ms_time)]


# ========== Enums ==========

class Environment(str, Enum):
    """Apple verification environment."""
    SANDBOX = "Sandbox"
    PRODUCTION = "Production"


# ========== Request ==========

class ReceiptRequest(BaseModel):
    """Body of a verifyReceipt call."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    receipt_data: str = Field(alias="receipt-data")
    password: str = ""  # shared secret, required for auto-renewable subscriptions
    exclude_old_transactions: bool = Field(default=False, alias="exclude-old-transactions")

    def to_payload(self) -> Dict[str, Any]:
        """Build the JSON body; empty password and false flag are omitted."""
        payload = {"receipt-data": self.receipt_data}

        if self.password:
            payload["password"] = self.password

        if self.exclude_old_transactions:
            payload["exclude-old-transactions"] = True

        return payload


# ========== Receipt records ==========

class InApp(BaseModel):
    """
    One in-app purchase transaction.

    ``original_transaction_id`` is stable across renewals of the same
    subscription, ``transaction_id`` changes on every renewal. Subscription
    fields (expiration, trial, renewal) are only set for auto-renewables.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True, coerce_numbers_to_str=True)

    app_item_id: str = ""  # production only
    version_external_identifier: str = ""  # production only
    web_order_line_item_id: str = ""
    quantity: int = 0
    product_id: str = ""
    transaction_id: str = ""
    original_transaction_id: str = ""
    purchase_date: MsTime = Field(default=None, alias="purchase_date_ms")
    original_purchase_date: MsTime = Field(default=None, alias="original_purchase_date_ms")

    # Set when refunded through Apple support or upgraded to another plan.
    # A canceled purchase is treated as if it was never made.
    cancellation_date: MsTime = Field(default=None, alias="cancellation_date_ms")
    cancellation_reason: Optional[int] = None

    expires_date: MsTime = Field(default=None, alias="expires_date_ms")
    expiration_intent: Optional[int] = None
    price_consent_status: Optional[int] = None
    is_in_billing_retry_period: Optional[int] = None
    is_trial_period: bool = False
    is_in_intro_offer_period: bool = False
    auto_renew_status: Optional[int] = None
    auto_renew_product_id: str = ""


class LegacyInApp(InApp):
    """
    iOS 6 style transaction.

    Same record under different keys: ``item_id`` instead of ``app_item_id``
    and ``expires_date`` (milliseconds) instead of ``expires_date_ms``.
    """
    app_item_id: str = Field(default="", validation_alias=AliasChoices("item_id", "app_item_id"))
    expires_date: MsTime = Field(default=None, validation_alias=AliasChoices("expires_date", "expires_date_ms"))

    unique_vendor_identifier: str = ""
    unique_identifier: str = ""
    bvrs: str = ""  # original_application_version
    bid: str = ""  # bundle_id

    def to_in_app(self) -> InApp:
        """Adapt into the canonical record."""
        return InApp(**self.model_dump(include=set(InApp.model_fields)))


class PendingRenewal(BaseModel):
    """Renewal scheduled in the future or failed in the past, per subscription."""
    model_config = ConfigDict(populate_by_name=True, frozen=True, coerce_numbers_to_str=True)

    product_id: str = ""
    original_transaction_id: str = ""
    auto_renew_product_id: str = ""
    auto_renew_status: Optional[int] = None
    expiration_intent: Optional[int] = None
    is_in_billing_retry_period: Optional[int] = None
    price_consent_status: Optional[int] = None
    grace_period_expires_date: MsTime = Field(default=None, alias="grace_period_expires_date_ms")


class Receipt(BaseModel):
    """Decoded app receipt as echoed back by Apple."""
    model_config = ConfigDict(populate_by_name=True, frozen=True, coerce_numbers_to_str=True)

    bundle_id: str = ""
    application_version: str = ""
    original_application_version: str = ""  # "1.0" in sandbox
    receipt_creation_date: MsTime = Field(default=None, alias="receipt_creation_date_ms")
    expiration_date: MsTime = Field(default=None, alias="expiration_date_ms")  # volume purchase only
    in_app: List[InApp] = Field(default_factory=list)


_IN_APP_LIST = TypeAdapter(List[InApp])
_PENDING_RENEWAL_LIST = TypeAdapter(List[PendingRenewal])


def _decode(validate, data: Any, section: str):
    try:
        return validate(data)
    except ValidationError as e:
        raise ReceiptDecodeError(f"unable to decode {section}: {e}") from e


# ========== Response ==========

class ReceiptResponse(BaseModel):
    """
    verifyReceipt response.

    Payload sections are kept as raw JSON and only validated when one of the
    parse methods asks for them, so a malformed section does not fail the
    whole response.
    """
    model_config = ConfigDict(populate_by_name=True)

    status: int
    environment: Optional[Environment] = None
    is_retryable: bool = Field(default=False, validation_alias=AliasChoices("is_retryable", "is-retryable"))

    receipt: Optional[Any] = None
    latest_receipt: Optional[str] = None  # base64 PKCS #7
    latest_receipt_info: Optional[Any] = None
    pending_renewal_info: Optional[Any] = None
    latest_expired_receipt_info: Optional[Any] = None  # iOS 6 style only

    def raise_for_status(self) -> None:
        """Raise VerifyReceiptError if the status is not 0."""
        error = check_status_error(self)
        if error is not None:
            raise error

    def parse_receipt(self) -> Receipt:
        self.raise_for_status()
        return _decode(Receipt.model_validate, self.receipt or {}, "receipt")

    def parse_latest_receipt(self) -> bytes:
        """Decode the base64 latest receipt blob."""
        self.raise_for_status()

        if not self.latest_receipt:
            return b""

        try:
            return base64.b64decode(self.latest_receipt, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ReceiptDecodeError(f"unable to decode latest_receipt: {e}") from e

    def parse_latest_receipt_info(self) -> List[InApp]:
        """
        Normalize the transaction list of any response generation.

        Status 21006 marks the iOS 6 style shape where the current and the
        most recently expired transaction are single objects. Every other
        non-zero status is an error. Status 0 carries an array.

        Returns:
            InApp records in server order

        Raises:
            VerifyReceiptError: If the status is not 0 or 21006
            ReceiptDecodeError: If a record (or a timestamp in it) is malformed
        """
        if self.status == AppStoreStatus.SUBSCRIPTION_EXPIRED:
            return self._parse_legacy_receipt_info()

        self.raise_for_status()

        if not self.latest_receipt_info:
            return []

        return _decode(_IN_APP_LIST.validate_python, self.latest_receipt_info, "latest_receipt_info")

    def _parse_legacy_receipt_info(self) -> List[InApp]:
        records = []

        for section in ("latest_receipt_info", "latest_expired_receipt_info"):
            data = getattr(self, section)
            if not data:
                continue

            legacy = _decode(LegacyInApp.model_validate, data, section)
            records.append(legacy.to_in_app())

        return records

    def parse_pending_renewal_info(self) -> List[PendingRenewal]:
        self.raise_for_status()

        if not self.pending_renewal_info:
            return []

        return _decode(_PENDING_RENEWAL_LIST.validate_python, self.pending_renewal_info, "pending_renewal_info")
