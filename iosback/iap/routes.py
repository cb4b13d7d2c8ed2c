"""
IAP API routes.

Handles receipt verification and App Store notifications.
"""
import hmac
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status
from fastapi.responses import JSONResponse

from iosback.config import settings
from iosback.iap.exceptions import ReceiptError, VerifyReceiptError
from iosback.iap.notifications import Notification
from iosback.iap.schemas import (
    Entitlement,
    EntitlementState,
    EntitlementsResponse,
    NotificationResponse,
    ReceiptRejectedResponse
)
from iosback.iap.service import EntitlementService
from iosback.iap.state import classify, parse_state_mask
from iosback.iap.verifier import AppleReceiptVerifier, VerifierConfig


logger = structlog.get_logger()
router = APIRouter(prefix="/iap", tags=["iap"])


def get_verifier_config() -> VerifierConfig:
    """Dependency to build the verifier settings from application settings."""
    return VerifierConfig(
        shared_secret=settings.apple_shared_secret or "",
        sandbox=settings.apple_sandbox,
        max_retries=settings.apple_max_retries,
        timeout=settings.apple_timeout,
        exclude_old_transactions=settings.apple_exclude_old_transactions
    )


def get_entitlement_service(
    config: VerifierConfig = Depends(get_verifier_config)
) -> EntitlementService:
    """Dependency to get entitlement service."""
    return EntitlementService(AppleReceiptVerifier(config))


# ========== Receipt Verification ==========

@router.post(
    "/entitlements",
    response_model=EntitlementsResponse,
    responses={422: {"model": ReceiptRejectedResponse}}
)
async def get_entitlements(
    receipt: Optional[UploadFile] = File(default=None),
    state: List[EntitlementState] = Query(default=[]),
    entitlement_service: EntitlementService = Depends(get_entitlement_service)
):
    """
    Verify an App Store receipt and list its auto-renewable subscriptions.

    **Form fields:**
    - `receipt`: base64-encoded app receipt file

    **Query:**
    - `state`: repeatable filter (`active`, `free`, `expired`, `canceled`),
      every subscription is returned when omitted

    **Errors:**
    - 400: Receipt missing or empty
    - 422: Receipt rejected by the App Store (`status` holds Apple's code)
    - 502: App Store could not be reached or answered garbage
    """
    data = await receipt.read() if receipt is not None else b""
    if not data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="please provide correct receipt"
        )

    states = parse_state_mask(s.value for s in state)

    try:
        subscriptions = await entitlement_service.get_entitlements(data, states)

    except VerifyReceiptError as e:
        logger.warning("apple_receipt_rejected", status=e.status, cause=e.message)
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": "receipt was rejected by the App Store", "status": e.status}
        )

    except ReceiptError as e:
        # Internal details stay in the log
        logger.error(
            "apple_receipt_verification_error",
            error=str(e),
            type=type(e).__name__
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="unexpected problem during receipt verifying"
        )

    logger.info(
        "entitlements_resolved",
        count=len(subscriptions),
        states=[s.value for s in state]
    )

    return EntitlementsResponse(
        entitlements=[Entitlement.from_auto_renewable(s) for s in subscriptions]
    )


# ========== Notifications ==========

def get_notification_secret() -> Optional[str]:
    """Dependency to get the shared secret notifications must carry."""
    return settings.apple_shared_secret


@router.post("/notifications", response_model=NotificationResponse)
async def apple_notification(
    notification: Notification,
    shared_secret: Optional[str] = Depends(get_notification_secret)
):
    """
    Handle Apple App Store status update notifications.

    Called by Apple's servers directly. When a shared secret is configured the
    notification password must match it.

    **Errors:**
    - 403: Password does not match the shared secret
    """
    if shared_secret and not hmac.compare_digest(
        notification.password.encode(),
        shared_secret.encode()
    ):
        logger.warning(
            "apple_notification_secret_mismatch",
            notification_type=notification.notification_type
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="invalid notification password"
        )

    if notification.known_type is None:
        logger.warning(
            "apple_notification_unknown_type",
            notification_type=notification.notification_type
        )

    subscription = notification.get_subscription()
    state = classify(subscription) if subscription is not None else None

    logger.info(
        "apple_notification_received",
        notification_type=notification.notification_type,
        environment=notification.environment,
        original_transaction_id=(
            notification.original_transaction_id
            or (subscription.original_transaction_id if subscription else "")
        ),
        state=state.name.lower() if state is not None else None
    )

    return NotificationResponse(
        state=EntitlementState.from_flag(state) if state is not None else None
    )
