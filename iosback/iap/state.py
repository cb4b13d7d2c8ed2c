"""
Subscription lifecycle classification.

Each auto-renewable record is classified into exactly one state. States are
bit flags so callers can filter on several of them in one pass.
"""
import enum
from datetime import datetime, timezone
from functools import reduce
from operator import or_
from typing import Iterable, List, Optional

from iosback.iap.models import InApp


class SubscriptionState(enum.IntFlag):
    """Lifecycle state of an auto-renewable subscription record."""
    ANY = 0
    ACTIVE = 1
    FREE = 2
    EXPIRED = 4
    CANCELED = 8


class AutoRenewable(InApp):
    """In-app purchase record with its derived state."""
    state: SubscriptionState


def classify(record: InApp, now: Optional[datetime] = None) -> SubscriptionState:
    """
    Derive the lifecycle state of a record.

    Order is fixed: cancellation wins over everything, then expiration,
    then trial / introductory offer. A record without an expiration date
    counts as expired.

    Args:
        record: In-app purchase record
        now: Evaluation time, defaults to the current UTC time

    Returns:
        Exactly one of ACTIVE, FREE, EXPIRED, CANCELED
    """
    if now is None:
        now = datetime.now(timezone.utc)

    if record.cancellation_date is not None:
        return SubscriptionState.CANCELED

    # expiration_intent is not reliable here, only the date is
    if record.expires_date is None or record.expires_date <= now:
        return SubscriptionState.EXPIRED

    if record.is_trial_period or record.is_in_intro_offer_period:
        return SubscriptionState.FREE

    return SubscriptionState.ACTIVE


def extract_auto_renewable(
    records: Iterable[InApp],
    now: Optional[datetime] = None
) -> List[AutoRenewable]:
    """Classify every record against a single evaluation time."""
    if now is None:
        now = datetime.now(timezone.utc)

    return [
        AutoRenewable(**record.model_dump(), state=classify(record, now))
        for record in records
    ]


def filter_by_state(
    subscriptions: Iterable[AutoRenewable],
    states: SubscriptionState = SubscriptionState.ANY
) -> List[AutoRenewable]:
    """
    Keep the records whose state is in the mask.

    An empty mask keeps everything. Server order is preserved and renewals
    sharing an original transaction id are all kept.
    """
    if not states:
        return list(subscriptions)

    return [sub for sub in subscriptions if sub.state & states]


def parse_state_mask(names: Iterable[str]) -> SubscriptionState:
    """
    Build a state mask from names like "active" or "free".

    Raises:
        ValueError: On an unknown state name
    """
    states = []

    for name in names:
        member = SubscriptionState.__members__.get(name.strip().upper())
        if member is None or member is SubscriptionState.ANY:
            raise ValueError(f"unknown subscription state: {name!r}")
        states.append(member)

    return reduce(or_, states, SubscriptionState.ANY)
