"""Subscription records kept for the billing collaborator.

The payment provider (checkout, portal, webhook signatures) lives outside
this service. Its outcome lands here as one row per user, and premium
routes only ask :func:`is_entitled`.
"""

import logging

from .db import DEFAULT_MAX_RETRIES, INTEGRITY_ERRORS, new_id, row_to_dict, run_atomic
from .errors import InvalidArgument

logger = logging.getLogger(__name__)

SUBSCRIPTION_STATUSES = (
    "active",
    "trialing",
    "past_due",
    "unpaid",
    "incomplete",
    "incomplete_expired",
    "paused",
    "canceled",
)


def get_subscription(db, owner_id):
    row = db.execute(
        "SELECT id, subscription_id, customer_id, status FROM subscriptions WHERE user_id = ?",
        (owner_id,),
    ).fetchone()
    return row_to_dict(row)


def is_entitled(db, owner_id):
    subscription = get_subscription(db, owner_id)
    return subscription is not None and subscription["status"] == "active"


def set_subscription(db, owner_id, status, subscription_id=None, customer_id=None, attempts=DEFAULT_MAX_RETRIES):
    """Create or update the owner's subscription row.

    Without ``subscription_id`` an existing row keeps its provider id and a
    new row gets a generated one. A provider id already held by another user
    is rejected.
    """
    if status not in SUBSCRIPTION_STATUSES:
        raise InvalidArgument(f"Unknown subscription status {status!r}.")
    if subscription_id is not None and (not isinstance(subscription_id, str) or not subscription_id.strip()):
        raise InvalidArgument("Subscription id must be a non-empty string.")

    def unit():
        current = get_subscription(db, owner_id)
        if current is None:
            db.execute(
                """
                INSERT INTO subscriptions (id, user_id, subscription_id, customer_id, status)
                VALUES (?, ?, ?, ?, ?)
                """,
                (new_id(), owner_id, subscription_id or f"manual-{new_id()}", customer_id, status),
            )
        else:
            db.execute(
                "UPDATE subscriptions SET subscription_id = ?, customer_id = ?, status = ? WHERE id = ?",
                (
                    subscription_id or current["subscription_id"],
                    customer_id if customer_id is not None else current["customer_id"],
                    status,
                    current["id"],
                ),
            )
        return get_subscription(db, owner_id)

    try:
        subscription = run_atomic(db, unit, attempts)
    except INTEGRITY_ERRORS as exc:
        raise InvalidArgument("Subscription id is already in use.") from exc
    logger.info("Subscription for user %s is now %s", owner_id, status)
    return subscription
