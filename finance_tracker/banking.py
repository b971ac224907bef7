"""Bank-link import.

The aggregator protocol (link tokens, token exchange, sync cursors) lives
outside this service; callers hand over the already fetched payload::

    {
        "accounts": [{"account_id": ..., "name": ...}],
        "categories": [{"category_id": ..., "hierarchy": [...]}],
        "transactions": [{"transaction_id": ..., "account_id": ..., "amount": 12.5,
                          "name": ..., "merchant_name": ..., "date": "2024-03-01",
                          "category_id": ...}],
    }
"""

import logging

from .categories import get_or_create_category
from .db import DEFAULT_MAX_RETRIES, STORAGE_ERRORS, new_id, row_to_dict, run_atomic
from .errors import Conflict, InvalidArgument, NotFound, PartialFailure
from .importing import aggregator_candidates, aggregator_category_name
from .ledger import DEFAULT_BATCH_SIZE, reconcile

logger = logging.getLogger(__name__)


def get_connected_bank(db, owner_id):
    row = db.execute(
        "SELECT id, created_at FROM connected_banks WHERE user_id = ?",
        (owner_id,),
    ).fetchone()
    return row_to_dict(row)


def link_bank(db, owner_id, access_token, payload, batch_size=DEFAULT_BATCH_SIZE, attempts=DEFAULT_MAX_RETRIES):
    """Record the bank link with its accounts and categories, then import.

    The link, accounts and categories are committed first. If the
    transaction import then fails they are kept and :class:`PartialFailure`
    is raised; the import itself rolls back as a whole, so no balance is
    left half-adjusted.
    """
    if not access_token or not isinstance(access_token, str):
        raise InvalidArgument("An access token is required.")
    if not isinstance(payload, dict):
        raise InvalidArgument("Expected the aggregator payload as an object.")
    # Shape problems must surface before the link is committed.
    for key in ("accounts", "categories", "transactions"):
        if payload.get(key) is not None and not isinstance(payload.get(key), list):
            raise InvalidArgument(f"Expected '{key}' to be a list.")
    external_accounts = payload.get("accounts") or []
    external_categories = payload.get("categories") or []
    for account in external_accounts:
        if (
            not isinstance(account, dict)
            or not isinstance(account.get("account_id"), str)
            or not account["account_id"]
            or not isinstance(account.get("name"), str)
            or not account["name"].strip()
        ):
            raise InvalidArgument("Every linked account needs an account_id and a name.")
    for category in external_categories:
        if not isinstance(category, dict):
            raise InvalidArgument("Every linked category must be an object.")

    def link_unit():
        if get_connected_bank(db, owner_id) is not None:
            raise InvalidArgument("A bank is already connected.")
        bank_id = new_id()
        db.execute(
            "INSERT INTO connected_banks (id, user_id, access_token) VALUES (?, ?, ?)",
            (bank_id, owner_id, access_token),
        )

        account_map = {}
        for account in external_accounts:
            account_id = new_id()
            db.execute(
                "INSERT INTO accounts (id, user_id, name, external_id, balance) VALUES (?, ?, ?, ?, 0)",
                (account_id, owner_id, account["name"].strip(), account["account_id"]),
            )
            account_map[account["account_id"]] = account_id

        category_map = {}
        for category in external_categories:
            name = aggregator_category_name(category)
            if not isinstance(category.get("category_id"), str) or not category["category_id"] or not name:
                logger.warning("Skipping aggregator category without id or name: %r", category)
                continue
            category_map[category["category_id"]] = get_or_create_category(db, owner_id, name, external_id=category["category_id"])
        return bank_id, account_map, category_map

    bank_id, account_map, category_map = run_atomic(db, link_unit, attempts)
    logger.info(
        "Connected bank %s for user %s with %s accounts and %s categories",
        bank_id, owner_id, len(account_map), len(category_map),
    )

    candidates, skipped = aggregator_candidates(payload.get("transactions"), account_map, category_map)
    result = {"bank_id": bank_id, "accounts": len(account_map), "categories": len(category_map)}
    try:
        imported = reconcile(db, owner_id, candidates, batch_size=batch_size, attempts=attempts)
    except (Conflict, *STORAGE_ERRORS) as exc:
        logger.error("Bank %s connected for user %s but importing transactions failed: %s", bank_id, owner_id, exc)
        raise PartialFailure(
            "Connected to the bank, but transactions could not be imported.",
            error=str(exc),
            payload=result,
        ) from exc

    result["inserted"] = imported["inserted"]
    result["skipped"] = skipped + imported["skipped"]
    return result


def unlink_bank(db, owner_id, attempts=DEFAULT_MAX_RETRIES):
    """Remove the link plus every linked account (and its transactions) and category."""

    def unit():
        bank = get_connected_bank(db, owner_id)
        if bank is None:
            raise NotFound("No connected bank.")
        db.execute("DELETE FROM connected_banks WHERE id = ?", (bank["id"],))
        db.execute("DELETE FROM accounts WHERE user_id = ? AND external_id IS NOT NULL", (owner_id,))
        db.execute("DELETE FROM categories WHERE user_id = ? AND external_id IS NOT NULL", (owner_id,))
        return {"id": bank["id"]}

    return run_atomic(db, unit, attempts)
