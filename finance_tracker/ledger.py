"""Running-balance ledger.

Every account caches ``balance``, which must always equal the sum of the
``amount`` of its transactions. All mutations in this module run as one
atomic unit (see :func:`finance_tracker.db.run_atomic`) and change balances
only through :func:`adjust_balance`, i.e. ``balance = balance + delta`` in
SQL, in the same unit as the row mutation.

Amounts are signed integers in milli-units (1/1000 of the display currency).
Anything not owned by the caller is reported as :class:`NotFound`.
"""

import logging
from datetime import date, datetime

from .categories import get_or_create_category, owned_category_ids
from .db import DEFAULT_MAX_RETRIES, new_id, run_atomic
from .errors import InvalidArgument, NotFound
from .queries import get_account, get_transaction, transaction_dto

logger = logging.getLogger(__name__)

TRANSFER_OUT_CATEGORY = "Transfer out"
TRANSFER_IN_CATEGORY = "Transfer in"
TRANSFER_DEFAULT_NOTES = "Transfer between accounts"
OPENING_BALANCE_PAYEE = "Opening balance"
BALANCE_ADJUSTMENT_PAYEE = "Balance adjustment"
DEFAULT_BATCH_SIZE = 100
# One trillion major units; sums of many such amounts still fit a BIGINT.
MAX_AMOUNT = 10**15
TRANSACTION_FIELDS = ("account_id", "category_id", "amount", "payee", "notes", "date")


def parse_ledger_date(value):
    """Return ``value`` as ``YYYY-MM-DD`` or None when it is not a calendar date.

    Accepts date/datetime objects and ISO strings, with or without a time
    part ("2024-03-01T00:00:00Z" is 2024-03-01).
    """
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str):
        return None
    text = value.strip()[:10]
    try:
        return datetime.strptime(text, "%Y-%m-%d").date().isoformat()
    except ValueError:
        return None


def _integer_amount(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def amount_in_range(amount):
    return -MAX_AMOUNT <= amount <= MAX_AMOUNT


def coerce_amount(value):
    """Integer milli-units, or None for anything non-numeric, fractional or out of range."""
    amount = _integer_amount(value)
    if amount is None or not amount_in_range(amount):
        return None
    return amount


def validate_candidate(candidate):
    """Normalize one transaction payload.

    Returns ``(values, None)`` or ``(None, reason)``.
    """
    if not isinstance(candidate, dict):
        return None, "not an object"

    account_id = candidate.get("account_id")
    if not account_id or not isinstance(account_id, str):
        return None, "missing account_id"
    payee = candidate.get("payee")
    if not isinstance(payee, str) or not payee.strip():
        return None, "missing payee"
    if candidate.get("date") in (None, ""):
        return None, "missing date"
    transaction_date = parse_ledger_date(candidate.get("date"))
    if transaction_date is None:
        return None, f"invalid date {candidate.get('date')!r}"
    amount = _integer_amount(candidate.get("amount"))
    if amount is None:
        return None, f"non-numeric amount {candidate.get('amount')!r}"
    if not amount_in_range(amount):
        return None, f"amount out of range {amount!r}"
    category_id = candidate.get("category_id") or None
    if category_id is not None and not isinstance(category_id, str):
        return None, f"invalid category_id {category_id!r}"

    notes = candidate.get("notes")
    if notes is not None and not isinstance(notes, str):
        notes = str(notes)
    return {
        "account_id": account_id,
        "category_id": category_id,
        "amount": amount,
        "payee": payee.strip(),
        "notes": notes or None,
        "date": transaction_date,
    }, None


def clean_transaction_values(values):
    cleaned, reason = validate_candidate(values)
    if reason:
        raise InvalidArgument(f"Invalid transaction: {reason}.")
    return cleaned


def aggregate_deltas(entries):
    """Sum ``(account_id, amount)`` pairs per account, keeping first-seen order."""
    deltas = {}
    for account_id, amount in entries:
        deltas[account_id] = deltas.get(account_id, 0) + amount
    return deltas


def chunked(items, size):
    size = max(1, int(size))
    for start in range(0, len(items), size):
        yield items[start:start + size]


# -- balance adjustment engine -------------------------------------------------


def adjust_balance(db, account_id, delta):
    if not delta:
        return
    result = db.execute(
        "UPDATE accounts SET balance = balance + ? WHERE id = ?",
        (delta, account_id),
    )
    if result.rowcount == 0:
        raise NotFound("Account not found.")


def apply_update_deltas(db, old_account_id, old_amount, new_account_id, new_amount):
    if old_account_id == new_account_id:
        adjust_balance(db, new_account_id, new_amount - old_amount)
        return
    adjust_balance(db, old_account_id, -old_amount)
    adjust_balance(db, new_account_id, new_amount)


def apply_bulk_deltas(db, deltas, sign=1):
    """One adjustment per distinct account, however many rows it covers."""
    for account_id, total in deltas.items():
        adjust_balance(db, account_id, sign * total)


def _owned_account_ids(db, owner_id, account_ids):
    ids = [account_id for account_id in dict.fromkeys(account_ids) if account_id]
    owned = set()
    for chunk in chunked(ids, 500):
        placeholders = ", ".join(["?"] * len(chunk))
        rows = db.execute(
            f"SELECT id FROM accounts WHERE user_id = ? AND id IN ({placeholders})",
            [owner_id, *chunk],
        ).fetchall()
        owned.update(row["id"] for row in rows)
    return owned


def _require_account(db, owner_id, account_id):
    row = db.execute(
        "SELECT id, name FROM accounts WHERE id = ? AND user_id = ?",
        (account_id, owner_id),
    ).fetchone()
    if row is None:
        raise NotFound("Account not found.")
    return row


def _require_category(db, owner_id, category_id):
    if category_id and category_id not in owned_category_ids(db, owner_id, [category_id]):
        raise NotFound("Category not found.")


def _owned_transaction(db, owner_id, transaction_id):
    return db.execute(
        """
        SELECT t.id, t.account_id, t.category_id, t.amount, t.payee, t.notes, t.date
        FROM transactions t
        JOIN accounts a ON a.id = t.account_id
        WHERE t.id = ? AND a.user_id = ?
        """,
        (transaction_id, owner_id),
    ).fetchone()


def _insert_transaction(db, values):
    transaction_id = new_id()
    db.execute(
        """
        INSERT INTO transactions (id, account_id, category_id, amount, payee, notes, date)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            transaction_id,
            values["account_id"],
            values["category_id"],
            values["amount"],
            values["payee"],
            values["notes"],
            values["date"],
        ),
    )
    return transaction_id


def _insert_transactions(db, rows):
    db.executemany(
        """
        INSERT INTO transactions (id, account_id, category_id, amount, payee, notes, date)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        [
            (row["id"], row["account_id"], row["category_id"], row["amount"], row["payee"], row["notes"], row["date"])
            for row in rows
        ],
    )


def create_transaction(db, owner_id, values, attempts=DEFAULT_MAX_RETRIES):
    cleaned = clean_transaction_values(values)

    def unit():
        _require_account(db, owner_id, cleaned["account_id"])
        _require_category(db, owner_id, cleaned["category_id"])
        transaction_id = _insert_transaction(db, cleaned)
        adjust_balance(db, cleaned["account_id"], cleaned["amount"])
        return get_transaction(db, owner_id, transaction_id)

    return run_atomic(db, unit, attempts)


def update_transaction(db, owner_id, transaction_id, values, attempts=DEFAULT_MAX_RETRIES):
    """Apply a full or partial update; omitted fields keep their stored value."""
    if not isinstance(values, dict):
        raise InvalidArgument("Invalid transaction: not an object.")

    def unit():
        current = _owned_transaction(db, owner_id, transaction_id)
        if current is None:
            raise NotFound("Transaction not found.")
        merged = {field: current[field] for field in TRANSACTION_FIELDS}
        merged.update({key: value for key, value in values.items() if key in TRANSACTION_FIELDS})
        cleaned = clean_transaction_values(merged)
        _require_account(db, owner_id, cleaned["account_id"])
        _require_category(db, owner_id, cleaned["category_id"])

        apply_update_deltas(db, current["account_id"], int(current["amount"]), cleaned["account_id"], cleaned["amount"])
        db.execute(
            """
            UPDATE transactions
            SET account_id = ?, category_id = ?, amount = ?, payee = ?, notes = ?, date = ?
            WHERE id = ?
            """,
            (
                cleaned["account_id"],
                cleaned["category_id"],
                cleaned["amount"],
                cleaned["payee"],
                cleaned["notes"],
                cleaned["date"],
                transaction_id,
            ),
        )
        return get_transaction(db, owner_id, transaction_id)

    return run_atomic(db, unit, attempts)


def delete_transaction(db, owner_id, transaction_id, attempts=DEFAULT_MAX_RETRIES):
    def unit():
        current = _owned_transaction(db, owner_id, transaction_id)
        if current is None:
            raise NotFound("Transaction not found.")
        adjust_balance(db, current["account_id"], -int(current["amount"]))
        db.execute("DELETE FROM transactions WHERE id = ?", (transaction_id,))
        return {"id": transaction_id}

    return run_atomic(db, unit, attempts)


def bulk_create_transactions(db, owner_id, entries, batch_size=DEFAULT_BATCH_SIZE, attempts=DEFAULT_MAX_RETRIES):
    if not isinstance(entries, list):
        raise InvalidArgument("Expected a list of transactions.")
    cleaned_entries = []
    for index, entry in enumerate(entries):
        cleaned, reason = validate_candidate(entry)
        if reason:
            raise InvalidArgument(f"Invalid transaction at index {index}: {reason}.")
        cleaned_entries.append(cleaned)

    def unit():
        account_ids = [entry["account_id"] for entry in cleaned_entries]
        if set(account_ids) - _owned_account_ids(db, owner_id, account_ids):
            raise NotFound("Account not found.")
        category_ids = {entry["category_id"] for entry in cleaned_entries if entry["category_id"]}
        if category_ids - owned_category_ids(db, owner_id, category_ids):
            raise NotFound("Category not found.")

        rows = [{"id": new_id(), **entry} for entry in cleaned_entries]
        for batch in chunked(rows, batch_size):
            _insert_transactions(db, batch)
        apply_bulk_deltas(db, aggregate_deltas((row["account_id"], row["amount"]) for row in rows))
        return [transaction_dto(row) for row in rows]

    return run_atomic(db, unit, attempts)


def bulk_delete_transactions(db, owner_id, transaction_ids, attempts=DEFAULT_MAX_RETRIES):
    """Delete the caller's transactions among ``transaction_ids``.

    Ids that are unknown or belong to another user are ignored: they are
    neither deleted nor counted in the balance deltas, which are computed
    only from the rows confirmed to be owned.
    """
    ids = [str(transaction_id) for transaction_id in dict.fromkeys(transaction_ids or []) if transaction_id]
    if not ids:
        return []

    def unit():
        owned_rows = []
        for chunk in chunked(ids, 500):
            placeholders = ", ".join(["?"] * len(chunk))
            owned_rows.extend(
                db.execute(
                    f"""
                    SELECT t.id, t.account_id, t.amount
                    FROM transactions t
                    JOIN accounts a ON a.id = t.account_id
                    WHERE a.user_id = ? AND t.id IN ({placeholders})
                    """,
                    [owner_id, *chunk],
                ).fetchall()
            )
        if not owned_rows:
            return []

        apply_bulk_deltas(db, aggregate_deltas((row["account_id"], int(row["amount"])) for row in owned_rows), sign=-1)
        owned_ids = [row["id"] for row in owned_rows]
        for chunk in chunked(owned_ids, 500):
            placeholders = ", ".join(["?"] * len(chunk))
            db.execute(f"DELETE FROM transactions WHERE id IN ({placeholders})", chunk)
        return [{"id": transaction_id} for transaction_id in owned_ids]

    return run_atomic(db, unit, attempts)


# -- transfers -----------------------------------------------------------------


def create_transfer(db, owner_id, from_account_id, to_account_id, amount, transfer_date, notes=None, attempts=DEFAULT_MAX_RETRIES):
    """Move ``amount`` between two of the owner's accounts.

    Creates a withdrawal of ``-amount`` on the source and a deposit of
    ``+amount`` on the destination, each tagged with a reciprocal category.
    Both legs and both balance changes commit together or not at all.
    """
    if not isinstance(from_account_id, str) or not isinstance(to_account_id, str) or not from_account_id or not to_account_id:
        raise InvalidArgument("Both accounts are required.")
    if from_account_id == to_account_id:
        raise InvalidArgument("Source and destination accounts must be different.")
    amount = coerce_amount(amount)
    if amount is None or amount <= 0:
        raise InvalidArgument("Transfer amount must be a positive integer.")
    transaction_date = parse_ledger_date(transfer_date)
    if transaction_date is None:
        raise InvalidArgument("Transfer date is invalid.")
    transfer_notes = f"{notes} (transfer)" if notes else TRANSFER_DEFAULT_NOTES

    def unit():
        accounts = {
            row["id"]: row["name"]
            for row in db.execute(
                "SELECT id, name FROM accounts WHERE user_id = ? AND id IN (?, ?)",
                (owner_id, from_account_id, to_account_id),
            ).fetchall()
        }
        if from_account_id not in accounts or to_account_id not in accounts:
            raise InvalidArgument("One or both accounts do not belong to the user.")

        withdrawal_category_id = get_or_create_category(db, owner_id, TRANSFER_OUT_CATEGORY)
        deposit_category_id = get_or_create_category(db, owner_id, TRANSFER_IN_CATEGORY)

        withdrawal_id = _insert_transaction(
            db,
            {
                "account_id": from_account_id,
                "category_id": withdrawal_category_id,
                "amount": -amount,
                "payee": f'Transfer to "{accounts[to_account_id]}"',
                "notes": transfer_notes,
                "date": transaction_date,
            },
        )
        adjust_balance(db, from_account_id, -amount)

        deposit_id = _insert_transaction(
            db,
            {
                "account_id": to_account_id,
                "category_id": deposit_category_id,
                "amount": amount,
                "payee": f'Transfer from "{accounts[from_account_id]}"',
                "notes": transfer_notes,
                "date": transaction_date,
            },
        )
        adjust_balance(db, to_account_id, amount)
        return {"withdrawal_id": withdrawal_id, "deposit_id": deposit_id}

    result = run_atomic(db, unit, attempts)
    logger.info(
        "Transfer of %s from account %s to account %s committed for user %s",
        amount, from_account_id, to_account_id, owner_id,
    )
    return result


# -- bulk import reconciler ----------------------------------------------------


def reconcile(db, owner_id, candidates, batch_size=DEFAULT_BATCH_SIZE, attempts=DEFAULT_MAX_RETRIES):
    """Import externally sourced transactions with one delta per account.

    Candidates with a missing field, a non-numeric amount or an account the
    caller does not own are dropped and logged; a category the caller does
    not own is cleared. Inserts go in chunks of ``batch_size`` and the
    aggregated deltas are applied once every chunk has been written, all in
    one unit.
    """
    accepted = []
    skipped = []
    for index, candidate in enumerate(candidates or []):
        cleaned, reason = validate_candidate(candidate)
        if reason:
            logger.warning("Dropping import candidate %s: %s", index, reason)
            skipped.append({"index": index, "reason": reason})
            continue
        accepted.append((index, cleaned))

    def unit():
        unit_skipped = []
        owned_accounts = _owned_account_ids(db, owner_id, [cleaned["account_id"] for _, cleaned in accepted])
        owned_categories = owned_category_ids(db, owner_id, [cleaned["category_id"] for _, cleaned in accepted])

        rows = []
        for index, cleaned in accepted:
            if cleaned["account_id"] not in owned_accounts:
                logger.warning("Dropping import candidate %s: unknown account %s", index, cleaned["account_id"])
                unit_skipped.append({"index": index, "reason": "unknown account"})
                continue
            if cleaned["category_id"] and cleaned["category_id"] not in owned_categories:
                logger.warning("Clearing unknown category %s on import candidate %s", cleaned["category_id"], index)
                cleaned = {**cleaned, "category_id": None}
            rows.append({"id": new_id(), **cleaned})

        batches = list(chunked(rows, batch_size))
        for number, batch in enumerate(batches, start=1):
            logger.info("Inserting import batch %s/%s (%s transactions)", number, len(batches), len(batch))
            _insert_transactions(db, batch)
        apply_bulk_deltas(db, aggregate_deltas((row["account_id"], row["amount"]) for row in rows))
        return rows, unit_skipped

    rows, unit_skipped = run_atomic(db, unit, attempts)
    all_skipped = sorted(skipped + unit_skipped, key=lambda item: item["index"])
    logger.info("Imported %s of %s candidates for user %s", len(rows), len(candidates or []), owner_id)
    return {
        "inserted": len(rows),
        "ids": [row["id"] for row in rows],
        "skipped": all_skipped,
    }


# -- account lifecycle ---------------------------------------------------------


def _normalize_account_name(name):
    if not isinstance(name, str) or not name.strip():
        raise InvalidArgument("Account name is required.")
    return name.strip()


def create_account(db, owner_id, name, initial_balance=0, external_id=None, opening_date=None, attempts=DEFAULT_MAX_RETRIES):
    """Create an account; a non-zero initial balance is booked as an opening entry."""
    name = _normalize_account_name(name)
    initial_balance = coerce_amount(0 if initial_balance is None else initial_balance)
    if initial_balance is None:
        raise InvalidArgument("Initial balance must be an integer amount.")
    opening_date = parse_ledger_date(opening_date or date.today())
    if opening_date is None:
        raise InvalidArgument("Opening date is invalid.")

    def unit():
        account_id = new_id()
        db.execute(
            "INSERT INTO accounts (id, user_id, name, external_id, balance) VALUES (?, ?, ?, ?, 0)",
            (account_id, owner_id, name, external_id),
        )
        if initial_balance:
            _insert_transaction(
                db,
                {
                    "account_id": account_id,
                    "category_id": None,
                    "amount": initial_balance,
                    "payee": OPENING_BALANCE_PAYEE,
                    "notes": None,
                    "date": opening_date,
                },
            )
            adjust_balance(db, account_id, initial_balance)
        return get_account(db, owner_id, account_id)

    return run_atomic(db, unit, attempts)


def rename_account(db, owner_id, account_id, name, attempts=DEFAULT_MAX_RETRIES):
    name = _normalize_account_name(name)

    def unit():
        result = db.execute(
            "UPDATE accounts SET name = ? WHERE id = ? AND user_id = ?",
            (name, account_id, owner_id),
        )
        if result.rowcount == 0:
            raise NotFound("Account not found.")
        return get_account(db, owner_id, account_id)

    return run_atomic(db, unit, attempts)


def set_account_balance(db, owner_id, account_id, target_balance, adjustment_date=None, attempts=DEFAULT_MAX_RETRIES):
    """Bring the balance to ``target_balance`` with a balancing transaction."""
    target_balance = coerce_amount(target_balance)
    if target_balance is None:
        raise InvalidArgument("Balance must be an integer amount.")
    adjustment_date = parse_ledger_date(adjustment_date or date.today())
    if adjustment_date is None:
        raise InvalidArgument("Adjustment date is invalid.")

    def unit():
        account = get_account(db, owner_id, account_id)
        difference = target_balance - account["balance"]
        transaction_id = None
        if difference:
            transaction_id = _insert_transaction(
                db,
                {
                    "account_id": account_id,
                    "category_id": None,
                    "amount": difference,
                    "payee": BALANCE_ADJUSTMENT_PAYEE,
                    "notes": None,
                    "date": adjustment_date,
                },
            )
            adjust_balance(db, account_id, difference)
        return {"account": get_account(db, owner_id, account_id), "transaction_id": transaction_id}

    return run_atomic(db, unit, attempts)


def delete_account(db, owner_id, account_id, attempts=DEFAULT_MAX_RETRIES):
    # Its transactions go with it (ON DELETE CASCADE); nothing to adjust.
    def unit():
        result = db.execute(
            "DELETE FROM accounts WHERE id = ? AND user_id = ?",
            (account_id, owner_id),
        )
        if result.rowcount == 0:
            raise NotFound("Account not found.")
        return {"id": account_id}

    return run_atomic(db, unit, attempts)


def bulk_delete_accounts(db, owner_id, account_ids, attempts=DEFAULT_MAX_RETRIES):
    def unit():
        ids = sorted(_owned_account_ids(db, owner_id, account_ids or []))
        for chunk in chunked(ids, 500):
            placeholders = ", ".join(["?"] * len(chunk))
            db.execute(
                f"DELETE FROM accounts WHERE user_id = ? AND id IN ({placeholders})",
                [owner_id, *chunk],
            )
        return [{"id": account_id} for account_id in ids]

    return run_atomic(db, unit, attempts)


# -- audit ---------------------------------------------------------------------


def _drifted_accounts(db, owner_id=None):
    filter_sql = "WHERE a.user_id = ?" if owner_id is not None else ""
    params = (owner_id,) if owner_id is not None else ()
    rows = db.execute(
        f"""
        SELECT a.id, a.user_id, a.balance, COALESCE(SUM(t.amount), 0) AS ledger_balance
        FROM accounts a
        LEFT JOIN transactions t ON t.account_id = a.id
        {filter_sql}
        GROUP BY a.id, a.user_id, a.balance
        ORDER BY a.id
        """,
        params,
    ).fetchall()
    drifted = []
    for row in rows:
        balance = int(row["balance"])
        ledger_balance = int(row["ledger_balance"])
        if balance != ledger_balance:
            drifted.append(
                {
                    "id": row["id"],
                    "user_id": row["user_id"],
                    "balance": balance,
                    "ledger_balance": ledger_balance,
                    "drift": balance - ledger_balance,
                }
            )
    return drifted


def check_balances(db, owner_id=None):
    """Accounts whose cached balance differs from the sum of their transactions."""
    return _drifted_accounts(db, owner_id)


def repair_balances(db, owner_id=None, attempts=DEFAULT_MAX_RETRIES):
    def unit():
        drifted = _drifted_accounts(db, owner_id)
        for account in drifted:
            adjust_balance(db, account["id"], -account["drift"])
        return drifted

    repaired = run_atomic(db, unit, attempts)
    for account in repaired:
        logger.warning(
            "Repaired account %s balance %s -> %s",
            account["id"], account["balance"], account["ledger_balance"],
        )
    return repaired
