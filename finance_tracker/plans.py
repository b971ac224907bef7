"""Monthly savings and spending plans (premium).

A plan targets one of the owner's accounts for one calendar month. Plans
never touch balances; they are compared against the ledger by the client.
"""

from datetime import datetime

from .db import DEFAULT_MAX_RETRIES, new_id, row_to_dict, run_atomic
from .errors import InvalidArgument, NotFound
from .ledger import coerce_amount, parse_ledger_date

PLAN_TYPES = ("savings", "spending")
PLAN_FIELDS = ("account_id", "type", "amount", "month")


def parse_plan_month(value):
    """First day of the month as ``YYYY-MM-01``; accepts ``YYYY-MM`` or any ledger date."""
    if isinstance(value, str) and len(value.strip()) == 7:
        try:
            return datetime.strptime(value.strip(), "%Y-%m").date().isoformat()
        except ValueError:
            return None
    parsed = parse_ledger_date(value)
    if parsed is None:
        return None
    return parsed[:8] + "01"


def clean_plan_values(values):
    account_id = values.get("account_id")
    if not isinstance(account_id, str) or not account_id:
        raise InvalidArgument("Invalid plan: missing account_id.")
    if values.get("type") not in PLAN_TYPES:
        raise InvalidArgument("Invalid plan: type must be 'savings' or 'spending'.")
    amount = coerce_amount(values.get("amount"))
    if amount is None or amount < 0:
        raise InvalidArgument("Invalid plan: amount must be a non-negative integer.")
    month = parse_plan_month(values.get("month"))
    if month is None:
        raise InvalidArgument("Invalid plan: month is invalid.")
    return {"account_id": account_id, "type": values["type"], "amount": amount, "month": month}


def _plan_dto(row):
    data = row_to_dict(row)
    data["amount"] = int(data["amount"])
    return data


def _require_account(db, owner_id, account_id):
    row = db.execute(
        "SELECT id FROM accounts WHERE id = ? AND user_id = ?",
        (account_id, owner_id),
    ).fetchone()
    if row is None:
        raise NotFound("Account not found.")


def list_plans(db, owner_id):
    rows = db.execute(
        """
        SELECT p.id, p.account_id, a.name AS account, p.type, p.amount, p.month
        FROM plans p
        JOIN accounts a ON a.id = p.account_id
        WHERE p.user_id = ?
        ORDER BY p.month DESC, a.name, p.id
        """,
        (owner_id,),
    ).fetchall()
    return [_plan_dto(row) for row in rows]


def get_plan(db, owner_id, plan_id):
    row = db.execute(
        """
        SELECT p.id, p.account_id, a.name AS account, p.type, p.amount, p.month
        FROM plans p
        JOIN accounts a ON a.id = p.account_id
        WHERE p.id = ? AND p.user_id = ?
        """,
        (plan_id, owner_id),
    ).fetchone()
    if row is None:
        raise NotFound("Plan not found.")
    return _plan_dto(row)


def create_plan(db, owner_id, values, attempts=DEFAULT_MAX_RETRIES):
    if not isinstance(values, dict):
        raise InvalidArgument("Invalid plan: not an object.")
    cleaned = clean_plan_values(values)

    def unit():
        _require_account(db, owner_id, cleaned["account_id"])
        plan_id = new_id()
        db.execute(
            "INSERT INTO plans (id, user_id, account_id, type, amount, month) VALUES (?, ?, ?, ?, ?, ?)",
            (plan_id, owner_id, cleaned["account_id"], cleaned["type"], cleaned["amount"], cleaned["month"]),
        )
        return get_plan(db, owner_id, plan_id)

    return run_atomic(db, unit, attempts)


def update_plan(db, owner_id, plan_id, values, attempts=DEFAULT_MAX_RETRIES):
    """Partial update; omitted fields keep their stored value."""
    if not isinstance(values, dict):
        raise InvalidArgument("Invalid plan: not an object.")

    def unit():
        current = get_plan(db, owner_id, plan_id)
        merged = {field: current[field] for field in PLAN_FIELDS}
        merged.update({key: value for key, value in values.items() if key in PLAN_FIELDS})
        cleaned = clean_plan_values(merged)
        _require_account(db, owner_id, cleaned["account_id"])
        db.execute(
            """
            UPDATE plans
            SET account_id = ?, type = ?, amount = ?, month = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND user_id = ?
            """,
            (cleaned["account_id"], cleaned["type"], cleaned["amount"], cleaned["month"], plan_id, owner_id),
        )
        return get_plan(db, owner_id, plan_id)

    return run_atomic(db, unit, attempts)


def delete_plan(db, owner_id, plan_id, attempts=DEFAULT_MAX_RETRIES):
    def unit():
        result = db.execute(
            "DELETE FROM plans WHERE id = ? AND user_id = ?",
            (plan_id, owner_id),
        )
        if result.rowcount == 0:
            raise NotFound("Plan not found.")
        return {"id": plan_id}

    return run_atomic(db, unit, attempts)
