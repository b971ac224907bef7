from datetime import date, timedelta

from .db import row_to_dict
from .errors import NotFound

DEFAULT_LIST_WINDOW_DAYS = 30

ACCOUNT_COLUMNS = "a.id, a.name, a.external_id, a.balance"
TRANSACTION_COLUMNS = "t.id, t.account_id, t.category_id, t.amount, t.payee, t.notes, t.date"


def _account_dto(row):
    data = row_to_dict(row)
    data["balance"] = int(data["balance"])
    return data


def transaction_dto(row):
    data = row_to_dict(row)
    data["amount"] = int(data["amount"])
    return data


def list_accounts(db, owner_id):
    rows = db.execute(
        f"SELECT {ACCOUNT_COLUMNS} FROM accounts a WHERE a.user_id = ? ORDER BY a.name, a.id",
        (owner_id,),
    ).fetchall()
    return [_account_dto(row) for row in rows]


def get_account(db, owner_id, account_id):
    row = db.execute(
        f"SELECT {ACCOUNT_COLUMNS} FROM accounts a WHERE a.id = ? AND a.user_id = ?",
        (account_id, owner_id),
    ).fetchone()
    if row is None:
        raise NotFound("Account not found.")
    return _account_dto(row)


def get_transaction(db, owner_id, transaction_id):
    row = db.execute(
        f"""
        SELECT {TRANSACTION_COLUMNS}, a.name AS account, c.name AS category
        FROM transactions t
        JOIN accounts a ON a.id = t.account_id
        LEFT JOIN categories c ON c.id = t.category_id
        WHERE t.id = ? AND a.user_id = ?
        """,
        (transaction_id, owner_id),
    ).fetchone()
    if row is None:
        raise NotFound("Transaction not found.")
    return transaction_dto(row)


def resolve_window(start=None, end=None, today=None):
    """Default to the last 30 days ending today, swapping reversed bounds."""
    today = today or date.today()
    end = end or today.isoformat()
    start = start or (date.fromisoformat(end) - timedelta(days=DEFAULT_LIST_WINDOW_DAYS)).isoformat()
    if start > end:
        start, end = end, start
    return start, end


def list_transactions(db, owner_id, start=None, end=None, account_id=None):
    start, end = resolve_window(start, end)
    filter_sql = "a.user_id = ? AND t.date BETWEEN ? AND ?"
    params = [owner_id, start, end]
    if account_id:
        filter_sql += " AND t.account_id = ?"
        params.append(account_id)

    rows = db.execute(
        f"""
        SELECT {TRANSACTION_COLUMNS}, a.name AS account, c.name AS category
        FROM transactions t
        JOIN accounts a ON a.id = t.account_id
        LEFT JOIN categories c ON c.id = t.category_id
        WHERE {filter_sql}
        ORDER BY t.date DESC, t.id
        """,
        params,
    ).fetchall()
    return [transaction_dto(row) for row in rows]


def summarize(db, owner_id, start=None, end=None, account_id=None):
    start, end = resolve_window(start, end)
    filter_sql = "a.user_id = ? AND t.date BETWEEN ? AND ?"
    params = [owner_id, start, end]
    if account_id:
        filter_sql += " AND t.account_id = ?"
        params.append(account_id)

    totals = db.execute(
        f"""
        SELECT
            COALESCE(SUM(CASE WHEN t.amount > 0 THEN t.amount ELSE 0 END), 0) AS income,
            COALESCE(SUM(CASE WHEN t.amount < 0 THEN t.amount ELSE 0 END), 0) AS expenses
        FROM transactions t
        JOIN accounts a ON a.id = t.account_id
        WHERE {filter_sql}
        """,
        params,
    ).fetchone()
    category_rows = db.execute(
        f"""
        SELECT COALESCE(c.name, 'Uncategorized') AS name, SUM(ABS(t.amount)) AS value
        FROM transactions t
        JOIN accounts a ON a.id = t.account_id
        LEFT JOIN categories c ON c.id = t.category_id
        WHERE {filter_sql} AND t.amount < 0
        GROUP BY COALESCE(c.name, 'Uncategorized')
        ORDER BY value DESC, name
        """,
        params,
    ).fetchall()

    income = int(totals["income"])
    expenses = int(totals["expenses"])
    return {
        "start": start,
        "end": end,
        "income": income,
        "expenses": expenses,
        "remaining": income + expenses,
        "categories": [{"name": row["name"], "value": int(row["value"])} for row in category_rows],
    }
