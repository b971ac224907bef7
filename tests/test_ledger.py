import sqlite3

import pytest

from finance_tracker import categories, ledger, queries
from finance_tracker import db as db_module
from finance_tracker.db import connect_db, parse_database_config
from finance_tracker.db_migrations import apply_migrations
from finance_tracker.errors import Conflict, InvalidArgument, NotFound


@pytest.fixture()
def db(tmp_path, monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    config = parse_database_config(str(tmp_path / "ledger.sqlite"))
    apply_migrations(config)
    conn = connect_db(config)
    yield conn
    conn.close()


def make_user(db, username="alice"):
    db.execute("INSERT INTO users (username, password_hash) VALUES (?, ?)", (username, "not-a-real-hash"))
    db.commit()
    return db.execute("SELECT id FROM users WHERE username = ?", (username,)).fetchone()["id"]


def balance_of(db, account_id):
    return db.execute("SELECT balance FROM accounts WHERE id = ?", (account_id,)).fetchone()["balance"]


def transaction_count(db, account_id=None):
    if account_id is None:
        return db.execute("SELECT COUNT(*) AS n FROM transactions").fetchone()["n"]
    return db.execute("SELECT COUNT(*) AS n FROM transactions WHERE account_id = ?", (account_id,)).fetchone()["n"]


def entry(account_id, amount, payee="Shop", day="2024-03-01", **extra):
    return {"account_id": account_id, "amount": amount, "payee": payee, "date": day, **extra}


def test_create_account_books_opening_balance(db):
    user_id = make_user(db)

    account = ledger.create_account(db, user_id, "  Checking ", initial_balance=5000, opening_date="2024-01-01")

    assert account["name"] == "Checking"
    assert account["balance"] == 5000
    row = db.execute("SELECT amount, payee, date FROM transactions WHERE account_id = ?", (account["id"],)).fetchone()
    assert row["amount"] == 5000
    assert row["payee"] == ledger.OPENING_BALANCE_PAYEE
    assert row["date"] == "2024-01-01"
    assert ledger.check_balances(db, user_id) == []


def test_create_account_without_balance_has_no_transactions(db):
    user_id = make_user(db)

    account = ledger.create_account(db, user_id, "Wallet")

    assert account["balance"] == 0
    assert transaction_count(db, account["id"]) == 0


def test_create_update_delete_scenario(db):
    user_id = make_user(db)
    account = ledger.create_account(db, user_id, "Checking", initial_balance=1000)

    created = ledger.create_transaction(db, user_id, entry(account["id"], -200, payee="Groceries"))
    assert balance_of(db, account["id"]) == 800
    assert created["account"] == "Checking"

    ledger.update_transaction(db, user_id, created["id"], {"amount": -500})
    assert balance_of(db, account["id"]) == 500

    ledger.delete_transaction(db, user_id, created["id"])
    assert balance_of(db, account["id"]) == 1000
    assert ledger.check_balances(db) == []


def test_partial_update_keeps_other_fields(db):
    user_id = make_user(db)
    account = ledger.create_account(db, user_id, "Checking")
    created = ledger.create_transaction(db, user_id, entry(account["id"], -1200, payee="Cafe", notes="latte"))

    updated = ledger.update_transaction(db, user_id, created["id"], {"payee": "Corner cafe"})

    assert updated["payee"] == "Corner cafe"
    assert updated["amount"] == -1200
    assert updated["notes"] == "latte"
    assert updated["date"] == "2024-03-01"
    assert balance_of(db, account["id"]) == -1200


def test_update_moving_account_adjusts_both_balances(db):
    user_id = make_user(db)
    checking = ledger.create_account(db, user_id, "Checking", initial_balance=1000)
    savings = ledger.create_account(db, user_id, "Savings", initial_balance=200)
    created = ledger.create_transaction(db, user_id, entry(checking["id"], -300))

    ledger.update_transaction(db, user_id, created["id"], {"account_id": savings["id"], "amount": -100})

    assert balance_of(db, checking["id"]) == 1000
    assert balance_of(db, savings["id"]) == 100
    assert ledger.check_balances(db, user_id) == []


def test_invariant_holds_after_mixed_operations(db):
    user_id = make_user(db)
    a = ledger.create_account(db, user_id, "A", initial_balance=10000)
    b = ledger.create_account(db, user_id, "B")

    first = ledger.create_transaction(db, user_id, entry(a["id"], -450))
    ledger.bulk_create_transactions(db, user_id, [entry(b["id"], 300), entry(a["id"], -25), entry(b["id"], -5)])
    ledger.update_transaction(db, user_id, first["id"], {"account_id": b["id"]})
    ledger.create_transfer(db, user_id, a["id"], b["id"], 1000, "2024-03-02")
    ledger.set_account_balance(db, user_id, b["id"], 0)
    ids = [row["id"] for row in db.execute("SELECT id FROM transactions WHERE account_id = ?", (a["id"],)).fetchall()]
    ledger.bulk_delete_transactions(db, user_id, ids[:2])

    assert ledger.check_balances(db) == []
    assert balance_of(db, b["id"]) == 0


def test_invalid_transaction_values_are_rejected(db):
    user_id = make_user(db)
    account = ledger.create_account(db, user_id, "Checking")

    with pytest.raises(InvalidArgument):
        ledger.create_transaction(db, user_id, entry(account["id"], "12.5"))
    with pytest.raises(InvalidArgument):
        ledger.create_transaction(db, user_id, entry(account["id"], 100, day="2024-02-30"))
    with pytest.raises(InvalidArgument):
        ledger.create_transaction(db, user_id, entry(account["id"], 100, payee="  "))
    with pytest.raises(InvalidArgument):
        ledger.create_transaction(db, user_id, entry(account["id"], True))

    assert transaction_count(db) == 0


def test_foreign_records_are_not_found_and_untouched(db):
    alice = make_user(db, "alice")
    bob = make_user(db, "bob")
    alice_account = ledger.create_account(db, alice, "Alice checking", initial_balance=1000)
    bob_account = ledger.create_account(db, bob, "Bob checking", initial_balance=50)
    alice_tx = ledger.create_transaction(db, alice, entry(alice_account["id"], -100))

    with pytest.raises(NotFound):
        ledger.create_transaction(db, bob, entry(alice_account["id"], -100))
    with pytest.raises(NotFound):
        ledger.update_transaction(db, bob, alice_tx["id"], {"amount": -999})
    with pytest.raises(NotFound):
        ledger.update_transaction(db, alice, alice_tx["id"], {"account_id": bob_account["id"]})
    with pytest.raises(NotFound):
        ledger.delete_transaction(db, bob, alice_tx["id"])
    with pytest.raises(NotFound):
        ledger.rename_account(db, bob, alice_account["id"], "Mine now")
    with pytest.raises(NotFound):
        ledger.delete_account(db, bob, alice_account["id"])

    assert balance_of(db, alice_account["id"]) == 900
    assert balance_of(db, bob_account["id"]) == 50
    assert ledger.check_balances(db) == []


def test_foreign_category_is_not_found(db):
    alice = make_user(db, "alice")
    bob = make_user(db, "bob")
    account = ledger.create_account(db, alice, "Checking")
    bob_category = categories.create_category(db, bob, "Bob's")

    with pytest.raises(NotFound):
        ledger.create_transaction(db, alice, entry(account["id"], -10, category_id=bob_category["id"]))
    assert balance_of(db, account["id"]) == 0


def test_bulk_create_applies_one_adjustment_per_account(db, monkeypatch):
    user_id = make_user(db)
    account = ledger.create_account(db, user_id, "Checking")
    calls = []
    original_adjust = ledger.adjust_balance

    def recording_adjust(conn, account_id, delta):
        calls.append((account_id, delta))
        original_adjust(conn, account_id, delta)

    monkeypatch.setattr(ledger, "adjust_balance", recording_adjust)

    created = ledger.bulk_create_transactions(
        db, user_id, [entry(account["id"], amount) for amount in [100, -50, 200, -25, 75]]
    )

    assert len(created) == 5
    assert calls == [(account["id"], 300)]
    assert balance_of(db, account["id"]) == 300


def test_bulk_create_rejects_invalid_entry_without_writing(db):
    user_id = make_user(db)
    account = ledger.create_account(db, user_id, "Checking")

    with pytest.raises(InvalidArgument, match="index 2"):
        ledger.bulk_create_transactions(
            db, user_id, [entry(account["id"], 10), entry(account["id"], 20), entry(account["id"], "abc")]
        )

    assert transaction_count(db) == 0
    assert balance_of(db, account["id"]) == 0


def test_bulk_create_with_foreign_account_is_rejected_whole(db):
    alice = make_user(db, "alice")
    bob = make_user(db, "bob")
    mine = ledger.create_account(db, alice, "Mine")
    theirs = ledger.create_account(db, bob, "Theirs")

    with pytest.raises(NotFound):
        ledger.bulk_create_transactions(db, alice, [entry(mine["id"], 10), entry(theirs["id"], 20)])

    assert transaction_count(db) == 0


def test_bulk_create_rolls_back_when_a_later_batch_fails(db, monkeypatch):
    user_id = make_user(db)
    account = ledger.create_account(db, user_id, "Checking", initial_balance=100)
    original_insert = ledger._insert_transactions
    batches = []

    def failing_insert(conn, rows):
        batches.append(len(rows))
        if len(batches) == 2:
            raise sqlite3.OperationalError("disk I/O error")
        original_insert(conn, rows)

    monkeypatch.setattr(ledger, "_insert_transactions", failing_insert)

    with pytest.raises(sqlite3.OperationalError):
        ledger.bulk_create_transactions(db, user_id, [entry(account["id"], 1)] * 5, batch_size=2)

    assert batches == [2, 2]
    assert transaction_count(db, account["id"]) == 1
    assert balance_of(db, account["id"]) == 100


def test_bulk_delete_ignores_foreign_and_unknown_ids(db):
    alice = make_user(db, "alice")
    bob = make_user(db, "bob")
    alice_account = ledger.create_account(db, alice, "Alice")
    bob_account = ledger.create_account(db, bob, "Bob")
    a1 = ledger.create_transaction(db, alice, entry(alice_account["id"], -100))
    ledger.create_transaction(db, alice, entry(alice_account["id"], -40))
    b1 = ledger.create_transaction(db, bob, entry(bob_account["id"], -70))

    deleted = ledger.bulk_delete_transactions(db, alice, [a1["id"], b1["id"], "missing", a1["id"]])

    assert deleted == [{"id": a1["id"]}]
    assert balance_of(db, alice_account["id"]) == -40
    assert balance_of(db, bob_account["id"]) == -70
    assert transaction_count(db, bob_account["id"]) == 1
    assert ledger.check_balances(db) == []


def test_bulk_delete_with_nothing_owned_is_a_no_op(db):
    alice = make_user(db, "alice")

    assert ledger.bulk_delete_transactions(db, alice, []) == []
    assert ledger.bulk_delete_transactions(db, alice, ["nope"]) == []


def test_transfer_scenario(db):
    user_id = make_user(db)
    a = ledger.create_account(db, user_id, "Checking", initial_balance=1000)
    b = ledger.create_account(db, user_id, "Savings", initial_balance=200)
    before = transaction_count(db)

    result = ledger.create_transfer(db, user_id, a["id"], b["id"], 300, "2024-03-05")

    assert balance_of(db, a["id"]) == 700
    assert balance_of(db, b["id"]) == 500
    assert transaction_count(db) == before + 2

    withdrawal = ledger.get_transaction(db, user_id, result["withdrawal_id"])
    deposit = ledger.get_transaction(db, user_id, result["deposit_id"])
    assert withdrawal["amount"] == -300
    assert withdrawal["payee"] == 'Transfer to "Savings"'
    assert withdrawal["category"] == ledger.TRANSFER_OUT_CATEGORY
    assert withdrawal["notes"] == ledger.TRANSFER_DEFAULT_NOTES
    assert deposit["amount"] == 300
    assert deposit["payee"] == 'Transfer from "Checking"'
    assert deposit["category"] == ledger.TRANSFER_IN_CATEGORY


def test_transfer_notes_are_suffixed(db):
    user_id = make_user(db)
    a = ledger.create_account(db, user_id, "A")
    b = ledger.create_account(db, user_id, "B")

    result = ledger.create_transfer(db, user_id, a["id"], b["id"], 10, "2024-03-05", notes="rent share")

    assert ledger.get_transaction(db, user_id, result["deposit_id"])["notes"] == "rent share (transfer)"


def test_transfer_categories_are_provisioned_once(db):
    user_id = make_user(db)
    a = ledger.create_account(db, user_id, "A", initial_balance=1000)
    b = ledger.create_account(db, user_id, "B")

    ledger.create_transfer(db, user_id, a["id"], b["id"], 100, "2024-03-05")
    ledger.create_transfer(db, user_id, b["id"], a["id"], 50, "2024-03-06")

    rows = db.execute(
        "SELECT name, COUNT(*) AS n FROM categories WHERE user_id = ? GROUP BY name ORDER BY name",
        (user_id,),
    ).fetchall()
    assert [(row["name"], row["n"]) for row in rows] == [("Transfer in", 1), ("Transfer out", 1)]


def test_transfer_rolls_back_when_second_leg_fails(db, monkeypatch):
    user_id = make_user(db)
    a = ledger.create_account(db, user_id, "A", initial_balance=1000)
    b = ledger.create_account(db, user_id, "B", initial_balance=200)
    before = transaction_count(db)
    original_insert = ledger._insert_transaction
    inserts = []

    def failing_insert(conn, values):
        inserts.append(values["amount"])
        if len(inserts) == 2:
            raise sqlite3.OperationalError("disk I/O error")
        return original_insert(conn, values)

    monkeypatch.setattr(ledger, "_insert_transaction", failing_insert)

    with pytest.raises(sqlite3.OperationalError):
        ledger.create_transfer(db, user_id, a["id"], b["id"], 300, "2024-03-05")

    assert inserts == [-300, 300]
    assert balance_of(db, a["id"]) == 1000
    assert balance_of(db, b["id"]) == 200
    assert transaction_count(db) == before
    assert categories.list_categories(db, user_id) == []


def test_transfer_validation(db):
    alice = make_user(db, "alice")
    bob = make_user(db, "bob")
    a = ledger.create_account(db, alice, "A", initial_balance=1000)
    b = ledger.create_account(db, alice, "B")
    foreign = ledger.create_account(db, bob, "Foreign")

    with pytest.raises(InvalidArgument):
        ledger.create_transfer(db, alice, a["id"], a["id"], 100, "2024-03-05")
    with pytest.raises(InvalidArgument):
        ledger.create_transfer(db, alice, a["id"], b["id"], 0, "2024-03-05")
    with pytest.raises(InvalidArgument):
        ledger.create_transfer(db, alice, a["id"], b["id"], -5, "2024-03-05")
    with pytest.raises(InvalidArgument):
        ledger.create_transfer(db, alice, a["id"], b["id"], 100, "not a date")
    with pytest.raises(InvalidArgument, match="do not belong"):
        ledger.create_transfer(db, alice, a["id"], foreign["id"], 100, "2024-03-05")

    assert balance_of(db, a["id"]) == 1000
    assert balance_of(db, foreign["id"]) == 0


def test_reconcile_drops_invalid_and_foreign_candidates(db):
    alice = make_user(db, "alice")
    bob = make_user(db, "bob")
    account = ledger.create_account(db, alice, "Checking")
    other = ledger.create_account(db, alice, "Card")
    foreign_account = ledger.create_account(db, bob, "Foreign")
    foreign_category = categories.create_category(db, bob, "Foreign category")

    result = ledger.reconcile(
        db,
        alice,
        [
            entry(account["id"], -1500),
            entry(account["id"], "ten"),
            entry(account["id"], 100, day="yesterday"),
            entry(foreign_account["id"], 100),
            entry(other["id"], 2500, category_id=foreign_category["id"]),
            {"account_id": account["id"], "amount": 5, "date": "2024-03-01"},
        ],
    )

    assert result["inserted"] == 2
    assert [item["index"] for item in result["skipped"]] == [1, 2, 3, 5]
    assert balance_of(db, account["id"]) == -1500
    assert balance_of(db, other["id"]) == 2500
    assert balance_of(db, foreign_account["id"]) == 0
    kept = db.execute("SELECT category_id FROM transactions WHERE account_id = ?", (other["id"],)).fetchone()
    assert kept["category_id"] is None


def test_reconcile_chunks_inserts_and_applies_deltas_once(db, monkeypatch):
    user_id = make_user(db)
    account = ledger.create_account(db, user_id, "Checking")
    other = ledger.create_account(db, user_id, "Card")
    original_insert = ledger._insert_transactions
    original_adjust = ledger.adjust_balance
    batches = []
    adjustments = []

    def recording_insert(conn, rows):
        batches.append(len(rows))
        original_insert(conn, rows)

    def recording_adjust(conn, account_id, delta):
        adjustments.append((account_id, delta))
        original_adjust(conn, account_id, delta)

    monkeypatch.setattr(ledger, "_insert_transactions", recording_insert)
    monkeypatch.setattr(ledger, "adjust_balance", recording_adjust)

    candidates = [entry(account["id"], 10)] * 3 + [entry(other["id"], -4)] * 2
    result = ledger.reconcile(db, user_id, candidates, batch_size=2)

    assert result["inserted"] == 5
    assert len(result["ids"]) == 5
    assert batches == [2, 2, 1]
    assert sorted(adjustments) == sorted([(account["id"], 30), (other["id"], -8)])


def test_contended_unit_raises_conflict_after_retries(db, monkeypatch):
    user_id = make_user(db)
    account = ledger.create_account(db, user_id, "Checking", initial_balance=100)
    attempts = []

    def locked_insert(conn, values):
        attempts.append(values["amount"])
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(ledger, "_insert_transaction", locked_insert)

    with pytest.raises(Conflict):
        ledger.create_transaction(db, user_id, entry(account["id"], -10), attempts=3)

    assert len(attempts) == 3
    assert balance_of(db, account["id"]) == 100


def test_set_account_balance_books_adjustment(db):
    user_id = make_user(db)
    account = ledger.create_account(db, user_id, "Checking", initial_balance=1000)

    result = ledger.set_account_balance(db, user_id, account["id"], 250, adjustment_date="2024-04-01")

    assert result["account"]["balance"] == 250
    adjustment = ledger.get_transaction(db, user_id, result["transaction_id"])
    assert adjustment["amount"] == -750
    assert adjustment["payee"] == ledger.BALANCE_ADJUSTMENT_PAYEE
    assert ledger.set_account_balance(db, user_id, account["id"], 250)["transaction_id"] is None
    assert ledger.check_balances(db) == []


def test_delete_account_cascades_transactions(db):
    user_id = make_user(db)
    account = ledger.create_account(db, user_id, "Checking", initial_balance=1000)
    other = ledger.create_account(db, user_id, "Card")
    ledger.create_transaction(db, user_id, entry(account["id"], -5))

    ledger.delete_account(db, user_id, account["id"])
    assert transaction_count(db, account["id"]) == 0

    deleted = ledger.bulk_delete_accounts(db, user_id, [other["id"], "missing"])
    assert deleted == [{"id": other["id"]}]
    assert queries.list_accounts(db, user_id) == []


def test_check_and_repair_balances(db):
    user_id = make_user(db)
    account = ledger.create_account(db, user_id, "Checking", initial_balance=1000)
    db.execute("UPDATE accounts SET balance = 1234 WHERE id = ?", (account["id"],))
    db.commit()

    drifted = ledger.check_balances(db, user_id)
    assert drifted == [
        {"id": account["id"], "user_id": user_id, "balance": 1234, "ledger_balance": 1000, "drift": 234}
    ]

    repaired = ledger.repair_balances(db, user_id)
    assert [item["id"] for item in repaired] == [account["id"]]
    assert balance_of(db, account["id"]) == 1000
    assert ledger.check_balances(db) == []


def test_category_get_or_create_is_idempotent(db):
    user_id = make_user(db)

    ledger.run_atomic(db, lambda: categories.get_or_create_category(db, user_id, "Food"))
    first = ledger.run_atomic(db, lambda: categories.get_or_create_category(db, user_id, "Food"))

    rows = categories.list_categories(db, user_id)
    assert [row["id"] for row in rows] == [first]


def test_duplicate_category_name_is_invalid(db):
    user_id = make_user(db)
    categories.create_category(db, user_id, "Food")

    with pytest.raises(InvalidArgument, match="already exists"):
        categories.create_category(db, user_id, " Food ")


def test_deleting_category_uncategorizes_transactions(db):
    user_id = make_user(db)
    account = ledger.create_account(db, user_id, "Checking")
    food = categories.create_category(db, user_id, "Food")
    created = ledger.create_transaction(db, user_id, entry(account["id"], -300, category_id=food["id"]))

    categories.delete_category(db, user_id, food["id"])

    fetched = ledger.get_transaction(db, user_id, created["id"])
    assert fetched["category_id"] is None
    assert fetched["amount"] == -300
    assert balance_of(db, account["id"]) == -300


def test_busy_commit_is_retried_without_booking_the_unit_twice(db, monkeypatch):
    user_id = make_user(db)
    account = ledger.create_account(db, user_id, "Checking", initial_balance=1000)
    db.execute("PRAGMA busy_timeout = 0")
    db_file = db.execute("PRAGMA database_list").fetchone()["file"]

    # An open read transaction elsewhere blocks COMMIT but not BEGIN IMMEDIATE.
    reader = sqlite3.connect(db_file, isolation_level=None)
    reader.execute("BEGIN")
    reader.execute("SELECT COUNT(*) FROM accounts").fetchall()
    original_is_retryable = db_module.is_retryable_error
    failures = []

    def release_reader_after_first_failure(exc):
        if not failures:
            reader.execute("COMMIT")
        failures.append(str(exc))
        return original_is_retryable(exc)

    monkeypatch.setattr(db_module, "is_retryable_error", release_reader_after_first_failure)

    try:
        created = ledger.create_transaction(db, user_id, entry(account["id"], -200))
    finally:
        reader.close()

    assert failures == ["database is locked"]
    assert created["amount"] == -200
    assert transaction_count(db, account["id"]) == 2
    assert balance_of(db, account["id"]) == 800
    assert ledger.check_balances(db, user_id) == []


def test_unit_discards_work_left_pending_on_the_connection(db):
    user_id = make_user(db)
    account = ledger.create_account(db, user_id, "Checking")
    db.execute("UPDATE accounts SET balance = 999 WHERE id = ?", (account["id"],))

    ledger.create_transaction(db, user_id, entry(account["id"], 50))

    assert balance_of(db, account["id"]) == 50
    assert ledger.check_balances(db, user_id) == []


def test_malformed_references_and_huge_amounts_are_invalid(db):
    user_id = make_user(db)
    account = ledger.create_account(db, user_id, "Checking", initial_balance=1000)
    savings = ledger.create_account(db, user_id, "Savings")

    with pytest.raises(InvalidArgument, match="invalid category_id"):
        ledger.create_transaction(db, user_id, entry(account["id"], -10, category_id=["c"]))
    with pytest.raises(InvalidArgument, match="out of range"):
        ledger.create_transaction(db, user_id, entry(account["id"], 10**20))
    with pytest.raises(InvalidArgument, match="index 1"):
        ledger.bulk_create_transactions(
            db, user_id, [entry(account["id"], 5), entry(account["id"], 5, category_id={"id": "c"})]
        )
    with pytest.raises(InvalidArgument):
        ledger.create_account(db, user_id, "Huge", initial_balance=10**20)
    with pytest.raises(InvalidArgument):
        ledger.set_account_balance(db, user_id, account["id"], -(10**20))
    with pytest.raises(InvalidArgument):
        ledger.create_transfer(db, user_id, account["id"], savings["id"], 10**20, "2024-03-01")
    with pytest.raises(InvalidArgument):
        ledger.create_transfer(db, user_id, [account["id"]], savings["id"], 100, "2024-03-01")
    with pytest.raises(InvalidArgument):
        categories.create_category(db, user_id, 5)

    assert transaction_count(db) == 1
    assert balance_of(db, account["id"]) == 1000
    assert balance_of(db, savings["id"]) == 0


def test_update_with_out_of_range_amount_leaves_balance_untouched(db):
    user_id = make_user(db)
    account = ledger.create_account(db, user_id, "Checking")
    created = ledger.create_transaction(db, user_id, entry(account["id"], -300))

    with pytest.raises(InvalidArgument):
        ledger.update_transaction(db, user_id, created["id"], {"amount": 2**63})

    assert ledger.get_transaction(db, user_id, created["id"])["amount"] == -300
    assert balance_of(db, account["id"]) == -300


def test_balance_stays_an_integer_at_the_amount_limit(db):
    user_id = make_user(db)
    account = ledger.create_account(db, user_id, "Vault", initial_balance=ledger.MAX_AMOUNT)

    ledger.create_transaction(db, user_id, entry(account["id"], ledger.MAX_AMOUNT))
    with pytest.raises(InvalidArgument):
        ledger.create_transaction(db, user_id, entry(account["id"], ledger.MAX_AMOUNT + 1))

    balance = balance_of(db, account["id"])
    assert isinstance(balance, int)
    assert balance == 2 * ledger.MAX_AMOUNT
    assert ledger.check_balances(db, user_id) == []


def test_reconcile_skips_malformed_category_and_huge_amount(db):
    user_id = make_user(db)
    account = ledger.create_account(db, user_id, "Checking")

    result = ledger.reconcile(
        db,
        user_id,
        [
            entry(account["id"], -100),
            entry(account["id"], -100, category_id=["c"]),
            entry(account["id"], 10**20),
        ],
    )

    assert result["inserted"] == 1
    assert [item["index"] for item in result["skipped"]] == [1, 2]
    assert result["skipped"][0]["reason"].startswith("invalid category_id")
    assert result["skipped"][1]["reason"].startswith("amount out of range")
    assert balance_of(db, account["id"]) == -100
