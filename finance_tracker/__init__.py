import os
from functools import wraps

import click
from flask import Flask, g, jsonify, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from . import banking, categories as category_store, ledger, plans, queries, subscriptions
from .db import INTEGRITY_ERRORS, STORAGE_ERRORS, connect_db, parse_database_config
from .db_migrations import apply_migrations, get_db_health
from .errors import DatabaseInitError, InvalidArgument, LedgerError, PartialFailure
from .importing import (
    decode_csv_bytes,
    detect_header_and_mapping,
    normalize_description,
    parse_csv_candidates,
    read_csv_rows,
)


def read_json(expected=dict):
    payload = request.get_json(silent=True)
    if not isinstance(payload, expected):
        kind = "a list" if expected is list else "an object"
        raise InvalidArgument(f"Expected {kind} in the JSON body.")
    return payload


def read_ids(payload):
    ids = payload.get("ids")
    if not isinstance(ids, list):
        raise InvalidArgument("Expected an 'ids' list.")
    return [str(value) for value in ids if value not in (None, "")]


def read_date_arg(name):
    value = (request.args.get(name) or "").strip()
    if not value:
        return None
    parsed = ledger.parse_ledger_date(value)
    if parsed is None:
        raise InvalidArgument(f"Invalid '{name}' date, expected YYYY-MM-DD.")
    return parsed


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY="dev",
        DATABASE=os.path.join(app.instance_path, "finance_tracker.sqlite"),
        IMPORT_BATCH_SIZE=ledger.DEFAULT_BATCH_SIZE,
        LEDGER_MAX_RETRIES=3,
        REQUIRE_SUBSCRIPTION=True,
    )

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    def database_config():
        return parse_database_config(app.config["DATABASE"])

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            try:
                g.db = connect_db(database_config())
            except (*STORAGE_ERRORS, OSError, RuntimeError) as exc:
                message = f"Unable to open database {database_config()['database_name']}: {exc}"
                app.logger.error("[DB ERROR] %s", message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def init_db():
        try:
            apply_migrations(database_config())
            app.config["DB_INIT_ERROR"] = None
        except (*STORAGE_ERRORS, OSError, RuntimeError) as exc:
            message = f"Failed to initialize database {database_config()['database_name']}: {exc}"
            app.logger.error("[DB INIT ERROR] %s", message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    def retries():
        return app.config["LEDGER_MAX_RETRIES"]

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        click.echo("Initialized the database.")

    @app.cli.command("check-balances")
    @click.option("--repair", is_flag=True, help="Reset drifted balances to the sum of their transactions.")
    def check_balances_command(repair):
        db = get_db()
        drifted = ledger.repair_balances(db, attempts=retries()) if repair else ledger.check_balances(db)
        if not drifted:
            click.echo("All account balances match their transactions.")
            return
        for account in drifted:
            click.echo(
                f"account={account['id']} user={account['user_id']} balance={account['balance']} "
                f"ledger={account['ledger_balance']} drift={account['drift']}"
            )
        click.echo(f"{'Repaired' if repair else 'Found'} {len(drifted)} drifted account(s).")

    @app.cli.command("set-subscription")
    @click.argument("username")
    @click.option("--status", type=click.Choice(subscriptions.SUBSCRIPTION_STATUSES), default="active", show_default=True)
    @click.option("--subscription-id", default=None, help="Payment provider subscription id.")
    @click.option("--customer-id", default=None, help="Payment provider customer id.")
    def set_subscription_command(username, status, subscription_id, customer_id):
        db = get_db()
        user = db.execute("SELECT id FROM users WHERE username = ?", (username,)).fetchone()
        if user is None:
            raise click.ClickException(f"No user named {username!r}.")
        try:
            subscription = subscriptions.set_subscription(
                db, user["id"], status, subscription_id=subscription_id, customer_id=customer_id, attempts=retries()
            )
        except LedgerError as exc:
            raise click.ClickException(exc.message) from exc
        click.echo(f"Subscription {subscription['subscription_id']} for {username} is {subscription['status']}.")

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(database_config()))
        except STORAGE_ERRORS as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    @app.errorhandler(LedgerError)
    def handle_ledger_error(exc):
        if isinstance(exc, PartialFailure):
            app.logger.warning("Partial failure for user %s: %s (%s)", g.get("user_id"), exc.message, exc.error)
            return jsonify({"ok": True, "warning": exc.message, "error": exc.error, "data": exc.payload}), exc.status_code
        return jsonify({"error": exc.message}), exc.status_code

    @app.errorhandler(DatabaseInitError)
    def handle_db_init_error(exc):
        return jsonify({"error": str(exc)}), 500

    def login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if g.user is None:
                return jsonify({"error": "Unauthorized"}), 401
            return view(**kwargs)

        return wrapped_view

    def subscription_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if app.config["REQUIRE_SUBSCRIPTION"] and not subscriptions.is_entitled(get_db(), g.user_id):
                return jsonify({"error": "Subscription required"}), 403
            return view(**kwargs)

        return wrapped_view

    @app.before_request
    def load_logged_in_user():
        if app.config.get("DB_INIT_ERROR"):
            return jsonify({"error": app.config["DB_INIT_ERROR"]}), 500

        user_id = session.get("user_id")
        g.user_id = None
        if user_id is None:
            g.user = None
        else:
            g.user = get_db().execute("SELECT id, username FROM users WHERE id = ?", (user_id,)).fetchone()
            if g.user is not None:
                g.user_id = g.user["id"]

    def credentials():
        data = request.get_json(silent=True) or request.form
        return (data.get("username") or "").strip(), data.get("password") or ""

    @app.post("/register")
    def register():
        username, password = credentials()
        if not username:
            return jsonify({"error": "Username is required."}), 400
        if not password:
            return jsonify({"error": "Password is required."}), 400

        db = get_db()
        try:
            db.execute(
                "INSERT INTO users (username, password_hash) VALUES (?, ?)",
                (username, generate_password_hash(password)),
            )
            db.commit()
        except INTEGRITY_ERRORS:
            db.rollback()
            return jsonify({"error": "User already exists."}), 400
        user_id = db.execute("SELECT id FROM users WHERE username = ?", (username,)).fetchone()["id"]
        app.logger.info("Registered user_id=%s", user_id)
        return jsonify({"data": {"id": user_id, "username": username}}), 201

    @app.post("/login")
    def login():
        username, password = credentials()
        user = get_db().execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
        if user is None or not check_password_hash(user["password_hash"], password):
            return jsonify({"error": "Incorrect username or password."}), 401

        session.clear()
        session["user_id"] = user["id"]
        return jsonify({"data": {"id": user["id"], "username": user["username"]}})

    @app.post("/logout")
    def logout():
        session.clear()
        return jsonify({"data": None})

    # -- accounts ---------------------------------------------------------------

    @app.get("/api/accounts")
    @login_required
    def list_accounts():
        return jsonify({"data": queries.list_accounts(get_db(), g.user_id)})

    @app.post("/api/accounts")
    @login_required
    def create_account():
        payload = read_json()
        account = ledger.create_account(
            get_db(),
            g.user_id,
            payload.get("name"),
            initial_balance=payload.get("balance", 0),
            opening_date=payload.get("date"),
            attempts=retries(),
        )
        return jsonify({"data": account}), 201

    @app.get("/api/accounts/<account_id>")
    @login_required
    def get_account(account_id):
        return jsonify({"data": queries.get_account(get_db(), g.user_id, account_id)})

    @app.patch("/api/accounts/<account_id>")
    @login_required
    def rename_account(account_id):
        payload = read_json()
        account = ledger.rename_account(get_db(), g.user_id, account_id, payload.get("name"), attempts=retries())
        return jsonify({"data": account})

    @app.post("/api/accounts/<account_id>/balance")
    @login_required
    def set_account_balance(account_id):
        payload = read_json()
        result = ledger.set_account_balance(
            get_db(), g.user_id, account_id, payload.get("balance"), adjustment_date=payload.get("date"), attempts=retries()
        )
        return jsonify({"data": result})

    @app.delete("/api/accounts/<account_id>")
    @login_required
    def delete_account(account_id):
        result = ledger.delete_account(get_db(), g.user_id, account_id, attempts=retries())
        app.logger.info("Deleted account_id=%s user_id=%s", account_id, g.user_id)
        return jsonify({"data": result})

    @app.post("/api/accounts/bulk-delete")
    @login_required
    def bulk_delete_accounts():
        ids = read_ids(read_json())
        deleted = ledger.bulk_delete_accounts(get_db(), g.user_id, ids, attempts=retries())
        app.logger.info("Bulk account delete user_id=%s requested=%s deleted=%s", g.user_id, len(ids), len(deleted))
        return jsonify({"data": deleted})

    # -- categories -------------------------------------------------------------

    @app.get("/api/categories")
    @login_required
    def list_categories():
        return jsonify({"data": category_store.list_categories(get_db(), g.user_id)})

    @app.post("/api/categories")
    @login_required
    def create_category():
        payload = read_json()
        category = category_store.create_category(get_db(), g.user_id, payload.get("name"), attempts=retries())
        return jsonify({"data": category}), 201

    @app.get("/api/categories/<category_id>")
    @login_required
    def get_category(category_id):
        return jsonify({"data": category_store.get_category(get_db(), g.user_id, category_id)})

    @app.patch("/api/categories/<category_id>")
    @login_required
    def rename_category(category_id):
        payload = read_json()
        category = category_store.rename_category(get_db(), g.user_id, category_id, payload.get("name"), attempts=retries())
        return jsonify({"data": category})

    @app.delete("/api/categories/<category_id>")
    @login_required
    def delete_category(category_id):
        return jsonify({"data": category_store.delete_category(get_db(), g.user_id, category_id, attempts=retries())})

    @app.post("/api/categories/bulk-delete")
    @login_required
    def bulk_delete_categories():
        ids = read_ids(read_json())
        return jsonify({"data": category_store.bulk_delete_categories(get_db(), g.user_id, ids, attempts=retries())})

    # -- transactions -----------------------------------------------------------

    @app.get("/api/transactions")
    @login_required
    def list_transactions():
        data = queries.list_transactions(
            get_db(),
            g.user_id,
            start=read_date_arg("from"),
            end=read_date_arg("to"),
            account_id=(request.args.get("account_id") or "").strip() or None,
        )
        return jsonify({"data": data})

    @app.post("/api/transactions")
    @login_required
    def create_transaction():
        transaction = ledger.create_transaction(get_db(), g.user_id, read_json(), attempts=retries())
        return jsonify({"data": transaction}), 201

    @app.get("/api/transactions/<transaction_id>")
    @login_required
    def get_transaction(transaction_id):
        return jsonify({"data": queries.get_transaction(get_db(), g.user_id, transaction_id)})

    @app.patch("/api/transactions/<transaction_id>")
    @login_required
    def update_transaction(transaction_id):
        transaction = ledger.update_transaction(get_db(), g.user_id, transaction_id, read_json(), attempts=retries())
        return jsonify({"data": transaction})

    @app.delete("/api/transactions/<transaction_id>")
    @login_required
    def delete_transaction(transaction_id):
        result = ledger.delete_transaction(get_db(), g.user_id, transaction_id, attempts=retries())
        app.logger.info("Single delete succeeded for transaction_id=%s user_id=%s", transaction_id, g.user_id)
        return jsonify({"data": result})

    @app.post("/api/transactions/bulk-create")
    @login_required
    def bulk_create_transactions():
        created = ledger.bulk_create_transactions(
            get_db(),
            g.user_id,
            read_json(expected=list),
            batch_size=app.config["IMPORT_BATCH_SIZE"],
            attempts=retries(),
        )
        app.logger.info("Bulk create succeeded for user_id=%s created=%s", g.user_id, len(created))
        return jsonify({"data": created}), 201

    @app.post("/api/transactions/bulk-delete")
    @login_required
    def bulk_delete_transactions():
        ids = read_ids(read_json())
        deleted = ledger.bulk_delete_transactions(get_db(), g.user_id, ids, attempts=retries())
        if len(deleted) != len(set(ids)):
            app.logger.warning(
                "Bulk delete for user_id=%s ignored %s unknown or foreign ids", g.user_id, len(set(ids)) - len(deleted)
            )
        app.logger.info("Bulk delete succeeded for user_id=%s deleted=%s", g.user_id, len(deleted))
        return jsonify({"data": deleted})

    # -- transfers --------------------------------------------------------------

    @app.post("/api/transfers")
    @login_required
    def create_transfer():
        payload = read_json()
        result = ledger.create_transfer(
            get_db(),
            g.user_id,
            payload.get("from_account_id"),
            payload.get("to_account_id"),
            payload.get("amount"),
            payload.get("date"),
            notes=payload.get("notes"),
            attempts=retries(),
        )
        return jsonify({"data": result}), 201

    # -- imports ----------------------------------------------------------------

    @app.post("/api/import/csv")
    @login_required
    def import_csv():
        db = get_db()
        account_id = (request.form.get("account_id") or "").strip()
        if not account_id:
            raise InvalidArgument("Choose an account to import into.")
        queries.get_account(db, g.user_id, account_id)

        upload = request.files.get("file")
        if upload is None or not upload.filename:
            raise InvalidArgument("Please choose a CSV file.")
        text = decode_csv_bytes(upload.read())
        if text is None:
            raise InvalidArgument("Could not decode the CSV file.")

        rows = read_csv_rows(text)
        has_header, mapping, header_row_index = detect_header_and_mapping(rows)
        if mapping["date"] == "" or mapping["payee"] == "":
            raise InvalidArgument("Could not detect the date, payee and amount columns.")
        data_rows = rows[header_row_index + 1:] if has_header else rows

        category_lookup = {
            normalize_description(category["name"]): category["id"]
            for category in category_store.list_categories(db, g.user_id)
        }
        candidates, csv_skipped = parse_csv_candidates(data_rows, mapping, account_id, category_lookup)
        for skipped in csv_skipped:
            app.logger.warning("Skipping CSV row %s for user_id=%s: %s", skipped["row"], g.user_id, skipped["reason"])

        result = ledger.reconcile(
            db, g.user_id, candidates, batch_size=app.config["IMPORT_BATCH_SIZE"], attempts=retries()
        )
        return jsonify({"data": {"inserted": result["inserted"], "skipped": csv_skipped + result["skipped"]}})

    # -- bank link --------------------------------------------------------------

    @app.get("/api/bank/connected")
    @login_required
    def connected_bank():
        return jsonify({"data": banking.get_connected_bank(get_db(), g.user_id)})

    @app.post("/api/bank/connect")
    @login_required
    @subscription_required
    def connect_bank():
        payload = read_json()
        result = banking.link_bank(
            get_db(),
            g.user_id,
            payload.get("access_token"),
            payload,
            batch_size=app.config["IMPORT_BATCH_SIZE"],
            attempts=retries(),
        )
        return jsonify({"ok": True, "data": result})

    @app.delete("/api/bank/connected")
    @login_required
    def disconnect_bank():
        result = banking.unlink_bank(get_db(), g.user_id, attempts=retries())
        app.logger.info("Disconnected bank for user_id=%s", g.user_id)
        return jsonify({"data": result})

    # -- subscriptions and plans ------------------------------------------------

    @app.get("/api/subscriptions/current")
    @login_required
    def current_subscription():
        return jsonify({"data": subscriptions.get_subscription(get_db(), g.user_id)})

    @app.get("/api/plans")
    @login_required
    @subscription_required
    def list_plans():
        return jsonify({"data": plans.list_plans(get_db(), g.user_id)})

    @app.post("/api/plans")
    @login_required
    @subscription_required
    def create_plan():
        plan = plans.create_plan(get_db(), g.user_id, read_json(), attempts=retries())
        return jsonify({"data": plan}), 201

    @app.patch("/api/plans/<plan_id>")
    @login_required
    @subscription_required
    def update_plan(plan_id):
        plan = plans.update_plan(get_db(), g.user_id, plan_id, read_json(), attempts=retries())
        return jsonify({"data": plan})

    @app.delete("/api/plans/<plan_id>")
    @login_required
    @subscription_required
    def delete_plan(plan_id):
        result = plans.delete_plan(get_db(), g.user_id, plan_id, attempts=retries())
        app.logger.info("Deleted plan_id=%s user_id=%s", plan_id, g.user_id)
        return jsonify({"data": result})

    # -- reporting --------------------------------------------------------------

    @app.get("/api/summary")
    @login_required
    def summary():
        data = queries.summarize(
            get_db(),
            g.user_id,
            start=read_date_arg("from"),
            end=read_date_arg("to"),
            account_id=(request.args.get("account_id") or "").strip() or None,
        )
        return jsonify({"data": data})

    @app.get("/api/ledger/check")
    @login_required
    def ledger_check():
        drifted = ledger.check_balances(get_db(), g.user_id)
        return jsonify({"data": {"ok": not drifted, "drifted": drifted}})

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_db = get_db
    app.init_db = init_db
    return app
