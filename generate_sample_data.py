import random
from datetime import date, timedelta

from werkzeug.security import generate_password_hash

from finance_tracker import create_app
from finance_tracker.categories import create_category
from finance_tracker.ledger import bulk_create_transactions, create_account, create_transfer
from finance_tracker.plans import create_plan
from finance_tracker.subscriptions import set_subscription


def main():
    app = create_app()
    with app.app_context():
        app.init_db()
        db = app.get_db()

        db.execute(
            "INSERT INTO users (username, password_hash) VALUES (?, ?)",
            ("demo", generate_password_hash("demo123")),
        )
        db.commit()
        user_id = db.execute("SELECT id FROM users WHERE username = 'demo'").fetchone()["id"]

        start = date.today() - timedelta(days=90)
        checking = create_account(db, user_id, "Checking", initial_balance=2500000, opening_date=start)
        savings = create_account(db, user_id, "Savings", initial_balance=10000000, opening_date=start)

        category_names = ["Food", "Transport", "Housing", "Utilities", "Entertainment", "Other"]
        category_ids = [create_category(db, user_id, name)["id"] for name in category_names]

        entries = []
        for i in range(40):
            entries.append(
                {
                    "account_id": checking["id"],
                    "category_id": random.choice(category_ids),
                    "amount": -random.randint(5000, 200000),
                    "payee": f"Sample purchase {i + 1}",
                    "date": (start + timedelta(days=i * 2)).isoformat(),
                }
            )
        for month in range(3):
            entries.append(
                {
                    "account_id": checking["id"],
                    "amount": 3200000,
                    "payee": "Salary",
                    "date": (start + timedelta(days=month * 30 + 1)).isoformat(),
                }
            )
        bulk_create_transactions(db, user_id, entries)
        create_transfer(db, user_id, checking["id"], savings["id"], 500000, date.today(), notes="Monthly savings")

        set_subscription(db, user_id, "active")
        create_plan(
            db,
            user_id,
            {"account_id": savings["id"], "type": "savings", "amount": 500000, "month": date.today().isoformat()},
        )

    print("Sample data generated. Login with demo / demo123")


if __name__ == "__main__":
    main()
