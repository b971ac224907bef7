import re

from .db import DEFAULT_MAX_RETRIES, INTEGRITY_ERRORS, new_id, row_to_dict, run_atomic
from .errors import InvalidArgument, NotFound


def normalize_category_name(value):
    if not isinstance(value, str):
        return ""
    return re.sub(r"\s+", " ", value.strip())


def get_or_create_category(db, owner_id, name, external_id=None):
    """Return the id of the owner's category called ``name``, creating it once.

    Must run inside an open unit. The ``(user_id, name)`` unique index makes
    a concurrent second insert a no-op instead of a duplicate.
    """
    db.execute(
        "INSERT OR IGNORE INTO categories (id, user_id, name, external_id) VALUES (?, ?, ?, ?)",
        (new_id(), owner_id, name, external_id),
    )
    row = db.execute(
        "SELECT id FROM categories WHERE user_id = ? AND name = ?",
        (owner_id, name),
    ).fetchone()
    return row["id"]


def owned_category_ids(db, owner_id, category_ids):
    ids = list(dict.fromkeys(category_id for category_id in category_ids if category_id and isinstance(category_id, str)))
    if not ids:
        return set()
    placeholders = ", ".join(["?"] * len(ids))
    rows = db.execute(
        f"SELECT id FROM categories WHERE user_id = ? AND id IN ({placeholders})",
        [owner_id, *ids],
    ).fetchall()
    return {row["id"] for row in rows}


def list_categories(db, owner_id):
    rows = db.execute(
        "SELECT id, name, external_id FROM categories WHERE user_id = ? ORDER BY name",
        (owner_id,),
    ).fetchall()
    return [row_to_dict(row) for row in rows]


def get_category(db, owner_id, category_id):
    row = db.execute(
        "SELECT id, name, external_id FROM categories WHERE id = ? AND user_id = ?",
        (category_id, owner_id),
    ).fetchone()
    if row is None:
        raise NotFound("Category not found.")
    return row_to_dict(row)


def create_category(db, owner_id, name, attempts=DEFAULT_MAX_RETRIES):
    name = normalize_category_name(name)
    if not name:
        raise InvalidArgument("Category name is required.")

    def unit():
        category_id = new_id()
        db.execute(
            "INSERT INTO categories (id, user_id, name) VALUES (?, ?, ?)",
            (category_id, owner_id, name),
        )
        return {"id": category_id, "name": name, "external_id": None}

    try:
        return run_atomic(db, unit, attempts)
    except INTEGRITY_ERRORS as exc:
        raise InvalidArgument("Category already exists.") from exc


def rename_category(db, owner_id, category_id, name, attempts=DEFAULT_MAX_RETRIES):
    name = normalize_category_name(name)
    if not name:
        raise InvalidArgument("Category name is required.")

    def unit():
        result = db.execute(
            "UPDATE categories SET name = ? WHERE id = ? AND user_id = ?",
            (name, category_id, owner_id),
        )
        if result.rowcount == 0:
            raise NotFound("Category not found.")
        return get_category(db, owner_id, category_id)

    try:
        return run_atomic(db, unit, attempts)
    except INTEGRITY_ERRORS as exc:
        raise InvalidArgument("Category already exists.") from exc


def delete_category(db, owner_id, category_id, attempts=DEFAULT_MAX_RETRIES):
    # Transactions keep their amounts; the foreign key nulls category_id.
    def unit():
        result = db.execute(
            "DELETE FROM categories WHERE id = ? AND user_id = ?",
            (category_id, owner_id),
        )
        if result.rowcount == 0:
            raise NotFound("Category not found.")
        return {"id": category_id}

    return run_atomic(db, unit, attempts)


def bulk_delete_categories(db, owner_id, category_ids, attempts=DEFAULT_MAX_RETRIES):
    def unit():
        ids = sorted(owned_category_ids(db, owner_id, category_ids))
        if not ids:
            return []
        placeholders = ", ".join(["?"] * len(ids))
        db.execute(
            f"DELETE FROM categories WHERE user_id = ? AND id IN ({placeholders})",
            [owner_id, *ids],
        )
        return [{"id": category_id} for category_id in ids]

    return run_atomic(db, unit, attempts)
