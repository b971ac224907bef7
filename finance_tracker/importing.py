import csv
import io
import logging
import math
import re
import unicodedata
from datetime import datetime

logger = logging.getLogger(__name__)

MILLIUNITS_PER_UNIT = 1000
HEADER_SCAN_LIMIT = 50
HEADER_ALIASES = {
    "date": ["date", "transaction date", "posting date", "date processed"],
    "amount": ["amount"],
    "debit": ["debit", "withdrawal", "withdrawals"],
    "credit": ["credit", "deposit", "deposits"],
    "payee": ["payee", "merchant", "merchant name", "description", "details", "name"],
    "notes": ["notes", "memo"],
    "category": ["category"],
}
DATE_FORMATS = [
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%d/%m/%Y",
    "%d/%m/%y",
    "%d %b %Y",
    "%d %B %Y",
]


def convert_amount_to_milliunits(value):
    return int(round(value * MILLIUNITS_PER_UNIT))


def normalize_header_name(value):
    return " ".join((value or "").strip().lower().split())


def normalize_description(value):
    normalized = unicodedata.normalize("NFKD", (value or "").strip().lower())
    no_accents = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", no_accents)


def parse_money(value):
    text = (value or "").strip()
    if not text:
        return None
    cleaned = text.replace(",", "").replace("$", "")
    if cleaned.startswith("(") and cleaned.endswith(")"):
        cleaned = f"-{cleaned[1:-1]}"
    try:
        return float(cleaned)
    except ValueError:
        return None


def parse_transaction_date(value):
    cleaned = (value or "").strip()
    if not cleaned:
        return None

    cleaned = cleaned.replace(".", "")
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt)
        except ValueError:
            continue
    return None


def decode_csv_bytes(file_bytes):
    for encoding in ["utf-8-sig", "utf-8", "cp1252", "latin-1"]:
        try:
            return file_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None


def read_csv_rows(text):
    return [row for row in csv.reader(io.StringIO(text)) if any(cell.strip() for cell in row)]


def _empty_mapping():
    return {field: "" for field in HEADER_ALIASES}


def detect_header_and_mapping(rows):
    """Find the header row and map fields to column indexes (as strings).

    Returns ``(has_header, mapping, header_row_index)``. Without a
    recognizable header, a leading ``date, payee, debit, credit`` layout is
    assumed when the first row parses that way.
    """
    mapping = _empty_mapping()
    if not rows:
        return False, mapping, 0

    for idx in range(min(len(rows), HEADER_SCAN_LIMIT)):
        lookup = {}
        for column, cell in enumerate(rows[idx]):
            name = normalize_header_name(cell)
            if name and name not in lookup:
                lookup[name] = str(column)

        for field, aliases in HEADER_ALIASES.items():
            mapping[field] = next((lookup[alias] for alias in aliases if alias in lookup), "")
        has_money = mapping["amount"] != "" or mapping["debit"] != "" or mapping["credit"] != ""
        if mapping["date"] != "" and has_money and mapping["payee"] != "":
            if mapping["amount"] != "":
                mapping["debit"] = ""
                mapping["credit"] = ""
            return True, mapping, idx

    mapping = _empty_mapping()
    first_row = rows[0]
    first_date = first_row[0] if len(first_row) > 0 else ""
    payee = first_row[1].strip() if len(first_row) > 1 else ""
    debit = first_row[2] if len(first_row) > 2 else ""
    credit = first_row[3] if len(first_row) > 3 else ""
    if (
        parse_transaction_date(first_date) is not None
        and bool(payee)
        and (parse_money(debit) is not None or parse_money(credit) is not None)
    ):
        mapping.update({"date": "0", "payee": "1", "debit": "2", "credit": "3"})
    return False, mapping, 0


def parse_csv_candidates(rows, mapping, account_id, category_lookup=None):
    """Turn CSV rows into reconciler candidates.

    ``category_lookup`` maps normalized category names to ids; unknown names
    leave the candidate uncategorized. Returns ``(candidates, skipped)``.
    """
    category_lookup = category_lookup or {}
    candidates = []
    skipped = []
    for row_index, raw_row in enumerate(rows):
        row = [cell.strip() for cell in raw_row]

        def get_value(field):
            column = mapping.get(field, "")
            if column == "":
                return ""
            try:
                idx = int(column)
            except ValueError:
                return ""
            return row[idx] if idx < len(row) else ""

        parsed_date = parse_transaction_date(get_value("date"))
        payee = get_value("payee")

        amount = None
        if mapping.get("amount", "") != "":
            amount = parse_money(get_value("amount"))
        else:
            debit_value = parse_money(get_value("debit"))
            credit_value = parse_money(get_value("credit"))
            if debit_value is not None:
                amount = -abs(debit_value)
            elif credit_value is not None:
                amount = abs(credit_value)

        if parsed_date is None:
            skipped.append({"row": row_index, "reason": "invalid date"})
            continue
        if amount is None:
            skipped.append({"row": row_index, "reason": "non-numeric amount"})
            continue
        if not payee:
            skipped.append({"row": row_index, "reason": "missing payee"})
            continue

        category_name = get_value("category")
        candidates.append(
            {
                "account_id": account_id,
                "amount": convert_amount_to_milliunits(amount),
                "payee": payee,
                "notes": get_value("notes") or None,
                "date": parsed_date.date().isoformat(),
                "category_id": category_lookup.get(normalize_description(category_name)) if category_name else None,
            }
        )
    return candidates, skipped


def aggregator_category_name(category):
    name = category.get("name")
    if isinstance(name, str) and name.strip():
        return name.strip()
    hierarchy = category.get("hierarchy")
    if not isinstance(hierarchy, list):
        return ""
    return ", ".join(part.strip() for part in hierarchy if isinstance(part, str) and part.strip())


def _external_key(value):
    return value if isinstance(value, (str, int)) and not isinstance(value, bool) else None


def aggregator_candidates(transactions, account_map, category_map):
    """Convert aggregator transactions to reconciler candidates.

    ``account_map``/``category_map`` translate the aggregator's ids to ours.
    Amounts arrive in major units. Rows that cannot be mapped are skipped
    with a logged reason.
    """
    candidates = []
    skipped = []
    for index, transaction in enumerate(transactions or []):
        if not isinstance(transaction, dict):
            logger.warning("Skipping aggregator transaction %s: not an object", index)
            skipped.append({"transaction_id": index, "reason": "not an object"})
            continue
        external_id = _external_key(transaction.get("transaction_id")) or index
        account_id = account_map.get(_external_key(transaction.get("account_id")))
        if account_id is None:
            logger.warning("No linked account for transaction %s (account_id=%r)", external_id, transaction.get("account_id"))
            skipped.append({"transaction_id": external_id, "reason": "unknown account"})
            continue

        amount = transaction.get("amount")
        if isinstance(amount, bool) or not isinstance(amount, (int, float)) or not math.isfinite(amount):
            logger.warning("Invalid amount for transaction %s: %r", external_id, amount)
            skipped.append({"transaction_id": external_id, "reason": "non-numeric amount"})
            continue

        raw_date = transaction.get("date")
        transaction_date = parse_transaction_date(raw_date[:10] if isinstance(raw_date, str) else "")
        if transaction_date is None:
            logger.warning("Invalid date for transaction %s: %r", external_id, raw_date)
            skipped.append({"transaction_id": external_id, "reason": "invalid date"})
            continue

        name = transaction.get("name") if isinstance(transaction.get("name"), str) else None
        merchant_name = transaction.get("merchant_name") if isinstance(transaction.get("merchant_name"), str) else None
        payee = (merchant_name or name or "").strip()
        candidates.append(
            {
                "account_id": account_id,
                "amount": convert_amount_to_milliunits(amount),
                "payee": payee,
                "notes": name or None,
                "date": transaction_date.date().isoformat(),
                "category_id": category_map.get(_external_key(transaction.get("category_id"))),
            }
        )
    return candidates, skipped
