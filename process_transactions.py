"""
process_transactions.py
-----------------------
Import transactions from the individual or group CSV templates, and export
stored transactions to CSV. Can be run from the command line:

    python process_transactions.py import statement.csv --user-id 1 --archive
    python process_transactions.py export --user-id 1 --out transactions.csv
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass, field
from datetime import date
from io import StringIO
from pathlib import Path
from typing import IO, Optional, Union

import pandas as pd
import structlog
from sqlalchemy.orm import Session

import ledger
import storage
from database import SessionLocal, init_db
from errors import ValidationError
from logging_setup import setup_logging

logger = structlog.get_logger()

INDIVIDUAL_COLUMNS = ["Date", "Transaction Type", "Description", "Category", "Amount", "Payment Method", "Account", "Notes"]
GROUP_COLUMNS = INDIVIDUAL_COLUMNS + ["Member Email"]
EXPORT_COLUMNS = ["Date", "Type", "Description", "Category", "Amount", "Payment Method", "Account", "Notes"]
REQUIRED_COLUMNS = ["Transaction Type", "Date", "Description", "Amount"]

# Export files use "Type"; accept it so exports can be imported again.
COLUMN_ALIASES = {"Type": "Transaction Type"}


@dataclass
class ImportResult:
    total: int = 0
    successful: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    created_categories: list[str] = field(default_factory=list)
    template: str = "individual"


def read_csv(source: Union[str, Path, IO, bytes]) -> pd.DataFrame:
    """Read a CSV file as strings with trimmed headers."""
    if isinstance(source, bytes):
        source = StringIO(source.decode("utf-8-sig"))
    try:
        df = pd.read_csv(source, dtype=str, keep_default_na=False, skipinitialspace=True)
    except (pd.errors.EmptyDataError, pd.errors.ParserError, UnicodeDecodeError) as exc:
        raise ValidationError(f"Could not read CSV: {exc}")
    df.columns = [str(c).strip().strip('"') for c in df.columns]
    df = df.rename(columns=COLUMN_ALIASES)
    return df.apply(lambda col: col.str.strip())


def detect_template(df: pd.DataFrame) -> str:
    return "group" if "Member Email" in df.columns else "individual"


def _parse_amount(raw: str) -> Optional[float]:
    try:
        return float(str(raw).replace(",", "").replace("$", "").replace("₹", ""))
    except ValueError:
        return None


def _parse_date(raw: str) -> Optional[date]:
    parsed = pd.to_datetime(raw, errors="coerce")
    return None if pd.isna(parsed) else parsed.date()


def import_transactions(
    df: pd.DataFrame, db: Session, user_id: int, group_id: Optional[int] = None
) -> ImportResult:
    """Create a transaction per valid row; invalid rows are reported, not raised."""
    template = detect_template(df)
    result = ImportResult(total=len(df), template=template)

    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValidationError(f"CSV is missing required columns: {', '.join(missing)}")

    for i, row in enumerate(df.to_dict("records")):
        row_no = i + 2  # header is row 1
        if not all(str(row.get(c, "")).strip() for c in REQUIRED_COLUMNS):
            result.errors.append(f"Row {row_no}: Missing required fields")
            continue

        member_email = row.get("Member Email", "").strip() if template == "group" else None
        if template == "group" and not member_email:
            result.errors.append(f"Row {row_no}: Missing member email")
            continue

        amount = _parse_amount(row["Amount"])
        if amount is None or amount <= 0:
            result.errors.append(f"Row {row_no}: Invalid amount {row['Amount']!r}")
            continue
        txn_date = _parse_date(row["Date"])
        if txn_date is None:
            result.errors.append(f"Row {row_no}: Invalid date {row['Date']!r}")
            continue

        try:
            transaction_type = ledger.normalize_transaction_type(row["Transaction Type"])
            category, created = ledger.find_or_create_category(db, user_id, row.get("Category") or "Other")
            if created:
                result.created_categories.append(category.name)

            description = row["Description"]
            if member_email:
                description = f"{description} (by {member_email})"

            ledger.add_transaction(
                db,
                user_id,
                transaction_type=transaction_type,
                amount=amount,
                description=description,
                transaction_date=txn_date,
                category_id=category.id,
                payment_method=row.get("Payment Method") or "cash",
                account_name=row.get("Account", ""),
                notes=row.get("Notes", ""),
                source="csv_import",
                group_id=group_id,
                member_email=member_email,
            )
            result.successful += 1
        except ValidationError as exc:
            result.errors.append(f"Row {row_no}: {exc.detail}")

    result.failed = result.total - result.successful
    logger.info(
        "csv_import_finished",
        template=template,
        total=result.total,
        successful=result.successful,
        failed=result.failed,
        created_categories=len(result.created_categories),
    )
    return result


def export_transactions(db: Session, user_id: int, group_id: Optional[int] = None, **filters) -> pd.DataFrame:
    txns = ledger.list_transactions(db, user_id, group_id=group_id, **filters)
    rows = [
        [
            t.transaction_date.isoformat() if t.transaction_date else "",
            t.transaction_type,
            t.description,
            t.category.name if t.category else "Uncategorized",
            t.amount,
            t.payment_method or "",
            t.account_name or "",
            t.notes or "",
        ]
        for t in txns
    ]
    return pd.DataFrame(rows, columns=EXPORT_COLUMNS)


def export_csv(db: Session, user_id: int, group_id: Optional[int] = None, **filters) -> str:
    return export_transactions(db, user_id, group_id=group_id, **filters).to_csv(index=False)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Import or export transactions as CSV.")
    sub = parser.add_subparsers(dest="command", required=True)

    imp = sub.add_parser("import", help="Import a CSV file")
    imp.add_argument("file", type=Path)
    imp.add_argument("--user-id", type=int, required=True)
    imp.add_argument("--group-id", type=int)
    imp.add_argument("--archive", action="store_true", help="Keep a copy of the file in the archive")

    exp = sub.add_parser("export", help="Export transactions to CSV")
    exp.add_argument("--user-id", type=int, required=True)
    exp.add_argument("--group-id", type=int)
    exp.add_argument("--out", type=Path, help="Output file (default: stdout)")

    args = parser.parse_args(argv)
    setup_logging()
    init_db()
    db = SessionLocal()
    try:
        if args.command == "import":
            df = read_csv(args.file)
            result = import_transactions(df, db, args.user_id, args.group_id)
            if args.archive:
                storage.save_file(args.file.name, args.file.read_bytes(), folder="imports")
            print(f"Imported {result.successful} of {result.total} rows.")
            for error in result.errors:
                print(f"  {error}")
            return 0 if not result.failed else 1

        content = export_csv(db, args.user_id, args.group_id)
        if args.out:
            args.out.write_text(content)
            print(f"Wrote {args.out}")
        else:
            sys.stdout.write(content)
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
