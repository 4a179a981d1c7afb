from datetime import date
from io import StringIO

import pandas as pd
import pytest

import ledger
from database import Category, Transaction, User
from errors import ValidationError
from process_transactions import (
    EXPORT_COLUMNS,
    detect_template,
    export_csv,
    import_transactions,
    main,
    read_csv,
)

INDIVIDUAL_CSV = """Date,Transaction Type,Description,Category,Amount,Payment Method,Account,Notes
2025-08-01,expense,Groceries,Food & Dining,850.50,Card,HDFC ****7312,weekly
2025-08-02,income,Salary,Income,"75,000",bank_transfer,HDFC ****7312,
2025-08-03,expense,,Other,10,cash,,
2025-08-04,expense,Parking,Transportation,-20,cash,,
2025-08-05,transfer,Moved money,Other,100,cash,,
not-a-date,expense,Tea,Snacks,15,cash,,
"""

GROUP_CSV = """Date,Transaction Type,Description,Category,Amount,Payment Method,Account,Notes,Member Email
2025-08-01,expense,Dinner,Food & Dining,1200,card,,,alice@example.com
2025-08-02,expense,Cab,Transportation,300,upi,,,
"""


def _df(text):
    return read_csv(text.encode("utf-8"))


def test_detect_template():
    assert detect_template(_df(INDIVIDUAL_CSV)) == "individual"
    assert detect_template(_df(GROUP_CSV)) == "group"


class TestImport:
    """Rows are validated one by one; bad rows are reported with their file row number."""

    def test_individual_import(self, session, user):
        result = import_transactions(_df(INDIVIDUAL_CSV), session, user.id)

        assert result.total == 6
        assert result.successful == 2
        assert result.failed == 4
        assert result.errors[0] == "Row 4: Missing required fields"
        assert result.errors[1].startswith("Row 5: Invalid amount")
        assert result.errors[2] == "Row 6: Unknown transaction type: 'transfer'"
        assert result.errors[3].startswith("Row 7: Invalid date")

        txns = {t.description: t for t in session.query(Transaction).all()}
        assert txns["Groceries"].transaction_type == "debit"
        assert txns["Groceries"].payment_method == "card"
        assert txns["Groceries"].category.name == "Food & Dining"
        assert txns["Salary"].transaction_type == "credit"
        assert txns["Salary"].amount == 75000.0
        assert all(t.source == "csv_import" for t in txns.values())

    def test_new_category_created_once(self, session, user):
        csv = INDIVIDUAL_CSV.replace("Food & Dining", "Household")
        first = import_transactions(_df(csv), session, user.id)
        second = import_transactions(_df(csv), session, user.id)

        assert first.created_categories == ["Household"]
        assert second.created_categories == []
        assert session.query(Category).filter(Category.name == "Household").count() == 1

    def test_group_import(self, session, user):
        group = ledger.create_group(session, user.id, "Flatmates")
        result = import_transactions(_df(GROUP_CSV), session, user.id, group_id=group.id)

        assert result.template == "group"
        assert result.successful == 1
        assert result.errors == ["Row 3: Missing member email"]
        txn = session.query(Transaction).one()
        assert txn.description == "Dinner (by alice@example.com)"
        assert txn.member_email == "alice@example.com"
        assert txn.group_id == group.id

    def test_missing_required_column(self, session, user):
        with pytest.raises(ValidationError):
            import_transactions(_df("Date,Description\n2025-08-01,Tea\n"), session, user.id)

    def test_unreadable_file(self):
        with pytest.raises(ValidationError):
            read_csv(b"")


def test_export_then_import_round_trip(session, user):
    ledger.add_transaction(session, user.id, transaction_type="debit", amount=450.0, description="Swiggy",
                           transaction_date=date(2025, 8, 12), category_name="Food & Dining",
                           payment_method="upi", account_name="AXIS ****3622")
    ledger.add_transaction(session, user.id, transaction_type="credit", amount=75000.0, description="Salary",
                           transaction_date=date(2025, 7, 31), category_name="Income")

    content = export_csv(session, user.id)
    exported = pd.read_csv(StringIO(content))
    assert list(exported.columns) == EXPORT_COLUMNS

    second_user = User(username="ravi", email="ravi@example.com", password_hash="x")
    session.add(second_user)
    session.commit()

    result = import_transactions(read_csv(content.encode("utf-8")), session, second_user.id)
    assert result.successful == 2

    def snapshot(uid):
        return sorted((t.description, t.amount, t.transaction_date, t.transaction_type)
                      for t in ledger.list_transactions(session, uid))

    assert snapshot(second_user.id) == snapshot(user.id)


def test_cli_import_and_export(tmp_path, monkeypatch, session, user):
    import process_transactions

    monkeypatch.setattr(process_transactions, "SessionLocal", lambda: session)
    monkeypatch.setattr(process_transactions, "init_db", lambda: None)
    monkeypatch.setattr(session, "close", lambda: None)
    monkeypatch.setattr(process_transactions.storage, "ARCHIVE_DIR", str(tmp_path / "archive"))
    monkeypatch.setattr(process_transactions.storage, "S3_BUCKET", None)

    source = tmp_path / "august.csv"
    source.write_text(INDIVIDUAL_CSV.split("\n2025-08-03")[0] + "\n")
    assert main(["import", str(source), "--user-id", str(user.id), "--archive"]) == 0
    assert (tmp_path / "archive" / "imports" / "august.csv").exists()

    out = tmp_path / "out.csv"
    assert main(["export", "--user-id", str(user.id), "--out", str(out)]) == 0
    assert len(pd.read_csv(out)) == 2
