from datetime import date

import pytest

import ledger
from database import Category, DiscoveredAccount
from errors import NotFoundError, ValidationError


def _txn(session, user, **overrides):
    fields = dict(
        transaction_type="debit",
        amount=100.0,
        description="Groceries",
        transaction_date=date(2025, 8, 1),
        account_name="HDFC ****7312",
    )
    fields.update(overrides)
    return ledger.add_transaction(session, user.id, **fields)


@pytest.fixture()
def savings(session, user):
    return ledger.create_account(
        session, user.id, "HDFC Savings", "savings", bank_name="HDFC", account_number_masked="****7312", balance=1000.0
    )


@pytest.fixture()
def card(session, user):
    return ledger.create_account(
        session, user.id, "Axis Card", "credit_card", bank_name="AXIS", account_number_masked="XX3622",
        balance=0.0, credit_limit=50000.0,
    )


def test_split_and_format_account_name():
    assert ledger.split_account_name("HDFC ****7312") == ("HDFC", "7312")
    assert ledger.split_account_name("Cash Wallet") == ("Cash Wallet", None)
    assert ledger.split_account_name("") == (None, None)
    assert ledger.format_account_name("HDFC", "7312") == "HDFC ****7312"
    assert ledger.format_account_name(None, None) == "Auto-detected Account"


def test_normalize_transaction_type():
    assert ledger.normalize_transaction_type("Income") == "credit"
    assert ledger.normalize_transaction_type("expense") == "debit"
    with pytest.raises(ValidationError):
        ledger.normalize_transaction_type("transfer")


class TestBalanceEffects:
    """Every mutation moves the matching account balance."""

    def test_debit_reduces_asset(self, session, user, savings):
        _txn(session, user)
        session.refresh(savings)
        assert savings.balance == 900.0

    def test_credit_increases_asset(self, session, user, savings):
        _txn(session, user, transaction_type="credit", amount=250.0)
        session.refresh(savings)
        assert savings.balance == 1250.0

    def test_credit_card_balance_is_debt(self, session, user, card):
        _txn(session, user, account_name="AXIS ****3622", amount=400.0)
        _txn(session, user, account_name="AXIS ****3622", transaction_type="credit", amount=150.0)
        session.refresh(card)
        assert card.balance == 250.0

    def test_free_text_account_name_matches_by_name(self, session, user):
        wallet = ledger.create_account(session, user.id, "Cash Wallet", "wallet", balance=50.0)
        _txn(session, user, account_name="Cash Wallet", amount=20.0)
        session.refresh(wallet)
        assert wallet.balance == 30.0

    def test_update_amount_applies_difference(self, session, user, savings):
        txn = _txn(session, user)
        ledger.update_transaction(session, txn.id, amount=150.0)
        session.refresh(savings)
        assert savings.balance == 850.0

    def test_update_type_flips_effect(self, session, user, savings):
        txn = _txn(session, user)
        ledger.update_transaction(session, txn.id, transaction_type="credit")
        session.refresh(savings)
        assert savings.balance == 1100.0

    def test_update_account_moves_effect(self, session, user, savings):
        other = ledger.create_account(
            session, user.id, "Axis Savings", "savings", bank_name="AXIS", account_number_masked="****5555", balance=500.0
        )
        txn = _txn(session, user)
        ledger.update_transaction(session, txn.id, account_name="AXIS ****5555")
        session.refresh(savings)
        session.refresh(other)
        assert savings.balance == 1000.0
        assert other.balance == 400.0

    def test_delete_reverses_effect(self, session, user, savings):
        txn = _txn(session, user)
        ledger.delete_transaction(session, txn.id)
        session.refresh(savings)
        assert savings.balance == 1000.0
        with pytest.raises(NotFoundError):
            ledger.get_transaction(session, txn.id)

    def test_extreme_negative_balance_skipped(self, session, user, savings):
        _txn(session, user, amount=2_000_000.0)
        session.refresh(savings)
        assert savings.balance == 1000.0

    def test_unknown_account_creates_pending_discovery(self, session, user):
        _txn(session, user, account_name="SBI ****4242", amount=75.0)
        discovered = session.query(DiscoveredAccount).one()
        assert discovered.bank_name == "SBI"
        assert discovered.account_number_partial == "4242"
        assert discovered.current_balance == -75.0
        assert discovered.status == "pending"
        assert discovered.discovery_method == "transaction_processing"

    def test_approved_discovered_account_is_updated(self, session, user):
        session.add(DiscoveredAccount(
            user_id=user.id, bank_name="SBI", account_number_partial="4242", account_type="savings",
            current_balance=500.0, status="approved",
        ))
        session.commit()
        _txn(session, user, account_name="SBI ****4242", amount=75.0)
        assert session.query(DiscoveredAccount).one().current_balance == 425.0

    def test_skip_balance_update(self, session, user, savings):
        _txn(session, user, skip_balance_update=True)
        session.refresh(savings)
        assert savings.balance == 1000.0


class TestTransactions:
    def test_rejects_bad_input(self, session, user):
        with pytest.raises(ValidationError):
            _txn(session, user, amount=0)
        with pytest.raises(ValidationError):
            _txn(session, user, description="  ")
        with pytest.raises(ValidationError):
            _txn(session, user, transaction_type="swap")

    def test_category_by_name(self, session, user):
        txn = _txn(session, user, category_name="food & dining")
        assert txn.category.name == "Food & Dining"

    def test_list_filters(self, session, user):
        _txn(session, user, description="Swiggy order", transaction_date=date(2025, 8, 2))
        _txn(session, user, description="Salary", transaction_type="credit", transaction_date=date(2025, 7, 31))

        assert [t.description for t in ledger.list_transactions(session, user.id)] == ["Swiggy order", "Salary"]
        assert len(ledger.list_transactions(session, user.id, search="swiggy")) == 1
        assert len(ledger.list_transactions(session, user.id, transaction_type="income")) == 1
        assert len(ledger.list_transactions(session, user.id, start=date(2025, 8, 1))) == 1

    def test_batch_skips_invalid_rows(self, session, user):
        rows = [
            dict(transaction_type="debit", amount=10.0, description="Tea", transaction_date=date(2025, 8, 1)),
            dict(transaction_type="debit", amount=-5.0, description="Bad", transaction_date=date(2025, 8, 1)),
        ]
        created = ledger.add_transactions_batch(session, user.id, rows)
        assert [t.description for t in created] == ["Tea"]

    def test_unknown_update_field(self, session, user):
        txn = _txn(session, user)
        with pytest.raises(ValidationError):
            ledger.update_transaction(session, txn.id, source="email")


class TestCategories:
    def test_defaults_seeded_once(self, session, user):
        first = ledger.get_categories(session, user.id)
        second = ledger.get_categories(session, user.id)
        assert len(first) == len(ledger.DEFAULT_CATEGORIES) == len(second)
        income = next(c for c in first if c.name == "Income")
        assert income.color == "#059669"
        assert income.category_type == "income"

    def test_find_or_create_is_case_insensitive(self, session, user):
        created, was_created = ledger.find_or_create_category(session, user.id, "Pets")
        again, was_created_again = ledger.find_or_create_category(session, user.id, "pets")
        assert was_created and not was_created_again
        assert created.id == again.id
        assert created.color in ledger.CATEGORY_PALETTE
        assert session.query(Category).filter(Category.name == "Pets").count() == 1


class TestAccountsBudgetsGroups:
    def test_account_crud(self, session, user, savings):
        assert ledger.get_account(session, savings.id, user.id).name == "HDFC Savings"
        ledger.update_account(session, savings.id, name="Salary Account")
        assert ledger.get_account(session, savings.id).name == "Salary Account"

        ledger.deactivate_account(session, savings.id)
        assert ledger.list_accounts(session, user.id) == []
        assert len(ledger.list_accounts(session, user.id, include_inactive=True)) == 1

        ledger.delete_account(session, savings.id)
        with pytest.raises(NotFoundError):
            ledger.get_account(session, savings.id)

    def test_account_validation(self, session, user):
        with pytest.raises(ValidationError):
            ledger.create_account(session, user.id, "Mystery", "crypto")
        with pytest.raises(ValidationError):
            ledger.create_account(session, user.id, " ", "savings")

    def test_budgets(self, session, user):
        category = ledger.get_categories(session, user.id)[0]
        budget = ledger.create_budget(session, user.id, category.id, 5000.0)
        assert ledger.list_budgets(session, user.id) == [budget]
        ledger.delete_budget(session, budget.id, user.id)
        assert ledger.list_budgets(session, user.id) == []
        with pytest.raises(ValidationError):
            ledger.create_budget(session, user.id, category.id, 0)

    def test_group_code(self, session, user):
        group = ledger.create_group(session, user.id, "Flat 4B")
        assert len(group.group_code) == 6
        assert group.group_code.isalnum() and group.group_code.upper() == group.group_code
        assert ledger.find_group_by_code(session, group.group_code.lower()).id == group.id
