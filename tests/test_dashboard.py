from datetime import date

import pandas as pd
import pytest

import ledger
from dashboard import (
    _prep,
    account_spending,
    cat_spend,
    category_breakdown,
    compute_budget_status,
    compute_kpis,
    credit_utilization,
    dashboard_summary,
    income_vs_expense_monthly,
    monthly_income_expense,
    net_worth,
    summarize_budget_watch,
    transactions_to_df,
)
from database import Account


@pytest.fixture()
def df():
    raw = pd.DataFrame(
        [
            {"Date": "2025-07-31", "Type": "credit", "Description": "Salary", "Category": "Income", "Amount": 50000.0, "Account": "HDFC ****7312"},
            {"Date": "2025-08-01", "Type": "credit", "Description": "Salary", "Category": "Income", "Amount": 60000.0, "Account": "HDFC ****7312"},
            {"Date": "2025-08-02", "Type": "debit", "Description": "Swiggy", "Category": "Food & Dining", "Amount": -4500.0, "Account": "AXIS ****3622"},
            {"Date": "2025-08-03", "Type": "debit", "Description": "Rent", "Category": "Bills & Utilities", "Amount": -20000.0, "Account": "HDFC ****7312"},
            {"Date": "2025-08-04", "Type": "debit", "Description": "Uber", "Category": "", "Amount": -500.0, "Account": "AXIS ****3622"},
        ]
    )
    return _prep(raw)


def test_kpis_use_latest_month(df):
    kpis = compute_kpis(df)
    assert kpis["month"] == "2025-08"
    assert kpis["income"] == 60000.0
    assert kpis["spend"] == 25000.0
    assert kpis["net"] == 35000.0
    assert kpis["savings_rate"] == pytest.approx(58.333, rel=1e-3)


def test_kpis_empty():
    assert compute_kpis(pd.DataFrame())["income"] == 0.0


def test_category_breakdown(df):
    breakdown = category_breakdown(df)
    assert breakdown.iloc[0].to_dict() == {"Category": "Bills & Utilities", "Amount": 20000.0}
    assert "Uncategorized" in set(breakdown["Category"])
    assert "Income" not in set(breakdown["Category"])


def test_monthly_income_expense(df):
    monthly = monthly_income_expense(df)
    assert monthly["Month"].tolist() == ["2025-07", "2025-08"]
    assert monthly["Expense"].tolist() == [0.0, 25000.0]


def test_account_spending(df):
    assert account_spending(df, "AXIS ****3622") == {"income": 0.0, "expenses": 5000.0, "net_flow": -5000.0}


def test_budget_status_and_alerts(df):
    status = compute_budget_status(df, [
        {"category": "Food & Dining", "limit": 5000.0},
        {"category": "Bills & Utilities", "limit": 15000.0},
        {"category": "Entertainment", "limit": 2000.0},
    ])
    food, bills, fun = status
    assert food["pct"] == 0.9 and not food["is_over"]
    assert bills["is_over"] and bills["remaining"] == -5000.0
    assert fun["spent"] == 0.0

    alerts = summarize_budget_watch(status)
    assert len(alerts) == 2
    assert alerts[0].startswith("Food & Dining is at 90%")
    assert alerts[1].startswith("Bills & Utilities is over budget")


def _account(**kw):
    return Account(is_active=True, credit_limit=None, **kw)


def test_net_worth_treats_cards_and_loans_as_liabilities():
    accounts = [
        _account(name="Savings", account_type="savings", balance=100000.0),
        _account(name="Cash", account_type="cash", balance=2000.0),
        _account(name="Card", account_type="credit_card", balance=15000.0),
        _account(name="Car loan", account_type="loan", balance=50000.0),
    ]
    assert net_worth(accounts) == {"assets": 102000.0, "liabilities": 65000.0, "net_worth": 37000.0}


def test_credit_utilization():
    card = Account(name="Card", account_type="credit_card", balance=12500.0, credit_limit=50000.0, is_active=True)
    util = credit_utilization([card, _account(name="Savings", account_type="savings", balance=10.0)])
    assert util["cards"][0]["pct"] == 25.0
    assert util["overall_pct"] == 25.0


def test_figures_build(df):
    assert len(income_vs_expense_monthly(df).data) == 2
    assert cat_spend(df).data[0].type == "pie"


def test_dashboard_summary(session, user):
    ledger.create_account(session, user.id, "HDFC Savings", "savings", bank_name="HDFC",
                          account_number_masked="****7312", balance=10000.0)
    ledger.add_transaction(session, user.id, transaction_type="debit", amount=400.0, description="Swiggy",
                           transaction_date=date(2025, 8, 2), category_name="Food & Dining",
                           account_name="HDFC ****7312")
    food = ledger.find_category(session, user.id, "Food & Dining")
    ledger.create_budget(session, user.id, food.id, 500.0)

    summary = dashboard_summary(session, user.id)
    assert summary["kpis"]["spend"] == 400.0
    assert summary["net_worth"]["net_worth"] == 9600.0
    assert summary["budget_status"][0]["pct"] == 0.8
    assert len(summary["budget_alerts"]) == 1
    assert transactions_to_df(ledger.list_transactions(session, user.id))["Amount"].tolist() == [-400.0]
