# dashboard.py: summary numbers and plotly figures for the dashboard

from __future__ import annotations

from typing import Iterable, Optional

import pandas as pd
import plotly.express as px
import plotly.graph_objects as go
from sqlalchemy.orm import Session

import ledger
from database import LIABILITY_ACCOUNT_TYPES, Account, Transaction

COLUMNS = ["Date", "Type", "Description", "Category", "Amount", "Account"]
NON_SPEND_CATEGORIES = ["Transfer", "Income"]


def transactions_to_df(txns: Iterable[Transaction]) -> pd.DataFrame:
    """
    One row per transaction; Amount is signed (credits positive, debits negative).
    """
    rows = [
        {
            "Date": t.transaction_date,
            "Type": t.transaction_type,
            "Description": t.description,
            "Category": t.category.name if t.category else "Uncategorized",
            "Amount": t.amount if t.transaction_type == "credit" else -t.amount,
            "Account": t.account_name or "",
        }
        for t in txns
    ]
    return pd.DataFrame(rows, columns=COLUMNS)


def _prep(df):
    """
    Prepares the dataframe for dashboarding.
    """
    if df.empty:
        return df

    df = df.copy()
    df['Date'] = pd.to_datetime(df['Date'])
    df['Month'] = df['Date'].dt.to_period('M').astype(str)
    df['Amount'] = pd.to_numeric(df['Amount'], errors='coerce').fillna(0)

    df['Income'] = df['Amount'].where(df['Amount'] > 0, 0)
    df['AbsExpense'] = df['Amount'].where(df['Amount'] < 0, 0).abs()
    df["Category"] = df["Category"].fillna("Uncategorized").replace("", "Uncategorized")
    return df


def compute_kpis(df: pd.DataFrame) -> dict:
    """Income, spend, net and savings rate for the latest month that has data."""
    if df.empty:
        return {"month": None, "income": 0.0, "spend": 0.0, "net": 0.0, "savings_rate": 0.0}

    latest_month = df["Month"].max()
    df_curr = df[df["Month"] == latest_month]

    income = float(df_curr["Income"].sum())
    spend = float(df_curr["AbsExpense"].sum())
    net = income - spend
    savings_rate = (net / income * 100) if income > 0 else 0.0
    return {"month": latest_month, "income": income, "spend": spend, "net": net, "savings_rate": savings_rate}


def category_breakdown(df: pd.DataFrame) -> pd.DataFrame:
    if df.empty:
        return pd.DataFrame(columns=["Category", "Amount"])
    spend_df = df[(df["Amount"] < 0) & (~df["Category"].isin(NON_SPEND_CATEGORIES))]
    return (
        spend_df.groupby("Category")["AbsExpense"].sum()
        .rename("Amount")
        .sort_values(ascending=False)
        .reset_index()
    )


def monthly_income_expense(df: pd.DataFrame) -> pd.DataFrame:
    if df.empty:
        return pd.DataFrame(columns=["Month", "Income", "Expense"])
    return (
        df.groupby("Month")
        .agg(Income=("Income", "sum"), Expense=("AbsExpense", "sum"))
        .reset_index()
        .sort_values("Month")
    )


def cumulative_cash_flow(df: pd.DataFrame) -> pd.DataFrame:
    if df.empty:
        return pd.DataFrame(columns=["Date", "Cash Flow"])
    daily = df.groupby("Date")["Amount"].sum().sort_index().cumsum().reset_index()
    return daily.rename(columns={"Amount": "Cash Flow"})


# --- Accounts ---

def is_liability(account: Account) -> bool:
    return account.account_type in LIABILITY_ACCOUNT_TYPES


def net_worth(accounts: Iterable[Account]) -> dict:
    """Assets minus liabilities over active accounts."""
    assets = liabilities = 0.0
    for account in accounts:
        if not account.is_active:
            continue
        if is_liability(account):
            liabilities += account.balance or 0.0
        else:
            assets += account.balance or 0.0
    return {"assets": assets, "liabilities": liabilities, "net_worth": assets - liabilities}


def credit_utilization(accounts: Iterable[Account]) -> dict:
    """Per-card and overall used / limit as a percentage."""
    cards = []
    used_total = limit_total = 0.0
    for account in accounts:
        if account.account_type != "credit_card" or not account.credit_limit:
            continue
        used = max(account.balance or 0.0, 0.0)
        cards.append({"account": account.name, "used": used, "limit": account.credit_limit,
                      "pct": used / account.credit_limit * 100})
        used_total += used
        limit_total += account.credit_limit
    overall = used_total / limit_total * 100 if limit_total else 0.0
    return {"cards": cards, "overall_pct": overall}


def account_spending(df: pd.DataFrame, account_name: str) -> dict:
    if df.empty:
        return {"income": 0.0, "expenses": 0.0, "net_flow": 0.0}
    rows = df[df["Account"] == account_name]
    income = float(rows["Income"].sum())
    expenses = float(rows["AbsExpense"].sum())
    return {"income": income, "expenses": expenses, "net_flow": income - expenses}


# --- Budgets ---

def compute_budget_status(df: pd.DataFrame, budgets: list[dict], month: Optional[str] = None):
    """budgets: [{"category": name, "limit": amount}]; month defaults to the latest with data."""
    if not budgets:
        return []

    spent_by_cat = pd.Series(dtype=float)
    if not df.empty:
        month = month or df["Month"].max()
        month_df = df[(df["Month"] == month) & (df["Amount"] < 0)]
        spent_by_cat = month_df.groupby("Category")["AbsExpense"].sum()

    status = []
    for budget in budgets:
        limit = float(budget["limit"] or 0)
        spent = float(spent_by_cat.get(budget["category"], 0))
        remaining = limit - spent
        status.append({
            "category": budget["category"],
            "limit": limit,
            "spent": spent,
            "remaining": remaining,
            "pct": spent / limit if limit > 0 else 0,
            "is_over": remaining < 0,
        })
    return status


def summarize_budget_watch(budget_status):
    """Return human-readable budget alerts for overspend and at-risk categories."""

    alerts = []
    for entry in budget_status or []:
        if entry["limit"] <= 0:
            continue

        pct = entry["pct"]
        if entry["is_over"]:
            alerts.append(
                f"{entry['category']} is over budget by ₹{abs(entry['remaining']):,.0f} "
                f"(spent ₹{entry['spent']:,.0f} of ₹{entry['limit']:,.0f})."
            )
        elif pct >= 0.8:
            alerts.append(f"{entry['category']} is at {pct*100:.0f}% of its ₹{entry['limit']:,.0f} limit.")
    return alerts


def budget_rows(db: Session, user_id: int) -> list[dict]:
    return [
        {"category": b.category.name if b.category else "Uncategorized", "limit": b.amount}
        for b in ledger.list_budgets(db, user_id)
    ]


def dashboard_summary(db: Session, user_id: int, group_id: Optional[int] = None) -> dict:
    df = _prep(transactions_to_df(ledger.list_transactions(db, user_id, group_id=group_id)))
    accounts = ledger.list_accounts(db, user_id)
    budget_status = compute_budget_status(df, budget_rows(db, user_id))

    return {
        "kpis": compute_kpis(df),
        "categories": category_breakdown(df).to_dict("records"),
        "monthly": monthly_income_expense(df).to_dict("records"),
        "net_worth": net_worth(accounts),
        "credit_utilization": credit_utilization(accounts),
        "accounts": [
            {"id": a.id, "name": a.name, "account_type": a.account_type, "balance": a.balance,
             **account_spending(df, a.name)}
            for a in accounts
        ],
        "budget_status": budget_status,
        "budget_alerts": summarize_budget_watch(budget_status),
    }


# --- Figures ---

def income_vs_expense_monthly(df):
    """
    Bar chart of Income vs Expenses per month.
    """
    monthly = monthly_income_expense(df)

    fig = go.Figure()
    fig.add_trace(go.Bar(x=monthly['Month'], y=monthly['Income'], name='Income', marker_color='#059669'))
    fig.add_trace(go.Bar(x=monthly['Month'], y=monthly['Expense'], name='Expenses', marker_color='#EF4444'))

    fig.update_layout(barmode='group', title="Income vs Expenses", height=400)
    return fig


def cat_spend(df):
    """
    Donut chart of spending by category.
    """
    by_cat = category_breakdown(df)
    fig = px.pie(by_cat, values='Amount', names='Category', hole=0.4, title="Spending by Category")
    fig.update_traces(textposition='inside', textinfo='percent+label')
    return fig


def cash_flow_trend(df):
    fig = px.area(cumulative_cash_flow(df), x='Date', y='Cash Flow', title="Cumulative Cash Flow")
    fig.update_layout(height=350)
    return fig
