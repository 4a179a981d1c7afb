import streamlit as st
import pandas as pd
from pathlib import Path
import sys
import bcrypt
import time
from datetime import date

import structlog

# Add current directory to path
sys.path.append(str(Path(__file__).parent))

import ledger
import storage
from database import SessionLocal, User, EmailIntegration, ACCOUNT_TYPES, ASSET_ACCOUNT_TYPES, init_db
from dashboard import (
    _prep,
    budget_rows,
    cash_flow_trend,
    cat_spend,
    compute_budget_status,
    compute_kpis,
    credit_utilization,
    income_vs_expense_monthly,
    net_worth,
    summarize_budget_watch,
    transactions_to_df,
)
from email_parser import EmailSyncService
from errors import AppError
from loans import INTEREST_TYPES, amortization_schedule, configure_loan, pay_emi, payoff_chart
from logging_setup import setup_logging
from process_transactions import INDIVIDUAL_COLUMNS, export_csv, import_transactions, read_csv

# --- Configuration ---
st.set_page_config(page_title="Expense Tracker", layout="wide", page_icon="💰")
setup_logging()
logger = structlog.get_logger()

# --- Database Session ---
init_db()

if "db" not in st.session_state:
    st.session_state.db = SessionLocal()

def get_db():
    return st.session_state.db

# --- Authentication ---
def check_login():
    if "authenticated" not in st.session_state:
        st.session_state["authenticated"] = False
        st.session_state["user_id"] = None
        st.session_state["failed_attempts"] = []
        st.session_state["lock_until"] = None

    if st.session_state.get("authenticated", False):
        return True

    st.title("💰 Expense Tracker")
    username = st.text_input("Username")
    password = st.text_input("Password", type="password")

    now = time.time()
    lock_until = st.session_state.get("lock_until")
    if lock_until and now < lock_until:
        st.error(f"Too many failed attempts. Please wait {int(lock_until - now)} seconds before trying again.")
    elif st.button("Sign In", type="primary"):
        # Keep the last 5 minutes of failures
        st.session_state["failed_attempts"] = [t for t in st.session_state["failed_attempts"] if now - t < 300]

        user = get_db().query(User).filter(User.username == username).first()
        if user and bcrypt.checkpw(password.encode('utf-8'), user.password_hash.encode('utf-8')):
            st.session_state["authenticated"] = True
            st.session_state["user_id"] = user.id
            st.session_state["failed_attempts"] = []
            st.session_state["lock_until"] = None
            st.rerun()
        else:
            st.session_state["failed_attempts"].append(now)
            st.error("❌ Invalid credentials")
            logger.warning("login_failed", username=username)
            if len(st.session_state["failed_attempts"]) >= 5:
                st.session_state["lock_until"] = now + 60
    return False

if not check_login():
    st.stop()

user_id = st.session_state["user_id"]
db = get_db()

# Sidebar
with st.sidebar:
    st.header("Filters")
    search = st.text_input("Search descriptions")
    if st.button("🚪 Logout", use_container_width=True):
        st.session_state["authenticated"] = False
        st.session_state["user_id"] = None
        st.rerun()

# Load Data
txns = ledger.list_transactions(db, user_id, search=search or None)
df_prep = _prep(transactions_to_df(txns))
accounts = ledger.list_accounts(db, user_id)
categories = ledger.get_categories(db, user_id)
category_by_name = {c.name: c for c in categories}

st.title("💰 Expense Tracker")

tab1, tab2, tab3, tab4, tab5 = st.tabs(["📊 Dashboard", "💳 Transactions", "🏦 Accounts", "📁 Import / Export", "📧 Email Review"])

with tab1:
    kpis = compute_kpis(df_prep)
    worth = net_worth(accounts)
    col1, col2, col3, col4 = st.columns(4)
    col1.metric(f"💰 Income ({kpis['month'] or '-'})", f"₹{kpis['income']:,.0f}")
    col2.metric("💸 Spent", f"₹{kpis['spend']:,.0f}")
    col3.metric("📉 Savings Rate", f"{kpis['savings_rate']:.1f}%")
    col4.metric("🏦 Net Worth", f"₹{worth['net_worth']:,.0f}")

    budget_status = compute_budget_status(df_prep, budget_rows(db, user_id))
    for alert in summarize_budget_watch(budget_status):
        st.warning(alert)

    if df_prep.empty:
        st.info("No transactions yet. Add one or import a CSV to get started.")
    else:
        left, right = st.columns(2)
        left.plotly_chart(income_vs_expense_monthly(df_prep), use_container_width=True)
        right.plotly_chart(cat_spend(df_prep), use_container_width=True)
        st.plotly_chart(cash_flow_trend(df_prep), use_container_width=True)

with tab2:
    st.header("💳 Transactions")

    with st.expander("➕ Add Transaction"):
        with st.form("add_transaction"):
            col1, col2 = st.columns(2)
            kind = col1.selectbox("Type", ["debit", "credit"])
            amount = col2.number_input("Amount (₹)", min_value=0.0, step=10.0)
            description = st.text_input("Description")
            col3, col4 = st.columns(2)
            txn_date = col3.date_input("Date", value=date.today())
            category_name = col4.selectbox("Category", list(category_by_name))
            account_name = st.selectbox("Account", [""] + [a.name for a in accounts])
            notes = st.text_input("Notes")
            if st.form_submit_button("Save"):
                try:
                    ledger.add_transaction(
                        db, user_id, transaction_type=kind, amount=amount, description=description,
                        transaction_date=txn_date, category_id=category_by_name[category_name].id,
                        account_name=account_name, notes=notes,
                    )
                    st.success("Transaction added.")
                    st.rerun()
                except AppError as e:
                    st.error(e.detail)

    if txns:
        table = pd.DataFrame([{
            "ID": t.id,
            "Date": t.transaction_date,
            "Type": t.transaction_type,
            "Description": t.description,
            "Category": t.category.name if t.category else "Uncategorized",
            "Amount": t.amount,
            "Account": t.account_name,
            "Source": t.source,
        } for t in txns])
        st.dataframe(table, use_container_width=True, hide_index=True)

        st.subheader("Edit or delete")
        selected = st.selectbox("Transaction", [t.id for t in txns],
                                format_func=lambda i: next(f"#{t.id} {t.description}" for t in txns if t.id == i))
        current = next(t for t in txns if t.id == selected)
        with st.form("edit_transaction"):
            new_amount = st.number_input("Amount (₹)", min_value=0.0, value=float(current.amount))
            new_description = st.text_input("Description", value=current.description)
            new_account = st.text_input("Account", value=current.account_name)
            col_save, col_delete = st.columns(2)
            save = col_save.form_submit_button("Update")
            delete = col_delete.form_submit_button("Delete")
        try:
            if save:
                ledger.update_transaction(db, selected, user_id, amount=new_amount,
                                          description=new_description, account_name=new_account)
                st.rerun()
            if delete:
                ledger.delete_transaction(db, selected, user_id)
                st.rerun()
        except AppError as e:
            st.error(e.detail)

with tab3:
    st.header("🏦 Accounts")
    worth = net_worth(accounts)
    col1, col2, col3 = st.columns(3)
    col1.metric("Total Assets", f"₹{worth['assets']:,.2f}")
    col2.metric("Total Liabilities", f"₹{worth['liabilities']:,.2f}")
    col3.metric("Net Worth", f"₹{worth['net_worth']:,.2f}")

    utilization = credit_utilization(accounts)
    if utilization["cards"]:
        st.caption(f"Credit utilisation: {utilization['overall_pct']:.1f}%")

    if accounts:
        st.dataframe(pd.DataFrame([{
            "Name": a.name, "Type": a.account_type, "Bank": a.bank_name,
            "Number": a.account_number_masked, "Balance": a.balance,
        } for a in accounts]), use_container_width=True, hide_index=True)

    with st.expander("➕ Add Account"):
        with st.form("add_account"):
            name = st.text_input("Account name")
            col1, col2 = st.columns(2)
            account_type = col1.selectbox("Type", list(ACCOUNT_TYPES))
            bank_name = col2.text_input("Bank")
            col3, col4 = st.columns(2)
            masked = col3.text_input("Masked number (e.g. ****1234)")
            balance = col4.number_input("Opening balance (₹)", value=0.0)
            credit_limit = st.number_input("Credit limit (cards only)", min_value=0.0, value=0.0)
            if st.form_submit_button("Create"):
                try:
                    ledger.create_account(db, user_id, name, account_type, bank_name=bank_name or None,
                                          account_number_masked=masked or None, balance=balance,
                                          credit_limit=credit_limit or None)
                    st.rerun()
                except AppError as e:
                    st.error(e.detail)

    loan_accounts = [a for a in accounts if a.account_type == "loan"]
    if loan_accounts:
        st.subheader("🏠 Loans")
        loan = st.selectbox("Loan", loan_accounts, format_func=lambda a: a.name)
        if loan.monthly_emi:
            col1, col2, col3 = st.columns(3)
            col1.metric("Outstanding", f"₹{loan.balance:,.2f}")
            col2.metric("EMI", f"₹{loan.monthly_emi:,.2f}")
            col3.metric("EMIs left", loan.remaining_terms or 0)
            schedule = amortization_schedule(loan.balance, loan.interest_rate or 0.0, loan.monthly_emi)
            if not schedule.empty:
                st.plotly_chart(payoff_chart(schedule), use_container_width=True)

            sources = [a for a in accounts if a.account_type in ASSET_ACCOUNT_TYPES]
            with st.form("pay_emi"):
                source = st.selectbox("Pay from", sources, format_func=lambda a: f"{a.name} (₹{a.balance:,.2f})")
                if st.form_submit_button("Pay EMI") and source is not None:
                    try:
                        pay_emi(db, user_id, loan.id, source.id)
                        st.success("EMI paid")
                        st.rerun()
                    except AppError as e:
                        st.error(e.detail)
        else:
            with st.form("configure_loan"):
                col1, col2, col3 = st.columns(3)
                rate = col1.number_input("Interest rate (% p.a.)", min_value=0.0, value=9.0)
                tenure = col2.number_input("Tenure (months)", min_value=1, value=60, step=1)
                start = col3.date_input("First EMI", value=date.today())
                interest_type = st.selectbox("Interest type", list(INTEREST_TYPES))
                if st.form_submit_button("Save loan terms"):
                    try:
                        configure_loan(db, user_id, loan.id, rate, int(tenure), start, interest_type)
                        st.rerun()
                    except AppError as e:
                        st.error(e.detail)

with tab4:
    st.header("📁 Import / Export")
    st.caption("Columns: " + ", ".join(INDIVIDUAL_COLUMNS) + ". Group files add Member Email.")

    uploaded = st.file_uploader("Upload CSV", type=["csv"])
    archive = st.checkbox("Keep a copy in the archive")
    if uploaded and st.button("Import"):
        data = uploaded.getvalue()
        try:
            result = import_transactions(read_csv(data), db, user_id)
        except AppError as e:
            st.error(e.detail)
        else:
            if archive:
                storage.save_file(uploaded.name, data, folder="imports")
            st.success(f"Imported {result.successful} of {result.total} rows.")
            if result.created_categories:
                st.info(f"New categories: {', '.join(result.created_categories)}")
            for error in result.errors:
                st.error(error)

    st.divider()
    st.download_button("Export transactions", export_csv(db, user_id),
                       file_name=f"transactions-{date.today().isoformat()}.csv")

with tab5:
    st.header("📧 Email Review")
    service = EmailSyncService(db)

    integrations = db.query(EmailIntegration).filter(EmailIntegration.user_id == user_id).all()
    for integration in integrations:
        last_sync = integration.last_sync.strftime("%b %d, %Y %I:%M %p") if integration.last_sync else "Never"
        col_a, col_b = st.columns([2, 1])
        col_a.markdown(f"**{integration.email_address}**  \nLast sync: {last_sync}")
        if col_b.button("Sync now", key=f"sync_{integration.id}"):
            with st.spinner("Reading notification emails..."):
                result = service.process_emails_for_user(user_id, integration.id)
            st.success(f"Auto-imported {result.auto_processed}, queued {result.queued} for review.")
            for error in result.errors:
                st.warning(error)

    with st.expander("🔗 Connect a mailbox"):
        with st.form("add_integration"):
            address = st.text_input("Email address")
            token = st.text_input("Gmail access token", type="password")
            if st.form_submit_button("Save"):
                try:
                    service.create_integration(user_id, address, token)
                    st.rerun()
                except AppError as e:
                    st.error(e.detail)

    st.subheader("Transactions awaiting review")
    pending = service.pending_transactions(user_id)
    if not pending:
        st.caption("Nothing to review.")
    for record in pending:
        col1, col2, col3 = st.columns([4, 1, 1])
        col1.markdown(
            f"**{record.transaction_type} ₹{record.amount:,.2f}** {record.description}  \n"
            f"{record.bank_name or '?'} ****{record.account_number_partial or '????'} · "
            f"confidence {record.confidence_score:.0%}"
        )
        if col2.button("Approve", key=f"approve_txn_{record.id}"):
            service.approve_transaction(user_id, record.id)
            st.rerun()
        if col3.button("Reject", key=f"reject_txn_{record.id}"):
            service.reject_transaction(user_id, record.id)
            st.rerun()

    st.subheader("Discovered accounts")
    for discovered in service.pending_accounts(user_id):
        col1, col2, col3 = st.columns([4, 1, 1])
        balance = f"₹{discovered.current_balance:,.2f}" if discovered.current_balance is not None else "unknown balance"
        col1.markdown(f"**{discovered.bank_name} ****{discovered.account_number_partial or '????'}** ({balance})")
        if col2.button("Approve", key=f"approve_acc_{discovered.id}"):
            service.approve_account(user_id, discovered.id)
            st.rerun()
        if col3.button("Reject", key=f"reject_acc_{discovered.id}"):
            service.reject_account(user_id, discovered.id)
            st.rerun()
