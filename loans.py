"""
loans.py
--------
EMI maths and repayments for ``loan`` accounts.

A loan account's ``balance`` is its outstanding principal. ``configure_loan``
prices the loan once (EMI, end date); ``pay_emi`` moves one instalment from a
bank/cash account, splitting it into interest and principal.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

import pandas as pd
import plotly.express as px
import structlog
from sqlalchemy.orm import Session

import ledger
from database import ASSET_ACCOUNT_TYPES, Account, Transaction
from errors import ValidationError

logger = structlog.get_logger()

INTEREST_TYPES = ("reducing_balance", "flat_rate", "simple", "compound")
# flat-rate loans cost roughly this multiple of the quoted rate
FLAT_RATE_EFFECTIVE_FACTOR = 1.8
MAX_SCHEDULE_MONTHS = 1200


@dataclass
class LoanQuote:
    monthly_emi: float
    total_interest: float
    total_amount: float
    effective_interest_rate: float
    processing_fee_amount: float


@dataclass
class HomeLoanQuote(LoanQuote):
    moratorium_emi: float = 0.0
    total_moratorium_interest: float = 0.0
    moratorium_end_date: Optional[date] = None
    remaining_post_moratorium_months: int = 0
    disbursement_history: list[dict] = field(default_factory=list)


def _monthly_rate(annual_rate: float) -> float:
    return annual_rate / (12 * 100)


def add_months(start: date, months: int) -> date:
    """Same day ``months`` later, clamped to the end of shorter months."""
    return (pd.Timestamp(start) + pd.DateOffset(months=months)).date()


def loan_end_date(start: date, tenure_months: int) -> date:
    return add_months(start, tenure_months)


def reducing_balance_emi(principal: float, monthly_rate: float, tenure_months: int) -> float:
    if monthly_rate == 0:
        return round(principal / tenure_months, 2)
    growth = (1 + monthly_rate) ** tenure_months
    return round(principal * monthly_rate * growth / (growth - 1), 2)


def flat_rate_emi(principal: float, annual_rate: float, tenure_months: int) -> float:
    total_interest = principal * annual_rate * tenure_months / (12 * 100)
    return round((principal + total_interest) / tenure_months, 2)


def calculate_loan_details(
    principal: float,
    interest_rate: float,
    tenure_months: int,
    interest_type: str = "reducing_balance",
    processing_fee: float = 0.0,
    processing_fee_percentage: float = 0.0,
    no_cost_emi: bool = False,
    interest_free: bool = False,
) -> LoanQuote:
    if principal is None or principal <= 0:
        raise ValidationError("Loan principal must be greater than zero")
    if not tenure_months or tenure_months <= 0:
        raise ValidationError("Loan tenure must be at least one month")
    if interest_rate is None or interest_rate < 0:
        raise ValidationError("Interest rate cannot be negative")
    if interest_type not in INTEREST_TYPES:
        raise ValidationError(f"Unknown interest type: {interest_type!r}")

    fee = processing_fee + principal * processing_fee_percentage / 100
    effective_rate = interest_rate

    if interest_free or no_cost_emi:
        # interest is waived or absorbed by the merchant
        emi = principal / tenure_months
        total_interest = 0.0
        effective_rate = 0.0
    elif interest_type == "reducing_balance":
        emi = reducing_balance_emi(principal, _monthly_rate(interest_rate), tenure_months)
        total_interest = emi * tenure_months - principal
    elif interest_type == "flat_rate":
        emi = flat_rate_emi(principal, interest_rate, tenure_months)
        total_interest = emi * tenure_months - principal
        effective_rate = interest_rate * FLAT_RATE_EFFECTIVE_FACTOR
    elif interest_type == "simple":
        total_interest = principal * interest_rate * tenure_months / (12 * 100)
        emi = (principal + total_interest) / tenure_months
    else:
        total_interest = principal * (1 + _monthly_rate(interest_rate)) ** tenure_months - principal
        emi = (principal + total_interest) / tenure_months

    if fee > 0:
        effective_rate = (total_interest + fee) / principal * (12 / tenure_months) * 100

    return LoanQuote(
        monthly_emi=round(emi, 2),
        total_interest=round(total_interest, 2),
        total_amount=round(principal + total_interest, 2),
        effective_interest_rate=round(effective_rate, 2),
        processing_fee_amount=round(fee, 2),
    )


def calculate_home_loan_details(
    sanctioned_amount: float,
    disbursed_amount: float,
    interest_rate: float,
    tenure_months: int,
    moratorium_months: int,
    start_date: date,
    interest_type: str = "reducing_balance",
    disbursements: Optional[list[tuple[date, float]]] = None,
    processing_fee: float = 0.0,
    processing_fee_percentage: float = 0.0,
) -> HomeLoanQuote:
    """
    Home loan with an interest-only moratorium while the property is built.

    During the moratorium each month's EMI is the interest on what has been
    disbursed so far (rounded up to the rupee, as banks bill it). ``disbursements``
    lists (date, amount) tranches; without it the whole ``disbursed_amount`` is
    assumed to be out from the first month. After the moratorium a regular EMI
    runs on the sanctioned amount for the remaining tenure.
    """
    if moratorium_months < 0 or moratorium_months >= tenure_months:
        raise ValidationError("Moratorium must be shorter than the loan tenure")
    if disbursed_amount is None or disbursed_amount < 0:
        raise ValidationError("Disbursed amount cannot be negative")

    rate = _monthly_rate(interest_rate)
    tranches = sorted(disbursements or [])

    history = []
    moratorium_interest = 0.0
    for month in range(1, moratorium_months + 1):
        if tranches:
            month_date = add_months(start_date, month - 1)
            out = min(sum(amount for when, amount in tranches if when <= month_date), disbursed_amount)
        else:
            out = disbursed_amount
        interest = out * rate
        moratorium_interest += interest
        history.append({"month": month, "disbursed": out, "emi": math.ceil(interest)})

    remaining = tenure_months - moratorium_months
    post = calculate_loan_details(sanctioned_amount, interest_rate, remaining, interest_type)

    total_interest = moratorium_interest + post.total_interest
    fee = processing_fee + sanctioned_amount * processing_fee_percentage / 100
    return HomeLoanQuote(
        monthly_emi=post.monthly_emi,
        total_interest=round(total_interest, 2),
        total_amount=round(sanctioned_amount + total_interest, 2),
        effective_interest_rate=round((total_interest + fee) / sanctioned_amount * (12 / tenure_months) * 100, 2),
        processing_fee_amount=round(fee, 2),
        moratorium_emi=math.ceil(disbursed_amount * rate),
        total_moratorium_interest=round(moratorium_interest, 2),
        moratorium_end_date=add_months(start_date, moratorium_months),
        remaining_post_moratorium_months=remaining,
        disbursement_history=history,
    )


def amortization_schedule(
    principal: float,
    interest_rate: float,
    monthly_payment: float,
    start_date: Optional[date] = None,
    extra_payment: float = 0.0,
) -> pd.DataFrame:
    """
    Month-by-month split of each payment into interest and principal.
    Empty when the payment never covers the interest.
    """
    if principal <= 0 or monthly_payment <= 0:
        return pd.DataFrame()

    rate = _monthly_rate(interest_rate)
    payment = monthly_payment + extra_payment
    if payment <= principal * rate:
        return pd.DataFrame()

    schedule = []
    balance = principal
    month = 0
    while balance > 0 and month < MAX_SCHEDULE_MONTHS:
        month += 1
        interest = balance * rate
        paid_principal = min(payment - interest, balance)
        balance -= paid_principal
        schedule.append({
            "EMI": month,
            "Date": add_months(start_date, month - 1) if start_date else None,
            "Payment": round(interest + paid_principal, 2),
            "Principal": round(paid_principal, 2),
            "Interest": round(interest, 2),
            "Balance": round(max(0.0, balance), 2),
        })

    return pd.DataFrame(schedule)


def months_to_payoff(balance: float, interest_rate: float, payment: float) -> Optional[float]:
    """Remaining instalments at ``payment`` a month, or None if it never pays off."""
    rate = _monthly_rate(interest_rate)
    if balance <= 0:
        return 0.0
    if payment <= 0 or payment <= rate * balance:
        return None
    if rate == 0:
        return balance / payment
    return -math.log(1 - rate * balance / payment) / math.log(1 + rate)


def payoff_chart(schedule: pd.DataFrame):
    fig = px.area(schedule, x="EMI", y="Balance", title="Outstanding Principal")
    fig.update_layout(height=350)
    return fig


# --- Loan accounts ---

def _loan_account(db: Session, account_id: int, user_id: int) -> Account:
    account = ledger.get_account(db, account_id, user_id)
    if account.account_type != "loan":
        raise ValidationError(f"Account {account_id} is not a loan account")
    return account


def configure_loan(
    db: Session,
    user_id: int,
    account_id: int,
    interest_rate: float,
    tenure_months: int,
    emi_start_date: date,
    interest_type: str = "reducing_balance",
    monthly_emi: Optional[float] = None,
) -> Account:
    """Price a loan account on its current balance. ``monthly_emi`` overrides the computed EMI."""
    account = _loan_account(db, account_id, user_id)
    quote = calculate_loan_details(account.balance, interest_rate, tenure_months, interest_type)

    account.interest_rate = interest_rate
    account.interest_type = interest_type
    account.monthly_emi = monthly_emi or quote.monthly_emi
    account.loan_tenure_months = tenure_months
    account.remaining_terms = tenure_months
    account.emi_start_date = emi_start_date
    account.loan_end_date = loan_end_date(emi_start_date, tenure_months)
    db.commit()
    db.refresh(account)
    logger.info("loan_configured", account_id=account.id, emi=account.monthly_emi, tenure=tenure_months)
    return account


def pay_emi(
    db: Session,
    user_id: int,
    loan_account_id: int,
    source_account_id: int,
    amount: Optional[float] = None,
    payment_date: Optional[date] = None,
) -> Transaction:
    """
    Pay one instalment: the source account is debited by the full payment and
    the loan's outstanding principal drops by the payment less this month's
    interest. Records a single debit transaction on the source account.
    """
    loan = _loan_account(db, loan_account_id, user_id)
    source = ledger.get_account(db, source_account_id, user_id)
    log = logger.bind(loan_account_id=loan.id, source_account_id=source.id)

    if source.account_type not in ASSET_ACCOUNT_TYPES:
        raise ValidationError("EMIs are paid from a bank, cash or wallet account")
    if (loan.balance or 0) <= 0:
        raise ValidationError(f"{loan.name} is already paid off")

    payment = amount or loan.monthly_emi or 0.0
    if payment <= 0:
        raise ValidationError("Invalid EMI amount")
    if (source.balance or 0) < payment:
        raise ValidationError("Insufficient balance for EMI payment")

    interest = loan.balance * _monthly_rate(loan.interest_rate or 0.0)
    if payment <= interest:
        raise ValidationError("EMI does not cover this month's interest")
    principal = min(payment - interest, loan.balance)

    source.balance -= payment
    loan.balance = round(loan.balance - principal, 2)
    if loan.remaining_terms:
        loan.remaining_terms -= 1

    txn = ledger.add_transaction(
        db,
        user_id,
        transaction_type="debit",
        amount=payment,
        description=f"EMI payment to {loan.name}",
        transaction_date=payment_date or date.today(),
        category_name="Loan Payment",
        payment_method="bank_transfer",
        account_name=source.name,
        notes=f"Principal ₹{principal:,.2f}, interest ₹{interest:,.2f}",
        source="emi",
        skip_balance_update=True,
    )
    log.info("emi_paid", amount=payment, principal=round(principal, 2), outstanding=loan.balance)
    return txn
