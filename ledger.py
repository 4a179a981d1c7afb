"""
ledger.py
---------
Direct database access for accounts, transactions, categories, budgets
and groups.

Every transaction mutation is followed by a separate, best-effort account
balance update. The two writes are not tied together: a failed balance
update is logged and the transaction write stands.
"""

from __future__ import annotations

import re
import secrets
import string
from datetime import date
from typing import Iterable, Optional

import structlog
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import (
    ACCOUNT_TYPES,
    ASSET_ACCOUNT_TYPES,
    Account,
    BudgetPlan,
    Category,
    DiscoveredAccount,
    ExpenseGroup,
    Transaction,
)
from errors import NotFoundError, ValidationError

logger = structlog.get_logger()

DEFAULT_CATEGORIES = [
    {"name": "Food & Dining", "color": "#EF4444", "icon": "utensils", "category_type": "expense"},
    {"name": "Transportation", "color": "#3B82F6", "icon": "car", "category_type": "expense"},
    {"name": "Bills & Utilities", "color": "#10B981", "icon": "receipt", "category_type": "expense"},
    {"name": "Entertainment", "color": "#8B5CF6", "icon": "film", "category_type": "expense"},
    {"name": "Healthcare", "color": "#EC4899", "icon": "heart", "category_type": "expense"},
    {"name": "Education", "color": "#F59E0B", "icon": "book", "category_type": "expense"},
    {"name": "Income", "color": "#059669", "icon": "trending-up", "category_type": "income"},
    {"name": "Other", "color": "#6B7280", "icon": "tag", "category_type": "expense"},
]
CATEGORY_PALETTE = ["#EF4444", "#F59E0B", "#10B981", "#3B82F6", "#8B5CF6", "#EC4899"]

TRANSACTION_TYPE_ALIASES = {
    "credit": "credit",
    "income": "credit",
    "debit": "debit",
    "expense": "debit",
}

# Balance updates that would go below this are treated as data errors.
MIN_ALLOWED_BALANCE = -1_000_000

_ACCOUNT_NAME_RE = re.compile(r"^(.+?)\s+\*{4}(\d{4})$")

ACCOUNT_FIELDS = {
    "name", "account_type", "bank_name", "account_number_masked", "balance",
    "credit_limit", "currency", "is_active", "group_id",
}
TRANSACTION_FIELDS = {
    "transaction_type", "amount", "description", "category_id", "transaction_date",
    "payment_method", "account_name", "notes", "group_id", "member_email",
}


def normalize_transaction_type(value: str) -> str:
    normalized = TRANSACTION_TYPE_ALIASES.get((value or "").strip().lower())
    if not normalized:
        raise ValidationError(f"Unknown transaction type: {value!r}")
    return normalized


def format_account_name(bank_name: Optional[str], last4: Optional[str]) -> str:
    if bank_name and last4:
        return f"{bank_name} ****{last4}"
    return bank_name or "Auto-detected Account"


def split_account_name(account_name: str) -> tuple[Optional[str], Optional[str]]:
    """'HDFC ****7312' -> ('HDFC', '7312'); anything else is treated as a bank name."""
    if not account_name:
        return None, None
    match = _ACCOUNT_NAME_RE.match(account_name.strip())
    if match:
        return match.group(1).strip(), match.group(2)
    return account_name.strip(), None


# --- Accounts ---

def create_account(
    db: Session,
    user_id: int,
    name: str,
    account_type: str,
    bank_name: Optional[str] = None,
    account_number_masked: Optional[str] = None,
    balance: float = 0.0,
    credit_limit: Optional[float] = None,
    currency: str = "INR",
    group_id: Optional[int] = None,
) -> Account:
    if not name or not name.strip():
        raise ValidationError("Account name is required")
    if account_type not in ACCOUNT_TYPES:
        raise ValidationError(f"Unknown account type: {account_type!r}")

    account = Account(
        user_id=user_id,
        group_id=group_id,
        name=name.strip(),
        account_type=account_type,
        bank_name=bank_name,
        account_number_masked=account_number_masked,
        balance=float(balance or 0.0),
        credit_limit=credit_limit,
        currency=currency,
        is_active=True,
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    logger.info("account_created", account_id=account.id, account_type=account_type)
    return account


def get_account(db: Session, account_id: int, user_id: Optional[int] = None) -> Account:
    query = db.query(Account).filter(Account.id == account_id)
    if user_id is not None:
        query = query.filter(Account.user_id == user_id)
    account = query.first()
    if not account:
        raise NotFoundError(f"Account {account_id} not found")
    return account


def list_accounts(
    db: Session, user_id: int, group_id: Optional[int] = None, include_inactive: bool = False
) -> list[Account]:
    query = db.query(Account).filter(Account.user_id == user_id)
    if group_id is not None:
        query = query.filter(Account.group_id == group_id)
    if not include_inactive:
        query = query.filter(Account.is_active.is_(True))
    return query.order_by(Account.name).all()


def update_account(db: Session, account_id: int, user_id: Optional[int] = None, **updates) -> Account:
    account = get_account(db, account_id, user_id)
    unknown = set(updates) - ACCOUNT_FIELDS
    if unknown:
        raise ValidationError(f"Cannot update account fields: {', '.join(sorted(unknown))}")
    if "account_type" in updates and updates["account_type"] not in ACCOUNT_TYPES:
        raise ValidationError(f"Unknown account type: {updates['account_type']!r}")

    for field, value in updates.items():
        setattr(account, field, value)
    db.commit()
    db.refresh(account)
    return account


def deactivate_account(db: Session, account_id: int, user_id: Optional[int] = None) -> Account:
    return update_account(db, account_id, user_id, is_active=False)


def delete_account(db: Session, account_id: int, user_id: Optional[int] = None) -> None:
    account = get_account(db, account_id, user_id)
    db.delete(account)
    db.commit()
    logger.info("account_deleted", account_id=account_id)


# --- Balance updates ---

def balance_delta(account_type: str, transaction_type: str, amount: float) -> float:
    """Signed change a transaction makes to an account of the given type."""
    if account_type in ASSET_ACCOUNT_TYPES:
        return amount if transaction_type == "credit" else -amount
    if account_type == "credit_card":
        # card balances are debt: spending raises them, payments lower them
        return -amount if transaction_type == "credit" else amount
    return 0.0


def _matching_accounts(db: Session, user_id: int, bank_name: Optional[str], last4: Optional[str]) -> list[Account]:
    query = db.query(Account).filter(Account.user_id == user_id, Account.is_active.is_(True))
    if last4:
        query = query.filter(Account.account_number_masked.ilike(f"%{last4}%"))
        if bank_name:
            query = query.filter(Account.bank_name.ilike(f"%{bank_name}%"))
    elif bank_name:
        query = query.filter(or_(Account.name.ilike(bank_name), Account.bank_name.ilike(f"%{bank_name}%")))
    else:
        return []
    return query.all()


def _matching_discovered(
    db: Session, user_id: int, bank_name: Optional[str], last4: Optional[str]
) -> list[DiscoveredAccount]:
    if not bank_name:
        return []
    query = db.query(DiscoveredAccount).filter(
        DiscoveredAccount.user_id == user_id,
        DiscoveredAccount.status == "approved",
        DiscoveredAccount.bank_name.ilike(f"%{bank_name}%"),
    )
    if last4:
        query = query.filter(DiscoveredAccount.account_number_partial == last4)
    return query.all()


def _guarded_balance(current: float, delta: float, account_type: str, log) -> Optional[float]:
    new_balance = (current or 0.0) + delta
    if new_balance < MIN_ALLOWED_BALANCE:
        log.error("balance_update_skipped", reason="extreme_negative", new_balance=new_balance)
        return None
    if account_type in ASSET_ACCOUNT_TYPES and new_balance < 0:
        log.warning("negative_asset_balance", new_balance=new_balance)
    return new_balance


def apply_balance_effect(
    db: Session,
    user_id: int,
    account_name: str,
    transaction_type: str,
    amount: float,
    description: str = "",
) -> int:
    """Apply one transaction's effect to every matching account.

    Returns the number of balances changed. Errors are logged, never raised.
    """
    log = logger.bind(account_name=account_name, transaction_type=transaction_type, amount=amount)
    if not account_name:
        log.debug("balance_update_skipped", reason="no_account_name")
        return 0

    bank_name, last4 = split_account_name(account_name)
    try:
        updated = 0
        accounts = _matching_accounts(db, user_id, bank_name, last4)
        if accounts:
            for account in accounts:
                delta = balance_delta(account.account_type, transaction_type, amount)
                new_balance = _guarded_balance(account.balance, delta, account.account_type, log.bind(account_id=account.id))
                if new_balance is None or delta == 0:
                    continue
                account.balance = new_balance
                updated += 1
            db.commit()
            return updated

        discovered = _matching_discovered(db, user_id, bank_name, last4)
        if discovered:
            for account in discovered:
                delta = balance_delta(account.account_type, transaction_type, amount)
                new_balance = _guarded_balance(
                    account.current_balance, delta, account.account_type, log.bind(discovered_id=account.id)
                )
                if new_balance is None or delta == 0:
                    continue
                account.current_balance = new_balance
                updated += 1
            db.commit()
            return updated

        if bank_name and last4:
            already_pending = (
                db.query(DiscoveredAccount.id)
                .filter(
                    DiscoveredAccount.user_id == user_id,
                    DiscoveredAccount.status == "pending",
                    DiscoveredAccount.bank_name.ilike(bank_name),
                    DiscoveredAccount.account_number_partial == last4,
                )
                .first()
            )
            if already_pending:
                log.info("balance_update_skipped", reason="account_pending_review")
                return 0
            # remember the account so later transactions can be matched
            db.add(
                DiscoveredAccount(
                    user_id=user_id,
                    bank_name=bank_name,
                    account_number_partial=last4,
                    account_type="bank",
                    current_balance=amount if transaction_type == "credit" else -amount,
                    discovery_method="transaction_processing",
                    status="pending",
                    confidence_score=0.7,
                    discovery_notes=f"Auto-created from transaction: {description}",
                )
            )
            db.commit()
            log.info("discovered_account_created", bank_name=bank_name, last4=last4)
        else:
            log.info("balance_update_skipped", reason="no_matching_account")
        return 0
    except SQLAlchemyError:
        db.rollback()
        log.exception("balance_update_failed")
        return 0


def _reverse(transaction_type: str) -> str:
    return "debit" if transaction_type == "credit" else "credit"


# --- Categories ---

def get_categories(db: Session, user_id: int) -> list[Category]:
    categories = db.query(Category).filter(Category.user_id == user_id).order_by(Category.name).all()
    if categories:
        return categories

    for cat in DEFAULT_CATEGORIES:
        db.add(Category(user_id=user_id, is_system=True, **cat))
    db.commit()
    return db.query(Category).filter(Category.user_id == user_id).order_by(Category.name).all()


def add_category(
    db: Session,
    user_id: int,
    name: str,
    color: Optional[str] = None,
    icon: str = "circle",
    category_type: str = "expense",
) -> Category:
    if not name or not name.strip():
        raise ValidationError("Category name is required")
    if category_type not in ("income", "expense"):
        raise ValidationError(f"Unknown category type: {category_type!r}")
    if color is None:
        count = db.query(Category).filter(Category.user_id == user_id).count()
        color = CATEGORY_PALETTE[count % len(CATEGORY_PALETTE)]

    category = Category(
        user_id=user_id, name=name.strip(), color=color, icon=icon, category_type=category_type, is_system=False
    )
    db.add(category)
    db.commit()
    db.refresh(category)
    return category


def find_category(db: Session, user_id: int, name: str) -> Optional[Category]:
    return (
        db.query(Category)
        .filter(Category.user_id == user_id, Category.name.ilike(name.strip()))
        .first()
    )


def find_or_create_category(db: Session, user_id: int, name: str, color: Optional[str] = None) -> tuple[Category, bool]:
    """Case-insensitive lookup by name. Returns (category, created)."""
    get_categories(db, user_id)
    existing = find_category(db, user_id, name)
    if existing:
        return existing, False
    return add_category(db, user_id, name, color=color), True


# --- Transactions ---

def get_transaction(db: Session, transaction_id: int, user_id: Optional[int] = None) -> Transaction:
    query = db.query(Transaction).filter(Transaction.id == transaction_id)
    if user_id is not None:
        query = query.filter(Transaction.user_id == user_id)
    txn = query.first()
    if not txn:
        raise NotFoundError(f"Transaction {transaction_id} not found")
    return txn


def _validate_transaction_fields(fields: dict) -> dict:
    cleaned = dict(fields)
    if "transaction_type" in cleaned:
        cleaned["transaction_type"] = normalize_transaction_type(cleaned["transaction_type"])
    if "amount" in cleaned:
        try:
            cleaned["amount"] = float(cleaned["amount"])
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid amount: {cleaned['amount']!r}")
        if cleaned["amount"] <= 0:
            raise ValidationError("Amount must be greater than zero")
    if "description" in cleaned and not (cleaned["description"] or "").strip():
        raise ValidationError("Description is required")
    if "transaction_date" in cleaned and not isinstance(cleaned["transaction_date"], date):
        raise ValidationError("transaction_date must be a date")
    return cleaned


def add_transaction(
    db: Session,
    user_id: int,
    transaction_type: str,
    amount: float,
    description: str,
    transaction_date: date,
    category_id: Optional[int] = None,
    category_name: Optional[str] = None,
    payment_method: str = "cash",
    account_name: str = "",
    notes: str = "",
    source: str = "manual",
    group_id: Optional[int] = None,
    created_by: Optional[int] = None,
    member_email: Optional[str] = None,
    skip_balance_update: bool = False,
) -> Transaction:
    fields = _validate_transaction_fields(
        {
            "transaction_type": transaction_type,
            "amount": amount,
            "description": description,
            "transaction_date": transaction_date,
        }
    )
    if category_id is None and category_name:
        category_id = find_or_create_category(db, user_id, category_name)[0].id

    txn = Transaction(
        user_id=user_id,
        group_id=group_id,
        created_by=created_by or user_id,
        category_id=category_id,
        payment_method=(payment_method or "cash").lower(),
        account_name=account_name or "",
        notes=notes or "",
        source=source,
        member_email=member_email,
        **fields,
    )
    db.add(txn)
    db.commit()
    db.refresh(txn)
    logger.info("transaction_added", transaction_id=txn.id, source=source, amount=txn.amount)

    if not skip_balance_update:
        apply_balance_effect(db, user_id, txn.account_name, txn.transaction_type, txn.amount, txn.description)
    return txn


def add_transactions_batch(db: Session, user_id: int, rows: Iterable[dict]) -> list[Transaction]:
    created = []
    for i, row in enumerate(rows):
        try:
            created.append(add_transaction(db, user_id, **row))
        except ValidationError as exc:
            logger.warning("batch_row_skipped", row=i, reason=exc.detail)
    return created


def update_transaction(db: Session, transaction_id: int, user_id: Optional[int] = None, **updates) -> Transaction:
    txn = get_transaction(db, transaction_id, user_id)
    unknown = set(updates) - TRANSACTION_FIELDS
    if unknown:
        raise ValidationError(f"Cannot update transaction fields: {', '.join(sorted(unknown))}")
    updates = _validate_transaction_fields(updates)

    old_type, old_amount, old_account = txn.transaction_type, txn.amount, txn.account_name
    for field, value in updates.items():
        setattr(txn, field, value)
    db.commit()
    db.refresh(txn)

    account_changed = txn.account_name != old_account
    if account_changed:
        apply_balance_effect(db, txn.user_id, old_account, _reverse(old_type), old_amount, txn.description)
        apply_balance_effect(db, txn.user_id, txn.account_name, txn.transaction_type, txn.amount, txn.description)
    else:
        old_effect = old_amount if old_type == "credit" else -old_amount
        new_effect = txn.amount if txn.transaction_type == "credit" else -txn.amount
        difference = new_effect - old_effect
        if difference:
            apply_balance_effect(
                db,
                txn.user_id,
                txn.account_name,
                "credit" if difference > 0 else "debit",
                abs(difference),
                txn.description,
            )
    logger.info("transaction_updated", transaction_id=txn.id, fields=sorted(updates))
    return txn


def delete_transaction(db: Session, transaction_id: int, user_id: Optional[int] = None) -> None:
    txn = get_transaction(db, transaction_id, user_id)
    owner, account_name = txn.user_id, txn.account_name
    reverse_type, amount, description = _reverse(txn.transaction_type), txn.amount, txn.description

    db.delete(txn)
    db.commit()
    logger.info("transaction_deleted", transaction_id=transaction_id)
    apply_balance_effect(db, owner, account_name, reverse_type, amount, description)


def list_transactions(
    db: Session,
    user_id: int,
    group_id: Optional[int] = None,
    personal: bool = False,
    start: Optional[date] = None,
    end: Optional[date] = None,
    search: Optional[str] = None,
    category_id: Optional[int] = None,
    transaction_type: Optional[str] = None,
) -> list[Transaction]:
    query = db.query(Transaction)
    if group_id is not None:
        query = query.filter(Transaction.group_id == group_id)
    elif personal:
        query = query.filter(
            or_(
                Transaction.user_id == user_id,
                (Transaction.group_id.is_(None)) & (Transaction.created_by == user_id),
            )
        )
    else:
        query = query.filter(Transaction.user_id == user_id)

    if start:
        query = query.filter(Transaction.transaction_date >= start)
    if end:
        query = query.filter(Transaction.transaction_date <= end)
    if search:
        query = query.filter(Transaction.description.ilike(f"%{search}%"))
    if category_id is not None:
        query = query.filter(Transaction.category_id == category_id)
    if transaction_type:
        query = query.filter(Transaction.transaction_type == normalize_transaction_type(transaction_type))
    return query.order_by(Transaction.transaction_date.desc(), Transaction.id.desc()).all()


# --- Budgets ---

def create_budget(
    db: Session, user_id: int, category_id: int, amount: float, period: str = "monthly", start_date: Optional[date] = None
) -> BudgetPlan:
    if amount is None or amount <= 0:
        raise ValidationError("Budget amount must be greater than zero")
    if not db.query(Category).filter(Category.id == category_id, Category.user_id == user_id).first():
        raise NotFoundError(f"Category {category_id} not found")

    budget = BudgetPlan(user_id=user_id, category_id=category_id, amount=float(amount), period=period, start_date=start_date)
    db.add(budget)
    db.commit()
    db.refresh(budget)
    return budget


def list_budgets(db: Session, user_id: int) -> list[BudgetPlan]:
    return db.query(BudgetPlan).filter(BudgetPlan.user_id == user_id).all()


def delete_budget(db: Session, budget_id: int, user_id: int) -> None:
    budget = db.query(BudgetPlan).filter(BudgetPlan.id == budget_id, BudgetPlan.user_id == user_id).first()
    if not budget:
        raise NotFoundError(f"Budget {budget_id} not found")
    db.delete(budget)
    db.commit()


# --- Groups ---

def _group_code() -> str:
    alphabet = string.ascii_uppercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(6))


def create_group(db: Session, user_id: int, name: str) -> ExpenseGroup:
    if not name or not name.strip():
        raise ValidationError("Group name is required")
    code = _group_code()
    while find_group_by_code(db, code):
        code = _group_code()

    group = ExpenseGroup(name=name.strip(), group_code=code, created_by=user_id)
    db.add(group)
    db.commit()
    db.refresh(group)
    return group


def find_group_by_code(db: Session, group_code: str) -> Optional[ExpenseGroup]:
    return db.query(ExpenseGroup).filter(ExpenseGroup.group_code == group_code.strip().upper()).first()
