import os
from datetime import datetime
from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import sessionmaker, declarative_base, relationship
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Database Setup
# Default to local SQLite, but allow override for a hosted Postgres instance
DB_URL = os.getenv("DATABASE_URL", "sqlite:///expense_tracker.db")

engine = create_engine(DB_URL, connect_args={"check_same_thread": False} if "sqlite" in DB_URL else {})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

ASSET_ACCOUNT_TYPES = ("bank", "savings", "checking", "wallet", "cash")
LIABILITY_ACCOUNT_TYPES = ("credit_card", "loan")
ACCOUNT_TYPES = ASSET_ACCOUNT_TYPES + LIABILITY_ACCOUNT_TYPES + ("investment",)

# --- Models ---

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, index=True)
    email = Column(String, nullable=True)
    password_hash = Column(String) # bcrypt hash
    role = Column(String, default="member") # 'admin' or 'member'


class ExpenseGroup(Base):
    __tablename__ = "expense_groups"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String)
    group_code = Column(String, unique=True, index=True)
    created_by = Column(Integer, ForeignKey("users.id"))
    created_at = Column(DateTime, default=datetime.utcnow)


class Account(Base):
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    group_id = Column(Integer, ForeignKey("expense_groups.id"), nullable=True)
    name = Column(String)
    account_type = Column(String) # see ACCOUNT_TYPES
    bank_name = Column(String, nullable=True)
    account_number_masked = Column(String, nullable=True) # e.g. "XXXX1234"
    balance = Column(Float, default=0.0)
    credit_limit = Column(Float, nullable=True)
    currency = Column(String, default="INR")
    is_active = Column(Boolean, default=True)

    # loan accounts only; balance is the outstanding principal
    interest_rate = Column(Float, nullable=True) # annual %
    interest_type = Column(String, nullable=True) # see loans.INTEREST_TYPES
    monthly_emi = Column(Float, nullable=True)
    loan_tenure_months = Column(Integer, nullable=True)
    remaining_terms = Column(Integer, nullable=True)
    emi_start_date = Column(Date, nullable=True)
    loan_end_date = Column(Date, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    name = Column(String)
    color = Column(String, default="#6B7280")
    icon = Column(String, default="circle")
    category_type = Column(String, default="expense") # 'income' or 'expense'
    is_system = Column(Boolean, default=False)


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    group_id = Column(Integer, ForeignKey("expense_groups.id"), nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    transaction_type = Column(String) # 'credit' or 'debit'
    amount = Column(Float)            # always positive, direction is in transaction_type
    description = Column(String)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=True)
    transaction_date = Column(Date)
    payment_method = Column(String, default="cash")
    account_name = Column(String, default="") # "HDFC ****7312" or free text
    notes = Column(Text, default="")

    # Metadata
    source = Column(String, default="manual")     # 'manual', 'csv_import', 'email', 'emi'
    member_email = Column(String, nullable=True)  # group imports only

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    category = relationship("Category")


class BudgetPlan(Base):
    __tablename__ = "budget_plans"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    category_id = Column(Integer, ForeignKey("categories.id"))
    amount = Column(Float)
    period = Column(String, default="monthly")
    start_date = Column(Date, nullable=True)

    category = relationship("Category")


class EmailIntegration(Base):
    __tablename__ = "email_integrations"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    provider = Column(String, default="gmail")
    email_address = Column(String)
    access_token = Column(String)
    last_sync = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True)


class ParsedTransactionRecord(Base):
    __tablename__ = "parsed_transactions"
    __table_args__ = (UniqueConstraint("email_integration_id", "raw_email_id"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    email_integration_id = Column(Integer, ForeignKey("email_integrations.id"), nullable=True)

    raw_email_id = Column(String)
    email_subject = Column(String)
    email_date = Column(String)
    sender = Column(String)

    transaction_type = Column(String)
    amount = Column(Float)
    currency = Column(String, default="INR")
    transaction_date = Column(Date, nullable=True)
    description = Column(String)
    merchant = Column(String, nullable=True)
    category = Column(String, nullable=True)

    bank_name = Column(String, nullable=True)
    account_number_partial = Column(String, nullable=True)
    account_type = Column(String, nullable=True)

    # Intelligence & Workflow
    confidence_score = Column(Float, default=0.0) # 0.0 to 1.0
    needs_review = Column(Boolean, default=True)
    parsing_notes = Column(Text, nullable=True)
    status = Column(String, default="pending") # 'pending', 'approved', 'rejected', 'auto_processed'
    created_transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)


class DiscoveredAccount(Base):
    __tablename__ = "discovered_accounts"
    __table_args__ = (UniqueConstraint("email_integration_id", "bank_name", "account_number_partial"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    email_integration_id = Column(Integer, ForeignKey("email_integrations.id"), nullable=True)
    discovered_from_email_id = Column(String, nullable=True)
    discovery_method = Column(String, default="email_parsing") # or 'transaction_processing'

    bank_name = Column(String)
    account_number_partial = Column(String, nullable=True)
    account_type = Column(String, default="savings")
    current_balance = Column(Float, nullable=True)
    account_holder_name = Column(String, nullable=True)

    confidence_score = Column(Float, default=0.0)
    needs_review = Column(Boolean, default=True)
    discovery_notes = Column(Text, nullable=True)
    status = Column(String, default="pending") # 'pending', 'approved', 'rejected'

    created_at = Column(DateTime, default=datetime.utcnow)

# --- Init DB ---
def init_db(bind=None):
    Base.metadata.create_all(bind=bind or engine)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
