"""FastAPI service for accounts, transactions, CSV import/export and email ingestion."""

from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Header, Query, Response, UploadFile
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

import dashboard
import ledger
import loans
import process_transactions
from bank_parsers import BankParserResult
from database import User, get_db, init_db
from email_parser import EmailSyncService, EmailTransactionClassifier
from errors import AppError, register_error_handlers
from logging_setup import setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    init_db()
    yield


app = FastAPI(title="Expense Tracker API", version="0.1.0", lifespan=lifespan)
register_error_handlers(app)

classifier = EmailTransactionClassifier()


def current_user_id(x_user_id: int = Header(...), db: Session = Depends(get_db)) -> int:
    if not db.query(User.id).filter(User.id == x_user_id).first():
        raise AppError("Unknown user", status_code=401)
    return x_user_id


def get_email_service(db: Session = Depends(get_db)) -> EmailSyncService:
    return EmailSyncService(db, classifier=classifier)


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# --- Accounts ---

class AccountIn(BaseModel):
    name: str
    account_type: str
    bank_name: Optional[str] = None
    account_number_masked: Optional[str] = None
    balance: float = 0.0
    credit_limit: Optional[float] = None
    currency: str = "INR"
    group_id: Optional[int] = None


class AccountUpdate(BaseModel):
    name: Optional[str] = None
    account_type: Optional[str] = None
    bank_name: Optional[str] = None
    account_number_masked: Optional[str] = None
    balance: Optional[float] = None
    credit_limit: Optional[float] = None
    is_active: Optional[bool] = None


class AccountOut(ORMModel):
    id: int
    name: str
    account_type: str
    bank_name: Optional[str]
    account_number_masked: Optional[str]
    balance: float
    credit_limit: Optional[float]
    currency: str
    is_active: bool
    group_id: Optional[int]
    interest_rate: Optional[float] = None
    interest_type: Optional[str] = None
    monthly_emi: Optional[float] = None
    remaining_terms: Optional[int] = None
    emi_start_date: Optional[date] = None
    loan_end_date: Optional[date] = None


@app.get("/accounts", response_model=List[AccountOut])
async def list_accounts(
    group_id: Optional[int] = None,
    include_inactive: bool = False,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return ledger.list_accounts(db, user_id, group_id=group_id, include_inactive=include_inactive)


@app.post("/accounts", response_model=AccountOut, status_code=201)
async def create_account(req: AccountIn, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return ledger.create_account(db, user_id, **req.model_dump())


@app.get("/accounts/{account_id}", response_model=AccountOut)
async def get_account(account_id: int, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return ledger.get_account(db, account_id, user_id)


@app.patch("/accounts/{account_id}", response_model=AccountOut)
async def update_account(
    account_id: int, req: AccountUpdate, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return ledger.update_account(db, account_id, user_id, **req.model_dump(exclude_unset=True))


@app.delete("/accounts/{account_id}", status_code=204)
async def delete_account(account_id: int, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    ledger.delete_account(db, account_id, user_id)
    return Response(status_code=204)


# --- Transactions ---

class TransactionIn(BaseModel):
    transaction_type: str = Field(description="credit/debit (income/expense accepted)")
    amount: float = Field(gt=0)
    description: str
    transaction_date: date
    category_id: Optional[int] = None
    category_name: Optional[str] = None
    payment_method: str = "cash"
    account_name: str = ""
    notes: str = ""
    group_id: Optional[int] = None


class TransactionUpdate(BaseModel):
    transaction_type: Optional[str] = None
    amount: Optional[float] = Field(None, gt=0)
    description: Optional[str] = None
    transaction_date: Optional[date] = None
    category_id: Optional[int] = None
    payment_method: Optional[str] = None
    account_name: Optional[str] = None
    notes: Optional[str] = None


class TransactionOut(ORMModel):
    id: int
    transaction_type: str
    amount: float
    description: str
    transaction_date: date
    category_id: Optional[int]
    payment_method: str
    account_name: str
    notes: str
    source: str
    group_id: Optional[int]
    member_email: Optional[str]


@app.get("/transactions", response_model=List[TransactionOut])
async def list_transactions(
    group_id: Optional[int] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    search: Optional[str] = None,
    category_id: Optional[int] = None,
    transaction_type: Optional[str] = Query(None, alias="type"),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return ledger.list_transactions(
        db, user_id, group_id=group_id, start=start, end=end, search=search,
        category_id=category_id, transaction_type=transaction_type,
    )


@app.post("/transactions", response_model=TransactionOut, status_code=201)
async def create_transaction(req: TransactionIn, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return ledger.add_transaction(db, user_id, **req.model_dump())


@app.get("/transactions/export")
async def export_csv(
    group_id: Optional[int] = None, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    content = process_transactions.export_csv(db, user_id, group_id=group_id)
    filename = f"transactions-{date.today().isoformat()}.csv"
    return Response(content, media_type="text/csv", headers={"Content-Disposition": f'attachment; filename="{filename}"'})


@app.get("/transactions/{transaction_id}", response_model=TransactionOut)
async def get_transaction(transaction_id: int, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return ledger.get_transaction(db, transaction_id, user_id)


@app.patch("/transactions/{transaction_id}", response_model=TransactionOut)
async def update_transaction(
    transaction_id: int, req: TransactionUpdate, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return ledger.update_transaction(db, transaction_id, user_id, **req.model_dump(exclude_unset=True))


@app.delete("/transactions/{transaction_id}", status_code=204)
async def delete_transaction(transaction_id: int, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    ledger.delete_transaction(db, transaction_id, user_id)
    return Response(status_code=204)


# --- Categories and budgets ---

class CategoryIn(BaseModel):
    name: str
    color: Optional[str] = None
    icon: str = "circle"
    category_type: str = "expense"


class CategoryOut(ORMModel):
    id: int
    name: str
    color: str
    icon: str
    category_type: str
    is_system: bool


class BudgetIn(BaseModel):
    category_id: int
    amount: float = Field(gt=0)
    period: str = "monthly"
    start_date: Optional[date] = None


class BudgetOut(ORMModel):
    id: int
    category_id: int
    amount: float
    period: str
    start_date: Optional[date]


@app.get("/categories", response_model=List[CategoryOut])
async def list_categories(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return ledger.get_categories(db, user_id)


@app.post("/categories", response_model=CategoryOut, status_code=201)
async def create_category(req: CategoryIn, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return ledger.add_category(db, user_id, **req.model_dump())


@app.get("/budgets", response_model=List[BudgetOut])
async def list_budgets(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return ledger.list_budgets(db, user_id)


@app.post("/budgets", response_model=BudgetOut, status_code=201)
async def create_budget(req: BudgetIn, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return ledger.create_budget(db, user_id, **req.model_dump())


@app.delete("/budgets/{budget_id}", status_code=204)
async def delete_budget(budget_id: int, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    ledger.delete_budget(db, budget_id, user_id)
    return Response(status_code=204)


@app.get("/dashboard")
async def dashboard_summary(
    group_id: Optional[int] = None, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return dashboard.dashboard_summary(db, user_id, group_id=group_id)


# --- Loans ---

class LoanQuoteIn(BaseModel):
    principal: float
    interest_rate: float
    tenure_months: int
    interest_type: str = "reducing_balance"
    processing_fee: float = 0.0
    processing_fee_percentage: float = 0.0
    no_cost_emi: bool = False
    interest_free: bool = False


class LoanQuoteOut(ORMModel):
    monthly_emi: float
    total_interest: float
    total_amount: float
    effective_interest_rate: float
    processing_fee_amount: float


class LoanConfigIn(BaseModel):
    interest_rate: float
    tenure_months: int
    emi_start_date: date
    interest_type: str = "reducing_balance"
    monthly_emi: Optional[float] = None


class EmiPaymentIn(BaseModel):
    source_account_id: int
    amount: Optional[float] = None
    payment_date: Optional[date] = None


@app.post("/loans/quote", response_model=LoanQuoteOut)
async def loan_quote(req: LoanQuoteIn):
    return loans.calculate_loan_details(**req.model_dump())


@app.post("/accounts/{account_id}/loan", response_model=AccountOut)
async def configure_loan(
    account_id: int, req: LoanConfigIn, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return loans.configure_loan(db, user_id, account_id, **req.model_dump())


@app.post("/accounts/{account_id}/emi", response_model=TransactionOut, status_code=201)
async def pay_emi(
    account_id: int, req: EmiPaymentIn, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return loans.pay_emi(db, user_id, account_id, **req.model_dump())


# --- CSV ---

class ImportResponse(BaseModel):
    total: int
    successful: int
    failed: int
    errors: List[str]
    created_categories: List[str]
    template: str


@app.post("/transactions/import", response_model=ImportResponse)
async def import_csv(
    file: UploadFile = File(...),
    group_id: Optional[int] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    df = process_transactions.read_csv(await file.read())
    result = process_transactions.import_transactions(df, db, user_id, group_id=group_id)
    return ImportResponse(**vars(result))


# --- Email ingestion ---

class EmailParseRequest(BaseModel):
    email_id: str = "adhoc"
    subject: str = ""
    sender: str
    date: str = ""
    body: str


class IntegrationIn(BaseModel):
    email_address: str
    access_token: str


class IntegrationOut(ORMModel):
    id: int
    provider: str
    email_address: str
    last_sync: Optional[datetime]
    is_active: bool


class SyncResponse(BaseModel):
    processed_count: int
    transactions: int
    accounts: int
    auto_processed: int
    queued: int
    errors: List[str]


class ParsedTransactionOut(ORMModel):
    id: int
    raw_email_id: str
    email_subject: Optional[str]
    sender: Optional[str]
    transaction_type: str
    amount: float
    transaction_date: Optional[date]
    description: Optional[str]
    merchant: Optional[str]
    category: Optional[str]
    bank_name: Optional[str]
    account_number_partial: Optional[str]
    confidence_score: float
    status: str


class DiscoveredAccountOut(ORMModel):
    id: int
    bank_name: str
    account_number_partial: Optional[str]
    account_type: Optional[str]
    current_balance: Optional[float]
    confidence_score: float
    discovery_method: str
    status: str


class ApproveAccountRequest(BaseModel):
    name: Optional[str] = None


@app.post("/email/parse", response_model=Optional[BankParserResult])
async def parse_email(req: EmailParseRequest):
    return classifier.classify(req.email_id, req.subject, req.sender, req.date, req.body)


@app.post("/email/integrations", response_model=IntegrationOut, status_code=201)
async def create_integration(
    req: IntegrationIn, user_id: int = Depends(current_user_id), service: EmailSyncService = Depends(get_email_service)
):
    return service.create_integration(user_id, req.email_address, req.access_token)


def _sync_response(result) -> SyncResponse:
    return SyncResponse(
        processed_count=result.processed_count,
        transactions=len(result.transactions),
        accounts=len(result.accounts),
        auto_processed=result.auto_processed,
        queued=result.queued,
        errors=result.errors,
    )


@app.post("/email/integrations/{integration_id}/sync", response_model=SyncResponse)
def sync_integration(
    integration_id: int, user_id: int = Depends(current_user_id), service: EmailSyncService = Depends(get_email_service)
):
    return _sync_response(service.process_emails_for_user(user_id, integration_id))


@app.post("/email/integrations/{integration_id}/reprocess", response_model=SyncResponse)
def reprocess_integration(
    integration_id: int, user_id: int = Depends(current_user_id), service: EmailSyncService = Depends(get_email_service)
):
    return _sync_response(service.reprocess_stored_emails(user_id, integration_id))


@app.get("/email/review/transactions", response_model=List[ParsedTransactionOut])
async def pending_transactions(user_id: int = Depends(current_user_id), service: EmailSyncService = Depends(get_email_service)):
    return service.pending_transactions(user_id)


@app.post("/email/review/transactions/{record_id}/approve", response_model=TransactionOut)
async def approve_transaction(
    record_id: int, user_id: int = Depends(current_user_id), service: EmailSyncService = Depends(get_email_service)
):
    return service.approve_transaction(user_id, record_id)


@app.post("/email/review/transactions/{record_id}/reject", status_code=204)
async def reject_transaction(
    record_id: int, user_id: int = Depends(current_user_id), service: EmailSyncService = Depends(get_email_service)
):
    service.reject_transaction(user_id, record_id)
    return Response(status_code=204)


@app.get("/email/review/accounts", response_model=List[DiscoveredAccountOut])
async def pending_accounts(user_id: int = Depends(current_user_id), service: EmailSyncService = Depends(get_email_service)):
    return service.pending_accounts(user_id)


@app.post("/email/review/accounts/{discovered_id}/approve", response_model=AccountOut)
async def approve_account(
    discovered_id: int,
    req: Optional[ApproveAccountRequest] = None,
    user_id: int = Depends(current_user_id),
    service: EmailSyncService = Depends(get_email_service),
):
    return service.approve_account(user_id, discovered_id, name=req.name if req else None)


@app.post("/email/review/accounts/{discovered_id}/reject", status_code=204)
async def reject_account(
    discovered_id: int, user_id: int = Depends(current_user_id), service: EmailSyncService = Depends(get_email_service)
):
    service.reject_account(user_id, discovered_id)
    return Response(status_code=204)


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api:app", host="0.0.0.0", port=8001, reload=True)
