"""
email_parser.py
---------------
Turns bank notification emails into ledger transactions.

``EmailTransactionClassifier`` routes one email to the right bank parser.
``EmailSyncService`` pulls recent notifications from a mailbox, classifies
them, auto-creates the high-confidence ones and queues the rest for review.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog
from dotenv import load_dotenv
from sqlalchemy.orm import Session

import ledger
from bank_parsers import BankParserRegistry, BankParserResult, GenericEmailParser, ParsedAccount, ParsedTransaction
from database import Account, DiscoveredAccount, EmailIntegration, ParsedTransactionRecord, Transaction
from errors import NotFoundError, ValidationError
from gmail_client import EmailMessage, GmailClient, extract_email

load_dotenv()

logger = structlog.get_logger()

AUTO_PROCESS_THRESHOLD = float(os.getenv("AUTO_PROCESS_THRESHOLD", "0.9"))
EMAIL_FETCH_DELAY = float(os.getenv("EMAIL_FETCH_DELAY", "0.1"))
EMAIL_MAX_RESULTS = int(os.getenv("EMAIL_MAX_RESULTS", "20"))

SEARCH_QUERIES = [
    # bank and wallet alerts
    "newer_than:30d AND ((from:(*bank* OR *sbi* OR *hdfc* OR *icici* OR *axis* OR *kotak* OR *paytm* "
    "OR *phonepe* OR *gpay*) AND (debited OR credited OR transaction OR payment)) "
    "OR (subject:(transaction OR payment OR debited OR credited)))",
    # card and EMI alerts
    "newer_than:30d AND (from:(*card* OR *visa* OR *mastercard* OR *amex* OR *finance* OR *loan*) "
    "AND (payment OR transaction OR statement OR emi OR installment))",
]


class EmailTransactionClassifier:
    """Picks a bank-specific parser for the sender, else the generic one."""

    def __init__(self, registry: Optional[BankParserRegistry] = None, fallback: Optional[GenericEmailParser] = None):
        self.registry = registry or BankParserRegistry()
        self.fallback = fallback or GenericEmailParser()

    def classify(
        self, email_id: str, subject: str, sender: str, email_date: str, body: str
    ) -> Optional[BankParserResult]:
        parser = self.registry.parser_for_email(subject, body, sender)
        if parser is None:
            if not self.fallback.can_parse(subject, body, sender):
                logger.debug("email_skipped", reason="not_financial_sender", sender=sender)
                return None
            parser = self.fallback
        return parser.parse_email(email_id, subject, sender, email_date, body)

    def classify_message(self, message: EmailMessage) -> Optional[BankParserResult]:
        return self.classify(message.id, message.subject, message.sender, message.date, message.body)


def can_auto_process(tx: ParsedTransaction, threshold: float = AUTO_PROCESS_THRESHOLD) -> bool:
    info = tx.account_info
    return (
        tx.confidence_score >= threshold
        and tx.amount > 0
        and tx.transaction_type in ("debit", "credit")
        and len(tx.description or "") > 5
        and tx.transaction_date is not None
        and bool(info.bank_name)
        and bool(info.account_number_partial)
        and len(info.account_number_partial) == 4
        and info.account_number_partial.isdigit()
        and not tx.needs_review
    )


def _epoch(moment: datetime) -> int:
    # SQLite hands DateTime columns back naive; they were stored in UTC
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp())


@dataclass
class SyncResult:
    transactions: list[ParsedTransaction] = field(default_factory=list)
    accounts: list[ParsedAccount] = field(default_factory=list)
    processed_count: int = 0
    auto_processed: int = 0
    queued: int = 0
    errors: list[str] = field(default_factory=list)


class EmailSyncService:
    def __init__(
        self,
        db: Session,
        client_factory: Callable[[str], GmailClient] = GmailClient,
        classifier: Optional[EmailTransactionClassifier] = None,
        fetch_delay: float = EMAIL_FETCH_DELAY,
        max_results: int = EMAIL_MAX_RESULTS,
    ):
        self.db = db
        self.client_factory = client_factory
        self.classifier = classifier or EmailTransactionClassifier()
        self.fetch_delay = fetch_delay
        self.max_results = max_results

    # --- integrations ---

    def create_integration(self, user_id: int, email_address: str, access_token: str) -> EmailIntegration:
        if not access_token:
            raise ValidationError("An access token is required")
        integration = EmailIntegration(
            user_id=user_id, provider="gmail", email_address=email_address, access_token=access_token, is_active=True
        )
        self.db.add(integration)
        self.db.commit()
        self.db.refresh(integration)
        return integration

    def get_integration(self, user_id: int, integration_id: int) -> EmailIntegration:
        integration = (
            self.db.query(EmailIntegration)
            .filter(EmailIntegration.id == integration_id, EmailIntegration.user_id == user_id)
            .first()
        )
        if not integration:
            raise NotFoundError("Email integration not found")
        return integration

    # --- sync ---

    def _already_recorded(self, integration_id: int, email_id: str) -> bool:
        return (
            self.db.query(ParsedTransactionRecord.id)
            .filter(
                ParsedTransactionRecord.email_integration_id == integration_id,
                ParsedTransactionRecord.raw_email_id == email_id,
            )
            .first()
            is not None
        )

    def process_emails_for_user(self, user_id: int, integration_id: int) -> SyncResult:
        integration = self.get_integration(user_id, integration_id)
        log = logger.bind(user_id=user_id, integration_id=integration_id)
        result = SyncResult()

        client = self.client_factory(integration.access_token)
        since = _epoch(integration.last_sync) if integration.last_sync else None
        log.info("email_sync_started", since=since)
        seen: set[str] = set()

        for query in SEARCH_QUERIES:
            timed_query = f"{query} AND after:{since}" if since else query
            try:
                message_ids = client.search_messages(timed_query, self.max_results)
            except Exception as exc:
                log.error("email_query_failed", error=str(exc))
                result.errors.append(f"Query failed: {query} - {exc}")
                continue

            for i, message_id in enumerate(message_ids):
                if message_id in seen or self._already_recorded(integration_id, message_id):
                    continue
                seen.add(message_id)
                try:
                    message = extract_email(client.get_message(message_id))
                    parsed = self.classifier.classify_message(message)
                    if parsed:
                        result.transactions.append(parsed.transaction)
                        if parsed.account:
                            result.accounts.append(parsed.account)
                    result.processed_count += 1
                except Exception as exc:
                    log.error("email_message_failed", message_id=message_id, error=str(exc))
                    result.errors.append(f"Failed to process message {message_id}: {exc}")
                if i < len(message_ids) - 1 and self.fetch_delay:
                    time.sleep(self.fetch_delay)

        self.store_with_auto_processing(user_id, integration_id, result)
        integration.last_sync = datetime.now(timezone.utc)
        self.db.commit()

        log.info(
            "email_sync_completed",
            transactions=len(result.transactions),
            accounts=len(result.accounts),
            processed=result.processed_count,
            auto_processed=result.auto_processed,
            queued=result.queued,
            errors=len(result.errors),
        )
        return result

    def reprocess_stored_emails(self, user_id: int, integration_id: int) -> SyncResult:
        """Re-run a full sync without the incremental cutoff."""
        integration = self.get_integration(user_id, integration_id)
        original_last_sync = integration.last_sync
        integration.last_sync = None
        self.db.commit()
        try:
            return self.process_emails_for_user(user_id, integration_id)
        finally:
            integration.last_sync = original_last_sync
            self.db.commit()

    # --- storage ---

    def _auto_create(self, user_id: int, tx: ParsedTransaction) -> Optional[Transaction]:
        info = tx.account_info
        try:
            return ledger.add_transaction(
                self.db,
                user_id,
                transaction_type=tx.transaction_type,
                amount=tx.amount,
                description=tx.description,
                transaction_date=tx.transaction_date,
                category_name=tx.category,
                payment_method="bank_transfer",
                account_name=ledger.format_account_name(info.bank_name, info.account_number_partial),
                notes=f"Auto-imported from {tx.sender}",
                source="email",
            )
        except Exception:
            self.db.rollback()
            logger.exception("auto_create_failed", email_id=tx.raw_email_id)
            return None

    def _record_transaction(
        self,
        user_id: int,
        integration_id: int,
        tx: ParsedTransaction,
        status: str = "pending",
        created_transaction_id: Optional[int] = None,
    ) -> bool:
        if self._already_recorded(integration_id, tx.raw_email_id):
            return False
        info = tx.account_info
        self.db.add(
            ParsedTransactionRecord(
                user_id=user_id,
                email_integration_id=integration_id,
                raw_email_id=tx.raw_email_id,
                email_subject=tx.email_subject,
                email_date=tx.email_date,
                sender=tx.sender,
                transaction_type=tx.transaction_type,
                amount=tx.amount,
                currency=tx.currency,
                transaction_date=tx.transaction_date,
                description=tx.description,
                merchant=tx.merchant,
                category=tx.category,
                bank_name=info.bank_name,
                account_number_partial=info.account_number_partial,
                account_type=info.account_type,
                confidence_score=tx.confidence_score,
                needs_review=tx.needs_review,
                parsing_notes=tx.parsing_notes,
                status=status,
                created_transaction_id=created_transaction_id,
            )
        )
        self.db.commit()
        return True

    def _record_account(self, user_id: int, integration_id: int, acc: ParsedAccount) -> bool:
        exists = (
            self.db.query(DiscoveredAccount.id)
            .filter(
                DiscoveredAccount.email_integration_id == integration_id,
                DiscoveredAccount.bank_name == acc.bank_name,
                DiscoveredAccount.account_number_partial == acc.account_number_partial,
            )
            .first()
        )
        if exists:
            return False
        self.db.add(
            DiscoveredAccount(
                user_id=user_id,
                email_integration_id=integration_id,
                discovered_from_email_id=acc.discovered_from_email_id,
                discovery_method="email_parsing",
                bank_name=acc.bank_name,
                account_number_partial=acc.account_number_partial,
                account_type=acc.account_type,
                current_balance=acc.current_balance,
                account_holder_name=acc.account_holder_name,
                confidence_score=acc.confidence_score,
                needs_review=acc.needs_review,
                discovery_notes=acc.discovery_notes,
                status="pending",
            )
        )
        self.db.commit()
        return True

    def store_with_auto_processing(self, user_id: int, integration_id: int, result: SyncResult) -> SyncResult:
        for acc in result.accounts:
            self._record_account(user_id, integration_id, acc)

        for tx in result.transactions:
            if self._already_recorded(integration_id, tx.raw_email_id):
                continue
            created = self._auto_create(user_id, tx) if can_auto_process(tx) else None
            if created:
                self._record_transaction(user_id, integration_id, tx, "auto_processed", created.id)
                result.auto_processed += 1
            elif self._record_transaction(user_id, integration_id, tx):
                result.queued += 1

        logger.info("parsed_data_stored", auto_processed=result.auto_processed, queued=result.queued)
        return result

    # --- review queue ---

    def pending_transactions(self, user_id: int) -> list[ParsedTransactionRecord]:
        return (
            self.db.query(ParsedTransactionRecord)
            .filter(ParsedTransactionRecord.user_id == user_id, ParsedTransactionRecord.status == "pending")
            .order_by(ParsedTransactionRecord.created_at.desc(), ParsedTransactionRecord.id.desc())
            .all()
        )

    def pending_accounts(self, user_id: int) -> list[DiscoveredAccount]:
        return (
            self.db.query(DiscoveredAccount)
            .filter(DiscoveredAccount.user_id == user_id, DiscoveredAccount.status == "pending")
            .order_by(DiscoveredAccount.confidence_score.desc(), DiscoveredAccount.id.desc())
            .all()
        )

    def _pending_record(self, user_id: int, record_id: int) -> ParsedTransactionRecord:
        record = (
            self.db.query(ParsedTransactionRecord)
            .filter(ParsedTransactionRecord.id == record_id, ParsedTransactionRecord.user_id == user_id)
            .first()
        )
        if not record:
            raise NotFoundError(f"Parsed transaction {record_id} not found")
        if record.status != "pending":
            raise ValidationError(f"Parsed transaction {record_id} is already {record.status}")
        return record

    def approve_transaction(self, user_id: int, record_id: int) -> Transaction:
        record = self._pending_record(user_id, record_id)
        if record.transaction_type not in ("credit", "debit"):
            raise ValidationError("Cannot approve a transaction without a direction")

        txn = ledger.add_transaction(
            self.db,
            user_id,
            transaction_type=record.transaction_type,
            amount=record.amount,
            description=record.description,
            transaction_date=record.transaction_date or record.created_at.date(),
            category_name=record.category,
            payment_method="bank_transfer",
            account_name=ledger.format_account_name(record.bank_name, record.account_number_partial),
            notes=f"Imported from {record.sender}",
            source="email",
        )
        record.status = "approved"
        record.created_transaction_id = txn.id
        self.db.commit()
        return txn

    def reject_transaction(self, user_id: int, record_id: int) -> None:
        record = self._pending_record(user_id, record_id)
        record.status = "rejected"
        self.db.commit()

    def _pending_account(self, user_id: int, discovered_id: int) -> DiscoveredAccount:
        discovered = (
            self.db.query(DiscoveredAccount)
            .filter(DiscoveredAccount.id == discovered_id, DiscoveredAccount.user_id == user_id)
            .first()
        )
        if not discovered:
            raise NotFoundError(f"Discovered account {discovered_id} not found")
        if discovered.status != "pending":
            raise ValidationError(f"Discovered account {discovered_id} is already {discovered.status}")
        return discovered

    def approve_account(self, user_id: int, discovered_id: int, name: Optional[str] = None) -> Account:
        discovered = self._pending_account(user_id, discovered_id)
        account = ledger.create_account(
            self.db,
            user_id,
            name=name or ledger.format_account_name(discovered.bank_name, discovered.account_number_partial),
            account_type=discovered.account_type or "savings",
            bank_name=discovered.bank_name,
            account_number_masked=f"****{discovered.account_number_partial}" if discovered.account_number_partial else None,
            balance=discovered.current_balance or 0.0,
        )
        discovered.status = "approved"
        self.db.commit()
        return account

    def reject_account(self, user_id: int, discovered_id: int) -> None:
        discovered = self._pending_account(user_id, discovered_id)
        discovered.status = "rejected"
        self.db.commit()
