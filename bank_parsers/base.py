"""
Shared machinery for bank notification email parsers.

A parser turns (subject, body, sender) into a ``BankParserResult`` or
``None``. Every parser runs the same linear pipeline:

1. the sender must match the bank's identity patterns
2. the text must carry a debit/credit keyword
3. an amount with a currency marker (Rs. / INR / ₹) must be present
4. a masked account or card number must be present
5. promotional wording rejects the email outright

Subclasses supply the regexes and the bank-specific extraction hooks.
A missing type, amount or account discards the whole email.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from datetime import date, datetime
from email.utils import parsedate_to_datetime
from typing import Literal, Optional, Pattern, Sequence

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger()

TransactionType = Literal["credit", "debit", "unknown"]

# Confidence is the sum of these weights for the signals that were found.
CONFIDENCE_WEIGHTS = {
    "amount": 0.3,
    "account": 0.3,
    "type": 0.3,
    "bank": 0.1,
}
REVIEW_THRESHOLD = 0.9

AMOUNT_PREFIX_PATTERN = re.compile(
    r"(?:(?<![a-z])(?:rs\.?|inr)|₹)\s*(\d+(?:,\d+)*(?:\.\d+)?)", re.IGNORECASE
)
# "250 INR"; never a number glued to a time, date or masked account
AMOUNT_SUFFIX_PATTERN = re.compile(
    r"(?<![\d:/.\-x*,])(\d+(?:,\d+)*(?:\.\d+)?)\s*(?:rs\.?|₹|inr)(?![a-z])", re.IGNORECASE
)
# searched in order: a prefixed amount wins over a suffixed one
AMOUNT_PATTERNS = (AMOUNT_PREFIX_PATTERN, AMOUNT_SUFFIX_PATTERN)
BALANCE_PATTERN = re.compile(
    r"(?:balance|\bbal\b\.?)[\s:\-]*(?:is\s*)?(?:rs\.?\s*|₹\s*|inr\s*)?(\d+(?:,\d+)*(?:\.\d+)?)",
    re.IGNORECASE,
)

PROMOTIONAL_PATTERNS = [
    re.compile(r"special\s+offer", re.IGNORECASE),
    re.compile(r"limited\s+time\s+offer", re.IGNORECASE),
    re.compile(r"discount\s+offer", re.IGNORECASE),
    re.compile(r"cashback\s+offer", re.IGNORECASE),
    re.compile(r"bonus\s+points", re.IGNORECASE),
    re.compile(r"win\s+prizes?", re.IGNORECASE),
    re.compile(r"congratulations.*won", re.IGNORECASE | re.DOTALL),
    re.compile(r"exclusive\s+deal", re.IGNORECASE),
]

DATE_FORMATS = ("%d-%m-%Y", "%d-%m-%y", "%Y-%m-%d", "%d-%b-%Y", "%d-%b-%y")


class AccountInfo(BaseModel):
    bank_name: Optional[str] = None
    account_number_partial: Optional[str] = None
    account_type: Optional[str] = None


class ParsedTransaction(BaseModel):
    """A transaction extracted from one notification email."""

    raw_email_id: str
    email_subject: str
    email_date: str
    sender: str

    transaction_type: TransactionType
    amount: float
    currency: str = "INR"
    transaction_date: Optional[date] = None
    description: str
    merchant: Optional[str] = None
    category: Optional[str] = None

    account_info: AccountInfo = Field(default_factory=AccountInfo)

    confidence_score: float = Field(ge=0.0, le=1.0)
    needs_review: bool
    parsing_notes: Optional[str] = None


class ParsedAccount(BaseModel):
    """An account seen in a notification email, pending user approval."""

    discovered_from_email_id: str
    bank_name: str
    account_number_partial: Optional[str] = None
    account_type: Optional[str] = None
    current_balance: Optional[float] = None
    account_holder_name: Optional[str] = None
    confidence_score: float = Field(ge=0.0, le=1.0)
    needs_review: bool = True
    discovery_notes: Optional[str] = None


class BankParserResult(BaseModel):
    transaction: ParsedTransaction
    account: Optional[ParsedAccount] = None


def score_confidence(
    amount: Optional[float],
    account_partial: Optional[str],
    transaction_type: str,
    bank_identified: bool,
) -> float:
    score = 0.0
    if amount and amount > 0:
        score += CONFIDENCE_WEIGHTS["amount"]
    if account_partial and len(account_partial) == 4 and account_partial.isdigit():
        score += CONFIDENCE_WEIGHTS["account"]
    if transaction_type in ("credit", "debit"):
        score += CONFIDENCE_WEIGHTS["type"]
    if bank_identified:
        score += CONFIDENCE_WEIGHTS["bank"]
    return round(min(1.0, score), 2)


def parse_amount(raw: str) -> Optional[float]:
    """'1,23,456.50' -> 123456.5"""
    try:
        return float(raw.replace(",", ""))
    except (AttributeError, ValueError):
        return None


def find_amount(text: str, patterns: Sequence[Pattern] = AMOUNT_PATTERNS) -> Optional[float]:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return parse_amount(match.group(1))
    return None


def find_balance(text: str) -> Optional[float]:
    match = BALANCE_PATTERN.search(text)
    return parse_amount(match.group(1)) if match else None


def parse_day_first_date(raw: str) -> Optional[date]:
    """Parse bank-style dates (04-08-25, 4/8/2025, 2025-08-04, 04-Aug-2025)."""
    cleaned = re.sub(r"[/.\s]+", "-", raw.strip())
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    return None


def parse_email_date(header: str) -> Optional[date]:
    """Date of an RFC 2822 ``Date:`` header, or None when unparseable."""
    if not header:
        return None
    try:
        return parsedate_to_datetime(header).date()
    except (TypeError, ValueError, IndexError):
        return parse_day_first_date(header)


def first_match(patterns, *texts: str) -> Optional[re.Match]:
    for pattern in patterns:
        for text in texts:
            match = pattern.search(text)
            if match:
                return match
    return None


class BankParser(ABC):
    """Template for a single bank's notification emails."""

    bank_name: str
    sender_patterns: list[Pattern] = []
    debit_credit_pattern: Pattern
    amount_patterns: Sequence[Pattern] = AMOUNT_PATTERNS
    account_pattern: Pattern
    promotional_patterns: list[Pattern] = PROMOTIONAL_PATTERNS
    default_account_type = "savings"

    def get_bank_name(self) -> str:
        return self.bank_name

    def can_parse(self, subject: str, body: str, sender: str) -> bool:
        return any(p.search(sender or "") for p in self.sender_patterns)

    def is_transaction_email(self, subject: str, body: str, sender: str) -> bool:
        log = logger.bind(bank=self.bank_name, subject=subject[:100])

        if not self.can_parse(subject, body, sender):
            log.debug("email_rejected", reason="sender")
            return False
        if not (self.debit_credit_pattern.search(body) or self.debit_credit_pattern.search(subject)):
            log.debug("email_rejected", reason="no_debit_credit_keyword")
            return False
        if not (find_amount(body, self.amount_patterns) or find_amount(subject, self.amount_patterns)):
            log.debug("email_rejected", reason="no_currency_amount")
            return False
        if not (self.account_pattern.search(body) or self.account_pattern.search(subject)):
            log.debug("email_rejected", reason="no_masked_account")
            return False
        return True

    def is_promotional_email(self, subject: str, body: str, sender: str) -> bool:
        match = first_match(self.promotional_patterns, body, subject)
        if match:
            logger.debug("promotional_email", bank=self.bank_name, pattern=match.re.pattern)
            return True
        return False

    def parse_email(
        self, email_id: str, subject: str, sender: str, email_date: str, body: str
    ) -> Optional[BankParserResult]:
        if not self.is_transaction_email(subject, body, sender):
            return None
        if self.is_promotional_email(subject, body, sender):
            return None

        transaction = self.parse_transaction(email_id, subject, sender, email_date, body)
        if transaction is None:
            return None

        account = self.parse_account_info(email_id, subject, sender, body)
        return BankParserResult(transaction=transaction, account=account)

    def parse_transaction(
        self, email_id: str, subject: str, sender: str, email_date: str, body: str
    ) -> Optional[ParsedTransaction]:
        log = logger.bind(bank=self.bank_name, email_id=email_id)

        transaction_type = self.detect_type(body, subject)
        if transaction_type == "unknown":
            log.info("parse_failed", reason="unknown_type")
            return None

        amount = find_amount(body, self.amount_patterns) or find_amount(subject, self.amount_patterns)
        if not amount or amount <= 0:
            log.info("parse_failed", reason="no_amount")
            return None

        account_partial = self.extract_account(body) or self.extract_account(subject)
        if not account_partial:
            log.info("parse_failed", reason="no_account")
            return None

        description, merchant = self.extract_description(body, subject)
        bank_name = self.identify_bank(sender)
        confidence = score_confidence(amount, account_partial, transaction_type, bank_name is not None)

        transaction = ParsedTransaction(
            raw_email_id=email_id,
            email_subject=subject,
            email_date=email_date,
            sender=sender,
            transaction_type=transaction_type,
            amount=amount,
            currency="INR",
            transaction_date=self.extract_date(body) or parse_email_date(email_date),
            description=description,
            merchant=merchant,
            category=self.categorize(description, merchant, body),
            account_info=AccountInfo(
                bank_name=bank_name,
                account_number_partial=account_partial,
                account_type=self.account_type_for(body),
            ),
            confidence_score=confidence,
            needs_review=confidence < REVIEW_THRESHOLD,
            parsing_notes=self.parsing_notes(sender, body),
        )
        log.info(
            "transaction_parsed",
            transaction_type=transaction_type,
            amount=amount,
            account=account_partial,
            merchant=merchant,
            confidence=confidence,
        )
        return transaction

    # --- hooks ---

    @abstractmethod
    def detect_type(self, body: str, subject: str) -> TransactionType: ...

    def extract_account(self, text: str) -> Optional[str]:
        match = self.account_pattern.search(text)
        if not match:
            return None
        digits = next((g for g in match.groups() if g), "")
        digits = re.sub(r"\D", "", digits)
        return digits[-4:] if len(digits) >= 4 else None

    @abstractmethod
    def extract_description(self, body: str, subject: str) -> tuple[str, Optional[str]]: ...

    @abstractmethod
    def extract_date(self, text: str) -> Optional[date]: ...

    @abstractmethod
    def categorize(self, description: str, merchant: Optional[str], body: str) -> str: ...

    def identify_bank(self, sender: str) -> Optional[str]:
        return self.bank_name

    def account_type_for(self, body: str) -> str:
        return self.default_account_type

    def parsing_notes(self, sender: str, body: str) -> str:
        return f"Parsed by {self.bank_name} parser from {sender}"

    def parse_account_info(
        self, email_id: str, subject: str, sender: str, body: str
    ) -> Optional[ParsedAccount]:
        return None
