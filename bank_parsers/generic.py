"""
Bank-agnostic fallback parser.

Used when no bank-specific parser claims the sender. It knows the sender
domains of the common Indian banks and wallets and uses looser, more
numerous patterns than the dedicated parsers. The bank-identification
weight is only awarded when the sender domain maps to a named institution.
An unknown sender can still score 0.9, but it carries no bank name, so
``can_auto_process`` sends it to review.
"""

from __future__ import annotations

import re
from datetime import date
from typing import Optional

from bank_parsers.base import (
    BankParser,
    ParsedAccount,
    TransactionType,
    find_balance,
    parse_day_first_date,
)

KNOWN_SENDERS = {
    "sbi.co.in": "SBI",
    "hdfcbank.com": "HDFC",
    "hdfcbank.net": "HDFC",
    "icicibank.com": "ICICI",
    "axisbank.com": "AXIS",
    "kotak.com": "KOTAK",
    "yesbank.in": "YES",
    "indusind.com": "INDUSIND",
    "pnb.co.in": "PNB",
    "bankofbaroda.co.in": "BOB",
    "bankofbaroda.com": "BOB",
    "canarabank.com": "CANARA",
    "unionbankofindia.co.in": "UNION",
    "idfcfirstbank.com": "IDFC FIRST",
    "rbl.co.in": "RBL",
    "rblbank.com": "RBL",
    "sc.com": "STANDARD CHARTERED",
    "citibank.co.in": "CITI",
    "hsbc.co.in": "HSBC",
    "dbs.com": "DBS",
    "americanexpress.com": "AMEX",
    "paytm.com": "PAYTM",
    "phonepe.com": "PHONEPE",
    "gpay.com": "GPAY",
    "razorpay.com": "RAZORPAY",
    "bharatpe.com": "BHARATPE",
    "cred.club": "CRED",
}

FINANCIAL_SENDER_KEYWORDS = re.compile(
    r"bank|card|alert|upi|neft|imps|wallet|paytm|phonepe|finance|payments?", re.IGNORECASE
)

# (pattern, weight) pairs; longer phrases weigh more
_DEBIT_KEYWORDS = [
    (re.compile(r"\bdebited\b", re.IGNORECASE), 7),
    (re.compile(r"\bwithdrawn\b", re.IGNORECASE), 9),
    (re.compile(r"\bspent\b", re.IGNORECASE), 5),
    (re.compile(r"\bpurchase\b", re.IGNORECASE), 8),
    (re.compile(r"\bdebit\b", re.IGNORECASE), 5),
    (re.compile(r"\bpaid\b", re.IGNORECASE), 4),
    (re.compile(r"\bdr\b", re.IGNORECASE), 2),
]
_CREDIT_KEYWORDS = [
    (re.compile(r"\bcredited\b", re.IGNORECASE), 8),
    (re.compile(r"\breceived\b", re.IGNORECASE), 8),
    (re.compile(r"\bdeposited\b", re.IGNORECASE), 9),
    (re.compile(r"\brefund(?:ed)?\b", re.IGNORECASE), 6),
    (re.compile(r"\bcashback\b", re.IGNORECASE), 8),
    (re.compile(r"\bcredit\b", re.IGNORECASE), 6),
    (re.compile(r"\bcr\b", re.IGNORECASE), 2),
]
# "credit card" / "debit card" name an instrument, not a direction
_CARD_NOUN_RE = re.compile(r"\b(?:credit|debit)\s+card\b", re.IGNORECASE)

_MERCHANT_PATTERNS = [
    re.compile(
        r"\b(?i:at|to|towards|from)\s+([A-Z][A-Za-z0-9&' -]{2,40}?)"
        r"(?:\s+(?i:on|for|via|using|ref)\b|[.,;]|\s*$)"
    ),
    re.compile(r"(?i:merchant(?:\s+name)?)\s*[:\-]\s*([A-Za-z0-9&.' ]{3,40}?)(?:\s{2,}|[.,\n]|$)"),
    re.compile(r"(?i:info)\s*[:\-]\s*([A-Za-z0-9&.' *]{3,40}?)(?:\s{2,}|[.,\n]|$)"),
]
_MERCHANT_STOPWORDS = {"your", "you", "your account", "account", "card", "the"}

_REFERENCE_RE = re.compile(
    r"(?:upi\s*ref(?:erence)?|rrn|ref(?:erence)?|txn|transaction)\s*"
    r"(?:id|no\.?|number)?\s*(?:is)?\s*[:.\-]?\s*((?=[A-Za-z0-9]*\d)[A-Za-z0-9]{6,})",
    re.IGNORECASE,
)

_DATE_PATTERNS = [
    re.compile(r"\b(\d{1,2}[/-]\d{1,2}[/-]\d{4})\b"),
    re.compile(r"\b(\d{4}-\d{1,2}-\d{1,2})\b"),
    re.compile(r"\b(\d{1,2}[\s-](?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*[\s-]\d{2,4})\b", re.IGNORECASE),
    re.compile(r"\b(\d{1,2}[/-]\d{1,2}[/-]\d{2})\b"),
]

MERCHANT_CATEGORIES = [
    (re.compile(r"amazon|flipkart|myntra|ajio", re.IGNORECASE), "Shopping"),
    (re.compile(r"swiggy|zomato|dominos|mcdonald", re.IGNORECASE), "Food & Dining"),
    (re.compile(r"uber|\bola\b|metro|\bbus\b|irctc", re.IGNORECASE), "Transportation"),
    (re.compile(r"phonepe|paytm|gpay", re.IGNORECASE), "Digital Wallet"),
    (re.compile(r"netflix|spotify|prime video|hotstar", re.IGNORECASE), "Entertainment"),
    (re.compile(r"electricity|\bgas\b|water bill|recharge|broadband", re.IGNORECASE), "Utilities"),
    (re.compile(r"hospital|medical|pharmacy|apollo", re.IGNORECASE), "Healthcare"),
    (re.compile(r"petrol|fuel|hpcl|bpcl|indian oil", re.IGNORECASE), "Fuel"),
    (re.compile(r"grocery|supermarket|dmart|bigbasket|blinkit", re.IGNORECASE), "Groceries"),
]


def _month_name_date(raw: str) -> Optional[date]:
    # "04 Aug 2025", "4-August-25"
    parts = re.split(r"[\s-]+", raw.strip())
    if len(parts) != 3:
        return None
    day, month, year = parts
    return parse_day_first_date(f"{day}-{month[:3].title()}-{year}")


class GenericEmailParser(BankParser):
    bank_name = "GENERIC"
    debit_credit_pattern = re.compile(
        r"\b(?:debited|credited|debit|credit|spent|purchase|withdrawn|paid|received|deposited"
        r"|refund(?:ed)?|cashback|dr|cr)\b",
        re.IGNORECASE,
    )
    account_pattern = re.compile(
        r"(?:a/c|acct|account|card)\s*(?:no\.?|number)?\s*(?:ending\s*(?:with|in)?\s*)?[:\-]?\s*[x*]*\s*(\d{4})\b"
        r"|[x*]{2,}\s*(\d{4})\b",
        re.IGNORECASE,
    )

    def bank_for_sender(self, sender: str) -> Optional[str]:
        sender = (sender or "").lower()
        for domain, bank in KNOWN_SENDERS.items():
            if domain in sender:
                return bank
        return None

    def can_parse(self, subject: str, body: str, sender: str) -> bool:
        if self.bank_for_sender(sender):
            return True
        return bool(FINANCIAL_SENDER_KEYWORDS.search(sender or ""))

    def identify_bank(self, sender: str) -> Optional[str]:
        return self.bank_for_sender(sender)

    def detect_type(self, body: str, subject: str) -> TransactionType:
        text = _CARD_NOUN_RE.sub(" ", f"{subject} {body}")
        debit = sum(weight for pattern, weight in _DEBIT_KEYWORDS if pattern.search(text))
        credit = sum(weight for pattern, weight in _CREDIT_KEYWORDS if pattern.search(text))
        if debit > credit:
            return "debit"
        if credit > debit:
            return "credit"
        return "unknown"

    def extract_merchant(self, body: str, subject: str) -> Optional[str]:
        text = f"{subject} {body}"
        for pattern in _MERCHANT_PATTERNS:
            match = pattern.search(text)
            if not match:
                continue
            merchant = match.group(1).strip(" .-")
            if 3 < len(merchant) < 50 and merchant.lower() not in _MERCHANT_STOPWORDS:
                return merchant
        return None

    def extract_reference(self, text: str) -> Optional[str]:
        match = _REFERENCE_RE.search(text)
        return match.group(1) if match else None

    def extract_description(self, body: str, subject: str) -> tuple[str, Optional[str]]:
        merchant = self.extract_merchant(body, subject)
        description = subject
        for sentence in re.split(r"(?<=\.)\s+|\n+", body):
            sentence = sentence.strip()
            if 20 < len(sentence) < 200 and re.search(
                r"transaction|payment|debited|credited|spent", sentence, re.IGNORECASE
            ):
                description = sentence
                break
        if len(description) > 500:
            description = description[:500] + "..."
        return description, merchant

    def extract_date(self, text: str) -> Optional[date]:
        for pattern in _DATE_PATTERNS:
            match = pattern.search(text)
            if not match:
                continue
            raw = match.group(1)
            parsed = _month_name_date(raw) if re.search(r"[A-Za-z]", raw) else parse_day_first_date(raw)
            if parsed:
                return parsed
        return None

    def categorize(self, description: str, merchant: Optional[str], body: str) -> str:
        text = f"{merchant or ''} {description} {body}"
        for pattern, category in MERCHANT_CATEGORIES:
            if pattern.search(text):
                return category
        return "Other"

    def account_type_for(self, body: str) -> str:
        return "credit_card" if re.search(r"credit\s+card", body, re.IGNORECASE) else "savings"

    def parsing_notes(self, sender: str, body: str) -> str:
        notes = f"Parsed by generic parser from {sender}"
        reference = self.extract_reference(body)
        if reference:
            notes += f"; ref {reference}"
        return notes

    def parse_account_info(
        self, email_id: str, subject: str, sender: str, body: str
    ) -> Optional[ParsedAccount]:
        bank = self.bank_for_sender(sender)
        account_partial = self.extract_account(body)
        if not bank or not account_partial:
            return None

        balance = find_balance(body)
        return ParsedAccount(
            discovered_from_email_id=email_id,
            bank_name=bank,
            account_number_partial=account_partial,
            account_type=self.account_type_for(body),
            current_balance=balance,
            confidence_score=0.5 + (0.5 if balance is not None else 0.0),
            needs_review=True,
            discovery_notes=f"Discovered from {bank} email: {subject}",
        )
