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

# Sample alert:
#   INR 450.00 debited
#   A/c no. XX3622
#   12-08-25, 19:02:11
#   UPI/P2M/521923456789/SWIGGY LIMITED
#   Not you? Call 18001035577

_DEBIT_RE = re.compile(r"amount\s+debited|debited", re.IGNORECASE)
_CREDIT_RE = re.compile(r"amount\s+credited|credited", re.IGNORECASE)
_UPI_RE = re.compile(r"(upi/(p2[ma])/\d+/([^/\s]+))", re.IGNORECASE)
_DATE_RE = re.compile(r"\b(\d{1,2}[-/]\d{1,2}[-/]\d{2,4})\b")

_CATEGORY_RULES = [
    (re.compile(r"\bcred\b|credit card", re.IGNORECASE), "Credit Card Payment"),
    (re.compile(r"upi.*lounge|restaurant|food|swiggy|zomato", re.IGNORECASE), "Food & Dining"),
    (re.compile(r"upi.*transfer|p2a", re.IGNORECASE), "Transfer"),
    (re.compile(r"upi.*p2m", re.IGNORECASE), "UPI Payment"),
]


class AxisBankParser(BankParser):
    bank_name = "AXIS"
    sender_patterns = [re.compile(r"axis", re.IGNORECASE)]
    debit_credit_pattern = re.compile(
        r"amount\s+debited|amount\s+credited|debited|credited|debit|credit|\bdr\b|\bcr\b"
        r"|withdrawn|received|charged|refund",
        re.IGNORECASE,
    )
    account_pattern = re.compile(
        r"account\s+number:?\s*[x*]+(\d{4})\b"
        r"|(?:card|a/c)\s*(?:no\.?\s*)?[x*]+(\d{4})\b"
        r"|[x*]{2,}(\d{4})\b",
        re.IGNORECASE,
    )

    def detect_type(self, body: str, subject: str) -> TransactionType:
        if _DEBIT_RE.search(body):
            return "debit"
        if _CREDIT_RE.search(body):
            return "credit"
        return "unknown"

    def extract_description(self, body: str, subject: str) -> tuple[str, Optional[str]]:
        upi = _UPI_RE.search(body)
        if upi:
            return upi.group(1).strip(), upi.group(3).strip()
        return subject, None

    def extract_date(self, text: str) -> Optional[date]:
        match = _DATE_RE.search(text)
        return parse_day_first_date(match.group(1)) if match else None

    def categorize(self, description: str, merchant: Optional[str], body: str) -> str:
        for pattern, category in _CATEGORY_RULES:
            if pattern.search(description):
                return category
        return "Other"

    def parse_account_info(
        self, email_id: str, subject: str, sender: str, body: str
    ) -> Optional[ParsedAccount]:
        balance = find_balance(body)
        account_partial = self.extract_account(body)
        if balance is None and not account_partial:
            return None

        confidence = (0.5 if account_partial else 0.0) + (0.5 if balance is not None else 0.0)
        return ParsedAccount(
            discovered_from_email_id=email_id,
            bank_name=self.bank_name,
            account_number_partial=account_partial,
            account_type=self.default_account_type,
            current_balance=balance,
            confidence_score=confidence,
            needs_review=True,
            discovery_notes=f"Discovered from Axis Bank email: {subject}",
        )
