from __future__ import annotations

import re
from datetime import date
from typing import Optional

from bank_parsers.base import (
    PROMOTIONAL_PATTERNS,
    BankParser,
    ParsedAccount,
    TransactionType,
    parse_day_first_date,
)

# Sample alert:
#   Rs.184.24 has been debited from account 7312 to VPA archminton117569.rzp@rxairtel
#   ARCHMINTON on 04-08-25. Your UPI transaction reference number is 521612345678.
# Older alerts name the account as "from your HDFC Bank A/c XX7312".

_DEBIT_RE = re.compile(r"has been debited|debited from", re.IGNORECASE)
_CREDIT_RE = re.compile(r"has been credited|credited to", re.IGNORECASE)
_VPA_RE = re.compile(r"(?i:to|from)\s+(?i:vpa)\s+(\S+?)\s+([A-Z][A-Z0-9&.' -]*[A-Z0-9])")
_UPI_REF_RE = re.compile(r"upi transaction reference number is (\d+)", re.IGNORECASE)
_DATE_RE = re.compile(r"\b(\d{2}-\d{2}-\d{2}(?:\d{2})?)\b")

_CATEGORY_RULES = [
    (re.compile(r"archminton|sports|game", re.IGNORECASE), "Entertainment"),
    (re.compile(r"@.*(?:paytm|phonepe|gpay|ybl|okaxis|oksbi|okicici)", re.IGNORECASE), "Digital Wallet"),
    (re.compile(r"upi to ", re.IGNORECASE), "UPI Transfer"),
    (re.compile(r"ref:|reference", re.IGNORECASE), "UPI Payment"),
]


class HdfcBankParser(BankParser):
    bank_name = "HDFC"
    sender_patterns = [re.compile(r"hdfc", re.IGNORECASE)]
    debit_credit_pattern = re.compile(
        r"has been debited|has been credited|debited from|credited to", re.IGNORECASE
    )
    account_pattern = re.compile(
        r"(?:from|to)\s+(?:your\s+)?(?:account|a/c)\s+(?:no\.?\s*)?[x*]*(\d{4})\b"
        r"|\ba/c\s*(?:no\.?\s*)?[x*]+(\d{4})\b",
        re.IGNORECASE,
    )
    promotional_patterns = PROMOTIONAL_PATTERNS + [
        re.compile(r"apply\s+now", re.IGNORECASE),
        re.compile(r"upgrade\s+your", re.IGNORECASE),
    ]

    def detect_type(self, body: str, subject: str) -> TransactionType:
        if _DEBIT_RE.search(body):
            return "debit"
        if _CREDIT_RE.search(body):
            return "credit"
        return "unknown"

    def extract_description(self, body: str, subject: str) -> tuple[str, Optional[str]]:
        vpa = _VPA_RE.search(body)
        if vpa:
            vpa_id = vpa.group(1).rstrip(".,")
            merchant = vpa.group(2).strip()
            return f"UPI to {vpa_id} ({merchant})", merchant

        ref = _UPI_REF_RE.search(body)
        if ref:
            return f"UPI Transaction Ref: {ref.group(1)}", None
        return subject, None

    def extract_date(self, text: str) -> Optional[date]:
        match = _DATE_RE.search(text)
        return parse_day_first_date(match.group(1)) if match else None

    def categorize(self, description: str, merchant: Optional[str], body: str) -> str:
        text = f"{description} {merchant or ''}"
        for pattern, category in _CATEGORY_RULES:
            if pattern.search(text):
                return category
        return "Other"

    def parse_account_info(
        self, email_id: str, subject: str, sender: str, body: str
    ) -> Optional[ParsedAccount]:
        account_partial = self.extract_account(body)
        if not account_partial:
            return None

        # HDFC alerts carry no balance figure
        return ParsedAccount(
            discovered_from_email_id=email_id,
            bank_name=self.bank_name,
            account_number_partial=account_partial,
            account_type=self.default_account_type,
            current_balance=None,
            confidence_score=0.8,
            needs_review=True,
            discovery_notes=f"Discovered from HDFC Bank email: {subject}",
        )
