from __future__ import annotations

import base64
import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# keep the module-level engine off the real database file
os.environ.setdefault("DATABASE_URL", "sqlite://")

from database import Base, User  # noqa: E402

HDFC_EMAIL = {
    "email_id": "msg-hdfc-1",
    "subject": "You have done a UPI txn. Check details!",
    "sender": "HDFC Bank InstaAlerts <alerts@hdfcbank.net>",
    "email_date": "Mon, 04 Aug 2025 19:02:11 +0530",
    "body": (
        "Dear Customer, Rs.184.24 has been debited from account 7312 to VPA "
        "archminton117569.rzp@rxairtel ARCHMINTON on 04-08-25. "
        "Your UPI transaction reference number is 521612345678."
    ),
}

AXIS_EMAIL = {
    "email_id": "msg-axis-1",
    "subject": "Debit transaction alert",
    "sender": "Axis Bank Alerts <alerts@axisbank.com>",
    "email_date": "Tue, 12 Aug 2025 19:02:11 +0530",
    "body": (
        "INR 450.00 debited\n"
        "A/c no. XX3622\n"
        "12-08-25, 19:02:11\n"
        "UPI/P2M/521923456789/SWIGGY LIMITED\n"
        "Not you? Call 18001035577"
    ),
}

ICICI_EMAIL = {
    "email_id": "msg-icici-1",
    "subject": "Transaction alert for your ICICI Bank Credit Card",
    "sender": "ICICI Bank <credit_cards@icicibank.com>",
    "email_date": "Tue, 05 Aug 2025 10:15:00 +0530",
    "body": "INR 1,299.00 spent on ICICI Bank Credit Card XX9001 on 05-Aug-25 at Amazon. Avl Limit: INR 50,000.00",
}


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session(engine) -> Session:
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    with SessionLocal() as s:
        yield s


@pytest.fixture()
def user(session) -> User:
    u = User(username="asha", email="asha@example.com", password_hash="x", role="admin")
    session.add(u)
    session.commit()
    session.refresh(u)
    return u


def encode(text: str) -> str:
    """Gmail-style base64url without padding."""
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def gmail_message(email: dict, html: bool = False) -> dict:
    mime = "text/html" if html else "text/plain"
    body = f"<html><body><p>{email['body']}</p></body></html>" if html else email["body"]
    return {
        "id": email["email_id"],
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [
                {"name": "Subject", "value": email["subject"]},
                {"name": "From", "value": email["sender"]},
                {"name": "Date", "value": email["email_date"]},
            ],
            "parts": [{"mimeType": mime, "body": {"data": encode(body)}}],
        },
    }


class StubGmailClient:
    """Serves canned messages for any query."""

    def __init__(self, messages: list[dict], fail_queries: bool = False):
        self.messages = {m["id"]: m for m in messages}
        self.fail_queries = fail_queries
        self.queries: list[str] = []
        self.fetched: list[str] = []

    def search_messages(self, query: str, max_results: int = 20) -> list[str]:
        self.queries.append(query)
        if self.fail_queries:
            raise RuntimeError("quota exceeded")
        return list(self.messages)[:max_results]

    def get_message(self, message_id: str) -> dict:
        self.fetched.append(message_id)
        return self.messages[message_id]


@pytest.fixture()
def stub_client():
    return StubGmailClient([gmail_message(HDFC_EMAIL), gmail_message(AXIS_EMAIL)])
