"""
gmail_client.py
---------------
Thin wrapper around the Gmail REST API (messages.list / messages.get) and
a helper that flattens a message resource into subject, sender, date and a
plain-text body.
"""

from __future__ import annotations

import base64
import binascii
import os
from typing import Optional

import requests
import structlog
from bs4 import BeautifulSoup
from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

logger = structlog.get_logger()

GMAIL_API_BASE = os.getenv("GMAIL_API_BASE", "https://gmail.googleapis.com/gmail/v1/users/me")
REQUEST_TIMEOUT = 30

_BLOCK_TAGS = ["p", "div", "tr", "li", "table", "h1", "h2", "h3", "h4"]


class EmailMessage(BaseModel):
    id: str
    subject: str = ""
    sender: str = ""
    date: str = ""
    body: str = ""


class GmailClient:
    def __init__(self, access_token: str, base_url: Optional[str] = None, session: Optional[requests.Session] = None):
        self.base_url = (base_url or GMAIL_API_BASE).rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {access_token}"})

    def search_messages(self, query: str, max_results: int = 20) -> list[str]:
        """Return message ids matching a Gmail search query."""
        resp = self.session.get(
            f"{self.base_url}/messages",
            params={"q": query, "maxResults": max_results},
            timeout=REQUEST_TIMEOUT,
        )
        resp.raise_for_status()
        messages = resp.json().get("messages", [])
        logger.debug("gmail_search", query=query, found=len(messages))
        return [m["id"] for m in messages[:max_results]]

    def get_message(self, message_id: str) -> dict:
        resp = self.session.get(
            f"{self.base_url}/messages/{message_id}",
            params={"format": "full"},
            timeout=REQUEST_TIMEOUT,
        )
        resp.raise_for_status()
        return resp.json()


def decode_base64url(data: str) -> str:
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        logger.warning("body_decode_failed", length=len(data))
        return ""


def html_to_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for tag in soup.find_all(_BLOCK_TAGS):
        tag.insert_after("\n")

    lines = (" ".join(line.split()) for line in soup.get_text().splitlines())
    return "\n".join(line for line in lines if line)


def _header(headers: list[dict], name: str) -> str:
    for header in headers or []:
        if header.get("name", "").lower() == name.lower():
            return header.get("value", "")
    return ""


def _collect_bodies(part: dict, plain: list[str], html: list[str]) -> None:
    mime = (part.get("mimeType") or "").lower()
    data = (part.get("body") or {}).get("data")
    if data:
        if mime == "text/html":
            html.append(decode_base64url(data))
        elif mime.startswith("text/") or not mime:
            plain.append(decode_base64url(data))
    for child in part.get("parts") or []:
        _collect_bodies(child, plain, html)


def extract_email(message: dict) -> EmailMessage:
    payload = message.get("payload") or {}
    headers = payload.get("headers") or []

    plain, html = [], []
    _collect_bodies(payload, plain, html)
    if any(p.strip() for p in plain):
        body = "\n".join(p for p in plain if p.strip())
    elif html:
        body = "\n".join(html_to_text(h) for h in html)
    else:
        body = message.get("snippet", "")

    return EmailMessage(
        id=message.get("id", ""),
        subject=_header(headers, "Subject"),
        sender=_header(headers, "From"),
        date=_header(headers, "Date"),
        body=body.strip(),
    )
