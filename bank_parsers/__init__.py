"""Bank notification parsers and the registry that picks one per sender."""

from __future__ import annotations

from typing import Optional

import structlog

from bank_parsers.axis import AxisBankParser
from bank_parsers.base import (
    AccountInfo,
    BankParser,
    BankParserResult,
    ParsedAccount,
    ParsedTransaction,
    score_confidence,
)
from bank_parsers.generic import GenericEmailParser
from bank_parsers.hdfc import HdfcBankParser

logger = structlog.get_logger()


def default_parsers() -> list[BankParser]:
    return [AxisBankParser(), HdfcBankParser()]


class BankParserRegistry:
    """Ordered bank-specific parsers; the first one that claims a sender wins."""

    def __init__(self, parsers: Optional[list[BankParser]] = None):
        self._parsers = list(parsers) if parsers is not None else default_parsers()

    def parser_for_email(self, subject: str, body: str, sender: str) -> Optional[BankParser]:
        for parser in self._parsers:
            if parser.can_parse(subject, body, sender):
                logger.debug("parser_selected", bank=parser.get_bank_name(), sender=sender)
                return parser
        logger.debug("no_parser_for_sender", sender=sender)
        return None

    def all_parsers(self) -> list[BankParser]:
        return list(self._parsers)

    def parser_for_bank(self, bank_name: str) -> Optional[BankParser]:
        for parser in self._parsers:
            if parser.get_bank_name().lower() == bank_name.lower():
                return parser
        return None

    def register(self, parser: BankParser) -> None:
        self._parsers.append(parser)
        logger.info("parser_registered", bank=parser.get_bank_name())

    def supported_banks(self) -> list[str]:
        return [parser.get_bank_name() for parser in self._parsers]


__all__ = [
    "AccountInfo",
    "AxisBankParser",
    "BankParser",
    "BankParserRegistry",
    "BankParserResult",
    "GenericEmailParser",
    "HdfcBankParser",
    "ParsedAccount",
    "ParsedTransaction",
    "default_parsers",
    "score_confidence",
]
