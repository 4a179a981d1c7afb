from datetime import date

from bank_parsers import GenericEmailParser
from conftest import ICICI_EMAIL
from email_parser import can_auto_process


def _parse(email, **overrides):
    email = {**email, **overrides}
    return GenericEmailParser().parse_email(
        email["email_id"], email["subject"], email["sender"], email["email_date"], email["body"]
    )


def test_known_bank_card_spend():
    result = _parse(ICICI_EMAIL)

    tx = result.transaction
    assert tx.transaction_type == "debit"
    assert tx.amount == 1299.0
    assert tx.transaction_date == date(2025, 8, 5)
    assert tx.merchant == "Amazon"
    assert tx.category == "Shopping"
    assert tx.account_info.bank_name == "ICICI"
    assert tx.account_info.account_number_partial == "9001"
    assert tx.account_info.account_type == "credit_card"
    assert tx.confidence_score == 1.0


def test_known_bank_account_discovery():
    account = _parse(ICICI_EMAIL).account
    assert account.bank_name == "ICICI"
    assert account.account_number_partial == "9001"
    assert account.confidence_score == 0.5


def test_unknown_domain_gets_no_bank_weight():
    result = _parse(ICICI_EMAIL, sender="Alerts <noreply@neobank.example>")

    tx = result.transaction
    assert tx.account_info.bank_name is None
    assert tx.confidence_score == 0.9
    assert result.account is None
    assert tx.needs_review is False
    assert not can_auto_process(tx)


def test_card_noun_does_not_decide_direction():
    body = "Your Credit Card XX9001 was used. INR 500.00 debited on 06-Aug-25 at Uber."
    tx = _parse(ICICI_EMAIL, body=body).transaction
    assert tx.transaction_type == "debit"
    assert tx.category == "Transportation"


def test_credit_keywords_win_over_weaker_debit():
    body = "Refund of INR 250.00 credited to your a/c XX4411 on 07-08-2025 from Flipkart."
    tx = _parse(ICICI_EMAIL, body=body).transaction
    assert tx.transaction_type == "credit"
    assert tx.transaction_date == date(2025, 8, 7)


def test_reference_lands_in_notes():
    body = ICICI_EMAIL["body"] + " UPI Ref No. 523412345678."
    tx = _parse(ICICI_EMAIL, body=body).transaction
    assert "ref 523412345678" in tx.parsing_notes


def test_non_financial_sender_not_claimed():
    parser = GenericEmailParser()
    assert not parser.can_parse("Sale!", "Rs. 500 off", "deals@shop.example")
    assert parser.can_parse("", "", "alerts@sbi.co.in")
    assert parser.bank_for_sender("Kotak <alerts@kotak.com>") == "KOTAK"


def test_falls_back_to_email_date():
    body = "INR 75.00 spent on your card XX9001 at Cafe Coffee Day."
    tx = _parse(ICICI_EMAIL, body=body).transaction
    assert tx.transaction_date == date(2025, 8, 5)
