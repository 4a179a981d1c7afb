from datetime import date

import pytest

import ledger
import loans
from errors import NotFoundError, ValidationError


@pytest.fixture()
def savings(session, user):
    return ledger.create_account(
        session, user.id, "HDFC Savings", "savings", bank_name="HDFC", account_number_masked="****7312", balance=20000.0
    )


@pytest.fixture()
def car_loan(session, user):
    return ledger.create_account(session, user.id, "Car Loan", "loan", bank_name="HDFC", balance=100000.0)


class TestLoanDetails:
    def test_reducing_balance(self):
        quote = loans.calculate_loan_details(100000, 12, 12)
        assert quote.monthly_emi == 8884.88
        assert quote.total_interest == 6618.56
        assert quote.total_amount == 106618.56
        assert quote.effective_interest_rate == 12

    def test_zero_rate_splits_principal_evenly(self):
        quote = loans.calculate_loan_details(12000, 0, 12)
        assert quote.monthly_emi == 1000
        assert quote.total_interest == 0

    def test_flat_rate(self):
        quote = loans.calculate_loan_details(100000, 10, 12, interest_type="flat_rate")
        assert quote.monthly_emi == 9166.67
        assert quote.effective_interest_rate == 18.0

    def test_simple_interest(self):
        quote = loans.calculate_loan_details(120000, 10, 12, interest_type="simple")
        assert quote.total_interest == 12000
        assert quote.monthly_emi == 11000

    @pytest.mark.parametrize("flag", ["no_cost_emi", "interest_free"])
    def test_interest_waived(self, flag):
        quote = loans.calculate_loan_details(30000, 15, 6, **{flag: True})
        assert quote.monthly_emi == 5000
        assert quote.total_interest == 0
        assert quote.effective_interest_rate == 0

    def test_processing_fee_raises_effective_rate(self):
        quote = loans.calculate_loan_details(100000, 12, 12, processing_fee_percentage=1)
        assert quote.processing_fee_amount == 1000
        assert quote.effective_interest_rate == 7.62

    @pytest.mark.parametrize("args", [(0, 12, 12), (1000, 12, 0), (1000, -1, 12)])
    def test_invalid_terms(self, args):
        with pytest.raises(ValidationError):
            loans.calculate_loan_details(*args)

    def test_unknown_interest_type(self):
        with pytest.raises(ValidationError, match="balloon"):
            loans.calculate_loan_details(1000, 12, 12, interest_type="balloon")


def test_end_date_clamps_to_month_end():
    assert loans.loan_end_date(date(2025, 1, 15), 24) == date(2027, 1, 15)
    assert loans.loan_end_date(date(2025, 1, 31), 1) == date(2025, 2, 28)


class TestSchedule:
    def test_pays_off_within_tenure(self):
        schedule = loans.amortization_schedule(100000, 12, 8884.88, start_date=date(2025, 9, 5))
        assert len(schedule) == 12
        assert schedule["Balance"].iloc[-1] == 0
        assert schedule["Principal"].sum() == pytest.approx(100000, abs=0.05)
        assert schedule["Date"].iloc[1] == date(2025, 10, 5)

    def test_extra_payment_shortens_it(self):
        assert len(loans.amortization_schedule(100000, 12, 8884.88, extra_payment=5000)) < 12

    def test_payment_below_interest_is_empty(self):
        assert loans.amortization_schedule(100000, 12, 1000).empty

    def test_months_to_payoff(self):
        assert loans.months_to_payoff(100000, 12, 8884.88) == pytest.approx(12, abs=0.01)
        assert loans.months_to_payoff(12000, 0, 1000) == 12
        assert loans.months_to_payoff(100000, 12, 1000) is None


class TestHomeLoan:
    def test_fully_disbursed_moratorium(self):
        quote = loans.calculate_home_loan_details(
            sanctioned_amount=2400000, disbursed_amount=2690108, interest_rate=7.55,
            tenure_months=240, moratorium_months=24, start_date=date(2025, 1, 10),
        )
        assert quote.moratorium_emi == 16926
        assert quote.moratorium_end_date == date(2027, 1, 10)
        assert quote.remaining_post_moratorium_months == 216
        assert quote.monthly_emi == loans.calculate_loan_details(2400000, 7.55, 216).monthly_emi
        assert len(quote.disbursement_history) == 24

    def test_staged_disbursements(self):
        quote = loans.calculate_home_loan_details(
            sanctioned_amount=1200000, disbursed_amount=1200000, interest_rate=12,
            tenure_months=120, moratorium_months=3, start_date=date(2025, 1, 1),
            disbursements=[(date(2025, 1, 1), 600000), (date(2025, 2, 15), 600000)],
        )
        # the second tranche lands after the February billing date
        assert [m["disbursed"] for m in quote.disbursement_history] == [600000, 600000, 1200000]
        assert quote.total_moratorium_interest == 24000

    def test_moratorium_must_fit_tenure(self):
        with pytest.raises(ValidationError):
            loans.calculate_home_loan_details(100000, 100000, 8, 12, 12, date(2025, 1, 1))


class TestLoanAccounts:
    def test_configure(self, session, user, car_loan):
        account = loans.configure_loan(session, user.id, car_loan.id, 12, 12, date(2025, 9, 5))
        assert account.monthly_emi == 8884.88
        assert account.remaining_terms == 12
        assert account.loan_end_date == date(2026, 9, 5)

    def test_configure_rejects_non_loan(self, session, user, savings):
        with pytest.raises(ValidationError, match="not a loan"):
            loans.configure_loan(session, user.id, savings.id, 12, 12, date(2025, 9, 5))

    def test_pay_emi_moves_balances(self, session, user, savings, car_loan):
        loans.configure_loan(session, user.id, car_loan.id, 12, 12, date(2025, 9, 5))

        txn = loans.pay_emi(session, user.id, car_loan.id, savings.id, payment_date=date(2025, 9, 5))

        session.refresh(savings)
        session.refresh(car_loan)
        assert savings.balance == pytest.approx(20000 - 8884.88)
        # first month's interest is 1% of 100000
        assert car_loan.balance == pytest.approx(100000 - 7884.88)
        assert car_loan.remaining_terms == 11
        assert txn.transaction_type == "debit"
        assert txn.source == "emi"
        assert txn.account_name == "HDFC Savings"
        assert txn.description == "EMI payment to Car Loan"

    def test_pay_emi_insufficient_balance(self, session, user, car_loan):
        wallet = ledger.create_account(session, user.id, "Wallet", "cash", balance=500.0)
        loans.configure_loan(session, user.id, car_loan.id, 12, 12, date(2025, 9, 5))

        with pytest.raises(ValidationError, match="Insufficient balance"):
            loans.pay_emi(session, user.id, car_loan.id, wallet.id)

        session.refresh(wallet)
        session.refresh(car_loan)
        assert wallet.balance == 500.0
        assert car_loan.balance == 100000.0

    def test_pay_emi_needs_an_amount(self, session, user, savings, car_loan):
        with pytest.raises(ValidationError, match="Invalid EMI amount"):
            loans.pay_emi(session, user.id, car_loan.id, savings.id)

    def test_pay_emi_from_card_rejected(self, session, user, car_loan):
        card = ledger.create_account(session, user.id, "Axis Card", "credit_card", credit_limit=50000.0)
        with pytest.raises(ValidationError, match="bank, cash or wallet"):
            loans.pay_emi(session, user.id, car_loan.id, card.id, amount=1000)

    def test_unknown_loan(self, session, user, savings):
        with pytest.raises(NotFoundError):
            loans.pay_emi(session, user.id, 999, savings.id, amount=1000)
