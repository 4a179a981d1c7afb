"""Expense Tracker.

Personal and group expense tracking with bank notification email import.
See ``api.py`` (HTTP service), ``app.py`` (Streamlit UI) and
``process_transactions.py`` (CSV import/export) for entry points.
"""
