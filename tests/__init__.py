"""
Tests for the Sol Numérique API

Tests are organized by functionality:
- test_auth.py: Registration, login, tokens and profile
- test_sols.py: Sols, membership and rotation order
- test_tour_detection.py: Tour completion and advancement
- test_payments.py: Receipts, Stripe checkout and webhooks
- test_transfers.py: Payouts to the tour beneficiary
- test_admin.py: Admin dashboard, validation and user management
- test_export.py: CSV/PDF exports
"""
