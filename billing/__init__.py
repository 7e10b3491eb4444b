# donation_billing/billing/__init__.py
"""Движок рекуррентного биллинга подписок: списания, ретраи, фолбэк по картам."""
