# donation_billing/billing/handlers/__init__.py
from billing.handlers.webhook_handler import process_payment_webhook

__all__ = ["process_payment_webhook"]
