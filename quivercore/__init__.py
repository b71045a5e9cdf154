"""
QuiverCore Billing API Package

FastAPI service that meters prompt usage, accrues overage against a
monthly ledger and mirrors the Stripe subscription lifecycle.

Key Features:
- Plan registry with prompt and storage limits per tier
- Usage tracking per billing period with atomic counters
- Overage accrual, pay-now overage payments and month-end invoicing
- Monthly and annual-anniversary usage resets
- Stripe checkout, billing portal, plan changes and webhooks

The ASGI application lives at ``quivercore.main:app``.
"""

from .config import config

__version__ = "1.4.0"
__title__ = "QuiverCore Billing API"

__all__ = ["config"]
