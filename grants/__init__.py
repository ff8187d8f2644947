"""
Grant Engine Package

Non-spend credit increases, each exactly once:
- Daily check-in (one credit per 24 hours)
- Referral claims (both sides credited together)
- Generation milestones
- Admin and package grants, audited
- Purchases from signed payment webhooks
"""

from .engine import GrantEngine
from .milestones import Milestone, milestone_for, exact_milestone_bonus
from .payments import PaymentWebhookHandler, sign_payload

__all__ = [
    "GrantEngine",
    "Milestone",
    "milestone_for",
    "exact_milestone_bonus",
    "PaymentWebhookHandler",
    "sign_payload",
]
