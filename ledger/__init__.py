"""
Commission Ledger for Referral Communities

This module provides:
- Fixed 10/70/20 commission splits with exact decimal arithmetic
- Click and code based referral attribution with self-referral exclusion
- First-referral bonus lifecycle: pending_confirmation → confirmed → paid / revoked
- Idempotent payment and refund processing
- Snapshot and real-time leaderboards
- Counter reconciliation
"""

from .models import (
    CommissionStatus,
    PaymentType,
    BonusStatus,
    Commission,
    Member,
    Creator,
    PaymentEvent,
    RefundEvent,
    PaymentResult,
    RefundResult,
)
from .calculator import calculate_split
from .service import CommissionProcessor

__all__ = [
    "CommissionStatus",
    "PaymentType",
    "BonusStatus",
    "Commission",
    "Member",
    "Creator",
    "PaymentEvent",
    "RefundEvent",
    "PaymentResult",
    "RefundResult",
    "calculate_split",
    "CommissionProcessor",
]
