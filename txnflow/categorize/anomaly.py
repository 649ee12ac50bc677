"""Anomaly heuristics that flag transactions for review.

Two checks, nothing else:
  - MISSING_DESCRIPTION: description is empty after trimming
  - UNUSUAL_AMOUNT: amount strictly above the threshold
"""

from __future__ import annotations

from decimal import Decimal

from txnflow.database.models import FlagReason
from txnflow.parsers.base import to_decimal

# In the source currency unit. Override via settings.yaml
# (ingest.unusual_amount_threshold).
UNUSUAL_AMOUNT_THRESHOLD = Decimal("1000")


def detect_anomalies(
    description: str | None,
    amount,
    threshold: Decimal = UNUSUAL_AMOUNT_THRESHOLD,
) -> frozenset[FlagReason]:
    """Return the flag reasons for a transaction (empty when nothing is wrong)."""
    reasons: set[FlagReason] = set()
    if not (description or "").strip():
        reasons.add(FlagReason.MISSING_DESCRIPTION)
    if to_decimal(amount) > threshold:
        reasons.add(FlagReason.UNUSUAL_AMOUNT)
    return frozenset(reasons)
