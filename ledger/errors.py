"""Error taxonomy for the commission ledger.

Calculation and attribution errors are converted locally, transient store
failures are retried, and invariant violations are surfaced loudly with the
affected record quarantined.
"""


class LedgerError(Exception):
    pass


class InvalidAmount(LedgerError):
    """Sale amount is negative, non-finite, non-numeric or above the ceiling."""


class DuplicateEvent(LedgerError):
    """The external payment id was already processed."""

    def __init__(self, message: str, commission_id: str | None = None):
        super().__init__(message)
        self.commission_id = commission_id


class AttributionAmbiguous(LedgerError):
    """Conflicting referral sources; the event falls back to organic."""


class FraudBlocked(LedgerError):
    def __init__(self, message: str, score: int = 0, triggered_rules: list[str] | None = None):
        super().__init__(message)
        self.score = score
        self.triggered_rules = triggered_rules or []


class TransientStoreFailure(LedgerError):
    """Store operation timed out or was temporarily unavailable."""


class InvariantViolation(LedgerError):
    def __init__(self, message: str, record_id: str | None = None):
        super().__init__(message)
        self.record_id = record_id


class MemberNotFoundError(LedgerError):
    pass


class BonusNotFoundError(LedgerError):
    pass


class InvalidStateTransitionError(LedgerError):
    pass
