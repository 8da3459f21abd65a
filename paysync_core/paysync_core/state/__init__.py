"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from paysync_core.state.database import get_engine, get_session
from paysync_core.state.repository import (
    AuditRepository,
    ChargeSnapshotRepository,
    CustomerRepository,
    DisputeRepository,
    ExternalCheckoutRepository,
    InvoiceRepository,
    LedgerRepository,
    MirrorRecordRepository,
    PatientRepository,
    PaymentMethodRepository,
    PaymentRepository,
    RawEventRepository,
    RefundRepository,
    RetryJobRepository,
    SubscriptionRepository,
)

__all__ = [
    "AuditRepository",
    "ChargeSnapshotRepository",
    "CustomerRepository",
    "DisputeRepository",
    "ExternalCheckoutRepository",
    "InvoiceRepository",
    "LedgerRepository",
    "MirrorRecordRepository",
    "PatientRepository",
    "PaymentMethodRepository",
    "PaymentRepository",
    "RawEventRepository",
    "RefundRepository",
    "RetryJobRepository",
    "SubscriptionRepository",
    "get_engine",
    "get_session",
]
