"""SQLAlchemy models."""

from sitehost.models.billing_state import BillingState
from sitehost.models.domain_activation import (
    ActivationState,
    CertificateStatus,
    DomainActivation,
    DomainSource,
)
from sitehost.models.domain_purchase import DomainPurchase
from sitehost.models.payment_event import PaymentEventRecord

__all__ = [
    "DomainActivation",
    "ActivationState",
    "CertificateStatus",
    "DomainSource",
    "BillingState",
    "PaymentEventRecord",
    "DomainPurchase",
]
