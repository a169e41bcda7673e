"""
International payments compliance engine

Validates cross-border (SWIFT) payment requests, scores their fraud and AML
risk, and drives them through a gated multi-party approval workflow.
"""

__version__ = "0.1.0"
__author__ = "DINNR Team"

from .core.config import Settings, load_settings
from .core.errors import (
    AuthorizationError,
    DependencyError,
    PaymentError,
    PaymentNotFoundError,
    PaymentValidationError,
    StateError,
)
from .core.lifecycle import Payment
from .core.service import PaymentWorkflowService

__all__ = [
    "Settings",
    "load_settings",
    "Payment",
    "PaymentWorkflowService",
    "PaymentError",
    "PaymentValidationError",
    "PaymentNotFoundError",
    "AuthorizationError",
    "StateError",
    "DependencyError",
]
