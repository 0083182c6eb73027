"""Shared SQLAlchemy models registry for the workspace database.

Currently includes the categorization engine models used by ``txn_categorizer``.
"""

from .categorizer import (
    Base,
    CanaryTestResult,
    CategoryOscillation,
    Correction,
    Decision,
    RuleEffectiveness,
    RuleVersion,
    Transaction,
)

__all__ = [
    "Base",
    "CanaryTestResult",
    "CategoryOscillation",
    "Correction",
    "Decision",
    "RuleEffectiveness",
    "RuleVersion",
    "Transaction",
]
