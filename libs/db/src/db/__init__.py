"""db: shared database library (SQLAlchemy/Alembic).

Public exports
--------------
- ``Base`` and ``metadata`` for Alembic autogenerate/targeting
- ORM models in ``db.models.categorizer`` (re-exported for convenience)
- Engine/session helpers in ``db.client``
"""

from __future__ import annotations

from .models.categorizer import (
    Base,
    CanaryTestResult,
    CategoryOscillation,
    Correction,
    Decision,
    RuleEffectiveness,
    RuleVersion,
    Transaction,
)

# Re-export SQLAlchemy metadata for Alembic's env.py
metadata = Base.metadata

__all__ = [
    "Base",
    "metadata",
    "CanaryTestResult",
    "CategoryOscillation",
    "Correction",
    "Decision",
    "RuleEffectiveness",
    "RuleVersion",
    "Transaction",
]
