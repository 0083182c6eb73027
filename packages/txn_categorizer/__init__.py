"""Public interface for the ``txn_categorizer`` package.

This module exposes the engine entry points and public models/types as the
stable import surface. There is no runtime logic here, only symbol re-exports.
Persistence-backed operations live in ``txn_categorizer.decisions`` and
``txn_categorizer.learning`` and are imported from there.
"""

from .calibration import calibrate_confidence, calibrate_llm_confidence
from .config import (
    CalibrationConstants,
    CanaryTestConfig,
    EngineConfig,
    GuardrailConfig,
    RetryPolicy,
    ScoringConstants,
)
from .errors import (
    CanaryNotPassedError,
    CanaryTestError,
    CategorizerError,
    ConfigError,
    LlmCategorizationError,
    RuleVersionNotFoundError,
    TransactionNotFoundError,
    UnauthorizedTransactionError,
)
from .guardrails import apply_domain_guardrails, apply_guardrails
from .models import (
    CategorizationResult,
    CategoryScore,
    DecisionSource,
    Engine,
    GuardrailViolation,
    HybridResult,
    NormalizedTransaction,
    RuleSource,
    RuleType,
    ScoringResult,
    Signal,
    SignalStrength,
    SignalType,
)
from .money import reconcile_payout
from .orchestrator import batch_categorize, categorize_transaction
from .pass1 import CategorizerContext, categorize_pass1
from .pass2 import categorize_with_llm
from .rules import RuleTables
from .scorer import score_signals
from .signals import create_signal, extract_signals
from .taxonomy import Category, Taxonomy

__all__ = [
    # API
    "apply_domain_guardrails",
    "apply_guardrails",
    "batch_categorize",
    "calibrate_confidence",
    "calibrate_llm_confidence",
    "categorize_pass1",
    "categorize_transaction",
    "categorize_with_llm",
    "create_signal",
    "extract_signals",
    "reconcile_payout",
    "score_signals",
    # Context / configuration
    "CalibrationConstants",
    "CanaryTestConfig",
    "CategorizerContext",
    "EngineConfig",
    "GuardrailConfig",
    "RetryPolicy",
    "RuleTables",
    "ScoringConstants",
    "Taxonomy",
    # Models / types
    "Category",
    "CategorizationResult",
    "CategoryScore",
    "DecisionSource",
    "Engine",
    "GuardrailViolation",
    "HybridResult",
    "NormalizedTransaction",
    "RuleSource",
    "RuleType",
    "ScoringResult",
    "Signal",
    "SignalStrength",
    "SignalType",
    # Errors
    "CanaryNotPassedError",
    "CanaryTestError",
    "CategorizerError",
    "ConfigError",
    "LlmCategorizationError",
    "RuleVersionNotFoundError",
    "TransactionNotFoundError",
    "UnauthorizedTransactionError",
]
