"""Exception types raised by the categorization engine."""

from __future__ import annotations


class CategorizerError(Exception):
    """Base class for engine errors."""


class ConfigError(CategorizerError, ValueError):
    """Invalid engine configuration (raised once, at construction)."""


class LlmCategorizationError(CategorizerError):
    """Pass-2 could not produce a decision after exhausting its retry policy."""

    def __init__(self, message: str, *, attempts: int, last_error: BaseException | None = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class TransactionNotFoundError(CategorizerError, LookupError):
    def __init__(self, tx_id: str) -> None:
        super().__init__(f"Transaction not found: {tx_id}")
        self.tx_id = tx_id


class UnauthorizedTransactionError(CategorizerError, PermissionError):
    def __init__(self, tx_id: str) -> None:
        super().__init__("Unauthorized access to transaction")
        self.tx_id = tx_id


class RuleVersionNotFoundError(CategorizerError, LookupError):
    def __init__(self, rule_version_id: str) -> None:
        super().__init__(f"Rule version not found: {rule_version_id}")
        self.rule_version_id = rule_version_id


class CanaryNotPassedError(CategorizerError):
    """Promotion attempted without a passing canary test for that exact version."""

    MESSAGE = (
        "Cannot promote rule: canary test not passed. "
        "Run canary test first and ensure it passes."
    )

    def __init__(self, rule_version_id: str) -> None:
        super().__init__(self.MESSAGE)
        self.rule_version_id = rule_version_id


class CanaryTestError(CategorizerError):
    """The canary run itself could not be executed (e.g. empty holdout set)."""


__all__ = [
    "CanaryNotPassedError",
    "CanaryTestError",
    "CategorizerError",
    "ConfigError",
    "LlmCategorizationError",
    "RuleVersionNotFoundError",
    "TransactionNotFoundError",
    "UnauthorizedTransactionError",
]
