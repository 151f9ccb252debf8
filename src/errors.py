"""
Error taxonomy for the rule automation engine.
None of these are fatal to the process: the poll cycle catches them per rule.
"""


class AutomationError(Exception):
    """Base class for engine errors."""


class OracleUnavailable(AutomationError):
    """Price oracle could not return a usable quote (caller degrades to price 0)."""


class ExecutorFailure(AutomationError):
    """Swap executor rejected or failed the trade. Recorded, never retried same cycle."""


class RepositoryFailure(AutomationError):
    """Rule/log store read or write failed. Aborts the current rule only."""


class ConfigurationError(AutomationError):
    """Malformed rule or trigger payload. Treated as no-match."""
