"""
Exception hierarchy for the EMI engine.

ValidationError and NotFoundError also derive from the matching builtin
(ValueError, LookupError) so callers that only know the builtins still work.
"""


class EMIEngineError(Exception):
    """Base exception for all EMI engine errors"""


class ValidationError(EMIEngineError, ValueError):
    """Malformed or out-of-range loan parameters"""


class InvalidStateError(ValidationError):
    """Operation is not valid for the entity's current state"""


class NotFoundError(EMIEngineError, LookupError):
    """Referenced loan or EMI does not exist"""


class StoreError(EMIEngineError):
    """Persistence layer I/O failure"""


class ConfigurationError(EMIEngineError):
    """Configuration is invalid or missing"""
