"""
Query Error Taxonomy
====================

Error classification for the analytics core.

WHY THIS FILE EXISTS
--------------------
Errors come from two very different places:

    1. Compilation errors (strict, caller bug or unsafe input)
       - Field outside the allow-list        -> UnknownField
       - Operator outside the dispatch table -> UnsupportedOperator
       - Wrong value arity / type            -> InvalidOperatorValue
       - Relation that does not exist        -> UnsupportedCombination
       - Out-of-range builder parameter      -> InvalidParameter

    2. Store errors
       - Any SQLAlchemy failure              -> DataAccessError

Compilers consume already-validated input, so they never degrade: any
invalid field/operator/shape raises. Store errors are wrapped once, chained
to the original exception, and never retried here.

Intent validation failures are NOT part of this taxonomy: the intent
normalizer (app/nlp/intent.py) raises pydantic.ValidationError.

RELATED FILES
-------------
- app/semantic/registry.py: Raises UnknownField
- app/semantic/compiler.py: Raises UnsupportedOperator / InvalidOperatorValue
- app/semantic/rollups.py: Raises UnsupportedCombination
- app/semantic/executor.py: Raises DataAccessError
"""

from dataclasses import dataclass, field as dataclass_field
from enum import Enum
from typing import Any, ClassVar, Dict, Optional


# =============================================================================
# ERROR CLASSIFICATION ENUMS
# =============================================================================

class ErrorCategory(Enum):
    """
    Categories of errors for classification and handling.

    WHY: Callers map categories to responses (client error vs server error).
    """
    SCHEMA = "schema"              # Value shape, arity, ranges
    SECURITY = "security"          # Allow-list violations
    SEMANTIC = "semantic"          # Combinations that do not exist
    RESOURCE = "resource"          # Store failures


class ErrorCode(Enum):
    """Machine-readable codes for error categorization and monitoring."""
    # Schema errors
    INVALID_OPERATOR_VALUE = "ERR_002"
    OUT_OF_RANGE = "ERR_016"

    # Security errors
    UNKNOWN_FIELD = "ERR_010"
    UNSUPPORTED_OPERATOR = "ERR_012"

    # Semantic errors
    UNSUPPORTED_COMBINATION = "ERR_021"

    # Resource errors
    DATABASE_ERROR = "ERR_031"


# =============================================================================
# QUERY ERROR EXCEPTIONS
# =============================================================================

@dataclass(eq=False)
class QueryError(Exception):
    """
    Base exception for query-related errors.

    WHAT: Carries a message plus the offending field and debug details.

    ATTRIBUTES:
        message: Human-readable error message
        field_name: Which field caused the error (optional)
        suggestion: How to fix the error (optional)
        details: Additional debug information
        code: Class-level ErrorCode
        category: Class-level ErrorCategory

    USAGE:
        try:
            statement = build_rollup_select(state)
        except QueryError as e:
            logger.warning("Rejected query", extra=e.to_dict())
            return {"error": e.user_message()}
    """
    message: str
    field_name: Optional[str] = None
    suggestion: Optional[str] = None
    details: Dict[str, Any] = dataclass_field(default_factory=dict)

    code: ClassVar[ErrorCode] = ErrorCode.INVALID_OPERATOR_VALUE
    category: ClassVar[ErrorCategory] = ErrorCategory.SCHEMA

    def __str__(self) -> str:
        if self.field_name:
            return f"[{self.code.value}] {self.field_name}: {self.message}"
        return f"[{self.code.value}] {self.message}"

    def user_message(self) -> str:
        """Readable message for end users, with suggestion when available."""
        if self.field_name:
            text = f"{self.field_name}: {self.message}"
        else:
            text = self.message
        if self.suggestion:
            text = f"{text} ({self.suggestion})"
        return text

    def to_dict(self) -> Dict[str, Any]:
        """Structured representation for logs and APIs."""
        result: Dict[str, Any] = {
            "error": type(self).__name__,
            "code": self.code.value,
            "message": self.message,
            "category": self.category.value,
        }
        if self.field_name:
            result["field"] = self.field_name
        if self.suggestion:
            result["suggestion"] = self.suggestion
        if self.details:
            result["details"] = self.details
        return result


class UnknownField(QueryError):
    """A filter/sort/metric/group-by references a field outside the allow-list."""
    code = ErrorCode.UNKNOWN_FIELD
    category = ErrorCategory.SECURITY


class UnsupportedOperator(QueryError):
    """Operator (or aggregate / computation name) outside the dispatch table."""
    code = ErrorCode.UNSUPPORTED_OPERATOR
    category = ErrorCategory.SECURITY


class InvalidOperatorValue(QueryError):
    """Wrong value arity or type for an operator, e.g. between with one value."""
    code = ErrorCode.INVALID_OPERATOR_VALUE
    category = ErrorCategory.SCHEMA


class InvalidParameter(QueryError):
    """Builder parameter outside its supported range (e.g. bucketsCount)."""
    code = ErrorCode.OUT_OF_RANGE
    category = ErrorCategory.SCHEMA


class UnsupportedCombination(QueryError):
    """Requested relation does not exist, e.g. week grain at section level."""
    code = ErrorCode.UNSUPPORTED_COMBINATION
    category = ErrorCategory.SEMANTIC


class DataAccessError(QueryError):
    """Underlying store failure. Not retried; chained to the original error."""
    code = ErrorCode.DATABASE_ERROR
    category = ErrorCategory.RESOURCE
