"""
Custom exceptions for the persistence core with structured error context.

This module provides the exception hierarchy used by the query builder,
hydrator and reconciliation engine. Each exception includes context
information for debugging and logging, and distinguishes the class of
failure so callers can tell configuration problems from bad input,
unresolvable references, corrupt data and storage failures.

Exception Hierarchy:
    PersistenceError (base)
    ├── SchemaError
    │   └── MissingTableNameError
    ├── InputError
    │   ├── InvalidFilterModelError
    │   ├── EncryptedFilterError
    │   ├── AssociationNotFoundError
    │   └── ChildFieldKindError
    ├── ResolutionError
    │   └── ForeignKeyError
    ├── DataError
    │   ├── DecryptionError
    │   └── SerializationError
    ├── StorageError
    │   └── QueryError
    ├── ValidationFailedError
    └── ModelNotFoundError
"""

from typing import Optional, Dict, Any, List
from datetime import datetime, timezone


class PersistenceError(Exception):
    """
    Base exception for all persistence errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (table, column, key, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        # Add timestamp to context
        self.context["error_timestamp"] = self.timestamp.isoformat()

        # Chain original exception if provided
        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Schema Errors
# ============================================================================

class SchemaError(PersistenceError):
    """
    Exception raised for invalid or incomplete table metadata.

    Raised before any statement runs. Context should include:
        - entity_type: Name of the entity type
        - table_name: Name of the table (if known)
        - field_name: Offending field (if applicable)
    """
    pass


class MissingTableNameError(SchemaError):
    """Entity type has no registered table name."""
    pass


# ============================================================================
# Input Errors
# ============================================================================

class InputError(PersistenceError):
    """Base exception for invalid arguments to a read or write call."""
    pass


class InvalidFilterModelError(InputError):
    """Filter value is not a structured record of a registered type."""
    pass


class EncryptedFilterError(InputError):
    """
    Exception raised when a filter targets an encrypted column.

    Encrypted values are stored with a random nonce and cannot be
    compared in storage.
    """
    pass


class AssociationNotFoundError(InputError):
    """
    Exception raised when an association name does not exist on a type.

    Context should include:
        - association: The requested association name
        - entity_type: Type the association was requested on
    """
    pass


class ChildFieldKindError(InputError):
    """Child field holds something other than a sequence or a mapping."""
    pass


# ============================================================================
# Resolution Errors
# ============================================================================

class ResolutionError(PersistenceError):
    """Base exception for references that cannot be matched to stored rows."""
    pass


class ForeignKeyError(ResolutionError):
    """
    Exception raised when a required foreign key lookup finds no row.

    Context should include:
        - table_name: Table of the entity being deployed
        - key: Composite lookup key that failed to match
        - key_column: Foreign key column on the entity's table
        - related_field: Field holding the related entity
    """

    def __init__(
        self,
        message: str,
        table_name: str,
        key: str,
        key_column: str,
        related_field: str,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(
            message,
            context={
                "table_name": table_name,
                "key": key,
                "key_column": key_column,
                "related_field": related_field,
            },
            original_exception=original_exception
        )
        self.table_name = table_name
        self.key = key
        self.key_column = key_column
        self.related_field = related_field


# ============================================================================
# Data Errors
# ============================================================================

class DataError(PersistenceError):
    """Base exception for values that cannot be encoded or decoded."""
    pass


class DecryptionError(DataError):
    """
    Exception raised when an encrypted column cannot be processed.

    Covers malformed base64, ciphertext that fails authentication and
    encrypted columns used without a configured cipher.
    """
    pass


class SerializationError(DataError):
    """
    Exception raised when a JSONB column fails to encode or decode.

    Context should include:
        - column_name: The JSONB column
        - target_type: Type the value was decoded into (if decoding)
    """
    pass


# ============================================================================
# Storage Errors
# ============================================================================

class StorageError(PersistenceError):
    """Base exception for failures reported by the database."""
    pass


class QueryError(StorageError):
    """
    Exception raised when a statement fails to execute.

    Context should include:
        - query: The rendered SQL of the failing statement
        - operation: SELECT, INSERT, UPDATE or DELETE
    """
    pass


# ============================================================================
# Model Errors
# ============================================================================

class ValidationFailedError(PersistenceError):
    """Entity failed cross-field validation before insert."""
    pass


class ModelNotFoundError(PersistenceError):
    """No stored row exists for the primary key being saved."""
    pass


def squash_errors(errors: List[PersistenceError]) -> PersistenceError:
    """
    Combine errors collected over one batch into a single error.

    The result has the class of the first error so callers can still
    dispatch on the failure category.
    """
    if len(errors) == 1:
        return errors[0]

    first = errors[0]
    squashed = type(first).__new__(type(first))
    PersistenceError.__init__(
        squashed,
        f"{len(errors)} errors occurred: " + "; ".join(e.message for e in errors),
        context={"errors": [e.to_dict() for e in errors]},
        original_exception=first
    )
    for name, value in vars(first).items():
        vars(squashed).setdefault(name, value)
    return squashed
