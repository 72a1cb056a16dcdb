"""
Core utilities and configuration for the persistence layer.

This package provides foundational components used by the query builder
and reconciliation engine:

Modules:
    config: Application configuration and environment variable management
    database: Async engine and session management
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration
    crypto: Field-level encryption for encrypted columns

Usage:
    from core.config import settings
    from core.database import get_session
    from core.exceptions import ForeignKeyError, QueryError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Get database session
    async with async_session_maker() as session:
        # Perform database operations
        pass
"""

__all__ = [
    "settings",
    "get_session",
    "setup_logging",
    "FieldCipher",
    # Exceptions
    "PersistenceError",
    "SchemaError",
    "MissingTableNameError",
    "InputError",
    "InvalidFilterModelError",
    "EncryptedFilterError",
    "AssociationNotFoundError",
    "ChildFieldKindError",
    "ResolutionError",
    "ForeignKeyError",
    "DataError",
    "DecryptionError",
    "SerializationError",
    "StorageError",
    "QueryError",
    "ValidationFailedError",
    "ModelNotFoundError",
]
