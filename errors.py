"""
Reason codes and exceptions for the loan engine

Business rule violations are returned to callers as an ``ErrorCode`` inside a
result object. Only storage faults are raised as exceptions.
"""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    # Entity lookup
    BOOK_NOT_FOUND = "BOOK_NOT_FOUND"
    MEMBER_NOT_FOUND = "MEMBER_NOT_FOUND"

    # Creation
    BOOK_ALREADY_EXISTS = "BOOK_ALREADY_EXISTS"
    MEMBER_ALREADY_EXISTS = "MEMBER_ALREADY_EXISTS"
    INVALID_REQUEST = "INVALID_REQUEST"

    # Borrow
    BORROW_LIMIT = "BORROW_LIMIT"
    ALREADY_BORROWED = "ALREADY_BORROWED"
    BOOK_UNAVAILABLE = "BOOK_UNAVAILABLE"
    RESERVED = "RESERVED"

    # Reserve / cancel
    ALREADY_RESERVED = "ALREADY_RESERVED"
    NOT_RESERVED = "NOT_RESERVED"

    # Extend
    INVALID_EXTENSION = "INVALID_EXTENSION"
    NOT_LOANED = "NOT_LOANED"
    NOT_BORROWER = "NOT_BORROWER"
    MAX_EXTENSION_REACHED = "MAX_EXTENSION_REACHED"

    # Delete
    BOOK_LOANED = "BOOK_LOANED"
    BOOK_RESERVED = "BOOK_RESERVED"
    MEMBER_HAS_LOANS = "MEMBER_HAS_LOANS"


class LibraryError(Exception):
    """Base class for unexpected failures raised by the library service."""


class StoreError(LibraryError):
    """A repository could not complete a read or write."""


class ConcurrentModificationError(StoreError):
    """A book was changed by another transaction between read and write."""

    def __init__(self, book_id: Optional[str] = None, expected_version: Optional[int] = None):
        if book_id is None:
            message = "transaction aborted by a concurrent write"
        else:
            message = f"book {book_id!r} was modified concurrently (expected version {expected_version})"
        super().__init__(message)
        self.book_id = book_id
        self.expected_version = expected_version
