"""
Database Schemas for the Library Loan Service

Each Pydantic document model maps to a MongoDB collection:
- Book -> "books"
- Member -> "members"

A member's loans and reservations are not stored on the member; they are
derived by querying books. Result models describe engine outcomes and are
returned as-is by the API. Python attributes are snake_case, the wire format
is camelCase.
"""

from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from errors import ErrorCode


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Book(CamelModel):
    """
    Books collection schema
    Collection: "books"
    """
    id: str = Field(..., min_length=1, description="Book id")
    title: str = Field(..., min_length=1, description="Book title")
    loaned_to: Optional[str] = Field(None, description="Member id of the current borrower")
    due_date: Optional[date] = Field(None, description="Date the current loan is due")
    first_due_date: Optional[date] = Field(
        None, description="Due date assigned when the current loan began"
    )
    reservation_queue: List[str] = Field(
        default_factory=list, description="Member ids waiting for the book, head first"
    )
    version: int = Field(0, ge=0, exclude=True, description="Optimistic concurrency counter")

    @property
    def is_available(self) -> bool:
        return self.loaned_to is None

    def start_loan(self, member_id: str, due_date: date) -> None:
        self.loaned_to = member_id
        self.due_date = due_date
        self.first_due_date = due_date

    def clear_loan(self) -> None:
        self.loaned_to = None
        self.due_date = None
        self.first_due_date = None


class Member(CamelModel):
    """
    Members collection schema
    Collection: "members"
    """
    id: str = Field(..., min_length=1, description="Member id")
    name: str = Field(..., min_length=1, description="Full name")


class Result(CamelModel):
    ok: bool
    reason: Optional[ErrorCode] = None

    @classmethod
    def success(cls) -> "Result":
        return cls(ok=True)

    @classmethod
    def failure(cls, reason: ErrorCode) -> "Result":
        return cls(ok=False, reason=reason)


class ResultWithNext(CamelModel):
    """Outcome of a return. The failure cause is not included."""
    ok: bool
    next_member_id: Optional[str] = None

    @classmethod
    def success(cls, next_member_id: Optional[str] = None) -> "ResultWithNext":
        return cls(ok=True, next_member_id=next_member_id)

    @classmethod
    def failure(cls) -> "ResultWithNext":
        return cls(ok=False)


class ReservationPosition(CamelModel):
    book_id: str
    title: Optional[str] = None
    position: int = Field(..., ge=0, description="0-based index in the book's queue")


class MemberSummary(CamelModel):
    ok: bool
    reason: Optional[ErrorCode] = None
    loans: List[Book] = Field(default_factory=list)
    reservations: List[ReservationPosition] = Field(default_factory=list)
