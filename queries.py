"""Read-only projections over books and members."""

from datetime import date
from typing import List, Optional

from errors import ErrorCode
from schemas import Book, Member, MemberSummary, ReservationPosition
from stores import Storage


class QueryService:
    def __init__(self, storage: Storage):
        self.storage = storage

    def get_book(self, book_id: str) -> Optional[Book]:
        return self.storage.books.find_by_id(book_id)

    def list_books(self) -> List[Book]:
        return self.storage.books.find_all()

    def list_members(self) -> List[Member]:
        return self.storage.members.find_all()

    def search_books(
        self,
        title_contains: Optional[str] = None,
        available: Optional[bool] = None,
        loaned_to: Optional[str] = None,
    ) -> List[Book]:
        """
        Books matching every given filter.

        The most selective indexed query picks the candidates (borrower, then
        availability) and the case-insensitive title filter is applied last.
        """
        books = self.storage.books
        if loaned_to is not None:
            candidates = books.find_by_loaned_to(loaned_to)
            if available is not None:
                candidates = [b for b in candidates if b.is_available == available]
        elif available is True:
            candidates = books.find_by_loaned_to_is_null()
        elif available is False:
            candidates = books.find_by_loaned_to_is_not_null()
        else:
            candidates = books.find_all()

        if title_contains is not None:
            term = title_contains.lower()
            candidates = [b for b in candidates if term in b.title.lower()]
        return candidates

    def overdue_books(self, today: date) -> List[Book]:
        """Books whose due date is strictly before ``today``."""
        return self.storage.books.find_by_due_date_before(today)

    def member_summary(self, member_id: str) -> MemberSummary:
        if not self.storage.members.exists_by_id(member_id):
            return MemberSummary(ok=False, reason=ErrorCode.MEMBER_NOT_FOUND)

        books = self.storage.books
        loans = books.find_by_loaned_to(member_id)
        reservations = [
            ReservationPosition(
                book_id=book.id,
                title=book.title,
                position=book.reservation_queue.index(member_id),
            )
            for book in books.find_by_reservation_queue_containing(member_id)
        ]
        return MemberSummary(ok=True, loans=loans, reservations=reservations)
