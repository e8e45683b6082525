"""
Loan and reservation engine

``LoanEngine`` is the only writer of a book's loan fields and reservation
queue. Each operation reads what it needs, checks the rules in a fixed order,
mutates the book in memory and saves it once, all inside one storage
transaction. Rule violations come back as failed results; only storage faults
raise.

Rules enforced:
- a member holds at most ``MAX_LOANS`` books at a time
- a book is loaned to at most one member
- only the head of a non-empty reservation queue may borrow the book
- a return hands the book to the first eligible member in its queue
- a loan's due date never moves past its first due date plus ``MAX_EXTENSION_DAYS``
"""

import logging
from datetime import timedelta
from typing import Callable, Optional, TypeVar

from clock import Clock, SystemClock
from errors import ErrorCode
from schemas import Book, Result, ResultWithNext
from stores import Storage, run_in_transaction

logger = logging.getLogger(__name__)

MAX_LOANS = 5
DEFAULT_LOAN_DAYS = 14
MAX_EXTENSION_DAYS = 90

QUEUE_HEAD = 0

T = TypeVar("T")


class LoanEngine:
    def __init__(
        self,
        storage: Storage,
        clock: Optional[Clock] = None,
        max_loans: int = MAX_LOANS,
        loan_days: int = DEFAULT_LOAN_DAYS,
        max_extension_days: int = MAX_EXTENSION_DAYS,
        max_attempts: int = 3,
    ):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.max_loans = max_loans
        self.loan_days = loan_days
        self.max_extension_days = max_extension_days
        self.max_attempts = max_attempts

    @property
    def books(self):
        return self.storage.books

    @property
    def members(self):
        return self.storage.members

    def _transaction(self, operation: Callable[[], T]) -> T:
        return run_in_transaction(self.storage, operation, self.max_attempts)

    def _new_due_date(self):
        return self.clock.today() + timedelta(days=self.loan_days)

    def _has_capacity(self, member_id: str) -> bool:
        return self.books.count_by_loaned_to(member_id) < self.max_loans

    def can_borrow(self, member_id: Optional[str]) -> bool:
        """True if the member exists and holds fewer than ``max_loans`` books."""
        if member_id is None or not self.members.exists_by_id(member_id):
            return False
        return self._has_capacity(member_id)

    def _reject(self, operation: str, book_id, member_id, reason: ErrorCode) -> Result:
        logger.debug("%s rejected: book=%s member=%s reason=%s", operation, book_id, member_id, reason.value)
        return Result.failure(reason)

    # -- borrow ---------------------------------------------------------------

    def borrow(self, book_id: str, member_id: str) -> Result:
        return self._transaction(lambda: self._borrow(book_id, member_id))

    def _borrow(self, book_id: str, member_id: str) -> Result:
        book = self.books.find_by_id(book_id)
        if book is None:
            return self._reject("borrow", book_id, member_id, ErrorCode.BOOK_NOT_FOUND)
        if not self.members.exists_by_id(member_id):
            return self._reject("borrow", book_id, member_id, ErrorCode.MEMBER_NOT_FOUND)
        if not self._has_capacity(member_id):
            return self._reject("borrow", book_id, member_id, ErrorCode.BORROW_LIMIT)
        if book.loaned_to is not None:
            # The current borrower gets a distinct code from everyone else.
            reason = ErrorCode.ALREADY_BORROWED if book.loaned_to == member_id else ErrorCode.BOOK_UNAVAILABLE
            return self._reject("borrow", book_id, member_id, reason)
        if book.reservation_queue:
            if book.reservation_queue[QUEUE_HEAD] != member_id:
                return self._reject("borrow", book_id, member_id, ErrorCode.RESERVED)
            book.reservation_queue.pop(QUEUE_HEAD)

        book.start_loan(member_id, self._new_due_date())
        self.books.save(book)
        logger.info("Book %s borrowed by %s, due %s", book_id, member_id, book.due_date)
        return Result.success()

    # -- return ---------------------------------------------------------------

    def return_book(self, book_id: str, member_id: Optional[str] = None) -> ResultWithNext:
        """
        Return a book on behalf of its borrower.

        Only the current borrower may return; a missing ``member_id`` is a
        failure. The failure cause is logged but never reported to the caller,
        so the result does not reveal who holds the book. On success the loan
        is cleared and the queue drained in the same write.
        """
        return self._transaction(lambda: self._return_book(book_id, member_id))

    def _return_book(self, book_id: str, member_id: Optional[str]) -> ResultWithNext:
        book = self.books.find_by_id(book_id)
        if book is None:
            logger.info("Return rejected: book %s not found", book_id)
            return ResultWithNext.failure()
        if book.loaned_to is None:
            logger.info("Return rejected: book %s is not on loan", book_id)
            return ResultWithNext.failure()
        if member_id is None or member_id != book.loaned_to:
            logger.info("Return rejected: member %s is not the borrower of book %s", member_id, book_id)
            return ResultWithNext.failure()

        book.clear_loan()
        next_member_id = self._drain_queue(book)
        self.books.save(book)
        if next_member_id is None:
            logger.info("Book %s returned by %s", book_id, member_id)
        else:
            logger.info("Book %s returned by %s and handed to %s", book_id, member_id, next_member_id)
        return ResultWithNext.success(next_member_id)

    def _drain_queue(self, book: Book) -> Optional[str]:
        """Loan ``book`` to the first eligible queued member, dropping ineligible ones on the way."""
        queue = book.reservation_queue
        while queue:
            candidate = queue.pop(QUEUE_HEAD)
            if self.can_borrow(candidate):
                book.start_loan(candidate, self._new_due_date())
                return candidate
            logger.info("Dropping %s from the queue of book %s: not eligible", candidate, book.id)
        return None

    # -- reservations ---------------------------------------------------------

    def reserve(self, book_id: str, member_id: str) -> Result:
        """
        Reserve a book, or loan it at once when it is available.

        An available book is loaned to an eligible member even if other members
        are queued: a queue on an available book only holds members who could
        not take it when it was returned.
        """
        return self._transaction(lambda: self._reserve(book_id, member_id))

    def _reserve(self, book_id: str, member_id: str) -> Result:
        book = self.books.find_by_id(book_id)
        if book is None:
            return self._reject("reserve", book_id, member_id, ErrorCode.BOOK_NOT_FOUND)
        if not self.members.exists_by_id(member_id):
            return self._reject("reserve", book_id, member_id, ErrorCode.MEMBER_NOT_FOUND)
        if book.loaned_to == member_id:
            return self._reject("reserve", book_id, member_id, ErrorCode.ALREADY_BORROWED)
        if member_id in book.reservation_queue:
            return self._reject("reserve", book_id, member_id, ErrorCode.ALREADY_RESERVED)

        if book.is_available and self._has_capacity(member_id):
            book.start_loan(member_id, self._new_due_date())
            self.books.save(book)
            logger.info("Book %s reserved by %s and loaned immediately, due %s", book_id, member_id, book.due_date)
            return Result.success()

        book.reservation_queue.append(member_id)
        self.books.save(book)
        logger.info("Book %s reserved by %s at position %d", book_id, member_id, len(book.reservation_queue) - 1)
        return Result.success()

    def cancel_reservation(self, book_id: str, member_id: str) -> Result:
        return self._transaction(lambda: self._cancel_reservation(book_id, member_id))

    def _cancel_reservation(self, book_id: str, member_id: str) -> Result:
        book = self.books.find_by_id(book_id)
        if book is None:
            return self._reject("cancel", book_id, member_id, ErrorCode.BOOK_NOT_FOUND)
        if not self.members.exists_by_id(member_id):
            return self._reject("cancel", book_id, member_id, ErrorCode.MEMBER_NOT_FOUND)
        if member_id not in book.reservation_queue:
            return self._reject("cancel", book_id, member_id, ErrorCode.NOT_RESERVED)

        book.reservation_queue.remove(member_id)
        self.books.save(book)
        logger.info("Reservation of book %s by %s cancelled", book_id, member_id)
        return Result.success()

    # -- extension ------------------------------------------------------------

    def extend_loan(self, book_id: str, member_id: Optional[str], days: int) -> Result:
        """
        Move the due date of the member's loan by ``days``.

        Negative values shorten the loan and may put the due date in the past.
        Only the upper bound, first due date plus ``max_extension_days``, is
        enforced.
        """
        if days == 0:
            return self._reject("extend", book_id, member_id, ErrorCode.INVALID_EXTENSION)
        return self._transaction(lambda: self._extend_loan(book_id, member_id, days))

    def _extend_loan(self, book_id: str, member_id: Optional[str], days: int) -> Result:
        book = self.books.find_by_id(book_id)
        if book is None:
            return self._reject("extend", book_id, member_id, ErrorCode.BOOK_NOT_FOUND)
        if member_id is None or not self.members.exists_by_id(member_id):
            return self._reject("extend", book_id, member_id, ErrorCode.MEMBER_NOT_FOUND)
        if book.loaned_to is None:
            return self._reject("extend", book_id, member_id, ErrorCode.NOT_LOANED)
        if book.loaned_to != member_id:
            return self._reject("extend", book_id, member_id, ErrorCode.NOT_BORROWER)

        new_due_date = book.due_date + timedelta(days=days)
        if new_due_date > book.first_due_date + timedelta(days=self.max_extension_days):
            return self._reject("extend", book_id, member_id, ErrorCode.MAX_EXTENSION_REACHED)

        book.due_date = new_due_date
        self.books.save(book)
        logger.info("Loan of book %s by %s moved by %d days to %s", book_id, member_id, days, new_due_date)
        return Result.success()
