"""
Catalogue maintenance: creating, renaming and deleting books and members

Only identity and name fields are written here. Deletions are refused while
they would leave a loan or a reservation pointing at nothing, except that a
deleted member is first spliced out of every reservation queue.
"""

import logging
from typing import Optional

from errors import ErrorCode
from schemas import Book, Member, Result
from stores import Storage, run_in_transaction

logger = logging.getLogger(__name__)


class CatalogService:
    def __init__(self, storage: Storage, max_attempts: int = 3):
        self.storage = storage
        self.max_attempts = max_attempts

    def _transaction(self, operation):
        return run_in_transaction(self.storage, operation, self.max_attempts)

    # Books

    def create_book(self, book_id: Optional[str], title: Optional[str]) -> Result:
        if not book_id or not title:
            return Result.failure(ErrorCode.INVALID_REQUEST)
        return self._transaction(lambda: self._create_book(book_id, title))

    def _create_book(self, book_id: str, title: str) -> Result:
        books = self.storage.books
        if books.exists_by_id(book_id):
            return Result.failure(ErrorCode.BOOK_ALREADY_EXISTS)
        books.save(Book(id=book_id, title=title))
        logger.info("Created book %s", book_id)
        return Result.success()

    def update_book(self, book_id: Optional[str], title: Optional[str]) -> Result:
        return self._transaction(lambda: self._update_book(book_id, title))

    def _update_book(self, book_id, title) -> Result:
        books = self.storage.books
        book = books.find_by_id(book_id) if book_id else None
        if book is None:
            return Result.failure(ErrorCode.BOOK_NOT_FOUND)
        if not title:
            return Result.failure(ErrorCode.INVALID_REQUEST)
        book.title = title
        books.save(book)
        logger.info("Renamed book %s", book_id)
        return Result.success()

    def delete_book(self, book_id: Optional[str]) -> Result:
        return self._transaction(lambda: self._delete_book(book_id))

    def _delete_book(self, book_id) -> Result:
        books = self.storage.books
        book = books.find_by_id(book_id) if book_id else None
        if book is None:
            return Result.failure(ErrorCode.BOOK_NOT_FOUND)
        if book.loaned_to is not None:
            return Result.failure(ErrorCode.BOOK_LOANED)
        if book.reservation_queue:
            return Result.failure(ErrorCode.BOOK_RESERVED)
        books.delete(book)
        logger.info("Deleted book %s", book_id)
        return Result.success()

    # Members

    def create_member(self, member_id: Optional[str], name: Optional[str]) -> Result:
        if not member_id or not name:
            return Result.failure(ErrorCode.INVALID_REQUEST)
        return self._transaction(lambda: self._create_member(member_id, name))

    def _create_member(self, member_id: str, name: str) -> Result:
        members = self.storage.members
        if members.exists_by_id(member_id):
            return Result.failure(ErrorCode.MEMBER_ALREADY_EXISTS)
        members.save(Member(id=member_id, name=name))
        logger.info("Created member %s", member_id)
        return Result.success()

    def update_member(self, member_id: Optional[str], name: Optional[str]) -> Result:
        return self._transaction(lambda: self._update_member(member_id, name))

    def _update_member(self, member_id, name) -> Result:
        members = self.storage.members
        member = members.find_by_id(member_id) if member_id else None
        if member is None:
            return Result.failure(ErrorCode.MEMBER_NOT_FOUND)
        if not name:
            return Result.failure(ErrorCode.INVALID_REQUEST)
        member.name = name
        members.save(member)
        logger.info("Renamed member %s", member_id)
        return Result.success()

    def delete_member(self, member_id: Optional[str]) -> Result:
        """
        Delete a member who holds no books.

        The member is removed from every reservation queue, keeping the order
        of the others, and then deleted, all in one transaction.
        """
        return self._transaction(lambda: self._delete_member(member_id))

    def _delete_member(self, member_id) -> Result:
        books = self.storage.books
        members = self.storage.members
        member = members.find_by_id(member_id) if member_id else None
        if member is None:
            return Result.failure(ErrorCode.MEMBER_NOT_FOUND)
        if books.exists_by_loaned_to(member_id):
            return Result.failure(ErrorCode.MEMBER_HAS_LOANS)

        for book in books.find_by_reservation_queue_containing(member_id):
            book.reservation_queue.remove(member_id)
            books.save(book)
            logger.info("Removed member %s from the queue of book %s", member_id, book.id)
        members.delete(member)
        logger.info("Deleted member %s", member_id)
        return Result.success()
