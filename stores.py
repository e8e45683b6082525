"""
Repository ports used by the loan engine, and the in-memory adapter

The engine only talks to ``Storage``: a pair of stores plus a transaction
boundary. Every store returns detached copies, so a caller's changes to an
aggregate are invisible until it is saved.

Books carry a ``version`` counter. ``save`` inserts a book whose version is 0
and otherwise updates it only when the stored version still matches, raising
``ConcurrentModificationError`` when it does not.
"""

import bisect
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from datetime import date
from typing import Callable, ContextManager, Dict, Iterator, List, Optional, Set, Tuple, TypeVar

from errors import ConcurrentModificationError
from schemas import Book, Member

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BookStore(ABC):
    @abstractmethod
    def find_by_id(self, book_id: str) -> Optional[Book]:
        ...

    @abstractmethod
    def find_all(self) -> List[Book]:
        ...

    @abstractmethod
    def save(self, book: Book) -> None:
        ...

    @abstractmethod
    def delete(self, book: Book) -> None:
        ...

    @abstractmethod
    def exists_by_id(self, book_id: str) -> bool:
        ...

    @abstractmethod
    def count_by_loaned_to(self, member_id: str) -> int:
        ...

    @abstractmethod
    def find_by_loaned_to(self, member_id: str) -> List[Book]:
        ...

    @abstractmethod
    def find_by_reservation_queue_containing(self, member_id: str) -> List[Book]:
        ...

    @abstractmethod
    def find_by_due_date_before(self, day: date) -> List[Book]:
        ...

    @abstractmethod
    def exists_by_loaned_to(self, member_id: str) -> bool:
        ...

    @abstractmethod
    def find_by_title_containing_ignore_case(self, substring: str) -> List[Book]:
        ...

    @abstractmethod
    def find_by_loaned_to_is_null(self) -> List[Book]:
        ...

    @abstractmethod
    def find_by_loaned_to_is_not_null(self) -> List[Book]:
        ...


class MemberStore(ABC):
    @abstractmethod
    def find_by_id(self, member_id: str) -> Optional[Member]:
        ...

    @abstractmethod
    def find_all(self) -> List[Member]:
        ...

    @abstractmethod
    def save(self, member: Member) -> None:
        ...

    @abstractmethod
    def delete(self, member: Member) -> None:
        ...

    @abstractmethod
    def exists_by_id(self, member_id: str) -> bool:
        ...


class Storage(ABC):
    """Both stores and the boundary of one engine operation."""

    books: BookStore
    members: MemberStore

    name = "storage"

    @abstractmethod
    def transaction(self) -> ContextManager[None]:
        """Context manager; writes made inside are discarded if it exits with an exception."""


class _MemoryState:
    """Book and member tables with the secondary indexes the queries need."""

    def __init__(self):
        self.books: Dict[str, Book] = {}
        self.members: Dict[str, Member] = {}
        self.by_borrower: Dict[str, Set[str]] = defaultdict(set)
        self.by_reserver: Dict[str, Set[str]] = defaultdict(set)
        self.by_due_date: List[Tuple[date, str]] = []

    def put_book(self, book_id: str, book: Optional[Book]) -> None:
        """Replace the stored book, or remove it when ``book`` is None, keeping the indexes in step."""
        current = self.books.pop(book_id, None)
        if current is not None:
            self.unindex(current)
        if book is not None:
            self.books[book_id] = book
            self.index(book)

    def put_member(self, member_id: str, member: Optional[Member]) -> None:
        if member is None:
            self.members.pop(member_id, None)
        else:
            self.members[member_id] = member

    def index(self, book: Book) -> None:
        if book.loaned_to is not None:
            self.by_borrower[book.loaned_to].add(book.id)
        for member_id in book.reservation_queue:
            self.by_reserver[member_id].add(book.id)
        if book.due_date is not None:
            bisect.insort(self.by_due_date, (book.due_date, book.id))

    def unindex(self, book: Book) -> None:
        if book.loaned_to is not None:
            self._discard(self.by_borrower, book.loaned_to, book.id)
        for member_id in book.reservation_queue:
            self._discard(self.by_reserver, member_id, book.id)
        if book.due_date is not None:
            key = (book.due_date, book.id)
            pos = bisect.bisect_left(self.by_due_date, key)
            if pos < len(self.by_due_date) and self.by_due_date[pos] == key:
                del self.by_due_date[pos]

    @staticmethod
    def _discard(index: Dict[str, Set[str]], member_id: str, book_id: str) -> None:
        ids = index.get(member_id)
        if ids is None:
            return
        ids.discard(book_id)
        if not ids:
            del index[member_id]


class InMemoryBookStore(BookStore):
    """
    Book store over ``InMemoryStorage``.

    Stored books are never mutated in place; ``save`` replaces them with a
    fresh copy. Every method holds the storage lock, so a reader waits for an
    open transaction to commit or roll back.
    """

    def __init__(self, storage: "InMemoryStorage"):
        self._storage = storage

    @property
    def _state(self) -> _MemoryState:
        return self._storage.state

    def _copies(self, book_ids) -> List[Book]:
        books = self._state.books
        return [books[book_id].model_copy(deep=True) for book_id in sorted(book_ids)]

    def find_by_id(self, book_id: str) -> Optional[Book]:
        with self._storage.lock:
            book = self._state.books.get(book_id)
            return book.model_copy(deep=True) if book is not None else None

    def find_all(self) -> List[Book]:
        with self._storage.lock:
            return self._copies(self._state.books)

    def save(self, book: Book) -> None:
        with self._storage.lock:
            current = self._state.books.get(book.id)
            stored_version = current.version if current is not None else 0
            if book.version != stored_version:
                raise ConcurrentModificationError(book.id, book.version)
            self._storage.remember_book(book.id, current)
            book.version = stored_version + 1
            self._state.put_book(book.id, book.model_copy(deep=True))

    def delete(self, book: Book) -> None:
        with self._storage.lock:
            current = self._state.books.get(book.id)
            if current is not None:
                self._storage.remember_book(book.id, current)
                self._state.put_book(book.id, None)

    def exists_by_id(self, book_id: str) -> bool:
        with self._storage.lock:
            return book_id in self._state.books

    def count_by_loaned_to(self, member_id: str) -> int:
        with self._storage.lock:
            return len(self._state.by_borrower.get(member_id, ()))

    def find_by_loaned_to(self, member_id: str) -> List[Book]:
        with self._storage.lock:
            return self._copies(self._state.by_borrower.get(member_id, ()))

    def find_by_reservation_queue_containing(self, member_id: str) -> List[Book]:
        with self._storage.lock:
            return self._copies(self._state.by_reserver.get(member_id, ()))

    def find_by_due_date_before(self, day: date) -> List[Book]:
        with self._storage.lock:
            due = self._state.by_due_date
            end = bisect.bisect_left(due, (day, ""))
            return self._copies(book_id for _, book_id in due[:end])

    def exists_by_loaned_to(self, member_id: str) -> bool:
        with self._storage.lock:
            return bool(self._state.by_borrower.get(member_id))

    def find_by_title_containing_ignore_case(self, substring: str) -> List[Book]:
        term = substring.lower()
        return [b for b in self.find_all() if term in b.title.lower()]

    def find_by_loaned_to_is_null(self) -> List[Book]:
        return [b for b in self.find_all() if b.loaned_to is None]

    def find_by_loaned_to_is_not_null(self) -> List[Book]:
        with self._storage.lock:
            loaned = set()
            for book_ids in self._state.by_borrower.values():
                loaned.update(book_ids)
            return self._copies(loaned)


class InMemoryMemberStore(MemberStore):
    def __init__(self, storage: "InMemoryStorage"):
        self._storage = storage

    def find_by_id(self, member_id: str) -> Optional[Member]:
        with self._storage.lock:
            member = self._storage.state.members.get(member_id)
            return member.model_copy() if member is not None else None

    def find_all(self) -> List[Member]:
        with self._storage.lock:
            members = self._storage.state.members
            return [members[member_id].model_copy() for member_id in sorted(members)]

    def save(self, member: Member) -> None:
        with self._storage.lock:
            state = self._storage.state
            self._storage.remember_member(member.id, state.members.get(member.id))
            state.put_member(member.id, member.model_copy())

    def delete(self, member: Member) -> None:
        with self._storage.lock:
            state = self._storage.state
            current = state.members.get(member.id)
            if current is not None:
                self._storage.remember_member(member.id, current)
                state.put_member(member.id, None)

    def exists_by_id(self, member_id: str) -> bool:
        with self._storage.lock:
            return member_id in self._storage.state.members


class InMemoryStorage(Storage):
    """
    Dict-backed storage for tests and single-process deployments.

    Transactions are serialized on a re-entrant lock that the stores also take
    for reads. The outermost transaction keeps an undo log holding the
    previous value of every book and member it writes; exiting with an
    exception puts those values back.
    """

    name = "memory"

    def __init__(self):
        self.state = _MemoryState()
        self.lock = threading.RLock()
        self._depth = 0
        self._undo_books: Optional[Dict[str, Optional[Book]]] = None
        self._undo_members: Optional[Dict[str, Optional[Member]]] = None
        self.books = InMemoryBookStore(self)
        self.members = InMemoryMemberStore(self)

    def remember_book(self, book_id: str, previous: Optional[Book]) -> None:
        if self._undo_books is not None:
            self._undo_books.setdefault(book_id, previous)

    def remember_member(self, member_id: str, previous: Optional[Member]) -> None:
        if self._undo_members is not None:
            self._undo_members.setdefault(member_id, previous)

    def _rollback(self) -> None:
        logger.debug(
            "Rolling back in-memory transaction: %d books, %d members",
            len(self._undo_books),
            len(self._undo_members),
        )
        for book_id, previous in self._undo_books.items():
            self.state.put_book(book_id, previous)
        for member_id, previous in self._undo_members.items():
            self.state.put_member(member_id, previous)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self.lock:
            outermost = self._depth == 0
            if outermost:
                self._undo_books, self._undo_members = {}, {}
            self._depth += 1
            try:
                yield
            except BaseException:
                if outermost:
                    self._rollback()
                raise
            finally:
                self._depth -= 1
                if outermost:
                    self._undo_books = self._undo_members = None


def run_in_transaction(storage: Storage, operation: Callable[[], T], max_attempts: int = 3) -> T:
    """Run ``operation`` in a transaction, re-running it from scratch on a version conflict."""
    attempt = 1
    while True:
        try:
            with storage.transaction():
                return operation()
        except ConcurrentModificationError as exc:
            if attempt >= max_attempts:
                raise
            logger.warning("Retrying after conflict (attempt %d): %s", attempt, exc)
            attempt += 1
