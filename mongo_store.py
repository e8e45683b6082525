"""
MongoDB adapter for the repository ports

Books live in the "books" collection with their reservation queue embedded as
an ordered array, members in "members". Dates are stored as ISO-8601 strings
so that string comparison matches calendar order.
"""

import logging
import re
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import date
from typing import Any, Dict, Iterator, List, Optional

from pymongo import ASCENDING, ReturnDocument
from pymongo.client_session import ClientSession
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import ConcurrentModificationError
from schemas import Book, Member
from stores import BookStore, MemberStore, Storage

logger = logging.getLogger(__name__)

BOOKS = "books"
MEMBERS = "members"

TRANSIENT_TRANSACTION_ERROR = "TransientTransactionError"

_session: ContextVar[Optional[ClientSession]] = ContextVar("library_session", default=None)


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def book_to_document(book: Book) -> Dict[str, Any]:
    return {
        "_id": book.id,
        "title": book.title,
        "loaned_to": book.loaned_to,
        "due_date": _iso(book.due_date),
        "first_due_date": _iso(book.first_due_date),
        "reservation_queue": list(book.reservation_queue),
        "version": book.version,
    }


def book_from_document(doc: Dict[str, Any]) -> Book:
    return Book(
        id=doc["_id"],
        title=doc["title"],
        loaned_to=doc.get("loaned_to"),
        due_date=doc.get("due_date"),
        first_due_date=doc.get("first_due_date"),
        reservation_queue=doc.get("reservation_queue") or [],
        version=doc.get("version", 0),
    )


class MongoBookStore(BookStore):
    def __init__(self, db):
        self._collection = db[BOOKS]

    def _find(self, filter_dict: Dict[str, Any]) -> List[Book]:
        cursor = self._collection.find(filter_dict, session=_session.get()).sort("_id", ASCENDING)
        return [book_from_document(doc) for doc in cursor]

    def find_by_id(self, book_id: str) -> Optional[Book]:
        doc = self._collection.find_one({"_id": book_id}, session=_session.get())
        return book_from_document(doc) if doc else None

    def find_all(self) -> List[Book]:
        return self._find({})

    def save(self, book: Book) -> None:
        session = _session.get()
        doc = book_to_document(book)
        doc["version"] = book.version + 1
        if book.version == 0:
            try:
                self._collection.insert_one(doc, session=session)
            except DuplicateKeyError as exc:
                raise ConcurrentModificationError(book.id, book.version) from exc
        else:
            updated = self._collection.find_one_and_replace(
                {"_id": book.id, "version": book.version},
                doc,
                session=session,
                return_document=ReturnDocument.AFTER,
            )
            if updated is None:
                raise ConcurrentModificationError(book.id, book.version)
        book.version += 1

    def delete(self, book: Book) -> None:
        self._collection.delete_one({"_id": book.id}, session=_session.get())

    def exists_by_id(self, book_id: str) -> bool:
        return self._collection.count_documents({"_id": book_id}, limit=1, session=_session.get()) > 0

    def count_by_loaned_to(self, member_id: str) -> int:
        return self._collection.count_documents({"loaned_to": member_id}, session=_session.get())

    def find_by_loaned_to(self, member_id: str) -> List[Book]:
        return self._find({"loaned_to": member_id})

    def find_by_reservation_queue_containing(self, member_id: str) -> List[Book]:
        return self._find({"reservation_queue": member_id})

    def find_by_due_date_before(self, day: date) -> List[Book]:
        return self._find({"due_date": {"$ne": None, "$lt": day.isoformat()}})

    def exists_by_loaned_to(self, member_id: str) -> bool:
        count = self._collection.count_documents(
            {"loaned_to": member_id}, limit=1, session=_session.get()
        )
        return count > 0

    def find_by_title_containing_ignore_case(self, substring: str) -> List[Book]:
        return self._find({"title": {"$regex": re.escape(substring), "$options": "i"}})

    def find_by_loaned_to_is_null(self) -> List[Book]:
        return self._find({"loaned_to": None})

    def find_by_loaned_to_is_not_null(self) -> List[Book]:
        return self._find({"loaned_to": {"$ne": None}})


class MongoMemberStore(MemberStore):
    def __init__(self, db):
        self._collection = db[MEMBERS]

    def find_by_id(self, member_id: str) -> Optional[Member]:
        doc = self._collection.find_one({"_id": member_id}, session=_session.get())
        return Member(id=doc["_id"], name=doc["name"]) if doc else None

    def find_all(self) -> List[Member]:
        cursor = self._collection.find({}, session=_session.get()).sort("_id", ASCENDING)
        return [Member(id=doc["_id"], name=doc["name"]) for doc in cursor]

    def save(self, member: Member) -> None:
        self._collection.replace_one(
            {"_id": member.id},
            {"_id": member.id, "name": member.name},
            upsert=True,
            session=_session.get(),
        )

    def delete(self, member: Member) -> None:
        self._collection.delete_one({"_id": member.id}, session=_session.get())

    def exists_by_id(self, member_id: str) -> bool:
        return self._collection.count_documents({"_id": member_id}, limit=1, session=_session.get()) > 0


class MongoStorage(Storage):
    """
    Storage backed by a MongoDB database.

    With transactions enabled every engine operation runs in a multi-document
    transaction, which needs a replica set or sharded cluster. Without them the
    per-book version check still rejects lost updates, but a multi-book write
    such as member deletion is no longer all-or-nothing.
    """

    name = "mongodb"

    def __init__(self, client, db, use_transactions: bool = True):
        self.client = client
        self.db = db
        self.use_transactions = use_transactions
        self.books = MongoBookStore(db)
        self.members = MongoMemberStore(db)

    def ensure_indexes(self) -> None:
        books = self.db[BOOKS]
        books.create_index([("loaned_to", ASCENDING)])
        books.create_index([("due_date", ASCENDING)])
        books.create_index([("reservation_queue", ASCENDING)])
        books.create_index([("title", ASCENDING)])
        logger.info("Ensured indexes on %s", BOOKS)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Run the block in a multi-document transaction.

        A transaction aborted by a concurrent write fails with the
        ``TransientTransactionError`` label; that is raised as
        ``ConcurrentModificationError`` so the operation is retried.
        """
        if not self.use_transactions or _session.get() is not None:
            yield
            return
        try:
            with self.client.start_session() as session:
                with session.start_transaction():
                    token = _session.set(session)
                    try:
                        yield
                    finally:
                        _session.reset(token)
        except PyMongoError as exc:
            if not exc.has_error_label(TRANSIENT_TRANSACTION_ERROR):
                raise
            logger.info("Transaction aborted by a concurrent write: %s", exc)
            raise ConcurrentModificationError() from exc
