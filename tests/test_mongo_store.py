import copy
import re
from contextlib import contextmanager
from datetime import date

import pytest
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError, OperationFailure

from errors import ConcurrentModificationError
from mongo_store import MongoStorage, book_from_document, book_to_document
from schemas import Book, Member
from stores import run_in_transaction


def matches(doc, filter_dict):
    for key, condition in filter_dict.items():
        value = doc.get(key)
        if isinstance(condition, dict):
            flags = re.IGNORECASE if "i" in condition.get("$options", "") else 0
            for op, arg in condition.items():
                if op == "$ne" and value == arg:
                    return False
                if op == "$lt" and (value is None or not value < arg):
                    return False
                if op == "$regex" and (value is None or not re.search(arg, value, flags)):
                    return False
        elif isinstance(value, list):
            if condition not in value:
                return False
        elif value != condition:
            return False
    return True


class FakeCursor(list):
    def sort(self, key, direction):
        return FakeCursor(sorted(self, key=lambda doc: doc[key], reverse=direction == DESCENDING))


class FakeCollection:
    """Just enough of a pymongo collection for the adapter, recording the session of each call."""

    def __init__(self):
        self.docs = {}
        self.sessions = []
        self.indexes = []

    def find(self, filter_dict, session=None):
        self.sessions.append(session)
        return FakeCursor(copy.deepcopy(d) for d in self.docs.values() if matches(d, filter_dict))

    def find_one(self, filter_dict, session=None):
        found = self.find(filter_dict, session=session)
        return found[0] if found else None

    def insert_one(self, doc, session=None):
        self.sessions.append(session)
        if doc["_id"] in self.docs:
            raise DuplicateKeyError("E11000 duplicate key error", 11000)
        self.docs[doc["_id"]] = copy.deepcopy(doc)

    def find_one_and_replace(self, filter_dict, replacement, session=None, return_document=None):
        current = self.find_one(filter_dict, session=session)
        if current is None:
            return None
        self.docs[current["_id"]] = copy.deepcopy(replacement)
        return copy.deepcopy(replacement)

    def replace_one(self, filter_dict, replacement, upsert=False, session=None):
        self.sessions.append(session)
        self.docs[replacement["_id"]] = copy.deepcopy(replacement)

    def delete_one(self, filter_dict, session=None):
        for doc in self.find(filter_dict, session=session)[:1]:
            del self.docs[doc["_id"]]

    def count_documents(self, filter_dict, limit=0, session=None):
        count = len(self.find(filter_dict, session=session))
        return min(count, limit) if limit else count

    def create_index(self, keys):
        self.indexes.append(keys)


class FakeDatabase(dict):
    def __missing__(self, name):
        self[name] = FakeCollection()
        return self[name]


class FakeSession:
    def __init__(self, client):
        self.client = client

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    @contextmanager
    def start_transaction(self):
        self.client.events.append("start")
        try:
            yield
        except BaseException:
            self.client.events.append("abort")
            raise
        self.client.events.append("commit")


class FakeClient:
    def __init__(self):
        self.events = []
        self.sessions = []

    def start_session(self):
        session = FakeSession(self)
        self.sessions.append(session)
        return session


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def mongo(client, db):
    return MongoStorage(client, db)


def loaned(book_id, member_id, due, queue=()):
    book = Book(id=book_id, title=f"Title {book_id}", reservation_queue=list(queue))
    book.start_loan(member_id, due)
    return book


def test_document_mapping() -> None:
    book = loaned("b1", "m1", date(2025, 1, 15), queue=["m2", "m3"])
    book.due_date = date(2025, 2, 1)
    book.version = 3

    doc = book_to_document(book)

    assert doc == {
        "_id": "b1",
        "title": "Title b1",
        "loaned_to": "m1",
        "due_date": "2025-02-01",
        "first_due_date": "2025-01-15",
        "reservation_queue": ["m2", "m3"],
        "version": 3,
    }
    restored = book_from_document(doc)
    assert restored.model_dump() == book.model_dump()
    assert restored.version == 3


def test_document_mapping_of_available_book() -> None:
    doc = book_to_document(Book(id="b1", title="Clean Code"))

    assert doc["loaned_to"] is None
    assert doc["due_date"] is None
    restored = book_from_document({"_id": "b1", "title": "Clean Code"})
    assert restored.model_dump() == Book(id="b1", title="Clean Code").model_dump()
    assert restored.version == 0


def test_save_inserts_then_checks_versions(mongo, db) -> None:
    book = Book(id="b1", title="Clean Code")
    mongo.books.save(book)
    assert book.version == 1
    assert db["books"].docs["b1"]["version"] == 1

    stale = mongo.books.find_by_id("b1")
    fresh = mongo.books.find_by_id("b1")
    fresh.title = "Clean Code 2"
    mongo.books.save(fresh)
    assert fresh.version == 2

    with pytest.raises(ConcurrentModificationError):
        mongo.books.save(stale)
    assert mongo.books.find_by_id("b1").title == "Clean Code 2"


def test_duplicate_insert_conflicts(mongo) -> None:
    mongo.books.save(Book(id="b1", title="A"))

    with pytest.raises(ConcurrentModificationError) as excinfo:
        mongo.books.save(Book(id="b1", title="B"))
    assert isinstance(excinfo.value.__cause__, DuplicateKeyError)


def test_update_of_deleted_book_conflicts(mongo) -> None:
    mongo.books.save(Book(id="b1", title="A"))
    book = mongo.books.find_by_id("b1")
    mongo.books.delete(book)

    with pytest.raises(ConcurrentModificationError):
        mongo.books.save(book)


def test_queries(mongo) -> None:
    books = mongo.books
    books.save(loaned("b2", "m1", date(2025, 1, 2)))
    books.save(loaned("b1", "m1", date(2025, 1, 10), queue=["m2"]))
    books.save(Book(id="b3", title="Free", reservation_queue=["m2"]))

    assert books.count_by_loaned_to("m1") == 2
    assert books.exists_by_loaned_to("m1")
    assert not books.exists_by_loaned_to("m9")
    assert books.exists_by_id("b3")
    assert [b.id for b in books.find_all()] == ["b1", "b2", "b3"]
    assert [b.id for b in books.find_by_loaned_to("m1")] == ["b1", "b2"]
    assert [b.id for b in books.find_by_reservation_queue_containing("m2")] == ["b1", "b3"]
    assert [b.id for b in books.find_by_loaned_to_is_null()] == ["b3"]
    assert [b.id for b in books.find_by_loaned_to_is_not_null()] == ["b1", "b2"]


def test_overdue_compares_iso_dates(mongo) -> None:
    mongo.books.save(loaned("b1", "m1", date(2025, 1, 10)))
    mongo.books.save(loaned("b2", "m2", date(2024, 12, 31)))
    mongo.books.save(Book(id="b3", title="Free"))

    assert [b.id for b in mongo.books.find_by_due_date_before(date(2025, 1, 10))] == ["b2"]
    assert [b.id for b in mongo.books.find_by_due_date_before(date(2025, 1, 11))] == ["b1", "b2"]


def test_title_search_escapes_user_input(mongo) -> None:
    mongo.books.save(Book(id="b1", title="C++ Primer"))
    mongo.books.save(Book(id="b2", title="abc"))

    assert [b.id for b in mongo.books.find_by_title_containing_ignore_case("c++")] == ["b1"]
    assert mongo.books.find_by_title_containing_ignore_case("a.c") == []


def test_members(mongo) -> None:
    mongo.members.save(Member(id="m2", name="Rasmus"))
    mongo.members.save(Member(id="m1", name="Kertu"))
    mongo.members.save(Member(id="m1", name="Kertu K."))

    assert [(m.id, m.name) for m in mongo.members.find_all()] == [("m1", "Kertu K."), ("m2", "Rasmus")]
    assert mongo.members.exists_by_id("m2")

    mongo.members.delete(Member(id="m2", name="Rasmus"))
    assert mongo.members.find_by_id("m2") is None


def test_transaction_shares_one_session(mongo, client, db) -> None:
    with mongo.transaction():
        mongo.books.save(Book(id="b1", title="A"))
        with mongo.transaction():
            mongo.members.save(Member(id="m1", name="Kertu"))
    mongo.books.find_by_id("b1")

    session = client.sessions[0]
    assert len(client.sessions) == 1
    assert client.events == ["start", "commit"]
    assert db["books"].sessions == [session, None]
    assert db["members"].sessions == [session]


def test_transaction_aborts_on_error(mongo, client) -> None:
    with pytest.raises(ValueError):
        with mongo.transaction():
            raise ValueError("boom")

    assert client.events == ["start", "abort"]


def test_transactions_can_be_disabled(client, db) -> None:
    mongo = MongoStorage(client, db, use_transactions=False)

    with mongo.transaction():
        mongo.books.save(Book(id="b1", title="A"))

    assert client.sessions == []
    assert db["books"].sessions == [None]


def write_conflict():
    return OperationFailure("WriteConflict", 112, {"errorLabels": ["TransientTransactionError"]})


def test_transient_transaction_errors_become_conflicts(mongo) -> None:
    with pytest.raises(ConcurrentModificationError) as excinfo:
        with mongo.transaction():
            raise write_conflict()
    assert excinfo.value.book_id is None


def test_transient_transaction_errors_are_retried(mongo) -> None:
    attempts = []

    def operation():
        attempts.append(1)
        if len(attempts) == 1:
            raise write_conflict()
        return "done"

    assert run_in_transaction(mongo, operation) == "done"
    assert len(attempts) == 2


def test_other_database_errors_propagate(mongo) -> None:
    with pytest.raises(OperationFailure) as excinfo:
        with mongo.transaction():
            raise OperationFailure("Unauthorized", 13)
    assert not isinstance(excinfo.value, ConcurrentModificationError)


def test_ensure_indexes(mongo, db) -> None:
    mongo.ensure_indexes()

    assert [keys[0][0] for keys in db["books"].indexes] == ["loaned_to", "due_date", "reservation_queue", "title"]
