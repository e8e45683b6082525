from datetime import date
from typing import Dict, List

import pytest

from catalog import CatalogService
from clock import FixedClock
from loans import MAX_EXTENSION_DAYS, MAX_LOANS, LoanEngine
from queries import QueryService
from seed import load_demo_data
from stores import InMemoryStorage, Storage

T0 = date(2025, 1, 1)


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(T0)


@pytest.fixture
def catalog(storage) -> CatalogService:
    return CatalogService(storage)


@pytest.fixture
def engine(storage, clock) -> LoanEngine:
    return LoanEngine(storage, clock)


@pytest.fixture
def queries(storage) -> QueryService:
    return QueryService(storage)


@pytest.fixture
def seeded(catalog) -> CatalogService:
    """Members m1..m4 and books b1..b6, all available with empty queues."""
    load_demo_data(catalog)
    return catalog


def add_books(catalog: CatalogService, count: int, prefix: str = "x") -> List[str]:
    ids = [f"{prefix}{i}" for i in range(count)]
    for book_id in ids:
        assert catalog.create_book(book_id, f"Filler {book_id}").ok
    return ids


def fill_loans(engine: LoanEngine, catalog: CatalogService, member_id: str) -> List[str]:
    """Give ``member_id`` the maximum number of loans using fresh books."""
    ids = add_books(catalog, MAX_LOANS, prefix=f"full-{member_id}-")
    for book_id in ids:
        assert engine.borrow(book_id, member_id).ok
    return ids


def book_state(storage: Storage, book_id: str) -> Dict:
    return storage.books.find_by_id(book_id).model_dump()


def assert_invariants(storage: Storage) -> None:
    books = storage.books.find_all()
    loans_per_member: Dict[str, int] = {}
    for book in books:
        present = [book.loaned_to is not None, book.due_date is not None, book.first_due_date is not None]
        assert all(present) or not any(present), book
        assert len(book.reservation_queue) == len(set(book.reservation_queue)), book
        if book.loaned_to is not None:
            assert book.loaned_to not in book.reservation_queue, book
            assert (book.due_date - book.first_due_date).days <= MAX_EXTENSION_DAYS, book
            loans_per_member[book.loaned_to] = loans_per_member.get(book.loaned_to, 0) + 1
    for member_id, count in loans_per_member.items():
        assert count <= MAX_LOANS, member_id
        assert storage.books.count_by_loaned_to(member_id) == count
