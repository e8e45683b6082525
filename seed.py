"""Demo members and books for a fresh catalogue."""

import logging

from catalog import CatalogService
from errors import ErrorCode

logger = logging.getLogger(__name__)

DEMO_MEMBERS = [
    ("m1", "Kertu"),
    ("m2", "Rasmus"),
    ("m3", "Liis"),
    ("m4", "Markus"),
]

DEMO_BOOKS = [
    ("b1", "Clean Code"),
    ("b2", "Domain-Driven Design"),
    ("b3", "Refactoring"),
    ("b4", "Effective Java"),
    ("b5", "Design Patterns"),
    ("b6", "The Pragmatic Programmer"),
]


def load_demo_data(catalog: CatalogService) -> int:
    """Create the demo records that do not exist yet; returns how many were created."""
    created = 0
    for member_id, name in DEMO_MEMBERS:
        result = catalog.create_member(member_id, name)
        if result.ok:
            created += 1
        elif result.reason != ErrorCode.MEMBER_ALREADY_EXISTS:
            logger.warning("Could not seed member %s: %s", member_id, result.reason)
    for book_id, title in DEMO_BOOKS:
        result = catalog.create_book(book_id, title)
        if result.ok:
            created += 1
        elif result.reason != ErrorCode.BOOK_ALREADY_EXISTS:
            logger.warning("Could not seed book %s: %s", book_id, result.reason)
    logger.info("Seeded %d demo records", created)
    return created
