import logging
import os
from datetime import date
from typing import Annotated, List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AfterValidator

import database
from catalog import CatalogService
from clock import Clock, SystemClock
from errors import ConcurrentModificationError, ErrorCode
from loans import LoanEngine
from mongo_store import MongoStorage
from queries import QueryService
from schemas import Book, CamelModel, Member, ReservationPosition, Result, ResultWithNext
from seed import load_demo_data
from stores import InMemoryStorage, Storage

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("library")


def _not_blank(value: str) -> str:
    if not value.strip():
        raise ValueError("must not be blank")
    return value


NonBlankStr = Annotated[str, AfterValidator(_not_blank)]


class LoanIn(CamelModel):
    book_id: NonBlankStr
    member_id: NonBlankStr


class ReturnIn(CamelModel):
    book_id: NonBlankStr
    member_id: Optional[str] = None


class ExtendIn(CamelModel):
    book_id: NonBlankStr
    member_id: Optional[str] = None
    days: int


class BookIn(CamelModel):
    id: NonBlankStr
    title: NonBlankStr


class MemberIn(CamelModel):
    id: NonBlankStr
    name: NonBlankStr


class DeleteIn(CamelModel):
    id: NonBlankStr


class BooksOut(CamelModel):
    items: List[Book]


class MembersOut(CamelModel):
    items: List[Member]


class LoanOut(CamelModel):
    book_id: str
    title: str
    due_date: Optional[date] = None


class MemberSummaryOut(CamelModel):
    ok: bool
    reason: Optional[ErrorCode] = None
    loans: List[LoanOut] = []
    reservations: List[ReservationPosition] = []


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def build_storage() -> Storage:
    if database.db is not None:
        storage = MongoStorage(database.client, database.db, use_transactions=database.use_transactions)
        storage.ensure_indexes()
        return storage
    logger.info("DATABASE_URL/DATABASE_NAME not set, using in-memory storage")
    return InMemoryStorage()


def create_app(
    storage: Optional[Storage] = None,
    clock: Optional[Clock] = None,
    seed: Optional[bool] = None,
) -> FastAPI:
    storage = storage if storage is not None else build_storage()
    clock = clock or SystemClock()
    engine = LoanEngine(storage, clock)
    catalog = CatalogService(storage)
    queries = QueryService(storage)

    if seed is None:
        seed = _env_flag("LIBRARY_SEED")
    if seed:
        load_demo_data(catalog)

    app = FastAPI(title="Library Loan API")
    app.state.storage = storage
    app.state.engine = engine
    app.state.catalog = catalog
    app.state.queries = queries

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError):
        logger.debug("Invalid request to %s: %s", request.url.path, exc.errors())
        return JSONResponse(status_code=400, content={"ok": False, "reason": ErrorCode.INVALID_REQUEST.value})

    @app.exception_handler(ConcurrentModificationError)
    async def conflict(request: Request, exc: ConcurrentModificationError):
        logger.warning("Giving up on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=409, content={"ok": False, "reason": "CONFLICT"})

    @app.exception_handler(Exception)
    async def unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(status_code=500, content={"ok": False, "reason": "ERROR"})

    @app.get("/")
    def read_root():
        return {"message": "Library Loan Backend is running"}

    @app.get("/test")
    def test_database():
        response = {
            "backend": "✅ Running",
            "storage": storage.name,
            "database": "➖ Not Configured",
            "connection_status": "Not Connected",
            "collections": [],
        }
        if isinstance(storage, MongoStorage):
            try:
                response["collections"] = storage.db.list_collection_names()[:10]
                response["database"] = "✅ Connected & Working"
                response["connection_status"] = "Connected"
            except Exception as e:
                logger.warning("Database check failed: %s", e)
                response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
        return response

    # Loans and reservations
    @app.post("/api/borrow", response_model=Result)
    def borrow(payload: LoanIn):
        return engine.borrow(payload.book_id, payload.member_id)

    @app.post("/api/return", response_model=ResultWithNext, response_model_exclude_none=True)
    def return_book(payload: ReturnIn):
        return engine.return_book(payload.book_id, payload.member_id)

    @app.post("/api/reserve", response_model=Result)
    def reserve(payload: LoanIn):
        return engine.reserve(payload.book_id, payload.member_id)

    @app.post("/api/cancel-reservation", response_model=Result)
    def cancel_reservation(payload: LoanIn):
        return engine.cancel_reservation(payload.book_id, payload.member_id)

    @app.post("/api/extend", response_model=Result)
    def extend(payload: ExtendIn):
        return engine.extend_loan(payload.book_id, payload.member_id, payload.days)

    @app.get("/api/overdue", response_model=BooksOut)
    def overdue():
        return BooksOut(items=queries.overdue_books(clock.today()))

    # Books endpoints
    @app.get("/api/books", response_model=BooksOut)
    def list_books():
        return BooksOut(items=queries.list_books())

    @app.get("/api/books/search", response_model=BooksOut)
    def search_books(
        title_contains: Optional[str] = Query(None, alias="titleContains"),
        available: Optional[bool] = None,
        loaned_to: Optional[str] = Query(None, alias="loanedTo"),
    ):
        return BooksOut(items=queries.search_books(title_contains, available, loaned_to))

    @app.get("/api/books/{book_id}", response_model=Book)
    def get_book(book_id: str):
        book = queries.get_book(book_id)
        if book is None:
            return JSONResponse(status_code=404, content={"ok": False, "reason": ErrorCode.BOOK_NOT_FOUND.value})
        return book

    @app.post("/api/books", response_model=Result)
    def create_book(payload: BookIn):
        return catalog.create_book(payload.id, payload.title)

    @app.put("/api/books", response_model=Result)
    def update_book(payload: BookIn):
        return catalog.update_book(payload.id, payload.title)

    @app.delete("/api/books", response_model=Result)
    def delete_book(payload: DeleteIn):
        return catalog.delete_book(payload.id)

    # Members endpoints
    @app.get("/api/members", response_model=MembersOut)
    def list_members():
        return MembersOut(items=queries.list_members())

    @app.get("/api/members/{member_id}/summary", response_model=MemberSummaryOut)
    def member_summary(member_id: str):
        summary = queries.member_summary(member_id)
        loans = [LoanOut(book_id=b.id, title=b.title, due_date=b.due_date) for b in summary.loans]
        return MemberSummaryOut(
            ok=summary.ok,
            reason=summary.reason,
            loans=loans,
            reservations=summary.reservations,
        )

    @app.post("/api/members", response_model=Result)
    def create_member(payload: MemberIn):
        return catalog.create_member(payload.id, payload.name)

    @app.put("/api/members", response_model=Result)
    def update_member(payload: MemberIn):
        return catalog.update_member(payload.id, payload.name)

    @app.delete("/api/members", response_model=Result)
    def delete_member(payload: DeleteIn):
        return catalog.delete_member(payload.id)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
