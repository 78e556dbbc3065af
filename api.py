import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator, model_validator

from book import GENRES
from config import Settings, configure_logging, settings as default_settings
from database import Database, to_db_timestamp, to_utc, utcnow
from errors import InvariantViolation, RentalServiceError
from pagination import Page
from rental_service import RentalService

logger = logging.getLogger(__name__)

SortOrder = Literal["asc", "desc"]
StatusName = Literal["active", "returned", "overdue"]


# --- Envelope ---
def api_response(data: Any = None, message: str = "Success", status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": True,
            "message": message,
            "data": data,
            "timestamp": to_db_timestamp(utcnow()),
        },
    )


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "status_code": status_code,
            "message": message,
            "timestamp": to_db_timestamp(utcnow()),
        },
    )


def book_page(page: Page) -> dict:
    return {"items": [b.to_dict() for b in page.items], "pagination": page.pagination()}


# --- Models ---
def _check_genre(value: Optional[str]) -> Optional[str]:
    if value is not None and value not in GENRES:
        raise ValueError("Invalid genre selected")
    return value


def _check_year(value: Optional[int]) -> Optional[int]:
    if value is not None and value > utcnow().year:
        raise ValueError("Published year cannot be in the future")
    return value


class BookCreateModel(BaseModel):
    title: str = Field(min_length=2, max_length=200)
    author: str = Field(min_length=2, max_length=100)
    genre: str
    isbn: Optional[str] = Field(default=None, pattern=r"^[\d-]+$")
    published_year: Optional[int] = Field(default=None, ge=1000)
    total_copies: int = Field(ge=1, le=1000)
    available_copies: int = Field(ge=0)
    description: Optional[str] = Field(default=None, max_length=1000)
    cover_image: Optional[str] = None

    @field_validator("genre")
    @classmethod
    def check_genre(cls, value: Optional[str]) -> Optional[str]:
        return _check_genre(value)

    @field_validator("published_year")
    @classmethod
    def check_year(cls, value: Optional[int]) -> Optional[int]:
        return _check_year(value)

    @model_validator(mode="after")
    def copies_within_total(self):
        if self.available_copies > self.total_copies:
            raise ValueError("Available copies cannot exceed total copies")
        return self


class BookUpdateModel(BaseModel):
    title: Optional[str] = Field(default=None, min_length=2, max_length=200)
    author: Optional[str] = Field(default=None, min_length=2, max_length=100)
    genre: Optional[str] = None
    isbn: Optional[str] = Field(default=None, pattern=r"^[\d-]*$")
    published_year: Optional[int] = Field(default=None, ge=1000)
    total_copies: Optional[int] = Field(default=None, ge=1, le=1000)
    available_copies: Optional[int] = Field(default=None, ge=0)
    description: Optional[str] = Field(default=None, max_length=1000)
    cover_image: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("genre")
    @classmethod
    def check_genre(cls, value: Optional[str]) -> Optional[str]:
        return _check_genre(value)

    @field_validator("published_year")
    @classmethod
    def check_year(cls, value: Optional[int]) -> Optional[int]:
        return _check_year(value)


class RentBookModel(BaseModel):
    book_id: str
    renter_name: str = Field(min_length=2, max_length=100)
    renter_email: str = Field(pattern=r"^\s*[^\s@]+@[^\s@]+\.[^\s@]+\s*$")
    renter_phone: Optional[str] = Field(default=None, pattern=r"^[\d\s\-\+\(\)]*$")
    due_date: datetime
    notes: Optional[str] = Field(default=None, max_length=500)

    @field_validator("due_date")
    @classmethod
    def due_in_future(cls, value: datetime) -> datetime:
        if to_utc(value) <= utcnow():
            raise ValueError("Due date must be in the future")
        return value


class ReturnBookModel(BaseModel):
    rental_id: str
    return_date: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class RentalStatusModel(BaseModel):
    status: StatusName
    notes: Optional[str] = Field(default=None, max_length=500)


# --- Dependencies ---
def get_service(request: Request) -> RentalService:
    state = request.app.state
    return RentalService(state.db, state.settings, clock=state.clock)


# --- Books ---
books_router = APIRouter(prefix="/api/books", tags=["books"])


@books_router.get("")
def list_books(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    genre: Optional[str] = Query(None),
    search: Optional[str] = Query(None, min_length=1, max_length=100),
    available: Optional[bool] = Query(None),
    sort_by: str = Query("created_at"),
    sort_order: SortOrder = Query("desc"),
    service: RentalService = Depends(get_service),
):
    """List active books with filtering, search, sorting and pagination."""
    result = service.library.list_books(page=page, limit=limit, genre=genre, search=search,
                                        available=available, sort_by=sort_by, sort_order=sort_order)
    return api_response(book_page(result), "Books retrieved successfully")


@books_router.get("/available")
def list_available_books(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    genre: Optional[str] = Query(None),
    search: Optional[str] = Query(None, min_length=1, max_length=100),
    sort_by: str = Query("title"),
    sort_order: SortOrder = Query("asc"),
    service: RentalService = Depends(get_service),
):
    result = service.library.list_available_books(page=page, limit=limit, genre=genre, search=search,
                                                  sort_by=sort_by, sort_order=sort_order)
    return api_response(book_page(result), "Available books retrieved successfully")


@books_router.get("/stats")
def book_stats(service: RentalService = Depends(get_service)):
    return api_response(service.library.get_statistics(), "Book statistics retrieved successfully")


@books_router.get("/genre/{genre}")
def list_books_by_genre(
    genre: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    service: RentalService = Depends(get_service),
):
    result = service.library.list_books_by_genre(genre, page=page, limit=limit)
    return api_response(book_page(result), f"Books in {genre} genre retrieved successfully")


@books_router.get("/{book_id}")
def get_book(book_id: str, service: RentalService = Depends(get_service)):
    book = service.library.get_book(book_id)
    return api_response(book.to_dict(), "Book retrieved successfully")


@books_router.post("")
def create_book(payload: BookCreateModel, service: RentalService = Depends(get_service)):
    book = service.library.create_book(**payload.model_dump())
    return api_response(book.to_dict(), "Book created successfully", status_code=201)


@books_router.put("/{book_id}")
def update_book(book_id: str, payload: BookUpdateModel, service: RentalService = Depends(get_service)):
    """Partial update; only the fields present in the body are changed."""
    book = service.library.update_book(book_id, **payload.model_dump(exclude_unset=True))
    return api_response(book.to_dict(), "Book updated successfully")


@books_router.delete("/{book_id}")
def delete_book(book_id: str, service: RentalService = Depends(get_service)):
    service.library.soft_delete_book(book_id)
    return api_response(None, "Book deleted successfully")


# --- Rentals ---
rentals_router = APIRouter(prefix="/api/rentals", tags=["rentals"])


@rentals_router.post("/rent")
def rent_book(payload: RentBookModel, service: RentalService = Depends(get_service)):
    rental = service.rent(
        book_id=payload.book_id,
        renter_name=payload.renter_name,
        renter_email=payload.renter_email,
        renter_phone=payload.renter_phone,
        due_date=payload.due_date,
        notes=payload.notes,
    )
    return api_response(service.present(rental), "Book rented successfully", status_code=201)


@rentals_router.post("/return")
def return_book(payload: ReturnBookModel, service: RentalService = Depends(get_service)):
    rental = service.return_book(payload.rental_id, return_date=payload.return_date, notes=payload.notes)
    return api_response(service.present(rental), "Book returned successfully")


@rentals_router.get("")
def list_rentals(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[StatusName] = Query(None),
    renter_email: Optional[str] = Query(None),
    book_id: Optional[str] = Query(None),
    sort_by: str = Query("rental_date"),
    sort_order: SortOrder = Query("desc"),
    service: RentalService = Depends(get_service),
):
    result = service.list_rentals(page=page, limit=limit, status=status, renter_email=renter_email,
                                  book_id=book_id, sort_by=sort_by, sort_order=sort_order)
    return api_response(service.present_page(result), "Rentals retrieved successfully")


@rentals_router.get("/stats")
def rental_stats(service: RentalService = Depends(get_service)):
    return api_response(service.get_rental_statistics(), "Rental statistics retrieved successfully")


@rentals_router.get("/overdue")
def list_overdue_rentals(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    service: RentalService = Depends(get_service),
):
    result = service.list_overdue_rentals(page=page, limit=limit)
    return api_response(service.present_page(result), "Overdue rentals retrieved successfully")


@rentals_router.get("/renter/{email}")
def list_rentals_by_renter(
    email: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[StatusName] = Query(None),
    service: RentalService = Depends(get_service),
):
    result = service.list_rentals_by_renter(email, page=page, limit=limit, status=status)
    return api_response(service.present_page(result), f"Rentals for {email} retrieved successfully")


@rentals_router.get("/{rental_id}")
def get_rental(rental_id: str, service: RentalService = Depends(get_service)):
    rental = service.get_rental(rental_id)
    return api_response(service.present(rental), "Rental retrieved successfully")


@rentals_router.put("/{rental_id}/status")
def update_rental_status(rental_id: str, payload: RentalStatusModel,
                         service: RentalService = Depends(get_service)):
    rental = service.update_rental_status(rental_id, payload.status, notes=payload.notes)
    return api_response(service.present(rental), "Rental status updated successfully")


# --- Application ---
def create_app(settings: Optional[Settings] = None, db: Optional[Database] = None,
               clock: Callable[[], datetime] = utcnow) -> FastAPI:
    """Build the API. A database handle may be supplied; otherwise one is opened at startup."""
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_db = app.state.db is None
        if owns_db:
            app.state.db = Database(settings.database_file)
            logger.info("Connected to %s", settings.database_file)
        try:
            yield
        finally:
            if owns_db:
                app.state.db.close()
                app.state.db = None

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db
    app.state.clock = clock

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info("%s %s %s %.1fms", request.method, request.url.path, response.status_code, elapsed_ms)
        return response

    @app.exception_handler(RentalServiceError)
    async def handle_domain_error(request: Request, exc: RentalServiceError):
        if isinstance(exc, InvariantViolation):
            logger.error("Invariant violation on %s %s: %s", request.method, request.url.path, exc.message)
        else:
            logger.info("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
        return error_response(exc.status_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        messages = [str(err.get("msg", "")).removeprefix("Value error, ") for err in exc.errors()]
        return error_response(400, ", ".join(messages) or "Invalid request")

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return error_response(500, "Internal server error")

    @app.get("/health")
    def health():
        """Lightweight health check used by deployments."""
        return {"status": "ok", "environment": settings.environment, "version": settings.app_version}

    app.include_router(books_router)
    app.include_router(rentals_router)
    return app


configure_logging()
app = create_app()
