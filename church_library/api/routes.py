from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import datetime
import logging

from church_library.core.database import get_db
from church_library.core.errors import NotFound, ValidationFailure
from church_library.models import models
from church_library.schemas import schemas
from church_library.services.catalog import GoogleBooksCatalog, normalize_isbn
from church_library.services.lending import LendingService
from church_library.services.lifecycle import derive_loan_status, derive_reservation_status

logger = logging.getLogger(__name__)

router = APIRouter()


def get_now() -> datetime:
    return datetime.utcnow()


def get_lending(db: Session = Depends(get_db)) -> LendingService:
    return LendingService(db)


def get_catalog():
    catalog = GoogleBooksCatalog()
    try:
        yield catalog
    finally:
        catalog.close()


def _book_out(book, lending: LendingService, now: datetime) -> schemas.BookOut:
    out = schemas.BookOut.model_validate(book)
    out.status = lending.book_status(book, now)
    return out


def _loan_view(loan, now: datetime):
    return derive_loan_status(loan.status, loan.expected_return_date, now)


def _reservation_view(reservation, now: datetime):
    return derive_reservation_status(reservation.status, reservation.expires_at, now)


def _loan_out(loan, view) -> schemas.LoanOut:
    out = schemas.LoanOut.model_validate(loan)
    out.derived = schemas.LoanStatusOut.model_validate(view)
    return out


def _reservation_out(reservation, view) -> schemas.ReservationOut:
    out = schemas.ReservationOut.model_validate(reservation)
    out.derived = schemas.ReservationStatusOut.model_validate(view)
    return out


def _ensure_isbn_free(lending: LendingService, isbn: Optional[str], book_id: Optional[int] = None) -> None:
    if not isbn:
        return
    query = lending.db.query(models.Book).filter(models.Book.isbn == isbn, models.Book.active == True)
    if book_id is not None:
        query = query.filter(models.Book.id != book_id)
    existing = query.first()
    if existing:
        raise ValidationFailure(f"ISBN already registered for book {existing.id}")


# Books
@router.get("/books/categories", response_model=List[str])
def list_categories():
    return list(schemas.BOOK_CATEGORIES)

@router.post("/books/", response_model=schemas.BookOut)
def create_book(book_in: schemas.BookCreate, lending: LendingService = Depends(get_lending),
                now: datetime = Depends(get_now)):
    db = lending.db
    isbn = normalize_isbn(book_in.isbn) or None
    _ensure_isbn_free(lending, isbn)
    book = models.Book(**book_in.model_dump(exclude={"isbn"}), isbn=isbn)
    db.add(book)
    db.flush()
    lending.refresh_book_status(book, now)
    lending.commit()
    db.refresh(book)
    logger.info(f"Created book id={book.id} title={book.title}")
    return _book_out(book, lending, now)

@router.get("/books/", response_model=List[schemas.BookOut])
def list_books(q: Optional[str] = Query(None, description="search title, author, ISBN or publisher"),
               status: Optional[str] = None, category: Optional[str] = None,
               skip: int = 0, limit: int = 50,
               lending: LendingService = Depends(get_lending), now: datetime = Depends(get_now)):
    query = lending.db.query(models.Book).filter(models.Book.active == True)
    if q:
        like_q = f"%{q}%"
        query = query.filter(
            models.Book.title.ilike(like_q) | models.Book.author.ilike(like_q)
            | models.Book.isbn.ilike(like_q) | models.Book.publisher.ilike(like_q)
        )
    if category:
        query = query.filter(models.Book.category == category)
    books = [_book_out(book, lending, now) for book in query.order_by(models.Book.title).all()]
    if status:
        books = [book for book in books if book.status.value == status]
    return books[skip:skip + limit]

@router.get("/books/{book_id}", response_model=schemas.BookOut)
def read_book(book_id: int, lending: LendingService = Depends(get_lending), now: datetime = Depends(get_now)):
    return _book_out(lending.get_book(book_id), lending, now)

@router.put("/books/{book_id}", response_model=schemas.BookOut)
def update_book(book_id: int, book_upd: schemas.BookUpdate, lending: LendingService = Depends(get_lending),
                now: datetime = Depends(get_now)):
    book = lending.get_book(book_id)
    data = book_upd.model_dump(exclude_unset=True)
    for required in ("title", "author"):
        if required in data and not (data[required] or "").strip():
            raise ValidationFailure(f"{required} must not be blank")
    for not_null in ("copies", "under_maintenance"):
        if data.get(not_null, False) is None:
            del data[not_null]
    if "isbn" in data:
        data["isbn"] = normalize_isbn(data["isbn"]) or None
        _ensure_isbn_free(lending, data["isbn"], book_id=book.id)
    for k, v in data.items():
        setattr(book, k, v)
    lending.refresh_book_status(book, now)
    lending.commit()
    lending.db.refresh(book)
    logger.info(f"Updated book id={book.id}")
    return _book_out(book, lending, now)

@router.delete("/books/{book_id}")
def delete_book(book_id: int, lending: LendingService = Depends(get_lending), now: datetime = Depends(get_now)):
    lending.deactivate_book(book_id, now)
    return {"ok": True}

# People
@router.post("/people/", response_model=schemas.PersonOut)
def create_person(person_in: schemas.PersonCreate, lending: LendingService = Depends(get_lending)):
    db = lending.db
    existing = db.query(models.Person).filter(models.Person.email == person_in.email).first()
    if existing:
        raise ValidationFailure("Email already registered")
    person = models.Person(full_name=person_in.full_name.strip(), email=person_in.email.strip(), phone=person_in.phone)
    db.add(person)
    lending.commit()
    db.refresh(person)
    logger.info(f"Created person id={person.id}")
    return person

@router.get("/people/", response_model=List[schemas.PersonOut])
def list_people(q: Optional[str] = None, skip: int = 0, limit: int = 50, db: Session = Depends(get_db)):
    query = db.query(models.Person)
    if q:
        query = query.filter(models.Person.full_name.ilike(f"%{q}%"))
    return query.order_by(models.Person.full_name).offset(skip).limit(limit).all()

@router.get("/people/{person_id}", response_model=schemas.PersonOut)
def read_person(person_id: int, lending: LendingService = Depends(get_lending)):
    return lending.get_person(person_id)

# Loans
@router.post("/loans/", response_model=schemas.LoanOut)
def checkout(loan_in: schemas.LoanCreate, lending: LendingService = Depends(get_lending),
             now: datetime = Depends(get_now)):
    loan = lending.checkout(loan_in.book_id, loan_in.person_id, now, days=loan_in.days, notes=loan_in.notes)
    return _loan_out(loan, _loan_view(loan, now))

@router.get("/loans/", response_model=List[schemas.LoanOut])
def list_loans(status: Optional[str] = None, q: Optional[str] = None, skip: int = 0, limit: int = 50,
               lending: LendingService = Depends(get_lending), now: datetime = Depends(get_now)):
    return [_loan_out(loan, view) for loan, view in lending.list_loans(now, status=status, q=q, skip=skip, limit=limit)]

@router.get("/loans/{loan_id}", response_model=schemas.LoanOut)
def read_loan(loan_id: int, lending: LendingService = Depends(get_lending), now: datetime = Depends(get_now)):
    loan = lending.get_loan(loan_id)
    return _loan_out(loan, _loan_view(loan, now))

@router.post("/loans/{loan_id}/return", response_model=schemas.LoanTransitionOut)
def return_loan(loan_id: int, lending: LendingService = Depends(get_lending), now: datetime = Depends(get_now)):
    loan = lending.return_loan(loan_id, now)
    return {"loan": _loan_out(loan, _loan_view(loan, now)), "message": "Book returned"}

@router.post("/loans/{loan_id}/renew", response_model=schemas.LoanTransitionOut)
def renew_loan(loan_id: int, lending: LendingService = Depends(get_lending), now: datetime = Depends(get_now)):
    loan = lending.renew_loan(loan_id, now)
    message = f"New return date: {loan.expected_return_date.strftime('%d/%m/%Y')}"
    return {"loan": _loan_out(loan, _loan_view(loan, now)), "message": message}

# Reservations
@router.post("/reservations/", response_model=schemas.ReservationOut)
def create_reservation(reservation_in: schemas.ReservationCreate, lending: LendingService = Depends(get_lending),
                       now: datetime = Depends(get_now)):
    reservation = lending.reserve(reservation_in.book_id, reservation_in.person_id, now)
    return _reservation_out(reservation, _reservation_view(reservation, now))

@router.get("/reservations/", response_model=List[schemas.ReservationOut])
def list_reservations(status: Optional[str] = None, q: Optional[str] = None, skip: int = 0, limit: int = 50,
                      lending: LendingService = Depends(get_lending), now: datetime = Depends(get_now)):
    rows = lending.list_reservations(now, status=status, q=q, skip=skip, limit=limit)
    return [_reservation_out(reservation, view) for reservation, view in rows]

@router.get("/reservations/{reservation_id}", response_model=schemas.ReservationOut)
def read_reservation(reservation_id: int, lending: LendingService = Depends(get_lending),
                     now: datetime = Depends(get_now)):
    reservation = lending.get_reservation(reservation_id)
    return _reservation_out(reservation, _reservation_view(reservation, now))

@router.post("/reservations/{reservation_id}/fulfill", response_model=schemas.ReservationTransitionOut)
def fulfill_reservation(reservation_id: int, lending: LendingService = Depends(get_lending),
                        now: datetime = Depends(get_now)):
    reservation, update = lending.fulfill_reservation(reservation_id, now)
    return {"reservation": _reservation_out(reservation, _reservation_view(reservation, now)),
            "follow_up": update.follow_up}

@router.post("/reservations/{reservation_id}/cancel", response_model=schemas.ReservationTransitionOut)
def cancel_reservation(reservation_id: int, lending: LendingService = Depends(get_lending),
                       now: datetime = Depends(get_now)):
    reservation, update = lending.cancel_reservation(reservation_id, now)
    return {"reservation": _reservation_out(reservation, _reservation_view(reservation, now)),
            "follow_up": update.follow_up}

# ISBN lookup
@router.get("/catalog/isbn/{isbn}", response_model=schemas.CatalogEntryOut)
def lookup_isbn(isbn: str, catalog: GoogleBooksCatalog = Depends(get_catalog)):
    entry = catalog.lookup(isbn)
    if entry is None:
        raise NotFound(f"No catalog entry for ISBN {isbn}")
    return entry.to_dict()

# Dashboard
@router.get("/metrics")
def metrics(lending: LendingService = Depends(get_lending), now: datetime = Depends(get_now)):
    stats = lending.dashboard(now)
    stats['recent_loans'] = [
        _loan_out(loan, _loan_view(loan, now)).model_dump(mode="json") for loan in stats['recent_loans']
    ]
    return stats
