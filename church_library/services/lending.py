"""Loans and reservations against the database.

Every operation loads its records by id, runs the lifecycle rules, writes
the loan or reservation together with the recomputed status of the book it
points at, and commits once.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from church_library.core.config import settings
from church_library.core.errors import InvalidTransition, NotFound, UpstreamFailure
from church_library.models.models import Book, Loan, Person, Reservation
from church_library.services.lifecycle import (
    BookStatus,
    LendingPolicy,
    LoanAction,
    LoanStatus,
    LoanStatusView,
    LoanUpdate,
    OPEN_LOAN_STATUSES,
    ReservationAction,
    ReservationStatus,
    ReservationStatusView,
    ReservationUpdate,
    apply_loan_transition,
    apply_reservation_transition,
    derive_book_status,
    derive_loan_status,
    derive_reservation_status,
    is_reservation_holding,
)

logger = logging.getLogger(__name__)


def policy_from_settings() -> LendingPolicy:
    return LendingPolicy(renewal_days=settings.renewal_days, max_renewals=settings.max_renewals)


class LendingService:
    def __init__(self, db: Session, policy: Optional[LendingPolicy] = None,
                 loan_days: Optional[int] = None, reservation_days: Optional[int] = None):
        self.db = db
        self.policy = policy or policy_from_settings()
        self.loan_days = loan_days or settings.loan_days
        self.reservation_days = reservation_days or settings.reservation_days

    # lookups
    def get_book(self, book_id: int) -> Book:
        book = self.db.query(Book).filter(Book.id == book_id, Book.active == True).first()
        if not book:
            raise NotFound(f"Book {book_id} not found")
        return book

    def get_person(self, person_id: int) -> Person:
        person = self.db.query(Person).filter(Person.id == person_id).first()
        if not person:
            raise NotFound(f"Person {person_id} not found")
        return person

    def get_loan(self, loan_id: int) -> Loan:
        loan = self.db.query(Loan).filter(Loan.id == loan_id).first()
        if not loan:
            raise NotFound(f"Loan {loan_id} not found")
        return loan

    def get_reservation(self, reservation_id: int) -> Reservation:
        reservation = self.db.query(Reservation).filter(Reservation.id == reservation_id).first()
        if not reservation:
            raise NotFound(f"Reservation {reservation_id} not found")
        return reservation

    def commit(self) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning(f"Database write failed: {exc}")
            raise UpstreamFailure("Could not save changes to the library database") from exc

    # availability
    def _open_loan_count(self, book_id: int) -> int:
        return self.db.query(func.count(Loan.id)).filter(
            Loan.book_id == book_id, Loan.status.in_(OPEN_LOAN_STATUSES)
        ).scalar()

    def _active_reservations(self, book_id: int) -> List[Reservation]:
        return self.db.query(Reservation).filter(
            Reservation.book_id == book_id, Reservation.status == ReservationStatus.ACTIVE
        ).order_by(Reservation.reserved_at).all()

    def book_status(self, book: Book, now: datetime) -> BookStatus:
        """Availability of ``book`` at ``now`` from its open loans and holding reservations.

        Reservations lapse without any write, so readers should prefer this
        over the stored column.
        """
        self.db.flush()
        holding = [r for r in self._active_reservations(book.id) if is_reservation_holding(r.status, r.expires_at, now)]
        return derive_book_status(book.copies, book.under_maintenance, self._open_loan_count(book.id), len(holding))

    def refresh_book_status(self, book: Book, now: datetime) -> BookStatus:
        book.status = self.book_status(book, now)
        return book.status

    def deactivate_book(self, book_id: int, now: datetime) -> Book:
        """Soft-delete a book; lapsed reservations on it are cancelled in the same commit."""
        book = self.get_book(book_id)
        if self._open_loan_count(book.id) > 0:
            raise InvalidTransition("Cannot delete book with open loans")
        reservations = self._active_reservations(book.id)
        if any(is_reservation_holding(r.status, r.expires_at, now) for r in reservations):
            raise InvalidTransition("Cannot delete book with active reservations")
        for reservation in reservations:
            apply_reservation_transition(reservation, ReservationAction.CANCEL, now).apply_to(reservation)
        book.active = False
        self.refresh_book_status(book, now)
        self.commit()
        logger.info(f"Deactivated book id={book.id}, cancelled {len(reservations)} lapsed reservation(s)")
        return book

    # loans
    def checkout(self, book_id: int, person_id: int, now: datetime,
                 days: Optional[int] = None, notes: Optional[str] = None) -> Loan:
        book = self.get_book(book_id)
        person = self.get_person(person_id)
        if book.under_maintenance:
            raise InvalidTransition(f"Book {book.id} is under maintenance")

        holding = [r for r in self._active_reservations(book.id) if is_reservation_holding(r.status, r.expires_at, now)]
        held_by_others = [r for r in holding if r.person_id != person.id]
        if self._open_loan_count(book.id) + len(held_by_others) >= book.copies:
            raise InvalidTransition(f"No copies of book {book.id} available")

        today = now.date()
        loan = Loan(
            book_id=book.id,
            person_id=person.id,
            loan_date=today,
            expected_return_date=today + timedelta(days=days or self.loan_days),
            status=LoanStatus.ACTIVE,
            renewal_count=0,
            notes=notes,
        )
        self.db.add(loan)
        # the borrower's own reservation is used up by this loan
        for reservation in holding:
            if reservation.person_id == person.id:
                apply_reservation_transition(reservation, ReservationAction.FULFILL, now).apply_to(reservation)
                logger.info(f"Reservation {reservation.id} fulfilled by checkout")
                break
        self.refresh_book_status(book, now)
        self.commit()
        self.db.refresh(loan)
        logger.info(f"Person {person.id} borrowed book {book.id} loan {loan.id}")
        return loan

    def _transition_loan(self, loan_id: int, action: LoanAction, now: datetime) -> Tuple[Loan, LoanUpdate]:
        loan = self.get_loan(loan_id)
        update = apply_loan_transition(loan, action, now, self.policy)
        update.apply_to(loan)
        if update.release_book_id is not None:
            book = self.db.query(Book).filter(Book.id == update.release_book_id).first()
            if book:
                self.refresh_book_status(book, now)
        self.commit()
        self.db.refresh(loan)
        return loan, update

    def return_loan(self, loan_id: int, now: datetime) -> Loan:
        loan, _ = self._transition_loan(loan_id, LoanAction.RETURN, now)
        logger.info(f"Loan {loan_id} returned")
        return loan

    def renew_loan(self, loan_id: int, now: datetime) -> Loan:
        loan, _ = self._transition_loan(loan_id, LoanAction.RENEW, now)
        logger.info(f"Loan {loan_id} renewed until {loan.expected_return_date}")
        return loan

    def list_loans(self, now: datetime, status: Optional[str] = None, q: Optional[str] = None,
                   skip: int = 0, limit: int = 50) -> List[Tuple[Loan, LoanStatusView]]:
        query = self.db.query(Loan).join(Loan.book).join(Loan.person).options(
            joinedload(Loan.book), joinedload(Loan.person)
        )
        if q:
            like_q = f"%{q}%"
            query = query.filter(or_(Book.title.ilike(like_q), Book.author.ilike(like_q), Person.full_name.ilike(like_q)))
        loans = query.order_by(Loan.loan_date.desc(), Loan.id.desc()).all()
        rows = [(loan, derive_loan_status(loan.status, loan.expected_return_date, now)) for loan in loans]
        if status:
            rows = [row for row in rows if row[1].label == status]
        return rows[skip:skip + limit]

    # reservations
    def reserve(self, book_id: int, person_id: int, now: datetime) -> Reservation:
        book = self.get_book(book_id)
        person = self.get_person(person_id)
        for existing in self._active_reservations(book.id):
            if existing.person_id == person.id and is_reservation_holding(existing.status, existing.expires_at, now):
                raise InvalidTransition(f"Person {person.id} already holds reservation {existing.id} for book {book.id}")

        reservation = Reservation(
            book_id=book.id,
            person_id=person.id,
            reserved_at=now,
            expires_at=now + timedelta(days=self.reservation_days),
            status=ReservationStatus.ACTIVE,
        )
        self.db.add(reservation)
        self.refresh_book_status(book, now)
        self.commit()
        self.db.refresh(reservation)
        logger.info(f"Person {person.id} reserved book {book.id} reservation {reservation.id}")
        return reservation

    def _transition_reservation(self, reservation_id: int, action: ReservationAction,
                                now: datetime) -> Tuple[Reservation, ReservationUpdate]:
        reservation = self.get_reservation(reservation_id)
        book = self.db.query(Book).filter(Book.id == reservation.book_id).first()
        if action is ReservationAction.FULFILL and (book is None or not book.active):
            raise InvalidTransition(f"Book {reservation.book_id} is no longer in the collection")
        update = apply_reservation_transition(reservation, action, now)
        update.apply_to(reservation)
        if book:
            self.refresh_book_status(book, now)
        self.commit()
        self.db.refresh(reservation)
        logger.info(f"Reservation {reservation_id} {update.status.value.lower()}")
        return reservation, update

    def fulfill_reservation(self, reservation_id: int, now: datetime) -> Tuple[Reservation, ReservationUpdate]:
        return self._transition_reservation(reservation_id, ReservationAction.FULFILL, now)

    def cancel_reservation(self, reservation_id: int, now: datetime) -> Tuple[Reservation, ReservationUpdate]:
        return self._transition_reservation(reservation_id, ReservationAction.CANCEL, now)

    def list_reservations(self, now: datetime, status: Optional[str] = None, q: Optional[str] = None,
                          skip: int = 0, limit: int = 50) -> List[Tuple[Reservation, ReservationStatusView]]:
        query = self.db.query(Reservation).join(Reservation.book).join(Reservation.person).options(
            joinedload(Reservation.book), joinedload(Reservation.person)
        )
        if q:
            like_q = f"%{q}%"
            query = query.filter(or_(Book.title.ilike(like_q), Book.author.ilike(like_q), Person.full_name.ilike(like_q)))
        reservations = query.order_by(Reservation.reserved_at.desc(), Reservation.id.desc()).all()
        rows = [(r, derive_reservation_status(r.status, r.expires_at, now)) for r in reservations]
        if status:
            rows = [row for row in rows if row[1].label == status]
        return rows[skip:skip + limit]

    # dashboard
    def dashboard(self, now: datetime) -> dict:
        books = self.db.query(Book).filter(Book.active == True).all()
        total_books = len(books)
        available_books = sum(1 for book in books if self.book_status(book, now) is BookStatus.AVAILABLE)
        open_loans = self.db.query(Loan).filter(Loan.status.in_(OPEN_LOAN_STATUSES)).all()
        overdue = sum(1 for loan in open_loans if derive_loan_status(loan.status, loan.expected_return_date, now).is_late)
        active_reservations = self.db.query(Reservation).filter(Reservation.status == ReservationStatus.ACTIVE).all()
        holding = sum(1 for r in active_reservations if is_reservation_holding(r.status, r.expires_at, now))
        return {
            'total_books': total_books,
            'available_books': available_books,
            'active_loans': len(open_loans),
            'overdue_loans': overdue,
            'active_reservations': holding,
            'recent_loans': [loan for loan, _ in self.list_loans(now, limit=5)],
        }
