from sqlalchemy import Column, Integer, String, Text, Date, DateTime, Boolean, ForeignKey, Index, Enum
from sqlalchemy.orm import relationship
from datetime import datetime
from church_library.core.database import Base
from church_library.services.lifecycle import BookStatus, LoanStatus, ReservationStatus


def _status_column(enum_cls, default):
    return Column(
        Enum(enum_cls, values_callable=lambda members: [m.value for m in members], native_enum=False, length=32),
        nullable=False,
        default=default,
        index=True,
    )


class Book(Base):
    __tablename__ = "books"
    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False, index=True)
    author = Column(String, nullable=False, index=True)
    publisher = Column(String, nullable=True)
    isbn = Column(String, index=True, nullable=True)
    publication_year = Column(Integer, nullable=True)
    page_count = Column(Integer, nullable=True)
    category = Column(String, nullable=True, index=True)
    synopsis = Column(Text, nullable=True)
    physical_location = Column(String, nullable=True)
    cover_image_url = Column(String, nullable=True)
    copies = Column(Integer, default=1, nullable=False)
    under_maintenance = Column(Boolean, default=False, nullable=False)
    status = _status_column(BookStatus, BookStatus.AVAILABLE)
    active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    loans = relationship("Loan", back_populates="book")
    reservations = relationship("Reservation", back_populates="book")

Index('ix_books_title_author', Book.title, Book.author)

class Person(Base):
    __tablename__ = "people"
    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String, nullable=False, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    phone = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    loans = relationship("Loan", back_populates="person")
    reservations = relationship("Reservation", back_populates="person")

class Loan(Base):
    __tablename__ = "loans"
    id = Column(Integer, primary_key=True, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    person_id = Column(Integer, ForeignKey("people.id"), nullable=False, index=True)
    loan_date = Column(Date, nullable=False)
    expected_return_date = Column(Date, nullable=False)
    actual_return_date = Column(Date, nullable=True)
    status = _status_column(LoanStatus, LoanStatus.ACTIVE)
    renewal_count = Column(Integer, default=0, nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    book = relationship("Book", back_populates="loans")
    person = relationship("Person", back_populates="loans")

class Reservation(Base):
    __tablename__ = "reservations"
    id = Column(Integer, primary_key=True, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    person_id = Column(Integer, ForeignKey("people.id"), nullable=False, index=True)
    reserved_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    status = _status_column(ReservationStatus, ReservationStatus.ACTIVE)
    book = relationship("Book", back_populates="reservations")
    person = relationship("Person", back_populates="reservations")
