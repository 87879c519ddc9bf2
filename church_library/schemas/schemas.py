from pydantic import BaseModel, Field, constr, field_validator
from datetime import date, datetime
from typing import List, Optional

from church_library.services.lifecycle import BookStatus, LoanStatus, ReservationStatus

BOOK_CATEGORIES = (
    'Teologia',
    'Devocionais',
    'Biografia',
    'História da Igreja',
    'Família Cristã',
    'Missões',
    'Discipulado',
    'Apologética',
    'Autoajuda Cristã',
    'Infantojuvenil',
    'Romance Cristão',
    'Estudos Bíblicos',
    'Outro',
)


def _check_category(v):
    if v is not None and v not in BOOK_CATEGORIES:
        raise ValueError(f'unknown category {v!r}')
    return v


class BookBase(BaseModel):
    title: constr(min_length=1)
    author: constr(min_length=1)
    publisher: Optional[str] = None
    isbn: Optional[str] = None
    publication_year: Optional[int] = None
    page_count: Optional[int] = Field(default=None, ge=0)
    category: Optional[str] = None
    synopsis: Optional[str] = None
    physical_location: Optional[str] = None
    cover_image_url: Optional[str] = None
    copies: int = Field(default=1, ge=1)
    under_maintenance: bool = False

    @field_validator('title', 'author')
    @classmethod
    def ensure_not_blank(cls, v):
        if not v.strip():
            raise ValueError('must not be blank')
        return v.strip()

    @field_validator('category')
    @classmethod
    def ensure_known_category(cls, v):
        return _check_category(v)

class BookCreate(BookBase):
    pass

class BookUpdate(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    publisher: Optional[str] = None
    isbn: Optional[str] = None
    publication_year: Optional[int] = None
    page_count: Optional[int] = None
    category: Optional[str] = None
    synopsis: Optional[str] = None
    physical_location: Optional[str] = None
    cover_image_url: Optional[str] = None
    copies: Optional[int] = Field(default=None, ge=1)
    under_maintenance: Optional[bool] = None

    @field_validator('category')
    @classmethod
    def ensure_known_category(cls, v):
        return _check_category(v)

class BookOut(BookBase):
    id: int
    status: BookStatus
    active: bool
    created_at: datetime
    class Config:
        from_attributes = True

class BookSummary(BaseModel):
    id: int
    title: str
    author: str
    cover_image_url: Optional[str] = None
    class Config:
        from_attributes = True

class PersonBase(BaseModel):
    full_name: constr(min_length=1)
    email: constr(min_length=5)
    phone: Optional[str] = None

class PersonCreate(PersonBase):
    pass

class PersonOut(PersonBase):
    id: int
    created_at: datetime
    class Config:
        from_attributes = True

class LoanCreate(BaseModel):
    book_id: int
    person_id: int
    days: Optional[int] = Field(default=None, ge=1)
    notes: Optional[str] = None

class LoanStatusOut(BaseModel):
    label: str
    is_late: bool
    late_days: int
    class Config:
        from_attributes = True

class LoanOut(BaseModel):
    id: int
    book_id: int
    person_id: int
    loan_date: date
    expected_return_date: date
    actual_return_date: Optional[date] = None
    status: LoanStatus
    renewal_count: int
    notes: Optional[str] = None
    book: BookSummary
    person: PersonOut
    derived: Optional[LoanStatusOut] = None
    class Config:
        from_attributes = True

class LoanTransitionOut(BaseModel):
    loan: LoanOut
    message: str

class ReservationCreate(BaseModel):
    book_id: int
    person_id: int

class ReservationStatusOut(BaseModel):
    label: str
    is_expired: bool
    days_remaining: int
    class Config:
        from_attributes = True

class ReservationOut(BaseModel):
    id: int
    book_id: int
    person_id: int
    reserved_at: datetime
    expires_at: datetime
    status: ReservationStatus
    book: BookSummary
    person: PersonOut
    derived: Optional[ReservationStatusOut] = None
    class Config:
        from_attributes = True

class ReservationTransitionOut(BaseModel):
    reservation: ReservationOut
    follow_up: Optional[str] = None

class CatalogEntryOut(BaseModel):
    isbn: str
    title: Optional[str] = None
    authors: List[str] = []
    publisher: Optional[str] = None
    publication_year: Optional[int] = None
    page_count: Optional[int] = None
    description: Optional[str] = None
    cover_image_url: Optional[str] = None
