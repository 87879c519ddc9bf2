"""Loan and reservation lifecycle rules.

Everything here is pure: callers pass the stored record and the current
time, and get back either a display view or the update to write. Stored
statuses are closed enums; "Overdue" and "Expired" only ever exist as
derived labels.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional, Union

from church_library.core.errors import InvalidTransition

DateLike = Union[date, datetime]

OVERDUE = "Overdue"
EXPIRED = "Expired"


class LoanStatus(str, enum.Enum):
    ACTIVE = "Active"
    RENEWED = "Renewed"
    RETURNED = "Returned"


class ReservationStatus(str, enum.Enum):
    ACTIVE = "Active"
    FULFILLED = "Fulfilled"
    CANCELLED = "Cancelled"


class BookStatus(str, enum.Enum):
    AVAILABLE = "Available"
    LOANED = "Loaned"
    RESERVED = "Reserved"
    UNDER_MAINTENANCE = "UnderMaintenance"


class LoanAction(str, enum.Enum):
    RETURN = "return"
    RENEW = "renew"


class ReservationAction(str, enum.Enum):
    FULFILL = "fulfill"
    CANCEL = "cancel"


OPEN_LOAN_STATUSES = (LoanStatus.ACTIVE, LoanStatus.RENEWED)


@dataclass(frozen=True)
class LendingPolicy:
    renewal_days: int = 15
    max_renewals: Optional[int] = None  # None means unlimited


DEFAULT_POLICY = LendingPolicy()


@dataclass(frozen=True)
class LoanStatusView:
    label: str
    is_late: bool
    late_days: int


@dataclass(frozen=True)
class ReservationStatusView:
    label: str
    is_expired: bool
    days_remaining: int


@dataclass(frozen=True)
class LoanUpdate:
    status: LoanStatus
    actual_return_date: Optional[date] = None
    expected_return_date: Optional[date] = None
    renewal_count: Optional[int] = None
    # book whose availability must be recomputed once this update is written
    release_book_id: Optional[int] = None

    def apply_to(self, loan) -> None:
        loan.status = self.status
        for name in ("actual_return_date", "expected_return_date", "renewal_count"):
            value = getattr(self, name)
            if value is not None:
                setattr(loan, name, value)


@dataclass(frozen=True)
class ReservationUpdate:
    status: ReservationStatus
    follow_up: Optional[str] = None

    def apply_to(self, reservation) -> None:
        reservation.status = self.status


def _as_datetime(value: DateLike) -> datetime:
    # a bare date means the start of that calendar day
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def _ceil_days(delta: timedelta) -> int:
    return math.ceil(delta.total_seconds() / 86400)


def derive_loan_status(stored_status, expected_return_date: DateLike, now: DateLike) -> LoanStatusView:
    """Return the label shown for a loan at ``now``.

    Only an Active loan past its due date becomes "Overdue"; the number of
    late days rounds up, so one minute past due already counts as a day.
    """
    status = LoanStatus(stored_status)
    due = _as_datetime(expected_return_date)
    current = _as_datetime(now)
    if status is LoanStatus.ACTIVE and due < current:
        return LoanStatusView(label=OVERDUE, is_late=True, late_days=max(0, _ceil_days(current - due)))
    return LoanStatusView(label=status.value, is_late=False, late_days=0)


def derive_reservation_status(stored_status, expires_at: DateLike, now: DateLike) -> ReservationStatusView:
    """Return the label shown for a reservation at ``now``.

    ``days_remaining`` goes negative once the reservation has lapsed.
    """
    status = ReservationStatus(stored_status)
    expiry = _as_datetime(expires_at)
    current = _as_datetime(now)
    remaining = _ceil_days(expiry - current)
    if status is ReservationStatus.ACTIVE and expiry < current:
        return ReservationStatusView(label=EXPIRED, is_expired=True, days_remaining=remaining)
    return ReservationStatusView(label=status.value, is_expired=False, days_remaining=remaining)


def is_reservation_holding(stored_status, expires_at: DateLike, now: DateLike) -> bool:
    """True while a reservation still holds a copy of its book."""
    return ReservationStatus(stored_status) is ReservationStatus.ACTIVE and not derive_reservation_status(
        stored_status, expires_at, now
    ).is_expired


def apply_loan_transition(loan, action, today: DateLike, policy: LendingPolicy = DEFAULT_POLICY) -> LoanUpdate:
    action = LoanAction(action)
    status = LoanStatus(loan.status)
    today = _as_date(today)

    if status not in OPEN_LOAN_STATUSES:
        raise InvalidTransition(f"Cannot {action.value} a loan that is {status.value}")

    if action is LoanAction.RETURN:
        return LoanUpdate(
            status=LoanStatus.RETURNED,
            actual_return_date=today,
            release_book_id=loan.book_id,
        )

    renewals = loan.renewal_count or 0
    if policy.max_renewals is not None and renewals >= policy.max_renewals:
        raise InvalidTransition(f"Loan already renewed {renewals} time(s); limit is {policy.max_renewals}")
    return LoanUpdate(
        status=LoanStatus.RENEWED,
        expected_return_date=today + timedelta(days=policy.renewal_days),
        renewal_count=renewals + 1,
    )


def apply_reservation_transition(reservation, action, now: DateLike) -> ReservationUpdate:
    action = ReservationAction(action)
    status = ReservationStatus(reservation.status)

    if status is not ReservationStatus.ACTIVE:
        raise InvalidTransition(f"Cannot {action.value} a reservation that is {status.value}")

    if action is ReservationAction.CANCEL:
        return ReservationUpdate(status=ReservationStatus.CANCELLED)

    view = derive_reservation_status(status, reservation.expires_at, now)
    if view.is_expired:
        raise InvalidTransition("Cannot fulfill a reservation that has expired")
    return ReservationUpdate(
        status=ReservationStatus.FULFILLED,
        follow_up="Reservation fulfilled; check the book out to the person to create the loan.",
    )


def derive_book_status(copies: int, under_maintenance: bool, open_loans: int, holding_reservations: int) -> BookStatus:
    if under_maintenance:
        return BookStatus.UNDER_MAINTENANCE
    copies = max(copies, 1)
    if open_loans >= copies:
        return BookStatus.LOANED
    if open_loans + holding_reservations >= copies:
        return BookStatus.RESERVED
    return BookStatus.AVAILABLE
