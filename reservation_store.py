"""
Claim protocol over sync_records

Each Kaspi order code maps to at most one amoCRM lead. A worker must
reserve an order before creating anything downstream; the reservation is
an atomic compare-and-set on the row, so of N concurrent callers exactly
one is granted the claim. The claim is held only for the duration of the
claim decision transaction; commit() and release() run in later, separate
transactions once the amoCRM calls have finished.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from errors import ReservationError
from models import SessionFactory, SyncRecord

logger = logging.getLogger(__name__)

CLAIMED = 'claimed'
SYNCED = 'synced'
IN_FLIGHT = 'in_flight'

# Claims older than this are considered abandoned by a crashed worker
DEFAULT_STALE_AFTER = timedelta(minutes=30)


@dataclass(frozen=True)
class ReservationResult:
    claimed: bool
    token: Optional[str]
    reason: str


def new_token() -> str:
    return secrets.token_hex(16)


class ReservationStore:
    """Transactional access to sync_records"""

    def __init__(self, session_factory: SessionFactory,
                 stale_after: Optional[timedelta] = DEFAULT_STALE_AFTER,
                 clock: Callable[[], datetime] = datetime.utcnow):
        """
        Initialize reservation store

        Args:
            session_factory: Creates database sessions
            stale_after: Claims older than this may be taken over; None keeps claims
                until their worker commits or releases them
            clock: Returns the current naive UTC datetime
        """
        self.session_factory = session_factory
        self.stale_after = stale_after
        self.clock = clock

    def reserve(self, order_code: str, upstream_order_id: str, price: int,
                token: Optional[str] = None) -> ReservationResult:
        """
        Claim an order for processing

        Args:
            order_code: Kaspi order code
            upstream_order_id: Kaspi order id
            price: Order total in minor units
            token: Token of a claim this worker already holds, to resume it

        Returns:
            ReservationResult; claimed=False with reason 'synced' or 'in_flight' otherwise

        Raises:
            ReservationError: database failure (rolled back)
        """
        now = self.clock()
        fresh = new_token()

        claimable = [SyncRecord.processing_token.is_(None)]
        if token:
            claimable.append(SyncRecord.processing_token == token)
        if self.stale_after is not None:
            claimable.append(SyncRecord.processing_at < now - self.stale_after)

        db = self.session_factory()
        try:
            # Claim an existing unresolved row that nobody else holds
            updated = db.query(SyncRecord).filter(and_(
                SyncRecord.order_code == order_code,
                SyncRecord.downstream_record_id == 0,
                or_(*claimable),
            )).update({
                'processing_token': fresh,
                'processing_at': now,
                'upstream_order_id': str(upstream_order_id or ''),
                'total_price': int(price),
            }, synchronize_session=False)

            if updated:
                db.commit()
                logger.debug("Reserved existing record %s", order_code)
                return ReservationResult(True, fresh, CLAIMED)

            # No claimable row: insert one; the unique key decides between racers
            db.add(SyncRecord(
                order_code=order_code,
                upstream_order_id=str(upstream_order_id or ''),
                downstream_record_id=0,
                total_price=int(price),
                processing_token=fresh,
                processing_at=now,
                created_at=now,
            ))
            try:
                db.commit()
                logger.debug("Reserved new record %s", order_code)
                return ReservationResult(True, fresh, CLAIMED)
            except IntegrityError:
                db.rollback()

            existing = db.query(SyncRecord).filter_by(order_code=order_code).first()
            if existing is not None and existing.is_synced:
                return ReservationResult(False, None, SYNCED)
            return ReservationResult(False, None, IN_FLIGHT)

        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Reservation failed for %s: %s", order_code, e)
            raise ReservationError(f"Reservation failed for {order_code}: {e}")
        finally:
            db.close()

    def commit(self, order_code: str, downstream_record_id: int, price: int,
               kaspi_status: Optional[str] = None, token: Optional[str] = None) -> None:
        """
        Mark an order as synced to the given lead and clear its claim

        The row must still be unresolved and, when a token is given, still
        claimed with that token. A synced row is never overwritten.

        Raises:
            ReservationError: database failure, no row for the order, the row
                is already synced, or the claim was taken over
        """
        if downstream_record_id <= 0:
            raise ValueError("downstream_record_id must be positive")

        conditions = [
            SyncRecord.order_code == order_code,
            SyncRecord.downstream_record_id == 0,
        ]
        if token:
            conditions.append(SyncRecord.processing_token == token)

        db = self.session_factory()
        try:
            updated = db.query(SyncRecord).filter(and_(*conditions)).update({
                'downstream_record_id': int(downstream_record_id),
                'total_price': int(price),
                'kaspi_status': kaspi_status,
                'processing_token': None,
                'processing_at': None,
                'updated_at': self.clock(),
            }, synchronize_session=False)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise ReservationError(f"Commit failed for {order_code}: {e}")
        finally:
            db.close()

        if not updated:
            record = self.get(order_code)
            if record is None:
                raise ReservationError(f"No reservation for {order_code}")
            if record.is_synced:
                raise ReservationError(
                    f"Order {order_code} is already synced to lead {record.downstream_record_id}")
            raise ReservationError(f"Claim on {order_code} was taken over by another worker")

    def release(self, order_code: str, token: str) -> bool:
        """
        Clear a claim if the token still matches

        Returns:
            True if this call released the claim
        """
        db = self.session_factory()
        try:
            released = db.query(SyncRecord).filter(and_(
                SyncRecord.order_code == order_code,
                SyncRecord.processing_token == token,
                SyncRecord.downstream_record_id == 0,
            )).update({
                'processing_token': None,
                'processing_at': None,
            }, synchronize_session=False)
            db.commit()
            if not released:
                logger.warning("Release of %s skipped: claim no longer held by this worker", order_code)
            return bool(released)
        except SQLAlchemyError as e:
            db.rollback()
            raise ReservationError(f"Release failed for {order_code}: {e}")
        finally:
            db.close()

    def get(self, order_code: str) -> Optional[SyncRecord]:
        db = self.session_factory()
        try:
            return db.query(SyncRecord).filter_by(order_code=order_code).first()
        finally:
            db.close()

    def record_status(self, order_code: str, kaspi_status: str) -> None:
        self._update_synced(order_code, {'kaspi_status': kaspi_status})

    def record_price(self, order_code: str, price: int) -> None:
        self._update_synced(order_code, {'total_price': int(price)})

    def _update_synced(self, order_code: str, values: Dict) -> None:
        db = self.session_factory()
        try:
            db.query(SyncRecord).filter(and_(
                SyncRecord.order_code == order_code,
                SyncRecord.downstream_record_id > 0,
            )).update(values, synchronize_session=False)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise ReservationError(f"Update failed for {order_code}: {e}")
        finally:
            db.close()

    def stats(self) -> Dict[str, int]:
        """Counts of synced, in-flight and unresolved records"""
        db = self.session_factory()
        try:
            total = db.query(func.count(SyncRecord.id)).scalar() or 0
            synced = db.query(func.count(SyncRecord.id)).filter(
                SyncRecord.downstream_record_id > 0).scalar() or 0
            in_flight = db.query(func.count(SyncRecord.id)).filter(
                SyncRecord.downstream_record_id == 0,
                SyncRecord.processing_token.isnot(None)).scalar() or 0
            return {
                'total': total,
                'synced': synced,
                'in_flight': in_flight,
                'pending': total - synced - in_flight,
            }
        finally:
            db.close()
