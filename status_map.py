"""
Kaspi status to amoCRM stage mappings
"""
import logging
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from models import SessionFactory, StatusMapping, SyncRecord

logger = logging.getLogger(__name__)


def normalize_status(kaspi_status: Optional[str]) -> str:
    return (kaspi_status or '').strip().upper()


class StatusMap:
    """Resolves Kaspi statuses and manages the status_mapping table"""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    def resolve(self, kaspi_status: str, pipeline_id: Optional[int] = None) -> Optional[StatusMapping]:
        """
        Active mapping used for automatic stage transitions

        Args:
            kaspi_status: Kaspi order status
            pipeline_id: Restrict to one pipeline; None or 0 considers all

        Returns:
            Lowest sort_order active mapping (ties broken by id), or None
        """
        status = normalize_status(kaspi_status)
        if not status:
            return None

        db = self.session_factory()
        try:
            query = db.query(StatusMapping).filter(
                StatusMapping.kaspi_status == status,
                StatusMapping.is_active.is_(True),
            )
            if pipeline_id:
                query = query.filter(StatusMapping.amo_pipeline_id == pipeline_id)
            mapping = query.order_by(StatusMapping.sort_order, StatusMapping.id).first()
            if mapping is None:
                logger.info("No active status mapping for %s (pipeline %s)", status, pipeline_id)
            return mapping
        finally:
            db.close()

    def get_active_status_id(self, kaspi_status: str, pipeline_id: Optional[int] = None) -> Optional[int]:
        mapping = self.resolve(kaspi_status, pipeline_id)
        return int(mapping.amo_status_id) if mapping is not None else None

    def list_mappings(self, kaspi_status: Optional[str] = None, pipeline_id: Optional[int] = None,
                      only_active: bool = False) -> List[Dict]:
        db = self.session_factory()
        try:
            query = db.query(StatusMapping)
            if kaspi_status:
                query = query.filter(StatusMapping.kaspi_status == normalize_status(kaspi_status))
            if pipeline_id:
                query = query.filter(StatusMapping.amo_pipeline_id == pipeline_id)
            if only_active:
                query = query.filter(StatusMapping.is_active.is_(True))
            rows = query.order_by(StatusMapping.kaspi_status, StatusMapping.sort_order,
                                  StatusMapping.id).all()
            return [row.to_dict() for row in rows]
        finally:
            db.close()

    def upsert_mapping(self, kaspi_status: str, pipeline_id: int, status_id: int,
                       responsible_user_id: Optional[int] = None, sort_order: int = 0,
                       is_active: bool = True) -> Dict:
        """
        Create or update the mapping for (status, pipeline, target stage)

        Returns:
            The stored mapping as a dictionary
        """
        status = normalize_status(kaspi_status)
        if not status:
            raise ValueError("kaspi_status is required")

        db = self.session_factory()
        try:
            mapping = db.query(StatusMapping).filter_by(
                kaspi_status=status, amo_pipeline_id=pipeline_id, amo_status_id=status_id
            ).first()
            action = 'updated'
            if mapping is None:
                mapping = StatusMapping(kaspi_status=status, amo_pipeline_id=pipeline_id,
                                        amo_status_id=status_id)
                db.add(mapping)
                action = 'inserted'
            mapping.amo_responsible_user_id = responsible_user_id
            mapping.sort_order = sort_order
            mapping.is_active = is_active
            db.commit()
            logger.info("Status mapping %s: %s -> %s/%s", action, status, pipeline_id, status_id)
            return mapping.to_dict()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to upsert status mapping %s", status)
            raise
        finally:
            db.close()

    def delete_mapping(self, mapping_id: int) -> bool:
        db = self.session_factory()
        try:
            deleted = db.query(StatusMapping).filter_by(id=mapping_id).delete(synchronize_session=False)
            db.commit()
            logger.info("Status mapping %s deleted: %s", mapping_id, bool(deleted))
            return bool(deleted)
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def activate_mapping(self, mapping_id: int) -> bool:
        return self._set_active(mapping_id, True)

    def deactivate_mapping(self, mapping_id: int) -> bool:
        return self._set_active(mapping_id, False)

    def _set_active(self, mapping_id: int, active: bool) -> bool:
        db = self.session_factory()
        try:
            updated = db.query(StatusMapping).filter_by(id=mapping_id).update(
                {'is_active': active}, synchronize_session=False
            )
            db.commit()
            logger.info("Status mapping %s %s", mapping_id, 'activated' if active else 'deactivated')
            return bool(updated)
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def get_kaspi_statuses(self) -> List[str]:
        """Statuses from active mappings and those already seen on synced orders"""
        db = self.session_factory()
        try:
            statuses = set()
            for (value,) in db.query(StatusMapping.kaspi_status).filter(
                    StatusMapping.is_active.is_(True)).distinct():
                statuses.add(normalize_status(value))
            for (value,) in db.query(SyncRecord.kaspi_status).distinct():
                statuses.add(normalize_status(value))
            statuses.discard('')
            return sorted(statuses)
        finally:
            db.close()

    def get_stats(self) -> Dict[str, int]:
        db = self.session_factory()
        try:
            total = db.query(func.count(StatusMapping.id)).scalar() or 0
            active = db.query(func.count(StatusMapping.id)).filter(
                StatusMapping.is_active.is_(True)).scalar() or 0
            return {'total': total, 'active': active, 'inactive': total - active}
        finally:
            db.close()
