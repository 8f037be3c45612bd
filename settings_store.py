"""
Persistent key/value settings backed by the settings table
"""
import logging
from typing import Optional

from sqlalchemy import BigInteger, cast
from sqlalchemy.exc import IntegrityError

from models import SessionFactory, Setting

logger = logging.getLogger(__name__)


class SettingsStore:
    """Reads and writes string settings such as watermarks"""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        db = self.session_factory()
        try:
            row = db.get(Setting, key)
            if row is None or row.value is None:
                return default
            return row.value
        finally:
            db.close()

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.get(key)
        if value is None or value == '':
            return default
        try:
            return int(value)
        except ValueError:
            logger.error("Setting %s is not an integer: %r", key, value)
            return default

    def set(self, key: str, value: str) -> None:
        db = self.session_factory()
        try:
            updated = db.query(Setting).filter(Setting.key == key).update(
                {'value': value}, synchronize_session=False
            )
            if not updated:
                db.add(Setting(key=key, value=value))
            try:
                db.commit()
            except IntegrityError:
                # Inserted concurrently by another process
                db.rollback()
                db.query(Setting).filter(Setting.key == key).update(
                    {'value': value}, synchronize_session=False
                )
                db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def set_max(self, key: str, value: int) -> int:
        """
        Raise an integer setting to value, never lowering it

        The comparison happens in the UPDATE itself, so concurrent writers
        cannot move the setting backwards.

        Returns:
            The stored value after the call
        """
        db = self.session_factory()
        try:
            updated = db.query(Setting).filter(
                Setting.key == key,
                cast(Setting.value, BigInteger) < value,
            ).update({'value': str(value)}, synchronize_session=False)
            if not updated and db.get(Setting, key) is None:
                db.add(Setting(key=key, value=str(value)))
            try:
                db.commit()
            except IntegrityError:
                # Inserted concurrently by another process
                db.rollback()
                db.query(Setting).filter(
                    Setting.key == key,
                    cast(Setting.value, BigInteger) < value,
                ).update({'value': str(value)}, synchronize_session=False)
                db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        return self.get_int(key, value)
