"""
Database models for order sync state, status mappings, OAuth tokens and settings
"""
import os
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import (
    BigInteger, Boolean, Column, DateTime, Integer, String, Text, UniqueConstraint, create_engine
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

Base = declarative_base()


class SyncRecord(Base):
    """Maps a Kaspi order code to the amoCRM lead created for it"""
    __tablename__ = 'sync_records'

    id = Column(Integer, primary_key=True)
    order_code = Column(String(64), nullable=False, unique=True)
    upstream_order_id = Column(String(64), nullable=False, default='')

    # 0 until the lead exists in amoCRM
    downstream_record_id = Column(BigInteger, nullable=False, default=0)
    total_price = Column(BigInteger, nullable=False, default=0)
    kaspi_status = Column(String(64), nullable=True)

    # Claim
    processing_token = Column(String(64), nullable=True)
    processing_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_synced(self) -> bool:
        return (self.downstream_record_id or 0) > 0

    def __repr__(self):
        return f"<SyncRecord {self.order_code} lead={self.downstream_record_id} status={self.kaspi_status}>"


class StatusMapping(Base):
    """Kaspi order status to amoCRM pipeline stage"""
    __tablename__ = 'status_mapping'

    id = Column(Integer, primary_key=True)
    kaspi_status = Column(String(64), nullable=False, index=True)
    amo_pipeline_id = Column(BigInteger, nullable=False)
    amo_status_id = Column(BigInteger, nullable=False)
    amo_responsible_user_id = Column(BigInteger, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('kaspi_status', 'amo_pipeline_id', 'amo_status_id',
                         name='status_mapping_status_pipeline_target_key'),
    )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'kaspi_status': self.kaspi_status,
            'amo_pipeline_id': self.amo_pipeline_id,
            'amo_status_id': self.amo_status_id,
            'amo_responsible_user_id': self.amo_responsible_user_id,
            'is_active': bool(self.is_active),
            'sort_order': self.sort_order,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


class OAuthToken(Base):
    """OAuth tokens, one row per external service"""
    __tablename__ = 'oauth_tokens'

    id = Column(Integer, primary_key=True)
    service = Column(String(50), nullable=False, unique=True)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False)
    expires_at = Column(BigInteger, nullable=False)  # epoch seconds


class Setting(Base):
    """Key/value settings (watermarks, scheduler state)"""
    __tablename__ = 'settings'

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=True)


# Database connection
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///sync_state.db')

SessionFactory = Callable[[], Session]

engine: Optional[Engine] = None
SessionLocal: Optional[sessionmaker] = None


def configure(database_url: Optional[str] = None, echo: bool = False) -> sessionmaker:
    """
    Create the engine and session factory

    Args:
        database_url: SQLAlchemy URL, defaults to DATABASE_URL
        echo: Log emitted SQL

    Returns:
        Session factory bound to the new engine
    """
    global engine, SessionLocal
    engine = create_engine(database_url or DATABASE_URL, echo=echo)
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    return SessionLocal


def init_db(bind: Optional[Engine] = None):
    """Initialize database tables"""
    if bind is None:
        if engine is None:
            configure()
        bind = engine
    Base.metadata.create_all(bind)

