# -*- coding: utf-8 -*-
"""
Persistence for Sora Studio (SQLAlchemy; SQLite locally, PostgreSQL when
DATABASE_URL points at one)

Only user-managed data is stored: credential pools and studio settings.
Work items live in memory for the lifetime of a session.
"""

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import NullPool

from config import CredentialKind, app_config
from error_handler import mask_secret

logger = logging.getLogger(__name__)

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialRecord(Base):
    """One credential of a pool (Sora cURL, YouTube token or Gemini key)"""
    __tablename__ = "credentials"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(20), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    value = Column(Text, nullable=False)
    label = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        # Never expose the value itself
        return {
            "id": self.id,
            "kind": self.kind,
            "position": self.position,
            "label": self.label,
            "preview": mask_secret(self.value or ""),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class StudioSetting(Base):
    """Key/value settings stored as JSON"""
    __tablename__ = "studio_settings"
    __table_args__ = (UniqueConstraint("key", name="uq_studio_settings_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(100), nullable=False)
    value_json = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


engine: Optional[Engine] = None
SessionLocal: Optional[sessionmaker] = None


def _engine_options(database_url: str) -> Dict[str, Any]:
    if database_url.startswith("sqlite"):
        # Sessions are opened from worker threads and the event loop alike
        return {"connect_args": {"check_same_thread": False}, "poolclass": NullPool}
    if database_url.startswith("postgresql"):
        return {"pool_pre_ping": True, "pool_recycle": 300}
    return {}


def init_db(database_url: str = None) -> Engine:
    """Bind the module-level session factory and create missing tables"""
    global engine, SessionLocal

    database_url = database_url or app_config.database_url
    # Hosted Postgres URLs often use the postgres:// scheme SQLAlchemy rejects
    if database_url.startswith("postgres://"):
        database_url = "postgresql://" + database_url[len("postgres://"):]

    engine = create_engine(database_url, **_engine_options(database_url))
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    logger.info(f"[Database] Ready ({engine.dialect.name})")
    return engine


@contextmanager
def get_db() -> Iterator[Session]:
    if SessionLocal is None:
        init_db()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_db_session() -> Iterator[Session]:
    """FastAPI dependency"""
    with get_db() as db:
        yield db


# ============ Credential pools & settings ============

def load_credentials(db: Session, kind: CredentialKind) -> List[str]:
    """Credential values of one kind in pool order"""
    records = db.query(CredentialRecord).filter(
        CredentialRecord.kind == CredentialKind(kind).value
    ).order_by(CredentialRecord.position.asc(), CredentialRecord.id.asc()).all()
    return [r.value for r in records]


def save_credentials(db: Session, kind: CredentialKind, values: List[str]):
    """Replace the stored pool of one kind with values (in order)"""
    kind = CredentialKind(kind)
    db.query(CredentialRecord).filter(CredentialRecord.kind == kind.value).delete()
    for position, value in enumerate(values):
        db.add(CredentialRecord(kind=kind.value, position=position, value=value))
    db.commit()
    logger.info(f"[Database] Stored {len(values)} {kind.value} credentials")


def get_setting(db: Session, key: str, default: Any = None) -> Any:
    setting = db.query(StudioSetting).filter(StudioSetting.key == key).first()
    if setting is None or setting.value_json is None:
        return default
    try:
        return json.loads(setting.value_json)
    except ValueError:
        logger.warning(f"[Database] Setting {key} is not valid JSON - using default")
        return default


def set_setting(db: Session, key: str, value: Any):
    setting = db.query(StudioSetting).filter(StudioSetting.key == key).first()
    if setting is None:
        setting = StudioSetting(key=key)
        db.add(setting)
    setting.value_json = json.dumps(value)
    db.commit()


def get_settings(db: Session, keys: List[str]) -> Dict[str, Any]:
    return {key: get_setting(db, key) for key in keys}


def clear_setting(db: Session, key: str) -> Optional[bool]:
    deleted = db.query(StudioSetting).filter(StudioSetting.key == key).delete()
    db.commit()
    return bool(deleted)
