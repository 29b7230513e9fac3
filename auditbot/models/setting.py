from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import Session

from auditbot.database import Base


class Setting(Base):
    __tablename__ = "settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(255), unique=True, nullable=False, index=True)
    value = Column(JSON, nullable=False)
    description = Column(Text)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    @classmethod
    def get(cls, db: Session, key: str, default: Optional[Any] = None) -> Any:
        row = db.query(cls).filter(cls.key == key).first()
        return row.value if row else default

    @classmethod
    def set(cls, db: Session, key: str, value: Any, description: str = "") -> "Setting":
        """Upsert a setting. Used by bootstrap tooling, never by the request path."""
        row = db.query(cls).filter(cls.key == key).first()
        if row is None:
            row = cls(key=key)
            db.add(row)
        row.value = value
        row.description = description
        row.updated_at = datetime.now(timezone.utc)
        db.flush()
        return row
