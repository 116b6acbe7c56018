from typing import Any, Dict, List, Optional
from datetime import datetime
from sqlalchemy import (
    JSON,
    String,
    Integer,
    Text,
    ForeignKey,
    Index,
    func,
    UniqueConstraint,
    DateTime,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


# Base model with common audit fields
class AuditMixin:
    """Mixin for common audit fields"""

    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )


class App(Base, AuditMixin):
    __tablename__ = "apps"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    timezone: Mapped[Optional[str]] = mapped_column(String(64))


class AppUser(Base):
    """User document of an app; `doc` holds uid, tz, tk tokens, chr cohorts, custom props"""

    __tablename__ = "app_users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    app_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("apps.id"), nullable=False
    )
    uid: Mapped[str] = mapped_column(String(64), nullable=False)
    doc: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)

    __table_args__ = (
        UniqueConstraint("app_id", "uid", name="uq_app_users_app_uid"),
        Index("ix_app_users_app_id_id", "app_id", "id"),
    )


class GeoRegion(Base):
    __tablename__ = "geos"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    app_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("apps.id"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    # provider specific region definition (country, city, radius...)
    geo: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)


class PushHistory(Base):
    """One row per message a user has been sent"""

    __tablename__ = "push_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    app_id: Mapped[str] = mapped_column(String(64), nullable=False)
    uid: Mapped[str] = mapped_column(String(64), nullable=False)
    message_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sent_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )

    __table_args__ = (Index("ix_push_history_app_uid", "app_id", "uid"),)


class PushMessage(Base, AuditMixin):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    app_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("apps.id"), nullable=False
    )
    platforms: Mapped[List[str]] = mapped_column(JSON, nullable=False)
    filter: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    fields: Mapped[Dict[str, List[str]]] = mapped_column(
        JSON, nullable=False, default=dict
    )
    user_fields: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    contents: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )
    triggers: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )
    state: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    result_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    result_error: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)

    # Relationships
    error_counts: Mapped[List["MessageErrorCount"]] = relationship(
        back_populates="message", cascade="all, delete-orphan"
    )


class MessageErrorCount(Base):
    """result.errors.<platform>.<kind> counter of a message"""

    __tablename__ = "message_error_counts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("messages.id"), nullable=False
    )
    platform: Mapped[str] = mapped_column(String(16), nullable=False)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    message: Mapped["PushMessage"] = relationship(back_populates="error_counts")

    __table_args__ = (
        UniqueConstraint(
            "message_id", "platform", "kind", name="uq_message_error_counts"
        ),
    )


class PushColumnsMixin:
    """Delivery record columns shared by the queue and the holding area"""

    # time ordered, leading 4 bytes are the delivery timestamp
    id: Mapped[str] = mapped_column(String(24), primary_key=True)
    app_id: Mapped[str] = mapped_column(String(64), nullable=False)
    message_id: Mapped[str] = mapped_column(String(64), nullable=False)
    platform: Mapped[str] = mapped_column(String(16), nullable=False)
    field: Mapped[str] = mapped_column(String(16), nullable=False)
    uid: Mapped[str] = mapped_column(String(64), nullable=False)
    token: Mapped[str] = mapped_column(Text, nullable=False)
    props: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    content: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSON)


class QueuedPush(Base, PushColumnsMixin):
    __tablename__ = "push_queue"

    __table_args__ = (
        Index("ix_push_queue_message_platform", "message_id", "platform"),
        Index("ix_push_queue_app_id", "app_id", "id"),
    )


class HeldPush(Base, PushColumnsMixin):
    """Records moved out of the queue by a message stop, waiting for resend"""

    __tablename__ = "push_queue_held"

    __table_args__ = (Index("ix_push_queue_held_message", "message_id"),)


PUSH_COLUMNS = (
    "id",
    "app_id",
    "message_id",
    "platform",
    "field",
    "uid",
    "token",
    "props",
    "content",
)
