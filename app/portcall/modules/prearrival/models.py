from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.portcall.models import Base, CreatedAtMixin

_SET_NULL_USER = "users.id"


def _user_ref() -> Mapped[int | None]:
    return mapped_column(ForeignKey(_SET_NULL_USER, ondelete="SET NULL"))


def _touched_at() -> Mapped[datetime]:
    return mapped_column(DateTime(timezone=False), default=datetime.utcnow)


class PortCallRequest(CreatedAtMixin, Base):
    __tablename__ = "port_call_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    request_id: Mapped[str] = mapped_column(String(64), unique=True)  # "PCR-2026-014"
    vessel_name: Mapped[str] = mapped_column(String(255))
    port_name: Mapped[str] = mapped_column(String(255))
    eta: Mapped[date] = mapped_column(Date)
    due_date: Mapped[date] = mapped_column(Date)
    agent_contact: Mapped[str | None] = mapped_column(String(255))
    notes: Mapped[str | None] = mapped_column(Text)
    # draft -> published -> sent -> completed
    status: Mapped[str] = mapped_column(String(16), default="draft")

    updated_at: Mapped[datetime] = _touched_at()
    created_by_user_id: Mapped[int | None] = _user_ref()
    updated_by_user_id: Mapped[int | None] = _user_ref()

    documents: Mapped[list[PortCallDocument]] = relationship(
        back_populates="request", cascade="all, delete-orphan", lazy="selectin"
    )


class PortCallDocument(Base):
    """
    One checklist slot of a port call. The row appears the first time the
    slot is written and lives as long as its request.
    """

    __tablename__ = "port_call_documents"
    __table_args__ = (UniqueConstraint("request_pk", "doc_id", name="uq_port_call_document_slot"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    request_pk: Mapped[int] = mapped_column(ForeignKey("port_call_requests.id", ondelete="CASCADE"))
    doc_id: Mapped[str] = mapped_column(String(64))

    status: Mapped[str] = mapped_column(String(32), default="draft")
    file_url: Mapped[str | None] = mapped_column(Text)
    file_name: Mapped[str | None] = mapped_column(String(255))
    storage_key: Mapped[str | None] = mapped_column(String(512))
    size_bytes: Mapped[int | None] = mapped_column(Integer)
    content_type: Mapped[str | None] = mapped_column(String(128))
    note: Mapped[str] = mapped_column(String(255), default="")
    rejection_reason: Mapped[str] = mapped_column(Text, default="")

    uploaded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False))
    uploaded_by_user_id: Mapped[int | None] = _user_ref()
    updated_at: Mapped[datetime] = _touched_at()

    request: Mapped[PortCallRequest] = relationship(back_populates="documents", lazy="selectin")
    log_entries: Mapped[list[PortCallDocumentLog]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PortCallDocumentLog.id",
    )


class PortCallDocumentLog(CreatedAtMixin, Base):
    """Append-only slot history: note, rejection, approval or upload."""

    __tablename__ = "port_call_document_logs"
    __table_args__ = (Index("idx_port_call_document_logs_document", "document_pk"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_pk: Mapped[int] = mapped_column(ForeignKey("port_call_documents.id", ondelete="CASCADE"))
    kind: Mapped[str] = mapped_column(String(16))
    message: Mapped[str] = mapped_column(Text)
    role: Mapped[str] = mapped_column(String(16))  # "ship" | "office"
    author_user_id: Mapped[int | None] = _user_ref()

    document: Mapped[PortCallDocument] = relationship(back_populates="log_entries")
