from typing import Optional

from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import Integer, String, Text, Boolean, ForeignKey, UniqueConstraint
from database import Base


class Setting(Base):
    __tablename__ = "settings"
    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(String(255))


class RoleGrant(Base):
    __tablename__ = "role_grants"
    principal: Mapped[str] = mapped_column(String(128), primary_key=True)
    role: Mapped[str] = mapped_column(String(32), primary_key=True)
    granted: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[str] = mapped_column(String(32))


class Batch(Base):
    __tablename__ = "batches"
    __table_args__ = {"sqlite_autoincrement": True}
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    details: Mapped[str] = mapped_column(Text)
    stage: Mapped[str] = mapped_column(String(16), index=True)
    status: Mapped[str] = mapped_column(String(64))
    created_at: Mapped[str] = mapped_column(String(32))
    created_by: Mapped[str] = mapped_column(String(128))
    certificate: Mapped[Optional["Certificate"]] = relationship(
        "Certificate", back_populates="batch", uselist=False)
    shipments: Mapped[list["Shipment"]] = relationship(
        "Shipment", back_populates="batch", order_by="Shipment.seq")
    events: Mapped[list["Event"]] = relationship("Event", back_populates="batch")


class Certificate(Base):
    __tablename__ = "certificates"
    batch_id: Mapped[int] = mapped_column(Integer, ForeignKey("batches.id"), primary_key=True)
    cert_hash: Mapped[str] = mapped_column(String(255))
    issued_at: Mapped[str] = mapped_column(String(32))
    issued_by: Mapped[str] = mapped_column(String(128))
    batch: Mapped[Batch] = relationship("Batch", back_populates="certificate")


class Shipment(Base):
    __tablename__ = "shipments"
    __table_args__ = (UniqueConstraint("batch_id", "seq"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    batch_id: Mapped[int] = mapped_column(Integer, ForeignKey("batches.id"), index=True)
    seq: Mapped[int] = mapped_column(Integer)
    location: Mapped[str] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(255))
    timestamp: Mapped[str] = mapped_column(String(32))
    recorded_by: Mapped[str] = mapped_column(String(128))
    batch: Mapped[Batch] = relationship("Batch", back_populates="shipments")


class Event(Base):
    __tablename__ = "events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    # NULL for role changes, which form their own chain
    batch_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("batches.id"), nullable=True, index=True)
    type: Mapped[str] = mapped_column(String(50))
    payload: Mapped[str] = mapped_column(Text)
    timestamp: Mapped[str] = mapped_column(String(32))
    prev_hash: Mapped[str] = mapped_column(String(128))
    hash: Mapped[str] = mapped_column(String(128))
    batch: Mapped[Optional[Batch]] = relationship("Batch", back_populates="events")
