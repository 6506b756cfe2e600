import json
import logging
import threading
from collections import deque
from contextlib import contextmanager
from typing import Callable, List, Optional

from sqlalchemy import select, func
from sqlalchemy.orm import Session, sessionmaker

from access import AccessControl, requires_admin, requires_role
from database import Base
from errors import (
    AlreadyCertified,
    ConfigurationError,
    InvalidTransition,
    NotFound,
    StagePrecondition,
)
from lifecycle import ADMIN_ROLES, Role, Stage, can_advance, status_label
from models import Batch, Certificate, Event, Setting, Shipment
from schemas import (
    AuditEvent,
    BatchBrief,
    BatchList,
    BatchView,
    ChainCheck,
    RoleCheck,
    ShipmentView,
)
from utils import GENESIS, compute_hash, now_iso, verify_chain

logger = logging.getLogger("tracechain.ledger")

Listener = Callable[[AuditEvent], None]


class _Transaction:
    def __init__(self, db: Session):
        self.db = db
        self.published: List[AuditEvent] = []


class TraceChain:
    """The single shared store behind every operation.

    Mutations are serialized on one lock and committed together, so an
    operation either lands completely or not at all. Reads take the same lock
    because an in-memory database shares one connection between sessions.
    Audit events are written in the same transaction, queued in commit order,
    and handed to listeners only after the commit succeeded. A listener that
    mutates the store from inside a callback has its own events delivered
    after the current ones, never interleaved.
    """

    def __init__(self, engine, admin: str, clock: Callable[[], str] = now_iso):
        self.engine = engine
        self.access = AccessControl(admin)
        self.clock = clock
        self._sessions = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        self._lock = threading.RLock()
        self._listeners: List[Listener] = []
        self._outbox: deque = deque()
        self._publish_lock = threading.Lock()

    @property
    def admin(self) -> str:
        return self.access.admin

    # ---------- lifecycle ----------
    def init_schema(self) -> None:
        """Create tables and pin the administrator on first start."""
        Base.metadata.create_all(bind=self.engine)
        with self.transaction() as tx:
            stored = tx.db.get(Setting, "admin")
            if stored is not None:
                if stored.value != self.admin:
                    raise ConfigurationError(
                        f"database belongs to administrator '{stored.value}', not '{self.admin}'",
                        operation="init_schema",
                    )
                return
            tx.db.add(Setting(key="admin", value=self.admin))
            for role in ADMIN_ROLES:
                self._set_role(tx, self.admin, role, True)
        logger.info(f"store initialised with administrator '{self.admin}'")

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    @contextmanager
    def transaction(self):
        with self._lock:
            db = self._sessions()
            tx = _Transaction(db)
            try:
                yield tx
                db.commit()
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()
            self._outbox.extend(tx.published)
        self._drain()

    @contextmanager
    def _reading(self):
        with self._lock, self._sessions() as db:
            yield db

    def _drain(self) -> None:
        # whoever holds the publish lock delivers everything queued, oldest first
        while self._outbox:
            if not self._publish_lock.acquire(blocking=False):
                return
            try:
                while self._outbox:
                    self._publish(self._outbox.popleft())
            finally:
                self._publish_lock.release()

    def _publish(self, ev: AuditEvent) -> None:
        logger.info(f"{ev.type} batch={ev.batch_id} hash={ev.hash[:12]}")
        for listener in self._listeners:
            try:
                listener(ev)
            except Exception:
                logger.exception(f"listener {listener!r} failed on {ev.type}")

    # ---------- helpers ----------
    def _append_event(self, tx: _Transaction, batch_id: Optional[int], ev_type: str,
                      payload: dict, ts: str) -> Event:
        scope = Event.batch_id.is_(None) if batch_id is None else Event.batch_id == batch_id
        prev = tx.db.scalar(select(Event).where(scope).order_by(Event.id.desc()).limit(1))
        prev_hash = prev.hash if prev else GENESIS
        ev = Event(
            batch_id=batch_id,
            type=ev_type,
            payload=json.dumps(payload),
            timestamp=ts,
            prev_hash=prev_hash,
            hash=compute_hash(prev_hash, payload, ts),
        )
        tx.db.add(ev)
        tx.db.flush()
        tx.published.append(_event_view(ev))
        return ev

    @staticmethod
    def _require_batch(db: Session, batch_id: int, operation: str) -> Batch:
        batch = db.get(Batch, batch_id)
        if batch is None:
            raise NotFound(f"batch {batch_id} does not exist", operation=operation, batch_id=batch_id)
        return batch

    def _set_role(self, tx: _Transaction, principal: str, role: Role, granted: bool) -> RoleCheck:
        ts = self.clock()
        role = Role(role)
        self.access.set_role(tx.db, principal, role, granted, ts)
        self._append_event(tx, None, "RoleChanged", {
            "principal": principal,
            "role": role.value,
            "granted": granted,
        }, ts)
        return RoleCheck(principal=principal, role=role, granted=granted)

    # ---------- access control ----------
    @requires_admin
    def grant(self, tx, caller: str, principal: str, role: Role) -> RoleCheck:
        return self._set_role(tx, principal, role, True)

    @requires_admin
    def revoke(self, tx, caller: str, principal: str, role: Role) -> RoleCheck:
        return self._set_role(tx, principal, role, False)

    def ensure_admin(self, caller: str, operation: str) -> None:
        self.access.ensure_admin(caller, operation)

    def has_role(self, principal: str, role: Role) -> bool:
        with self._reading() as db:
            return self.access.has_role(db, principal, role)

    def roles_of(self, principal: str) -> List[Role]:
        with self._reading() as db:
            return self.access.roles_of(db, principal)

    # ---------- batch ledger ----------
    @requires_role(Role.FARM_SUPPLIER)
    def create_batch(self, tx, caller: str, details: str) -> BatchView:
        ts = self.clock()
        batch = Batch(
            details=details,
            stage=Stage.RAW.value,
            status=status_label(Stage.RAW),
            created_at=ts,
            created_by=caller,
        )
        tx.db.add(batch)
        tx.db.flush()
        self._append_event(tx, batch.id, "BatchCreated", {
            "id": batch.id,
            "details": details,
            "timestamp": ts,
        }, ts)
        return _batch_view(batch)

    @requires_role(Role.PROCESSING_PLANT)
    def update_stage(self, tx, caller: str, batch_id: int, stage: Stage) -> BatchView:
        batch = self._require_batch(tx.db, batch_id, "update_stage")
        current = Stage(batch.stage)
        try:
            new = Stage(stage)
        except ValueError:
            raise InvalidTransition(f"unknown stage {stage!r}", operation="update_stage", batch_id=batch_id)
        if not can_advance(current, new):
            raise InvalidTransition(
                f"cannot move batch {batch_id} from {current.value} to {new.value}",
                operation="update_stage", batch_id=batch_id,
            )
        ts = self.clock()
        self._move(batch, new)
        self._append_event(tx, batch.id, "StageUpdated", {
            "id": batch.id,
            "stage": new.value,
            "timestamp": ts,
        }, ts)
        return _batch_view(batch)

    @staticmethod
    def _move(batch: Batch, stage: Stage) -> None:
        batch.stage = stage.value
        batch.status = status_label(stage)

    # ---------- certification ----------
    @requires_role(Role.CERTIFICATION_AUTHORITY)
    def certify_halal(self, tx, caller: str, batch_id: int, cert_hash: str) -> BatchView:
        batch = self._require_batch(tx.db, batch_id, "certify_halal")
        if batch.certificate is not None:
            raise AlreadyCertified(
                f"batch {batch_id} was certified at {batch.certificate.issued_at}",
                operation="certify_halal", batch_id=batch_id,
            )
        ts = self.clock()
        batch.certificate = Certificate(cert_hash=cert_hash, issued_at=ts, issued_by=caller)
        tx.db.flush()
        self._append_event(tx, batch.id, "HalalCertified", {
            "batch_id": batch.id,
            "cert_hash": cert_hash,
            "timestamp": ts,
        }, ts)
        return _batch_view(batch)

    # ---------- shipment log ----------
    @requires_role(Role.LOGISTICS)
    def record_shipment(self, tx, caller: str, batch_id: int, location: str, status: str) -> ShipmentView:
        batch = self._require_batch(tx.db, batch_id, "record_shipment")
        if batch.stage != Stage.PACKAGED.value:
            raise StagePrecondition(
                f"batch {batch_id} is {batch.stage}, shipments start from {Stage.PACKAGED.value}",
                operation="record_shipment", batch_id=batch_id,
            )
        ts = self.clock()
        record = Shipment(
            seq=len(batch.shipments),
            location=location,
            status=status,
            timestamp=ts,
            recorded_by=caller,
        )
        batch.shipments.append(record)
        self._move(batch, Stage.SHIPPED)
        tx.db.flush()
        self._append_event(tx, batch.id, "ShipmentRecorded", {
            "batch_id": batch.id,
            "location": location,
            "status": status,
            "timestamp": ts,
        }, ts)
        return _shipment_view(record)

    @requires_role(Role.RETAILER)
    def confirm_received(self, tx, caller: str, batch_id: int) -> BatchView:
        batch = self._require_batch(tx.db, batch_id, "confirm_received")
        if batch.stage != Stage.SHIPPED.value:
            raise StagePrecondition(
                f"batch {batch_id} is {batch.stage}, only {Stage.SHIPPED.value} batches can be received",
                operation="confirm_received", batch_id=batch_id,
            )
        ts = self.clock()
        self._move(batch, Stage.DELIVERED)
        self._append_event(tx, batch.id, "BatchReceived", {
            "batch_id": batch.id,
            "timestamp": ts,
        }, ts)
        return _batch_view(batch)

    # ---------- queries ----------
    def get_batch(self, batch_id: int) -> BatchView:
        with self._reading() as db:
            return _batch_view(self._require_batch(db, batch_id, "get_batch"))

    def get_shipment_history(self, batch_id: int) -> List[ShipmentView]:
        with self._reading() as db:
            batch = self._require_batch(db, batch_id, "get_shipment_history")
            return [_shipment_view(s) for s in batch.shipments]

    def list_batches(self, q: Optional[str] = None, stage: Optional[Stage] = None,
                     page: int = 1, page_size: int = 10) -> BatchList:
        base = select(Batch)
        if q:
            base = base.where(Batch.details.ilike(f"%{q}%"))
        if stage is not None:
            base = base.where(Batch.stage == Stage(stage).value)

        with self._reading() as db:
            total = db.scalar(select(func.count()).select_from(base.subquery()))
            rows = db.scalars(
                base.order_by(Batch.id.desc())
                    .offset((page - 1) * page_size)
                    .limit(page_size)
            ).all()
            items = [BatchBrief(
                id=b.id,
                details=b.details,
                stage=Stage(b.stage),
                status=b.status,
                created_at=b.created_at,
                certified=b.certificate is not None,
                total_shipments=len(b.shipments),
                verified=verify_chain(_chain(db, b.id)),
            ) for b in rows]

        return BatchList(items=items, total=total or 0, page=page, page_size=page_size)

    def get_events(self, batch_id: int) -> List[AuditEvent]:
        with self._reading() as db:
            self._require_batch(db, batch_id, "get_events")
            return [_event_view(e) for e in _events(db, batch_id)]

    def get_role_events(self) -> List[AuditEvent]:
        with self._reading() as db:
            return [_event_view(e) for e in _events(db, None)]

    def verify_batch(self, batch_id: int) -> ChainCheck:
        with self._reading() as db:
            self._require_batch(db, batch_id, "verify_batch")
            chain = _chain(db, batch_id)
        return ChainCheck(verified=verify_chain(chain), events=len(chain))

    def verify_role_trail(self) -> ChainCheck:
        with self._reading() as db:
            chain = _chain(db, None)
        return ChainCheck(verified=verify_chain(chain), events=len(chain))


def _events(db: Session, batch_id: Optional[int]) -> List[Event]:
    scope = Event.batch_id.is_(None) if batch_id is None else Event.batch_id == batch_id
    return db.scalars(select(Event).where(scope).order_by(Event.id.asc())).all()


def _chain(db: Session, batch_id: Optional[int]) -> List[dict]:
    return [{
        "payload": json.loads(e.payload),
        "timestamp": e.timestamp,
        "prev_hash": e.prev_hash,
        "hash": e.hash,
    } for e in _events(db, batch_id)]


def _event_view(e: Event) -> AuditEvent:
    return AuditEvent(
        id=e.id,
        batch_id=e.batch_id,
        type=e.type,
        payload=json.loads(e.payload),
        timestamp=e.timestamp,
        prev_hash=e.prev_hash,
        hash=e.hash,
    )


def _shipment_view(s: Shipment) -> ShipmentView:
    return ShipmentView(location=s.location, timestamp=s.timestamp, status=s.status)


def _batch_view(batch: Batch) -> BatchView:
    cert = batch.certificate
    return BatchView(
        id=batch.id,
        details=batch.details,
        stage=Stage(batch.stage),
        status=batch.status,
        created_at=batch.created_at,
        cert_hash=cert.cert_hash if cert else "",
        certified_at=cert.issued_at if cert else "",
    )
