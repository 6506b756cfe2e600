import os
import io
import logging
import random
from typing import List, Optional

from fastapi import FastAPI, Depends, Header, Request, Response, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import qrcode

from database import engine
from errors import TraceChainError
from ledger import TraceChain
from lifecycle import Role, Stage
import schemas
from schemas import (
    AuditEvent,
    BatchView,
    Certify,
    ChainCheck,
    CreateBatch,
    PrincipalRoles,
    RoleChange,
    RoleCheck,
    ShipmentHistory,
    ShipmentIn,
    ShipmentView,
    StageUpdate,
)

# ---------- Config ----------
BASE_URL = os.getenv("BASE_URL", "http://localhost:8000")
ADMIN_PRINCIPAL = os.getenv("ADMIN_PRINCIPAL", "admin")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("tracechain.api")

app = FastAPI(title="Halal Poultry TraceChain", version="0.2.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

STATUS_CODES = {
    "Unauthorized": 403,
    "NotFound": 404,
    "InvalidTransition": 409,
    "StagePrecondition": 409,
    "AlreadyCertified": 409,
}

# ---------- Store ----------
chain = TraceChain(engine, ADMIN_PRINCIPAL)


def get_chain() -> TraceChain:
    return chain


@app.on_event("startup")
def on_startup():
    chain.init_schema()


@app.exception_handler(TraceChainError)
async def trace_chain_error(request: Request, exc: TraceChainError):
    code = STATUS_CODES.get(exc.kind, 500)
    if code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.kind} {exc.message}")
    return JSONResponse(status_code=code, content=exc.to_dict())


# ---------- APIs: roles ----------
@app.post("/api/roles/grant", response_model=RoleCheck)
def grant_role(body: RoleChange, x_principal: str = Header(...), tc: TraceChain = Depends(get_chain)):
    return tc.grant(x_principal, body.principal, body.role)


@app.post("/api/roles/revoke", response_model=RoleCheck)
def revoke_role(body: RoleChange, x_principal: str = Header(...), tc: TraceChain = Depends(get_chain)):
    return tc.revoke(x_principal, body.principal, body.role)


@app.get("/api/roles/{principal}", response_model=PrincipalRoles)
def principal_roles(principal: str, tc: TraceChain = Depends(get_chain)):
    return PrincipalRoles(principal=principal, roles=tc.roles_of(principal))


@app.get("/api/roles/{principal}/{role}", response_model=RoleCheck)
def has_role(principal: str, role: Role, tc: TraceChain = Depends(get_chain)):
    return RoleCheck(principal=principal, role=role, granted=tc.has_role(principal, role))


@app.get("/api/audit/roles", response_model=List[AuditEvent])
def role_events(tc: TraceChain = Depends(get_chain)):
    return tc.get_role_events()


@app.get("/api/audit/roles/verify", response_model=ChainCheck)
def verify_roles(tc: TraceChain = Depends(get_chain)):
    return tc.verify_role_trail()


# ---------- APIs: one batch ----------
@app.post("/api/batches", response_model=BatchView, status_code=201)
def create_batch(body: CreateBatch, x_principal: str = Header(...), tc: TraceChain = Depends(get_chain)):
    return tc.create_batch(x_principal, body.details)


@app.get("/api/batches/{batch_id}", response_model=BatchView)
def get_batch(batch_id: int, tc: TraceChain = Depends(get_chain)):
    return tc.get_batch(batch_id)


@app.post("/api/batches/{batch_id}/stage", response_model=BatchView)
def update_stage(batch_id: int, body: StageUpdate, x_principal: str = Header(...),
                 tc: TraceChain = Depends(get_chain)):
    return tc.update_stage(x_principal, batch_id, body.stage)


@app.post("/api/batches/{batch_id}/certificate", response_model=BatchView)
def certify_halal(batch_id: int, body: Certify, x_principal: str = Header(...),
                  tc: TraceChain = Depends(get_chain)):
    return tc.certify_halal(x_principal, batch_id, body.cert_hash)


@app.post("/api/batches/{batch_id}/shipments", response_model=ShipmentView, status_code=201)
def record_shipment(batch_id: int, body: ShipmentIn, x_principal: str = Header(...),
                    tc: TraceChain = Depends(get_chain)):
    return tc.record_shipment(x_principal, batch_id, body.location, body.status)


@app.get("/api/batches/{batch_id}/shipments", response_model=ShipmentHistory)
def shipment_history(batch_id: int, tc: TraceChain = Depends(get_chain)):
    return ShipmentHistory(batch_id=batch_id, shipments=tc.get_shipment_history(batch_id))


@app.post("/api/batches/{batch_id}/receive", response_model=BatchView)
def confirm_received(batch_id: int, x_principal: str = Header(...), tc: TraceChain = Depends(get_chain)):
    return tc.confirm_received(x_principal, batch_id)


@app.get("/api/batches/{batch_id}/events", response_model=List[AuditEvent])
def batch_events(batch_id: int, tc: TraceChain = Depends(get_chain)):
    return tc.get_events(batch_id)


@app.get("/api/batches/{batch_id}/verify", response_model=ChainCheck)
def verify_batch(batch_id: int, tc: TraceChain = Depends(get_chain)):
    return tc.verify_batch(batch_id)


@app.get("/api/batches/{batch_id}/qrcode")
def batch_qrcode(batch_id: int, tc: TraceChain = Depends(get_chain)):
    tc.get_batch(batch_id)
    url = f"{BASE_URL}/api/batches/{batch_id}"
    img = qrcode.make(url)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return Response(content=buf.getvalue(), media_type="image/png")


# ---------- Batches listing & search ----------
@app.get("/api/batches", response_model=schemas.BatchList)
def list_batches(
    q: Optional[str] = Query(None, description="search in batch details"),
    stage: Optional[Stage] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    tc: TraceChain = Depends(get_chain),
):
    return tc.list_batches(q=q, stage=stage, page=page, page_size=page_size)


# ---------- Demo data ----------
DEMO_PRINCIPALS = {
    Role.FARM_SUPPLIER: "demo-farm",
    Role.PROCESSING_PLANT: "demo-plant",
    Role.LOGISTICS: "demo-logistics",
    Role.RETAILER: "demo-retailer",
    Role.CERTIFICATION_AUTHORITY: "demo-certifier",
}


def _grant_demo_roles(tc: TraceChain, caller: str):
    for role, principal in DEMO_PRINCIPALS.items():
        if not tc.has_role(principal, role):
            tc.grant(caller, principal, role)


@app.post("/api/seed")
def seed(x_principal: str = Header(...), tc: TraceChain = Depends(get_chain)):
    tc.ensure_admin(x_principal, "seed")
    _grant_demo_roles(tc, x_principal)
    p = DEMO_PRINCIPALS

    batch = tc.create_batch(p[Role.FARM_SUPPLIER], "Lot-42")
    for stage in (Stage.SLAUGHTERED, Stage.PROCESSED, Stage.PACKAGED):
        tc.update_stage(p[Role.PROCESSING_PLANT], batch.id, stage)
    tc.certify_halal(p[Role.CERTIFICATION_AUTHORITY], batch.id, "JAKIM-HC-2024-0042")
    tc.record_shipment(p[Role.LOGISTICS], batch.id, "Warehouse-7", "in transit")
    tc.confirm_received(p[Role.RETAILER], batch.id)
    return {"status": "seeded", "batch_id": batch.id}


@app.post("/api/seed_many")
def seed_many(n: int = Query(10, ge=1, le=500), x_principal: str = Header(...),
              tc: TraceChain = Depends(get_chain)):
    tc.ensure_admin(x_principal, "seed_many")
    _grant_demo_roles(tc, x_principal)
    p = DEMO_PRINCIPALS
    farms = ["Kampung Baru Farm", "Sungai Buloh Poultry", "Bukit Tinggi Layers", "Kuala Selangor Broilers"]
    hubs = ["Warehouse-7", "Cold Truck A", "Port Klang Depot"]
    stages = list(Stage)

    created = []
    for i in range(1, n + 1):
        batch = tc.create_batch(p[Role.FARM_SUPPLIER], f"{random.choice(farms)} / Lot-{i:03d}")
        target = random.choice(stages)
        for stage in (Stage.SLAUGHTERED, Stage.PROCESSED, Stage.PACKAGED):
            if stages.index(stage) > stages.index(target):
                break
            tc.update_stage(p[Role.PROCESSING_PLANT], batch.id, stage)
        if stages.index(target) >= stages.index(Stage.SHIPPED):
            tc.record_shipment(p[Role.LOGISTICS], batch.id, random.choice(hubs), "in transit")
        if target == Stage.DELIVERED:
            tc.confirm_received(p[Role.RETAILER], batch.id)
        if random.random() < 0.5:
            tc.certify_halal(p[Role.CERTIFICATION_AUTHORITY], batch.id, f"HC-{batch.id:05d}")
        created.append(batch.id)

    return {"status": "ok", "created": len(created), "batch_ids": created}
