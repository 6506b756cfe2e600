import os

# app.py builds its default store at import time; keep it off disk
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient

from database import make_engine
from ledger import TraceChain
from lifecycle import Role, Stage

ADMIN = "admin"
FARM = "P1"
PLANT = "P2"
LOGISTICS = "P3"
RETAILER = "P4"
CERTIFIER = "P5"
OUTSIDER = "P9"

GRANTS = [
    (FARM, Role.FARM_SUPPLIER),
    (PLANT, Role.PROCESSING_PLANT),
    (LOGISTICS, Role.LOGISTICS),
    (RETAILER, Role.RETAILER),
    (CERTIFIER, Role.CERTIFICATION_AUTHORITY),
]


@pytest.fixture()
def chain():
    tc = TraceChain(make_engine("sqlite://"), ADMIN)
    tc.init_schema()
    return tc


@pytest.fixture()
def actors(chain):
    for principal, role in GRANTS:
        chain.grant(ADMIN, principal, role)
    return chain


@pytest.fixture()
def batch_id(actors):
    return actors.create_batch(FARM, "Lot-42").id


@pytest.fixture()
def packaged(actors, batch_id):
    for stage in (Stage.SLAUGHTERED, Stage.PROCESSED, Stage.PACKAGED):
        actors.update_stage(PLANT, batch_id, stage)
    return batch_id


@pytest.fixture()
def client(actors):
    from app import app, get_chain

    app.dependency_overrides[get_chain] = lambda: actors
    yield TestClient(app)
    app.dependency_overrides.clear()
