from pydantic import BaseModel, Field
from typing import Optional, Any, Dict, List

from lifecycle import Role, Stage


class RoleChange(BaseModel):
    principal: str = Field(..., min_length=1, max_length=128)
    role: Role


class RoleCheck(BaseModel):
    principal: str
    role: Role
    granted: bool


class PrincipalRoles(BaseModel):
    principal: str
    roles: List[Role]


class CreateBatch(BaseModel):
    details: str


class StageUpdate(BaseModel):
    stage: Stage


class Certify(BaseModel):
    cert_hash: str = Field(..., min_length=1, max_length=255)


class ShipmentIn(BaseModel):
    location: str = Field(..., min_length=1, max_length=255)
    status: str = Field(..., max_length=255)


class ShipmentView(BaseModel):
    location: str
    timestamp: str
    status: str


class ShipmentHistory(BaseModel):
    batch_id: int
    shipments: List[ShipmentView]


class BatchView(BaseModel):
    id: int
    details: str
    stage: Stage
    status: str
    created_at: str
    cert_hash: str = ""      # "" while uncertified
    certified_at: str = ""   # "" while uncertified


class BatchBrief(BaseModel):
    id: int
    details: str
    stage: Stage
    status: str
    created_at: str
    certified: bool
    total_shipments: int
    verified: bool


class BatchList(BaseModel):
    items: List[BatchBrief]
    total: int
    page: int
    page_size: int


class AuditEvent(BaseModel):
    id: int
    batch_id: Optional[int] = None
    type: str
    payload: Dict[str, Any]
    timestamp: str
    prev_hash: str
    hash: str


class ChainCheck(BaseModel):
    verified: bool
    events: int
