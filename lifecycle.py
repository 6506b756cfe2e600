from enum import Enum
from typing import Dict, Tuple


class Role(str, Enum):
    FARM_SUPPLIER = "FarmSupplier"
    PROCESSING_PLANT = "ProcessingPlant"
    CERTIFICATION_AUTHORITY = "CertificationAuthority"
    LOGISTICS = "Logistics"
    RETAILER = "Retailer"


class Stage(str, Enum):
    RAW = "Raw"
    SLAUGHTERED = "Slaughtered"
    PROCESSED = "Processed"
    PACKAGED = "Packaged"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"


# downstream consumers match on these literal strings
STATUS_LABELS: Dict[Stage, str] = {
    Stage.RAW: "Raw Chicken Registered",
    Stage.SLAUGHTERED: "Slaughtered",
    Stage.PROCESSED: "Processed",
    Stage.PACKAGED: "Packaged",
    Stage.SHIPPED: "Shipped",
    Stage.DELIVERED: "Delivered to Retailer",
}

# the only moves update_stage may make; Shipped/Delivered have their own operations
MANUFACTURING_TRANSITIONS: Tuple[Tuple[Stage, Stage], ...] = (
    (Stage.RAW, Stage.SLAUGHTERED),
    (Stage.SLAUGHTERED, Stage.PROCESSED),
    (Stage.PROCESSED, Stage.PACKAGED),
)

# roles the administrator holds from the start
ADMIN_ROLES = (Role.FARM_SUPPLIER, Role.CERTIFICATION_AUTHORITY)


def status_label(stage: Stage) -> str:
    return STATUS_LABELS[Stage(stage)]


def can_advance(current: Stage, new: Stage) -> bool:
    return (Stage(current), Stage(new)) in MANUFACTURING_TRANSITIONS
