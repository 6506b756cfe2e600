"""
Walk one batch through the whole supply chain against a running API.
Run:
    ADMIN_PRINCIPAL=admin python scripts/simulate_supply_chain.py
"""
import os
import random
import requests

API = os.getenv("API_URL", "http://localhost:8000")
ADMIN = os.getenv("ADMIN_PRINCIPAL", "admin")

ACTORS = {
    "FarmSupplier": "sim-farm",
    "ProcessingPlant": "sim-plant",
    "CertificationAuthority": "sim-certifier",
    "Logistics": "sim-logistics",
    "Retailer": "sim-retailer",
}


def call(method, path, principal=None, **kwargs):
    headers = {"X-Principal": principal} if principal else {}
    r = requests.request(method, f"{API}{path}", headers=headers, **kwargs)
    print(method, path, r.status_code, r.text)
    return r


def main():
    for role, principal in ACTORS.items():
        call("POST", "/api/roles/grant", ADMIN, json={"principal": principal, "role": role})

    r = call("POST", "/api/batches", ACTORS["FarmSupplier"],
             json={"details": f"Lot-{random.randint(1, 999):03d}"})
    batch_id = r.json()["id"]

    for stage in ("Slaughtered", "Processed", "Packaged"):
        call("POST", f"/api/batches/{batch_id}/stage", ACTORS["ProcessingPlant"], json={"stage": stage})

    call("POST", f"/api/batches/{batch_id}/certificate", ACTORS["CertificationAuthority"],
         json={"cert_hash": f"HC-{batch_id:05d}"})
    call("POST", f"/api/batches/{batch_id}/shipments", ACTORS["Logistics"],
         json={"location": "Warehouse-7", "status": "in transit"})
    call("POST", f"/api/batches/{batch_id}/receive", ACTORS["Retailer"])

    call("GET", f"/api/batches/{batch_id}")
    call("GET", f"/api/batches/{batch_id}/verify")


if __name__ == "__main__":
    main()
