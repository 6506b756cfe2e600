import hashlib
import json
from datetime import datetime, timezone
from typing import List, Dict, Any

GENESIS = "GENESIS"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def compute_hash(prev_hash: str, payload: dict, timestamp: str) -> str:
    block = json.dumps({
        "prev_hash": prev_hash,
        "payload": payload,
        "timestamp": timestamp
    }, sort_keys=True)
    return hashlib.sha256(block.encode("utf-8")).hexdigest()


def verify_chain(events: List[Dict[str, Any]]) -> bool:
    prev = GENESIS
    for ev in events:
        expected = compute_hash(prev, ev["payload"], ev["timestamp"])
        if ev["hash"] != expected or ev["prev_hash"] != prev:
            return False
        prev = ev["hash"]
    return True
