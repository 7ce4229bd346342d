from __future__ import annotations

import csv
import json
import logging
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger("tftpserver")

TRANSFER_LOG_FIELDS = [
    "timestamp",
    "client_ip",
    "client_port",
    "direction",
    "filename",
    "bytes_done",
    "blocks",
    "retransmits",
    "status",
    "message",
    "duration_sec",
]


def write_audit(audit_path: Optional[Path], record: dict) -> None:
    if not audit_path:
        return
    try:
        audit_path.parent.mkdir(parents=True, exist_ok=True)
        with audit_path.open("a", encoding="utf-8") as fobj:
            fobj.write(json.dumps(record, ensure_ascii=False) + "\n")
    except OSError as exc:
        logger.warning("Audit log write to %s failed: %s", audit_path, exc)


def write_transfer_log_csv(path: Optional[Path], row: Dict[str, object]) -> None:
    if not path:
        return
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        exists = path.exists()
        with path.open("a", newline="", encoding="utf-8") as fobj:
            writer = csv.DictWriter(fobj, fieldnames=TRANSFER_LOG_FIELDS)
            if not exists:
                writer.writeheader()
            writer.writerow(row)
    except OSError as exc:
        logger.warning("Transfer log write to %s failed: %s", path, exc)
