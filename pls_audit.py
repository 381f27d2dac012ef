"""Logging setup and the JSON-lines audit trail."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

audit_logger = logging.getLogger("pls-audit")


def audit(event: str, **fields) -> None:
    """Write one audit event as a JSON line."""
    record = {"ts": datetime.now(timezone.utc).isoformat(), "event": event, **fields}
    audit_logger.info(json.dumps(record, ensure_ascii=False, default=str))


def setup_logging(data_dir: Path, level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
    )

    # audit trail: JSON lines in <data_dir>/audit.log
    audit_log_path = data_dir / "audit.log"
    audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    for old in list(audit_logger.handlers):
        audit_logger.removeHandler(old)
        old.close()
    handler = logging.FileHandler(audit_log_path)
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False
