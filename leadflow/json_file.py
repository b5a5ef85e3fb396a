from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger("leadflow.storage")


def read_json(path: Optional[Path]) -> Dict[str, Any]:
    """Purpose: Read a JSON document store file into a dict.
    Inputs/Outputs: Input is an optional path; output is the decoded object or {}.
    Side Effects / State: None.
    Dependencies: json.loads and Path.read_text.
    Failure Modes: Missing file, JSONDecodeError or non-object JSON yield {} (logged).
    If Removed: Stores cannot hydrate from disk on startup.
    Testing Notes: Corrupt JSON should not crash; valid JSON should round-trip.
    """
    if not path or not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        logger.warning("store=%s status=corrupt action=start_empty", path)
        return {}
    return data if isinstance(data, dict) else {}


def write_json_atomic(path: Path, payload: Dict[str, Any]) -> None:
    """Write payload to a temp file beside path, then replace path with it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    tmp_path.replace(path)
