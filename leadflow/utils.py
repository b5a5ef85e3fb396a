import json
import re
import unicodedata
from typing import Any, Dict, Optional


def normalize_text(text: str) -> str:
    """Purpose: Normalize free-form text for stable matching across the engine.
    Inputs/Outputs: Input is a raw string; output is a lowercase ASCII-only string with
        diacritics removed and whitespace collapsed.
    Side Effects / State: None; pure function.
    Dependencies: Uses unicodedata and regex; called by option matching and dedupe checks.
    Failure Modes: Returns an empty string when input is falsy.
    If Removed: Option matching and duplicate detection become case/accent sensitive.
    Testing Notes: Validate "Café  Bookings!" -> "cafe bookings".
    """
    # Normalize to lowercase and strip diacritics for consistent matching.
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFD", text.lower())
    stripped = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    cleaned = re.sub(r"[^a-z0-9\s\-_/.]+", " ", stripped)
    return re.sub(r"\s+", " ", cleaned).strip()


def normalize_key(text: str) -> str:
    """Compact normalization key with spaces removed, used for label identity checks."""
    return normalize_text(text).replace(" ", "")


def collapse_whitespace(text: str) -> str:
    """Collapse all whitespace runs to single spaces and trim."""
    return re.sub(r"\s+", " ", text or "").strip()


def snake_tag(text: str) -> str:
    """Purpose: Normalize a model-produced tag into snake_case taxonomy form.
    Inputs/Outputs: Input is a raw tag; output is lowercase snake_case.
    Side Effects / State: None; pure function.
    Dependencies: Used by the tag classifier before taxonomy validation.
    Failure Modes: Returns empty string for falsy input.
    If Removed: Tags like "High Risk" fail validation and options get dropped.
    Testing Notes: "High-Risk " -> "high_risk", "critical_risk" unchanged.
    """
    # Lowercase, turn separators into underscores, drop everything else.
    if not text:
        return ""
    lowered = str(text).strip().lower()
    lowered = re.sub(r"[\s\-]+", "_", lowered)
    return re.sub(r"[^a-z0-9_]", "", lowered).strip("_")


def truncate(text: str, limit: int) -> str:
    """Cut text at limit characters without adding an ellipsis."""
    if not text or len(text) <= limit:
        return text or ""
    return text[:limit].rstrip()


def extract_json_block(text: str) -> Optional[str]:
    """Purpose: Extract the first JSON object block from an arbitrary string.
    Inputs/Outputs: Input is a raw string; output is JSON substring or None.
    Side Effects / State: None; pure function.
    Dependencies: None beyond built-ins; used by safe_json_loads.
    Failure Modes: Returns None if braces are missing or inverted.
    If Removed: Model outputs wrapped in prose or code fences cannot be parsed.
    Testing Notes: Provide strings with extra text before/after JSON and ensure extraction.
    """
    # Locate the outermost JSON braces to extract a parseable block.
    if not text:
        return None
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return text[start : end + 1]


def safe_json_loads(text: str) -> Optional[Dict[str, Any]]:
    """Purpose: Parse a JSON object from a model output string safely.
    Inputs/Outputs: Input is raw text; output is a dict or None if parsing fails.
    Side Effects / State: None; pure function.
    Dependencies: Uses extract_json_block and json.loads.
    Failure Modes: Returns None on JSONDecodeError, missing block, or non-object JSON.
    If Removed: Generation steps crash on malformed model output.
    Testing Notes: Validate valid JSON parses and malformed JSON returns None.
    """
    # Parse only the extracted JSON block to avoid non-JSON prefixes/suffixes.
    block = extract_json_block(text)
    if not block:
        return None
    try:
        data = json.loads(block)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None
