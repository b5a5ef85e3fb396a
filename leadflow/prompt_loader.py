from __future__ import annotations

from pathlib import Path
from typing import Mapping


def load_prompt(prompt_path: Path) -> str:
    """Purpose: Load a prompt file as UTF-8 text and strip BOM if present.
    Inputs/Outputs: Input is a Path to the prompt file; output is the decoded string.
    Side Effects / State: None; pure function reading the filesystem.
    Dependencies: Uses Path.read_text/read_bytes; used by every generation step.
    Failure Modes: UnicodeDecodeError triggers a fallback decode with errors ignored,
        which can drop invalid bytes. A missing file raises FileNotFoundError.
    If Removed: Prompt loading fails and every LLM call in enrichment crashes.
    Testing Notes: Validate BOM-stripping and fallback decoding on non-UTF8 files.
    """
    # Read as UTF-8 and fall back to a tolerant decode if needed.
    try:
        return prompt_path.read_text(encoding="utf-8").lstrip("\ufeff")
    except UnicodeDecodeError:
        raw = prompt_path.read_bytes()
        text = raw.decode("utf-8", errors="ignore")
        return text.lstrip("\ufeff")


def render_prompt(prompts_dir: Path, name: str, values: Mapping[str, object]) -> str:
    """Load prompts_dir/name and replace each <<KEY>> marker with its value."""
    text = load_prompt(prompts_dir / name)
    for key, value in values.items():
        text = text.replace(f"<<{key}>>", str(value))
    return text
