from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent


@dataclass(frozen=True)
class Settings:
    """Configuration container for models, storage paths, and pipeline limits."""
    gemini_api_key: str
    gemini_model_flash: str
    gemini_embedding_model: str
    prompts_dir: Path
    data_dir: Path
    chroma_path: Path
    section_min_chars: int
    max_sections: int
    classifier_retries: int
    retry_base_delay: float
    diagnostic_batch_size: int
    diagnostic_context_top_k: int
    section_delay_sec: float
    session_ttl_sec: float


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables and filesystem paths.
    Dependencies: Uses os.getenv and BASE_DIR for default paths.
    Failure Modes: Invalid numeric env values raise ValueError.
    If Removed: App cannot configure models/storage and fails at startup.
    Testing Notes: Verify defaults and overrides via environment variables.
    """
    # Resolve storage paths first; the vector index defaults to living beside the JSON stores.
    data_path = os.getenv("LEADFLOW_DATA_DIR")
    data_dir = Path(data_path) if data_path else (BASE_DIR / "data").resolve()
    chroma_path = os.getenv("CHROMA_PATH")

    return Settings(
        gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
        gemini_model_flash=os.getenv("GEMINI_MODEL_FLASH")
        or os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
        gemini_embedding_model=os.getenv("GEMINI_EMBEDDING_MODEL", "models/text-embedding-004"),
        prompts_dir=(BASE_DIR / "prompts").resolve(),
        data_dir=data_dir,
        chroma_path=Path(chroma_path) if chroma_path else data_dir / "vector_db",
        section_min_chars=int(os.getenv("SECTION_MIN_CHARS", "20")),
        max_sections=int(os.getenv("MAX_SECTIONS", "10")),
        classifier_retries=int(os.getenv("CLASSIFIER_RETRIES", "3")),
        retry_base_delay=float(os.getenv("RETRY_BASE_DELAY", "1.0")),
        diagnostic_batch_size=int(os.getenv("DIAGNOSTIC_BATCH_SIZE", "5")),
        diagnostic_context_top_k=int(os.getenv("DIAGNOSTIC_CONTEXT_TOP_K", "3")),
        section_delay_sec=float(os.getenv("SECTION_DELAY_SEC", "2.0")),
        session_ttl_sec=float(os.getenv("SESSION_TTL_SEC", "1800")),
    )
