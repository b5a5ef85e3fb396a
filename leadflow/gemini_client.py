from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

import google.generativeai as genai

from .config import Settings
from .utils import safe_json_loads

logger = logging.getLogger("leadflow.gemini")

DEFAULT_SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_NONE"},
]


class GenerationError(RuntimeError):
    """Raised when the generative service returns nothing usable."""


class GeminiClient:
    """Thin wrapper around the Gemini SDK for JSON generation and embeddings."""

    def __init__(self, settings: Settings) -> None:
        """Purpose: Configure the Gemini SDK and initialize the model cache.
        Inputs/Outputs: Input is Settings; no return value.
        Side Effects / State: Configures SDK global API key and caches model instances.
        Dependencies: Uses google.generativeai and Settings from config.
        Failure Modes: Raises ValueError if API key or model name is missing.
        If Removed: Enrichment and diagnostic generation cannot call the LLM.
        Testing Notes: Validate missing key raises ValueError and models are cached.
        """
        # Configure API key and remember default model names.
        if not settings.gemini_api_key:
            raise ValueError("GEMINI_API_KEY is required")
        genai.configure(api_key=settings.gemini_api_key)
        self._default_model = _normalize_model_name(settings.gemini_model_flash)
        if not self._default_model:
            raise ValueError("Gemini model name is required")
        self._embedding_model = settings.gemini_embedding_model
        self._models: Dict[Tuple[str, str], genai.GenerativeModel] = {}

    def _model(self, model: Optional[str], system_instruction: Optional[str]) -> genai.GenerativeModel:
        model_name = _normalize_model_name(model) if model else self._default_model
        key = (model_name, system_instruction or "")
        if key not in self._models:
            if system_instruction:
                self._models[key] = genai.GenerativeModel(model_name, system_instruction=system_instruction)
            else:
                self._models[key] = genai.GenerativeModel(model_name)
        return self._models[key]

    def generate_text(
        self,
        prompt: str,
        model: Optional[str] = None,
        system_instruction: Optional[str] = None,
        temperature: float = 0.3,
        max_output_tokens: int = 8192,
        json_mode: bool = False,
    ) -> str:
        """Purpose: Generate a single text response from a string prompt.
        Inputs/Outputs: Input is prompt string and optional model/config; returns text.
        Side Effects / State: May add a model to the internal cache.
        Dependencies: Uses genai.GenerativeModel.generate_content.
        Failure Modes: SDK/transport errors propagate to the caller.
        If Removed: generate_json has no transport.
        Testing Notes: Ensure non-empty output for valid prompt and model.
        """
        generation_config: Dict[str, Any] = {
            "temperature": temperature,
            "max_output_tokens": max_output_tokens,
        }
        if json_mode:
            generation_config["response_mime_type"] = "application/json"
        response = self._model(model, system_instruction).generate_content(
            prompt,
            generation_config=generation_config,
            safety_settings=DEFAULT_SAFETY_SETTINGS,
        )
        text: Optional[str] = getattr(response, "text", None)
        return (text or "").strip()

    def generate_json(
        self,
        prompt: str,
        label: str = "",
        system_instruction: Optional[str] = None,
        temperature: float = 0.3,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Purpose: Generate a JSON object response.
        Inputs/Outputs: Input is prompt plus a short call label used for logging;
            returns the parsed JSON object.
        Side Effects / State: Calls the Gemini API.
        Dependencies: generate_text in JSON mode and safe_json_loads.
        Failure Modes: Raises GenerationError on empty or unparseable output;
            SDK errors propagate.
        If Removed: No component can obtain structured output from the model.
        Testing Notes: Replace with a scripted fake keyed on label.
        """
        # Request JSON mode and reject anything that does not parse as an object.
        raw = self.generate_text(
            prompt,
            model=model,
            system_instruction=system_instruction,
            temperature=temperature,
            json_mode=True,
        )
        data = safe_json_loads(raw)
        if data is None:
            logger.warning("llm=%s status=malformed chars=%s", label or "generate_json", len(raw))
            raise GenerationError(f"Malformed JSON response for {label or 'generate_json'}")
        logger.debug("llm=%s status=ok", label or "generate_json")
        return data

    def embed_text(self, text: str) -> List[float]:
        """Embed text with the configured embedding model; returns a fixed-size vector."""
        result = genai.embed_content(model=self._embedding_model, content=text)
        embedding = result.get("embedding") if isinstance(result, dict) else getattr(result, "embedding", None)
        if not embedding:
            raise GenerationError("Empty embedding response")
        return list(embedding)


def _normalize_model_name(name: Optional[str]) -> str:
    """Purpose: Normalize model names by stripping prefix and whitespace.
    Inputs/Outputs: Input is a model name string; output is normalized name.
    Side Effects / State: None.
    Dependencies: None; used by GeminiClient.
    Failure Modes: Returns empty string for falsy input.
    If Removed: Model caching and selection may use invalid names and fail.
    Testing Notes: Ensure "models/foo" becomes "foo" and whitespace is trimmed.
    """
    # Strip "models/" prefix and whitespace.
    if not name:
        return ""
    cleaned = name.strip()
    if cleaned.startswith("models/"):
        return cleaned.split("/", 1)[1]
    return cleaned
