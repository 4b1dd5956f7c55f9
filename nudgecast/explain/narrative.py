"""
Narrative Generator

Optional text-completion backend used to write richer explanations.
Every caller has a rule-based fallback, so the engine never depends on
a generator being configured or reachable.
"""

import json
import logging
from typing import Dict, Optional, Protocol

from openai import OpenAI, OpenAIError

from nudgecast.config import get_settings
from nudgecast.errors import UpstreamUnavailableError
from nudgecast.guardrails.tone import sanitize_structure

logger = logging.getLogger(__name__)


class NarrativeGenerator(Protocol):
    def complete(self, prompt: str) -> str:
        ...


class OpenAINarrativeGenerator:
    """Chat-completions backed generator."""

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", temperature: float = 0.3):
        self.client = OpenAI(api_key=api_key)
        self.model = model
        self.temperature = temperature

    def complete(self, prompt: str) -> str:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                temperature=self.temperature,
                messages=[{"role": "user", "content": prompt}],
            )
        except OpenAIError as e:
            raise UpstreamUnavailableError(f"Narrative generator unavailable: {e}") from e
        return response.choices[0].message.content or ""


def default_generator() -> Optional[NarrativeGenerator]:
    """OpenAI generator when an API key is configured, else None."""
    settings = get_settings()
    if not settings.openai_api_key:
        return None
    return OpenAINarrativeGenerator(settings.openai_api_key, model=settings.narrative_model)


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else ""
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3]
    return cleaned.strip()


def complete_json(generator: NarrativeGenerator, prompt: str) -> Dict:
    """
    Run a prompt that asks for a JSON object and return it sanitized.

    Raises:
        UpstreamUnavailableError: If the generator fails or returns something that is not a JSON object
    """
    raw = generator.complete(prompt)
    try:
        parsed = json.loads(strip_code_fences(raw))
    except json.JSONDecodeError as e:
        logger.warning("Unparseable narrative output (%d chars)", len(raw))
        raise UpstreamUnavailableError("Narrative generator returned invalid JSON") from e
    if not isinstance(parsed, dict):
        raise UpstreamUnavailableError("Narrative generator returned a non-object")
    return sanitize_structure(parsed)
