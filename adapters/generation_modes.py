"""Generation modes, target languages, and text request building.

Provides:
- Supported generation mode registry (one prompt template per mode)
- Supported target language registry
- Definition prompt and chat completion request body construction
- Header resolution for the text endpoint

Note: templates are plain data. Adding a mode means adding a registry entry;
nothing else in the streaming path depends on which mode was chosen.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

logger = logging.getLogger("nextwiki.generation_modes")

DEFAULT_MODE = "concise"
DEFAULT_LANGUAGE = "en"


@dataclass(frozen=True)
class ModeTemplate:
    """Prompt template for one generation mode."""

    label: str
    prompt: str


_PROMPT_SUFFIX = (
    " Write the answer in {language}. Do not use markdown, titles, or any"
    " special formatting. Respond with only the text of the definition itself."
)

# Mode name → prompt template
_MODE_TEMPLATES: Dict[str, ModeTemplate] = {
    "concise": ModeTemplate(
        label="Concise encyclopedia entry",
        prompt=(
            'Provide a concise, single-paragraph encyclopedia-style definition'
            ' for the term: "{topic}". Be informative and neutral.'
        ),
    ),
    "simple": ModeTemplate(
        label="Simplified explanation",
        prompt=(
            'Explain the term "{topic}" in one short paragraph that a'
            " ten-year-old could follow. Use everyday words and one concrete"
            " example."
        ),
    ),
    "step_by_step": ModeTemplate(
        label="Step-by-step explanation",
        prompt=(
            'Explain the term "{topic}" as a short sequence of numbered steps,'
            " building from the basic idea to the full definition. Keep each"
            " step to one sentence."
        ),
    ),
}

# Language code → language name used inside prompts
LANGUAGE_NAMES: Dict[str, str] = {
    "en": "English",
    "fr": "French",
    "es": "Spanish",
    "ru": "Russian",
    "it": "Italian",
    "de": "German",
    "ar": "Arabic",
    "zh": "Mandarin Chinese",
    "pt": "Portuguese",
    "hi": "Hindi",
}


def get_supported_modes() -> List[str]:
    """Return list of supported generation modes."""
    return list(_MODE_TEMPLATES.keys())


def is_supported_mode(mode: str) -> bool:
    return mode in _MODE_TEMPLATES


def get_template(mode: str) -> Optional[ModeTemplate]:
    """Get the template for a mode. Returns None if mode is not recognized."""
    return _MODE_TEMPLATES.get(mode)


def get_supported_languages() -> List[str]:
    return list(LANGUAGE_NAMES.keys())


def is_supported_language(language: str) -> bool:
    return language in LANGUAGE_NAMES


def build_definition_prompt(
    topic: str, language: str = DEFAULT_LANGUAGE, mode: str = DEFAULT_MODE
) -> str:
    """Render the prompt for a topic.

    Raises ValueError for an unknown mode or language.
    """
    template = get_template(mode)
    if template is None:
        raise ValueError(
            f"Unknown generation mode '{mode}'. Supported: {get_supported_modes()}"
        )
    if not is_supported_language(language):
        raise ValueError(
            f"Unknown language '{language}'. Supported: {get_supported_languages()}"
        )

    return (template.prompt + _PROMPT_SUFFIX).format(
        topic=topic, language=LANGUAGE_NAMES[language]
    )


def build_definition_request(
    model: str,
    topic: str,
    language: str = DEFAULT_LANGUAGE,
    mode: str = DEFAULT_MODE,
) -> Dict[str, Any]:
    """Build an OpenAI-compatible streaming chat completion body."""
    return {
        "model": model,
        "messages": [
            {"role": "user", "content": build_definition_prompt(topic, language, mode)}
        ],
        "stream": True,
    }


def build_text_headers(
    api_key: str, site_url: str = "", app_title: str = ""
) -> Dict[str, str]:
    """Build headers for the text endpoint.

    HTTP-Referer and X-Title are attribution headers; sent only when set.
    """
    headers: Dict[str, str] = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
        "Accept": "text/event-stream",
    }
    if site_url:
        headers["HTTP-Referer"] = site_url
    if app_title:
        headers["X-Title"] = app_title
    return headers
