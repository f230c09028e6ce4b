"""Config loading, interpolation, deep merge, validation, and redaction.

Provides:
- Layered config: built-in defaults < YAML file < environment < overrides
- {env:VAR} secret interpolation with allowlist enforcement
- Validation of required fields into a typed AppConfig (startup error, not
  a runtime surprise)
- Redaction for safe logging (never leak secrets)

Config file layout (.nextwiki.config.yaml):

  text:
    base_url: https://openrouter.ai/api/v1
    api_key: "{env:OPENROUTER_API_KEY}"
    model: google/gemini-2.5-flash
  image:
    base_url: https://api.pexels.com/v1
    api_key: "{env:PEXELS_API_KEY}"
"""

from __future__ import annotations

import copy
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from errors import NextwikiError
from generation_modes import (
    DEFAULT_LANGUAGE,
    DEFAULT_MODE,
    get_supported_languages,
    get_supported_modes,
    is_supported_language,
    is_supported_mode,
)

logger = logging.getLogger("nextwiki.config_loader")

# Redaction sentinel
REDACTED = "***REDACTED***"

DEFAULT_CONFIG_PATH = ".nextwiki.config.yaml"

DEFAULT_CONFIG: Dict[str, Any] = {
    "text": {
        "base_url": "https://openrouter.ai/api/v1",
        "api_key": "{env:OPENROUTER_API_KEY}",
        "model": "google/gemini-2.5-flash",
        "mode": DEFAULT_MODE,
        "language": DEFAULT_LANGUAGE,
        "site_url": "",
        "app_title": "nextwiki",
        "connect_timeout_ms": 5000,
        "read_timeout_ms": 60000,
    },
    "image": {
        "base_url": "https://api.pexels.com/v1",
        "api_key": "{env:PEXELS_API_KEY}",
        "connect_timeout_ms": 5000,
        "read_timeout_ms": 30000,
    },
    "home_topic": "wiki",
}

# Environment variable → (section, key) override
_ENV_OVERRIDES = {
    "NEXTWIKI_TEXT_BASE_URL": ("text", "base_url"),
    "NEXTWIKI_TEXT_API_KEY": ("text", "api_key"),
    "NEXTWIKI_TEXT_MODEL": ("text", "model"),
    "NEXTWIKI_MODE": ("text", "mode"),
    "NEXTWIKI_LANGUAGE": ("text", "language"),
    "NEXTWIKI_IMAGE_BASE_URL": ("image", "base_url"),
    "NEXTWIKI_IMAGE_API_KEY": ("image", "api_key"),
}

# Core allowlist for env var interpolation
_CORE_ENV_PATTERNS = [
    re.compile(r"^NEXTWIKI_"),
    re.compile(r"^OPENROUTER_API_KEY$"),
    re.compile(r"^OPENAI_API_KEY$"),
    re.compile(r"^PEXELS_API_KEY$"),
]

# Regex for interpolation tokens: {env:VAR}
_INTERP_RE = re.compile(r"\{env:([^}]+)\}")

# Patterns that indicate sensitive keys (for redaction)
_SENSITIVE_KEY_RE = re.compile(
    r"(auth|key|secret|token|password|credential|bearer)",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class TextEndpointConfig:
    base_url: str
    api_key: str
    model: str
    mode: str = DEFAULT_MODE
    language: str = DEFAULT_LANGUAGE
    site_url: str = ""
    app_title: str = ""
    connect_timeout_ms: int = 5000
    read_timeout_ms: int = 60000

    @property
    def chat_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/chat/completions"


@dataclass(frozen=True)
class ImageEndpointConfig:
    base_url: str
    api_key: str
    connect_timeout_ms: int = 5000
    read_timeout_ms: int = 30000

    @property
    def search_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/search"


@dataclass(frozen=True)
class AppConfig:
    """Validated configuration injected into sessions, fetchers and surfaces."""

    text: TextEndpointConfig
    image: ImageEndpointConfig
    home_topic: str = "wiki"


# ── Env allowlist ─────────────────────────────────────────────────────


def _check_env_allowed(
    var_name: str, extra_patterns: List[re.Pattern] = ()
) -> bool:
    """Check if env var name is in the allowlist."""
    for pattern in list(_CORE_ENV_PATTERNS) + list(extra_patterns):
        if pattern.search(var_name):
            return True
    return False


# ── Interpolation ─────────────────────────────────────────────────────


def interpolate_value(
    value: str, extra_env_patterns: List[re.Pattern] = ()
) -> str:
    """Resolve {env:VAR_NAME} tokens in a string value.

    Raises ValueError for a non-allowlisted or unset variable.
    """

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if not _check_env_allowed(var_name, extra_env_patterns):
            raise ValueError(
                f"Environment variable '{var_name}' is not in the allowlist. "
                f"Allowed: ^NEXTWIKI_.*, ^OPENROUTER_API_KEY$, ^OPENAI_API_KEY$, "
                f"^PEXELS_API_KEY$"
            )
        val = os.environ.get(var_name)
        if val is None:
            raise ValueError(f"Environment variable '{var_name}' is not set")
        return val

    return _INTERP_RE.sub(_replace, value)


def interpolate_config(
    config: Dict[str, Any], extra_env_patterns: List[re.Pattern] = ()
) -> Dict[str, Any]:
    """Recursively interpolate all string values in a config dict.

    Returns a new dict with resolved values.
    """
    result = {}
    for key, value in config.items():
        if isinstance(value, str) and _INTERP_RE.search(value):
            result[key] = interpolate_value(value, extra_env_patterns)
        elif isinstance(value, dict):
            result[key] = interpolate_config(value, extra_env_patterns)
        else:
            result[key] = value
    return result


# ── Deep merge ────────────────────────────────────────────────────────


def deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base. Overlay values win.

    Returns a new dict (base and overlay are not modified).
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Collect NEXTWIKI_* overrides from the environment as a config overlay."""
    if environ is None:
        environ = dict(os.environ)

    overlay: Dict[str, Any] = {}
    for env_var, (section, key) in _ENV_OVERRIDES.items():
        value = environ.get(env_var)
        if value:
            overlay.setdefault(section, {})[key] = value
    return overlay


# ── Validation ────────────────────────────────────────────────────────


def validate_config(config: Dict[str, Any]) -> List[str]:
    """Validate an interpolated config dict.

    Returns list of error strings (empty = valid).
    """
    errors = []

    for section in ("text", "image"):
        if not isinstance(config.get(section), dict):
            errors.append(f"Section '{section}' is required")
            continue
        for key in ("base_url", "api_key"):
            if not config[section].get(key):
                errors.append(f"'{section}.{key}' is required")

    text = config.get("text")
    if isinstance(text, dict):
        if not text.get("model"):
            errors.append("'text.model' is required")

        mode = text.get("mode", DEFAULT_MODE)
        if not is_supported_mode(mode):
            errors.append(
                f"Unknown generation mode '{mode}'. Supported: {get_supported_modes()}"
            )

        language = text.get("language", DEFAULT_LANGUAGE)
        if not is_supported_language(language):
            errors.append(
                f"Unknown language '{language}'. Supported: {get_supported_languages()}"
            )

    for section in ("text", "image"):
        for key in ("connect_timeout_ms", "read_timeout_ms"):
            value = (config.get(section) or {}).get(key)
            if value is not None and (not isinstance(value, int) or value <= 0):
                errors.append(f"'{section}.{key}' must be a positive integer")

    return errors


def read_config_file(path: str) -> Dict[str, Any]:
    """Read a YAML config file. An empty file is an empty config."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise NextwikiError("config_error", f"Invalid YAML in {path}: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise NextwikiError("config_error", f"Config root in {path} must be a mapping")
    return data


def load_config(
    path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> AppConfig:
    """Build the validated AppConfig.

    `path` defaults to .nextwiki.config.yaml in the working directory and is
    skipped when that default file does not exist. An explicit path that does
    not exist is an error.

    Raises NextwikiError(code="config_error") listing every problem found.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if path is not None:
        if not Path(path).is_file():
            raise NextwikiError("config_error", f"Config not found: {path}")
        config = deep_merge(config, read_config_file(path))
    elif Path(DEFAULT_CONFIG_PATH).is_file():
        config = deep_merge(config, read_config_file(DEFAULT_CONFIG_PATH))

    config = deep_merge(config, env_overrides(environ))
    if overrides:
        config = deep_merge(config, overrides)

    try:
        resolved = interpolate_config(config)
    except ValueError as e:
        raise NextwikiError("config_error", str(e))

    errors = validate_config(resolved)
    if errors:
        raise NextwikiError("config_error", "Invalid configuration: " + "; ".join(errors))

    logger.debug("Loaded config: %s", redact_config(config))

    text = resolved["text"]
    image = resolved["image"]
    return AppConfig(
        text=TextEndpointConfig(
            base_url=text["base_url"],
            api_key=text["api_key"],
            model=text["model"],
            mode=text.get("mode", DEFAULT_MODE),
            language=text.get("language", DEFAULT_LANGUAGE),
            site_url=text.get("site_url") or "",
            app_title=text.get("app_title") or "",
            connect_timeout_ms=text.get("connect_timeout_ms", 5000),
            read_timeout_ms=text.get("read_timeout_ms", 60000),
        ),
        image=ImageEndpointConfig(
            base_url=image["base_url"],
            api_key=image["api_key"],
            connect_timeout_ms=image.get("connect_timeout_ms", 5000),
            read_timeout_ms=image.get("read_timeout_ms", 30000),
        ),
        home_topic=resolved.get("home_topic") or "wiki",
    )


# ── Redaction ─────────────────────────────────────────────────────────


def redact_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Create a redacted copy of config for display/logging.

    Values sourced from {env:} show '***REDACTED***'.
    Keys matching sensitive patterns are also redacted.
    """
    result = {}
    for key, value in config.items():
        if isinstance(value, dict):
            result[key] = redact_config(value)
        elif isinstance(value, str) and _INTERP_RE.search(value):
            sources = ", ".join(f"env:{name}" for name in _INTERP_RE.findall(value))
            result[key] = f"{REDACTED} (from {sources})"
        elif _SENSITIVE_KEY_RE.search(key):
            result[key] = REDACTED
        else:
            result[key] = value
    return result


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Return a copy of headers with sensitive values redacted."""
    redacted = {}
    for key, value in headers.items():
        if _SENSITIVE_KEY_RE.search(key):
            redacted[key] = REDACTED
        else:
            redacted[key] = value
    return redacted
