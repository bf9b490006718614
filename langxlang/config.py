"""
Configuration: API keys, provider ids and per-model facts.
"""
import os
import re
import sys
from pathlib import Path
from typing import Dict, Optional

import dotenv

from .errors import ConfigurationError

OPENAI = "openai"
GEMINI = "gemini"
BROWSER = "browser"

PROVIDERS = (OPENAI, GEMINI, BROWSER)

# Seconds between two requests for the same (credential, model) pair.
# Empty by default; callers pass their own table to CompletionService.
DEFAULT_RATE_LIMITS: Dict[str, float] = {}

# Keys in generation options that are not sent to providers as sampling parameters
NON_GENERATION_KEYS = {"rate_limit", "safety_settings", "enable_caching"}

CACHE_FILE_NAME = "lxl-response-cache.json"


def load_api_keys(env_file: Optional[str] = None) -> Dict[str, Optional[str]]:
    """
    Collect provider credentials from a .env file and the process environment.

    Values already present in the environment win over the .env file.

    Returns:
        Dict with the keys 'openai', 'openai_base_url' and 'gemini'.
    """
    dotenv.load_dotenv(env_file or dotenv.find_dotenv(usecwd=True))
    return {
        OPENAI: os.environ.get("OPENAI_API_KEY"),
        "openai_base_url": os.environ.get("OPENAI_API_BASE"),
        GEMINI: os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY"),
    }


def get_model_family(model: str) -> str:
    """
    Infer the provider id from a model name.

    Raises:
        ConfigurationError: If the model name does not belong to a known family.
    """
    name = model.lower()
    if name.startswith("models/"):
        name = name[len("models/"):]
    if name.startswith(("gpt-", "chatgpt-", "o1", "o3", "o4")):
        return OPENAI
    if name.startswith("gemini-"):
        return GEMINI
    raise ConfigurationError(f"Unknown model family for '{model}'", hint="Pass the provider id explicitly.")


_GEMINI_VERSION = re.compile(r"gemini-(\d+)(?:\.(\d+))?")


def supports_system_instruction(model: str) -> bool:
    """
    Whether a Gemini model accepts a dedicated system instruction.

    Gemini 1.0 models reject it; 1.5 and newer accept it.
    """
    match = _GEMINI_VERSION.search(model.lower())
    if not match:
        return False
    major = int(match.group(1))
    minor = int(match.group(2) or 0)
    return (major, minor) >= (1, 5)


def get_rate_limit(model: str, table: Optional[Dict[str, float]] = None) -> Optional[float]:
    """Look up the cooldown for a model, falling back to DEFAULT_RATE_LIMITS."""
    table = DEFAULT_RATE_LIMITS if table is None else table
    return table.get(model)


def app_data_dir() -> Path:
    """Per-user application data directory for the current platform."""
    if os.environ.get("APPDATA"):
        return Path(os.environ["APPDATA"])
    home = Path.home()
    if sys.platform == "darwin":
        return home / "Library" / "Application Support"
    return Path(os.environ.get("XDG_DATA_HOME") or home / ".local" / "share")


def default_cache_path() -> Path:
    return app_data_dir() / CACHE_FILE_NAME
