"""
Configuration module for Deckwise
Handles API key management, paths, tier constants and environment settings
"""

import json
import os
from pathlib import Path
from typing import Optional, Dict
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Constants
APP_NAME = "deckwise"
CONFIG_DIR = Path(os.getenv("DECKWISE_HOME", Path.home() / f".{APP_NAME}"))
CONFIG_FILE = CONFIG_DIR / ".env.json"
DB_PATH = CONFIG_DIR / "deckwise.db"

# Optional pre-built topic hierarchy (JSON tree with id/title/children)
HIERARCHY_PATH = os.getenv("DECKWISE_HIERARCHY")

LOG_LEVEL = os.getenv("DECKWISE_LOG_LEVEL", "INFO")

# Provider settings
DEFAULT_PROVIDER = "openai"
SUPPORTED_PROVIDERS = ["openai", "openrouter"]

# Model configurations per provider
PROVIDER_MODELS = {
    "openai": {
        "chat": "gpt-4o-mini",
        "cards": "gpt-4o-mini",
        "base_url": None,  # Use default OpenAI base URL
    },
    "openrouter": {
        "chat": "anthropic/claude-3.5-haiku",
        "cards": "anthropic/claude-3.5-haiku",
        "base_url": "https://openrouter.ai/api/v1",
    }
}

# Environment variable fallbacks for API keys
API_KEY_ENV_VARS = {
    "openai": "OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}

# Tiers, in unlock order
TIERS = ("core", "deep_dive_1", "deep_dive_2")
CARDS_PER_TIER = 5
# Cover card shown before a deck is opened; sits outside the tier walk
PREVIEW_TIER = "preview"
TIER_NUMBERS = {
    PREVIEW_TIER: "0",
    "core": "1",
    "deep_dive_1": "2",
    "deep_dive_2": "3",
}

# Depth of the broad categories; an empty child list here is never a leaf
BROAD_CATEGORY_DEPTH = 2
# Past this depth the generator is told to prefer leaves
LEAF_HINT_DEPTH = 5
# Fewer topic suggestions than this falls back to generated sub-decks
MIN_TOPIC_SUGGESTIONS = 3

# Start generating the next tier as soon as one finishes
BACKGROUND_PREGENERATION = True

# Retry logic for gateway calls
MAX_RETRIES = 3
RETRY_DELAY = 2  # seconds

# App Attribution settings for OpenRouter
APP_TITLE = "Deckwise"
APP_URL = "https://github.com/deckwise/deckwise"


def ensure_config_directory():
    """Ensure configuration directory exists with proper permissions"""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    CONFIG_DIR.chmod(0o700)


def save_config(config_data: Dict):
    """Save configuration data to config file"""
    ensure_config_directory()

    with open(CONFIG_FILE, 'w') as f:
        json.dump(config_data, f, indent=2)

    # Set file permissions to 600 (rw-------)
    CONFIG_FILE.chmod(0o600)


def load_config() -> Dict:
    """Load configuration from config file"""
    if CONFIG_FILE.exists():
        try:
            with open(CONFIG_FILE, 'r') as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError):
            pass

    return {}


def save_api_key(api_key: str, provider: str = DEFAULT_PROVIDER):
    """Save API key for a specific provider to config file"""
    config = load_config()
    config[f"{provider}_api_key"] = api_key

    # If this is the first provider being configured, set it as default
    if "provider" not in config:
        config["provider"] = provider

    save_config(config)


def load_api_key(provider: str = None) -> Optional[str]:
    """Load API key for a provider, from the config file or the environment"""
    config = load_config()

    if provider is None:
        provider = config.get("provider", DEFAULT_PROVIDER)

    api_key = config.get(f"{provider}_api_key")
    if not api_key and provider in API_KEY_ENV_VARS:
        api_key = os.getenv(API_KEY_ENV_VARS[provider])

    return api_key


def get_current_provider() -> str:
    """Get the currently configured provider"""
    config = load_config()
    return config.get("provider", os.getenv("DECKWISE_PROVIDER", DEFAULT_PROVIDER))


def set_current_provider(provider: str):
    """Set the current provider"""
    if provider not in SUPPORTED_PROVIDERS:
        raise ValueError(f"Unsupported provider: {provider}")

    config = load_config()
    config["provider"] = provider
    save_config(config)


def get_provider_config(provider: str = None) -> Dict:
    """Get model configuration for a specific provider"""
    if provider is None:
        provider = get_current_provider()

    if provider not in PROVIDER_MODELS:
        raise ValueError(f"No configuration found for provider: {provider}")

    return PROVIDER_MODELS[provider]


def next_tier(tier: str) -> Optional[str]:
    """Tier that unlocks after `tier`, or None for the last one"""
    idx = TIERS.index(tier)
    return TIERS[idx + 1] if idx + 1 < len(TIERS) else None


def previous_tier(tier: str) -> Optional[str]:
    """Tier that gates `tier`, or None for core"""
    idx = TIERS.index(tier)
    return TIERS[idx - 1] if idx > 0 else None
