"""
Provider abstraction for different AI providers
Supports OpenAI and OpenRouter APIs
"""

from openai import AsyncOpenAI
from typing import Dict, Optional
from utils.config import (
    load_api_key, get_current_provider, get_provider_config,
    SUPPORTED_PROVIDERS, APP_TITLE, APP_URL
)


class ProviderError(Exception):
    """Base exception for provider-related errors"""
    pass


def create_client(provider: str = None, **kwargs) -> AsyncOpenAI:
    """
    Create an async API client for the specified provider.
    OpenRouter is compatible with OpenAI's API, so we can use the same client.

    Args:
        provider: Provider name ("openai" or "openrouter"). If None, uses current provider.
        **kwargs: Additional parameters passed to the AsyncOpenAI client constructor

    Returns:
        AsyncOpenAI client configured for the specified provider

    Raises:
        ProviderError: If provider is not supported or API key is missing
    """
    if provider is None:
        provider = get_current_provider()

    if provider not in SUPPORTED_PROVIDERS:
        raise ProviderError(f"Unsupported provider: {provider}. Supported: {SUPPORTED_PROVIDERS}")

    api_key = load_api_key(provider)
    if not api_key:
        raise ProviderError(f"No API key found for provider: {provider}")

    config = get_provider_config(provider)

    client_kwargs = {"api_key": api_key}
    if config.get("base_url"):
        client_kwargs["base_url"] = config["base_url"]

    # Add app attribution headers for OpenRouter
    if provider == "openrouter":
        client_kwargs["default_headers"] = {
            "HTTP-Referer": APP_URL,
            "X-Title": APP_TITLE,
        }

    client_kwargs.update(kwargs)

    return AsyncOpenAI(**client_kwargs)


def get_model_for_task(task: str, provider: str = None) -> str:
    """
    Get the appropriate model for a specific task.

    Args:
        task: Task type ("chat", "cards")
        provider: Provider name. If None, uses current provider.

    Raises:
        ProviderError: If task is not supported for the provider
    """
    if provider is None:
        provider = get_current_provider()

    config = get_provider_config(provider)

    if task not in config or task == "base_url":
        raise ProviderError(f"Task '{task}' not supported for provider '{provider}'")

    return config[task]


def get_provider_info(provider: str) -> Dict:
    """Get display information about a specific provider."""
    provider_info = {
        "openai": {
            "name": "OpenAI",
            "description": "Official OpenAI API with access to GPT models",
            "api_key_prefix": "sk-",
            "supports_streaming": True,
        },
        "openrouter": {
            "name": "OpenRouter",
            "description": "Access to multiple AI models including Claude, Gemini, and more",
            "api_key_prefix": "sk-or-",
            "supports_streaming": True,
        }
    }

    return provider_info.get(provider, {})


def get_api_call_params(
    model: str,
    messages: list,
    provider: str = None,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
    top_p: Optional[float] = None,
    top_k: Optional[int] = None,
    repetition_penalty: Optional[float] = None,
    response_format: Optional[Dict] = None,
    stream: Optional[bool] = None,
    **kwargs
) -> Dict:
    """
    Build chat completion parameters, adding OpenRouter-only sampling options
    when the provider supports them and dropping everything left unset.
    """
    if provider is None:
        provider = get_current_provider()

    params = {
        "model": model,
        "messages": messages
    }

    optional_params = {
        "temperature": temperature,
        "max_tokens": max_tokens,
        "top_p": top_p,
        "response_format": response_format,
        "stream": stream,
    }

    for key, value in optional_params.items():
        if value is not None:
            params[key] = value

    # The OpenAI SDK only forwards unknown sampling options through extra_body
    if provider == "openrouter":
        extra_body = {
            key: value
            for key, value in {"top_k": top_k, "repetition_penalty": repetition_penalty}.items()
            if value is not None
        }
        if extra_body:
            params["extra_body"] = extra_body

    params.update(kwargs)

    return params
