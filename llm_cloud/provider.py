"""
provider.py – External LLM client with provider routing and validation.
-----------------------------------------------------------------------
This file sits at the infrastructure layer: it is the single place where an
OpenAI-compatible client is built for the configured provider.

Provider routing logic:
- "openai": OpenAI's official API with OPENAI_API_KEY
- "nebius": Nebius-compatible API with LLM_API_KEY or NEBIUS_API_KEY
- Unsupported providers raise ValueError with a clear message

Validation happens at client creation time, not import time, so modules that
depend on the generator stay importable in tests and tooling without keys.
"""

import logging
import os
from typing import Dict, List, Optional, Tuple

from openai import OpenAI
from config import CONFIG

logger = logging.getLogger(__name__)

PROVIDER_ENV_VARS = {
    "openai": ["OPENAI_API_KEY"],
    "nebius": ["LLM_API_KEY", "NEBIUS_API_KEY"],
}

OPENAI_BASE_URL = "https://api.openai.com/v1"
NEBIUS_BASE_URL = "https://api.studio.nebius.com/v1/"


def require_any_env(var_names: List[str]) -> Tuple[str, str]:
    """
    Check that at least one of the specified environment variables is present and non-empty.

    The function never logs or returns secret values in messages, only the
    name of the variable that was found.

    Args:
        var_names (List[str]): Environment variable names to check, in order of preference.

    Returns:
        Tuple[str, str]: (selected_var_name, value) for the first variable that is set.

    Raises:
        RuntimeError: If none of the variables is set.
    """
    for var_name in var_names:
        value = os.getenv(var_name, "")
        if value:
            return var_name, value

    var_list = ", ".join(var_names)
    raise RuntimeError(
        f"Missing required environment variable. Set one of: {var_list}"
    )


def resolve_provider(config: Dict) -> str:
    provider = config.get("llm", {}).get("provider", "openai").strip().lower()
    if provider not in PROVIDER_ENV_VARS:
        raise ValueError(f"Unsupported LLM provider: {provider}")
    return provider


def validate_env_for_provider(config: Dict) -> None:
    """
    Validate that required environment variables are present for the configured LLM provider.

    Args:
        config (Dict): Configuration with an 'llm' section holding 'provider'.

    Raises:
        ValueError: If an unsupported provider is configured.
        RuntimeError: If the provider's API key variables are missing.
    """
    provider = resolve_provider(config)
    selected_var, _ = require_any_env(PROVIDER_ENV_VARS[provider])
    logger.info("LLM provider selected: %s | using environment variable: %s", provider, selected_var)


def get_client(config: Optional[Dict] = None) -> OpenAI:
    """
    Build and return a configured OpenAI-compatible client for the selected provider.

    Args:
        config (Dict, optional): Configuration mapping; defaults to the global CONFIG.

    Returns:
        OpenAI: A ready-to-use client.

    Raises:
        RuntimeError: If required environment variables are missing.
        ValueError: If an unsupported provider is configured.
    """
    config = config if config is not None else CONFIG
    validate_env_for_provider(config)

    llm_config = config.get("llm", {})
    provider = resolve_provider(config)
    _, api_key = require_any_env(PROVIDER_ENV_VARS[provider])

    if provider == "nebius":
        base_url = llm_config.get("base_url", NEBIUS_BASE_URL)
    else:
        base_url = OPENAI_BASE_URL
    logger.info("LLM client created: provider=%s base_url=%s", provider, base_url)

    return OpenAI(
        base_url=base_url,
        api_key=api_key,
        timeout=llm_config.get("timeout", 30),
    )
