# -*- coding: utf-8 -*-

"""
Environment configuration management.
"""

import os
import logging
from pathlib import Path
from typing import Optional
import dotenv


REQUIRED_ENV_VARS = {
    "OpenAI": ["OPENAI_API_KEY"],
    "AzureOpenAI": ["AZURE_OPENAI_API_KEY", "AZURE_OPENAI_ENDPOINT"],
    "Groq": ["GROQ_API_KEY"],
}


def load_environment_variables(env_file: Optional[str] = None, verbose: bool = False) -> bool:
    """
    Load environment variables from .env file with smart path resolution.

    Args:
        env_file: Specific .env file path. If None, searches for .env files.
        verbose: Whether to log environment loading details.

    Returns:
        True if .env file was found and loaded, False otherwise.
    """
    if env_file:
        env_path = Path(env_file)
        if env_path.exists():
            dotenv.load_dotenv(env_path)
            if verbose:
                logging.debug(f"Loaded environment from: {env_path}")
            return True
        else:
            if verbose:
                logging.warning(f"Specified .env file not found: {env_path}")
            return False

    search_paths = [
        Path.cwd() / '.env.local',
        Path.cwd() / '.env',
    ]

    # Project root of an editable install (src layout)
    package_root = Path(__file__).resolve().parents[4]
    search_paths.extend([
        package_root / '.env.local',
        package_root / '.env',
    ])

    for env_path in search_paths:
        if env_path.exists():
            dotenv.load_dotenv(env_path)
            if verbose:
                logging.debug(f"Loaded environment from: {env_path}")
            return True

    if verbose:
        logging.debug("No .env file found in search paths")
    return False


def validate_required_env_vars(api_type: str = "OpenAI") -> list:
    """
    Validate that required environment variables are set.

    Args:
        api_type: "OpenAI", "AzureOpenAI" or "Groq"

    Returns:
        List of missing environment variables (empty if all present)
    """
    if api_type not in REQUIRED_ENV_VARS:
        raise ValueError(f"Unsupported API: {api_type}")
    return [name for name in REQUIRED_ENV_VARS[api_type] if not os.getenv(name)]


def setup_environment(verbose: bool = False, env_file: Optional[str] = None) -> bool:
    """
    Set up environment for the package.

    Args:
        verbose: Whether to log environment setup details
        env_file: Optional specific .env file to load

    Returns:
        True if environment setup was successful
    """
    env_loaded = load_environment_variables(env_file, verbose)

    if verbose and not env_loaded:
        logging.debug("No .env file loaded. Relying on system environment variables.")
        logging.debug("Expected .env file locations:")
        logging.debug("  - ./.env (current directory)")
        logging.debug("  - ./.env.local (current directory)")
        logging.debug("  - <project_root>/.env (project root directory)")
        logging.debug("  - <project_root>/.env.local (project root directory)")

    return True  # Always return True since .env is optional
