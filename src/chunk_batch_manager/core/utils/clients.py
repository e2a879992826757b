# -*- coding: utf-8 -*-

import os
import openai
import logging


GROQ_BASE_URL = "https://api.groq.com/openai/v1"
AZURE_API_VERSION = "2025-03-01-preview"


def create_openai_client(api_key=None, timeout=None, base_url=None):
    """
    Create an OpenAI client for API calls.

    Args:
        api_key (str): The OpenAI API key. If not provided, it will be fetched from the environment variable.
        timeout (float): Default request timeout in seconds.
        base_url (str): Alternative OpenAI-compatible base URL.
    """
    if api_key is None:
        api_key = os.getenv('OPENAI_API_KEY')
    if api_key is None:
        raise ValueError("No OpenAI API key provided or found in environment.")

    kwargs = {"api_key": api_key}
    if timeout is not None:
        kwargs["timeout"] = timeout
    if base_url is not None:
        kwargs["base_url"] = base_url
    client = openai.OpenAI(**kwargs)
    logging.info("OpenAI client created successfully.")
    return client


def create_azure_openai_client(api_key=None, endpoint=None, timeout=None):
    """
    Create an Azure OpenAI client for API calls.

    Args:
        api_key (str): The Azure OpenAI API key. If not provided, it will be fetched from the environment variable.
        endpoint (str): The Azure OpenAI endpoint. If not provided, it will be fetched from the environment variable.
        timeout (float): Default request timeout in seconds.
    """
    if api_key is None:
        api_key = os.getenv('AZURE_OPENAI_API_KEY')
    if api_key is None:
        raise ValueError("No Azure OpenAI API key provided or found in environment.")

    if endpoint is None:
        endpoint = os.getenv('AZURE_OPENAI_ENDPOINT')
    if endpoint is None:
        raise ValueError("No Azure OpenAI endpoint provided or found in environment.")

    kwargs = {}
    if timeout is not None:
        kwargs["timeout"] = timeout
    client = openai.AzureOpenAI(
        api_key=api_key,
        api_version=AZURE_API_VERSION,
        azure_endpoint=endpoint,
        **kwargs
    )
    logging.info("Azure OpenAI client created successfully.")
    return client


def create_groq_client(api_key=None, timeout=None):
    """
    Create an OpenAI client pointed at Groq's OpenAI-compatible API.

    Args:
        api_key (str): The Groq API key. If not provided, it will be fetched from the environment variable.
        timeout (float): Default request timeout in seconds.
    """
    if api_key is None:
        api_key = os.getenv('GROQ_API_KEY')
    if api_key is None:
        raise ValueError("No Groq API key provided or found in environment.")
    return create_openai_client(api_key=api_key, timeout=timeout, base_url=GROQ_BASE_URL)


def create_client(api="OpenAI", timeout=None):
    """
    Create the client for the configured provider.

    Args:
        api (str): 'OpenAI', 'AzureOpenAI' or 'Groq'.
        timeout (float): Default request timeout in seconds.
    """
    if api == "OpenAI":
        return create_openai_client(timeout=timeout)
    if api == "AzureOpenAI":
        return create_azure_openai_client(timeout=timeout)
    if api == "Groq":
        return create_groq_client(timeout=timeout)
    raise ValueError(f"Unsupported API: {api}. Use 'OpenAI', 'AzureOpenAI' or 'Groq'.")
