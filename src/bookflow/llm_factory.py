"""Factory helpers for the chat model used by character extraction."""

from __future__ import annotations

import logging
from typing import Any

from langchain.chat_models import init_chat_model

from .context import WorkflowSettings

logger = logging.getLogger(__name__)


def _split_model(model: str) -> tuple[str, str]:
    if "/" in model:
        provider, model_name = model.split("/", 1)
        return provider, model_name
    return "anthropic", model


def create_chat_model(settings: WorkflowSettings, **model_kwargs: Any) -> Any:
    """Instantiate a LangChain chat model from workflow settings."""

    provider, model_name = _split_model(settings.model)

    if provider == "anthropic":
        if not settings.anthropic_api_key:
            raise ValueError("Anthropic API key is required when using the Anthropic provider")
        return init_chat_model(
            model=model_name,
            model_provider="anthropic",
            api_key=settings.anthropic_api_key,
            **model_kwargs,
        )

    if provider in {"google_genai", "google"}:
        if not settings.google_api_key:
            raise ValueError("Google API key is required when using the Google provider")
        return init_chat_model(
            model=model_name,
            model_provider="google_genai",
            api_key=settings.google_api_key,
            **model_kwargs,
        )

    logger.info("Initialising chat model %s via provider %s", model_name, provider)
    return init_chat_model(model=model_name, model_provider=provider, **model_kwargs)
