"""Unit tests for the llm_factory module."""

import pytest
from unittest.mock import patch

from bookflow.context import WorkflowSettings
from bookflow.llm_factory import _split_model, create_chat_model


class TestSplitModel:
    def test_provider_prefix(self):
        assert _split_model("anthropic/claude-sonnet-4-5") == ("anthropic", "claude-sonnet-4-5")
        assert _split_model("openai/gpt-4o/mini") == ("openai", "gpt-4o/mini")

    def test_bare_model_defaults_to_anthropic(self):
        assert _split_model("claude-sonnet-4-5") == ("anthropic", "claude-sonnet-4-5")


class TestCreateChatModel:
    def test_anthropic_requires_key(self):
        with pytest.raises(ValueError):
            create_chat_model(WorkflowSettings())

    @patch("bookflow.llm_factory.init_chat_model")
    def test_anthropic(self, mock_init):
        settings = WorkflowSettings(anthropic_api_key="sk-test")

        create_chat_model(settings, temperature=0)

        mock_init.assert_called_once_with(
            model="claude-sonnet-4-5", model_provider="anthropic", api_key="sk-test", temperature=0
        )

    @patch("bookflow.llm_factory.init_chat_model")
    def test_google(self, mock_init):
        settings = WorkflowSettings(model="google/gemini-2.5-flash", google_api_key="g-test")

        create_chat_model(settings)

        assert mock_init.call_args.kwargs["model_provider"] == "google_genai"

    def test_google_requires_key(self):
        with pytest.raises(ValueError):
            create_chat_model(WorkflowSettings(model="google_genai/gemini-2.5-flash"))
