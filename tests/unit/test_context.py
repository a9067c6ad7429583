"""Unit tests for runtime settings."""

from unittest.mock import patch

from bookflow.context import WorkflowSettings, get_default_settings


class TestDefaultSettings:
    @patch("bookflow.context.load_dotenv")
    def test_reads_environment(self, mock_load_dotenv, monkeypatch):
        monkeypatch.setenv("GOOGLE_API_KEY", "g-key")
        monkeypatch.setenv("MONGO_USE_MOCK", "true")
        monkeypatch.setenv("BOOKFLOW_STORAGE_ROOT", "/tmp/books")
        monkeypatch.delenv("GOOGLE_GENERATIVE_AI_API_KEY", raising=False)

        settings = get_default_settings()

        mock_load_dotenv.assert_called_once()
        assert settings.google_api_key == "g-key"
        assert settings.mongo_use_mock is True
        assert settings.storage_root == "/tmp/books"

    @patch("bookflow.context.load_dotenv")
    def test_defaults(self, mock_load_dotenv, monkeypatch):
        for name in ("BOOKFLOW_MODEL", "MONGO_USE_MOCK", "MONGODB_URI", "MONGO_URL"):
            monkeypatch.delenv(name, raising=False)

        settings = get_default_settings()

        assert settings.model == WorkflowSettings().model
        assert settings.mongo_use_mock is False
        assert settings.mongo_url == "mongodb://localhost:27017"
