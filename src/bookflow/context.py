"""Runtime settings for the production workflow."""

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class WorkflowSettings(BaseModel):
    """Explicit configuration handed to every workflow component."""

    # Text model used for character extraction
    model: str = Field(default="anthropic/claude-sonnet-4-5", description="Extraction model as provider/model")
    anthropic_api_key: str | None = Field(default=None, description="Anthropic API key")

    # Image model
    google_api_key: str | None = Field(default=None, description="Gemini API key")
    image_model: str = Field(default="gemini-3-pro-image-preview")
    image_api_base_url: str = Field(default="https://generativelanguage.googleapis.com/v1beta")
    image_size: str = Field(default="2K")
    max_reference_dimension: int = Field(default=1024, description="Longest side of reference images sent to the model")
    http_timeout_seconds: float = Field(default=180.0)
    retry_base_delay: float = Field(default=2.0, description="Backoff base for the single transient retry")

    # Persistence
    mongo_url: str = Field(default="mongodb://localhost:27017")
    mongo_db_name: str = Field(default="bookflow")
    mongo_use_mock: bool = Field(default=False)

    # Object storage
    storage_root: str = Field(default="bookflow_storage")
    storage_public_base_url: str = Field(default="/storage")

    # Notifications
    slack_webhook_url: str | None = Field(default=None)
    app_base_url: str = Field(default="http://localhost:8000")

    model_config = {"extra": "allow"}


def _env_flag(name: str) -> bool:
    return os.getenv(name, "false").lower() in {"1", "true", "yes"}


def get_default_settings() -> WorkflowSettings:
    """Build settings from the environment (and a .env file when present)."""
    load_dotenv()

    defaults = WorkflowSettings()
    return WorkflowSettings(
        model=os.getenv("BOOKFLOW_MODEL", defaults.model),
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
        google_api_key=os.getenv("GOOGLE_GENERATIVE_AI_API_KEY") or os.getenv("GOOGLE_API_KEY"),
        image_model=os.getenv("BOOKFLOW_IMAGE_MODEL", defaults.image_model),
        mongo_url=os.getenv("MONGODB_URI") or os.getenv("MONGO_URL", defaults.mongo_url),
        mongo_db_name=os.getenv("MONGO_DB_NAME", defaults.mongo_db_name),
        mongo_use_mock=_env_flag("MONGO_USE_MOCK"),
        storage_root=os.getenv("BOOKFLOW_STORAGE_ROOT", defaults.storage_root),
        storage_public_base_url=os.getenv("BOOKFLOW_STORAGE_URL", defaults.storage_public_base_url),
        slack_webhook_url=os.getenv("SLACK_WEBHOOK_URL"),
        app_base_url=os.getenv("BOOKFLOW_APP_URL", defaults.app_base_url),
    )
