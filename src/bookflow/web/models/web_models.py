"""Request and response models for the FastAPI application."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from bookflow.models import CharacterAction


class GenerateCharactersRequest(BaseModel):
    """Request model for regenerating character images."""
    character_ids: Optional[List[str]] = None


class StartSketchesRequest(BaseModel):
    """Request model for starting page illustration generation."""
    page_ids: Optional[List[str]] = None


class RegeneratePageRequest(BaseModel):
    """Request model for a single-page regeneration."""
    custom_prompt: Optional[str] = Field(default=None, max_length=4000)
    reference_image_urls: List[str] = Field(default_factory=list)
    current_image_url: Optional[str] = None
    scene_recreation_url: Optional[str] = None
    character_actions: Dict[str, CharacterAction] = Field(default_factory=dict)
    require_confirmation: bool = False


class ConfirmRegenerationRequest(BaseModel):
    """Keep or revert a pending regeneration."""
    new_url: str = Field(min_length=1)
    decision: str = Field(pattern="^(keep_new|revert_old)$")
    prompt: Optional[str] = None


class FeedbackRequest(BaseModel):
    """Customer feedback on a character or page."""
    note: str = Field(min_length=1, max_length=4000)


class DispatchResponse(BaseModel):
    """Response model for background generation requests."""
    project_id: str
    started: bool
    entity_ids: List[str] = Field(default_factory=list)

