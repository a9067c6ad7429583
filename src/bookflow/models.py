"""Data models for book projects, characters, pages and generation settings."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, Field, model_validator


class ProjectStatus(str, Enum):
    """Every status a project row may carry, including legacy values."""

    DRAFT = "draft"
    AWAITING_CUSTOMER_INPUT = "awaiting_customer_input"

    # Character phase
    CHARACTER_REVIEW = "character_review"
    CHARACTER_GENERATION = "character_generation"
    CHARACTER_GENERATION_COMPLETE = "character_generation_complete"
    CHARACTER_GENERATION_FAILED = "character_generation_failed"
    CHARACTER_REVISION_NEEDED = "character_revision_needed"
    CHARACTERS_APPROVED = "characters_approved"
    CHARACTERS_REGENERATED = "characters_regenerated"

    # Illustration phase
    SKETCHES_GENERATING = "sketches_generating"
    SKETCHES_GENERATION_COMPLETE = "sketches_generation_complete"
    SKETCHES_GENERATION_FAILED = "sketches_generation_failed"
    SKETCHES_REVIEW = "sketches_review"
    SKETCHES_REVISION = "sketches_revision"
    ILLUSTRATION_APPROVED = "illustration_approved"

    COMPLETED = "completed"

    # Legacy values still found on older rows
    TRIAL_REVIEW = "trial_review"
    TRIAL_REVISION = "trial_revision"
    TRIAL_APPROVED = "trial_approved"
    ILLUSTRATIONS_GENERATING = "illustrations_generating"
    ILLUSTRATION_REVIEW = "illustration_review"
    ILLUSTRATION_REVISION_NEEDED = "illustration_revision_needed"


class Phase(str, Enum):
    """The two production phases sharing the project status field."""

    CHARACTER = "character"
    ILLUSTRATION = "illustration"


class TextIntegration(str, Enum):
    """Whether story text is embedded in the artwork or printed separately."""

    INTEGRATED = "integrated"
    SEPARATE = "separate"


class PageLayout(str, Enum):
    """Composition layout for a page illustration."""

    SINGLE = "single"
    SPREAD = "spread"
    SPOT = "spot"


class GenerationConfig(BaseModel):
    """Per-project illustration settings."""

    aspect_ratio: str = Field(default="8:10", description="Book trim ratio, e.g. 8:10 or 8.5:11")
    text_integration: TextIntegration = Field(default=TextIntegration.INTEGRATED)
    style_reference_urls: List[str] = Field(default_factory=list, description="Custom style anchors, first is the master")


class FeedbackHistoryEntry(BaseModel):
    """A feedback note that has been resolved by a send to the customer."""

    note: str
    created_at: datetime
    revision_round: int | None = None


class Project(BaseModel):
    """One book production job."""

    id: str
    book_title: str = ""
    author_firstname: str = ""
    author_lastname: str = ""
    author_email: str | None = None
    author_phone: str | None = None
    status: ProjectStatus = ProjectStatus.DRAFT
    status_changed_at: datetime | None = None
    character_send_count: int = 0
    illustration_send_count: int = 0
    generation_config: GenerationConfig = Field(default_factory=GenerationConfig)
    created_at: datetime | None = None

    @property
    def author_name(self) -> str:
        return f"{self.author_firstname} {self.author_lastname}".strip()


class Character(BaseModel):
    """A person, animal or object that needs a reference image."""

    id: str | None = None
    project_id: str
    name: str | None = None
    role: str | None = None
    is_main: bool = False
    story_role: str | None = None
    description: str | None = None

    # Physical traits, filled by the customer or the admin
    age: str | None = None
    gender: str | None = None
    skin_color: str | None = None
    hair_color: str | None = None
    hair_style: str | None = None
    eye_color: str | None = None
    clothing: str | None = None
    accessories: str | None = None
    special_features: str | None = None

    appears_in: List[str] = Field(default_factory=list, description="Page numbers as strings")
    image_url: str | None = None
    sketch_url: str | None = None
    sketch_prompt: str | None = None
    generation_prompt: str | None = None
    generation_error: str | None = None

    feedback_notes: str | None = None
    is_resolved: bool = True
    feedback_history: List[FeedbackHistoryEntry] = Field(default_factory=list)
    admin_reply: str | None = None
    created_at: datetime | None = None

    @model_validator(mode="after")
    def _require_name_or_role(self) -> "Character":
        if not (self.name or "").strip() and not (self.role or "").strip():
            raise ValueError("Character requires a name or a role")
        return self

    @property
    def display_name(self) -> str:
        return (self.name or self.role or "").strip()

    @property
    def has_unresolved_feedback(self) -> bool:
        return bool(self.feedback_notes) and not self.is_resolved


class Page(BaseModel):
    """One manuscript page and its illustration."""

    id: str | None = None
    project_id: str
    page_number: int = Field(ge=1)
    story_text: str = ""

    scene_description: str | None = None
    description_auto_generated: bool = False
    character_actions: Dict[str, str] = Field(default_factory=dict, description="Action keyed by character name")
    background_elements: str | None = None
    atmosphere: str | None = None
    character_ids: List[str] = Field(default_factory=list)

    illustration_url: str | None = None
    original_illustration_url: str | None = None
    illustration_prompt: str | None = None
    sketch_url: str | None = None
    sketch_prompt: str | None = None
    generation_error: str | None = None

    # Per-page overrides of the project generation config
    aspect_ratio: str | None = None
    text_integration: TextIntegration | None = None
    layout: PageLayout = PageLayout.SINGLE

    feedback_notes: str | None = None
    is_resolved: bool = True
    feedback_history: List[FeedbackHistoryEntry] = Field(default_factory=list)
    admin_reply: str | None = None

    @property
    def has_unresolved_feedback(self) -> bool:
        return bool(self.feedback_notes) and not self.is_resolved


class CharacterAction(BaseModel):
    """New action and emotion for a character in scene-recreation mode."""

    action: str = ""
    emotion: str = ""


class RegenerationRequest(BaseModel):
    """Options for regenerating a single page illustration."""

    custom_prompt: str | None = None
    reference_image_urls: List[str] = Field(default_factory=list)
    current_image_url: str | None = None
    scene_recreation_url: str | None = None
    character_actions: Dict[str, CharacterAction] = Field(default_factory=dict)
    require_confirmation: bool = False


class GeneratedArtifact(BaseModel):
    """A generated image stored in object storage, with the instruction that produced it."""

    url: str
    prompt: str
    mode: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
