"""Style-consistent generation of page illustrations, character images and sketches."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .error_handling import ValidationError
from .models import (
    Character,
    GeneratedArtifact,
    Page,
    Project,
    RegenerationRequest,
    TextIntegration,
)
from .prompt_engineering import (
    CHARACTER_STYLE_REFERENCE_TEXT,
    SKETCH_PROMPT,
    GenerationMode,
    IllustrationPlan,
    LabeledReference,
    PromptEngineer,
    PromptPart,
    ReferenceRole,
)
from .providers import ImageGenerationProvider
from .services.entity_store import EntityStore
from .services.storage import ObjectStorage
from .utils import CHARACTER_ASPECT_RATIO, map_aspect_ratio, timestamped_key

logger = logging.getLogger(__name__)


@dataclass
class AnchorSelection:
    """The style anchor for a standard-mode generation and where it came from."""
    anchor_url: Optional[str] = None
    source: Optional[str] = None
    secondary_style_urls: List[str] = field(default_factory=list)


def detect_mode(request: Optional[RegenerationRequest]) -> GenerationMode:
    """Scene recreation beats edit, edit beats standard."""
    if request is None:
        return GenerationMode.STANDARD
    if request.scene_recreation_url:
        return GenerationMode.SCENE_RECREATION
    if (request.custom_prompt or request.reference_image_urls) and request.current_image_url:
        return GenerationMode.EDIT
    return GenerationMode.STANDARD


class StyleConsistencyPipeline:
    """Produces exactly one artifact per call, anchored to the book's style source."""

    def __init__(
        self,
        store: EntityStore,
        storage: ObjectStorage,
        provider: ImageGenerationProvider,
        prompt_engineer: Optional[PromptEngineer] = None,
    ):
        self.store = store
        self.storage = storage
        self.provider = provider
        self.prompt_engineer = prompt_engineer or PromptEngineer()

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def select_anchor(self, project: Project, page: Page, main: Optional[Character]) -> AnchorSelection:
        """Pick the master style anchor for a standard-mode page generation."""
        custom = [url for url in project.generation_config.style_reference_urls if url]
        if custom:
            return AnchorSelection(custom[0], "custom_style_reference", custom[1:])

        if page.page_number > 1:
            first_page = self.store.get_page_by_number(project.id, 1)
            if first_page is not None:
                first_url = first_page.original_illustration_url or first_page.illustration_url
                if first_url:
                    return AnchorSelection(first_url, "first_page_original")

        if main is not None and main.image_url:
            return AnchorSelection(main.image_url, "main_character")

        return AnchorSelection()

    def _character_references(
        self, characters: List[Character], anchor_url: Optional[str]
    ) -> List[LabeledReference]:
        references = []
        for index, character in enumerate(characters):
            if not character.image_url:
                continue
            label = self.prompt_engineer.character_label(character, index)
            is_anchor = character.image_url == anchor_url
            references.append(LabeledReference(
                label=f"CHARACTER REFERENCE: \"{label}\"" + (" - MASTER STYLE ANCHOR" if is_anchor else ""),
                url=character.image_url,
                role=ReferenceRole.MASTER_STYLE_ANCHOR if is_anchor else ReferenceRole.CHARACTER,
            ))
        return references

    def _page_characters(self, page: Page, characters: List[Character]) -> List[Character]:
        on_page = [c for c in characters if c.id in page.character_ids]
        if not on_page:
            on_page = [c for c in characters if c.is_main]
        return on_page

    def plan_illustration(
        self,
        project: Project,
        page: Page,
        request: Optional[RegenerationRequest] = None,
    ) -> IllustrationPlan:
        mode = detect_mode(request)
        aspect_ratio = map_aspect_ratio(page.aspect_ratio or project.generation_config.aspect_ratio)
        text_integration = page.text_integration or project.generation_config.text_integration
        characters = self.store.list_characters(project.id)
        main = next((c for c in characters if c.is_main), None)

        if mode == GenerationMode.SCENE_RECREATION:
            page_characters = self._page_characters(page, characters)
            references = [LabeledReference("BASE SCENE", request.scene_recreation_url, ReferenceRole.SCENE_BASE)]
            references.extend(self._character_references(page_characters, anchor_url=None))
            instruction = self.prompt_engineer.build_scene_recreation_instruction(
                page, page_characters, request.character_actions, main, page.layout
            )
            return IllustrationPlan(
                mode=mode,
                instruction=instruction,
                references=references,
                aspect_ratio=aspect_ratio,
                anchor_url=request.scene_recreation_url,
                anchor_source="scene_base",
            )

        if mode == GenerationMode.EDIT:
            references = [LabeledReference("IMAGE TO EDIT", request.current_image_url, ReferenceRole.EDIT_TARGET)]
            references.extend(
                LabeledReference("ADDITIONAL VISUAL REFERENCE", url, ReferenceRole.EDIT_GUIDE)
                for url in request.reference_image_urls
            )
            instruction = self.prompt_engineer.build_edit_instruction(
                request.custom_prompt, len(request.reference_image_urls)
            )
            return IllustrationPlan(
                mode=mode,
                instruction=instruction,
                references=references,
                aspect_ratio=aspect_ratio,
                anchor_url=request.current_image_url,
                anchor_source="edit_target",
            )

        selection = self.select_anchor(project, page, main)
        page_characters = self._page_characters(page, characters)
        character_refs = self._character_references(page_characters, selection.anchor_url)

        references: List[LabeledReference] = []
        anchor_is_character = any(r.role == ReferenceRole.MASTER_STYLE_ANCHOR for r in character_refs)
        if selection.anchor_url and not anchor_is_character:
            references.append(LabeledReference(
                "MASTER STYLE ANCHOR",
                selection.anchor_url,
                ReferenceRole.MASTER_STYLE_ANCHOR,
                "Match this image's rendering technique exactly. Do not copy its content.",
            ))
        references.extend(
            LabeledReference("SECONDARY STYLE REFERENCE", url, ReferenceRole.SECONDARY_STYLE)
            for url in selection.secondary_style_urls
        )
        references.extend(character_refs)

        instruction = self.prompt_engineer.build_standard_instruction(
            page,
            main,
            TextIntegration(text_integration),
            page.layout,
            has_anchor=selection.anchor_url is not None,
            additional_direction=request.custom_prompt if request else None,
        )
        return IllustrationPlan(
            mode=mode,
            instruction=instruction,
            references=references,
            aspect_ratio=aspect_ratio,
            anchor_url=selection.anchor_url,
            anchor_source=selection.source,
        )

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def _store_image(self, key: str, data: bytes, mime_type: str) -> str:
        return await self.storage.put(key, data, content_type=mime_type)

    async def generate_illustration(
        self,
        project_id: str,
        page_id: str,
        request: Optional[RegenerationRequest] = None,
    ) -> GeneratedArtifact:
        """Generate one page illustration.

        With ``request.require_confirmation`` the artifact is stored but the
        page is left untouched until the keep/revert decision.
        """
        project = self.store.get_project(project_id)
        page = self.store.get_page(page_id)
        if page.project_id != project_id:
            raise ValidationError(f"Page {page_id} does not belong to project {project_id}")

        plan = self.plan_illustration(project, page, request)
        logger.info(
            "Generating page %s of project %s in %s mode (anchor: %s)",
            page.page_number, project_id, plan.mode.value, plan.anchor_source,
        )
        image = await self.provider.generate(plan.to_parts(), aspect_ratio=plan.aspect_ratio)
        url = await self._store_image(
            timestamped_key(f"{project_id}/illustrations", f"page-{page.page_number}"),
            image.data,
            image.mime_type,
        )

        pending = bool(request and request.require_confirmation)
        if not pending:
            self.store.set_page_illustration(page.id, url, plan.instruction)

        return GeneratedArtifact(
            url=url,
            prompt=plan.instruction,
            mode=plan.mode.value,
            metadata={
                "page_id": page.id,
                "page_number": page.page_number,
                "pending_confirmation": pending,
                "previous_url": page.illustration_url,
                "anchor_source": plan.anchor_source,
                "aspect_ratio": plan.aspect_ratio,
            },
        )

    def _character_style_reference(self, project: Project, character: Character) -> Optional[str]:
        custom = [url for url in project.generation_config.style_reference_urls if url]
        if custom:
            return custom[0]
        if character.is_main:
            return None
        main = self.store.get_main_character(project.id)
        return main.image_url if main else None

    async def generate_character_image(self, project_id: str, character_id: str) -> GeneratedArtifact:
        """Generate a reference image for a character in the book's style."""
        project = self.store.get_project(project_id)
        character = self.store.get_character(character_id)
        prompt = self.prompt_engineer.build_character_prompt(character)

        parts: List[PromptPart] = []
        style_url = self._character_style_reference(project, character)
        if style_url:
            parts.append(PromptPart.of_text(CHARACTER_STYLE_REFERENCE_TEXT))
            parts.append(PromptPart.of_image(style_url, ReferenceRole.MASTER_STYLE_ANCHOR))
        parts.append(PromptPart.of_text(f"TARGET CHARACTER DESCRIPTION:\n{prompt}"))

        image = await self.provider.generate(parts, aspect_ratio=CHARACTER_ASPECT_RATIO)
        url = await self._store_image(
            timestamped_key(f"{project_id}/characters", character.display_name),
            image.data,
            image.mime_type,
        )
        self.store.update_character(
            character.id, image_url=url, generation_prompt=prompt, generation_error=None
        )
        return GeneratedArtifact(url=url, prompt=prompt, mode="character", metadata={"character_id": character.id})

    async def _generate_sketch(self, source_url: str) -> tuple[bytes, str]:
        parts = [
            PromptPart.of_text(SKETCH_PROMPT),
            PromptPart.of_image(source_url, ReferenceRole.SOURCE, required=True),
        ]
        image = await self.provider.generate(parts, image_size="1K")
        return image.data, image.mime_type

    async def generate_character_sketch(self, character_id: str) -> GeneratedArtifact:
        character = self.store.get_character(character_id)
        if not character.image_url:
            raise ValidationError(f"Character {character_id} has no image to sketch")
        data, mime_type = await self._generate_sketch(character.image_url)
        url = await self._store_image(
            timestamped_key(f"{character.project_id}/character-sketches", character.display_name),
            data,
            mime_type,
        )
        self.store.update_character(character.id, sketch_url=url, sketch_prompt=SKETCH_PROMPT)
        return GeneratedArtifact(url=url, prompt=SKETCH_PROMPT, mode="sketch", metadata={"character_id": character.id})

    async def generate_page_sketch(self, page_id: str) -> GeneratedArtifact:
        page = self.store.get_page(page_id)
        if not page.illustration_url:
            raise ValidationError(f"Page {page_id} has no illustration to sketch")
        data, mime_type = await self._generate_sketch(page.illustration_url)
        url = await self._store_image(
            timestamped_key(f"{page.project_id}/page-sketches", f"page-{page.page_number}"),
            data,
            mime_type,
        )
        self.store.update_page(page.id, sketch_url=url, sketch_prompt=SKETCH_PROMPT)
        return GeneratedArtifact(url=url, prompt=SKETCH_PROMPT, mode="sketch", metadata={"page_id": page.id})
