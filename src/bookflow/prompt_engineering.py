"""Instruction text and reference ordering for image generation requests."""

import re
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from bookflow.models import Character, CharacterAction, Page, PageLayout, TextIntegration

logger = logging.getLogger(__name__)

MAIN_CHARACTER_LABEL = "THE MAIN CHARACTER"


class GenerationMode(str, Enum):
    """Mutually exclusive ways of producing an illustration."""
    SCENE_RECREATION = "scene_recreation"
    EDIT = "edit"
    STANDARD = "standard"


class ReferenceRole(str, Enum):
    """What a reference image is for."""
    MASTER_STYLE_ANCHOR = "master_style_anchor"
    SECONDARY_STYLE = "secondary_style"
    CHARACTER = "character"
    EDIT_TARGET = "edit_target"
    EDIT_GUIDE = "edit_guide"
    SCENE_BASE = "scene_base"
    SOURCE = "source"


@dataclass
class PromptPart:
    """One element of the ordered multimodal request: text or an image URL."""
    text: Optional[str] = None
    image_url: Optional[str] = None
    role: Optional[ReferenceRole] = None
    required: bool = False

    @classmethod
    def of_text(cls, text: str) -> "PromptPart":
        return cls(text=text)

    @classmethod
    def of_image(cls, url: str, role: ReferenceRole, required: bool = False) -> "PromptPart":
        return cls(image_url=url, role=role, required=required)

    @property
    def is_image(self) -> bool:
        return self.image_url is not None


@dataclass
class LabeledReference:
    """A reference image bound to the label that introduces it."""
    label: str
    url: str
    role: ReferenceRole
    description: str = ""


@dataclass
class IllustrationPlan:
    """Everything needed to call the image model for one page."""
    mode: GenerationMode
    instruction: str
    references: List[LabeledReference] = field(default_factory=list)
    aspect_ratio: str = "1:1"
    anchor_url: Optional[str] = None
    anchor_source: Optional[str] = None

    def to_parts(self) -> List[PromptPart]:
        """Interleave label text and image for every reference, instruction last."""
        parts: List[PromptPart] = []
        for reference in self.references:
            text = f"[{reference.label}]"
            if reference.description:
                text = f"{text}\n{reference.description}"
            parts.append(PromptPart.of_text(text))
            required = reference.role in (ReferenceRole.EDIT_TARGET, ReferenceRole.SCENE_BASE)
            parts.append(PromptPart.of_image(reference.url, reference.role, required=required))
        parts.append(PromptPart.of_text(self.instruction))
        return parts


NO_TEXT_RULE = (
    "CRITICAL RULE - NO TEXT DRAWING: the illustration must contain zero visible text. "
    "Do not draw letters, words, numbers, signatures or glyph-like marks anywhere."
)

STYLE_ANCHOR_RULES = """STYLE & RENDERING RULES (STRICT CONSISTENCY):
1. MASTER STYLE ANCHOR:
   - The image labelled "MASTER STYLE ANCHOR" defines the rendering technique for the entire scene: medium, line weight, shading, dimensionality and colour palette.
   - Render every character, prop and background element in that exact technique.
   - If the anchor is flat or vector, the whole scene is flat or vector. If it is painterly, the whole scene is painterly.
2. NO UNSTATED STYLE SHIFT:
   - Do not drift toward photorealism, 3D rendering, cinematic lighting, fur or hair-strand detail unless the anchor itself shows them.
3. UNIFIED WORLD:
   - Characters and background must look like they exist in the same artistic universe."""

NO_ANCHOR_STYLE_RULES = """STYLE & TECHNIQUE INSTRUCTIONS:
- Children's book illustration, hand-drawn look, warm and inviting, not photorealistic.
- Character references define each character's identity and appearance; keep every character consistent with them."""

CHARACTER_STYLE_REFERENCE_TEXT = """[STYLE REFERENCE IMAGE - PRIMARY SOURCE OF TRUTH]
This image defines the art style and rendering technique.
1. Adopt the exact medium and dimensionality of this reference.
2. If the reference is flat or vector, render the new character flat or vector, ignoring realistic fur or feathers.
3. If the reference is painted or three-dimensional, render the new character with the same depth and texture.
4. The reference image overrides any assumption about how the character should look stylistically."""

SKETCH_PROMPT = """Convert this illustration into a natural pencil sketch with authentic graphite texture. Black and white only.

STYLE: Rough pencil lines with visible grain, uneven pressure and broken strokes. Include construction lines, smudges and overlapping marks. No smooth digital lines, fills or gradients.

FIDELITY RULES (STRICT):
1. Do not add anything that is not visible in the original: no extra limbs, objects, details or background elements.
2. Do not remove any visible element: every contour, shape and detail must be present.
3. Keep an exact structural replica; only the rendering changes from colour to pencil.

Preserve all proportions, positions, poses, expressions and composition exactly."""

_NOT_APPLICABLE = {"", "n/a", "na", "none"}


def _present(value: Optional[str]) -> bool:
    return bool(value) and value.strip().lower() not in _NOT_APPLICABLE


class PromptEngineer:
    """Builds the instruction text for each generation mode."""

    @staticmethod
    def scrub_main_name(text: Optional[str], main_name: Optional[str]) -> str:
        """Replace the main character's name with the generic label.

        The image model then binds identity to the labelled reference image
        rather than to whatever the name suggests.
        """
        if not text:
            return ""
        if not main_name or not main_name.strip():
            return text
        pattern = re.compile(rf"\b{re.escape(main_name.strip())}(['’]s|s)?\b", re.IGNORECASE)

        def _replace(match: "re.Match[str]") -> str:
            suffix = match.group(1) or ""
            return MAIN_CHARACTER_LABEL + ("'s" if suffix and suffix != "s" else "")

        return pattern.sub(_replace, text)

    @staticmethod
    def character_label(character: Character, index: int) -> str:
        if character.is_main:
            return MAIN_CHARACTER_LABEL
        return character.display_name or f"Character {index + 1}"

    @staticmethod
    def build_layout_rules(layout: PageLayout) -> str:
        if layout == PageLayout.SPREAD:
            return """LAYOUT: DOUBLE-PAGE SPREAD
- Compose one continuous scene across a wide canvas that will be folded in the middle.
- The central vertical band (about 10% of the width) is the binding gutter. Keep it free of faces, characters, hands and any focal element.
- Place focal content on the left and right halves."""
        if layout == PageLayout.SPOT:
            return """LAYOUT: SPOT ILLUSTRATION
- Draw an unbounded vignette: the subject floats on a plain white page.
- Do not fill the rectangle. No background wash, no frame, no hard edges; let the scene fade out softly.
- Keep the vignette compact so the surrounding page stays open."""
        return """LAYOUT: SINGLE PAGE
- Full-bleed single page composition.
- Keep important content away from the outer trim edges."""

    @staticmethod
    def build_text_section(text_integration: TextIntegration, story_text: str) -> str:
        if text_integration == TextIntegration.INTEGRATED:
            return f"""TEXT INTEGRATION & LAYOUT INSTRUCTIONS:
The following story text is provided only to plan layout and spacing. It must not be drawn.

"{story_text}"

- Plan the composition around this text before finalising the scene.
- Reserve calm, empty, text-safe regions inset from the page edges, large enough to hold this text.
- Keep faces and key action out of those regions.
- The text will be typeset later by a separate renderer.
{NO_TEXT_RULE}"""
        return f"""STORY CONTEXT (FOR SCENE MOOD ONLY):
"{story_text}"

The story text is printed on a separate page.
{NO_TEXT_RULE}"""

    @staticmethod
    def describe_actions(page: Page, main_name: Optional[str]) -> str:
        lines = []
        for name, action in page.character_actions.items():
            if not _present(action):
                continue
            label = PromptEngineer.scrub_main_name(name, main_name)
            lines.append(f"- {label}: {PromptEngineer.scrub_main_name(action, main_name)}")
        return "\n".join(lines) or "No specific character actions."

    def build_standard_instruction(
        self,
        page: Page,
        main: Optional[Character],
        text_integration: TextIntegration,
        layout: PageLayout,
        has_anchor: bool,
        additional_direction: Optional[str] = None,
    ) -> str:
        main_name = main.name if main else None
        scene = self.scrub_main_name(page.scene_description or "A scene from the story.", main_name)
        background = self.scrub_main_name(
            page.background_elements or "Appropriate background for the scene.", main_name
        )
        sections = [
            "TASK: ILLUSTRATION GENERATION",
            "CHARACTER REFERENCES: each labelled image above shows exactly one character. "
            "Match identity and appearance to the label that precedes the image.",
            f"SCENE:\n{scene}",
            f"CHARACTER ACTIONS:\n{self.describe_actions(page, main_name)}",
            f"BACKGROUND:\n{background}",
        ]
        if _present(page.atmosphere):
            sections.append(f"ATMOSPHERE:\n{self.scrub_main_name(page.atmosphere, main_name)}")
        if _present(additional_direction):
            sections.append(f"ADDITIONAL DIRECTION:\n{self.scrub_main_name(additional_direction, main_name)}")
        sections.append(STYLE_ANCHOR_RULES if has_anchor else NO_ANCHOR_STYLE_RULES)
        sections.append(self.build_layout_rules(layout))
        sections.append(self.build_text_section(text_integration, self.scrub_main_name(page.story_text, main_name)))
        return "\n\n".join(sections)

    @staticmethod
    def build_edit_instruction(custom_prompt: Optional[str], guide_count: int) -> str:
        instructions = custom_prompt.strip() if _present(custom_prompt) else (
            "Apply the changes shown in the additional visual references."
        )
        guide_text = (
            f"2. The {guide_count} image(s) labelled \"ADDITIONAL VISUAL REFERENCE\" are guides for the requested changes only."
            if guide_count
            else "2. No additional references are provided."
        )
        return f"""MODE: IMAGE EDITING
Modify the image labelled "IMAGE TO EDIT". Do not generate a new scene.

INSTRUCTIONS:
{instructions}

IMAGE CONTEXT:
1. Keep the composition, characters and art style of the image to edit unless the instructions change them.
{guide_text}
3. Change only what the instructions ask for.
{NO_TEXT_RULE}"""

    def build_scene_recreation_instruction(
        self,
        page: Page,
        characters: List[Character],
        actions: Dict[str, CharacterAction],
        main: Optional[Character],
        layout: PageLayout,
    ) -> str:
        main_name = main.name if main else None
        action_lines = []
        for index, character in enumerate(characters):
            label = self.character_label(character, index)
            new_action = actions.get(character.id or "") or actions.get(character.display_name)
            if new_action is None:
                continue
            parts = []
            if _present(new_action.action):
                parts.append(f"action: {self.scrub_main_name(new_action.action, main_name)}")
            if _present(new_action.emotion):
                parts.append(f"emotion: {new_action.emotion}")
            if parts:
                action_lines.append(f"- {label}: " + "; ".join(parts))
        actions_text = "\n".join(action_lines) or "- Characters act naturally for the story moment."

        return f"""MODE: SCENE RECREATION
The image labelled "BASE SCENE" is the ground truth for the environment: setting, props, lighting, palette and art style.

1. Remove every character currently in the base scene.
2. Insert the characters shown in the labelled character references.
3. Each character performs the new action and emotion listed below. Do not copy any pose from the base scene.
4. Keep the environment unchanged.

NEW CHARACTER ACTIONS:
{actions_text}

STORY MOMENT:
{self.scrub_main_name(page.story_text, main_name)}

{self.build_layout_rules(layout)}

{NO_TEXT_RULE}"""

    @staticmethod
    def build_character_prompt(character: Character) -> str:
        """Describe a character for reference-image generation."""
        parts = []
        if _present(character.age):
            parts.append(f"{character.age} year old")
        if _present(character.gender):
            parts.append(character.gender)
        if _present(character.name):
            parts.append(f"named {character.name}")
        elif _present(character.role):
            parts.append(character.role)
        if _present(character.name) and _present(character.role):
            parts.append(f"({character.role})")
        for value, template in (
            (character.skin_color, "{} skin"),
            (character.hair_color, "{} hair"),
            (character.hair_style, "{} hairstyle"),
            (character.eye_color, "{} eyes"),
            (character.clothing, "wearing {}"),
            (character.accessories, "with {}"),
            (character.special_features, "{}"),
            (character.description, "{}"),
        ):
            if _present(value):
                parts.append(template.format(value))

        base = ", ".join(parts)
        return (
            f"{base}, children's book character illustration, full body, plain background, "
            "coloured, hand-drawn style, warm and inviting, not photorealistic, "
            "in the style of the reference illustration provided"
        )
