"""Unit tests for instruction building and reference ordering."""

import pytest

from bookflow.models import Character, CharacterAction, Page, PageLayout, TextIntegration
from bookflow.prompt_engineering import (
    MAIN_CHARACTER_LABEL,
    NO_TEXT_RULE,
    STYLE_ANCHOR_RULES,
    GenerationMode,
    IllustrationPlan,
    LabeledReference,
    PromptEngineer,
    ReferenceRole,
)


@pytest.fixture
def engineer():
    return PromptEngineer()


@pytest.fixture
def zara():
    return Character(id="c-main", project_id="p", name="Zara", role="explorer", is_main=True)


@pytest.fixture
def page():
    return Page(
        id="page-1",
        project_id="p",
        page_number=1,
        story_text="Zara found a shell on the beach.",
        scene_description="Zara kneels on the sand holding a shell.",
        character_actions={"Zara": "holds up the shell", "Mom": "n/a"},
        atmosphere="Golden evening light",
    )


class TestScrubMainName:
    def test_replaces_name_and_possessive(self):
        text = PromptEngineer.scrub_main_name("Zara smiles. Zara's hat flies.", "Zara")
        assert text == f"{MAIN_CHARACTER_LABEL} smiles. {MAIN_CHARACTER_LABEL}'s hat flies."

    def test_leaves_other_words(self):
        assert PromptEngineer.scrub_main_name("Zarathustra spoke", "Zara") == "Zarathustra spoke"

    def test_without_main_name(self):
        assert PromptEngineer.scrub_main_name("Zara smiles", None) == "Zara smiles"
        assert PromptEngineer.scrub_main_name(None, "Zara") == ""


class TestLayoutAndText:
    def test_spread_keeps_gutter_clear(self):
        rules = PromptEngineer.build_layout_rules(PageLayout.SPREAD)
        assert "binding gutter" in rules
        assert "10%" in rules

    def test_spot_is_a_vignette(self):
        rules = PromptEngineer.build_layout_rules(PageLayout.SPOT)
        assert "vignette" in rules
        assert "Do not fill the rectangle" in rules

    def test_integrated_text_reserves_space_but_forbids_glyphs(self):
        section = PromptEngineer.build_text_section(TextIntegration.INTEGRATED, "Once upon a time")
        assert "text-safe regions" in section
        assert NO_TEXT_RULE in section

    def test_separate_text_is_context_only(self):
        section = PromptEngineer.build_text_section(TextIntegration.SEPARATE, "Once upon a time")
        assert "separate page" in section
        assert "text-safe" not in section


class TestStandardInstruction:
    def test_with_anchor(self, engineer, page, zara):
        instruction = engineer.build_standard_instruction(
            page, zara, TextIntegration.INTEGRATED, PageLayout.SINGLE, has_anchor=True
        )
        assert STYLE_ANCHOR_RULES in instruction
        assert "Zara" not in instruction
        assert f"- {MAIN_CHARACTER_LABEL}: holds up the shell" in instruction
        assert "Mom" not in instruction
        assert "ATMOSPHERE:\nGolden evening light" in instruction

    def test_additional_direction(self, engineer, page, zara):
        instruction = engineer.build_standard_instruction(
            page, zara, TextIntegration.SEPARATE, PageLayout.SPOT, has_anchor=False,
            additional_direction="Make the sky pink",
        )
        assert "ADDITIONAL DIRECTION:\nMake the sky pink" in instruction
        assert "STYLE & TECHNIQUE INSTRUCTIONS" in instruction


class TestOtherModes:
    def test_edit_instruction(self):
        instruction = PromptEngineer.build_edit_instruction("Remove the hat", guide_count=2)
        assert "Modify the image labelled \"IMAGE TO EDIT\"" in instruction
        assert "Remove the hat" in instruction
        assert "The 2 image(s)" in instruction

    def test_scene_recreation_forbids_copying_pose(self, engineer, page, zara):
        mom = Character(id="c-mom", project_id="p", name="Mom")
        instruction = engineer.build_scene_recreation_instruction(
            page,
            [zara, mom],
            {"c-main": CharacterAction(action="waves at Mom", emotion="joyful"), "Mom": CharacterAction(emotion="proud")},
            zara,
            PageLayout.SINGLE,
        )
        assert "Remove every character currently in the base scene" in instruction
        assert "Do not copy any pose" in instruction
        assert f"- {MAIN_CHARACTER_LABEL}: action: waves at Mom; emotion: joyful" in instruction
        assert "- Mom: emotion: proud" in instruction

    def test_character_prompt(self):
        character = Character(
            project_id="p", name="Max", role="best friend", age="7", hair_color="red", clothing="a green hoodie",
        )
        prompt = PromptEngineer.build_character_prompt(character)
        assert prompt.startswith("7 year old, named Max, (best friend), red hair, wearing a green hoodie")
        assert "not photorealistic" in prompt


class TestPlanParts:
    def test_label_precedes_image_and_instruction_is_last(self):
        plan = IllustrationPlan(
            mode=GenerationMode.EDIT,
            instruction="do the edit",
            references=[
                LabeledReference("IMAGE TO EDIT", "/storage/a.png", ReferenceRole.EDIT_TARGET),
                LabeledReference("ADDITIONAL VISUAL REFERENCE", "/storage/b.png", ReferenceRole.EDIT_GUIDE),
            ],
        )
        parts = plan.to_parts()

        assert [p.is_image for p in parts] == [False, True, False, True, False]
        assert parts[0].text == "[IMAGE TO EDIT]"
        assert parts[1].required is True
        assert parts[3].required is False
        assert parts[-1].text == "do the edit"
