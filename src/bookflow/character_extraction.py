"""Character extraction and deduplication for book manuscripts.

The text model proposes secondary characters; deterministic filters then
remove anything that is really the main character, a plural reference, or a
character the project already has.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from .error_handling import ExtractionParseError
from .models import Character, Page
from .services.entity_store import EntityStore
from .utils import normalize_name, parse_llm_json

logger = logging.getLogger(__name__)


MIN_CONTAINMENT_LENGTH = 3
FREQUENT_APPEARANCE_THRESHOLD = 3

MAIN_ROLE_TERMS = {"main character", "protagonist", "hero", "heroine", "narrator"}

# Roles that may legitimately appear twice in one book
REPEATABLE_ROLES = {"mom", "dad"}

# Singular words that happen to end in "s"
SINGULAR_EXCEPTIONS = {
    "boss", "princess", "actress", "waitress", "empress", "goddess", "hostess",
    "chris", "james", "charles", "thomas", "nicholas", "lucas", "marcus", "jesus",
    "agnes", "doris", "iris", "francis", "dennis", "lewis", "louis", "travis",
    "jones", "miles", "wes", "ross", "gus", "russ", "santa claus", "claus",
    "mrs", "ms", "bus", "octopus", "walrus", "platypus", "hippopotamus", "lotus",
    "grandpas", "his", "hers",
}

# Family terms that are always singular individuals
SINGULAR_FAMILY_TERMS = {"mom", "mommy", "mum", "dad", "daddy", "grandma", "grandpa", "nana", "papa", "granny"}

PLURAL_INDICATORS = (
    "group of", "several", "many", "a few", "some of", "all the", "bunch of",
    "team of", "class of", "herd of", "flock of", "pack of", "crowd",
    "children", "kids", "people", "everyone", "both",
)

_STOPWORDS = {"the", "and", "with", "who", "of", "a", "an", "her", "his", "their", "little", "young"}

EXTRACTION_SYSTEM_PROMPT = """You are analyzing a children's book story to identify every character that needs to be illustrated.

You have two jobs.

1. MAIN CHARACTER TRACKING
Track every page on which the main character appears. The main character may be referred to by name, a nickname, a shortened form, a role ("the girl", "our hero") or a pronoun. Treat all of these as the main character. Never list the main character among the secondary characters.

2. SECONDARY CHARACTERS
List every other character the author would want to fill out a character form for:
- Include specific, individually illustratable characters: proper names ("Max"), family titles ("Mom"), numbered labels ("Kid 1") and descriptive titles ("the dog").
- Include recurring characters and characters with physical descriptions.
- Exclude groups and plural references ("the kids", "children", "people", "teachers").
- Exclude the reader addressed as "you".
- Exclude characters only mentioned or remembered but never shown.
- A relative of the main character is a different person ("Zara's mom" is Mom, not Zara).
- Return each individual once, with their most descriptive name.

Return only a JSON object:
{
  "main_character": {"appears_in": [1, 2, 3]},
  "characters": [
    {
      "name": "Character name",
      "role": "Brief role description",
      "appears_in": [1, 2],
      "description": "Brief physical description from the story",
      "story_role": "What they do in the story"
    }
  ]
}
"appears_in" values are page numbers between 1 and the page count."""


@dataclass
class CandidateCharacter:
    """A secondary character proposed by the text model."""

    name: str | None
    role: str | None
    appears_in: List[str] = field(default_factory=list)
    description: str | None = None
    story_role: str | None = None

    @property
    def label(self) -> str:
        return (self.name or self.role or "").strip()


@dataclass
class ExtractionSummary:
    """Outcome of one extraction run, including everything filtered out."""

    project_id: str
    page_count: int
    identified: int = 0
    created: List[Character] = field(default_factory=list)
    removed_main_duplicates: List[str] = field(default_factory=list)
    removed_plural: List[str] = field(default_factory=list)
    removed_existing: List[str] = field(default_factory=list)
    removed_invalid: int = 0
    main_character_appearances: List[str] = field(default_factory=list)
    main_appearance_fallback: bool = False

    @property
    def counts(self) -> Dict[str, int]:
        return {
            "identified": self.identified,
            "created": len(self.created),
            "removed_main_duplicates": len(self.removed_main_duplicates),
            "removed_plural": len(self.removed_plural),
            "removed_existing": len(self.removed_existing),
            "removed_invalid": self.removed_invalid,
        }


# ---------------------------------------------------------------------------
# Deterministic filters
# ---------------------------------------------------------------------------

def _contains_word(haystack: str, needle: str) -> bool:
    """True when ``needle`` appears as whole words, not as a possessive."""
    pattern = rf"(?<![\w']){re.escape(needle)}(?!\w)(?!['’]s\b)"
    return re.search(pattern, haystack) is not None


def _significant_tokens(text: str | None) -> Set[str]:
    tokens = re.findall(r"[a-z]+", (text or "").lower())
    return {t for t in tokens if len(t) >= 4 and t not in _STOPWORDS}


class MainCharacterMatcher:
    """Decides whether a candidate is really the main character under another name.

    The heuristics are approximate; they favour removing a doubtful
    candidate over duplicating the main character.
    """

    def __init__(self, main: Character | None):
        self.main = main
        self.main_name = normalize_name(main.name) if main else ""
        self.main_role = normalize_name(main.role) if main else ""

    def match(self, candidate: CandidateCharacter) -> Optional[str]:
        """Return the reason for a match, or None."""
        if self.main is None:
            return None

        name = normalize_name(candidate.name)
        role = normalize_name(candidate.role)

        if name and self.main_name:
            if name == self.main_name:
                return "exact_name"
            if len(name) >= MIN_CONTAINMENT_LENGTH and len(self.main_name) >= MIN_CONTAINMENT_LENGTH:
                if _contains_word(name, self.main_name):
                    return "name_contains_main"
                if _contains_word(self.main_name, name):
                    return "main_contains_name"

        if role and self._strong_role_overlap(role):
            return "role_overlap"

        if not name and len(candidate.appears_in) >= FREQUENT_APPEARANCE_THRESHOLD:
            main_tokens = _significant_tokens(self.main_role) | _significant_tokens(self.main_name)
            if main_tokens & _significant_tokens(role):
                return "frequent_unnamed_role"

        return None

    def _strong_role_overlap(self, role: str) -> bool:
        if role in MAIN_ROLE_TERMS:
            return True
        if self.main_role and role == self.main_role:
            return True
        if self.main_name and len(self.main_name) >= MIN_CONTAINMENT_LENGTH:
            return _contains_word(role, self.main_name)
        return False


def _is_plural_text(text: str) -> bool:
    lowered = " ".join(text.lower().split())
    if not lowered:
        return False
    if normalize_name(lowered) in SINGULAR_FAMILY_TERMS:
        return False

    for indicator in PLURAL_INDICATORS:
        if re.search(rf"\b{re.escape(indicator)}\b", lowered):
            return True

    last_word = re.sub(r"[^\w'’]", "", lowered.split()[-1])
    if lowered in SINGULAR_EXCEPTIONS or last_word in SINGULAR_EXCEPTIONS or last_word in SINGULAR_FAMILY_TERMS:
        return False
    if not last_word.endswith("s") or len(last_word) <= 2:
        return False
    if last_word.endswith(("ss", "us", "is", "'s", "’s")):
        return False
    return True


def is_plural_reference(name: str | None, role: str | None) -> bool:
    """Deterministic plural check on a candidate's name and, when useful, its role."""
    if name and name.strip() and _is_plural_text(name):
        return True
    role_text = (role or "").strip()
    check_role = not (name or "").strip() or len(role_text.split()) <= 2
    if role_text and check_role and _is_plural_text(role_text):
        return True
    return False


def validate_appearances(values: Any, page_count: int) -> List[str]:
    """Keep page numbers inside 1..page_count, as sorted unique strings."""
    if not isinstance(values, (list, tuple)):
        return []
    valid: Set[int] = set()
    for value in values:
        try:
            number = int(str(value).strip())
        except (TypeError, ValueError):
            continue
        if 1 <= number <= page_count:
            valid.add(number)
    return [str(n) for n in sorted(valid)]


class ExistingCharacterFilter:
    """Drops candidates already present on the project, including earlier ones in the same batch."""

    def __init__(self, existing: Iterable[Character]):
        self.names: Set[str] = set()
        self.roles: Set[str] = set()
        for character in existing:
            self._remember(character.name, character.role)

    def _remember(self, name: str | None, role: str | None) -> None:
        if normalize_name(name):
            self.names.add(normalize_name(name))
        if normalize_name(role):
            self.roles.add(normalize_name(role))

    def is_duplicate(self, candidate: CandidateCharacter) -> bool:
        name = normalize_name(candidate.name)
        role = normalize_name(candidate.role)
        if name and name in self.names:
            return True
        if role and role in self.roles:
            # A second mom or dad is kept only under a name of its own
            named = bool(name) and name != role
            return not (named and role in REPEATABLE_ROLES)
        if role and not name and role in self.names:
            return True
        return False

    def accept(self, candidate: CandidateCharacter) -> None:
        self._remember(candidate.name, candidate.role)


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

def _response_text(response: Any) -> str:
    content = getattr(response, "content", response)
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict):
                parts.append(str(item.get("text", "")))
            else:
                parts.append(str(getattr(item, "text", item)))
        return "".join(parts)
    return str(content or "")


def parse_extraction_response(text: str, page_count: int) -> tuple[List[CandidateCharacter], Optional[List[str]], int]:
    """Validate the model output.

    Returns candidates, the main character's validated appearances (None
    when absent or empty) and the number of unusable entries.
    """
    try:
        payload = parse_llm_json(text)
    except ValueError as exc:
        raise ExtractionParseError(f"Character extraction returned invalid JSON: {exc}") from exc

    if not isinstance(payload, dict) or not isinstance(payload.get("characters"), list):
        raise ExtractionParseError("Character extraction response is missing the characters array")

    candidates: List[CandidateCharacter] = []
    invalid = 0
    for entry in payload["characters"]:
        if not isinstance(entry, dict):
            invalid += 1
            continue
        name = str(entry.get("name") or "").strip() or None
        role = str(entry.get("role") or "").strip() or None
        if not name and not role:
            invalid += 1
            continue
        candidates.append(CandidateCharacter(
            name=name,
            role=role,
            appears_in=validate_appearances(entry.get("appears_in"), page_count),
            description=entry.get("description") or None,
            story_role=entry.get("story_role") or None,
        ))

    main_appearances = None
    main_block = payload.get("main_character")
    if isinstance(main_block, dict):
        main_appearances = validate_appearances(main_block.get("appears_in"), page_count) or None

    return candidates, main_appearances, invalid


class CharacterExtractor:
    """Turns manuscript pages into persisted secondary characters."""

    def __init__(self, store: EntityStore, llm: BaseChatModel):
        self.store = store
        self.llm = llm

    @staticmethod
    def build_manuscript(pages: List[Page]) -> str:
        return "\n\n".join(f"Page {page.page_number}: {page.story_text}" for page in pages)

    @staticmethod
    def build_request(pages: List[Page], main: Character | None) -> str:
        lines = []
        if main is not None:
            lines.append(f"MAIN CHARACTER (already created, do not list): \"{main.display_name}\"")
            if main.role:
                lines.append(f"Main character role: {main.role}")
            biography = main.story_role or main.description
            if biography:
                lines.append(f"Main character biography: {biography}")
        lines.append(f"The story has {len(pages)} pages.")
        lines.append("")
        lines.append("STORY:")
        lines.append(CharacterExtractor.build_manuscript(pages))
        return "\n".join(lines)

    def filter_candidates(
        self,
        candidates: List[CandidateCharacter],
        main: Character | None,
        existing: List[Character],
        summary: ExtractionSummary,
    ) -> List[CandidateCharacter]:
        matcher = MainCharacterMatcher(main)
        existing_filter = ExistingCharacterFilter(existing)
        survivors: List[CandidateCharacter] = []

        for candidate in candidates:
            reason = matcher.match(candidate)
            if reason:
                logger.info("Removed duplicate of main character %r (%s)", candidate.label, reason)
                summary.removed_main_duplicates.append(candidate.label)
                continue
            if is_plural_reference(candidate.name, candidate.role):
                logger.info("Removed plural reference %r", candidate.label)
                summary.removed_plural.append(candidate.label)
                continue
            if existing_filter.is_duplicate(candidate):
                logger.info("Removed existing character %r", candidate.label)
                summary.removed_existing.append(candidate.label)
                continue
            existing_filter.accept(candidate)
            survivors.append(candidate)

        return survivors

    async def extract(self, project_id: str) -> ExtractionSummary:
        """Run extraction for a project and persist the surviving characters.

        Raises ExtractionParseError when the model output is unusable; in
        that case nothing is written.
        """
        pages = self.store.list_pages(project_id)
        if not pages:
            raise ExtractionParseError(f"Project {project_id} has no pages to analyze")

        main = self.store.get_main_character(project_id)
        existing = self.store.list_characters(project_id)

        messages = [
            SystemMessage(content=EXTRACTION_SYSTEM_PROMPT),
            HumanMessage(content=self.build_request(pages, main)),
        ]
        response = await self.llm.ainvoke(messages)
        candidates, main_appearances, invalid = parse_extraction_response(_response_text(response), len(pages))

        summary = ExtractionSummary(project_id=project_id, page_count=len(pages))
        summary.identified = len(candidates) + invalid
        summary.removed_invalid = invalid

        survivors = self.filter_candidates(candidates, main, existing, summary)

        if main is not None:
            if main_appearances is None:
                main_appearances = [str(page.page_number) for page in pages]
                summary.main_appearance_fallback = True
            summary.main_character_appearances = main_appearances
            self.store.update_character(main.id, appears_in=main_appearances)

        for candidate in survivors:
            created = self.store.create_character(Character(
                project_id=project_id,
                name=candidate.name,
                role=candidate.role,
                is_main=False,
                appears_in=candidate.appears_in,
                description=candidate.description,
                story_role=candidate.story_role,
            ))
            summary.created.append(created)

        self.assign_page_characters(project_id, pages)

        logger.info(
            "Character extraction for project %s: %s",
            project_id,
            ", ".join(f"{k}={v}" for k, v in summary.counts.items()),
        )
        return summary

    def assign_page_characters(self, project_id: str, pages: List[Page]) -> None:
        """Recompute each page's character_ids from validated appearances."""
        characters = self.store.list_characters(project_id)
        for page in pages:
            number = str(page.page_number)
            character_ids = [c.id for c in characters if number in c.appears_in]
            self.store.set_page_character_ids(page.id, character_ids)
