"""Foreground workflow operations.

Every status change here is computed by :mod:`bookflow.workflow.state_machine`
and written with a compare-and-set against the status that was read, so a
concurrent background batch can never be clobbered.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from ..character_extraction import CharacterExtractor, ExtractionSummary
from ..context import WorkflowSettings
from ..db_config import ensure_indexes, get_mongo_database
from ..db_models import now_utc
from ..error_handling import ConflictError, ValidationError
from ..illustration_pipeline import StyleConsistencyPipeline
from ..llm_factory import create_chat_model
from ..models import (
    Character,
    FeedbackHistoryEntry,
    GeneratedArtifact,
    Page,
    Phase,
    Project,
    ProjectStatus,
    RegenerationRequest,
)
from ..orchestrator import DispatchResult, GenerationOrchestrator
from ..providers import GeminiImageProvider
from ..services.entity_store import EntityStore
from ..services.notifications import NullNotifier, Notifier, create_notifier
from ..services.storage import LocalObjectStorage, ObjectStorage
from ..utils import page_illustration_prefix
from .state_machine import (
    ILLUSTRATION_MODE_STATUSES,
    ArtifactRegenerated,
    CharacterReviewSubmitted,
    CustomerApproved,
    GenerationStarted,
    IntakeCompleted,
    MaterialSent,
    ProjectCompleted,
    RevisionRequested,
    WorkflowEvent,
    accepts,
    next_status,
    resolve_status,
)

logger = logging.getLogger(__name__)

_SEND_COUNTER = {
    Phase.CHARACTER: "character_send_count",
    Phase.ILLUSTRATION: "illustration_send_count",
}

# Approving again once a phase is past its approval is a no-op
_ALREADY_APPROVED = {
    Phase.CHARACTER: ILLUSTRATION_MODE_STATUSES | {ProjectStatus.COMPLETED},
    Phase.ILLUSTRATION: frozenset({ProjectStatus.ILLUSTRATION_APPROVED, ProjectStatus.COMPLETED}),
}


class RegenerationDecision(str, Enum):
    KEEP_NEW = "keep_new"
    REVERT_OLD = "revert_old"


@dataclass
class TransitionOutcome:
    """Status before and after a foreground operation."""
    project_id: str
    previous_status: str
    status: ProjectStatus
    written: bool
    dispatch: Optional[DispatchResult] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "project_id": self.project_id,
            "previous_status": self.previous_status,
            "status": self.status.value,
            "written": self.written,
        }
        if self.dispatch is not None:
            payload["generation_started"] = self.dispatch.started
            payload["entity_ids"] = self.dispatch.entity_ids
        return payload


class WorkflowService:
    """Entry point for every operation a customer or admin can trigger."""

    def __init__(
        self,
        store: EntityStore,
        storage: ObjectStorage,
        pipeline: StyleConsistencyPipeline,
        orchestrator: GenerationOrchestrator,
        extractor: Optional[CharacterExtractor] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.store = store
        self.storage = storage
        self.pipeline = pipeline
        self.orchestrator = orchestrator
        self.extractor = extractor
        self.notifier = notifier or NullNotifier()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _apply(
        self,
        project_id: str,
        event: WorkflowEvent,
        extra_set: Optional[Dict[str, Any]] = None,
        inc: Optional[Dict[str, int]] = None,
        observed: Optional[str] = None,
    ) -> TransitionOutcome:
        """Compute the next status for ``event`` and write it conditionally.

        Raises InvalidTransitionError when the event is rejected and
        ConflictError when another writer got there first.
        """
        current = observed if observed is not None else self.store.get_project_status(project_id)
        new_status = next_status(current, event)

        if new_status == ProjectStatus(current) and not extra_set and not inc:
            return TransitionOutcome(project_id, current, new_status, written=False)

        if not self.store.transition_status(project_id, current, new_status, extra_set=extra_set, inc=inc):
            raise ConflictError(project_id, current)

        logger.info(f"Project {project_id}: {current} -> {new_status.value} ({event.name})")
        return TransitionOutcome(project_id, current, new_status, written=True)

    async def _notify(self, text: str, **fields: Any) -> None:
        await self.notifier.notify(text, **fields)

    def _check_page(self, project_id: str, page_id: str) -> Page:
        page = self.store.get_page(page_id)
        if page.project_id != project_id:
            raise ValidationError(f"Page {page_id} does not belong to project {project_id}")
        return page

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_project_overview(self, project_id: str) -> Dict[str, Any]:
        project = self.store.get_project(project_id)
        return {
            "project": project.model_dump(mode="json"),
            "canonical_status": resolve_status(self.store.get_project_status(project_id)).value,
            "characters": [c.model_dump(mode="json") for c in self.store.list_characters(project_id)],
            "pages": [p.model_dump(mode="json") for p in self.store.list_pages(project_id)],
        }

    # ------------------------------------------------------------------
    # Intake and extraction
    # ------------------------------------------------------------------

    def complete_intake(self, project_id: str, main_character: Character, pages: List[Page]) -> TransitionOutcome:
        """Store the main character and manuscript pages, then open character review."""
        current = self.store.get_project_status(project_id)
        event = IntakeCompleted()
        # Validate before writing anything
        next_status(current, event)
        if not pages:
            raise ValidationError("A manuscript needs at least one page")
        if sorted(p.page_number for p in pages) != list(range(1, len(pages) + 1)):
            raise ValidationError("Page numbers must be contiguous and start at 1")
        if self.store.get_main_character(project_id) is not None:
            raise ValidationError(f"Project {project_id} already has a main character")

        self.store.create_character(main_character.model_copy(update={"project_id": project_id, "is_main": True}))
        self.store.create_pages(
            project_id,
            [page.model_copy(update={"project_id": project_id}) for page in pages],
        )
        return self._apply(project_id, event, observed=current)

    async def run_extraction(self, project_id: str) -> ExtractionSummary:
        if self.extractor is None:
            raise ValidationError("Character extraction is not configured")
        self.store.get_project(project_id)
        return await self.extractor.extract(project_id)

    # ------------------------------------------------------------------
    # Character phase
    # ------------------------------------------------------------------

    async def submit_character_review(self, project_id: str) -> TransitionOutcome:
        """Apply the customer's character form: generate, request revision, or approve."""
        current = self.store.get_project_status(project_id)
        characters = self.store.list_characters(project_id)
        pages = self.store.list_pages(project_id)

        missing_images = any(not c.is_main and not c.image_url for c in characters)
        unresolved = any(c.has_unresolved_feedback for c in characters) or any(
            p.has_unresolved_feedback for p in pages
        )
        event = CharacterReviewSubmitted(
            characters_missing_images=missing_images,
            has_unresolved_feedback=unresolved,
        )
        new_status = next_status(current, event)
        project = self.store.get_project(project_id)

        if new_status == ProjectStatus.CHARACTER_GENERATION:
            dispatch = self.orchestrator.dispatch_characters(project_id, current)
            if dispatch.conflict:
                raise ConflictError(project_id, current)
            outcome = TransitionOutcome(project_id, current, new_status, written=True, dispatch=dispatch)
        else:
            outcome = self._apply(project_id, event, observed=current)

        await self._notify(
            f"Character review submitted for {project.book_title or project_id}",
            author=project.author_name or "-",
            status=outcome.status.value,
        )
        return outcome

    def generate_characters(self, project_id: str, character_ids: Optional[List[str]] = None) -> DispatchResult:
        """Admin-triggered (re)generation of character images."""
        current = self.store.get_project_status(project_id)
        next_status(current, GenerationStarted(Phase.CHARACTER))
        if character_ids:
            for character_id in character_ids:
                character = self.store.get_character(character_id)
                if character.project_id != project_id:
                    raise ValidationError(f"Character {character_id} does not belong to project {project_id}")
        dispatch = self.orchestrator.dispatch_characters(project_id, current, character_ids)
        if dispatch.conflict:
            raise ConflictError(project_id, current)
        return dispatch

    def _resolve_feedback(self, items: List[Any], revision_round: int, update) -> None:
        for item in items:
            fields: Dict[str, Any] = {"admin_reply": None}
            if item.has_unresolved_feedback:
                entry = FeedbackHistoryEntry(
                    note=item.feedback_notes,
                    created_at=now_utc(),
                    revision_round=revision_round,
                )
                history = [h.model_dump(mode="json") for h in item.feedback_history]
                history.append(entry.model_dump(mode="json"))
                fields.update({"feedback_history": history, "feedback_notes": None, "is_resolved": True})
            update(item.id, **fields)

    async def _send(self, project_id: str, phase: Phase) -> TransitionOutcome:
        counter = _SEND_COUNTER[phase]
        project = self.store.get_project(project_id)
        revision_round = getattr(project, counter) + 1

        outcome = self._apply(project_id, MaterialSent(phase), inc={counter: 1})

        if phase == Phase.CHARACTER:
            self._resolve_feedback(
                self.store.list_characters(project_id), revision_round, self.store.update_character
            )
        else:
            self._resolve_feedback(self.store.list_pages(project_id), revision_round, self.store.update_page)

        await self._notify(
            f"{phase.value.title()} material sent to {project.author_name or 'customer'}",
            book=project.book_title or project_id,
            round=revision_round,
        )
        return outcome

    async def send_characters(self, project_id: str) -> TransitionOutcome:
        return await self._send(project_id, Phase.CHARACTER)

    async def send_illustrations(self, project_id: str) -> TransitionOutcome:
        return await self._send(project_id, Phase.ILLUSTRATION)

    def record_character_feedback(self, project_id: str, character_id: str, note: str) -> TransitionOutcome:
        character = self.store.get_character(character_id)
        if character.project_id != project_id:
            raise ValidationError(f"Character {character_id} does not belong to project {project_id}")
        return self._record_feedback(
            project_id, Phase.CHARACTER, lambda: self.store.update_character(
                character_id, feedback_notes=note, is_resolved=False
            ), note,
        )

    def record_page_feedback(self, project_id: str, page_id: str, note: str) -> TransitionOutcome:
        self._check_page(project_id, page_id)
        return self._record_feedback(
            project_id, Phase.ILLUSTRATION, lambda: self.store.update_page(
                page_id, feedback_notes=note, is_resolved=False
            ), note,
        )

    def _record_feedback(self, project_id: str, phase: Phase, write, note: str) -> TransitionOutcome:
        if not (note or "").strip():
            raise ValidationError("Feedback note cannot be empty")
        current = self.store.get_project_status(project_id)

        event = RevisionRequested(phase)
        if not accepts(current, event):
            # Stored as unresolved; the status decision happens on submit or approval
            write()
            return TransitionOutcome(project_id, current, resolve_status(current), written=False)

        # Status first so a lost race leaves no note behind
        outcome = self._apply(project_id, event, observed=current)
        write()
        return outcome

    async def _approve(self, project_id: str, phase: Phase) -> TransitionOutcome:
        current = self.store.get_project_status(project_id)
        canonical = resolve_status(current)
        if canonical in _ALREADY_APPROVED[phase]:
            return TransitionOutcome(project_id, current, canonical, written=False)

        if phase == Phase.CHARACTER:
            items = self.store.list_characters(project_id)
        else:
            items = self.store.list_pages(project_id)
        if any(item.has_unresolved_feedback for item in items):
            raise ValidationError("Cannot approve while feedback is unresolved")

        outcome = self._apply(project_id, CustomerApproved(phase), observed=current)
        project = self.store.get_project(project_id)
        await self._notify(
            f"{phase.value.title()}s approved for {project.book_title or project_id}",
            author=project.author_name or "-",
        )
        return outcome

    async def approve_characters(self, project_id: str) -> TransitionOutcome:
        return await self._approve(project_id, Phase.CHARACTER)

    async def approve_illustrations(self, project_id: str) -> TransitionOutcome:
        return await self._approve(project_id, Phase.ILLUSTRATION)

    # ------------------------------------------------------------------
    # Illustration phase
    # ------------------------------------------------------------------

    def start_sketches(self, project_id: str, page_ids: Optional[List[str]] = None) -> DispatchResult:
        current = self.store.get_project_status(project_id)
        next_status(current, GenerationStarted(Phase.ILLUSTRATION))
        if self.store.count_pages(project_id) == 0:
            raise ValidationError(f"Project {project_id} has no pages")
        dispatch = self.orchestrator.dispatch_illustrations(project_id, current, page_ids)
        if dispatch.conflict:
            raise ConflictError(project_id, current)
        return dispatch

    async def regenerate_page(
        self,
        project_id: str,
        page_id: str,
        request: Optional[RegenerationRequest] = None,
    ) -> GeneratedArtifact:
        """Regenerate one page in the foreground."""
        self._check_page(project_id, page_id)
        project: Project = self.store.get_project(project_id)
        current = self.store.get_project_status(project_id)
        event = ArtifactRegenerated(Phase.ILLUSTRATION, send_count=project.illustration_send_count)
        next_status(current, event)

        artifact = await self.pipeline.generate_illustration(project_id, page_id, request)

        if not artifact.metadata.get("pending_confirmation"):
            self._mark_regenerated(project_id, event)
        return artifact

    def _mark_regenerated(self, project_id: str, event: ArtifactRegenerated) -> None:
        current = self.store.get_project_status(project_id)
        if not accepts(current, event):
            logger.info(f"Project {project_id} moved to {current}; regeneration leaves status alone")
            return
        try:
            self._apply(project_id, event, observed=current)
        except ConflictError:
            logger.info(f"Project {project_id} changed during regeneration; status left as is")

    async def confirm_regeneration(
        self,
        project_id: str,
        page_id: str,
        new_url: str,
        decision: RegenerationDecision | str,
        prompt: Optional[str] = None,
    ) -> Page:
        """Apply the keep/revert decision for a pending regeneration."""
        decision = RegenerationDecision(decision)
        page = self._check_page(project_id, page_id)
        self._check_pending_artifact(project_id, page, new_url)

        if decision == RegenerationDecision.REVERT_OLD:
            await self.storage.delete(new_url)
            return page

        previous_url = page.illustration_url
        updated = self.store.set_page_illustration(page.id, new_url, prompt)
        if previous_url and previous_url != updated.original_illustration_url:
            await self.storage.delete(previous_url)

        project = self.store.get_project(project_id)
        self._mark_regenerated(
            project_id, ArtifactRegenerated(Phase.ILLUSTRATION, send_count=project.illustration_send_count)
        )
        return updated

    def _check_pending_artifact(self, project_id: str, page: Page, new_url: str) -> None:
        key = self.storage.key_for_url(new_url)
        if key is None or not key.startswith(page_illustration_prefix(project_id, page.page_number)):
            raise ValidationError(f"{new_url} is not a pending illustration of page {page.page_number}")

        originals = {p.original_illustration_url for p in self.store.list_pages(project_id)}
        if new_url == page.illustration_url or new_url in originals:
            raise ValidationError("The pending artifact is already a kept illustration")

    def reset_to_original(self, project_id: str, page_id: str) -> Page:
        page = self._check_page(project_id, page_id)
        if not page.original_illustration_url:
            raise ValidationError(f"Page {page_id} has no original illustration")
        return self.store.set_page_illustration(page.id, page.original_illustration_url, page.illustration_prompt)

    def complete_project(self, project_id: str) -> TransitionOutcome:
        return self._apply(project_id, ProjectCompleted())


def create_workflow_service(settings: WorkflowSettings) -> WorkflowService:
    """Wire the production collaborators from explicit settings."""
    db = get_mongo_database(settings)
    ensure_indexes(db)
    store = EntityStore(db)
    storage = LocalObjectStorage(settings.storage_root, settings.storage_public_base_url)
    notifier = create_notifier(settings.slack_webhook_url)
    provider = GeminiImageProvider(settings, storage=storage)
    pipeline = StyleConsistencyPipeline(store, storage, provider)
    orchestrator = GenerationOrchestrator(store, pipeline, notifier=notifier)

    try:
        extractor: Optional[CharacterExtractor] = CharacterExtractor(store, create_chat_model(settings))
    except ValueError as exc:
        logger.warning(f"Character extraction disabled: {exc}")
        extractor = None

    return WorkflowService(
        store,
        storage,
        pipeline,
        orchestrator,
        extractor=extractor,
        notifier=notifier,
    )
