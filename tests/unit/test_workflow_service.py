"""Unit tests for foreground workflow operations."""

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock, patch

from bookflow.error_handling import ConflictError, InvalidTransitionError, ValidationError
from bookflow.models import Character, GeneratedArtifact, Page, Phase, Project, ProjectStatus
from bookflow.orchestrator import GenerationOrchestrator
from bookflow.workflow.service import RegenerationDecision, WorkflowService
from bookflow.workflow.state_machine import CustomerApproved


def _artifact(url="/storage/x.png", **metadata):
    return GeneratedArtifact(url=url, prompt="prompt", mode="standard", metadata=metadata)


@pytest.fixture
def pipeline():
    mock = MagicMock()
    mock.generate_character_image = AsyncMock(return_value=_artifact())
    mock.generate_character_sketch = AsyncMock(return_value=_artifact())
    mock.generate_illustration = AsyncMock(return_value=_artifact())
    mock.generate_page_sketch = AsyncMock(return_value=_artifact())
    return mock


@pytest.fixture
def notifier():
    mock = MagicMock()
    mock.notify = AsyncMock()
    return mock


@pytest.fixture
def service(store, storage, pipeline, notifier):
    orchestrator = GenerationOrchestrator(store, pipeline, notifier=notifier)
    return WorkflowService(store, storage, pipeline, orchestrator, notifier=notifier)


@pytest.fixture
def mom(store, project, main_character):
    return store.create_character(Character(project_id=project.id, name="Mom", role="mother"))


class TestIntake:
    def test_complete_intake(self, store, service):
        store.create_project(Project(id="project-2", status=ProjectStatus.DRAFT))
        pages = [Page(project_id="", page_number=n, story_text=f"Page {n}") for n in (1, 2)]

        outcome = service.complete_intake("project-2", Character(project_id="", name="Leo"), pages)

        assert outcome.status == ProjectStatus.CHARACTER_REVIEW
        assert store.get_main_character("project-2").name == "Leo"
        assert store.count_pages("project-2") == 2

    def test_bad_pages_write_nothing(self, store, service):
        store.create_project(Project(id="project-2", status=ProjectStatus.DRAFT))
        pages = [Page(project_id="", page_number=n) for n in (1, 3)]

        with pytest.raises(ValidationError):
            service.complete_intake("project-2", Character(project_id="", name="Leo"), pages)

        assert store.get_main_character("project-2") is None
        assert store.get_project_status("project-2") == "draft"

    def test_wrong_status(self, service, project):
        with pytest.raises(InvalidTransitionError):
            service.complete_intake(project.id, Character(project_id="", name="Leo"), [])

    @pytest.mark.asyncio
    async def test_extraction_requires_extractor(self, service, project):
        with pytest.raises(ValidationError):
            await service.run_extraction(project.id)


class TestSubmitCharacterReview:
    @pytest.mark.asyncio
    async def test_missing_images_start_generation(self, store, service, project, mom, notifier):
        store.update_character(mom.id, feedback_notes="taller please", is_resolved=False)

        outcome = await service.submit_character_review(project.id)

        assert outcome.status == ProjectStatus.CHARACTER_GENERATION
        assert outcome.dispatch.entity_ids == [mom.id]
        assert store.get_project_status(project.id) == "character_generation"
        await outcome.dispatch.task
        await service.orchestrator.wait_for_idle()
        assert store.get_project_status(project.id) == "character_generation_complete"
        notifier.notify.assert_awaited()

    @pytest.mark.asyncio
    async def test_feedback_requests_revision(self, store, service, project, mom):
        store.update_character(mom.id, image_url="/storage/mom.png", feedback_notes="taller", is_resolved=False)

        outcome = await service.submit_character_review(project.id)

        assert outcome.status == ProjectStatus.CHARACTER_REVISION_NEEDED
        assert outcome.dispatch is None

    @pytest.mark.asyncio
    async def test_clean_form_approves(self, store, service, project, mom):
        store.update_character(mom.id, image_url="/storage/mom.png")

        outcome = await service.submit_character_review(project.id)

        assert store.get_project_status(project.id) == "characters_approved"
        assert outcome.to_dict()["status"] == "characters_approved"


class TestSendAndFeedback:
    @pytest.mark.asyncio
    async def test_send_resolves_feedback_into_history(self, store, service, project, mom):
        store.transition_status(project.id, "character_review", "character_generation_complete")
        store.update_character(mom.id, feedback_notes="curlier hair", is_resolved=False, admin_reply="on it")

        outcome = await service.send_characters(project.id)

        assert outcome.status == ProjectStatus.CHARACTER_REVIEW
        assert store.get_project(project.id).character_send_count == 1
        updated = store.get_character(mom.id)
        assert updated.feedback_notes is None
        assert updated.is_resolved is True
        assert updated.admin_reply is None
        assert [(h.note, h.revision_round) for h in updated.feedback_history] == [("curlier hair", 1)]

        store.update_character(mom.id, feedback_notes="now shorter", is_resolved=False)
        await service.send_characters(project.id)

        rounds = [h.revision_round for h in store.get_character(mom.id).feedback_history]
        assert rounds == [1, 2]

    @pytest.mark.asyncio
    async def test_send_illustrations(self, store, service, project, pages):
        store.transition_status(project.id, "character_review", "characters_approved")

        outcome = await service.send_illustrations(project.id)

        assert outcome.status == ProjectStatus.SKETCHES_REVIEW
        assert store.get_project(project.id).illustration_send_count == 1

    def test_feedback_during_review_is_only_stored(self, store, service, project, mom):
        outcome = service.record_character_feedback(project.id, mom.id, "bigger smile")

        assert outcome.written is False
        assert store.get_project_status(project.id) == "character_review"
        assert store.get_character(mom.id).has_unresolved_feedback

    def test_feedback_on_generated_material_requests_revision(self, store, service, project, mom):
        store.transition_status(project.id, "character_review", "character_generation_complete")

        outcome = service.record_character_feedback(project.id, mom.id, "bigger smile")

        assert outcome.status == ProjectStatus.CHARACTER_REVISION_NEEDED

    def test_page_feedback_on_sketches(self, store, service, project, pages):
        store.transition_status(project.id, "character_review", "sketches_review")

        outcome = service.record_page_feedback(project.id, pages[1].id, "more sky")

        assert outcome.status == ProjectStatus.SKETCHES_REVISION
        assert store.get_page(pages[1].id).feedback_notes == "more sky"

    def test_lost_status_race_stores_no_note(self, store, service, project, pages):
        store.transition_status(project.id, "character_review", "sketches_review")

        with patch.object(store, "transition_status", return_value=False):
            with pytest.raises(ConflictError):
                service.record_page_feedback(project.id, pages[1].id, "more sky")

        assert store.get_page(pages[1].id).feedback_notes is None
        assert store.get_project_status(project.id) == "sketches_review"

    def test_empty_feedback_rejected(self, service, project, mom):
        with pytest.raises(ValidationError):
            service.record_character_feedback(project.id, mom.id, "   ")


class TestApproval:
    @pytest.mark.asyncio
    async def test_approve_characters(self, store, service, project, mom):
        outcome = await service.approve_characters(project.id)
        assert outcome.status == ProjectStatus.CHARACTERS_APPROVED

        again = await service.approve_characters(project.id)
        assert again.written is False
        assert store.get_project_status(project.id) == "characters_approved"

    @pytest.mark.asyncio
    async def test_unresolved_feedback_blocks_approval(self, store, service, project, mom):
        store.update_character(mom.id, feedback_notes="fix the ears", is_resolved=False)

        with pytest.raises(ValidationError):
            await service.approve_characters(project.id)

        assert store.get_project_status(project.id) == "character_review"

    @pytest.mark.asyncio
    async def test_approve_illustrations_from_legacy_status(self, store, service):
        store.create_project(Project(id="legacy", status=ProjectStatus.TRIAL_REVIEW))

        outcome = await service.approve_illustrations("legacy")

        assert outcome.status == ProjectStatus.ILLUSTRATION_APPROVED
        assert service.complete_project("legacy").status == ProjectStatus.COMPLETED

    def test_complete_requires_approval(self, service, project):
        with pytest.raises(InvalidTransitionError):
            service.complete_project(project.id)

    def test_stale_write_conflicts(self, service, project):
        with pytest.raises(ConflictError):
            service._apply(project.id, CustomerApproved(Phase.CHARACTER), observed="character_revision_needed")


class TestIllustrationPhase:
    @pytest.mark.asyncio
    async def test_start_sketches(self, store, service, project, main_character, pages):
        store.transition_status(project.id, "character_review", "characters_approved")

        dispatch = service.start_sketches(project.id)

        assert dispatch.started is True
        assert store.get_project_status(project.id) == "sketches_generating"
        await dispatch.task
        await service.orchestrator.wait_for_idle()

    def test_sketches_rejected_during_character_phase(self, service, project, pages):
        with pytest.raises(InvalidTransitionError):
            service.start_sketches(project.id)

    def test_completed_sketches_are_not_restarted(self, store, service, project, pages):
        store.transition_status(project.id, "character_review", "sketches_generation_complete")

        with pytest.raises(InvalidTransitionError):
            service.start_sketches(project.id)

    @pytest.mark.asyncio
    async def test_completed_sketches_can_be_sent(self, store, service, project, pages):
        store.transition_status(project.id, "character_review", "sketches_generation_complete")

        outcome = await service.send_illustrations(project.id)

        assert outcome.status == ProjectStatus.SKETCHES_REVIEW

    @pytest.mark.asyncio
    async def test_regeneration_after_send_marks_revision(self, store, service, project, pages, pipeline):
        store.transition_status(project.id, "character_review", "sketches_review", inc={"illustration_send_count": 1})

        await service.regenerate_page(project.id, pages[0].id)

        pipeline.generate_illustration.assert_awaited_once()
        assert store.get_project_status(project.id) == "sketches_revision"

    @pytest.mark.asyncio
    async def test_pending_regeneration_leaves_status(self, store, service, project, pages, pipeline):
        store.transition_status(project.id, "character_review", "sketches_review", inc={"illustration_send_count": 1})
        pipeline.generate_illustration.return_value = _artifact(pending_confirmation=True)

        await service.regenerate_page(project.id, pages[0].id)

        assert store.get_project_status(project.id) == "sketches_review"

    @pytest.mark.asyncio
    async def test_regeneration_rejected_while_generating(self, store, service, project, pages, pipeline):
        store.transition_status(project.id, "character_review", "sketches_generating")

        with pytest.raises(InvalidTransitionError):
            await service.regenerate_page(project.id, pages[0].id)

        pipeline.generate_illustration.assert_not_called()


class TestConfirmRegeneration:
    @pytest_asyncio.fixture
    async def versions(self, store, storage, project, pages):
        store.transition_status(project.id, "character_review", "sketches_review")
        original = await storage.put("project-1/illustrations/page_1-original.png", b"1")
        current = await storage.put("project-1/illustrations/page_1-current.png", b"2")
        pending = await storage.put("project-1/illustrations/page_1-pending.png", b"3")
        store.set_page_illustration(pages[0].id, original)
        store.set_page_illustration(pages[0].id, current)
        return original, current, pending

    @pytest.mark.asyncio
    async def test_keep_new_deletes_previous_but_not_original(self, store, storage, service, project, pages, versions):
        original, current, pending = versions

        page = await service.confirm_regeneration(project.id, pages[0].id, pending, "keep_new")

        assert page.illustration_url == pending
        assert page.original_illustration_url == original
        assert await storage.exists(original)
        assert not await storage.exists(current)

    @pytest.mark.asyncio
    async def test_revert_old_deletes_pending(self, store, storage, service, project, pages, versions):
        original, current, pending = versions

        page = await service.confirm_regeneration(project.id, pages[0].id, pending, RegenerationDecision.REVERT_OLD)

        assert page.illustration_url == current
        assert not await storage.exists(pending)
        assert await storage.exists(original)

    @pytest.mark.asyncio
    async def test_original_can_never_be_discarded(self, storage, service, project, pages, versions):
        original, _, _ = versions

        with pytest.raises(ValidationError):
            await service.confirm_regeneration(project.id, pages[0].id, original, "revert_old")

        assert await storage.exists(original)

    @pytest.mark.asyncio
    async def test_other_page_cannot_discard_an_original(self, store, storage, service, project, pages, versions):
        original, current, _ = versions

        with pytest.raises(ValidationError):
            await service.confirm_regeneration(project.id, pages[1].id, original, "revert_old")

        assert await storage.exists(original)
        assert store.get_page(pages[0].id).illustration_url == current

    @pytest.mark.asyncio
    async def test_artifact_of_another_page_is_refused(self, store, storage, service, project, pages, versions):
        other = await storage.put("project-1/illustrations/page_2-pending.png", b"4")

        for url in (other, "https://elsewhere.test/page_1-x.png"):
            with pytest.raises(ValidationError):
                await service.confirm_regeneration(project.id, pages[0].id, url, "keep_new")

        assert await storage.exists(other)
        assert store.get_page(pages[0].id).illustration_url == versions[1]

    @pytest.mark.asyncio
    async def test_reset_to_original(self, service, project, pages, versions):
        original, _, _ = versions

        page = service.reset_to_original(project.id, pages[0].id)

        assert page.illustration_url == original
        assert page.original_illustration_url == original

    def test_reset_without_original(self, service, project, pages):
        with pytest.raises(ValidationError):
            service.reset_to_original(project.id, pages[0].id)


class TestOverview:
    def test_legacy_status_is_resolved(self, store, service):
        store.create_project(Project(id="legacy", status=ProjectStatus.ILLUSTRATION_REVISION_NEEDED))

        overview = service.get_project_overview("legacy")

        assert overview["project"]["status"] == "illustration_revision_needed"
        assert overview["canonical_status"] == "sketches_revision"
