"""Unit tests for the MongoDB-backed entity store."""

import pytest

from bookflow.error_handling import NotFoundError, ValidationError
from bookflow.models import Character, Page, Project, ProjectStatus


class TestProjects:
    def test_create_and_get(self, store, project):
        loaded = store.get_project(project.id)
        assert loaded.book_title == "Zara's Big Day"
        assert loaded.status == ProjectStatus.CHARACTER_REVIEW
        assert loaded.author_name == "Ada Lane"
        assert loaded.status_changed_at is not None

    def test_missing_project(self, store):
        with pytest.raises(NotFoundError):
            store.get_project("nope")

    def test_update_project_refuses_status(self, store, project):
        with pytest.raises(ValidationError):
            store.update_project(project.id, status="completed")

    def test_list_projects_by_status(self, store, project):
        store.create_project(Project(id="project-2", status=ProjectStatus.DRAFT))
        drafts = store.list_projects(ProjectStatus.DRAFT)
        assert [p.id for p in drafts] == ["project-2"]

    def test_increment_counter(self, store, project):
        assert store.increment_counter(project.id, "character_send_count") == 1
        assert store.increment_counter(project.id, "character_send_count") == 2
        with pytest.raises(ValidationError):
            store.increment_counter(project.id, "book_title")


class TestOptimisticLock:
    def test_exactly_one_of_two_transitions_wins(self, store, project):
        first = store.transition_status(project.id, "character_review", "character_generation")
        second = store.transition_status(project.id, "character_review", "characters_approved")

        assert first is True
        assert second is False
        assert store.get_project_status(project.id) == "character_generation"

    def test_transition_applies_extra_fields(self, store, project):
        assert store.transition_status(
            project.id,
            ProjectStatus.CHARACTER_REVIEW,
            ProjectStatus.CHARACTER_GENERATION_COMPLETE,
            inc={"character_send_count": 1},
        )
        assert store.get_project(project.id).character_send_count == 1

    def test_legacy_status_is_matched_raw(self, store):
        store.create_project(Project(id="legacy", status=ProjectStatus.TRIAL_REVIEW))
        assert store.transition_status("legacy", "sketches_review", "illustration_approved") is False
        assert store.transition_status("legacy", "trial_review", "illustration_approved") is True


class TestCharacters:
    def test_only_one_main_character(self, store, main_character):
        with pytest.raises(ValidationError):
            store.create_character(Character(project_id=main_character.project_id, name="Other", is_main=True))

    def test_name_or_role_required(self, project):
        with pytest.raises(ValueError):
            Character(project_id=project.id, name=" ", role="")

    def test_main_character_cannot_be_deleted(self, store, main_character):
        with pytest.raises(ValidationError):
            store.delete_character(main_character.id)

    def test_delete_removes_page_links(self, store, project, pages):
        dog = store.create_character(Character(project_id=project.id, name="the dog"))
        store.set_page_character_ids(pages[1].id, [dog.id])

        store.delete_character(dog.id)

        assert store.get_page(pages[1].id).character_ids == []

    def test_list_characters_puts_main_first(self, store, project, main_character):
        store.create_character(Character(project_id=project.id, name="Mom"))
        names = [c.name for c in store.list_characters(project.id)]
        assert names == ["Zara", "Mom"]
        assert [c.name for c in store.list_characters(project.id, include_main=False)] == ["Mom"]


class TestPages:
    def test_pages_must_be_contiguous(self, store, project):
        with pytest.raises(ValidationError):
            store.create_pages(project.id, [
                Page(project_id=project.id, page_number=1),
                Page(project_id=project.id, page_number=3),
            ])

    def test_pages_created_once(self, store, project, pages):
        with pytest.raises(ValidationError):
            store.create_pages(project.id, [Page(project_id=project.id, page_number=1)])

    def test_original_illustration_survives_regenerations(self, store, pages):
        page = pages[0]
        store.set_page_illustration(page.id, "/storage/p1-v1.png", "first")
        for version in range(2, 7):
            updated = store.set_page_illustration(page.id, f"/storage/p1-v{version}.png", "again")

        assert updated.illustration_url == "/storage/p1-v6.png"
        assert updated.original_illustration_url == "/storage/p1-v1.png"

    def test_original_is_not_writable_through_update(self, store, pages):
        with pytest.raises(ValidationError):
            store.update_page(pages[0].id, original_illustration_url="/storage/other.png")

    def test_set_illustration_clears_error(self, store, pages):
        store.update_page(pages[0].id, generation_error="Image generation returned no image (safety)")
        updated = store.set_page_illustration(pages[0].id, "/storage/p1.png")
        assert updated.generation_error is None

    def test_get_page_by_number(self, store, project, pages):
        assert store.get_page_by_number(project.id, 2).id == pages[1].id
        assert store.get_page_by_number(project.id, 9) is None
        assert store.count_pages(project.id) == 3
