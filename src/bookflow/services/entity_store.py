"""Persistence for projects, characters and pages stored in MongoDB."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from pydantic import BaseModel
from pymongo import ASCENDING, ReturnDocument
from pymongo.collection import Collection
from pymongo.database import Database

from ..db_models import CHARACTERS_COLLECTION, PAGES_COLLECTION, PROJECTS_COLLECTION, now_utc
from ..error_handling import NotFoundError, ValidationError
from ..models import Character, Page, Project, ProjectStatus

logger = logging.getLogger(__name__)

_SEND_COUNTERS = {"character_send_count", "illustration_send_count"}


def _status_value(status: ProjectStatus | str) -> str:
    return status.value if isinstance(status, ProjectStatus) else str(status)


class EntityStore:
    """Reads and writes the workflow entities.

    Every status write goes through :meth:`transition_status`, which only
    succeeds when the stored status still equals the caller's expectation.
    """

    def __init__(self, db: Database):
        self.db: Database = db
        self.projects: Collection = self.db[PROJECTS_COLLECTION]
        self.characters: Collection = self.db[CHARACTERS_COLLECTION]
        self.pages: Collection = self.db[PAGES_COLLECTION]

    @staticmethod
    def _to_record(document: Dict[str, Any]) -> Dict[str, Any]:
        """Convert a Mongo document into an application-friendly record."""

        record = dict(document)
        record["id"] = str(record.pop("_id"))
        return record

    @staticmethod
    def _to_document(model: BaseModel) -> Dict[str, Any]:
        document = model.model_dump(mode="json", exclude={"id"})
        document["created_at"] = now_utc()
        return document

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def create_project(self, project: Project) -> Project:
        document = self._to_document(project)
        document["_id"] = project.id or str(uuid4())
        document["status_changed_at"] = now_utc()
        self.projects.insert_one(document)
        return self.get_project(document["_id"])

    def get_project(self, project_id: str) -> Project:
        document = self.projects.find_one({"_id": project_id})
        if document is None:
            raise NotFoundError(f"Project {project_id} not found")
        return Project.model_validate(self._to_record(document))

    def get_project_status(self, project_id: str) -> str:
        """Read the raw stored status, bypassing any cached project."""
        document = self.projects.find_one({"_id": project_id}, {"status": 1})
        if document is None:
            raise NotFoundError(f"Project {project_id} not found")
        return document["status"]

    def list_projects(self, status: ProjectStatus | str | None = None) -> List[Project]:
        query: Dict[str, Any] = {}
        if status is not None:
            query["status"] = _status_value(status)
        cursor = self.projects.find(query).sort("created_at", ASCENDING)
        return [Project.model_validate(self._to_record(doc)) for doc in cursor]

    def update_project(self, project_id: str, **fields: Any) -> None:
        if "status" in fields:
            raise ValidationError("Use transition_status to change a project status")
        result = self.projects.update_one({"_id": project_id}, {"$set": fields})
        if result.matched_count == 0:
            raise NotFoundError(f"Project {project_id} not found")

    def transition_status(
        self,
        project_id: str,
        expected: ProjectStatus | str,
        new: ProjectStatus | str,
        extra_set: Optional[Dict[str, Any]] = None,
        inc: Optional[Dict[str, int]] = None,
    ) -> bool:
        """Compare-and-set the project status.

        Returns False when the stored status no longer equals ``expected``;
        the caller lost the race and must not apply side effects.
        """

        update: Dict[str, Any] = {
            "$set": {
                **(extra_set or {}),
                "status": _status_value(new),
                "status_changed_at": now_utc(),
            }
        }
        if inc:
            update["$inc"] = inc

        result = self.projects.update_one(
            {"_id": project_id, "status": _status_value(expected)},
            update,
        )
        if result.matched_count == 0:
            logger.info(
                "Status transition %s -> %s for project %s lost to a concurrent update",
                _status_value(expected), _status_value(new), project_id,
            )
            return False
        return True

    def increment_counter(self, project_id: str, counter: str) -> int:
        if counter not in _SEND_COUNTERS:
            raise ValidationError(f"Unknown counter: {counter}")
        document = self.projects.find_one_and_update(
            {"_id": project_id},
            {"$inc": {counter: 1}},
            return_document=ReturnDocument.AFTER,
        )
        if document is None:
            raise NotFoundError(f"Project {project_id} not found")
        return int(document[counter])

    # ------------------------------------------------------------------
    # Characters
    # ------------------------------------------------------------------

    def create_character(self, character: Character) -> Character:
        if character.is_main and self.get_main_character(character.project_id) is not None:
            raise ValidationError(f"Project {character.project_id} already has a main character")
        document = self._to_document(character)
        document["_id"] = character.id or str(uuid4())
        self.characters.insert_one(document)
        return self.get_character(document["_id"])

    def create_characters(self, characters: Iterable[Character]) -> List[Character]:
        return [self.create_character(character) for character in characters]

    def get_character(self, character_id: str) -> Character:
        document = self.characters.find_one({"_id": character_id})
        if document is None:
            raise NotFoundError(f"Character {character_id} not found")
        return Character.model_validate(self._to_record(document))

    def get_main_character(self, project_id: str) -> Character | None:
        document = self.characters.find_one({"project_id": project_id, "is_main": True})
        if document is None:
            return None
        return Character.model_validate(self._to_record(document))

    def list_characters(self, project_id: str, include_main: bool = True) -> List[Character]:
        query: Dict[str, Any] = {"project_id": project_id}
        if not include_main:
            query["is_main"] = False
        cursor = self.characters.find(query).sort([("is_main", -1), ("created_at", ASCENDING)])
        return [Character.model_validate(self._to_record(doc)) for doc in cursor]

    def update_character(self, character_id: str, **fields: Any) -> None:
        result = self.characters.update_one({"_id": character_id}, {"$set": fields})
        if result.matched_count == 0:
            raise NotFoundError(f"Character {character_id} not found")

    def delete_character(self, character_id: str) -> None:
        character = self.get_character(character_id)
        if character.is_main:
            raise ValidationError("The main character cannot be deleted")
        self.characters.delete_one({"_id": character_id})
        self.pages.update_many(
            {"project_id": character.project_id},
            {"$pull": {"character_ids": character_id}},
        )

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    def create_pages(self, project_id: str, pages: List[Page]) -> List[Page]:
        numbers = sorted(page.page_number for page in pages)
        if numbers != list(range(1, len(pages) + 1)):
            raise ValidationError("Page numbers must be contiguous and start at 1")
        if self.pages.count_documents({"project_id": project_id}) > 0:
            raise ValidationError(f"Project {project_id} already has pages")

        documents = []
        for page in pages:
            if page.project_id != project_id:
                raise ValidationError("Page belongs to a different project")
            document = self._to_document(page)
            document["_id"] = page.id or str(uuid4())
            documents.append(document)
        self.pages.insert_many(documents)
        return self.list_pages(project_id)

    def get_page(self, page_id: str) -> Page:
        document = self.pages.find_one({"_id": page_id})
        if document is None:
            raise NotFoundError(f"Page {page_id} not found")
        return Page.model_validate(self._to_record(document))

    def get_page_by_number(self, project_id: str, page_number: int) -> Page | None:
        document = self.pages.find_one({"project_id": project_id, "page_number": page_number})
        if document is None:
            return None
        return Page.model_validate(self._to_record(document))

    def list_pages(self, project_id: str) -> List[Page]:
        cursor = self.pages.find({"project_id": project_id}).sort("page_number", ASCENDING)
        return [Page.model_validate(self._to_record(doc)) for doc in cursor]

    def count_pages(self, project_id: str) -> int:
        return self.pages.count_documents({"project_id": project_id})

    def update_page(self, page_id: str, **fields: Any) -> None:
        if "original_illustration_url" in fields:
            raise ValidationError("original_illustration_url is write-once")
        result = self.pages.update_one({"_id": page_id}, {"$set": fields})
        if result.matched_count == 0:
            raise NotFoundError(f"Page {page_id} not found")

    def set_page_illustration(self, page_id: str, url: str, prompt: str | None = None) -> Page:
        """Store a new current illustration; the first one also becomes the original."""

        result = self.pages.update_one(
            {"_id": page_id},
            {"$set": {"illustration_url": url, "illustration_prompt": prompt, "generation_error": None}},
        )
        if result.matched_count == 0:
            raise NotFoundError(f"Page {page_id} not found")

        # Matches only while the original is missing or null
        self.pages.update_one(
            {"_id": page_id, "original_illustration_url": None},
            {"$set": {"original_illustration_url": url}},
        )
        return self.get_page(page_id)

    def set_page_character_ids(self, page_id: str, character_ids: List[str]) -> None:
        self.update_page(page_id, character_ids=list(character_ids))
