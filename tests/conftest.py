"""Test configuration for path setup and shared fixtures.

Ensures the `src` directory is on sys.path so the `bookflow` package
can be imported without installing the project in editable mode.
"""

import sys
from pathlib import Path

import mongomock
import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from bookflow.db_config import ensure_indexes  # noqa: E402
from bookflow.models import Character, Page, Project, ProjectStatus  # noqa: E402
from bookflow.services.entity_store import EntityStore  # noqa: E402
from bookflow.services.storage import LocalObjectStorage  # noqa: E402


STORY_PAGES = [
    "Zara woke up early and ran to find Mom in the kitchen.",
    "Zara and the dog raced across the garden.",
    "Zara's mom laughed as Zara hugged her goodnight.",
]


@pytest.fixture
def mongo_db():
    client = mongomock.MongoClient()
    db = client["bookflow_test"]
    ensure_indexes(db)
    yield db
    client.close()


@pytest.fixture
def store(mongo_db):
    return EntityStore(mongo_db)


@pytest.fixture
def storage(tmp_path):
    return LocalObjectStorage(tmp_path / "storage", "/storage")


@pytest.fixture
def project(store):
    return store.create_project(Project(
        id="project-1",
        book_title="Zara's Big Day",
        author_firstname="Ada",
        author_lastname="Lane",
        status=ProjectStatus.CHARACTER_REVIEW,
    ))


@pytest.fixture
def main_character(store, project):
    return store.create_character(Character(
        project_id=project.id,
        name="Zara",
        role="curious explorer girl",
        is_main=True,
        image_url="/storage/project-1/main/zara.png",
    ))


@pytest.fixture
def pages(store, project):
    return store.create_pages(project.id, [
        Page(project_id=project.id, page_number=number, story_text=text)
        for number, text in enumerate(STORY_PAGES, start=1)
    ])
