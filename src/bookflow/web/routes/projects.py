"""API routes for project workflow operations."""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Request

from bookflow.models import RegenerationRequest
from bookflow.web.models.web_models import (
    ConfirmRegenerationRequest,
    DispatchResponse,
    FeedbackRequest,
    GenerateCharactersRequest,
    RegeneratePageRequest,
    StartSketchesRequest,
)
from bookflow.workflow.service import WorkflowService

router = APIRouter()

logger = logging.getLogger(__name__)


def get_service(request: Request) -> WorkflowService:
    return request.app.state.workflow_service


@router.get("/{project_id}")
async def get_project(project_id: str, request: Request) -> Dict[str, Any]:
    """Return the project with its characters and pages."""
    return get_service(request).get_project_overview(project_id)


@router.post("/{project_id}/extract")
async def extract_characters(project_id: str, request: Request) -> Dict[str, Any]:
    summary = await get_service(request).run_extraction(project_id)
    return {
        "project_id": project_id,
        "counts": summary.counts,
        "created": [c.display_name for c in summary.created],
        "removed_main_duplicates": summary.removed_main_duplicates,
        "removed_plural": summary.removed_plural,
        "removed_existing": summary.removed_existing,
        "main_character_appearances": summary.main_character_appearances,
    }


@router.post("/{project_id}/submit-review")
async def submit_review(project_id: str, request: Request) -> Dict[str, Any]:
    outcome = await get_service(request).submit_character_review(project_id)
    return outcome.to_dict()


@router.post("/{project_id}/generate-characters", status_code=202)
async def generate_characters(
    project_id: str, request: Request, body: GenerateCharactersRequest | None = None
) -> DispatchResponse:
    dispatch = get_service(request).generate_characters(
        project_id, body.character_ids if body else None
    )
    return DispatchResponse(project_id=project_id, started=dispatch.started, entity_ids=dispatch.entity_ids)


@router.post("/{project_id}/sketches", status_code=202)
async def start_sketches(
    project_id: str, request: Request, body: StartSketchesRequest | None = None
) -> DispatchResponse:
    dispatch = get_service(request).start_sketches(project_id, body.page_ids if body else None)
    return DispatchResponse(project_id=project_id, started=dispatch.started, entity_ids=dispatch.entity_ids)


@router.post("/{project_id}/send-characters")
async def send_characters(project_id: str, request: Request) -> Dict[str, Any]:
    return (await get_service(request).send_characters(project_id)).to_dict()


@router.post("/{project_id}/send-illustrations")
async def send_illustrations(project_id: str, request: Request) -> Dict[str, Any]:
    return (await get_service(request).send_illustrations(project_id)).to_dict()


@router.post("/{project_id}/approve-characters")
async def approve_characters(project_id: str, request: Request) -> Dict[str, Any]:
    return (await get_service(request).approve_characters(project_id)).to_dict()


@router.post("/{project_id}/approve-illustrations")
async def approve_illustrations(project_id: str, request: Request) -> Dict[str, Any]:
    return (await get_service(request).approve_illustrations(project_id)).to_dict()


@router.post("/{project_id}/complete")
async def complete_project(project_id: str, request: Request) -> Dict[str, Any]:
    return get_service(request).complete_project(project_id).to_dict()


@router.post("/{project_id}/characters/{character_id}/feedback")
async def character_feedback(
    project_id: str, character_id: str, body: FeedbackRequest, request: Request
) -> Dict[str, Any]:
    return get_service(request).record_character_feedback(project_id, character_id, body.note).to_dict()


@router.post("/{project_id}/pages/{page_id}/feedback")
async def page_feedback(project_id: str, page_id: str, body: FeedbackRequest, request: Request) -> Dict[str, Any]:
    return get_service(request).record_page_feedback(project_id, page_id, body.note).to_dict()


@router.post("/{project_id}/pages/{page_id}/regenerate")
async def regenerate_page(
    project_id: str, page_id: str, request: Request, body: RegeneratePageRequest | None = None
) -> Dict[str, Any]:
    regeneration = RegenerationRequest(**body.model_dump()) if body else None
    artifact = await get_service(request).regenerate_page(project_id, page_id, regeneration)
    return artifact.model_dump(mode="json")


@router.post("/{project_id}/pages/{page_id}/confirm")
async def confirm_regeneration(
    project_id: str, page_id: str, body: ConfirmRegenerationRequest, request: Request
) -> Dict[str, Any]:
    page = await get_service(request).confirm_regeneration(
        project_id, page_id, body.new_url, body.decision, prompt=body.prompt
    )
    return page.model_dump(mode="json")


@router.post("/{project_id}/pages/{page_id}/reset")
async def reset_page(project_id: str, page_id: str, request: Request) -> Dict[str, Any]:
    return get_service(request).reset_to_original(project_id, page_id).model_dump(mode="json")
