"""Background orchestration of batch generation runs."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Coroutine, List, Optional, Set

from bookflow.error_handling import ErrorAnalyzer
from bookflow.illustration_pipeline import StyleConsistencyPipeline
from bookflow.models import Phase, ProjectStatus
from bookflow.services.entity_store import EntityStore
from bookflow.services.notifications import NullNotifier, Notifier
from bookflow.workflow.state_machine import (
    GenerationBatchCompleted,
    next_status,
    resolve_status,
)

logger = logging.getLogger(__name__)

_PROCESSING_STATUS = {
    Phase.CHARACTER: ProjectStatus.CHARACTER_GENERATION,
    Phase.ILLUSTRATION: ProjectStatus.SKETCHES_GENERATING,
}

_FAILURE_STATUS = {
    Phase.CHARACTER: ProjectStatus.CHARACTER_GENERATION_FAILED,
    Phase.ILLUSTRATION: ProjectStatus.SKETCHES_GENERATION_FAILED,
}


@dataclass
class EntityResult:
    """Outcome of generating one character or page."""
    entity_id: str
    success: bool
    url: Optional[str] = None
    error: Optional[str] = None
    duration: float = 0.0


@dataclass
class BatchOutcome:
    """Aggregate result of one background batch."""
    project_id: str
    phase: Phase
    results: List[EntityResult] = field(default_factory=list)
    final_status: Optional[ProjectStatus] = None
    status_written: bool = False
    crashed: bool = False

    @property
    def succeeded(self) -> List[EntityResult]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> List[EntityResult]:
        return [r for r in self.results if not r.success]


@dataclass
class DispatchResult:
    """What the caller learns synchronously when asking for a batch."""
    project_id: str
    started: bool
    conflict: bool = False
    observed_status: Optional[str] = None
    entity_ids: List[str] = field(default_factory=list)
    task: Optional["asyncio.Task[BatchOutcome]"] = None


class GenerationOrchestrator:
    """Claims a project, fans out generation, and reports completion exactly once.

    Runs are detached from the caller: the dispatch methods return as soon as
    the claim succeeds and the batch task is spawned.
    """

    def __init__(
        self,
        store: EntityStore,
        pipeline: StyleConsistencyPipeline,
        notifier: Optional[Notifier] = None,
        max_concurrent_generations: int = 4,
    ):
        self.store = store
        self.pipeline = pipeline
        self.notifier = notifier or NullNotifier()
        self.max_concurrent_generations = max_concurrent_generations
        self._tasks: Set[asyncio.Task] = set()
        self._semaphore: Optional[asyncio.Semaphore] = None

    # ------------------------------------------------------------------
    # Task bookkeeping
    # ------------------------------------------------------------------

    @property
    def semaphore(self) -> asyncio.Semaphore:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrent_generations)
        return self._semaphore

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def active_task_count(self) -> int:
        return len(self._tasks)

    async def wait_for_idle(self) -> None:
        """Wait until every spawned task, including chained ones, has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _notify(self, text: str, **fields: Any) -> None:
        self._spawn(self.notifier.notify(text, **fields), name="notify")

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _claim(self, project_id: str, expected_status: str, phase: Phase) -> bool:
        return self.store.transition_status(project_id, expected_status, _PROCESSING_STATUS[phase])

    def dispatch_characters(
        self,
        project_id: str,
        expected_status: str,
        character_ids: Optional[List[str]] = None,
    ) -> DispatchResult:
        """Claim ``expected_status`` -> character_generation and spawn the batch.

        Without explicit ids, every non-main character lacking an image is
        generated.
        """
        if character_ids is None:
            character_ids = [
                c.id for c in self.store.list_characters(project_id, include_main=False) if not c.image_url
            ]

        if not self._claim(project_id, expected_status, Phase.CHARACTER):
            return DispatchResult(project_id, started=False, conflict=True, observed_status=expected_status)

        task = self._spawn(
            self._run_character_batch(project_id, list(character_ids)),
            name=f"characters:{project_id}",
        )
        return DispatchResult(
            project_id, started=True, observed_status=expected_status, entity_ids=list(character_ids), task=task
        )

    def dispatch_illustrations(
        self,
        project_id: str,
        expected_status: str,
        page_ids: Optional[List[str]] = None,
    ) -> DispatchResult:
        """Claim ``expected_status`` -> sketches_generating and spawn the batch."""
        pages = self.store.list_pages(project_id)
        if page_ids is not None:
            wanted = set(page_ids)
            pages = [p for p in pages if p.id in wanted]

        if not self._claim(project_id, expected_status, Phase.ILLUSTRATION):
            return DispatchResult(project_id, started=False, conflict=True, observed_status=expected_status)

        ordered = [p.id for p in sorted(pages, key=lambda p: p.page_number)]
        task = self._spawn(
            self._run_illustration_batch(project_id, ordered),
            name=f"illustrations:{project_id}",
        )
        return DispatchResult(project_id, started=True, observed_status=expected_status, entity_ids=ordered, task=task)

    # ------------------------------------------------------------------
    # Per-entity work
    # ------------------------------------------------------------------

    async def _generate_character(self, project_id: str, character_id: str) -> EntityResult:
        start_time = time.time()
        async with self.semaphore:
            try:
                artifact = await self.pipeline.generate_character_image(project_id, character_id)
            except Exception as exc:
                category = ErrorAnalyzer.categorize_error(exc)
                logger.warning(f"Character {character_id} generation failed ({category.value}): {exc}")
                self.store.update_character(character_id, generation_error=str(exc))
                return EntityResult(character_id, False, error=str(exc), duration=time.time() - start_time)
        return EntityResult(character_id, True, url=artifact.url, duration=time.time() - start_time)

    async def _generate_page(self, project_id: str, page_id: str) -> EntityResult:
        start_time = time.time()
        async with self.semaphore:
            try:
                artifact = await self.pipeline.generate_illustration(project_id, page_id)
            except Exception as exc:
                category = ErrorAnalyzer.categorize_error(exc)
                logger.warning(f"Page {page_id} generation failed ({category.value}): {exc}")
                self.store.update_page(page_id, generation_error=str(exc))
                return EntityResult(page_id, False, error=str(exc), duration=time.time() - start_time)
        return EntityResult(page_id, True, url=artifact.url, duration=time.time() - start_time)

    async def _run_sketch(self, kind: str, entity_id: str) -> bool:
        try:
            if kind == "character":
                await self.pipeline.generate_character_sketch(entity_id)
            else:
                await self.pipeline.generate_page_sketch(entity_id)
        except Exception as exc:
            logger.error(f"Sketch generation failed for {kind} {entity_id}: {exc}", exc_info=True)
            return False
        logger.info(f"Sketch generated for {kind} {entity_id}")
        return True

    def chain_sketch(self, kind: str, entity_id: str) -> asyncio.Task:
        """Spawn one detached sketch job; it can be re-requested on its own."""
        if kind not in {"character", "page"}:
            raise ValueError(f"Unknown sketch kind: {kind}")
        return self._spawn(self._run_sketch(kind, entity_id), name=f"sketch:{kind}:{entity_id}")

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def _run_character_batch(self, project_id: str, character_ids: List[str]) -> BatchOutcome:
        outcome = BatchOutcome(project_id, Phase.CHARACTER)
        try:
            outcome.results = list(await asyncio.gather(
                *(self._generate_character(project_id, cid) for cid in character_ids)
            ))
            for result in outcome.succeeded:
                self.chain_sketch("character", result.entity_id)
            await self._complete(outcome)
        except Exception:
            logger.error(f"Character generation batch crashed for project {project_id}", exc_info=True)
            outcome.crashed = True
            self._fail(outcome)
        return outcome

    async def _run_illustration_batch(self, project_id: str, page_ids: List[str]) -> BatchOutcome:
        outcome = BatchOutcome(project_id, Phase.ILLUSTRATION)
        try:
            if page_ids:
                # The first page becomes the style anchor for every later page
                first = await self._generate_page(project_id, page_ids[0])
                rest = await asyncio.gather(*(self._generate_page(project_id, pid) for pid in page_ids[1:]))
                outcome.results = [first, *rest]
            for result in outcome.succeeded:
                self.chain_sketch("page", result.entity_id)
            await self._complete(outcome)
        except Exception:
            logger.error(f"Illustration batch crashed for project {project_id}", exc_info=True)
            outcome.crashed = True
            self._fail(outcome)
        return outcome

    async def _complete(self, outcome: BatchOutcome) -> None:
        """Write the aggregate status, unless the project has moved on."""
        processing = _PROCESSING_STATUS[outcome.phase]
        current = self.store.get_project_status(outcome.project_id)
        if resolve_status(current) != processing:
            logger.info(
                f"Project {outcome.project_id} moved to {current} during generation; "
                f"leaving status untouched"
            )
            return

        project = self.store.get_project(outcome.project_id)
        send_count = (
            project.character_send_count if outcome.phase == Phase.CHARACTER else project.illustration_send_count
        )
        event = GenerationBatchCompleted(
            phase=outcome.phase,
            succeeded=len(outcome.succeeded),
            failed=len(outcome.failed),
            send_count=send_count,
        )
        new_status = next_status(current, event)
        outcome.final_status = new_status
        outcome.status_written = self.store.transition_status(outcome.project_id, current, new_status)

        summary = f"{len(outcome.succeeded)} succeeded, {len(outcome.failed)} failed"
        if outcome.failed:
            logger.error(
                f"{outcome.phase.value} batch for project {outcome.project_id} needs attention: {summary}; "
                + "; ".join(f"{r.entity_id}: {r.error}" for r in outcome.failed)
            )
            self._notify(
                f"Generation failed for project {project.book_title or outcome.project_id}",
                phase=outcome.phase.value,
                result=summary,
            )
        else:
            logger.info(f"{outcome.phase.value} batch for project {outcome.project_id} finished: {summary}")
            self._notify(
                f"Generation finished for project {project.book_title or outcome.project_id}",
                phase=outcome.phase.value,
                result=summary,
            )

    def _fail(self, outcome: BatchOutcome) -> None:
        failure = _FAILURE_STATUS[outcome.phase]
        try:
            current = self.store.get_project_status(outcome.project_id)
            if resolve_status(current) != _PROCESSING_STATUS[outcome.phase]:
                return
            outcome.final_status = failure
            outcome.status_written = self.store.transition_status(outcome.project_id, current, failure)
        except Exception:
            logger.error(f"Could not record failure status for project {outcome.project_id}", exc_info=True)
