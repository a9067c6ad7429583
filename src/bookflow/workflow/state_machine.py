"""Project status transitions.

The project ``status`` field is shared by the character phase and the
illustration phase. :func:`next_status` is a pure function of the current
status and an event; it never reads the store. Legacy statuses from the
older trial-page workflow are resolved once, here, through
:data:`LEGACY_ALIASES` and are never produced as output.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet, Tuple, Type

from ..error_handling import InvalidTransitionError, ValidationError
from ..models import Phase, ProjectStatus

S = ProjectStatus

LEGACY_ALIASES: Dict[ProjectStatus, ProjectStatus] = {
    S.TRIAL_REVIEW: S.SKETCHES_REVIEW,
    S.TRIAL_REVISION: S.SKETCHES_REVISION,
    S.TRIAL_APPROVED: S.CHARACTERS_APPROVED,
    S.ILLUSTRATIONS_GENERATING: S.SKETCHES_GENERATING,
    S.ILLUSTRATION_REVIEW: S.SKETCHES_REVIEW,
    S.ILLUSTRATION_REVISION_NEEDED: S.SKETCHES_REVISION,
}

CHARACTER_MODE_STATUSES: FrozenSet[ProjectStatus] = frozenset({
    S.CHARACTER_REVIEW,
    S.CHARACTER_GENERATION,
    S.CHARACTER_GENERATION_COMPLETE,
    S.CHARACTER_GENERATION_FAILED,
    S.CHARACTER_REVISION_NEEDED,
    S.CHARACTERS_REGENERATED,
})

ILLUSTRATION_MODE_STATUSES: FrozenSet[ProjectStatus] = frozenset({
    S.CHARACTERS_APPROVED,
    S.SKETCHES_GENERATING,
    S.SKETCHES_GENERATION_COMPLETE,
    S.SKETCHES_GENERATION_FAILED,
    S.SKETCHES_REVIEW,
    S.SKETCHES_REVISION,
    S.ILLUSTRATION_APPROVED,
})


def resolve_status(status: ProjectStatus | str) -> ProjectStatus:
    """Map a stored status (possibly legacy) to its canonical member."""
    try:
        member = ProjectStatus(status)
    except ValueError as exc:
        raise ValidationError(f"Unknown project status: {status!r}") from exc
    return LEGACY_ALIASES.get(member, member)


def is_legacy_status(status: ProjectStatus | str) -> bool:
    return ProjectStatus(status) in LEGACY_ALIASES


def phase_of(status: ProjectStatus | str) -> Phase | None:
    canonical = resolve_status(status)
    if canonical in CHARACTER_MODE_STATUSES:
        return Phase.CHARACTER
    if canonical in ILLUSTRATION_MODE_STATUSES:
        return Phase.ILLUSTRATION
    return None


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WorkflowEvent:
    """Base class for events fed to :func:`next_status`."""

    @property
    def name(self) -> str:
        return type(self).__name__

    @property
    def key(self) -> Tuple[Type["WorkflowEvent"], Phase | None]:
        return (type(self), getattr(self, "phase", None))


@dataclass(frozen=True)
class IntakeCompleted(WorkflowEvent):
    """Manuscript and main character are in; characters are ready for review."""


@dataclass(frozen=True)
class CharacterReviewSubmitted(WorkflowEvent):
    """The customer submitted the character form."""

    characters_missing_images: bool
    has_unresolved_feedback: bool


@dataclass(frozen=True)
class GenerationStarted(WorkflowEvent):
    phase: Phase


@dataclass(frozen=True)
class GenerationBatchCompleted(WorkflowEvent):
    phase: Phase
    succeeded: int
    failed: int
    send_count: int

    def __post_init__(self):
        if self.succeeded < 0 or self.failed < 0:
            raise ValidationError("Batch counts cannot be negative")


@dataclass(frozen=True)
class MaterialSent(WorkflowEvent):
    """The admin pushed characters or sketches to the customer."""

    phase: Phase


@dataclass(frozen=True)
class CustomerApproved(WorkflowEvent):
    phase: Phase


@dataclass(frozen=True)
class RevisionRequested(WorkflowEvent):
    """Feedback arrived on material that has already been generated."""

    phase: Phase


@dataclass(frozen=True)
class ArtifactRegenerated(WorkflowEvent):
    """A single character or page artifact was regenerated by the admin."""

    phase: Phase
    send_count: int


@dataclass(frozen=True)
class ProjectCompleted(WorkflowEvent):
    """Final files delivered."""


C, I = Phase.CHARACTER, Phase.ILLUSTRATION

ACCEPTED_STATUSES: Dict[Tuple[Type[WorkflowEvent], Phase | None], FrozenSet[ProjectStatus]] = {
    (IntakeCompleted, None): frozenset({S.DRAFT, S.AWAITING_CUSTOMER_INPUT}),
    (CharacterReviewSubmitted, None): frozenset({S.CHARACTER_REVIEW, S.CHARACTER_REVISION_NEEDED}),
    (GenerationStarted, C): frozenset({
        S.CHARACTER_REVIEW,
        S.CHARACTER_REVISION_NEEDED,
        S.CHARACTER_GENERATION_COMPLETE,
        S.CHARACTER_GENERATION_FAILED,
        S.CHARACTERS_REGENERATED,
    }),
    (GenerationStarted, I): frozenset({
        S.CHARACTERS_APPROVED,
        S.SKETCHES_REVISION,
        S.SKETCHES_GENERATION_FAILED,
    }),
    (GenerationBatchCompleted, C): frozenset({S.CHARACTER_GENERATION}),
    (GenerationBatchCompleted, I): frozenset({S.SKETCHES_GENERATING}),
    (MaterialSent, C): frozenset({
        S.CHARACTER_REVIEW,
        S.CHARACTER_GENERATION_COMPLETE,
        S.CHARACTERS_REGENERATED,
        S.CHARACTER_REVISION_NEEDED,
    }),
    (MaterialSent, I): frozenset({
        S.CHARACTERS_APPROVED,
        S.SKETCHES_GENERATION_COMPLETE,
        S.SKETCHES_REVIEW,
        S.SKETCHES_REVISION,
    }),
    (CustomerApproved, C): frozenset({
        S.CHARACTER_REVIEW,
        S.CHARACTER_REVISION_NEEDED,
        S.CHARACTER_GENERATION_COMPLETE,
        S.CHARACTERS_REGENERATED,
        S.CHARACTERS_APPROVED,
    }),
    (CustomerApproved, I): frozenset({S.SKETCHES_REVIEW, S.SKETCHES_REVISION, S.ILLUSTRATION_APPROVED}),
    (RevisionRequested, C): frozenset({
        S.CHARACTER_GENERATION_COMPLETE,
        S.CHARACTERS_REGENERATED,
        S.CHARACTER_REVISION_NEEDED,
    }),
    (RevisionRequested, I): frozenset({S.SKETCHES_GENERATION_COMPLETE, S.SKETCHES_REVIEW, S.SKETCHES_REVISION}),
    (ArtifactRegenerated, C): frozenset({
        S.CHARACTER_REVIEW,
        S.CHARACTER_GENERATION_COMPLETE,
        S.CHARACTER_GENERATION_FAILED,
        S.CHARACTERS_REGENERATED,
        S.CHARACTER_REVISION_NEEDED,
    }),
    (ArtifactRegenerated, I): ILLUSTRATION_MODE_STATUSES - {S.SKETCHES_GENERATING},
    (ProjectCompleted, None): frozenset({S.ILLUSTRATION_APPROVED}),
}


def accepts(status: ProjectStatus | str, event: WorkflowEvent) -> bool:
    return resolve_status(status) in ACCEPTED_STATUSES.get(event.key, frozenset())


def next_status(status: ProjectStatus | str, event: WorkflowEvent) -> ProjectStatus:
    """Compute the status that ``event`` produces from ``status``.

    Raises InvalidTransitionError when the event is not accepted in the
    current status. The result may equal the current status, meaning no
    write is required.
    """

    current = resolve_status(status)
    if current not in ACCEPTED_STATUSES.get(event.key, frozenset()):
        raise InvalidTransitionError(ProjectStatus(status).value, event.name)

    if isinstance(event, IntakeCompleted):
        return S.CHARACTER_REVIEW

    if isinstance(event, CharacterReviewSubmitted):
        # Order matters: pending generation wins over feedback
        if event.characters_missing_images:
            return S.CHARACTER_GENERATION
        if event.has_unresolved_feedback:
            return S.CHARACTER_REVISION_NEEDED
        return S.CHARACTERS_APPROVED

    if isinstance(event, GenerationStarted):
        return S.CHARACTER_GENERATION if event.phase == C else S.SKETCHES_GENERATING

    if isinstance(event, GenerationBatchCompleted):
        return _batch_outcome(event)

    if isinstance(event, MaterialSent):
        return S.CHARACTER_REVIEW if event.phase == C else S.SKETCHES_REVIEW

    if isinstance(event, CustomerApproved):
        return S.CHARACTERS_APPROVED if event.phase == C else S.ILLUSTRATION_APPROVED

    if isinstance(event, RevisionRequested):
        return S.CHARACTER_REVISION_NEEDED if event.phase == C else S.SKETCHES_REVISION

    if isinstance(event, ArtifactRegenerated):
        if event.send_count > 0:
            if event.phase == C and current == S.CHARACTER_GENERATION_COMPLETE:
                return S.CHARACTERS_REGENERATED
            if event.phase == I and current == S.SKETCHES_REVIEW:
                return S.SKETCHES_REVISION
        return current

    if isinstance(event, ProjectCompleted):
        return S.COMPLETED

    raise InvalidTransitionError(ProjectStatus(status).value, event.name)


def _batch_outcome(event: GenerationBatchCompleted) -> ProjectStatus:
    if event.phase == C:
        if event.failed:
            return S.CHARACTER_GENERATION_FAILED
        return S.CHARACTER_GENERATION_COMPLETE if event.send_count == 0 else S.CHARACTERS_REGENERATED

    if event.failed:
        return S.SKETCHES_GENERATION_FAILED
    # First pass waits for the admin to send; later passes are revisions
    return S.SKETCHES_GENERATION_COMPLETE if event.send_count == 0 else S.SKETCHES_REVISION
