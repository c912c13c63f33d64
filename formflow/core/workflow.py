"""Workflow / State Machine for form submissions.

A workflow definition is data: ordered stages (who may act, which actions are
offered) and transitions keyed by (from stage, action). This module turns one
requested action into the submission's next (stage, status) pair:

1) authorize the action against the current stage
2) pick the first matching transition in definition order
3) append exactly one history entry
4) derive the status from the action alone
5) write the result back with a revision check

Transition conditions are carried but never evaluated, and approved/rejected
submissions still accept actions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable

from formflow.core.errors import ForbiddenError, InvalidStateError, NotFoundError
from formflow.core.locks import KeyedLock
from formflow.core.models import (
    HistoryEntry,
    Stage,
    Submission,
    SubmissionPatch,
    SubmissionStatus,
    Transition,
    User,
    WorkflowDefinition,
    WorkflowState,
    utcnow,
)
from formflow.repositories.base import SubmissionRepository, UserRepository

logger = logging.getLogger("formflow.workflow")


Action = str  # "submit" | "approve" | "reject" | any custom stage action


@dataclass(frozen=True, slots=True)
class ActionResult:
    current_stage: str
    status: SubmissionStatus
    history: tuple[HistoryEntry, ...]

    def to_json(self) -> dict[str, object]:
        return {
            "currentStage": self.current_stage,
            "status": self.status.value,
            "history": [h.to_json() for h in self.history],
        }


# ---- pure rules ----


def authorize_stage(stage: Stage, action: Action, user_id: str, user_role: str | None) -> bool:
    """Whether ``user_id`` may perform ``action`` at ``stage``.

    An explicit user list wins over the role; a stage with neither is open.
    """
    if action not in stage.actions:
        return False
    if stage.users:
        return str(user_id) in stage.users
    if stage.role:
        role = getattr(user_role, "value", user_role)
        return role == stage.role
    return True


def find_transition(definition: WorkflowDefinition, current_stage: str, action: Action) -> Transition | None:
    for t in definition.transitions:
        if t.matches(current_stage, action):
            if t.condition is not None:
                # TODO: evaluate transition conditions once their format is agreed on
                logger.debug(
                    "Transition %s -> %s carries a condition; treating it as satisfied",
                    t.from_stage, t.to_stage,
                )
            return t
    return None


def derive_status(action: Action, next_stage: str | None, current: SubmissionStatus) -> SubmissionStatus:
    if action == "approve":
        return SubmissionStatus.IN_REVIEW if next_stage else SubmissionStatus.APPROVED
    if action == "reject":
        return SubmissionStatus.REJECTED
    if action == "submit":
        return SubmissionStatus.SUBMITTED
    return current


def current_stage_id(definition: WorkflowDefinition, submission: Submission) -> str:
    state = submission.workflow_state
    if state is not None and state.current_stage:
        return state.current_stage
    return definition.first_stage_id


def resolve_stage(definition: WorkflowDefinition, submission: Submission) -> Stage:
    current = current_stage_id(definition, submission)
    stage = definition.stage(current)
    if stage is None:
        raise InvalidStateError(
            f"Submission {submission.id} is at stage {current!r}, "
            f"which workflow {definition.id} does not define"
        )
    return stage


def available_actions(definition: WorkflowDefinition, submission: Submission, user: User) -> list[Action]:
    """Actions ``user`` could execute on ``submission`` right now."""
    stage = resolve_stage(definition, submission)
    return [a for a in stage.actions if authorize_stage(stage, a, user.id, user.role)]


# ---- engine ----


class WorkflowEngine:
    """Executes workflow actions against stored submissions.

    Calls for the same submission are serialized in-process, and the final save
    only succeeds if the submission's revision is still the one that was read,
    so concurrent writers from other processes surface as ConcurrentUpdateError
    instead of silently dropping a history entry.
    """

    def __init__(
        self,
        submissions: SubmissionRepository,
        users: UserRepository,
        *,
        locks: KeyedLock | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._submissions = submissions
        self._users = users
        self._locks = locks or KeyedLock()
        self._clock = clock

    def _user_role(self, user_id: str) -> str | None:
        try:
            return self._users.load(user_id).role
        except NotFoundError:
            return None

    def _authorize(self, stage: Stage, action: Action, user_id: str) -> bool:
        role = None
        # only role-gated stages need the user record
        if action in stage.actions and not stage.users and stage.role:
            role = self._user_role(user_id)
        return authorize_stage(stage, action, user_id, role)

    def execute_action(
        self,
        definition: WorkflowDefinition,
        submission_id: str,
        action: Action,
        user_id: str,
        comments: str = "",
    ) -> ActionResult:
        with self._locks.hold(str(submission_id)):
            return self._execute(definition, str(submission_id), action, str(user_id), comments or "")

    def _execute(
        self,
        definition: WorkflowDefinition,
        submission_id: str,
        action: Action,
        user_id: str,
        comments: str,
    ) -> ActionResult:
        submission = self._submissions.load(submission_id)

        stage = resolve_stage(definition, submission)
        current = stage.id

        if not self._authorize(stage, action, user_id):
            logger.info(
                "Denied action %s at stage %s on submission %s for user %s",
                action, current, submission_id, user_id,
            )
            raise ForbiddenError("User does not have permission to perform this action")

        transition = find_transition(definition, current, action)
        next_stage = transition.to_stage if transition is not None else None

        state = submission.workflow_state or WorkflowState()
        state = state.append(
            HistoryEntry(
                stage=current,
                action=action,
                user=user_id,
                timestamp=self._clock(),
                comments=comments,
            )
        )
        state = replace(state, current_stage=next_stage or current)

        status = derive_status(action, next_stage, submission.status)

        self._submissions.save(
            submission_id,
            SubmissionPatch(workflow_state=state, status=status),
            expected_revision=submission.revision,
        )
        logger.info(
            "Workflow action %s on submission %s by user %s: %s -> %s (%s)",
            action, submission_id, user_id, current, state.current_stage, status.value,
        )
        return ActionResult(current_stage=state.current_stage, status=status, history=state.history)

    def history(self, submission_id: str) -> tuple[HistoryEntry, ...]:
        submission = self._submissions.load(str(submission_id))
        if submission.workflow_state is None:
            return ()
        return submission.workflow_state.history
