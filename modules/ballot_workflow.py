"""Workflow phases and transition table for the cl-hive-ballot ledger."""

from __future__ import annotations

from enum import IntEnum
from typing import Dict, Optional


class WorkflowStatus(IntEnum):
    REGISTERING_VOTERS = 0
    PROPOSALS_REGISTRATION_STARTED = 1
    PROPOSALS_REGISTRATION_ENDED = 2
    VOTING_SESSION_STARTED = 3
    VOTING_SESSION_ENDED = 4
    VOTES_TALLIED = 5

    @property
    def wire_name(self) -> str:
        return _WIRE_NAMES[self]


_WIRE_NAMES: Dict[WorkflowStatus, str] = {
    WorkflowStatus.REGISTERING_VOTERS: "RegisteringVoters",
    WorkflowStatus.PROPOSALS_REGISTRATION_STARTED: "ProposalsRegistrationStarted",
    WorkflowStatus.PROPOSALS_REGISTRATION_ENDED: "ProposalsRegistrationEnded",
    WorkflowStatus.VOTING_SESSION_STARTED: "VotingSessionStarted",
    WorkflowStatus.VOTING_SESSION_ENDED: "VotingSessionEnded",
    WorkflowStatus.VOTES_TALLIED: "VotesTallied",
}

_LABELS: Dict[WorkflowStatus, str] = {
    WorkflowStatus.REGISTERING_VOTERS: "Registering voters",
    WorkflowStatus.PROPOSALS_REGISTRATION_STARTED: "Proposals registration started",
    WorkflowStatus.PROPOSALS_REGISTRATION_ENDED: "Proposals registration ended",
    WorkflowStatus.VOTING_SESSION_STARTED: "Voting session started",
    WorkflowStatus.VOTING_SESSION_ENDED: "Voting session ended",
    WorkflowStatus.VOTES_TALLIED: "Votes tallied",
}

# Keyed by the current status. VOTES_TALLIED is terminal and has no entry.
TRANSITIONS: Dict[WorkflowStatus, WorkflowStatus] = {
    WorkflowStatus.REGISTERING_VOTERS: WorkflowStatus.PROPOSALS_REGISTRATION_STARTED,
    WorkflowStatus.PROPOSALS_REGISTRATION_STARTED: WorkflowStatus.PROPOSALS_REGISTRATION_ENDED,
    WorkflowStatus.PROPOSALS_REGISTRATION_ENDED: WorkflowStatus.VOTING_SESSION_STARTED,
    WorkflowStatus.VOTING_SESSION_STARTED: WorkflowStatus.VOTING_SESSION_ENDED,
    WorkflowStatus.VOTING_SESSION_ENDED: WorkflowStatus.VOTES_TALLIED,
}

TERMINAL_STATUS = WorkflowStatus.VOTES_TALLIED


def next_status(current: WorkflowStatus) -> Optional[WorkflowStatus]:
    """Return the status that follows ``current``, or None when terminal."""
    return TRANSITIONS.get(WorkflowStatus(current))


def status_label(ordinal: int) -> str:
    """Human label with a progress marker, e.g. ``Votes tallied - 5/5``.

    Ordinals outside the known phases map to an empty string.
    """
    if isinstance(ordinal, bool) or not isinstance(ordinal, int):
        return ""
    label = _LABELS.get(ordinal)
    if label is None:
        return ""
    return f"{label} - {ordinal}/{int(TERMINAL_STATUS)}"
