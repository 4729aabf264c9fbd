"""Unit tests for the cl-hive-ballot workflow table."""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from modules.ballot_workflow import (
    TERMINAL_STATUS,
    TRANSITIONS,
    WorkflowStatus,
    next_status,
    status_label,
)


def test_transitions_advance_one_step_at_a_time():
    current = WorkflowStatus.REGISTERING_VOTERS
    visited = [current]
    while True:
        following = next_status(current)
        if following is None:
            break
        assert int(following) == int(current) + 1
        visited.append(following)
        current = following

    assert visited == list(WorkflowStatus)
    assert current == TERMINAL_STATUS


def test_terminal_status_has_no_transition():
    assert TERMINAL_STATUS not in TRANSITIONS
    assert next_status(WorkflowStatus.VOTES_TALLIED) is None


def test_wire_names():
    assert WorkflowStatus.REGISTERING_VOTERS.wire_name == "RegisteringVoters"
    assert WorkflowStatus.VOTING_SESSION_ENDED.wire_name == "VotingSessionEnded"
    assert WorkflowStatus(5).wire_name == "VotesTallied"


def test_status_label_covers_known_ordinals():
    assert status_label(0) == "Registering voters - 0/5"
    assert status_label(1) == "Proposals registration started - 1/5"
    assert status_label(2) == "Proposals registration ended - 2/5"
    assert status_label(3) == "Voting session started - 3/5"
    assert status_label(4) == "Voting session ended - 4/5"
    assert status_label(5) == "Votes tallied - 5/5"


def test_status_label_unknown_ordinal_is_empty():
    assert status_label(6) == ""
    assert status_label(-1) == ""
    assert status_label(True) == ""
    assert status_label("3") == ""


def test_status_label_accepts_every_workflow_status():
    for status in WorkflowStatus:
        label = status_label(status)
        assert label.endswith(f" - {int(status)}/5")
        assert label == status_label(int(status))
