#!/usr/bin/env python3
"""cl-hive-ballot: permissioned proposal voting plugin for hive members."""

from __future__ import annotations

import os
import sys
from typing import Any, Dict

# Ensure this script's real directory is on sys.path so that `from modules.X`
# works even when CLN loads the plugin via a symlink in the plugins directory.
sys.path.insert(0, os.path.dirname(os.path.realpath(__file__)))

from pyln.client import Plugin

from modules.ballot_service import EVENT_TOPICS, BallotService, BallotStore

plugin = Plugin()
service: BallotService | None = None


plugin.add_option(
    name="hive-ballot-db-path",
    default="~/.lightning/cl_hive_ballot.db",
    description="SQLite path for cl-hive-ballot state",
)

plugin.add_option(
    name="hive-ballot-admin",
    default="",
    description="Administrator node pubkey (default: this node)",
)

plugin.add_option(
    name="hive-ballot-max-proposals-per-voter",
    default="3",
    description="Maximum proposals a whitelisted voter may submit",
)

for _topic in EVENT_TOPICS.values():
    plugin.add_notification_topic(_topic)


def _parse_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _logger(message: str, level: str = "info") -> None:
    plugin.log(message, level=level)


def _notifier(topic: str, payload: Dict[str, Any]) -> None:
    plugin.notify(topic, payload)


def _require_service() -> BallotService:
    if service is None:
        raise RuntimeError("service not initialized")
    return service


@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs: Any) -> None:
    del kwargs

    db_path_opt = str(options.get("hive-ballot-db-path") or "~/.lightning/cl_hive_ballot.db")
    db_path = os.path.expanduser(db_path_opt)
    if not os.path.isabs(db_path):
        lightning_dir = str(configuration.get("lightning-dir") or os.path.expanduser("~/.lightning"))
        db_path = os.path.join(lightning_dir, db_path)

    admin_id = str(options.get("hive-ballot-admin") or "").strip()
    max_submissions = max(1, _parse_int(options.get("hive-ballot-max-proposals-per-voter"), 3))

    store = BallotStore(db_path=db_path, logger=_logger)

    global service
    service = BallotService(
        store=store,
        rpc=plugin.rpc,
        logger=_logger,
        notifier=_notifier,
        admin_id=admin_id,
        max_submissions_per_voter=max_submissions,
    )

    status = service.status()
    plugin.log(
        "cl-hive-ballot initialized "
        f"(db_path={db_path}, admin={status['admin_id'] or 'unresolved'}, "
        f"status={status['status_label']}, max_proposals_per_voter={max_submissions})"
    )


@plugin.method("hive-ballot-whitelist")
def hive_ballot_whitelist(plugin: Plugin, voter_id: str, caller: str = "") -> Dict[str, Any]:
    del plugin
    return _require_service().whitelist(caller=caller, voter_id=voter_id)


@plugin.method("hive-ballot-advance")
def hive_ballot_advance(plugin: Plugin, caller: str = "") -> Dict[str, Any]:
    del plugin
    return _require_service().advance_phase(caller=caller)


@plugin.method("hive-ballot-propose")
def hive_ballot_propose(plugin: Plugin, description: str, caller: str = "") -> Dict[str, Any]:
    del plugin
    return _require_service().submit_proposal(caller=caller, description=description)


@plugin.method("hive-ballot-vote")
def hive_ballot_vote(plugin: Plugin, proposal_id: int, caller: str = "") -> Dict[str, Any]:
    del plugin
    return _require_service().cast_vote(caller=caller, proposal_id=_parse_int(proposal_id, -1))


@plugin.method("hive-ballot-proposal")
def hive_ballot_proposal(plugin: Plugin, proposal_id: int, caller: str = "") -> Dict[str, Any]:
    del plugin
    return _require_service().get_proposal(caller=caller, proposal_id=_parse_int(proposal_id, -1))


@plugin.method("hive-ballot-proposals")
def hive_ballot_proposals(plugin: Plugin, caller: str = "") -> Dict[str, Any]:
    del plugin
    return _require_service().get_all_proposals(caller=caller)


@plugin.method("hive-ballot-vote-count")
def hive_ballot_vote_count(plugin: Plugin, proposal_id: int, caller: str = "") -> Dict[str, Any]:
    del plugin
    return _require_service().get_vote_count(caller=caller, proposal_id=_parse_int(proposal_id, -1))


@plugin.method("hive-ballot-total-votes")
def hive_ballot_total_votes(plugin: Plugin, caller: str = "") -> Dict[str, Any]:
    del plugin
    return _require_service().get_total_votes(caller=caller)


@plugin.method("hive-ballot-winner")
def hive_ballot_winner(plugin: Plugin) -> Dict[str, Any]:
    del plugin
    return _require_service().get_winner()


@plugin.method("hive-ballot-voted-for")
def hive_ballot_voted_for(plugin: Plugin, voter_id: str) -> Dict[str, Any]:
    del plugin
    return _require_service().voted_for(voter_id=voter_id)


@plugin.method("hive-ballot-voter")
def hive_ballot_voter(plugin: Plugin, voter_id: str, caller: str = "") -> Dict[str, Any]:
    del plugin
    return _require_service().get_voter(caller=caller, voter_id=voter_id)


@plugin.method("hive-ballot-status")
def hive_ballot_status(plugin: Plugin) -> Dict[str, Any]:
    del plugin
    return _require_service().status()


@plugin.method("hive-ballot-events")
def hive_ballot_events(plugin: Plugin, limit: int = 50, after_id: int = 0) -> Dict[str, Any]:
    del plugin
    return _require_service().list_events(
        limit=_parse_int(limit, 50),
        after_id=_parse_int(after_id, -1),
    )


if __name__ == "__main__":
    plugin.run()
