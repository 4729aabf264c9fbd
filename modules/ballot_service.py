"""Core service and persistence layer for cl-hive-ballot."""

from __future__ import annotations

import json
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

from modules.ballot_workflow import WorkflowStatus, next_status, status_label


class ErrorCode:
    NOT_AUTHORIZED = "NotAuthorized"
    PHASE_VIOLATION = "PhaseViolation"
    VOTING_NOT_OPEN = "VotingNotOpen"
    ALREADY_REGISTERED = "AlreadyRegistered"
    DUPLICATE_VOTE = "DuplicateVote"
    SUBMISSION_CAP_EXCEEDED = "SubmissionCapExceeded"
    INSUFFICIENT_PROPOSALS = "InsufficientProposals"
    NO_VOTES_CAST = "NoVotesCast"
    INDEX_OUT_OF_RANGE = "IndexOutOfRange"
    NO_PROPOSALS = "NoProposals"
    TALLY_NOT_READY = "TallyNotReady"
    NOT_REGISTERED = "NotRegistered"
    HAS_NOT_VOTED = "HasNotVoted"
    WORKFLOW_ALREADY_COMPLETE = "WorkflowAlreadyComplete"
    INVALID_INPUT = "InvalidInput"
    CAPACITY_REACHED = "CapacityReached"


EVENT_VOTER_REGISTERED = "voter_registered"
EVENT_WORKFLOW_STATUS_CHANGE = "workflow_status_change"
EVENT_PROPOSAL_REGISTERED = "proposal_registered"
EVENT_VOTE_CAST = "vote_cast"

EVENT_TOPICS: Dict[str, str] = {
    EVENT_VOTER_REGISTERED: "hive-ballot-voter-registered",
    EVENT_WORKFLOW_STATUS_CHANGE: "hive-ballot-workflow-status-changed",
    EVENT_PROPOSAL_REGISTERED: "hive-ballot-proposal-registered",
    EVENT_VOTE_CAST: "hive-ballot-vote-cast",
}


def _is_hex(value: str, expected_len: int) -> bool:
    if not isinstance(value, str) or len(value) != expected_len:
        return False
    try:
        int(value, 16)
        return True
    except ValueError:
        return False


def _is_valid_node_pubkey(value: str) -> bool:
    if not isinstance(value, str):
        return False
    if len(value) != 66 or value[:2] not in ("02", "03"):
        return False
    return _is_hex(value, 66)


def _normalize_identity(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


def _canonical_json(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def _error(code: str, message: str, **extra: Any) -> Dict[str, Any]:
    result: Dict[str, Any] = {"error": message, "code": code}
    result.update(extra)
    return result


def select_winner(proposals: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Pick the proposal with the most votes, scanning in index order.

    Only a strictly greater count replaces the running winner, so ties go to
    the lowest index. Returns None for an empty list.
    """
    winner: Optional[Dict[str, Any]] = None
    for proposal in proposals:
        if winner is None or int(proposal["vote_count"]) > int(winner["vote_count"]):
            winner = proposal
    return winner


class BallotStore:
    """SQLite persistence for the voter registry, proposals, workflow status, and events."""

    def __init__(self, db_path: str, logger: Optional[Callable[[str, str], None]] = None):
        self.db_path = os.path.expanduser(db_path)
        self._logger = logger
        self._local = threading.local()

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def _get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
            conn = sqlite3.connect(
                self.db_path,
                isolation_level=None,
                timeout=30.0,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA foreign_keys=ON;")
            self._local.conn = conn
        return conn

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    @contextmanager
    def transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Run the enclosed block as one SQLite transaction.

        With ``immediate`` the database write lock is taken up front, so guard
        reads and the writes that depend on them commit together. Without it
        the block gets a consistent read snapshot under WAL.
        """
        conn = self._get_connection()
        conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        try:
            yield conn
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        try:
            conn.execute("COMMIT")
        except sqlite3.Error:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

    def initialize(self) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS ballot_state (
                singleton_id INTEGER PRIMARY KEY CHECK(singleton_id = 1),
                workflow_status INTEGER NOT NULL DEFAULT 0
                    CHECK(workflow_status BETWEEN 0 AND 5),
                updated_at INTEGER NOT NULL
            )
            """
        )
        conn.execute(
            """
            INSERT OR IGNORE INTO ballot_state (singleton_id, workflow_status, updated_at)
            VALUES (1, 0, CAST(strftime('%s', 'now') AS INTEGER))
            """
        )
        conn.execute(
            """
            CREATE TRIGGER IF NOT EXISTS trg_ballot_state_single_step
            BEFORE UPDATE OF workflow_status ON ballot_state
            WHEN NEW.workflow_status != OLD.workflow_status + 1
            BEGIN
                SELECT RAISE(ABORT, 'workflow status must advance by exactly one step');
            END
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS ballot_voters (
                voter_id TEXT PRIMARY KEY,
                is_registered INTEGER NOT NULL DEFAULT 0,
                has_voted INTEGER NOT NULL DEFAULT 0,
                voted_proposal_id INTEGER,
                submitted_count INTEGER NOT NULL DEFAULT 0 CHECK(submitted_count >= 0),
                registered_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS ballot_proposals (
                proposal_id INTEGER PRIMARY KEY CHECK(proposal_id >= 0),
                description TEXT NOT NULL,
                vote_count INTEGER NOT NULL DEFAULT 0 CHECK(vote_count >= 0),
                submitted_by TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                FOREIGN KEY(submitted_by) REFERENCES ballot_voters(voter_id)
            )
            """
        )
        conn.execute(
            """
            CREATE TRIGGER IF NOT EXISTS trg_ballot_proposals_vote_count_monotonic
            BEFORE UPDATE OF vote_count ON ballot_proposals
            WHEN NEW.vote_count < OLD.vote_count
            BEGIN
                SELECT RAISE(ABORT, 'vote_count may not decrease');
            END
            """
        )
        conn.execute(
            """
            CREATE TRIGGER IF NOT EXISTS trg_ballot_proposals_append_only
            BEFORE DELETE ON ballot_proposals
            BEGIN
                SELECT RAISE(ABORT, 'proposals are append-only');
            END
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS ballot_events (
                event_id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_type TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                created_at INTEGER NOT NULL
            )
            """
        )

        conn.execute("PRAGMA optimize;")
        self._log(f"ballot: store ready at {self.db_path}", "debug")

    def get_workflow_status(self) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT workflow_status FROM ballot_state WHERE singleton_id = 1"
        ).fetchone()
        return int(row["workflow_status"]) if row else 0

    def set_workflow_status(self, expected: int, new_status: int, now_ts: int) -> bool:
        """Compare-and-set the workflow status. Returns False if ``expected`` is stale."""
        conn = self._get_connection()
        cursor = conn.execute(
            """
            UPDATE ballot_state SET workflow_status = ?, updated_at = ?
            WHERE singleton_id = 1 AND workflow_status = ?
            """,
            (new_status, now_ts, expected),
        )
        return cursor.rowcount > 0

    def get_voter(self, voter_id: str) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM ballot_voters WHERE voter_id = ?",
            (voter_id,),
        ).fetchone()
        return dict(row) if row else None

    def register_voter(self, voter_id: str, now_ts: int) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO ballot_voters (
                voter_id, is_registered, has_voted, voted_proposal_id,
                submitted_count, registered_at, updated_at
            ) VALUES (?, 1, 0, NULL, 0, ?, ?)
            ON CONFLICT(voter_id) DO UPDATE SET
                is_registered = 1,
                updated_at = excluded.updated_at
            """,
            (voter_id, now_ts, now_ts),
        )

    def count_voters(self) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COUNT(*) AS cnt FROM ballot_voters WHERE is_registered = 1"
        ).fetchone()
        return int(row["cnt"] or 0)

    def count_voted(self) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COUNT(*) AS cnt FROM ballot_voters WHERE has_voted = 1"
        ).fetchone()
        return int(row["cnt"] or 0)

    def increment_submitted_count(self, voter_id: str, now_ts: int) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            UPDATE ballot_voters
            SET submitted_count = submitted_count + 1, updated_at = ?
            WHERE voter_id = ?
            """,
            (now_ts, voter_id),
        )

    def record_vote(self, voter_id: str, proposal_id: int, now_ts: int) -> bool:
        """Mark a registered voter as having voted. Returns False if they already had."""
        conn = self._get_connection()
        cursor = conn.execute(
            """
            UPDATE ballot_voters
            SET has_voted = 1, voted_proposal_id = ?, updated_at = ?
            WHERE voter_id = ? AND is_registered = 1 AND has_voted = 0
            """,
            (proposal_id, now_ts, voter_id),
        )
        return cursor.rowcount > 0

    def add_proposal(self, description: str, submitted_by: str, now_ts: int) -> int:
        """Append a proposal and return its index.

        Must run inside an immediate transaction so the index cannot be taken twice.
        """
        conn = self._get_connection()
        proposal_id = self.count_proposals()
        conn.execute(
            """
            INSERT INTO ballot_proposals (
                proposal_id, description, vote_count, submitted_by, created_at
            ) VALUES (?, ?, 0, ?, ?)
            """,
            (proposal_id, description, submitted_by, now_ts),
        )
        return proposal_id

    def get_proposal(self, proposal_id: int) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM ballot_proposals WHERE proposal_id = ?",
            (proposal_id,),
        ).fetchone()
        return dict(row) if row else None

    def list_proposals(self) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM ballot_proposals ORDER BY proposal_id ASC"
        ).fetchall()
        return [dict(row) for row in rows]

    def count_proposals(self) -> int:
        conn = self._get_connection()
        row = conn.execute("SELECT COUNT(*) AS cnt FROM ballot_proposals").fetchone()
        return int(row["cnt"] or 0)

    def increment_vote_count(self, proposal_id: int) -> bool:
        conn = self._get_connection()
        cursor = conn.execute(
            "UPDATE ballot_proposals SET vote_count = vote_count + 1 WHERE proposal_id = ?",
            (proposal_id,),
        )
        return cursor.rowcount > 0

    def sum_vote_counts(self) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COALESCE(SUM(vote_count), 0) AS total FROM ballot_proposals"
        ).fetchone()
        return int(row["total"] or 0)

    def append_event(self, event_type: str, payload: Dict[str, Any], now_ts: int) -> Dict[str, Any]:
        conn = self._get_connection()
        cursor = conn.execute(
            """
            INSERT INTO ballot_events (event_type, payload_json, created_at)
            VALUES (?, ?, ?)
            """,
            (event_type, _canonical_json(payload), now_ts),
        )
        return {
            "event_id": int(cursor.lastrowid),
            "event_type": event_type,
            "payload": dict(payload),
            "created_at": now_ts,
        }

    def list_events(self, after_id: int, limit: int) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM ballot_events
            WHERE event_id > ?
            ORDER BY event_id ASC
            LIMIT ?
            """,
            (after_id, limit),
        ).fetchall()
        events: List[Dict[str, Any]] = []
        for row in rows:
            try:
                payload = json.loads(row["payload_json"] or "{}")
            except (json.JSONDecodeError, TypeError):
                payload = {}
            events.append(
                {
                    "event_id": row["event_id"],
                    "event_type": row["event_type"],
                    "payload": payload,
                    "created_at": row["created_at"],
                }
            )
        return events


class BallotService:
    """Permissioned voting workflow used by cl-hive-ballot RPC methods.

    Every mutation holds ``_write_lock`` and runs in one immediate store
    transaction; guards are checked inside it and return an error dict before
    anything is written. Events are published to the notifier only after the
    transaction commits.
    """

    MIN_PROPOSALS_TO_CLOSE = 2
    MIN_VOTES_TO_CLOSE = 1
    MAX_DESCRIPTION_LEN = 500
    MAX_VOTERS = 10_000
    MAX_TOTAL_PROPOSALS = 1_000
    MAX_EVENTS_LIMIT = 500

    def __init__(
        self,
        store: BallotStore,
        rpc: Any = None,
        logger: Optional[Callable[[str, str], None]] = None,
        notifier: Optional[Callable[[str, Dict[str, Any]], None]] = None,
        admin_id: str = "",
        max_submissions_per_voter: int = 3,
        time_fn: Callable[[], float] = time.time,
    ):
        self.store = store
        self.rpc = rpc
        self._logger = logger
        self._notifier = notifier
        self.max_submissions_per_voter = max(1, int(max_submissions_per_voter))
        self._time_fn = time_fn
        self._write_lock = threading.Lock()
        self._node_pubkey = ""

        admin_id = _normalize_identity(admin_id)
        if admin_id and not _is_valid_node_pubkey(admin_id):
            self._log("ballot: invalid admin pubkey; using node pubkey as administrator", "warn")
            admin_id = ""
        self._admin_id = admin_id

        self.store.initialize()

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def _now(self) -> int:
        return int(self._time_fn())

    def _our_node_pubkey(self) -> str:
        if self._node_pubkey:
            return self._node_pubkey
        if not self.rpc:
            return ""
        try:
            info = self.rpc.getinfo()
            if isinstance(info, dict):
                pubkey = _normalize_identity(str(info.get("id", "")))
                if _is_valid_node_pubkey(pubkey):
                    self._node_pubkey = pubkey
                    return pubkey
        except Exception as exc:
            self._log(f"ballot: getinfo failed: {exc}", "warn")
        return ""

    def admin_id(self) -> str:
        return self._admin_id or self._our_node_pubkey()

    def _resolve_caller(self, caller: str) -> str:
        if not isinstance(caller, str):
            return ""
        return _normalize_identity(caller) or self._our_node_pubkey()

    def _publish(self, event: Dict[str, Any]) -> None:
        if not self._notifier:
            return
        topic = EVENT_TOPICS.get(event["event_type"])
        if not topic:
            return
        payload = dict(event["payload"])
        payload["event_id"] = event["event_id"]
        payload["created_at"] = event["created_at"]
        try:
            self._notifier(topic, payload)
        except Exception as exc:
            self._log(f"ballot: notification {topic} failed (event {event['event_id']} kept): {exc}", "warn")

    def _current_status(self) -> WorkflowStatus:
        return WorkflowStatus(self.store.get_workflow_status())

    def is_whitelisted(self, identity: str) -> bool:
        identity = _normalize_identity(identity)
        if not identity:
            return False
        voter = self.store.get_voter(identity)
        return bool(voter and voter.get("is_registered"))

    def proposal_count(self) -> int:
        return self.store.count_proposals()

    def status_label(self) -> str:
        return status_label(self.store.get_workflow_status())

    # -- guards -------------------------------------------------------------

    def _require_admin(self, caller: str, admin_id: str) -> Optional[Dict[str, Any]]:
        if not admin_id or caller != admin_id:
            return _error(ErrorCode.NOT_AUTHORIZED, "caller is not the ballot administrator")
        return None

    def _require_whitelisted(self, caller: str) -> Optional[Dict[str, Any]]:
        if not self.is_whitelisted(caller):
            return _error(ErrorCode.NOT_AUTHORIZED, "caller is not a whitelisted voter")
        return None

    def _require_status(
        self,
        current: WorkflowStatus,
        required: WorkflowStatus,
        code: str = ErrorCode.PHASE_VIOLATION,
    ) -> Optional[Dict[str, Any]]:
        if current != required:
            return _error(
                code,
                f"operation requires workflow status {required.wire_name}",
                workflow_status=current.wire_name,
                required_status=required.wire_name,
            )
        return None

    def _require_proposals(self, count: int) -> Optional[Dict[str, Any]]:
        if count <= 0:
            return _error(ErrorCode.NO_PROPOSALS, "no proposals registered")
        return None

    def _require_proposal_index(self, proposal_id: Any, count: int) -> Optional[Dict[str, Any]]:
        if (
            isinstance(proposal_id, bool)
            or not isinstance(proposal_id, int)
            or proposal_id < 0
            or proposal_id >= count
        ):
            return _error(
                ErrorCode.INDEX_OUT_OF_RANGE,
                "proposal_id out of range",
                proposal_id=proposal_id,
                proposal_count=count,
            )
        return None

    def _transition_guard(self, current: WorkflowStatus) -> Optional[Dict[str, Any]]:
        if current == WorkflowStatus.PROPOSALS_REGISTRATION_STARTED:
            count = self.store.count_proposals()
            if count < self.MIN_PROPOSALS_TO_CLOSE:
                return _error(
                    ErrorCode.INSUFFICIENT_PROPOSALS,
                    f"at least {self.MIN_PROPOSALS_TO_CLOSE} proposals required to end registration",
                    proposal_count=count,
                    workflow_status=current.wire_name,
                )
        elif current == WorkflowStatus.VOTING_SESSION_STARTED:
            total = self.store.sum_vote_counts()
            if total < self.MIN_VOTES_TO_CLOSE:
                return _error(
                    ErrorCode.NO_VOTES_CAST,
                    "no votes cast; voting session cannot end",
                    total_votes=total,
                    workflow_status=current.wire_name,
                )
        return None

    # -- mutations ----------------------------------------------------------

    def whitelist(self, caller: str, voter_id: str) -> Dict[str, Any]:
        caller = self._resolve_caller(caller)
        admin_id = self.admin_id()
        voter_id = _normalize_identity(voter_id)

        with self._write_lock, self.store.transaction(immediate=True):
            admin_error = self._require_admin(caller, admin_id)
            if admin_error:
                self._log(f"ballot: whitelist rejected for non-admin caller {caller}", "debug")
                return admin_error

            phase_error = self._require_status(
                self._current_status(), WorkflowStatus.REGISTERING_VOTERS
            )
            if phase_error:
                return phase_error

            if not _is_valid_node_pubkey(voter_id):
                return _error(
                    ErrorCode.INVALID_INPUT,
                    "invalid voter_id (expected 66-char compressed secp256k1 pubkey)",
                )
            if self.is_whitelisted(voter_id):
                return _error(ErrorCode.ALREADY_REGISTERED, "voter already registered", voter_id=voter_id)
            if self.store.count_voters() >= self.MAX_VOTERS:
                return _error(ErrorCode.CAPACITY_REACHED, "voter capacity reached")

            now_ts = self._now()
            self.store.register_voter(voter_id, now_ts)
            event = self.store.append_event(EVENT_VOTER_REGISTERED, {"voter_id": voter_id}, now_ts)

        self._log(f"ballot: whitelisted voter {voter_id}")
        self._publish(event)
        return {"ok": True, "voter_id": voter_id, "event_id": event["event_id"]}

    def advance_phase(self, caller: str) -> Dict[str, Any]:
        caller = self._resolve_caller(caller)
        admin_id = self.admin_id()

        with self._write_lock, self.store.transaction(immediate=True):
            admin_error = self._require_admin(caller, admin_id)
            if admin_error:
                self._log(f"ballot: advance rejected for non-admin caller {caller}", "debug")
                return admin_error

            current = self._current_status()
            target = next_status(current)
            if target is None:
                return _error(
                    ErrorCode.WORKFLOW_ALREADY_COMPLETE,
                    "workflow already complete",
                    workflow_status=current.wire_name,
                )

            guard_error = self._transition_guard(current)
            if guard_error:
                return guard_error

            now_ts = self._now()
            if not self.store.set_workflow_status(int(current), int(target), now_ts):
                raise RuntimeError("workflow status changed outside the write lock")
            event = self.store.append_event(
                EVENT_WORKFLOW_STATUS_CHANGE,
                {"previous_status": current.wire_name, "new_status": target.wire_name},
                now_ts,
            )

        self._log(f"ballot: workflow status {current.wire_name} -> {target.wire_name}")
        self._publish(event)
        return {
            "ok": True,
            "previous_status": current.wire_name,
            "new_status": target.wire_name,
            "status_label": status_label(int(target)),
            "event_id": event["event_id"],
        }

    def submit_proposal(self, caller: str, description: str) -> Dict[str, Any]:
        caller = self._resolve_caller(caller)

        with self._write_lock, self.store.transaction(immediate=True):
            auth_error = self._require_whitelisted(caller)
            if auth_error:
                return auth_error

            phase_error = self._require_status(
                self._current_status(), WorkflowStatus.PROPOSALS_REGISTRATION_STARTED
            )
            if phase_error:
                return phase_error

            if not isinstance(description, str):
                return _error(ErrorCode.INVALID_INPUT, "description must be a string")
            description = description.strip()
            if not description:
                return _error(ErrorCode.INVALID_INPUT, "description is required")
            if len(description) > self.MAX_DESCRIPTION_LEN:
                return _error(
                    ErrorCode.INVALID_INPUT,
                    f"description too long (max {self.MAX_DESCRIPTION_LEN} chars)",
                )

            voter = self.store.get_voter(caller) or {}
            submitted = int(voter.get("submitted_count") or 0)
            if submitted >= self.max_submissions_per_voter:
                return _error(
                    ErrorCode.SUBMISSION_CAP_EXCEEDED,
                    "proposal submission limit reached",
                    max_submissions=self.max_submissions_per_voter,
                    submitted_count=submitted,
                )
            if self.store.count_proposals() >= self.MAX_TOTAL_PROPOSALS:
                return _error(ErrorCode.CAPACITY_REACHED, "proposal capacity reached")

            now_ts = self._now()
            proposal_id = self.store.add_proposal(description, caller, now_ts)
            self.store.increment_submitted_count(caller, now_ts)
            event = self.store.append_event(
                EVENT_PROPOSAL_REGISTERED, {"proposal_id": proposal_id}, now_ts
            )

        self._log(f"ballot: proposal {proposal_id} registered by {caller}")
        self._publish(event)
        return {
            "ok": True,
            "proposal_id": proposal_id,
            "description": description,
            "submitted_count": submitted + 1,
            "event_id": event["event_id"],
        }

    def cast_vote(self, caller: str, proposal_id: int) -> Dict[str, Any]:
        caller = self._resolve_caller(caller)

        with self._write_lock, self.store.transaction(immediate=True):
            auth_error = self._require_whitelisted(caller)
            if auth_error:
                return auth_error

            index_error = self._require_proposal_index(proposal_id, self.store.count_proposals())
            if index_error:
                return index_error

            phase_error = self._require_status(
                self._current_status(),
                WorkflowStatus.VOTING_SESSION_STARTED,
                code=ErrorCode.VOTING_NOT_OPEN,
            )
            if phase_error:
                return phase_error

            voter = self.store.get_voter(caller) or {}
            if voter.get("has_voted"):
                return _error(
                    ErrorCode.DUPLICATE_VOTE,
                    "vote already exists for this voter",
                    voted_proposal_id=voter.get("voted_proposal_id"),
                )

            now_ts = self._now()
            if not self.store.record_vote(caller, proposal_id, now_ts):
                raise RuntimeError("voter record changed outside the write lock")
            self.store.increment_vote_count(proposal_id)
            event = self.store.append_event(
                EVENT_VOTE_CAST, {"voter_id": caller, "proposal_id": proposal_id}, now_ts
            )

        self._log(f"ballot: vote cast by {caller} for proposal {proposal_id}")
        self._publish(event)
        return {
            "ok": True,
            "voter_id": caller,
            "proposal_id": proposal_id,
            "event_id": event["event_id"],
        }

    # -- queries ------------------------------------------------------------

    def get_proposal(self, caller: str, proposal_id: int) -> Dict[str, Any]:
        caller = self._resolve_caller(caller)
        with self.store.transaction():
            auth_error = self._require_whitelisted(caller)
            if auth_error:
                return auth_error
            count = self.store.count_proposals()
            read_error = self._require_proposals(count) or self._require_proposal_index(proposal_id, count)
            if read_error:
                return read_error
            proposal = self.store.get_proposal(proposal_id) or {}
        return {
            "ok": True,
            "proposal_id": proposal_id,
            "description": proposal.get("description", ""),
        }

    def get_all_proposals(self, caller: str) -> Dict[str, Any]:
        caller = self._resolve_caller(caller)
        with self.store.transaction():
            auth_error = self._require_whitelisted(caller)
            if auth_error:
                return auth_error
            proposals = self.store.list_proposals()
        empty_error = self._require_proposals(len(proposals))
        if empty_error:
            return empty_error
        return {
            "ok": True,
            "count": len(proposals),
            "proposals": [
                {
                    "proposal_id": row["proposal_id"],
                    "description": row["description"],
                    "vote_count": row["vote_count"],
                }
                for row in proposals
            ],
        }

    def get_vote_count(self, caller: str, proposal_id: int) -> Dict[str, Any]:
        caller = self._resolve_caller(caller)
        with self.store.transaction():
            auth_error = self._require_whitelisted(caller)
            if auth_error:
                return auth_error
            count = self.store.count_proposals()
            read_error = self._require_proposals(count) or self._require_proposal_index(proposal_id, count)
            if read_error:
                return read_error
            proposal = self.store.get_proposal(proposal_id) or {}
        return {
            "ok": True,
            "proposal_id": proposal_id,
            "vote_count": int(proposal.get("vote_count") or 0),
        }

    def get_total_votes(self, caller: str) -> Dict[str, Any]:
        caller = self._resolve_caller(caller)
        with self.store.transaction():
            auth_error = self._require_whitelisted(caller)
            if auth_error:
                return auth_error
            current = self._current_status()
            if current < WorkflowStatus.VOTING_SESSION_STARTED:
                return _error(
                    ErrorCode.PHASE_VIOLATION,
                    "total votes are available once voting has started",
                    workflow_status=current.wire_name,
                )
            total = self.store.sum_vote_counts()
        return {"ok": True, "total_votes": total}

    def get_winner(self) -> Dict[str, Any]:
        with self.store.transaction():
            current = self._current_status()
            if current < WorkflowStatus.VOTING_SESSION_ENDED:
                return _error(
                    ErrorCode.TALLY_NOT_READY,
                    "tally is available once the voting session has ended",
                    workflow_status=current.wire_name,
                )
            proposals = self.store.list_proposals()

        winner = select_winner(proposals)
        if winner is None:
            return _error(ErrorCode.NO_PROPOSALS, "no proposals registered")
        return {
            "ok": True,
            "proposal_id": winner["proposal_id"],
            "description": winner["description"],
            "vote_count": winner["vote_count"],
        }

    def voted_for(self, voter_id: str) -> Dict[str, Any]:
        voter_id = _normalize_identity(voter_id)
        with self.store.transaction():
            voter = self.store.get_voter(voter_id) if voter_id else None
            if not voter or not voter.get("is_registered"):
                return _error(ErrorCode.NOT_REGISTERED, "voter not registered", voter_id=voter_id)
            if not voter.get("has_voted"):
                return _error(ErrorCode.HAS_NOT_VOTED, "voter has not voted", voter_id=voter_id)
            proposal_id = int(voter["voted_proposal_id"])
            proposal = self.store.get_proposal(proposal_id) or {}
        return {
            "ok": True,
            "voter_id": voter_id,
            "proposal_id": proposal_id,
            "description": proposal.get("description", ""),
        }

    def get_voter(self, caller: str, voter_id: str) -> Dict[str, Any]:
        caller = self._resolve_caller(caller)
        voter_id = _normalize_identity(voter_id)
        with self.store.transaction():
            auth_error = self._require_whitelisted(caller)
            if auth_error:
                return auth_error
            voter = self.store.get_voter(voter_id) if voter_id else None
        if not voter:
            return _error(ErrorCode.NOT_REGISTERED, "voter not registered", voter_id=voter_id)
        return {
            "ok": True,
            "voter": {
                "voter_id": voter["voter_id"],
                "is_registered": bool(voter["is_registered"]),
                "has_voted": bool(voter["has_voted"]),
                "voted_proposal_id": voter["voted_proposal_id"],
                "submitted_count": int(voter["submitted_count"] or 0),
                "registered_at": voter["registered_at"],
            },
        }

    def status(self) -> Dict[str, Any]:
        admin_id = self.admin_id()
        with self.store.transaction():
            ordinal = self.store.get_workflow_status()
            voter_count = self.store.count_voters()
            voted_count = self.store.count_voted()
            proposal_count = self.store.count_proposals()
            total_votes = self.store.sum_vote_counts()

        return {
            "ok": True,
            "workflow_status": WorkflowStatus(ordinal).wire_name,
            "workflow_status_ordinal": ordinal,
            "status_label": status_label(ordinal),
            "admin_id": admin_id,
            "voter_count": voter_count,
            "voted_count": voted_count,
            "proposal_count": proposal_count,
            "total_votes": total_votes,
            "max_submissions_per_voter": self.max_submissions_per_voter,
        }

    def list_events(self, limit: int = 50, after_id: int = 0) -> Dict[str, Any]:
        if not isinstance(limit, int) or limit <= 0:
            return _error(ErrorCode.INVALID_INPUT, "limit must be positive")
        if limit > self.MAX_EVENTS_LIMIT:
            limit = self.MAX_EVENTS_LIMIT
        if not isinstance(after_id, int) or after_id < 0:
            return _error(ErrorCode.INVALID_INPUT, "after_id must be a non-negative integer")

        events = self.store.list_events(after_id=after_id, limit=limit)
        return {
            "ok": True,
            "count": len(events),
            "events": events,
        }
