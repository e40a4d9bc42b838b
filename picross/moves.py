"""
Append-only move log for attempts.

The ordered moves of an attempt are the only source of truth for its grid:
`materialize` folds them into the current state. Functions here do not commit;
the caller owns the transaction. A seq collision rolls it back and raises
Conflict.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import DateTime, Integer, String, exists, false, func, insert, literal, select
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from . import models
from .clock import utcnow
from .errors import Conflict, InternalError

_moves = models.AttemptMove.__table__
_attempts = models.Attempt.__table__

_INSERT_COLUMNS = ["attempt_id", "seq", "at_ms", "idx", "state", "created_at"]


@dataclass
class PendingMove:
    idx: int
    state: int
    at_ms: int


@dataclass
class AppendOutcome:
    seqs: List[int] = field(default_factory=list)
    # True when the guard refused a move (cap reached or attempt no longer writable)
    rejected: bool = False


def _writable(attempt_id: str):
    return exists().where(
        _attempts.c.id == attempt_id,
        _attempts.c.completed == false(),
        _attempts.c.started_at.is_not(None),
    )


def _append_stmt(attempt_id: str, idx: int, state: int, at_ms: int, now: datetime, move_cap: int):
    # next seq and current length are read inside the INSERT; racing appends never share a seq
    agg = (
        select(
            func.coalesce(func.max(_moves.c.seq), 0).label("last_seq"),
            func.count().label("n"),
        )
        .where(_moves.c.attempt_id == attempt_id)
        .subquery("agg")
    )
    source = (
        select(
            literal(attempt_id, String()),
            agg.c.last_seq + 1,
            literal(at_ms, Integer()),
            literal(idx, Integer()),
            literal(state, Integer()),
            literal(now, DateTime()),
        )
        .select_from(agg)
        .where(agg.c.n < move_cap, _writable(attempt_id))
    )
    return insert(_moves).from_select(_INSERT_COLUMNS, source).returning(_moves.c.seq)


def append_move(session: Session, attempt_id: str, idx: int, state: int, at_ms: int,
                move_cap: int, now: Optional[datetime] = None) -> Optional[int]:
    """Append one move and return its seq, or None if the guard refused it."""
    now = now or utcnow()
    try:
        result = session.execute(_append_stmt(attempt_id, idx, state, max(0, at_ms), now, move_cap))
        return result.scalar_one_or_none()
    except IntegrityError:
        # another append took the same seq between our read and write
        session.rollback()
        raise Conflict("concurrent move, retry")


def append_moves(session: Session, attempt_id: str, moves: Iterable[PendingMove],
                 move_cap: int, now: Optional[datetime] = None) -> AppendOutcome:
    """Append a batch in game-time order.

    Clients buffer moves and may deliver them out of order, so the batch is
    sorted by at_ms (stable) before sequence numbers are assigned. Stops at the
    first refused move.
    """
    now = now or utcnow()
    outcome = AppendOutcome()
    for m in sorted(moves, key=lambda m: m.at_ms):
        seq = append_move(session, attempt_id, m.idx, m.state, m.at_ms, move_cap, now=now)
        if seq is None:
            outcome.rejected = True
            break
        outcome.seqs.append(seq)
    return outcome


def materialize(session: Session, attempt_id: str, grid_size: int) -> List[int]:
    rows = session.execute(
        select(_moves.c.idx, _moves.c.state)
        .where(_moves.c.attempt_id == attempt_id)
        .order_by(_moves.c.at_ms, _moves.c.seq)
    ).all()
    grid = [0] * grid_size
    for idx, state in rows:
        if not 0 <= idx < grid_size:
            raise InternalError("stored move outside grid")
        grid[idx] = state
    return grid


def list_moves(session: Session, attempt_id: str) -> List[dict]:
    rows = session.execute(
        select(_moves.c.seq, _moves.c.at_ms, _moves.c.idx, _moves.c.state)
        .where(_moves.c.attempt_id == attempt_id)
        .order_by(_moves.c.at_ms, _moves.c.seq)
    ).all()
    return [{"seq": seq, "atMs": at_ms, "idx": idx, "state": state} for seq, at_ms, idx, state in rows]


def move_count(session: Session, attempt_id: str) -> int:
    return session.execute(
        select(func.count()).select_from(_moves).where(_moves.c.attempt_id == attempt_id)
    ).scalar() or 0


def move_timestamps(session: Session, attempt_ids: Sequence[str]) -> Dict[str, List[int]]:
    out: Dict[str, List[int]] = {aid: [] for aid in attempt_ids}
    if not attempt_ids:
        return out
    rows = session.execute(
        select(_moves.c.attempt_id, _moves.c.at_ms)
        .where(_moves.c.attempt_id.in_(list(attempt_ids)))
        .order_by(_moves.c.attempt_id, _moves.c.at_ms)
    ).all()
    for aid, at_ms in rows:
        out[aid].append(at_ms)
    return out
