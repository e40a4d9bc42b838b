"""
Attempt lifecycle: unstarted -> started -> solved | abandoned.

Every transition that targets one attempt is a single guarded statement
(`WHERE ... AND completed = 0`, `AND started_at IS NULL`, ...). Its
affected-row count is the commit signal: zero rows means another request got
there first, reported as a Conflict and never retried here.
"""

import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import DateTime, Integer, String, delete, false, insert, literal, select, true, update
from sqlmodel import Session

from . import config, crud, models, moves
from .cache import invalidate_leaderboard_cache
from .clock import elapsed_ms, utcnow
from .clues import CellState, validate_state_by_clues
from .eligibility import creation_eligibility, finish_eligibility
from .errors import Conflict, InternalError, NotFound, ValidationFailed
from .logging_utils import get_logger
from .rng import SeedSource, random_u32

logger = get_logger("picross.attempts")

_attempts = models.Attempt.__table__

_VALID_STATES = {s.value for s in CellState}


@dataclass
class MoveResult:
    seq: Optional[int] = None
    at_ms: Optional[int] = None
    abandoned: bool = False
    move_count: Optional[int] = None


@dataclass
class FinishResult:
    solved: bool
    wrong_rows: int = 0
    wrong_cols: int = 0
    duration_ms: Optional[int] = None
    eligible: Optional[bool] = None
    finished_at: Optional[datetime] = None


def attempt_status(a: models.Attempt) -> str:
    if a.completed:
        return "solved" if a.finished_at is not None else "abandoned"
    return "started" if a.started_at is not None else "unstarted"


def _load_owned(session: Session, attempt_id: str, user_id: int) -> Tuple[models.Attempt, models.Puzzle]:
    # missing and not-yours look the same to the caller
    a = session.get(models.Attempt, attempt_id)
    if a is None or a.user_id != user_id:
        raise NotFound("attempt not found")
    p = session.get(models.Puzzle, a.puzzle_id)
    if p is None:
        raise InternalError("attempt references a missing puzzle")
    return a, p


def _check_cell(puzzle: models.Puzzle, idx: int, state: int) -> None:
    if state not in _VALID_STATES:
        raise ValidationFailed("bad state")
    if not 0 <= idx < puzzle.width * puzzle.height:
        raise ValidationFailed("bad idx")


def _closed_result(session: Session, a: models.Attempt, cap: int) -> MoveResult:
    # a cap-abandoned attempt keeps answering abandoned; anything else closed is a conflict
    if a.finished_at is not None:
        raise Conflict("attempt already finished")
    count = moves.move_count(session, a.id)
    if count < cap:
        raise Conflict("attempt abandoned")
    return MoveResult(abandoned=True, move_count=count)


def _ensure_started(a: models.Attempt) -> None:
    if a.started_at is None:
        raise Conflict("attempt not started")


def _cap(move_cap: Optional[int]) -> int:
    return config.MOVE_CAP if move_cap is None else move_cap


def create_attempt(session: Session, user_id: int, puzzle_id: Optional[str] = None, size: Optional[int] = None,
                   seed_source: SeedSource = random_u32, now: Optional[datetime] = None) -> Tuple[models.Attempt, models.Puzzle]:
    """Create an unstarted attempt at an existing puzzle or a freshly generated one.

    The caller's stale attempts are swept first. Eligibility is decided inside
    the INSERT itself.
    """
    now = now or utcnow()
    sweep_stale_attempts(session, user_id=user_id, now=now)

    if puzzle_id:
        puzzle = crud.get_puzzle(session, puzzle_id)
        if puzzle is None:
            raise NotFound("puzzle not found")
    else:
        size = size or config.DEFAULT_SIZE
        if size not in config.ALLOWED_SIZES:
            raise ValidationFailed("bad size")
        puzzle = crud.create_puzzle(session, size, seed_source())

    attempt_id = str(uuid.uuid4())
    grid = [0] * (puzzle.width * puzzle.height)
    source = select(
        literal(attempt_id, String()),
        literal(puzzle.id, String()),
        literal(user_id, Integer()),
        literal(now, DateTime()),
        creation_eligibility(user_id, puzzle.id),
        false(),
        false(),
        literal(json.dumps(grid), String()),
    )
    session.execute(
        insert(_attempts).from_select(
            ["id", "puzzle_id", "user_id", "created_at", "eligible", "completed", "shared", "state_json"],
            source,
        )
    )
    session.commit()

    attempt = session.get(models.Attempt, attempt_id)
    if attempt is None:
        raise InternalError("attempt vanished after insert")
    logger.info("attempt_created", extra={
        "attempt_id": attempt_id, "puzzle_id": puzzle.id, "user_id": user_id, "eligible": attempt.eligible,
    })
    return attempt, puzzle


def get_attempt(session: Session, attempt_id: str, user_id: int) -> Tuple[models.Attempt, models.Puzzle, List[int]]:
    """Owner view of an attempt with its grid rebuilt from the move log.

    A cached snapshot that disagrees with the log is rewritten.
    """
    a, p = _load_owned(session, attempt_id, user_id)
    grid = moves.materialize(session, a.id, p.width * p.height)
    try:
        cached = json.loads(a.state_json)
    except ValueError:
        cached = None
    if cached != grid:
        session.execute(update(_attempts).where(_attempts.c.id == a.id).values(state_json=json.dumps(grid)))
        session.commit()
        session.refresh(a)
    return a, p, grid


def start_attempt(session: Session, attempt_id: str, user_id: int,
                  now: Optional[datetime] = None) -> Tuple[models.Attempt, models.Puzzle]:
    now = now or utcnow()
    a, p = _load_owned(session, attempt_id, user_id)
    if a.completed:
        raise Conflict("attempt already finished")
    if a.started_at is not None:
        raise Conflict("attempt already started")

    res = session.execute(
        update(_attempts)
        .where(_attempts.c.id == attempt_id)
        .where(_attempts.c.user_id == user_id)
        .where(_attempts.c.started_at.is_(None))
        .where(_attempts.c.completed == false())
        .values(started_at=now)
    )
    session.commit()
    if res.rowcount != 1:
        raise Conflict("attempt already started")
    session.refresh(a)
    logger.info("attempt_started", extra={"attempt_id": attempt_id, "user_id": user_id})
    return a, p


def _settle_refused(session: Session, attempt_id: str, cap: int) -> MoveResult:
    # the guarded insert wrote nothing: either the cap is reached or the
    # attempt stopped accepting moves; decide from the store, not from memory
    count = moves.move_count(session, attempt_id)
    if count < cap:
        session.rollback()
        raise Conflict("attempt already finished")

    res = session.execute(
        update(_attempts)
        .where(_attempts.c.id == attempt_id)
        .where(_attempts.c.completed == false())
        .values(completed=true(), eligible=false())
    )
    finished_at = session.execute(
        select(_attempts.c.finished_at).where(_attempts.c.id == attempt_id)
    ).scalar_one_or_none()
    session.commit()
    if res.rowcount == 1:
        logger.warning("move_cap_reached", extra={"attempt_id": attempt_id, "count": count})
    if finished_at is not None:
        raise Conflict("attempt already finished")
    return MoveResult(abandoned=True, move_count=count)


def record_move(session: Session, attempt_id: str, user_id: int, idx: int, state: int,
                now: Optional[datetime] = None, move_cap: Optional[int] = None) -> MoveResult:
    """Append one move, timed by the server from the attempt's start."""
    now = now or utcnow()
    cap = _cap(move_cap)
    a, p = _load_owned(session, attempt_id, user_id)
    _check_cell(p, idx, state)
    if a.completed:
        return _closed_result(session, a, cap)
    _ensure_started(a)

    at_ms = elapsed_ms(a.started_at, now)
    seq = moves.append_move(session, a.id, idx, state, at_ms, cap, now=now)
    if seq is None:
        return _settle_refused(session, a.id, cap)
    session.commit()
    return MoveResult(seq=seq, at_ms=at_ms)


def record_moves(session: Session, attempt_id: str, user_id: int, entries: Sequence[Tuple[int, int, int]],
                 now: Optional[datetime] = None, move_cap: Optional[int] = None) -> MoveResult:
    """Append a client-buffered batch of (idx, state, at_ms) moves.

    The whole batch is validated before anything is written and committed in
    one transaction.
    """
    if not entries:
        raise ValidationFailed("empty moves")
    if len(entries) > config.MAX_BATCH:
        raise ValidationFailed("too many moves")
    cap = _cap(move_cap)
    a, p = _load_owned(session, attempt_id, user_id)
    for idx, state, _ in entries:
        _check_cell(p, idx, state)
    if a.completed:
        return _closed_result(session, a, cap)
    _ensure_started(a)

    pending = [moves.PendingMove(idx=idx, state=state, at_ms=max(0, at_ms)) for idx, state, at_ms in entries]
    outcome = moves.append_moves(session, a.id, pending, cap, now=now)
    if outcome.rejected:
        return _settle_refused(session, a.id, cap)
    session.commit()
    return MoveResult(move_count=len(outcome.seqs))


def finish_attempt(session: Session, attempt_id: str, user_id: int, now: Optional[datetime] = None) -> FinishResult:
    """Validate the server-side grid and, if solved, close the attempt.

    The grid is always rebuilt from the move log; nothing the client sends is
    trusted here. Closing, timing and the final eligibility decision happen in
    one UPDATE guarded by completed = 0, so duplicate finishes get a Conflict.
    """
    now = now or utcnow()
    a, p = _load_owned(session, attempt_id, user_id)
    if a.completed:
        raise Conflict("attempt already finished")
    if a.started_at is None:
        raise Conflict("attempt not started")

    grid = moves.materialize(session, a.id, p.width * p.height)
    if len(grid) != p.width * p.height:
        raise InternalError("grid size mismatch")
    row_clues, col_clues = crud.puzzle_clues(p)
    check = validate_state_by_clues(grid, p.width, p.height, row_clues, col_clues)
    state_json = json.dumps(grid)

    if not check.solved:
        # keep the snapshot fresh so a resumed game shows the latest grid
        session.execute(
            update(_attempts)
            .where(_attempts.c.id == a.id)
            .where(_attempts.c.completed == false())
            .values(state_json=state_json)
        )
        session.commit()
        return FinishResult(solved=False, wrong_rows=check.wrong_rows, wrong_cols=check.wrong_cols)

    duration_ms = elapsed_ms(a.started_at, now)
    res = session.execute(
        update(_attempts)
        .where(_attempts.c.id == a.id)
        .where(_attempts.c.user_id == user_id)
        .where(_attempts.c.completed == false())
        .where(_attempts.c.started_at.is_not(None))
        .values(
            completed=true(),
            finished_at=now,
            duration_ms=duration_ms,
            state_json=state_json,
            eligible=finish_eligibility(),
        )
        .returning(_attempts.c.eligible)
    )
    eligible = res.scalar_one_or_none()
    if eligible is None:
        session.rollback()
        raise Conflict("attempt already finished")
    session.commit()

    invalidate_leaderboard_cache()
    logger.info("attempt_finished", extra={
        "attempt_id": a.id, "puzzle_id": p.id, "user_id": user_id, "eligible": bool(eligible),
    })
    return FinishResult(solved=True, duration_ms=duration_ms, eligible=bool(eligible), finished_at=now)


def abandon_attempt(session: Session, attempt_id: str, user_id: int) -> None:
    res = session.execute(
        update(_attempts)
        .where(_attempts.c.id == attempt_id)
        .where(_attempts.c.user_id == user_id)
        .where(_attempts.c.completed == false())
        .where(_attempts.c.started_at.is_not(None))
        .values(completed=true(), eligible=false())
    )
    session.commit()
    if res.rowcount != 1:
        _load_owned(session, attempt_id, user_id)
        raise Conflict("attempt already finished or not started")
    logger.info("attempt_abandoned", extra={"attempt_id": attempt_id, "user_id": user_id})


def sweep_stale_attempts(session: Session, user_id: Optional[int] = None, now: Optional[datetime] = None) -> dict:
    """Abandon long-idle started attempts and delete old never-started ones.

    Scoped to one player when user_id is given, global otherwise.
    """
    now = now or utcnow()
    started_cutoff = now - timedelta(minutes=config.STALE_STARTED_MINUTES)
    unstarted_cutoff = now - timedelta(minutes=config.STALE_UNSTARTED_MINUTES)

    abandon = (
        update(_attempts)
        .where(_attempts.c.completed == false())
        .where(_attempts.c.started_at.is_not(None))
        .where(_attempts.c.started_at < started_cutoff)
        .values(completed=true(), eligible=false())
    )
    purge = (
        delete(_attempts)
        .where(_attempts.c.completed == false())
        .where(_attempts.c.started_at.is_(None))
        .where(_attempts.c.created_at < unstarted_cutoff)
    )
    if user_id is not None:
        abandon = abandon.where(_attempts.c.user_id == user_id)
        purge = purge.where(_attempts.c.user_id == user_id)

    abandoned = session.execute(abandon).rowcount
    deleted = session.execute(purge).rowcount
    session.commit()
    if abandoned or deleted:
        logger.info("stale_attempts_swept", extra={
            "user_id": user_id, "count": abandoned + deleted, "reason": f"abandoned={abandoned} deleted={deleted}",
        })
    return {"abandoned": abandoned, "deleted": deleted}
