from sqlmodel import Session
from sqlalchemy import case, desc, false, not_, and_, select as sa_select, true, update
from datetime import datetime, timedelta, timezone
from typing import Optional
import hashlib
import hmac
import json
import uuid

from . import config, game, models, moves
from .cache import cache_leaderboard, get_cached_leaderboard
from .clock import iso, utcnow
from .eligibility import has_viewed_replay, record_replay_view
from .errors import InternalError, NotFound
from .logging_utils import get_logger
from .pace import kde_path_for_attempt

logger = get_logger("picross.crud")

engine = None

_attempts = models.Attempt.__table__


def sign_player_token(db_session: Session, pid: int) -> Optional[str]:
    """Sign a player id into a token for cookie-based persistent identity."""
    if pid is None:
        return None
    if db_session.get(models.Player, pid) is None:
        return None
    val = str(pid)
    sig = hmac.new(config.SESSION_SECRET.encode(), val.encode(), hashlib.sha256).hexdigest()
    return f"{val}.{sig}"


def verify_player_token(db_session: Session, token: str) -> Optional[int]:
    try:
        pid_s, sig = token.rsplit('.', 1)
        pid = int(pid_s)
    except ValueError:
        return None
    expected = hmac.new(config.SESSION_SECRET.encode(), pid_s.encode(), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, sig):
        return None
    if db_session.get(models.Player, pid) is None:
        return None
    return pid


def create_anonymous_player(session: Session, is_admin: bool = False) -> models.Player:
    # lightweight player record so identity can persist in a cookie
    uname = f"anon-{uuid.uuid4().hex[:8]}"
    p = models.Player(username=uname, is_admin=is_admin, created_at=utcnow())
    session.add(p)
    session.commit()
    session.refresh(p)
    return p


def create_puzzle(session: Session, size: int, seed: int) -> models.Puzzle:
    gp = game.gen_puzzle(size, size, seed)
    puzzle = models.Puzzle(
        id=str(uuid.uuid4()),
        width=gp.width,
        height=gp.height,
        seed=gp.seed,
        solution=gp.solution,
        row_clues_json=json.dumps(gp.row_clues),
        col_clues_json=json.dumps(gp.col_clues),
        created_at=utcnow(),
    )
    session.add(puzzle)
    session.commit()
    session.refresh(puzzle)
    logger.info("puzzle_created", extra={"puzzle_id": puzzle.id})
    return puzzle


def get_puzzle(session: Session, puzzle_id: str) -> Optional[models.Puzzle]:
    return session.get(models.Puzzle, puzzle_id)


def puzzle_clues(puzzle: models.Puzzle):
    try:
        row_clues = json.loads(puzzle.row_clues_json)
        col_clues = json.loads(puzzle.col_clues_json)
    except ValueError:
        raise InternalError("stored puzzle is corrupt")
    if len(row_clues) != puzzle.height or len(col_clues) != puzzle.width:
        raise InternalError("stored puzzle is corrupt")
    return row_clues, col_clues


def puzzle_payload(puzzle: models.Puzzle, with_clues: bool = True) -> dict:
    payload = {
        "id": puzzle.id,
        "title": game.puzzle_title(puzzle.width, puzzle.height, puzzle.id),
        "width": puzzle.width,
        "height": puzzle.height,
    }
    if with_clues:
        row_clues, col_clues = puzzle_clues(puzzle)
        payload["rowClues"] = row_clues
        payload["colClues"] = col_clues
    return payload


def period_cutoff(period: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """Start of the current UTC day, week (Monday) or month; None for all time."""
    now = now or utcnow()
    day = datetime(now.year, now.month, now.day, tzinfo=timezone.utc)
    if period == "day":
        return day
    if period == "week":
        return day - timedelta(days=now.weekday())
    if period == "month":
        return day.replace(day=1)
    return None


def _leaderboard_rows(session: Session, size: Optional[int], cutoff: Optional[datetime], limit: int):
    stmt = (
        sa_select(
            models.Attempt.id,
            models.Attempt.puzzle_id,
            models.Attempt.duration_ms,
            models.Attempt.finished_at,
            models.Player.username,
            models.Puzzle.width,
            models.Puzzle.height,
        )
        .join(models.Player, models.Player.id == models.Attempt.user_id)
        .join(models.Puzzle, models.Puzzle.id == models.Attempt.puzzle_id)
        .where(models.Attempt.completed == true())
        .where(models.Attempt.eligible == true())
        .where(models.Attempt.duration_ms.is_not(None))
        .order_by(models.Attempt.duration_ms)
        .limit(limit)
    )
    if size is not None:
        stmt = stmt.where(models.Puzzle.width == size).where(models.Puzzle.height == size)
    if cutoff is not None:
        stmt = stmt.where(models.Attempt.finished_at >= cutoff)
    return session.execute(stmt).all()


def get_leaderboard(session: Session, size: Optional[int] = None, period: Optional[str] = None,
                    limit: Optional[int] = None):
    """Fastest eligible finishes, optionally filtered by square size and period.

    Each row carries the pace curve of its attempt as an SVG path.
    """
    cached = get_cached_leaderboard(size, period)
    if cached is not None:
        return cached

    rows = _leaderboard_rows(session, size, period_cutoff(period), limit or config.LEADERBOARD_LIMIT)
    stamps = moves.move_timestamps(session, [r[0] for r in rows])
    leaders = []
    for attempt_id, puzzle_id, duration_ms, finished_at, username, width, height in rows:
        leaders.append({
            'attemptId': attempt_id,
            'puzzleId': puzzle_id,
            'durationMs': duration_ms,
            'finishedAt': iso(finished_at),
            'username': username,
            'width': width,
            'height': height,
            'kdePath': kde_path_for_attempt(attempt_id, stamps[attempt_id], duration_ms),
        })
    cache_leaderboard(size, period, leaders, ttl_seconds=config.LEADERBOARD_TTL_SECONDS)
    return leaders


ADJECTIVES = [
    "Swift", "Clever", "Bold", "Calm", "Bright", "Keen", "Noble", "Warm",
    "Brave", "Lucky", "Quick", "Quiet", "Wise", "Wild", "Gentle", "Proud",
    "Sleek", "Witty", "Zesty", "Vivid", "Deft", "Grand", "Eager", "Fair",
    "Jolly", "Merry", "Peppy", "Spry", "Agile", "Hardy", "Plucky", "Sly",
]

ANIMALS = [
    "Falcon", "Otter", "Fox", "Owl", "Wolf", "Hare", "Lynx", "Crane",
    "Raven", "Panda", "Tiger", "Eagle", "Seal", "Koala", "Finch", "Dolphin",
    "Badger", "Hawk", "Deer", "Swan", "Cobra", "Ibis", "Wren", "Gecko",
    "Bison", "Shrike", "Quail", "Newt", "Viper", "Stork", "Heron", "Lark",
]


def _int32(v: int) -> int:
    v &= 0xFFFFFFFF
    return v - 0x100000000 if v & 0x80000000 else v


def anonymize(username: str) -> str:
    """Stable "Adjective Animal" pseudonym for public boards."""
    h = 0
    for ch in username:
        h = _int32((h << 5) - h + ord(ch))
    return f"{ADJECTIVES[abs(h) % len(ADJECTIVES)]} {ANIMALS[abs(h >> 8) % len(ANIMALS)]}"


def get_public_leaderboard(session: Session, top: int = 3) -> dict:
    boards = {}
    for size in config.ALLOWED_SIZES:
        rows = _leaderboard_rows(session, size, None, top)
        boards[f"leaderboard{size}"] = [
            {
                'username': anonymize(username),
                'durationMs': duration_ms,
                'finishedAt': iso(finished_at),
                'width': width,
                'height': height,
            }
            for _, _, duration_ms, finished_at, username, width, height in rows
        ]
    return boards


def list_games(session: Session, user_id: int, page: int = 0, hide_abandoned: bool = False, page_size: int = 10):
    """One page of the player's attempts, newest first."""
    from .attempts import attempt_status

    stmt = (
        sa_select(models.Attempt, models.Puzzle.width, models.Puzzle.height)
        .join(models.Puzzle, models.Puzzle.id == models.Attempt.puzzle_id)
        .where(models.Attempt.user_id == user_id)
        .order_by(desc(models.Attempt.created_at))
        .limit(page_size + 1)
        .offset(page * page_size)
    )
    if hide_abandoned:
        stmt = stmt.where(not_(and_(models.Attempt.completed == true(), models.Attempt.finished_at.is_(None))))
    rows = session.execute(stmt).all()
    games = [
        {
            'attemptId': a.id,
            'puzzleId': a.puzzle_id,
            'width': width,
            'height': height,
            'status': attempt_status(a),
            'durationMs': a.duration_ms,
            'createdAt': iso(a.created_at),
            'finishedAt': iso(a.finished_at),
        }
        for a, width, height in rows[:page_size]
    ]
    return {'games': games, 'hasMore': len(rows) > page_size, 'page': page}


def _completed_attempt(session: Session, attempt_id: str) -> Optional[models.Attempt]:
    a = session.get(models.Attempt, attempt_id)
    if a is None or not a.completed:
        return None
    return a


def get_replay(session: Session, attempt_id: str, viewer_id: Optional[int]) -> dict:
    """Replay of a completed attempt.

    Anyone signed in may watch; anonymous viewers only shared replays. A viewer
    who is not the owner gets a replay view recorded for the puzzle, which costs
    them leaderboard eligibility there.
    """
    a = _completed_attempt(session, attempt_id)
    if a is None or (viewer_id is None and not a.shared):
        raise NotFound("replay not found")
    puzzle = session.get(models.Puzzle, a.puzzle_id)
    owner = session.get(models.Player, a.user_id)
    if puzzle is None or owner is None:
        raise InternalError("attempt references missing rows")

    move_rows = moves.list_moves(session, a.id)

    if viewer_id is not None and viewer_id != a.user_id:
        record_replay_view(session, viewer_id, a.puzzle_id)
        session.commit()
        logger.info("replay_viewed", extra={"attempt_id": a.id, "puzzle_id": a.puzzle_id, "user_id": viewer_id})

    return {
        'attempt': {
            'id': a.id,
            'puzzleId': a.puzzle_id,
            'username': owner.username,
            'startedAt': iso(a.started_at),
            'finishedAt': iso(a.finished_at),
            'durationMs': a.duration_ms,
            'shared': bool(a.shared),
        },
        'puzzle': puzzle_payload(puzzle),
        'moves': move_rows,
        'kdePath': kde_path_for_attempt(a.id, [m['atMs'] for m in move_rows], a.duration_ms),
    }


def replay_already_viewed(session: Session, attempt_id: str, user_id: int) -> bool:
    a = _completed_attempt(session, attempt_id)
    if a is None:
        raise NotFound("attempt not found")
    return has_viewed_replay(session, user_id, a.puzzle_id)


def toggle_share(session: Session, attempt_id: str, user_id: int) -> bool:
    res = session.execute(
        update(_attempts)
        .where(_attempts.c.id == attempt_id)
        .where(_attempts.c.user_id == user_id)
        .where(_attempts.c.completed == true())
        .values(shared=case((_attempts.c.shared == true(), false()), else_=true()))
        .returning(_attempts.c.shared)
    )
    shared = res.scalar_one_or_none()
    if shared is None:
        session.rollback()
        raise NotFound("attempt not found")
    session.commit()
    return bool(shared)
