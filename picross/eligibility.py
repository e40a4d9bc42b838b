"""
Leaderboard eligibility.

An attempt loses eligibility when its owner has viewed a replay of any attempt
at the same puzzle, or holds another started attempt at that puzzle. Both
checks are SQL expressions evaluated inside the statement that writes the
flag (the attempt INSERT at creation, the finishing UPDATE), so a replay view
or parallel attempt landing between check and write cannot slip through.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import and_, case, exists, false, or_, select, true
from sqlalchemy.dialects import postgresql, sqlite
from sqlmodel import Session

from . import models
from .clock import utcnow
from .errors import InternalError

_attempts = models.Attempt.__table__
_views = models.ReplayView.__table__


def _viewed_replay(user_id_expr, puzzle_id_expr):
    return exists().where(_views.c.user_id == user_id_expr, _views.c.puzzle_id == puzzle_id_expr)


def _other_started_attempt(user_id_expr, puzzle_id_expr, exclude_id_expr=None):
    other = _attempts.alias("other_attempt")
    conds = [
        other.c.user_id == user_id_expr,
        other.c.puzzle_id == puzzle_id_expr,
        other.c.started_at.is_not(None),
    ]
    if exclude_id_expr is not None:
        conds.append(other.c.id != exclude_id_expr)
    return exists().where(and_(*conds))


def creation_eligibility(user_id: int, puzzle_id: str):
    """Eligibility of a brand new attempt, for use inside its INSERT."""
    return case(
        (or_(_viewed_replay(user_id, puzzle_id), _other_started_attempt(user_id, puzzle_id)), false()),
        else_=true(),
    )


def finish_eligibility():
    """Eligibility recomputed at finish, correlated to the attempt row being updated."""
    t = _attempts.c
    return case(
        (t.eligible == false(), false()),
        (_viewed_replay(t.user_id, t.puzzle_id), false()),
        (_other_started_attempt(t.user_id, t.puzzle_id, t.id), false()),
        else_=t.eligible,
    )


def record_replay_view(session: Session, user_id: int, puzzle_id: str, now: Optional[datetime] = None) -> None:
    now = now or utcnow()
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(_views)
    elif dialect == "sqlite":
        stmt = sqlite.insert(_views)
    else:
        raise InternalError(f"replay views not supported on {dialect}")
    stmt = stmt.values(user_id=user_id, puzzle_id=puzzle_id, viewed_at=now)
    stmt = stmt.on_conflict_do_update(index_elements=["user_id", "puzzle_id"], set_={"viewed_at": now})
    session.execute(stmt)


def has_viewed_replay(session: Session, user_id: int, puzzle_id: str) -> bool:
    row = session.execute(
        select(_views.c.user_id)
        .where(_views.c.user_id == user_id, _views.c.puzzle_id == puzzle_id)
        .limit(1)
    ).first()
    return row is not None
