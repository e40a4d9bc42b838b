from typing import Optional
from sqlalchemy import BigInteger
from sqlmodel import SQLModel, Field
from datetime import datetime


class Player(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str
    is_admin: bool = False
    created_at: Optional[datetime] = None


class Puzzle(SQLModel, table=True):
    id: str = Field(primary_key=True)
    width: int
    height: int
    seed: int = Field(sa_type=BigInteger)
    solution: str  # row-major "0"/"1" per cell
    row_clues_json: str
    col_clues_json: str
    created_at: Optional[datetime] = None


class Attempt(SQLModel, table=True):
    id: str = Field(primary_key=True)
    puzzle_id: str = Field(foreign_key="puzzle.id")
    user_id: int = Field(foreign_key="player.id")
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None  # set only when solved
    duration_ms: Optional[int] = None
    completed: bool = False  # solved or abandoned
    eligible: bool = True
    shared: bool = False
    # cached grid snapshot; the move log is authoritative
    state_json: str = "[]"


class AttemptMove(SQLModel, table=True):
    attempt_id: str = Field(foreign_key="attempt.id", primary_key=True)
    seq: int = Field(primary_key=True)
    at_ms: int
    idx: int
    state: int
    created_at: Optional[datetime] = None


class ReplayView(SQLModel, table=True):
    user_id: int = Field(foreign_key="player.id", primary_key=True)
    puzzle_id: str = Field(foreign_key="puzzle.id", primary_key=True)
    viewed_at: Optional[datetime] = None
