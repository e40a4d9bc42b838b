from typing import Optional

from fastapi import Depends, HTTPException, Request
from sqlmodel import Session

from . import crud, models
from .rng import SeedSource, random_u32


def get_session():
    # simple dependency that yields a session
    with Session(crud.engine) as session:
        yield session


def get_seed_source() -> SeedSource:
    # overridden in tests to make generated puzzles reproducible
    return random_u32


def player_token_from_request(request: Request) -> Optional[str]:
    auth = request.headers.get('authorization')
    if auth and auth.lower().startswith('bearer '):
        return auth.split(' ', 1)[1].strip()
    return request.cookies.get('player_token')


def get_optional_player(request: Request, session: Session = Depends(get_session)) -> Optional[models.Player]:
    token = player_token_from_request(request)
    if not token:
        return None
    pid = crud.verify_player_token(session, token)
    if pid is None:
        return None
    return session.get(models.Player, pid)


def get_current_player(player: Optional[models.Player] = Depends(get_optional_player)) -> models.Player:
    if player is None:
        raise HTTPException(status_code=401, detail="not signed in")
    return player
