from fastapi import FastAPI, Depends, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlmodel import SQLModel, Session, create_engine
from pydantic import BaseModel, Field, field_validator
from typing import List, Optional
from starlette.middleware.base import BaseHTTPMiddleware

from . import attempts, config, crud, models
from .clock import iso
from .deps import get_current_player, get_optional_player, get_seed_source, get_session, player_token_from_request
from .errors import Conflict, InternalError, PicrossError
from .logging_utils import setup_logging, get_logger, request_id_ctx
from .rng import SeedSource

import logging
import time
import uuid


setup_logging(logging.INFO)
logger = get_logger("picross")
app = FastAPI(title="Picross Race")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx.set(rid)
        start = time.time()
        client = request.client.host if request.client else "-"
        ua = request.headers.get("user-agent", "-")
        response = None
        try:
            response = await call_next(request)
            return response
        except Exception:
            logger.exception(
                "request_error",
                extra={"path": str(request.url), "method": request.method},
            )
            raise
        finally:
            duration_ms = int((time.time() - start) * 1000)
            status = getattr(response, "status_code", 500)
            logger.info(
                "request",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": status,
                    "duration_ms": duration_ms,
                    "client": client,
                    "user_agent": ua,
                },
            )
            if response is not None:
                response.headers["X-Request-ID"] = rid
            request_id_ctx.reset(token)


app.add_middleware(RequestLoggingMiddleware)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Accept",
        "Content-Type",
        "Authorization",
        "X-Request-ID",
    ],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("validation_error", extra={"method": request.method, "path": request.url.path, "errors": exc.errors()})
    return JSONResponse(
        status_code=422,
        content={
            "detail": jsonable_errors(exc),
            "message": "Input validation failed"
        }
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may hold the raised ValueError itself, which json cannot encode
    return [{k: v for k, v in e.items() if k != "ctx"} for e in exc.errors()]


@app.exception_handler(PicrossError)
async def picross_exception_handler(request: Request, exc: PicrossError):
    if isinstance(exc, InternalError):
        logger.error("internal_error", extra={"path": request.url.path, "error": exc.detail})
    elif isinstance(exc, Conflict):
        logger.info("conflict", extra={"path": request.url.path, "reason": exc.detail})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.get("/health", include_in_schema=False)
def health():
    return JSONResponse({"status": "ok"})


@app.get("/api/cache/stats", include_in_schema=False)
def cache_stats():
    """Get cache statistics for monitoring"""
    from .cache import get_cache

    return JSONResponse({
        "cache_stats": get_cache().get_stats(),
        "status": "ok"
    })


@app.on_event("startup")
def on_startup():
    from .migrations import run_migrations

    db_path = config.DATABASE_URL
    if not db_path.startswith("sqlite"):
        engine = create_engine(
            db_path,
            echo=False,
            pool_pre_ping=True,
            pool_size=10,
            max_overflow=20,
            pool_recycle=1800,
        )
    else:
        engine = create_engine(db_path, echo=False, connect_args={"check_same_thread": False})

    SQLModel.metadata.create_all(engine)
    try:
        run_migrations(engine)
    except Exception as e:
        logger.warning("migrations_failed", extra={"error": str(e)})

    crud.engine = engine


class NewAttemptRequest(BaseModel):
    puzzleId: Optional[str] = Field(None, max_length=64)
    size: Optional[int] = None

    @field_validator('size')
    @classmethod
    def validate_size(cls, v):
        if v is not None and v not in config.ALLOWED_SIZES:
            raise ValueError(f"size must be one of {list(config.ALLOWED_SIZES)}")
        return v


class MoveRequest(BaseModel):
    idx: int
    state: int

    @field_validator('state')
    @classmethod
    def validate_state(cls, v):
        if v not in (0, 1, 2):
            raise ValueError('state must be 0, 1 or 2')
        return v


class BatchMove(MoveRequest):
    atMs: int = 0

    @field_validator('atMs', mode='before')
    @classmethod
    def clamp_at_ms(cls, v):
        # clients may report slightly negative times around the start
        if v is None or v == "":
            return 0
        return max(0, int(v))


class BatchMovesRequest(BaseModel):
    moves: List[BatchMove] = Field(..., min_length=1, max_length=config.MAX_BATCH)


def _attempt_payload(a: models.Attempt, state: Optional[list] = None) -> dict:
    payload = {
        "id": a.id,
        "puzzleId": a.puzzle_id,
        "eligible": bool(a.eligible),
        "completed": bool(a.completed),
        "status": attempts.attempt_status(a),
        "startedAt": iso(a.started_at),
        "finishedAt": iso(a.finished_at),
        "durationMs": a.duration_ms,
    }
    if state is not None:
        payload["state"] = state
    return payload


def _resolve_or_create_player(request: Request, response: Response, session: Session) -> models.Player:
    token = player_token_from_request(request)
    if token:
        pid = crud.verify_player_token(session, token)
        if pid is not None:
            player = session.get(models.Player, pid)
            if player is not None:
                return player
    player = crud.create_anonymous_player(session)
    if player.id is None:
        raise HTTPException(status_code=500, detail="player has no id")
    ptoken = crud.sign_player_token(session, player.id)
    response.set_cookie('player_token', ptoken or '', httponly=True, secure=config.COOKIE_SECURE, samesite='lax')
    return player


@app.post("/api/attempts/new")
def new_attempt(
    request: Request,
    response: Response,
    body: Optional[NewAttemptRequest] = None,
    session: Session = Depends(get_session),
    seed_source: SeedSource = Depends(get_seed_source),
):
    body = body or NewAttemptRequest()
    player = _resolve_or_create_player(request, response, session)
    a, puzzle = attempts.create_attempt(session, player.id, puzzle_id=body.puzzleId, size=body.size, seed_source=seed_source)
    grid = [0] * (puzzle.width * puzzle.height)
    return {
        "attempt": _attempt_payload(a, grid),
        "puzzle": crud.puzzle_payload(puzzle, with_clues=False),
    }


@app.get("/api/attempts/{attempt_id}")
def get_attempt(attempt_id: str, player: models.Player = Depends(get_current_player), session: Session = Depends(get_session)):
    a, puzzle, grid = attempts.get_attempt(session, attempt_id, player.id)
    # clues stay hidden until the clock is running
    return {
        "attempt": _attempt_payload(a, grid),
        "puzzle": crud.puzzle_payload(puzzle, with_clues=a.started_at is not None),
    }


@app.post("/api/attempts/{attempt_id}/start")
def start_attempt(attempt_id: str, player: models.Player = Depends(get_current_player), session: Session = Depends(get_session)):
    a, puzzle = attempts.start_attempt(session, attempt_id, player.id)
    return {"startedAt": iso(a.started_at), "puzzle": crud.puzzle_payload(puzzle)}


@app.post("/api/attempts/{attempt_id}/move")
def move(attempt_id: str, body: MoveRequest, player: models.Player = Depends(get_current_player),
         session: Session = Depends(get_session)):
    res = attempts.record_move(session, attempt_id, player.id, body.idx, body.state)
    if res.abandoned:
        return {"ok": True, "abandoned": True, "moveCount": res.move_count}
    return {"ok": True, "seq": res.seq, "atMs": res.at_ms}


@app.post("/api/attempts/{attempt_id}/moves")
def moves_batch(attempt_id: str, body: BatchMovesRequest, player: models.Player = Depends(get_current_player),
                session: Session = Depends(get_session)):
    entries = [(m.idx, m.state, m.atMs) for m in body.moves]
    res = attempts.record_moves(session, attempt_id, player.id, entries)
    if res.abandoned:
        return {"ok": True, "abandoned": True, "moveCount": res.move_count}
    return {"ok": True}


@app.post("/api/attempts/{attempt_id}/finish")
def finish(attempt_id: str, player: models.Player = Depends(get_current_player), session: Session = Depends(get_session)):
    res = attempts.finish_attempt(session, attempt_id, player.id)
    if not res.solved:
        return {"solved": False, "wrongRows": res.wrong_rows, "wrongCols": res.wrong_cols}
    return {"solved": True, "durationMs": res.duration_ms, "eligible": res.eligible}


@app.post("/api/attempts/{attempt_id}/abandon")
def abandon(attempt_id: str, player: models.Player = Depends(get_current_player), session: Session = Depends(get_session)):
    attempts.abandon_attempt(session, attempt_id, player.id)
    return {"ok": True}


@app.get("/api/replay/{attempt_id}")
def replay(attempt_id: str, viewer: Optional[models.Player] = Depends(get_optional_player),
           session: Session = Depends(get_session)):
    return crud.get_replay(session, attempt_id, viewer.id if viewer else None)


@app.get("/api/replay/{attempt_id}/check")
def replay_check(attempt_id: str, player: models.Player = Depends(get_current_player), session: Session = Depends(get_session)):
    return {"alreadyViewed": crud.replay_already_viewed(session, attempt_id, player.id)}


@app.post("/api/replay/{attempt_id}/share")
def replay_share(attempt_id: str, player: models.Player = Depends(get_current_player), session: Session = Depends(get_session)):
    return {"shared": crud.toggle_share(session, attempt_id, player.id)}


@app.get("/api/leaderboard")
def leaderboard(
    size: Optional[int] = None,
    period: Optional[str] = None,
    player: models.Player = Depends(get_current_player),
    session: Session = Depends(get_session),
):
    # unknown filters fall back to "all"
    filter_size = size if size in config.ALLOWED_SIZES else None
    filter_period = period if period in ("day", "week", "month") else None
    return {"leaderboard": crud.get_leaderboard(session, filter_size, filter_period)}


@app.get("/api/leaderboard/public")
def public_leaderboard(session: Session = Depends(get_session)):
    return crud.get_public_leaderboard(session)


@app.get("/api/games")
def games(
    page: int = 0,
    hideAbandoned: bool = False,
    player: models.Player = Depends(get_current_player),
    session: Session = Depends(get_session),
):
    return crud.list_games(session, player.id, page=max(0, page), hide_abandoned=hideAbandoned)


@app.post("/api/admin/cleanup")
def admin_cleanup(player: models.Player = Depends(get_current_player), session: Session = Depends(get_session)):
    if not player.is_admin:
        raise HTTPException(status_code=403, detail="admin only")
    from .cache import cleanup_expired_entries

    result = attempts.sweep_stale_attempts(session)
    result["cacheExpired"] = cleanup_expired_entries()
    return result
