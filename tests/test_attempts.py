import json
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlmodel import SQLModel, Session, create_engine

from picross import attempts, crud, models
from picross.clock import as_utc, utcnow
from picross.clues import parse_solution
from picross.errors import Conflict, NotFound, ValidationFailed


def setup_db(tmp_path):
    db = tmp_path / 'attempts.db'
    engine = create_engine(f'sqlite:///{db}', connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    crud.engine = engine
    return engine


def _solution_cells(puzzle):
    bits = parse_solution(puzzle.solution, puzzle.width, puzzle.height)
    return [i for i, b in enumerate(bits) if b]


def _solve(session, attempt_id, user_id, puzzle, now=None):
    for idx in _solution_cells(puzzle):
        attempts.record_move(session, attempt_id, user_id, idx, 1, now=now)


def test_happy_path(tmp_path):
    engine = setup_db(tmp_path)
    t0 = utcnow()
    with Session(engine) as s:
        player = crud.create_anonymous_player(s)
        a, p = attempts.create_attempt(s, player.id, size=5, seed_source=lambda: 42, now=t0)
        assert attempts.attempt_status(a) == "unstarted"
        assert a.eligible is True
        assert p.width == 5 and p.height == 5 and p.seed == 42

        attempts.start_attempt(s, a.id, player.id, now=t0)
        assert attempts.attempt_status(a) == "started"

        res = attempts.record_move(s, a.id, player.id, 0, 2, now=t0 + timedelta(milliseconds=250))
        assert res.seq == 1 and res.at_ms == 250
        _solve(s, a.id, player.id, p, now=t0 + timedelta(seconds=1))

        fin = attempts.finish_attempt(s, a.id, player.id, now=t0 + timedelta(seconds=5))
        assert fin.solved
        assert fin.duration_ms == 5000
        assert fin.eligible is True

        s.refresh(a)
        assert attempts.attempt_status(a) == "solved"
        assert json.loads(a.state_json).count(1) == len(_solution_cells(p))


def test_start_twice_conflicts(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        player = crud.create_anonymous_player(s)
        a, _ = attempts.create_attempt(s, player.id, size=5, seed_source=lambda: 1)
        attempts.start_attempt(s, a.id, player.id)
        with pytest.raises(Conflict):
            attempts.start_attempt(s, a.id, player.id)


def test_actions_before_start_conflict(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        player = crud.create_anonymous_player(s)
        a, _ = attempts.create_attempt(s, player.id, size=5, seed_source=lambda: 1)
        with pytest.raises(Conflict):
            attempts.record_move(s, a.id, player.id, 0, 1)
        with pytest.raises(Conflict):
            attempts.record_moves(s, a.id, player.id, [(0, 1, 0)])
        with pytest.raises(Conflict):
            attempts.finish_attempt(s, a.id, player.id)
        with pytest.raises(Conflict):
            attempts.abandon_attempt(s, a.id, player.id)


def test_bad_cells_are_rejected(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        player = crud.create_anonymous_player(s)
        a, _ = attempts.create_attempt(s, player.id, size=5, seed_source=lambda: 1)
        attempts.start_attempt(s, a.id, player.id)
        with pytest.raises(ValidationFailed):
            attempts.record_move(s, a.id, player.id, 25, 1)
        with pytest.raises(ValidationFailed):
            attempts.record_move(s, a.id, player.id, -1, 1)
        with pytest.raises(ValidationFailed):
            attempts.record_move(s, a.id, player.id, 0, 3)
        # one bad entry rejects the whole batch
        with pytest.raises(ValidationFailed):
            attempts.record_moves(s, a.id, player.id, [(0, 1, 0), (99, 1, 5)])
        with pytest.raises(ValidationFailed):
            attempts.record_moves(s, a.id, player.id, [])
        _, _, grid = attempts.get_attempt(s, a.id, player.id)
        assert grid == [0] * 25


def test_other_players_attempt_is_not_found(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        alice = crud.create_anonymous_player(s)
        bob = crud.create_anonymous_player(s)
        a, _ = attempts.create_attempt(s, alice.id, size=5, seed_source=lambda: 1)
        with pytest.raises(NotFound):
            attempts.start_attempt(s, a.id, bob.id)
        with pytest.raises(NotFound):
            attempts.get_attempt(s, a.id, bob.id)
        with pytest.raises(NotFound):
            attempts.abandon_attempt(s, a.id, bob.id)
        with pytest.raises(NotFound):
            attempts.finish_attempt(s, "nope", alice.id)
        with pytest.raises(NotFound):
            attempts.create_attempt(s, alice.id, puzzle_id="missing")


def test_unsolved_finish_keeps_attempt_open(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        player = crud.create_anonymous_player(s)
        a, p = attempts.create_attempt(s, player.id, size=5, seed_source=lambda: 42)
        attempts.start_attempt(s, a.id, player.id)
        empty = next(i for i in range(25) if i not in _solution_cells(p))
        attempts.record_move(s, a.id, player.id, empty, 1)

        fin = attempts.finish_attempt(s, a.id, player.id)
        assert not fin.solved
        assert fin.wrong_rows > 0 and fin.wrong_cols > 0

        s.refresh(a)
        assert attempts.attempt_status(a) == "started"
        assert json.loads(a.state_json)[empty] == 1

        # still playable
        attempts.record_move(s, a.id, player.id, empty, 0)
        _solve(s, a.id, player.id, p)
        assert attempts.finish_attempt(s, a.id, player.id).solved


def test_finished_attempt_refuses_everything(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        player = crud.create_anonymous_player(s)
        a, p = attempts.create_attempt(s, player.id, size=5, seed_source=lambda: 42)
        attempts.start_attempt(s, a.id, player.id)
        _solve(s, a.id, player.id, p)
        attempts.finish_attempt(s, a.id, player.id)
        with pytest.raises(Conflict):
            attempts.finish_attempt(s, a.id, player.id)
        with pytest.raises(Conflict):
            attempts.record_move(s, a.id, player.id, 0, 1)
        with pytest.raises(Conflict):
            attempts.abandon_attempt(s, a.id, player.id)
        with pytest.raises(Conflict):
            attempts.start_attempt(s, a.id, player.id)


def test_concurrent_finish_commits_once(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        player = crud.create_anonymous_player(s)
        a, p = attempts.create_attempt(s, player.id, size=5, seed_source=lambda: 42)
        attempts.start_attempt(s, a.id, player.id)
        _solve(s, a.id, player.id, p)
        aid, uid = a.id, player.id

    def finish(_):
        with Session(engine) as s:
            try:
                return attempts.finish_attempt(s, aid, uid)
            except Conflict:
                return "conflict"

    with ThreadPoolExecutor(max_workers=6) as ex:
        results = list(ex.map(finish, range(6)))
    winners = [r for r in results if r != "conflict"]
    assert len(winners) == 1
    assert results.count("conflict") == 5
    assert winners[0].solved

    with Session(engine) as s:
        stored = s.get(models.Attempt, aid)
        assert as_utc(stored.finished_at) == winners[0].finished_at
        assert stored.duration_ms == winners[0].duration_ms
        assert stored.eligible is winners[0].eligible


def test_abandon(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        player = crud.create_anonymous_player(s)
        a, _ = attempts.create_attempt(s, player.id, size=5, seed_source=lambda: 3)
        attempts.start_attempt(s, a.id, player.id)
        attempts.abandon_attempt(s, a.id, player.id)
        s.refresh(a)
        assert attempts.attempt_status(a) == "abandoned"
        assert a.eligible is False
        assert a.finished_at is None and a.duration_ms is None


def test_move_cap_abandons_attempt(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        player = crud.create_anonymous_player(s)
        a, _ = attempts.create_attempt(s, player.id, size=5, seed_source=lambda: 3)
        attempts.start_attempt(s, a.id, player.id)
        for i in range(3):
            assert not attempts.record_move(s, a.id, player.id, i, 1, move_cap=3).abandoned
        res = attempts.record_move(s, a.id, player.id, 4, 1, move_cap=3)
        assert res.abandoned
        assert res.move_count == 3

        s.refresh(a)
        assert attempts.attempt_status(a) == "abandoned"
        assert a.eligible is False

        # later moves keep getting the same answer and store nothing
        again = attempts.record_move(s, a.id, player.id, 5, 1, move_cap=3)
        assert again.abandoned and again.move_count == 3
        batch = attempts.record_moves(s, a.id, player.id, [(6, 1, 0), (7, 1, 1)], move_cap=3)
        assert batch.abandoned and batch.move_count == 3
        _, _, grid = attempts.get_attempt(s, a.id, player.id)
        assert sum(grid) == 3


def test_moves_after_manual_abandon_conflict(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        player = crud.create_anonymous_player(s)
        a, _ = attempts.create_attempt(s, player.id, size=5, seed_source=lambda: 3)
        attempts.start_attempt(s, a.id, player.id)
        attempts.record_move(s, a.id, player.id, 0, 1)
        attempts.abandon_attempt(s, a.id, player.id)
        with pytest.raises(Conflict, match="abandoned"):
            attempts.record_move(s, a.id, player.id, 1, 1)
        with pytest.raises(Conflict, match="abandoned"):
            attempts.record_moves(s, a.id, player.id, [(1, 1, 0)])


def test_batch_hitting_cap_keeps_moves_up_to_cap(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        player = crud.create_anonymous_player(s)
        a, _ = attempts.create_attempt(s, player.id, size=5, seed_source=lambda: 3)
        attempts.start_attempt(s, a.id, player.id)
        res = attempts.record_moves(s, a.id, player.id, [(i, 1, i) for i in range(6)], move_cap=4)
        assert res.abandoned and res.move_count == 4
        _, _, grid = attempts.get_attempt(s, a.id, player.id)
        assert grid[:6] == [1, 1, 1, 1, 0, 0]


def test_get_attempt_repairs_snapshot(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        player = crud.create_anonymous_player(s)
        a, _ = attempts.create_attempt(s, player.id, size=5, seed_source=lambda: 3)
        attempts.start_attempt(s, a.id, player.id)
        attempts.record_move(s, a.id, player.id, 7, 2)
        s.execute(update(models.Attempt.__table__).where(models.Attempt.__table__.c.id == a.id)
                  .values(state_json="garbage"))
        s.commit()

        a2, _, grid = attempts.get_attempt(s, a.id, player.id)
        assert grid[7] == 2 and sum(grid) == 2
        assert json.loads(a2.state_json) == grid


def test_sweep_stale_attempts(tmp_path):
    engine = setup_db(tmp_path)
    old = utcnow() - timedelta(hours=5)
    with Session(engine) as s:
        player = crud.create_anonymous_player(s)
        other = crud.create_anonymous_player(s)
        stale_started, _ = attempts.create_attempt(s, player.id, size=5, seed_source=lambda: 3, now=old)
        attempts.start_attempt(s, stale_started.id, player.id, now=old)
        stale_unstarted, _ = attempts.create_attempt(s, player.id, size=5, seed_source=lambda: 4, now=old)
        fresh, _ = attempts.create_attempt(s, other.id, size=5, seed_source=lambda: 5)
        ids = (stale_started.id, stale_unstarted.id, fresh.id)

    with Session(engine) as s:
        assert attempts.sweep_stale_attempts(s) == {"abandoned": 1, "deleted": 1}

    with Session(engine) as s:
        started = s.get(models.Attempt, ids[0])
        assert attempts.attempt_status(started) == "abandoned"
        assert started.eligible is False
        assert s.get(models.Attempt, ids[1]) is None
        assert attempts.attempt_status(s.get(models.Attempt, ids[2])) == "unstarted"
        assert attempts.sweep_stale_attempts(s) == {"abandoned": 0, "deleted": 0}


def test_create_attempt_sweeps_only_own_attempts(tmp_path):
    engine = setup_db(tmp_path)
    old = utcnow() - timedelta(hours=2)
    with Session(engine) as s:
        alice = crud.create_anonymous_player(s)
        bob = crud.create_anonymous_player(s)
        a_old, _ = attempts.create_attempt(s, alice.id, size=5, seed_source=lambda: 3, now=old)
        b_old, _ = attempts.create_attempt(s, bob.id, size=5, seed_source=lambda: 3, now=old)
        ids = (a_old.id, b_old.id)
        attempts.create_attempt(s, alice.id, size=5, seed_source=lambda: 9)

    with Session(engine) as s:
        assert s.get(models.Attempt, ids[0]) is None
        assert s.get(models.Attempt, ids[1]) is not None
