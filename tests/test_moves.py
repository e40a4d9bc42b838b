from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import insert
from sqlmodel import SQLModel, Session, create_engine

from picross import attempts, crud, models, moves
from picross.errors import Conflict, InternalError


def setup_db(tmp_path):
    db = tmp_path / 'moves.db'
    engine = create_engine(f'sqlite:///{db}', connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    crud.engine = engine
    return engine


def _attempt(engine, started=True):
    with Session(engine) as s:
        player = crud.create_anonymous_player(s)
        a, _ = attempts.create_attempt(s, player.id, size=5, seed_source=lambda: 7)
        if started:
            attempts.start_attempt(s, a.id, player.id)
        return a.id


def test_append_assigns_contiguous_seqs(tmp_path):
    engine = setup_db(tmp_path)
    aid = _attempt(engine)
    with Session(engine) as s:
        seqs = [moves.append_move(s, aid, i, 1, i * 10, move_cap=100) for i in range(5)]
        s.commit()
        assert seqs == [1, 2, 3, 4, 5]
        assert moves.move_count(s, aid) == 5


def test_concurrent_appends_never_share_a_seq(tmp_path):
    engine = setup_db(tmp_path)
    aid = _attempt(engine)

    def one(i):
        with Session(engine) as s:
            seq = moves.append_move(s, aid, i % 25, 1, i, move_cap=1000)
            s.commit()
            return seq

    with ThreadPoolExecutor(max_workers=8) as ex:
        seqs = list(ex.map(one, range(40)))
    assert sorted(seqs) == list(range(1, 41))


def test_guard_refuses_unstarted_and_capped(tmp_path):
    engine = setup_db(tmp_path)
    unstarted = _attempt(engine, started=False)
    started = _attempt(engine)
    with Session(engine) as s:
        assert moves.append_move(s, unstarted, 0, 1, 0, move_cap=10) is None
        assert moves.append_move(s, started, 0, 1, 0, move_cap=2) == 1
        assert moves.append_move(s, started, 1, 1, 0, move_cap=2) == 2
        assert moves.append_move(s, started, 2, 1, 0, move_cap=2) is None
        s.commit()
        assert moves.move_count(s, started) == 2
        assert moves.move_count(s, unstarted) == 0


def test_materialize_orders_by_game_time_then_seq(tmp_path):
    engine = setup_db(tmp_path)
    aid = _attempt(engine)
    with Session(engine) as s:
        moves.append_move(s, aid, 0, 1, 100, move_cap=100)
        # arrives later but happened earlier in game time
        moves.append_move(s, aid, 0, 0, 50, move_cap=100)
        # same instant: the later seq wins
        moves.append_move(s, aid, 3, 2, 70, move_cap=100)
        moves.append_move(s, aid, 3, 1, 70, move_cap=100)
        s.commit()
        grid = moves.materialize(s, aid, 25)
        assert grid[0] == 1
        assert grid[3] == 1
        assert moves.materialize(s, aid, 25) == grid
        assert [m["atMs"] for m in moves.list_moves(s, aid)] == [50, 70, 70, 100]


def test_batch_is_sorted_before_seqs_are_assigned(tmp_path):
    engine = setup_db(tmp_path)
    aid = _attempt(engine)
    batch = [
        moves.PendingMove(idx=2, state=1, at_ms=30),
        moves.PendingMove(idx=0, state=1, at_ms=10),
        moves.PendingMove(idx=1, state=2, at_ms=20),
    ]
    with Session(engine) as s:
        out = moves.append_moves(s, aid, batch, move_cap=100)
        s.commit()
        assert out.seqs == [1, 2, 3]
        assert not out.rejected
        listed = moves.list_moves(s, aid)
        assert [(m["seq"], m["idx"]) for m in listed] == [(1, 0), (2, 1), (3, 2)]


def test_batch_stops_at_cap(tmp_path):
    engine = setup_db(tmp_path)
    aid = _attempt(engine)
    batch = [moves.PendingMove(idx=i, state=1, at_ms=i) for i in range(5)]
    with Session(engine) as s:
        out = moves.append_moves(s, aid, batch, move_cap=3)
        s.commit()
        assert out.seqs == [1, 2, 3]
        assert out.rejected


def test_materialize_rejects_moves_outside_grid(tmp_path):
    engine = setup_db(tmp_path)
    aid = _attempt(engine)
    with Session(engine) as s:
        moves.append_move(s, aid, 24, 1, 0, move_cap=100)
        s.commit()
        with pytest.raises(InternalError):
            moves.materialize(s, aid, 9)


def test_move_timestamps_groups_by_attempt(tmp_path):
    engine = setup_db(tmp_path)
    a1, a2 = _attempt(engine), _attempt(engine)
    with Session(engine) as s:
        moves.append_move(s, a1, 0, 1, 30, move_cap=100)
        moves.append_move(s, a1, 1, 1, 10, move_cap=100)
        moves.append_move(s, a2, 0, 1, 5, move_cap=100)
        s.commit()
        stamps = moves.move_timestamps(s, [a1, a2, "missing"])
    assert stamps == {a1: [10, 30], a2: [5], "missing": []}
    with Session(engine) as s:
        assert moves.move_timestamps(s, []) == {}


def test_seq_collision_is_a_conflict(tmp_path, monkeypatch):
    engine = setup_db(tmp_path)
    aid = _attempt(engine)
    table = models.AttemptMove.__table__

    def stale_seq_stmt(attempt_id, idx, state, at_ms, now, move_cap):
        # what a racing writer produces when it read max(seq) before our commit
        return insert(table).values(
            attempt_id=attempt_id, seq=1, at_ms=at_ms, idx=idx, state=state, created_at=now,
        ).returning(table.c.seq)

    with Session(engine) as s:
        assert moves.append_move(s, aid, 0, 1, 0, move_cap=100) == 1
        s.commit()
        monkeypatch.setattr(moves, "_append_stmt", stale_seq_stmt)
        with pytest.raises(Conflict):
            moves.append_move(s, aid, 1, 1, 5, move_cap=100)
        assert moves.move_count(s, aid) == 1


def test_seq_collision_reaches_callers_as_conflict(tmp_path, monkeypatch):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        player = crud.create_anonymous_player(s)
        a, _ = attempts.create_attempt(s, player.id, size=5, seed_source=lambda: 7)
        attempts.start_attempt(s, a.id, player.id)
        attempts.record_move(s, a.id, player.id, 0, 1)
        table = models.AttemptMove.__table__
        monkeypatch.setattr(
            moves, "_append_stmt",
            lambda attempt_id, idx, state, at_ms, now, move_cap: insert(table).values(
                attempt_id=attempt_id, seq=1, at_ms=at_ms, idx=idx, state=state, created_at=now,
            ).returning(table.c.seq),
        )
        with pytest.raises(Conflict):
            attempts.record_moves(s, a.id, player.id, [(1, 1, 0), (2, 1, 1)])
        monkeypatch.undo()
        _, _, grid = attempts.get_attempt(s, a.id, player.id)
        assert grid[:3] == [1, 0, 0]
