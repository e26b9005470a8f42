"""
Tests for the external change reconciler and the polling change feed.
"""

import asyncio

from taskboard.backend import SqliteBackend
from taskboard.engine import BoardEngine, TagEngine
from taskboard.reconciler import (
    APPLIED,
    DEFERRED,
    IGNORED,
    REFETCHED,
    ChangeReconciler,
    PollingChangeFeed,
)
from taskboard.schema import ChangeEvent, EntityKind, EventKind, Tag, Task
from taskboard.state import BoardState, TagState

from conftest import BOARD, titles


def _wire(board_state, tag_state, backend):
    backend.seed(BOARD, board_state.columns)
    board_engine = BoardEngine(board_state, backend)
    tag_engine = TagEngine(tag_state, backend)
    return board_engine, tag_engine, ChangeReconciler(board_engine, tag_engine)


def _move(seq, task_id, destination, index, board_id="b1"):
    return ChangeEvent(seq=seq, entity_kind=EntityKind.TASK, event_kind=EventKind.MOVED, board_id=board_id,
                       payload={"id": task_id, "sourceColumnId": "?", "destinationColumnId": destination,
                                "destinationIndex": index})


def _task_event(seq, kind, column_id, task_id, title="Remote", position=0):
    payload = Task(id=task_id, title=title, position=position).to_dict()
    payload["columnId"] = column_id
    return ChangeEvent(seq=seq, entity_kind=EntityKind.TASK, event_kind=kind, board_id="b1", payload=payload)


# ━━━ Task events ━━━


def test_remote_move_applied_locally(board_state, tag_state, backend):
    _, _, reconciler = _wire(board_state, tag_state, backend)
    outcome = asyncio.run(reconciler.handle(_move(1, "t1", "done", 1)))
    assert outcome == APPLIED
    assert titles(board_state, "to-do") == ["T2", "T3"]
    assert titles(board_state, "done") == ["T4", "T1"]
    assert backend.called("move_task") == []


def test_remote_move_already_applied_is_ignored(board_state, tag_state, backend):
    _, _, reconciler = _wire(board_state, tag_state, backend)
    before = board_state.columns
    assert asyncio.run(reconciler.handle(_move(1, "t2", "to-do", 1))) == IGNORED
    assert board_state.columns is before


def test_remote_move_of_unknown_task_refetches(board_state, tag_state, backend):
    _, _, reconciler = _wire(board_state, tag_state, backend)
    assert asyncio.run(reconciler.handle(_move(1, "ghost", "done", 0))) == REFETCHED
    assert backend.called("get_board") == [("b1",)]


def test_remote_move_to_deleted_column_refetches(board_state, tag_state, backend):
    _, _, reconciler = _wire(board_state, tag_state, backend)
    assert asyncio.run(reconciler.handle(_move(1, "t1", "gone", 0))) == REFETCHED


def test_remote_move_out_of_range_refetches(board_state, tag_state, backend):
    _, _, reconciler = _wire(board_state, tag_state, backend)
    assert asyncio.run(reconciler.handle(_move(1, "t1", "done", 5))) == REFETCHED


def test_remote_create_is_idempotent(board_state, tag_state, backend):
    _, _, reconciler = _wire(board_state, tag_state, backend)
    event = _task_event(1, EventKind.CREATED, "in-progress", "t9")
    assert asyncio.run(reconciler.handle(event)) == APPLIED
    assert asyncio.run(reconciler.handle(event)) == IGNORED
    assert titles(board_state, "in-progress") == ["Remote"]


def test_remote_delete(board_state, tag_state, backend):
    _, _, reconciler = _wire(board_state, tag_state, backend)
    event = ChangeEvent(seq=1, entity_kind=EntityKind.TASK, event_kind=EventKind.DELETED, board_id="b1",
                        payload={"id": "t2", "columnId": "to-do"})
    assert asyncio.run(reconciler.handle(event)) == APPLIED
    assert titles(board_state, "to-do") == ["T1", "T3"]
    assert asyncio.run(reconciler.handle(event)) == IGNORED


def test_event_for_other_board_is_ignored(board_state, tag_state, backend):
    _, _, reconciler = _wire(board_state, tag_state, backend)
    assert asyncio.run(reconciler.handle(_move(1, "t1", "done", 0, board_id="b2"))) == IGNORED


# ━━━ Deferral ━━━


def test_event_for_busy_task_is_deferred_then_replayed(board_state, tag_state, backend):
    board_engine, _, reconciler = _wire(board_state, tag_state, backend)

    async def scenario():
        gate = backend.gate("update_task")
        update = asyncio.ensure_future(board_engine.update_task("t1", {"title": "mine"}))
        for _ in range(5):
            await asyncio.sleep(0)
        outcome = await reconciler.handle(_move(1, "t1", "done", 0))
        during = titles(board_state, "to-do")
        pending = reconciler.pending_count
        gate.set()
        await update
        await reconciler.flush()
        return outcome, during, pending

    outcome, during, pending = asyncio.run(scenario())
    assert outcome == DEFERRED
    assert during == ["mine", "T2", "T3"]
    assert pending == 1
    assert reconciler.pending_count == 0
    assert titles(board_state, "done") == ["mine", "T4"]


def test_moves_wait_for_drag_to_end(board_state, tag_state, backend):
    _, _, reconciler = _wire(board_state, tag_state, backend)

    async def scenario():
        board_state.set(is_dragging=True)
        outcome = await reconciler.handle(_move(1, "t1", "done", 0))
        during = titles(board_state, "done")
        board_state.set(is_dragging=False)
        await reconciler.flush()
        return outcome, during

    outcome, during = asyncio.run(scenario())
    assert outcome == DEFERRED
    assert during == ["T4"]
    assert titles(board_state, "done") == ["T1", "T4"]


def test_refetch_waits_for_in_flight_mutations(board_state, tag_state, backend):
    board_engine, _, reconciler = _wire(board_state, tag_state, backend)

    async def scenario():
        gate = backend.gate("delete_task")
        delete = asyncio.ensure_future(board_engine.delete_task("done", "t4"))
        for _ in range(5):
            await asyncio.sleep(0)
        await reconciler.refetch()
        fetched_early = len(backend.called("get_board"))
        gate.set()
        await delete
        await reconciler.flush()
        return fetched_early

    assert asyncio.run(scenario()) == 0
    assert len(backend.called("get_board")) == 1


# ━━━ Tags, columns, boards ━━━


def test_remote_tag_update_refreshes_tasks(board_state, tag_state, backend):
    board_engine, tag_engine, reconciler = _wire(board_state, tag_state, backend)
    bug = Tag(id="g1", board_id="b1", name="Bug", color="#FF0000")
    tag_engine.merge_tag(bug)
    board_engine._replace_task("t1", lambda t: Task(id=t.id, title=t.title, position=t.position, tags=(bug,)))
    renamed = Tag(id="g1", board_id="b1", name="Defect", color="#FF0000")
    event = ChangeEvent(seq=1, entity_kind=EntityKind.TAG, event_kind=EventKind.UPDATED, board_id="b1",
                        payload=renamed.to_dict())
    assert asyncio.run(reconciler.handle(event)) == APPLIED
    assert tag_state.tags[0].name == "Defect"
    assert board_state.find_task("t1")[0].tags[0].name == "Defect"

    deleted = ChangeEvent(seq=2, entity_kind=EntityKind.TAG, event_kind=EventKind.DELETED, board_id="b1",
                          payload={"id": "g1"})
    assert asyncio.run(reconciler.handle(deleted)) == APPLIED
    assert tag_state.tags == ()
    assert board_state.find_task("t1")[0].tags == ()


def test_remote_column_rename(board_state, tag_state, backend):
    _, _, reconciler = _wire(board_state, tag_state, backend)
    event = ChangeEvent(seq=1, entity_kind=EntityKind.COLUMN, event_kind=EventKind.UPDATED, board_id="b1",
                        payload={"id": "done", "title": "Shipped"})
    assert asyncio.run(reconciler.handle(event)) == APPLIED
    assert board_state.find_column("done").title == "Shipped"


def test_remote_column_create_refetches(board_state, tag_state, backend):
    _, _, reconciler = _wire(board_state, tag_state, backend)
    event = ChangeEvent(seq=1, entity_kind=EntityKind.COLUMN, event_kind=EventKind.CREATED, board_id="b1",
                        payload={"id": "review", "title": "Review", "position": 3})
    assert asyncio.run(reconciler.handle(event)) == REFETCHED
    assert backend.called("get_board") == [("b1",)]


def test_remote_board_delete_clears_current(board_state, tag_state, backend):
    _, _, reconciler = _wire(board_state, tag_state, backend)
    tag_state.set(tags=(Tag(id="g1", board_id="b1", name="Bug", color="#FF0000"),))
    event = ChangeEvent(seq=1, entity_kind=EntityKind.BOARD, event_kind=EventKind.DELETED, board_id="b1",
                        payload={"id": "b1"})
    assert asyncio.run(reconciler.handle(event)) == APPLIED
    assert board_state.board is None
    assert board_state.columns == ()
    assert tag_state.tags == ()


# ━━━ Polling feed over SQLite ━━━


def test_feed_delivers_other_clients_changes(tmp_path):
    db = str(tmp_path / "board.db")
    alice = SqliteBackend(db, client_id="alice")
    bob = SqliteBackend(db, client_id="bob")

    async def scenario():
        board = await alice.create_board("Shared")
        feed = PollingChangeFeed(bob, board.id, interval=0.01)
        await feed.prime()
        _, columns = await alice.get_board(board.id)
        await alice.create_task(columns[0].id, "From Alice")
        bob_events = await feed.poll()

        own_feed = PollingChangeFeed(alice, board.id)
        await own_feed.prime()
        await alice.create_task(columns[0].id, "Again")
        return bob_events, await own_feed.poll(), feed.since

    bob_events, alice_events, since = asyncio.run(scenario())
    assert [(e.entity_kind, e.event_kind) for e in bob_events] == [(EntityKind.TASK, EventKind.CREATED)]
    assert bob_events[0].payload["title"] == "From Alice"
    assert since == bob_events[0].seq
    assert alice_events == []


def test_two_sessions_converge(tmp_path):
    """A move by one client shows up in the other client's state."""
    db = str(tmp_path / "board.db")
    alice = SqliteBackend(db, client_id="alice")
    bob = SqliteBackend(db, client_id="bob")

    async def scenario():
        board = await alice.create_board("Shared")
        _, columns = await alice.get_board(board.id)
        todo, doing = columns[0].id, columns[1].id
        task = await alice.create_task(todo, "Ship it")

        state = BoardState()
        board_engine = BoardEngine(state, bob)
        reconciler = ChangeReconciler(board_engine, TagEngine(TagState(), bob))
        await board_engine.fetch_board(board.id)
        feed = PollingChangeFeed(bob, board.id)
        await feed.prime()

        await alice.move_task(task.id, todo, doing, 0)
        for event in await feed.poll():
            await reconciler.handle(event)
        return state, todo, doing

    state, todo, doing = asyncio.run(scenario())
    assert state.find_column(todo).tasks == ()
    assert [t.title for t in state.find_column(doing).tasks] == ["Ship it"]
