import json
from datetime import datetime, timezone

import pytest

psycopg = pytest.importorskip("psycopg")

from grubmatch.backend.errors import NotFoundError, StoreError, UnauthorizedError
from grubmatch.backend.schemas import Preferences, Swipe
from grubmatch.backend.store import PostgresGroupStore

CREATED_AT = datetime(2024, 1, 1, tzinfo=timezone.utc)
MEMBERS = [
    {"id": "m-host", "name": "Alice", "isHost": True, "joinedAt": CREATED_AT.isoformat(), "doneSwiping": True},
    {"id": "m-bob", "name": "Bob", "isHost": False, "joinedAt": CREATED_AT.isoformat(), "doneSwiping": False},
]


def _group_row(leader_token: str = "leader-1") -> tuple:
    return ("group-1", "ABC234", "Friday Dinner", "waiting", json.dumps(MEMBERS), None, CREATED_AT, leader_token)


class _FakeCursor:
    def __init__(self, results: list) -> None:
        self.commands: list[tuple[str, tuple]] = []
        self.results = list(results)
        self.rowcount = 0

    def execute(self, sql: str, params: tuple) -> None:
        self.commands.append((sql, params))

    def fetchone(self):
        return self.results.pop(0) if self.results else None

    def fetchall(self):
        return self.results.pop(0) if self.results else []

    def __enter__(self) -> "_FakeCursor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


class _FakeConnection:
    def __init__(self, results: list) -> None:
        self.cursor_instance = _FakeCursor(results)
        self.committed = False

    def cursor(self) -> _FakeCursor:
        return self.cursor_instance

    def commit(self) -> None:
        self.committed = True

    def __enter__(self) -> "_FakeConnection":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


class _PostgresStoreWithFakeConnection(PostgresGroupStore):
    def __init__(self, results: list | None = None) -> None:
        super().__init__(database_url="postgresql://local")
        self.fake_connection = _FakeConnection(results or [])

    def _connect(self) -> _FakeConnection:
        return self.fake_connection

    @property
    def commands(self) -> list[tuple[str, tuple]]:
        return self.fake_connection.cursor_instance.commands


def test_postgres_create_group_inserts_row_with_leader_token() -> None:
    store = _PostgresStoreWithFakeConnection()

    created = store.create_group(name="Friday Dinner", host_name="Alice")

    assert store.fake_connection.committed is True
    sql, params = store.commands[0]
    assert "INSERT INTO groups" in sql
    assert params[0] == created.group.id
    assert params[1] == created.group.code
    assert params[5] == created.leader_token


def test_postgres_record_swipe_upserts_under_row_lock() -> None:
    store = _PostgresStoreWithFakeConnection(results=[_group_row()])

    store.record_swipe("group-1", Swipe(member_id="m-bob", restaurant_id="r1", liked=True))

    assert store.fake_connection.committed is True
    assert "FOR UPDATE" in store.commands[0][0]
    assert "ON CONFLICT (group_id, member_id, restaurant_id)" in store.commands[1][0]
    assert store.commands[1][1][:4] == ("group-1", "m-bob", "r1", True)


def test_postgres_record_swipe_rejects_non_member_without_commit() -> None:
    store = _PostgresStoreWithFakeConnection(results=[_group_row()])

    with pytest.raises(NotFoundError):
        store.record_swipe("group-1", Swipe(member_id="stranger", restaurant_id="r1", liked=True))

    assert store.fake_connection.committed is False
    assert len(store.commands) == 1


def test_postgres_missing_group_raises_not_found() -> None:
    store = _PostgresStoreWithFakeConnection(results=[])

    with pytest.raises(NotFoundError):
        store.mark_done_swiping("group-1", "m-bob")


def test_postgres_start_session_clears_round_and_resets_done_flags() -> None:
    store = _PostgresStoreWithFakeConnection(results=[_group_row()])

    group = store.start_session("group-1", Preferences(location="94107"))

    statements = [sql for sql, _ in store.commands]
    assert any("DELETE FROM group_swipes" in sql for sql in statements)
    assert any("DELETE FROM group_candidates" in sql for sql in statements)
    assert group.status == "swiping"
    assert all(member.done_swiping is False for member in group.members)


def test_postgres_claim_leadership_rejects_wrong_token() -> None:
    store = _PostgresStoreWithFakeConnection(results=[_group_row(leader_token="leader-1")])

    with pytest.raises(UnauthorizedError):
        store.claim_leadership("group-1", leader_token="LEADER-1", member_name="Alice")

    assert store.fake_connection.committed is False


def test_postgres_claim_leadership_reattaches_named_member() -> None:
    store = _PostgresStoreWithFakeConnection(results=[_group_row(leader_token="leader-1")])

    claim = store.claim_leadership("group-1", leader_token="leader-1", member_name="Bob")

    assert claim.reattached is True
    assert claim.member.id == "m-bob"
    assert "UPDATE groups SET members" in store.commands[1][0]


def test_postgres_snapshot_reads_swipes_and_candidates() -> None:
    swipe_rows = [("m-bob", "r1", True, False, CREATED_AT)]
    candidate_row = ([{"id": "r1", "name": "Bella Italia", "cuisine": "Italian", "priceRange": "$$", "rating": 4.5}],)
    store = _PostgresStoreWithFakeConnection(results=[_group_row(), swipe_rows, candidate_row])

    snapshot = store.snapshot("group-1")

    assert snapshot.group.code == "ABC234"
    assert [swipe.restaurant_id for swipe in snapshot.swipes] == ["r1"]
    assert snapshot.candidates is not None
    assert snapshot.candidates[0].name == "Bella Italia"


def test_postgres_driver_errors_become_store_errors() -> None:
    class _FailingStore(_PostgresStoreWithFakeConnection):
        def _connect(self):
            raise psycopg.OperationalError("connection refused")

    with pytest.raises(StoreError):
        _FailingStore().get_group("group-1")
