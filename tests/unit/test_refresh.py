import sqlite3
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from authtokens.errors import (
    AlreadyRevoked,
    NotFound,
    RefreshTokenExpired,
    RefreshTokenStoreError,
)
from authtokens.refresh import InMemoryRefreshTokenStore, SQLiteRefreshTokenStore

BASE_TIME = 1_700_000_000


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryRefreshTokenStore(retention_seconds=100)
        return
    sqlite_store = SQLiteRefreshTokenStore(str(tmp_path / "refresh.db"), retention_seconds=100)
    try:
        yield sqlite_store
    finally:
        sqlite_store.close()


@pytest.fixture()
def frozen_time(monkeypatch):
    current = {"now": BASE_TIME}
    monkeypatch.setattr("authtokens.refresh.time.time", lambda: current["now"])
    return current


def test_issue_creates_active_record(store, frozen_time) -> None:
    token = store.issue("u1", ttl_seconds=60)

    record = store.get(token)
    assert record is not None
    assert record.user_id == "u1"
    assert record.revoked is False
    assert record.created_at == BASE_TIME
    assert record.expires_at == BASE_TIME + 60
    assert store.is_active(token) is True


def test_issued_tokens_are_unique_and_unpredictable(store) -> None:
    tokens = {store.issue("u1", ttl_seconds=60) for _ in range(50)}

    assert len(tokens) == 50
    assert all(len(token) >= 40 for token in tokens)


def test_issue_accepts_caller_value_and_rejects_duplicates(store) -> None:
    assert store.issue("u1", ttl_seconds=60, token="signed-value") == "signed-value"

    with pytest.raises(RefreshTokenStoreError, match="duplicado"):
        store.issue("u2", ttl_seconds=60, token="signed-value")


def test_issue_validates_arguments(store) -> None:
    with pytest.raises(ValueError, match="user_id"):
        store.issue(" ", ttl_seconds=60)
    with pytest.raises(ValueError, match="ttl_seconds"):
        store.issue("u1", ttl_seconds=0)


def test_unknown_token_is_not_active(store) -> None:
    assert store.get("missing") is None
    assert store.is_active("missing") is False


def test_expired_token_is_not_active(store, frozen_time) -> None:
    token = store.issue("u1", ttl_seconds=5)

    frozen_time["now"] = BASE_TIME + 5
    assert store.is_active(token) is False


def test_rotate_revokes_old_and_issues_new(store, frozen_time) -> None:
    old = store.issue("u1", ttl_seconds=60)

    new = store.rotate(old, "u1", ttl_seconds=60)

    assert new != old
    assert store.is_active(old) is False
    assert store.is_active(new) is True
    old_record = store.get(old)
    assert old_record.revoked is True
    assert old_record.revoked_at == BASE_TIME
    assert old_record.replaced_by == new


def test_rotate_twice_fails_with_already_revoked(store) -> None:
    old = store.issue("u1", ttl_seconds=60)
    store.rotate(old, "u1", ttl_seconds=60)

    with pytest.raises(AlreadyRevoked):
        store.rotate(old, "u1", ttl_seconds=60)


def test_rotate_unknown_or_foreign_token_fails_with_not_found(store) -> None:
    token = store.issue("u1", ttl_seconds=60)

    with pytest.raises(NotFound):
        store.rotate("missing", "u1", ttl_seconds=60)
    with pytest.raises(NotFound):
        store.rotate(token, "u2", ttl_seconds=60)

    assert store.is_active(token) is True


def test_rotate_expired_token_revokes_it(store, frozen_time) -> None:
    token = store.issue("u1", ttl_seconds=5)
    frozen_time["now"] = BASE_TIME + 10

    with pytest.raises(RefreshTokenExpired):
        store.rotate(token, "u1", ttl_seconds=60)

    record = store.get(token)
    assert record.revoked is True
    assert record.replaced_by is None


def test_rotate_with_duplicate_new_value_keeps_old_token(store) -> None:
    old = store.issue("u1", ttl_seconds=60)
    store.issue("u1", ttl_seconds=60, token="taken")

    with pytest.raises(RefreshTokenStoreError):
        store.rotate(old, "u1", ttl_seconds=60, new_token="taken")

    assert store.is_active(old) is True


def test_revoke_is_idempotent(store) -> None:
    token = store.issue("u1", ttl_seconds=60)

    assert store.revoke(token) is True
    assert store.revoke(token) is False
    assert store.revoke("missing") is False
    assert store.is_active(token) is False
    # Revogar nao apaga o registro.
    assert store.get(token) is not None


def test_revoked_token_cannot_be_rotated(store) -> None:
    token = store.issue("u1", ttl_seconds=60)
    store.revoke(token)

    with pytest.raises(AlreadyRevoked):
        store.rotate(token, "u1", ttl_seconds=60)


def test_revoke_all_only_touches_owner(store) -> None:
    mine = [store.issue("u1", ttl_seconds=60) for _ in range(3)]
    store.revoke(mine[0])
    theirs = store.issue("u2", ttl_seconds=60)

    assert store.revoke_all("u1") == 2
    assert not any(store.is_active(token) for token in mine)
    assert store.is_active(theirs) is True
    assert store.revoke_all("u1") == 0


def test_purge_respects_retention_window(store, frozen_time) -> None:
    rotated = store.issue("u1", ttl_seconds=10)
    store.rotate(rotated, "u1", ttl_seconds=1000)
    live = store.issue("u1", ttl_seconds=1000)

    # Expirado, mas ainda dentro da janela de retencao.
    assert store.purge_expired(now=BASE_TIME + 50) == 0
    assert store.get(rotated) is not None

    assert store.purge_expired(now=BASE_TIME + 110) == 1
    assert store.get(rotated) is None
    assert store.get(live) is not None


def test_concurrent_rotation_has_single_winner(store) -> None:
    token = store.issue("u1", ttl_seconds=60)
    workers = 8
    barrier = threading.Barrier(workers)

    def attempt():
        barrier.wait()
        try:
            return store.rotate(token, "u1", ttl_seconds=60)
        except (AlreadyRevoked, NotFound):
            return None

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(lambda _: attempt(), range(workers)))

    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert store.is_active(winners[0]) is True
    assert store.get(token).replaced_by == winners[0]


def test_concurrent_rotate_and_revoke_resolve_deterministically(store) -> None:
    token = store.issue("u1", ttl_seconds=60)
    barrier = threading.Barrier(2)
    outcome = {}

    def do_rotate():
        barrier.wait()
        try:
            outcome["rotate"] = store.rotate(token, "u1", ttl_seconds=60)
        except AlreadyRevoked:
            outcome["rotate"] = None

    def do_revoke():
        barrier.wait()
        outcome["revoke"] = store.revoke(token)

    threads = [threading.Thread(target=do_rotate), threading.Thread(target=do_revoke)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    # Exatamente um dos dois efetivou a transicao.
    assert (outcome["rotate"] is not None) != outcome["revoke"]
    assert store.is_active(token) is False


def test_sqlite_cleanup_runs_on_interval(monkeypatch, tmp_path) -> None:
    current = {"now": BASE_TIME}
    monkeypatch.setattr("authtokens.refresh.time.time", lambda: current["now"])

    store = SQLiteRefreshTokenStore(
        str(tmp_path / "refresh.db"), retention_seconds=0, cleanup_interval_seconds=1
    )
    try:
        stale = store.issue("u1", ttl_seconds=5)
        current["now"] = BASE_TIME + 10
        store.issue("u1", ttl_seconds=5)
        assert store.get(stale) is None
    finally:
        store.close()


def test_sqlite_reads_do_not_wait_for_pending_writes(tmp_path) -> None:
    db_path = tmp_path / "refresh.db"
    store = SQLiteRefreshTokenStore(str(db_path))
    writer = sqlite3.connect(str(db_path), isolation_level=None)
    try:
        busy = store.issue("u1", ttl_seconds=60)
        other = store.issue("u2", ttl_seconds=60)

        # Segura o lock de escrita do banco.
        writer.execute("BEGIN IMMEDIATE")
        writer.execute("UPDATE refresh_tokens SET revoked = 0 WHERE token = ?", (busy,))

        outcome = {}
        pending = threading.Thread(target=lambda: outcome.update(revoked=store.revoke(busy)))
        pending.start()
        time.sleep(0.2)

        start = time.monotonic()
        assert store.is_active(other) is True
        assert store.get(busy).revoked is False
        elapsed = time.monotonic() - start

        writer.execute("ROLLBACK")
        pending.join(timeout=5)

        assert elapsed < 0.5
        assert outcome == {"revoked": True}
        assert store.is_active(busy) is False
    finally:
        writer.close()
        store.close()


def test_sqlite_failed_revoke_releases_write_lock(tmp_path) -> None:
    db_path = tmp_path / "refresh.db"
    store = SQLiteRefreshTokenStore(str(db_path))
    admin = sqlite3.connect(str(db_path), isolation_level=None, timeout=0.5)
    try:
        token = store.issue("u1", ttl_seconds=60)
        admin.execute(
            """
            CREATE TRIGGER block_updates BEFORE UPDATE ON refresh_tokens
            BEGIN SELECT RAISE(ABORT, 'bloqueado'); END
            """
        )

        with pytest.raises(sqlite3.DatabaseError):
            store.revoke(token)
        with pytest.raises(sqlite3.DatabaseError):
            store.revoke_all("u1")

        # Nenhuma transacao ficou aberta segurando o lock de escrita.
        admin.execute("BEGIN IMMEDIATE")
        admin.execute("DROP TRIGGER block_updates")
        admin.execute("COMMIT")

        assert store.is_active(token) is True
        assert store.revoke(token) is True
        assert store.is_active(store.issue("u1", ttl_seconds=60)) is True
    finally:
        admin.close()
        store.close()


def test_sqlite_close_releases_connections_from_all_threads(tmp_path) -> None:
    store = SQLiteRefreshTokenStore(str(tmp_path / "refresh.db"))
    token = store.issue("u1", ttl_seconds=60)

    with ThreadPoolExecutor(max_workers=4) as pool:
        assert all(pool.map(lambda _: store.is_active(token), range(8)))

    store.close()

    with SQLiteRefreshTokenStore(str(tmp_path / "refresh.db")) as reopened:
        assert reopened.is_active(token) is True


def test_sqlite_survives_reopen(tmp_path) -> None:
    db_path = tmp_path / "refresh.db"

    store1 = SQLiteRefreshTokenStore(str(db_path))
    try:
        old = store1.issue("u1", ttl_seconds=60)
        new = store1.rotate(old, "u1", ttl_seconds=60)
    finally:
        store1.close()

    with SQLiteRefreshTokenStore(str(db_path)) as store2:
        assert store2.is_active(old) is False
        assert store2.is_active(new) is True
        with pytest.raises(AlreadyRevoked):
            store2.rotate(old, "u1", ttl_seconds=60)


def test_sqlite_invalid_config(tmp_path) -> None:
    with pytest.raises(ValueError, match="db_path"):
        SQLiteRefreshTokenStore("")

    with pytest.raises(ValueError, match="cleanup_interval_seconds"):
        SQLiteRefreshTokenStore(str(tmp_path / "x.db"), cleanup_interval_seconds=0)

    with pytest.raises(ValueError, match="retention_seconds"):
        SQLiteRefreshTokenStore(str(tmp_path / "x.db"), retention_seconds=-1)

    with pytest.raises(ValueError, match="busy_timeout_seconds"):
        SQLiteRefreshTokenStore(str(tmp_path / "x.db"), busy_timeout_seconds=0)


def test_inmemory_invalid_config() -> None:
    with pytest.raises(ValueError, match="retention_seconds"):
        InMemoryRefreshTokenStore(retention_seconds=-1)


def test_sqlite_creates_directory_if_not_exists(tmp_path) -> None:
    """Testa que o SQLiteRefreshTokenStore cria o diretorio se nao existir."""
    nested_dir = tmp_path / "nested" / "path" / "to" / "db"
    db_path = nested_dir / "refresh.db"

    assert not nested_dir.exists()

    store = SQLiteRefreshTokenStore(str(db_path))
    try:
        assert nested_dir.is_dir()
        token = store.issue("u1", ttl_seconds=10)
        assert store.is_active(token) is True
    finally:
        store.close()


def test_sqlite_fails_if_path_is_file_not_directory(tmp_path) -> None:
    """Testa que falha se o caminho do diretorio e um arquivo."""
    file_path = tmp_path / "file.txt"
    file_path.write_text("conteudo")

    with pytest.raises(ValueError, match="nao e um diretorio"):
        SQLiteRefreshTokenStore(str(file_path / "refresh.db"))
