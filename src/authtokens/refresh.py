"""Abstracoes e implementacoes do armazenamento de refresh tokens.

Registros nunca sao apagados na revogacao: ficam marcados (``revoked``) para
auditoria e deteccao de replay ate ``expires_at + retention_seconds``.
"""

import secrets
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from threading import Lock, local
from typing import Any, Dict, Iterator, List, Optional, Protocol

from authtokens.errors import (
    AlreadyRevoked,
    NotFound,
    RefreshTokenExpired,
    RefreshTokenStoreError,
)

DEFAULT_RETENTION_SECONDS = 86400


@dataclass(frozen=True)
class RefreshTokenRecord:
    """Registro persistido de um refresh token."""

    token: str
    user_id: str
    expires_at: int
    created_at: int
    revoked: bool = False
    revoked_at: Optional[int] = None
    replaced_by: Optional[str] = None

    def is_active(self, now: int) -> bool:
        return not self.revoked and self.expires_at > now


class RefreshTokenStore(Protocol):
    """Interface para backends de refresh tokens."""

    def issue(self, user_id: str, ttl_seconds: int, token: Optional[str] = None) -> str:
        """Cria e persiste um novo registro nao revogado.

        Args:
            user_id (str): Dono do token.
            ttl_seconds (int): Tempo de vida em segundos.
            token (Optional[str]): Valor a persistir. Se omitido, um valor aleatorio e gerado.

        Returns:
            str: Valor do refresh token.
        """

    def rotate(
        self, old_token: str, user_id: str, ttl_seconds: int, new_token: Optional[str] = None
    ) -> str:
        """Revoga old_token e emite o sucessor numa unica operacao atomica.

        Raises:
            NotFound: Token inexistente ou de outro usuario.
            AlreadyRevoked: Token ja revogado ou rotacionado.
            RefreshTokenExpired: Token expirado (o registro e revogado).
        """

    def revoke(self, token: str) -> bool:
        """Revoga um token. Retorna True apenas se esta chamada o revogou."""

    def revoke_all(self, user_id: str) -> int:
        """Revoga todos os tokens ativos do usuario e retorna quantos foram revogados."""

    def is_active(self, token: str) -> bool:
        """Verifica se o token existe, nao esta revogado e nao expirou."""

    def get(self, token: str) -> Optional[RefreshTokenRecord]:
        """Retorna o registro do token, ou None."""

    def purge_expired(self, now: Optional[int] = None) -> int:
        """Remove registros fora da janela de retencao e retorna quantos foram removidos."""


def new_refresh_token() -> str:
    return secrets.token_urlsafe(32)


def _validate_issue_args(user_id: Any, ttl_seconds: Any) -> None:
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValueError("user_id deve ser uma string valida")
    if not isinstance(ttl_seconds, int) or ttl_seconds <= 0:
        raise ValueError("ttl_seconds deve ser um inteiro positivo")


class InMemoryRefreshTokenStore:
    """Refresh tokens em memoria. Apenas para testes."""

    def __init__(self, retention_seconds: int = DEFAULT_RETENTION_SECONDS) -> None:
        if not isinstance(retention_seconds, int) or retention_seconds < 0:
            raise ValueError("retention_seconds deve ser um inteiro nao negativo")
        self._retention_seconds = retention_seconds
        self._lock = Lock()
        self._store: Dict[str, RefreshTokenRecord] = {}

    def _insert(self, user_id: str, ttl_seconds: int, token: Optional[str], now: int) -> str:
        value = token if token is not None else new_refresh_token()
        if value in self._store:
            raise RefreshTokenStoreError("refresh token duplicado")
        self._store[value] = RefreshTokenRecord(
            token=value, user_id=user_id, expires_at=now + ttl_seconds, created_at=now
        )
        return value

    def issue(self, user_id: str, ttl_seconds: int, token: Optional[str] = None) -> str:
        _validate_issue_args(user_id, ttl_seconds)
        now = int(time.time())
        with self._lock:
            return self._insert(user_id, ttl_seconds, token, now)

    def rotate(
        self, old_token: str, user_id: str, ttl_seconds: int, new_token: Optional[str] = None
    ) -> str:
        _validate_issue_args(user_id, ttl_seconds)
        now = int(time.time())
        with self._lock:
            record = self._store.get(old_token)
            if record is None or record.user_id != user_id:
                raise NotFound("refresh token nao encontrado")
            if record.revoked:
                raise AlreadyRevoked("refresh token ja revogado")
            if record.expires_at <= now:
                self._store[old_token] = replace(record, revoked=True, revoked_at=now)
                raise RefreshTokenExpired("refresh token expirado")

            value = self._insert(user_id, ttl_seconds, new_token, now)
            self._store[old_token] = replace(
                record, revoked=True, revoked_at=now, replaced_by=value
            )
            return value

    def revoke(self, token: str) -> bool:
        now = int(time.time())
        with self._lock:
            record = self._store.get(token)
            if record is None or record.revoked:
                return False
            self._store[token] = replace(record, revoked=True, revoked_at=now)
            return True

    def revoke_all(self, user_id: str) -> int:
        now = int(time.time())
        count = 0
        with self._lock:
            for token, record in list(self._store.items()):
                if record.user_id == user_id and not record.revoked:
                    self._store[token] = replace(record, revoked=True, revoked_at=now)
                    count += 1
        return count

    def is_active(self, token: str) -> bool:
        record = self.get(token)
        return record is not None and record.is_active(int(time.time()))

    def get(self, token: str) -> Optional[RefreshTokenRecord]:
        with self._lock:
            return self._store.get(token)

    def purge_expired(self, now: Optional[int] = None) -> int:
        if now is None:
            now = int(time.time())
        cutoff = now - self._retention_seconds
        with self._lock:
            stale = [t for t, r in self._store.items() if r.expires_at <= cutoff]
            for token in stale:
                del self._store[token]
        return len(stale)


class SQLiteRefreshTokenStore:
    """Refresh tokens em SQLite com limpeza periodica.

    Cada thread usa a sua propria conexao (modo WAL), de modo que leituras nao
    esperam por escritas em outros tokens. Escritas rodam em transacoes
    ``BEGIN IMMEDIATE``. A rotacao usa UPDATE condicional (``revoked = 0``) e
    confere ``rowcount``, de modo que apenas um chamador concorrente vence.
    """

    def __init__(
        self,
        db_path: str,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
        cleanup_interval_seconds: int = 300,
        busy_timeout_seconds: float = 5.0,
    ) -> None:
        """Inicializa o store com SQLite.

        Args:
            db_path (str): Caminho do arquivo do banco de dados SQLite. O diretorio sera criado
                se nao existir.
            retention_seconds (int): Tempo, apos a expiracao, em que o registro e mantido para
                auditoria e deteccao de replay.
            cleanup_interval_seconds (int): Intervalo em segundos para limpeza automatica de
                registros fora da janela de retencao.
            busy_timeout_seconds (float): Tempo maximo de espera pelo lock de escrita do banco.

        Raises:
            ValueError: Se algum parametro for invalido ou se nao for possivel criar o
                diretorio.
        """
        if not isinstance(db_path, str) or not db_path.strip():
            raise ValueError("db_path deve ser uma string valida")
        if not isinstance(retention_seconds, int) or retention_seconds < 0:
            raise ValueError("retention_seconds deve ser um inteiro nao negativo")
        if cleanup_interval_seconds <= 0:
            raise ValueError("cleanup_interval_seconds deve ser positivo")
        if busy_timeout_seconds <= 0:
            raise ValueError("busy_timeout_seconds deve ser positivo")

        db_file_path = Path(db_path).resolve()
        db_dir = db_file_path.parent

        if not db_dir.exists():
            try:
                db_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ValueError(f"Nao foi possivel criar o diretorio {db_dir}: {e}") from e

        if not db_dir.is_dir():
            raise ValueError(f"O caminho {db_dir} existe mas nao e um diretorio")

        self._db_path = str(db_file_path)
        self._retention_seconds = retention_seconds
        self._cleanup_interval_seconds = cleanup_interval_seconds
        self._busy_timeout_seconds = busy_timeout_seconds
        self._last_cleanup = 0
        self._local = local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = Lock()

        conn = self._connection()
        conn.execute("PRAGMA journal_mode=WAL;")
        with self._write_transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS refresh_tokens (
                    token TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    expires_at INTEGER NOT NULL,
                    created_at INTEGER NOT NULL,
                    revoked INTEGER NOT NULL DEFAULT 0,
                    revoked_at INTEGER NULL,
                    replaced_by TEXT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_refresh_tokens_user_id
                ON refresh_tokens(user_id)
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_refresh_tokens_expires_at
                ON refresh_tokens(expires_at)
                """
            )

    def _connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                self._db_path,
                timeout=self._busy_timeout_seconds,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.execute("PRAGMA synchronous=NORMAL;")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def _write_transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    def close(self) -> None:
        """Fecha as conexoes abertas por todas as threads."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
            self._local = local()

    def __enter__(self) -> "SQLiteRefreshTokenStore":
        """Suporte para context manager."""
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Fecha a conexao ao sair do contexto."""
        self.close()

    def _delete_stale(self, conn: sqlite3.Connection, now: int) -> int:
        cursor = conn.execute(
            "DELETE FROM refresh_tokens WHERE expires_at <= ?",
            (now - self._retention_seconds,),
        )
        self._last_cleanup = now
        return cursor.rowcount

    def _maybe_cleanup(self, conn: sqlite3.Connection, now: int) -> None:
        if now - self._last_cleanup < self._cleanup_interval_seconds:
            return
        self._delete_stale(conn, now)

    def _insert(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        ttl_seconds: int,
        token: Optional[str],
        now: int,
    ) -> str:
        value = token if token is not None else new_refresh_token()
        try:
            conn.execute(
                """
                INSERT INTO refresh_tokens (token, user_id, expires_at, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (value, user_id, now + ttl_seconds, now),
            )
        except sqlite3.IntegrityError as e:
            raise RefreshTokenStoreError("refresh token duplicado") from e
        return value

    def _fetch(self, conn: sqlite3.Connection, token: str) -> Optional[RefreshTokenRecord]:
        row = conn.execute(
            """
            SELECT token, user_id, expires_at, created_at, revoked, revoked_at, replaced_by
            FROM refresh_tokens WHERE token = ?
            """,
            (token,),
        ).fetchone()
        if row is None:
            return None
        return RefreshTokenRecord(
            token=row[0],
            user_id=row[1],
            expires_at=row[2],
            created_at=row[3],
            revoked=bool(row[4]),
            revoked_at=row[5],
            replaced_by=row[6],
        )

    def issue(self, user_id: str, ttl_seconds: int, token: Optional[str] = None) -> str:
        _validate_issue_args(user_id, ttl_seconds)
        now = int(time.time())
        with self._write_transaction() as conn:
            self._maybe_cleanup(conn, now)
            return self._insert(conn, user_id, ttl_seconds, token, now)

    def rotate(
        self, old_token: str, user_id: str, ttl_seconds: int, new_token: Optional[str] = None
    ) -> str:
        _validate_issue_args(user_id, ttl_seconds)
        now = int(time.time())
        value = new_token if new_token is not None else new_refresh_token()
        with self._write_transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE refresh_tokens
                SET revoked = 1, revoked_at = ?, replaced_by = ?
                WHERE token = ? AND user_id = ? AND revoked = 0 AND expires_at > ?
                """,
                (now, value, old_token, user_id, now),
            )
            if cursor.rowcount == 1:
                return self._insert(conn, user_id, ttl_seconds, value, now)
            failure = self._rotation_failure(conn, old_token, user_id, now)
        # A revogacao de um token expirado ja foi confirmada.
        raise failure

    def _rotation_failure(
        self, conn: sqlite3.Connection, old_token: str, user_id: str, now: int
    ) -> RefreshTokenStoreError:
        record = self._fetch(conn, old_token)
        if record is None or record.user_id != user_id:
            return NotFound("refresh token nao encontrado")
        if record.revoked:
            return AlreadyRevoked("refresh token ja revogado")
        conn.execute(
            "UPDATE refresh_tokens SET revoked = 1, revoked_at = ? WHERE token = ? AND revoked = 0",
            (now, old_token),
        )
        return RefreshTokenExpired("refresh token expirado")

    def revoke(self, token: str) -> bool:
        now = int(time.time())
        with self._write_transaction() as conn:
            cursor = conn.execute(
                "UPDATE refresh_tokens SET revoked = 1, revoked_at = ? WHERE token = ? AND revoked = 0",
                (now, token),
            )
            return cursor.rowcount == 1

    def revoke_all(self, user_id: str) -> int:
        now = int(time.time())
        with self._write_transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE refresh_tokens SET revoked = 1, revoked_at = ?
                WHERE user_id = ? AND revoked = 0
                """,
                (now, user_id),
            )
            return cursor.rowcount

    def is_active(self, token: str) -> bool:
        record = self.get(token)
        return record is not None and record.is_active(int(time.time()))

    def get(self, token: str) -> Optional[RefreshTokenRecord]:
        return self._fetch(self._connection(), token)

    def purge_expired(self, now: Optional[int] = None) -> int:
        if now is None:
            now = int(time.time())
        with self._write_transaction() as conn:
            return self._delete_stale(conn, now)
