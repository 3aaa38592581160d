"""Local chat database."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from chatsync.config.models import SQLiteConfig

# Import models to register them with SQLModel metadata
from chatsync.infrastructure.persistence import models as _models  # noqa: F401

MEMORY_PATH = ":memory:"

# ファイル DB 接続ごとに適用する PRAGMA
FILE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
)


def _apply_pragmas(dbapi_connection: Any, _connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    try:
        for pragma in FILE_PRAGMAS:
            cursor.execute(pragma)
    finally:
        cursor.close()


class DatabaseManager:
    """ローカルチャット DB 管理

    messages / message_files / message_reactions テーブルを持つ SQLite
    データベースのエンジンとセッションを管理する。
    ファイル DB は WAL モードで開き、別プロセスからの閲覧と書き込みを
    並行できるようにする。":memory:" は全セッションで 1 接続を共有する。
    """

    def __init__(self, database_path: str) -> None:
        """初期化

        Args:
            database_path: SQLite ファイルのパス、または ":memory:"
        """
        self._database_path = database_path
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def from_config(cls, config: SQLiteConfig) -> "DatabaseManager":
        """SQLiteConfig から生成する"""
        return cls(config.database_path)

    @property
    def is_memory(self) -> bool:
        return self._database_path == MEMORY_PATH

    @property
    def url(self) -> str:
        return f"sqlite+aiosqlite:///{self._database_path}"

    def get_engine(self) -> AsyncEngine:
        """非同期エンジンを取得する（初回呼び出し時に生成）"""
        if self._engine is None:
            self._engine = self._create_engine()
            self._session_factory = async_sessionmaker(
                self._engine, class_=AsyncSession, expire_on_commit=False
            )
        return self._engine

    async def create_tables(self) -> None:
        """チャット用テーブルを作成する（既存テーブルはそのまま）"""
        async with self.get_engine().begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """セッションを取得する（async context manager）

        SQLiteChatBackend の session_factory としてそのまま渡せる。

        Yields:
            AsyncSession インスタンス
        """
        self.get_engine()
        assert self._session_factory is not None
        async with self._session_factory() as session:
            yield session

    async def close(self) -> None:
        """エンジンを破棄する。再度 get_engine() すると作り直す"""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    def _create_engine(self) -> AsyncEngine:
        if self.is_memory:
            return create_async_engine(self.url, poolclass=StaticPool)

        Path(self._database_path).parent.mkdir(parents=True, exist_ok=True)
        engine = create_async_engine(self.url)
        event.listen(engine.sync_engine, "connect", _apply_pragmas)
        return engine
