"""SQLModel table definitions."""

from datetime import datetime, timezone

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class MessageModel(SQLModel, table=True):
    """メッセージテーブル"""

    __tablename__ = "messages"

    id: int | None = Field(default=None, primary_key=True)
    message: str = ""
    message_type: str = "channel"  # "channel" | "direct"
    user_id: str = Field(index=True)
    channel_id: int | None = Field(default=None, index=True)
    receiver_id: str | None = Field(default=None, index=True)
    parent_message_id: int | None = Field(default=None, index=True)
    client_nonce: str | None = None
    inserted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class MessageFileModel(SQLModel, table=True):
    """添付ファイルテーブル"""

    __tablename__ = "message_files"

    id: int | None = Field(default=None, primary_key=True)
    message_id: int = Field(index=True)
    file_url: str
    file_type: str = "application/octet-stream"


class MessageReactionModel(SQLModel, table=True):
    """リアクションテーブル"""

    __tablename__ = "message_reactions"

    id: int | None = Field(default=None, primary_key=True)
    message_id: int = Field(index=True)
    user_id: str
    emoji: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        UniqueConstraint("message_id", "user_id", "emoji", name="uq_reaction"),
    )
