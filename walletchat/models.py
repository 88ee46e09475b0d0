from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime, timezone
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    return str(uuid.uuid4())


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class Wallet(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_address: str = Field(unique=True, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class ChatSession(SQLModel, table=True):
    id: str = Field(default_factory=new_session_id, primary_key=True)
    user_address: str = Field(index=True)
    title: str
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "userAddress": self.user_address,
            "title": self.title,
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }


class ChatMessageRecord(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_address: str = Field(index=True)
    session_id: str = Field(index=True)
    message: str
    response: str = Field(default="")
    # user | system | assistant, None on rows written before roles were stored
    role: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "userAddress": self.user_address,
            "sessionId": self.session_id,
            "message": self.message,
            "response": self.response,
            "role": self.role,
            "createdAt": isoformat(self.created_at),
        }
