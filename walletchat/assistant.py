from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlmodel import select, col, func
from sqlmodel.ext.asyncio.session import AsyncSession
from typing import List, Optional, Tuple
from walletchat.agents import LLMAgent
from walletchat.metadata import extract_metadata
from walletchat.models import Wallet, ChatSession, ChatMessageRecord, utcnow
import codecs
import logging
import statsd
import time

logger = logging.getLogger(__name__)

FALLBACK_RESPONSE = "The agent could not generate a response at this time."
TITLE_LENGTH = 30


class MissingFieldsError(Exception):
    def __init__(self):
        super().__init__("Missing required fields: userAddress and message are required")


class MissingUserAddressError(Exception):
    def __init__(self):
        super().__init__("User address is required")


def derive_title(message: str) -> str:
    return message[:TITLE_LENGTH] + ("..." if len(message) > TITLE_LENGTH else "")


def preview(message: str, length: int = 100) -> str:
    return message[:length] + ("..." if len(message) > length else "")


def infer_role(record: ChatMessageRecord) -> str:
    """
    Rows written before roles were stored only tell the two halves of a turn
    apart by content: the assistant row repeats its text in `response`.

    A user row whose text equals its response comes out as "assistant". Rows
    carrying an explicit role never go through this.
    """
    return "assistant" if record.message == record.response else "user"


def is_valid_address(user_address) -> bool:
    return isinstance(user_address, str) and len(user_address) > 0


class ChatService:
    def __init__(self, metrics: statsd.StatsClient, engine: AsyncEngine, agent: LLMAgent, history_window: int = 0):
        self.metrics = metrics
        self.engine = engine
        self.agent = agent
        self.history_window = history_window

    def open_session(self) -> AsyncSession:
        return AsyncSession(self.engine, expire_on_commit=False)

    async def resolve_wallet(self, db: AsyncSession, user_address: str) -> Wallet:
        statement = select(Wallet).where(Wallet.user_address == user_address)
        wallet = (await db.exec(statement)).first()
        if wallet is not None:
            return wallet

        wallet = Wallet(user_address=user_address)
        db.add(wallet)
        try:
            await db.commit()
        except IntegrityError:
            # a concurrent request inserted the same address first
            await db.rollback()
            logger.info("wallet for %s created concurrently, reusing it", user_address)
            return (await db.exec(statement)).one()

        self.metrics.incr("create_wallet")
        logger.info("created new wallet for %s", user_address)
        return wallet

    async def resolve_session(self, db: AsyncSession, session_id: Optional[str], user_address: str, first_message: str) -> str:
        chat_session = None
        if session_id:
            chat_session = await db.get(ChatSession, str(session_id))
            if chat_session is None:
                logger.info("session %s not found, creating a new one", session_id)

        if chat_session is None:
            self.metrics.incr("start_session")
            chat_session = ChatSession(
                user_address=user_address,
                title=derive_title(first_message),
            )
            db.add(chat_session)
            await db.commit()
            logger.info("created chat session %s for %s", chat_session.id, user_address)
            return chat_session.id

        self.metrics.incr("continue_session")
        chat_session.updated_at = utcnow()
        db.add(chat_session)
        await db.commit()
        return chat_session.id

    async def load_previous_records(self, db: AsyncSession, session_id: str) -> List[ChatMessageRecord]:
        statement = select(ChatMessageRecord).where(ChatMessageRecord.session_id == session_id)
        if self.history_window <= 0:
            statement = statement.order_by(col(ChatMessageRecord.created_at), col(ChatMessageRecord.id))
            return list((await db.exec(statement)).all())

        # newest N, handed back oldest first
        statement = statement.order_by(col(ChatMessageRecord.created_at).desc(), col(ChatMessageRecord.id).desc())
        records = (await db.exec(statement.limit(self.history_window))).all()
        return list(reversed(records))

    async def build_context(self, db: AsyncSession, session_id: str, message: str, role: Optional[str] = None) -> List[dict]:
        records = await self.load_previous_records(db, session_id)
        context = [
            {"role": record.role or infer_role(record), "content": record.message}
            for record in records
        ]
        context.append({"role": role or "user", "content": message})
        return context

    async def generate(self, context: List[dict]) -> str:
        response = await self.agent.generate_response(context)
        if response.body is None:
            return FALLBACK_RESPONSE

        # multi-byte characters may be split across chunks
        decoder = codecs.getincrementaldecoder("utf-8")()
        response_text = ""
        async for chunk in response.body:
            response_text += decoder.decode(chunk)
        response_text += decoder.decode(b"", final=True)
        return response_text

    async def commit_turn(
        self,
        db: AsyncSession,
        user_address: str,
        session_id: str,
        user_text: str,
        response_text: str,
        role: Optional[str] = None,
    ) -> Tuple[int, int]:
        user_record = ChatMessageRecord(
            user_address=user_address,
            session_id=session_id,
            message=user_text,
            response="",
            role=role or "user",
            created_at=utcnow(),
        )
        db.add(user_record)
        await db.commit()

        assistant_record = ChatMessageRecord(
            user_address=user_address,
            session_id=session_id,
            message=response_text,
            response=response_text,
            role="assistant",
            created_at=max(utcnow(), user_record.created_at),
        )
        db.add(assistant_record)
        await db.commit()

        return user_record.id, assistant_record.id

    async def process_message(self, user_address, message, role: Optional[str] = None, session_id: Optional[str] = None) -> dict:
        if not is_valid_address(user_address) or not isinstance(message, str) or not message:
            raise MissingFieldsError

        self.metrics.incr("generate")
        start_time = time.time()
        logger.info("processing message from %s (session %s): %s", user_address, session_id, preview(message))

        async with self.open_session() as db:
            await self.resolve_wallet(db, user_address)
            chat_session_id = await self.resolve_session(db, session_id, user_address, message)
            context = await self.build_context(db, chat_session_id, message, role)

        # no connection is held while the agent streams
        logger.info("sending %d messages to agent", len(context))
        response_text = await self.generate(context)

        async with self.open_session() as db:
            _, assistant_message_id = await self.commit_turn(
                db, user_address, chat_session_id, message, response_text, role
            )

        self.metrics.timing("generate_response.timed", time.time() - start_time)

        return {
            "messages": [
                {
                    "id": assistant_message_id,
                    "text": response_text,
                    "type": "assistant",
                    "metadata": extract_metadata(response_text),
                }
            ],
            "sessionId": chat_session_id,
        }

    async def list_sessions(self, user_address) -> List[ChatSession]:
        if not is_valid_address(user_address):
            raise MissingUserAddressError

        async with self.open_session() as db:
            await self.resolve_wallet(db, user_address)
            statement = (
                select(ChatSession)
                .where(ChatSession.user_address == user_address)
                .order_by(col(ChatSession.updated_at).desc())
            )
            sessions = (await db.exec(statement)).all()

        logger.info("found %d chat sessions for %s", len(sessions), user_address)
        return list(sessions)

    async def list_history(self, user_address, session_id: Optional[str] = None) -> List[ChatMessageRecord]:
        if not is_valid_address(user_address):
            raise MissingUserAddressError

        async with self.open_session() as db:
            await self.resolve_wallet(db, user_address)
            statement = select(ChatMessageRecord).where(ChatMessageRecord.user_address == user_address)
            if session_id:
                statement = statement.where(ChatMessageRecord.session_id == session_id)
            statement = statement.order_by(col(ChatMessageRecord.created_at), col(ChatMessageRecord.id))
            records = (await db.exec(statement)).all()

        logger.info("found %d chat records for %s", len(records), user_address)
        return list(records)

    async def count_wallets(self) -> int:
        async with self.open_session() as db:
            return (await db.exec(select(func.count()).select_from(Wallet))).one()
