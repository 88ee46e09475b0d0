from fastapi import FastAPI, Depends
from fastapi.requests import Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel
from walletchat import config
from walletchat.agents import create_agent
from walletchat.assistant import ChatService, MissingFieldsError, MissingUserAddressError
import statsd
import logging

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("walletchat")

app = FastAPI()
db_engine = create_async_engine(config.async_database_url(config.DATABASE_URL))
metrics = statsd.StatsClient(host=config.GRAPHITE_HOST, port=config.GRAPHITE_HOST_PORT, prefix="production.walletchat")

agent = create_agent(
    metrics,
    config.AGENT_PROVIDER,
    openai_api_key=config.OPENAI_API_KEY,
    model=config.OPENAI_MODEL if config.AGENT_PROVIDER == "openai" else config.OLLAMA_MODEL,
    serve_url=config.OLLAMA_SERVE_URL,
    wallet_address=config.AGENT_WALLET_ADDRESS,
)
chat_service = ChatService(metrics=metrics, engine=db_engine, agent=agent, history_window=config.HISTORY_WINDOW)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "https://www.agent-w.xyz",
        "http://localhost:3000",
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"]
)


def get_chat_service() -> ChatService:
    return chat_service


def failure(error: str, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": error, "details": str(exc) or "Unknown error"})


@app.on_event("startup")
async def _create_tables():
    # create all tables
    async with db_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info("database ready at %s", config.redact_database_url(config.DATABASE_URL))


@app.get("/health")
def _health(service: ChatService = Depends(get_chat_service)):
    return {
        "status": "ok",
        "agentReady": service.agent.is_ready(),
        "walletAddress": service.agent.get_wallet_address(),
    }


@app.get("/debug")
async def _debug(service: ChatService = Depends(get_chat_service)):
    try:
        wallet_count = await service.count_wallets()
    except Exception as e:
        logger.exception("debug database check failed")
        metrics.incr("errors.debug")
        return JSONResponse(status_code=500, content={
            "status": "error",
            "message": "Database connection failed",
            "error": str(e) or "Unknown error",
        })

    return {
        "status": "ok",
        "message": "Database connection successful",
        "walletCount": wallet_count,
        "agentStatus": "ready" if service.agent.is_ready() else "initializing",
        "databaseUrl": config.redact_database_url(config.DATABASE_URL),
    }


@app.get("/api/chat/sessions")
async def _list_sessions(req: Request, service: ChatService = Depends(get_chat_service)):
    user_address = req.query_params.get("userAddress")
    try:
        sessions = await service.list_sessions(user_address)
    except MissingUserAddressError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})
    except Exception as e:
        logger.exception("error fetching chat sessions")
        metrics.incr("errors.list_sessions")
        return failure("Failed to fetch chat sessions", e)

    return [chat_session.to_json() for chat_session in sessions]


@app.get("/api/chat")
async def _chat_history(req: Request, service: ChatService = Depends(get_chat_service)):
    user_address = req.query_params.get("userAddress")
    session_id = req.query_params.get("sessionId")
    try:
        records = await service.list_history(user_address, session_id)
    except MissingUserAddressError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})
    except Exception as e:
        logger.exception("error fetching chat history")
        metrics.incr("errors.chat_history")
        return failure("Failed to fetch chat history", e)

    return [record.to_json() for record in records]


@app.post("/api/chat")
async def _send_message(req: Request, service: ChatService = Depends(get_chat_service)):
    try:
        body = await req.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        return JSONResponse(status_code=400, content={"error": str(MissingFieldsError())})

    try:
        return await service.process_message(
            user_address=body.get("userAddress"),
            message=body.get("message"),
            role=body.get("role"),
            session_id=body.get("sessionId"),
        )
    except MissingFieldsError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})
    except Exception as e:
        logger.exception("error processing message")
        metrics.incr("errors.send_message")
        return failure("Failed to process message", e)


@app.get("/api/agent/status")
def _agent_status(service: ChatService = Depends(get_chat_service)):
    try:
        return {
            "status": "ok",
            "agentReady": service.agent.is_ready(),
            "walletAddress": service.agent.get_wallet_address(),
            "network": config.AGENT_NETWORK,
        }
    except Exception as e:
        logger.exception("error fetching agent status")
        metrics.incr("errors.agent_status")
        return JSONResponse(status_code=500, content={"status": "error", "error": str(e) or "Unknown error"})
