from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agrichat.core.config import settings
from agrichat.core.logging import configure_logging
from agrichat.database.connection import close_mongo_connection, connect_to_mongo, get_database
from agrichat.middleware.logging import LoggingMiddleware
from agrichat.repositories.conversation_repository import ConversationRepository
from agrichat.repositories.message_repository import MessageRepository
from agrichat.routers.chat import router as chat_router
from agrichat.routers.conversations import router as conversations_router
from agrichat.services.chat_service import ChatService
from agrichat.services.gateway import MessageGateway
from agrichat.utils.realtime_bus import get_bus, reset_bus


@asynccontextmanager
async def lifespan(app: FastAPI):

    await connect_to_mongo()
    db = get_database()
    convo_repo = ConversationRepository(db)
    msg_repo = MessageRepository(db)
    await convo_repo.ensure_indexes()
    await msg_repo.ensure_indexes()

    gateway = MessageGateway(ChatService(msg_repo, convo_repo), bus=await get_bus())
    await gateway.start()
    app.state.gateway = gateway
    try:
        yield
    finally:
        await gateway.stop()
        await reset_bus()
        await close_mongo_connection()


def create_app() -> FastAPI:
    configure_logging()

    app = FastAPI(title="AgriChat messaging API", version="0.1.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)

    app.include_router(chat_router)
    app.include_router(conversations_router)

    @app.get("/")
    async def root():

        db = get_database()
        collections = await db.list_collection_names()
        return {"message": "Connected to MongoDB!", "collections": collections}

    @app.get("/health", tags=["health"])
    async def health_check() -> dict:
        return {"status": "ok", "environment": settings.ENVIRONMENT}

    return app


app = create_app()


if __name__ == "__main__":
    import os
    import uvicorn

    uvicorn.run(
        "agrichat.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
    )
