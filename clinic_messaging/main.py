import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from clinic_messaging.core.config import get_settings
from clinic_messaging.core.errors import MessagingError
from clinic_messaging.core.logging_config import request_id_var, setup_logging
from clinic_messaging.database.connection import close_mongo_connection, connect_to_mongo, get_database
from clinic_messaging.repositories.conversation_repository import ConversationRepository
from clinic_messaging.repositories.message_repository import MessageRepository
from clinic_messaging.routers.chat import router as chat_router
from clinic_messaging.routers.conversations import router as conversations_router
from clinic_messaging.utils.realtime_bus import close_bus

logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    if settings.storage_backend == "mongo":
        await connect_to_mongo()
        db = get_database()
        conversations = ConversationRepository(db)
        await conversations.ensure_indexes()
        await MessageRepository(db, conversations).ensure_indexes()
    try:
        yield
    finally:
        await close_bus()
        if settings.storage_backend == "mongo":
            await close_mongo_connection()


app = FastAPI(title="Clinic Messaging API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    token = request_id_var.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(token)
    response.headers["X-Request-ID"] = request_id
    return response


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


@app.exception_handler(MessagingError)
async def messaging_error_handler(request: Request, exc: MessagingError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return _error(exc.status_code, "Server Error")
    return _error(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    detail = first.get("msg", "Invalid request")
    return _error(400, f"{location}: {detail}" if location else detail)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error(500, "Server Error")


app.include_router(conversations_router, prefix=settings.api_prefix)
app.include_router(chat_router, prefix=settings.api_prefix)


@app.get("/")
async def root():
    return {"status": "ok", "service": "clinic-messaging", "storage": settings.storage_backend}


@app.get("/health")
async def health_check():
    return {"healthy": True}
