import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

from tutorhub.database.connection import close_mongo_connection, connect_to_mongo
from tutorhub.logging_config import setup_logging
from tutorhub.routers.account import router as account_router
from tutorhub.routers.auth import router as auth_router
from tutorhub.routers.chat import router as chat_router
from tutorhub.routers.conversations import router as conversations_router
from tutorhub.routers.payments import router as payments_router
from tutorhub.services.exceptions import (
    ConversationLoadError,
    ConversationNotFound,
    MessageValidationError,
    NotAParticipant,
    PaymentError,
    ProfileNotFound,
)
from tutorhub.utils.kv_store import close_kv_store
from tutorhub.utils.realtime_bus import close_bus

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging("Server")
    await connect_to_mongo()
    try:
        yield
    finally:
        await close_bus()
        await close_kv_store()
        await close_mongo_connection()


app = FastAPI(title="TutorHub API", lifespan=lifespan)


app.include_router(auth_router)
app.include_router(account_router)
app.include_router(conversations_router)
app.include_router(chat_router)
app.include_router(payments_router)


@app.exception_handler(MessageValidationError)
async def message_validation_handler(request: Request, exc: MessageValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ConversationNotFound)
@app.exception_handler(ProfileNotFound)
async def not_found_handler(request: Request, exc: LookupError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(NotAParticipant)
async def forbidden_handler(request: Request, exc: NotAParticipant):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(ConversationLoadError)
async def load_error_handler(request: Request, exc: ConversationLoadError):
    return JSONResponse(status_code=500, content={"detail": str(exc)})


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    status_code = 502 if exc.upstream else 400
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "code": exc.code})


@app.exception_handler(PyMongoError)
async def backend_error_handler(request: Request, exc: PyMongoError):
    logger.error("Backend error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Something went wrong. Please try again."})


@app.get("/")
async def root():
    return {"message": "TutorHub API"}
