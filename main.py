import logging
from contextlib import asynccontextmanager
from typing import Iterator

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from db_models import ContactResponse, FinalResponse, IdentifyRequest
from db_setup import ContactStore, get_db_connection, init_db
from errors import StoreError, ValidationError
from logging_config import setup_logging
from resolver import IdentityResolver
from settings import get_settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()
    init_db(get_settings().database_path)
    yield


settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)


def get_store() -> Iterator[ContactStore]:
    """One connection per request, closed once the response is built."""
    settings = get_settings()
    conn = get_db_connection(settings.database_path, settings.database_timeout)
    try:
        yield ContactStore(conn)
    finally:
        conn.close()


def get_resolver(store: ContactStore = Depends(get_store)) -> IdentityResolver:
    return IdentityResolver(store)


def failure_response(status_code: int) -> JSONResponse:
    # failures never expose internals; the status code tells them apart
    payload = FinalResponse(contact=ContactResponse.empty())
    return JSONResponse(status_code=status_code, content=payload.model_dump())


@app.exception_handler(ValidationError)
async def handle_validation_error(_: Request, exc: ValidationError):
    logger.info("Rejected identify request: %s", exc)
    return failure_response(400)


@app.exception_handler(StoreError)
async def handle_store_error(_: Request, exc: StoreError):
    logger.error("Identify request failed: %s", exc)
    return failure_response(500)


@app.exception_handler(Exception)
async def handle_unexpected_error(_: Request, exc: Exception):
    logger.exception("Unexpected error while handling request", exc_info=exc)
    return failure_response(500)


@app.get("/")
async def root():
    return {"message": "Bitespeed API is up"}


@app.get("/identify")
async def identify_usage():
    return {"message": "Use POST /identify with email and/or phoneNumber"}


@app.post("/identify", response_model=FinalResponse)
def identify(request: IdentifyRequest, resolver: IdentityResolver = Depends(get_resolver)):
    contact = resolver.resolve(request.email, request.phoneNumber)
    return FinalResponse(contact=contact)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
