import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from backend.core import config
from backend.core.errors import BookingError
from backend.database import (
    Base,
    build_session_factory,
    create_db_engine,
    ensure_availability_schema,
    ensure_booking_schema,
    install_booking_routine,
)
from backend.models import availability, booking  # noqa: F401
from backend.routes import availability_routes, booking_routes, chat_routes
from backend.services.assistant import AssistantPolicy
from backend.services.llm_client import LLMClient
from backend.services.reservation import SlotReservationService, detect_reservation_strategy

logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logging.getLogger('httpx').setLevel(logging.WARNING)
logging.getLogger('httpcore').setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def initialize_database(engine) -> None:
    try:
        Base.metadata.create_all(bind=engine)
        ensure_availability_schema(engine)
        ensure_booking_schema(engine)
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')
        raise

    try:
        install_booking_routine(engine)
    except SQLAlchemyError:
        logger.warning('Could not install the booking routine; reservations will use conditional updates', exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.validate_runtime_config()

    engine = create_db_engine(config.DATABASE_URL, echo=config.SQL_ECHO)
    initialize_database(engine)

    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.reservation_service = SlotReservationService(
        detect_reservation_strategy(engine, config.RESERVATION_STRATEGY)
    )
    app.state.llm_client = LLMClient(
        api_key=config.LLM_API_KEY,
        base_url=config.LLM_BASE_URL,
        model=config.LLM_MODEL,
        timeout_seconds=config.LLM_TIMEOUT_SECONDS,
        system_prompt=config.LLM_SYSTEM_PROMPT,
    )
    if not app.state.llm_client.configured:
        logger.warning('LLM_API_KEY is not set; chat replies will use fallback messages')
    app.state.assistant_policy = AssistantPolicy(
        default_provider_code=config.DEFAULT_PROVIDER_CODE,
        slot_lookahead_hours=config.CHAT_SLOT_LOOKAHEAD_HOURS,
        slot_limit=config.CHAT_SLOT_LIMIT,
        suppress_reprompt_minutes=config.BOOKING_REPROMPT_SUPPRESS_MINUTES,
    )
    logger.info('Booking API started (%s)', config.APP_ENV)

    yield

    app.state.llm_client.close()
    engine.dispose()
    logger.info('Booking API stopped')


app = FastAPI(title='Therapy Booking API', lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    if exc.status_code >= 500:
        logger.error('%s %s failed: %s', request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.payload())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning('Validation error for %s: %s', request.url.path, exc.errors())
    return JSONResponse(
        status_code=400,
        content={'error': 'validation', 'detail': jsonable_errors(exc)},
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {'loc': list(error.get('loc', ())), 'msg': error.get('msg', '')}
        for error in exc.errors()
    ]


@app.get('/')
def root():
    return {'status': 'Therapy Booking API Running'}


app.include_router(booking_routes.router, prefix='/bookings')
app.include_router(availability_routes.router, prefix='/availability')
app.include_router(chat_routes.router, prefix='/chat')
