from fastapi import Request

from backend.services.assistant import AssistantPolicy
from backend.services.llm_client import LLMClient
from backend.services.reservation import SlotReservationService


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_reservation_service(request: Request) -> SlotReservationService:
    return request.app.state.reservation_service


def get_llm_client(request: Request) -> LLMClient:
    return request.app.state.llm_client


def get_assistant_policy(request: Request) -> AssistantPolicy:
    return request.app.state.assistant_policy
