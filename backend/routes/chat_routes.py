import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backend.core.errors import BookingError
from backend.dependencies import get_assistant_policy, get_db, get_llm_client
from backend.services import assistant
from backend.services.assistant import AssistantPolicy
from backend.services.llm_client import LLMClient

router = APIRouter(tags=['chat'])

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4000


class ChatRequest(BaseModel):
    message: str = Field(default='', max_length=MAX_MESSAGE_LENGTH)
    client_id: str = Field(default='', alias='clientId')
    provider_code: str | None = Field(default=None, alias='providerCode')
    tz: str = 'UTC'
    lang: str = 'en'

    class Config:
        populate_by_name = True


class ChatResponse(BaseModel):
    content: str
    tool_results: list[dict] = Field(default_factory=list, alias='toolResults')

    class Config:
        populate_by_name = True


@router.post('', response_model=ChatResponse)
def chat(
    data: ChatRequest,
    db: Session = Depends(get_db),
    llm: LLMClient = Depends(get_llm_client),
    policy: AssistantPolicy = Depends(get_assistant_policy),
):
    try:
        reply = assistant.reply(
            db,
            llm,
            policy,
            message=data.message,
            client_id=data.client_id,
            provider_code=data.provider_code,
            tz=data.tz,
            lang=data.lang,
        )
    except BookingError as exc:
        logger.warning('Chat reply degraded for client %s: %s', data.client_id, exc.message)
        return ChatResponse(content=assistant.message_for('busy', data.lang))

    return ChatResponse(content=reply.content, tool_results=reply.tool_results)
