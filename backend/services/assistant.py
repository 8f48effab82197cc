"""Chat replies and session summaries.

Chat offers open times on booking intent and otherwise asks the LLM. Nothing
here raises to the caller for LLM trouble: chat falls back to a short
sentence in the client's language and summaries to their empty form.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core.errors import InternalServiceError
from backend.core.time_utils import format_display, to_utc_iso, utc_now
from backend.models.availability import Availability
from backend.models.booking import Booking
from backend.services import availability_store
from backend.services.booking_service import get_booking, recent_booking_for_client
from backend.services.llm_client import LLMClient, LLMUnavailableError

logger = logging.getLogger(__name__)

BOOKING_INTENT_EN = re.compile(
    r'\b(book|booking|schedule|appointment|available|availability|time slot|reschedule|slot|when can)\b'
)
BOOKING_INTENT_ZH = re.compile(
    r'(预约|约个?时间|时间(段|点)|安排|可用|空闲|什么时候|哪天|几点|明天|后天|周[一二三四五六日天]|上午|下午|晚上)'
)

MESSAGES = {
    'empty': {
        'en': 'Tell me what is going on, or share a time window that suits you (for example: tomorrow afternoon).',
        'zh': '请告诉我你的情况，或说一个你方便的时间范围（例如：明天下午）。',
    },
    'slots_found': {
        'en': 'I found {count} available time slots. Please pick one:',
        'zh': '已为您找到 {count} 个可预约时间，请选择：',
    },
    'no_slots': {
        'en': 'No open slots right now. Please share another time window and I will check again.',
        'zh': '当前时段暂不可约。您可以换一个时间范围（例如“这周末下午”），我再帮你查看。',
    },
    'recently_booked': {
        'en': 'You are all set: your session is booked for {display}. I am here if you want to talk before then.',
        'zh': '你已经预约成功：{display}。在那之前如果想聊聊，我一直都在。',
    },
    'no_provider': {
        'en': 'Which therapist would you like to see? Share their code and I will look up open times.',
        'zh': '你想预约哪位咨询师？告诉我咨询师代码，我来帮你查看可预约时间。',
    },
    'fallback': {
        'en': "I'm here with you. Tell me what's going on.",
        'zh': '我在这，先陪你说说发生了什么吧。如果你愿意，我们也可以在合适的时候安排一次专业咨询。',
    },
    'busy': {
        'en': 'Sorry, things are a little busy right now. Please try again in a moment.',
        'zh': '抱歉，系统有点忙。请稍后再试。',
    },
}


@dataclass
class AssistantPolicy:
    default_provider_code: str = ''
    slot_lookahead_hours: int = 72
    slot_limit: int = 8
    suppress_reprompt_minutes: int = 120


@dataclass
class AssistantReply:
    content: str
    tool_results: list[dict] = field(default_factory=list)


def language_key(lang: str | None) -> str:
    return 'zh' if (lang or '').lower().startswith('zh') else 'en'


def message_for(key: str, lang: str | None, **values) -> str:
    return MESSAGES[key][language_key(lang)].format(**values)


def is_booking_intent(text: str) -> bool:
    lowered = (text or '').lower()
    return bool(BOOKING_INTENT_EN.search(lowered) or BOOKING_INTENT_ZH.search(lowered))


def slot_option(slot: Availability, tz: str | None) -> dict:
    return {
        'availabilityId': slot.id,
        'providerCode': slot.provider_code,
        'startUTC': to_utc_iso(slot.start_time),
        'endUTC': to_utc_iso(slot.end_time),
        'display': format_display(slot.start_time, tz),
    }


def slot_options(db: Session, provider_code: str, policy: AssistantPolicy, tz: str | None) -> list[dict]:
    now = utc_now()
    try:
        slots = availability_store.list_open_slots(
            db,
            provider_code=provider_code,
            window_start=now,
            window_end=now + timedelta(hours=policy.slot_lookahead_hours),
            limit=policy.slot_limit,
        )
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Open slot lookup failed for provider %s', provider_code)
        raise InternalServiceError() from exc
    return [slot_option(slot, tz) for slot in slots]


def reply_to_booking_intent(
    db: Session,
    client_id: str,
    provider_code: str,
    policy: AssistantPolicy,
    tz: str | None,
    lang: str | None,
) -> AssistantReply:
    if policy.suppress_reprompt_minutes > 0 and client_id:
        since = utc_now() - timedelta(minutes=policy.suppress_reprompt_minutes)
        recent = recent_booking_for_client(db, client_id, since)
        if recent is not None:
            logger.info('Not re-offering slots to client %s after booking %s', client_id, recent.id)
            return AssistantReply(
                content=message_for('recently_booked', lang, display=format_display(recent.start_time, tz)),
            )

    if not provider_code:
        return AssistantReply(content=message_for('no_provider', lang))

    options = slot_options(db, provider_code, policy, tz)
    if not options:
        return AssistantReply(content=message_for('no_slots', lang))

    return AssistantReply(
        content=message_for('slots_found', lang, count=len(options)),
        tool_results=[{'type': 'TIME_CONFIRM', 'options': options}],
    )


def reply_with_llm(llm: LLMClient, message: str, lang: str | None) -> AssistantReply:
    try:
        return AssistantReply(content=llm.complete(message))
    except LLMUnavailableError as exc:
        logger.warning('LLM reply unavailable, using fallback: %s', exc)
        return AssistantReply(content=message_for('fallback', lang))


def reply(
    db: Session,
    llm: LLMClient,
    policy: AssistantPolicy,
    message: str,
    client_id: str,
    provider_code: str | None = None,
    tz: str | None = 'UTC',
    lang: str | None = 'en',
) -> AssistantReply:
    message = (message or '').strip()
    if not message:
        return AssistantReply(content=message_for('empty', lang))

    if is_booking_intent(message):
        return reply_to_booking_intent(
            db,
            client_id=(client_id or '').strip(),
            provider_code=(provider_code or policy.default_provider_code or '').strip(),
            policy=policy,
            tz=tz,
            lang=lang,
        )

    return reply_with_llm(llm, message, lang)


SUMMARY_LIST_FIELDS = ('concerns', 'riskSignals', 'goals', 'suggestedQuestions', 'copingStrategies')
SUMMARY_INSTRUCTIONS = (
    'Prepare a short pre-session brief for the therapist. Reply with one JSON object '
    'using the keys concerns, riskSignals, goals, suggestedQuestions and copingStrategies, '
    'each a list of short strings. Do not add anything outside the JSON object.'
)


def empty_summary(booking: Booking, tz: str | None) -> dict:
    summary = {
        'type': 'SESSION_SUMMARY',
        'bookingId': booking.id,
        'providerCode': booking.provider_code,
        'clientId': booking.client_id,
        'sessionTimeUTC': to_utc_iso(booking.start_time),
        'sessionTimeDisplay': format_display(booking.start_time, tz),
    }
    summary.update({key: [] for key in SUMMARY_LIST_FIELDS})
    return summary


def _parse_summary(text: str) -> dict | None:
    cleaned = text.strip()
    if cleaned.startswith('```'):
        cleaned = cleaned.strip('`').strip()
        if cleaned.lower().startswith('json'):
            cleaned = cleaned[4:]
    try:
        parsed = json.loads(cleaned)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def session_summary(db: Session, llm: LLMClient, booking_id: int, tz: str | None = 'UTC') -> dict:
    """Pre-session brief for a booking.

    The booking fields always come from the database; the LLM only fills the
    list fields. Any LLM failure leaves them empty.
    """
    booking = get_booking(db, booking_id)
    summary = empty_summary(booking, tz)
    booking_facts = {
        'bookingId': booking.id,
        'providerCode': booking.provider_code,
        'sessionTimeUTC': summary['sessionTimeUTC'],
        'durationMins': booking.duration_minutes,
        'status': booking.status,
    }

    try:
        parsed = _parse_summary(llm.complete(f'{SUMMARY_INSTRUCTIONS}\n\nBooking: {json.dumps(booking_facts)}'))
    except LLMUnavailableError as exc:
        logger.warning('Session summary unavailable for booking %s: %s', booking_id, exc)
        return summary

    if parsed is None:
        logger.warning('Session summary for booking %s was not a JSON object', booking_id)
        return summary

    for key in SUMMARY_LIST_FIELDS:
        value = parsed.get(key)
        if isinstance(value, list):
            summary[key] = [str(item).strip() for item in value if str(item).strip()]
    return summary
