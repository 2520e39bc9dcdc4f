"""
TwiML documents returned to the telephony gateway.

Each webhook answers with a small XML document of prompts and control verbs,
built with twilio's VoiceResponse. The helpers here build the documents the
call flow actually uses; callers render them with to_xml().
"""
from typing import Optional
from urllib.parse import urlencode

from twilio.twiml.voice_response import VoiceResponse

from .errors import MessageKey, get_user_message


VOICE = "alice"


def _with_query(url: str, **params: Optional[str]) -> str:
    query = urlencode({k: v for k, v in params.items() if v is not None})
    return f"{url}?{query}" if query else url


def _say(verb, key: str, **params) -> None:
    verb.say(get_user_message(key, **params), voice=VOICE)


def pin_prompt(action_url: str, timeout: int = 10) -> VoiceResponse:
    """Ask for a six-digit PIN; speak a goodbye if nothing is entered."""
    response = VoiceResponse()
    gather = response.gather(
        num_digits=6,
        timeout=timeout,
        finish_on_key="#",
        action=action_url,
        method="POST",
    )
    _say(gather, MessageKey.WELCOME)
    _say(response, MessageKey.NO_INPUT)
    response.hangup()
    return response


def record_instructions(
    complete_url: str,
    status_url: str,
    user_id: str,
    call_id: str,
    max_seconds: int = 30,
) -> VoiceResponse:
    """Record the caller; both callbacks carry userId and callSid as correlation."""
    response = VoiceResponse()
    _say(response, MessageKey.RECORD_INTRO, max_seconds=max_seconds)
    response.record(
        max_length=max_seconds,
        timeout=5,
        play_beep=True,
        trim="trim-silence",
        action=_with_query(complete_url, userId=user_id, callSid=call_id),
        method="POST",
        recording_status_callback=_with_query(status_url, userId=user_id, callSid=call_id),
        recording_status_callback_method="POST",
    )
    _say(response, MessageKey.RECORD_THANKS)
    return response


def message_and_hangup(key: str) -> VoiceResponse:
    response = VoiceResponse()
    _say(response, key)
    response.hangup()
    return response


def rejection() -> VoiceResponse:
    """The one generic PIN rejection, used for every failure reason."""
    return message_and_hangup(MessageKey.PIN_REJECTED)


def acknowledgement() -> VoiceResponse:
    return message_and_hangup(MessageKey.SUBMITTED)


def empty() -> VoiceResponse:
    return VoiceResponse()
