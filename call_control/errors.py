"""
Call-side error taxonomy and caller-facing messages.

Every error raised while handling a telephony webhook ends up as a spoken
response; nothing here ever reaches the gateway as a raw exception.
"""
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


class CallControlError(Exception):
    """Base class for call-side errors."""


class FormatError(CallControlError):
    """Submitted PIN digits are malformed (user-correctable, never retried)."""


class AuthError(CallControlError):
    """PIN not recognized. Presented to the caller exactly like FormatError."""


class SignatureError(CallControlError):
    """Webhook authenticity check failed. Rejected without any state mutation."""


class InvalidTransitionError(CallControlError):
    """A CallSession was asked to move backwards or skip a stage."""


class MessageKey:
    """Stable keys into the spoken message catalogue."""

    WELCOME = "welcome"
    NO_INPUT = "no_input"
    PIN_REJECTED = "pin_rejected"
    RECORD_INTRO = "record_intro"
    RECORD_THANKS = "record_thanks"
    SUBMITTED = "submitted"
    RECORDING_ISSUE = "recording_issue"
    TECHNICAL_ISSUE = "technical_issue"


DEFAULT_MESSAGES: Dict[str, str] = {
    MessageKey.WELCOME: "Welcome! Please enter your 6-digit PIN, followed by the pound key.",
    MessageKey.NO_INPUT: "I didn't receive your PIN. Please call back and try again. Goodbye!",
    MessageKey.PIN_REJECTED: "We could not verify that PIN. Please check your PIN and call back. Goodbye!",
    MessageKey.RECORD_INTRO: "Welcome back! Start humming or singing your melody after the beep. You have {max_seconds} seconds. Go!",
    MessageKey.RECORD_THANKS: "Thank you for recording. We're processing your music now!",
    MessageKey.SUBMITTED: "Perfect! Your recording is being processed. You'll receive a text message with your download link shortly. Goodbye!",
    MessageKey.RECORDING_ISSUE: "There was an issue processing your recording. Please try again later. Goodbye!",
    MessageKey.TECHNICAL_ISSUE: "Sorry, there was a technical issue. Please try again later. Goodbye!",
}


def _messages_path() -> Path:
    return Path(__file__).parent / "messages.yaml"


def load_messages(path: Optional[Path] = None) -> Dict[str, str]:
    """
    Load the spoken message catalogue.

    Keys missing from the YAML file fall back to DEFAULT_MESSAGES, so a
    partial catalogue never leaves a caller in silence.
    """
    messages = dict(DEFAULT_MESSAGES)
    path = path or _messages_path()
    if not path.exists():
        return messages

    with open(path, encoding="utf-8") as f:
        data: Any = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Message catalogue {path} must contain a mapping at top-level")

    for key, value in (data.get("voice") or {}).items():
        if isinstance(value, str) and value.strip():
            messages[key] = value.strip()
    return messages


_messages: Optional[Dict[str, str]] = None


def get_user_message(key: str, **params: Any) -> str:
    """Get the caller-facing message for a key, formatted with params."""
    global _messages
    if _messages is None:
        _messages = load_messages()
    template = _messages.get(key, DEFAULT_MESSAGES[MessageKey.TECHNICAL_ISSUE])
    return template.format(**params) if params else template
