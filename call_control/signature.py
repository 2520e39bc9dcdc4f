"""
Telephony webhook signature verification.

The gateway signs every webhook: it takes the full request URL, appends each
POST parameter name and value sorted by name, HMAC-SHA1s the result with the
account auth token and sends the base64 digest in X-Twilio-Signature.
twilio's RequestValidator does the hashing and the constant-time compare.
"""
from typing import Mapping, Optional

from twilio.request_validator import RequestValidator

from .errors import SignatureError


SIGNATURE_HEADER = "X-Twilio-Signature"


class WebhookSignatureValidator:
    """Checks X-Twilio-Signature headers against the auth token."""

    def __init__(self, auth_token: str):
        self.auth_token = auth_token
        self._validator = RequestValidator(auth_token or "")

    def compute_signature(self, url: str, params: Optional[Mapping[str, str]] = None) -> str:
        return self._validator.compute_signature(url, params or {})

    def is_valid(self, url: str, params: Optional[Mapping[str, str]], signature: Optional[str]) -> bool:
        if not signature or not self.auth_token:
            return False
        return self._validator.validate(url, params or {}, signature)

    def validate(self, url: str, params: Optional[Mapping[str, str]], signature: Optional[str]) -> None:
        """Raise SignatureError unless signature matches url and params."""
        if not self.is_valid(url, params, signature):
            raise SignatureError("Invalid webhook signature")
