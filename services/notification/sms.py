"""
services/notification/sms.py
Twilio SMS delivery behind a circuit breaker.

send() raises DeliveryError on any failure; callers decide whether to swallow it.
"""

import logging
from functools import lru_cache

from pybreaker import CircuitBreaker, CircuitBreakerError
from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from config.settings import settings
from shared.exceptions import DeliveryError

logger = logging.getLogger(__name__)


def normalize_phone(phone: str) -> str:
    """E.164-ish: keep numbers that already carry a country code."""
    phone = phone.strip().replace(" ", "")
    return phone if phone.startswith("+") else f"{settings.SMS_DEFAULT_COUNTRY_CODE}{phone}"


class TwilioSmsSender:
    """Short-message sender. Opens the breaker after repeated provider failures."""

    def __init__(self, client: Client | None = None, breaker: CircuitBreaker | None = None):
        self._client = client
        self.breaker = breaker or CircuitBreaker(
            fail_max=settings.SMS_BREAKER_FAIL_MAX,
            reset_timeout=settings.SMS_BREAKER_RESET_SECONDS,
            name="twilio-sms",
        )

    @property
    def client(self) -> Client:
        if self._client is None:
            if not settings.TWILIO_ACCOUNT_SID or not settings.TWILIO_AUTH_TOKEN:
                raise DeliveryError("Twilio credentials are not configured")
            self._client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
        return self._client

    def send(self, to_phone: str, body: str) -> str:
        """Send one SMS. Returns the provider message SID."""
        if not to_phone:
            raise DeliveryError("No phone number on file")
        try:
            message = self.breaker.call(
                self.client.messages.create,
                body=body,
                from_=settings.TWILIO_FROM_NUMBER,
                to=normalize_phone(to_phone),
            )
        except CircuitBreakerError as e:
            raise DeliveryError(f"SMS provider circuit open: {e}") from e
        except (TwilioException, OSError) as e:
            raise DeliveryError(f"SMS send failed: {e}") from e
        return message.sid


@lru_cache()
def get_sms_sender() -> TwilioSmsSender:
    """FastAPI dependency: process-wide sender so the breaker state is shared."""
    return TwilioSmsSender()
