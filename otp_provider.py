"""
OTP delivery providers.

The API never talks to an SMS gateway directly: it gets an ``OtpProvider`` from
``get_otp_provider``. ``build_otp_provider`` picks the implementation from
configuration when the application starts.
"""

import logging
import re
import secrets
import uuid
from typing import Dict, Optional
from urllib.parse import quote

import httpx
from fastapi import Request
from pydantic import BaseModel

from config import IS_PRODUCTION, OTP_API_KEY, OTP_BASE_URL, OTP_EXPIRY_MINUTES, OTP_PROVIDER, OTP_TIMEOUT_SECONDS
from errors import InternalError, ProviderError, ProviderTimeout

logger = logging.getLogger(__name__)

TEMPLATES = {
    "registration": "Your OTP for registration is {otp}. Valid for %d minutes." % OTP_EXPIRY_MINUTES,
    "password_reset": "Your OTP for password reset is {otp}. Valid for %d minutes." % OTP_EXPIRY_MINUTES,
}


class OtpDispatch(BaseModel):
    session_id: str
    # Only the fake provider knows the code
    code: Optional[str] = None


class OtpProvider:
    def send_code(self, contact: str, purpose: str) -> OtpDispatch:
        raise NotImplementedError

    def verify_code(self, session_id: str, code: str) -> bool:
        raise NotImplementedError

    def close(self) -> None:
        pass


def format_phone(phone: str) -> str:
    """Digits only; bare 10-digit Indian numbers get the 91 country code."""
    digits = re.sub(r"\D", "", phone)
    if len(digits) == 10:
        digits = "91" + digits
    return digits


class TwoFactorProvider(OtpProvider):
    """2factor.in SMS OTP API."""

    def __init__(self, api_key: str, base_url: str = OTP_BASE_URL, timeout: float = OTP_TIMEOUT_SECONDS,
                 client: Optional[httpx.Client] = None):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(timeout=timeout)

    def _get(self, path: str) -> dict:
        try:
            response = self.client.get(f"{self.base_url}/{self.api_key}/{path}")
        except httpx.TimeoutException:
            logger.error("2Factor request timed out")
            raise ProviderTimeout()
        except httpx.HTTPError as e:
            logger.error(f"2Factor request failed: {e}")
            raise ProviderError()
        try:
            return response.json()
        except ValueError:
            logger.error(f"2Factor returned a non-JSON response ({response.status_code})")
            raise ProviderError()

    def send_code(self, contact: str, purpose: str) -> OtpDispatch:
        template = quote(TEMPLATES[purpose], safe="")
        data = self._get(f"SMS/{format_phone(contact)}/AUTOGEN/{template}")
        if data.get("Status") != "Success":
            logger.error(f"2Factor OTP sending failed: {data.get('Details')}")
            raise ProviderError()
        return OtpDispatch(session_id=data["Details"])

    def verify_code(self, session_id: str, code: str) -> bool:
        data = self._get(f"SMS/VERIFY/{quote(session_id, safe='')}/{quote(code, safe='')}")
        return data.get("Status") == "Success"

    def close(self) -> None:
        self.client.close()


class FakeOtpProvider(OtpProvider):
    """In-memory provider for tests and local development."""

    def __init__(self, fixed_code: Optional[str] = None):
        self.fixed_code = fixed_code
        self.codes: Dict[str, str] = {}
        self.sent = []

    def send_code(self, contact: str, purpose: str) -> OtpDispatch:
        code = self.fixed_code or f"{secrets.randbelow(900000) + 100000}"
        session_id = uuid.uuid4().hex
        self.codes[session_id] = code
        self.sent.append((contact, purpose, session_id))
        logger.info(f"Fake OTP issued for {contact} ({purpose})")
        return OtpDispatch(session_id=session_id, code=code)

    def verify_code(self, session_id: str, code: str) -> bool:
        return self.codes.get(session_id) == code


def build_otp_provider(kind: str = OTP_PROVIDER) -> OtpProvider:
    if kind == "fake":
        if IS_PRODUCTION:
            raise RuntimeError("The fake OTP provider cannot be used when APP_ENV=production")
        logger.warning("Using the fake OTP provider - codes are returned in API responses")
        return FakeOtpProvider()
    if kind == "2factor":
        if not OTP_API_KEY:
            raise RuntimeError("OTP_API_KEY must be set to use the 2factor OTP provider")
        return TwoFactorProvider(OTP_API_KEY)
    raise RuntimeError(f"Unknown OTP_PROVIDER: {kind}")


def get_otp_provider(request: Request) -> OtpProvider:
    provider = getattr(request.app.state, "otp_provider", None)
    if provider is None:
        raise InternalError("OTP provider not configured")
    return provider
