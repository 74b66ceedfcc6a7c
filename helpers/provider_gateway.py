# helpers/provider_gateway.py
"""
Single seam to the outside carriers.

`TwilioGateway` covers voice, SMS and recording media; `SmtpEmailGateway`
covers email. `ProviderGateway` routes by channel and is the only object the
rest of the pipeline talks to, so tests swap it with `set_gateway()`.

All carrier failures are classified here:
  - ProviderRejected        → terminal, verbatim code + message
  - ProviderTransientError  → timeout, connection failure, provider 5xx
"""
from __future__ import annotations

import smtplib
import socket
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import AsyncIterator, Dict, Optional

import httpx
import phonenumbers
import requests
from starlette.concurrency import run_in_threadpool
from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.jwt.access_token import AccessToken
from twilio.jwt.access_token.grants import VoiceGrant
from twilio.rest import Client

from helpers.config import (
    CALL_RING_TIMEOUT_SECONDS,
    DEFAULT_PHONE_REGION,
    PROVIDER_TIMEOUT_SECONDS,
    SMTP_PASSWORD,
    SMTP_PORT,
    SMTP_SERVER,
    SMTP_USE_TLS,
    SMTP_USERNAME,
    TWILIO_ACCOUNT_SID,
    TWILIO_API_BASE_URL,
    TWILIO_API_KEY,
    TWILIO_API_SECRET,
    TWILIO_AUTH_TOKEN,
    TWILIO_TWIML_APP_SID,
    VOICE_TOKEN_TTL_SECONDS,
    get_logger,
    public_base_url,
)
from helpers.errors import ProviderNotConfigured, ProviderRejected, ProviderTransientError
from models.message import MessageChannel

logger = get_logger("provider_gateway")


# ─────────────────────────────────────────────────────────────────────────────
# Phone numbers
# ─────────────────────────────────────────────────────────────────────────────
def to_e164(raw: Optional[str], default_region: str = DEFAULT_PHONE_REGION) -> Optional[str]:
    s = (raw or "").strip()
    if not s:
        return None
    try:
        num = phonenumbers.parse(s, None if s.startswith("+") else default_region)
    except phonenumbers.NumberParseException:
        return None
    if not phonenumbers.is_possible_number(num):
        return None
    return phonenumbers.format_number(num, phonenumbers.PhoneNumberFormat.E164)


def webhook_url(path: str) -> Optional[str]:
    base = public_base_url()
    return f"{base}{path}" if base else None


# Callback paths served by controllers/twilio_webhooks.py
VOICE_PATH = "/api/webhooks/twilio/voice"
CALL_STATUS_PATH = "/api/webhooks/twilio/status"
RECORDING_STATUS_PATH = "/api/webhooks/twilio/recording"
SMS_STATUS_PATH = "/api/webhooks/twilio/sms-status"


@dataclass
class PlacedCall:
    sid: str
    status: str


# ─────────────────────────────────────────────────────────────────────────────
# Twilio (voice, SMS, recordings)
# ─────────────────────────────────────────────────────────────────────────────
def issue_voice_token(identity: str, ttl: int = VOICE_TOKEN_TTL_SECONDS) -> str:
    """Access token the browser softphone registers with; inbound calls are dialed to `identity`."""
    account_sid = TWILIO_ACCOUNT_SID
    secret = TWILIO_API_SECRET or TWILIO_AUTH_TOKEN
    if not (account_sid and secret):
        raise ProviderNotConfigured("Twilio credentials are not configured")

    token = AccessToken(account_sid, TWILIO_API_KEY or account_sid, secret, identity=identity, ttl=ttl)
    token.add_grant(VoiceGrant(incoming_allow=True, outgoing_application_sid=TWILIO_TWIML_APP_SID))
    return token.to_jwt()


def _classify_twilio(e: TwilioRestException, what: str):
    code = str(e.code) if getattr(e, "code", None) is not None else None
    msg = getattr(e, "msg", None) or str(e)
    status = getattr(e, "status", None)
    if status is not None and status >= 500:
        return ProviderTransientError(f"{what}: {msg}", code=code, status=status)
    return ProviderRejected(msg, code=code, status=status)


class TwilioGateway:
    def __init__(self, account_sid: Optional[str] = TWILIO_ACCOUNT_SID,
                 auth_token: Optional[str] = TWILIO_AUTH_TOKEN,
                 api_base_url: str = TWILIO_API_BASE_URL,
                 timeout: float = PROVIDER_TIMEOUT_SECONDS):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout = timeout
        self._client: Optional[Client] = None

    @property
    def client(self) -> Client:
        if not (self.account_sid and self.auth_token):
            raise ProviderNotConfigured("Twilio credentials are not configured")
        if self._client is None:
            self._client = Client(self.account_sid, self.auth_token,
                                  http_client=TwilioHttpClient(timeout=self.timeout))
        return self._client

    async def _call(self, what: str, fn):
        try:
            return await run_in_threadpool(fn)
        except TwilioRestException as e:
            err = _classify_twilio(e, what)
            logger.warning("[twilio] %s failed status=%s code=%s msg=%s", what, e.status, e.code, e.msg)
            raise err from e
        except (requests.Timeout, requests.ConnectionError, socket.timeout) as e:
            logger.warning("[twilio] %s transport error: %s", what, e)
            raise ProviderTransientError(f"{what}: {e.__class__.__name__}: {e}") from e

    async def place_call(self, *, to_number: str, from_number: str, record: bool) -> PlacedCall:
        params: Dict[str, object] = {
            "to": to_number,
            "from_": from_number,
            "timeout": CALL_RING_TIMEOUT_SECONDS,
        }
        voice_url = webhook_url(VOICE_PATH)
        if voice_url:
            params["url"] = voice_url
        else:
            params["twiml"] = "<Response><Pause length=\"1\"/></Response>"
        status_cb = webhook_url(CALL_STATUS_PATH)
        if status_cb:
            params["status_callback"] = status_cb
            params["status_callback_event"] = ["initiated", "ringing", "answered", "completed"]
        if record:
            params["record"] = True
            rec_cb = webhook_url(RECORDING_STATUS_PATH)
            if rec_cb:
                params["recording_status_callback"] = rec_cb

        call = await self._call("place_call", lambda: self.client.calls.create(**params))
        return PlacedCall(sid=call.sid, status=str(call.status or "queued"))

    async def end_call(self, call_sid: str) -> None:
        await self._call("end_call", lambda: self.client.calls(call_sid).update(status="completed"))

    async def send_sms(self, *, to_number: str, from_number: str, body: str) -> str:
        status_cb = webhook_url(SMS_STATUS_PATH)

        def _send():
            return self.client.messages.create(
                body=body,
                from_=from_number,
                to=to_number,
                status_callback=status_cb if status_cb else None,
            )

        msg = await self._call("send_sms", _send)
        return msg.sid

    def recording_media_url(self, recording_url: str) -> str:
        """Provider recording references come without an extension; ask for MP3."""
        url = recording_url
        if url.startswith("/"):
            url = f"{self.api_base_url}{url}"
        if url.endswith(".json"):
            url = url[: -len(".json")]
        if not url.endswith(".mp3") and not url.endswith(".wav"):
            url += ".mp3"
        return url

    def _auth(self) -> httpx.BasicAuth:
        if not (self.account_sid and self.auth_token):
            raise ProviderNotConfigured("Twilio credentials are not configured")
        return httpx.BasicAuth(self.account_sid, self.auth_token)

    async def fetch_recording(self, recording_url: str) -> bytes:
        url = self.recording_media_url(recording_url)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                r = await client.get(url, auth=self._auth())
        except httpx.TransportError as e:
            raise ProviderTransientError(f"fetch_recording: {e.__class__.__name__}: {e}") from e
        if r.status_code >= 500:
            raise ProviderTransientError(f"fetch_recording: HTTP {r.status_code}", status=r.status_code)
        if r.status_code != 200:
            raise ProviderRejected(f"recording fetch failed: HTTP {r.status_code}", status=r.status_code)
        return r.content

    async def stream_recording(self, recording_url: str) -> AsyncIterator[bytes]:
        url = self.recording_media_url(recording_url)
        auth = self._auth()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                async with client.stream("GET", url, auth=auth) as r:
                    if r.status_code >= 500:
                        raise ProviderTransientError(f"stream_recording: HTTP {r.status_code}", status=r.status_code)
                    if r.status_code != 200:
                        raise ProviderRejected(f"recording fetch failed: HTTP {r.status_code}", status=r.status_code)
                    async for chunk in r.aiter_bytes():
                        yield chunk
        except httpx.TransportError as e:
            raise ProviderTransientError(f"stream_recording: {e.__class__.__name__}: {e}") from e


# ─────────────────────────────────────────────────────────────────────────────
# Email (SMTP)
# ─────────────────────────────────────────────────────────────────────────────
class SmtpEmailGateway:
    def __init__(self, server: Optional[str] = SMTP_SERVER, port: int = SMTP_PORT,
                 username: Optional[str] = SMTP_USERNAME, password: Optional[str] = SMTP_PASSWORD,
                 use_tls: bool = SMTP_USE_TLS, timeout: float = PROVIDER_TIMEOUT_SECONDS):
        self.server = server
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def _build(self, *, to_address: str, from_address: str, subject: str, body: str, msg_id: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["From"] = formataddr((None, from_address)) if from_address else self.username
        msg["To"] = to_address
        msg["Subject"] = subject or ""
        msg["Message-ID"] = msg_id
        msg.attach(MIMEText(body, "plain", "utf-8"))
        return msg

    def _deliver(self, msg: MIMEMultipart) -> None:
        if self.use_tls:
            with smtplib.SMTP(self.server, self.port, timeout=self.timeout) as server:
                server.ehlo()
                server.starttls()
                server.ehlo()
                server.login(self.username, self.password)
                server.send_message(msg)
        else:
            with smtplib.SMTP_SSL(self.server, self.port, timeout=self.timeout) as server:
                server.login(self.username, self.password)
                server.send_message(msg)

    async def send_email(self, *, to_address: str, from_address: Optional[str], subject: str, body: str) -> str:
        if not (self.server and self.username and self.password):
            raise ProviderNotConfigured("SMTP config missing one of SMTP_SERVER/SMTP_USERNAME/SMTP_PASSWORD")

        msg_id = make_msgid()
        msg = self._build(to_address=to_address, from_address=from_address or self.username,
                          subject=subject, body=body, msg_id=msg_id)
        try:
            await run_in_threadpool(self._deliver, msg)
        except smtplib.SMTPRecipientsRefused as e:
            raise ProviderRejected(f"recipient refused: {to_address}", code="recipients-refused") from e
        except smtplib.SMTPResponseException as e:
            text = e.smtp_error.decode("utf-8", "replace") if isinstance(e.smtp_error, bytes) else str(e.smtp_error)
            if 500 <= e.smtp_code < 600:
                raise ProviderRejected(text, code=str(e.smtp_code)) from e
            raise ProviderTransientError(text, code=str(e.smtp_code)) from e
        except (smtplib.SMTPServerDisconnected, socket.timeout, OSError) as e:
            raise ProviderTransientError(f"smtp: {e.__class__.__name__}: {e}") from e
        logger.info("[smtp] sent to=%s id=%s", to_address, msg_id)
        return msg_id


# ─────────────────────────────────────────────────────────────────────────────
# Channel routing
# ─────────────────────────────────────────────────────────────────────────────
class ProviderGateway:
    def __init__(self, twilio: Optional[TwilioGateway] = None, email: Optional[SmtpEmailGateway] = None):
        self.twilio = twilio or TwilioGateway()
        self.email = email or SmtpEmailGateway()

    async def place_call(self, *, to_number: str, from_number: str, record: bool) -> PlacedCall:
        return await self.twilio.place_call(to_number=to_number, from_number=from_number, record=record)

    async def end_call(self, call_sid: str) -> None:
        await self.twilio.end_call(call_sid)

    async def fetch_recording(self, recording_url: str) -> bytes:
        return await self.twilio.fetch_recording(recording_url)

    def stream_recording(self, recording_url: str) -> AsyncIterator[bytes]:
        return self.twilio.stream_recording(recording_url)

    async def _send_sms(self, msg) -> str:
        return await self.twilio.send_sms(to_number=msg.to_address, from_number=msg.from_address, body=msg.body)

    async def _send_email(self, msg) -> str:
        return await self.email.send_email(to_address=msg.to_address, from_address=msg.from_address,
                                           subject=msg.subject or "", body=msg.body)

    async def submit(self, msg) -> str:
        """Hand one OutboundMessage to its channel's carrier; returns the provider message ID."""
        senders = {
            MessageChannel.SMS: self._send_sms,
            MessageChannel.EMAIL: self._send_email,
        }
        sender = senders.get(MessageChannel(msg.channel))
        if sender is None:
            raise ProviderRejected(f"unsupported channel {msg.channel}")
        return await sender(msg)


_gateway: Optional[ProviderGateway] = None


def get_gateway() -> ProviderGateway:
    global _gateway
    if _gateway is None:
        _gateway = ProviderGateway()
    return _gateway


def set_gateway(gateway) -> None:
    global _gateway
    _gateway = gateway
