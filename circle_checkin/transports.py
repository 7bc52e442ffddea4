"""
Delivery transports.

- FcmWebPushTransport: Firebase Cloud Messaging multicast (web push)
- ApnsTransport: Apple Push Notification service over HTTP/2 (native push)
- SmtpEmailTransport / TwilioSmsTransport: emergency-contact channels

Each transport bounds its own network calls with a timeout and reports
outcomes as counts or booleans; none of them retries.
"""
import base64
import json
import logging
import os
import re
import smtplib
import threading
import time
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable, List, Optional

import firebase_admin
import httpx
import jwt
from firebase_admin import credentials, exceptions, messaging
from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from .errors import ConfigurationGap, DeliveryError
from .models import DispatchResult, Notification

logger = logging.getLogger(__name__)

E164 = re.compile(r"^\+?[1-9]\d{7,14}$")


def _preview(token: str) -> str:
    return token[-20:] if len(token) > 20 else token


def init_firebase_app(service_account_json: Optional[str], service_account_path: Optional[str],
                      timeout: float, name: str = "circle-checkin"):
    """
    Initialize a named Firebase app. The JSON string wins over the file path;
    with neither, Application Default Credentials are used.
    """
    if service_account_json:
        cred = credentials.Certificate(json.loads(service_account_json))
    elif service_account_path and os.path.exists(service_account_path):
        cred = credentials.Certificate(service_account_path)
    else:
        logger.warning("No Firebase service account found, falling back to application default credentials")
        cred = credentials.ApplicationDefault()
    return firebase_admin.initialize_app(cred, {"httpTimeout": timeout}, name=name)


class FcmWebPushTransport:
    max_batch_size = 500  # FCM multicast limit

    def __init__(self, app, app_url: str, on_invalid_token: Optional[Callable[[str], object]] = None):
        self.app = app
        self.app_url = app_url.rstrip("/")
        self.on_invalid_token = on_invalid_token

    def _message(self, tokens: List[str], notification: Notification, link: str,
                 high_priority: bool) -> messaging.MulticastMessage:
        return messaging.MulticastMessage(
            tokens=tokens,
            notification=messaging.Notification(title=notification.title, body=notification.body),
            android=messaging.AndroidConfig(priority="high" if high_priority else "normal"),
            webpush=messaging.WebpushConfig(
                headers={"Urgency": "high"} if high_priority else None,
                notification=messaging.WebpushNotification(
                    icon="/icon-192.png",
                    require_interaction=True if high_priority else None,
                ),
                fcm_options=messaging.WebpushFCMOptions(link=f"{self.app_url}{link}"),
            ),
        )

    def send_multicast(self, tokens: List[str], notification: Notification, link: str = "/",
                       high_priority: bool = False) -> DispatchResult:
        if not tokens:
            return DispatchResult()

        message = self._message(tokens, notification, link, high_priority)
        try:
            response = messaging.send_each_for_multicast(message, app=self.app)
        except exceptions.FirebaseError as e:
            raise DeliveryError(f"FCM multicast failed: {e}") from e

        for token, resp in zip(tokens, response.responses):
            if resp.success:
                continue
            logger.warning(f"FCM SEND FAILED -> token=...{_preview(token)}, error={resp.exception}")
            if isinstance(resp.exception, messaging.UnregisteredError) and self.on_invalid_token:
                self.on_invalid_token(token)

        logger.info(f"FCM send summary: success={response.success_count} failure={response.failure_count}")
        return DispatchResult(success_count=response.success_count, failure_count=response.failure_count)


class ApnsTransport:
    """One HTTP/2 request per device token, authenticated with an ES256 provider token."""

    JWT_TTL_SECONDS = 3000  # APNs accepts tokens up to an hour old

    def __init__(self, key_id: Optional[str], team_id: Optional[str], auth_key_base64: Optional[str],
                 bundle_id: str, use_sandbox: bool = False, timeout: float = 10.0,
                 on_invalid_token: Optional[Callable[[str], object]] = None):
        self.key_id = key_id
        self.team_id = team_id
        self.auth_key_base64 = auth_key_base64
        self.bundle_id = bundle_id
        self.host = "https://api.sandbox.push.apple.com" if use_sandbox else "https://api.push.apple.com"
        self.timeout = timeout
        self.on_invalid_token = on_invalid_token
        self._client: Optional[httpx.Client] = None
        self._jwt: Optional[str] = None
        self._jwt_issued_at = 0
        self._lock = threading.Lock()

    def is_configured(self) -> bool:
        return bool(self.key_id and self.team_id and self.auth_key_base64)

    def _provider_token(self) -> str:
        if not self.is_configured():
            raise ConfigurationGap("APNs not configured (APNS_KEY_ID, APNS_TEAM_ID, APNS_AUTH_KEY_BASE64)")
        now = int(time.time())
        with self._lock:
            if self._jwt and now - self._jwt_issued_at < self.JWT_TTL_SECONDS:
                return self._jwt
            auth_key = base64.b64decode(self.auth_key_base64).decode("utf-8")
            self._jwt = jwt.encode({"iss": self.team_id, "iat": now}, auth_key,
                                   algorithm="ES256", headers={"kid": self.key_id})
            self._jwt_issued_at = now
            return self._jwt

    def _http(self) -> httpx.Client:
        with self._lock:
            if self._client is None:
                self._client = httpx.Client(base_url=self.host, http2=True, timeout=self.timeout)
            return self._client

    def send(self, token: str, title: str, body: str) -> bool:
        headers = {
            "authorization": f"bearer {self._provider_token()}",
            "apns-topic": self.bundle_id,
            "apns-push-type": "alert",
            "apns-priority": "10",
        }
        payload = {"aps": {"alert": {"title": title, "body": body}, "sound": "default"}}
        try:
            response = self._http().post(f"/3/device/{token}", headers=headers, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"APNs SEND FAILED -> token=...{_preview(token)}, error={e}")
            return False

        if response.status_code == 200:
            return True
        logger.warning(f"APNs rejected token=...{_preview(token)}: status={response.status_code} body={response.text}")
        if response.status_code == 410 and self.on_invalid_token:
            self.on_invalid_token(token)
        return False

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


class SmtpEmailTransport:
    def __init__(self, server: str, port: int, sender_email: Optional[str], sender_password: Optional[str],
                 timeout: float = 10.0):
        self.server = server
        self.port = port
        self.sender_email = sender_email
        self.sender_password = sender_password
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.sender_email and self.sender_password)

    def send(self, destination: str, subject: str, body: str) -> bool:
        """
        Send a plain-text email.

        Returns:
            bool: True if the SMTP server accepted the message, False otherwise
        """
        if not self.is_configured():
            logger.error("Email credentials not configured. Set SENDER_EMAIL and SENDER_PASSWORD.")
            return False

        message = MIMEMultipart()
        message["From"] = self.sender_email
        message["To"] = destination
        message["Subject"] = subject
        message.attach(MIMEText(body, "plain"))

        try:
            with smtplib.SMTP(self.server, self.port, timeout=self.timeout) as server:
                server.starttls()
                server.login(self.sender_email, self.sender_password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Error sending email to {destination}: {e}")
            return False

        logger.info(f"Email sent to {destination}: {subject}")
        return True


class TwilioSmsTransport:
    def __init__(self, account_sid: Optional[str], auth_token: Optional[str], from_number: Optional[str],
                 timeout: float = 10.0):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.timeout = timeout
        self._client: Optional[Client] = None

    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    def _twilio(self) -> Client:
        if self._client is None:
            self._client = Client(self.account_sid, self.auth_token,
                                  http_client=TwilioHttpClient(timeout=self.timeout))
        return self._client

    def send(self, destination: str, message: str) -> bool:
        if not self.is_configured():
            logger.error("Twilio not configured. Set TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_PHONE_NUMBER.")
            return False
        if not E164.match(destination.replace(" ", "")):
            logger.warning(f"Not sending SMS to invalid phone number {destination!r}")
            return False

        try:
            sent = self._twilio().messages.create(
                body=message[:1600], from_=self.from_number, to=destination.replace(" ", "")
            )
        except TwilioRestException as e:
            logger.error(f"Twilio rejected SMS to {destination}: {e.msg}")
            return False
        except Exception as e:
            logger.warning(f"SMS to {destination} failed: {e}")
            return False

        logger.info(f"SMS sent to {destination} (SID: {sent.sid})")
        return True
