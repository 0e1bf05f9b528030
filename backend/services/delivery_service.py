"""
Adaptateurs de livraison : SMS (Twilio), email (SMTP), push (Firebase Cloud Messaging).

Chaque adaptateur expose un seul appel d'envoi et traduit les erreurs du
fournisseur en AdapterRetryableError (réessayer plus tard) ou
AdapterPermanentError (inutile de réessayer). Les SDK étant synchrones, les
appels réseau tournent dans un thread via asyncio.to_thread.
"""
import asyncio
import logging
import os
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

import firebase_admin
from firebase_admin import credentials, exceptions as firebase_exceptions, messaging
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

from core.exceptions import AdapterPermanentError, AdapterRetryableError
from core.utils import mask_phone

logger = logging.getLogger(__name__)


# ── SMS ───────────────────────────────────────────────────────────────────────

class SmsAdapter:
    def __init__(self, account_sid: Optional[str], auth_token: Optional[str], from_number: Optional[str]):
        self._from = from_number
        self._client = Client(account_sid, auth_token) if account_sid and auth_token else None

    @property
    def configured(self) -> bool:
        return self._client is not None and bool(self._from)

    def _send_sync(self, to: str, body: str) -> str:
        message = self._client.messages.create(body=body, from_=self._from, to=to)
        return message.sid

    async def send(self, to: str, body: str) -> None:
        if not self.configured:
            raise AdapterPermanentError("SMS non configuré (TWILIO_ACCOUNT_SID / TWILIO_SMS_NUMBER)")
        if not to:
            raise AdapterPermanentError("Numéro de téléphone manquant")
        try:
            sid = await asyncio.to_thread(self._send_sync, to, body)
        except TwilioRestException as e:
            # 429 et 5xx : côté Twilio, on retente ; autres 4xx : numéro ou contenu invalide
            if e.status == 429 or e.status >= 500:
                raise AdapterRetryableError(f"Twilio {e.status}: {e.msg}")
            raise AdapterPermanentError(f"Twilio {e.status}: {e.msg}")
        except TwilioException as e:
            raise AdapterPermanentError(f"Twilio : {e}")
        except OSError as e:
            raise AdapterRetryableError(f"Twilio injoignable : {e}")
        logger.info(f"SMS envoyé à {mask_phone(to)} (sid={sid})")


# ── Email ─────────────────────────────────────────────────────────────────────

class EmailAdapter:
    """SMTP : STARTTLS sur 587, SSL direct sur 465."""

    def __init__(
        self,
        smtp_host: Optional[str],
        smtp_port: int,
        username: Optional[str],
        password: Optional[str],
        from_name: str = "LetUsConnect",
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.username = username
        self.password = password
        self.from_name = from_name

    @property
    def configured(self) -> bool:
        return bool(self.smtp_host and self.username and self.password)

    def _build_message(self, to: str, subject: str, body: str, html_body: Optional[str]) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["From"] = f"{self.from_name} <{self.username}>"
        msg["To"] = to
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain", "utf-8"))
        if html_body:
            msg.attach(MIMEText(html_body, "html", "utf-8"))
        return msg

    def _send_sync(self, to: str, subject: str, body: str, html_body: Optional[str]) -> None:
        msg = self._build_message(to, subject, body, html_body)
        context = ssl.create_default_context()
        if self.smtp_port == 465:
            with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context) as server:
                server.login(self.username, self.password)
                server.send_message(msg)
        else:
            with smtplib.SMTP(self.smtp_host, self.smtp_port) as server:
                server.ehlo()
                server.starttls(context=context)
                server.ehlo()
                server.login(self.username, self.password)
                server.send_message(msg)

    async def send(self, to: str, subject: str, body: str, html_body: Optional[str] = None) -> None:
        if not self.configured:
            raise AdapterPermanentError("SMTP non configuré (SMTP_HOST / SMTP_USERNAME)")
        if not to:
            raise AdapterPermanentError("Adresse email manquante")
        try:
            await asyncio.to_thread(self._send_sync, to, subject, body, html_body)
        except (smtplib.SMTPAuthenticationError, smtplib.SMTPRecipientsRefused) as e:
            raise AdapterPermanentError(f"SMTP refusé : {e}")
        except (smtplib.SMTPException, OSError) as e:
            raise AdapterRetryableError(f"SMTP indisponible : {e}")
        logger.info(f"Email envoyé à {to} : {subject}")


def build_notification_html(title: str, body: str, footer: str = "LetUsConnect") -> str:
    """Gabarit HTML minimal des emails de notification."""
    paragraphs = "".join(f"<p style=\"margin:0 0 12px;\">{escape(line)}</p>" for line in body.splitlines() if line.strip())
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="margin:0;padding:0;background:#f4f6fb;font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,sans-serif;">
  <div style="max-width:560px;margin:24px auto;background:#ffffff;border-radius:12px;overflow:hidden;border:1px solid #e3e7f0;">
    <div style="padding:20px 24px;background:#2948ff;color:#ffffff;">
      <h1 style="margin:0;font-size:20px;">{escape(title)}</h1>
    </div>
    <div style="padding:24px;color:#1f2937;font-size:15px;line-height:1.5;">
      {paragraphs}
    </div>
    <div style="padding:12px 24px;color:#6b7280;font-size:12px;border-top:1px solid #e3e7f0;">{escape(footer)}</div>
  </div>
</body>
</html>"""


# ── Push ──────────────────────────────────────────────────────────────────────

_RETRYABLE_FIREBASE = (
    firebase_exceptions.UnavailableError,
    firebase_exceptions.InternalError,
    firebase_exceptions.DeadlineExceededError,
    firebase_exceptions.ResourceExhaustedError,
)


def init_firebase(credentials_path: str) -> None:
    """Initialise Firebase Admin une seule fois par processus."""
    if firebase_admin._apps:
        return
    # Fichier de compte de service si présent, sinon credentials par défaut (Cloud)
    if credentials_path and os.path.exists(credentials_path):
        firebase_admin.initialize_app(credentials.Certificate(credentials_path))
    else:
        firebase_admin.initialize_app()


class PushAdapter:
    """Publication sur un topic FCM par utilisateur (`user_<uid>`)."""

    def __init__(self, credentials_path: Optional[str] = None):
        self._credentials_path = credentials_path
        self._ready = False

    def _ensure_app(self) -> None:
        if self._ready:
            return
        try:
            init_firebase(self._credentials_path)
        except (ValueError, OSError) as e:
            raise AdapterPermanentError(f"Firebase Admin non initialisé : {e}")
        self._ready = True

    def _send_sync(self, channel: str, event: str, payload: dict) -> str:
        message = messaging.Message(
            notification=messaging.Notification(
                title=payload.get("title", ""),
                body=payload.get("content", ""),
            ),
            # FCM n'accepte que des chaînes dans `data`
            data={"event": event, **{k: "" if v is None else str(v) for k, v in payload.items()}},
            topic=channel,
        )
        return messaging.send(message)

    async def publish(self, channel: str, event: str, payload: dict) -> None:
        self._ensure_app()
        try:
            message_id = await asyncio.to_thread(self._send_sync, channel, event, payload)
        except _RETRYABLE_FIREBASE as e:
            raise AdapterRetryableError(f"FCM indisponible : {e}")
        except firebase_exceptions.FirebaseError as e:
            raise AdapterPermanentError(f"FCM a refusé le message : {e}")
        except ValueError as e:
            raise AdapterPermanentError(f"Message FCM invalide : {e}")
        logger.debug(f"Push publié sur {channel} ({message_id})")
