"""
Escalation External Service Integrations
=========================================

External services for the escalation module:
- WhatsApp delivery through the Twilio Messages API
- Notification dispatcher (WhatsApp + in-app record)
- YAML policy config file watcher
"""

import asyncio
import json
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import yaml
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from escalation_desk.config import DeliveryStatus, Settings, settings as default_settings
from escalation_desk.core import ConfigurationException, DeliveryException
from escalation_desk.escalations.application.services import (
    INotificationDispatcher, IPolicyConfigProvider,
)
from escalation_desk.escalations.domain import DeliveryResult, PolicyConfig, UserRecord
from escalation_desk.escalations.infrastructure.repositories import SQLAlchemyNotificationStore
from escalation_desk.shared.infrastructure.logging import get_logger, log_latency

logger = get_logger(__name__)

E164_PATTERN = re.compile(r"^\+[1-9]\d{6,14}$")

# Twilio error codes for a malformed or non-WhatsApp destination
TWILIO_INVALID_NUMBER_CODES = (21211, 21614, 63024)


def to_e164(number: Optional[str]) -> Optional[str]:
    """Normalise a stored number to E.164, or None when it cannot be."""
    if not number:
        return None
    candidate = re.sub(r"[\s\-()]", "", number.strip())
    if not candidate.startswith("+"):
        candidate = f"+{candidate}"
    return candidate if E164_PATTERN.match(candidate) else None


def format_sent_at(moment: Optional[datetime] = None) -> str:
    """Timestamp shown in messages, e.g. '07 Mar 2025, 14:05'."""
    return (moment or datetime.now(timezone.utc)).strftime("%d %b %Y, %H:%M")


# ========== Policy Config Hot-Reload ==========

class PolicyConfigFileHandler(FileSystemEventHandler):
    """Watchdog event handler for escalation policy file changes."""

    def __init__(self, config_manager: "PolicyConfigManager", config_path: Path):
        self.config_manager = config_manager
        self.config_path = config_path
        super().__init__()

    def on_modified(self, event):
        """Handle file modification event."""
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.config_path.resolve():
            logger.info(f"Policy file changed: {event.src_path}")
            self.config_manager.reload()


class PolicyConfigManager(IPolicyConfigProvider):
    """
    Thread-safe escalation policy manager with hot-reload support.

    Uses watchdog to monitor the YAML file and swap the role -> capability
    mapping without restarting the service. A file that fails validation
    on reload leaves the previous mapping in place.
    """

    def __init__(self):
        self._config: Optional[PolicyConfig] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> PolicyConfig:
        """Initial configuration load."""
        self._path = path
        try:
            config = self._load_from_file(path)
        except Exception as e:
            raise ConfigurationException(f"Invalid escalation policy file {path}: {e}") from e
        with self._lock:
            self._config = config
        return config

    def _load_from_file(self, path: Path) -> PolicyConfig:
        """Load and parse YAML config file."""
        if not path.exists():
            logger.warning(f"Escalation policy file not found: {path}, using defaults")
            return PolicyConfig()

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return PolicyConfig(**data)

    def reload(self) -> bool:
        """Reload configuration from file."""
        if self._path is None:
            return False

        try:
            new_config = self._load_from_file(self._path)
            with self._lock:
                self._config = new_config
            logger.info("Escalation policy reloaded successfully")
            return True
        except Exception as e:
            logger.error(f"Failed to reload escalation policy: {e}")
            return False

    def start_watching(self) -> None:
        """
        Start watching the policy file for changes.

        Skips watching when the file does not exist or inotify is unavailable.
        """
        if self._path is None:
            raise RuntimeError("Policy not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(
                f"Policy file doesn't exist, skipping file watch: {self._path}. "
                "Using default role capabilities."
            )
            return

        try:
            self._observer = Observer()
            handler = PolicyConfigFileHandler(self, self._path)
            self._observer.schedule(
                handler,
                str(self._path.parent),
                recursive=False
            )
            self._observer.start()
            logger.info(f"Started watching policy file: {self._path}")
        except (OSError, FileNotFoundError) as e:
            logger.warning(
                f"File watching not available, using static policy: {e}"
            )
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching the policy file (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    @property
    def config(self) -> PolicyConfig:
        """Get current configuration."""
        with self._lock:
            if self._config is None:
                raise RuntimeError("Escalation policy not loaded")
            return self._config

    def get_config(self) -> PolicyConfig:
        # Serverless runs without lifespan; load on first use there
        if self._config is None:
            self.load(self._path or default_settings.policy_config_path)
        return self.config


policy_config_manager = PolicyConfigManager()


# ========== WhatsApp Delivery ==========

class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        """Get current circuit state."""
        if self._state == CircuitState.OPEN and self._last_failure_time:
            elapsed = time.time() - self._last_failure_time
            if elapsed >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = time.time()

        if self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


@dataclass
class WhatsAppMessage:
    """Values for the approved WhatsApp content template."""
    recipient_name: str
    sender_name: str
    subject: str
    message: str
    note: str = ""
    contact: str = ""
    date_time: str = ""

    def content_variables(self) -> Dict[str, str]:
        values = [
            self.recipient_name or "User",
            self.sender_name,
            self.subject,
            self.message,
            self.note or "-",
            self.contact or "-",
            self.date_time or format_sent_at(),
        ]
        return {str(i): str(v) for i, v in enumerate(values, start=1)}


class WhatsAppClient:
    """
    Twilio WhatsApp client with circuit breaker and retry logic.

    Handles sending template messages with:
    - Circuit breaker to prevent cascade failures
    - Exponential backoff retry
    - Timeout handling

    ``send`` returns the Twilio message SID or raises ``DeliveryException``
    carrying a short machine-readable reason.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        backoff_base: float = 1.0
    ):
        self._settings = config or default_settings
        self._transport = transport
        self._backoff_base = backoff_base
        self._circuit_breaker = CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=60
        )
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    def configured(self) -> bool:
        return self._settings.whatsapp_configured

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self._settings.twilio_api_base_url,
                auth=(self._settings.twilio_account_sid or "", self._settings.twilio_auth_token or ""),
                timeout=self._settings.whatsapp_timeout_seconds,
                transport=self._transport,
            )
        return self._http_client

    def _build_payload(self, to_number: str, message: WhatsAppMessage) -> Dict[str, Any]:
        return {
            "From": f"whatsapp:{to_e164(self._settings.twilio_whatsapp_number)}",
            "To": f"whatsapp:{to_number}",
            "ContentSid": self._settings.twilio_content_sid,
            "ContentVariables": json.dumps(message.content_variables()),
        }

    async def send(self, number: Optional[str], message: WhatsAppMessage) -> str:
        """
        Send one template message.

        Raises:
            DeliveryException: with reason ``whatsapp_not_configured``,
                ``invalid_whatsapp_number``, ``circuit_open`` or
                ``whatsapp_send_failed``
        """
        if not self.configured:
            raise DeliveryException("whatsapp_not_configured", "Twilio credentials are not set")

        to_number = to_e164(number)
        if to_number is None:
            raise DeliveryException("invalid_whatsapp_number", f"Invalid E.164 WhatsApp number: {number}")

        if not self._circuit_breaker.allow_request():
            raise DeliveryException("circuit_open", "WhatsApp delivery temporarily disabled")

        payload = self._build_payload(to_number, message)
        path = f"/Accounts/{self._settings.twilio_account_sid}/Messages.json"
        max_retries = self._settings.whatsapp_max_retries
        last_error = "unknown error"

        for attempt in range(max_retries):
            try:
                client = await self._get_client()
                response = await client.post(path, data=payload)

                if response.status_code in (200, 201):
                    self._circuit_breaker.record_success()
                    sid = self._message_sid(response)
                    logger.info(
                        "WhatsApp message sent",
                        extra={"to": f"{to_number[:5]}...", "sid": sid}
                    )
                    return sid

                last_error = f"HTTP {response.status_code}"
                logger.warning(
                    "Twilio returned non-success status",
                    extra={
                        "status_code": response.status_code,
                        "attempt": attempt + 1
                    }
                )
                # 4xx other than rate limiting is a bad request, not an outage
                if 400 <= response.status_code < 500 and response.status_code != 429:
                    raise DeliveryException(self._rejection_reason(response), last_error)

            except httpx.HTTPError as e:
                last_error = str(e) or e.__class__.__name__
                logger.error(
                    "WhatsApp send failed",
                    extra={
                        "error": last_error,
                        "attempt": attempt + 1
                    }
                )

            if attempt < max_retries - 1:
                delay = self._backoff_base * (2 ** attempt)
                await asyncio.sleep(delay)

        self._circuit_breaker.record_failure()
        raise DeliveryException("whatsapp_send_failed", last_error)

    @staticmethod
    def _message_sid(response: httpx.Response) -> str:
        """SID from an accepted reply; empty when the body is not JSON."""
        try:
            body = response.json()
        except ValueError:
            return ""
        return str(body.get("sid") or "") if isinstance(body, dict) else ""

    @staticmethod
    def _rejection_reason(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        code = body.get("code") if isinstance(body, dict) else None
        return "invalid_whatsapp_number" if code in TWILIO_INVALID_NUMBER_CODES else "whatsapp_send_failed"

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


whatsapp_client = WhatsAppClient()


class NotificationDispatcher(INotificationDispatcher):
    """
    Delivers notices over WhatsApp and records them in-app.

    Recipients who disabled WhatsApp or have no number are reported as
    failed without contacting Twilio.
    """

    def __init__(
        self,
        client: WhatsAppClient,
        store: SQLAlchemyNotificationStore,
        sender_name: Optional[str] = None
    ):
        self._client = client
        self._store = store
        self._sender_name = sender_name or default_settings.notification_sender_name

    async def send(
        self,
        recipient: UserRecord,
        subject: str,
        body: str,
        meta: dict
    ) -> DeliveryResult:
        if not recipient.whatsapp_enabled:
            return DeliveryResult(recipient.id, DeliveryStatus.FAILED, "whatsapp_disabled")
        if not recipient.whatsapp_number:
            return DeliveryResult(recipient.id, DeliveryStatus.FAILED, "missing_whatsapp_number")

        message = WhatsAppMessage(
            recipient_name=recipient.name,
            sender_name=meta.get("sender_name") or self._sender_name,
            subject=subject,
            message=body,
            note=meta.get("note") or "",
            contact=meta.get("contact") or "",
        )
        try:
            with log_latency(logger, "whatsapp_send", recipient_id=recipient.id):
                await self._client.send(recipient.whatsapp_number, message)
        except DeliveryException as e:
            logger.warning(
                "Notification not delivered",
                extra={
                    "recipient_id": recipient.id,
                    "reason": e.reason,
                    "matter_id": meta.get("matter_id")
                }
            )
            return DeliveryResult(recipient.id, DeliveryStatus.FAILED, e.reason)

        return DeliveryResult(recipient.id, DeliveryStatus.SENT)

    async def record_in_app(self, recipient: UserRecord, payload: dict) -> None:
        await self._store.record(recipient.id, payload)
