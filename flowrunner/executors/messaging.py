"""Outbound message actions: email (Resend API) and chat (Telegram Bot API)."""

from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from ..core.logging import get_logger
from ..models.core import ActionResult, NodeType
from .base import ActionExecutor, require_fields

logger = get_logger(__name__)

TELEGRAM_MAX_MESSAGE_LENGTH = 4096
TELEGRAM_PARSE_MODES = {"HTML", "Markdown", "MarkdownV2"}

# (substring, category, user-facing message); first match wins
TELEGRAM_ERRORS: List[Tuple[str, str, str]] = [
    ("chat not found", "recipient", "Chat not found. Please verify the chat ID."),
    ("bot was blocked", "recipient", "Bot was blocked by the user."),
    ("user is deactivated", "recipient", "The recipient account is deactivated."),
    ("unauthorized", "auth", "Invalid bot token. Please check your credentials."),
    ("message is too long", "payload_too_long", "Message is too long. Maximum length is 4096 characters."),
]

EMAIL_ERRORS: List[Tuple[str, str, str]] = [
    ("api key is invalid", "auth", "Invalid email API key. Please check your credentials."),
    ("missing api key", "auth", "Email API key is missing."),
    ("restricted_api_key", "auth", "Email API key is not allowed to send emails."),
    ("invalid `to` field", "recipient", "Invalid recipient address."),
    ("invalid_to_address", "recipient", "Invalid recipient address."),
    ("domain is not verified", "recipient", "Sender domain is not verified."),
    ("too large", "payload_too_long", "Email payload is too large."),
]


def map_provider_error(message: str, table: List[Tuple[str, str, str]]) -> Tuple[str, str]:
    """Translate a provider error text into (user-facing message, category)."""
    lowered = (message or "").lower()
    for needle, category, friendly in table:
        if needle in lowered:
            return friendly, category
    return message or "Unknown provider error", "http"


def _recipients(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return [part.strip() for part in str(value).split(",") if part.strip()]


class SendEmailExecutor(ActionExecutor):
    """Sends an email through the Resend HTTP API."""

    node_type = NodeType.SEND_EMAIL

    def __init__(self, api_key: Optional[str] = None, default_from: str = "Workflows <noreply@example.com>",
                 api_url: str = "https://api.resend.com", timeout: float = 30.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.api_key = api_key
        self.default_from = default_from
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def preflight(self, config: Dict[str, Any]) -> Optional[ActionResult]:
        missing = require_fields(config, "to", "subject")
        if missing:
            return missing
        if not _recipients(config["to"]):
            return ActionResult.fail("At least one recipient is required.", category="validation")
        if not (config.get("body") or config.get("html")):
            return ActionResult.fail("Email body cannot be empty.", category="validation")
        if not (config.get("apiKey") or self.api_key):
            return ActionResult.fail(
                "Email API key is required. Please configure credentials.", category="validation"
            )
        return None

    def execute(self, config: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        rejected = self.preflight(config)
        if rejected is not None:
            return rejected

        payload: Dict[str, Any] = {
            "from": config.get("from") or self.default_from,
            "to": _recipients(config["to"]),
            "subject": str(config["subject"]),
        }
        if config.get("html"):
            payload["html"] = str(config["html"])
        if config.get("body"):
            payload["text"] = str(config["body"])
        if config.get("replyTo"):
            payload["reply_to"] = str(config["replyTo"])

        api_key = config.get("apiKey") or self.api_key
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(
                    f"{self.api_url}/emails",
                    json=payload,
                    headers={"Authorization": f"Bearer {api_key}"}
                )
        except httpx.TimeoutException:
            return ActionResult.fail("Email provider request timeout", category="timeout")
        except httpx.RequestError as e:
            return ActionResult.fail(f"Email provider unreachable: {e}", category="network")

        body = _json_or_text(response)
        if response.is_success:
            message_id = body.get("id") if isinstance(body, dict) else None
            logger.info(f"Email sent to {len(payload['to'])} recipient(s), id={message_id}")
            return ActionResult.ok({"id": message_id, "to": payload["to"]})

        raw = body.get("message") if isinstance(body, dict) else str(body)
        if response.status_code in (401, 403) and not raw:
            raw = "API key is invalid"
        message, category = map_provider_error(str(raw), EMAIL_ERRORS)
        logger.error(f"Email send failed ({response.status_code}): {raw}")
        return ActionResult.fail(message, category=category, data={"status": response.status_code})


class SendTelegramExecutor(ActionExecutor):
    """Sends a chat message through the Telegram Bot API."""

    node_type = NodeType.SEND_TELEGRAM

    def __init__(self, bot_token: Optional[str] = None, api_url: str = "https://api.telegram.org",
                 timeout: float = 30.0, transport: Optional[httpx.BaseTransport] = None):
        self.bot_token = bot_token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def preflight(self, config: Dict[str, Any]) -> Optional[ActionResult]:
        if not str(config.get("chatId") or "").strip():
            return ActionResult.fail("Chat ID is required.", category="validation")
        if not str(config.get("message") or "").strip():
            return ActionResult.fail("Message cannot be empty.", category="validation")
        if len(str(config["message"])) > TELEGRAM_MAX_MESSAGE_LENGTH:
            return ActionResult.fail(
                f"Message is too long. Maximum length is {TELEGRAM_MAX_MESSAGE_LENGTH} characters.",
                category="payload_too_long"
            )
        parse_mode = config.get("parseMode")
        if parse_mode and parse_mode not in TELEGRAM_PARSE_MODES:
            return ActionResult.fail(f"Unsupported parse mode '{parse_mode}'.", category="validation")
        if not (config.get("botToken") or self.bot_token):
            return ActionResult.fail(
                "Telegram bot token is required. Please configure credentials.", category="validation"
            )
        return None

    def execute(self, config: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        rejected = self.preflight(config)
        if rejected is not None:
            return rejected

        token = config.get("botToken") or self.bot_token
        payload: Dict[str, Any] = {"chat_id": str(config["chatId"]).strip(), "text": str(config["message"])}
        if config.get("parseMode"):
            payload["parse_mode"] = config["parseMode"]

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(f"{self.api_url}/bot{token}/sendMessage", json=payload)
        except httpx.TimeoutException:
            return ActionResult.fail("Telegram request timeout", category="timeout")
        except httpx.RequestError as e:
            return ActionResult.fail(f"Telegram unreachable: {e}", category="network")

        body = _json_or_text(response)
        if response.is_success and isinstance(body, dict) and body.get("ok"):
            result = body.get("result") or {}
            return ActionResult.ok({"messageId": result.get("message_id"), "chatId": payload["chat_id"]})

        description = body.get("description") if isinstance(body, dict) else str(body)
        message, category = map_provider_error(str(description or response.reason_phrase), TELEGRAM_ERRORS)
        logger.error(f"Telegram send failed ({response.status_code}): {description}")
        return ActionResult.fail(message, category=category, data={"status": response.status_code})


def _json_or_text(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text
