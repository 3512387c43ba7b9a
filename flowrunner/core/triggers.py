"""Helpers for webhook and inbound-email trigger deliveries."""

import base64
import hashlib
import hmac
import re
import secrets
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Union

SIGNATURE_PREFIX = "sha256="
EMAIL_LOCAL_PREFIX = "trigger-"
_EMAIL_TOKEN_PATTERN = re.compile(r"^trigger-([0-9a-f]{16})@", re.IGNORECASE)


def generate_webhook_token() -> str:
    """Unguessable URL-safe token identifying a webhook trigger."""
    return base64.urlsafe_b64encode(secrets.token_bytes(24)).decode("ascii").rstrip("=")


def generate_webhook_secret() -> str:
    return secrets.token_hex(32)


def _as_bytes(body: Union[str, bytes]) -> bytes:
    return body.encode("utf-8") if isinstance(body, str) else body


def sign_payload(secret: str, body: Union[str, bytes]) -> str:
    """HMAC-SHA256 signature in the ``sha256=<hex>`` header format."""
    digest = hmac.new(secret.encode("utf-8"), _as_bytes(body), hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(secret: str, body: Union[str, bytes], signature: Optional[str]) -> bool:
    """Constant-time comparison of a delivery signature against the expected one."""
    if not signature:
        return False
    expected = sign_payload(secret, body)
    if not signature.startswith(SIGNATURE_PREFIX):
        signature = f"{SIGNATURE_PREFIX}{signature}"
    return hmac.compare_digest(expected, signature)


def build_webhook_trigger_input(method: str, headers: Mapping[str, str], query: Mapping[str, Any],
                                body: Any) -> Dict[str, Any]:
    """Trigger payload for a webhook delivery; nodes reference it as ``{{trigger.body...}}``."""
    return {
        "type": "webhook",
        "method": method.upper(),
        "headers": {key.lower(): value for key, value in headers.items()},
        "query": dict(query),
        "body": body,
        "timestamp": datetime.utcnow().isoformat(),
    }


def generate_email_address(domain: str) -> str:
    """Unique inbound address for an email trigger."""
    return f"{EMAIL_LOCAL_PREFIX}{secrets.token_hex(8)}@{domain}"


def extract_token_from_address(address: str) -> Optional[str]:
    """Token part of a generated trigger address, or None for any other address."""
    if not address:
        return None
    # "Name <trigger-...@domain>" form
    if "<" in address and ">" in address:
        address = address[address.index("<") + 1:address.index(">")]
    match = _EMAIL_TOKEN_PATTERN.match(address.strip())
    return match.group(1).lower() if match else None


def _address_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(item) for item in value]


def build_email_trigger_input(parsed: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Trigger payload for an inbound email.

    Args:
        parsed: Parsed message as delivered by the inbound mail provider
            (``from``, ``to``, ``subject``, ``text``, ``html``, ``attachments``, ``headers``)
    """
    attachments = []
    for attachment in parsed.get("attachments") or []:
        attachments.append({
            "filename": attachment.get("filename"),
            "contentType": attachment.get("contentType") or attachment.get("content_type"),
            "size": attachment.get("size"),
        })
    return {
        "type": "email",
        "from": parsed.get("from"),
        "to": _address_list(parsed.get("to")),
        "subject": parsed.get("subject") or "",
        "text": parsed.get("text") or "",
        "html": parsed.get("html") or "",
        "attachments": attachments,
        "headers": dict(parsed.get("headers") or {}),
        "timestamp": datetime.utcnow().isoformat(),
    }
