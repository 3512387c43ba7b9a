"""Built-in action executors and the registry that dispatches to them."""

from typing import Optional

import httpx

from ..config import AppConfig
from ..core.expressions import Evaluator
from ..models.core import NodeType
from .base import ActionExecutor
from .control import ConditionExecutor, TriggerExecutor
from .database_query import DatabaseQueryExecutor
from .http_request import HttpRequestExecutor
from .messaging import SendEmailExecutor, SendTelegramExecutor
from .registry import ExecutorRegistry
from .ssrf import SSRFGuard
from .transform import TransformExecutor


def build_default_registry(
    config: AppConfig,
    evaluator: Evaluator,
    http_transport: Optional[httpx.BaseTransport] = None,
    guard: Optional[SSRFGuard] = None
) -> ExecutorRegistry:
    """
    Create a registry with one executor per NodeType.

    Args:
        config: Application configuration (timeouts, provider settings)
        evaluator: Evaluator shared by the transform and condition executors
        http_transport: Optional httpx transport for every outbound call
        guard: Optional SSRF guard; built from ``config.ssrf_allowlist`` otherwise

    Returns:
        Populated ExecutorRegistry
    """
    registry = ExecutorRegistry()
    for trigger_type in (NodeType.WEBHOOK_TRIGGER, NodeType.SCHEDULE_TRIGGER, NodeType.EMAIL_TRIGGER):
        registry.register(TriggerExecutor(trigger_type))

    registry.register(HttpRequestExecutor(
        guard=guard or SSRFGuard(allowlist=config.ssrf_allowlist),
        timeout=config.http_timeout,
        transport=http_transport,
    ))
    registry.register(DatabaseQueryExecutor(statement_timeout_ms=config.database_statement_timeout_ms))
    registry.register(SendEmailExecutor(
        api_key=config.email_api_key,
        default_from=config.email_from,
        api_url=config.email_api_url,
        timeout=config.message_timeout,
        transport=http_transport,
    ))
    registry.register(SendTelegramExecutor(
        bot_token=config.telegram_bot_token,
        api_url=config.telegram_api_url,
        timeout=config.message_timeout,
        transport=http_transport,
    ))
    registry.register(TransformExecutor(evaluator))
    registry.register(ConditionExecutor(evaluator))
    return registry


__all__ = [
    "ActionExecutor",
    "ConditionExecutor",
    "DatabaseQueryExecutor",
    "ExecutorRegistry",
    "HttpRequestExecutor",
    "SSRFGuard",
    "SendEmailExecutor",
    "SendTelegramExecutor",
    "TransformExecutor",
    "TriggerExecutor",
    "build_default_registry",
]
