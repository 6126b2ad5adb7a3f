"""Built-in node executors."""

from typing import Optional, TYPE_CHECKING

import httpx

from ..core.node_registry import NodeRegistry
from .actions import DelayNodeExecutor, TransformNodeExecutor
from .integrations import DatabaseQueryExecutor, EmailSendExecutor, HttpRequestExecutor
from .logic import FilterNodeExecutor, IfNodeExecutor, LoopNodeExecutor, SwitchNodeExecutor
from .triggers import (
    EmailTriggerExecutor,
    ManualTriggerExecutor,
    ScheduleTriggerExecutor,
    WebhookTriggerExecutor,
)

if TYPE_CHECKING:
    from ..config import AppConfig


def build_node_registry(
    config: Optional["AppConfig"] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None
) -> NodeRegistry:
    """
    Create a sealed registry holding every built-in node type.

    Args:
        config: Application configuration; controls the HTTP user agent and
            whether HTTP nodes require https
        http_transport: Optional httpx transport shared by the HTTP and SendGrid nodes

    Returns:
        Sealed NodeRegistry
    """
    registry = NodeRegistry()

    registry.register(ManualTriggerExecutor())
    registry.register(WebhookTriggerExecutor())
    registry.register(ScheduleTriggerExecutor())
    registry.register(EmailTriggerExecutor())

    registry.register(HttpRequestExecutor(
        user_agent=config.http_user_agent if config else "Workflow-Engine/1.0",
        require_https=config.is_production if config else False,
        transport=http_transport,
    ))
    registry.register(EmailSendExecutor(transport=http_transport))
    registry.register(DatabaseQueryExecutor())
    registry.register(TransformNodeExecutor())
    registry.register(DelayNodeExecutor())

    registry.register(IfNodeExecutor())
    registry.register(SwitchNodeExecutor())
    registry.register(LoopNodeExecutor())
    registry.register(FilterNodeExecutor())

    registry.seal()
    return registry


__all__ = [
    "build_node_registry",
    "ManualTriggerExecutor",
    "WebhookTriggerExecutor",
    "ScheduleTriggerExecutor",
    "EmailTriggerExecutor",
    "HttpRequestExecutor",
    "EmailSendExecutor",
    "DatabaseQueryExecutor",
    "TransformNodeExecutor",
    "DelayNodeExecutor",
    "IfNodeExecutor",
    "SwitchNodeExecutor",
    "LoopNodeExecutor",
    "FilterNodeExecutor",
]
