"""Trigger nodes: manual, webhook, schedule and email."""

import hashlib
import hmac
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import croniter

from ..core.logging import get_logger
from ..core.node_registry import NodeExecutionContext, NodeExecutor
from ..models.core import NodeCategory, NodeExecutionResult, TriggerType
from .common import is_json_string, is_number, utc_now_iso

logger = get_logger(__name__)

WEBHOOK_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")
SIGNATURE_PREFIX = "sha256="


def generate_webhook_signature(payload: Union[str, bytes], secret: str) -> str:
    """Compute the ``sha256=<hex>`` HMAC signature of a webhook body."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_webhook_signature(payload: Union[str, bytes], signature: Optional[str], secret: Optional[str]) -> bool:
    """Constant-time check of a webhook signature. Missing signature or secret never verifies."""
    if not signature or not secret:
        return False
    expected = generate_webhook_signature(payload, secret)
    return hmac.compare_digest(expected, signature.strip())


def is_valid_timezone(name: str) -> bool:
    try:
        ZoneInfo(name)
        return True
    except (ZoneInfoNotFoundError, ValueError):
        return False


def next_cron_run(expression: str, timezone_name: str = "UTC", base: Optional[datetime] = None) -> datetime:
    """Next fire time of a cron expression, timezone-aware."""
    tz = ZoneInfo(timezone_name)
    start = base.astimezone(tz) if base else datetime.now(tz)
    # croniter keeps the tzinfo of its start time
    return croniter.croniter(expression, start).get_next(datetime)


class ManualTriggerExecutor(NodeExecutor):
    """Starts a workflow on demand."""

    category = NodeCategory.TRIGGER
    subtype = TriggerType.MANUAL.value
    label = "Manual Trigger"
    description = "Start the workflow manually"

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        output = {
            "triggered": True,
            "timestamp": utc_now_iso(),
            "triggered_by": context.node_id or "unknown",
            "reason": "Manual execution triggered",
        }
        if context.input:
            output["data"] = context.input
        return NodeExecutionResult.ok(output)


class WebhookTriggerExecutor(NodeExecutor):
    """Describes the webhook endpoint and carries the delivered payload."""

    category = NodeCategory.TRIGGER
    subtype = TriggerType.WEBHOOK.value
    label = "Webhook"
    description = "Start the workflow when an HTTP request is received"

    def validate(self, config: Dict[str, Any]) -> List[str]:
        errors = []

        method = config.get("method")
        if not method:
            errors.append("HTTP method is required")
        elif method not in WEBHOOK_METHODS:
            errors.append("Invalid HTTP method")

        if config.get("secret") and not config.get("signature_header"):
            errors.append("Signature header is required when secret is provided")

        response_mode = config.get("response_mode")
        if response_mode and response_mode not in ("sync", "async"):
            errors.append("Invalid response mode")

        if "response_code" in config:
            code = config["response_code"]
            if not is_number(code) or not 100 <= code <= 599:
                errors.append("Response code must be a valid HTTP status code (100-599)")

        response_body = config.get("response_body")
        if isinstance(response_body, str) and response_body.strip() and not is_json_string(response_body):
            errors.append("Response body must be valid JSON")

        return errors

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        method = context.config.get("method") or "POST"

        if context.config.get("enabled") is False:
            return NodeExecutionResult.ok({
                "triggered": False,
                "reason": "Webhook disabled",
                "method": method,
                "timestamp": utc_now_iso(),
            })

        return NodeExecutionResult.ok({
            "triggered": True,
            "method": method,
            "url": f"/api/webhooks/{context.workflow_id}",
            "payload": context.input,
            "timestamp": utc_now_iso(),
        })


class ScheduleTriggerExecutor(NodeExecutor):
    """Reports the next fire time of a cron schedule."""

    category = NodeCategory.TRIGGER
    subtype = TriggerType.SCHEDULE.value
    label = "Schedule"
    description = "Start the workflow on a cron schedule"

    def validate(self, config: Dict[str, Any]) -> List[str]:
        errors = []

        cron = config.get("cron")
        if not cron or not isinstance(cron, str):
            errors.append("Cron expression is required")
        elif not croniter.croniter.is_valid(cron.strip()):
            errors.append(f"Invalid cron expression: {cron}")

        timezone_name = config.get("timezone")
        if timezone_name and (not isinstance(timezone_name, str) or not is_valid_timezone(timezone_name)):
            errors.append(f"Invalid timezone: {timezone_name}")

        return errors

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        cron = context.config["cron"].strip()
        timezone_name = context.config.get("timezone") or "UTC"

        if context.config.get("enabled") is False:
            return NodeExecutionResult.ok({
                "triggered": False,
                "reason": "Schedule disabled",
                "cron_expression": cron,
                "timezone": timezone_name,
                "timestamp": utc_now_iso(),
            })

        return NodeExecutionResult.ok({
            "triggered": True,
            "cron_expression": cron,
            "next_run": next_cron_run(cron, timezone_name).isoformat(),
            "timezone": timezone_name,
            "timestamp": utc_now_iso(),
        })


class EmailTriggerExecutor(NodeExecutor):
    """Starts a workflow for an incoming email.

    Mailbox polling is not performed here; the email, when supplied as the
    run's trigger payload, is passed through as ``email``.
    """

    category = NodeCategory.TRIGGER
    subtype = TriggerType.EMAIL.value
    label = "Email Trigger"
    description = "Start the workflow when an email arrives in an IMAP mailbox"

    def validate(self, config: Dict[str, Any]) -> List[str]:
        errors = []

        if not config.get("host"):
            errors.append("IMAP host is required")

        port = config.get("port")
        if not is_number(port) or not 1 <= port <= 65535:
            errors.append("Valid port number is required (1-65535)")

        if not config.get("user"):
            errors.append("Username/email is required")
        if not config.get("password"):
            errors.append("Password is required")

        if "mailbox" in config and not isinstance(config["mailbox"], str):
            errors.append("Mailbox must be a string")

        if config.get("post_process_action") and config["post_process_action"] not in ("read", "nothing"):
            errors.append("Invalid post-process action")

        if config.get("format") and config["format"] not in ("simple", "resolved", "raw"):
            errors.append("Invalid output format")

        rules = config.get("custom_email_rules")
        if isinstance(rules, str) and rules.strip() and not is_json_string(rules):
            errors.append("Custom email rules must be valid JSON")

        if "force_reconnect" in config:
            interval = config["force_reconnect"]
            if not is_number(interval) or interval < 0:
                errors.append("Force reconnect interval must be a positive number or 0 to disable")

        return errors

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        return NodeExecutionResult.ok({
            "triggered": True,
            "host": context.config["host"],
            "mailbox": context.config.get("mailbox") or "INBOX",
            "user": context.config["user"],
            "format": context.config.get("format") or "simple",
            "email": context.input or None,
            "timestamp": utc_now_iso(),
        })
