"""Action nodes that talk to external systems: HTTP, email and SQL databases."""

import asyncio
import json
import time
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import aiosmtplib
import httpx
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from ..core.logging import get_logger
from ..core.node_registry import NodeExecutionContext, NodeExecutor
from ..models.core import ActionType, NodeCategory, NodeExecutionResult
from .common import is_json_string, is_valid_email, parse_json_field, utc_now_iso

logger = get_logger(__name__)

HTTP_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH")
BODY_METHODS = ("POST", "PUT", "PATCH")
MAX_BODY_BYTES = 1024 * 1024
DEFAULT_USER_AGENT = "Workflow-Engine/1.0"

EMAIL_SERVICE_TYPES = ("smtp", "gmail", "outlook", "sendgrid")
SMTP_PRESETS = {
    "gmail": ("smtp.gmail.com", 587),
    "outlook": ("smtp.office365.com", 587),
}
SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"

DATABASE_OPERATIONS = ("select", "insert", "update", "delete")


class HttpRequestExecutor(NodeExecutor):
    """Performs an HTTP request with httpx."""

    category = NodeCategory.ACTION
    subtype = ActionType.HTTP.value
    label = "HTTP Request"
    description = "Send an HTTP request and return the response"

    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        require_https: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Args:
            user_agent: Value of the User-Agent header sent with every request
            require_https: Reject plain http URLs (production deployments)
            transport: Optional httpx transport, e.g. httpx.MockTransport in tests
        """
        self.user_agent = user_agent
        self.require_https = require_https
        self.transport = transport

    def validate(self, config: Dict[str, Any]) -> List[str]:
        errors = []

        url = config.get("url")
        if not url or not isinstance(url, str) or not url.strip():
            errors.append("URL is required")
        else:
            parsed = urlparse(url.strip())
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                errors.append("Invalid URL format")
            elif self.require_https and parsed.scheme != "https":
                errors.append("HTTPS is required for production requests")

        method = config.get("method", "GET")
        if method not in HTTP_METHODS:
            errors.append(f"Invalid HTTP method: {method}")

        auth = config.get("authentication") or {}
        if not isinstance(auth, dict):
            errors.append("Authentication must be an object")
        elif auth.get("type") and auth["type"] != "none" and not auth.get("value"):
            errors.append("Authentication value is required for selected auth type")

        headers = config.get("headers")
        if isinstance(headers, str) and headers.strip():
            if not is_json_string(headers):
                errors.append("Headers must be valid JSON")
            elif not isinstance(json.loads(headers), dict):
                errors.append("Headers must be a JSON object")
        elif headers is not None and not isinstance(headers, dict):
            errors.append("Headers must be an object")

        body = config.get("body")
        if isinstance(body, str) and body.strip():
            if not is_json_string(body):
                errors.append("Body must be valid JSON")
            elif len(body.encode("utf-8")) > MAX_BODY_BYTES:
                errors.append("Request body exceeds 1MB limit")
        elif body is not None and len(json.dumps(body, default=str).encode("utf-8")) > MAX_BODY_BYTES:
            errors.append("Request body exceeds 1MB limit")

        return errors

    def build_headers(self, config: Dict[str, Any]) -> Dict[str, str]:
        headers = {"User-Agent": self.user_agent}
        custom = parse_json_field(config.get("headers")) or {}
        headers.update({str(key): str(value) for key, value in custom.items()})

        auth = config.get("authentication") or {}
        auth_type = auth.get("type")
        if auth_type and auth_type != "none" and auth.get("value"):
            if auth_type == "bearer":
                headers["Authorization"] = f"Bearer {auth['value']}"
            elif auth_type == "basic":
                headers["Authorization"] = f"Basic {auth['value']}"
            elif auth_type == "apiKey":
                headers["X-API-Key"] = auth["value"]
        return headers

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        config = context.config
        url = config["url"].strip()
        method = config.get("method", "GET")
        headers = self.build_headers(config)

        request_kwargs: Dict[str, Any] = {"headers": headers}
        body = config.get("body")
        if method in BODY_METHODS and body not in (None, ""):
            # String bodies were validated as JSON and are sent as-is
            request_kwargs["content"] = body if isinstance(body, str) else json.dumps(body)
            if not any(key.lower() == "content-type" for key in headers):
                headers["Content-Type"] = "application/json"

        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                response = await context.cancellation.run(client.request(method, url, **request_kwargs))
        except httpx.HTTPError as e:
            return NodeExecutionResult.fail(f"Request failed: {e}")

        if "application/json" in response.headers.get("content-type", ""):
            try:
                data = response.json()
            except ValueError:
                data = response.text
        else:
            data = response.text

        output = {
            "status": response.status_code,
            "data": data,
            "headers": dict(response.headers),
            "duration_ms": round((time.perf_counter() - started) * 1000, 3),
            "url": url,
            "method": method,
        }

        if not response.is_success:
            return NodeExecutionResult(
                success=False, output=output, error=f"HTTP {response.status_code}: {response.reason_phrase}"
            )
        return NodeExecutionResult.ok(output)


class EmailSendExecutor(NodeExecutor):
    """Sends email over SMTP (aiosmtplib) or the SendGrid API."""

    category = NodeCategory.ACTION
    subtype = ActionType.EMAIL.value
    label = "Send Email"
    description = "Send an email through SMTP, Gmail, Outlook or SendGrid"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, smtp_timeout: float = 30.0):
        self.transport = transport
        self.smtp_timeout = smtp_timeout

    def validate(self, config: Dict[str, Any]) -> List[str]:
        errors = []

        recipients = config.get("to")
        if not isinstance(recipients, list) or not recipients:
            errors.append("At least one recipient (To) is required")
        else:
            for index, address in enumerate(recipients, start=1):
                if not isinstance(address, str) or not address.strip():
                    errors.append(f"Recipient {index} cannot be empty")
                elif not is_valid_email(address.strip()):
                    errors.append(f"Invalid email format for recipient {index}: {address}")

        if not isinstance(config.get("subject"), str) or not config["subject"].strip():
            errors.append("Subject is required")
        if not isinstance(config.get("body"), str) or not config["body"].strip():
            errors.append("Email body is required")

        sender = config.get("from")
        if isinstance(sender, str) and sender.strip() and not is_valid_email(sender.strip()):
            errors.append(f"Invalid email format for sender: {sender}")

        service = config.get("email_service")
        if not isinstance(service, dict):
            errors.append("Email service configuration is required")
            return errors

        service_type = service.get("type")
        if not service_type:
            errors.append("Email service type is required")
        elif service_type not in EMAIL_SERVICE_TYPES:
            errors.append(f"Unsupported email service type: {service_type}")

        auth = service.get("auth") or {}
        if not isinstance(auth, dict):
            errors.append("Email service auth must be an object")
            auth = {}
        elif not auth.get("user"):
            errors.append("Email address is required")
        elif not is_valid_email(auth["user"]):
            errors.append("Invalid email address format")

        if service_type == "sendgrid":
            if not service.get("api_key"):
                errors.append("SendGrid API key is required")
        elif not auth.get("pass"):
            errors.append("Email password/app password is required")

        if service_type == "smtp" and not service.get("host"):
            errors.append("SMTP host is required")

        return errors

    def build_message(self, config: Dict[str, Any]) -> EmailMessage:
        service = config["email_service"]
        message = EmailMessage()
        message["From"] = (config.get("from") or "").strip() or service["auth"]["user"]
        message["To"] = ", ".join(address.strip() for address in config["to"])
        if config.get("cc"):
            message["Cc"] = ", ".join(config["cc"])
        message["Subject"] = config["subject"]
        message["Message-ID"] = make_msgid()

        if config.get("is_html"):
            message.set_content(config["body"])
            message.add_alternative(config["body"], subtype="html")
        else:
            message.set_content(config["body"])
        return message

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        config = context.config
        service = config["email_service"]

        try:
            if service["type"] == "sendgrid":
                message_id = await context.cancellation.run(self._send_sendgrid(config))
            else:
                message = self.build_message(config)
                await context.cancellation.run(self._send_smtp(message, service))
                message_id = message["Message-ID"]
        except (aiosmtplib.SMTPException, httpx.HTTPError, OSError) as e:
            return NodeExecutionResult.fail(f"Failed to send email: {e}")

        logger.info(f"Email sent by node {context.node_id} via {service['type']} to {len(config['to'])} recipient(s)")
        return NodeExecutionResult.ok({
            "sent": True,
            "to": config["to"],
            "subject": config["subject"],
            "message_id": message_id,
            "provider": service["type"],
            "timestamp": utc_now_iso(),
        })

    async def _send_smtp(self, message: EmailMessage, service: Dict[str, Any]) -> None:
        # gmail and outlook ignore the configured host
        host, port = SMTP_PRESETS.get(service["type"], (service.get("host"), 587))
        port = int(service.get("port") or port)
        secure = service.get("secure", port == 465)

        await aiosmtplib.send(
            message,
            hostname=host,
            port=port,
            username=service["auth"]["user"],
            password=service["auth"]["pass"],
            use_tls=bool(secure),
            start_tls=False if secure else port == 587,  # implicit TLS on 465, STARTTLS on 587
            timeout=self.smtp_timeout,
        )

    async def _send_sendgrid(self, config: Dict[str, Any]) -> Optional[str]:
        service = config["email_service"]
        content_type = "text/html" if config.get("is_html") else "text/plain"
        payload = {
            "personalizations": [{"to": [{"email": address.strip()} for address in config["to"]]}],
            "from": {"email": (config.get("from") or "").strip() or service["auth"]["user"]},
            "subject": config["subject"],
            "content": [{"type": content_type, "value": config["body"]}],
        }

        async with httpx.AsyncClient(transport=self.transport) as client:
            response = await client.post(
                SENDGRID_URL,
                json=payload,
                headers={"Authorization": f"Bearer {service['api_key']}"},
            )
        response.raise_for_status()
        return response.headers.get("x-message-id")


class DatabaseQueryExecutor(NodeExecutor):
    """Runs one parameterized SQL statement through SQLAlchemy."""

    category = NodeCategory.ACTION
    subtype = ActionType.DATABASE.value
    label = "Database Query"
    description = "Execute a SQL query against a database"

    def validate(self, config: Dict[str, Any]) -> List[str]:
        errors = []

        operation = config.get("operation")
        if not isinstance(operation, str) or operation.strip().lower() not in DATABASE_OPERATIONS:
            errors.append("Valid operation is required")

        if not isinstance(config.get("connection_string"), str) or not config["connection_string"].strip():
            errors.append("Database connection string is required")

        if not isinstance(config.get("query"), str) or not config["query"].strip():
            errors.append("SQL query is required")

        if "parameters" in config:
            parameters = config["parameters"]
            if isinstance(parameters, str):
                try:
                    parameters = json.loads(parameters)
                except ValueError:
                    errors.append("Invalid parameters JSON: Unable to parse JSON string")
                    return errors
            if parameters is None:
                errors.append("Parameters cannot be null")
            elif isinstance(parameters, list):
                errors.append("Parameters must be an object, not an array")
            elif not isinstance(parameters, dict):
                errors.append("Parameters must be an object")

        return errors

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        config = context.config
        operation = config["operation"].strip().lower()
        parameters = parse_json_field(config.get("parameters")) or {}

        started = time.perf_counter()
        try:
            # Blocking driver call; on stop the thread is abandoned, not interrupted
            result = await context.cancellation.run(
                asyncio.to_thread(self._run_query, config["connection_string"], config["query"], parameters, operation)
            )
        except SQLAlchemyError as e:
            return NodeExecutionResult.fail(f"Database error: {e}")

        return NodeExecutionResult.ok({
            "operation": operation,
            **result,
            "duration_ms": round((time.perf_counter() - started) * 1000, 3),
            "query": config["query"],
        })

    @staticmethod
    def _run_query(connection_string: str, query: str, parameters: Dict[str, Any], operation: str) -> Dict[str, Any]:
        # One engine per call, disposed so no pool outlives the node
        engine = create_engine(connection_string)
        try:
            with engine.begin() as connection:
                result = connection.execute(text(query), parameters)
                if operation == "select" or result.returns_rows:
                    rows = [dict(row._mapping) for row in result]
                    return {"rows": rows, "row_count": len(rows)}
                return {"affected_rows": result.rowcount}
        finally:
            engine.dispose()
