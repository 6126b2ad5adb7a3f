"""Tests for the built-in node executors."""

import asyncio
import json
from datetime import datetime, timezone

import aiosmtplib
import httpx
import pytest
from sqlalchemy import create_engine, text

from app.core.cancellation import CancellationToken
from app.core.node_registry import NodeExecutionContext
from app.nodes.actions import DelayNodeExecutor, TransformNodeExecutor, check_expression
from app.nodes.conditions import evaluate_condition, get_value_at_path, set_value_at_path, validate_condition
from app.nodes.integrations import DatabaseQueryExecutor, EmailSendExecutor, HttpRequestExecutor
from app.nodes.logic import FilterNodeExecutor, IfNodeExecutor, LoopNodeExecutor, SwitchNodeExecutor
from app.nodes.triggers import (
    EmailTriggerExecutor,
    ManualTriggerExecutor,
    ScheduleTriggerExecutor,
    WebhookTriggerExecutor,
    generate_webhook_signature,
    next_cron_run,
    verify_webhook_signature,
)


def make_context(config, node_input=None, token=None):
    return NodeExecutionContext(
        node_id="n1",
        workflow_id="wf-1",
        run_id="run-1",
        config=config,
        input={} if node_input is None else node_input,
        cancellation=token or CancellationToken(),
    )


class TestConditions:
    """Tests for path lookup and condition operators."""

    def test_path_lookup(self):
        data = {"user": {"tags": ["a", "b"], "address": {"city": "Oslo"}}}
        assert get_value_at_path(data, "user.address.city") == "Oslo"
        assert get_value_at_path(data, "user.tags.1") == "b"
        assert get_value_at_path(data, "user.missing.city") is None
        assert get_value_at_path(data, "") is data

    def test_set_path_rejects_dunder(self):
        assert set_value_at_path({}, "a.b", 1) == {"a": {"b": 1}}
        with pytest.raises(ValueError):
            set_value_at_path({}, "a.__class__", 1)

    @pytest.mark.parametrize("actual, operator, expected, result", [
        ("active", "equals", "active", True),
        (5.0, "equals", "5", True),
        (True, "equals", "true", True),
        (None, "equals", "", True),
        ("x", "notEquals", "y", True),
        ("Hello World", "contains", "world", True),
        ("10", "greaterThan", 9, True),
        (3, "lessThan", "2", False),
        ("banana", "greaterThan", "apple", True),
    ])
    def test_operators(self, actual, operator, expected, result):
        assert evaluate_condition(actual, operator, expected) is result

    def test_unknown_operator(self):
        with pytest.raises(ValueError):
            evaluate_condition(1, "between", 2)

    def test_validation_collects_all_problems(self):
        assert validate_condition({}) == [
            "Condition field is required and must be a string",
            "Condition operator is required",
            "Condition value is required",
        ]
        assert validate_condition({"field": "a", "operator": "like", "value": 1}) == ["Invalid operator: like"]
        assert validate_condition(None) == ["Condition configuration is required"]


class TestLogicNodes:

    @pytest.mark.asyncio
    async def test_if_reports_branch(self):
        config = {"condition": {"field": "order.total", "operator": "greaterThan", "value": 100}}
        result = await IfNodeExecutor().execute(make_context(config, {"order": {"total": 250}}))

        assert result.success
        assert result.output["condition_met"] is True
        assert result.output["branch"] == "true"
        assert result.output["actual_value"] == 250

    @pytest.mark.asyncio
    async def test_switch_matches_case_or_default(self):
        executor = SwitchNodeExecutor()
        config = {"field": "tier", "cases": [{"value": "gold", "label": "vip"}, {"value": "silver"}]}

        gold = await executor.execute(make_context(config, {"tier": "gold"}))
        silver = await executor.execute(make_context(config, {"tier": "silver"}))
        other = await executor.execute(make_context(config, {"tier": "bronze"}))

        assert gold.output == {"case": "vip", "value": "gold", "matched": True}
        assert silver.output["case"] == "silver"
        assert other.output == {"case": "default", "value": "bronze", "matched": False}

    def test_switch_validation(self):
        assert SwitchNodeExecutor().validate({"cases": [{"label": "x"}]}) == [
            "Switch field is required and must be a string",
            "Case 1 must be an object with a value",
        ]

    @pytest.mark.asyncio
    async def test_loop_extracts_and_caps(self):
        result = await LoopNodeExecutor().execute(
            make_context({"input_path": "data.items", "max_iterations": 2}, {"data": {"items": [1, 2, 3]}})
        )
        assert result.output == {"iterations": 2, "items": [1, 2]}
        assert LoopNodeExecutor().validate({"max_iterations": 0}) == ["Max iterations must be a positive integer"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("node_input, expected", [
        ([1, 2], [1, 2]),
        ({"items": [1], "other": [9]}, [1]),
        ({"data": [4, 5]}, [4, 5]),
        ({"data": {"items": [1, 2, 3]}}, [1, 2, 3]),
        ({"other": [9]}, []),
        ("text", []),
    ])
    async def test_loop_finds_items_without_path(self, node_input, expected):
        result = await LoopNodeExecutor().execute(make_context({}, node_input))
        assert result.output == {"iterations": len(expected), "items": expected}

    @pytest.mark.asyncio
    async def test_filter(self):
        config = {"condition": {"field": "age", "operator": "greaterThan", "value": 30}}
        people = {"items": [{"age": 25}, {"age": 40}, {"age": 31}]}

        result = await FilterNodeExecutor().execute(make_context(config, people))

        assert result.output["original_count"] == 3
        assert result.output["filtered_count"] == 2
        assert result.output["filtered_items"] == [{"age": 40}, {"age": 31}]

    @pytest.mark.asyncio
    async def test_filter_requires_list_input(self):
        config = {"condition": {"field": "age", "operator": "equals", "value": 1}}
        result = await FilterNodeExecutor().execute(make_context(config, {"age": 1}))
        assert not result.success
        assert result.error == "Input must be an array or contain an array property"


class TestTriggerNodes:

    @pytest.mark.asyncio
    async def test_manual_trigger_carries_payload(self):
        result = await ManualTriggerExecutor().execute(make_context({}, {"status": "active"}))
        assert result.output["triggered"] is True
        assert result.output["triggered_by"] == "n1"
        assert result.output["data"] == {"status": "active"}

        bare = await ManualTriggerExecutor().execute(make_context({}))
        assert "data" not in bare.output

    def test_webhook_validation(self):
        errors = WebhookTriggerExecutor().validate({"method": "TRACE", "secret": "s", "response_code": 700})
        assert errors == [
            "Invalid HTTP method",
            "Signature header is required when secret is provided",
            "Response code must be a valid HTTP status code (100-599)",
        ]

    @pytest.mark.asyncio
    async def test_webhook_output(self):
        executor = WebhookTriggerExecutor()
        result = await executor.execute(make_context({"method": "POST"}, {"event": "push"}))
        assert result.output["url"] == "/api/webhooks/wf-1"
        assert result.output["payload"] == {"event": "push"}

        disabled = await executor.execute(make_context({"method": "POST", "enabled": False}))
        assert disabled.output["triggered"] is False
        assert disabled.output["reason"] == "Webhook disabled"

    def test_webhook_signature(self):
        body = json.dumps({"event": "push"})
        signature = generate_webhook_signature(body, "secret")

        assert signature.startswith("sha256=")
        assert verify_webhook_signature(body.encode(), signature, "secret")
        assert not verify_webhook_signature(body, signature, "other")
        assert not verify_webhook_signature(body, None, "secret")

    def test_schedule_validation(self):
        executor = ScheduleTriggerExecutor()
        assert executor.validate({"cron": "*/5 * * * *", "timezone": "Europe/Oslo"}) == []
        assert executor.validate({"cron": "every day", "timezone": "Mars/Base"}) == [
            "Invalid cron expression: every day",
            "Invalid timezone: Mars/Base",
        ]

    def test_next_cron_run(self):
        base = datetime(2024, 1, 1, 0, 2, tzinfo=timezone.utc)
        assert next_cron_run("*/5 * * * *", "UTC", base) == datetime(2024, 1, 1, 0, 5, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_schedule_output(self):
        result = await ScheduleTriggerExecutor().execute(make_context({"cron": "0 9 * * 1"}))
        assert result.output["triggered"] is True
        assert result.output["timezone"] == "UTC"
        assert result.output["next_run"]

    def test_email_trigger_validation(self):
        errors = EmailTriggerExecutor().validate({"port": 99999, "format": "html"})
        assert "IMAP host is required" in errors
        assert "Valid port number is required (1-65535)" in errors
        assert "Invalid output format" in errors


class TestTransformNode:
    """Tests for the data transform action."""

    async def run(self, config, data):
        return await TransformNodeExecutor().execute(make_context(config, data))

    @pytest.mark.asyncio
    async def test_map_filter_reduce(self):
        items = [{"n": 1}, {"n": 2}, {"n": 3}]

        mapped = await self.run({"operation": "map", "script": "item['n'] * 10"}, items)
        kept = await self.run({"operation": "filter", "script": "item['n'] % 2 == 1"}, items)
        total = await self.run(
            {"operation": "reduce", "script": "acc + item['n']", "initial_value": 0}, items
        )

        assert mapped.output["transformed_data"] == [10, 20, 30]
        assert mapped.output["items_processed"] == 3
        assert kept.output["transformed_data"] == [{"n": 1}, {"n": 3}]
        assert total.output["transformed_data"] == 6

    @pytest.mark.asyncio
    async def test_sort_group_merge(self):
        items = [{"k": "b", "v": 2}, {"k": "a", "v": 1}, {"k": "b", "v": 3}]

        ordered = await self.run({"operation": "sort", "script": "item['v']", "descending": True}, items)
        grouped = await self.run({"operation": "group", "script": "item['k']"}, items)
        merged = await self.run({"operation": "merge", "script": "{item['k']: item['v']}"}, items)

        assert [item["v"] for item in ordered.output["transformed_data"]] == [3, 2, 1]
        assert sorted(grouped.output["transformed_data"]) == ["a", "b"]
        assert len(grouped.output["transformed_data"]["b"]) == 2
        assert merged.output["transformed_data"] == {"b": 3, "a": 1}

    @pytest.mark.asyncio
    async def test_jsonpath_and_paths(self):
        data = {"payload": {"users": [{"name": "ann", "age": 30}, {"name": "bob", "age": 12}]}}
        names = await self.run(
            {"operation": "map", "language": "jsonpath", "script": "$.name",
             "input_path": "payload.users", "output_path": "result.names"},
            data,
        )
        ages = await self.run(
            {"operation": "reduce", "language": "jsonpath", "script": "$.age", "input_path": "payload.users"},
            data,
        )

        assert names.output["transformed_data"] == {"result": {"names": ["ann", "bob"]}}
        assert ages.output["transformed_data"] == 42

    @pytest.mark.asyncio
    async def test_runtime_error_is_failure(self):
        result = await self.run({"operation": "map", "script": "item['missing']"}, [{}])
        assert not result.success
        assert result.error.startswith("Transformation failed")

    def test_expression_restrictions(self):
        assert check_expression("item.__class__") == "Access to private attribute '__class__' is not allowed"
        assert check_expression("__import__('os')") == "Access to '__import__' is not allowed"
        assert check_expression("item['a'] +").startswith("Invalid expression syntax")
        assert TransformNodeExecutor().validate({"operation": "explode", "script": ""}) == [
            "Valid operation is required",
            "Transformation script is required",
        ]

    @pytest.mark.asyncio
    async def test_builtins_are_unavailable(self):
        result = await self.run({"operation": "map", "script": "open('x')"}, [1])
        assert not result.success


class TestDelayNode:

    def test_validation(self):
        executor = DelayNodeExecutor()
        assert executor.validate({"delay_type": "fixed", "value": 5, "unit": "seconds"}) == []
        assert executor.validate({"delay_type": "fixed", "value": 25, "unit": "hours"}) == [
            "Delay cannot exceed 24 hours"
        ]
        assert executor.validate({"delay_type": "soon", "value": -1, "unit": "days"}) == [
            "Valid delay type is required",
            "Delay value must be a non-negative number",
            "Valid time unit is required",
        ]

    def test_random_delay_bounds(self):
        planned = DelayNodeExecutor().plan_delay_ms(
            {"delay_type": "random", "value": 1, "unit": "seconds", "max_delay_ms": 2000}
        )
        assert 1000 <= planned <= 2000

    @pytest.mark.asyncio
    async def test_fixed_delay_passthrough(self):
        config = {"delay_type": "fixed", "value": 10, "unit": "milliseconds"}
        result = await DelayNodeExecutor().execute(make_context(config, {"keep": 1}))

        assert result.output["actual_delay_ms"] == 10
        assert result.output["passthrough_data"] == {"keep": 1}

    @pytest.mark.asyncio
    async def test_cancelled_delay(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.02, token.cancel)
        config = {"delay_type": "fixed", "value": 5, "unit": "seconds"}

        result = await DelayNodeExecutor().execute(make_context(config, token=token))

        assert not result.success
        assert result.error == "Delay was cancelled"


class TestHttpRequestNode:
    """Tests for the HTTP action using httpx.MockTransport."""

    def make_executor(self, handler, **kwargs):
        return HttpRequestExecutor(transport=httpx.MockTransport(handler), **kwargs)

    @pytest.mark.asyncio
    async def test_post_with_auth_and_json(self):
        seen = {}

        def handler(request):
            seen["request"] = request
            return httpx.Response(201, json={"id": 7})

        executor = self.make_executor(handler, user_agent="Test-Agent/1.0")
        config = {
            "url": "https://api.example.com/items",
            "method": "POST",
            "body": {"name": "widget"},
            "authentication": {"type": "bearer", "value": "token-1"},
            "headers": '{"X-Trace": "abc"}',
        }

        result = await executor.execute(make_context(config))

        request = seen["request"]
        assert result.success
        assert result.output["status"] == 201
        assert result.output["data"] == {"id": 7}
        assert request.headers["authorization"] == "Bearer token-1"
        assert request.headers["user-agent"] == "Test-Agent/1.0"
        assert request.headers["x-trace"] == "abc"
        assert json.loads(request.content) == {"name": "widget"}

    @pytest.mark.asyncio
    async def test_non_2xx_is_failure(self):
        executor = self.make_executor(lambda request: httpx.Response(503, text="down"))
        result = await executor.execute(make_context({"url": "http://svc.local/health"}))

        assert not result.success
        assert result.error == "HTTP 503: Service Unavailable"
        assert result.output["data"] == "down"

    @pytest.mark.asyncio
    async def test_transport_error_is_failure(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = await self.make_executor(handler).execute(make_context({"url": "http://svc.local"}))
        assert not result.success
        assert result.error.startswith("Request failed")

    def test_validation(self):
        executor = HttpRequestExecutor(require_https=True)
        assert executor.validate({"url": "ftp://files", "method": "FETCH"}) == [
            "Invalid URL format",
            "Invalid HTTP method: FETCH",
        ]
        assert executor.validate({"url": "http://plain.example.com"}) == ["HTTPS is required for production requests"]
        assert executor.validate({
            "url": "https://x.example.com", "authentication": {"type": "apiKey"}, "body": "{not json"
        }) == ["Authentication value is required for selected auth type", "Body must be valid JSON"]
        assert executor.validate({
            "url": "https://x.example.com", "authentication": "token", "headers": "[1, 2]"
        }) == ["Authentication must be an object", "Headers must be a JSON object"]

    def test_api_key_header(self):
        headers = HttpRequestExecutor().build_headers({"authentication": {"type": "apiKey", "value": "k"}})
        assert headers["X-API-Key"] == "k"


class TestEmailSendNode:

    def smtp_config(self, **overrides):
        config = {
            "to": ["ops@example.com"],
            "subject": "Report",
            "body": "All green",
            "email_service": {
                "type": "smtp", "host": "mail.example.com", "port": 465,
                "auth": {"user": "bot@example.com", "pass": "secret"},
            },
        }
        config.update(overrides)
        return config

    @pytest.mark.asyncio
    async def test_smtp_send(self, monkeypatch):
        sent = {}

        async def fake_send(message, **kwargs):
            sent["message"] = message
            sent["kwargs"] = kwargs

        monkeypatch.setattr(aiosmtplib, "send", fake_send)

        result = await EmailSendExecutor().execute(make_context(self.smtp_config()))

        assert result.success
        assert result.output["sent"] is True
        assert result.output["provider"] == "smtp"
        assert sent["message"]["To"] == "ops@example.com"
        assert sent["kwargs"]["hostname"] == "mail.example.com"
        assert sent["kwargs"]["use_tls"] is True
        assert result.output["message_id"] == sent["message"]["Message-ID"]

    @pytest.mark.asyncio
    async def test_smtp_error_is_failure(self, monkeypatch):
        async def failing_send(message, **kwargs):
            raise aiosmtplib.SMTPException("relay denied")

        monkeypatch.setattr(aiosmtplib, "send", failing_send)

        result = await EmailSendExecutor().execute(make_context(self.smtp_config()))
        assert not result.success
        assert "relay denied" in result.error

    @pytest.mark.asyncio
    async def test_sendgrid(self):
        seen = {}

        def handler(request):
            seen["request"] = request
            return httpx.Response(202, headers={"x-message-id": "sg-1"})

        config = self.smtp_config(email_service={
            "type": "sendgrid", "api_key": "SG.key", "auth": {"user": "bot@example.com"}
        })
        result = await EmailSendExecutor(transport=httpx.MockTransport(handler)).execute(make_context(config))

        assert result.output["message_id"] == "sg-1"
        assert seen["request"].headers["authorization"] == "Bearer SG.key"
        assert json.loads(seen["request"].content)["personalizations"][0]["to"] == [{"email": "ops@example.com"}]

    def test_validation(self):
        errors = EmailSendExecutor().validate({
            "to": ["not-an-email"], "subject": "", "email_service": {"type": "pigeon", "auth": {}}
        })
        assert errors == [
            "Invalid email format for recipient 1: not-an-email",
            "Subject is required",
            "Email body is required",
            "Unsupported email service type: pigeon",
            "Email address is required",
            "Email password/app password is required",
        ]

    def test_validation_with_non_object_auth(self):
        config = self.smtp_config()
        config["email_service"]["auth"] = "bot@example.com:secret"

        assert EmailSendExecutor().validate(config) == [
            "Email service auth must be an object",
            "Email password/app password is required",
        ]


class TestDatabaseNode:
    """Tests for the SQL action against a temporary SQLite file."""

    @pytest.fixture
    def database_url(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'nodes.db'}"
        engine = create_engine(url)
        with engine.begin() as connection:
            connection.execute(text("CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT, active INTEGER)"))
            connection.execute(text("INSERT INTO users (name, active) VALUES ('ann', 1), ('bob', 0)"))
        engine.dispose()
        return url

    @pytest.mark.asyncio
    async def test_select_with_parameters(self, database_url):
        config = {
            "operation": "select",
            "connection_string": database_url,
            "query": "SELECT name FROM users WHERE active = :active",
            "parameters": {"active": 1},
        }
        result = await DatabaseQueryExecutor().execute(make_context(config))

        assert result.success
        assert result.output["rows"] == [{"name": "ann"}]
        assert result.output["row_count"] == 1

    @pytest.mark.asyncio
    async def test_update_reports_affected_rows(self, database_url):
        config = {
            "operation": "update",
            "connection_string": database_url,
            "query": "UPDATE users SET active = 1",
            "parameters": "{}",
        }
        result = await DatabaseQueryExecutor().execute(make_context(config))
        assert result.output["affected_rows"] == 2

    @pytest.mark.asyncio
    async def test_sql_error_is_failure(self, database_url):
        config = {"operation": "select", "connection_string": database_url, "query": "SELECT * FROM nope"}
        result = await DatabaseQueryExecutor().execute(make_context(config))
        assert not result.success
        assert result.error.startswith("Database error")

    def test_validation(self):
        assert DatabaseQueryExecutor().validate({"operation": "drop", "parameters": [1]}) == [
            "Valid operation is required",
            "Database connection string is required",
            "SQL query is required",
            "Parameters must be an object, not an array",
        ]
