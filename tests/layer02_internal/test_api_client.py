"""
Layer 02: ScanApiClient request and error handling.

Each test builds a MockTransport handler that asserts on the request and
returns a canned response.
"""

import json

import httpx
import pytest

from core.types import ApiError, ScanConfig, StreamUnavailableError
from streaming.api import parse_status


class TestParseStatus:
    """Status bodies become snapshots."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("pending", "running"),
            ("queued", "running"),
            ("in_progress", "running"),
            ("RUNNING", "running"),
            ("completed", "completed"),
            ("failed", "failed"),
            ("error", "error"),
            ("paused", "running"),
        ],
    )
    def test_status_mapping(self, raw, expected):
        assert parse_status({"status": raw, "progress": 10}, "j1").status == expected

    def test_fields(self):
        snapshot = parse_status(
            {
                "scan_id": "j1",
                "status": "completed",
                "progress": 100,
                "message": "Scan completed",
                "summary": {"users": 12},
            },
            "j1",
        )
        assert snapshot.job_id == "j1"
        assert snapshot.percent == 100
        assert snapshot.message == "Scan completed"
        assert snapshot.summary == {"users": 12}

    def test_snapshot_keeps_polled_job_id(self):
        snapshot = parse_status({"scan_id": "internal-77", "status": "running"}, "j1")
        assert snapshot.job_id == "j1"

    def test_missing_percent_is_zero(self):
        assert parse_status({"status": "queued"}, "j1").percent == 0

    def test_percent_alias(self):
        assert parse_status({"status": "running", "percent": 35}, "j1").percent == 35

    def test_out_of_range_percent(self):
        with pytest.raises(ValueError):
            parse_status({"status": "running", "progress": 140}, "j1")

    def test_not_an_object(self):
        with pytest.raises(ValueError):
            parse_status(["running"], "j1")


class TestStartScan:
    """POST /scan/{provider}"""

    @pytest.mark.asyncio
    async def test_request_shape(self, make_api):
        seen = {}

        async def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"scan_id": "abc-123", "status": "in_progress"})

        config = ScanConfig.for_provider(
            "azure", name_prefix="Reader", subscription_id="sub-1", auth_method="az_login"
        )

        async with make_api(httpx.MockTransport(handler)) as api:
            job_id = await api.start_scan(config)

        assert job_id == "abc-123"
        assert seen["method"] == "POST"
        assert seen["path"] == "/api/scan/azure"
        assert seen["body"] == {
            "config": {
                "provider": "azure",
                "scan_targets": {"role_definitions": True, "role_assignments": True},
                "filters": {"name_prefix": "Reader"},
                "include_tags": True,
                "subscription_id": "sub-1",
                "auth_method": "az_login",
            }
        }

    @pytest.mark.asyncio
    async def test_job_id_alias(self, make_api, aws_config):
        async def handler(request):
            return httpx.Response(200, json={"job_id": "j9"})

        async with make_api(httpx.MockTransport(handler)) as api:
            assert await api.start_scan(aws_config) == "j9"

    @pytest.mark.asyncio
    async def test_structured_error_body(self, make_api, aws_config):
        async def handler(request):
            return httpx.Response(
                400,
                json={
                    "error": {
                        "message": "Invalid scan configuration",
                        "code": "INVALID_CONFIG",
                        "details": {"field": "scan_targets"},
                    }
                },
            )

        async with make_api(httpx.MockTransport(handler)) as api:
            with pytest.raises(ApiError) as exc_info:
                await api.start_scan(aws_config)

        error = exc_info.value
        assert error.message == "Invalid scan configuration"
        assert error.status_code == 400
        assert error.code == "INVALID_CONFIG"
        assert error.details == {"field": "scan_targets"}

    @pytest.mark.asyncio
    async def test_detail_error_body(self, make_api, aws_config):
        async def handler(request):
            return httpx.Response(422, json={"detail": "provider not enabled"})

        async with make_api(httpx.MockTransport(handler)) as api:
            with pytest.raises(ApiError, match="provider not enabled"):
                await api.start_scan(aws_config)

    @pytest.mark.asyncio
    async def test_plain_text_error_body(self, make_api, aws_config):
        async def handler(request):
            return httpx.Response(502, text="Bad Gateway")

        async with make_api(httpx.MockTransport(handler)) as api:
            with pytest.raises(ApiError, match="HTTP 502"):
                await api.start_scan(aws_config)

    @pytest.mark.asyncio
    async def test_missing_scan_id(self, make_api, aws_config):
        async def handler(request):
            return httpx.Response(200, json={"status": "in_progress"})

        async with make_api(httpx.MockTransport(handler)) as api:
            with pytest.raises(ApiError, match="No scan_id"):
                await api.start_scan(aws_config)

    @pytest.mark.asyncio
    async def test_unreachable_server(self, make_api, aws_config):
        async def handler(request):
            raise httpx.ConnectError("Connection refused", request=request)

        async with make_api(httpx.MockTransport(handler)) as api:
            with pytest.raises(ApiError, match="Scan request failed"):
                await api.start_scan(aws_config)


class TestGetStatus:
    """GET /scan/{job_id}/status"""

    @pytest.mark.asyncio
    async def test_running(self, make_api):
        async def handler(request):
            assert request.url.path == "/api/scan/j1/status"
            return httpx.Response(
                200, json={"scan_id": "j1", "status": "in_progress", "progress": 40}
            )

        async with make_api(httpx.MockTransport(handler)) as api:
            snapshot = await api.get_status("j1")

        assert snapshot.status == "running"
        assert snapshot.percent == 40

    @pytest.mark.asyncio
    async def test_not_found(self, make_api):
        async def handler(request):
            return httpx.Response(404, json={"detail": "Scan not found"})

        async with make_api(httpx.MockTransport(handler)) as api:
            with pytest.raises(ApiError) as exc_info:
                await api.get_status("gone")

        assert exc_info.value.status_code == 404
        assert "gone" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_server_error(self, make_api):
        async def handler(request):
            return httpx.Response(503, json={"detail": "Service temporarily unavailable"})

        async with make_api(httpx.MockTransport(handler)) as api:
            with pytest.raises(ApiError) as exc_info:
                await api.get_status("j1")

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_malformed_body(self, make_api):
        async def handler(request):
            return httpx.Response(200, content=b"<html>oops</html>")

        async with make_api(httpx.MockTransport(handler)) as api:
            with pytest.raises(ApiError, match="Malformed status response"):
                await api.get_status("j1")

    @pytest.mark.asyncio
    async def test_timeout(self, make_api):
        async def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with make_api(httpx.MockTransport(handler)) as api:
            with pytest.raises(ApiError, match="Status check failed"):
                await api.get_status("j1")


class TestStreamScan:
    """POST /scan/{provider}/stream"""

    @pytest.mark.asyncio
    async def test_request_headers_and_body(self, make_api, aws_config):
        seen = {}

        async def handler(request):
            seen["accept"] = request.headers["accept"]
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream; charset=utf-8"},
                content=b"",
            )

        async with make_api(httpx.MockTransport(handler)) as api:
            async with api.stream_scan(aws_config) as response:
                assert response.status_code == 200

        assert seen["accept"] == "text/event-stream"
        assert seen["path"] == "/api/scan/aws/stream"
        assert seen["body"]["config"]["scan_targets"] == {"users": True, "groups": True}

    @pytest.mark.asyncio
    async def test_server_error_is_unavailable(self, make_api, aws_config):
        async def handler(request):
            return httpx.Response(
                500, json={"error": {"message": "Scanner crashed", "code": "INTERNAL"}}
            )

        async with make_api(httpx.MockTransport(handler)) as api:
            with pytest.raises(StreamUnavailableError, match="Scanner crashed"):
                async with api.stream_scan(aws_config):
                    pass

    @pytest.mark.asyncio
    async def test_error_after_open_is_not_wrapped(self, make_api, aws_config):
        async def handler(request):
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=b"")

        async with make_api(httpx.MockTransport(handler)) as api:
            with pytest.raises(httpx.ReadError):
                async with api.stream_scan(aws_config):
                    raise httpx.ReadError("Connection reset by peer")
