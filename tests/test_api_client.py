"""
Tests for the ContinuationApiClient response handling.

Error-body handling is checked against canned responses from
``httpx.MockTransport``; the end-to-end test drives the real app in-process
through ``httpx.ASGITransport``.
"""

import json
import zipfile

import httpx
import pytest

from api_client import ApiClientError, ContinuationApiClient, HtmlErrorPageError, InvalidJsonError
from config import Settings
from continuation_generator import ContinuationGenerator
from main import create_app
from task_storage import TaskStorage


BODY = {
    "imageUrl": "https://example.com/presenter.png",
    "script": "Now watch this.",
    "voiceProfile": "energetic",
    "product": "SnapCam",
}

HTML_PAGE = "<!DOCTYPE html><html><head><title>502 Bad Gateway</title></head><body>nginx</body></html>"


def make_client(handler):
    return ContinuationApiClient("http://testserver", transport=httpx.MockTransport(handler))


class TestResponseHandling:
    """Text-then-parse handling of server responses."""

    @pytest.mark.asyncio
    async def test_success(self):
        payload = {"success": True, "taskId": "task_abc", "status": "processing"}
        async with make_client(lambda request: httpx.Response(200, json=payload)) as client:
            assert await client.generate_continuation(BODY) == payload

    @pytest.mark.asyncio
    async def test_sends_json_body(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True})

        async with make_client(handler) as client:
            await client.test_continuation(BODY)

        assert seen == {"path": "/api/test-continuation", "body": BODY}

    @pytest.mark.asyncio
    async def test_json_error_uses_message(self):
        handler = lambda request: httpx.Response(400, json={"error": "Missing required fields", "message": "Missing: script"})
        async with make_client(handler) as client:
            with pytest.raises(ApiClientError) as excinfo:
                await client.generate_continuation(BODY)

        assert str(excinfo.value) == "Missing: script"
        assert excinfo.value.status_code == 400
        assert not isinstance(excinfo.value, HtmlErrorPageError)

    @pytest.mark.asyncio
    async def test_json_error_without_message(self):
        handler = lambda request: httpx.Response(500, json={"error": "boom"})
        async with make_client(handler) as client:
            with pytest.raises(ApiClientError, match="Failed to generate continuation"):
                await client.generate_continuation(BODY)

    @pytest.mark.asyncio
    async def test_html_error_page(self):
        handler = lambda request: httpx.Response(500, text=HTML_PAGE, headers={"Content-Type": "text/html"})
        async with make_client(handler) as client:
            with pytest.raises(HtmlErrorPageError) as excinfo:
                await client.generate_continuation(BODY)

        assert "HTML error page" in str(excinfo.value)
        assert "Status: 500" in str(excinfo.value)
        assert excinfo.value.body == HTML_PAGE

    @pytest.mark.asyncio
    async def test_plain_text_error_truncated(self):
        text = "x" * 500
        async with make_client(lambda request: httpx.Response(502, text=text)) as client:
            with pytest.raises(ApiClientError) as excinfo:
                await client.generate_continuation(BODY)

        message = str(excinfo.value)
        assert message == f"API Error (502): {'x' * 200}..."
        assert not isinstance(excinfo.value, HtmlErrorPageError)

    @pytest.mark.asyncio
    async def test_invalid_json_success(self):
        async with make_client(lambda request: httpx.Response(200, text=HTML_PAGE)) as client:
            with pytest.raises(InvalidJsonError, match="invalid JSON"):
                await client.health()


class TestDownloadSegments:
    """Archive download."""

    @pytest.mark.asyncio
    async def test_writes_archive(self, tmp_path):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=b"PK\x03\x04zip-bytes", headers={"Content-Type": "application/zip"})

        dest = tmp_path / "segments.zip"
        async with make_client(handler) as client:
            path = await client.download_segments([{"a": 1}], dest)

        assert path == dest
        assert dest.read_bytes() == b"PK\x03\x04zip-bytes"
        assert seen == {"path": "/api/download", "body": {"segments": [{"a": 1}]}}

    @pytest.mark.asyncio
    async def test_error_leaves_no_file(self, tmp_path):
        handler = lambda request: httpx.Response(400, json={"error": "No segments provided"})
        dest = tmp_path / "segments.zip"
        async with make_client(handler) as client:
            with pytest.raises(ApiClientError, match="Failed to download segments") as excinfo:
                await client.download_segments([], dest)

        assert excinfo.value.status_code == 400
        assert not dest.exists()

    @pytest.mark.asyncio
    async def test_against_server(self, tmp_path):
        settings = Settings(openai_api_key="sk-test", build_dir=tmp_path)
        app = create_app(settings=settings, task_storage=TaskStorage())
        dest = tmp_path / "out.zip"

        async with ContinuationApiClient("http://testserver", transport=httpx.ASGITransport(app=app)) as client:
            await client.download_segments([{"action_timeline": {"dialogue": "Hi"}}], dest)
        await app.state.generator.close()

        with zipfile.ZipFile(dest) as archive:
            assert "segments/segment_01.json" in archive.namelist()


class TestWaitForTask:
    """Polling helper."""

    @pytest.mark.asyncio
    async def test_polls_until_done(self):
        responses = iter(
            [
                httpx.Response(200, json={"status": "processing"}),
                httpx.Response(200, json={"status": "processing"}),
                httpx.Response(200, json={"status": "completed", "success": True, "segment": {"a": 1}}),
            ]
        )
        async with make_client(lambda request: next(responses)) as client:
            result = await client.wait_for_task("task_1", poll_interval=0)

        assert result["segment"] == {"a": 1}

    @pytest.mark.asyncio
    async def test_failed_task_raises(self):
        body = {"status": "failed", "error": "Request timeout", "message": "OpenAI request timed out after 90s"}
        async with make_client(lambda request: httpx.Response(500, json=body)) as client:
            with pytest.raises(ApiClientError, match="timed out"):
                await client.wait_for_task("task_1", poll_interval=0)

    @pytest.mark.asyncio
    async def test_gives_up(self):
        handler = lambda request: httpx.Response(200, json={"status": "processing"})
        async with make_client(handler) as client:
            with pytest.raises(ApiClientError, match="did not finish"):
                await client.wait_for_task("task_1", poll_interval=0, max_wait=0)


class TestAgainstServer:
    """Client and server together, in one event loop."""

    class StaticGenerator(ContinuationGenerator):
        async def generate_continuation_segment(self, request):
            return {"action_timeline": {"dialogue": request["script"]}}

    @pytest.mark.asyncio
    async def test_task_round_trip(self, tmp_path):
        settings = Settings(openai_api_key="sk-test", build_dir=tmp_path)
        storage = TaskStorage()
        generator = self.StaticGenerator(settings=settings, task_storage=storage)
        app = create_app(settings=settings, task_storage=storage, generator=generator)

        transport = httpx.ASGITransport(app=app)
        async with ContinuationApiClient("http://testserver", transport=transport) as client:
            started = await client.generate_continuation(BODY)
            result = await client.wait_for_task(started["taskId"], poll_interval=0.01, max_wait=2)
        await generator.close()

        assert result["status"] == "completed"
        assert result["segment"] == {"action_timeline": {"dialogue": "Now watch this."}}

    @pytest.mark.asyncio
    async def test_missing_build_is_not_html(self, tmp_path):
        settings = Settings(openai_api_key="sk-test", build_dir=tmp_path / "missing")
        storage = TaskStorage()
        app = create_app(settings=settings, task_storage=storage)

        async with ContinuationApiClient("http://testserver", transport=httpx.ASGITransport(app=app)) as client:
            with pytest.raises(ApiClientError, match=r"API Error \(500\): Error loading application"):
                await client._request("GET", "/", "Failed to load app")
        await app.state.generator.close()
