"""
Tests for the ingest endpoint, flush and graceful shutdown.
"""

import asyncio
import json
import socket

import pytest
from aiohttp import ClientSession
from aiohttp.test_utils import TestClient, TestServer

from spanrelay.backend import BackendClient, UploadResponse
from spanrelay.errors import BatchPayloadError
from spanrelay.ingest_server import IngestServer, ServerContext, create_app, extract_spans, parse_batch
from spanrelay.media import media_id_for_hash
from spanrelay.media_service import MediaService

from conftest import IMAGE_BASE64, IMAGE_DATA_URI, make_transport_span, mock_media_network


def _span_with_id(span_id, **overrides):
    return make_transport_span(spanId=span_id, **overrides)


class TestParseBatch:
    """Tests for extract_spans / parse_batch."""

    def test_bare_list(self):
        assert extract_spans([{"name": "a"}]) == [{"name": "a"}]

    def test_spans_object(self):
        assert parse_batch(b'{"spans": [{"name": "a"}]}') == [{"name": "a"}]

    @pytest.mark.parametrize("raw", [b"", b"{not json", b'{"foo": 1}', b'"spans"', b'{"spans": {}}'])
    def test_invalid(self, raw):
        with pytest.raises(BatchPayloadError):
            parse_batch(raw)


class TestIngestEndpoint:
    """POST /ingest and its alias."""

    @pytest.mark.asyncio
    async def test_accepts_valid_batch(self, server_context, memory_exporter):
        spans = [_span_with_id("1111111111111111"), _span_with_id("2222222222222222")]
        async with TestClient(TestServer(create_app(server_context))) as client:
            resp = await client.post("/ingest", json=spans)
            assert resp.status == 202
            assert await resp.json() == {"accepted": 2, "rejected": 0, "errors": []}

        exported = memory_exporter.get_finished_spans()
        assert [format(span.get_span_context().span_id, "016x") for span in exported] == [
            "1111111111111111",
            "2222222222222222",
        ]
        assert exported[0].attributes["langfuse.environment"] == "staging"
        assert exported[0].attributes["langfuse.release"] == "v1.2.3"

    @pytest.mark.asyncio
    async def test_accepts_spans_object_on_alias(self, server_context, memory_exporter):
        async with TestClient(TestServer(create_app(server_context))) as client:
            resp = await client.post("/otel-ingest", json={"spans": [make_transport_span()]})
            assert resp.status == 202
            assert (await resp.json())["accepted"] == 1
        assert len(memory_exporter.get_finished_spans()) == 1

    @pytest.mark.asyncio
    async def test_partial_failure(self, server_context, memory_exporter):
        broken = _span_with_id("2222222222222222")
        del broken["startTime"]
        spans = [_span_with_id("1111111111111111"), broken, _span_with_id("3333333333333333")]

        async with TestClient(TestServer(create_app(server_context))) as client:
            resp = await client.post("/ingest", json=spans)
            assert resp.status == 207
            body = await resp.json()

        assert body["accepted"] == 2
        assert body["rejected"] == 1
        assert len(body["errors"]) == 1
        assert body["errors"][0]["index"] == 1
        assert "startTime" in body["errors"][0]["message"]
        assert len(memory_exporter.get_finished_spans()) == 2

    @pytest.mark.asyncio
    async def test_backend_failure_is_reported_per_span(self, collector_config, recording_processor):
        recording_processor.on_end.side_effect = [None, RuntimeError("exporter queue full"), None]
        context = ServerContext.from_config(collector_config, span_processor=recording_processor)
        spans = [_span_with_id("1111111111111111"), _span_with_id("2222222222222222"), _span_with_id("3333333333333333")]

        async with TestClient(TestServer(create_app(context))) as client:
            resp = await client.post("/ingest", json=spans)
            assert resp.status == 207
            body = await resp.json()

        assert body["accepted"] == 2
        assert body["rejected"] == 1
        assert body["errors"][0]["index"] == 1
        assert "exporter queue full" in body["errors"][0]["message"]
        assert recording_processor.on_end.call_count == 3
        await context.close()

    @pytest.mark.asyncio
    async def test_empty_batch(self, server_context):
        async with TestClient(TestServer(create_app(server_context))) as client:
            resp = await client.post("/ingest", json=[])
            assert resp.status == 202
            assert await resp.json() == {"accepted": 0, "rejected": 0, "errors": []}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", ['{"foo": 1}', "{broken", ""])
    async def test_invalid_payload(self, server_context, memory_exporter, body):
        async with TestClient(TestServer(create_app(server_context))) as client:
            resp = await client.post("/ingest", data=body, headers={"Content-Type": "application/json"})
            assert resp.status == 400
            result = await resp.json()
        assert result["error"].startswith("Invalid payload")
        assert result["accepted"] == 0
        assert result["rejected"] == 0
        assert memory_exporter.get_finished_spans() == ()

    @pytest.mark.asyncio
    async def test_body_limit(self, server_context):
        server_context.config.body_limit_bytes = 1024
        payload = json.dumps([make_transport_span(attributes={"big": "x" * 4096})])
        async with TestClient(TestServer(create_app(server_context))) as client:
            resp = await client.post("/ingest", data=payload, headers={"Content-Type": "application/json"})
            assert resp.status == 413

    @pytest.mark.asyncio
    async def test_media_is_stripped_before_export(self, server_context, memory_exporter, backend):
        span = make_transport_span(attributes={"langfuse.observation.input": f"look: {IMAGE_DATA_URI}"})
        async with TestClient(TestServer(create_app(server_context))) as client:
            resp = await client.post("/ingest", json=[span])
            assert resp.status == 202
        await server_context.media.flush()

        exported = memory_exporter.get_finished_spans()[0]
        assert IMAGE_BASE64 not in exported.attributes["langfuse.observation.input"]
        assert exported.attributes["langfuse.observation.input"].startswith("look: @@@langfuseMedia:")
        backend.put_blob.assert_awaited_once()


class TestFlush:
    """Force flush via query parameter, configuration and POST /flush."""

    @staticmethod
    def _slow_uploads(backend):
        release = asyncio.Event()

        async def slow_put(*args, **kwargs):
            await release.wait()
            return UploadResponse(200, "")

        backend.put_blob.side_effect = slow_put
        return release

    @pytest.mark.asyncio
    async def test_flush_query_waits_for_uploads(self, server_context, backend):
        release = self._slow_uploads(backend)
        span = make_transport_span(attributes={"langfuse.observation.input": IMAGE_DATA_URI})

        async with TestClient(TestServer(create_app(server_context))) as client:
            async def post():
                return await client.post("/ingest?flush=true", json=[span])

            request = asyncio.create_task(post())
            while backend.put_blob.call_count == 0:
                await asyncio.sleep(0.01)
            await asyncio.sleep(0.05)
            assert not request.done()
            release.set()
            resp = await asyncio.wait_for(request, timeout=5)
            assert resp.status == 202

        backend.patch_media.assert_awaited_once()
        assert server_context.media.pending_uploads == 0

    @pytest.mark.asyncio
    async def test_no_flush_without_query(self, server_context, backend):
        release = self._slow_uploads(backend)
        span = make_transport_span(attributes={"langfuse.observation.input": IMAGE_DATA_URI})

        async with TestClient(TestServer(create_app(server_context))) as client:
            resp = await asyncio.wait_for(client.post("/ingest", json=[span]), timeout=5)
            assert resp.status == 202
            assert server_context.media.pending_uploads == 1
            release.set()
            await server_context.media.flush()

    @pytest.mark.asyncio
    async def test_configured_force_flush(self, collector_config, recording_processor):
        collector_config.force_flush = True
        context = ServerContext.from_config(collector_config, span_processor=recording_processor)
        async with TestClient(TestServer(create_app(context))) as client:
            resp = await client.post("/ingest", json=[make_transport_span()])
            assert resp.status == 202
        recording_processor.on_end.assert_called_once()
        recording_processor.force_flush.assert_called_once()
        await context.close()

    @pytest.mark.asyncio
    async def test_flush_endpoint(self, collector_config, recording_processor):
        context = ServerContext.from_config(collector_config, span_processor=recording_processor)
        async with TestClient(TestServer(create_app(context))) as client:
            resp = await client.post("/flush")
            assert resp.status == 202
            assert await resp.json() == {"status": "flushed"}
        recording_processor.force_flush.assert_called_once()
        await context.close()

    @pytest.mark.asyncio
    async def test_flush_endpoint_waits_for_uploads(self, server_context, backend):
        release = self._slow_uploads(backend)
        span = make_transport_span(attributes={"langfuse.observation.input": IMAGE_DATA_URI})

        async with TestClient(TestServer(create_app(server_context))) as client:
            resp = await client.post("/ingest", json=[span])
            assert resp.status == 202

            async def flush():
                return await client.post("/flush")

            request = asyncio.create_task(flush())
            while backend.put_blob.call_count == 0:
                await asyncio.sleep(0.01)
            await asyncio.sleep(0.05)
            assert not request.done()
            release.set()
            resp = await asyncio.wait_for(request, timeout=5)
            assert resp.status == 202
            assert await resp.json() == {"status": "flushed"}

        backend.patch_media.assert_awaited_once()
        assert server_context.media.pending_uploads == 0


class TestHealthAndCors:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/health", "/healthz"])
    async def test_health(self, server_context, path):
        async with TestClient(TestServer(create_app(server_context))) as client:
            resp = await client.get(path)
            assert resp.status == 200
            assert await resp.json() == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_preflight(self, server_context):
        headers = {
            "Origin": "https://app.example.com",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "content-type",
        }
        async with TestClient(TestServer(create_app(server_context))) as client:
            resp = await client.options("/ingest", headers=headers)
            assert resp.status == 204
            assert resp.headers["Access-Control-Allow-Origin"] == "https://app.example.com"
            assert resp.headers["Access-Control-Allow-Credentials"] == "true"
            assert resp.headers["Access-Control-Allow-Methods"] == "POST"
            assert resp.headers["Access-Control-Allow-Headers"] == "content-type"

    @pytest.mark.asyncio
    async def test_cors_headers_on_post(self, server_context):
        async with TestClient(TestServer(create_app(server_context))) as client:
            resp = await client.post("/ingest", json=[], headers={"Origin": "https://app.example.com"})
            assert resp.headers["Access-Control-Allow-Origin"] == "https://app.example.com"

    @pytest.mark.asyncio
    async def test_disallowed_origin(self, server_context):
        server_context.config.allowed_origins = ["https://trusted.example.com"]
        async with TestClient(TestServer(create_app(server_context))) as client:
            resp = await client.options("/ingest", headers={"Origin": "https://evil.example.com"})
            assert resp.status == 204
            assert "Access-Control-Allow-Origin" not in resp.headers
            resp = await client.options("/ingest", headers={"Origin": "https://trusted.example.com"})
            assert resp.headers["Access-Control-Allow-Origin"] == "https://trusted.example.com"


class TestGracefulShutdown:
    """close() drains uploads, then flushes and shuts down the backend exactly once."""

    @staticmethod
    def _context(collector_config, recording_processor):
        backend = mock_media_network(BackendClient(base_url="http://backend.test", span_processor=recording_processor))

        async def slot_for(**kwargs):
            return {"uploadUrl": "https://blob.test/upload", "mediaId": media_id_for_hash(kwargs["sha256_hash"])}

        backend.get_upload_url.side_effect = slot_for
        media = MediaService(backend)
        return ServerContext(config=collector_config, backend=backend, media=media)

    @pytest.mark.asyncio
    async def test_close_waits_for_in_flight_uploads(self, collector_config, recording_processor):
        context = self._context(collector_config, recording_processor)
        release = asyncio.Event()

        async def slow_put(*args, **kwargs):
            await release.wait()
            return UploadResponse(200, "")

        context.backend.put_blob.side_effect = slow_put
        spans = [
            _span_with_id("1111111111111111", attributes={"langfuse.observation.input": "data:text/plain;base64,b25l"}),
            _span_with_id("2222222222222222", attributes={"langfuse.observation.output": "data:text/plain;base64,dHdv"}),
        ]
        async with TestClient(TestServer(create_app(context))) as client:
            resp = await client.post("/ingest", json=spans)
            assert resp.status == 202
        assert context.media.pending_uploads == 2

        closing = asyncio.create_task(context.close())
        for _ in range(20):
            await asyncio.sleep(0)
        assert not closing.done()
        recording_processor.force_flush.assert_not_called()
        recording_processor.shutdown.assert_not_called()

        release.set()
        await asyncio.wait_for(closing, timeout=5)
        assert context.backend.patch_media.await_count == 2
        assert [name for name, _, _ in recording_processor.mock_calls if name != "on_end"] == [
            "force_flush",
            "shutdown",
        ]

        await context.close()
        recording_processor.force_flush.assert_called_once()
        recording_processor.shutdown.assert_called_once()

    @pytest.mark.asyncio
    async def test_concurrent_close_shuts_down_once(self, collector_config, recording_processor):
        context = self._context(collector_config, recording_processor)
        await asyncio.gather(context.close(), context.close(), context.close())
        recording_processor.shutdown.assert_called_once()
        assert context.closed

    @pytest.mark.asyncio
    async def test_ingest_server_start_and_stop(self, collector_config, recording_processor):
        context = self._context(collector_config, recording_processor)
        with socket.socket() as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]

        server = IngestServer(context, host="127.0.0.1", port=port)
        await server.start()
        assert server.is_running
        async with ClientSession() as session:
            async with session.get(f"http://127.0.0.1:{port}/health") as resp:
                assert resp.status == 200
        await server.stop()

        assert not server.is_running
        recording_processor.shutdown.assert_called_once()

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_request_finish(self, collector_config, recording_processor):
        context = self._context(collector_config, recording_processor)
        release = asyncio.Event()

        async def slow_put(*args, **kwargs):
            await release.wait()
            return UploadResponse(200, "")

        context.backend.put_blob.side_effect = slow_put
        with socket.socket() as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]

        server = IngestServer(context, host="127.0.0.1", port=port)
        await server.start()
        span = make_transport_span(attributes={"langfuse.observation.input": IMAGE_DATA_URI})
        async with ClientSession() as session:

            async def post():
                async with session.post(f"http://127.0.0.1:{port}/ingest?flush=true", json=[span]) as resp:
                    return resp.status, await resp.json()

            request = asyncio.create_task(post())
            while context.backend.put_blob.call_count == 0:
                await asyncio.sleep(0.01)

            stopping = asyncio.create_task(server.stop())
            await asyncio.sleep(0.05)
            assert not stopping.done()
            recording_processor.shutdown.assert_not_called()

            release.set()
            status, body = await asyncio.wait_for(request, timeout=5)
            await asyncio.wait_for(stopping, timeout=5)

        assert status == 202
        assert body["accepted"] == 1
        assert [name for name, _, _ in recording_processor.mock_calls] == [
            "on_end",
            "force_flush",
            "force_flush",
            "shutdown",
        ]
