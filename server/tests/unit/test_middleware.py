"""Unit tests for request correlation and trace context middleware."""

import pytest

from courtslot.core.middleware import TraceContextMiddleware

TRACE_ID = "4bf92f3577b34da6a3ce929d0e0e4736"
PARENT_ID = "00f067aa0ba902b7"


@pytest.mark.asyncio
async def test_request_id_is_generated(test_client):
    response = await test_client.get("/health")

    assert response.headers["X-Request-ID"]


@pytest.mark.asyncio
async def test_request_id_is_echoed(test_client):
    response = await test_client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"


@pytest.mark.asyncio
async def test_traceparent_continues_trace(test_client):
    """Test that a valid incoming trace keeps its trace ID with a new span."""
    response = await test_client.get(
        "/health",
        headers={"traceparent": f"00-{TRACE_ID}-{PARENT_ID}-01", "tracestate": "vendor=1"},
    )

    version, trace_id, span_id, flags = response.headers["traceparent"].split("-")
    assert (version, trace_id, flags) == ("00", TRACE_ID, "01")
    assert span_id != PARENT_ID
    assert response.headers["tracestate"] == "vendor=1"


@pytest.mark.asyncio
async def test_invalid_traceparent_starts_new_trace(test_client):
    response = await test_client.get("/health", headers={"traceparent": "garbage"})

    trace_id = response.headers["traceparent"].split("-")[1]
    assert len(trace_id) == 32
    assert trace_id != TRACE_ID


@pytest.mark.parametrize(
    "header,expected",
    [
        (f"00-{TRACE_ID}-{PARENT_ID}-01", (TRACE_ID, PARENT_ID, "01")),
        (f"00-{TRACE_ID}-{PARENT_ID}-00", (TRACE_ID, PARENT_ID, "00")),
        (f"00-{'0' * 32}-{PARENT_ID}-01", None),
        (f"00-{TRACE_ID}-{'0' * 16}-01", None),
        (f"00-{TRACE_ID.upper()}-{PARENT_ID}-01", None),
        (f"01-{TRACE_ID}-{PARENT_ID}-01", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_traceparent(header, expected):
    assert TraceContextMiddleware.parse_traceparent(header) == expected
