"""
Unit tests for request-scoped logging context.
"""

from farm_shared.logging import (
    SECURITY_LOGGER,
    add_request_context,
    add_trace_context,
    clear_context,
    get_request_context,
    mark_security_events,
    set_request_id,
    set_user_context,
)


class TestRequestContext:
    """Test cases for the request context helpers."""

    def teardown_method(self):
        clear_context()

    def test_request_id_is_kept(self):
        assert set_request_id("req-1") == "req-1"
        assert get_request_context().request_id == "req-1"

    def test_request_id_is_generated(self):
        request_id = set_request_id(None)

        assert request_id
        assert get_request_context().request_id == request_id

    def test_user_context_keeps_request_id(self):
        set_request_id("req-1")
        set_user_context("u1", "42")

        context = get_request_context()
        assert (context.request_id, context.user_id, context.tenant_id) == ("req-1", "u1", "42")

    def test_processor_adds_bound_fields(self):
        set_request_id("req-1")
        set_user_context("u1", None)

        event = add_request_context(None, "info", {"event": "x"})

        assert event == {"event": "x", "request_id": "req-1", "user_id": "u1"}

    def test_clear_context(self):
        set_request_id("req-1")
        clear_context()

        assert add_request_context(None, "info", {"event": "x"}) == {"event": "x"}

    def test_no_trace_fields_without_a_span(self):
        assert add_trace_context(None, "info", {"event": "x"}) == {"event": "x"}

    def test_security_events_are_marked(self):
        event = mark_security_events(None, "warning", {"event": "Security event", "logger": SECURITY_LOGGER})
        other = mark_security_events(None, "info", {"event": "x", "logger": "records.cache"})

        assert event["category"] == "security"
        assert "category" not in other
