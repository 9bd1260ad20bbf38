"""Tests for services/router.py — backend selection, failover, timeouts."""

from __future__ import annotations

import time

import pytest

from conftest import FakeBackend
from logging_config import backend_var, bind_exchange, exchange_id_var
from services.errors import AllBackendsUnavailable, UnsupportedBackend
from services.router import BackendRouter


@pytest.fixture
def make_router():
    routers = []

    def _make(backends, priority=None, **kwargs):
        router = BackendRouter({b.name: b for b in backends}, priority, **kwargs)
        routers.append(router)
        return router

    yield _make
    for router in routers:
        router.shutdown()


MESSAGES = [{"role": "user", "content": "Hello"}]


class TestPriority:
    def test_priority_keeps_configured_order(self, make_router):
        router = make_router([FakeBackend("a"), FakeBackend("b"), FakeBackend("c")], ["c", "a", "b"])
        assert router.priority == ["c", "a", "b"]

    def test_unregistered_names_are_skipped(self, make_router):
        router = make_router([FakeBackend("a"), FakeBackend("b")], ["gemini", "b", "a"])
        assert router.priority == ["b", "a"]

    def test_unlisted_backends_go_last(self, make_router):
        router = make_router([FakeBackend("a"), FakeBackend("b")], ["b"])
        assert router.priority == ["b", "a"]

    def test_resolve_unknown_raises(self, make_router):
        router = make_router([FakeBackend("a")])
        with pytest.raises(UnsupportedBackend) as exc_info:
            router.resolve("nope")
        assert exc_info.value.status_code == 400
        assert exc_info.value.detail == "Unsupported backend: nope"

    def test_candidates_bounded_by_max_fallbacks(self, make_router):
        router = make_router(
            [FakeBackend("a"), FakeBackend("b"), FakeBackend("c")], ["a", "b", "c"], max_fallbacks=1,
        )
        assert router.candidates("b") == ["b", "a"]

    def test_candidates_without_fallback(self, make_router):
        router = make_router([FakeBackend("a"), FakeBackend("b")], max_fallbacks=0)
        assert router.candidates("a") == ["a"]


class TestRoute:
    def test_preferred_backend_succeeds(self, make_router):
        a, b = FakeBackend("a", "from a", tokens=7), FakeBackend("b", "from b")
        router = make_router([a, b], ["a", "b"])

        outcome = router.route(MESSAGES, "a")

        assert outcome.text == "from a"
        assert outcome.backend_used == "a"
        assert outcome.used_fallback is False
        assert outcome.token_count == 7
        assert outcome.model_name == "a-test-model"
        assert len(a.calls) == 1
        assert b.calls == []

    def test_falls_back_when_preferred_fails(self, make_router):
        a = FakeBackend("a", error="connection refused")
        b = FakeBackend("b", "from b")
        router = make_router([a, b], ["a", "b"])

        outcome = router.route(MESSAGES, "a")

        assert outcome.backend_used == "b"
        assert outcome.used_fallback is True
        assert outcome.text == "from b"
        assert b.calls[0]["messages"] == MESSAGES

    def test_fallback_follows_priority_not_registration(self, make_router):
        a = FakeBackend("a", error="down")
        b = FakeBackend("b", "from b")
        c = FakeBackend("c", "from c")
        router = make_router([a, b, c], ["a", "c", "b"])

        assert router.route(MESSAGES, "a").backend_used == "c"
        assert b.calls == []

    def test_raw_exception_is_treated_as_unavailable(self, make_router):
        a = FakeBackend("a", error=RuntimeError("socket closed"))
        b = FakeBackend("b", "from b")
        router = make_router([a, b], ["a", "b"])

        assert router.route(MESSAGES, "a").backend_used == "b"

    def test_all_fail(self, make_router):
        a = FakeBackend("a", error="quota exceeded")
        b = FakeBackend("b", error="503")
        router = make_router([a, b], ["a", "b"])

        with pytest.raises(AllBackendsUnavailable) as exc_info:
            router.route(MESSAGES, "a")

        exc = exc_info.value
        assert exc.backends_tried == ["a", "b"]
        assert exc.status_code == 500
        assert "tried: a, b" in str(exc)
        assert [e.reason for e in exc.errors] == ["quota exceeded", "503"]

    def test_attempts_stop_at_max_fallbacks(self, make_router):
        a = FakeBackend("a", error="down")
        b = FakeBackend("b", error="down")
        c = FakeBackend("c", "from c")
        router = make_router([a, b, c], ["a", "b", "c"], max_fallbacks=1)

        with pytest.raises(AllBackendsUnavailable):
            router.route(MESSAGES, "a")
        assert c.calls == []

    def test_unknown_preferred_is_not_routed(self, make_router):
        a = FakeBackend("a")
        router = make_router([a])
        with pytest.raises(UnsupportedBackend):
            router.route(MESSAGES, "missing")
        assert a.calls == []

    def test_timeout_counts_as_failure(self, make_router):
        slow = FakeBackend("slow", "late reply", delay=0.5)
        fast = FakeBackend("fast", "quick reply")
        router = make_router([slow, fast], ["slow", "fast"], timeout_seconds=0.05)

        outcome = router.route(MESSAGES, "slow")

        assert outcome.backend_used == "fast"
        assert outcome.used_fallback is True

    def test_timeout_reason_is_reported(self, make_router):
        slow = FakeBackend("slow", delay=0.5)
        router = make_router([slow], max_fallbacks=0, timeout_seconds=0.05)

        with pytest.raises(AllBackendsUnavailable) as exc_info:
            router.route(MESSAGES, "slow")
        assert "timed out" in exc_info.value.errors[0].reason

    def test_per_call_timeout_option(self, make_router):
        slow = FakeBackend("slow", delay=0.5)
        router = make_router([slow], max_fallbacks=0, timeout_seconds=30)

        with pytest.raises(AllBackendsUnavailable):
            router.route(MESSAGES, "slow", {"timeout": 0.05})
        assert "timeout" not in slow.calls[0]["options"]

    def test_hung_backend_does_not_starve_fallback(self, make_router):
        slow = FakeBackend("slow", delay=1.0)
        fast = FakeBackend("fast", "quick reply")
        router = make_router([slow, fast], ["slow", "fast"], timeout_seconds=0.1, max_workers=1)

        first = router.route(MESSAGES, "slow")
        second = router.route(MESSAGES, "slow")

        assert first.backend_used == second.backend_used == "fast"
        assert len(fast.calls) == 2

    def test_queued_call_is_dropped_after_timeout(self, make_router):
        slow = FakeBackend("slow", delay=0.4)
        router = make_router([slow], max_fallbacks=0, timeout_seconds=0.05, max_workers=1)

        with pytest.raises(AllBackendsUnavailable):
            router.route(MESSAGES, "slow")
        with pytest.raises(AllBackendsUnavailable) as exc_info:
            router.route(MESSAGES, "slow")

        assert "no free worker" in exc_info.value.errors[0].reason
        time.sleep(0.6)
        assert len(slow.calls) == 1

    def test_shut_down_router_reports_unavailable(self, make_router):
        a = FakeBackend("a")
        router = make_router([a], max_fallbacks=0)
        router.shutdown()

        with pytest.raises(AllBackendsUnavailable) as exc_info:
            router.route(MESSAGES, "a")
        assert exc_info.value.errors[0].backend == "a"
        assert a.calls == []

    def test_options_forwarded(self, make_router):
        a = FakeBackend("a")
        router = make_router([a])
        router.route(MESSAGES, "a", {"temperature": 0.2})
        assert a.calls[0]["options"] == {"temperature": 0.2}

    def test_latency_covers_all_attempts(self, make_router):
        a = FakeBackend("a", error="down", delay=0.05)
        b = FakeBackend("b", "ok")
        router = make_router([a, b], ["a", "b"])

        outcome = router.route(MESSAGES, "a")
        assert outcome.latency_ms >= 50


class TestHealth:
    def test_reports_every_backend(self, make_router):
        router = make_router([FakeBackend("a"), FakeBackend("b", healthy=False)], ["a", "b"])
        assert router.health() == {"a": True, "b": False}


class TestLogContext:
    def test_adapter_runs_in_exchange_context(self, make_router):
        seen = {}

        class Probe(FakeBackend):
            def generate(self, messages, options=None):
                seen["exchange"] = exchange_id_var.get()
                seen["backend"] = backend_var.get()
                return super().generate(messages, options)

        router = make_router([Probe("a")])
        with bind_exchange("ex-123", "conv-1"):
            router.route(MESSAGES, "a")

        assert seen == {"exchange": "ex-123", "backend": "a"}
        assert backend_var.get() == ""
