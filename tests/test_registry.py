"""Tests for JobRegistry and handler adapters."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from src.jobs.errors import HandlerNotFoundError, HandlerRegistrationError
from src.jobs.registry import FunctionHandler, JobHandler, JobRegistry, job_handler


class EmailHandler:
    job_type = "send_email"

    async def handle(self, ctx, job):
        return None


class TestJobRegistry:
    """Test handler registration and lookup."""

    def test_register_and_lookup(self, registry):
        handler = EmailHandler()

        registry.register(handler)

        assert registry.get_handler("send_email") is handler
        assert "send_email" in registry
        assert len(registry) == 1

    def test_empty_job_type_rejected(self, registry):
        handler = FunctionHandler("", lambda ctx, job: None)

        with pytest.raises(HandlerRegistrationError, match="non-empty job type"):
            registry.register(handler)
        assert len(registry) == 0

    def test_handler_without_job_type_rejected(self, registry):
        class Anonymous:
            def handle(self, ctx, job):
                return None

        with pytest.raises(HandlerRegistrationError):
            registry.register(Anonymous())

    def test_duplicate_registration_rejected(self, registry):
        first = EmailHandler()
        registry.register(first)

        with pytest.raises(HandlerRegistrationError, match="already registered"):
            registry.register(EmailHandler())

        assert registry.get_handler("send_email") is first

    def test_unknown_type(self, registry):
        with pytest.raises(HandlerNotFoundError, match="no handler registered for job type 'nope'"):
            registry.get_handler("nope")

    def test_registered_types_snapshot(self, registry):
        for job_type in ("zeta", "alpha", "mid"):
            registry.register(FunctionHandler(job_type, lambda ctx, job: None))

        types = registry.get_registered_types()
        assert types == ["alpha", "mid", "zeta"]

        types.append("mutated")
        assert registry.get_registered_types() == ["alpha", "mid", "zeta"]

    def test_unregister(self, registry):
        registry.register(EmailHandler())

        assert registry.unregister("send_email") is True
        assert registry.unregister("send_email") is False
        with pytest.raises(HandlerNotFoundError):
            registry.get_handler("send_email")

    def test_concurrent_registration(self, registry):
        def register(i):
            registry.register(FunctionHandler(f"type_{i}", lambda ctx, job: None))

        with ThreadPoolExecutor(max_workers=8) as executor:
            list(executor.map(register, range(100)))

        assert len(registry) == 100
        assert registry.get_handler("type_42").job_type == "type_42"

    def test_lookups_during_registration(self, registry):
        registry.register(EmailHandler())

        def work(i):
            if i % 2:
                registry.register(FunctionHandler(f"type_{i}", lambda ctx, job: None))
            return registry.get_handler("send_email").job_type

        with ThreadPoolExecutor(max_workers=8) as executor:
            looked_up = list(executor.map(work, range(200)))

        assert looked_up == ["send_email"] * 200
        assert len(registry) == 101


class TestHandlerAdapters:
    """Test FunctionHandler and the job_handler decorator."""

    def test_decorator_builds_function_handler(self):
        @job_handler("cleanup")
        async def cleanup(ctx, job):
            return None

        assert isinstance(cleanup, FunctionHandler)
        assert cleanup.job_type == "cleanup"
        assert isinstance(cleanup, JobHandler)

    def test_class_handler_satisfies_protocol(self):
        assert isinstance(EmailHandler(), JobHandler)

    def test_function_handler_calls_function(self):
        calls = []
        handler = FunctionHandler("record", lambda ctx, job: calls.append((ctx, job)))

        handler.handle("ctx", "job")

        assert calls == [("ctx", "job")]
