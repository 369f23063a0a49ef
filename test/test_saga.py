"""
Tests for the saga runner
"""

import pytest

from tenant_manager.utils.saga import Saga, SagaError


class TestSaga:
    """Test step ordering and compensation"""

    async def test_results_are_stored_in_context(self):
        async def first(ctx):
            return 1

        async def second(ctx):
            return ctx["first"] + 1

        context = await Saga("sum").add_step("first", first).add_step("second", second).run()
        assert context == {"first": 1, "second": 2}

    async def test_failure_compensates_in_reverse_order(self):
        undone = []

        async def ok(ctx):
            return True

        async def undo_a(ctx):
            undone.append("a")

        async def undo_b(ctx):
            undone.append("b")

        async def boom(ctx):
            raise RuntimeError("boom")

        saga = Saga("three").add_step("a", ok, undo_a).add_step("b", ok, undo_b).add_step("c", boom)
        with pytest.raises(SagaError) as exc_info:
            await saga.run()

        assert undone == ["b", "a"]
        assert exc_info.value.failed_step == "c"
        assert exc_info.value.completed_steps == ["a", "b"]
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    async def test_compensation_errors_are_collected(self):
        async def ok(ctx):
            return True

        async def bad_undo(ctx):
            raise RuntimeError("cannot undo")

        async def boom(ctx):
            raise RuntimeError("boom")

        saga = Saga("undo-fails").add_step("a", ok, bad_undo).add_step("b", boom)
        with pytest.raises(SagaError) as exc_info:
            await saga.run()
        assert exc_info.value.compensation_errors == ["a: cannot undo"]

    async def test_no_compensation_when_disabled(self):
        undone = []

        async def ok(ctx):
            return True

        async def undo(ctx):
            undone.append("a")

        async def boom(ctx):
            raise RuntimeError("boom")

        saga = Saga("forward-only", compensate_on_failure=False).add_step("a", ok, undo).add_step("b", boom)
        with pytest.raises(SagaError):
            await saga.run()
        assert undone == []
