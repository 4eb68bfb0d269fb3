"""Tests for the single-flight runtime cell."""

from __future__ import annotations

import threading
import time

import pytest

from fmtforge.cells import RuntimeCell


class _Resource:
    def __init__(self) -> None:
        self.closed = 0

    def close(self) -> None:
        self.closed += 1


class TestRuntimeCell:
    """Tests for RuntimeCell initialization and disposal."""

    def test_lazy(self) -> None:
        """Nothing is built before the first request."""
        cell: RuntimeCell[int] = RuntimeCell(name="lazy")
        assert cell.state == "empty"
        assert cell.peek() is None
        assert cell.get_or_initialize(lambda: 7) == 7
        assert cell.state == "ready"
        assert cell.peek() == 7

    def test_single_flight(self) -> None:
        """Concurrent callers share one factory call."""
        cell: RuntimeCell[object] = RuntimeCell(name="shared")
        calls: list[int] = []
        barrier = threading.Barrier(10)
        results: list[object] = []

        def factory() -> object:
            calls.append(1)
            time.sleep(0.05)
            return object()

        def worker() -> None:
            barrier.wait()
            results.append(cell.get_or_initialize(factory))

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert len(calls) == 1
        assert len({id(result) for result in results}) == 1

    def test_failure_allows_retry(self) -> None:
        """A failed factory leaves the cell retryable."""
        cell: RuntimeCell[str] = RuntimeCell(name="flaky")

        def broken() -> str:
            message = "not yet"
            raise RuntimeError(message)

        with pytest.raises(RuntimeError, match="not yet"):
            cell.get_or_initialize(broken)
        assert cell.state == "failed"
        assert cell.get_or_initialize(lambda: "ok") == "ok"

    def test_dispose_exactly_once(self) -> None:
        """Closing twice disposes the payload once."""
        resource = _Resource()
        cell: RuntimeCell[_Resource] = RuntimeCell(name="resource")
        cell.get_or_initialize(lambda: resource)
        first = cell.close()
        second = cell.close()
        assert resource.closed == 1
        assert first.status == "ok"
        assert first.close_called
        assert second.status == "noop"
        assert cell.state == "empty"

    def test_dispose_error_suppressed(self) -> None:
        """Disposal errors are reported, not raised, by default."""

        class _Broken:
            def close(self) -> None:
                message = "cannot close"
                raise OSError(message)

        cell: RuntimeCell[_Broken] = RuntimeCell(name="broken")
        cell.get_or_initialize(_Broken)
        result = cell.close()
        assert result.status == "error"
        assert isinstance(result.error, OSError)

    def test_dispose_error_raised_when_not_silent(self) -> None:
        """``silent=False`` propagates disposal errors."""

        class _Broken:
            def close(self) -> None:
                message = "cannot close"
                raise OSError(message)

        cell: RuntimeCell[_Broken] = RuntimeCell(name="broken")
        cell.get_or_initialize(_Broken)
        with pytest.raises(OSError, match="cannot close"):
            cell.close(silent=False)
