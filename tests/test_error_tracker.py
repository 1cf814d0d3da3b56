"""Tests for error grouping and snapshots."""

import asyncio
import json
import pytest

from driftnet.error_tracker import ErrorSnapshotter, ErrorTracker
from driftnet.errors import TransientFetchError


def _raise_timeout(url_id: int) -> Exception:
    try:
        raise TransientFetchError(f"Timeout after 30s fetching page {url_id}")
    except TransientFetchError as e:
        return e


def _raise_value(message: str) -> Exception:
    try:
        raise ValueError(message)
    except ValueError as e:
        return e


class RecordingSnapshotter:
    def __init__(self, fail=False):
        self.fail = fail
        self.captured = []

    async def capture(self, context, error):
        await asyncio.sleep(0)
        if self.fail:
            raise OSError("bucket not found")
        self.captured.append(context.get("url"))
        return f"memory://errors/{len(self.captured)}.json"


@pytest.mark.asyncio
class TestErrorTracker:
    """Test error grouping."""

    async def test_digits_normalized_into_one_group(self):
        tracker = ErrorTracker()

        for i in range(5):
            await tracker.add(_raise_timeout(i), {"url": f"https://example.com/{i}"})

        assert tracker.get_unique_error_count() == 1
        assert tracker.get_total_errors() == 5
        group = tracker.get_most_popular_errors(1)[0]
        assert group.count == 5
        assert group.error_type == "TransientFetchError"
        assert group.sample_url == "https://example.com/0"
        assert "_" in group.message

    async def test_different_types_split(self):
        tracker = ErrorTracker()

        await tracker.add(_raise_timeout(1))
        await tracker.add(_raise_value("bad markup"))

        assert tracker.get_unique_error_count() == 2

    async def test_status_code_in_signature(self):
        tracker = ErrorTracker(show_stack_trace=False)

        first = tracker.signature(TransientFetchError("HTTP error", status=503))
        second = tracker.signature(TransientFetchError("HTTP error", status=502))

        assert first != second
        assert "503" in first

    async def test_signature_parts_switchable(self):
        tracker = ErrorTracker(show_stack_trace=False, show_error_code=False, show_error_name=False)

        assert tracker.signature(ValueError("line 12\ndetails")) == "line _"

    async def test_full_message(self):
        tracker = ErrorTracker(show_stack_trace=False, show_full_message=True)

        assert "details" in tracker.signature(ValueError("first\ndetails"))

    async def test_most_popular_order(self):
        tracker = ErrorTracker()
        for _ in range(3):
            await tracker.add(_raise_value("common"))
        await tracker.add(_raise_value("rare"))

        top = tracker.get_most_popular_errors(2)

        assert [g.count for g in top] == [3, 1]
        assert top[0].message == "common"

    async def test_eviction_keeps_frequent_groups(self):
        tracker = ErrorTracker(max_groups=2)
        for _ in range(3):
            await tracker.add(_raise_value("frequent"))
        await tracker.add(_raise_value("once a"))
        await tracker.add(_raise_value("once b"))

        messages = {g.message for g in tracker.get_most_popular_errors(10)}

        assert tracker.get_unique_error_count() == 2
        assert messages == {"frequent", "once b"}

    async def test_snapshot_per_new_group(self):
        snapshotter = RecordingSnapshotter()
        tracker = ErrorTracker(snapshotter=snapshotter)

        group = await tracker.add(_raise_value("boom"), {"url": "https://example.com/a"})
        await tracker.add(_raise_value("boom"), {"url": "https://example.com/b"})

        assert snapshotter.captured == ["https://example.com/a"]
        assert group.snapshot == "memory://errors/1.json"

    async def test_max_snapshots_under_concurrency(self):
        snapshotter = RecordingSnapshotter()
        tracker = ErrorTracker(snapshotter=snapshotter, max_snapshots=3)

        await asyncio.gather(*(tracker.add(_raise_value(f"kind {chr(97 + i)}")) for i in range(8)))

        assert len(snapshotter.captured) == 3
        assert tracker.get_stats()["snapshots"] == 3

    async def test_snapshot_failure_is_swallowed(self):
        tracker = ErrorTracker(snapshotter=RecordingSnapshotter(fail=True))

        group = await tracker.add(_raise_value("boom"))

        assert group.count == 1
        assert group.snapshot is None
        assert tracker.get_stats()["snapshots"] == 0

    async def test_reset(self):
        tracker = ErrorTracker()
        await tracker.add(_raise_value("boom"))

        tracker.reset()

        assert tracker.get_total_errors() == 0
        assert tracker.get_unique_error_count() == 0


@pytest.mark.asyncio
class TestErrorSnapshotter:
    """Test diagnostic records on disk."""

    async def test_capture_writes_record(self, tmp_path):
        snapshotter = ErrorSnapshotter(str(tmp_path))
        html = "<html>" + "x" * 20_000 + "</html>"

        ref = await snapshotter.capture(
            {"url": "https://example.com/a", "request": {"depth": 1}, "html": html},
            _raise_value("broken page"),
        )

        files = list((tmp_path / "errors").glob("*.json"))
        assert len(files) == 1
        assert ref.endswith(files[0].name)

        record = json.loads(files[0].read_text())
        assert record["url"] == "https://example.com/a"
        assert record["error_type"] == "ValueError"
        assert record["error_message"] == "broken page"
        assert "Traceback" in record["traceback"]
        assert record["request"] == {"depth": 1}
        assert len(record["html_excerpt"]) == 10_000

    async def test_tracker_with_real_snapshotter(self, tmp_path):
        tracker = ErrorTracker(snapshotter=ErrorSnapshotter(str(tmp_path)))

        group = await tracker.add(_raise_value("boom"), {"url": "https://example.com/a"})

        assert group.snapshot is not None
        assert len(list((tmp_path / "errors").glob("*.json"))) == 1
