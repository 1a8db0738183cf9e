"""Tests for the request scheduler: dedup, priority, concurrency and error reporting."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import pytest

from stui.exceptions import DaemonError
from stui.schemas.daemon import BrowseItem, FileDetails, FolderStatus, NeededFile, NeedResponse
from stui.schemas.requests import (
    ApiResponse,
    BrowseFolder,
    GetFileInfo,
    GetFolderStatus,
    GetIgnorePatterns,
    GetLocalChangedFiles,
    GetNeededFiles,
    RescanFolder,
    RevertFolder,
    SetIgnorePatterns,
)
from stui.schemas.state import Priority
from stui.services.scheduler_service import RequestScheduler, execute_request

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Callable


class FakeClient:
    """Records calls; optionally blocks every call until ``gate`` is set."""

    def __init__(self) -> None:
        self.calls: list[tuple[Any, ...]] = []
        self.gate: asyncio.Event | None = None
        self.failures: dict[str, Exception] = {}
        self.active = 0
        self.max_active = 0

    async def _call(self, name: str, folder_id: str, *args: Any) -> None:
        self.calls.append((name, folder_id, *args))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if folder_id in self.failures:
                raise self.failures[folder_id]
        finally:
            self.active -= 1

    async def browse_folder(self, folder_id: str, prefix: str | None = None) -> list[BrowseItem]:
        await self._call("browse", folder_id, prefix)
        return [BrowseItem(name="item")]

    async def get_file_info(self, folder_id: str, file_path: str) -> FileDetails:
        await self._call("file_info", folder_id, file_path)
        return FileDetails()

    async def get_folder_status(self, folder_id: str) -> FolderStatus:
        await self._call("folder_status", folder_id)
        return FolderStatus(sequence=7)

    async def get_local_changed_files(self, folder_id: str) -> list[str]:
        await self._call("local_changed", folder_id)
        return ["changed.txt"]

    async def get_needed_files(self, folder_id: str) -> NeedResponse:
        await self._call("needed", folder_id)
        return NeedResponse(queued=[NeededFile(name="q.txt")])

    async def get_ignore_patterns(self, folder_id: str) -> list[str]:
        await self._call("ignores", folder_id)
        return ["*.tmp"]

    async def rescan_folder(self, folder_id: str) -> None:
        await self._call("rescan", folder_id)

    async def revert_folder(self, folder_id: str) -> None:
        await self._call("revert", folder_id)

    async def set_ignore_patterns(self, folder_id: str, patterns: list[str]) -> None:
        await self._call("set_ignores", folder_id, patterns)


def make_scheduler(client: FakeClient, **kwargs: Any) -> RequestScheduler:
    kwargs.setdefault("drain_interval", 0.001)
    return RequestScheduler(client, **kwargs)  # type: ignore[arg-type]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout=timeout)


async def collect(scheduler: RequestScheduler, count: int) -> list[ApiResponse]:
    return [await asyncio.wait_for(scheduler.responses.get(), timeout=2.0) for _ in range(count)]


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture
async def scheduler(client: FakeClient) -> AsyncGenerator[RequestScheduler]:
    sched = make_scheduler(client)
    yield sched
    if client.gate is not None:
        client.gate.set()
    await sched.stop()


class TestDeduplication:
    async def test_duplicate_while_in_flight_dispatches_once(
        self, scheduler: RequestScheduler, client: FakeClient
    ) -> None:
        client.gate = asyncio.Event()
        scheduler.start()
        request = BrowseFolder(folder_id="f", prefix="docs/")
        for _ in range(3):
            scheduler.enqueue(request)
        await wait_until(lambda: scheduler.in_flight_count == 1)

        scheduler.enqueue(request)
        scheduler.enqueue(BrowseFolder(folder_id="f", prefix="docs/", priority=Priority.HIGH))
        await asyncio.sleep(0.01)
        client.gate.set()

        [response] = await collect(scheduler, 1)
        assert response.ok
        await asyncio.sleep(0.01)
        assert scheduler.responses.empty()
        assert client.calls == [("browse", "f", "docs/")]

    async def test_equivalent_prefix_spellings_dispatch_once(
        self, scheduler: RequestScheduler, client: FakeClient
    ) -> None:
        client.gate = asyncio.Event()
        scheduler.start()
        scheduler.enqueue(BrowseFolder(folder_id="f", prefix="docs"))
        scheduler.enqueue(GetFileInfo(folder_id="f", file_path="docs/sub"))
        await wait_until(lambda: scheduler.in_flight_count == 2)

        scheduler.enqueue(BrowseFolder(folder_id="f", prefix="docs/"))
        scheduler.enqueue(BrowseFolder(folder_id="f", prefix="/docs/"))
        scheduler.enqueue(GetFileInfo(folder_id="f", file_path="docs/sub/"))
        await asyncio.sleep(0.01)
        client.gate.set()

        await collect(scheduler, 2)
        await asyncio.sleep(0.01)
        assert scheduler.responses.empty()
        assert client.calls == [("browse", "f", "docs"), ("file_info", "f", "docs/sub")]

    async def test_root_spellings_dispatch_once(
        self, scheduler: RequestScheduler, client: FakeClient
    ) -> None:
        client.gate = asyncio.Event()
        scheduler.start()
        scheduler.enqueue(BrowseFolder(folder_id="f"))
        await wait_until(lambda: scheduler.in_flight_count == 1)
        scheduler.enqueue(BrowseFolder(folder_id="f", prefix=""))
        scheduler.enqueue(BrowseFolder(folder_id="f", prefix="/"))
        await asyncio.sleep(0.01)
        client.gate.set()

        await collect(scheduler, 1)
        await asyncio.sleep(0.01)
        assert scheduler.responses.empty()
        assert client.calls == [("browse", "f", None)]

    async def test_request_after_completion_dispatches_again(
        self, scheduler: RequestScheduler, client: FakeClient
    ) -> None:
        scheduler.start()
        request = GetFolderStatus(folder_id="f")
        scheduler.enqueue(request)
        await collect(scheduler, 1)
        scheduler.enqueue(request)
        await collect(scheduler, 1)
        assert len(client.calls) == 2

    async def test_write_requests_never_collapse(
        self, scheduler: RequestScheduler, client: FakeClient
    ) -> None:
        client.gate = asyncio.Event()
        scheduler.start()
        scheduler.enqueue(RescanFolder(folder_id="f"))
        scheduler.enqueue(RescanFolder(folder_id="f"))
        await wait_until(lambda: len(client.calls) == 2)
        client.gate.set()
        await collect(scheduler, 2)

    async def test_distinct_targets_not_collapsed(
        self, scheduler: RequestScheduler, client: FakeClient
    ) -> None:
        scheduler.start()
        scheduler.enqueue(GetFileInfo(folder_id="f", file_path="a"))
        scheduler.enqueue(GetFileInfo(folder_id="f", file_path="b"))
        scheduler.enqueue(GetFileInfo(folder_id="g", file_path="a"))
        await collect(scheduler, 3)
        assert len(client.calls) == 3


class TestPriority:
    async def test_drains_in_priority_order(self, client: FakeClient) -> None:
        scheduler = make_scheduler(client, max_concurrent=1)
        scheduler.enqueue(BrowseFolder(folder_id="f", prefix="low/", priority=Priority.LOW))
        scheduler.enqueue(BrowseFolder(folder_id="f", prefix="high1/", priority=Priority.HIGH))
        scheduler.enqueue(BrowseFolder(folder_id="f", prefix="medium/", priority=Priority.MEDIUM))
        scheduler.enqueue(BrowseFolder(folder_id="f", prefix="high2/", priority=Priority.HIGH))
        scheduler.start()
        try:
            await collect(scheduler, 4)
        finally:
            await scheduler.stop()

        assert [call[2] for call in client.calls] == ["high1/", "high2/", "medium/", "low/"]

    async def test_status_is_medium_and_writes_are_high(self, client: FakeClient) -> None:
        scheduler = make_scheduler(client, max_concurrent=1)
        scheduler.enqueue(BrowseFolder(folder_id="f", prefix="low/", priority=Priority.LOW))
        scheduler.enqueue(GetFolderStatus(folder_id="f"))
        scheduler.enqueue(RevertFolder(folder_id="f"))
        scheduler.start()
        try:
            await collect(scheduler, 3)
        finally:
            await scheduler.stop()

        assert [call[0] for call in client.calls] == ["revert", "folder_status", "browse"]

    async def test_needed_files_is_medium_and_ignore_listing_is_high(
        self, client: FakeClient
    ) -> None:
        scheduler = make_scheduler(client, max_concurrent=1)
        scheduler.enqueue(BrowseFolder(folder_id="f", prefix="low/", priority=Priority.LOW))
        scheduler.enqueue(GetNeededFiles(folder_id="f"))
        scheduler.enqueue(GetIgnorePatterns(folder_id="f"))
        scheduler.start()
        try:
            await collect(scheduler, 3)
        finally:
            await scheduler.stop()

        assert [call[0] for call in client.calls] == ["ignores", "needed", "browse"]

    async def test_repeated_request_with_higher_priority_moves_up(
        self, client: FakeClient
    ) -> None:
        client.gate = asyncio.Event()
        scheduler = make_scheduler(client, max_concurrent=1)
        scheduler.start()
        try:
            scheduler.enqueue(
                BrowseFolder(folder_id="f", prefix="blocker/", priority=Priority.HIGH)
            )
            await wait_until(lambda: scheduler.in_flight_count == 1)

            scheduler.enqueue(BrowseFolder(folder_id="f", prefix="a/", priority=Priority.LOW))
            scheduler.enqueue(BrowseFolder(folder_id="f", prefix="b/", priority=Priority.MEDIUM))
            scheduler.enqueue(BrowseFolder(folder_id="f", prefix="a/", priority=Priority.HIGH))
            await wait_until(lambda: scheduler.queued_count == 2)
            client.gate.set()
            await collect(scheduler, 3)
        finally:
            client.gate.set()
            await scheduler.stop()

        assert [call[2] for call in client.calls] == ["blocker/", "a/", "b/"]


class TestConcurrency:
    async def test_never_exceeds_budget(self, client: FakeClient) -> None:
        client.gate = asyncio.Event()
        scheduler = make_scheduler(client, max_concurrent=3)
        scheduler.start()
        try:
            for i in range(10):
                scheduler.enqueue(GetFileInfo(folder_id="f", file_path=f"file{i}"))
            await wait_until(lambda: client.active == 3)
            await asyncio.sleep(0.02)
            assert client.active == 3
            assert scheduler.queued_count == 7

            client.gate.set()
            await collect(scheduler, 10)
        finally:
            client.gate.set()
            await scheduler.stop()

        assert client.max_active == 3
        assert len(client.calls) == 10

    async def test_admission_per_tick_is_bounded(self, client: FakeClient) -> None:
        client.gate = asyncio.Event()
        scheduler = make_scheduler(
            client, max_concurrent=10, drain_interval=10.0, max_admissions_per_tick=5
        )
        for i in range(8):
            scheduler.enqueue(GetFileInfo(folder_id="f", file_path=f"file{i}"))
        scheduler.start()
        try:
            await wait_until(lambda: scheduler.in_flight_count == 5)
            assert scheduler.queued_count == 3
        finally:
            client.gate.set()
            await scheduler.stop()

    def test_rejects_empty_budget(self, client: FakeClient) -> None:
        with pytest.raises(ValueError, match="max_concurrent"):
            RequestScheduler(client, max_concurrent=0)  # type: ignore[arg-type]


class TestErrorReporting:
    async def test_failure_reported_once_without_retry(
        self, scheduler: RequestScheduler, client: FakeClient
    ) -> None:
        client.failures["broken"] = DaemonError("API error 500: boom", status_code=500)
        scheduler.start()
        scheduler.enqueue(GetFolderStatus(folder_id="broken"))

        [response] = await collect(scheduler, 1)
        assert not response.ok
        assert response.error == "API error 500: boom"
        assert response.error_kind == "server_error"
        await asyncio.sleep(0.01)
        assert scheduler.responses.empty()
        assert len(client.calls) == 1

    async def test_unexpected_exception_becomes_error_response(
        self, scheduler: RequestScheduler, client: FakeClient
    ) -> None:
        client.failures["weird"] = RuntimeError("kaboom")
        scheduler.start()
        scheduler.enqueue(GetFileInfo(folder_id="weird", file_path="x"))

        [response] = await collect(scheduler, 1)
        assert response.error is not None
        assert "kaboom" in response.error

        # The scheduler keeps working afterwards.
        scheduler.enqueue(GetFolderStatus(folder_id="fine"))
        [response] = await collect(scheduler, 1)
        assert response.ok


class TestLifecycle:
    async def test_stop_waits_for_in_flight_workers(self, client: FakeClient) -> None:
        client.gate = asyncio.Event()
        scheduler = make_scheduler(client)
        scheduler.start()
        scheduler.enqueue(GetFolderStatus(folder_id="f"))
        await wait_until(lambda: scheduler.in_flight_count == 1)

        stopping = asyncio.create_task(scheduler.stop())
        await asyncio.sleep(0.01)
        assert not stopping.done()

        client.gate.set()
        await asyncio.wait_for(stopping, timeout=2.0)
        response = scheduler.responses.get_nowait()
        assert response.ok
        assert not scheduler.is_running

    async def test_stop_without_start_is_noop(self, client: FakeClient) -> None:
        await RequestScheduler(client).stop()  # type: ignore[arg-type]


class TestExecuteRequest:
    @pytest.mark.parametrize(
        ("request_", "expected_call", "expected_value"),
        [
            (BrowseFolder(folder_id="f"), ("browse", "f", None), [BrowseItem(name="item")]),
            (
                BrowseFolder(folder_id="f", prefix="d/"),
                ("browse", "f", "d/"),
                [BrowseItem(name="item")],
            ),
            (GetLocalChangedFiles(folder_id="f"), ("local_changed", "f"), ["changed.txt"]),
            (
                GetNeededFiles(folder_id="f"),
                ("needed", "f"),
                NeedResponse(queued=[NeededFile(name="q.txt")]),
            ),
            (GetIgnorePatterns(folder_id="f"), ("ignores", "f"), ["*.tmp"]),
            (RevertFolder(folder_id="f"), ("revert", "f"), None),
            (
                SetIgnorePatterns(folder_id="f", patterns=("*.tmp", "/build")),
                ("set_ignores", "f", ["*.tmp", "/build"]),
                None,
            ),
        ],
    )
    async def test_maps_request_to_client_call(
        self,
        client: FakeClient,
        request_: Any,
        expected_call: tuple[Any, ...],
        expected_value: Any,
    ) -> None:
        response = await execute_request(client, request_)  # type: ignore[arg-type]
        assert response.ok
        assert response.request == request_
        assert response.value == expected_value
        assert client.calls == [expected_call]
