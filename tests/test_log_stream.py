import asyncio
import json

import pytest

from routers import downloads
from worker import DownloadManager


class StubRequest:
    def __init__(self):
        self.disconnected = False

    async def is_disconnected(self):
        return self.disconnected


async def _noop(job, log):
    pass


def _payload(frame: str) -> dict:
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    return json.loads(frame[len("data: ") :])


async def _open_stream(manager, request):
    response = await downloads.stream_logs(request, manager)
    assert response.media_type == "text/event-stream"
    assert response.headers["cache-control"] == "no-cache"
    return response.body_iterator


def test_stream_replays_backlog_then_live_lines_and_keepalives(monkeypatch):
    monkeypatch.setattr(downloads, "SSE_KEEPALIVE_S", 0.05)

    async def scenario():
        manager = DownloadManager(execute=_noop)
        manager.log("job-1", "older line\nnewer line")
        request = StubRequest()
        frames = await _open_stream(manager, request)

        backlog = [_payload(await frames.__anext__()) for _ in range(2)]
        assert len(manager._subscribers) == 1

        manager.log("job-2", "live line")
        live = _payload(await frames.__anext__())
        idle = await frames.__anext__()

        request.disconnected = True
        manager.log("job-2", "after disconnect")
        with pytest.raises(StopAsyncIteration):
            while True:
                await frames.__anext__()
        return manager, backlog, live, idle

    manager, backlog, live, idle = asyncio.run(scenario())

    assert [(e["job_id"], e["message"]) for e in backlog] == [("job-1", "older line"), ("job-1", "newer line")]
    assert (live["job_id"], live["message"]) == ("job-2", "live line")
    assert idle == ": keep-alive\n\n"
    assert manager._subscribers == {}


def test_closing_stream_unsubscribes():
    async def scenario():
        manager = DownloadManager(execute=_noop)
        manager.log("job-1", "only line")
        frames = await _open_stream(manager, StubRequest())
        await frames.__anext__()
        assert len(manager._subscribers) == 1
        await frames.aclose()
        return manager

    manager = asyncio.run(scenario())

    assert manager._subscribers == {}


def test_stream_lines_are_not_lost_between_snapshot_and_subscribe():
    async def scenario():
        manager = DownloadManager(execute=_noop)
        frames = await _open_stream(manager, StubRequest())
        # Nothing buffered yet: the first frame comes from a line logged after opening.
        pending = asyncio.ensure_future(frames.__anext__())
        await asyncio.sleep(0)
        manager.log("job-3", "first live line")
        frame = await asyncio.wait_for(pending, timeout=1)
        await frames.aclose()
        return frame

    frame = asyncio.run(scenario())

    assert _payload(frame)["message"] == "first live line"
