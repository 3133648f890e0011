"""Worker processes for fetching batches.

Each batch runs in its own spawned process so a crash or hang inside fetch
or parse code cannot take the orchestrator down. Messages cross the process
boundary as plain dicts on a ``multiprocessing.Queue``.
"""

from __future__ import annotations

import asyncio
import multiprocessing
import os
import queue
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from feedrelay.main.logging import get_logger
from feedrelay.worker.messages import LinkCompletion, WorkerDispatch

logger = get_logger(__name__)

OnMessage = Callable[[LinkCompletion], Awaitable[None]]

_DONE = "__done__"
_POLL_SECONDS = 0.5


class WorkerHandle(ABC):
    @abstractmethod
    def kill(self) -> None:
        """Stop the worker and its message reader; safe to call twice."""


class WorkerFactory(ABC):
    @abstractmethod
    def spawn(self, dispatch: WorkerDispatch, on_message: OnMessage) -> WorkerHandle:
        pass


def _worker_main(dispatch_data: dict, out: multiprocessing.Queue) -> None:
    from feedrelay.main.aiohttp_client import AioHttpClient
    from feedrelay.main.log_context import set_log_context
    from feedrelay.articles.fetcher import HttpFeedFetcher
    from feedrelay.worker.processor import BatchProcessor

    dispatch = WorkerDispatch.model_validate(dispatch_data)
    set_log_context(
        schedule_name=dispatch.schedule_name,
        run_number=dispatch.run_number,
        worker_pid=os.getpid(),
    )

    def emit(completion: LinkCompletion) -> None:
        out.put(completion.model_dump(mode="json"))

    async def main() -> None:
        client = AioHttpClient(
            total_timeout=dispatch.config.request_timeout_seconds,
            limit_per_host=dispatch.config.max_concurrent_requests,
        )
        client.start()
        try:
            fetcher = HttpFeedFetcher(client(), dispatch.config.request_timeout_seconds)
            await BatchProcessor(dispatch, fetcher, emit).run()
        finally:
            await client.stop()

    try:
        asyncio.run(main())
    finally:
        out.put(_DONE)


class ProcessWorkerHandle(WorkerHandle):
    def __init__(self, process: multiprocessing.process.BaseProcess, messages, on_message: OnMessage):
        self.process = process
        self.messages = messages
        self.on_message = on_message
        self.reader: Optional[asyncio.Task] = None
        self._reaper: Optional[asyncio.Task] = None

    def start_reading(self) -> None:
        self.reader = asyncio.create_task(self._read())

    def _next(self):
        try:
            return self.messages.get(timeout=_POLL_SECONDS)
        except queue.Empty:
            return None

    async def _read(self) -> None:
        try:
            while True:
                item = await asyncio.to_thread(self._next)
                if item == _DONE:
                    return
                if item is None:
                    if not self.process.is_alive():
                        logger.error(
                            "Worker process exited without finishing its batch",
                            extra={"pid": self.process.pid, "exitcode": self.process.exitcode},
                        )
                        return
                    continue
                try:
                    await self.on_message(LinkCompletion.model_validate(item))
                except Exception:
                    logger.exception("Failed to handle worker message", extra={"url": item.get("url")})
        finally:
            self._reap()

    def _reap(self) -> None:
        # join() blocks, so it runs in a thread
        if self._reaper is None:
            self._reaper = asyncio.create_task(asyncio.to_thread(self.process.join, 5))

    def kill(self) -> None:
        if self.process.is_alive():
            self.process.kill()
        if self.reader is not None and not self.reader.done():
            self.reader.cancel()
        self._reap()


class ProcessWorkerFactory(WorkerFactory):
    def __init__(self):
        self._context = multiprocessing.get_context("spawn")

    def spawn(self, dispatch: WorkerDispatch, on_message: OnMessage) -> WorkerHandle:
        messages = self._context.Queue()
        process = self._context.Process(
            target=_worker_main,
            args=(dispatch.model_dump(mode="json"), messages),
            daemon=True,
        )
        process.start()
        logger.debug(
            "Worker process spawned",
            extra={"pid": process.pid, "url_count": len(dispatch.batch)},
        )
        handle = ProcessWorkerHandle(process, messages, on_message)
        handle.start_reading()
        return handle
