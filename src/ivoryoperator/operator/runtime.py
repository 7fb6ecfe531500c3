"""
Generic reconcile plumbing shared by every controller in the operator.

kopf event handlers only enqueue resource keys. A ReconcileQueue owns the
workers that turn those keys into reconcile calls: one in-flight reconcile
per key, many keys in parallel, duplicate enqueues collapsed into a single
pending re-run, and retries with exponential backoff.
"""
import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Set

from kubernetes import client

from ..crds.base import BaseCustomResource
from ..utils.kube import KubeStore, merge_patch_diff


@dataclass(frozen=True)
class ResourceKey:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ReconcileResult:
    """What the controller wants to happen after a reconcile returns."""

    # Rate limited: re-added after the same backoff a failure gets.
    requeue: bool = False
    requeue_after: Optional[float] = None

    @property
    def wants_requeue(self) -> bool:
        return self.requeue or bool(self.requeue_after)


@contextmanager
def patch_status_on_exit(
    store: KubeStore, resource: BaseCustomResource, logger: logging.Logger
) -> Iterator[None]:
    """
    Send the status fields the block changed to the API server when it exits.
    Fields the block left alone are not sent, so concurrent writes to them
    survive. The patch is attempted on every exit path; when the block itself
    raised, a failed patch is logged and the original error wins.
    """
    before = resource.status_snapshot()

    def _patch() -> None:
        if resource.status == before:
            return
        store.patch_status(
            resource.kind,
            resource.metadata.namespace,
            resource.metadata.name,
            {"status": merge_patch_diff(before, resource.status)},
        )

    try:
        yield
    except Exception:
        try:
            _patch()
        except client.ApiException as e:
            logger.error(f"Patching {resource.kind} '{resource.metadata.name}' status: {e}")
        raise
    _patch()


class ReconcileQueue:
    def __init__(
        self,
        name: str,
        reconcile: Callable[[ResourceKey], ReconcileResult],
        logger: logging.Logger,
        workers: int = 1,
        backoff_max: float = 300,
    ) -> None:
        self.name = name
        self._reconcile = reconcile
        self._logger = logger
        self._worker_count = max(1, workers)
        self._backoff_max = backoff_max

        self._queue: "asyncio.Queue[ResourceKey]" = asyncio.Queue()
        self._queued: Set[ResourceKey] = set()
        self._active: Set[ResourceKey] = set()
        self._dirty: Set[ResourceKey] = set()
        self._failures: Dict[ResourceKey, int] = {}
        self._timers: Dict[ResourceKey, asyncio.TimerHandle] = {}
        self._workers: List[asyncio.Task] = []

    def add(self, key: ResourceKey) -> None:
        """Enqueue key unless it is already waiting."""
        if key in self._active:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    def add_after(self, key: ResourceKey, delay: float) -> None:
        """Enqueue key after delay seconds. An earlier pending timer wins."""
        if delay <= 0:
            self.add(key)
            return
        existing = self._timers.get(key)
        loop = asyncio.get_running_loop()
        if existing is not None and existing.when() <= loop.time() + delay:
            return
        if existing is not None:
            existing.cancel()

        def _fire() -> None:
            self._timers.pop(key, None)
            self.add(key)

        self._timers[key] = loop.call_later(delay, _fire)

    def backoff(self, key: ResourceKey) -> float:
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        return min(2 ** (failures - 1), self._backoff_max)

    async def _process(self, key: ResourceKey) -> None:
        try:
            result = await asyncio.to_thread(self._reconcile, key)
        except Exception as e:
            delay = self.backoff(key)
            self._logger.error(
                f"[{self.name}] Reconcile of '{key}' failed; retrying in {delay}s: {e}",
                exc_info=True,
            )
            self.add_after(key, delay)
            return

        if result.requeue_after:
            self._failures.pop(key, None)
            self.add_after(key, result.requeue_after)
        elif result.requeue:
            self.add_after(key, self.backoff(key))
        else:
            self._failures.pop(key, None)

    async def _worker(self) -> None:
        while True:
            key = await self._queue.get()
            self._queued.discard(key)
            self._active.add(key)
            try:
                await self._process(key)
            finally:
                self._active.discard(key)
                if key in self._dirty:
                    self._dirty.discard(key)
                    self.add(key)
                self._queue.task_done()

    def start(self) -> None:
        for index in range(self._worker_count):
            task = asyncio.get_running_loop().create_task(
                self._worker(), name=f"{self.name}-worker-{index}"
            )
            self._workers.append(task)
        self._logger.info(f"[{self.name}] Started {self._worker_count} reconcile worker(s).")

    async def join(self) -> None:
        """Wait until every enqueued key has been processed."""
        await self._queue.join()

    async def stop(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()


async def refresh_periodically(
    queue: ReconcileQueue,
    list_keys: Callable[[], List[ResourceKey]],
    logger: logging.Logger,
    interval_seconds: int,
) -> None:
    """
    Periodically enqueue every known object so missed events are eventually
    reconciled.

    This is a long-running background task that runs on a fixed interval.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            keys = await asyncio.to_thread(list_keys)
        except client.ApiException as e:
            logger.error(f"[{queue.name}] API error during periodic refresh: {e}")
            continue
        for key in keys:
            queue.add(key)
        logger.debug(f"[{queue.name}] Periodic refresh enqueued {len(keys)} object(s).")
