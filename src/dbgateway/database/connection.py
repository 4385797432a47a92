"""Connection pooling: bounded adapter pools and the per-connection registry."""

import asyncio
import logging
import queue
import threading
import time
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Mapping, Optional, TypeVar

from ..errors import GatewayTimeoutError, ResourceError
from ..models import ConnectionDescriptor, PoolConfig, PoolStats
from .adapters import BaseAdapter
from .dialects import Dialect, classify_driver
from .logging import log_pool_operation, log_resource_leak

logger = logging.getLogger(__name__)

T = TypeVar("T")

AdapterFactory = Callable[[ConnectionDescriptor, Dialect], BaseAdapter]


async def run_blocking(func: Callable[..., T], *args: Any, timeout: float, what: str = "Backend call") -> T:
    """Run a blocking driver call in a worker thread with a timeout.

    Raises:
        GatewayTimeoutError: If the call does not finish within ``timeout``
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise GatewayTimeoutError(f"{what} exceeded timeout ({timeout}s)") from e


class ConnectionPool:
    """Queue-based pool of connected adapters for one connection id.

    Thread-safe: acquire/release run in worker threads. At most
    ``config.max`` adapters exist at once; ``open()`` pre-connects
    ``config.min`` of them.
    """

    def __init__(
        self,
        connection_id: str,
        dialect: Dialect,
        adapter_factory: Callable[[], BaseAdapter],
        config: PoolConfig,
    ):
        """Initialize connection pool.

        Args:
            connection_id: Registry key of the pool
            dialect: Dialect of every adapter in the pool
            adapter_factory: Callable that creates a new, unconnected adapter
            config: Pool bounds and timeouts
        """
        self.connection_id = connection_id
        self.dialect = dialect
        self.config = config
        self.created_at = datetime.now(tz=timezone.utc)
        self._adapter_factory = adapter_factory
        self._idle: queue.Queue[tuple[BaseAdapter, float]] = queue.Queue()
        self._total = 0
        self._waiting = 0
        self._closed = False
        self._count_lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def _reserve_slot(self) -> bool:
        with self._count_lock:
            if self._total < self.config.max:
                self._total += 1
                return True
            return False

    def _release_slot(self) -> None:
        with self._count_lock:
            self._total -= 1

    def _connect_new(self) -> BaseAdapter:
        """Create and connect an adapter in an already reserved slot."""
        try:
            adapter = self._adapter_factory()
            adapter.connect()
        except BaseException:
            self._release_slot()
            raise
        return adapter

    def _destroy(self, adapter: BaseAdapter) -> bool:
        """Close an adapter and free its slot. Returns False if close failed."""
        try:
            adapter.close()
            return True
        except Exception as e:
            log_resource_leak(
                driver=adapter.descriptor.driver,
                host=adapter.host,
                database=adapter.database,
                error=str(e),
            )
            return False
        finally:
            self._release_slot()

    def _is_expired(self, idle_since: float) -> bool:
        idle_timeout = self.config.idle_timeout_ms / 1000
        if idle_timeout <= 0:
            return False
        with self._count_lock:
            above_min = self._total > self.config.min
        return above_min and time.monotonic() - idle_since > idle_timeout

    def open(self) -> None:
        """Pre-connect ``config.min`` adapters.

        Raises:
            BackendError: If a connection cannot be established; adapters
                opened so far are closed first
        """
        opened: list[BaseAdapter] = []
        try:
            for _ in range(self.config.min):
                if not self._reserve_slot():
                    break
                opened.append(self._connect_new())
        except BaseException:
            for adapter in opened:
                self._destroy(adapter)
            raise

        for adapter in opened:
            if self._closed:
                # Pool was closed while connecting (creation timed out)
                self._destroy(adapter)
            else:
                self._idle.put((adapter, time.monotonic()))
        log_pool_operation(self.connection_id, "open", self.config.max, 0)

    def acquire(self, timeout: Optional[float] = None) -> BaseAdapter:
        """Acquire an adapter, creating one while under ``max``.

        Args:
            timeout: Seconds to wait for a free adapter when the pool is
                exhausted (default: ``config.acquire_timeout_ms``)

        Returns:
            Connected adapter, exclusively owned until released

        Raises:
            ResourceError: If the pool is closed
            GatewayTimeoutError: If no adapter frees up within timeout
        """
        if self._closed:
            raise ResourceError(f"Connection pool for {self.connection_id} is closed")
        if timeout is None:
            timeout = self.config.acquire_timeout_ms / 1000
        deadline = time.monotonic() + timeout

        while True:
            try:
                adapter, idle_since = self._idle.get_nowait()
            except queue.Empty:
                if self._reserve_slot():
                    adapter = self._connect_new()
                    log_pool_operation(self.connection_id, "acquire", self.config.max, self.stats()["active"])
                    return adapter

                remaining = deadline - time.monotonic()
                with self._count_lock:
                    self._waiting += 1
                try:
                    adapter, idle_since = self._idle.get(timeout=max(remaining, 0))
                except queue.Empty:
                    raise GatewayTimeoutError(
                        f"Connection pool exhausted for {self.connection_id}: "
                        f"no connection available within {timeout}s "
                        f"(maximum pool size: {self.config.max})"
                    )
                finally:
                    with self._count_lock:
                        self._waiting -= 1

            if self._is_expired(idle_since) or not adapter.is_connected:
                self._destroy(adapter)
                continue
            log_pool_operation(self.connection_id, "acquire", self.config.max, self.stats()["active"])
            return adapter

    def release(self, adapter: BaseAdapter, discard: bool = False) -> None:
        """Return an adapter to the pool, or close it.

        Args:
            adapter: Adapter obtained from acquire()
            discard: Close the adapter instead of reusing it (e.g. after a
                failed commit, where its session state is unknown)
        """
        if discard or self._closed or not adapter.is_connected:
            self._destroy(adapter)
        else:
            self._idle.put((adapter, time.monotonic()))
        log_pool_operation(self.connection_id, "release", self.config.max, self.stats()["active"])

    def stats(self) -> dict[str, int]:
        with self._count_lock:
            total = self._total
            waiting = self._waiting
        idle = self._idle.qsize()
        return {
            "total": total,
            "idle": idle,
            "active": max(total - idle, 0),
            "waiting": waiting,
        }

    def close(self) -> None:
        """Close all idle adapters; checked-out ones close on release.

        Raises:
            ResourceError: If any adapter failed to close (each is also
                logged as a resource leak)
        """
        self._closed = True
        failures = 0
        while True:
            try:
                adapter, _ = self._idle.get_nowait()
            except queue.Empty:
                break
            if not self._destroy(adapter):
                failures += 1

        log_pool_operation(self.connection_id, "close", self.config.max, self.stats()["active"])
        if failures:
            raise ResourceError(
                f"{failures} connection(s) failed to close for pool {self.connection_id}"
            )


def normalize_pool_stats(
    connection_id: str, raw: Mapping[str, Optional[int]], config: PoolConfig
) -> PoolStats:
    """Fill a PoolStats from whatever subset of counters a pool exposes.

    Missing values are approximated: total from idle+active or the
    configured max, idle/active from each other, waiting as 0.
    """
    total = raw.get("total")
    idle = raw.get("idle")
    active = raw.get("active")
    waiting = raw.get("waiting")

    if total is None:
        total = idle + active if idle is not None and active is not None else config.max
    if active is None:
        active = max(total - idle, 0) if idle is not None else 0
    if idle is None:
        idle = max(total - active, 0)

    return PoolStats(
        connection_id=connection_id,
        total_connections=total,
        idle_connections=idle,
        active_connections=active,
        waiting_requests=waiting or 0,
    )


class ConnectionPoolManager:
    """Owns one ConnectionPool per connection id.

    Concurrent get_pool() calls for the same id share one in-flight creation,
    so a pool is never constructed twice for an id.
    """

    def __init__(self, config: PoolConfig, adapter_factory: AdapterFactory, timeout: float = 30.0):
        self.config = config
        self.timeout = timeout
        self._adapter_factory = adapter_factory
        self._pools: dict[str, ConnectionPool] = {}
        self._pending: dict[str, asyncio.Future] = {}

    async def get_pool(self, descriptor: ConnectionDescriptor) -> Optional[ConnectionPool]:
        """Return the pool for ``descriptor.id``, creating it on first use.

        Returns:
            The pool, or None for dialects without pooling (SQLite, unknown)

        Raises:
            BackendError: If the initial connections cannot be opened
            GatewayTimeoutError: If opening the pool times out
        """
        pool = self._pools.get(descriptor.id)
        if pool is not None:
            logger.debug(f"Reusing existing pool for {descriptor.name}")
            return pool

        dialect = classify_driver(descriptor.driver)
        if not dialect.is_pooled:
            return None

        pending = self._pending.get(descriptor.id)
        if pending is None:
            pending = asyncio.ensure_future(self._create_pool(descriptor, dialect))
            self._pending[descriptor.id] = pending
            pending.add_done_callback(partial(self._forget_pending, descriptor.id))
        # Shielded so one caller's cancellation does not abort the shared creation
        return await asyncio.shield(pending)

    def _forget_pending(self, connection_id: str, future: asyncio.Future) -> None:
        if self._pending.get(connection_id) is future:
            del self._pending[connection_id]

    async def _create_pool(self, descriptor: ConnectionDescriptor, dialect: Dialect) -> ConnectionPool:
        logger.info(f"Creating {dialect.value} pool for {descriptor.name}")
        pool = ConnectionPool(
            descriptor.id,
            dialect,
            partial(self._adapter_factory, descriptor, dialect),
            self.config,
        )
        try:
            await run_blocking(pool.open, timeout=self.timeout, what=f"Opening pool for {descriptor.name}")
        except GatewayTimeoutError:
            # Connections still being opened in the worker are closed by open()
            await self._close_quietly(pool)
            raise
        self._pools[descriptor.id] = pool
        return pool

    async def acquire(self, pool: ConnectionPool) -> BaseAdapter:
        # Not wrapped in a timeout: acquire() is bounded by acquire_timeout_ms
        # and cancelling it mid-flight would strand the adapter.
        return await asyncio.to_thread(pool.acquire)

    async def release(self, pool: ConnectionPool, adapter: BaseAdapter, discard: bool = False) -> None:
        await asyncio.to_thread(pool.release, adapter, discard)

    def has_pool(self, connection_id: str) -> bool:
        return connection_id in self._pools

    def get_pool_dialect(self, connection_id: str) -> Optional[Dialect]:
        pool = self._pools.get(connection_id)
        return pool.dialect if pool else None

    @property
    def pool_ids(self) -> list[str]:
        return list(self._pools)

    def get_stats(self, connection_id: str) -> Optional[PoolStats]:
        """Normalized statistics for a pool, or None if no pool exists."""
        pool = self._pools.get(connection_id)
        if pool is None:
            return None
        try:
            raw = pool.stats()
        except Exception as e:
            logger.warning(f"Could not read pool stats for {connection_id}: {e}")
            raw = {}
        return normalize_pool_stats(connection_id, raw, pool.config)

    async def _close_quietly(self, pool: ConnectionPool) -> None:
        try:
            await run_blocking(pool.close, timeout=self.timeout, what=f"Closing pool {pool.connection_id}")
        except Exception as e:
            logger.error(f"Error closing pool {pool.connection_id}: {e}")

    async def close_pool(self, connection_id: str) -> None:
        """Close and unregister a pool. Idempotent; failures are logged."""
        pool = self._pools.pop(connection_id, None)
        if pool is None:
            return
        logger.info(f"Closing pool for {connection_id}")
        await self._close_quietly(pool)

    async def close_all_pools(self) -> None:
        logger.info("Closing all connection pools")
        await asyncio.gather(*(self.close_pool(connection_id) for connection_id in list(self._pools)))
