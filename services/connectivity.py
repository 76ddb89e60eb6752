"""Online/offline state with transition notifications."""
from __future__ import annotations

import asyncio
import inspect
from typing import Awaitable, Callable, List, Optional, Union

from core.logs import get_logger
from core.settings import CONNECTIVITY


logger = get_logger("connectivity")

ConnectivityListener = Callable[[bool], Union[Awaitable[None], None]]


class ConnectivityMonitor:
    """Holds the current connectivity state.

    Listeners are only called on transitions, never for a repeated state.
    """

    def __init__(self, online: bool = False) -> None:
        self._online = online
        self._listeners: List[ConnectivityListener] = []

    @property
    def online(self) -> bool:
        return self._online

    def add_listener(self, listener: ConnectivityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def set_online(self, online: bool) -> bool:
        """Record the state; returns ``True`` when it changed."""
        if online == self._online:
            return False
        self._online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        for listener in list(self._listeners):
            try:
                result = listener(online)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Connectivity listener failed")
        return True

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass


class ProbingConnectivityMonitor(ConnectivityMonitor):
    """Connectivity derived from a periodic TCP connect to the remote host."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        *,
        interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> None:
        super().__init__(online=False)
        self.host = host or CONNECTIVITY.probe_host
        self.port = port or CONNECTIVITY.probe_port
        self.interval = interval if interval is not None else CONNECTIVITY.interval_sec
        self.timeout = timeout if timeout is not None else CONNECTIVITY.probe_timeout_sec
        self._task: Optional[asyncio.Task] = None

    async def probe(self) -> bool:
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(self.host, self.port), self.timeout)
        except (OSError, asyncio.TimeoutError) as exc:
            logger.debug("Probe %s:%s failed: %s", self.host, self.port, exc)
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def check(self) -> bool:
        await self.set_online(await self.probe())
        return self.online

    async def start(self) -> None:
        await self.check()
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.check()


__all__ = ["ConnectivityListener", "ConnectivityMonitor", "ProbingConnectivityMonitor"]
