"""Newline-terminated request/response exchange with application firmware."""

from __future__ import annotations

import asyncio
import codecs
import logging
import time
from collections.abc import Awaitable, Callable

from dashflash.core.errors import ReadTimeoutError
from dashflash.core.model import CommandExchange
from dashflash.core.session import DeviceSession

LOGGER = logging.getLogger(__name__)

RESPONSE_TIMEOUT_S = 2.0
READ_TIMEOUT_S = 1.0
RETRY_BACKOFF_S = 0.1
TERMINATORS: tuple[str, ...] = ("END", "ERROR")


class LineProtocolClient:
    """Send one command line and collect the reply.

    A reply is complete once it contains one of ``terminators``. If the
    device stays silent or never terminates the reply, whatever arrived
    within ``response_timeout_s`` is returned as-is, so callers must look at
    the content to tell a partial reply from a complete one.
    """

    def __init__(
        self,
        session: DeviceSession,
        *,
        response_timeout_s: float = RESPONSE_TIMEOUT_S,
        read_timeout_s: float = READ_TIMEOUT_S,
        retry_backoff_s: float = RETRY_BACKOFF_S,
        terminators: tuple[str, ...] = TERMINATORS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session = session
        self.response_timeout_s = response_timeout_s
        self.read_timeout_s = read_timeout_s
        self.retry_backoff_s = retry_backoff_s
        self.terminators = terminators
        self._clock = clock
        self._sleep = sleep

    async def send(self, command: str) -> str:
        transport = self._session.transport
        await transport.writer.write(f"{command}\n".encode("utf-8"))
        LOGGER.debug("-> %s", command)

        exchange = CommandExchange(
            request=command,
            deadline=self._clock() + self.response_timeout_s,
        )
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        while not exchange.terminated(self.terminators):
            remaining = exchange.deadline - self._clock()
            if remaining <= 0:
                LOGGER.debug("Reply to %s timed out, returning %d chars", command, len(exchange.response))
                break
            try:
                chunk = await transport.reader.read(min(self.read_timeout_s, remaining))
            except ReadTimeoutError:
                backoff = min(self.retry_backoff_s, max(0.0, exchange.deadline - self._clock()))
                if backoff > 0:
                    await self._sleep(backoff)
                continue
            exchange.response += decoder.decode(chunk)

        exchange.response += decoder.decode(b"", final=True)
        response = exchange.response.strip()
        LOGGER.debug("<- %s", response)
        return response
