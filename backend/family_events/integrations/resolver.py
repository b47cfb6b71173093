"""Host resolution capability used as a pre-flight check before browsing."""

import asyncio
import socket
from typing import Protocol, runtime_checkable


@runtime_checkable
class HostResolver(Protocol):
    async def resolve(self, host: str) -> list[str]:
        """Return the addresses for ``host``.

        Raises:
            OSError: the name does not resolve
        """
        ...


class DnsResolver:
    """Resolves through the event loop's getaddrinfo (system resolver)."""

    async def resolve(self, host: str) -> list[str]:
        loop = asyncio.get_running_loop()
        infos = await loop.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
        return sorted({info[4][0] for info in infos})
