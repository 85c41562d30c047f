"""Readiness probing for freshly spawned dev servers.

After a spawn the orchestrator polls the server's port with a plain GET once
per interval, up to a fixed number of attempts.  The result is tri-state:

* ``confirmed-ready`` -- a 2xx response arrived, after following any
  redirects;
* ``timed-out-assumed-ready`` -- every attempt failed but the process is still
  alive, so it is reported as serving anyway (slow dev servers are common);
* ``spawn-failed`` -- the process exited while being probed, typically
  because it could not bind its port.
"""

from __future__ import annotations

import asyncio
from typing import Callable

import httpx

from devpreview.models import Readiness


async def probe_readiness(
    url: str,
    *,
    is_alive: Callable[[], bool],
    attempts: int = 30,
    interval: float = 1.0,
    request_timeout: float = 2.0,
) -> Readiness:
    """Poll *url* until it answers with a 2xx status or the attempts run out.

    Args:
        url: Fully-qualified URL of the dev server root.
        is_alive: Returns ``False`` once the server process has exited.
        attempts: Maximum number of HTTP probes.
        interval: Seconds to wait before each probe.
        request_timeout: Per-request timeout in seconds.

    Returns:
        The :class:`~devpreview.models.Readiness` verdict.
    """
    timeout = httpx.Timeout(request_timeout, connect=min(request_timeout, 1.0))
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        for _ in range(attempts):
            await asyncio.sleep(interval)
            if not is_alive():
                return Readiness.SPAWN_FAILED
            try:
                response = await client.get(url)
            except httpx.HTTPError:
                continue
            if 200 <= response.status_code < 300:
                return Readiness.CONFIRMED

    return Readiness.ASSUMED if is_alive() else Readiness.SPAWN_FAILED
