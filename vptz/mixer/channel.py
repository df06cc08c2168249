"""
Fire-and-forget command channel towards a mixer connection.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from .protocol import Commands, normalise_commands

LOG = logging.getLogger(__name__)


class CommandTarget(Protocol):
    @property
    def remote(self) -> str: ...

    def connected(self) -> bool: ...

    async def send(self, commands: Commands) -> None: ...


async def send_commands(connection: Optional[CommandTarget], commands: Commands) -> bool:
    """
    Send one command or an ordered batch of commands.

    An unavailable connection is not an error: the batch is dropped with a
    single warning naming the endpoint.  Returns whether the batch was written.
    """

    batch = normalise_commands(commands)
    if connection is None or not connection.connected():
        remote = connection.remote if connection is not None else "unknown:unknown"
        LOG.warning("failed to send %d command(s) to %s -- (still) not connected", len(batch), remote)
        return False
    if not batch:
        return False
    try:
        await connection.send(batch)
    except (OSError, ConnectionError) as exc:
        LOG.warning("failed to send %d command(s) to %s: %s", len(batch), connection.remote, exc)
        return False
    return True
