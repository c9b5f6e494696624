"""
Server Registry.

Pool of configured game servers. Enabled flag and occupancy are persisted;
reachability is probed and cached in memory only.
"""

import asyncio
from typing import Dict, List, Optional

from orchestrator.logging_config import get_logger
from orchestrator.utils.errors import ServerNotFoundError
from .dispatcher import CommandDispatcher
from .models import Server, ServerAvailability, ServerStatus
from .repository import TournamentRepository

logger = get_logger(__name__)


class ServerRegistry:
    """Enabled/online/occupied view of the server pool."""

    def __init__(
        self,
        repository: TournamentRepository,
        dispatcher: CommandDispatcher,
        probe_enabled: bool = True,
    ):
        self.repository = repository
        self.dispatcher = dispatcher
        self.probe_enabled = probe_enabled
        self._availability: Dict[str, ServerAvailability] = {}

    async def list_servers(self) -> List[Server]:
        return await self.repository.list_servers()

    async def get_server(self, server_id: str) -> Server:
        server = await self.repository.get_server(server_id)
        if server is None:
            raise ServerNotFoundError(server_id)
        return server

    async def save_server(self, server: Server) -> Server:
        saved = await self.repository.save_server(server)
        self._availability.pop(server.id, None)
        logger.info("server_saved", server_id=server.id, address=server.address, enabled=server.enabled)
        return saved

    def cached_availability(self, server_id: str) -> Optional[ServerAvailability]:
        return self._availability.get(server_id)

    async def refresh(self) -> Dict[str, ServerAvailability]:
        """Probe every enabled server concurrently and cache the results."""
        servers = [s for s in await self.repository.list_servers() if s.enabled]
        if not servers:
            return {}

        results = await asyncio.gather(
            *(self.dispatcher.probe(server) for server in servers),
            return_exceptions=True,
        )

        fresh: Dict[str, ServerAvailability] = {}
        for server, result in zip(servers, results):
            if isinstance(result, BaseException):
                logger.warning("server_probe_failed", server_id=server.id, error=str(result))
                result = ServerAvailability(
                    server_id=server.id,
                    online=False,
                    status=ServerStatus.OFFLINE,
                    error=str(result),
                )
            fresh[server.id] = result

        self._availability.update(fresh)
        online = sum(1 for a in fresh.values() if a.online)
        logger.debug("servers_refreshed", probed=len(fresh), online=online)
        return fresh

    async def available_servers(self, refresh: bool = True) -> List[Server]:
        """
        Servers a match may be loaded onto, ordered by id.

        Enabled and unoccupied; with probing on, also online and idle.
        """
        if self.probe_enabled and refresh:
            await self.refresh()

        available = []
        for server in await self.repository.list_servers():
            if not server.enabled or server.is_occupied:
                continue
            if self.probe_enabled:
                status = self._availability.get(server.id)
                if status is None or not status.online or status.status != ServerStatus.IDLE:
                    continue
            available.append(server)
        return available

    async def availability_report(self) -> List[dict]:
        """Per-server state for the admin endpoint."""
        if self.probe_enabled:
            await self.refresh()

        report = []
        for server in await self.repository.list_servers():
            entry = server.to_dict()
            status = self._availability.get(server.id)
            entry["availability"] = status.to_dict() if status else None
            entry["available"] = (
                server.enabled
                and not server.is_occupied
                and (
                    not self.probe_enabled
                    or (status is not None and status.online and status.status == ServerStatus.IDLE)
                )
            )
            report.append(entry)
        return report

    async def claim(self, server_id: str, match_slug: str) -> bool:
        claimed = await self.repository.claim_server(server_id, match_slug)
        if not claimed:
            logger.info("server_claim_rejected", server_id=server_id, match_slug=match_slug)
        return claimed

    async def release(self, server_id: str, match_slug: Optional[str] = None) -> bool:
        released = await self.repository.release_server(server_id, match_slug)
        if released:
            logger.debug("server_released", server_id=server_id, match_slug=match_slug)
        return released
