"""
Command Dispatcher.

Sends command sequences to one game server over Source RCON.

Every call runs under an explicit deadline: each command is bounded by
min(command_timeout, time left), so a call can never outlive
``call_timeout`` no matter how many commands it carries. Commands are
fire-and-confirm; a failure reports how many commands (in order) were
confirmed before it.
"""

import asyncio
import re
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from rcon.exceptions import EmptyResponse, WrongPassword
from rcon.source import rcon

from orchestrator.logging_config import get_logger
from orchestrator.utils.errors import ErrorCode
from . import matchzy
from .models import CommandResult, Server, ServerAvailability, ServerStatus

logger = get_logger(__name__)

# Development placeholder servers: commands succeed without a connection
SIMULATED_HOST = "0.0.0.0"

CONVAR_PATTERN = re.compile(r'"([^"]+)"\s*=\s*"([^"]*)"')

# transport(command, host=, port=, passwd=, encoding=, timeout=) -> response text
RconTransport = Callable[..., Awaitable[str]]


class CommandDispatcher:
    """Time-bounded RCON command sequences with per-server in-flight tracking."""

    def __init__(
        self,
        command_timeout: float = 5.0,
        call_timeout: float = 10.0,
        encoding: str = "utf-8",
        transport: Optional[RconTransport] = None,
    ):
        self.command_timeout = command_timeout
        self.call_timeout = call_timeout
        self.encoding = encoding
        self._transport = transport or rcon

        self._in_flight: Dict[str, int] = {}
        self._idle: Dict[str, asyncio.Event] = {}

    # =========================================================================
    # Core send
    # =========================================================================

    async def send(
        self,
        server: Server,
        commands: Sequence[str],
        deadline: Optional[float] = None,
    ) -> CommandResult:
        """
        Send ``commands`` in order.

        Args:
            server: Target server
            commands: Command strings
            deadline: Absolute event-loop time; defaults to now + call_timeout
        """
        total = len(commands)
        if not server.enabled:
            return CommandResult(
                success=False,
                total=total,
                error=f"Server {server.id} is disabled",
                error_code=ErrorCode.SERVER_DISABLED,
            )

        if server.host == SIMULATED_HOST:
            logger.debug("rcon_simulated", server_id=server.id, commands=total)
            return CommandResult(success=True, responses=tuple("" for _ in commands), total=total)

        loop = asyncio.get_running_loop()
        if deadline is None:
            deadline = loop.time() + self.call_timeout

        self._enter(server.id)
        responses: List[str] = []
        try:
            for command in commands:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return self._failure(
                        server, responses, total, ErrorCode.COMMAND_TIMEOUT,
                        "Deadline exceeded before command could be sent",
                    )

                bound = min(self.command_timeout, remaining)
                try:
                    response = await asyncio.wait_for(
                        self._transport(
                            command,
                            host=server.host,
                            port=server.port,
                            passwd=server.password,
                            encoding=self.encoding,
                            timeout=bound,
                        ),
                        timeout=bound,
                    )
                except asyncio.TimeoutError:
                    return self._failure(
                        server, responses, total, ErrorCode.COMMAND_TIMEOUT,
                        f"Command timed out after {bound:.1f}s",
                    )
                except WrongPassword:
                    return self._failure(
                        server, responses, total, ErrorCode.AUTH_FAILED,
                        "RCON authentication failed",
                    )
                except (OSError, EmptyResponse) as e:
                    return self._failure(
                        server, responses, total, ErrorCode.COMMAND_FAILED,
                        f"{type(e).__name__}: {e}",
                    )

                responses.append(response or "")
        finally:
            self._exit(server.id)

        return CommandResult(success=True, responses=tuple(responses), total=total)

    def _failure(
        self,
        server: Server,
        responses: List[str],
        total: int,
        code: ErrorCode,
        message: str,
    ) -> CommandResult:
        logger.warning(
            "rcon_command_failed",
            server_id=server.id,
            address=server.address,
            error_code=code.value,
            error=message,
            completed=len(responses),
            total=total,
        )
        return CommandResult(
            success=False,
            responses=tuple(responses),
            total=total,
            error=message,
            error_code=code,
        )

    # =========================================================================
    # In-flight tracking
    # =========================================================================

    def _enter(self, server_id: str) -> None:
        self._in_flight[server_id] = self._in_flight.get(server_id, 0) + 1
        event = self._idle.setdefault(server_id, asyncio.Event())
        event.clear()

    def _exit(self, server_id: str) -> None:
        count = self._in_flight.get(server_id, 1) - 1
        if count <= 0:
            self._in_flight.pop(server_id, None)
            event = self._idle.get(server_id)
            if event is not None:
                event.set()
        else:
            self._in_flight[server_id] = count

    def in_flight(self, server_id: str) -> int:
        return self._in_flight.get(server_id, 0)

    async def drain(self, server_ids: Iterable[str], timeout: float) -> bool:
        """Wait (bounded) until no command is in flight for the given servers."""
        waits = [
            self._idle[sid].wait()
            for sid in set(server_ids)
            if self._in_flight.get(sid) and sid in self._idle
        ]
        if not waits:
            return True
        try:
            await asyncio.wait_for(asyncio.gather(*waits), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning("rcon_drain_timeout", servers=sorted(set(server_ids)), timeout=timeout)
            return False

    # =========================================================================
    # Helpers
    # =========================================================================

    async def load_match(
        self,
        server: Server,
        base_url: str,
        token: str,
        match_slug: str,
        server_config: Optional[List[str]] = None,
    ) -> CommandResult:
        """Configure webhooks/uploads, then point the server at the match config."""
        commands = (
            matchzy.webhook_commands(base_url, token, match_slug)
            + matchzy.load_auth_commands(token)
            + matchzy.report_upload_commands(base_url, token, server.id)
            + matchzy.demo_upload_commands(base_url, match_slug, token)
            + (server_config or [])
            + [matchzy.load_match_command(base_url, match_slug)]
        )
        return await self.send(server, commands)

    async def end_match(self, server: Server) -> CommandResult:
        """Abort the running match and stop its webhook so late events stay away."""
        return await self.send(
            server, [matchzy.end_match_command()] + matchzy.disable_webhook_commands()
        )

    async def pause(self, server: Server) -> CommandResult:
        return await self.send(server, ["css_pause"])

    async def unpause(self, server: Server) -> CommandResult:
        return await self.send(server, ["css_unpause"])

    async def say(self, server: Server, message: str) -> CommandResult:
        return await self.send(server, [matchzy.say_command(message)])

    async def changelevel(self, server: Server, map_name: str) -> CommandResult:
        return await self.send(server, [matchzy.changelevel_command(map_name)])

    async def probe(self, server: Server) -> ServerAvailability:
        """Read the MatchZy tournament convars to learn what the server is doing."""
        if server.host == SIMULATED_HOST and server.enabled:
            return ServerAvailability(server_id=server.id, online=True, status=ServerStatus.IDLE)

        result = await self.send(server, list(matchzy.STATUS_CONVARS))
        if not result.success:
            return ServerAvailability(
                server_id=server.id,
                online=False,
                status=ServerStatus.OFFLINE,
                error=result.error,
            )

        values = parse_convars("\n".join(result.responses))
        raw_status = values.get("matchzy_tournament_status", "")
        try:
            status = ServerStatus(raw_status)
        except ValueError:
            return ServerAvailability(
                server_id=server.id,
                online=True,
                status=ServerStatus.ERROR,
                error=f"Unrecognised MatchZy status: {raw_status or 'missing'}",
            )

        return ServerAvailability(
            server_id=server.id,
            online=True,
            status=status,
            match_slug=values.get("matchzy_tournament_match") or None,
        )


def parse_convars(text: str) -> Dict[str, str]:
    """Parse ``"name" = "value"`` pairs from console output."""
    return {name: value for name, value in CONVAR_PATTERN.findall(text)}
