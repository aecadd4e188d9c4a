"""Built-in chat commands.

Commands start with ``#`` and are answered directly, without a completion
request. They are not recorded in the conversation context.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable

from loguru import logger

from relaybot.bus.events import Scope
from relaybot.permissions.engine import Tier
from relaybot.session.manager import ConversationStore

COMMAND_PREFIX = "#"

CommandHandler = Callable[[Scope, str], Awaitable[str | None]]


@dataclass(frozen=True)
class Command:
    name: str
    min_tier: Tier
    handler: CommandHandler


def parse_command(text: str) -> tuple[str, str] | None:
    """Split ``#name args`` into ``("name", "args")``. None if not a command."""
    raw = (text or "").strip()
    if not raw.startswith(COMMAND_PREFIX) or len(raw) == 1:
        return None
    head, _, args = raw[1:].partition(" ")
    if not head or head[0].isspace():
        return None
    return head.lower(), args.strip()


class CommandRegistry:
    """Looks up and runs ``#`` commands."""

    def __init__(self, store: ConversationStore):
        self.store = store
        self._commands: dict[str, Command] = {}
        self.register(Command("echo", Tier.DEFAULT, self._echo))
        self.register(Command("reset", Tier.TRUSTED, self._reset))

    def register(self, command: Command) -> None:
        self._commands[command.name] = command

    def match(self, text: str) -> tuple[Command, str] | None:
        """Return the command and its argument string, if ``text`` names one."""
        parsed = parse_command(text)
        if parsed is None:
            return None
        name, args = parsed
        command = self._commands.get(name)
        if command is None:
            return None
        return command, args

    async def _echo(self, scope: Scope, args: str) -> str | None:
        return args or None

    async def _reset(self, scope: Scope, args: str) -> str | None:
        await self.store.clear(scope)
        self.store.flush(scope)
        logger.info(f"Context cleared for {scope.key}")
        return "Context cleared."
