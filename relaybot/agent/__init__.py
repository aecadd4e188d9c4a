"""Agent core: dispatch state machine, prompts, triggers and commands."""

from relaybot.agent.commands import CommandRegistry
from relaybot.agent.context import DEFAULT_SYSTEM_PROMPT, PromptBuilder
from relaybot.agent.dispatcher import DispatchOutcome, Dispatcher, ScopeRuntime, ScopeState
from relaybot.agent.triggers import TriggerGate

__all__ = [
    "CommandRegistry",
    "DEFAULT_SYSTEM_PROMPT",
    "DispatchOutcome",
    "Dispatcher",
    "PromptBuilder",
    "ScopeRuntime",
    "ScopeState",
    "TriggerGate",
]
