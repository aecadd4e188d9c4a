"""Dispatcher: the per-scope message processing state machine."""

import asyncio
import random
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from loguru import logger

from relaybot.agent.commands import CommandRegistry
from relaybot.agent.context import PromptBuilder
from relaybot.agent.triggers import TriggerGate
from relaybot.bus.events import InboundEvent, Scope
from relaybot.channels.base import GatewayClient
from relaybot.channels.errors import GatewayError, GatewayTimeout, SendFailed, TemporaryGatewayError
from relaybot.config.schema import Config
from relaybot.logging.setup import CHAT
from relaybot.permissions.engine import PolicyHolder, Tier, evaluate
from relaybot.providers.base import (
    CompletionClient,
    CompletionError,
    CompletionRequest,
    CompletionTimeout,
    FatalCompletionError,
    RateLimited,
)
from relaybot.session.manager import ConversationStore
from relaybot.session.repository import Turn
from relaybot.utils.clock import Clock, backoff_delay
from relaybot.utils.helpers import truncate


class ScopeState(str, Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    REQUESTING = "requesting"
    REPLYING = "replying"
    RETRYING = "retrying"
    FAILED = "failed"


@dataclass(frozen=True)
class DispatchOutcome:
    """What happened to one inbound event."""

    scope_key: str
    sequence_no: int
    final_state: ScopeState
    reason: str
    states: tuple[ScopeState, ...] = ()
    attempts: int = 0  # Completion attempts
    send_attempts: int = 0
    delivery_id: str | None = None
    finished_at: datetime = field(default_factory=datetime.now)

    @property
    def failed(self) -> bool:
        return self.final_state is ScopeState.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope_key,
            "sequence_no": self.sequence_no,
            "final_state": self.final_state.value,
            "reason": self.reason,
            "states": [s.value for s in self.states],
            "attempts": self.attempts,
            "send_attempts": self.send_attempts,
            "delivery_id": self.delivery_id,
            "finished_at": self.finished_at.isoformat(),
        }


@dataclass
class ScopeRuntime:
    """Mutable per-scope dispatch state. Only the scope's worker touches it."""

    scope: Scope
    state: ScopeState = ScopeState.IDLE
    attempt: int = 0
    next_attempt_at: float | None = None
    last_sequence: int | None = None
    followup_remaining: int = 0
    halted: bool = False
    halted_reason: str | None = None
    queue: "asyncio.Queue[InboundEvent]" = field(default_factory=asyncio.Queue)
    worker: "asyncio.Task[None] | None" = None
    current: InboundEvent | None = None
    trail: list[ScopeState] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope.key,
            "state": self.state.value,
            "attempt": self.attempt,
            "next_attempt_at": self.next_attempt_at,
            "last_sequence": self.last_sequence,
            "followup_remaining": self.followup_remaining,
            "halted": self.halted,
            "halted_reason": self.halted_reason,
            "queued": self.queue.qsize(),
            "in_flight": self.current.sequence_no if self.current else None,
        }


class _DispatchFailed(Exception):
    """Internal: processing of the current event ended in FAILED."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class Dispatcher:
    """
    Pulls events from the gateway and answers them.

    Every scope gets its own FIFO queue and worker task, so one scope's
    events are handled strictly in order while different scopes run in
    parallel. A global semaphore caps how many events are processed at
    once; the rest wait in their queues.

    Per event: check permissions, answer built-in commands, apply the group
    trigger gate, then record the user turn, request a completion, record
    the reply and send it. Failures retry with backoff on the injected clock
    and end in FAILED when attempts run out. Nothing is posted to the chat
    on failure.
    """

    def __init__(
        self,
        gateway: GatewayClient,
        client: CompletionClient,
        store: ConversationStore,
        policy: PolicyHolder,
        prompt_builder: PromptBuilder | None = None,
        triggers: TriggerGate | None = None,
        commands: CommandRegistry | None = None,
        clock: Clock | None = None,
        max_concurrency: int = 4,
        max_attempts: int = 4,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        rate_limit_max_delay: float = 60.0,
        completion_timeout: float = 60.0,
        send_timeout: float = 15.0,
        seen_cache_size: int = 4096,
        outcome_history: int = 256,
        rand: Callable[[], float] = random.random,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.gateway = gateway
        self.client = client
        self.store = store
        self.policy = policy
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.triggers = triggers or TriggerGate(enabled=False)
        self.commands = commands or CommandRegistry(store)
        self.clock = clock or Clock()
        self.max_concurrency = max_concurrency
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.rate_limit_max_delay = rate_limit_max_delay
        self.completion_timeout = completion_timeout
        self.send_timeout = send_timeout
        self._rand = rand

        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._runtimes: dict[str, ScopeRuntime] = {}
        self._seen: OrderedDict[tuple[str, int], None] = OrderedDict()
        self._seen_limit = seen_cache_size
        self._outcomes: deque[DispatchOutcome] = deque(maxlen=outcome_history)
        self._running = False
        self._stopping = False
        self._pull_task: asyncio.Task[None] | None = None

    @classmethod
    def from_config(
        cls,
        config: Config,
        gateway: GatewayClient,
        client: CompletionClient,
        store: ConversationStore,
        policy: PolicyHolder,
        clock: Clock | None = None,
    ) -> "Dispatcher":
        agent = config.agent
        return cls(
            gateway=gateway,
            client=client,
            store=store,
            policy=policy,
            prompt_builder=PromptBuilder(agent.system_prompt or None, max_age=agent.context_ttl),
            triggers=TriggerGate(
                keywords=agent.trigger_keywords,
                threshold=agent.trigger_threshold,
                followup_turns=agent.followup_turns,
                enabled=agent.require_trigger_in_groups,
            ),
            commands=CommandRegistry(store),
            clock=clock,
            max_concurrency=agent.max_concurrency,
            max_attempts=agent.max_attempts,
            retry_base_delay=agent.retry_base_delay,
            retry_max_delay=agent.retry_max_delay,
            rate_limit_max_delay=agent.rate_limit_max_delay,
            completion_timeout=config.provider.timeout,
            send_timeout=config.network.send_timeout,
        )

    # ── Public API ──────────────────────────────────────────────────

    async def run(self) -> None:
        """Pull events from the gateway until ``stop()`` is called."""
        self._running = True
        self._pull_task = asyncio.current_task()
        logger.info(f"Dispatcher started (max_concurrency={self.max_concurrency})")
        try:
            async for event in self.gateway.events():
                if not self._running:
                    break
                self.submit(event)
        except asyncio.CancelledError:
            if self._running:
                raise
        finally:
            self._pull_task = None

    def submit(self, event: InboundEvent) -> bool:
        """
        Queue an event on its scope's worker.

        Returns False when the event was dropped as a duplicate or because
        the dispatcher is shutting down.
        """
        if self._stopping:
            logger.warning(f"Dropping {event.scope.key}#{event.sequence_no}: shutting down")
            return False

        seen_key = (event.scope.key, event.sequence_no)
        if seen_key in self._seen:
            logger.debug(f"Duplicate event {event.scope.key}#{event.sequence_no} suppressed")
            self._record(DispatchOutcome(event.scope.key, event.sequence_no, ScopeState.IDLE, "duplicate"))
            return False
        self._seen[seen_key] = None
        while len(self._seen) > self._seen_limit:
            self._seen.popitem(last=False)

        runtime = self._get_runtime(event.scope)
        runtime.queue.put_nowait(event)
        self._ensure_worker(runtime)
        return True

    async def stop(self, drain_timeout: float = 30.0) -> None:
        """
        Stop pulling events and drain in-flight work.

        Events being processed get ``drain_timeout`` seconds to finish; the
        rest are cancelled and recorded as FAILED. Queued events that never
        started are logged. The gateway's send path and the completion
        client are closed only after the drain, then pending context writes
        are awaited.
        """
        self._running = False
        self._stopping = True
        if self._pull_task is not None and self._pull_task is not asyncio.current_task():
            self._pull_task.cancel()
        await self.gateway.stop_events()

        workers = [rt.worker for rt in self._runtimes.values() if rt.worker and not rt.worker.done()]
        if workers:
            logger.info(f"Draining {len(workers)} active scope worker(s) (timeout {drain_timeout:.0f}s)")
            _, pending = await asyncio.wait(workers, timeout=drain_timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        for runtime in self._runtimes.values():
            left = runtime.queue.qsize()
            if left:
                logger.warning(f"{left} queued event(s) for {runtime.scope.key} were never processed")

        await self.gateway.close()
        await self.client.close()
        await self.store.drain()
        logger.info("Dispatcher stopped")

    async def wait_idle(self) -> None:
        """Wait until every scope worker has finished its queue."""
        while True:
            workers = [rt.worker for rt in self._runtimes.values() if rt.worker and not rt.worker.done()]
            if not workers:
                return
            await asyncio.gather(*workers, return_exceptions=True)

    def resume(self, scope: Scope) -> bool:
        """Lift a halt placed on a scope after a fatal completion error."""
        runtime = self._runtimes.get(scope.key)
        if runtime is None or not runtime.halted:
            return False
        runtime.halted = False
        runtime.halted_reason = None
        if runtime.state is ScopeState.FAILED:
            runtime.state = ScopeState.IDLE
        logger.info(f"Scope {scope.key} resumed")
        return True

    def scope_status(self) -> list[dict[str, Any]]:
        return [rt.to_dict() for _, rt in sorted(self._runtimes.items())]

    def get_runtime(self, scope: Scope) -> ScopeRuntime | None:
        return self._runtimes.get(scope.key)

    def recent_outcomes(self, limit: int | None = None) -> list[DispatchOutcome]:
        """Most recent outcomes, oldest first."""
        items = list(self._outcomes)
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return items

    # ── Workers ─────────────────────────────────────────────────────

    def _get_runtime(self, scope: Scope) -> ScopeRuntime:
        runtime = self._runtimes.get(scope.key)
        if runtime is None:
            runtime = ScopeRuntime(scope=scope)
            self._runtimes[scope.key] = runtime
        return runtime

    def _ensure_worker(self, runtime: ScopeRuntime) -> None:
        if runtime.worker is None or runtime.worker.done():
            runtime.worker = asyncio.create_task(self._scope_worker(runtime))

    async def _scope_worker(self, runtime: ScopeRuntime) -> None:
        """Process one scope's queue serially."""
        try:
            while not self._stopping and not runtime.queue.empty():
                async with self._semaphore:
                    if self._stopping:
                        break
                    event = runtime.queue.get_nowait()
                    await self._process(runtime, event)
        finally:
            if runtime.worker is asyncio.current_task():
                runtime.worker = None

    # ── State machine ───────────────────────────────────────────────

    def _transition(self, runtime: ScopeRuntime, state: ScopeState) -> None:
        runtime.state = state
        runtime.trail.append(state)

    def _record(self, outcome: DispatchOutcome) -> DispatchOutcome:
        self._outcomes.append(outcome)
        if outcome.failed:
            logger.bind(scope=outcome.scope_key).error(
                f"Dispatch failed for {outcome.scope_key}#{outcome.sequence_no}: {outcome.reason} "
                f"(attempts={outcome.attempts}, send_attempts={outcome.send_attempts})"
            )
        return outcome

    async def _process(self, runtime: ScopeRuntime, event: InboundEvent) -> DispatchOutcome:
        runtime.current = event
        runtime.attempt = 0
        runtime.next_attempt_at = None
        runtime.trail = []
        counters = {"attempts": 0, "send_attempts": 0}
        delivery_id: str | None = None

        def finish(state: ScopeState, reason: str) -> DispatchOutcome:
            self._transition(runtime, state)
            if runtime.halted:
                runtime.state = ScopeState.FAILED
            return self._record(
                DispatchOutcome(
                    scope_key=event.scope.key,
                    sequence_no=event.sequence_no,
                    final_state=state,
                    reason=reason,
                    states=tuple(runtime.trail),
                    attempts=counters["attempts"],
                    send_attempts=counters["send_attempts"],
                    delivery_id=delivery_id,
                )
            )

        try:
            reason, delivery_id = await self._handle(runtime, event, counters)
            return finish(ScopeState.IDLE, reason)
        except _DispatchFailed as e:
            return finish(ScopeState.FAILED, e.reason)
        except asyncio.CancelledError:
            finish(ScopeState.FAILED, "shutdown")
            raise
        except Exception as e:
            logger.exception(f"Unexpected error handling {event.scope.key}#{event.sequence_no}")
            return finish(ScopeState.FAILED, f"internal error: {e}")
        finally:
            runtime.current = None
            runtime.next_attempt_at = None

    async def _handle(
        self,
        runtime: ScopeRuntime,
        event: InboundEvent,
        counters: dict[str, int],
    ) -> tuple[str, str | None]:
        """Run one event through the state machine. Returns (reason, delivery id)."""
        scope = event.scope
        if runtime.last_sequence is not None and event.sequence_no <= runtime.last_sequence:
            logger.debug(f"Stale event {scope.key}#{event.sequence_no} (last {runtime.last_sequence})")
            return "stale", None
        runtime.last_sequence = event.sequence_no

        self._transition(runtime, ScopeState.EVALUATING)

        if event.from_self:
            if event.raw_text:
                await self.store.append(scope, Turn("assistant", event.raw_text, event.received_at))
                self.store.flush(scope)
            return "self message", None

        tier = evaluate(event.principal, scope, self.policy.current)
        if tier < Tier.DEFAULT:
            logger.debug(f"Permission denied for {event.principal.sender_id} in {scope.key} ({tier.name})")
            return "permission denied", None

        logger.log(
            CHAT,
            f"[{scope.key}] {event.principal.display_name or event.principal.sender_id}: "
            f"{truncate(event.raw_text, 120)}",
        )

        matched = self.commands.match(event.raw_text)
        if matched is not None:
            command, args = matched
            if tier < command.min_tier:
                logger.debug(f"#{command.name} needs {command.min_tier.name}, {event.principal.sender_id} is {tier.name}")
                return f"command #{command.name} not permitted", None
            reply = await command.handler(scope, args)
            if not reply:
                return f"command #{command.name}", None
            self._transition(runtime, ScopeState.REPLYING)
            delivery_id = await self._deliver(runtime, event, reply, counters)
            return f"command #{command.name}", delivery_id

        if not event.raw_text:
            return "empty message", None

        user_turn = Turn(
            "user",
            event.raw_text,
            event.received_at,
            sender_id=event.principal.sender_id,
            sender_name=event.principal.display_name,
        )

        if runtime.halted:
            await self.store.append(scope, user_turn)
            self.store.flush(scope)
            return "scope halted", None

        in_followup = runtime.followup_remaining > 0
        if not scope.is_private and in_followup:
            runtime.followup_remaining -= 1
        if not self.triggers.should_respond(event, in_followup):
            await self.store.append(scope, user_turn)
            self.store.flush(scope)
            return "not triggered", None

        self._transition(runtime, ScopeState.REQUESTING)
        context = await self.store.append(scope, user_turn)
        self.store.flush(scope)
        request = self.prompt_builder.build(context)
        reply = await self._request(runtime, request, counters)

        self._transition(runtime, ScopeState.REPLYING)
        await self.store.append(scope, Turn("assistant", reply, datetime.now()))
        self.store.flush(scope)
        delivery_id = await self._deliver(runtime, event, reply, counters)

        if not scope.is_private:
            runtime.followup_remaining = self.triggers.followup_turns
        logger.info(f"Replied in {scope.key} ({counters['attempts']} attempt(s)): {truncate(reply)}")
        return "replied", delivery_id

    async def _wait_retry(self, runtime: ScopeRuntime, delay: float) -> None:
        self._transition(runtime, ScopeState.RETRYING)
        runtime.next_attempt_at = self.clock.now() + delay
        await self.clock.sleep(delay)
        runtime.next_attempt_at = None

    def _retry_delay(self, attempt: int, error: Exception) -> float:
        if isinstance(error, RateLimited) and error.retry_after is not None:
            return min(error.retry_after, self.rate_limit_max_delay)
        return backoff_delay(attempt, self.retry_base_delay, self.retry_max_delay, rand=self._rand)

    async def _request(
        self,
        runtime: ScopeRuntime,
        request: CompletionRequest,
        counters: dict[str, int],
    ) -> str:
        """Call the completion client, retrying the same request on transient errors."""
        scope = runtime.scope
        attempt = 0
        while True:
            attempt += 1
            counters["attempts"] = attempt
            runtime.attempt = attempt
            if attempt > 1:
                self._transition(runtime, ScopeState.REQUESTING)
            try:
                return await asyncio.wait_for(self.client.complete(request), timeout=self.completion_timeout)
            except asyncio.TimeoutError:
                error: CompletionError = CompletionTimeout(
                    f"no reply within {self.completion_timeout:.0f}s"
                )
            except FatalCompletionError as e:
                runtime.halted = True
                runtime.halted_reason = str(e)
                logger.bind(scope=scope.key).error(
                    f"Fatal completion error in {scope.key}, scope halted until resumed: {e}"
                )
                raise _DispatchFailed("completion failed: fatal") from e
            except CompletionError as e:
                error = e

            if attempt >= self.max_attempts:
                raise _DispatchFailed(f"completion retries exhausted ({error.kind})")
            delay = self._retry_delay(attempt, error)
            logger.warning(
                f"Completion for {scope.key} failed ({error.kind}: {error}), "
                f"retry {attempt}/{self.max_attempts - 1} in {delay:.1f}s"
            )
            await self._wait_retry(runtime, delay)

    async def _deliver(
        self,
        runtime: ScopeRuntime,
        event: InboundEvent,
        text: str,
        counters: dict[str, int],
    ) -> str:
        """Send a reply, retrying temporary gateway errors."""
        scope = runtime.scope
        attempt = 0
        while True:
            attempt += 1
            counters["send_attempts"] = attempt
            runtime.attempt = attempt
            if attempt > 1:
                self._transition(runtime, ScopeState.REPLYING)
            try:
                return await asyncio.wait_for(
                    self.gateway.send(scope, text),
                    timeout=self.send_timeout,
                )
            except asyncio.TimeoutError:
                error: GatewayError = GatewayTimeout(f"send took longer than {self.send_timeout:.0f}s")
            except TemporaryGatewayError as e:
                error = e
            except SendFailed as e:
                logger.warning(f"Send to {scope.key} rejected: {e}")
                raise _DispatchFailed("send failed") from e
            except GatewayError as e:
                logger.warning(f"Send to {scope.key} failed permanently: {e}")
                raise _DispatchFailed("send failed") from e

            if attempt >= self.max_attempts:
                raise _DispatchFailed(f"send retries exhausted ({type(error).__name__})")
            delay = backoff_delay(attempt, self.retry_base_delay, self.retry_max_delay, rand=self._rand)
            logger.warning(f"Send to {scope.key} failed ({error}), retry in {delay:.1f}s")
            await self._wait_retry(runtime, delay)
