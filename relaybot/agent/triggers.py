"""Group-chat trigger gate.

In busy groups the bot only answers messages that look addressed to it.
Each message gets a score; it is answered when the score reaches the
threshold.
"""

from relaybot.bus.events import InboundEvent

MENTION_SCORE = 100
FOLLOWUP_SCORE = 30


class TriggerGate:
    """Scores group messages against keyword weights and mentions."""

    def __init__(
        self,
        keywords: dict[str, int] | None = None,
        threshold: int = 50,
        followup_turns: int = 3,
        enabled: bool = True,
    ):
        self.keywords = {k.lower(): int(v) for k, v in (keywords or {}).items() if k}
        self.threshold = threshold
        self.followup_turns = followup_turns
        self.enabled = enabled

    def score(self, text: str, mentions_self: bool = False, in_followup: bool = False) -> int:
        total = MENTION_SCORE if mentions_self else 0
        lowered = (text or "").lower()
        for keyword, weight in self.keywords.items():
            if keyword in lowered:
                total += weight
        if in_followup:
            total += FOLLOWUP_SCORE
        return total

    def should_respond(self, event: InboundEvent, in_followup: bool = False) -> bool:
        """Private scopes always pass; group messages must reach the threshold."""
        if event.scope.is_private or not self.enabled:
            return True
        return self.score(event.raw_text, event.mentions_self, in_followup) >= self.threshold
