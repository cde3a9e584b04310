"""
Trigger matching for incoming repository events.

The matcher is a pure predicate over an event and the configured rule set:
no I/O, no state, safe to share across concurrent dispatches.
"""

import logging

from ci_common.models import Event, EventKind, TriggerRuleSet

logger = logging.getLogger(__name__)


class TriggerMatcher:
    """Decides whether an event should spawn a task."""

    def __init__(self, rules: TriggerRuleSet):
        self.rules = rules

    def matches(self, event: Event) -> bool:
        """
        Check an event against the rule set.

        Unknown event kinds never match and never raise, so event types the
        source adds later are ignored rather than breaking dispatch.

        Args:
            event: Incoming repository event

        Returns:
            True if a task should be dispatched for this event
        """
        kind = EventKind.parse(event.kind)
        if kind is None:
            logger.debug(f"Ignoring unrecognized event kind {event.kind!r}")
            return False

        if kind not in self.rules.event_kinds:
            return False

        if (
            kind.is_pull_request
            and self.rules.allow_pull_requests == "collaborators"
            and not event.sender_is_member
        ):
            logger.debug(
                f"Ignoring {kind.value} event from non-member for {event.repo_url}"
            )
            return False

        return True
