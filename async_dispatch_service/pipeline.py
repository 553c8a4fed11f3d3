"""Normalized CRM event pipeline: dedup ledger plus event-to-job mapping."""

from __future__ import annotations

import hashlib
import random
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol

from .crm.base import NormalizedEvent, get_nested_value, matches_filters, parse_timestamp
from .logger import get_logger
from .persistence import EVENT_DUPLICATE, EVENT_IN_PROGRESS, Persistence
from .prometheus import DispatchMetrics

ACCEPTED = "accepted"
DUPLICATE = "duplicate"
TEST = "test"

_VARIABLE_RE = re.compile(r"\{\{?\s*([A-Za-z_][A-Za-z0-9_.]*)\s*\}?\}")
_SPINTAX_RE = re.compile(r"\{([^{}]*?\|[^{}]*?)\}")


class EventMapper(Protocol):
    async def map_event(self, integration: Mapping[str, Any], event: NormalizedEvent) -> List[Dict[str, Any]]:
        """Return the queue jobs that ``event`` should create."""
        ...


def resolve_spintax(text: str, rng: random.Random) -> str:
    """Resolve ``{a|b|c}`` alternatives, innermost first."""
    previous = None
    while previous != text:
        previous = text
        text = _SPINTAX_RE.sub(lambda match: rng.choice(match.group(1).split("|")), text)
    return text


def render_template(template: str, event: NormalizedEvent) -> str:
    """Substitute ``{first_name}``-style variables; unknown names render empty.

    Spintax is resolved with a generator seeded by the event id so that
    re-processing one event always yields the same text.
    """
    contact = event.contact
    values: Dict[str, Any] = {
        "first_name": contact.first_name,
        "last_name": contact.last_name,
        "full_name": contact.full_name,
        "name": contact.full_name,
        "email": contact.email,
        "phone": contact.phone,
        "entity_id": event.entity_id,
        "entity_type": event.entity_type,
        "change_kind": event.change_kind,
        "provider": event.provider,
    }

    def substitute(match: "re.Match[str]") -> str:
        key = match.group(1)
        if key in values:
            value = values[key]
        else:
            value = get_nested_value(event.payload, key)
        return "" if value is None else str(value)

    rendered = _VARIABLE_RE.sub(substitute, template)
    rng = random.Random(event.provider_event_id)
    return resolve_spintax(rendered, rng).strip()


def rule_problem(rule: Any) -> Optional[str]:
    """Return why an action rule cannot produce a job, or ``None`` when it is usable."""
    if not isinstance(rule, Mapping):
        return "rule must be an object"
    if not rule.get("account_id"):
        return "rule needs an account_id"
    media = rule.get("media")
    if media is not None and not (isinstance(media, Mapping) and media.get("url")):
        return "rule media needs a url"
    if not rule.get("text") and not media:
        return "rule needs text or media"
    return None


def validate_action_settings(settings: Optional[Mapping[str, Any]]) -> List[str]:
    """Check the job-producing part of an integration's settings.

    Returns human readable problems; an empty list means the settings are usable.
    """
    settings = settings or {}
    if not isinstance(settings, Mapping):
        return ["settings must be an object"]
    problems: List[str] = []
    rules = settings.get("actions")
    if rules is not None:
        if not isinstance(rules, list):
            return ["actions must be a list"]
        for index, rule in enumerate(rules):
            problem = rule_problem(rule)
            if problem:
                problems.append(f"actions[{index}]: {problem}")
    elif (settings.get("message_template") or settings.get("media")) and not settings.get("account_id"):
        problems.append("message_template needs an account_id")
    if settings.get("test_mode_until"):
        try:
            parse_timestamp(settings["test_mode_until"])
        except ValueError:
            problems.append(f"invalid test_mode_until {settings['test_mode_until']!r}")
    return problems


def is_test_mode(integration: Mapping[str, Any], now: datetime) -> bool:
    """Return whether ``settings.test_mode_until`` lies in the future."""
    until = (integration.get("settings") or {}).get("test_mode_until")
    if not until:
        return False
    return parse_timestamp(until) > now


class EventInProgressError(RuntimeError):
    """Another worker holds a fresh claim on the event; retry later."""


class RuleActionMapper:
    """Map events to queue jobs using the ``settings.actions`` rules of an integration.

    A rule looks like::

        {"change_kinds": ["created"], "entity_types": ["deal"],
         "filters": {"stage_id": "3"}, "account_id": "acc-1", "agent_id": "agent-1",
         "text": "Hi {first_name}!", "priority": 1, "delay_seconds": 0}

    Without ``actions`` a single rule is built from the top-level settings
    (``account_id``, ``agent_id``, ``message_template``). Rules that cannot
    produce a job are skipped with a warning.
    """

    def __init__(self, logger=None):
        self.logger = logger or get_logger("RuleActionMapper")

    @staticmethod
    def rules_for(integration: Mapping[str, Any]) -> List[Any]:
        settings = integration.get("settings") or {}
        rules = settings.get("actions")
        if isinstance(rules, list):
            return [rule for rule in rules if not isinstance(rule, dict) or rule.get("enabled", True)]
        if settings.get("account_id") and (settings.get("message_template") or settings.get("media")):
            return [
                {
                    "account_id": settings["account_id"],
                    "agent_id": settings.get("agent_id"),
                    "text": settings.get("message_template"),
                    "media": settings.get("media"),
                }
            ]
        return []

    @staticmethod
    def _rule_matches(rule: Mapping[str, Any], event: NormalizedEvent) -> bool:
        kinds = rule.get("change_kinds")
        if kinds and event.change_kind not in kinds:
            return False
        entity_types = rule.get("entity_types")
        if entity_types and event.entity_type not in entity_types:
            return False
        return matches_filters(event.payload, rule.get("filters"))

    async def map_event(self, integration: Mapping[str, Any], event: NormalizedEvent) -> List[Dict[str, Any]]:
        if not event.contact.phone:
            self.logger.info(
                "Event %s of integration %s has no phone number; no job created",
                event.provider_event_id,
                integration["id"],
            )
            return []
        now_ts = int(datetime.now(timezone.utc).timestamp())
        jobs: List[Dict[str, Any]] = []
        for index, rule in enumerate(self.rules_for(integration)):
            problem = rule_problem(rule)
            if problem:
                self.logger.warning("Integration %s: skipping action %d, %s", integration["id"], index, problem)
                continue
            if not self._rule_matches(rule, event):
                continue
            payload: Dict[str, Any] = {}
            if rule.get("text"):
                payload["text"] = render_template(str(rule["text"]), event)
            if rule.get("media"):
                media = dict(rule["media"])
                if media.get("caption"):
                    media["caption"] = render_template(str(media["caption"]), event)
                payload["media"] = media
            if not payload:
                continue
            digest = hashlib.sha1(f"{integration['id']}|{event.provider_event_id}|{index}".encode()).hexdigest()
            jobs.append(
                {
                    "id": f"crm-{digest[:24]}",
                    "tenant_id": integration["tenant_id"],
                    "agent_id": rule.get("agent_id"),
                    "account_id": rule["account_id"],
                    "conversation_id": rule.get("conversation_id"),
                    "recipient": event.contact.phone,
                    "payload": payload,
                    "priority": int(rule.get("priority", 2)),
                    "source": "crm",
                    "not_before_ts": now_ts + int(rule.get("delay_seconds") or 0),
                }
            )
        return jobs


class EventPipeline:
    """Process each ``(provider, provider_event_id)`` at most once.

    A ledger claim that was never completed (the worker died half way) is
    taken over once it is older than ``claim_ttl_seconds``.
    """

    def __init__(
        self,
        persistence: Persistence,
        mapper: Optional[EventMapper] = None,
        *,
        metrics: DispatchMetrics | None = None,
        logger=None,
        claim_ttl_seconds: int = 600,
    ):
        self.persistence = persistence
        self.mapper = mapper or RuleActionMapper()
        self.metrics = metrics or DispatchMetrics()
        self.logger = logger or get_logger("EventPipeline")
        self.claim_ttl_seconds = max(1, int(claim_ttl_seconds))

    def _in_test_mode(self, integration: Mapping[str, Any], now: datetime) -> bool:
        try:
            return is_test_mode(integration, now)
        except ValueError as exc:
            self.logger.warning("Integration %s has an unusable test_mode_until: %s", integration.get("id"), exc)
            return False

    async def emit(self, integration: Mapping[str, Any], event: NormalizedEvent) -> str:
        """Claim the event in the ledger and run the mapper.

        Returns ``"duplicate"`` without side effects when the event was already
        handled and raises :class:`EventInProgressError` while another worker
        is still handling it. While the integration is in test mode the event
        is recorded for display and ``"test"`` is returned; no job is created.
        When the mapper or the enqueue fails the claim is released and the
        exception propagates to the caller.
        """
        now = datetime.now(timezone.utc)
        now_ts = int(now.timestamp())
        record = {
            "provider": event.provider,
            "provider_event_id": event.provider_event_id,
            "integration_id": event.integration_id,
            "entity_type": event.entity_type,
            "entity_id": event.entity_id,
            "change_kind": event.change_kind,
        }
        claim = await self.persistence.claim_event(record, now_ts, stale_after=self.claim_ttl_seconds)
        if claim == EVENT_DUPLICATE:
            self.logger.debug("Duplicate %s event %s ignored", event.provider, event.provider_event_id)
            self.metrics.inc_event(event.provider, DUPLICATE)
            return DUPLICATE
        if claim == EVENT_IN_PROGRESS:
            raise EventInProgressError(f"{event.provider} event {event.provider_event_id} is still being processed")

        if self._in_test_mode(integration, now):
            await self.persistence.complete_event(
                event.provider, event.provider_event_id, now_ts, 0, is_test=True, event_data=event.as_dict()
            )
            self.metrics.inc_event(event.provider, TEST)
            self.logger.info("Test event %s captured for integration %s", event.provider_event_id, integration["id"])
            return TEST

        try:
            jobs = await self.mapper.map_event(integration, event)
            if jobs:
                await self.persistence.insert_jobs(jobs, now_ts)
        except BaseException:
            await self.persistence.release_event(event.provider, event.provider_event_id)
            raise
        await self.persistence.complete_event(event.provider, event.provider_event_id, now_ts, len(jobs))
        self.metrics.inc_event(event.provider, ACCEPTED)
        if jobs:
            self.logger.info(
                "%s event %s created %d job(s)", event.provider, event.provider_event_id, len(jobs)
            )
        return ACCEPTED
