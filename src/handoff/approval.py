"""Human input channels for the AwaitingHuman gate state.

Provides a CLI prompt, a webhook channel for external approval systems, and a
scripted channel for tests and CI.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import click
import httpx

from .config import ApprovalConfig
from .errors import ValidationError
from .types import ConfidenceLevel

logger = logging.getLogger(__name__)


class HumanChoice(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    RESEARCH = "research"
    CANCEL = "cancel"

    @classmethod
    def parse(cls, token: Any) -> HumanChoice:
        """Map a raw token onto the fixed choice set. Raises ValidationError."""
        if isinstance(token, HumanChoice):
            return token
        if isinstance(token, str):
            try:
                return cls(token.strip().lower())
            except ValueError:
                pass
        allowed = ", ".join(c.value for c in cls)
        raise ValidationError(f"Invalid choice; expected one of: {allowed}")


ALL_CHOICES: tuple[HumanChoice, ...] = tuple(HumanChoice)


@dataclass(frozen=True)
class HumanPrompt:
    """What the gate needs a human to decide."""

    task_id: str
    confidence_level: ConfidenceLevel
    recommendation: str
    rationale: str
    uncertainty_factors: tuple[str, ...] = ()
    choices: tuple[HumanChoice, ...] = ALL_CHOICES
    research_remaining: int = 0
    created_at: float = field(default_factory=time.time)

    def to_payload(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "confidence_level": self.confidence_level.value,
            "recommendation": self.recommendation,
            "rationale": self.rationale,
            "uncertainty_factors": list(self.uncertainty_factors),
            "choices": [c.value for c in self.choices],
            "research_remaining": self.research_remaining,
            "timestamp": self.created_at,
        }


class HumanChannel(ABC):
    """Source of human decisions."""

    name = "human"

    @abstractmethod
    async def ask(self, prompt: HumanPrompt) -> HumanChoice:
        """Return the human's choice for ``prompt``."""


class CliHumanChannel(HumanChannel):
    """Interactive terminal prompt with a fixed choice set."""

    name = "cli"

    def _prompt(self, prompt: HumanPrompt) -> HumanChoice:
        click.echo("\n" + "=" * 60)
        click.echo("DECISION REQUIRED")
        click.echo("=" * 60)
        click.echo(f"Task: {prompt.task_id}")
        click.echo(f"Confidence: {prompt.confidence_level.value}")
        click.echo(f"Recommendation: {prompt.recommendation}")
        click.echo("")
        click.echo("Rationale:")
        for line in prompt.rationale.splitlines():
            click.echo(f"  {line}")
        if prompt.uncertainty_factors:
            click.echo("Uncertainty factors:")
            for factor in prompt.uncertainty_factors:
                click.echo(f"  - {factor}")
        click.echo(f"Research runs left this hour: {prompt.research_remaining}")
        click.echo("")

        token = click.prompt(
            "Choose",
            type=click.Choice([c.value for c in prompt.choices]),
            show_choices=True,
        )
        return HumanChoice.parse(token)

    async def ask(self, prompt: HumanPrompt) -> HumanChoice:
        # click.prompt blocks; keep the event loop free for other tasks.
        return await asyncio.to_thread(self._prompt, prompt)


class WebhookHumanChannel(HumanChannel):
    """
    Channel that posts the prompt to an external webhook.

    The webhook must answer ``{"choice": "<accept|reject|research|cancel>"}``.
    Any failure is treated as ``reject``.
    """

    name = "webhook"

    def __init__(
        self,
        webhook_url: str,
        headers: dict[str, str] | None = None,
        timeout_seconds: int = 300,
    ):
        self.webhook_url = webhook_url
        self.headers = headers or {}
        self.timeout_seconds = timeout_seconds

    async def ask(self, prompt: HumanPrompt) -> HumanChoice:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                res = await client.post(
                    self.webhook_url,
                    json=prompt.to_payload(),
                    headers=self.headers,
                )
        except Exception as e:
            # Fail-closed on network errors/timeouts.
            logger.warning(
                "Webhook for task %s failed (%s); rejecting", prompt.task_id, type(e).__name__
            )
            return HumanChoice.REJECT

        if res.status_code != 200:
            return HumanChoice.REJECT

        try:
            data = res.json()
        except ValueError:
            return HumanChoice.REJECT

        if not isinstance(data, dict):
            return HumanChoice.REJECT
        try:
            return HumanChoice.parse(data.get("choice"))
        except ValidationError:
            return HumanChoice.REJECT


class ScriptedHumanChannel(HumanChannel):
    """Replays a fixed sequence of choices (for tests and CI)."""

    name = "scripted"

    def __init__(self, choices: Iterable[HumanChoice | str]):
        self._choices = [HumanChoice.parse(c) for c in choices]
        self.prompts: list[HumanPrompt] = []

    async def ask(self, prompt: HumanPrompt) -> HumanChoice:
        self.prompts.append(prompt)
        if not self._choices:
            raise RuntimeError("No scripted choices left")
        return self._choices.pop(0)


def channel_from_config(config: ApprovalConfig) -> HumanChannel:
    """Webhook channel when a URL is configured, otherwise the interactive CLI."""
    webhook = config.webhook
    if webhook.url:
        return WebhookHumanChannel(
            webhook.url, headers=webhook.headers, timeout_seconds=webhook.timeout_seconds
        )
    return CliHumanChannel()
