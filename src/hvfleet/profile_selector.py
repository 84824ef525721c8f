"""Enrollment profile selection strategies.

The fetcher never talks to the operator directly; it hands the candidate
profiles to a selector. Zero candidates never reach a selector.

Strategies:
- AutoPickSingle: take the only profile, abort when there are several
- PromptOperator: show a table and ask the operator to choose
- FailOnAmbiguous: take the only profile, fail the run when there are several
- PreferredProfile: pick by display name or id, else defer to a fallback
"""

import logging
from typing import Any, Protocol

import click
from rich.console import Console
from rich.table import Table

from hvfleet.errors import ConfigurationError, SelectionAbortedError

logger = logging.getLogger(__name__)

Profile = dict[str, Any]


class ProfileSelector(Protocol):
    def select(self, profiles: list[Profile]) -> Profile:
        """Return the chosen profile or raise SelectionAbortedError."""
        ...


class AutoPickSingle:
    def select(self, profiles: list[Profile]) -> Profile:
        if len(profiles) == 1:
            return profiles[0]
        raise SelectionAbortedError(
            f"{len(profiles)} enrollment profiles available and no operator to choose"
        )


class FailOnAmbiguous:
    def select(self, profiles: list[Profile]) -> Profile:
        if len(profiles) == 1:
            return profiles[0]
        names = ", ".join(p.get("displayName", p.get("id", "?")) for p in profiles)
        raise ConfigurationError(
            f"Ambiguous enrollment profile: {len(profiles)} candidates ({names}). "
            "Set 'preferred_profile' to choose one."
        )


class PreferredProfile:
    """Select the profile whose id or display name matches, case-insensitively."""

    def __init__(self, name_or_id: str, fallback: ProfileSelector):
        self.name_or_id = name_or_id
        self.fallback = fallback

    def select(self, profiles: list[Profile]) -> Profile:
        wanted = self.name_or_id.lower()
        for profile in profiles:
            candidates = (
                str(profile.get("id", "")).lower(),
                str(profile.get("displayName", "")).lower(),
            )
            if wanted in candidates:
                return profile
        logger.warning(f"Preferred enrollment profile '{self.name_or_id}' not found")
        return self.fallback.select(profiles)


class PromptOperator:
    """Interactive selection. Blocks until the operator answers.

    A single candidate is auto-selected without prompting. An empty answer
    or Ctrl-C means "no profile selected".
    """

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def select(self, profiles: list[Profile]) -> Profile:
        if len(profiles) == 1:
            return profiles[0]

        table = Table(title="Enrollment Profiles")
        table.add_column("#", justify="right", style="cyan")
        table.add_column("Display Name", style="bold")
        table.add_column("Id", style="dim")
        table.add_column("Description")
        for index, profile in enumerate(profiles, start=1):
            table.add_row(
                str(index),
                profile.get("displayName", ""),
                profile.get("id", ""),
                profile.get("description") or "",
            )
        self.console.print(table)

        try:
            answer = click.prompt(
                "Select a profile (blank to skip enrollment)",
                default="",
                show_default=False,
            )
        except click.Abort as e:
            raise SelectionAbortedError("Profile selection cancelled by operator") from e

        answer = answer.strip()
        if not answer:
            raise SelectionAbortedError("No enrollment profile selected")
        if not answer.isdigit() or not 1 <= int(answer) <= len(profiles):
            raise SelectionAbortedError(f"Invalid profile selection: {answer}")
        return profiles[int(answer) - 1]


def build_selector(mode: str, preferred: str | None = None) -> ProfileSelector:
    """Selector for a settings value ('prompt', 'auto' or 'fail')."""
    selector: ProfileSelector
    if mode == "prompt":
        selector = PromptOperator()
    elif mode == "auto":
        selector = AutoPickSingle()
    elif mode == "fail":
        selector = FailOnAmbiguous()
    else:
        raise ConfigurationError(f"Unknown profile selection mode: {mode}")

    if preferred:
        return PreferredProfile(preferred, selector)
    return selector


__all__ = [
    "AutoPickSingle",
    "FailOnAmbiguous",
    "PreferredProfile",
    "ProfileSelector",
    "PromptOperator",
    "build_selector",
]
