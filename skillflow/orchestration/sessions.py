"""Browser session reuse across steps and across re-plans.

A follow-up request such as "now search for X" should keep driving the tab
that is already open instead of launching a new one and navigating again.
The model is told about the active session in its prompt, but it does not
always comply, so plans are normalized after parsing.
"""

from __future__ import annotations

from typing import Iterable, Sequence
from urllib.parse import urlparse

from ..core.logging import get_logger
from ..schemas.skills import BrowserSessionContext, SkillName, SkillStep

logger = get_logger(name=__name__)

SESSION_ARG = "sessionId"
NAVIGATION_ACTIONS = frozenset({"navigate", "goto", "open"})


def browser_session_ids(plan: Sequence[SkillStep]) -> list[str]:
    """Distinct session ids used by browser steps, in first-seen order."""
    seen: list[str] = []
    for step in plan:
        if step.skill is not SkillName.BROWSER_ACT:
            continue
        session_id = step.args.get(SESSION_ARG)
        if session_id and str(session_id) not in seen:
            seen.append(str(session_id))
    return seen


def is_navigation(step: SkillStep) -> bool:
    if step.skill is not SkillName.BROWSER_ACT:
        return False
    action = str(step.args.get("action") or "").strip().lower()
    return action in NAVIGATION_ACTIONS and bool(step.args.get("url"))


def canonical_domain(url: str | None, aliases: Iterable[tuple[str, str]] = ()) -> str | None:
    if not url:
        return None
    parsed = urlparse(url if "://" in url else f"https://{url}")
    host = (parsed.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    if not host:
        return None
    for first, second in aliases:
        # both members of a pair collapse onto the second hostname
        if host in (first.lower(), second.lower()):
            return second.lower()
    return host


def same_domain(left: str | None, right: str | None, aliases: Iterable[tuple[str, str]] = ()) -> bool:
    pairs = list(aliases)
    left_domain = canonical_domain(left, pairs)
    return left_domain is not None and left_domain == canonical_domain(right, pairs)


def normalize_session_reuse(
    plan: Sequence[SkillStep],
    session: BrowserSessionContext,
    *,
    aliases: Iterable[tuple[str, str]] = (),
) -> list[SkillStep]:
    """Pin a single-session plan onto the active browser session.

    Only applies when the model used exactly one session id and a session is
    already active. Plans with several ids compare independent targets and are
    returned unchanged.
    """
    steps = list(plan)
    if not session.is_active:
        return steps
    session_ids = browser_session_ids(steps)
    if len(session_ids) != 1:
        if len(session_ids) > 1:
            logger.debug("session_reuse_skipped_multi_target", session_ids=session_ids)
        return steps

    active_id = session.active_session_id
    normalized: list[SkillStep] = []
    for step in steps:
        if step.skill is SkillName.BROWSER_ACT and step.args.get(SESSION_ARG) != active_id:
            step = step.with_args({SESSION_ARG: active_id})
        normalized.append(step)

    pairs = list(aliases)
    for index, step in enumerate(normalized):
        if not is_navigation(step):
            continue
        if same_domain(str(step.args.get("url")), session.active_url, pairs):
            logger.info(
                "session_reuse_navigation_dropped",
                url=step.args.get("url"),
                active_url=session.active_url,
                session_id=active_id,
            )
            del normalized[index]
        break

    if not normalized:
        # a navigation-only plan keeps its navigation
        return [
            step.with_args({SESSION_ARG: active_id}) if step.skill is SkillName.BROWSER_ACT else step
            for step in steps
        ]
    return normalized


__all__ = [
    "SESSION_ARG",
    "browser_session_ids",
    "canonical_domain",
    "is_navigation",
    "normalize_session_reuse",
    "same_domain",
]
