from __future__ import annotations

import hashlib
import logging
import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Callable, Iterable

from tutti.models import (
    RESPONSE_STATUSES,
    STATUS_LABELS,
    STATUS_SYMBOLS,
    DescriptionConfig,
    Member,
    ResponseRecord,
    Tally,
    ensure_tz,
    utc_now,
)

logger = logging.getLogger(__name__)

SUMMARY_START = "[Attendance]"
SUMMARY_END = "[/Attendance]"
EVENT_ID_PREFIX = "tutti-event:"
UNKNOWN_MEMBER = "unknown member"
NO_COMMENTS = "(no comments)"
OTHER_PART = "Other"

SUMMARY_BLOCK_PATTERN = re.compile(r"\n*\[Attendance\].*?\[/Attendance\]\n*", re.DOTALL)
OPEN_SUMMARY_PATTERN = re.compile(r"\n*\[Attendance\].*\Z", re.DOTALL)
EVENT_ID_LINE_PATTERN = re.compile(r"^\s*tutti-event:.*$\n?", re.MULTILINE)
ANON_KEY_PATTERN = re.compile(r"^anon-(.+)$")

NameResolver = Callable[[ResponseRecord, dict[str, Member]], "str | None"]


def content_hash(text: str | None) -> str:
    if not text or not isinstance(text, str):
        return ""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def strip_generated_summary(description: str | None) -> str:
    """Remove the machine-written attendance block and embedded identifiers."""
    if not description:
        return ""
    cleaned = SUMMARY_BLOCK_PATTERN.sub("\n", description)
    cleaned = OPEN_SUMMARY_PATTERN.sub("", cleaned)
    cleaned = EVENT_ID_LINE_PATTERN.sub("", cleaned)
    return cleaned.strip()


def by_directory(response: ResponseRecord, directory: dict[str, Member]) -> str | None:
    member = directory.get(response.user_key)
    if member is None:
        return None
    return (member.display_name or member.name or "").strip() or None


def by_response_name(response: ResponseRecord, directory: dict[str, Member]) -> str | None:
    return (response.user_name or "").strip() or None


def by_key_pattern(response: ResponseRecord, directory: dict[str, Member]) -> str | None:
    # anon-<nickname> keys carry the nickname; hash-<digest> keys carry nothing usable.
    match = ANON_KEY_PATTERN.match((response.user_key or "").strip())
    if match is None:
        return None
    return match.group(1).strip() or None


def fallback_unknown(response: ResponseRecord, directory: dict[str, Member]) -> str | None:
    return UNKNOWN_MEMBER


DEFAULT_NAME_RESOLVERS: tuple[NameResolver, ...] = (
    by_directory,
    by_response_name,
    by_key_pattern,
    fallback_unknown,
)


def resolve_display_name(
    response: ResponseRecord,
    directory: dict[str, Member],
    resolvers: Iterable[NameResolver] = DEFAULT_NAME_RESOLVERS,
) -> str:
    for resolver in resolvers:
        try:
            name = resolver(response, directory)
        except Exception:
            logger.warning("display name resolver %s failed for %s", getattr(resolver, "__name__", resolver), response.user_key)
            continue
        if name:
            return name
    return UNKNOWN_MEMBER


def _part_sort_key(part: str) -> str:
    return unicodedata.normalize("NFKC", part).casefold()


def order_parts(parts: Iterable[str], part_order: list[str]) -> list[str]:
    """Configured parts first in their fixed order, the rest sorted by normalized name."""
    present = {part for part in parts}
    ordered = [part for part in part_order if part in present]
    known = set(ordered) | {OTHER_PART}
    ordered.extend(sorted((part for part in present if part not in known), key=_part_sort_key))
    if OTHER_PART in present:
        ordered.append(OTHER_PART)
    return ordered


@dataclass
class RenderedDescription:
    text: str
    stable_text: str

    @property
    def digest(self) -> str:
        return content_hash(self.stable_text)


class DescriptionRenderer:
    def __init__(
        self,
        config: DescriptionConfig,
        tz: tzinfo,
        resolvers: Iterable[NameResolver] = DEFAULT_NAME_RESOLVERS,
    ) -> None:
        self.config = config
        self.tz = tz
        self.resolvers = tuple(resolvers)

    def render(
        self,
        *,
        description: str | None,
        responses: list[ResponseRecord] | None,
        directory: dict[str, Member] | None = None,
        tally: Tally | None = None,
        event_id: str | None = None,
        now: datetime | None = None,
    ) -> RenderedDescription:
        responses = list(responses or [])
        directory = directory or {}
        tally = tally or Tally.from_responses(responses)

        sections: list[str] = []
        user_text = strip_generated_summary(description)
        if user_text:
            sections.append(user_text)

        block: list[str] = [SUMMARY_START, self._tally_section(tally)]
        if self.config.show_part_breakdown:
            block.append(self._part_section(responses, directory))
        block.append(self._comment_section(responses, directory))
        trailer = [f"{EVENT_ID_PREFIX} {event_id}"] if event_id else []
        stable_text = "\n\n".join(sections + ["\n\n".join(block + trailer) + "\n" + SUMMARY_END])

        block.append(f"Last updated: {self._format_timestamp(now)}")
        text = "\n\n".join(sections + ["\n\n".join(block + trailer) + "\n" + SUMMARY_END])
        return RenderedDescription(text=text, stable_text=stable_text)

    def _tally_section(self, tally: Tally) -> str:
        lines = [
            f"{STATUS_SYMBOLS[status]} {STATUS_LABELS[status]}: {tally.count(status)}"
            for status in RESPONSE_STATUSES
        ]
        lines.append(f"Total: {tally.total}")
        return "\n".join(lines)

    def _part_section(self, responses: list[ResponseRecord], directory: dict[str, Member]) -> str:
        try:
            by_part: dict[str, list[str]] = {}
            for response in sorted(responses, key=lambda item: item.user_key):
                if response.status != "attend":
                    continue
                member = directory.get(response.user_key)
                part = (member.part.strip() if member is not None else "") or OTHER_PART
                by_part.setdefault(part, []).append(resolve_display_name(response, directory, self.resolvers))
            if not by_part:
                return "[Parts]\n(no attendees)"
            lines = ["[Parts]"]
            for part in order_parts(by_part, self.config.part_order):
                names = by_part[part]
                lines.append(f"{part} ({len(names)}): {', '.join(names)}")
            return "\n".join(lines)
        except Exception:
            logger.exception("part breakdown rendering failed")
            return "[Parts]\n(unavailable)"

    def _comment_section(self, responses: list[ResponseRecord], directory: dict[str, Member]) -> str:
        lines = ["[Comments]"]
        for response in sorted(responses, key=lambda item: str(item.user_key or "")):
            try:
                comment = str(response.comment or "").strip()
                if not comment:
                    continue
                name = resolve_display_name(response, directory, self.resolvers)
                lines.append(f"{response.symbol} {name}: {' '.join(comment.splitlines())}")
            except Exception:
                logger.warning("skipping unreadable comment from %s", response.user_key)
        if len(lines) == 1:
            lines.append(NO_COMMENTS)
        return "\n".join(lines)

    def _format_timestamp(self, now: datetime | None) -> str:
        moment = ensure_tz(now or utc_now()).astimezone(self.tz)
        try:
            return moment.strftime(self.config.timestamp_format)
        except ValueError:
            return moment.strftime("%Y-%m-%d %H:%M")
