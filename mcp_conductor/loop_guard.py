"""Loop Guard — detects non-converging tool usage within one query.

Two detectors, both scoped to a single agent-loop run (one LoopGuard per
query, never shared):

1. Repeated action: the same tool aimed at the same target (url, selector,
   element ref) requested more than ``max_repeats`` times in a row is not
   executed again; a forced-stop result is returned instead.
2. Content stagnation: consecutive results of a content-fetching tool are
   compared; ``max_stagnant`` near-identical fetches in a row end the
   dispatch early with a summary.

Both apply only to extended-category (browser automation) tools. Result
truncation applies to every tool, more tightly to the extended category.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

EXTENDED_TOOL_MARKERS: tuple[str, ...] = ("browser", "playwright", "puppeteer")


def is_extended_tool(tool_name: str) -> bool:
    """True for tools in the extended (browser automation) category."""
    lowered = tool_name.lower()
    return any(marker in lowered for marker in EXTENDED_TOOL_MARKERS)


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoopGuardPolicy:
    max_repeats: int = 5
    repeat_params: tuple[str, ...] = ("url", "selector", "element", "ref")
    content_tools: tuple[str, ...] = (
        "browser_snapshot",
        "browser_get_text",
        "get_page_content",
        "get_content",
        "fetch_content",
    )
    similarity_threshold: float = 0.9
    max_stagnant: int = 3


@dataclass(frozen=True)
class TruncationPolicy:
    """Result-text limits in characters."""

    general: int = 1000
    extended_first: int = 500
    extended_subsequent: int = 300

    def limit_for(self, extended: bool, first_call: bool) -> int:
        if not extended:
            return self.general
        return self.extended_first if first_call else self.extended_subsequent


def truncate_result(text: str, limit: int) -> str:
    """Keep the leading ~70% and trailing ~30% of *limit* characters."""
    if len(text) <= limit:
        return text
    head = int(limit * 0.7)
    tail = max(limit - head, 0)
    omitted = len(text) - head - tail
    return (
        f"{text[:head]}\n\n... [{omitted} characters truncated] ...\n\n"
        f"{text[len(text) - tail:]}"
    )


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------

EXACT_SIMILARITY_MAX_LENGTH = 5000
SAMPLE_WINDOWS = 5
SAMPLE_WINDOW_SIZE = 1000


def levenshtein(a: str, b: str) -> int:
    """Edit distance with unit insert/delete/substitute costs."""
    # Shared prefix/suffix never contributes to the distance.
    start = 0
    while start < len(a) and start < len(b) and a[start] == b[start]:
        start += 1
    end_a, end_b = len(a), len(b)
    while end_a > start and end_b > start and a[end_a - 1] == b[end_b - 1]:
        end_a -= 1
        end_b -= 1
    a, b = a[start:end_a], b[start:end_b]
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def similarity(a: str, b: str, rng: random.Random | None = None) -> float:
    """Similarity in [0, 1] between two fetched contents.

    Exact (1 - normalized edit distance) up to 5000 characters; above that,
    the mean position-wise match rate over 5 windows of 1000 characters
    taken at the same random offset in both strings, scaled by the length
    ratio so a short result never matches a long page on a shared prefix.
    """
    if a == b:
        return 1.0
    longest = max(len(a), len(b))
    if longest <= EXACT_SIMILARITY_MAX_LENGTH:
        return 1.0 - levenshtein(a, b) / longest

    rng = rng or random.Random()
    shortest = min(len(a), len(b))
    window = min(SAMPLE_WINDOW_SIZE, shortest)
    if window == 0:
        return 0.0
    total = 0.0
    for _ in range(SAMPLE_WINDOWS):
        start = rng.randint(0, shortest - window)
        matches = sum(
            1 for x, y in zip(a[start:start + window], b[start:start + window]) if x == y
        )
        total += matches / window
    return total / SAMPLE_WINDOWS * (shortest / longest)


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------


class LoopGuard:
    """Per-query anomaly state for extended-category tool calls."""

    def __init__(self, policy: LoopGuardPolicy | None = None, rng: random.Random | None = None) -> None:
        self.policy = policy or LoopGuardPolicy()
        self._rng = rng
        self._last_action: str | None = None
        self.repeat_count = 0
        self.forced_stops = 0
        self._last_content: str | None = None
        self.stagnant_count = 0

    def action_key(self, tool_name: str, arguments: dict[str, Any]) -> str:
        for param in self.policy.repeat_params:
            if param in arguments:
                return f"{tool_name}:{param}={arguments[param]}"
        return f"{tool_name}:{json.dumps(arguments, sort_keys=True, default=str)}"

    def check_action(self, tool_name: str, arguments: dict[str, Any]) -> bool:
        """Count a requested action. True means: do not execute it."""
        key = self.action_key(tool_name, arguments)
        if key == self._last_action:
            self.repeat_count += 1
        else:
            self._last_action = key
            self.repeat_count = 1
        if self.repeat_count > self.policy.max_repeats:
            self.forced_stops += 1
            logger.warning(
                "Forced stop: %s requested %d times in a row", key, self.repeat_count,
            )
            return True
        return False

    def reset_action(self) -> None:
        """Break the repeat streak; any other tool call in between does this."""
        self._last_action = None
        self.repeat_count = 0

    def forced_stop_message(self, tool_name: str) -> str:
        return (
            f"Forced stop: {tool_name} was requested {self.repeat_count} times in a row "
            "with the same target and was not executed again. "
            "Try a different approach or answer with what you have."
        )

    def is_content_tool(self, local_name: str) -> bool:
        return local_name in self.policy.content_tools

    async def observe_content(self, text: str) -> float | None:
        """Compare a fetch with the previous one; returns the score, if any.

        Scoring is CPU-bound (edit distance up to 5000 x 5000), so it runs
        in a worker thread and never stalls the event loop.
        """
        previous, self._last_content = self._last_content, text
        if previous is None:
            return None
        score = await asyncio.to_thread(similarity, previous, text, self._rng)
        if score >= self.policy.similarity_threshold:
            self.stagnant_count += 1
            logger.warning(
                "Content unchanged (similarity %.2f), %d/%d",
                score, self.stagnant_count, self.policy.max_stagnant,
            )
        else:
            self.stagnant_count = 0
        return score

    @property
    def stagnated(self) -> bool:
        return self.stagnant_count >= self.policy.max_stagnant
