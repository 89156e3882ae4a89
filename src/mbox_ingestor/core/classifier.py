"""Heuristic thread activity classifier.

The status of a thread is a pure function of four aggregate features. The
thresholds below are evaluated in order and the comparisons are strict
exactly as written.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import UTC, datetime

from mbox_ingestor.core.models import ActivityFeatures, ThreadStatus

PATCH_KEYWORDS = ("patch", "diff", "commit", "PR")
REVIEW_KEYWORDS = ("review", "LGTM", "approved", "looks good", "ACK", "Acked-by")

# Rule 1: patch with review, or a patch discussed beyond this many messages
IN_PROGRESS_MIN_MESSAGES = 3
# Rule 2: quiet for more than this many days with fewer than this many messages
ABANDONED_AFTER_DAYS = 30
ABANDONED_MAX_MESSAGES = 5
# Rule 3
STALLED_AFTER_DAYS = 7


def _keyword_pattern(keywords: Iterable[str]) -> re.Pattern[str]:
    """Compile keywords into one case-insensitive pattern anchored at word starts.

    Short all-caps acronyms (PR, ACK) must match as whole words so that "back"
    or "problem" do not count.
    """
    alternatives = []
    for keyword in keywords:
        escaped = re.escape(keyword)
        alternatives.append(rf"\b{escaped}\b" if keyword.isupper() else rf"\b{escaped}")
    return re.compile("|".join(alternatives), re.IGNORECASE)


_PATCH_RE = _keyword_pattern(PATCH_KEYWORDS)
_REVIEW_RE = _keyword_pattern(REVIEW_KEYWORDS)


def scan_keywords(bodies: Iterable[str]) -> tuple[bool, bool]:
    """Scan message bodies for patch and review indicators.

    Returns:
        Tuple of (has_patch, has_review).
    """
    has_patch = False
    has_review = False
    for body in bodies:
        if not has_patch and _PATCH_RE.search(body):
            has_patch = True
        if not has_review and _REVIEW_RE.search(body):
            has_review = True
        if has_patch and has_review:
            break
    return has_patch, has_review


def days_since(last_activity: datetime | None, now: datetime | None = None) -> float:
    """Fractional days elapsed since last_activity (0 when unknown)."""
    if last_activity is None:
        return 0.0
    now = now or datetime.now(UTC)
    if last_activity.tzinfo is None:
        last_activity = last_activity.replace(tzinfo=UTC)
    return (now - last_activity).total_seconds() / 86400


def classify(features: ActivityFeatures) -> ThreadStatus:
    """Map thread aggregates to an activity status."""
    if features.has_patch and (
        features.has_review or features.message_count > IN_PROGRESS_MIN_MESSAGES
    ):
        return ThreadStatus.IN_PROGRESS
    if (
        features.days_since_last_activity > ABANDONED_AFTER_DAYS
        and features.message_count < ABANDONED_MAX_MESSAGES
    ):
        return ThreadStatus.ABANDONED
    if features.days_since_last_activity > STALLED_AFTER_DAYS:
        return ThreadStatus.STALLED
    return ThreadStatus.DISCUSSION
