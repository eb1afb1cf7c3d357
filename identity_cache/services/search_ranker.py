"""
Local search over the mirrored directory.

A record must match the query on at least one signal (name, profile text,
keywords, channel identifier, self-channel keyword); only then are the
interaction, frequency and relationship boosts added. Channel names equal to
the query, or containing it as a whole word, get boosts large enough to
outrank relationship scores: someone typing "CRM" is looking for the CRM group.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from identity_cache.config import settings
from identity_cache.models.domain.record_domain import (
    ChannelRecord,
    PersonRecord,
    is_self_channel,
)
from identity_cache.services.interaction_metrics import decayed

# Match signals
NAME_MATCH = 100
SELF_CHANNEL_KEYWORD = 150
EMAIL_MATCH = 80
BIO_MATCH = 110
JOB_TITLE_MATCH = 60
DEPARTMENT_MATCH = 40
KEYWORD_MATCH = 70
CHANNEL_IDENTIFIER_MATCH = 50

# Interaction boosts
PINNED_BOOST = 500
RECENT_BOOST = 200
INTERACTION_POINTS = 10
INTERACTION_CAP = 100
OPENED_THIS_WEEK_BOOST = 50

EXACT_GROUP_NAME_BOOST = 1000
GROUP_WORD_MATCH_BOOST = 900

SELF_KEYWORDS = ("me", "self", "myself", "notes", "personal")

# Coverage: enough local results that a remote search is unnecessary
COVERAGE_MIN_RESULTS = 7
COVERAGE_MIN_TOP_SCORE = 200

Record = PersonRecord | ChannelRecord


@dataclass(slots=True)
class RankedRecord:
    record: Record
    search_score: int
    match_reasons: list[str] = field(default_factory=list)


def normalize_query(query: str | None) -> str:
    return (query or "").strip().lower()


def _contains(value: str | None, query: str) -> bool:
    return bool(value) and query in value.lower()


def _frequency_score(record: Record, now: datetime, reasons: list[str]) -> int:
    metrics = decayed(record.interaction_metrics, now)
    if metrics is None:
        return 0

    score = 0
    if metrics.count_last_7_days >= 5:
        score += 150
        reasons.append("high_frequency_daily")
    elif metrics.count_last_7_days >= 3:
        score += 100
        reasons.append("high_frequency_regular")
    elif metrics.count_last_7_days >= 1:
        score += 50
        reasons.append("medium_frequency_weekly")

    gap = metrics.average_days_between
    if gap is not None and gap < 3:
        score += 75
        reasons.append("consistent_interactions")
    elif gap is not None and gap < 7:
        score += 50
        reasons.append("regular_interactions")

    last = metrics.last_interaction_time
    if last is not None and now - last < timedelta(hours=24):
        score += 100
        reasons.append("very_recent_interaction")
    return score


def _relationship_score(record: PersonRecord) -> tuple[int, str | None]:
    groups = len(record.shared_channels) - (1 if record.has_direct_chat else 0)
    direct = record.has_direct_chat

    if direct and groups >= 5:
        return 600, f"direct_chat_plus_{groups}_groups"
    if direct and groups >= 1:
        return 550, f"direct_chat_plus_{groups}_groups"
    if direct:
        return 400, "direct_chat_only"
    if groups >= 5:
        return 350, f"shared_{groups}_groups"
    if groups >= 3:
        return 300, f"shared_{groups}_groups"
    if groups >= 1:
        return 250, f"shared_{groups}_groups"
    if record.has_shared_connection:
        return 200, "shared_connection"
    return 0, None


def score_record(record: Record, query: str, now: datetime) -> RankedRecord | None:
    """Score one record against an already-normalized query; None when nothing matches."""
    score = 0
    reasons: list[str] = []

    if _contains(record.name, query):
        score += NAME_MATCH
        reasons.append("name")

    if is_self_channel(record) and any(keyword in query for keyword in SELF_KEYWORDS):
        score += SELF_CHANNEL_KEYWORD
        reasons.append("self_channel_keyword")

    if isinstance(record, PersonRecord):
        for value, points, reason in (
            (record.email, EMAIL_MATCH, "email"),
            (record.bio, BIO_MATCH, "bio"),
            (record.job_title, JOB_TITLE_MATCH, "job_title"),
            (record.department_name, DEPARTMENT_MATCH, "department"),
        ):
            if _contains(value, query):
                score += points
                reasons.append(reason)

        if any(query in k.lower() or k.lower() in query for k in record.search_keywords if k):
            score += KEYWORD_MATCH
            reasons.append("search_keywords")
    elif _contains(record.channel_identifier, query):
        score += CHANNEL_IDENTIFIER_MATCH
        reasons.append("channel_identifier")

    if score == 0:
        return None

    if record.is_pinned:
        score += PINNED_BOOST
    if record.is_recent:
        score += RECENT_BOOST
    if record.interaction_count > 0:
        score += min(record.interaction_count * INTERACTION_POINTS, INTERACTION_CAP)
    if record.last_opened_time and now - record.last_opened_time < timedelta(days=7):
        score += OPENED_THIS_WEEK_BOOST

    score += _frequency_score(record, now, reasons)

    if isinstance(record, PersonRecord):
        points, reason = _relationship_score(record)
        if points:
            score += points
            reasons.append(reason)

    if isinstance(record, ChannelRecord) and record.name:
        name = record.name.lower()
        if name == query:
            score += EXACT_GROUP_NAME_BOOST
            reasons.append("exact_group_name_match")
        elif query in name.split():
            score += GROUP_WORD_MATCH_BOOST
            reasons.append("group_word_match")

    return RankedRecord(record=record, search_score=score, match_reasons=reasons)


class SearchRanker:
    def __init__(self, default_limit: int | None = None):
        self.default_limit = default_limit or settings.SEARCH_RESULT_LIMIT

    def rank(
        self,
        records: list[Record],
        query: str,
        limit: int | None = None,
        now: datetime | None = None,
    ) -> list[RankedRecord]:
        normalized = normalize_query(query)
        if not normalized:
            return []
        now = now or datetime.now(UTC)

        scored = [r for r in (score_record(rec, normalized, now) for rec in records) if r is not None]
        # sorted() is stable, so ties keep store order
        scored.sort(key=lambda ranked: ranked.search_score, reverse=True)
        return scored[: limit or self.default_limit]

    def has_good_coverage(self, records: list[Record], query: str, now: datetime | None = None) -> bool:
        """Whether local results are good enough to skip a remote search."""
        normalized = normalize_query(query)
        if not normalized:
            return False

        ranked = self.rank(records, normalized, now=now)
        relevant = [
            r
            for r in ranked
            if _contains(r.record.name, normalized)
            or (isinstance(r.record, PersonRecord) and _contains(r.record.email, normalized))
        ]
        if len(relevant) >= COVERAGE_MIN_RESULTS:
            return True
        if relevant:
            top = relevant[0]
            return (
                top.record.name.lower().startswith(normalized)
                and top.search_score >= COVERAGE_MIN_TOP_SCORE
            )
        return False
