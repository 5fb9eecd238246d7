"""
Quota planner: turns topic weightages and a requested total into per-topic
question targets.

Weighted topics share the total proportionally (at least 1 each). Topics with
zero weight get one question each, but only for runs of ZERO_WEIGHT_THRESHOLD
questions or more; those extra questions are reported separately.

Note the denominator: every zero-weight topic contributes ZERO_WEIGHT_NOMINAL
to total_weight even though it is allocated by its own rule. This slightly
shrinks weighted quotas whenever zero-weight topics exist, and is kept as is.
"""

import logging
import math
from typing import List, Optional, Sequence

from generation.schemas import QuotaPlan, TopicInput, TopicQuota, TopicStatsReport

log = logging.getLogger("generation.pipeline")

ZERO_WEIGHT_NOMINAL = 0.02
ZERO_WEIGHT_THRESHOLD = 500


def round_half_up(value: float) -> int:
    # round() is banker's rounding; quotas round .5 upwards
    return int(math.floor(value + 0.5))


def compute_topic_quotas(topics: Sequence[TopicInput], total: int) -> QuotaPlan:
    """
    Deterministic quota plan for one run.

    Topics come back in descending weight order (stable for ties) and only
    when their quota is positive.
    """
    weighted = [t for t in topics if t.weightage > 0]
    zero_weighted = [t for t in topics if t.weightage <= 0]

    total_weight = sum(t.weightage for t in weighted) + ZERO_WEIGHT_NOMINAL * len(zero_weighted)

    quotas: List[TopicQuota] = []
    for topic in weighted:
        quota = max(1, round_half_up(topic.weightage / total_weight * total))
        quotas.append(TopicQuota(
            topic_id=topic.id,
            topic_name=topic.name,
            weight=topic.weightage,
            quota=quota,
            notes=topic.notes,
        ))

    zero_quota = 1 if total >= ZERO_WEIGHT_THRESHOLD else 0
    extra = zero_quota * len(zero_weighted)
    if zero_quota:
        for topic in zero_weighted:
            quotas.append(TopicQuota(
                topic_id=topic.id,
                topic_name=topic.name,
                weight=topic.weightage,
                quota=zero_quota,
                notes=topic.notes,
            ))

    quotas.sort(key=lambda q: q.weight, reverse=True)

    if zero_weighted and extra:
        log.info(f"[GEN] {len(zero_weighted)} zero-weight topic(s): +{extra} extra question(s)")
    elif zero_weighted:
        log.info(
            f"[GEN] {len(zero_weighted)} zero-weight topic(s) skipped "
            f"(total {total} < {ZERO_WEIGHT_THRESHOLD})"
        )

    return QuotaPlan(
        total_requested=total,
        total_weight=total_weight,
        zero_weight_topics=len(zero_weighted),
        extra_count=extra,
        total_to_generate=total + extra,
        topics=quotas,
    )


def topic_stats(
    store,
    topics: Sequence[TopicInput],
    question_type: str,
    total: int,
    plan: Optional[QuotaPlan] = None,
) -> TopicStatsReport:
    """Per-topic target / existing / remaining / reference counts for a planned run."""
    plan = plan or compute_topic_quotas(topics, total)

    rows: List[TopicQuota] = []
    for quota in plan.topics:
        existing = store.count_items(quota.topic_id, question_type)
        rows.append(quota.model_copy(update={
            "existing_count": existing,
            "remaining": max(0, quota.quota - existing),
            "reference_count": store.count_reference_items(quota.topic_id),
        }))

    return TopicStatsReport(
        question_type=question_type,
        total_target=sum(r.quota for r in rows),
        total_existing=sum(r.existing_count for r in rows),
        total_remaining=sum(r.remaining for r in rows),
        extra_count=plan.extra_count,
        topics=rows,
    )
