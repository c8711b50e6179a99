"""
Funnel Hub — Lost Reason Normalisation
========================================

Sales reps type lost reasons as free text, so the same cause shows up under
many spellings ("Fora do ICP", "lead fora do ICP - porte", "Desqualificado
(Brandspot)"). Reasons are folded into canonical buckets by keyword; anything
unmatched passes through verbatim.
"""
from __future__ import annotations

import unicodedata
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple

from models.funnel_models import NOT_INFORMED, LostReasonItem, LostReasons, LostReasonSummary

DEFAULT_DISPLAY_LIMIT = 6


@dataclass(frozen=True)
class LostReasonRule:
    """
    Canonical bucket. A reason matches when it contains any keyword in
    ``contains_any`` or every keyword of one group in ``contains_all``.
    Keywords are compared lower-cased and without accents.
    """
    label: str
    contains_any: Tuple[str, ...] = ()
    contains_all: Tuple[Tuple[str, ...], ...] = field(default_factory=tuple)

    def matches(self, folded: str) -> bool:
        if any(keyword in folded for keyword in self.contains_any):
            return True
        return any(
            all(keyword in folded for keyword in group)
            for group in self.contains_all
        )


DEFAULT_RULES: Tuple[LostReasonRule, ...] = (
    LostReasonRule(
        label="Fora do ICP",
        contains_any=("fora do icp",),
        contains_all=(("desqualificado", "brandspot"),),
    ),
    LostReasonRule(
        label="Sem contato",
        contains_any=("sem contato",),
    ),
)


def fold(text: str) -> str:
    """Lower-case and strip accents for keyword matching."""
    decomposed = unicodedata.normalize("NFKD", text.lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_reason(
    reason: Optional[str],
    rules: Sequence[LostReasonRule] = DEFAULT_RULES,
) -> str:
    """Canonical bucket for ``reason``; idempotent on its own output."""
    if reason is None or not reason.strip():
        return NOT_INFORMED

    folded = fold(reason)
    for rule in rules:
        if rule.matches(folded):
            return rule.label
    return reason


def merge_lost_reasons(
    raw: Mapping[str, int],
    rules: Sequence[LostReasonRule] = DEFAULT_RULES,
) -> Dict[str, int]:
    """Sum raw reason counts per canonical bucket, keeping first-seen order."""
    merged: Dict[str, int] = {}
    for reason, count in raw.items():
        bucket = normalize_reason(reason, rules)
        merged[bucket] = merged.get(bucket, 0) + (count or 0)
    return merged


def aggregate_lost_reasons(
    raw: Mapping[str, int],
    limit: Optional[int] = DEFAULT_DISPLAY_LIMIT,
    rules: Sequence[LostReasonRule] = DEFAULT_RULES,
) -> LostReasonSummary:
    """
    Merge, rank and truncate lost reasons for display.

    ``total_lost`` counts every lost deal, including buckets cut by ``limit``.
    """
    merged = merge_lost_reasons(raw, rules)
    ranked = sorted(merged.items(), key=lambda item: item[1], reverse=True)
    if limit is not None:
        ranked = ranked[:limit]

    return LostReasonSummary(
        items=[LostReasonItem(reason=reason, count=count) for reason, count in ranked],
        total_lost=sum(merged.values()),
    )


def lost_reasons_for_stages(
    lost: LostReasons,
    stage_ids: Optional[Iterable[int]] = None,
    limit: Optional[int] = DEFAULT_DISPLAY_LIMIT,
) -> LostReasonSummary:
    """Lost reasons for the whole pipeline, or only deals lost in ``stage_ids``."""
    if stage_ids is None:
        return aggregate_lost_reasons(lost.total, limit=limit)

    combined: Dict[str, int] = {}
    for stage_id in stage_ids:
        for reason, count in lost.by_stage.get(stage_id, {}).items():
            combined[reason] = combined.get(reason, 0) + count
    return aggregate_lost_reasons(combined, limit=limit)
