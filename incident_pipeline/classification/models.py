"""
Classification result model.
"""

from dataclasses import dataclass, field
from typing import Any

from incident_pipeline.core.config.constants import REASON_MALFORMED_INPUT, Tier


@dataclass(frozen=True)
class ClassificationResult:
    """
    Outcome of classifying one incident event.

    Produced once per event and never mutated. ``reasons`` explains the match
    (e.g. ``"violence-keyword:knife"``); a ``malformed-input`` entry means a
    field could not be read and the caller should flag the report for review.
    """

    tier: Tier
    priority: int
    reasons: tuple[str, ...] = field(default_factory=tuple)
    tags: tuple[str, ...] = field(default_factory=tuple)

    @property
    def needs_review(self) -> bool:
        return any(reason.startswith(REASON_MALFORMED_INPUT) for reason in self.reasons)

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier.value,
            "priority": self.priority,
            "reasons": list(self.reasons),
            "tags": list(self.tags),
        }
