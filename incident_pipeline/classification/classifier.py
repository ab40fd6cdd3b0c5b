"""
Incident Classifier

Maps a raw incident event to a tier, a priority and the reasons behind the
decision. Rules run as a first-match cascade; the safe default is Standard.

Classification is deterministic and side-effect free. Malformed fields never
raise out of ``classify``: each rule skips the fields it cannot read, keeps
checking the rest, and a ``malformed-input`` reason is recorded per field.

STAGE-CLS: Classification
-------------------------
CLS.1: Rule evaluation
CLS.2: Malformed field absorbed
CLS.3: Job-type routing
"""

from collections.abc import Mapping, Sequence
from typing import Any

from incident_pipeline.classification.models import ClassificationResult
from incident_pipeline.classification.rules import (
    ClassificationRule,
    SafetyFlagRule,
    default_rules,
)
from incident_pipeline.core.config.constants import (
    REASON_DEFAULT,
    REASON_MALFORMED_INPUT,
    Tier,
)
from incident_pipeline.core.exceptions import ClassificationError
from incident_pipeline.core.logging.logger import get_logger

logger = get_logger(__name__)

DEFAULT_TIER = Tier.STANDARD
DEFAULT_PRIORITY = 2

# job_type -> tier for route_job; anything unlisted goes to Standard
JOB_TYPE_ROUTES: dict[str, Tier] = {
    "safety_report": Tier.STANDARD,
    "incident_report": Tier.STANDARD,
    "analysis": Tier.BACKGROUND,
    "enrichment": Tier.BACKGROUND,
    "location_enrichment": Tier.BACKGROUND,
    "analytics": Tier.ANALYTICS,
    "metrics": Tier.ANALYTICS,
    "email": Tier.EMAIL,
    "device": Tier.DEVICE,
}


def _record_malformed(malformed: list[str], fields) -> None:
    for field_name in fields:
        reason = f"{REASON_MALFORMED_INPUT}:{field_name}"
        if reason not in malformed:
            malformed.append(reason)


class Classifier:
    """
    Rule-cascade classifier.

    Usage:
        classifier = Classifier.from_settings(settings)
        result = classifier.classify({"genderSensitive": True, "description": "..."})
        result.tier  # Tier.EMERGENCY
    """

    def __init__(self, rules: Sequence[ClassificationRule]):
        self._rules = tuple(rules)

    @classmethod
    def from_settings(cls, settings) -> "Classifier":
        cfg = settings.classifier
        return cls(
            default_rules(
                violence_keywords=cfg.CLASSIFIER_VIOLENCE_KEYWORDS,
                safety_keywords=cfg.CLASSIFIER_SAFETY_KEYWORDS,
                zones=cfg.CLASSIFIER_HIGH_PRIORITY_ZONES,
            )
        )

    @property
    def rules(self) -> tuple[ClassificationRule, ...]:
        return self._rules

    def classify(self, event: Any) -> ClassificationResult:
        """
        Classify one event.

        STAGE-CLS.1: Rule evaluation

        Args:
            event: Raw report data. Anything that is not a mapping is treated
                as malformed and classified with the default.

        Returns:
            ClassificationResult (never raises)
        """
        if not isinstance(event, Mapping):
            logger.warning(
                "Event is not a mapping, using default tier",
                stage="CLS.2",
                event_type=type(event).__name__,
            )
            return ClassificationResult(
                tier=DEFAULT_TIER,
                priority=DEFAULT_PRIORITY,
                reasons=(f"{REASON_MALFORMED_INPUT}:event", REASON_DEFAULT),
            )

        malformed: list[str] = []
        for rule in self._rules:
            try:
                match = rule.evaluate(event)
            except ClassificationError as e:
                fields = e.details.get("fields") or [e.details.get("field", rule.name)]
                _record_malformed(malformed, fields)
                logger.warning(
                    "Malformed event field, rule found no match",
                    stage="CLS.2",
                    rule=rule.name,
                    fields=fields,
                    error=e.message,
                )
                continue

            if match is not None:
                if match.malformed:
                    _record_malformed(malformed, match.malformed)
                    logger.warning(
                        "Malformed event field skipped",
                        stage="CLS.2",
                        rule=rule.name,
                        fields=list(match.malformed),
                    )
                logger.debug(
                    "Event classified",
                    stage="CLS.1",
                    rule=rule.name,
                    tier=match.tier.value,
                    reason=match.reason,
                )
                return ClassificationResult(
                    tier=match.tier,
                    priority=match.priority,
                    reasons=(match.reason, *malformed),
                    tags=match.tags,
                )

        return ClassificationResult(
            tier=DEFAULT_TIER,
            priority=DEFAULT_PRIORITY,
            reasons=(*malformed, REASON_DEFAULT),
        )


def route_job(job_type: str, metadata: Mapping[str, Any] | None = None) -> Tier:
    """
    Pick a tier for a typed background job.

    STAGE-CLS.3: Job-type routing

    Safety signals in ``metadata`` (safety flag, critical urgency, emergency
    priority) override the job type and route to Emergency.
    """
    metadata = metadata or {}
    try:
        if SafetyFlagRule().evaluate(metadata) is not None:
            return Tier.EMERGENCY
    except ClassificationError as e:
        logger.warning("Malformed routing metadata", stage="CLS.3", job_type=job_type, error=e.message)

    tier = JOB_TYPE_ROUTES.get((job_type or "").strip().lower(), Tier.STANDARD)
    logger.debug("Job routed", stage="CLS.3", job_type=job_type, tier=tier.value)
    return tier


__all__ = ["Classifier", "route_job", "JOB_TYPE_ROUTES"]
