"""
Incident classification: raw event -> tier, priority, reasons.
"""

from incident_pipeline.classification.classifier import JOB_TYPE_ROUTES, Classifier, route_job
from incident_pipeline.classification.models import ClassificationResult
from incident_pipeline.classification.rules import (
    ClassificationRule,
    GeoZoneRule,
    KeywordRule,
    RuleMatch,
    SafetyFlagRule,
    default_rules,
)

__all__ = [
    "Classifier",
    "ClassificationResult",
    "ClassificationRule",
    "RuleMatch",
    "SafetyFlagRule",
    "KeywordRule",
    "GeoZoneRule",
    "default_rules",
    "route_job",
    "JOB_TYPE_ROUTES",
]
