"""Application layer: services and their wiring."""

from incident_pipeline.application.container import Pipeline, build_pipeline, create_pipeline

__all__ = ["Pipeline", "build_pipeline", "create_pipeline"]
