"""
Unit Tests for the Exception Hierarchy
"""

import pytest

from incident_pipeline.core.exceptions import (
    BrokerUnavailableError,
    CircuitOpenError,
    ClassificationError,
    EmergencyPathFailure,
    EnqueueFailure,
    ExhaustedRetriesError,
    HandlerNotRegisteredError,
    PipelineError,
    ProcessingFailure,
    QueueError,
    QueueFullError,
)


@pytest.mark.unit
class TestPipelineError:
    def test_to_dict(self):
        error = EnqueueFailure("no backend", job_id="j-1", details={"tier": "Standard"})
        assert error.to_dict() == {
            "error_type": "EnqueueFailure",
            "message": "no backend",
            "job_id": "j-1",
            "details": {"tier": "Standard"},
        }

    def test_details_are_copied(self):
        details = {"tier": "Email"}
        error = QueueFullError("full", details=details)
        error.with_context(size=10)
        assert details == {"tier": "Email"}
        assert error.details["size"] == 10

    def test_from_exception_keeps_original(self):
        wrapped = BrokerUnavailableError.from_exception(ConnectionRefusedError("refused"), op="push")

        assert wrapped.message == "refused"
        assert wrapped.details["original_error"] == "ConnectionRefusedError"
        assert wrapped.details["op"] == "push"

    def test_from_exception_falls_back_to_class_name(self):
        wrapped = ProcessingFailure.from_exception(TimeoutError())
        assert wrapped.message == "TimeoutError"

    def test_repr_includes_job_id(self):
        assert "job_id='j-9'" in repr(EmergencyPathFailure("down", job_id="j-9"))


@pytest.mark.unit
class TestHierarchy:
    @pytest.mark.parametrize(
        "error_cls, parent",
        [
            (BrokerUnavailableError, QueueError),
            (QueueFullError, QueueError),
            (EnqueueFailure, QueueError),
            (ExhaustedRetriesError, ProcessingFailure),
            (HandlerNotRegisteredError, ProcessingFailure),
            (CircuitOpenError, PipelineError),
            (ClassificationError, PipelineError),
            (EmergencyPathFailure, PipelineError),
        ],
    )
    def test_parents(self, error_cls, parent):
        assert issubclass(error_cls, parent)
