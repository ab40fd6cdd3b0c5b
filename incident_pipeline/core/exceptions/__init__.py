"""
Exception Module

Structured exception hierarchy for the incident pipeline, organized by theme.

Module Structure:
-----------------
- **base.py**: PipelineError base class + ConfigurationError
- **classification.py**: event field extraction errors
- **queue.py**: broker / fallback queue errors
- **circuit_breaker.py**: circuit breaker and readiness gate errors
- **connection_pool.py**: connection slot exhaustion
- **processing.py**: handler execution and retry exhaustion
- **emergency.py**: emergency direct-path failure

Usage:
------
```python
from incident_pipeline.core.exceptions import CircuitOpenError, EnqueueFailure
```
"""

from incident_pipeline.core.exceptions.base import ConfigurationError, PipelineError
from incident_pipeline.core.exceptions.circuit_breaker import (
    CircuitBreakerError,
    CircuitOpenError,
)
from incident_pipeline.core.exceptions.classification import ClassificationError
from incident_pipeline.core.exceptions.connection_pool import (
    ConnectionPoolError,
    ConnectionPoolExhaustedError,
)
from incident_pipeline.core.exceptions.emergency import EmergencyPathFailure
from incident_pipeline.core.exceptions.processing import (
    ExhaustedRetriesError,
    HandlerNotRegisteredError,
    ProcessingFailure,
)
from incident_pipeline.core.exceptions.queue import (
    BrokerUnavailableError,
    EnqueueFailure,
    QueueError,
    QueueFullError,
)

__all__ = [
    # Base
    "PipelineError",
    "ConfigurationError",
    # Classification
    "ClassificationError",
    # Queue
    "QueueError",
    "BrokerUnavailableError",
    "QueueFullError",
    "EnqueueFailure",
    # Circuit breaker
    "CircuitBreakerError",
    "CircuitOpenError",
    # Connection pool
    "ConnectionPoolError",
    "ConnectionPoolExhaustedError",
    # Processing
    "ProcessingFailure",
    "ExhaustedRetriesError",
    "HandlerNotRegisteredError",
    # Emergency
    "EmergencyPathFailure",
]
