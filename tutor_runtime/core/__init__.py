"""
Core runtime components: index store, installer, provisioner, supervisor and
sync queue, plus the shared error taxonomy and event channel.
"""

from tutor_runtime.core.errors import (
    ContractMismatchError,
    ErrorKind,
    ExtractError,
    HealthCheckError,
    IntegrityError,
    NetworkError,
    ProcessSpawnError,
    ProvisioningError,
    QueueDeliveryError,
    Result,
    RuntimeOrchestrationError,
    ValidationError,
)
from tutor_runtime.core.events import EventChannel

__all__ = [
    "ContractMismatchError",
    "ErrorKind",
    "EventChannel",
    "ExtractError",
    "HealthCheckError",
    "IntegrityError",
    "NetworkError",
    "ProcessSpawnError",
    "ProvisioningError",
    "QueueDeliveryError",
    "Result",
    "RuntimeOrchestrationError",
    "ValidationError",
]
