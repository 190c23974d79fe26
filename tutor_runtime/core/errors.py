"""
Error taxonomy and tagged results for runtime orchestration.

Low-level components (index store, installer, queue delivery) return
``Result`` values instead of raising; orchestrators (provisioner, supervisor)
catch everything and return stage-tagged results. Every error carries a
``retryable`` flag so callers can decide between "retry" and "needs the user".
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NETWORK = "network"
    INTEGRITY = "integrity"
    EXTRACT = "extract"
    PROVISIONING = "provisioning"
    HEALTH_CHECK = "health_check"
    CONTRACT_MISMATCH = "contract_mismatch"
    PROCESS_SPAWN = "process_spawn"
    QUEUE_DELIVERY = "queue_delivery"


class RuntimeOrchestrationError(Exception):
    """Base error with a typed payload."""

    kind: ErrorKind = ErrorKind.VALIDATION
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        retryable: Optional[bool] = None,
        status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = self.default_retryable if retryable is None else retryable
        self.status = status
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "status": self.status,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, retryable={self.retryable})"


class ValidationError(RuntimeOrchestrationError):
    """Missing or malformed input (descriptor fields, launch config)."""
    kind = ErrorKind.VALIDATION
    default_retryable = False


class NetworkError(RuntimeOrchestrationError):
    """Transport failure or non-2xx response from a remote endpoint."""
    kind = ErrorKind.NETWORK
    default_retryable = True


class IntegrityError(RuntimeOrchestrationError):
    """Downloaded artifact digest does not match the descriptor."""
    kind = ErrorKind.INTEGRITY
    default_retryable = True


class ExtractError(RuntimeOrchestrationError):
    """Archive could not be unpacked or promoted."""
    kind = ErrorKind.EXTRACT
    default_retryable = True


class ProvisioningError(RuntimeOrchestrationError):
    """Installer or environment subprocess failed."""
    kind = ErrorKind.PROVISIONING
    default_retryable = True


class HealthCheckError(RuntimeOrchestrationError):
    """Sidecar liveness endpoint never returned 2xx within the timeout."""
    kind = ErrorKind.HEALTH_CHECK
    default_retryable = True


class ContractMismatchError(RuntimeOrchestrationError):
    """Sidecar is alive but its declared contract is incompatible."""
    kind = ErrorKind.CONTRACT_MISMATCH
    default_retryable = True


class ProcessSpawnError(RuntimeOrchestrationError):
    """Sidecar process could not be launched."""
    kind = ErrorKind.PROCESS_SPAWN
    default_retryable = True


class QueueDeliveryError(RuntimeOrchestrationError):
    """A queued item could not be delivered; ``retryable`` decides its fate."""
    kind = ErrorKind.QUEUE_DELIVERY
    default_retryable = True


@dataclass
class Result(Generic[T]):
    """Tagged success/failure value shared by all components."""

    ok: bool
    value: Optional[T] = None
    error: Optional[RuntimeOrchestrationError] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, value: T, **metadata: Any) -> "Result[T]":
        return cls(ok=True, value=value, metadata=metadata)

    @classmethod
    def failure(cls, error: RuntimeOrchestrationError, **metadata: Any) -> "Result[T]":
        return cls(ok=False, error=error, metadata=metadata)

    @property
    def retryable(self) -> bool:
        return bool(self.error and self.error.retryable)

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if not self.ok or self.error is not None:
            raise self.error or RuntimeOrchestrationError("empty result")
        return self.value  # type: ignore[return-value]
