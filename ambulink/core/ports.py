import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import Executor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ambulink.core.audit import log_event
from ambulink.core.logger import get_logger

logger = get_logger(__name__)

# variables never copied into the audit trail
_SECRET_VARS = {"code"}


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass(frozen=True)
class Party:
    role: str
    party_id: str
    contact: Optional[str] = None


class NotificationPort(ABC):
    """Outbound messages to requesters and resources. Retries are the adapter's job."""

    @abstractmethod
    def notify(self, party: Party, template: str, variables: Dict[str, Any]) -> DeliveryStatus:
        ...


class PaymentPort(ABC):
    @abstractmethod
    def confirm_settlement(self, request_id: str, amount: float) -> bool:
        ...


# =====================================================
#  ADAPTERS
# =====================================================

class OutboxNotifier(NotificationPort):
    """
    Simulated delivery: keeps every message in memory and writes a redacted
    copy to the audit log. Stands in for SMS/push until a gateway is wired.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.outbox: List[Dict[str, Any]] = []

    def notify(self, party: Party, template: str, variables: Dict[str, Any]) -> DeliveryStatus:
        message = {"party": party, "template": template, "variables": dict(variables)}
        with self._lock:
            self.outbox.append(message)
        redacted = {k: ("****" if k in _SECRET_VARS else v) for k, v in variables.items()}
        log_event(
            "notification",
            {"role": party.role, "party_id": party.party_id, "template": template, "variables": redacted},
            request_id=variables.get("request_id"),
        )
        return DeliveryStatus.DELIVERED

    def messages_for(self, party_id: str, template: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                m for m in self.outbox
                if m["party"].party_id == party_id and (template is None or m["template"] == template)
            ]


class RetryingNotifier(NotificationPort):
    def __init__(self, inner: NotificationPort, attempts: int = 3, backoff_seconds: float = 0.2):
        self.inner = inner
        self.attempts = max(1, attempts)
        self.backoff_seconds = backoff_seconds

    def notify(self, party: Party, template: str, variables: Dict[str, Any]) -> DeliveryStatus:
        for attempt in range(1, self.attempts + 1):
            try:
                status = self.inner.notify(party, template, variables)
            except Exception as exc:
                logger.warning("notify %s -> %s failed (attempt %d): %s", template, party.party_id, attempt, exc)
                status = DeliveryStatus.FAILED
            if status == DeliveryStatus.DELIVERED:
                return status
            if attempt < self.attempts:
                time.sleep(self.backoff_seconds * attempt)
        return DeliveryStatus.FAILED


class SimulatedPaymentGateway(PaymentPort):
    def __init__(self):
        self._lock = threading.Lock()
        self.settlements: Dict[str, float] = {}

    def confirm_settlement(self, request_id: str, amount: float) -> bool:
        if amount < 0:
            return False
        with self._lock:
            self.settlements[request_id] = float(amount)
        return True


# =====================================================
#  BOUNDED CALLS
# =====================================================

def call_with_timeout(executor: Executor, fn: Callable[..., Any], timeout: float, *args: Any) -> Any:
    """
    Run a collaborator call on `executor` and wait at most `timeout` seconds.
    Raises TimeoutError when the wait runs out; the call's own exception otherwise.
    """
    future = executor.submit(fn, *args)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        raise TimeoutError(f"{getattr(fn, '__name__', 'call')} timed out after {timeout}s")
