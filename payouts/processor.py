"""
Payment processor boundary.

The payout engine only talks to a `PaymentProcessor`. Calls are bounded by a
timeout and guarded by a circuit breaker so a struggling processor fails fast
instead of tying up the payout job.
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional

import requests
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ProcessorError(Exception):
    code = "PROCESSOR_ERROR"


class ProcessorTimeout(ProcessorError):
    """No answer in time. The transfer may or may not have settled."""
    code = "PROCESSOR_TIMEOUT"


class ProcessorUnavailableError(ProcessorError):
    code = "PROCESSOR_UNAVAILABLE"


class TransferResult(BaseModel):
    id: str
    status: str


class AccountBalanceInfo(BaseModel):
    available: Decimal


class PaymentProcessor(ABC):
    @abstractmethod
    def transfer(self, destination: str, amount: Decimal, currency: str, metadata: dict) -> TransferResult:
        ...

    @abstractmethod
    def get_account_balance(self, destination: str) -> AccountBalanceInfo:
        ...


class HttpPaymentProcessor(PaymentProcessor):
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if api_key:
            self.session.headers["Authorization"] = f"Bearer {api_key}"

    def transfer(self, destination: str, amount: Decimal, currency: str, metadata: dict) -> TransferResult:
        headers = {}
        if metadata.get("idempotency_key"):
            headers["Idempotency-Key"] = metadata["idempotency_key"]
        payload = {
            "destination": destination,
            "amount": str(amount),
            "currency": currency.lower(),
            "metadata": {k: str(v) for k, v in metadata.items()},
        }
        data = self._request("POST", "/transfers", json=payload, headers=headers)
        return TransferResult(id=str(data["id"]), status=str(data.get("status", "succeeded")))

    def get_account_balance(self, destination: str) -> AccountBalanceInfo:
        data = self._request("GET", f"/accounts/{destination}/balance")
        return AccountBalanceInfo(available=Decimal(str(data.get("available", "0"))))

    def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.Timeout as e:
            raise ProcessorTimeout(f"{method} {path} timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise ProcessorError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            logger.warning(
                f"Processor rejected {method} {path}",
                extra={"status_code": response.status_code, "body": response.text[:500]},
            )
            raise ProcessorError(f"{method} {path} returned HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            raise ProcessorError(f"{method} {path} returned a non-JSON body") from e


def call_with_timeout(func: Callable, timeout: Optional[float], *args, **kwargs) -> Any:
    if timeout is None:
        return func(*args, **kwargs)
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="processor-call")
    future = pool.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        raise ProcessorTimeout(f"Processor call did not complete within {timeout}s") from None
    finally:
        # The worker is abandoned on timeout; its late result is never read.
        pool.shutdown(wait=False)


class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 300.0,
        success_threshold: int = 1,
        time_func: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.success_threshold = success_threshold
        self.time_func = time_func
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = 0.0
        self._lock = threading.Lock()

    def allow_request(self) -> bool:
        with self._lock:
            if self.state == CircuitState.OPEN and self.time_func() - self.last_failure_time >= self.reset_timeout:
                self.state = CircuitState.HALF_OPEN
                self.success_count = 0
                logger.info(f"Circuit breaker {self.name} entering half-open state")
            return self.state != CircuitState.OPEN

    def call(self, func: Callable, *args, **kwargs) -> Any:
        if not self.allow_request():
            raise ProcessorUnavailableError(f"Circuit breaker {self.name} is open")
        try:
            result = func(*args, **kwargs)
        except Exception:
            self._record_failure()
            raise
        self._record_success()
        return result

    def _record_success(self) -> None:
        with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    self.state = CircuitState.CLOSED
                    self.failure_count = 0
                    logger.info(f"Circuit breaker {self.name} closed after successful recovery")
            else:
                self.failure_count = 0

    def _record_failure(self) -> None:
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = self.time_func()
            if self.state == CircuitState.HALF_OPEN or (
                self.state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold
            ):
                self.state = CircuitState.OPEN
                logger.warning(f"Circuit breaker {self.name} opened after {self.failure_count} failures")

    def get_state(self) -> dict:
        with self._lock:
            return {
                "name": self.name,
                "state": self.state.value,
                "failure_count": self.failure_count,
                "success_count": self.success_count,
                "last_failure_time": self.last_failure_time,
            }
