from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from threading import Event
from typing import Callable

import httpx

from .db import utc_now
from .errors import Cancelled, HealthTimeout


class HealthStatus(str, Enum):
    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class HealthSample:
    status: HealthStatus
    timestamp: str = field(default_factory=utc_now)
    detail: str = ""


def check_health(
    url: str, timeout_s: float = 2.0, client: httpx.Client | None = None
) -> tuple[HealthStatus, str, float | None]:
    """Call a service health endpoint.

    Expected JSON: {"status": "healthy"}.
    Returns (status, message, latency_ms). A probe that gets no answer is
    Unknown rather than Unhealthy.
    """
    start = time.time()
    try:
        if client is not None:
            resp = client.get(url, timeout=timeout_s)
        else:
            with httpx.Client(timeout=timeout_s, follow_redirects=False) as c:
                resp = c.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if resp.status_code != 200:
            return HealthStatus.UNHEALTHY, f"HTTP {resp.status_code}", latency_ms
        try:
            data = resp.json()
        except ValueError:
            return HealthStatus.UNHEALTHY, "Invalid JSON", latency_ms
        if isinstance(data, dict) and data.get("status") == "healthy":
            return HealthStatus.HEALTHY, "Healthy", latency_ms
        return HealthStatus.UNHEALTHY, f"Unhealthy payload: {data!r}", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return HealthStatus.UNKNOWN, f"No response: {type(e).__name__}", latency_ms


class HealthTarget(ABC):
    """Something a health gate can poll."""

    @abstractmethod
    def probe(self) -> HealthStatus:
        ...

    def describe(self) -> str:
        return type(self).__name__


class HttpHealthTarget(HealthTarget):
    def __init__(self, url: str, timeout_s: float = 2.0, client: httpx.Client | None = None) -> None:
        self.url = url
        self.timeout_s = timeout_s
        self.client = client

    def probe(self) -> HealthStatus:
        status, _msg, _latency = check_health(self.url, self.timeout_s, self.client)
        return status

    def describe(self) -> str:
        return self.url


class HealthGate:
    """Confirmation barrier: N consecutive Healthy samples or bust.

    Polling -> (Healthy x N -> Confirmed) | (timeout -> TimedOut) | (cancel -> Cancelled)

    Unhealthy resets the streak; Unknown (probe errors) holds it. The cancel
    flag is checked once per tick, so a probe in flight always completes.
    """

    def __init__(
        self,
        interval_s: float = 1.0,
        required_streak: int = 3,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.interval_s = max(0.0, float(interval_s))
        self.required_streak = max(1, int(required_streak))
        self._clock = clock
        self._sleep = sleep

    def await_healthy(
        self,
        target: HealthTarget,
        timeout: float,
        cancel: Event | None = None,
        on_sample: Callable[[HealthSample, int], None] | None = None,
    ) -> HealthSample:
        deadline = self._clock() + max(0.0, float(timeout))
        streak = 0
        while True:
            if cancel is not None and cancel.is_set():
                raise Cancelled(f"Health gate on {target.describe()} cancelled")

            sample = self._sample(target)
            if sample.status is HealthStatus.HEALTHY:
                streak += 1
            elif sample.status is HealthStatus.UNHEALTHY:
                streak = 0
            if on_sample is not None:
                on_sample(sample, streak)
            if streak >= self.required_streak:
                return sample

            if self._clock() >= deadline:
                raise HealthTimeout(
                    f"{target.describe()} not confirmed healthy within {timeout}s (last: {sample.status.value})"
                )
            self._wait(cancel)

    def _sample(self, target: HealthTarget) -> HealthSample:
        try:
            return HealthSample(status=target.probe())
        except Exception as e:
            return HealthSample(status=HealthStatus.UNKNOWN, detail=f"{type(e).__name__}: {e}")

    def _wait(self, cancel: Event | None) -> None:
        if self._sleep is not None:
            self._sleep(self.interval_s)
        elif cancel is not None:
            cancel.wait(self.interval_s)
        else:
            time.sleep(self.interval_s)
