"""Per-host circuit breaker guarding upstream providers.

A host trips after ``threshold`` consecutive counted failures and rejects
calls until ``cooldown`` seconds have passed. Only the event loop touches the
state, so no locking is needed.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict

log = logging.getLogger(__name__)


@dataclass(slots=True)
class HostCircuit:
    consecutive_failures: int = 0
    open_until: float | None = None
    trips: int = 0


class HostCircuitBreaker:
    def __init__(
        self,
        *,
        threshold: int = 10,
        cooldown: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if threshold <= 0:
            raise ValueError("threshold must be positive")
        if cooldown <= 0:
            raise ValueError("cooldown must be positive")
        self._threshold = threshold
        self._cooldown = cooldown
        self._clock = clock
        self._hosts: Dict[str, HostCircuit] = {}

    def _circuit(self, host: str) -> HostCircuit:
        return self._hosts.setdefault(host.lower(), HostCircuit())

    def is_open(self, host: str) -> bool:
        circuit = self._circuit(host)
        if circuit.open_until is None:
            return False
        if self._clock() < circuit.open_until:
            return True
        circuit.open_until = None
        log.info("circuit for %s closed", host)
        return False

    def remaining(self, host: str) -> float:
        circuit = self._circuit(host)
        if circuit.open_until is None:
            return 0.0
        return max(0.0, circuit.open_until - self._clock())

    def record_success(self, host: str) -> None:
        self._circuit(host).consecutive_failures = 0

    def record_failure(self, host: str) -> None:
        circuit = self._circuit(host)
        if self.is_open(host):
            return
        circuit.consecutive_failures += 1
        if circuit.consecutive_failures < self._threshold:
            return
        circuit.open_until = self._clock() + self._cooldown
        circuit.trips += 1
        circuit.consecutive_failures = 0
        log.warning(
            "circuit for %s open for %.0fs after %d consecutive failures",
            host,
            self._cooldown,
            self._threshold,
        )

    def snapshot(self) -> Dict[str, Dict[str, float]]:
        return {
            host: {
                "failures": float(circuit.consecutive_failures),
                "trips": float(circuit.trips),
                "cooldown_remaining": self.remaining(host),
            }
            for host, circuit in self._hosts.items()
        }


__all__ = ["HostCircuit", "HostCircuitBreaker"]
