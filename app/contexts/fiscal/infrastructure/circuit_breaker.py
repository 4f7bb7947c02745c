from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Deque, Dict, Tuple


CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"
DISABLED = "disabled"


def _bounded(value, default, minimum, maximum, cast):
    try:
        parsed = cast(value)
    except (TypeError, ValueError):
        parsed = default
    return max(minimum, min(maximum, parsed))


@dataclass
class _Circuit:
    state: str = CLOSED
    opened_at: float = 0.0
    trial_calls: int = 0
    outcomes: Deque[Tuple[float, bool]] = field(default_factory=deque)


class SefazCircuitBreaker:
    """Failure-rate breaker with one circuit per authorizer (UF or SVRS).

    An outage at one state's SEFAZ must not hold back jobs bound for another,
    so every key keeps its own sliding window and open/half-open cycle.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = Lock()
        self._circuits: Dict[str, _Circuit] = {}
        self.configure(
            enabled=True,
            error_rate_threshold=0.6,
            min_samples=5,
            window_seconds=120,
            open_seconds=60,
            half_open_max_calls=1,
        )

    def configure(
        self,
        *,
        enabled: bool,
        error_rate_threshold: float,
        min_samples: int,
        window_seconds: int,
        open_seconds: int,
        half_open_max_calls: int,
    ) -> None:
        with self._lock:
            self.enabled = bool(enabled)
            self.error_rate_threshold = _bounded(error_rate_threshold, 0.6, 0.05, 1.0, float)
            self.min_samples = _bounded(min_samples, 5, 1, 1000, int)
            self.window_seconds = _bounded(window_seconds, 120, 5, 3600, int)
            self.open_seconds = _bounded(open_seconds, 60, 1, 3600, int)
            self.half_open_max_calls = _bounded(half_open_max_calls, 1, 1, 100, int)
            if not self.enabled:
                self._circuits.clear()

    def _circuit(self, key: str) -> _Circuit:
        normalized = str(key or "default").strip().upper() or "DEFAULT"
        circuit = self._circuits.get(normalized)
        if circuit is None:
            circuit = _Circuit()
            self._circuits[normalized] = circuit
        return circuit

    def _trim(self, circuit: _Circuit, now: float) -> None:
        cutoff = now - self.window_seconds
        while circuit.outcomes and circuit.outcomes[0][0] < cutoff:
            circuit.outcomes.popleft()

    def _trip(self, circuit: _Circuit, now: float) -> None:
        circuit.state = OPEN
        circuit.opened_at = now
        circuit.trial_calls = 0

    def before_call(self, key: str = "default") -> tuple[bool, str]:
        if not self.enabled:
            return True, DISABLED
        now = self._clock()
        with self._lock:
            circuit = self._circuit(key)
            if circuit.state == OPEN:
                if now - circuit.opened_at < self.open_seconds:
                    return False, OPEN
                circuit.state = HALF_OPEN
                circuit.trial_calls = 0
            if circuit.state == HALF_OPEN:
                if circuit.trial_calls >= self.half_open_max_calls:
                    return False, HALF_OPEN
                circuit.trial_calls += 1
                return True, HALF_OPEN
            return True, CLOSED

    def record_success(self, key: str = "default") -> None:
        if not self.enabled:
            return
        now = self._clock()
        with self._lock:
            circuit = self._circuit(key)
            if circuit.state == HALF_OPEN:
                circuit.state = CLOSED
                circuit.opened_at = 0.0
                circuit.trial_calls = 0
                circuit.outcomes.clear()
                return
            circuit.outcomes.append((now, True))
            self._trim(circuit, now)

    def record_failure(self, key: str = "default") -> None:
        if not self.enabled:
            return
        now = self._clock()
        with self._lock:
            circuit = self._circuit(key)
            if circuit.state == OPEN:
                return
            circuit.outcomes.append((now, False))
            self._trim(circuit, now)
            if circuit.state == HALF_OPEN:
                self._trip(circuit, now)
                return
            samples = len(circuit.outcomes)
            failures = sum(1 for _at, ok in circuit.outcomes if not ok)
            if samples >= self.min_samples and failures / samples >= self.error_rate_threshold:
                self._trip(circuit, now)

    def snapshot(self) -> dict:
        now = self._clock()
        with self._lock:
            circuits = {}
            for key, circuit in self._circuits.items():
                self._trim(circuit, now)
                samples = len(circuit.outcomes)
                failures = sum(1 for _at, ok in circuit.outcomes if not ok)
                circuits[key] = {
                    "state": circuit.state,
                    "samples": samples,
                    "failures": failures,
                    "failure_rate": round(failures / samples, 4) if samples else 0.0,
                    "opened_seconds_ago": round(now - circuit.opened_at, 2) if circuit.state == OPEN else 0.0,
                }
            return {"enabled": self.enabled, "circuits": circuits}

    def reset_for_tests(self) -> None:
        with self._lock:
            self.enabled = True
            self._circuits.clear()


_SEFAZ_CIRCUIT_BREAKER = SefazCircuitBreaker()


def get_sefaz_circuit_breaker() -> SefazCircuitBreaker:
    return _SEFAZ_CIRCUIT_BREAKER


def sefaz_circuit_snapshot() -> dict:
    return _SEFAZ_CIRCUIT_BREAKER.snapshot()


def reset_sefaz_circuit_breaker_for_tests() -> None:
    _SEFAZ_CIRCUIT_BREAKER.reset_for_tests()
