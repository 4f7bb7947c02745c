import unittest

from app.contexts.fiscal.infrastructure.circuit_breaker import (
    CLOSED,
    DISABLED,
    HALF_OPEN,
    OPEN,
    SefazCircuitBreaker,
)


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class SefazCircuitBreakerTest(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = _Clock()
        self.breaker = SefazCircuitBreaker(clock=self.clock)
        self.breaker.configure(
            enabled=True,
            error_rate_threshold=0.5,
            min_samples=4,
            window_seconds=60,
            open_seconds=30,
            half_open_max_calls=1,
        )

    def _fail(self, key: str, times: int) -> None:
        for _ in range(times):
            self.breaker.record_failure(key)

    def test_opens_after_error_rate_with_min_samples(self) -> None:
        self._fail("SP", 3)
        self.assertEqual(self.breaker.before_call("SP"), (True, CLOSED))
        self._fail("SP", 1)
        self.assertEqual(self.breaker.before_call("SP"), (False, OPEN))

        snapshot = self.breaker.snapshot()
        self.assertEqual(snapshot["circuits"]["SP"]["state"], OPEN)
        self.assertEqual(snapshot["circuits"]["SP"]["failure_rate"], 1.0)

    def test_circuits_are_isolated_per_authorizer(self) -> None:
        self._fail("SP", 4)
        self.assertFalse(self.breaker.before_call("SP")[0])
        self.assertEqual(self.breaker.before_call("SVRS"), (True, CLOSED))
        self.assertEqual(self.breaker.before_call("sp"), (False, OPEN))

    def test_half_open_trial_closes_or_reopens(self) -> None:
        self._fail("MG", 4)
        self.clock.now += 31
        self.assertEqual(self.breaker.before_call("MG"), (True, HALF_OPEN))
        self.assertEqual(self.breaker.before_call("MG"), (False, HALF_OPEN))
        self.breaker.record_failure("MG")
        self.assertEqual(self.breaker.before_call("MG"), (False, OPEN))

        self.clock.now += 31
        self.assertEqual(self.breaker.before_call("MG"), (True, HALF_OPEN))
        self.breaker.record_success("MG")
        self.assertEqual(self.breaker.before_call("MG"), (True, CLOSED))
        self.assertEqual(self.breaker.snapshot()["circuits"]["MG"]["samples"], 0)

    def test_old_outcomes_leave_the_window(self) -> None:
        self._fail("PR", 3)
        self.clock.now += 61
        self._fail("PR", 1)
        self.assertEqual(self.breaker.before_call("PR"), (True, CLOSED))
        self.assertEqual(self.breaker.snapshot()["circuits"]["PR"]["samples"], 1)

    def test_disabled_breaker_always_allows(self) -> None:
        self.breaker.configure(
            enabled=False,
            error_rate_threshold=0.5,
            min_samples=1,
            window_seconds=60,
            open_seconds=30,
            half_open_max_calls=1,
        )
        self._fail("SP", 10)
        self.assertEqual(self.breaker.before_call("SP"), (True, DISABLED))
        self.assertEqual(self.breaker.snapshot()["circuits"], {})


if __name__ == "__main__":
    unittest.main()
