import pytest

from shared.errors import ErrorKind, PeerError
from shared.retry import Backoff, DeadlineExceeded, call_with_retry


def transient():
    return PeerError(ErrorKind.UNAVAILABLE, "PAYMENT_UNAVAILABLE")


class Flaky:
    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def is_retryable(error):
    return isinstance(error, PeerError) and error.retryable


def test_backoff_delays_are_capped():
    assert list(Backoff().delays()) == [0.1, 0.2, 0.4, 0.8, 1.6]
    assert list(Backoff(base=10, factor=3, cap=30, max_attempts=4).delays()) == [10, 30, 30]


def test_retries_until_success():
    sleeps = []
    fn = Flaky([transient(), transient()])

    assert call_with_retry(fn, backoff=Backoff(), is_retryable=is_retryable, sleep=sleeps.append) == "ok"
    assert fn.calls == 3
    assert sleeps == [0.1, 0.2]


def test_non_retryable_error_is_raised_at_once():
    fn = Flaky([PeerError(ErrorKind.INVALID, "PAYMENT_DECLINED")])

    with pytest.raises(PeerError):
        call_with_retry(fn, backoff=Backoff(), is_retryable=is_retryable, sleep=lambda s: None)
    assert fn.calls == 1


def test_exhaustion_reraises_last_error():
    fn = Flaky([transient() for _ in range(10)])

    with pytest.raises(PeerError):
        call_with_retry(fn, backoff=Backoff(max_attempts=3), is_retryable=is_retryable, sleep=lambda s: None)
    assert fn.calls == 3


def test_deadline_stops_retries():
    now = [0.0]

    def sleep(seconds):
        now[0] += seconds

    fn = Flaky([transient() for _ in range(10)])

    with pytest.raises(DeadlineExceeded) as excinfo:
        call_with_retry(
            fn,
            backoff=Backoff(base=1.0),
            is_retryable=is_retryable,
            deadline=2.5,
            sleep=sleep,
            clock=lambda: now[0],
        )

    assert fn.calls == 2
    assert isinstance(excinfo.value.last_error, PeerError)
