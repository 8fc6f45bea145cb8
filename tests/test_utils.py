import datetime as dt
from types import SimpleNamespace
from unittest.mock import call

import pytest
import requests
from PIL import Image

from common.utils import _sleep_backoff, is_blank, retry, utcnow


class FlakyClient:
    """Fails with a connection error ``failures`` times, then answers."""

    def __init__(self, failures: int, max_retries: int = 3):
        self.settings = SimpleNamespace(
            MAX_RETRIES=max_retries, MAX_RETRY_BACKOFF_SECONDS=30
        )
        self.failures = failures
        self.calls = 0

    @retry(retryable_exceptions=(requests.exceptions.ConnectionError,))
    def fetch(self, url: str) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise requests.exceptions.ConnectionError(f"cannot reach {url}")
        return f"body of {url}"

    @retry(retryable_exceptions=(requests.exceptions.ConnectionError,))
    def bad_request(self) -> None:
        self.calls += 1
        raise ValueError("not retryable")


def test_retry_returns_after_transient_failures(mocker):
    sleep_spy = mocker.patch("common.utils._sleep_backoff")
    client = FlakyClient(failures=2)

    assert client.fetch("http://media/1") == "body of http://media/1"
    assert client.calls == 3
    sleep_spy.assert_has_calls([call(1, client.settings), call(2, client.settings)])


def test_retry_reraises_after_last_attempt(mocker):
    sleep_spy = mocker.patch("common.utils._sleep_backoff")
    client = FlakyClient(failures=5, max_retries=2)

    with pytest.raises(requests.exceptions.ConnectionError, match="cannot reach"):
        client.fetch("http://media/1")

    assert client.calls == 2
    sleep_spy.assert_called_once_with(1, client.settings)


def test_retry_does_not_retry_other_exceptions(mocker):
    sleep_spy = mocker.patch("common.utils._sleep_backoff")
    client = FlakyClient(failures=0)

    with pytest.raises(ValueError, match="not retryable"):
        client.bad_request()

    assert client.calls == 1
    sleep_spy.assert_not_called()


def test_retry_rejects_zero_retries():
    client = FlakyClient(failures=0, max_retries=0)

    with pytest.raises(ValueError, match="MAX_RETRIES must be >= 1"):
        client.fetch("http://media/1")

    assert client.calls == 0


@pytest.mark.parametrize(
    "attempt, cap, expected",
    [(1, 30, 2.0), (3, 30, 8.0), (6, 10, 10.0)],
)
def test_sleep_backoff_is_exponential_and_capped(mocker, attempt, cap, expected):
    settings = SimpleNamespace(MAX_RETRIES=5, MAX_RETRY_BACKOFF_SECONDS=cap)
    mocker.patch("common.utils.random.uniform", return_value=1.0)
    sleep_mock = mocker.patch("common.utils.time.sleep")

    _sleep_backoff(attempt, settings)

    sleep_mock.assert_called_once_with(expected)


def test_is_blank():
    page = Image.new("RGB", (8, 8), "white")
    assert is_blank(page)

    page.putpixel((3, 3), (10, 10, 10))
    assert is_blank(page, threshold=2)
    assert not is_blank(page, threshold=1)

    assert not is_blank(Image.new("L", (8, 8), 0))


def test_utcnow_is_timezone_aware():
    now = utcnow()

    assert now.tzinfo is not None
    assert now.utcoffset() == dt.timedelta(0)
