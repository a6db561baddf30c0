from __future__ import annotations

import logging
from datetime import date

import pytest
import requests

from oss_stats.errors import UpstreamError
from oss_stats.sources.npm_client import NpmDownloadsClient
from oss_stats.sources.rate_limits import RateLimitWarnings


class _Response:
    def __init__(self, status_code: int, payload=None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.headers: dict[str, str] = {}

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class _Session:
    def __init__(self, responses) -> None:
        self.responses = list(responses)
        self.urls: list[str] = []
        self.headers: dict[str, str] = {}

    def get(self, url, timeout=None, **_kwargs):
        self.urls.append(url)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _client(session, sleeps=None, warnings=None) -> NpmDownloadsClient:
    recorded = sleeps if sleeps is not None else []
    return NpmDownloadsClient(
        session=session,
        rate_limit_wait_seconds=60,
        sleep=recorded.append,
        warnings=warnings,
    )


def test_fetch_chunk_parses_daily_points_and_encodes_scoped_name() -> None:
    session = _Session(
        [
            _Response(
                200,
                {
                    "downloads": [
                        {"day": "2025-01-01", "downloads": 10},
                        {"day": "2025-01-02", "downloads": 15},
                        {"day": None, "downloads": 99},
                    ]
                },
            )
        ]
    )

    result = _client(session).fetch_chunk(
        "@tanstack/react-query", date(2025, 1, 1), date(2025, 1, 2)
    )

    assert result is not None
    assert result.total_downloads == 25
    assert [point.day for point in result.daily] == ["2025-01-01", "2025-01-02"]
    assert session.urls == [
        "https://api.npmjs.org/downloads/range/2025-01-01:2025-01-02/%40tanstack%2Freact-query"
    ]


def test_fetch_chunk_returns_none_on_404() -> None:
    session = _Session([_Response(404, {"error": "not found"})])

    assert _client(session).fetch_chunk("@x/y", date(2025, 1, 1), date(2025, 1, 2)) is None


def test_fetch_chunk_returns_none_on_not_found_payload() -> None:
    session = _Session([_Response(200, {"error": "package @x/y not found"})])

    assert _client(session).fetch_chunk("@x/y", date(2025, 1, 1), date(2025, 1, 2)) is None


def test_fetch_chunk_waits_fixed_interval_on_429_until_success() -> None:
    sleeps: list[float] = []
    session = _Session(
        [
            _Response(429),
            _Response(429),
            _Response(429),
            _Response(200, {"downloads": [{"day": "2025-01-01", "downloads": 7}]}),
        ]
    )

    result = _client(session, sleeps).fetch_chunk(
        "@x/y", date(2025, 1, 1), date(2025, 1, 1)
    )

    assert result is not None
    assert result.total_downloads == 7
    assert sleeps == [60, 60, 60]
    assert len(set(session.urls)) == 1


@pytest.mark.parametrize("status_code", [400, 500, 503])
def test_fetch_chunk_raises_on_other_errors(status_code: int) -> None:
    session = _Session([_Response(status_code)])

    with pytest.raises(UpstreamError) as exc_info:
        _client(session).fetch_chunk("@x/y", date(2025, 1, 1), date(2025, 1, 2))
    assert exc_info.value.status_code == status_code


def test_fetch_chunk_raises_on_transport_failure() -> None:
    session = _Session([requests.ConnectionError("connection reset")])

    with pytest.raises(UpstreamError, match="connection reset"):
        _client(session).fetch_chunk("@x/y", date(2025, 1, 1), date(2025, 1, 2))


def test_rate_limit_warning_is_logged_once_per_api(caplog) -> None:
    warnings = RateLimitWarnings()
    session = _Session(
        [
            _Response(429),
            _Response(200, {"downloads": []}),
            _Response(429),
            _Response(200, {"downloads": []}),
        ]
    )
    client = _client(session, warnings=warnings)

    with caplog.at_level(logging.DEBUG, logger="oss_stats.sources.npm_client"):
        client.fetch_chunk("@x/a", date(2025, 1, 1), date(2025, 1, 2))
        client.fetch_chunk("@x/b", date(2025, 1, 1), date(2025, 1, 2))

    levels = [
        record.levelno
        for record in caplog.records
        if "rate limited" in record.getMessage()
    ]
    assert levels == [logging.WARNING, logging.DEBUG]
    assert warnings.has_warned("npm-downloads")

    warnings.reset()
    assert not warnings.has_warned("npm-downloads")


def test_fetch_package_created_reads_registry_time() -> None:
    session = _Session(
        [_Response(200, {"time": {"created": "2019-08-20T10:00:00.000Z"}})]
    )

    assert _client(session).fetch_package_created("@x/y") == date(2019, 8, 20)
    assert session.urls == ["https://registry.npmjs.com/@x%2Fy"]


@pytest.mark.parametrize(
    "response",
    [
        _Response(404),
        _Response(200, {"time": {}}),
        _Response(200, None),
        requests.Timeout("slow"),
    ],
)
def test_fetch_package_created_returns_none_when_unavailable(response) -> None:
    session = _Session([response])

    assert _client(session).fetch_package_created("@x/y") is None


def test_list_org_packages_retries_429_then_lists_names() -> None:
    sleeps: list[float] = []
    session = _Session(
        [
            _Response(429),
            _Response(200, {"@x/b": "write", "@x/a": "write"}),
        ]
    )

    assert _client(session, sleeps).list_org_packages("x") == ["@x/a", "@x/b"]
    assert sleeps == [60]
    assert session.urls[0] == "https://registry.npmjs.org/-/org/x/package"


def test_list_org_packages_gives_up_after_three_rate_limits() -> None:
    sleeps: list[float] = []
    session = _Session([_Response(429), _Response(429), _Response(429)])

    with pytest.raises(UpstreamError) as exc_info:
        _client(session, sleeps).list_org_packages("x")
    assert exc_info.value.status_code == 429
    assert sleeps == [60, 60]
