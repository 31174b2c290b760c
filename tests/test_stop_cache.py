import threading
from unittest.mock import Mock

import pytest
import requests

import naolametric as mod


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def _mock_response(status_code, json_data=None):
    response = Mock()
    response.status_code = status_code
    if json_data is not None:
        response.json.return_value = json_data
    else:
        response.json.side_effect = ValueError("Invalid JSON")
    return response


def test_ttl_lifecycle():
    clock = FakeClock()
    cache = mod.StopCache(lambda: [mod.StopRecord("COMM", "Commerce")], ttl_sec=3600, clock=clock)
    assert cache.is_valid() is False
    assert cache.snapshot().fetched_at is None

    cache.refresh()
    assert cache.is_valid() is True

    clock.now += 3599
    assert cache.is_valid() is True
    clock.now += 1
    assert cache.is_valid() is False


def test_failed_refresh_keeps_snapshot():
    clock = FakeClock()
    results = [[mod.StopRecord("COMM", "Commerce")]]

    def fetcher():
        if not results:
            raise mod.UpstreamError(504, "Naolib request failed")
        return results.pop()

    cache = mod.StopCache(fetcher, clock=clock)
    cache.refresh()
    before = cache.snapshot()

    clock.now += 4000
    with pytest.raises(mod.UpstreamError):
        cache.refresh()
    assert cache.snapshot() is before
    assert cache.is_valid() is False

    # ensure_fresh swallows the same failure
    cache.ensure_fresh()
    assert cache.snapshot() is before


def test_cold_refresh_failure_stays_cold():
    def down():
        raise mod.UpstreamError(504, "Naolib request failed")

    cache = mod.StopCache(down)
    cache.ensure_fresh()
    assert cache.snapshot().fetched_at is None
    assert cache.is_valid() is False


def test_ensure_fresh_only_fetches_when_stale():
    clock = FakeClock()
    calls = []

    def fetcher():
        calls.append(clock.now)
        return [mod.StopRecord("COMM", "Commerce")]

    cache = mod.StopCache(fetcher, ttl_sec=60, clock=clock)
    cache.ensure_fresh()
    cache.ensure_fresh()
    assert len(calls) == 1

    clock.now += 60
    cache.ensure_fresh()
    assert len(calls) == 2


def test_is_valid_code_fail_open_and_case_insensitive():
    cache = mod.StopCache(lambda: [])
    assert cache.is_valid_code("ANYTHING") is True
    cache.refresh()
    assert cache.is_valid_code("ANYTHING") is True

    cache = mod.StopCache(lambda: [mod.StopRecord("Comm", "Commerce"), mod.StopRecord("GSNO", "Gare Nord")])
    cache.refresh()
    assert cache.is_valid_code("COMM") is True
    assert cache.is_valid_code("gsno") is True
    assert cache.is_valid_code("CRQU") is False


def test_lock_timeout_raises_cache_error():
    cache = mod.StopCache(lambda: [], lock_timeout_sec=0.01)
    cache._lock.acquire()
    try:
        with pytest.raises(mod.CacheError):
            cache.snapshot()
    finally:
        cache._lock.release()


def test_readers_never_see_partial_snapshot():
    big = [mod.StopRecord(f"S{i:04d}", f"Stop {i}") for i in range(2000)]
    cache = mod.StopCache(lambda: big)
    sizes = set()

    def reader():
        for _ in range(200):
            sizes.add(len(cache.snapshot().stops))

    threads = [threading.Thread(target=reader) for _ in range(4)]
    for t in threads:
        t.start()
    for _ in range(5):
        cache.refresh()
    for t in threads:
        t.join()
    assert sizes <= {0, 2000}


def test_fetch_stops_parses_records(monkeypatch):
    get = Mock(return_value=_mock_response(200, [{"codeLieu": "COMM", "libelle": "Commerce"}]))
    monkeypatch.setattr(mod.session, "get", get)

    assert mod.fetch_stops() == [mod.StopRecord("COMM", "Commerce")]
    url = get.call_args.args[0]
    assert url.endswith("/arrets.json")
    assert get.call_args.kwargs["timeout"] == (mod.STOPS_CONNECT_TIMEOUT_SEC, mod.STOPS_READ_TIMEOUT_SEC)


def test_fetch_departures_parses_passages(monkeypatch):
    payload = [
        {"sens": 1, "terminus": "Beaujoire", "temps": "2 mn", "ligne": {"numLigne": "1"}},
        {"sens": 2, "terminus": "François Mitterrand", "temps": "", "ligne": {"numLigne": "1"}},
    ]
    get = Mock(return_value=_mock_response(200, payload))
    monkeypatch.setattr(mod.session, "get", get)

    passages = mod.fetch_departures("COMM")
    assert passages == [
        mod.Passage("1", 1, "Beaujoire", "2 mn"),
        mod.Passage("1", 2, "François Mitterrand", ""),
    ]
    assert get.call_args.args[0].endswith("/tempsattente.json/COMM")
    assert get.call_args.kwargs["timeout"] == (
        mod.DEPARTURES_CONNECT_TIMEOUT_SEC,
        mod.DEPARTURES_READ_TIMEOUT_SEC,
    )


@pytest.mark.parametrize(
    "response",
    [
        _mock_response(500, []),
        _mock_response(404, []),
        _mock_response(200, None),
        _mock_response(200, {"error": "nope"}),
        _mock_response(200, [{"sens": 1}]),
    ],
)
def test_fetch_departures_failures(monkeypatch, response):
    monkeypatch.setattr(mod.session, "get", Mock(return_value=response))
    with pytest.raises(mod.UpstreamError):
        mod.fetch_departures("COMM")


def test_network_failure_is_upstream_error(monkeypatch):
    monkeypatch.setattr(mod.session, "get", Mock(side_effect=requests.Timeout("read timed out")))
    with pytest.raises(mod.UpstreamError) as excinfo:
        mod.fetch_stops()
    assert excinfo.value.status == 504


def test_refresh_never_rolls_timestamp_back():
    clock = FakeClock(100.0)
    cache = mod.StopCache(lambda: [mod.StopRecord("COMM", "Commerce")], clock=clock)
    cache.refresh()

    clock.now = 50.0
    cache.refresh()
    assert cache.snapshot().fetched_at == 100.0
