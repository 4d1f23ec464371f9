import logging
import random
import sys
import threading
from collections import Counter
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from core.intranet_mapping import (
    IntranetMapping,
    InvalidURLError,
    MappingEntry,
    MappingKind,
    Strategy,
    load_mappings,
)


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


REGISTRY = {
    "cvideo.example.cn": {"type": "single", "ip": "10.0.34.24"},
    "clive.example.cn": {
        "type": "loadbalance",
        "ips": ["10.1.0.1", "10.1.0.2", "10.1.0.3"],
        "strategy": "round_robin",
    },
    "first.example.cn": {
        "type": "loadbalance",
        "ips": ["10.2.0.1", "10.2.0.2"],
        "strategy": "first_available",
    },
    "rand.example.cn": {
        "type": "loadbalance",
        "ips": ["10.3.0.1", "10.3.0.2", "10.3.0.3"],
        "strategy": "random",
    },
}


def _mapping(clock=None, rng=None):
    m = IntranetMapping(REGISTRY, clock=clock or FakeClock(), rng=rng)
    m.set_enabled(True)
    return m


def test_single_resolves_to_fixed_address_without_state_changes():
    m = _mapping()
    for _ in range(5):
        assert m.resolve("cvideo.example.cn") == "10.0.34.24"
    assert m.failure_count() == 0
    assert m.mappings["cvideo.example.cn"].cursor == 0


def test_unregistered_domain_resolves_to_none():
    assert _mapping().resolve("www.example.com") is None


def test_round_robin_visits_each_address_once_in_order_then_repeats():
    m = _mapping()
    picks = [m.resolve("clive.example.cn") for _ in range(6)]
    assert picks == ["10.1.0.1", "10.1.0.2", "10.1.0.3"] * 2


def test_cursor_stays_in_range_over_live_set():
    m = _mapping()
    m.record_failure("10.1.0.2", "clive.example.cn")
    picks = [m.resolve("clive.example.cn") for _ in range(4)]
    assert picks == ["10.1.0.1", "10.1.0.3", "10.1.0.1", "10.1.0.3"]
    entry = m.mappings["clive.example.cn"]
    assert 0 <= entry.cursor < 2


def test_failed_address_is_excluded_then_recovers_after_window():
    clock = FakeClock()
    m = _mapping(clock=clock)
    m.record_failure("10.2.0.1", "first.example.cn")
    assert m.resolve("first.example.cn") == "10.2.0.2"

    clock.advance(300)
    assert m.is_failed("10.2.0.1", "first.example.cn") is True

    clock.advance(1)
    assert m.resolve("first.example.cn") == "10.2.0.1"
    assert m.failure_count("first.example.cn") == 0


def test_failure_records_are_scoped_to_their_domain():
    m = _mapping()
    m.record_failure("10.2.0.1", "other.example.cn")
    assert m.resolve("first.example.cn") == "10.2.0.1"


def test_record_failure_is_idempotent_upsert():
    clock = FakeClock()
    m = _mapping(clock=clock)
    m.record_failure("10.2.0.1", "first.example.cn")
    clock.advance(200)
    m.record_failure("10.2.0.1", "first.example.cn")
    assert m.failure_count() == 1
    clock.advance(200)
    # Timestamp was refreshed by the second report.
    assert m.is_failed("10.2.0.1", "first.example.cn") is True


def test_all_failed_falls_back_to_full_list_and_clears_records(caplog):
    m = _mapping()
    for ip in ("10.1.0.1", "10.1.0.2", "10.1.0.3"):
        m.record_failure(ip, "clive.example.cn")
    m.record_failure("10.2.0.1", "first.example.cn")

    with caplog.at_level(logging.WARNING, logger="core.intranet_mapping"):
        picked = m.resolve("clive.example.cn")

    assert picked in ("10.1.0.1", "10.1.0.2", "10.1.0.3")
    assert m.failure_count("clive.example.cn") == 0
    assert m.failure_count("first.example.cn") == 1
    assert "All addresses failed" in caplog.text


def test_clear_failures_removes_only_that_domain():
    m = _mapping()
    m.record_failure("10.1.0.1", "clive.example.cn")
    m.record_failure("10.2.0.1", "first.example.cn")
    m.clear_failures("clive.example.cn")
    m.clear_failures("never.example.cn")
    assert m.failure_count("clive.example.cn") == 0
    assert m.failure_count("first.example.cn") == 1


def test_random_strategy_picks_from_live_set_and_keeps_cursor():
    m = _mapping(rng=random.Random(7))
    m.record_failure("10.3.0.2", "rand.example.cn")
    picks = {m.resolve("rand.example.cn") for _ in range(50)}
    assert picks <= {"10.3.0.1", "10.3.0.3"}
    assert m.mappings["rand.example.cn"].cursor == 0


def test_first_available_does_not_move_cursor():
    m = _mapping()
    assert [m.resolve("first.example.cn") for _ in range(3)] == ["10.2.0.1"] * 3
    assert m.mappings["first.example.cn"].cursor == 0


def test_unknown_strategy_uses_round_robin_without_changing_entry(caplog):
    m = IntranetMapping(
        {"x.example.cn": {"type": "loadbalance", "ips": ["10.9.0.1", "10.9.0.2"], "strategy": "least_conn"}}
    )
    with caplog.at_level(logging.WARNING, logger="core.intranet_mapping"):
        picks = [m.resolve("x.example.cn") for _ in range(3)]
    assert picks == ["10.9.0.1", "10.9.0.2", "10.9.0.1"]
    assert m.mappings["x.example.cn"].strategy == "least_conn"
    assert "Unknown load balancing strategy" in caplog.text


def test_empty_candidate_list_resolves_to_none():
    entry = MappingEntry(domain="empty.example.cn", kind=MappingKind.LOAD_BALANCED, addresses=[])
    m = IntranetMapping({"empty.example.cn": entry})
    m.set_enabled(True)
    assert m.resolve("empty.example.cn") is None
    assert m.rewrite_url("https://empty.example.cn/a") == "https://empty.example.cn/a"


@pytest.mark.parametrize(
    "url",
    ["https://cvideo.example.cn/v.mp4", "http://[::1", "not a url", "", "https://clive.example.cn/x"],
)
def test_rewrite_is_identity_when_disabled(url):
    m = IntranetMapping(REGISTRY)
    assert m.rewrite_url(url) == url
    assert m.failure_count() == 0


def test_rewrite_replaces_only_the_host():
    m = _mapping()
    url = "https://user@cvideo.example.cn:8443/path/to/video.mp4?token=a%2Fb#t=10"
    assert m.rewrite_url(url) == "https://user@10.0.34.24:8443/path/to/video.mp4?token=a%2Fb#t=10"


def test_rewrite_brackets_ipv6_addresses():
    m = IntranetMapping({"v6.example.cn": {"type": "single", "ip": "fd00::24"}})
    m.set_enabled(True)
    assert m.rewrite_url("http://v6.example.cn:8080/x") == "http://[fd00::24]:8080/x"


def test_rewrite_unmapped_and_malformed_pass_through():
    m = _mapping()
    assert m.rewrite_url("https://www.example.com/a?b=c") == "https://www.example.com/a?b=c"
    assert m.rewrite_url("http://[::1") == "http://[::1"
    assert m.rewrite_url("relative/path.ts") == "relative/path.ts"


def test_original_host_parses_or_raises():
    m = _mapping()
    assert m.original_host("https://cvideo.example.cn:443/a") == "cvideo.example.cn"
    assert m.original_host("http://:8080/a") is None
    with pytest.raises(InvalidURLError):
        m.original_host("http://[::1")
    with pytest.raises(InvalidURLError):
        m.original_host("/just/a/path")
    with pytest.raises(InvalidURLError):
        m.original_host("http://host:99999/")


def test_load_mappings_skips_unusable_entries(caplog):
    with caplog.at_level(logging.WARNING, logger="core.intranet_mapping"):
        entries = load_mappings(
            {
                "ok.example.cn": {"type": "single", "ip": "10.0.0.1"},
                "noips.example.cn": {"type": "loadbalance", "ips": []},
                "weird.example.cn": {"type": "dns"},
                "named.example.cn": {"type": "single", "ip": "intranet-host"},
            }
        )
    assert set(entries) == {"ok.example.cn", "named.example.cn"}
    assert entries["ok.example.cn"].kind is MappingKind.SINGLE
    assert "non-IP address" in caplog.text


def test_strategy_parse():
    assert Strategy.parse("ROUND_ROBIN") is Strategy.ROUND_ROBIN
    assert Strategy.parse(None) is Strategy.ROUND_ROBIN
    assert Strategy.parse("random") is Strategy.RANDOM
    assert Strategy.parse("weighted") == "weighted"


def test_is_mapped_address_and_network_status():
    m = _mapping()
    assert m.is_mapped_address("10.1.0.3")
    assert m.is_mapped_address("10.0.34.24")
    assert not m.is_mapped_address("8.8.8.8")

    status = m.get_network_status()
    assert status["mode"] == "intranet"
    assert status["enabled"] is True
    assert status["mapping_count"] == len(REGISTRY)
    assert status["mappings"]["clive.example.cn"]["strategy"] == "round_robin"

    m.set_enabled(False)
    assert m.get_network_status()["mode"] == "internet"


def test_concurrent_round_robin_is_evenly_distributed():
    m = _mapping()
    results = []
    results_lock = threading.Lock()

    def worker():
        local = [m.resolve("clive.example.cn") for _ in range(100)]
        with results_lock:
            results.extend(local)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    counts = Counter(results)
    assert counts == {"10.1.0.1": 200, "10.1.0.2": 200, "10.1.0.3": 200}
