"""
Domain -> intranet address mapping with load balancing and failure tracking.

A fixed registry maps public domain names to one or more internal addresses.
When intranet mode is enabled, URLs whose host is registered get the host
swapped for a selected address; everything else passes through untouched.

Design notes:
- One RLock guards the round-robin cursors and the failure map; selection both
  reads and mutates them.
- Failures expire lazily: a record older than the recovery window is removed
  the next time it is looked at. There is no background sweeper.
"""

from __future__ import annotations

import copy
import ipaddress
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import SplitResult, urlsplit, urlunsplit

LOG = logging.getLogger(__name__)

FAILURE_RECOVERY_SECONDS = 5 * 60


class InvalidURLError(ValueError):
    """Raised when a URL cannot be parsed as an absolute URL."""


class MappingKind(Enum):
    SINGLE = "single"
    LOAD_BALANCED = "loadbalance"


class Strategy(Enum):
    ROUND_ROBIN = "round_robin"
    RANDOM = "random"
    FIRST_AVAILABLE = "first_available"

    @classmethod
    def parse(cls, value) -> Union["Strategy", str]:
        """Return the matching member, or the raw value when it names none."""
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.ROUND_ROBIN
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return str(value)


@dataclass
class MappingEntry:
    domain: str
    kind: MappingKind
    address: Optional[str] = None
    addresses: List[str] = field(default_factory=list)
    # An unrecognised strategy stays a plain string so selection can notice it.
    strategy: Union[Strategy, str] = Strategy.ROUND_ROBIN
    cursor: int = 0

    @classmethod
    def single(cls, domain: str, address: str) -> "MappingEntry":
        return cls(domain=domain, kind=MappingKind.SINGLE, address=address)

    @classmethod
    def load_balanced(cls, domain: str, addresses: List[str], strategy=Strategy.ROUND_ROBIN) -> "MappingEntry":
        return cls(
            domain=domain,
            kind=MappingKind.LOAD_BALANCED,
            addresses=list(addresses),
            strategy=Strategy.parse(strategy),
        )

    def all_addresses(self) -> List[str]:
        if self.kind is MappingKind.SINGLE:
            return [self.address] if self.address else []
        return list(self.addresses)

    def to_dict(self) -> dict:
        if self.kind is MappingKind.SINGLE:
            return {"type": MappingKind.SINGLE.value, "ip": self.address}
        strategy = self.strategy.value if isinstance(self.strategy, Strategy) else self.strategy
        return {
            "type": MappingKind.LOAD_BALANCED.value,
            "ips": list(self.addresses),
            "strategy": strategy,
            "current_index": self.cursor,
        }


def is_valid_ip(address: str) -> bool:
    try:
        ipaddress.ip_address(str(address))
        return True
    except ValueError:
        return False


def load_mappings(raw: Optional[Dict[str, dict]]) -> Dict[str, MappingEntry]:
    """Build registry entries from the config format.

    Accepts ``{"type": "single", "ip": ...}`` and
    ``{"type": "loadbalance", "ips": [...], "strategy": ...}`` per domain.
    Entries that cannot be used are logged and skipped.
    """
    entries: Dict[str, MappingEntry] = {}
    for domain, spec in (raw or {}).items():
        if not isinstance(spec, dict):
            LOG.warning("Ignoring mapping for %s: expected an object, got %r", domain, spec)
            continue
        kind = str(spec.get("type", "")).strip().lower()
        if kind == MappingKind.SINGLE.value:
            address = spec.get("ip")
            if not address:
                LOG.warning("Ignoring single mapping for %s without an address", domain)
                continue
            entry = MappingEntry.single(domain, str(address))
        elif kind in (MappingKind.LOAD_BALANCED.value, "loadbalanced", "load_balanced"):
            addresses = [str(a) for a in (spec.get("ips") or []) if a]
            if not addresses:
                LOG.warning("Ignoring load-balanced mapping for %s without addresses", domain)
                continue
            entry = MappingEntry.load_balanced(domain, addresses, spec.get("strategy"))
        else:
            LOG.warning("Ignoring mapping for %s: unknown type %r", domain, spec.get("type"))
            continue

        for address in entry.all_addresses():
            if not is_valid_ip(address):
                LOG.warning("Mapping for %s uses a non-IP address: %s", domain, address)
        entries[domain] = entry
    return entries


def _split_absolute(url: str) -> SplitResult:
    try:
        parts = urlsplit(url)
        # Touch .port so an out-of-range or non-numeric port fails here.
        parts.port
    except (ValueError, TypeError, AttributeError) as e:
        raise InvalidURLError(f"Invalid URL {url!r}: {e}") from e
    if not parts.scheme or not parts.netloc:
        raise InvalidURLError(f"Invalid URL {url!r}: not an absolute URL")
    return parts


def _replace_host(parts: SplitResult, new_host: str) -> str:
    host = f"[{new_host}]" if ":" in new_host and not new_host.startswith("[") else new_host
    netloc = parts.netloc
    userinfo = ""
    if "@" in netloc:
        userinfo, _, netloc = netloc.rpartition("@")
        userinfo += "@"
    port = f":{parts.port}" if parts.port is not None else ""
    return urlunsplit((parts.scheme, f"{userinfo}{host}{port}", parts.path, parts.query, parts.fragment))


class IntranetMapping:
    def __init__(
        self,
        mappings: Optional[Dict[str, Union[MappingEntry, dict]]] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
        recovery_seconds: float = FAILURE_RECOVERY_SECONDS,
    ):
        self._lock = threading.RLock()
        self._clock = clock
        self._rng = rng or random.Random()
        self.recovery_seconds = float(recovery_seconds)
        self._enabled = False
        # (domain, address) -> failed_at
        self._failures: Dict[Tuple[str, str], float] = {}
        self.mappings: Dict[str, MappingEntry] = {}
        if mappings:
            self.update_mappings(mappings)

    def update_mappings(self, mappings: Dict[str, Union[MappingEntry, dict]]) -> None:
        built: Dict[str, MappingEntry] = {}
        raw: Dict[str, dict] = {}
        for domain, value in mappings.items():
            if isinstance(value, MappingEntry):
                built[domain] = value
            else:
                raw[domain] = value
        built.update(load_mappings(raw))
        with self._lock:
            self.mappings = built
            self._failures.clear()

    # -- toggle --

    def set_enabled(self, enabled: bool) -> None:
        with self._lock:
            self._enabled = bool(enabled)
        LOG.info("Intranet mode %s", "enabled" if enabled else "disabled")

    def is_enabled(self) -> bool:
        with self._lock:
            return self._enabled

    # -- failure tracking --

    def record_failure(self, address: str, domain: str) -> None:
        with self._lock:
            self._failures[(domain, address)] = self._clock()
        LOG.warning("Marked address as failed: %s for domain: %s", address, domain)

    def is_failed(self, address: str, domain: str) -> bool:
        with self._lock:
            failed_at = self._failures.get((domain, address))
            if failed_at is None:
                return False
            if self._clock() - failed_at > self.recovery_seconds:
                del self._failures[(domain, address)]
                LOG.info("Auto-recovered failed address: %s for domain: %s", address, domain)
                return False
            return True

    def clear_failures(self, domain: str) -> None:
        with self._lock:
            stale = [key for key in self._failures if key[0] == domain]
            for key in stale:
                del self._failures[key]
        if stale:
            LOG.info("Cleared %d failed address(es) for domain: %s", len(stale), domain)

    def failure_count(self, domain: Optional[str] = None) -> int:
        with self._lock:
            if domain is None:
                return len(self._failures)
            return sum(1 for key in self._failures if key[0] == domain)

    # -- selection --

    def resolve(self, domain: str) -> Optional[str]:
        """Return the address to use for ``domain``, or None if it is not mapped."""
        with self._lock:
            entry = self.mappings.get(domain)
            if entry is None:
                return None
            if entry.kind is MappingKind.SINGLE:
                return entry.address
            return self._select_load_balanced(entry)

    def _select_load_balanced(self, entry: MappingEntry) -> Optional[str]:
        candidates = entry.addresses
        if not candidates:
            LOG.warning("No addresses available for load-balanced domain: %s", entry.domain)
            return None

        live = [a for a in candidates if not self.is_failed(a, entry.domain)]
        if not live:
            LOG.warning("All addresses failed for domain: %s, using the full list", entry.domain)
            self.clear_failures(entry.domain)
            live = list(candidates)
        return self._select_by_strategy(entry, live)

    def _select_by_strategy(self, entry: MappingEntry, candidates: List[str]) -> str:
        strategy = entry.strategy
        if strategy is Strategy.RANDOM:
            return self._rng.choice(candidates)
        if strategy is Strategy.FIRST_AVAILABLE:
            return candidates[0]
        if strategy is not Strategy.ROUND_ROBIN:
            LOG.warning("Unknown load balancing strategy %r for %s, using round_robin", strategy, entry.domain)

        address = candidates[entry.cursor % len(candidates)]
        entry.cursor = (entry.cursor + 1) % len(candidates)
        return address

    # -- URL handling --

    def rewrite_url(self, url: str) -> str:
        if not self.is_enabled():
            return url

        try:
            parts = _split_absolute(url)
        except InvalidURLError as e:
            LOG.warning("Error rewriting URL: %s", e)
            return url

        hostname = parts.hostname
        if not hostname:
            return url
        address = self.resolve(hostname)
        if not address:
            return url

        LOG.debug("Rewriting URL: %s -> %s", hostname, address)
        return _replace_host(parts, address)

    def original_host(self, url: str) -> Optional[str]:
        """Hostname of ``url``; raises InvalidURLError if it is not well formed."""
        return _split_absolute(url).hostname

    # -- reporting --

    def is_mapped_address(self, host: str) -> bool:
        if not host:
            return False
        host = host.strip("[]")
        with self._lock:
            return any(host in entry.all_addresses() for entry in self.mappings.values())

    def get_network_status(self) -> dict:
        with self._lock:
            return {
                "mode": "intranet" if self._enabled else "internet",
                "enabled": self._enabled,
                "mapping_count": len(self.mappings),
                "mappings": copy.deepcopy({d: e.to_dict() for d, e in self.mappings.items()}),
            }
