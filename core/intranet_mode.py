"""Turns intranet mode on and off and owns the proxy listener while it is on."""

import logging
import threading
from typing import Optional
from urllib.parse import urlsplit

from core.intranet_mapping import IntranetMapping
from core.proxy_server import IntranetProxy, ProxyStartError, UPSTREAM_TIMEOUT_SECONDS

LOG = logging.getLogger(__name__)


class IntranetMode:
    def __init__(self, config_manager, mapping: Optional[IntranetMapping] = None):
        self.config_manager = config_manager
        self.mapping = mapping
        self.proxy: Optional[IntranetProxy] = None
        self._lock = threading.RLock()

    def _build_mapping(self) -> IntranetMapping:
        return IntranetMapping(
            self.config_manager.get_mappings(),
            recovery_seconds=self.config_manager.get("failure_recovery_seconds", 300),
        )

    def _start_proxy(self) -> int:
        if self.proxy is None:
            self.proxy = IntranetProxy(
                self.mapping,
                host=self.config_manager.get("proxy_host", "127.0.0.1"),
                port=self.config_manager.get("proxy_port", 0),
                timeout=self.config_manager.get("upstream_timeout_seconds", UPSTREAM_TIMEOUT_SECONDS),
            )
        try:
            return self.proxy.start()
        except ProxyStartError:
            self.proxy = None
            raise

    def _stop_proxy(self) -> None:
        if self.proxy is not None:
            self.proxy.stop()
            self.proxy = None

    def initialize(self) -> None:
        """Apply the persisted setting. A bind failure is logged, not raised."""
        with self._lock:
            if self.mapping is None:
                self.mapping = self._build_mapping()
            enabled = bool(self.config_manager.get("intranet_mode", False))
            self.mapping.set_enabled(enabled)
            if not enabled:
                return
            LOG.info("Intranet mode is enabled, starting proxy server...")
            try:
                port = self._start_proxy()
                LOG.info("Proxy server started on port %s", port)
            except ProxyStartError as e:
                LOG.error("Failed to start proxy server: %s", e)

    def toggle(self, enabled: bool) -> dict:
        with self._lock:
            LOG.info("Toggling intranet mode: %s", enabled)
            try:
                self.config_manager.set("intranet_mode", bool(enabled))
                if self.mapping is None:
                    self.mapping = self._build_mapping()
                self.mapping.set_enabled(enabled)
                if enabled:
                    self._start_proxy()
                else:
                    self._stop_proxy()
                return {"success": True}
            except ProxyStartError as e:
                LOG.error("Error toggling intranet mode: %s", e)
                return {"success": False, "error": str(e)}

    def get_status(self) -> dict:
        with self._lock:
            if self.mapping is None:
                return {"enabled": False, "status": "Not initialized", "proxy_port": None}
            return {
                "enabled": self.mapping.is_enabled(),
                "status": self.mapping.get_network_status(),
                "proxy_port": self.proxy.port if self.proxy is not None else None,
            }

    def get_proxied_url(self, target_url: str) -> str:
        """URL the client should load: proxied while the listener runs, unchanged otherwise."""
        with self._lock:
            if self.proxy is None or not self.proxy.is_running():
                return target_url
            return self.proxy.get_proxied_url(target_url)

    def should_trust_certificate(self, url: str) -> bool:
        """Whether a certificate error for ``url`` comes from a substituted intranet address."""
        with self._lock:
            mapping = self.mapping
        if mapping is None or not mapping.is_enabled():
            return False
        try:
            host = urlsplit(url).hostname
        except ValueError:
            return False
        if host and mapping.is_mapped_address(host):
            LOG.info("Bypassing certificate error for intranet address: %s", host)
            return True
        return False

    def shutdown(self) -> None:
        with self._lock:
            self._stop_proxy()
