"""
Local reverse proxy that sends requests for mapped domains to intranet addresses.

The embedded player and page scripts call
``http://127.0.0.1:<port>/?url=<absolute url>``. The target host goes through
``IntranetMapping.rewrite_url`` and the request is forwarded with the same
method. The upstream status, headers and body are mirrored back.

Design notes:
- HLS players fetch segments with bare paths relative to the playlist
  (``/segment_001.ts``). The session remembers the last ``.m3u8`` target and
  resolves such paths against its directory. This is a permissive heuristic:
  any path without a ``url`` parameter is treated as relative.
- Only Accept and User-Agent are forwarded upstream. Host is set to the
  original hostname when the URL was rewritten so virtual hosts still route.
- TLS verification is off for every https upstream. A rewritten host is an
  IP address whose certificate cannot match the original domain. Verification
  of pass-through https targets is relaxed as well, which is a known weakening.
- Upstream failures on rewritten requests are reported back to the mapping so
  the next request picks another address. The failed request is not retried.
"""

from __future__ import annotations

import logging
import re
import threading
import traceback
from http.cookiejar import DefaultCookiePolicy
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn
from typing import Dict, Optional, Tuple
from urllib.parse import parse_qs, quote, unquote, urlsplit

import requests
from requests.structures import CaseInsensitiveDict

from core.intranet_mapping import IntranetMapping, InvalidURLError

LOG = logging.getLogger(__name__)

MANIFEST_EXTENSION = ".m3u8"
UPSTREAM_TIMEOUT_SECONDS = 30
_CHUNK_SIZE = 64 * 1024

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Requested-With",
}

_FORWARDED_HEADERS = ("Accept", "User-Agent")

# The listener answers with HTTP/1.0 and closes after each response, so framing
# headers from the upstream connection do not apply to ours.
_HOP_BY_HOP = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailers", "transfer-encoding", "upgrade",
}

_CLIENT_GONE = (BrokenPipeError, ConnectionResetError, ConnectionAbortedError)

_MALFORMED_ESCAPE_RE = re.compile(r"%(?![0-9A-Fa-f]{2})")


class ProxyRequestError(Exception):
    """A request the proxy rejects before contacting any upstream."""

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status
        self.message = message


class ProxyStartError(RuntimeError):
    """The listener could not be bound."""


def decode_url_component(value: str) -> str:
    """Percent-decode ``value`` once, rejecting malformed escapes and non UTF-8 bytes."""
    m = _MALFORMED_ESCAPE_RE.search(value)
    if m:
        raise ValueError(f"malformed escape sequence at position {m.start()}")
    try:
        return unquote(value, errors="strict")
    except UnicodeDecodeError as e:
        raise ValueError(f"escaped bytes are not valid UTF-8 ({e.reason})") from e


class ProxySession:
    """Per-listener state plus the request resolution logic that uses it."""

    def __init__(self, mapping: IntranetMapping):
        self.mapping = mapping
        self._lock = threading.Lock()
        self._last_manifest_url: Optional[str] = None
        self.http = self._build_http_client()

    @staticmethod
    def _build_http_client() -> requests.Session:
        """Upstream session shared by all handler threads for keep-alive.

        Default headers are cleared and env proxies/netrc ignored so only the
        headers we pick go upstream. Upstream cookies are never stored.
        """
        http = requests.Session()
        http.headers.clear()
        http.trust_env = False
        http.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))
        adapter = requests.adapters.HTTPAdapter(pool_connections=16, pool_maxsize=32)
        http.mount("http://", adapter)
        http.mount("https://", adapter)
        return http

    def close(self) -> None:
        self.http.close()

    @property
    def last_manifest_url(self) -> Optional[str]:
        with self._lock:
            return self._last_manifest_url

    def remember_manifest(self, url: str) -> None:
        with self._lock:
            self._last_manifest_url = url

    def _resolve_relative(self, relative: str) -> str:
        base = self.last_manifest_url
        if not base:
            raise ProxyRequestError(400, "Cannot resolve relative path without base URL")
        parts = urlsplit(base)
        host = parts.netloc.rpartition("@")[2]
        base_dir = parts.path[: parts.path.rfind("/") + 1]
        return f"{parts.scheme}://{host}{base_dir}{relative}"

    def resolve_target(self, raw_path: str) -> str:
        """Turn the inbound request target into the absolute URL to fetch.

        Raises ProxyRequestError (400) when no usable URL can be derived.
        """
        _, _, query = raw_path.partition("?")
        params = parse_qs(query, keep_blank_values=True)
        target = (params.get("url") or [""])[0]

        if not target:
            if raw_path.startswith("/") and not raw_path.startswith("/?"):
                target = self._resolve_relative(raw_path[1:])
            else:
                raise ProxyRequestError(400, "Missing target URL parameter")

        if "%" in target:
            try:
                target = decode_url_component(target)
            except ValueError as e:
                LOG.warning("Invalid URL encoding in %r: %s", target, e)
                raise ProxyRequestError(400, f"Invalid URL encoding: {e}")

        try:
            self.mapping.original_host(target)
        except InvalidURLError as e:
            raise ProxyRequestError(400, f"Invalid target URL: {e}")

        if urlsplit(target).path.endswith(MANIFEST_EXTENSION):
            self.remember_manifest(target)
        return target

    def build_upstream_request(self, target_url: str, inbound_headers) -> Tuple[str, Optional[str], Dict[str, str]]:
        """Return (rewritten_url, original_host, outbound_headers)."""
        rewritten_url = self.mapping.rewrite_url(target_url)
        try:
            original_host = self.mapping.original_host(target_url)
        except InvalidURLError:
            original_host = None

        headers: Dict[str, str] = {}
        for name in _FORWARDED_HEADERS:
            value = inbound_headers.get(name)
            if value:
                headers[name] = value
        if rewritten_url != target_url and original_host:
            headers["Host"] = original_host
        return rewritten_url, original_host, headers

    def report_failure(self, target_url: str, rewritten_url: str) -> bool:
        """Mark the rewritten address as failed. Pass-through requests are ignored."""
        if rewritten_url == target_url:
            return False
        try:
            rewritten_host = urlsplit(rewritten_url).hostname
            original_host = self.mapping.original_host(target_url)
        except (ValueError, InvalidURLError) as e:
            LOG.debug("Not recording failure for %s: %s", rewritten_url, e)
            return False
        if not rewritten_host or not original_host or rewritten_host == original_host:
            return False
        self.mapping.record_failure(rewritten_host, original_host)
        return True


class ProxyRequestHandler(BaseHTTPRequestHandler):
    session: Optional[ProxySession] = None
    timeout_seconds: float = UPSTREAM_TIMEOUT_SECONDS
    server_version = "IntranetProxy/1.0"

    def log_message(self, fmt: str, *args) -> None:
        LOG.debug("IntranetProxy: " + fmt, *args)

    def _send_cors_headers(self) -> None:
        for k, v in CORS_HEADERS.items():
            self.send_header(k, v)

    def _send_text(self, status: int, message: str) -> None:
        body = message.encode("utf-8", "replace")
        self._response_started = True
        self.send_response(status)
        self._send_cors_headers()
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command == "HEAD":
            return
        try:
            self.wfile.write(body)
        except _CLIENT_GONE:
            pass

    def do_OPTIONS(self) -> None:
        self.send_response(200)
        self._send_cors_headers()
        self.send_header("Content-Length", "0")
        self.end_headers()

    def do_GET(self) -> None:
        self._proxy_request()

    def do_HEAD(self) -> None:
        self._proxy_request()

    def do_POST(self) -> None:
        self._proxy_request()

    def do_PUT(self) -> None:
        self._proxy_request()

    def do_DELETE(self) -> None:
        self._proxy_request()

    def do_PATCH(self) -> None:
        self._proxy_request()

    def _read_body(self) -> bytes:
        if "chunked" in (self.headers.get("Transfer-Encoding") or "").lower():
            chunks = []
            while True:
                line = self.rfile.readline()
                size = int(line.split(b";", 1)[0].strip() or b"0", 16)
                if size == 0:
                    # Drain trailers up to the terminating blank line.
                    while self.rfile.readline() not in (b"\r\n", b"\n", b""):
                        pass
                    break
                chunks.append(self.rfile.read(size))
                self.rfile.readline()
            return b"".join(chunks)
        length = int(self.headers.get("Content-Length") or 0)
        return self.rfile.read(length) if length > 0 else b""

    def _proxy_request(self) -> None:
        self._response_started = False
        try:
            self._forward()
        except Exception as e:
            LOG.error("Internal proxy error for %s %s: %s\n%s", self.command, self.path, e, traceback.format_exc())
            if not self._response_started:
                self._send_text(500, f"Internal proxy error: {e}")
            else:
                self.close_connection = True

    def _forward(self) -> None:
        session = self.session
        try:
            target_url = session.resolve_target(self.path)
        except ProxyRequestError as e:
            self._send_text(e.status, e.message)
            return

        rewritten_url, _, headers = session.build_upstream_request(target_url, self.headers)

        body = None
        if self.command in ("POST", "PUT"):
            try:
                body = self._read_body() or None
            except ValueError as e:
                self._send_text(400, f"Invalid request body: {e}")
                return

        try:
            # 3xx goes back to the client; the forced Host must never reach a Location host.
            upstream = session.http.request(
                self.command,
                rewritten_url,
                headers=headers,
                data=body,
                stream=True,
                timeout=self.timeout_seconds,
                verify=not rewritten_url.lower().startswith("https://"),
                allow_redirects=False,
            )
        except requests.RequestException as e:
            LOG.error("Proxy error for %s: %s", rewritten_url, e)
            session.report_failure(target_url, rewritten_url)
            self._send_text(500, f"Proxy error: {e}")
            return
        try:
            self._stream_response(upstream, target_url, rewritten_url)
        finally:
            upstream.close()

    def _stream_response(self, upstream: requests.Response, target_url: str, rewritten_url: str) -> None:
        out_headers = CaseInsensitiveDict(CORS_HEADERS)
        for k, v in upstream.headers.items():
            if k.lower() in _HOP_BY_HOP:
                continue
            out_headers[k] = v

        self._response_started = True
        # send_response() would add our own Server/Date next to the upstream ones.
        self.log_request(upstream.status_code)
        self.send_response_only(upstream.status_code, upstream.reason)
        for k, v in out_headers.items():
            self.send_header(k, v)
        self.end_headers()

        if self.command == "HEAD":
            return
        try:
            # Raw bytes, so Content-Encoding/Content-Length stay truthful.
            for chunk in upstream.raw.stream(_CHUNK_SIZE, decode_content=False):
                if chunk:
                    self.wfile.write(chunk)
        except _CLIENT_GONE:
            LOG.debug("Client disconnected while streaming %s", target_url)
        except Exception as e:
            LOG.error("Upstream stream error for %s: %s", rewritten_url, e)
            session = self.session
            session.report_failure(target_url, rewritten_url)
            self.close_connection = True


class _ThreadingHTTPServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True
    allow_reuse_address = True
    request_queue_size = 256


class IntranetProxy:
    def __init__(
        self,
        mapping: IntranetMapping,
        host: str = "127.0.0.1",
        port: int = 0,
        timeout: float = UPSTREAM_TIMEOUT_SECONDS,
    ):
        self.mapping = mapping
        self.host = host
        self.preferred_port = int(port or 0)
        self.timeout = float(timeout)
        self.session: Optional[ProxySession] = None
        self._server: Optional[_ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._port: Optional[int] = None
        self._lock = threading.Lock()

    @property
    def port(self) -> Optional[int]:
        with self._lock:
            return self._port

    def is_running(self) -> bool:
        with self._lock:
            return self._server is not None and self._thread is not None and self._thread.is_alive()

    def start(self) -> int:
        """Bind and serve in a daemon thread. Returns the bound port.

        Calling start() on a running proxy is a no-op. Raises ProxyStartError
        if the address cannot be bound.
        """
        with self._lock:
            if self._server is not None:
                return self._port

            # The upstream leg deliberately skips verification; do not warn per request.
            requests.packages.urllib3.disable_warnings(requests.packages.urllib3.exceptions.InsecureRequestWarning)

            session = ProxySession(self.mapping)
            handler = type(
                "BoundProxyRequestHandler",
                (ProxyRequestHandler,),
                {"session": session, "timeout_seconds": self.timeout},
            )
            try:
                server = _ThreadingHTTPServer((self.host, self.preferred_port), handler)
            except OSError as e:
                raise ProxyStartError(f"Failed to bind proxy to {self.host}:{self.preferred_port}: {e}") from e

            self.session = session
            self._server = server
            self._port = server.server_address[1]

            def run() -> None:
                try:
                    server.serve_forever(poll_interval=0.25)
                except Exception as e:
                    LOG.warning("IntranetProxy server error: %s\n%s", e, traceback.format_exc())

            self._thread = threading.Thread(target=run, name="IntranetProxy", daemon=True)
            self._thread.start()
            port = self._port

        LOG.info("Intranet proxy started at http://%s:%s/", self.host, port)
        return port

    def stop(self) -> None:
        with self._lock:
            server, thread = self._server, self._thread
            if server is None:
                return
            self._server = None
            self._thread = None
            self._port = None
            session, self.session = self.session, None
        try:
            server.shutdown()
        finally:
            server.server_close()
            if session is not None:
                session.close()
        if thread is not None:
            thread.join(timeout=2.0)
        LOG.info("Intranet proxy stopped")

    @property
    def base_url(self) -> str:
        port = self.port
        if port is None:
            raise RuntimeError("IntranetProxy not started")
        return f"http://{self.host}:{port}"

    def get_proxied_url(self, target_url: str) -> str:
        return f"{self.base_url}/?url={quote(target_url, safe='')}"
