import argparse
import logging
import sys
import threading


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Local intranet reverse proxy")
    parser.add_argument("--config", default=None, help="Path to config.json (default: next to the app)")
    parser.add_argument("--host", default=None, help="Listen address (default from config)")
    parser.add_argument("--port", type=int, default=None, help="Listen port, 0 for any free port")
    parser.add_argument("--disabled", action="store_true", help="Serve as a plain pass-through proxy")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    log = logging.getLogger("main")

    from core.config import ConfigManager
    from core.intranet_mapping import IntranetMapping
    from core.proxy_server import IntranetProxy, ProxyStartError

    config = ConfigManager(args.config)
    mapping = IntranetMapping(
        config.get_mappings(),
        recovery_seconds=config.get("failure_recovery_seconds", 300),
    )
    mapping.set_enabled(not args.disabled)

    proxy = IntranetProxy(
        mapping,
        host=args.host or config.get("proxy_host", "127.0.0.1"),
        port=args.port if args.port is not None else config.get("proxy_port", 0),
        timeout=config.get("upstream_timeout_seconds", 30),
    )
    try:
        proxy.start()
    except ProxyStartError as e:
        log.error("%s", e)
        return 1

    print(f"Proxy listening on {proxy.base_url}/?url=<target>  ({len(mapping.mappings)} mapped domains)")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        proxy.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
