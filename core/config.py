import copy
import json
import logging
import os
import sys

LOG = logging.getLogger(__name__)

# When frozen (PyInstaller) use the exe directory; otherwise use the directory
# of the main script so config.json stays alongside the app regardless of
# where the user launches it from.
if getattr(sys, 'frozen', False):
    APP_DIR = os.path.dirname(sys.executable)
else:
    APP_DIR = os.path.dirname(os.path.abspath(sys.argv[0]))

CONFIG_FILE = os.path.join(APP_DIR, "config.json")


def _lb(*ips, strategy="round_robin"):
    return {"type": "loadbalance", "ips": list(ips), "strategy": strategy}


def _single(ip):
    return {"type": "single", "ip": ip}


DEFAULT_CONFIG = {
    "intranet_mode": False,
    "proxy_host": "127.0.0.1",
    "proxy_port": 0,  # 0 => let the OS pick a free port
    "upstream_timeout_seconds": 30,
    "failure_recovery_seconds": 300,
    "intranet_mappings": {
        "cbiz.yanhekt.cn": _lb("10.0.34.22", "10.0.34.21"),
        # Live streaming servers
        "clive8.yanhekt.cn": _lb("10.1.233.208", "10.1.233.201", "10.1.233.210",
                                 "10.1.233.207", "10.1.233.209", "10.1.233.206"),
        "clive9.yanhekt.cn": _lb("10.1.233.206", "10.1.233.207", "10.1.233.210",
                                 "10.1.233.208", "10.1.233.209", "10.1.233.201"),
        "clive10.yanhekt.cn": _lb("10.1.233.209", "10.1.233.208", "10.1.233.210",
                                  "10.1.233.207", "10.1.233.201", "10.1.233.206"),
        "clive11.yanhekt.cn": _lb("10.1.233.210", "10.1.233.207", "10.1.233.208",
                                  "10.1.233.209", "10.1.233.201", "10.1.233.206"),
        "clive12.yanhekt.cn": _lb("10.1.233.208", "10.1.233.209", "10.1.233.201",
                                  "10.1.233.206", "10.1.233.210", "10.1.233.207"),
        "clive13.yanhekt.cn": _lb("10.1.233.210", "10.1.233.207", "10.1.233.209",
                                  "10.1.233.206", "10.1.233.208", "10.1.233.201"),
        "clive14.yanhekt.cn": _single("10.0.34.207"),
        "clive15.yanhekt.cn": _single("10.0.34.208"),
        # Recorded video server
        "cvideo.yanhekt.cn": _single("10.0.34.24"),
    },
}


class ConfigManager:
    def __init__(self, config_file=None):
        self.config_file = config_file
        self.config = self.load_config()

    def _path(self):
        # Resolve lazily so tests can patch CONFIG_FILE.
        return self.config_file or CONFIG_FILE

    def load_config(self):
        path = self._path()
        if os.path.exists(path):
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    loaded = json.load(f)
                    return self._apply_defaults(loaded)
            except Exception as e:
                LOG.warning("Error loading config %s: %s", path, e)
        return copy.deepcopy(DEFAULT_CONFIG)

    def _apply_defaults(self, cfg: dict) -> dict:
        """
        Merge any missing default keys into an existing config without clobbering
        user settings. The mapping registry is taken as a whole: a user-supplied
        registry replaces the default one instead of being merged into it.
        """
        def merge(defaults, target):
            for key, val in defaults.items():
                if key == "intranet_mappings":
                    if not isinstance(target.get(key), dict):
                        target[key] = copy.deepcopy(val)
                    continue
                if isinstance(val, dict):
                    if key not in target or not isinstance(target.get(key), dict):
                        target[key] = {}
                    merge(val, target[key])
                else:
                    target.setdefault(key, val)
        merged = cfg if isinstance(cfg, dict) else {}
        merge(DEFAULT_CONFIG, merged)
        return merged

    def save_config(self):
        path = self._path()
        try:
            with open(path, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, indent=4)
        except Exception as e:
            LOG.warning("Error saving config %s: %s", path, e)

    def get(self, key, default=None):
        return self.config.get(key, default)

    def set(self, key, value):
        self.config[key] = value
        self.save_config()

    def get_mappings(self):
        return self.config.get("intranet_mappings", {})
