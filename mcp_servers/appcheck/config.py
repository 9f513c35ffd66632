from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_BINARY_NAMES: list[str] = ["lightpanda"]

DEFAULT_BINARY_CANDIDATES: list[str] = [
    "/usr/local/bin/lightpanda",
    "/usr/bin/lightpanda",
    "/opt/lightpanda/lightpanda",
]


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name) or default)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name) or default)
    except ValueError:
        return default


@dataclass
class AppcheckConfig:
    binary_path: str | None
    cdp_host: str = "127.0.0.1"
    cdp_port: int = 9222
    app_url: str = "http://localhost:4000"
    log_capacity: int = 1024
    max_restarts: int = 3
    restart_backoff: float = 2.0
    call_timeout: float = 2.0
    connect_timeout: float = 5.0
    settle_scale: float = 1.0
    supervise: bool = True
    serve_args: list[str] = field(default_factory=list)

    @classmethod
    def detect_binary(cls) -> str | None:
        """Locate the browser executable, or None when nothing is installed."""
        env_path = os.environ.get("APPCHECK_BROWSER_BINARY")
        if env_path:
            path = expand_path(env_path)
            if os.access(path, os.X_OK):
                return path
            found = shutil.which(env_path)
            return found
        for name in DEFAULT_BINARY_NAMES:
            found = shutil.which(name)
            if found:
                return found
        for candidate in DEFAULT_BINARY_CANDIDATES:
            path = Path(candidate)
            # A present but non-executable file would fail at spawn time.
            if path.exists() and os.access(str(path), os.X_OK):
                return str(path)
        return None

    @classmethod
    def from_env(cls) -> AppcheckConfig:
        host = (os.environ.get("APPCHECK_CDP_HOST") or "127.0.0.1").strip()
        app_url = (os.environ.get("APPCHECK_APP_URL") or "http://localhost:4000").strip().rstrip("/")
        args_raw = os.environ.get("APPCHECK_SERVE_ARGS", "")
        serve_args = [arg for arg in args_raw.split(",") if arg.strip()]
        return cls(
            binary_path=cls.detect_binary(),
            cdp_host=host,
            cdp_port=_env_int("APPCHECK_CDP_PORT", 9222),
            app_url=app_url,
            log_capacity=max(1, _env_int("APPCHECK_LOG_CAPACITY", 1024)),
            max_restarts=max(0, _env_int("APPCHECK_MAX_RESTARTS", 3)),
            restart_backoff=max(0.0, _env_float("APPCHECK_RESTART_BACKOFF", 2.0)),
            call_timeout=max(0.1, _env_float("APPCHECK_CALL_TIMEOUT", 2.0)),
            connect_timeout=min(5.0, max(0.1, _env_float("APPCHECK_CONNECT_TIMEOUT", 5.0))),
            settle_scale=max(0.0, _env_float("APPCHECK_SETTLE_SCALE", 1.0)),
            supervise=os.environ.get("APPCHECK_SUPERVISE", "1") != "0",
            serve_args=serve_args,
        )

    def build_serve_command(self, binary: str | None = None) -> list[str]:
        bin_path = binary or self.binary_path
        if not bin_path:
            raise ValueError("No browser binary configured")
        return [bin_path, "serve", "--host", self.cdp_host, "--port", str(self.cdp_port), *self.serve_args]

    def page_url(self, path: str) -> str:
        path = (path or "").strip()
        if path.startswith(("http://", "https://", "about:")):
            return path
        if not path.startswith("/"):
            path = "/" + path
        return self.app_url + path
