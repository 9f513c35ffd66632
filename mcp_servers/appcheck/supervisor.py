"""Keeps one headless browser listening on the control port.

The supervisor is a small state machine driven by three events: init,
child exit, and the restart bound being reached. All transitions run on a
single control thread, so the restart counter is never raced and two
children are never launched for the same port.

    NOT_STARTED -> INERT                      (no binary, or port already live)
    NOT_STARTED -> STARTING -> RUNNING
    RUNNING -> RESTARTING -> RUNNING | INERT  (child exited; port re-probed)
    RUNNING -> GIVING_UP                      (child exited, restarts exhausted)
"""

from __future__ import annotations

import logging
import socket
import subprocess
import threading
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from typing import IO, Any

from .config import AppcheckConfig
from .errors import ProcessLaunchError
from .log_capture import INTERNAL_EXTRA

logger = logging.getLogger("mcp.appcheck.supervisor")


class SupervisorState(str, Enum):
    NOT_STARTED = "not_started"
    INERT = "inert"
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    GIVING_UP = "giving_up"
    STOPPED = "stopped"


TERMINAL_STATES = frozenset({SupervisorState.INERT, SupervisorState.GIVING_UP, SupervisorState.STOPPED})


def port_listening(host: str, port: int, timeout: float = 0.2) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(timeout)
        try:
            return sock.connect_ex((host, port)) == 0
        except OSError:
            return False


def spawn_browser(command: list[str]) -> subprocess.Popen:
    # stderr is merged so a single drain thread keeps the pipe from filling up.
    return subprocess.Popen(
        command,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
    )


@dataclass
class BrowserProcess:
    process: Any
    binary: str
    restarts: int = 0

    @property
    def pid(self) -> int | None:
        return getattr(self.process, "pid", None)


class BrowserSupervisor:
    STOP_TIMEOUT = 2.0

    def __init__(
        self,
        config: AppcheckConfig | None = None,
        *,
        spawn: Callable[[list[str]], Any] | None = None,
        port_probe: Callable[[], bool] | None = None,
        sleep: Callable[[float], Any] | None = None,
        launch_pause: float = 0.5,
    ) -> None:
        self.config = config or AppcheckConfig.from_env()
        self.binary = self.config.binary_path
        self.max_restarts = int(self.config.max_restarts)
        self.restart_backoff = float(self.config.restart_backoff)
        self.launch_pause = float(launch_pause)
        self._spawn = spawn or spawn_browser
        self._probe = port_probe or (lambda: port_listening(self.config.cdp_host, self.config.cdp_port))
        # Default sleep wakes early when stop() is called.
        self._sleep = sleep or self._stop_wait

        self.browser: BrowserProcess | None = None
        self.launches = 0
        self.last_error: str | None = None
        self._state = SupervisorState.NOT_STARTED
        self._state_lock = threading.Lock()
        self._stop = threading.Event()
        # Guards the handoff of a new child against stop() reading the handle.
        self._proc_lock = threading.Lock()
        self._thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SupervisorState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: SupervisorState, reason: str = "") -> None:
        with self._state_lock:
            previous = self._state
            self._state = state
        if previous != state:
            logger.info("browser supervisor %s -> %s %s", previous.value, state.value, reason, extra=INTERNAL_EXTRA)

    def _stop_wait(self, seconds: float) -> None:
        self._stop.wait(max(0.0, float(seconds)))

    @property
    def restarts(self) -> int:
        return self.browser.restarts if self.browser else 0

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "binary": self.binary,
            "port": self.config.cdp_port,
            "pid": self.browser.pid if self.browser else None,
            "restarts": self.restarts,
            "launches": self.launches,
            "last_error": self.last_error,
        }

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def initialize(self) -> SupervisorState:
        """Init event: stay inert, or launch the first child."""
        if self.state != SupervisorState.NOT_STARTED:
            return self.state
        if not self.binary:
            self._set_state(SupervisorState.INERT, "(no browser binary on PATH)")
            return self.state
        if self._probe():
            self._set_state(SupervisorState.INERT, f"(port {self.config.cdp_port} already has a listener)")
            return self.state

        self._set_state(SupervisorState.STARTING)
        try:
            process = self._launch()
        except ProcessLaunchError as exc:
            self.last_error = str(exc)
            logger.error("%s", exc, extra=INTERNAL_EXTRA)
            self._set_state(SupervisorState.GIVING_UP, "(launch failed)")
            return self.state
        if not self._adopt(process):
            return self._discard(process)
        self._set_state(SupervisorState.RUNNING)
        return self.state

    def on_exit(self, status: int | None) -> SupervisorState:
        """Child-exit event: restart with backoff, defer to a new listener, or give up."""
        if self._stop.is_set():
            self._set_state(SupervisorState.STOPPED)
            return self.state

        browser = self.browser
        if browser is None or self.state != SupervisorState.RUNNING:
            return self.state

        logger.warning(
            "browser exited with status %s (restarts=%d/%d)",
            status,
            browser.restarts,
            self.max_restarts,
            extra=INTERNAL_EXTRA,
        )
        if browser.restarts >= self.max_restarts:
            self.last_error = f"browser exited {browser.restarts + 1} times; restart limit reached"
            self._set_state(SupervisorState.GIVING_UP, "(restart limit reached)")
            return self.state

        self._set_state(SupervisorState.RESTARTING)
        self._sleep(self.restart_backoff)
        if self._stop.is_set():
            self._set_state(SupervisorState.STOPPED)
            return self.state
        if self._probe():
            self._set_state(SupervisorState.INERT, "(another process took over the port)")
            return self.state

        try:
            process = self._launch()
        except ProcessLaunchError as exc:
            self.last_error = str(exc)
            logger.error("%s", exc, extra=INTERNAL_EXTRA)
            self._set_state(SupervisorState.GIVING_UP, "(relaunch failed)")
            return self.state
        if not self._adopt(process):
            return self._discard(process)
        browser.restarts += 1
        self._set_state(SupervisorState.RUNNING, f"(restart {browser.restarts})")
        return self.state

    # ------------------------------------------------------------------
    # Process handling
    # ------------------------------------------------------------------

    def _launch(self) -> Any:
        command = self.config.build_serve_command(self.binary)
        try:
            process = self._spawn(command)
        except (OSError, ValueError) as exc:
            raise ProcessLaunchError(command, str(exc)) from exc
        self.launches += 1
        self._start_output_drain(process)
        logger.info("launched %s (pid=%s)", " ".join(command), getattr(process, "pid", None), extra=INTERNAL_EXTRA)
        # No readiness handshake: the protocol client's connect probe is the readiness check.
        if self.launch_pause > 0:
            self._sleep(self.launch_pause)
        return process

    def _adopt(self, process: Any) -> bool:
        """Make `process` the owned child unless stop() already ran."""
        with self._proc_lock:
            if self._stop.is_set():
                return False
            if self.browser is None:
                self.browser = BrowserProcess(process=process, binary=self.binary)
            else:
                self.browser.process = process
            return True

    def _discard(self, process: Any) -> SupervisorState:
        # Launched while stop() was running; nobody else will reap it.
        self._terminate(process, self.STOP_TIMEOUT)
        self._set_state(SupervisorState.STOPPED, "(stopped during launch)")
        return self.state

    @staticmethod
    def _terminate(proc: Any, timeout: float) -> bool:
        if proc is None or proc.poll() is not None:
            return False
        with suppress(Exception):
            proc.terminate()
        try:
            proc.wait(timeout=max(0.1, float(timeout)))
        except subprocess.TimeoutExpired:
            with suppress(Exception):
                proc.kill()
            with suppress(Exception):
                proc.wait(timeout=max(0.1, float(timeout)))
        return True

        return process

    def _start_output_drain(self, process: Any) -> None:
        stream = getattr(process, "stdout", None)
        if stream is None:
            return
        threading.Thread(
            target=self._drain_output,
            args=(stream,),
            name="appcheck-browser-output",
            daemon=True,
        ).start()

    @staticmethod
    def _drain_output(stream: IO[bytes]) -> None:
        try:
            for line in iter(stream.readline, b""):
                logger.debug("browser: %s", line.decode(errors="replace").rstrip(), extra=INTERNAL_EXTRA)
        except (OSError, ValueError):
            pass
        finally:
            with suppress(OSError, ValueError):
                stream.close()

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    def run(self) -> SupervisorState:
        """Run until a terminal state. Blocks on the child between events."""
        self.initialize()
        while self.state == SupervisorState.RUNNING and self.browser is not None:
            status = self.browser.process.wait()
            self.on_exit(status)
        return self.state

    def start(self) -> BrowserSupervisor:
        if self._thread is not None and self._thread.is_alive():
            return self
        self._thread = threading.Thread(target=self.run, name="appcheck-supervisor", daemon=True)
        self._thread.start()
        return self

    def stop(self, *, timeout: float = 2.0) -> bool:
        """Terminate the owned child (not counted as a crash). Returns True if one was stopped."""
        self._stop.set()
        with self._proc_lock:
            proc = self.browser.process if self.browser is not None else None
        stopped = self._terminate(proc, timeout)

        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(0.1, float(timeout)) + self.restart_backoff)
        if self.state not in TERMINAL_STATES:
            self._set_state(SupervisorState.STOPPED)
        return stopped


__all__ = [
    "BrowserProcess",
    "BrowserSupervisor",
    "SupervisorState",
    "TERMINAL_STATES",
    "port_listening",
    "spawn_browser",
]
