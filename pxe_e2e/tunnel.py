#!/usr/bin/env python3
"""
Resilient Tunnel

Keeps a ``kubectl port-forward`` (or any forwarding command) alive on a
fixed local port. A supervision thread waits for the backing process to
exit and restarts it with exponential backoff, so a pod restart or a dropped
connection only causes a short outage for callers.
"""

import http.client
import logging
import socket
import ssl
import subprocess
import threading
import time
from typing import Callable, List, Optional

from pxe_e2e.errors import TunnelError

MIN_BACKOFF = 2.0
MAX_BACKOFF = 30.0
STABLE_THRESHOLD = 30.0
DEFAULT_REMOTE_PORT = 30443
PROBE_TIMEOUT = 2.0


class ReconnectBackoff:
    """Reconnect delay bookkeeping.

    Not thread safe on its own; the owning tunnel calls it under its lock.
    """

    def __init__(self, min_delay: float = MIN_BACKOFF, max_delay: float = MAX_BACKOFF,
                 stable_threshold: float = STABLE_THRESHOLD):
        if min_delay <= 0 or max_delay < min_delay:
            raise ValueError(f"invalid backoff bounds: min={min_delay} max={max_delay}")
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.stable_threshold = stable_threshold
        self._delay = min_delay
        self._started_at: Optional[float] = None

    def current(self) -> float:
        return self._delay

    def record_start(self, now: float):
        self._started_at = now

    def record_exit(self, now: float) -> float:
        """Account for a process exit and return the delay to wait.

        A run that lasted at least ``stable_threshold`` resets the delay to
        the minimum. Otherwise the current delay is used and doubled for the
        next exit, capped at the maximum.
        """
        started_at = self._started_at
        self._started_at = None
        if started_at is not None and now - started_at >= self.stable_threshold:
            self._delay = self.min_delay
            return self._delay
        delay = self._delay
        self.grow()
        return delay

    def grow(self):
        self._delay = min(self._delay * 2, self.max_delay)

    def saturate(self):
        self._delay = self.max_delay


def kubectl_port_forward_args(
    kubeconfig: str,
    namespace: str,
    service: str,
    local_port: int,
    remote_port: int = DEFAULT_REMOTE_PORT,
    address: Optional[str] = None,
) -> List[str]:
    """Build the kubectl command forwarding ``local_port`` to ``svc/<service>``."""
    cmd = ['kubectl', '--kubeconfig', kubeconfig, 'port-forward']
    if address:
        cmd.extend(['--address', address])
    cmd.extend(['-n', namespace, f"svc/{service}", f"{local_port}:{remote_port}"])
    return cmd


class ResilientTunnel:
    """Forwarding channel that restarts its backing process when it dies."""

    def __init__(
        self,
        command: List[str],
        local_port: int,
        local_address: str = '127.0.0.1',
        auto_reconnect: bool = True,
        backoff: Optional[ReconnectBackoff] = None,
        process_factory: Callable[..., subprocess.Popen] = subprocess.Popen,
        probe_path: str = '/boot.ipxe',
        scheme: str = 'http',
        clock: Callable[[], float] = time.monotonic,
        stop_timeout: float = 5.0,
    ):
        self.command = list(command)
        self.local_port = local_port
        self.local_address = local_address
        self.auto_reconnect = auto_reconnect
        self.process_factory = process_factory
        self.probe_path = probe_path
        self.scheme = scheme
        self.clock = clock
        self.stop_timeout = stop_timeout
        self.logger = logging.getLogger(__name__)

        # Guards _process, _backoff and _delays
        self._lock = threading.Lock()
        self._process: Optional[subprocess.Popen] = None
        self._backoff = backoff or ReconnectBackoff()
        self._delays: List[float] = []

        self._stop_event = threading.Event()
        self._supervisor: Optional[threading.Thread] = None

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.local_address}:{self.local_port}"

    def open(self) -> 'ResilientTunnel':
        """Start the backing process and, if requested, the supervision thread.

        Returns once the process has been spawned; use ``wait_until_ready``
        to wait for the remote service to answer.
        """
        if self._stop_event.is_set():
            raise TunnelError("tunnel has been stopped and cannot be reopened")
        with self._lock:
            if self._process is not None:
                raise TunnelError("tunnel is already open")
            try:
                self._start_process_locked()
            except OSError as e:
                raise TunnelError(f"failed to start {' '.join(self.command)}: {e}") from e

        if self.auto_reconnect:
            self._supervisor = threading.Thread(
                target=self._supervise,
                name=f"tunnel-{self.local_port}",
                daemon=True,
            )
            self._supervisor.start()
        self.logger.info(f"Tunnel opened on {self.local_address}:{self.local_port}")
        return self

    def _start_process_locked(self):
        process = self.process_factory(
            self.command,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        self._process = process
        self._backoff.record_start(self.clock())
        self.logger.debug(f"Tunnel backing process started (pid {process.pid})")

    def _supervise(self):
        while not self._stop_event.is_set():
            with self._lock:
                process = self._process

            if process is not None:
                process.wait()

            if self._stop_event.is_set():
                return

            with self._lock:
                if process is not None:
                    if self._process is process:
                        self._process = None
                    delay = self._backoff.record_exit(self.clock())
                else:
                    # Previous attempt never started a process
                    delay = self._backoff.current()
                self._delays.append(delay)
            if process is not None:
                self.logger.warning(
                    f"Tunnel on port {self.local_port} lost its backing process, "
                    f"reconnecting in {delay:.1f}s"
                )

            if self._stop_event.wait(delay):
                return

            if self._port_already_serving():
                with self._lock:
                    self._backoff.saturate()
                self.logger.info(f"Port {self.local_port} already serving traffic, waiting")
                continue

            with self._lock:
                if self._stop_event.is_set():
                    return
                # Probe and bind under one lock so stop() cannot interleave
                if not self._port_available():
                    self._backoff.grow()
                    self.logger.warning(
                        f"Port {self.local_port} in use, backing off {self._backoff.current():.1f}s"
                    )
                    continue
                try:
                    self._start_process_locked()
                except OSError as e:
                    self._backoff.grow()
                    self.logger.warning(f"Tunnel restart failed: {e}")
                    continue
            self.logger.info(f"Tunnel on port {self.local_port} restarted")

    def _port_available(self) -> bool:
        """Check whether the local port can be bound right now."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((self.local_address, self.local_port))
            except OSError:
                return False
        return True

    def _port_already_serving(self) -> bool:
        """Check whether the local port answers the probe path with 200."""
        connection: Optional[http.client.HTTPConnection] = None
        try:
            if self.scheme == 'https':
                context = ssl.create_default_context()
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
                connection = http.client.HTTPSConnection(
                    self.local_address, self.local_port, timeout=PROBE_TIMEOUT, context=context
                )
            else:
                connection = http.client.HTTPConnection(
                    self.local_address, self.local_port, timeout=PROBE_TIMEOUT
                )
            connection.request('GET', self.probe_path)
            response = connection.getresponse()
            response.read()
            return response.status == 200
        except (OSError, http.client.HTTPException):
            return False
        finally:
            if connection:
                connection.close()

    def wait_until_ready(self, timeout: float = 60.0, interval: float = 0.5):
        """Poll the probe path until it answers 200.

        Raises:
            TunnelError: the service did not answer within ``timeout``.
        """
        deadline = self.clock() + timeout
        while True:
            if self._port_already_serving():
                self.logger.info(f"Tunnel {self.url} ready")
                return
            if self.clock() >= deadline or self._stop_event.is_set():
                raise TunnelError(f"{self.url}{self.probe_path} not ready after {timeout}s")
            time.sleep(interval)

    def is_running(self) -> bool:
        with self._lock:
            return self._process is not None and self._process.poll() is None

    def process_count(self) -> int:
        """Number of backing processes currently owned (0 or 1)."""
        with self._lock:
            return 1 if self._process is not None else 0

    def current_delay(self) -> float:
        with self._lock:
            return self._backoff.current()

    def reconnect_delays(self) -> List[float]:
        """Delays waited before each reconnect, oldest first."""
        with self._lock:
            return list(self._delays)

    def stop(self):
        """Stop supervising, terminate the backing process and free the port."""
        self._stop_event.set()
        with self._lock:
            process = self._process
            self._process = None
        if process is not None and process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=self.stop_timeout)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait(timeout=self.stop_timeout)

        supervisor = self._supervisor
        if supervisor is not None and supervisor is not threading.current_thread():
            supervisor.join(timeout=self.stop_timeout + PROBE_TIMEOUT)
            if supervisor.is_alive():
                self.logger.warning(f"Tunnel supervisor for port {self.local_port} did not exit")
        self.logger.info(f"Tunnel on port {self.local_port} stopped")

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False


def open_port_forward(
    environment,
    local_port: int,
    remote_port: int = DEFAULT_REMOTE_PORT,
    service: Optional[str] = None,
    address: Optional[str] = None,
    **kwargs,
) -> ResilientTunnel:
    """Open a resilient port-forward to the environment's deployed service."""
    command = kubectl_port_forward_args(
        environment.kubeconfig_path,
        environment.namespace,
        service or environment.service_name,
        local_port,
        remote_port,
        address,
    )
    tunnel = ResilientTunnel(command, local_port, local_address=address or '127.0.0.1', **kwargs)
    return tunnel.open()
