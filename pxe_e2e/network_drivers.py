#!/usr/bin/env python3
"""
Host network drivers: Linux bridge, libvirt network and dnsmasq.

Every driver exposes create/delete/exists. Deletes are idempotent: a
resource that is already gone counts as deleted.
"""

import logging
import os
import shutil
import signal
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from pxe_e2e.command_runner import CommandRunner
from pxe_e2e.errors import CommandError, ValidationError

# Lease length handed to clients; renewals push the expiry this far past now
DHCP_LEASE_TIME = '12h'
DHCP_LEASE_SECONDS = 12 * 60 * 60

PID_POLL_INTERVAL = 0.1

NOT_FOUND_MARKERS = (
    'does not exist',
    'cannot find device',
    'not found',
    'no network with matching name',
    'network is not active',
)


def is_not_found(error: CommandError) -> bool:
    """Return True when a command failed only because the resource is absent."""
    text = f"{error.stderr} {error.stdout}".lower()
    return any(marker in text for marker in NOT_FOUND_MARKERS)


class BridgeDriver:
    """Manages a Linux bridge interface through iproute2."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner
        self.logger = logging.getLogger(__name__)

    def create(self, name: str, cidr: str):
        self.runner.run(['ip', 'link', 'add', name, 'type', 'bridge'])
        try:
            self.runner.run(['ip', 'addr', 'add', cidr, 'dev', name])
            self.runner.run(['ip', 'link', 'set', name, 'up'])
        except CommandError:
            # Half-configured bridge must not outlive the failed create
            self.delete(name)
            raise
        self.logger.info(f"Created bridge {name} ({cidr})")

    def delete(self, name: str):
        try:
            self.runner.run(['ip', 'link', 'set', name, 'down'])
            self.runner.run(['ip', 'link', 'delete', name, 'type', 'bridge'])
        except CommandError as e:
            if is_not_found(e):
                self.logger.debug(f"Bridge {name} already absent")
                return
            raise
        self.logger.info(f"Deleted bridge {name}")

    def exists(self, name: str) -> bool:
        result = self.runner.run(['ip', 'link', 'show', name], check=False)
        return result.returncode == 0


NETWORK_XML_TEMPLATE = """<network>
  <name>{name}</name>
  <forward mode='bridge'/>
  <bridge name='{bridge}'/>
</network>
"""


class VirtualNetworkDriver:
    """Manages a libvirt network bound to an existing bridge."""

    def __init__(self, runner: CommandRunner, work_dir: Path, connect_uri: str = 'qemu:///system'):
        self.runner = runner
        self.work_dir = Path(work_dir)
        self.connect_uri = connect_uri
        self.logger = logging.getLogger(__name__)

    def _virsh(self, *args: str) -> List[str]:
        return ['virsh', '--connect', self.connect_uri, *args]

    def create(self, name: str, bridge: str):
        self.work_dir.mkdir(parents=True, exist_ok=True)
        xml_path = self.work_dir / f"network-{name}.xml"
        xml_path.write_text(NETWORK_XML_TEMPLATE.format(name=name, bridge=bridge), encoding='utf-8')

        self.runner.run(self._virsh('net-define', str(xml_path)))
        try:
            self.runner.run(self._virsh('net-start', name))
            self.runner.run(self._virsh('net-autostart', name))
        except CommandError:
            self.delete(name)
            raise
        self.logger.info(f"Created virtual network {name} on bridge {bridge}")

    def delete(self, name: str):
        try:
            self.runner.run(self._virsh('net-destroy', name))
        except CommandError as e:
            if not is_not_found(e):
                raise
        try:
            self.runner.run(self._virsh('net-undefine', name))
        except CommandError as e:
            if is_not_found(e):
                self.logger.debug(f"Virtual network {name} already absent")
                return
            raise
        self.logger.info(f"Deleted virtual network {name}")

    def exists(self, name: str) -> bool:
        result = self.runner.run(self._virsh('net-info', name), check=False)
        return result.returncode == 0


@dataclass
class DnsmasqConfig:
    """Settings rendered into a dnsmasq configuration file."""
    interface: str
    dhcp_range: str
    tftp_root: str
    boot_filename: str = 'undionly.kpxe'
    pid_file: str = ''
    lease_file: str = ''
    log_queries: bool = False
    log_dhcp: bool = True
    dns_servers: List[str] = field(default_factory=list)


def render_dnsmasq_config(config: DnsmasqConfig) -> str:
    """Render a dnsmasq configuration file for DHCP + TFTP on one interface."""
    required = [
        ('interface', 'interface is required'),
        ('dhcp_range', 'DHCP range is required'),
        ('tftp_root', 'TFTP root is required'),
        ('boot_filename', 'boot filename is required'),
    ]
    for attr, message in required:
        if not getattr(config, attr):
            raise ValidationError(message)

    lines = [
        '# dnsmasq configuration for PXE E2E testing',
        '# Generated automatically - do not edit manually',
        f"interface={config.interface}",
        'bind-interfaces',
        f"dhcp-range={config.dhcp_range},{DHCP_LEASE_TIME}",
    ]
    if config.dns_servers:
        lines.extend(f"server={server}" for server in config.dns_servers)
    else:
        # No gateway or DNS handed out to clients
        lines.extend(['dhcp-option=3', 'dhcp-option=6'])
    lines.extend([
        'enable-tftp',
        f"tftp-root={config.tftp_root}",
        f"dhcp-boot={config.boot_filename}",
    ])
    if config.log_queries:
        lines.append('log-queries')
    if config.log_dhcp:
        lines.append('log-dhcp')
    if config.pid_file:
        lines.append(f"pid-file={config.pid_file}")
    if config.lease_file:
        lines.append(f"dhcp-leasefile={config.lease_file}")
    lines.extend(['no-resolv', 'no-hosts', 'keep-in-foreground'])
    return '\n'.join(lines) + '\n'


class DnsmasqDriver:
    """Runs one dnsmasq process per boot service id."""

    def __init__(
        self,
        state_dir: Path,
        process_factory: Callable[..., subprocess.Popen] = subprocess.Popen,
        stop_timeout: float = 5.0,
        start_grace: float = 0.5,
    ):
        self.state_dir = Path(state_dir)
        self.process_factory = process_factory
        self.stop_timeout = stop_timeout
        self.start_grace = start_grace
        self.logger = logging.getLogger(__name__)
        self._processes: Dict[str, subprocess.Popen] = {}

    def service_dir(self, service_id: str) -> Path:
        return self.state_dir / service_id

    def lease_file(self, service_id: str) -> Path:
        return self.service_dir(service_id) / 'dnsmasq.leases'

    def pid_file(self, service_id: str) -> Path:
        return self.service_dir(service_id) / 'dnsmasq.pid'

    def create(self, service_id: str, config: DnsmasqConfig) -> Path:
        """Write the configuration and start dnsmasq; return the lease file path."""
        service_dir = self.service_dir(service_id)
        service_dir.mkdir(parents=True, exist_ok=True)
        config.pid_file = config.pid_file or str(self.pid_file(service_id))
        config.lease_file = config.lease_file or str(self.lease_file(service_id))
        Path(config.lease_file).touch()

        conf_path = service_dir / 'dnsmasq.conf'
        conf_path.write_text(render_dnsmasq_config(config), encoding='utf-8')

        log_handle = open(service_dir / 'dnsmasq.log', 'a', encoding='utf-8')
        try:
            process = self.process_factory(
                ['dnsmasq', '-C', str(conf_path)],
                stdout=log_handle,
                stderr=subprocess.STDOUT,
            )
        finally:
            log_handle.close()

        # dnsmasq exits within moments on a bad config or a busy port
        try:
            process.wait(timeout=self.start_grace)
        except subprocess.TimeoutExpired:
            pass
        else:
            raise CommandError(['dnsmasq', '-C', str(conf_path)], process.returncode,
                               stderr=f"dnsmasq exited early, see {service_dir / 'dnsmasq.log'}")

        self._processes[service_id] = process
        Path(config.pid_file).write_text(f"{process.pid}\n", encoding='utf-8')
        self.logger.info(f"Started dnsmasq {service_id} on {config.interface} (pid {process.pid})")
        return Path(config.lease_file)

    def _read_pid(self, service_id: str) -> Optional[int]:
        pid_path = self.pid_file(service_id)
        if not pid_path.exists():
            return None
        try:
            return int(pid_path.read_text(encoding='utf-8').strip())
        except ValueError:
            self.logger.warning(f"Invalid PID in {pid_path}")
            return None

    @staticmethod
    def _pid_alive(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def _wait_for_exit(self, pid: int) -> bool:
        deadline = time.monotonic() + self.stop_timeout
        while self._pid_alive(pid):
            if time.monotonic() >= deadline:
                return False
            time.sleep(PID_POLL_INTERVAL)
        return True

    def _stop_pid(self, service_id: str, pid: int):
        """Stop a dnsmasq started by another harness process."""
        for sig in (signal.SIGTERM, signal.SIGKILL):
            try:
                os.kill(pid, sig)
            except ProcessLookupError:
                self.logger.debug(f"dnsmasq {service_id} (pid {pid}) already exited")
                return
            if self._wait_for_exit(pid):
                return
            if sig == signal.SIGTERM:
                self.logger.warning(f"dnsmasq {service_id} (pid {pid}) did not exit gracefully, killing")
        raise CommandError(['kill', '-KILL', str(pid)], 1,
                           stderr=f"dnsmasq {service_id} (pid {pid}) still running after SIGKILL")

    def delete(self, service_id: str):
        """Stop the instance and remove its state.

        The PID file is removed only once the process is gone, so a failed
        stop still shows up in ``exists``.
        """
        process = self._processes.pop(service_id, None)
        if process is not None:
            if process.poll() is None:
                process.terminate()
                try:
                    process.wait(timeout=self.stop_timeout)
                except subprocess.TimeoutExpired:
                    self.logger.warning(f"dnsmasq {service_id} did not exit gracefully, killing")
                    process.kill()
                    process.wait(timeout=self.stop_timeout)
        else:
            pid = self._read_pid(service_id)
            if pid is not None:
                self._stop_pid(service_id, pid)

        shutil.rmtree(self.service_dir(service_id), ignore_errors=True)
        self.logger.info(f"Stopped dnsmasq {service_id}")

    def exists(self, service_id: str) -> bool:
        process = self._processes.get(service_id)
        if process is not None:
            return process.poll() is None
        pid = self._read_pid(service_id)
        if pid is None:
            return False
        return self._pid_alive(pid)
