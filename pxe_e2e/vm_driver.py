#!/usr/bin/env python3
"""
libvirt driver for the PXE client virtual machine.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from pxe_e2e.command_runner import CommandRunner
from pxe_e2e.errors import CommandError, ResourceNotFoundError
from pxe_e2e.network_drivers import is_not_found

DEFAULT_MEMORY_MB = 1024
DEFAULT_VCPUS = 1

IPV4_PATTERN = re.compile(r'(\d{1,3}(?:\.\d{1,3}){3})/\d+')

DOMAIN_XML_TEMPLATE = """<domain type='kvm'>
  <name>{name}</name>
{uuid_element}  <memory unit='MiB'>{memory_mb}</memory>
  <vcpu>{vcpus}</vcpu>
  <os>
    <type arch='x86_64'>hvm</type>
{boot_devices}
  </os>
  <devices>
    <interface type='network'>
      <source network='{network}'/>
{mac_element}      <model type='virtio'/>
    </interface>
    <serial type='file'>
      <source path='{console_log}'/>
      <target port='0'/>
    </serial>
    <console type='file'>
      <source path='{console_log}'/>
      <target type='serial' port='0'/>
    </console>
  </devices>
</domain>
"""


@dataclass
class VMSpec:
    """Resources and boot settings for one client VM."""
    name: str
    network: str
    memory_mb: int = DEFAULT_MEMORY_MB
    vcpus: int = DEFAULT_VCPUS
    mac_address: str = ''
    uuid: str = ''
    boot_order: List[str] = field(default_factory=lambda: ['network', 'hd'])
    console_log: str = ''


def render_domain_xml(spec: VMSpec) -> str:
    boot_devices = '\n'.join(f"    <boot dev='{device}'/>" for device in spec.boot_order)
    mac_element = f"      <mac address='{spec.mac_address}'/>\n" if spec.mac_address else ''
    uuid_element = f"  <uuid>{spec.uuid}</uuid>\n" if spec.uuid else ''
    return DOMAIN_XML_TEMPLATE.format(
        name=spec.name,
        uuid_element=uuid_element,
        memory_mb=spec.memory_mb or DEFAULT_MEMORY_MB,
        vcpus=spec.vcpus or DEFAULT_VCPUS,
        network=spec.network,
        boot_devices=boot_devices,
        mac_element=mac_element,
        console_log=spec.console_log,
    )


class VMDriver:
    """Defines, starts and destroys libvirt domains."""

    def __init__(self, runner: CommandRunner, work_dir: Path, connect_uri: str = 'qemu:///system'):
        self.runner = runner
        self.work_dir = Path(work_dir)
        self.connect_uri = connect_uri
        self.logger = logging.getLogger(__name__)
        self._console_logs = {}

    def _virsh(self, *args: str) -> List[str]:
        return ['virsh', '--connect', self.connect_uri, *args]

    def create(self, spec: VMSpec):
        self.work_dir.mkdir(parents=True, exist_ok=True)
        if not spec.console_log:
            spec.console_log = str(self.work_dir / f"{spec.name}-console.log")
        self._console_logs[spec.name] = Path(spec.console_log)

        xml_path = self.work_dir / f"{spec.name}.xml"
        xml_path.write_text(render_domain_xml(spec), encoding='utf-8')
        self.runner.run(self._virsh('define', str(xml_path)))
        try:
            self.runner.run(self._virsh('start', spec.name))
        except CommandError:
            self.destroy(spec.name)
            raise
        self.logger.info(f"Started VM {spec.name} ({spec.memory_mb} MiB, {spec.vcpus} vCPU)")

    def destroy(self, name: str):
        try:
            self.runner.run(self._virsh('destroy', name))
        except CommandError as e:
            # An inactive domain still needs undefining
            if not (is_not_found(e) or 'not running' in e.stderr.lower()):
                raise
        try:
            self.runner.run(self._virsh('undefine', name, '--nvram'))
        except CommandError as e:
            if not is_not_found(e):
                raise
            self.logger.debug(f"VM {name} already absent")
            return
        self.logger.info(f"Destroyed VM {name}")

    def exists(self, name: str) -> bool:
        result = self.runner.run(self._virsh('dominfo', name), check=False)
        return result.returncode == 0

    def get_address(self, name: str) -> str:
        result = self.runner.run(self._virsh('domifaddr', name, '--source', 'lease'))
        match = IPV4_PATTERN.search(result.stdout)
        if not match:
            raise ResourceNotFoundError(f"no IPv4 address found for VM {name}")
        return match.group(1)

    def console_log(self, name: str) -> str:
        path: Optional[Path] = self._console_logs.get(name)
        if path is None:
            path = self.work_dir / f"{name}-console.log"
        if not path.exists():
            return ''
        return path.read_text(encoding='utf-8', errors='replace')
