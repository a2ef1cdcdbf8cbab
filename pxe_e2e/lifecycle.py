#!/usr/bin/env python3
"""
Environment Lifecycle Manager

Builds one disposable PXE test environment (bridge, libvirt network,
dnsmasq, kind cluster, deployed service) in a fixed order and tears it down
in reverse. A failed step rolls back everything created before it, so a
caller either gets a complete Environment or an error and nothing left
running.
"""

import logging
import secrets
import shutil
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from pxe_e2e.cluster_drivers import ServiceSpec
from pxe_e2e.errors import (
    ProvisioningError,
    ResourceNotFoundError,
    TeardownError,
    TeardownFailure,
    ValidationError,
)
from pxe_e2e.network_drivers import DnsmasqConfig


class EnvironmentState(Enum):
    """Provisioning progress of an environment."""
    EMPTY = "empty"
    NETWORK_READY = "network-ready"
    SERVICE_READY = "service-ready"
    CLUSTER_READY = "cluster-ready"
    DEPLOYED = "deployed"


@dataclass
class NetworkSpec:
    """Host network requirements."""
    cidr: str
    bridge_name: str
    dhcp_range: str
    virtual_network_name: str = ''
    tftp_root: str = ''
    boot_filename: str = 'undionly.kpxe'
    dns_servers: List[str] = field(default_factory=list)


@dataclass
class ClusterSpec:
    """Disposable cluster requirements."""
    name: str
    namespace: str
    kubeconfig_path: str = ''


@dataclass
class EnvironmentSpec:
    """Everything needed to build one environment."""
    network: NetworkSpec
    cluster: ClusterSpec
    service: ServiceSpec = field(default_factory=ServiceSpec)
    work_root: str = '/tmp/pxe-e2e'
    name_prefix: str = 'e2e'


HANDLE_FIELDS = (
    'work_dir',
    'boot_root',
    'bridge_name',
    'virtual_network_name',
    'boot_service_id',
    'lease_file',
    'cluster_name',
    'kubeconfig_path',
    'service_name',
)


@dataclass
class Environment:
    """One provisioned test environment.

    Handles stay empty until the step owning them has confirmed the
    resource exists.
    """
    id: str
    created_at: datetime
    namespace: str = ''
    bridge_cidr: str = ''
    work_dir: str = ''
    boot_root: str = ''
    bridge_name: str = ''
    virtual_network_name: str = ''
    boot_service_id: str = ''
    lease_file: str = ''
    cluster_name: str = ''
    kubeconfig_path: str = ''
    service_name: str = ''
    state: EnvironmentState = EnvironmentState.EMPTY

    def handles(self) -> Dict[str, str]:
        return {name: getattr(self, name) for name in HANDLE_FIELDS if getattr(self, name)}

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['created_at'] = self.created_at.isoformat()
        data['state'] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Environment':
        values = dict(data)
        values['created_at'] = datetime.fromisoformat(values['created_at'])
        values['state'] = EnvironmentState(values.get('state', EnvironmentState.EMPTY.value))
        return cls(**values)


def validate_spec(spec: EnvironmentSpec):
    """Reject a spec with any required field empty."""
    if spec is None:
        raise ValidationError("environment spec is required")
    required = [
        (spec.network and spec.network.cidr, "network address range (CIDR) is required"),
        (spec.network and spec.network.bridge_name, "bridge name is required"),
        (spec.network and spec.network.dhcp_range, "DHCP range is required"),
        (spec.cluster and spec.cluster.name, "cluster name is required"),
        (spec.cluster and spec.cluster.namespace, "namespace is required"),
    ]
    for value, message in required:
        if not value:
            raise ValidationError(message)


def generate_environment_id(prefix: str = 'e2e', now: Optional[datetime] = None) -> str:
    """Build ``<prefix>-YYYYMMDD-HHMMSS-<8 hex>``."""
    now = now or datetime.now()
    return f"{prefix}-{now.strftime('%Y%m%d-%H%M%S')}-{secrets.token_hex(4)}"


class LifecycleManager:
    """Provisions and tears down test environments."""

    def __init__(
        self,
        bridge_driver,
        network_driver,
        boot_service_driver,
        cluster_driver,
        deployer,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.bridge_driver = bridge_driver
        self.network_driver = network_driver
        self.boot_service_driver = boot_service_driver
        self.cluster_driver = cluster_driver
        self.deployer = deployer
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    # Provisioning steps, in creation order. Each writes its handles only
    # after the driver call returned.

    def _allocate(self, spec: EnvironmentSpec, env: Environment):
        work_dir = Path(spec.work_root) / env.id
        work_dir.mkdir(parents=True, exist_ok=False)
        env.work_dir = str(work_dir)

        boot_root = work_dir / 'tftp'
        if spec.network.tftp_root:
            shutil.copytree(spec.network.tftp_root, boot_root)
        else:
            boot_root.mkdir()
        env.boot_root = str(boot_root)

    def _create_bridge(self, spec: EnvironmentSpec, env: Environment):
        self.bridge_driver.create(spec.network.bridge_name, spec.network.cidr)
        env.bridge_name = spec.network.bridge_name
        env.bridge_cidr = spec.network.cidr

    def _create_virtual_network(self, spec: EnvironmentSpec, env: Environment):
        name = spec.network.virtual_network_name or f"{spec.network.bridge_name}-net"
        self.network_driver.create(name, env.bridge_name)
        env.virtual_network_name = name
        env.state = EnvironmentState.NETWORK_READY

    def _start_boot_service(self, spec: EnvironmentSpec, env: Environment):
        config = DnsmasqConfig(
            interface=env.bridge_name,
            dhcp_range=spec.network.dhcp_range,
            tftp_root=env.boot_root,
            boot_filename=spec.network.boot_filename,
            dns_servers=list(spec.network.dns_servers),
        )
        lease_file = self.boot_service_driver.create(env.id, config)
        env.boot_service_id = env.id
        env.lease_file = str(lease_file)
        env.state = EnvironmentState.SERVICE_READY

    def _create_cluster(self, spec: EnvironmentSpec, env: Environment):
        kubeconfig = spec.cluster.kubeconfig_path or str(Path(env.work_dir) / 'kubeconfig')
        kubeconfig = self.cluster_driver.create(spec.cluster.name, Path(kubeconfig))
        env.cluster_name = spec.cluster.name
        env.kubeconfig_path = str(kubeconfig)
        env.namespace = spec.cluster.namespace
        env.state = EnvironmentState.CLUSTER_READY

    def _deploy_service(self, spec: EnvironmentSpec, env: Environment):
        self.deployer.deploy(Path(env.kubeconfig_path), env.namespace, spec.service)
        env.service_name = spec.service.name
        env.state = EnvironmentState.DEPLOYED

    def _steps(self) -> List[Tuple[str, Callable[[EnvironmentSpec, Environment], None]]]:
        return [
            ('environment allocation', self._allocate),
            ('bridge creation', self._create_bridge),
            ('virtual network creation', self._create_virtual_network),
            ('boot service start', self._start_boot_service),
            ('cluster creation', self._create_cluster),
            ('deployment', self._deploy_service),
        ]

    def provision(self, spec: EnvironmentSpec) -> Environment:
        """Build a complete environment or raise with nothing left behind.

        Raises:
            ValidationError: spec is incomplete; nothing was touched.
            ProvisioningError: a step failed; earlier steps were rolled back.
                ``cause`` is the step's original error.
        """
        validate_spec(spec)

        env = Environment(id=generate_environment_id(spec.name_prefix, self.clock()), created_at=self.clock())
        self.logger.info(f"Provisioning environment {env.id}")

        for step_name, step in self._steps():
            self.logger.info(f"[{env.id}] {step_name}")
            try:
                step(spec, env)
            except Exception as e:
                self.logger.error(f"[{env.id}] {step_name} failed: {e}")
                rollback_error = self._rollback(env)
                raise ProvisioningError(step_name, e, rollback_error) from e

        self.logger.info(f"Environment {env.id} deployed")
        return env

    def _rollback(self, env: Environment) -> Optional[TeardownError]:
        try:
            self.teardown(env)
        except TeardownError as e:
            self.logger.error(f"[{env.id}] rollback incomplete:\n{e.describe()}")
            return e
        return None

    # Teardown, newest resource first. The deployed service lives inside the
    # cluster and goes with it.

    def _teardown_steps(self, env: Environment) -> List[Tuple[str, str, Callable[[], None], Tuple[str, ...]]]:
        return [
            ('cluster', env.cluster_name,
             lambda: self.cluster_driver.delete(env.cluster_name),
             ('cluster_name', 'kubeconfig_path', 'service_name')),
            ('boot service', env.boot_service_id,
             lambda: self.boot_service_driver.delete(env.boot_service_id),
             ('boot_service_id', 'lease_file')),
            ('virtual network', env.virtual_network_name,
             lambda: self.network_driver.delete(env.virtual_network_name),
             ('virtual_network_name',)),
            ('bridge', env.bridge_name,
             lambda: self.bridge_driver.delete(env.bridge_name),
             ('bridge_name',)),
            ('work directory', env.work_dir,
             lambda: self._remove_work_dir(env.work_dir),
             ('work_dir', 'boot_root')),
        ]

    @staticmethod
    def _remove_work_dir(work_dir: str):
        try:
            shutil.rmtree(work_dir)
        except FileNotFoundError:
            pass

    def teardown(self, env: Optional[Environment]):
        """Release every resource present on ``env``, newest first.

        Keeps going past failures. A resource that is already gone counts as
        released, so calling this twice is safe.

        Raises:
            TeardownError: enumerating every resource that could not be released.
        """
        if env is None:
            return

        failures: List[TeardownFailure] = []
        for resource, handle, release, fields in self._teardown_steps(env):
            if not handle:
                continue
            try:
                release()
                self.logger.info(f"[{env.id}] released {resource} {handle}")
            except ResourceNotFoundError:
                self.logger.info(f"[{env.id}] {resource} {handle} already absent")
            except Exception as e:
                self.logger.warning(f"[{env.id}] failed to release {resource} {handle}: {e}")
                failures.append(TeardownFailure(resource=resource, handle=handle, cause=e))
                continue
            for name in fields:
                setattr(env, name, '')

        if failures:
            raise TeardownError(failures)
        env.state = EnvironmentState.EMPTY
