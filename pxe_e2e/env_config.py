#!/usr/bin/env python3
"""
Settings taken from environment variables.

CI jobs export these so a boot test can attach to an environment that was
provisioned by an earlier job. Any value left unset falls back to the stored
Environment record.
"""

import os
from dataclasses import dataclass, fields
from typing import List, Mapping, Optional

from pxe_e2e.errors import ValidationError
from pxe_e2e.lifecycle import Environment

ENV_VARS = {
    'kubeconfig': 'KUBECONFIG',
    'bridge_interface': 'TESTENV_NETWORK_TESTNETWORK_INTERFACE',
    'bridge_ip': 'TESTENV_NETWORK_TESTNETWORK_IP',
    'vm_name_prefix': 'TESTENV_VM_NAME_PREFIX',
    'pxe_client_mac': 'TESTENV_VM_PXECLIENT_MAC',
    'state_dir': 'TESTENV_VM_STATE_DIR',
    'results_dir': 'PXE_E2E_RESULTS_DIR',
}


@dataclass
class EnvConfig:
    """Values read from ``ENV_VARS``; empty string means unset."""
    kubeconfig: str = ''
    bridge_interface: str = ''
    bridge_ip: str = ''
    vm_name_prefix: str = ''
    pxe_client_mac: str = ''
    state_dir: str = ''
    results_dir: str = ''

    @classmethod
    def from_environ(cls, environ: Optional[Mapping[str, str]] = None) -> 'EnvConfig':
        environ = os.environ if environ is None else environ
        return cls(**{attr: environ.get(var, '') for attr, var in ENV_VARS.items()})

    def merge_environment(self, env: Environment) -> 'EnvConfig':
        """Fill unset values from a stored environment record."""
        bridge_ip = self.bridge_ip or env.bridge_cidr.split('/')[0]
        return EnvConfig(
            kubeconfig=self.kubeconfig or env.kubeconfig_path,
            bridge_interface=self.bridge_interface or env.bridge_name,
            bridge_ip=bridge_ip,
            vm_name_prefix=self.vm_name_prefix,
            pxe_client_mac=self.pxe_client_mac,
            state_dir=self.state_dir,
            results_dir=self.results_dir,
        )

    def missing(self, required: List[str]) -> List[str]:
        """Names of the environment variables behind unset ``required`` fields."""
        known = {f.name for f in fields(self)}
        return [ENV_VARS[name] for name in required if name in known and not getattr(self, name)]

    def require(self, *required: str):
        missing = self.missing(list(required))
        if missing:
            raise ValidationError(f"missing required environment variables: {', '.join(missing)}")

    def apply_to(self, env: Environment) -> Environment:
        """Point ``env`` at the overridden kubeconfig, if one is set."""
        if self.kubeconfig:
            env.kubeconfig_path = self.kubeconfig
        return env
