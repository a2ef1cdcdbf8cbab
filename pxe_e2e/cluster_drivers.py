#!/usr/bin/env python3
"""
Disposable kind cluster and deployment of the service under test.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from pxe_e2e.cert_issuer import CertificateIssuer
from pxe_e2e.command_runner import CommandRunner
from pxe_e2e.errors import CommandError, ResourceNotFoundError


class KindClusterDriver:
    """Creates and deletes kind clusters."""

    def __init__(self, runner: CommandRunner, wait: str = '120s'):
        self.runner = runner
        self.wait = wait
        self.logger = logging.getLogger(__name__)

    def create(self, name: str, kubeconfig_path: Path) -> Path:
        """Create the cluster and return the path of its kubeconfig."""
        kubeconfig_path = Path(kubeconfig_path)
        kubeconfig_path.parent.mkdir(parents=True, exist_ok=True)
        self.runner.run([
            'kind', 'create', 'cluster',
            '--name', name,
            '--kubeconfig', str(kubeconfig_path),
            '--wait', self.wait,
        ])
        if not kubeconfig_path.exists():
            # Older kind releases only export on request
            result = self.runner.run(['kind', 'get', 'kubeconfig', '--name', name])
            kubeconfig_path.write_text(result.stdout, encoding='utf-8')
        self.logger.info(f"Created kind cluster {name}")
        return kubeconfig_path

    def list(self) -> List[str]:
        result = self.runner.run(['kind', 'get', 'clusters'], check=False)
        if result.returncode != 0:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def exists(self, name: str) -> bool:
        return name in self.list()

    def delete(self, name: str):
        if not self.exists(name):
            self.logger.debug(f"Cluster {name} already absent")
            return
        self.runner.run(['kind', 'delete', 'cluster', '--name', name])
        self.logger.info(f"Deleted kind cluster {name}")


@dataclass
class ServiceSpec:
    """What to install into the cluster."""
    name: str = 'shaper-api'
    manifests: List[str] = field(default_factory=list)
    helm_chart: str = ''
    helm_release: str = ''
    helm_values: Dict[str, str] = field(default_factory=dict)
    rollout_timeout: int = 180
    log_selector: str = 'app=shaper-api'
    tls_secret_name: str = ''
    tls_server_address: str = ''


def format_since_time(moment: datetime) -> str:
    """RFC3339 UTC form ``kubectl logs --since-time`` accepts. Naive values are local time."""
    return moment.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


NAMESPACE_MANIFEST = """apiVersion: v1
kind: Namespace
metadata:
  name: {namespace}
"""


class ServiceDeployer:
    """Deploys the service under test with kubectl and, optionally, helm."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _kubectl(kubeconfig: Path, *args: str) -> List[str]:
        return ['kubectl', '--kubeconfig', str(kubeconfig), *args]

    def ensure_namespace(self, kubeconfig: Path, namespace: str):
        self.runner.run(
            self._kubectl(kubeconfig, 'apply', '-f', '-'),
            input_text=NAMESPACE_MANIFEST.format(namespace=namespace),
        )

    def deploy(self, kubeconfig: Path, namespace: str, spec: ServiceSpec):
        self.ensure_namespace(kubeconfig, namespace)

        if spec.tls_secret_name:
            self.install_certificates(kubeconfig, namespace, spec)

        for manifest in spec.manifests:
            self.runner.run(self._kubectl(kubeconfig, 'apply', '-n', namespace, '-f', manifest))

        if spec.helm_chart:
            release = spec.helm_release or spec.name
            cmd = [
                'helm', 'upgrade', '--install', release, spec.helm_chart,
                '--kubeconfig', str(kubeconfig),
                '--namespace', namespace,
                '--wait', '--timeout', f"{spec.rollout_timeout}s",
            ]
            for key, value in sorted(spec.helm_values.items()):
                cmd.extend(['--set', f"{key}={value}"])
            self.runner.run(cmd)

        self.runner.run(
            self._kubectl(
                kubeconfig, 'rollout', 'status', f"deployment/{spec.name}",
                '-n', namespace, f"--timeout={spec.rollout_timeout}s",
            ),
            timeout=spec.rollout_timeout + 30,
        )
        self.logger.info(f"Deployed {spec.name} into namespace {namespace}")

    def install_certificates(self, kubeconfig: Path, namespace: str, spec: ServiceSpec):
        """Issue test certificates and store the server pair as a TLS secret.

        The files stay next to the kubeconfig so clients can pick up the CA
        and the client certificate.
        """
        cert_dir = Path(kubeconfig).parent / 'certs'
        address = spec.tls_server_address or f"{spec.name}.{namespace}.svc"
        CertificateIssuer(cert_dir, self.runner).issue(address)
        self.create_tls_secret(
            kubeconfig, namespace, spec.tls_secret_name,
            cert_dir / 'server.crt', cert_dir / 'server.key',
        )

    def create_tls_secret(self, kubeconfig: Path, namespace: str, name: str, cert_path: Path, key_path: Path):
        """Create or replace a kubernetes.io/tls secret."""
        rendered = self.runner.run(self._kubectl(
            kubeconfig, 'create', 'secret', 'tls', name,
            '-n', namespace, '--cert', str(cert_path), '--key', str(key_path),
            '--dry-run=client', '-o', 'yaml',
        ))
        self.runner.run(self._kubectl(kubeconfig, 'apply', '-f', '-'), input_text=rendered.stdout)

    def service_logs(self, kubeconfig: Path, namespace: str, selector: str, tail: int = 500,
                     since_time: Optional[datetime] = None) -> str:
        """Return recent logs of the pods matching ``selector``.

        With ``since_time`` only lines written at or after that moment are
        returned.
        """
        args = ['logs', '-n', namespace, '-l', selector, f"--tail={tail}"]
        if since_time is not None:
            args.append(f"--since-time={format_since_time(since_time)}")
        try:
            result = self.runner.run(self._kubectl(kubeconfig, *args))
        except CommandError as e:
            if 'no resources found' in e.stderr.lower():
                raise ResourceNotFoundError(f"no pods match {selector} in {namespace}") from e
            raise
        return result.stdout
