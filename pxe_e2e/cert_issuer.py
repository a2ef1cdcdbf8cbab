#!/usr/bin/env python3
"""
Test certificate issuance through the openssl CLI.

The harness never inspects these certificates; it only hands the bytes to
whatever needs them (for example a TLS secret for the service under test).
"""

import ipaddress
import logging
from dataclasses import dataclass
from pathlib import Path

from pxe_e2e.command_runner import CommandRunner


@dataclass
class CertificateBundle:
    """PEM encoded CA, server and client material."""
    ca_cert: bytes
    ca_key: bytes
    server_cert: bytes
    server_key: bytes
    client_cert: bytes
    client_key: bytes


def subject_alt_name(address: str) -> str:
    try:
        ipaddress.ip_address(address)
    except ValueError:
        return f"DNS:{address}"
    return f"IP:{address}"


class CertificateIssuer:
    """Issues a throwaway CA plus one server and one client certificate."""

    def __init__(self, work_dir: Path, runner: CommandRunner, days: int = 1):
        self.work_dir = Path(work_dir)
        self.runner = runner
        self.days = days
        self.logger = logging.getLogger(__name__)

    def _issue_leaf(self, name: str, subject: str, extensions: str, ca_cert: Path, ca_key: Path):
        key = self.work_dir / f"{name}.key"
        csr = self.work_dir / f"{name}.csr"
        cert = self.work_dir / f"{name}.crt"
        ext_file = self.work_dir / f"{name}.ext"
        ext_file.write_text(extensions, encoding='utf-8')

        self.runner.run(['openssl', 'req', '-new', '-newkey', 'rsa:2048', '-nodes',
                         '-keyout', str(key), '-out', str(csr), '-subj', subject])
        self.runner.run(['openssl', 'x509', '-req', '-in', str(csr),
                         '-CA', str(ca_cert), '-CAkey', str(ca_key), '-CAcreateserial',
                         '-out', str(cert), '-days', str(self.days), '-extfile', str(ext_file)])
        return cert, key

    def issue(self, server_address: str) -> CertificateBundle:
        self.work_dir.mkdir(parents=True, exist_ok=True)
        ca_key = self.work_dir / 'ca.key'
        ca_cert = self.work_dir / 'ca.crt'
        self.runner.run(['openssl', 'req', '-x509', '-newkey', 'rsa:2048', '-nodes',
                         '-keyout', str(ca_key), '-out', str(ca_cert),
                         '-days', str(self.days), '-subj', '/CN=pxe-e2e-ca'])

        server_cert, server_key = self._issue_leaf(
            'server', f"/CN={server_address}",
            f"subjectAltName={subject_alt_name(server_address)}\nextendedKeyUsage=serverAuth\n",
            ca_cert, ca_key,
        )
        client_cert, client_key = self._issue_leaf(
            'client', '/CN=pxe-e2e-client',
            "extendedKeyUsage=clientAuth\n",
            ca_cert, ca_key,
        )
        self.logger.info(f"Issued test certificates for {server_address}")
        return CertificateBundle(
            ca_cert=ca_cert.read_bytes(),
            ca_key=ca_key.read_bytes(),
            server_cert=server_cert.read_bytes(),
            server_key=server_key.read_bytes(),
            client_cert=client_cert.read_bytes(),
            client_key=client_key.read_bytes(),
        )
