#!/usr/bin/env python3
"""
Human and JSON rendering of boot attempts and environments.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Dict

from pxe_e2e.boot_validator import BootAttempt
from pxe_e2e.lifecycle import Environment


def render_json(attempt: BootAttempt) -> str:
    return json.dumps(attempt.to_dict(), indent=2, default=str)


def render_text(attempt: BootAttempt) -> str:
    """Phase-by-phase report, one row per recorded phase."""
    verdict = 'PASS' if attempt.success else 'FAIL'
    lines = [
        f"Boot attempt: {attempt.target}",
        f"Result: {verdict}",
    ]
    if attempt.address:
        lines.append(f"Address: {attempt.address}")
    if attempt.started_at and attempt.finished_at:
        elapsed = (attempt.finished_at - attempt.started_at).total_seconds()
        lines.append(f"Duration: {elapsed:.1f}s")
    lines.append('')
    lines.append(f"{'PHASE':<20} {'STATUS':<6} {'TIME':>7}  DETAILS")
    for result in attempt.phases:
        status = 'PASS' if result.satisfied else 'FAIL'
        lines.append(f"{result.phase.value:<20} {status:<6} {result.duration:>6.1f}s  {result.message}")

    if attempt.errors:
        lines.append('')
        lines.append('Errors:')
        lines.extend(f"  - {error}" for error in attempt.errors)
    return '\n'.join(lines) + '\n'


def render_environment(env: Environment) -> str:
    lines = [
        f"Environment: {env.id}",
        f"  State:      {env.state.value}",
        f"  Created:    {env.created_at.isoformat(timespec='seconds')}",
    ]
    for name, value in env.handles().items():
        lines.append(f"  {name + ':':<22} {value}")
    return '\n'.join(lines) + '\n'


def write_report(attempt: BootAttempt, results_dir: Path) -> Dict[str, Path]:
    """Save JSON and text reports and return their paths."""
    results_dir = Path(results_dir)
    results_dir.mkdir(parents=True, exist_ok=True)
    json_path = results_dir / 'boot_attempt.json'
    text_path = results_dir / 'boot_attempt.txt'

    with open(json_path, 'w', encoding='utf-8') as f:
        f.write(render_json(attempt))
    with open(text_path, 'w', encoding='utf-8') as f:
        f.write(f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n")
        f.write(render_text(attempt))
    return {'json': json_path, 'text': text_path}


LOG_TYPES = ('dnsmasq', 'kind')


def _file_section(title: str, path: Path) -> str:
    header = f"=== {title} ({path}) ==="
    if not path.exists():
        return f"{header}\n(not found)\n"
    content = path.read_text(encoding='utf-8', errors='replace')
    return f"{header}\n{content.rstrip() or '(empty)'}\n"


def render_dnsmasq_logs(env: Environment) -> str:
    """Lease table, configuration and log of the environment's dnsmasq."""
    if not env.lease_file:
        return f"No dnsmasq instance recorded for {env.id}\n"
    lease_file = Path(env.lease_file)
    service_dir = lease_file.parent
    sections = [
        _file_section('Dnsmasq Leases', lease_file),
        _file_section('Dnsmasq Config', service_dir / 'dnsmasq.conf'),
        _file_section('Dnsmasq Log', service_dir / 'dnsmasq.log'),
    ]
    return '\n'.join(sections)


def render_kind_logs(env: Environment) -> str:
    if not env.cluster_name:
        return f"No kind cluster recorded for {env.id}\n"
    lines = [
        '=== Kind Cluster ===',
        f"Name:       {env.cluster_name}",
        f"Kubeconfig: {env.kubeconfig_path}",
        f"Namespace:  {env.namespace}",
        '',
        'To view cluster logs, run:',
        f"  kind export logs --name {env.cluster_name} /tmp/kind-logs",
    ]
    return '\n'.join(lines) + '\n'
