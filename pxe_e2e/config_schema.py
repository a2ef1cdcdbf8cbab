#!/usr/bin/env python3
"""
Harness configuration schema and validation.

A harness config is a JSON file with one object per section. Every section
and key is declared here; unknown keys and wrong types are reported
together so a user can fix a config in one pass.
"""

import json
from pathlib import Path
from typing import Any, Dict, List

from pxe_e2e.boot_validator import (
    DEFAULT_BOOT_TIMEOUT,
    DEFAULT_CALLBACK_TIMEOUT,
    DEFAULT_LEASE_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    BootExpectations,
    BootTestConfig,
)
from pxe_e2e.cluster_drivers import ServiceSpec
from pxe_e2e.errors import ValidationError
from pxe_e2e.lifecycle import ClusterSpec, EnvironmentSpec, NetworkSpec
from pxe_e2e.tunnel import DEFAULT_REMOTE_PORT

DEFAULT_NETWORK = {
    'cidr': '192.168.100.1/24',
    'bridge_name': 'br-pxe-e2e',
    'dhcp_range': '192.168.100.10,192.168.100.250',
    'boot_filename': 'undionly.kpxe',
}

DEFAULT_TIMEOUTS = {
    'boot_timeout': DEFAULT_BOOT_TIMEOUT,
    'lease_timeout': DEFAULT_LEASE_TIMEOUT,
    'callback_timeout': DEFAULT_CALLBACK_TIMEOUT,
    'poll_interval': DEFAULT_POLL_INTERVAL,
}

# Top-level scalar keys
HARNESS_CONFIG_KEYS = {
    'work_root': {'type': 'string', 'description': 'Directory holding per-environment work dirs'},
    'results_dir': {'type': 'string', 'description': 'Where logs, reports and records are written'},
    'name_prefix': {'type': 'string', 'description': 'Prefix of generated environment ids'},
    'keep_environment': {'type': 'bool', 'description': 'Skip teardown after a boot test'},
}

SECTION_SCHEMAS: Dict[str, Dict[str, Dict[str, Any]]] = {
    'network': {
        'cidr': {'type': 'string'},
        'bridge_name': {'type': 'string'},
        'dhcp_range': {'type': 'string'},
        'virtual_network_name': {'type': 'string'},
        'tftp_root': {'type': 'string'},
        'boot_filename': {'type': 'string'},
        'dns_servers': {'type': 'list'},
    },
    'cluster': {
        'name': {'type': 'string', 'required': True},
        'namespace': {'type': 'string', 'required': True},
        'kubeconfig_path': {'type': 'string'},
    },
    'service': {
        'name': {'type': 'string'},
        'manifests': {'type': 'list'},
        'helm_chart': {'type': 'string'},
        'helm_release': {'type': 'string'},
        'helm_values': {'type': 'dict'},
        'rollout_timeout': {'type': 'int'},
        'log_selector': {'type': 'string'},
        'tls_secret_name': {'type': 'string'},
        'tls_server_address': {'type': 'string'},
    },
    'tunnel': {
        'local_port': {'type': 'int'},
        'remote_port': {'type': 'int'},
        'address': {'type': 'string'},
        'scheme': {'type': 'string', 'choices': ['http', 'https']},
        'ready_timeout': {'type': 'number'},
    },
    'boot_test': {
        'target_name': {'type': 'string', 'required': True},
        'mac_address': {'type': 'string'},
        'memory_mb': {'type': 'int'},
        'vcpus': {'type': 'int'},
        'boot_timeout': {'type': 'number'},
        'lease_timeout': {'type': 'number'},
        'callback_timeout': {'type': 'number'},
        'poll_interval': {'type': 'number'},
        'expected_profile': {'type': 'string'},
        'expected_assignment': {'type': 'string'},
    },
}

# Missing network keys fall back to DEFAULT_NETWORK
REQUIRED_SECTIONS = ['cluster', 'boot_test']

TYPE_CHECKS = {
    'string': lambda value: isinstance(value, str),
    'int': lambda value: isinstance(value, int) and not isinstance(value, bool),
    'number': lambda value: isinstance(value, (int, float)) and not isinstance(value, bool),
    'bool': lambda value: isinstance(value, bool),
    'list': lambda value: isinstance(value, list),
    'dict': lambda value: isinstance(value, dict),
}


def validate_section(name: str, section: Any) -> List[str]:
    """Validate one config section

    Args:
        name: Section name
        section: Section value from the config file

    Returns:
        List of validation errors (empty if valid)
    """
    schema = SECTION_SCHEMAS[name]
    if not isinstance(section, dict):
        return [f"Section '{name}' must be an object"]

    errors = []
    for key, value in section.items():
        if key not in schema:
            errors.append(f"Unknown key in '{name}': {key}")
            errors.append(f"Valid keys: {', '.join(sorted(schema))}")
            continue
        expected = schema[key]['type']
        if not TYPE_CHECKS[expected](value):
            errors.append(f"Key '{name}.{key}' must be of type {expected}, got: {type(value).__name__}")
            continue
        choices = schema[key].get('choices')
        if choices and value not in choices:
            errors.append(f"Key '{name}.{key}' must be one of: {', '.join(choices)}")
        if expected in ('int', 'number') and value < 0:
            errors.append(f"Key '{name}.{key}' must not be negative")

    for key, key_schema in schema.items():
        if key_schema.get('required') and not section.get(key):
            errors.append(f"Missing required key: {name}.{key}")
    return errors


def validate_harness_config(config: Any) -> List[str]:
    """Validate a full harness config

    Returns:
        List of validation errors (empty if valid)
    """
    if not isinstance(config, dict):
        return ["Configuration must be a JSON object"]

    errors = []
    for key, value in config.items():
        if key in SECTION_SCHEMAS:
            errors.extend(validate_section(key, value))
        elif key in HARNESS_CONFIG_KEYS:
            expected = HARNESS_CONFIG_KEYS[key]['type']
            if not TYPE_CHECKS[expected](value):
                errors.append(f"Key '{key}' must be of type {expected}, got: {type(value).__name__}")
        else:
            errors.append(f"Unknown top-level key: {key}")

    for section in REQUIRED_SECTIONS:
        if section not in config:
            errors.append(f"Missing required section: {section}")
    return errors


def load_harness_config(path: Path) -> Dict[str, Any]:
    """Load and validate a harness config file.

    Raises:
        ValidationError: file missing, not JSON, or failing validation.
    """
    path = Path(path)
    if not path.exists():
        raise ValidationError(f"Configuration file not found: {path}")
    try:
        with open(path, 'r', encoding='utf-8') as f:
            config = json.load(f)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Configuration file {path} is not valid JSON: {e}") from e

    errors = validate_harness_config(config)
    if errors:
        raise ValidationError("Invalid configuration:\n" + '\n'.join(f"  - {error}" for error in errors))
    return config


def build_environment_spec(config: Dict[str, Any]) -> EnvironmentSpec:
    network = {**DEFAULT_NETWORK, **config.get('network', {})}
    service = dict(config.get('service', {}))
    return EnvironmentSpec(
        network=NetworkSpec(**network),
        cluster=ClusterSpec(**config.get('cluster', {})),
        service=ServiceSpec(**service),
        work_root=config.get('work_root', '/tmp/pxe-e2e'),
        name_prefix=config.get('name_prefix', 'e2e'),
    )


def build_boot_test_config(config: Dict[str, Any], network: str = '') -> BootTestConfig:
    section = dict(config.get('boot_test', {}))
    expected_profile = section.pop('expected_profile', '')
    expected_assignment = section.pop('expected_assignment', '')
    expectations = None
    if expected_profile or expected_assignment:
        expectations = BootExpectations(profile_name=expected_profile, assignment_name=expected_assignment)
    values = {**DEFAULT_TIMEOUTS, **section}
    return BootTestConfig(network=network, expectations=expectations, **values)


def tunnel_settings(config: Dict[str, Any]) -> Dict[str, Any]:
    section = config.get('tunnel', {})
    return {
        'local_port': section.get('local_port', DEFAULT_REMOTE_PORT),
        'remote_port': section.get('remote_port', DEFAULT_REMOTE_PORT),
        'address': section.get('address', '127.0.0.1'),
        'scheme': section.get('scheme', 'http'),
        'ready_timeout': section.get('ready_timeout', 60),
    }
