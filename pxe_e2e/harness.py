#!/usr/bin/env python3
"""
PXE Boot E2E Harness

Ties the pieces together for a full run:
- provision an environment (or attach to a stored one)
- open a resilient port-forward to the service under test
- boot a client VM and validate every boot phase
- write the report and tear the environment down

Also provides create/delete/list/get/logs commands for managing
environments across CI jobs.
"""

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pxe_e2e.boot_validator import (
    BootAttempt,
    BootTestConfig,
    BootValidationStateMachine,
    DnsmasqLeaseSource,
    ServiceLogCallbackSource,
    ServiceLogSelectionSource,
)
from pxe_e2e.cluster_drivers import KindClusterDriver, ServiceDeployer
from pxe_e2e.command_runner import CommandRunner
from pxe_e2e.config_schema import (
    build_boot_test_config,
    build_environment_spec,
    load_harness_config,
    tunnel_settings,
)
from pxe_e2e.env_config import EnvConfig
from pxe_e2e.environment_store import EnvironmentStore
from pxe_e2e.errors import HarnessError, TeardownError, ValidationError
from pxe_e2e.lifecycle import Environment, LifecycleManager
from pxe_e2e.logging_setup import close_logging, setup_logging
from pxe_e2e.network_drivers import BridgeDriver, DnsmasqDriver, VirtualNetworkDriver
from pxe_e2e.reporting import (
    LOG_TYPES,
    render_dnsmasq_logs,
    render_environment,
    render_kind_logs,
    render_text,
    write_report,
)
from pxe_e2e.tunnel import ResilientTunnel, open_port_forward
from pxe_e2e.vm_driver import VMDriver

DEFAULT_RESULTS_DIR = 'pxe-e2e-results'
DEFAULT_WORK_ROOT = '/tmp/pxe-e2e'

BOOT_TOOLS = ('virsh', 'kubectl')
PROVISION_TOOLS = ('ip', 'dnsmasq', 'kind') + BOOT_TOOLS


class Harness:
    """One configured harness instance."""

    def __init__(
        self,
        config: Dict[str, Any],
        results_dir: Path,
        env_config: Optional[EnvConfig] = None,
        store: Optional[EnvironmentStore] = None,
        manager: Optional[LifecycleManager] = None,
        vm_driver=None,
        deployer: Optional[ServiceDeployer] = None,
        tunnel_factory: Callable[..., ResilientTunnel] = open_port_forward,
        dry_run: bool = False,
    ):
        self.config = config
        self.results_dir = Path(results_dir)
        self.env_config = env_config or EnvConfig()
        self.keep_environment = bool(config.get('keep_environment', False))
        self.execution_timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        self.file_handler = setup_logging(self.results_dir, timestamp=self.execution_timestamp)
        self.logger = logging.getLogger(__name__)

        runner = CommandRunner(log_file=self.results_dir / f"commands_{self.execution_timestamp}.log",
                               dry_run=dry_run)
        work_root = Path(config.get('work_root', DEFAULT_WORK_ROOT))
        self.deployer = deployer or ServiceDeployer(runner)
        self.manager = manager or LifecycleManager(
            BridgeDriver(runner),
            VirtualNetworkDriver(runner, work_root / 'libvirt'),
            DnsmasqDriver(work_root / 'dnsmasq'),
            KindClusterDriver(runner),
            self.deployer,
        )
        self.vm_driver = vm_driver or VMDriver(runner, work_root / 'vms')
        state_dir = Path(self.env_config.state_dir) if self.env_config.state_dir else self.results_dir / 'environments'
        self.store = store or EnvironmentStore(state_dir)
        self.tunnel_factory = tunnel_factory

    # Environment management

    def create_environment(self) -> Environment:
        spec = build_environment_spec(self.config)
        env = self.manager.provision(spec)
        self.store.save(env)
        self.logger.info(f"Environment {env.id} saved")
        return env

    def delete_environment(self, env_id: str):
        """Tear down a stored environment and drop its record.

        A failed teardown keeps the record, updated to the resources that
        still exist, so the delete can be retried.
        """
        env = self.store.load(env_id)
        try:
            self.manager.teardown(env)
        except TeardownError:
            self.store.save(env)
            raise
        self.store.delete(env_id)
        self.logger.info(f"Environment {env_id} deleted")

    def list_environments(self) -> List[Environment]:
        return self.store.list()

    def get_environment(self, env_id: str) -> Environment:
        return self.store.load(env_id)

    def environment_logs(self, env_id: str, log_type: str) -> str:
        """Render the dnsmasq or kind diagnostics of a stored environment."""
        if log_type not in LOG_TYPES:
            raise ValidationError(f"Unknown log type: {log_type} (expected one of: {', '.join(LOG_TYPES)})")
        env = self.store.load(env_id)
        if log_type == 'dnsmasq':
            return render_dnsmasq_logs(env)
        return render_kind_logs(env)

    def required_tools(self, provision: bool = True) -> List[str]:
        """Host binaries the drivers shell out to."""
        tools = list(PROVISION_TOOLS if provision else BOOT_TOOLS)
        if provision:
            service = build_environment_spec(self.config).service
            if service.helm_chart:
                tools.append('helm')
            if service.tls_secret_name:
                tools.append('openssl')
        return tools

    def preflight(self, provision: bool = True):
        """Fail before touching the host when a required binary is missing."""
        missing = [tool for tool in self.required_tools(provision) if not CommandRunner.which(tool)]
        if missing:
            raise ValidationError(f"Required tools not found on PATH: {', '.join(missing)}")

    # Boot test

    def _boot_test_config(self, env: Environment) -> BootTestConfig:
        boot_config = build_boot_test_config(self.config, network=env.virtual_network_name)
        if self.env_config.pxe_client_mac and not boot_config.mac_address:
            boot_config.mac_address = self.env_config.pxe_client_mac
        if self.env_config.vm_name_prefix:
            boot_config.target_name = f"{self.env_config.vm_name_prefix}{boot_config.target_name}"
        return boot_config

    def _state_machine(self, env: Environment) -> BootValidationStateMachine:
        selector = build_environment_spec(self.config).service.log_selector

        def fetch_logs(since: Optional[datetime]) -> str:
            return self.deployer.service_logs(Path(env.kubeconfig_path), env.namespace, selector,
                                              since_time=since)

        return BootValidationStateMachine(
            self.vm_driver,
            DnsmasqLeaseSource(Path(env.lease_file)),
            ServiceLogCallbackSource(fetch_logs),
            ServiceLogSelectionSource(fetch_logs),
        )

    def validate_boot(self, env: Environment) -> BootAttempt:
        """Open the tunnel, wait for the service and run one boot attempt."""
        settings = tunnel_settings(self.config)
        tunnel = self.tunnel_factory(
            env,
            settings['local_port'],
            settings['remote_port'],
            address=settings['address'],
            scheme=settings['scheme'],
        )
        try:
            tunnel.wait_until_ready(timeout=settings['ready_timeout'])
            attempt = self._state_machine(env).run(self._boot_test_config(env))
        finally:
            tunnel.stop()

        run_dir = self.results_dir / 'runs' / f"{env.id}_{self.execution_timestamp}"
        paths = write_report(attempt, run_dir)
        self.logger.info(f"Boot report written to {paths['text']}")
        return attempt

    def run_boot_test(self, env_id: Optional[str] = None) -> BootAttempt:
        """Validate one boot, provisioning a fresh environment unless ``env_id`` is given.

        A freshly provisioned environment is torn down afterwards unless
        ``keep_environment`` is set. Teardown errors surface only when the
        boot test itself did not raise.
        """
        if env_id:
            env = self.store.load(env_id)
            self.env_config.merge_environment(env).require('kubeconfig', 'bridge_interface')
            env = self.env_config.apply_to(env)
            created = False
        else:
            env = self.create_environment()
            created = True
        cleanup = created and not self.keep_environment

        try:
            attempt = self.validate_boot(env)
        except Exception:
            if cleanup:
                self._teardown_after_failure(env)
            raise

        if cleanup:
            self.delete_environment(env.id)
        return attempt

    def _teardown_after_failure(self, env: Environment):
        try:
            self.delete_environment(env.id)
        except HarnessError as e:
            self.logger.error(f"Teardown of {env.id} after a failed run also failed: {e}")

    def close(self):
        close_logging(self.file_handler)
        self.file_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def resolve_results_dir(cli_value: Optional[str], config: Dict[str, Any], env_config: EnvConfig) -> Path:
    return Path(cli_value or env_config.results_dir or config.get('results_dir') or DEFAULT_RESULTS_DIR)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='PXE/iPXE boot E2E harness')
    parser.add_argument('--config', required=True, help='Path to harness configuration file (JSON)')
    parser.add_argument('--results-dir', default=None, help='Directory for logs, reports and environment records')
    parser.add_argument('--dry-run', action='store_true', help='Log driver commands without executing them')
    subparsers = parser.add_subparsers(dest='action', required=True)

    subparsers.add_parser('create', help='Provision an environment and store its record')
    delete_parser = subparsers.add_parser('delete', help='Tear down a stored environment')
    delete_parser.add_argument('env_id', help='Environment id')
    subparsers.add_parser('list', help='List stored environments')
    get_parser = subparsers.add_parser('get', help='Show a stored environment')
    get_parser.add_argument('env_id', help='Environment id')
    logs_parser = subparsers.add_parser('logs', help='Show dnsmasq or kind diagnostics of a stored environment')
    logs_parser.add_argument('env_id', help='Environment id')
    logs_parser.add_argument('log_type', choices=LOG_TYPES, help='Which logs to show')
    run_parser = subparsers.add_parser('run', help='Run a boot validation')
    run_parser.add_argument('--env-id', help='Use a stored environment instead of provisioning one')
    run_parser.add_argument('--keep', action='store_true', help='Keep a freshly provisioned environment')

    args = parser.parse_args(argv)
    env_config = EnvConfig.from_environ()

    try:
        config = load_harness_config(Path(args.config))
    except HarnessError as e:
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code
    if getattr(args, 'keep', False):
        config['keep_environment'] = True

    results_dir = resolve_results_dir(args.results_dir, config, env_config)
    try:
        with Harness(config, results_dir, env_config=env_config, dry_run=args.dry_run) as harness:
            if args.action in ('create', 'run') and not args.dry_run:
                harness.preflight(provision=not getattr(args, 'env_id', None))

            if args.action == 'create':
                env = harness.create_environment()
                print(render_environment(env), end='')
            elif args.action == 'delete':
                harness.delete_environment(args.env_id)
                print(f"Deleted environment {args.env_id}")
            elif args.action == 'list':
                environments = harness.list_environments()
                if not environments:
                    print("No environments found")
                for env in environments:
                    print(render_environment(env), end='')
            elif args.action == 'get':
                print(render_environment(harness.get_environment(args.env_id)), end='')
            elif args.action == 'logs':
                print(harness.environment_logs(args.env_id, args.log_type), end='')
            elif args.action == 'run':
                attempt = harness.run_boot_test(args.env_id)
                print(render_text(attempt), end='')
                attempt.raise_for_failure()
    except HarnessError as e:
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code
    return 0


if __name__ == '__main__':
    sys.exit(main())
