#!/usr/bin/env python3
"""
Boot Validation State Machine

Drives one PXE client VM through a boot attempt and checks, phase by phase,
that the provisioning service did its job:

1. lease-acquired      dnsmasq handed the client a DHCP lease
2. boot-file-fetched   inferred from (1); there is no direct TFTP signal
3. callback-observed   the service logged an iPXE boot request for the client
4. selection-verified  the service matched the expected profile/assignment
                       (only when expectations are configured)

Each phase polls its own signal source against its own deadline. Sources only
accept evidence dated at or after the attempt start, since lease files and
service logs outlive a run. A failed phase never stops the later ones, so
every run yields a full report. The VM is always destroyed at the end.
"""

import json
import logging
import re
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pxe_e2e.errors import BootValidationError, ValidationError
from pxe_e2e.network_drivers import DHCP_LEASE_SECONDS
from pxe_e2e.vm_driver import DEFAULT_MEMORY_MB, DEFAULT_VCPUS, VMSpec

DEFAULT_BOOT_TIMEOUT = 300.0
DEFAULT_LEASE_TIMEOUT = 30.0
DEFAULT_CALLBACK_TIMEOUT = 120.0
DEFAULT_POLL_INTERVAL = 2.0

BOOT_REQUEST_MSG = 'ipxe_boot_request'
PROFILE_MATCHED_MSG = 'profile_matched'

KEY_VALUE_PATTERN = re.compile(r'(\w+)=("(?:[^"\\]|\\.)*"|\S+)')
FRACTION_PATTERN = re.compile(r'(\.\d{6})\d+')


class Phase(Enum):
    """Boot phases, in evaluation order."""
    LEASE_ACQUIRED = "lease-acquired"
    BOOT_FILE_FETCHED = "boot-file-fetched"
    CALLBACK_OBSERVED = "callback-observed"
    SELECTION_VERIFIED = "selection-verified"


class PhaseState(Enum):
    """Progress of a single phase poll loop."""
    PENDING = "pending"
    SATISFIED = "satisfied"
    TIMED_OUT = "timed-out"


@dataclass
class PhaseResult:
    """Outcome of one phase."""
    phase: Phase
    satisfied: bool
    timestamp: datetime
    message: str = ''
    duration: float = 0.0


@dataclass
class BootExpectations:
    """Identifiers the service is expected to resolve for the client."""
    profile_name: str = ''
    assignment_name: str = ''

    def is_empty(self) -> bool:
        return not (self.profile_name or self.assignment_name)


@dataclass
class BootTestConfig:
    """Settings for one boot attempt. Zero values mean "use the default"."""
    target_name: str
    network: str = ''
    mac_address: str = ''
    uuid: str = ''
    memory_mb: int = 0
    vcpus: int = 0
    boot_timeout: float = 0
    lease_timeout: float = 0
    callback_timeout: float = 0
    poll_interval: float = DEFAULT_POLL_INTERVAL
    expectations: Optional[BootExpectations] = None

    def with_defaults(self) -> 'BootTestConfig':
        return replace(
            self,
            uuid=self.uuid or str(uuid.uuid4()),
            memory_mb=self.memory_mb or DEFAULT_MEMORY_MB,
            vcpus=self.vcpus or DEFAULT_VCPUS,
            boot_timeout=self.boot_timeout or DEFAULT_BOOT_TIMEOUT,
            lease_timeout=self.lease_timeout or DEFAULT_LEASE_TIMEOUT,
            callback_timeout=self.callback_timeout or DEFAULT_CALLBACK_TIMEOUT,
            poll_interval=self.poll_interval or DEFAULT_POLL_INTERVAL,
        )

    def configured_phases(self) -> List[Phase]:
        phases = [Phase.LEASE_ACQUIRED, Phase.BOOT_FILE_FETCHED, Phase.CALLBACK_OBSERVED]
        if self.expectations is not None and not self.expectations.is_empty():
            phases.append(Phase.SELECTION_VERIFIED)
        return phases


@dataclass
class BootTarget:
    """Identity of the client the signal sources attribute evidence to."""
    name: str
    mac_address: str = ''
    uuid: str = ''
    address: str = ''


@dataclass
class BootAttempt:
    """Record of one validation run."""
    target: str
    phases: List[PhaseResult] = field(default_factory=list)
    success: bool = False
    logs: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    address: str = ''

    def result_for(self, phase: Phase) -> Optional[PhaseResult]:
        for result in self.phases:
            if result.phase is phase:
                return result
        return None

    @property
    def error(self) -> Optional[BootValidationError]:
        if self.success:
            return None
        return BootValidationError(self)

    def raise_for_failure(self):
        error = self.error
        if error is not None:
            raise error

    def to_dict(self) -> Dict[str, Any]:
        return {
            'target': self.target,
            'success': self.success,
            'address': self.address,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'phases': [
                {
                    'phase': result.phase.value,
                    'satisfied': result.satisfied,
                    'timestamp': result.timestamp.isoformat(),
                    'message': result.message,
                    'duration': round(result.duration, 3),
                }
                for result in self.phases
            ],
            'errors': list(self.errors),
            'logs': list(self.logs),
        }


# Signal sources

@dataclass
class Lease:
    """One dnsmasq lease line."""
    expiry: int
    mac_address: str
    ip_address: str
    hostname: str
    client_id: str = ''


def parse_lease_line(line: str) -> Optional[Lease]:
    """Parse ``<expiry> <mac> <ip> <hostname> <client-id>``."""
    parts = line.split()
    if len(parts) < 4:
        return None
    try:
        expiry = int(parts[0])
    except ValueError:
        return None
    return Lease(
        expiry=expiry,
        mac_address=parts[1],
        ip_address=parts[2],
        hostname=parts[3],
        client_id=parts[4] if len(parts) > 4 else '',
    )


class DnsmasqLeaseSource:
    """Looks up the client's lease in a dnsmasq lease file.

    The lease file outlives a boot attempt, so with ``since`` only leases
    granted or renewed at or after that moment count. dnsmasq records the
    expiry, not the grant time: a lease handed out at ``since`` expires no
    earlier than ``since + lease_seconds``.
    """

    def __init__(self, lease_path: Path, lease_seconds: int = DHCP_LEASE_SECONDS):
        self.lease_path = Path(lease_path)
        self.lease_seconds = lease_seconds

    def leases(self) -> List[Lease]:
        if not self.lease_path.exists():
            return []
        leases = []
        for line in self.lease_path.read_text(encoding='utf-8').splitlines():
            lease = parse_lease_line(line)
            if lease:
                leases.append(lease)
        return leases

    def granted_since(self, lease: Lease, since: Optional[datetime]) -> bool:
        if since is None:
            return True
        # Infinite leases (expiry 0) carry no date
        return lease.expiry >= int(since.timestamp()) + self.lease_seconds

    def poll(self, target: BootTarget, since: Optional[datetime] = None) -> Optional[Lease]:
        for lease in self.leases():
            if not self.granted_since(lease, since):
                continue
            if target.mac_address and lease.mac_address.lower() == target.mac_address.lower():
                return lease
            if lease.hostname != '*' and lease.hostname == target.name:
                return lease
        return None


def parse_log_fields(line: str) -> Dict[str, str]:
    """Extract fields from a JSON or ``key=value`` structured log line."""
    line = line.strip()
    if line.startswith('{'):
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            entry = None
        if isinstance(entry, dict):
            return {str(key): str(value) for key, value in entry.items()}
    fields = {}
    for key, value in KEY_VALUE_PATTERN.findall(line):
        if value.startswith('"') and value.endswith('"'):
            value = value[1:-1].replace('\\"', '"')
        fields[key] = value
    return fields


def _as_utc(moment: datetime) -> datetime:
    # Naive values are local time, as datetime.now() returns them
    return moment.astimezone(timezone.utc)


def parse_log_time(fields: Dict[str, str]) -> Optional[datetime]:
    """Timestamp of a structured log entry (``time`` or ``ts``), if it has one."""
    value = fields.get('time') or fields.get('ts')
    if not value:
        return None
    try:
        return datetime.fromtimestamp(float(value), timezone.utc)
    except (ValueError, OverflowError):
        pass
    value = FRACTION_PATTERN.sub(r'\1', value.strip())
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    try:
        return _as_utc(datetime.fromisoformat(value))
    except ValueError:
        return None


def log_entries_since(text: str, since: Optional[datetime]) -> List[Dict[str, str]]:
    """Parse non-empty log lines, dropping entries stamped before ``since``.

    Each entry keeps its raw line under ``_line``. Lines without a readable
    timestamp are kept.
    """
    cutoff = _as_utc(since) if since is not None else None
    entries = []
    for line in text.splitlines():
        if not line.strip():
            continue
        fields = parse_log_fields(line)
        if cutoff is not None:
            logged_at = parse_log_time(fields)
            if logged_at is not None and logged_at < cutoff:
                continue
        fields['_line'] = line.strip()
        entries.append(fields)
    return entries


def is_boot_request_for(fields: Dict[str, str], target: BootTarget) -> bool:
    if fields.get('msg') != BOOT_REQUEST_MSG:
        return False
    if target.uuid and fields.get('uuid', '').lower() == target.uuid.lower():
        return True
    if target.mac_address and fields.get('mac', '').lower() == target.mac_address.lower():
        return True
    return False


class ServiceLogCallbackSource:
    """Finds the client's iPXE boot request in the service logs.

    ``fetch_logs(since)`` returns the log text written at or after ``since``
    (``None`` for everything available).
    """

    def __init__(self, fetch_logs: Callable[[Optional[datetime]], str]):
        self.fetch_logs = fetch_logs

    def poll(self, target: BootTarget, since: Optional[datetime] = None) -> Optional[str]:
        for fields in log_entries_since(self.fetch_logs(since), since):
            if is_boot_request_for(fields, target):
                return fields['_line']
        return None


@dataclass
class Selection:
    """Profile and assignment the service resolved for the client."""
    profile_name: str
    assignment_name: str = ''


class ServiceLogSelectionSource:
    """Reads the profile match that followed the client's last boot request."""

    def __init__(self, fetch_logs: Callable[[Optional[datetime]], str]):
        self.fetch_logs = fetch_logs

    def poll(self, target: BootTarget, since: Optional[datetime] = None) -> Optional[Selection]:
        entries = log_entries_since(self.fetch_logs(since), since)

        last_request = -1
        for index, fields in enumerate(entries):
            if is_boot_request_for(fields, target):
                last_request = index
        if last_request < 0:
            return None

        selection = None
        for fields in entries[last_request + 1:]:
            if fields.get('msg') == PROFILE_MATCHED_MSG:
                selection = Selection(
                    profile_name=fields.get('profile_name', ''),
                    assignment_name=fields.get('assignment', ''),
                )
        return selection


def selection_mismatch(expected: BootExpectations, selection: Selection) -> str:
    """Describe how ``selection`` differs from ``expected``; empty if it matches."""
    problems = []
    if expected.profile_name and selection.profile_name != expected.profile_name:
        problems.append(f"expected profile '{expected.profile_name}', got '{selection.profile_name}'")
    if expected.assignment_name and selection.assignment_name != expected.assignment_name:
        problems.append(
            f"expected assignment '{expected.assignment_name}', got '{selection.assignment_name}'"
        )
    return '; '.join(problems)


class BootValidationStateMachine:
    """Runs one boot attempt and produces a BootAttempt."""

    def __init__(
        self,
        vm_driver,
        lease_source,
        callback_source,
        selection_source=None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        wall_clock: Callable[[], datetime] = datetime.now,
    ):
        self.vm_driver = vm_driver
        self.lease_source = lease_source
        self.callback_source = callback_source
        self.selection_source = selection_source
        self.clock = clock
        self.sleep = sleep
        self.wall_clock = wall_clock
        self.logger = logging.getLogger(__name__)

    def run(self, config: BootTestConfig) -> BootAttempt:
        """Boot the client and evaluate every configured phase.

        The returned attempt is complete even when phases failed; check
        ``attempt.success`` or call ``attempt.raise_for_failure()``.

        Raises:
            ValidationError: no target name, or expectations without a
                selection source. Raised before any VM is created.
        """
        if config is None or not config.target_name:
            raise ValidationError("target name is required")
        config = config.with_defaults()
        phases = config.configured_phases()
        if Phase.SELECTION_VERIFIED in phases and self.selection_source is None:
            raise ValidationError("expectations were given but no selection source is configured")

        target = BootTarget(name=config.target_name, mac_address=config.mac_address, uuid=config.uuid)
        attempt = BootAttempt(target=config.target_name, started_at=self.wall_clock())
        boot_deadline = self.clock() + config.boot_timeout
        self.logger.info(f"Starting boot attempt for {target.name} ({', '.join(p.value for p in phases)})")

        try:
            try:
                self.vm_driver.create(VMSpec(
                    name=config.target_name,
                    network=config.network,
                    memory_mb=config.memory_mb,
                    vcpus=config.vcpus,
                    mac_address=config.mac_address,
                    uuid=config.uuid,
                ))
            except Exception as e:
                self.logger.error(f"Failed to create VM {target.name}: {e}")
                attempt.errors.append(f"failed to create VM {target.name}: {e}")
                for phase in phases:
                    attempt.phases.append(PhaseResult(phase, False, self.wall_clock(), "VM was not created"))
            else:
                for phase in phases:
                    result = self._evaluate(phase, config, target, attempt, boot_deadline)
                    attempt.phases.append(result)
                    status = 'satisfied' if result.satisfied else 'NOT satisfied'
                    attempt.logs.append(f"{phase.value}: {status} after {result.duration:.1f}s {result.message}".rstrip())
                    if not result.satisfied:
                        attempt.errors.append(f"{phase.value}: {result.message}")
                self._collect_console(target.name, attempt)
        finally:
            try:
                self.vm_driver.destroy(target.name)
            except Exception as e:
                self.logger.warning(f"Failed to destroy VM {target.name}: {e}")
                attempt.errors.append(f"failed to destroy VM {target.name}: {e}")
            attempt.finished_at = self.wall_clock()
            attempt.success = (
                len(attempt.phases) == len(phases)
                and all(result.satisfied for result in attempt.phases)
            )

        self.logger.info(f"Boot attempt for {target.name}: {'PASS' if attempt.success else 'FAIL'}")
        return attempt

    def _collect_console(self, name: str, attempt: BootAttempt):
        try:
            console = self.vm_driver.console_log(name)
        except Exception as e:
            attempt.errors.append(f"failed to read console log: {e}")
            return
        attempt.logs.extend(f"[console] {line}" for line in console.splitlines())

    def _evaluate(self, phase: Phase, config: BootTestConfig, target: BootTarget,
                  attempt: BootAttempt, boot_deadline: float) -> PhaseResult:
        if phase is Phase.LEASE_ACQUIRED:
            def probe():
                lease = self.lease_source.poll(target, attempt.started_at)
                if lease is None:
                    return None
                target.address = lease.ip_address
                attempt.address = lease.ip_address
                return f"lease {lease.ip_address} for {lease.mac_address}"
            return self._poll_phase(phase, probe, config.lease_timeout, config.poll_interval,
                                    boot_deadline, f"no lease for {target.name} in {config.lease_timeout:.0f}s")

        if phase is Phase.BOOT_FILE_FETCHED:
            lease = attempt.result_for(Phase.LEASE_ACQUIRED)
            satisfied = bool(lease and lease.satisfied)
            message = ("inferred from lease acquisition" if satisfied
                       else "not inferred: no lease was acquired")
            return PhaseResult(phase, satisfied, self.wall_clock(), message)

        if phase is Phase.CALLBACK_OBSERVED:
            def probe():
                line = self.callback_source.poll(target, attempt.started_at)
                return f"boot request logged: {line}" if line else None
            return self._poll_phase(phase, probe, config.callback_timeout, config.poll_interval,
                                    boot_deadline, f"no boot request from {target.name} in {config.callback_timeout:.0f}s")

        expectations = config.expectations
        last_mismatch = ''

        def probe():
            nonlocal last_mismatch
            selection = self.selection_source.poll(target, attempt.started_at)
            if selection is None:
                return None
            mismatch = selection_mismatch(expectations, selection)
            if mismatch:
                last_mismatch = mismatch
                return None
            return f"profile '{selection.profile_name}' assignment '{selection.assignment_name}'"

        result = self._poll_phase(phase, probe, config.callback_timeout, config.poll_interval,
                                  boot_deadline, "no profile match observed")
        if not result.satisfied and last_mismatch:
            result.message = last_mismatch
        return result

    def _poll_phase(self, phase: Phase, probe: Callable[[], Optional[str]], timeout: float,
                    interval: float, boot_deadline: float, timeout_message: str) -> PhaseResult:
        """Poll ``probe`` once per tick until it returns evidence or the deadline passes.

        The deadline is checked after each tick and before probing, so a tick
        that lands past the deadline is never acted on.
        """
        started = self.clock()
        deadline = min(started + timeout, boot_deadline)
        state = PhaseState.PENDING
        evidence = None
        last_error = ''

        while state is PhaseState.PENDING:
            if self.clock() >= deadline:
                state = PhaseState.TIMED_OUT
                break
            self.sleep(interval)
            if self.clock() >= deadline:
                state = PhaseState.TIMED_OUT
                break
            try:
                evidence = probe()
            except Exception as e:
                last_error = str(e)
                self.logger.debug(f"{phase.value} probe failed: {e}")
                continue
            if evidence:
                state = PhaseState.SATISFIED

        duration = self.clock() - started
        if state is PhaseState.SATISFIED:
            self.logger.info(f"{phase.value} satisfied after {duration:.1f}s")
            return PhaseResult(phase, True, self.wall_clock(), evidence, duration)

        message = timeout_message
        if last_error:
            message += f" (last error: {last_error})"
        self.logger.warning(f"{phase.value} timed out after {duration:.1f}s")
        return PhaseResult(phase, False, self.wall_clock(), message, duration)
