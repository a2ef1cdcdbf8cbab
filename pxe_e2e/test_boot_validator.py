#!/usr/bin/env python3
"""
Unit tests for the Boot Validation State Machine and its signal sources
"""

import json
import shutil
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from pxe_e2e.boot_validator import (
    DEFAULT_BOOT_TIMEOUT,
    DEFAULT_CALLBACK_TIMEOUT,
    DEFAULT_LEASE_TIMEOUT,
    BootExpectations,
    BootTestConfig,
    BootValidationStateMachine,
    DnsmasqLeaseSource,
    Lease,
    Phase,
    Selection,
    ServiceLogCallbackSource,
    ServiceLogSelectionSource,
    BootTarget,
    parse_lease_line,
    parse_log_time,
    parse_log_fields,
    selection_mismatch,
)
from pxe_e2e.errors import BootValidationError, CommandError, ValidationError
from pxe_e2e.network_drivers import DHCP_LEASE_SECONDS

MAC = '52:54:00:12:34:56'
UUID = '8c4b2f6e-1111-4d6a-9a51-0a8e2c3d4e5f'
START = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Monotonic clock advanced only by sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeVMDriver:
    def __init__(self, events):
        self.events = events
        self.specs = []
        self.create_error = None
        self.destroy_error = None
        self.console = 'iPXE initialising devices...\nhttp://10.0.0.1/boot.ipxe... ok'

    def create(self, spec):
        self.events.append(('create', spec.name))
        self.specs.append(spec)
        if self.create_error:
            raise self.create_error

    def destroy(self, name):
        self.events.append(('destroy', name))
        if self.destroy_error:
            raise self.destroy_error

    def console_log(self, name):
        return self.console


class TimedSource:
    """Returns ``value`` once the fake clock reaches ``available_at``."""

    def __init__(self, clock, value, available_at=None, error=None):
        self.clock = clock
        self.value = value
        self.available_at = available_at
        self.error = error
        self.polls = 0
        self.since = []

    def poll(self, target, since=None):
        self.polls += 1
        self.since.append(since)
        if self.error:
            raise self.error
        if self.available_at is not None and self.clock() >= self.available_at:
            return self.value
        return None


class StateMachineTestCase(unittest.TestCase):
    def setUp(self):
        """Set up test environment."""
        self.clock = FakeClock()
        self.events = []
        self.vm = FakeVMDriver(self.events)
        self.lease = TimedSource(self.clock, Lease(0, MAC, '192.168.100.23', 'pxe-client'), available_at=10)
        self.callback = TimedSource(self.clock, 'msg=ipxe_boot_request uuid=x', available_at=20)
        self.selection = TimedSource(self.clock, Selection('gold', 'rack-7'), available_at=0)

    def machine(self, selection_source='default'):
        if selection_source == 'default':
            selection_source = self.selection
        return BootValidationStateMachine(
            self.vm,
            self.lease,
            self.callback,
            selection_source,
            clock=self.clock,
            sleep=self.clock.sleep,
            wall_clock=lambda: datetime(2024, 5, 1, 12, 0, 0),
        )

    def config(self, **overrides):
        values = {
            'target_name': 'pxe-client',
            'network': 'br-pxe-e2e-net',
            'mac_address': MAC,
            'uuid': UUID,
            'lease_timeout': 30,
            'callback_timeout': 120,
            'boot_timeout': 300,
        }
        values.update(overrides)
        return BootTestConfig(**values)


class TestBootValidationSuccess(StateMachineTestCase):
    """Test successful boot attempts."""

    def test_all_phases_satisfied(self):
        """Test that a clean boot satisfies every configured phase"""
        config = self.config(expectations=BootExpectations('gold', 'rack-7'))

        attempt = self.machine().run(config)

        self.assertTrue(attempt.success)
        self.assertEqual([r.phase for r in attempt.phases], list(Phase))
        self.assertTrue(all(r.satisfied for r in attempt.phases))
        self.assertEqual(attempt.address, '192.168.100.23')
        self.assertIsNone(attempt.error)
        attempt.raise_for_failure()

    def test_phase_durations_follow_signals(self):
        """Test that each phase is timed from its own start"""
        attempt = self.machine().run(self.config())

        self.assertEqual(attempt.result_for(Phase.LEASE_ACQUIRED).duration, 10)
        self.assertEqual(attempt.result_for(Phase.CALLBACK_OBSERVED).duration, 10)
        self.assertIn('inferred', attempt.result_for(Phase.BOOT_FILE_FETCHED).message)

    def test_without_expectations(self):
        """Test that selection is not checked when no expectations are set"""
        attempt = self.machine(selection_source=None).run(self.config())

        self.assertTrue(attempt.success)
        self.assertEqual(len(attempt.phases), 3)
        self.assertIsNone(attempt.result_for(Phase.SELECTION_VERIFIED))

    def test_vm_created_then_destroyed(self):
        """Test the VM lifecycle around a successful attempt"""
        self.machine().run(self.config())

        self.assertEqual(self.events, [('create', 'pxe-client'), ('destroy', 'pxe-client')])
        spec = self.vm.specs[0]
        self.assertEqual(spec.network, 'br-pxe-e2e-net')
        self.assertEqual(spec.mac_address, MAC)
        self.assertEqual(spec.uuid, UUID)
        self.assertEqual(spec.memory_mb, 1024)

    def test_console_log_collected(self):
        """Test that the serial console is attached to the attempt logs"""
        attempt = self.machine().run(self.config())
        self.assertIn('[console] iPXE initialising devices...', attempt.logs)

    def test_sources_bounded_by_attempt_start(self):
        """Test that every source is polled with the attempt start time"""
        attempt = self.machine().run(self.config(expectations=BootExpectations('gold')))

        for source in (self.lease, self.callback, self.selection):
            self.assertTrue(source.since)
            self.assertTrue(all(since == attempt.started_at for since in source.since))

    def test_timestamps(self):
        """Test that start and finish times are recorded"""
        attempt = self.machine().run(self.config())
        self.assertEqual(attempt.started_at, datetime(2024, 5, 1, 12, 0, 0))
        self.assertEqual(attempt.finished_at, datetime(2024, 5, 1, 12, 0, 0))


class TestBootValidationFailure(StateMachineTestCase):
    """Test failed and partial boot attempts."""

    def test_lease_never_appears(self):
        """Test that a missing lease fails phases 1 and 2 but still checks the callback"""
        self.lease.available_at = None
        self.callback.available_at = None

        attempt = self.machine().run(self.config())

        self.assertFalse(attempt.success)
        self.assertEqual(len(attempt.phases), 3)
        self.assertFalse(attempt.result_for(Phase.LEASE_ACQUIRED).satisfied)
        self.assertFalse(attempt.result_for(Phase.BOOT_FILE_FETCHED).satisfied)
        self.assertEqual(attempt.result_for(Phase.BOOT_FILE_FETCHED).message,
                         'not inferred: no lease was acquired')
        self.assertGreater(self.callback.polls, 0)
        self.assertFalse(attempt.result_for(Phase.CALLBACK_OBSERVED).satisfied)
        self.assertIn(('destroy', 'pxe-client'), self.events)

    def test_callback_checked_independently_of_lease(self):
        """Test that the callback phase can pass when the lease phase failed"""
        self.lease.available_at = None
        self.callback.available_at = 0

        attempt = self.machine().run(self.config())

        self.assertFalse(attempt.success)
        self.assertTrue(attempt.result_for(Phase.CALLBACK_OBSERVED).satisfied)

    def test_each_phase_has_its_own_timeout(self):
        """Test that phases time out after their own configured duration"""
        self.lease.available_at = None
        self.callback.available_at = None

        attempt = self.machine().run(self.config(lease_timeout=30, callback_timeout=60))

        self.assertEqual(attempt.result_for(Phase.LEASE_ACQUIRED).duration, 30)
        self.assertEqual(attempt.result_for(Phase.CALLBACK_OBSERVED).duration, 60)
        self.assertIn('no lease for pxe-client in 30s', attempt.result_for(Phase.LEASE_ACQUIRED).message)

    def test_boot_deadline_caps_phases(self):
        """Test that the overall boot deadline shortens later phases"""
        self.lease.available_at = None
        self.callback.available_at = None

        attempt = self.machine().run(self.config(boot_timeout=50, lease_timeout=30, callback_timeout=120))

        self.assertEqual(attempt.result_for(Phase.CALLBACK_OBSERVED).duration, 20)
        self.assertEqual(self.clock.now, 50)

    def test_signal_at_deadline_is_not_accepted(self):
        """Test that a tick landing on the deadline times the phase out"""
        self.lease.available_at = 30

        attempt = self.machine().run(self.config(lease_timeout=30))

        self.assertFalse(attempt.result_for(Phase.LEASE_ACQUIRED).satisfied)

    def test_selection_mismatch(self):
        """Test that a different profile fails the selection phase"""
        self.selection.value = Selection('silver', 'rack-7')

        attempt = self.machine().run(self.config(expectations=BootExpectations('gold')))

        result = attempt.result_for(Phase.SELECTION_VERIFIED)
        self.assertFalse(result.satisfied)
        self.assertEqual(result.message, "expected profile 'gold', got 'silver'")
        self.assertFalse(attempt.success)

    def test_probe_errors_are_reported(self):
        """Test that a failing probe is retried and its last error kept"""
        self.lease.error = OSError('lease file unreadable')

        attempt = self.machine().run(self.config(lease_timeout=10))

        result = attempt.result_for(Phase.LEASE_ACQUIRED)
        self.assertFalse(result.satisfied)
        self.assertEqual(self.lease.polls, 4)
        self.assertIn('last error: lease file unreadable', result.message)

    def test_vm_create_failure(self):
        """Test that a VM that cannot be created fails every phase"""
        self.vm.create_error = CommandError(['virsh', 'define'], 1, stderr='no space')

        attempt = self.machine().run(self.config(expectations=BootExpectations('gold')))

        self.assertFalse(attempt.success)
        self.assertEqual(len(attempt.phases), 4)
        self.assertTrue(all(r.message == 'VM was not created' for r in attempt.phases))
        self.assertEqual(self.lease.polls, 0)
        self.assertEqual(self.events[-1], ('destroy', 'pxe-client'))

    def test_destroy_failure_is_recorded(self):
        """Test that a failed VM destroy is reported without raising"""
        self.vm.destroy_error = CommandError(['virsh', 'destroy'], 1, stderr='busy')

        attempt = self.machine().run(self.config())

        self.assertTrue(any('failed to destroy VM' in error for error in attempt.errors))

    def test_raise_for_failure(self):
        """Test that a failed attempt converts to BootValidationError"""
        self.callback.available_at = None
        attempt = self.machine().run(self.config())

        with self.assertRaises(BootValidationError) as ctx:
            attempt.raise_for_failure()
        self.assertIn('callback-observed', str(ctx.exception))
        self.assertEqual(ctx.exception.exit_code, 5)


class TestEvidenceFromEarlierRuns(StateMachineTestCase):
    """Test that leases and log lines older than the attempt do not count."""

    def setUp(self):
        """Set up test environment."""
        super().setUp()
        self.temp_dir = Path(tempfile.mkdtemp())
        self.lease_file = self.temp_dir / 'dnsmasq.leases'
        self.log_text = ''
        self.fetched_since = []

    def tearDown(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def fetch(self, since):
        self.fetched_since.append(since)
        return self.log_text

    def write_lease(self, granted_offset):
        expiry = int(START.timestamp()) + granted_offset + DHCP_LEASE_SECONDS
        self.lease_file.write_text(f"{expiry} {MAC} 192.168.100.23 pxe-client *\n")

    def machine(self, selection_source=None):
        return BootValidationStateMachine(
            self.vm,
            DnsmasqLeaseSource(self.lease_file),
            ServiceLogCallbackSource(self.fetch),
            selection_source,
            clock=self.clock,
            sleep=self.clock.sleep,
            wall_clock=lambda: START,
        )

    def test_previous_run_does_not_pass(self):
        """Test that a lease and boot request from an earlier run leave the phases unsatisfied"""
        self.write_lease(granted_offset=-3600)
        self.log_text = f'time=2024-05-01T11:00:00Z level=INFO msg=ipxe_boot_request uuid=11111111-old mac={MAC}\n'

        attempt = self.machine().run(self.config(lease_timeout=10, callback_timeout=10))

        self.assertFalse(attempt.success)
        self.assertFalse(attempt.result_for(Phase.LEASE_ACQUIRED).satisfied)
        self.assertFalse(attempt.result_for(Phase.BOOT_FILE_FETCHED).satisfied)
        self.assertFalse(attempt.result_for(Phase.CALLBACK_OBSERVED).satisfied)
        self.assertTrue(self.fetched_since)
        self.assertTrue(all(since == START for since in self.fetched_since))

    def test_renewed_lease_and_new_request_pass(self):
        """Test that a lease renewed and a request logged during the attempt are accepted"""
        self.write_lease(granted_offset=30)
        self.log_text = '\n'.join([
            f'time=2024-05-01T11:00:00Z level=INFO msg=ipxe_boot_request uuid=11111111-old mac={MAC}',
            f'time=2024-05-01T12:00:40Z level=INFO msg=ipxe_boot_request uuid={UUID} mac={MAC}',
        ])

        attempt = self.machine().run(self.config(lease_timeout=10, callback_timeout=10))

        self.assertTrue(attempt.success)
        self.assertIn(UUID, attempt.result_for(Phase.CALLBACK_OBSERVED).message)


class TestBootValidationInputs(StateMachineTestCase):
    """Test configuration handling."""

    def test_empty_target_rejected_before_vm(self):
        """Test that a missing target name raises before anything is created"""
        with self.assertRaises(ValidationError):
            self.machine().run(self.config(target_name=''))
        self.assertEqual(self.events, [])

    def test_expectations_need_selection_source(self):
        """Test that expectations without a selection source are rejected"""
        with self.assertRaises(ValidationError):
            self.machine(selection_source=None).run(self.config(expectations=BootExpectations('gold')))
        self.assertEqual(self.events, [])

    def test_defaults(self):
        """Test that zero values are replaced with defaults"""
        config = BootTestConfig(target_name='pxe-client').with_defaults()

        self.assertEqual(config.boot_timeout, DEFAULT_BOOT_TIMEOUT)
        self.assertEqual(config.lease_timeout, DEFAULT_LEASE_TIMEOUT)
        self.assertEqual(config.callback_timeout, DEFAULT_CALLBACK_TIMEOUT)
        self.assertEqual(config.vcpus, 1)
        self.assertEqual(len(config.uuid), 36)

    def test_defaults_keep_explicit_values(self):
        """Test that explicit values survive defaulting"""
        config = BootTestConfig(target_name='x', uuid=UUID, lease_timeout=5).with_defaults()
        self.assertEqual(config.uuid, UUID)
        self.assertEqual(config.lease_timeout, 5)

    def test_empty_expectations_do_not_add_phase(self):
        """Test that blank expectations behave like none"""
        config = BootTestConfig(target_name='x', expectations=BootExpectations())
        self.assertNotIn(Phase.SELECTION_VERIFIED, config.configured_phases())

    def test_to_dict(self):
        """Test the serialisable view of an attempt"""
        attempt = self.machine().run(self.config())
        data = json.loads(json.dumps(attempt.to_dict()))

        self.assertTrue(data['success'])
        self.assertEqual(data['phases'][0]['phase'], 'lease-acquired')
        self.assertEqual(data['started_at'], '2024-05-01T12:00:00')


class TestLeaseSource(unittest.TestCase):
    """Test dnsmasq lease parsing."""

    def setUp(self):
        """Set up test environment."""
        self.temp_dir = Path(tempfile.mkdtemp())
        self.lease_file = self.temp_dir / 'dnsmasq.leases'

    def tearDown(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_parse_lease_line(self):
        """Test parsing a complete lease line"""
        lease = parse_lease_line(f"1714564800 {MAC} 192.168.100.23 pxe-client 01:{MAC}")
        self.assertEqual(lease.expiry, 1714564800)
        self.assertEqual(lease.ip_address, '192.168.100.23')
        self.assertEqual(lease.client_id, f"01:{MAC}")

    def test_parse_malformed_lines(self):
        """Test that short or non-numeric lines are skipped"""
        self.assertIsNone(parse_lease_line(''))
        self.assertIsNone(parse_lease_line('duid 00:01:00:01'))
        self.assertIsNone(parse_lease_line(f"never {MAC} 10.0.0.1 host"))

    def test_missing_file(self):
        """Test that a missing lease file means no lease yet"""
        source = DnsmasqLeaseSource(self.lease_file)
        self.assertIsNone(source.poll(BootTarget('pxe-client', MAC)))

    def test_match_by_mac_case_insensitive(self):
        """Test MAC matching ignores case"""
        self.lease_file.write_text(
            "1714564800 52:54:00:aa:bb:cc 192.168.100.11 * *\n"
            f"1714564800 {MAC.upper()} 192.168.100.23 * *\n"
        )
        lease = DnsmasqLeaseSource(self.lease_file).poll(BootTarget('pxe-client', MAC))
        self.assertEqual(lease.ip_address, '192.168.100.23')

    def test_match_by_hostname(self):
        """Test hostname matching, never on the wildcard"""
        self.lease_file.write_text("1714564800 52:54:00:aa:bb:cc 192.168.100.11 pxe-client *\n")
        source = DnsmasqLeaseSource(self.lease_file)

        self.assertIsNotNone(source.poll(BootTarget('pxe-client')))
        self.assertIsNone(source.poll(BootTarget('*')))

    def test_lease_older_than_since_ignored(self):
        """Test that only leases granted or renewed after since match"""
        start = int(START.timestamp())
        self.lease_file.write_text(f"{start - 60 + DHCP_LEASE_SECONDS} {MAC} 192.168.100.23 pxe-client *\n")
        source = DnsmasqLeaseSource(self.lease_file)

        self.assertIsNone(source.poll(BootTarget('pxe-client', MAC), since=START))
        self.assertIsNotNone(source.poll(BootTarget('pxe-client', MAC)))

        self.lease_file.write_text(f"{start + DHCP_LEASE_SECONDS} {MAC} 192.168.100.23 pxe-client *\n")
        self.assertIsNotNone(source.poll(BootTarget('pxe-client', MAC), since=START))

    def test_infinite_lease_ignored_with_since(self):
        """Test that an undated lease cannot be attributed to the attempt"""
        self.lease_file.write_text(f"0 {MAC} 192.168.100.23 pxe-client *\n")
        self.assertIsNone(DnsmasqLeaseSource(self.lease_file).poll(BootTarget('pxe-client', MAC), since=START))


class TestServiceLogSources(unittest.TestCase):
    """Test callback and selection detection in service logs."""

    def setUp(self):
        """Set up test environment."""
        self.target = BootTarget('pxe-client', MAC, UUID)
        self.log_text = ''
        self.fetched_since = []

    def fetch(self, since=None):
        self.fetched_since.append(since)
        return self.log_text

    def test_parse_json_fields(self):
        """Test parsing a JSON structured log line"""
        fields = parse_log_fields('{"msg": "ipxe_boot_request", "uuid": "abc", "attempt": 2}')
        self.assertEqual(fields, {'msg': 'ipxe_boot_request', 'uuid': 'abc', 'attempt': '2'})

    def test_parse_key_value_fields(self):
        """Test parsing a logfmt line with quoted values"""
        fields = parse_log_fields('time=2024-05-01 level=info msg=profile_matched profile_name="gold tier"')
        self.assertEqual(fields['msg'], 'profile_matched')
        self.assertEqual(fields['profile_name'], 'gold tier')

    def test_callback_matches_uuid(self):
        """Test that a boot request carrying the client UUID is found"""
        self.log_text = (
            'msg=ipxe_boot_request uuid=00000000-0000-0000-0000-000000000000\n'
            f'{{"msg": "ipxe_boot_request", "uuid": "{UUID.upper()}"}}\n'
        )
        line = ServiceLogCallbackSource(self.fetch).poll(self.target)
        self.assertIn(UUID.upper(), line)

    def test_callback_matches_mac(self):
        """Test that a boot request carrying the client MAC is found"""
        self.log_text = f'level=info msg=ipxe_boot_request mac={MAC}\n'
        self.assertIsNotNone(ServiceLogCallbackSource(self.fetch).poll(self.target))

    def test_callback_ignores_other_clients(self):
        """Test that requests from other clients do not count"""
        self.log_text = 'msg=ipxe_boot_request mac=52:54:00:ff:ff:ff uuid=other\n'
        self.assertIsNone(ServiceLogCallbackSource(self.fetch).poll(self.target))

    def test_selection_follows_last_request(self):
        """Test that only matches after the client's last request are used"""
        self.log_text = '\n'.join([
            f'msg=ipxe_boot_request uuid={UUID}',
            'msg=profile_matched profile_name=old assignment=a1',
            f'msg=ipxe_boot_request uuid={UUID}',
            'msg=profile_matched profile_name=gold assignment=rack-7',
        ])
        selection = ServiceLogSelectionSource(self.fetch).poll(self.target)
        self.assertEqual(selection, Selection('gold', 'rack-7'))

    def test_selection_without_match(self):
        """Test that a request with no following match yields nothing"""
        self.log_text = '\n'.join([
            'msg=profile_matched profile_name=gold',
            f'msg=ipxe_boot_request uuid={UUID}',
        ])
        self.assertIsNone(ServiceLogSelectionSource(self.fetch).poll(self.target))

    def test_parse_log_time(self):
        """Test reading RFC3339, nanosecond and epoch timestamps"""
        self.assertEqual(parse_log_time({'time': '2024-05-01T12:00:00Z'}), START)
        self.assertEqual(parse_log_time({'time': '2024-05-01T14:00:00.123456789+02:00'}),
                         START.replace(microsecond=123456))
        self.assertEqual(parse_log_time({'ts': str(START.timestamp())}), START)
        self.assertIsNone(parse_log_time({'time': 'yesterday'}))
        self.assertIsNone(parse_log_time({'msg': 'ipxe_boot_request'}))

    def test_callback_ignores_requests_before_since(self):
        """Test that a matching request logged before the attempt does not count"""
        self.log_text = f'time=2024-05-01T11:59:59Z msg=ipxe_boot_request mac={MAC}\n'
        source = ServiceLogCallbackSource(self.fetch)

        self.assertIsNone(source.poll(self.target, since=START))
        self.assertEqual(self.fetched_since, [START])

        self.log_text += f'{{"time": "2024-05-01T12:00:01Z", "msg": "ipxe_boot_request", "uuid": "{UUID}"}}\n'
        self.assertIn('12:00:01', source.poll(self.target, since=START))

    def test_callback_keeps_untimed_lines(self):
        """Test that lines without a timestamp are left to the log query bound"""
        self.log_text = f'msg=ipxe_boot_request mac={MAC}\n'
        self.assertIsNotNone(ServiceLogCallbackSource(self.fetch).poll(self.target, since=START))

    def test_selection_ignores_matches_before_since(self):
        """Test that a profile match from an earlier run is not reported"""
        self.log_text = '\n'.join([
            f'time=2024-05-01T11:00:00Z msg=ipxe_boot_request uuid={UUID}',
            'time=2024-05-01T11:00:01Z msg=profile_matched profile_name=gold assignment=rack-7',
        ])
        source = ServiceLogSelectionSource(self.fetch)

        self.assertIsNone(source.poll(self.target, since=START))
        self.assertEqual(source.poll(self.target), Selection('gold', 'rack-7'))

    def test_selection_mismatch_text(self):
        """Test mismatch descriptions for profile and assignment"""
        expected = BootExpectations('gold', 'rack-7')
        self.assertEqual(selection_mismatch(expected, Selection('gold', 'rack-7')), '')
        self.assertEqual(
            selection_mismatch(expected, Selection('gold', 'rack-1')),
            "expected assignment 'rack-7', got 'rack-1'",
        )


if __name__ == '__main__':
    unittest.main()
