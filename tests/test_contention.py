import logging
from unittest.mock import patch

import pytest

from conftest import FakeHost
from ec2_gha_provision.contention import LockContentionMonitor, LockHolder
from ec2_gha_provision.errors import ContentionTimeoutError


@pytest.fixture
def idle_host():
    return (
        FakeHost()
        .on("pgrep", exit_code=1)
        .on("flock")
        .on("systemctl is-active", exit_code=3)
    )


@pytest.fixture
def monitor(idle_host, clock):
    return LockContentionMonitor(idle_host, clock)


def test_idle_host_is_free(monitor):
    assert not monitor.package_process_running()
    assert not monitor.lock_file_held()
    assert not monitor.upgrade_service_active()
    assert not monitor.is_busy()


@pytest.mark.parametrize("substring, exit_code", [
    ("pgrep -f '[a]pt-get'", 0),
    ("pgrep -f '[d]pkg'", 0),
    ("/var/lib/dpkg/lock-frontend", 75),
    ("/var/lib/apt/lists/lock", 1),
    ("systemctl is-active", 0),
])
def test_any_single_signal_means_busy(idle_host, monitor, substring, exit_code):
    idle_host.on(substring, exit_code=exit_code)
    assert monitor.is_busy()


def test_pgrep_error_counts_as_busy(idle_host, monitor):
    idle_host.on("pgrep -f '[a]pt'", exit_code=2)
    assert monitor.package_process_running()


def test_process_patterns_exclude_the_probe_itself(idle_host, monitor):
    monitor.package_process_running()
    assert "pgrep -f '[u]nattended-upgrade'" in idle_host.commands


def test_lock_files_are_tested_without_blocking(idle_host, monitor):
    monitor.lock_file_held()
    command = idle_host.ran("/var/lib/dpkg/lock-frontend")[0]
    assert "flock --nonblock --exclusive" in command
    assert command.startswith("test ! -e /var/lib/dpkg/lock-frontend ||")


def test_list_holders(idle_host, monitor):
    idle_host.on("lsof -F pc /var/lib/dpkg/lock-frontend", output="p1234\ncapt-get\n")
    idle_host.on("pgrep -a -f '[u]nattended-upgrade'",
                 output="5678 /usr/bin/python3 /usr/bin/unattended-upgrade\n")

    holders = list(monitor.list_holders())

    assert LockHolder(1234, "apt-get", "/var/lib/dpkg/lock-frontend") in holders
    assert LockHolder(5678, "/usr/bin/python3 /usr/bin/unattended-upgrade",
                      "unattended-upgrade process") in holders


def test_list_holders_skips_unresolvable(idle_host, monitor):
    idle_host.on("lsof", exit_code=1)
    idle_host.on("pgrep -a -f '[d]pkg'", output="garbage line\n")
    assert list(monitor.list_holders()) == []


def test_wait_until_free_returns_immediately_when_free(monitor, clock):
    assert monitor.wait_until_free(120, 5)
    assert clock.sleeps == []


def test_wait_until_free_polls_until_free(monitor, clock):
    with patch.object(monitor, "is_busy", side_effect=[True, True, True, False]):
        assert monitor.wait_until_free(120, 5)
    assert clock.sleeps == [5, 5]


def test_wait_until_free_gives_up(monitor, clock):
    events = []
    monitor.on_progress = events.append
    with patch.object(monitor, "is_busy", return_value=True):
        assert not monitor.wait_until_free(12, 5)
    assert clock.sleeps == [5, 5, 2]
    assert sum(clock.sleeps) == 12
    assert all(event.source == "contention" for event in events)


def test_holder_str():
    holder = LockHolder(42, "dpkg", "/var/lib/dpkg/lock")
    assert str(holder) == "PID 42 (dpkg) holding /var/lib/dpkg/lock"


def test_upgrade_service_note_is_logged_once(idle_host, monitor, caplog):
    caplog.set_level(logging.INFO, logger="ec2_gha_provision.contention")
    idle_host.on("systemctl is-active", exit_code=0)

    assert not monitor.wait_until_free(10, 5)
    assert not monitor.wait_until_free(10, 5)

    assert caplog.text.count("unattended-upgrade-shutdown") == 1


def test_contention_hint_names_upgrade_shutdown_helper():
    assert "unattended-upgrade-shutdown" in ContentionTimeoutError("busy").hint
