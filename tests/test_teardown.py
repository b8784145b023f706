from conftest import FakeBroker, FakeHost, registration
from ec2_gha_provision.github import DeleteResult
from ec2_gha_provision.teardown import RunnerTeardown


def installed_host():
    return (
        FakeHost()
        .on_sequence("test -e .runner", [(0, ""), (1, "")])
        .on("test -e .credentials", exit_code=1)
    )


def test_remove_everything(config, clock):
    broker = FakeBroker(find_results=[registration(runner_id=9)], clock=clock)
    host = installed_host()

    report = RunnerTeardown(config, broker, host).remove()

    assert report.registration is DeleteResult.DELETED
    assert broker.deleted == [9]
    assert report.service_removed
    assert report.configuration_removed
    assert report.warnings == []
    assert host.ran("sudo ./svc.sh stop")
    assert host.ran("sudo ./svc.sh uninstall")


def test_remove_is_idempotent(config, clock):
    broker = FakeBroker(find_results=[None], clock=clock)
    host = FakeHost().on("test -e", exit_code=1)

    first = RunnerTeardown(config, broker, host).remove()
    second = RunnerTeardown(config, broker, host).remove()

    for report in (first, second):
        assert report.registration is DeleteResult.NOT_FOUND
        assert not report.service_removed
        assert not report.configuration_removed
    assert broker.deleted == []
    assert not host.ran("svc.sh")


def test_remove_without_host_only_deregisters(config, clock):
    broker = FakeBroker(find_results=[registration(runner_id=3)], clock=clock)
    report = RunnerTeardown(config, broker).remove()
    assert broker.deleted == [3]
    assert not report.configuration_removed


def test_busy_runner_and_failed_stop_are_warnings(config, clock):
    broker = FakeBroker(find_results=[registration(busy=True)], clock=clock)
    host = installed_host().on("svc.sh stop", exit_code=1, output="not running")

    report = RunnerTeardown(config, broker, host).remove()

    assert report.service_removed
    assert len(report.warnings) == 2
    assert "busy" in report.warnings[0]
