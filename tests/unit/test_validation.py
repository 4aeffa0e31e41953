"""Tests for the pre-validation battery."""

from unittest.mock import Mock

from daycycle.config.models import OperationType, ValidationConfig
from daycycle.config.parser import ServiceRegistry
from daycycle.orchestrator.dependency_graph import DependencyResolver
from daycycle.orchestrator.validation import PreValidator

from tests.conftest import DiskUsage, healthy_disk, make_service


def validator_for(store, services, config=None, **kwargs):
    kwargs.setdefault("disk_usage", healthy_disk)
    return PreValidator(
        store, DependencyResolver(ServiceRegistry(services)), config, **kwargs
    )


def refuse(address, timeout):
    raise ConnectionRefusedError(f"connection refused by {address[0]}")


class TestPreValidator:
    def test_all_checks_pass(self, store, layered_services):
        report = validator_for(store, layered_services).validate(OperationType.SOD, layered_services)

        assert report.hard_failures == []
        assert report.soft_failures == []
        assert report.summary().startswith("5/5 checks passed")
        assert report.to_validation_result().is_valid

    def test_missing_path_is_a_hard_failure(self, store, tmp_path):
        config = ValidationConfig(filesystem_paths=[str(tmp_path), str(tmp_path / "gone")])

        report = validator_for(store, [], config).validate(OperationType.EOD, [])

        assert [c.name for c in report.hard_failures] == ["Filesystem availability"]
        assert "gone does not exist" in report.hard_failures[0].message
        assert not report.to_validation_result().is_valid

    def test_unreachable_target_is_a_warning(self, store):
        config = ValidationConfig(network_targets=["db01:5432"])

        report = validator_for(store, [], config, connect=refuse).validate(OperationType.SOD, [])

        assert report.hard_failures == []
        assert [c.name for c in report.soft_failures] == ["Network reachability"]
        assert "db01:5432 unreachable" in report.summary()

    def test_reachable_target_connection_is_closed(self, store):
        connection = Mock()
        connect = Mock(return_value=connection)
        config = ValidationConfig(network_targets=["mq01:5672"], network_timeout=1.5)

        report = validator_for(store, [], config, connect=connect).validate(OperationType.SOD, [])

        connect.assert_called_once_with(("mq01", 5672), timeout=1.5)
        connection.close.assert_called_once_with()
        assert report.soft_failures == []

    def test_low_disk_is_a_warning(self, store, tmp_path):
        config = ValidationConfig(filesystem_paths=[str(tmp_path)], min_free_disk_percent=25)

        report = validator_for(
            store, [], config, disk_usage=lambda path: DiskUsage(total=100, used=95, free=5)
        ).validate(OperationType.SOD, [])

        assert [c.name for c in report.soft_failures] == ["Resource headroom"]
        assert "5.0% free" in report.soft_failures[0].message

    def test_missing_dependency_is_a_hard_failure(self, store):
        services = [make_service(1, "ledger", sod=[9])]

        report = validator_for(store, services).validate(OperationType.SOD, services)

        assert [c.name for c in report.hard_failures] == ["Dependency sanity"]
        assert report.dependency_errors

    def test_unwritable_store_is_a_hard_failure(self, layered_services):
        store = Mock()
        store.ping.return_value = False

        report = validator_for(store, layered_services).validate(OperationType.SOD, layered_services)

        assert [c.name for c in report.hard_failures] == ["Datastore connectivity"]
