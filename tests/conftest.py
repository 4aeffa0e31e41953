"""Shared fixtures and builders for daycycle tests."""

import threading
import time
from collections import namedtuple

import pytest

from daycycle.config.models import OrchestrationConfig, ServiceDefinition, ValidationConfig
from daycycle.config.parser import ServiceRegistry
from daycycle.orchestrator.dependency_graph import DependencyResolver
from daycycle.orchestrator.validation import PreValidator
from daycycle.remote.banking import SimulatedBankingOperations
from daycycle.remote.simulated import SimulatedActionExecutor
from daycycle.state.store import StateStore

DiskUsage = namedtuple("DiskUsage", ["total", "used", "free"])


def make_service(service_id, name, sod=(), eod=(), **kwargs):
    """Build a service definition with test-friendly defaults."""
    kwargs.setdefault("host", f"{name.lower()}.test.internal")
    kwargs.setdefault("sod_timeout", 60)
    kwargs.setdefault("eod_timeout", 60)
    return ServiceDefinition(
        id=service_id,
        name=name,
        sod_dependencies=list(sod),
        eod_dependencies=list(eod),
        **kwargs
    )


def healthy_disk(path):
    return DiskUsage(total=100, used=20, free=80)


def make_validator(store, services, config=None):
    """Pre-validator that does not depend on the machine running the tests."""
    return PreValidator(
        store,
        DependencyResolver(ServiceRegistry(services)),
        config or ValidationConfig(),
        disk_usage=healthy_disk,
    )


def wait_until(predicate, timeout=5.0, interval=0.01):
    """Poll until predicate() is true; fail the test on timeout."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            pytest.fail("Condition not met in time")
        time.sleep(interval)


class FakeClock:
    """Monotonic clock advanced only by its own sleep()."""

    def __init__(self, start=0.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def store():
    return StateStore()


@pytest.fixture
def executor():
    return SimulatedActionExecutor()


@pytest.fixture
def banking():
    return SimulatedBankingOperations()


@pytest.fixture
def settings():
    return OrchestrationConfig(
        max_workers=8,
        in_flight_poll_interval=5,
        in_flight_timeout=60,
        dry_run_delay=0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cancel_event():
    return threading.Event()


@pytest.fixture
def layered_services():
    """A, B and E have no dependencies, C needs A and B, D needs C."""
    return [
        make_service(1, "A"),
        make_service(2, "B"),
        make_service(3, "C", sod=[1, 2], eod=[1, 2]),
        make_service(4, "D", sod=[3], eod=[3]),
        make_service(5, "E"),
    ]
