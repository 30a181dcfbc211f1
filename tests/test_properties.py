from __future__ import annotations

import pytest

from poolsim.backends import backend_manager
from poolsim.core.modes import run_single
from poolsim.errors import ConfigError
from poolsim.plan.models import Checkout, ErrorClass, WorkloadConfig
from poolsim.plan.properties import build_property_plan, normalize_property_name, registry

PROPERTIES = ["pool-checkout-return", "tx-commit-visible", "tx-rollback-invisible", "retry-after-busy"]


def test_builtin_properties_registered() -> None:
    assert set(PROPERTIES) <= set(registry.names())
    assert "TxCommitVisible" in registry
    assert registry.get("tx_rollback_invisible").name == "tx-rollback-invisible"


def test_normalize_property_name() -> None:
    assert normalize_property_name("PoolCheckoutReturn") == "pool-checkout-return"
    assert normalize_property_name(" retry_after_busy ") == "retry-after-busy"


@pytest.mark.parametrize("backend", ["sqlite", "sqlite-nullpool"])
@pytest.mark.parametrize("name", PROPERTIES)
def test_property_holds_on_backend(name: str, backend: str) -> None:
    plan = build_property_plan(name, 17, WorkloadConfig(pool_size=2, tasks=2))
    result = run_single(backend_manager.factory(backend), plan)
    assert result.passed, result.failure
    assert result.steps_executed == len(plan)
    assert plan.config.property == name


@pytest.mark.parametrize("backend", ["sqlite", "sqlite-nullpool"])
def test_pool_checkout_return_with_single_connection(backend: str) -> None:
    plan = build_property_plan("pool-checkout-return", 1, WorkloadConfig(pool_size=1, tasks=2))
    second = plan.interactions[1]
    assert second.operation == Checkout()
    assert second.expectation.error.error_class is ErrorClass.POOL_TIMEOUT
    result = run_single(backend_manager.factory(backend), plan)
    assert result.passed, result.failure
    assert result.trace.events[1].error_class is ErrorClass.POOL_TIMEOUT


def test_tx_commit_visible_sees_the_row() -> None:
    plan = build_property_plan("tx-commit-visible", 1, WorkloadConfig())
    result = run_single(backend_manager.factory("sqlite"), plan)
    observed = [event.observation for event in result.trace if event.observation is not None]
    assert observed[-1].rows == (("i:1",),)


def test_retry_after_busy_sees_the_lock() -> None:
    plan = build_property_plan("retry-after-busy", 1, WorkloadConfig())
    result = run_single(backend_manager.factory("sqlite"), plan)
    assert result.passed, result.failure
    busy = [event for event in result.trace if event.error_class is ErrorClass.BUSY]
    assert len(busy) == 1
    assert "locked" in busy[0].message


def test_property_requirements_are_checked() -> None:
    with pytest.raises(ConfigError):
        build_property_plan("retry-after-busy", 1, WorkloadConfig(pool_size=1))
    with pytest.raises(ConfigError):
        build_property_plan("tx-commit-visible", 1, WorkloadConfig(tasks=1))
    with pytest.raises(ConfigError):
        build_property_plan("made-up", 1, WorkloadConfig())
