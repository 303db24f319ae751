"""Unit tests for Reconciler.

Tests the pass algorithm that decides which endpoints to remove/add/update,
ensuring correctness of ownership filtering, equivalence checking and
per-endpoint error isolation.
"""

from typing import Dict, List, Optional, Set

import pytest

from external_lb.model import EndpointConfig, Target
from external_lb.providers.base import Provider, ProviderError
from external_lb.reconciler import Reconciler

OWNER = "_env1_suffix"

# =============================================================================
# Mock Provider
# =============================================================================


class MockProvider(Provider):
    """Mock provider with in-memory endpoint storage and call tracking.

    Applied changes are mirrored in the stored state so that a later
    ``get_lb_configs`` reflects them.
    """

    def __init__(
        self,
        initial_configs: Optional[List[EndpointConfig]] = None,
        fqdns: Optional[Dict[str, str]] = None,
        failing_endpoints: Optional[Set[str]] = None,
    ):
        self._configs: List[EndpointConfig] = list(initial_configs or [])
        self._fqdns = fqdns or {}
        self._failing = failing_endpoints or set()
        self.fail_get = False
        self.add_calls: List[EndpointConfig] = []
        self.update_calls: List[EndpointConfig] = []
        self.remove_calls: List[EndpointConfig] = []
        self.operations: List[str] = []

    @property
    def name(self) -> str:
        return "MockLB"

    def health_check(self) -> None:
        pass

    def get_lb_configs(self) -> List[EndpointConfig]:
        if self.fail_get:
            raise ProviderError("backend unreachable")
        return list(self._configs)

    def _store(self, config: EndpointConfig) -> None:
        self._configs = [c for c in self._configs if c.endpoint != config.endpoint]
        self._configs.append(config)

    def add_lb_config(self, config: EndpointConfig) -> str:
        self.add_calls.append(config)
        self.operations.append(f"add:{config.endpoint}")
        if config.endpoint in self._failing:
            raise ProviderError(f"cannot add {config.endpoint}")
        self._store(config)
        return self._fqdns.get(config.endpoint, "")

    def update_lb_config(self, config: EndpointConfig) -> str:
        self.update_calls.append(config)
        self.operations.append(f"update:{config.endpoint}")
        if config.endpoint in self._failing:
            raise ProviderError(f"cannot update {config.endpoint}")
        self._store(config)
        return self._fqdns.get(config.endpoint, "")

    def remove_lb_config(self, config: EndpointConfig) -> None:
        self.remove_calls.append(config)
        self.operations.append(f"remove:{config.endpoint}")
        if config.endpoint in self._failing:
            raise ProviderError(f"cannot remove {config.endpoint}")
        self._configs = [c for c in self._configs if c.endpoint != config.endpoint]


# =============================================================================
# Test Helpers
# =============================================================================


def make_config(
    endpoint: str,
    targets: List[tuple] = (),
    pool: str = "svcA_stackA_env1_suffix",
    port: str = "8080",
) -> EndpointConfig:
    return EndpointConfig(
        endpoint=endpoint,
        target_pool_name=pool,
        target_port=port,
        targets=tuple(Target(ip, p) for ip, p in targets),
    )


def create_reconciler(
    observed: Optional[List[EndpointConfig]] = None, **kwargs
) -> tuple[Reconciler, MockProvider]:
    provider = MockProvider(initial_configs=observed, **kwargs)
    return Reconciler(provider=provider, owner_suffix=OWNER), provider


# =============================================================================
# Basic Scenarios
# =============================================================================


def test_reconcile_adds_missing_endpoint_and_collects_fqdn() -> None:
    """Endpoint only in desired state is added; its FQDN is returned."""
    desired_config = make_config("svc.example.com", [("10.0.0.5", "8080")])
    reconciler, provider = create_reconciler(fqdns={"svc.example.com": "svc.example.com.lb.net"})

    result = reconciler.reconcile({"svc.example.com": desired_config})

    assert provider.add_calls == [desired_config]
    assert provider.update_calls == []
    assert provider.remove_calls == []
    assert result == {"svc.example.com.lb.net": desired_config}


def test_reconcile_removes_endpoint_absent_from_desired() -> None:
    """Endpoint only in observed state is removed with the observed config."""
    observed = make_config("svc.example.com", [("10.0.0.5", "8080")])
    reconciler, provider = create_reconciler([observed])

    result = reconciler.reconcile({})

    assert provider.remove_calls == [observed]
    assert provider.add_calls == []
    assert result == {}


def test_reconcile_updates_when_target_added() -> None:
    """Changed target set triggers exactly one update, no add/remove."""
    observed = make_config("svc.example.com", [("10.0.0.5", "8080")])
    desired = make_config("svc.example.com", [("10.0.0.5", "8080"), ("10.0.0.6", "8080")])
    reconciler, provider = create_reconciler([observed])

    reconciler.reconcile({"svc.example.com": desired})

    assert provider.update_calls == [desired]
    assert provider.add_calls == []
    assert provider.remove_calls == []


def test_reconcile_remove_fqdn_never_collected() -> None:
    observed = make_config("gone.example.com", [("10.0.0.5", "8080")])
    reconciler, _ = create_reconciler([observed], fqdns={"gone.example.com": "gone.lb.net"})

    assert reconciler.reconcile({}) == {}


# =============================================================================
# Equivalence Rule
# =============================================================================


def test_same_targets_in_different_order_need_no_update() -> None:
    observed = make_config("svc", [("10.0.0.1", "80"), ("10.0.0.2", "80")])
    desired = make_config("svc", [("10.0.0.2", "80"), ("10.0.0.1", "80")])
    reconciler, provider = create_reconciler([observed])

    reconciler.reconcile({"svc": desired})

    assert provider.update_calls == []


def test_pool_name_change_forces_update() -> None:
    observed = make_config("svc", [("10.0.0.1", "80")], pool="old_stack_env1_suffix")
    desired = make_config("svc", [("10.0.0.1", "80")], pool="new_stack_env1_suffix")
    reconciler, provider = create_reconciler([observed])

    reconciler.reconcile({"svc": desired})

    assert provider.update_calls == [desired]


def test_pool_name_compared_case_insensitively() -> None:
    observed = make_config("svc", [("10.0.0.1", "80")], pool="SvcA_StackA_env1_suffix")
    desired = make_config("svc", [("10.0.0.1", "80")], pool="svca_stacka_env1_suffix")
    reconciler, provider = create_reconciler([observed])

    reconciler.reconcile({"svc": desired})

    assert provider.update_calls == []


def test_target_port_change_forces_update() -> None:
    observed = make_config("svc", [("10.0.0.1", "80")])
    desired = make_config("svc", [("10.0.0.1", "81")])
    reconciler, provider = create_reconciler([observed])

    reconciler.reconcile({"svc": desired})

    assert provider.update_calls == [desired]


def test_labels_and_target_port_do_not_force_update() -> None:
    observed = make_config("svc", [("10.0.0.1", "80")], port="80")
    desired = EndpointConfig(
        endpoint="svc",
        target_pool_name=observed.target_pool_name,
        target_port="8080",
        targets=observed.targets,
        labels={"httpRedirectUrl": "https://example.com"},
    )
    reconciler, provider = create_reconciler([observed])

    reconciler.reconcile({"svc": desired})

    assert provider.update_calls == []


# =============================================================================
# Ownership Isolation
# =============================================================================


def test_entries_of_other_environments_are_never_touched() -> None:
    """Reconciler for env-A must not mutate env-B entries, even when desired is empty."""
    foreign = make_config("b.example.com", [("10.0.1.1", "80")], pool="svcB_stack_env-B_suffix")
    foreign_same_endpoint = make_config(
        "shared.example.com", [("10.0.1.2", "80")], pool="svcC_stack_env-B_suffix"
    )
    provider = MockProvider(initial_configs=[foreign, foreign_same_endpoint])
    reconciler = Reconciler(provider=provider, owner_suffix="_env-A_suffix")

    desired = make_config("shared.example.com", [("10.0.0.9", "80")], pool="svc_stack_env-A_suffix")
    reconciler.reconcile({"shared.example.com": desired})

    touched = provider.add_calls + provider.update_calls + provider.remove_calls
    assert all(c.target_pool_name.endswith("_env-A_suffix") for c in touched)
    assert provider.remove_calls == []
    # Not owned, so the endpoint counts as missing and is added.
    assert provider.add_calls == [desired]


def test_get_observed_keeps_first_duplicate_endpoint() -> None:
    first = make_config("svc", [("10.0.0.1", "80")], pool="a_s_env1_suffix")
    second = make_config("svc", [("10.0.0.2", "80")], pool="b_s_env1_suffix")
    reconciler, _ = create_reconciler([first, second])

    assert reconciler.get_observed() == {"svc": first}


# =============================================================================
# Ordering, Idempotence and Failures
# =============================================================================


def test_operations_applied_remove_then_add_then_update() -> None:
    observed = [
        make_config("old", [("10.0.0.1", "80")]),
        make_config("changed", [("10.0.0.2", "80")]),
    ]
    desired = {
        "changed": make_config("changed", [("10.0.0.3", "80")]),
        "new": make_config("new", [("10.0.0.4", "80")]),
    }
    reconciler, provider = create_reconciler(observed)

    reconciler.reconcile(desired)

    assert provider.operations == ["remove:old", "add:new", "update:changed"]


def test_second_pass_is_a_no_op() -> None:
    observed = [
        make_config("old", [("10.0.0.1", "80")]),
        make_config("changed", [("10.0.0.2", "80")]),
    ]
    desired = {
        "changed": make_config("changed", [("10.0.0.3", "80"), ("10.0.0.2", "80")]),
        "new": make_config("new", [("10.0.0.4", "80")]),
    }
    reconciler, provider = create_reconciler(observed)
    reconciler.reconcile(desired)
    provider.operations.clear()

    plan = reconciler.plan(desired, reconciler.get_observed())
    reconciler.reconcile(desired)

    assert plan.empty
    assert provider.operations == []


def test_failed_operation_does_not_stop_other_endpoints() -> None:
    observed = [make_config("bad-remove", [("10.0.0.1", "80")])]
    desired = {
        "bad-add": make_config("bad-add", [("10.0.0.2", "80")]),
        "good-add": make_config("good-add", [("10.0.0.3", "80")]),
    }
    reconciler, provider = create_reconciler(
        observed,
        fqdns={"bad-add": "bad.lb.net", "good-add": "good.lb.net"},
        failing_endpoints={"bad-remove", "bad-add"},
    )

    result = reconciler.reconcile(desired)

    assert [c.endpoint for c in provider.add_calls] == ["bad-add", "good-add"]
    assert result == {"good.lb.net": desired["good-add"]}


def test_unexpected_exception_is_isolated_per_endpoint() -> None:
    class ExplodingProvider(MockProvider):
        def add_lb_config(self, config: EndpointConfig) -> str:
            if config.endpoint == "boom":
                raise KeyError("missing field")
            return super().add_lb_config(config)

    provider = ExplodingProvider()
    reconciler = Reconciler(provider=provider, owner_suffix=OWNER)

    reconciler.reconcile({"boom": make_config("boom"), "fine": make_config("fine")})

    assert [c.endpoint for c in provider.add_calls] == ["fine"]


def test_observed_state_failure_aborts_pass() -> None:
    reconciler, provider = create_reconciler()
    provider.fail_get = True

    with pytest.raises(ProviderError):
        reconciler.reconcile({"svc": make_config("svc")})

    assert provider.add_calls == []


def test_empty_endpoint_key_is_skipped() -> None:
    reconciler, provider = create_reconciler()

    reconciler.reconcile({"": make_config("")})

    assert provider.add_calls == []


def test_config_endpoint_follows_its_desired_key() -> None:
    reconciler, provider = create_reconciler()

    mislabelled = make_config("other.example.com", [("10.0.0.1", "80")])

    reconciler.reconcile({"svc.example.com": mislabelled})

    assert [c.endpoint for c in provider.add_calls] == ["svc.example.com"]
    assert provider.add_calls[0].targets == (Target("10.0.0.1", "80"),)
