"""Tests for the Apply Executor against the simulated provider."""

import threading

import pytest

from lakeform.errors import AdapterError, CycleError
from lakeform.execution.executor import ApplyExecutor
from lakeform.loader.parser import parse_documents
from lakeform.models.engine import EngineConfig, FailurePolicy
from lakeform.models.execution import NodeStatus
from lakeform.models.plan import Action
from lakeform.plan.planner import Planner
from lakeform.providers.simulated import SimulatedCloud, simulated_registry
from lakeform.schema.builtin import default_registry
from lakeform.state.store import StateStore
from lakeform.utils.logger import REDACTED, clear_secrets, redact

BRONZE_GOLD = """
resources:
  aws_s3_bucket:
    bronze:
      bucket: acme-bronze
    gold:
      bucket: acme-gold
  aws_s3_bucket_versioning:
    bronze:
      bucket: "${aws_s3_bucket.bronze.bucket}"
    gold:
      bucket: "${aws_s3_bucket.gold.bucket}"
"""

LIFECYCLE = """
resources:
  aws_s3_bucket:
    bronze:
      bucket: acme-bronze
  aws_s3_bucket_lifecycle_configuration:
    bronze:
      bucket: "${{aws_s3_bucket.bronze.bucket}}"
      rule_id: expire-raw
      expiration_days: {days}
"""


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []
        self._lock = threading.Lock()

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds


class TestApplyExecutor:
    def setup_method(self):
        clear_secrets()
        self.cloud = SimulatedCloud()
        self.providers = simulated_registry(self.cloud)
        self.store = StateStore()
        self.planner = Planner(default_registry())
        self.clock = FakeClock()

    def teardown_method(self):
        self.store.close()

    def _executor(self, **config) -> ApplyExecutor:
        return ApplyExecutor(
            self.providers, self.store, EngineConfig(**config),
            sleep=self.clock.sleep, clock=self.clock,
        )

    def _plan(self, text: str):
        decls = parse_documents([("main.yaml", text)], None, {})
        return self.planner.plan(decls, self.store.snapshot())

    def _apply(self, text: str, **config):
        return self._executor(**config).execute(self._plan(text))

    # --- Ordering and state ---

    def test_creates_in_dependency_order(self):
        result = self._apply(BRONZE_GOLD)
        assert result.success
        creates = self.cloud.calls_for("create")
        assert creates.index("aws_s3_bucket.bronze") < creates.index("aws_s3_bucket_versioning.bronze")
        assert creates.index("aws_s3_bucket.gold") < creates.index("aws_s3_bucket_versioning.gold")

    def test_state_records_computed_attributes(self):
        self._apply(BRONZE_GOLD)
        bucket = self.store.get("aws_s3_bucket.bronze")
        assert bucket.attributes["arn"] == "arn:aws:s3:::acme-bronze"
        assert bucket.provider_id == "acme-bronze"
        versioning = self.store.get("aws_s3_bucket_versioning.bronze")
        assert versioning.attributes["bucket"] == "acme-bronze"
        assert versioning.dependencies == ["aws_s3_bucket.bronze"]

    def test_apply_is_idempotent(self):
        self._apply(BRONZE_GOLD)
        calls = len(self.cloud.calls)

        plan = self._plan(BRONZE_GOLD)
        assert not plan.has_changes
        result = self._executor().execute(plan)
        assert result.success
        assert len(self.cloud.calls) == calls

    def test_update_sends_only_the_changed_resource(self):
        self._apply(LIFECYCLE.format(days=365))
        plan = self._plan(LIFECYCLE.format(days=180))
        result = self._executor().execute(plan)

        assert result.success
        assert self.cloud.calls_for("update") == ["aws_s3_bucket_lifecycle_configuration.bronze"]
        entry = self.store.get("aws_s3_bucket_lifecycle_configuration.bronze")
        assert entry.attributes["expiration_days"] == 180

    def test_hash_only_update_makes_no_adapter_call(self):
        self._apply(LIFECYCLE.format(days=365))
        text = LIFECYCLE.format(days=365) + "      depends_on: [aws_s3_bucket.bronze]\n"
        plan = self._plan(text)
        assert plan.get("aws_s3_bucket_lifecycle_configuration.bronze").action == Action.UPDATE

        result = self._executor().execute(plan)
        assert result.success
        assert self.cloud.calls_for("update") == []
        entry = self.store.get("aws_s3_bucket_lifecycle_configuration.bronze")
        assert entry.content_hash == plan.get("aws_s3_bucket_lifecycle_configuration.bronze").content_hash

    def test_replace_deletes_then_creates(self):
        self._apply("resources:\n  aws_s3_bucket:\n    raw:\n      bucket: acme-raw\n")
        plan = self._plan("resources:\n  aws_s3_bucket:\n    raw:\n      bucket: acme-landing\n")
        assert plan.get("aws_s3_bucket.raw").action == Action.REPLACE

        result = self._executor().execute(plan)
        assert result.success
        assert self.cloud.calls[-2:] == [("delete", "aws_s3_bucket.raw"), ("create", "aws_s3_bucket.raw")]
        assert self.store.get("aws_s3_bucket.raw").provider_id == "acme-landing"

    def test_replace_removes_dependents_first(self):
        raw = """
resources:
  aws_s3_bucket:
    raw:
      bucket: {name}
  aws_s3_bucket_versioning:
    raw:
      bucket: "${{aws_s3_bucket.raw.bucket}}"
"""
        self._apply(raw.format(name="acme-raw"))
        plan = self._plan(raw.format(name="acme-landing"))
        assert plan.get("aws_s3_bucket.raw").action == Action.REPLACE
        assert plan.get("aws_s3_bucket_versioning.raw").action == Action.REPLACE

        result = self._executor().execute(plan)
        assert result.success
        assert self.cloud.calls[-4:] == [
            ("delete", "aws_s3_bucket_versioning.raw"),
            ("delete", "aws_s3_bucket.raw"),
            ("create", "aws_s3_bucket.raw"),
            ("create", "aws_s3_bucket_versioning.raw"),
        ]
        assert self.store.get("aws_s3_bucket_versioning.raw").attributes["bucket"] == "acme-landing"
        assert self.cloud.find("aws_s3_bucket.raw")["provider_id"] == "acme-landing"

    def test_failed_replace_delete_keeps_prior_entry(self):
        self._apply("resources:\n  aws_s3_bucket:\n    raw:\n      bucket: acme-raw\n")
        self.cloud.inject_failure("aws_s3_bucket.raw", AdapterError("AccessDenied"), operation="delete")
        result = self._apply("resources:\n  aws_s3_bucket:\n    raw:\n      bucket: acme-landing\n")

        assert result.get("aws_s3_bucket.raw").status == NodeStatus.FAILED
        assert self.store.get("aws_s3_bucket.raw").provider_id == "acme-raw"
        assert self.cloud.calls_for("create") == ["aws_s3_bucket.raw"]

    def test_failed_replace_create_leaves_no_entry(self):
        self._apply("resources:\n  aws_s3_bucket:\n    raw:\n      bucket: acme-raw\n")
        self.cloud.inject_failure("aws_s3_bucket.raw", AdapterError("BucketAlreadyExists"))
        result = self._apply("resources:\n  aws_s3_bucket:\n    raw:\n      bucket: acme-landing\n")

        assert result.get("aws_s3_bucket.raw").status == NodeStatus.FAILED
        # The old bucket is gone, so the next plan creates the new one
        assert self.store.get("aws_s3_bucket.raw") is None
        assert self.cloud.find("aws_s3_bucket.raw") is None
        plan = self._plan("resources:\n  aws_s3_bucket:\n    raw:\n      bucket: acme-landing\n")
        assert plan.get("aws_s3_bucket.raw").action == Action.CREATE

    def test_undeclared_resources_are_deleted(self):
        self._apply(BRONZE_GOLD)
        result = self._apply("""
resources:
  aws_s3_bucket:
    bronze:
      bucket: acme-bronze
  aws_s3_bucket_versioning:
    bronze:
      bucket: "${aws_s3_bucket.bronze.bucket}"
""")
        assert result.success
        deletes = self.cloud.calls_for("delete")
        assert deletes == ["aws_s3_bucket_versioning.gold", "aws_s3_bucket.gold"]
        assert self.store.get("aws_s3_bucket.gold") is None
        assert self.cloud.find("aws_s3_bucket.gold") is None

    def test_destroy_removes_everything(self):
        self._apply(BRONZE_GOLD)
        plan = self.planner.plan_destroy(self.store.snapshot())
        result = self._executor().execute(plan)
        assert result.success
        assert result.destroy
        assert self.store.count() == 0
        assert self.cloud.objects == {}

    def test_sensitive_computed_values_are_redacted_in_logs(self):
        self._apply("""
resources:
  aws_iam_user:
    loader:
      name: etl-loader
  aws_iam_access_key:
    loader:
      user: "${aws_iam_user.loader.name}"
""")
        entry = self.store.get("aws_iam_access_key.loader")
        secret = entry.attributes["secret"]
        assert entry.sensitive_attributes == ["secret"]
        assert redact(f"key {secret}") == f"key {REDACTED}"

    # --- Failures ---

    def test_retryable_error_is_retried_with_backoff(self):
        self.cloud.inject_failure(
            "aws_s3_bucket.bronze", AdapterError("SlowDown", retryable=True), times=2,
        )
        result = self._apply(BRONZE_GOLD, max_retries=3)

        assert result.success
        assert result.get("aws_s3_bucket.bronze").attempts == 3
        assert self.clock.sleeps == [0.5, 1.0]

    def test_backoff_is_capped(self):
        self.cloud.inject_failure(
            "aws_s3_bucket.bronze", AdapterError("SlowDown", retryable=True), times=4,
        )
        self._apply(BRONZE_GOLD, max_retries=5, retry_base_delay_seconds=1, retry_max_delay_seconds=3)
        assert self.clock.sleeps == [1, 2, 3, 3]

    def test_retries_are_bounded(self):
        self.cloud.inject_failure(
            "aws_s3_bucket.bronze", AdapterError("SlowDown", retryable=True), times=5,
        )
        result = self._apply(BRONZE_GOLD, max_retries=2, failure_policy="best_effort")

        node = result.get("aws_s3_bucket.bronze")
        assert node.status == NodeStatus.FAILED
        assert node.attempts == 3
        assert node.retryable is True

    def test_non_retryable_error_fails_once(self):
        self.cloud.inject_failure("aws_s3_bucket.bronze", AdapterError("AccessDenied"))
        result = self._apply(BRONZE_GOLD, failure_policy="best_effort")

        node = result.get("aws_s3_bucket.bronze")
        assert node.status == NodeStatus.FAILED
        assert node.attempts == 1
        assert node.retryable is False
        assert node.error == "aws_s3_bucket.bronze: AccessDenied"
        assert self.clock.sleeps == []
        assert self.store.get("aws_s3_bucket.bronze") is None

    def test_dependents_of_failure_are_skipped(self):
        self.cloud.inject_failure("aws_s3_bucket.bronze", AdapterError("AccessDenied"))
        result = self._apply(BRONZE_GOLD, failure_policy="best_effort")

        skipped = result.get("aws_s3_bucket_versioning.bronze")
        assert skipped.status == NodeStatus.SKIPPED
        assert "upstream aws_s3_bucket.bronze failed" in skipped.error
        assert "aws_s3_bucket_versioning.bronze" not in self.cloud.calls_for("create")

    def test_best_effort_continues_independent_subtrees(self):
        self.cloud.inject_failure("aws_s3_bucket.bronze", AdapterError("AccessDenied"))
        result = self._apply(BRONZE_GOLD, failure_policy=FailurePolicy.BEST_EFFORT, max_workers=1)

        assert not result.halted
        assert result.get("aws_s3_bucket.gold").status == NodeStatus.APPLIED
        assert result.get("aws_s3_bucket_versioning.gold").status == NodeStatus.APPLIED
        assert not result.success

    def test_fail_fast_stops_scheduling(self):
        self.cloud.inject_failure("aws_s3_bucket.bronze", AdapterError("AccessDenied"))
        result = self._apply(BRONZE_GOLD, failure_policy=FailurePolicy.FAIL_FAST, max_workers=1)

        assert result.halted
        # Gold was already in flight and is allowed to finish
        assert result.get("aws_s3_bucket.gold").status == NodeStatus.APPLIED
        halted = result.get("aws_s3_bucket_versioning.gold")
        assert halted.status == NodeStatus.SKIPPED
        assert "run halted after failure" in halted.error
        assert self.store.get("aws_s3_bucket.gold") is not None

    def test_cancelled_before_start(self):
        cancel = threading.Event()
        cancel.set()
        result = self._executor().execute(self._plan(BRONZE_GOLD), cancel_event=cancel)

        assert result.cancelled
        assert all(r.status == NodeStatus.SKIPPED for r in result.results)
        assert self.cloud.calls_for("create") == []

    def test_cancel_mid_run_lets_in_flight_node_finish(self):
        cancel = threading.Event()

        def sleep(seconds):
            # Cancelled while the bucket create is being polled
            cancel.set()
            self.clock.sleep(seconds)

        self.cloud.set_async("aws_s3_bucket", 2)
        executor = ApplyExecutor(
            self.providers, self.store, EngineConfig(), sleep=sleep, clock=self.clock,
        )
        result = executor.execute(self._plan(LIFECYCLE.format(days=365)), cancel_event=cancel)

        assert result.cancelled
        assert result.get("aws_s3_bucket.bronze").status == NodeStatus.APPLIED
        assert self.store.get("aws_s3_bucket.bronze") is not None
        lifecycle = result.get("aws_s3_bucket_lifecycle_configuration.bronze")
        assert lifecycle.status == NodeStatus.SKIPPED
        assert "run cancelled" in lifecycle.error
        assert self.cloud.calls_for("create") == ["aws_s3_bucket.bronze"]

    def test_pending_value_blocks_node_and_dependents(self):
        result = self._apply("""
variables:
  owner: {}
resources:
  aws_s3_bucket:
    bronze:
      bucket: acme-bronze
      tags:
        owner: "${var.owner}"
    gold:
      bucket: acme-gold
  aws_s3_bucket_versioning:
    bronze:
      bucket: "${aws_s3_bucket.bronze.bucket}"
""")
        bronze = result.get("aws_s3_bucket.bronze")
        assert bronze.status == NodeStatus.BLOCKED
        assert "var.owner" in bronze.error
        versioning = result.get("aws_s3_bucket_versioning.bronze")
        assert versioning.status == NodeStatus.BLOCKED
        assert result.get("aws_s3_bucket.gold").status == NodeStatus.APPLIED
        assert self.cloud.calls_for("create") == ["aws_s3_bucket.gold"]

    def test_cycle_makes_no_adapter_calls(self):
        with pytest.raises(CycleError):
            self._plan("""
resources:
  aws_iam_role:
    a:
      name: "${aws_iam_role.b.name}"
      assume_role_policy: {}
    b:
      name: "${aws_iam_role.a.name}"
      assume_role_policy: {}
""")
        assert self.cloud.calls == []

    # --- Asynchronous operations ---

    def test_async_operation_is_polled_with_backoff(self):
        self.cloud.set_async("aws_s3_bucket", 3)
        result = self._apply(
            "resources:\n  aws_s3_bucket:\n    raw:\n      bucket: acme-raw\n",
            poll_interval_seconds=1, poll_max_interval_seconds=2,
        )
        assert result.success
        assert self.clock.sleeps == [1, 2, 2]
        assert self.store.get("aws_s3_bucket.raw").attributes["arn"] == "arn:aws:s3:::acme-raw"

    def test_async_operation_times_out(self):
        self.cloud.set_async("aws_s3_bucket", 100)
        result = self._apply(
            "resources:\n  aws_s3_bucket:\n    raw:\n      bucket: acme-raw\n",
            poll_interval_seconds=1, poll_max_interval_seconds=2, operation_timeout_seconds=5,
        )
        node = result.get("aws_s3_bucket.raw")
        assert node.status == NodeStatus.FAILED
        assert "did not finish within 5s" in node.error
        assert self.clock.sleeps == [1, 2, 2]
        assert self.store.get("aws_s3_bucket.raw") is None


class TestConcurrency:
    def test_independent_nodes_run_in_parallel(self):
        """Three independent creates overlap when workers allow it."""
        barrier = threading.Barrier(3, timeout=5)
        cloud = SimulatedCloud()
        providers = simulated_registry(cloud)
        adapter = providers.for_kind("aws_s3_bucket")
        original = adapter.create

        def create(kind, address, desired):
            barrier.wait()
            return original(kind, address, desired)

        adapter.create = create
        store = StateStore()
        decls = parse_documents([("main.yaml", """
resources:
  aws_s3_bucket:
    bronze:
      bucket: acme-bronze
    silver:
      bucket: acme-silver
    gold:
      bucket: acme-gold
""")], None, {})
        plan = Planner(default_registry()).plan(decls, {})
        result = ApplyExecutor(providers, store, EngineConfig(max_workers=3)).execute(plan)

        assert result.success
        assert store.count() == 3
        store.close()
