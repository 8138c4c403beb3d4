"""Tests for the Reconciler: journaled runs, outputs and drift watch."""

import asyncio
import sqlite3
from datetime import datetime

import pytest

from lakeform.errors import LakeformError, PendingValueError
from lakeform.journal.store import RunJournal
from lakeform.loader.parser import parse_documents
from lakeform.models.engine import EngineConfig
from lakeform.models.plan import Action
from lakeform.providers.simulated import SimulatedCloud, simulated_registry
from lakeform.reconciler.loop import DriftEvent, Reconciler
from lakeform.state.store import StateStore
from lakeform.utils.logger import REDACTED, clear_secrets

STACK = """
variables:
  snowflake_iam_user_arn: {}
resources:
  aws_s3_bucket:
    bronze:
      bucket: acme-bronze
  aws_iam_user:
    loader:
      name: etl-loader
  aws_iam_access_key:
    loader:
      user: "${aws_iam_user.loader.name}"
outputs:
  bronze_arn:
    value: "${aws_s3_bucket.bronze.arn}"
  loader_key_id:
    value: "${aws_iam_access_key.loader.access_key_id}"
  loader_secret:
    value: "${aws_iam_access_key.loader.secret}"
  trusted_user:
    value: "${var.snowflake_iam_user_arn}"
  flagged:
    value: "${aws_s3_bucket.bronze.bucket}"
    sensitive: true
"""


def _make_reconciler(cloud=None, config=None, journal=None) -> Reconciler:
    decls = parse_documents([("main.yaml", STACK)], None, {})
    return Reconciler(
        declarations=decls,
        state_store=StateStore(),
        providers=simulated_registry(cloud or SimulatedCloud()),
        journal=journal,
        config=config,
        stack="test",
        sleep=lambda seconds: None,
    )


class TestRuns:
    def setup_method(self):
        clear_secrets()
        self.journal = RunJournal()
        self.reconciler = _make_reconciler(journal=self.journal)

    def test_apply_is_journaled(self):
        result = self.reconciler.apply()
        assert result.success

        record = self.journal.get_by_run(result.run_id)
        assert record.operation == "apply"
        assert record.stack == "test"
        assert record.success
        assert record.plan_summary["create"] == 3
        assert len(record.results) == 3

    def test_destroy_is_journaled(self):
        self.reconciler.apply()
        result = self.reconciler.destroy()

        assert result.success
        assert self.reconciler.state_store.count() == 0
        records = self.journal.query_recent()
        assert [r.operation for r in records] == ["apply", "destroy"]
        assert self.journal.verify_chain_integrity()

    def test_close_releases_both_stores(self):
        self.reconciler.apply()
        self.reconciler.close()
        with pytest.raises(sqlite3.ProgrammingError):
            self.reconciler.state_store.remove("aws_s3_bucket.bronze")
        with pytest.raises(sqlite3.ProgrammingError):
            self.journal.count()

    def test_applying_a_destroy_plan_is_journaled_as_destroy(self):
        self.reconciler.apply()
        self.reconciler.apply(self.reconciler.plan_destroy())
        assert self.journal.query_recent()[-1].operation == "destroy"

    def test_second_plan_has_no_changes(self):
        self.reconciler.apply()
        assert not self.reconciler.plan().has_changes

    def test_runs_without_a_journal(self):
        reconciler = _make_reconciler()
        assert reconciler.apply().success


class TestOutputs:
    def setup_method(self):
        clear_secrets()
        self.reconciler = _make_reconciler()

    def test_output_names(self):
        assert self.reconciler.output_names() == [
            "bronze_arn", "flagged", "loader_key_id", "loader_secret", "trusted_user",
        ]

    def test_outputs_unavailable_before_apply(self):
        with pytest.raises(LakeformError, match="not available until the stack is applied"):
            self.reconciler.output("bronze_arn")
        assert self.reconciler.outputs() == {}

    def test_output_after_apply(self):
        self.reconciler.apply()
        assert self.reconciler.output("bronze_arn") == "arn:aws:s3:::acme-bronze"
        assert self.reconciler.output("loader_key_id").startswith("AKIA")

    def test_sensitive_attribute_output_is_masked(self):
        self.reconciler.apply()
        assert self.reconciler.is_output_sensitive("loader_secret")
        assert self.reconciler.output("loader_secret") == REDACTED

        secret = self.reconciler.output("loader_secret", show_sensitive=True)
        assert secret == self.reconciler.state_store.get("aws_iam_access_key.loader").attributes["secret"]

    def test_declared_sensitive_output_is_masked(self):
        self.reconciler.apply()
        assert self.reconciler.output("flagged") == REDACTED
        assert self.reconciler.output("flagged", show_sensitive=True) == "acme-bronze"

    def test_pending_output(self):
        with pytest.raises(PendingValueError) as exc:
            self.reconciler.output("trusted_user")
        assert exc.value.address == "output.trusted_user"
        assert exc.value.variables == ["snowflake_iam_user_arn"]

    def test_outputs_skip_unavailable(self):
        self.reconciler.apply()
        values = self.reconciler.outputs()
        assert "trusted_user" not in values
        assert values["bronze_arn"] == "arn:aws:s3:::acme-bronze"
        assert values["loader_secret"] == REDACTED

    def test_unknown_output(self):
        with pytest.raises(LakeformError, match="no output named 'nope'"):
            self.reconciler.output("nope")


class TestDrift:
    def setup_method(self):
        clear_secrets()
        self.cloud = SimulatedCloud()
        self.reconciler = _make_reconciler(cloud=self.cloud)
        self.reconciler.apply()

    def test_no_drift(self):
        assert self.reconciler.refresh() == []
        assert self.reconciler.last_refresh_at is not None

    def test_changed_attribute(self):
        self.cloud.mutate("aws_s3_bucket.bronze", tags={"owner": "console"})
        events = self.reconciler.refresh()

        assert len(events) == 1
        event = events[0]
        assert event.address == "aws_s3_bucket.bronze"
        assert event.drift_type == DriftEvent.CHANGED
        assert event.attributes == ["tags"]
        assert event.to_dict()["drift_type"] == "changed"
        # Reporting alone does not touch state
        assert "tags" not in self.reconciler.state_store.get("aws_s3_bucket.bronze").attributes

    def test_refresh_with_update_state_lets_plan_repair(self):
        self.cloud.mutate("aws_s3_bucket.bronze", tags={"owner": "console"})
        self.reconciler.refresh(update_state=True)

        entry = self.reconciler.state_store.get("aws_s3_bucket.bronze")
        assert entry.attributes["tags"] == {"owner": "console"}

        node = self.reconciler.plan().get("aws_s3_bucket.bronze")
        assert node.action == Action.UPDATE
        assert node.change_for("tags").old == {"owner": "console"}

    def test_missing_resource(self):
        self.cloud.forget("aws_s3_bucket.bronze")
        events = self.reconciler.refresh(update_state=True)

        assert [(e.address, e.drift_type) for e in events] == [
            ("aws_s3_bucket.bronze", DriftEvent.MISSING),
        ]
        assert self.reconciler.state_store.get("aws_s3_bucket.bronze") is None
        assert self.reconciler.plan().get("aws_s3_bucket.bronze").action == Action.CREATE


class TestDriftSchedule:
    def test_next_refresh_at(self):
        reconciler = _make_reconciler(config=EngineConfig(drift_schedule="0 * * * *"))
        assert reconciler.next_refresh_at(datetime(2026, 1, 1, 10, 15)) == datetime(2026, 1, 1, 11, 0)

    def test_no_schedule(self):
        with pytest.raises(LakeformError, match="drift_schedule"):
            _make_reconciler().next_refresh_at()

    def test_invalid_schedule_rejected(self):
        with pytest.raises(ValueError):
            EngineConfig(drift_schedule="every minute")

    def test_run_async_stops_immediately(self):
        reconciler = _make_reconciler(config=EngineConfig(drift_schedule="*/30 * * * *"))

        async def main():
            stop = asyncio.Event()
            stop.set()
            await reconciler.run_async(stop)

        asyncio.run(main())
        assert reconciler.status == "stopped"
        assert reconciler.last_refresh_at is None

    def test_run_async_refreshes_when_due(self):
        reconciler = _make_reconciler(config=EngineConfig(drift_schedule="*/30 * * * *"))
        reconciler.next_refresh_at = lambda now=None: datetime.utcnow()
        seen = []

        async def main():
            stop = asyncio.Event()
            original = reconciler.refresh

            def refresh(update_state=False):
                seen.append(reconciler.status)
                stop.set()
                return original(update_state)

            reconciler.refresh = refresh
            await reconciler.run_async(stop)

        asyncio.run(main())
        assert seen == ["running"]
        assert reconciler.last_refresh_at is not None
        assert reconciler.status == "stopped"
