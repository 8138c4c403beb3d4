"""
Simulated provider — an in-memory AWS + Snowflake account.

Implements the adapter contract for every built-in kind without network
access. It behaves like the real services where ordering matters:
- names are unique per kind (bucket names globally)
- attachments, configurations, schemas and stages need their parent to exist
- roles, policies, users, databases and integrations refuse deletion while
  something still hangs off them
- provider-computed attributes (ARNs, ids, keys, external ids) are generated

Used by the test suite and as the CLI's default provider. Optionally keeps
its inventory in a JSON file so separate CLI runs see the same account.
"""

import copy
import hashlib
import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from lakeform.errors import AdapterError
from lakeform.providers.base import (
    CreateOutcome,
    DeleteOutcome,
    InProgress,
    NotFound,
    PollOutcome,
    ProviderRegistry,
    ReadOutcome,
    Realized,
)

logger = logging.getLogger(__name__)


class SimulatedCloud:
    """Shared inventory behind the simulated AWS and Snowflake adapters."""

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        aws_account_id: str = "123456789012",
        region: str = "us-east-1",
        snowflake_account: str = "XY12345",
    ):
        self.path = Path(path) if path else None
        self.aws_account_id = aws_account_id
        self.region = region
        self.snowflake_account = snowflake_account

        self._lock = threading.RLock()
        self.objects: Dict[str, dict] = {}          # "<kind>:<provider_id>" -> object
        self.operations: Dict[str, dict] = {}       # In-flight async operations
        self.calls: List[Tuple[str, str]] = []      # (operation, address), in call order
        self.async_polls: Dict[str, int] = {}       # kind -> polls before completion
        self._failures: Dict[Tuple[str, str], List[AdapterError]] = {}
        self._serial = 0

        if self.path and self.path.exists():
            data = json.loads(self.path.read_text(encoding="utf-8"))
            self.objects = data.get("objects", {})
            self._serial = data.get("serial", 0)

    # --- Test and demo hooks ---

    def inject_failure(
        self, address: str, error: AdapterError, operation: str = "create", times: int = 1
    ) -> None:
        """Make the next ``times`` calls of ``operation`` on ``address`` raise ``error``."""
        with self._lock:
            self._failures.setdefault((operation, address), []).extend([error] * times)

    def set_async(self, kind: str, polls: int) -> None:
        """Operations on ``kind`` stay in progress for ``polls`` polls."""
        self.async_polls[kind] = polls

    def find(self, address: str) -> Optional[dict]:
        with self._lock:
            for obj in self.objects.values():
                if obj["address"] == address:
                    return obj
        return None

    def mutate(self, address: str, **attributes: Any) -> None:
        """Change a live object behind the engine's back (drift)."""
        with self._lock:
            obj = self.find(address)
            if obj is None:
                raise KeyError(address)
            obj["attributes"].update(attributes)
            self.save()

    def forget(self, address: str) -> None:
        """Remove a live object behind the engine's back (drift)."""
        with self._lock:
            for key, obj in list(self.objects.items()):
                if obj["address"] == address:
                    del self.objects[key]
            self.save()

    def calls_for(self, operation: str) -> List[str]:
        return [address for op, address in self.calls if op == operation]

    # --- Internals shared by the adapters ---

    def record_call(self, operation: str, address: str) -> None:
        with self._lock:
            self.calls.append((operation, address))
            queue = self._failures.get((operation, address))
            if queue:
                error = queue.pop(0)
                raise error

    def token(self, seed: str, length: int) -> str:
        with self._lock:
            self._serial += 1
            serial = self._serial
        digest = hashlib.sha256(f"{seed}:{serial}".encode()).hexdigest().upper()
        return digest[:length]

    def save(self) -> None:
        if not self.path:
            return
        with self._lock:
            data = {"serial": self._serial, "objects": self.objects}
            self.path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")


Realizer = Callable[[str, Dict[str, Any], Optional[dict]], Tuple[str, Dict[str, Any]]]


class SimulatedProvider:
    """
    Adapter over a SimulatedCloud for one provider prefix.
    Per-kind behavior lives in the realizer / parent / guard registries.
    """

    def __init__(self, cloud: SimulatedCloud, name: str):
        self.cloud = cloud
        self.name = name
        self._realizers: Dict[str, Realizer] = {}
        self._parents: Dict[str, Callable[[Dict[str, Any]], List[Tuple[str, str]]]] = {}
        self._guards: Dict[str, Callable[[dict], Optional[str]]] = {}
        if name == "aws":
            self._register_aws()
        elif name == "snowflake":
            self._register_snowflake()
        else:
            raise ValueError(f"unknown simulated provider '{name}'")

    # --- Adapter contract ---

    def create(self, kind: str, address: str, desired: Dict[str, Any]) -> CreateOutcome:
        self.cloud.record_call("create", address)
        with self.cloud._lock:
            self._check_parents(kind, address, desired)
            provider_id, computed = self._realize(kind, desired, None)
            key = f"{kind}:{provider_id}"
            if key in self.cloud.objects:
                raise AdapterError(
                    f"{kind} '{provider_id}' already exists", address, retryable=False
                )
            obj = {
                "kind": kind,
                "address": address,
                "provider_id": provider_id,
                "attributes": {**copy.deepcopy(desired), **computed},
            }
            return self._finish(kind, "create", key, obj)

    def update(
        self,
        kind: str,
        address: str,
        provider_id: str,
        desired: Dict[str, Any],
        prior: Dict[str, Any],
    ) -> CreateOutcome:
        self.cloud.record_call("update", address)
        with self.cloud._lock:
            key = f"{kind}:{provider_id}"
            existing = self.cloud.objects.get(key)
            if existing is None:
                raise AdapterError(f"{kind} '{provider_id}' does not exist", address)
            self._check_parents(kind, address, desired)
            new_id, computed = self._realize(kind, desired, existing)
            if new_id != provider_id:
                raise AdapterError(
                    f"identifier of {kind} cannot change in place ({provider_id} -> {new_id})",
                    address,
                )
            obj = dict(existing, attributes={**copy.deepcopy(desired), **computed})
            return self._finish(kind, "update", key, obj)

    def delete(self, kind: str, address: str, provider_id: str) -> DeleteOutcome:
        self.cloud.record_call("delete", address)
        with self.cloud._lock:
            key = f"{kind}:{provider_id}"
            obj = self.cloud.objects.get(key)
            if obj is None:
                return None
            guard = self._guards.get(kind)
            reason = guard(obj) if guard else None
            if reason:
                raise AdapterError(f"DeleteConflict: {reason}", address, retryable=False)
            return self._finish(kind, "delete", key, obj)

    def read(self, kind: str, address: str, provider_id: str) -> ReadOutcome:
        self.cloud.record_call("read", address)
        with self.cloud._lock:
            obj = self.cloud.objects.get(f"{kind}:{provider_id}")
            if obj is None:
                return NotFound(provider_id=provider_id)
            return Realized(
                provider_id=provider_id, attributes=copy.deepcopy(obj["attributes"])
            )

    def poll(self, operation_id: str) -> PollOutcome:
        with self.cloud._lock:
            op = self.cloud.operations.get(operation_id)
            if op is None:
                raise AdapterError(f"unknown operation '{operation_id}'")
            op["remaining"] -= 1
            if op["remaining"] > 0:
                return InProgress(operation_id=operation_id, provider_id=op["obj"]["provider_id"])
            del self.cloud.operations[operation_id]
            return self._commit(op["operation"], op["key"], op["obj"])

    # --- Internals ---

    def _finish(self, kind: str, operation: str, key: str, obj: dict) -> Union[CreateOutcome, DeleteOutcome]:
        polls = self.cloud.async_polls.get(kind, 0)
        if polls > 0:
            operation_id = f"op-{self.cloud.token(key, 10).lower()}"
            self.cloud.operations[operation_id] = {
                "operation": operation,
                "key": key,
                "obj": obj,
                "remaining": polls,
            }
            logger.debug("%s of %s is in progress (%s)", operation, obj["address"], operation_id)
            return InProgress(operation_id=operation_id, provider_id=obj["provider_id"])
        return self._commit(operation, key, obj)

    def _commit(self, operation: str, key: str, obj: dict):
        if operation == "delete":
            self.cloud.objects.pop(key, None)
            self.cloud.save()
            return None
        self.cloud.objects[key] = obj
        self.cloud.save()
        return Realized(provider_id=obj["provider_id"], attributes=copy.deepcopy(obj["attributes"]))

    def _realize(self, kind: str, desired: Dict[str, Any], existing: Optional[dict]):
        realizer = self._realizers.get(kind)
        if realizer is None:
            raise AdapterError(f"{self.name} provider does not support '{kind}'")
        return realizer(kind, desired, existing)

    def _check_parents(self, kind: str, address: str, desired: Dict[str, Any]) -> None:
        parents = self._parents.get(kind)
        if not parents:
            return
        for parent_kind, parent_id in parents(desired):
            if f"{parent_kind}:{parent_id}" not in self.cloud.objects:
                raise AdapterError(
                    f"{parent_kind} '{parent_id}' does not exist", address, retryable=False
                )

    def _children(self, kind: str, predicate: Callable[[dict], bool]) -> List[str]:
        return sorted(
            o["provider_id"] for o in self.cloud.objects.values()
            if o["kind"] == kind and predicate(o["attributes"])
        )

    def _kept(self, existing: Optional[dict], name: str, make: Callable[[], str]) -> str:
        """Computed values survive updates."""
        if existing and existing["attributes"].get(name):
            return existing["attributes"][name]
        return make()

    # --- AWS ---

    def _register_aws(self) -> None:
        acct = self.cloud.aws_account_id
        region = self.cloud.region

        def bucket(kind, d, existing):
            name = d["bucket"]
            return name, {
                "arn": f"arn:aws:s3:::{name}",
                "region": region,
                "bucket_domain_name": f"{name}.s3.amazonaws.com",
            }

        def bucket_config(kind, d, existing):
            return d["bucket"], {}

        def policy(kind, d, existing):
            return d["name"], {
                "arn": f"arn:aws:iam::{acct}:policy/{d['name']}",
                "policy_id": self._kept(existing, "policy_id", lambda: "ANPA" + self.cloud.token(d["name"], 17)),
            }

        def role(kind, d, existing):
            return d["name"], {
                "arn": f"arn:aws:iam::{acct}:role/{d['name']}",
                "unique_id": self._kept(existing, "unique_id", lambda: "AROA" + self.cloud.token(d["name"], 17)),
            }

        def user(kind, d, existing):
            path = d.get("path") or "/"
            return d["name"], {
                "arn": f"arn:aws:iam::{acct}:user{path}{d['name']}",
                "unique_id": self._kept(existing, "unique_id", lambda: "AIDA" + self.cloud.token(d["name"], 17)),
            }

        def role_attachment(kind, d, existing):
            return f"{d['role']}/{d['policy_arn']}", {}

        def user_attachment(kind, d, existing):
            return f"{d['user']}/{d['policy_arn']}", {}

        def access_key(kind, d, existing):
            key_id = self._kept(existing, "access_key_id", lambda: "AKIA" + self.cloud.token(d["user"], 16))
            secret = self._kept(existing, "secret", lambda: self.cloud.token(key_id, 40))
            return key_id, {"access_key_id": key_id, "secret": secret}

        self._realizers.update({
            "aws_s3_bucket": bucket,
            "aws_s3_bucket_versioning": bucket_config,
            "aws_s3_bucket_lifecycle_configuration": bucket_config,
            "aws_iam_policy": policy,
            "aws_iam_role": role,
            "aws_iam_user": user,
            "aws_iam_role_policy_attachment": role_attachment,
            "aws_iam_user_policy_attachment": user_attachment,
            "aws_iam_access_key": access_key,
        })

        def policy_name(arn: str) -> str:
            return arn.rsplit("/", 1)[-1]

        self._parents.update({
            "aws_s3_bucket_versioning": lambda d: [("aws_s3_bucket", d["bucket"])],
            "aws_s3_bucket_lifecycle_configuration": lambda d: [("aws_s3_bucket", d["bucket"])],
            "aws_iam_role_policy_attachment": lambda d: [
                ("aws_iam_role", d["role"]),
                ("aws_iam_policy", policy_name(d["policy_arn"])),
            ],
            "aws_iam_user_policy_attachment": lambda d: [
                ("aws_iam_user", d["user"]),
                ("aws_iam_policy", policy_name(d["policy_arn"])),
            ],
            "aws_iam_access_key": lambda d: [("aws_iam_user", d["user"])],
        })

        def role_guard(obj):
            attached = self._children(
                "aws_iam_role_policy_attachment", lambda a: a["role"] == obj["provider_id"]
            )
            return f"role has attached policies: {attached}" if attached else None

        def policy_guard(obj):
            arn = obj["attributes"]["arn"]
            attached = self._children("aws_iam_role_policy_attachment", lambda a: a["policy_arn"] == arn)
            attached += self._children("aws_iam_user_policy_attachment", lambda a: a["policy_arn"] == arn)
            return f"policy is attached to entities: {attached}" if attached else None

        def user_guard(obj):
            name = obj["provider_id"]
            dependents = self._children("aws_iam_access_key", lambda a: a["user"] == name)
            dependents += self._children("aws_iam_user_policy_attachment", lambda a: a["user"] == name)
            return f"user still has keys or policies: {dependents}" if dependents else None

        def bucket_guard(obj):
            if obj["attributes"].get("force_destroy"):
                return None
            name = obj["provider_id"]
            configs = self._children("aws_s3_bucket_lifecycle_configuration", lambda a: a["bucket"] == name)
            configs += self._children("aws_s3_bucket_versioning", lambda a: a["bucket"] == name)
            return f"bucket still has configurations: {configs}" if configs else None

        self._guards.update({
            "aws_iam_role": role_guard,
            "aws_iam_policy": policy_guard,
            "aws_iam_user": user_guard,
            "aws_s3_bucket": bucket_guard,
        })

    # --- Snowflake ---

    def _register_snowflake(self) -> None:
        account = self.cloud.snowflake_account

        def named(kind, d, existing):
            return d["name"].upper(), {}

        def schema(kind, d, existing):
            fqn = f"{d['database']}.{d['name']}".upper()
            return fqn, {"fully_qualified_name": fqn}

        def stage(kind, d, existing):
            fqn = f"{d['database']}.{d['schema']}.{d['name']}".upper()
            return fqn, {"fully_qualified_name": fqn}

        def integration(kind, d, existing):
            name = d["name"].upper()
            return name, {
                "storage_aws_iam_user_arn": self._kept(
                    existing, "storage_aws_iam_user_arn",
                    lambda: f"arn:aws:iam::{self.cloud.token('sf-aws', 12)[:12].translate(_DIGITS)}:user/"
                            f"{self.cloud.token(name, 8).lower()}-s",
                ),
                "storage_aws_external_id": self._kept(
                    existing, "storage_aws_external_id",
                    lambda: f"{account}_SFCRole=2_{self.cloud.token(name, 28)}",
                ),
            }

        def grant(kind, d, existing):
            return f"{d['privilege']}:{d['on_type']}:{d['on_name']}:{d['role']}".upper(), {}

        self._realizers.update({
            "snowflake_warehouse": named,
            "snowflake_database": named,
            "snowflake_role": named,
            "snowflake_schema": schema,
            "snowflake_storage_integration": integration,
            "snowflake_stage": stage,
            "snowflake_grant": grant,
        })

        grant_targets = {
            "WAREHOUSE": "snowflake_warehouse",
            "DATABASE": "snowflake_database",
            "SCHEMA": "snowflake_schema",
            "STAGE": "snowflake_stage",
            "INTEGRATION": "snowflake_storage_integration",
        }

        self._parents.update({
            "snowflake_schema": lambda d: [("snowflake_database", d["database"].upper())],
            "snowflake_stage": lambda d: [
                ("snowflake_schema", f"{d['database']}.{d['schema']}".upper()),
                ("snowflake_storage_integration", d["storage_integration"].upper()),
            ],
            "snowflake_grant": lambda d: [
                ("snowflake_role", d["role"].upper()),
                (grant_targets[d["on_type"]], d["on_name"].upper()),
            ],
        })

        def database_guard(obj):
            prefix = obj["provider_id"] + "."
            schemas = [k for k in self.cloud.objects if k.startswith("snowflake_schema:" + prefix)]
            return f"database still contains schemas: {sorted(schemas)}" if schemas else None

        def schema_guard(obj):
            prefix = obj["provider_id"] + "."
            stages = [k for k in self.cloud.objects if k.startswith("snowflake_stage:" + prefix)]
            return f"schema still contains stages: {sorted(stages)}" if stages else None

        def integration_guard(obj):
            name = obj["provider_id"]
            stages = self._children(
                "snowflake_stage", lambda a: a["storage_integration"].upper() == name
            )
            return f"integration is used by stages: {stages}" if stages else None

        def grantee_guard(obj):
            name = obj["provider_id"]
            grants = self._children("snowflake_grant", lambda a: a["role"].upper() == name)
            return f"role still holds grants: {grants}" if grants else None

        self._guards.update({
            "snowflake_database": database_guard,
            "snowflake_schema": schema_guard,
            "snowflake_storage_integration": integration_guard,
            "snowflake_role": grantee_guard,
        })


_DIGITS = str.maketrans("ABCDEF", "012345")


def simulated_registry(cloud: Optional[SimulatedCloud] = None):
    """A ProviderRegistry serving ``aws`` and ``snowflake`` from one simulated account."""
    cloud = cloud or SimulatedCloud()
    registry = ProviderRegistry()
    registry.register("aws", SimulatedProvider(cloud, "aws"))
    registry.register("snowflake", SimulatedProvider(cloud, "snowflake"))
    return registry
