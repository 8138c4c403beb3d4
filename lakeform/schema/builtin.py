"""Built-in resource kinds for the AWS storage/IAM side and the Snowflake side."""

from lakeform.schema.registry import (
    AttributeSpec as A,
    AttributeType as T,
    ResourceKindSpec,
    SchemaRegistry,
)

AWS_KINDS = [
    ResourceKindSpec(
        kind="aws_s3_bucket",
        description="Object storage bucket",
        attributes={
            "bucket": A(required=True, force_new=True),
            "force_destroy": A(type=T.BOOL, default=False),
            "tags": A(type=T.MAP),
            "arn": A(computed=True),
            "region": A(computed=True),
            "bucket_domain_name": A(computed=True),
        },
    ),
    ResourceKindSpec(
        kind="aws_s3_bucket_versioning",
        description="Versioning configuration of a bucket",
        attributes={
            "bucket": A(required=True, force_new=True),
            "status": A(default="Enabled", choices=["Enabled", "Suspended"]),
        },
    ),
    ResourceKindSpec(
        kind="aws_s3_bucket_lifecycle_configuration",
        description="Lifecycle rule of a bucket",
        attributes={
            "bucket": A(required=True, force_new=True),
            "rule_id": A(required=True),
            "prefix": A(default=""),
            "status": A(default="Enabled", choices=["Enabled", "Disabled"]),
            "expiration_days": A(type=T.NUMBER),
            "transition_days": A(type=T.NUMBER),
            "transition_storage_class": A(),
        },
    ),
    ResourceKindSpec(
        kind="aws_iam_policy",
        description="Managed IAM policy",
        attributes={
            "name": A(required=True, force_new=True),
            "description": A(default="", force_new=True),
            "policy": A(type=T.MAP, required=True),
            "arn": A(computed=True),
            "policy_id": A(computed=True),
        },
    ),
    ResourceKindSpec(
        kind="aws_iam_role",
        description="IAM role with a trust policy",
        attributes={
            "name": A(required=True, force_new=True),
            "description": A(default=""),
            "assume_role_policy": A(type=T.MAP, required=True),
            "arn": A(computed=True),
            "unique_id": A(computed=True),
        },
    ),
    ResourceKindSpec(
        kind="aws_iam_role_policy_attachment",
        description="Attaches a managed policy to a role",
        attributes={
            "role": A(required=True, force_new=True),
            "policy_arn": A(required=True, force_new=True),
        },
    ),
    ResourceKindSpec(
        kind="aws_iam_user",
        description="IAM user",
        attributes={
            "name": A(required=True, force_new=True),
            "path": A(default="/"),
            "arn": A(computed=True),
            "unique_id": A(computed=True),
        },
    ),
    ResourceKindSpec(
        kind="aws_iam_user_policy_attachment",
        description="Attaches a managed policy to a user",
        attributes={
            "user": A(required=True, force_new=True),
            "policy_arn": A(required=True, force_new=True),
        },
    ),
    ResourceKindSpec(
        kind="aws_iam_access_key",
        description="Static access key of an IAM user",
        attributes={
            "user": A(required=True, force_new=True),
            "status": A(default="Active", choices=["Active", "Inactive"]),
            "access_key_id": A(computed=True),
            "secret": A(computed=True, sensitive=True),
        },
    ),
]

SNOWFLAKE_KINDS = [
    ResourceKindSpec(
        kind="snowflake_warehouse",
        description="Virtual warehouse",
        attributes={
            "name": A(required=True, force_new=True),
            "warehouse_size": A(default="XSMALL"),
            "auto_suspend": A(type=T.NUMBER, default=60),
            "auto_resume": A(type=T.BOOL, default=True),
            "initially_suspended": A(type=T.BOOL, default=True, force_new=True),
            "comment": A(),
        },
    ),
    ResourceKindSpec(
        kind="snowflake_database",
        description="Database",
        attributes={
            "name": A(required=True, force_new=True),
            "comment": A(),
            "data_retention_time_in_days": A(type=T.NUMBER, default=1),
        },
    ),
    ResourceKindSpec(
        kind="snowflake_schema",
        description="Schema inside a database",
        attributes={
            "database": A(required=True, force_new=True),
            "name": A(required=True, force_new=True),
            "comment": A(),
            "fully_qualified_name": A(computed=True),
        },
    ),
    ResourceKindSpec(
        kind="snowflake_storage_integration",
        description="Trust relationship between Snowflake and a cloud bucket",
        attributes={
            "name": A(required=True, force_new=True),
            "type": A(default="EXTERNAL_STAGE", force_new=True),
            "storage_provider": A(default="S3", force_new=True, choices=["S3", "GCS", "AZURE"]),
            "storage_aws_role_arn": A(required=True),
            "storage_allowed_locations": A(type=T.LIST, required=True),
            "enabled": A(type=T.BOOL, default=True),
            "comment": A(),
            "storage_aws_iam_user_arn": A(computed=True),
            "storage_aws_external_id": A(computed=True, sensitive=True),
        },
    ),
    ResourceKindSpec(
        kind="snowflake_stage",
        description="External stage over a bucket location",
        attributes={
            "name": A(required=True, force_new=True),
            "database": A(required=True, force_new=True),
            "schema": A(required=True, force_new=True),
            "url": A(required=True),
            "storage_integration": A(required=True),
            "file_format": A(),
            "comment": A(),
            "fully_qualified_name": A(computed=True),
        },
    ),
    ResourceKindSpec(
        kind="snowflake_role",
        description="Account role",
        attributes={
            "name": A(required=True, force_new=True),
            "comment": A(),
        },
    ),
    ResourceKindSpec(
        kind="snowflake_grant",
        description="Privilege grant on an object to a role",
        attributes={
            "privilege": A(required=True, force_new=True),
            "on_type": A(
                required=True,
                force_new=True,
                choices=["WAREHOUSE", "DATABASE", "SCHEMA", "STAGE", "INTEGRATION"],
            ),
            "on_name": A(required=True, force_new=True),
            "role": A(required=True, force_new=True),
        },
    ),
]


def default_registry() -> SchemaRegistry:
    """A registry preloaded with every built-in kind."""
    registry = SchemaRegistry()
    for spec in AWS_KINDS + SNOWFLAKE_KINDS:
        registry.register(spec)
    return registry
