"""Tests for the stack loader: YAML parsing, variables and interpolation."""

import pytest

from lakeform.errors import ParseError, UnresolvedReferenceError
from lakeform.loader.interpolation import (
    UNKNOWN,
    contains_unknown,
    parse_reference,
    pending_names,
    references,
    substitute,
)
from lakeform.loader.parser import load_stack, parse_documents
from lakeform.loader.variables import coerce, load_var_file, resolve_variables
from lakeform.models.declaration import VariableDeclaration
from lakeform.utils.logger import REDACTED, clear_secrets, redact

BUCKETS = """
variables:
  project:
    default: acme
resources:
  aws_s3_bucket:
    bronze:
      bucket: "${var.project}-bronze"
    silver:
      bucket: "${var.project}-silver"
      depends_on: [aws_s3_bucket.bronze]
outputs:
  bronze_arn:
    value: "${aws_s3_bucket.bronze.arn}"
"""


def _parse(text: str, var_file_values=None, environ=None):
    return parse_documents([("main.yaml", text)], var_file_values, environ or {})


class TestInterpolation:
    def test_parse_reference(self):
        ref = parse_reference("aws_s3_bucket.bronze.arn")
        assert (ref.kind, ref.name, ref.attribute) == ("aws_s3_bucket", "bronze", "arn")

    def test_parse_reference_rejects_variables(self):
        with pytest.raises(ValueError):
            parse_reference("var.project.name")
        with pytest.raises(ValueError):
            parse_reference("aws_s3_bucket.bronze")

    def test_references_in_nested_values(self):
        value = {
            "Statement": [
                {"Resource": ["${aws_s3_bucket.bronze.arn}/*", "${aws_s3_bucket.silver.arn}"]},
            ],
        }
        targets = [r.target for r in references(value)]
        assert targets == ["aws_s3_bucket.bronze", "aws_s3_bucket.silver"]

    def test_whole_expression_keeps_type(self):
        assert substitute("${a.b.days}", lambda e: 30) == 30

    def test_partial_expression_stringifies(self):
        assert substitute("${a.b.arn}/*", lambda e: "arn:x") == "arn:x/*"
        assert substitute("enabled=${a.b.flag}", lambda e: True) == "enabled=true"

    def test_unknown_poisons_the_string(self):
        value = substitute({"r": "${a.b.arn}/*"}, lambda e: UNKNOWN)
        assert value["r"] is UNKNOWN
        assert contains_unknown(value)

    def test_pending_names(self):
        value = {"p": "${pending.external_id}", "q": ["${pending.external_id}", "${pending.arn}"]}
        assert pending_names(value) == ["external_id", "arn"]


class TestVariables:
    def _var(self, name="size", type="string", **kwargs) -> VariableDeclaration:
        return VariableDeclaration(name=name, type=type, **kwargs)

    def test_precedence_env_over_file_over_default(self):
        variables = {"size": self._var(default="small", has_default=True)}
        values, pending = resolve_variables(variables, {"size": "medium"}, {"LAKEFORM_VAR_size": "large"})
        assert values == {"size": "large"}
        assert pending == []

        values, _ = resolve_variables(variables, {"size": "medium"}, {})
        assert values == {"size": "medium"}

        values, _ = resolve_variables(variables, None, {})
        assert values == {"size": "small"}

    def test_missing_value_is_pending(self):
        values, pending = resolve_variables({"external_id": self._var("external_id")}, None, {})
        assert values == {}
        assert pending == ["external_id"]

    def test_env_values_are_coerced(self):
        assert coerce(self._var(type="number"), "30", "environment") == 30
        assert coerce(self._var(type="bool"), "true", "environment") is True
        assert coerce(self._var(type="list"), "[a, b]", "environment") == ["a", "b"]

    def test_type_mismatch(self):
        with pytest.raises(ParseError, match="must be a number"):
            coerce(self._var(type="number"), "thirty", "environment")

    def test_load_var_file(self, tmp_path):
        path = tmp_path / "vars.yaml"
        path.write_text("project: acme\nretention: 30\n")
        assert load_var_file(path) == {"project": "acme", "retention": 30}

    def test_var_file_must_be_mapping(self, tmp_path):
        path = tmp_path / "vars.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ParseError, match="mapping"):
            load_var_file(path)


class TestParser:
    def setup_method(self):
        clear_secrets()

    def test_parse_resources_and_outputs(self):
        decls = _parse(BUCKETS)
        assert decls.addresses == ["aws_s3_bucket.bronze", "aws_s3_bucket.silver"]
        assert decls.get("aws_s3_bucket.bronze").attributes == {"bucket": "acme-bronze"}
        assert decls.get("aws_s3_bucket.silver").depends_on == ["aws_s3_bucket.bronze"]
        assert decls.get("aws_s3_bucket.silver").index == 1
        assert decls.outputs["bronze_arn"].value == "${aws_s3_bucket.bronze.arn}"

    def test_environment_overrides_default(self):
        decls = _parse(BUCKETS, environ={"LAKEFORM_VAR_project": "globex"})
        assert decls.get("aws_s3_bucket.bronze").attributes["bucket"] == "globex-bronze"

    def test_unknown_variable(self):
        text = "resources:\n  aws_s3_bucket:\n    b:\n      bucket: \"${var.nope}\"\n"
        with pytest.raises(UnresolvedReferenceError) as exc:
            _parse(text)
        assert exc.value.address == "aws_s3_bucket.b"

    def test_missing_variable_becomes_pending(self):
        text = """
variables:
  external_id: {}
resources:
  aws_iam_role:
    access:
      name: access
      assume_role_policy:
        ExternalId: "${var.external_id}"
"""
        decls = _parse(text)
        assert decls.pending == ["external_id"]
        policy = decls.get("aws_iam_role.access").attributes["assume_role_policy"]
        assert policy["ExternalId"] == "${pending.external_id}"

    def test_sensitive_values_are_registered_for_redaction(self):
        text = """
variables:
  external_id:
    sensitive: true
resources:
  aws_iam_role:
    access:
      name: access
      assume_role_policy:
        ExternalId: "${var.external_id}"
"""
        decls = _parse(text, {"external_id": "SFCRole=2_abc"})
        assert decls.sensitive_values == ["SFCRole=2_abc"]
        assert redact("id is SFCRole=2_abc") == f"id is {REDACTED}"

    def test_invalid_yaml(self):
        with pytest.raises(ParseError, match="invalid YAML"):
            _parse("resources: [unclosed")

    def test_unknown_section(self):
        with pytest.raises(ParseError, match="unknown top-level section"):
            _parse("modules: {}\n")

    def test_duplicate_resource_across_documents(self):
        doc = "resources:\n  aws_s3_bucket:\n    bronze:\n      bucket: b\n"
        with pytest.raises(ParseError, match="declared twice"):
            parse_documents([("a.yaml", doc), ("b.yaml", doc)], None, {})

    def test_bad_depends_on(self):
        text = "resources:\n  aws_s3_bucket:\n    b:\n      bucket: b\n      depends_on: [bronze]\n"
        with pytest.raises(ParseError, match="kind.name"):
            _parse(text)

    def test_resource_block_must_be_mapping(self):
        with pytest.raises(ParseError, match="must be a mapping"):
            _parse("resources:\n  aws_s3_bucket:\n    b: just-a-string\n")

    def test_load_stack_directory(self, tmp_path):
        (tmp_path / "a_vars.yaml").write_text("variables:\n  project:\n    default: acme\n")
        (tmp_path / "b_buckets.yaml").write_text(
            "resources:\n  aws_s3_bucket:\n    bronze:\n      bucket: \"${var.project}-bronze\"\n"
        )
        (tmp_path / "notes.txt").write_text("ignored")
        decls = load_stack(tmp_path, environ={})
        assert decls.get("aws_s3_bucket.bronze").attributes["bucket"] == "acme-bronze"
        assert decls.get("aws_s3_bucket.bronze").source.endswith("b_buckets.yaml")

    def test_load_stack_missing_path(self, tmp_path):
        with pytest.raises(ParseError, match="does not exist"):
            load_stack(tmp_path / "nowhere.yaml", environ={})
