"""
Tests for loading resource specifications from YAML and JSON documents.
"""

import json

import pytest

from converge.config.loader import load_specs, load_specs_from_text
from converge.errors import ConfigError
from converge.models.resource import Reference

from conftest import addr

VPC_AND_SUBNET_YAML = """
resources:
  vpc:
    main:
      cidr_block: 10.0.0.0/16
      tags:
        env: test
  subnet:
    a:
      vpc_id: ${vpc.main.id}
      cidr_block: 10.0.1.0/24
      availability_zone: us-east-1a
"""


def test_yaml_document_yields_sorted_specs_with_references():
    specs = load_specs_from_text(VPC_AND_SUBNET_YAML)

    assert [str(s.address) for s in specs] == ["subnet.a", "vpc.main"]
    subnet = specs[0]
    assert subnet.attributes["vpc_id"] == Reference.parse("${vpc.main.id}")
    assert subnet.attributes["cidr_block"] == "10.0.1.0/24"
    assert subnet.dependency_addresses() == [addr("vpc.main")]
    assert specs[1].attributes["tags"] == {"env": "test"}


def test_json_document_is_accepted():
    document = {
        "resources": {
            "iam_role": {"nodes": {"name": "nodes", "assume_role_policy": "{}"}},
            "eks_cluster": {
                "main": {
                    "name": "main",
                    "role_arn": "${iam_role.nodes.arn}",
                    "subnet_ids": ["${subnet.a.id}", "subnet-static"],
                }
            },
        }
    }

    specs = load_specs_from_text(json.dumps(document), "cluster.json")

    cluster = specs[0]
    assert str(cluster.address) == "eks_cluster.main"
    assert cluster.attributes["subnet_ids"] == [
        Reference.parse("${subnet.a.id}"),
        "subnet-static",
    ]
    assert [str(a) for a in cluster.dependency_addresses()] == ["iam_role.nodes", "subnet.a"]


def test_depends_on_is_split_from_attributes():
    specs = load_specs_from_text(
        """
resources:
  vpc:
    main:
      cidr_block: 10.0.0.0/16
      depends_on: [iam_role.flow_logs]
"""
    )

    assert "depends_on" not in specs[0].attributes
    assert specs[0].depends_on == [addr("iam_role.flow_logs")]


def test_depends_on_must_be_a_list():
    with pytest.raises(ConfigError, match="depends_on must be a list"):
        load_specs_from_text("resources: {vpc: {main: {depends_on: iam_role.x}}}")


def test_empty_resource_body_is_allowed():
    specs = load_specs_from_text("resources:\n  vpc:\n    main:\n")

    assert specs[0].attributes == {}


def test_empty_document_has_no_resources():
    assert load_specs_from_text("") == []


def test_interpolation_inside_a_longer_string_is_rejected():
    with pytest.raises(ConfigError, match="malformed reference"):
        load_specs_from_text(
            "resources: {subnet: {a: {vpc_id: 'prefix-${vpc.main.id}', cidr_block: x}}}"
        )


def test_unknown_top_level_key_is_rejected():
    with pytest.raises(ConfigError):
        load_specs_from_text("resources: {}\nvariables: {region: us-east-1}")


def test_top_level_must_be_a_mapping():
    with pytest.raises(ConfigError, match="top level must be a mapping"):
        load_specs_from_text("- vpc\n- subnet\n")


def test_invalid_yaml_is_config_error():
    with pytest.raises(ConfigError, match="Cannot parse"):
        load_specs_from_text("resources: [unclosed")


def test_invalid_resource_name_is_config_error():
    with pytest.raises(ConfigError):
        load_specs_from_text("resources: {vpc: {'bad name': {cidr_block: x}}}")


def test_files_are_merged(tmp_path):
    network = tmp_path / "network.yaml"
    network.write_text(VPC_AND_SUBNET_YAML)
    iam = tmp_path / "iam.json"
    role = {"name": "nodes", "assume_role_policy": "{}"}
    iam.write_text(json.dumps({"resources": {"iam_role": {"nodes": role}}}))

    specs = load_specs(network, str(iam))

    assert [str(s.address) for s in specs] == ["iam_role.nodes", "subnet.a", "vpc.main"]


def test_address_declared_in_two_files_is_rejected(tmp_path):
    first = tmp_path / "a.yaml"
    second = tmp_path / "b.yaml"
    first.write_text("resources: {vpc: {main: {cidr_block: 10.0.0.0/16}}}")
    second.write_text("resources: {vpc: {main: {cidr_block: 10.1.0.0/16}}}")

    with pytest.raises(ConfigError, match="Duplicate resource address: vpc.main"):
        load_specs(first, second)


def test_missing_file_is_config_error(tmp_path):
    with pytest.raises(ConfigError, match="Configuration file not found"):
        load_specs(str(tmp_path / "absent.yaml"))
