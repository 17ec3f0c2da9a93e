"""Tests for ${id.output} references."""

import pytest

from vmship.orchestrator.references import find_references, resolve_references


class TestFindReferences:

    def test_nested_values(self) -> None:
        value = {
            "groups": ["${sg.group_id}", "static"],
            "profile": {"name": "${role.instance_profile}"},
            "label": "host-${sg.group_id}",
        }
        assert find_references(value) == [("sg", "group_id"), ("role", "instance_profile")]

    def test_plain_values(self) -> None:
        assert find_references({"port": 80, "name": "web", "cidr": "0.0.0.0/0"}) == []

    def test_malformed_reference_is_ignored(self) -> None:
        assert find_references("${missing-dot}") == []


class TestResolveReferences:

    outputs = {("sg", "group_id"): "sg-123", ("host", "ports"): [80, 443]}

    def lookup(self, resource_id, output):
        return self.outputs[(resource_id, output)]

    def test_whole_string_keeps_the_value_type(self) -> None:
        assert resolve_references("${host.ports}", self.lookup) == [80, 443]

    def test_embedded_reference_is_interpolated(self) -> None:
        assert resolve_references("group=${sg.group_id};", self.lookup) == "group=sg-123;"

    def test_resolves_inside_containers(self) -> None:
        value = {"ids": ["${sg.group_id}"], "count": 2}
        assert resolve_references(value, self.lookup) == {"ids": ["sg-123"], "count": 2}

    def test_does_not_mutate_input(self) -> None:
        value = {"ids": ["${sg.group_id}"]}
        resolve_references(value, self.lookup)
        assert value == {"ids": ["${sg.group_id}"]}

    def test_lookup_errors_propagate(self) -> None:
        with pytest.raises(KeyError):
            resolve_references("${nope.id}", self.lookup)
