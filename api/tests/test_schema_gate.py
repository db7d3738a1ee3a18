from taskboard.services import schema_gate

ZIP_SCHEMA = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {"zip": {"type": "string"}},
        "required": ["zip"],
    },
}


def test_conforming_result_has_no_errors() -> None:
    assert schema_gate.validate(ZIP_SCHEMA, [{"zip": "90210"}]) is None


def test_violations_name_the_json_pointer() -> None:
    errors = schema_gate.validate(ZIP_SCHEMA, [{"zip": 1}])
    assert errors == ["/0/zip 1 is not of type 'string'"]


def test_root_violation_uses_slash() -> None:
    errors = schema_gate.validate({"type": "object"}, "text")
    assert errors == ["/ 'text' is not of type 'object'"]


def test_errors_are_ordered_by_path() -> None:
    schema = {"type": "object", "properties": {"a": {"type": "string"}, "b": {"type": "integer"}}}
    errors = schema_gate.validate(schema, {"b": "x", "a": 2})
    assert [error.split(" ", 1)[0] for error in errors] == ["/a", "/b"]


def test_broken_schema_is_reported_not_raised() -> None:
    errors = schema_gate.validate({"type": "no-such-type"}, {})
    assert len(errors) == 1
    assert errors[0].startswith("Schema validation error:")


def test_is_well_formed_requires_a_structural_keyword() -> None:
    assert schema_gate.is_well_formed({"type": "object"})
    assert schema_gate.is_well_formed({"anyOf": [{"type": "string"}]})
    assert not schema_gate.is_well_formed({"description": "anything"})
    assert not schema_gate.is_well_formed(["type"])
