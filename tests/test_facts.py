import pytest

from gatecheck.core.errors import CyclicInputError, MalformedInputError
from gatecheck.core.facts import FactModel, build_fact_model


# --- flattening ---

def test_flattens_nested_mappings_and_lists():
    facts = build_fact_model({
        "from": [{"base_image": "python:3.12", "stage": "build"}],
        "user": "app",
        "expose": [80, 443],
    })
    assert dict(facts) == {
        "from[0].base_image": "python:3.12",
        "from[0].stage": "build",
        "user": "app",
        "expose": (80, 443),
    }


def test_flat_and_nested_documents_produce_same_model():
    flat = build_fact_model({"env[0].key": "A", "env[0].value": "1"})
    nested = build_fact_model({"env": [{"key": "A", "value": "1"}]})
    assert flat == nested


def test_preserves_document_order():
    facts = build_fact_model({"b": 1, "a": {"z": 2, "y": 3}})
    assert list(facts) == ["b", "a.z", "a.y"]


def test_empty_list_is_kept_as_empty_tuple():
    facts = build_fact_model({"volumes": []})
    assert facts["volumes"] == ()


def test_nested_lists_are_indexed():
    facts = build_fact_model({"matrix": [[1, 2], [3]]})
    assert facts["matrix[0]"] == (1, 2)
    assert facts["matrix[1]"] == (3,)


def test_null_values_are_skipped():
    facts = build_fact_model({"user": None, "after": {"tags": None, "size": 10}})
    assert "user" not in facts
    assert dict(facts) == {"after.size": 10}


def test_existing_fact_model_is_returned_unchanged():
    facts = FactModel({"a": 1})
    assert build_fact_model(facts) is facts


def test_fact_model_is_read_only():
    facts = build_fact_model({"a": 1})
    with pytest.raises(TypeError):
        facts["a"] = 2  # type: ignore[index]


# --- duplicates and conflicts ---

def test_same_kind_duplicate_warns_and_keeps_last():
    facts = build_fact_model({"a.b": "x", "a": {"b": "y"}})
    assert facts["a.b"] == "y"
    assert len(facts.warnings) == 1
    assert "a.b" in facts.warnings[0]


def test_scalar_and_list_at_same_path_is_malformed():
    with pytest.raises(MalformedInputError) as excinfo:
        build_fact_model({"a.b": "x", "a": {"b": ["y"]}})
    assert excinfo.value.path == "a.b"
    assert "conflicting values" in str(excinfo.value)


def test_string_and_number_at_same_path_is_malformed():
    with pytest.raises(MalformedInputError, match="string and number"):
        build_fact_model({"p.q": "1", "p": {"q": 2}})


def test_scalar_with_children_is_malformed():
    with pytest.raises(MalformedInputError, match="number and container") as excinfo:
        build_fact_model({"a": 1, "a.b": 2})
    assert excinfo.value.path == "a"


def test_children_then_scalar_is_malformed():
    with pytest.raises(MalformedInputError, match="container and number") as excinfo:
        build_fact_model({"a.b": 2, "a": 1})
    assert excinfo.value.path == "a"


def test_scalar_list_with_indexed_entry_is_malformed():
    with pytest.raises(MalformedInputError, match="list and container") as excinfo:
        build_fact_model({"ports": [80], "ports[0]": 80})
    assert excinfo.value.path == "ports"


def test_sibling_with_shared_name_prefix_is_not_a_conflict():
    facts = build_fact_model({"env": "prod", "environment": {"name": "x"}})
    assert facts["env"] == "prod"
    assert facts["environment.name"] == "x"


def test_unsupported_value_type_is_malformed():
    with pytest.raises(MalformedInputError, match="unsupported value type set"):
        build_fact_model({"tags": {"a": {1, 2}}})


def test_non_string_key_is_malformed():
    with pytest.raises(MalformedInputError, match="invalid key"):
        build_fact_model({"a": {1: "x"}})


def test_top_level_must_be_mapping():
    with pytest.raises(MalformedInputError, match="expected a mapping"):
        build_fact_model(["not", "a", "mapping"])


# --- depth and cycles ---

def _nest(depth: int) -> dict:
    doc: dict = {"leaf": "x"}
    for _ in range(depth):
        doc = {"n": doc}
    return doc


def test_depth_within_limit_is_accepted():
    facts = build_fact_model(_nest(5), max_depth=5)
    assert facts["n.n.n.n.n.leaf"] == "x"


def test_depth_over_limit_is_malformed():
    with pytest.raises(MalformedInputError, match="maximum depth of 5"):
        build_fact_model(_nest(6), max_depth=5)


def test_cycle_through_mapping_is_detected():
    doc: dict = {"a": {}}
    doc["a"]["back"] = doc
    with pytest.raises(CyclicInputError) as excinfo:
        build_fact_model(doc)
    assert excinfo.value.path == "a.back"


def test_cycle_through_list_is_detected():
    items: list = [{"name": "x"}]
    items[0]["children"] = items
    with pytest.raises(CyclicInputError):
        build_fact_model({"items": items})


def test_cyclic_error_is_a_malformed_input_error():
    assert issubclass(CyclicInputError, MalformedInputError)


def test_shared_subtree_is_not_a_cycle():
    shared = {"image": "python:3.12"}
    facts = build_fact_model({"a": shared, "b": shared})
    assert facts["a.image"] == facts["b.image"] == "python:3.12"


# --- pattern matching ---

def test_match_with_wildcard_index():
    facts = build_fact_model({"env": [{"key": "A"}, {"key": "B"}], "envx": {"key": "C"}})
    assert facts.match("env[*].key") == ["env[0].key", "env[1].key"]


def test_match_without_wildcard_is_exact():
    facts = build_fact_model({"user": "app"})
    assert facts.match("user") == ["user"]
    assert facts.match("use") == []


def test_prefixes_stop_at_segment_boundary():
    facts = build_fact_model({
        "env": [{"key": "A", "value": "1"}, {"key": "B"}],
        "environment": "prod",
    })
    assert facts.prefixes("env[*]") == ["env[0]", "env[1]"]
    assert facts.prefixes("env") == ["env"]


def test_index_reaches_into_scalar_list():
    facts = build_fact_model({"ports": [80, 443]})
    assert facts.match("ports[1]") == ["ports[1]"]
    assert facts["ports[1]"] == 443
    assert facts.match("ports[5]") == []
    assert "ports[5]" not in facts
    # Iteration still yields the stored tuple only.
    assert list(facts) == ["ports"]


def test_wildcard_reaches_into_scalar_lists():
    facts = build_fact_model({
        "services": [{"ports": [80, 443]}, {"ports": []}, {"ports": [22]}],
    })
    assert facts.match("services[*].ports[*]") == [
        "services[0].ports[0]",
        "services[0].ports[1]",
        "services[2].ports[0]",
    ]
    assert facts.match("services[*].ports[0]") == ["services[0].ports[0]", "services[2].ports[0]"]
