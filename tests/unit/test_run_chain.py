"""Tests for chain snapshot helpers, prompt rendering and output checks."""

from types import SimpleNamespace

from prompt_workbench.runs.action import validate_output
from prompt_workbench.runs.chain import (
    lookup,
    render,
    resolve_variable,
    snapshot_chain,
    step_key,
)


class TestSnapshotChain:
    def test_nodes_sorted_and_serialized(self) -> None:
        def node(node_id: int, order_index: int) -> SimpleNamespace:
            return SimpleNamespace(
                id=node_id,
                name=f"n{node_id}",
                order_index=order_index,
                provider_credential_id=1,
                model_name="gpt-4o",
                model_params=None,
                messages_config=None,
                output_schema=None,
                stop_on_validation_error=False,
            )

        chain = SimpleNamespace(nodes=[node(2, 2), node(1, 1)])
        snapshot = snapshot_chain(chain)  # type: ignore[arg-type]

        assert [n["id"] for n in snapshot] == [1, 2]
        assert snapshot[0]["model_params"] == {}
        assert snapshot[0]["messages_config"] == []


class TestStepKey:
    def test_slug_from_name(self) -> None:
        assert step_key({"id": 1, "name": "Draft Reply!"}) == "draft_reply"

    def test_falls_back_to_id(self) -> None:
        assert step_key({"id": 7, "name": "???"}) == "step_7"


class TestLookup:
    def test_nested_dicts_and_lists(self) -> None:
        data = {"customer": {"tags": ["vip", "eu"]}}
        assert lookup(data, "customer.tags.1") == "eu"

    def test_missing_path(self) -> None:
        assert lookup({"a": {}}, "a.b.c") is None
        assert lookup({"a": [1]}, "a.5") is None

    def test_empty_path_returns_data(self) -> None:
        assert lookup({"a": 1}, None) == {"a": 1}


class TestResolveVariable:
    def test_no_mapping_reads_input_by_name(self) -> None:
        assert resolve_variable("name", None, {"name": "Ada"}, {}) == "Ada"

    def test_constant(self) -> None:
        mapping = {"source": "constant", "value": "formal"}
        assert resolve_variable("tone", mapping, {}, {}) == "formal"

    def test_previous_step_prefers_parsed_output(self) -> None:
        outputs = {"draft": {"parsed_output": {"text": "hi"}, "raw_output": "{}"}}
        mapping = {"source": "previous_step", "step_key": "draft"}
        assert resolve_variable("x", mapping, {}, outputs) == {"text": "hi"}

    def test_previous_step_path_into_parsed_output(self) -> None:
        outputs = {"draft": {"parsed_output": {"text": "hi"}, "raw_output": "{}"}}
        mapping = {"source": "previous_step", "step_key": "draft", "path": "text"}
        assert resolve_variable("x", mapping, {}, outputs) == "hi"

    def test_unknown_step(self) -> None:
        mapping = {"source": "previous_step", "step_key": "nope"}
        assert resolve_variable("x", mapping, {}, {}) is None


class TestRender:
    def test_substitutes_placeholders(self) -> None:
        content = "Hello {{ name }}, you are {{tier}}."
        rendered = render(content, {}, {"name": "Ada", "tier": "gold"}, {})
        assert rendered == "Hello Ada, you are gold."

    def test_missing_values_become_empty(self) -> None:
        assert render("[{{ missing }}]", {}, {}, {}) == "[]"


class TestValidateOutput:
    def test_no_schema_skips_parsing(self) -> None:
        assert validate_output("not json", None) == (None, [])

    def test_invalid_json(self) -> None:
        parsed, errors = validate_output("not json", {"type": "object"})
        assert parsed is None
        assert errors[0].startswith("Output is not valid JSON")

    def test_required_fields(self) -> None:
        schema = {"type": "object", "required": ["answer", "confidence"]}
        parsed, errors = validate_output('{"answer": 42}', schema)
        assert parsed == {"answer": 42}
        assert errors == ["Missing required field: confidence"]

    def test_object_expected(self) -> None:
        _, errors = validate_output("[1, 2]", {"type": "object"})
        assert errors == ["Output must be a JSON object"]
