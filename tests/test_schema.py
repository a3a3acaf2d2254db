"""Descriptor projections and parameter validation."""

from pysuna.tools.schema import FunctionSchema, OperationSpec, ParamSpec, TagSchema, render_tag_call, schemas_for

OP = OperationSpec(
    name="read_file",
    description="Read the contents of a file",
    tag_name="read_file",
    params=(
        ParamSpec("path", "string", "Path to the file", required=True),
        ParamSpec("encoding", "string", "File encoding", default="utf8", enum=("utf8", "base64")),
        ParamSpec("max_size", "integer", "Maximum size", default=1024, minimum=0),
    ),
    examples=({"path": "notes.md"},),
)


class TestProjections:
    def test_function_schema_shape(self):
        d = OP.to_function_schema().to_dict()
        assert d["type"] == "function"
        fn = d["function"]
        assert fn["name"] == "read_file"
        assert fn["parameters"]["required"] == ["path"]
        assert fn["parameters"]["properties"]["encoding"]["enum"] == ["utf8", "base64"]
        assert fn["parameters"]["properties"]["max_size"]["minimum"] == 0

    def test_tag_schema_uses_same_parameters(self):
        fn = OP.to_function_schema()
        tag = OP.to_tag_schema()
        assert tag is not None
        assert set(tag.parameters) == set(fn.parameters["properties"])
        assert tag.parameters["path"]["required"] is True
        assert tag.parameters["encoding"]["required"] is False

    def test_tag_examples_rendered_from_examples(self):
        tag = OP.to_tag_schema()
        assert tag.examples == ("<read_file>\n<path>notes.md</path>\n</read_file>",)

    def test_no_tag_without_tag_name(self):
        op = OperationSpec(name="list_files", description="List", params=())
        assert op.to_tag_schema() is None
        descriptors = schemas_for(op)
        assert len(descriptors) == 1
        assert isinstance(descriptors[0], FunctionSchema)

    def test_schemas_for_includes_both_views(self):
        kinds = {type(d) for d in schemas_for(OP)}
        assert kinds == {FunctionSchema, TagSchema}

    def test_render_tag_call_formats_values(self):
        out = render_tag_call("t", {"flag": True, "items": ["a"], "n": 3})
        assert "<flag>true</flag>" in out
        assert '<items>["a"]</items>' in out
        assert "<n>3</n>" in out


class TestValidationModel:
    def test_defaults_applied(self):
        params = OP.model().model_validate({"path": "a.txt"})
        assert params.encoding == "utf8"
        assert params.max_size == 1024

    def test_string_numbers_coerced(self):
        params = OP.model().model_validate({"path": "a.txt", "max_size": "10"})
        assert params.max_size == 10

    def test_unknown_keys_ignored(self):
        params = OP.model().model_validate({"path": "a.txt", "bogus": 1})
        assert not hasattr(params, "bogus")

    def test_model_is_built_once(self):
        assert OP.model() is OP.model()
