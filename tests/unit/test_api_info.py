"""Tests for API introspection: normalisation, lookup and rendering."""

import pytest

from luna_vits.gradio.api_info import (
    ApiInfoShape,
    detect_shape,
    fetch_api_info,
    find_endpoint,
    get_type,
    render_api_info,
    transform_api_info,
    unwrap_api_info,
)
from luna_vits.gradio.constants import SPACE_FETCHER_URL
from luna_vits.gradio.errors import SchemaError
from luna_vits.gradio.resolver import map_names_to_ids
from luna_vits.gradio.schemas import AppConfig


@pytest.fixture
def api_map(config):
    return map_names_to_ids(config.dependencies)


@pytest.fixture
def api_info(raw_api, config, api_map):
    return transform_api_info(raw_api, config, api_map)


class TestShape:
    def test_flat_and_nested(self, raw_api):
        assert detect_shape(raw_api) is ApiInfoShape.FLAT
        assert detect_shape({"api": raw_api}) is ApiInfoShape.NESTED
        assert unwrap_api_info({"api": raw_api}) == raw_api

    @pytest.mark.parametrize("payload", [[], {"detail": "Not Found"}, {"named_endpoints": ["x"]}])
    def test_unusable_payload(self, payload):
        with pytest.raises(SchemaError):
            unwrap_api_info(payload)


class TestTransform:
    def test_state_parameter_inserted(self, api_info):
        params = api_info.named_endpoints["/chat"].parameters
        assert [p.component for p in params] == ["Textbox", "state"]
        assert params[1].hidden
        assert params[1].parameter_has_default

    def test_no_insertion_when_counts_match(self, api_info):
        assert len(api_info.named_endpoints["/predict"].parameters) == 1

    def test_predict_doubles_as_index_zero(self, api_info):
        assert api_info.unnamed_endpoints[0] is api_info.named_endpoints["/predict"]

    def test_existing_index_zero_kept(self, raw_api, config, api_map):
        raw_api["unnamed_endpoints"] = {"0": {"parameters": [], "returns": []}}
        info = transform_api_info(raw_api, config, api_map)
        assert info.unnamed_endpoints[0].parameters == ()

    def test_types_are_mapped(self, api_info):
        param = api_info.named_endpoints["/predict"].parameters[0]
        assert param.type == "str"
        assert param.parameter_name == "text"

    def test_bad_description(self, config, api_map):
        with pytest.raises(SchemaError):
            transform_api_info({"named_endpoints": {"/x": "oops"}}, config, api_map)

    def test_mapping_is_read_only(self, api_info):
        with pytest.raises(TypeError):
            api_info.named_endpoints["/new"] = api_info.named_endpoints["/predict"]


class TestGetType:
    @pytest.mark.parametrize(
        ("type_info", "component", "serializer", "kind", "expected"),
        [
            ({"type": "number"}, "Slider", None, "parameter", "float"),
            ({"type": "boolean"}, "Checkbox", None, "parameter", "bool"),
            (None, "Image", None, "return", "str"),
            (None, "File", "FileSerializable", "parameter", "bytes | str"),
            ({"type": "array"}, "File", "FileSerializable", "return", "list[FileData]"),
            (None, "Mystery", None, "parameter", None),
            ({"type": "integer"}, "Number", None, "parameter", None),
        ],
    )
    def test_mapping(self, type_info, component, serializer, kind, expected):
        assert get_type(type_info, component, serializer, kind) == expected


class TestFindEndpoint:
    def test_by_name(self, api_info, api_map, config):
        fn_index, info, dep = find_endpoint(api_info, "/chat", api_map, config)
        assert fn_index == 1
        assert info is api_info.named_endpoints["/chat"]
        assert dep.named == "chat"

    def test_by_index_falls_back_to_named(self, api_info, api_map, config):
        fn_index, info, _ = find_endpoint(api_info, 1, api_map, config)
        assert fn_index == 1
        assert info is api_info.named_endpoints["/chat"]

    def test_unknown_name(self, api_info, api_map, config):
        assert find_endpoint(api_info, "/nope", api_map, config) == (None, None, None)


class TestRender:
    def test_named_only(self, api_info):
        text = render_api_info(api_info)
        assert "Named API endpoints: 2" in text
        assert 'predict(text: str, api_name="/chat") -> out: str' in text
        assert "Unnamed" not in text

    def test_all_endpoints(self, api_info):
        text = render_api_info(api_info, all_endpoints=True)
        assert "Unnamed API endpoints: 1" in text
        assert "predict(text: str, fn_index=0) -> out: str" in text


class TestFetch:
    async def test_info_route(self, config, raw_api, stub_session, stub_response):
        http = stub_session({"http://app.test/info": stub_response(body={"api": raw_api})})
        assert await fetch_api_info(http, config, {}) == raw_api

    async def test_legacy_app_uses_fetcher(self, raw_api, stub_session, stub_response):
        legacy = AppConfig.model_validate({"root": "http://app.test", "version": "3.20.1"})
        http = stub_session({SPACE_FETCHER_URL: stub_response(body=raw_api)})
        await fetch_api_info(http, legacy, {})
        assert http.calls == [("POST", SPACE_FETCHER_URL)]

    async def test_http_error(self, config, stub_session, stub_response):
        http = stub_session({"http://app.test/info": stub_response(status=500)})
        with pytest.raises(SchemaError):
            await fetch_api_info(http, config, {})
