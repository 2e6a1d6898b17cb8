"""Tests for argument mapping and state-slot projection."""

import pytest

from luna_vits.gradio.api_info import EndpointInfo, ParameterInfo
from luna_vits.gradio.errors import InvalidArgumentError
from luna_vits.gradio.payload import UNSET, map_arguments, project_payload, skip_queue
from luna_vits.gradio.schemas import AppConfig


@pytest.fixture
def endpoint():
    return EndpointInfo(
        parameters=(
            ParameterInfo(label="Text", parameter_name="text"),
            ParameterInfo(
                label="Speed",
                parameter_name="speed",
                parameter_has_default=True,
                parameter_default=1.0,
            ),
        )
    )


class TestMapArguments:
    def test_positional_passes_through(self, endpoint):
        assert map_arguments(["hi", 2.0], endpoint) == ["hi", 2.0]

    def test_too_many_positional_only_warns(self, endpoint, caplog):
        assert map_arguments(["a", 1, "extra"], endpoint) == ["a", 1, "extra"]
        assert "Too many arguments" in caplog.text

    def test_keyword_uses_defaults(self, endpoint):
        assert map_arguments({"text": "hi"}, endpoint) == ["hi", 1.0]

    def test_missing_required(self, endpoint):
        with pytest.raises(InvalidArgumentError, match="text"):
            map_arguments({"speed": 2}, endpoint)

    def test_none_means_no_keywords(self, endpoint):
        with pytest.raises(InvalidArgumentError):
            map_arguments(None, endpoint)

    def test_unknown_keyword(self, endpoint):
        with pytest.raises(InvalidArgumentError, match="pitch"):
            map_arguments({"text": "hi", "pitch": 3}, endpoint)

    def test_unset_takes_default(self, endpoint):
        assert map_arguments({"text": "hi", "speed": UNSET}, endpoint) == ["hi", 1.0]

    def test_unset_without_default(self, endpoint):
        with pytest.raises(InvalidArgumentError):
            map_arguments({"text": UNSET}, endpoint)

    def test_invalid_argument_is_value_error(self, endpoint):
        with pytest.raises(ValueError):
            map_arguments({}, endpoint)


class TestProjectPayload:
    def test_input_requires_state_nulls(self, config):
        with pytest.raises(InvalidArgumentError):
            project_payload(["a"], config.dependency(1), config.components, "input", False)

    def test_input_fills_missing_state(self, config):
        assert project_payload(["a"], config.dependency(1), config.components, "input", True) == ["a", None]

    def test_input_keeps_supplied_state(self, config):
        values = project_payload(["a", {"k": 1}], config.dependency(1), config.components, "input", True)
        assert values == ["a", {"k": 1}]

    def test_output_drops_state(self, config):
        assert project_payload(["v", "s"], config.dependency(1), config.components, "output") == ["v"]

    def test_output_raw_with_state_nulls(self, config):
        values = project_payload(["v", "s"], config.dependency(1), config.components, "output", True)
        assert values == ["v", "s"]

    def test_no_dependency(self, config):
        assert project_payload([1, 2], None, config.components, "output") == [1, 2]


class TestSkipQueue:
    def test_dependency_flag_wins(self):
        config = AppConfig.model_validate({"enable_queue": True, "dependencies": [{"queue": False}]})
        assert skip_queue(0, config)

    def test_app_default(self):
        config = AppConfig.model_validate({"enable_queue": False, "dependencies": [{}]})
        assert skip_queue(0, config)
        config = AppConfig.model_validate({"enable_queue": True, "dependencies": [{}]})
        assert not skip_queue(0, config)
