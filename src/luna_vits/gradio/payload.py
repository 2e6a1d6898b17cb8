"""Argument mapping between caller values and the wire payload."""

from __future__ import annotations

from typing import Any, Literal, Mapping, Optional, Sequence, Union

from luna_vits.gradio.api_info import EndpointInfo
from luna_vits.gradio.constants import STATE_COMPONENT
from luna_vits.gradio.errors import InvalidArgumentError
from luna_vits.gradio.schemas import AppConfig, ComponentMeta, Dependency
from luna_vits.logging import get_logger

logger = get_logger("gradio.payload")

Direction = Literal["input", "output"]
Arguments = Union[Sequence[Any], Mapping[str, Any], None]


class _Unset:
    """Marks a slot with no value at all (distinct from ``None``)."""

    _instance: Optional["_Unset"] = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


def map_arguments(data: Arguments, endpoint_info: Optional[EndpointInfo]) -> list[Any]:
    """Turn positional or keyword arguments into the ordered parameter list.

    Positional input passes through untouched (extra values only warn).
    Keyword input is resolved per declared parameter: caller value, then
    declared default, else InvalidArgumentError.  Unknown keywords are
    rejected too.
    """
    parameters = endpoint_info.parameters if endpoint_info else ()

    if data is None:
        data = {}

    if not isinstance(data, Mapping):
        values = list(data)
        if len(values) > len(parameters):
            logger.warning(
                "Too many arguments provided for the endpoint: got %d, expected %d",
                len(values),
                len(parameters),
            )
        return values

    resolved: list[Any] = []
    for param in parameters:
        if param.parameter_name is not None and param.parameter_name in data:
            resolved.append(data[param.parameter_name])
        elif param.parameter_has_default:
            resolved.append(param.parameter_default)
        else:
            raise InvalidArgumentError(
                f"No value provided for required parameter: {param.parameter_name}"
            )

    known = {p.parameter_name for p in parameters if p.parameter_name is not None}
    for key in data:
        if key not in known:
            raise InvalidArgumentError(
                f"Parameter `{key}` is not a valid keyword argument. "
                "Please refer to the API for usage."
            )

    for idx, value in enumerate(resolved):
        if value is UNSET:
            param = parameters[idx]
            if not param.parameter_has_default:
                raise InvalidArgumentError(
                    f"No value provided for required parameter: {param.parameter_name}"
                )
            resolved[idx] = param.parameter_default

    return resolved


def project_payload(
    values: Sequence[Any],
    dependency: Optional[Dependency],
    components: Sequence[ComponentMeta],
    direction: Direction,
    keep_state_nulls: bool = False,
) -> list[Any]:
    """Walk the dependency's component ids, handling ``state`` slots.

    Input: state slots get the caller's placeholder when every slot was
    supplied, else ``None``.  Output: state slots are skipped unless
    ``keep_state_nulls`` asks for the raw server payload.
    """
    if direction == "input" and not keep_state_nulls:
        raise InvalidArgumentError("Invalid code path. Cannot skip state inputs for input.")
    if direction == "output" and keep_state_nulls:
        return list(values)
    if dependency is None:
        return list(values)

    types = {c.id: c.type for c in components}
    ids = dependency.inputs if direction == "input" else dependency.outputs
    full = len(values) == len(ids)

    projected: list[Any] = []
    idx = 0
    for component_id in ids:
        if types.get(component_id) == STATE_COMPONENT:
            if keep_state_nulls:
                if full:
                    projected.append(values[idx])
                    idx += 1
                else:
                    projected.append(None)
            else:
                # server always sends state slots, skip over them
                idx += 1
            continue
        projected.append(values[idx] if idx < len(values) else None)
        idx += 1
    return projected


def skip_queue(fn_index: int, config: AppConfig) -> bool:
    """True when the dependency (or the whole app) bypasses the queue."""
    dep = config.dependency(fn_index)
    if dep is not None and dep.queue is not None:
        return not dep.queue
    return not config.enable_queue
