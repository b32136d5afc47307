"""Parameter schemas for model-callable tools.

Stored tool parameters, built-in tool arguments and client-supplied tool
parameters are all described as ParameterDescriptor lists and compiled into
a pydantic model. The same model produces the JSON schema sent to the model
and validates the arguments it sends back.
"""

import logging
from dataclasses import dataclass
from typing import Any

from pydantic import (
    ConfigDict,
    EmailStr,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    create_model,
)
from pydantic import ValidationError as PydanticValidationError

from helpdesk.db.models import Tool
from helpdesk.errors import ToolApiError

logger = logging.getLogger(__name__)

_MISSING: Any = object()

PARAMETER_TYPES: dict[str, Any] = {
    "string": StrictStr,
    "number": StrictInt | StrictFloat,
    "integer": StrictInt,
    "boolean": StrictBool,
    "email": EmailStr,
}


@dataclass
class ParameterDescriptor:
    """One named tool parameter.

    Attributes:
        name: Parameter name as sent by the model.
        kind: One of string, number, integer, boolean, email.
        required: Whether the model must supply it.
        description: Shown to the model.
        default: Value used when the parameter is omitted.
    """

    name: str
    kind: str = "string"
    required: bool = True
    description: str | None = None
    default: Any = _MISSING

    @property
    def has_default(self) -> bool:
        return self.default is not _MISSING


class ParameterValidator:
    """Compiled parameter model for one tool."""

    def __init__(self, descriptors: list[ParameterDescriptor], model_name: str = "ToolParameters") -> None:
        self.descriptors = descriptors
        fields: dict[str, Any] = {}
        for descriptor in descriptors:
            annotation = PARAMETER_TYPES[descriptor.kind]
            description = descriptor.description or descriptor.name
            if descriptor.has_default:
                fields[descriptor.name] = (
                    annotation,
                    Field(default=descriptor.default, description=description),
                )
            elif descriptor.required:
                fields[descriptor.name] = (annotation, Field(description=description))
            else:
                fields[descriptor.name] = (
                    annotation | None,
                    Field(default=None, description=description),
                )
        self.model = create_model(
            model_name,
            __config__=ConfigDict(extra="ignore"),
            **fields,
        )

    def json_schema(self) -> dict[str, Any]:
        """JSON schema of the parameters, without pydantic titles."""
        schema = self.model.model_json_schema()
        schema.pop("title", None)
        for prop in schema.get("properties", {}).values():
            prop.pop("title", None)
        schema.setdefault("properties", {})
        return schema

    def validate(self, params: dict[str, Any]) -> dict[str, Any]:
        """Validate params and return them with defaults applied.

        Omitted optional parameters stay omitted.

        Raises:
            pydantic.ValidationError: If any parameter is missing or mistyped.
        """
        validated = self.model.model_validate(params).model_dump(exclude_unset=True)
        for descriptor in self.descriptors:
            if descriptor.name not in validated and descriptor.has_default:
                validated[descriptor.name] = descriptor.default
        return validated

    def descriptions(self) -> dict[str, str]:
        return {d.name: d.description or d.name for d in self.descriptors}


def build_parameter_validator(
    descriptors: list[ParameterDescriptor],
    model_name: str = "ToolParameters",
) -> ParameterValidator:
    return ParameterValidator(descriptors, model_name=model_name)


def _stored_kind(tool: Tool, param: dict[str, Any]) -> str:
    kind = param.get("type", "string")
    if kind in ("string", "number", "integer", "boolean"):
        return kind
    logger.warning(
        "Tool %s parameter %s has unsupported type %r, treating as string",
        tool.slug,
        param.get("name"),
        kind,
    )
    return "string"


def build_parameter_schema(
    tool: Tool,
    use_email_parameter: bool,
    email: str | None = None,
) -> ParameterValidator:
    """Compile a stored tool's parameters.

    With use_email_parameter, the tool's customer email parameter is a
    string that defaults to the known customer email, and stays required
    when no email is known.

    Args:
        tool: Stored tool definition.
        use_email_parameter: Apply the customer email default.
        email: Known customer email.

    Returns:
        ParameterValidator for the tool.
    """
    descriptors = []
    for param in tool.parameters or []:
        name = param["name"]
        description = param.get("description") or name
        if use_email_parameter and name == tool.customer_email_parameter:
            descriptors.append(
                ParameterDescriptor(
                    name=name,
                    kind="string",
                    required=not email,
                    description=description,
                    default=email if email else _MISSING,
                )
            )
            continue
        descriptors.append(
            ParameterDescriptor(
                name=name,
                kind=_stored_kind(tool, param),
                required=bool(param.get("required")),
                description=description,
            )
        )
    return build_parameter_validator(descriptors)


def validate_parameters(tool: Tool, params: dict[str, Any]) -> dict[str, Any]:
    """Validate params against the tool's declared parameters.

    Raises:
        ToolApiError: INVALID_PARAMETER naming the first offending field.
    """
    try:
        return build_parameter_schema(tool, use_email_parameter=False).validate(params)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first["loc"])
        raise ToolApiError(
            "INVALID_PARAMETER",
            f"Parameter validation failed: {field} - {first['msg']}",
            field=field,
        ) from e


def client_tool_descriptors(parameters: dict[str, dict[str, Any]]) -> list[ParameterDescriptor]:
    """Describe the parameters of a tool supplied by the chat widget.

    Client parameters are {type: 'string' | 'number', description?, optional?}.
    """
    return [
        ParameterDescriptor(
            name=name,
            kind="string" if spec.get("type") == "string" else "number",
            required=not spec.get("optional", False),
            description=spec.get("description"),
        )
        for name, spec in parameters.items()
    ]
