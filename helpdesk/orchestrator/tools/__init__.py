"""Model-callable tools.

Main Entry Points:
    build_tools: Server-side tool set for one conversation.
    call_tool_api: Execute a stored mailbox tool over HTTP.
"""

from helpdesk.orchestrator.tools.api_tool import (
    build_ai_tools,
    build_request_options,
    build_url,
    call_tool_api,
    create_headers,
)
from helpdesk.orchestrator.tools.builtin import (
    FETCH_USER_INFORMATION_TOOL_NAME,
    GUIDE_USER_TOOL_NAME,
    REQUEST_HUMAN_SUPPORT_TOOL_NAME,
    add_client_tools,
    add_read_page_tool,
    build_tools,
)
from helpdesk.orchestrator.tools.core import ToolDefinition
from helpdesk.orchestrator.tools.parameters import (
    ParameterDescriptor,
    ParameterValidator,
    build_parameter_schema,
    build_parameter_validator,
    validate_parameters,
)

__all__ = [
    "ToolDefinition",
    "ParameterDescriptor",
    "ParameterValidator",
    "build_parameter_validator",
    "build_parameter_schema",
    "validate_parameters",
    "build_ai_tools",
    "build_request_options",
    "build_url",
    "call_tool_api",
    "create_headers",
    "build_tools",
    "add_client_tools",
    "add_read_page_tool",
    "GUIDE_USER_TOOL_NAME",
    "REQUEST_HUMAN_SUPPORT_TOOL_NAME",
    "FETCH_USER_INFORMATION_TOOL_NAME",
]
