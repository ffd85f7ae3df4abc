from typing import Any, Callable, Dict, List, Optional, Type
from pydantic import BaseModel, ConfigDict, Field

import structlog

from .tool_validator import JsonSchemaValidator, PydanticArgsValidator, SchemaValidator

logger = structlog.get_logger(__name__)


class RegisteredTool(BaseModel):
    """A callable tool the model may request"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str = ""
    validator: Any = Field(description="SchemaValidator for the arguments")
    handler: Callable[..., Any] = Field(description="Sync or async callable taking the validated args")
    timeout_seconds: Optional[float] = None

    @property
    def parameters_schema(self) -> Dict[str, Any]:
        return self.validator.json_schema()


class ToolRegistry:
    """Registry for the tools available to agent conversations"""

    def __init__(self):
        self.tools: Dict[str, RegisteredTool] = {}

    def register_tool(self, tool: RegisteredTool) -> None:
        """Register a tool; a tool with the same name is replaced"""

        if tool.name in self.tools:
            logger.warning("Replacing registered tool", tool_name=tool.name)
            self.unregister_tool(tool.name)

        self.tools[tool.name] = tool

    def register(
        self,
        name: str,
        handler: Callable[..., Any],
        description: str = "",
        args_model: Optional[Type[BaseModel]] = None,
        parameters_schema: Optional[Dict[str, Any]] = None,
        timeout_seconds: Optional[float] = None
    ) -> RegisteredTool:
        """Register a handler with either a pydantic args model or a JSON schema"""

        validator: SchemaValidator
        if args_model is not None:
            validator = PydanticArgsValidator(args_model)
        else:
            validator = JsonSchemaValidator(parameters_schema or {"type": "object", "properties": {}})

        tool = RegisteredTool(
            name=name,
            description=description,
            validator=validator,
            handler=handler,
            timeout_seconds=timeout_seconds,
        )
        self.register_tool(tool)
        return tool

    def unregister_tool(self, name: str) -> bool:
        return self.tools.pop(name, None) is not None

    def get_tool(self, name: str) -> Optional[RegisteredTool]:
        return self.tools.get(name)

    def get_tool_names(self) -> List[str]:
        """Tool names in registration order"""
        return list(self.tools)

    def to_model_specs(self) -> List[Dict[str, Any]]:
        """Function-calling definitions for the model provider"""

        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters_schema,
                }
            }
            for tool in self.tools.values()
        ]
