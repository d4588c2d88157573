import asyncio
import inspect
import json
import re
from typing import Any, Callable

from pydantic import BaseModel, Field


class ToolDescriptor(BaseModel):
    """One entry of the tool catalogue sent to the model.

    Function tools carry a JSON ``input_schema``; hosted tools (such as
    the built-in text editor) carry a ``type`` and a name only.
    """

    name: str
    description: str | None = None
    input_schema: dict[str, Any] | None = None
    type: str | None = None

    def to_anthropic(self) -> dict[str, Any]:
        if self.type is not None:
            return {"type": self.type, "name": self.name}
        return {
            "name": self.name,
            "description": self.description or "",
            "input_schema": self.input_schema or {"type": "object", "properties": {}},
        }

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description or "",
                "parameters": self.input_schema or {"type": "object", "properties": {}},
            },
        }


_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    tuple: "array",
    set: "array",
    dict: "object",
}


def _json_type(annotation: Any) -> str:
    origin = getattr(annotation, "__origin__", None)
    return _JSON_TYPES.get(origin or annotation, "string")


def _parse_param_descriptions(doc: str | None) -> dict[str, str]:
    """Pull ``name: description`` lines out of a Google-style ``Args:`` block."""
    if not doc:
        return {}
    descriptions: dict[str, str] = {}
    in_args = False
    for line in inspect.cleandoc(doc).splitlines():
        stripped = line.strip()
        if stripped in ("Args:", "Arguments:", "Parameters:"):
            in_args = True
            continue
        if not in_args:
            continue
        if stripped.endswith(":") and not line.startswith(" "):
            break
        match = re.match(r"^(\w+)(?:\s*\([^)]*\))?:\s*(.*)$", stripped)
        if match:
            descriptions[match.group(1)] = match.group(2)
    return descriptions


def _summary(doc: str | None) -> str:
    if not doc:
        return ""
    return inspect.cleandoc(doc).split("\n\n")[0].strip()


def _build_parameters_schema(func: Callable) -> tuple[dict, list[str]]:
    """Build a JSON-schema ``properties`` object and required list for *func*."""
    descriptions = _parse_param_descriptions(func.__doc__)
    properties: dict[str, dict] = {}
    required: list[str] = []
    for name, param in inspect.signature(func).parameters.items():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        annotation = param.annotation
        prop = {
            "type": "string" if annotation is inspect.Parameter.empty else _json_type(annotation),
        }
        if name in descriptions:
            prop["description"] = descriptions[name]
        properties[name] = prop
        if param.default is inspect.Parameter.empty:
            required.append(name)
    return {"type": "object", "properties": properties}, required


class Tool(BaseModel):
    """A Python callable exposed to the model as a function tool."""

    func: Callable = Field(exclude=True)
    name: str
    description: str
    input_schema: dict[str, Any]
    model_config = {"arbitrary_types_allowed": True}

    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name=self.name,
            description=self.description,
            input_schema=self.input_schema,
        )

    async def __call__(self, **kwargs) -> str:
        if inspect.iscoroutinefunction(self.func):
            result = await self.func(**kwargs)
        else:
            result = await asyncio.to_thread(self.func, **kwargs)
        if isinstance(result, str):
            return result
        return json.dumps(result, ensure_ascii=False, default=str)


def tool(func: Callable | None = None, *, name: str | None = None):
    """Decorator turning a function into a :class:`Tool`.

    The schema comes from the signature, the description from the first
    paragraph of the docstring and parameter descriptions from its
    ``Args:`` section.  Usable bare (``@tool``) or with a name override
    (``@tool(name="LS")``).
    """
    def wrap(f: Callable) -> Tool:
        schema, required = _build_parameters_schema(f)
        if required:
            schema["required"] = required
        return Tool(
            func=f,
            name=name or f.__name__,
            description=_summary(f.__doc__),
            input_schema=schema,
        )

    if func is not None:
        return wrap(func)
    return wrap
