"""
Function-call broker.

Local functions are exposed to models through an explicit declaration: a
`FunctionSpec` names the function, describes it and describes every formal
parameter with an `Arg`. Declaring never runs the function.

    def get_weather(location, unit="celsius"):
        ...

    registry = FunctionRegistry.from_functions([
        FunctionSpec(get_weather, "Current weather for a city", [
            Arg("location", str, "City name, e.g. Paris"),
            Arg("unit", ["celsius", "fahrenheit"], "Temperature unit"),
        ]),
    ])

The registry produces the provider-neutral declarations sent with a request
and, at invocation time, turns a provider's name->value argument payload back
into a positional call.
"""
import asyncio
import copy
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .errors import ProtocolViolation, ValidationError
from .types import FunctionDeclaration

log = logging.getLogger(__name__)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()

# Python types accepted as Arg.type and the JSON Schema type they map to
_TYPE_TO_JSON = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    dict: "object",
    type(None): "null",
    None: "null",
}

_JSON_TYPES = {"string", "integer", "number", "boolean", "array", "object", "null"}


@dataclass
class Arg:
    """
    Metadata for one formal parameter.

    Attributes:
        name: Parameter name; must match the function's signature.
        type: A Python type (str, int, float, bool, list, dict, None), a JSON
            Schema type name, a list of allowed strings (enum), or a complete
            JSON Schema mapping.
        description: Human description shown to the model.
        default: Value used when the model omits the argument. Parameters
            without a default are required.
        required: Optional explicit flag; True together with a default is an error.
    """
    name: str
    type: Any = "string"
    description: str = ""
    default: Any = MISSING
    required: Optional[bool] = None

    def to_schema(self) -> Dict[str, Any]:
        if isinstance(self.type, Mapping):
            schema = copy.deepcopy(dict(self.type))
        elif isinstance(self.type, (list, tuple)):
            schema = {"type": "string", "enum": list(self.type)}
        elif self.type in _TYPE_TO_JSON:
            schema = {"type": _TYPE_TO_JSON[self.type]}
        elif isinstance(self.type, str) and self.type in _JSON_TYPES:
            schema = {"type": self.type}
        else:
            raise ValidationError(f"Unsupported type {self.type!r} for argument '{self.name}'")
        if self.description and "description" not in schema:
            schema["description"] = self.description
        return schema


@dataclass
class FunctionSpec:
    """A local function together with its declared shape."""
    fn: Callable[..., Any]
    description: str
    params: Sequence[Arg] = field(default_factory=list)
    name: Optional[str] = None

    @property
    def function_name(self) -> str:
        return self.name or self.fn.__name__


@dataclass
class _Param:
    name: str
    schema: Dict[str, Any]
    default: Any
    required: bool


@dataclass
class _Registered:
    name: str
    description: str
    fn: Callable[..., Any]
    params: List[_Param]

    def declaration(self) -> FunctionDeclaration:
        decl: FunctionDeclaration = {"name": self.name, "description": self.description}
        if self.params:
            decl["parameters"] = {
                "type": "object",
                "properties": {p.name: copy.deepcopy(p.schema) for p in self.params},
                "required": [p.name for p in self.params if p.required],
            }
        return decl


def _build(spec: FunctionSpec) -> _Registered:
    name = spec.function_name
    if not isinstance(spec.description, str) or not spec.description.strip():
        raise ValidationError(f"Function '{name}' must have a description")

    signature = inspect.signature(spec.fn)
    formal = []
    for param in signature.parameters.values():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            raise ValidationError(f"Function '{name}' cannot take *args or **kwargs")
        if param.kind is param.KEYWORD_ONLY:
            raise ValidationError(f"Parameter '{param.name}' of function '{name}' is keyword-only")
        formal.append(param)

    args_by_name: Dict[str, Arg] = {}
    for arg in spec.params:
        if arg.name in args_by_name:
            raise ValidationError(f"Argument '{arg.name}' of function '{name}' is declared twice")
        args_by_name[arg.name] = arg

    unknown = set(args_by_name) - {p.name for p in formal}
    if unknown:
        raise ValidationError(
            f"Function '{name}' declares arguments that are not parameters: {', '.join(sorted(unknown))}"
        )

    params = []
    for param in formal:
        arg = args_by_name.get(param.name)
        if arg is None:
            raise ValidationError(
                f"Parameter '{param.name}' of function '{name}' has no Arg declaration"
            )
        default = arg.default
        if default is MISSING and param.default is not param.empty:
            default = param.default
        if arg.required and default is not MISSING:
            raise ValidationError(
                f"Argument '{arg.name}' of function '{name}' cannot be both required and have a default value"
            )
        params.append(_Param(
            name=param.name,
            schema=arg.to_schema(),
            default=default,
            required=default is MISSING,
        ))

    return _Registered(name=name, description=spec.description, fn=spec.fn, params=params)


class FunctionRegistry:
    """
    Declared local functions, keyed by name.
    """

    def __init__(self) -> None:
        self._functions: Dict[str, _Registered] = {}

    @classmethod
    def from_functions(
        cls,
        functions: Union[Iterable[FunctionSpec], Mapping[str, FunctionSpec]],
    ) -> "FunctionRegistry":
        registry = cls()
        registry.register_all(functions)
        return registry

    def register(self, spec: FunctionSpec) -> None:
        self.register_all([spec])

    def register_all(self, functions: Union[Iterable[FunctionSpec], Mapping[str, FunctionSpec]]) -> None:
        """
        Validate and register several functions.

        All declarations are validated first; if any is invalid nothing is registered.

        Raises:
            ValidationError: On a missing description, an undeclared parameter,
                a declared argument that is not a parameter, or a name clash.
        """
        if isinstance(functions, Mapping):
            specs = []
            for key, spec in functions.items():
                if spec.name is None:
                    spec = FunctionSpec(spec.fn, spec.description, spec.params, name=key)
                specs.append(spec)
        else:
            specs = list(functions)

        built: Dict[str, _Registered] = {}
        for spec in specs:
            entry = _build(spec)
            if entry.name in built or entry.name in self._functions:
                raise ValidationError(f"Function '{entry.name}' is registered twice")
            built[entry.name] = entry

        self._functions.update(built)

    def __contains__(self, name: str) -> bool:
        return name in self._functions

    def __len__(self) -> int:
        return len(self._functions)

    @property
    def names(self) -> List[str]:
        return list(self._functions)

    def declarations(self) -> List[FunctionDeclaration]:
        """Provider-neutral, JSON-Schema-shaped declarations (properties in declared order)."""
        return [entry.declaration() for entry in self._functions.values()]

    def metadata(self) -> Dict[str, Dict[str, Any]]:
        """Per-function parameter metadata used at invocation time."""
        return {
            name: {
                "description": entry.description,
                "params": [
                    {"name": p.name, "schema": p.schema, "required": p.required,
                     "default": None if p.default is MISSING else p.default}
                    for p in entry.params
                ],
            }
            for name, entry in self._functions.items()
        }

    def resolve_arguments(self, name: str, arguments: Optional[Mapping[str, Any]]) -> List[Any]:
        """
        Rebuild the positional argument list for a call.

        Raises:
            ProtocolViolation: Unknown function, unknown argument name, or a
                required argument the model left out.
        """
        entry = self._functions.get(name)
        if entry is None:
            raise ProtocolViolation(f"Model called unknown function '{name}'")
        arguments = dict(arguments or {})

        known = {p.name for p in entry.params}
        extra = set(arguments) - known
        if extra:
            raise ProtocolViolation(
                f"Model passed unknown arguments to '{name}': {', '.join(sorted(extra))}"
            )

        positional = []
        for param in entry.params:
            if param.name in arguments:
                positional.append(arguments[param.name])
            elif not param.required:
                positional.append(copy.deepcopy(param.default))
            else:
                raise ProtocolViolation(f"Model omitted required argument '{param.name}' of '{name}'")
        return positional

    async def invoke(self, name: str, arguments: Optional[Mapping[str, Any]]) -> str:
        """
        Call a registered function and return its JSON-encoded result.

        Coroutine functions are awaited.
        """
        positional = self.resolve_arguments(name, arguments)
        log.debug("Invoking %s%r", name, tuple(positional))
        result = self._functions[name].fn(*positional)
        if asyncio.iscoroutine(result):
            result = await result
        return json.dumps(result, default=str)


# =============================================================================
# Provider-specific declaration payloads
# =============================================================================

def to_openai_tools(declarations: Iterable[FunctionDeclaration]) -> List[Dict[str, Any]]:
    """Wrap declarations as OpenAI tool specs."""
    return [{"type": "function", "function": copy.deepcopy(dict(decl))} for decl in declarations]


def to_gemini_declarations(declarations: Iterable[FunctionDeclaration]) -> List[Dict[str, Any]]:
    """Declarations as Gemini function_declarations entries (parameters only when non-empty)."""
    result = []
    for decl in declarations:
        entry = {"name": decl["name"], "description": decl.get("description", "")}
        params = decl.get("parameters")
        if params and params.get("properties"):
            entry["parameters"] = copy.deepcopy(dict(params))
        result.append(entry)
    return result


def parameter_names(declaration: FunctionDeclaration) -> List[str]:
    """Parameter names of a declaration in declared order."""
    return list((declaration.get("parameters") or {}).get("properties", {}))


def _describe_type(schema: Mapping[str, Any]) -> str:
    if "enum" in schema:
        return " | ".join(json.dumps(v) for v in schema["enum"])
    return str(schema.get("type", "any"))


def to_text_listing(declarations: Iterable[FunctionDeclaration]) -> str:
    """
    Plain-text listing of functions for text-protocol backends.

    Describes the <FUNCTION_CALL>name(...)</FUNCTION_CALL> calling convention.
    """
    declarations = list(declarations)
    if not declarations:
        return ""
    lines = [
        "You can call the following functions. To call one, reply with exactly one line of the form",
        '<FUNCTION_CALL>name("first argument", 2)</FUNCTION_CALL>',
        "where the arguments are JSON values in the order listed, and nothing after it. "
        "Optional arguments may be left off the end.",
        "",
    ]
    for decl in declarations:
        params = decl.get("parameters") or {}
        required = set(params.get("required", []))
        signature = []
        details = []
        for pname, schema in params.get("properties", {}).items():
            marker = "" if pname in required else "?"
            signature.append(f"{pname}{marker}: {_describe_type(schema)}")
            if schema.get("description"):
                details.append(f"    {pname}: {schema['description']}")
        lines.append(f"- {decl['name']}({', '.join(signature)}): {decl.get('description', '')}")
        lines.extend(details)
    return "\n".join(lines)
