"""Registry of condition predicates and automation handlers.

Condition and automation nodes name a handler in their ``params`` instead of
embedding an expression language. A handler may be registered with a pydantic
model describing its arguments; the arguments a node supplies are validated
against it before the call.
"""

import inspect
import operator
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Type

from pydantic import BaseModel, ValidationError, field_validator

from .exceptions import HandlerRegistryError
from .logging import get_logger

logger = get_logger(__name__)

PREDICATE = "predicate"
AUTOMATION = "automation"


@dataclass
class RegisteredHandler:
    """A named callable plus the schema its arguments must satisfy."""
    name: str
    kind: str
    function: Callable[..., Any]
    description: str = ""
    args_model: Optional[Type[BaseModel]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "description": self.description,
            "args_schema": self.args_model.model_json_schema() if self.args_model else None,
        }


class HandlerRegistry:
    """Registry for the pluggable callables used by condition and automation nodes."""

    def __init__(self, include_builtins: bool = True):
        self._handlers: Dict[str, Dict[str, RegisteredHandler]] = {PREDICATE: {}, AUTOMATION: {}}
        self._lock = threading.RLock()
        if include_builtins:
            register_builtin_handlers(self)

    def register_predicate(self, name: str, function: Callable[..., Any], description: str = "",
                           args_model: Optional[Type[BaseModel]] = None) -> None:
        """Register a condition predicate called as ``function(context, **args)``.

        The predicate returns a bool (mapped to the ``true``/``false`` branch
        labels) or a string naming the branch to follow.
        """
        self._register(PREDICATE, name, function, description, args_model)

    def register_automation(self, name: str, function: Callable[..., Any], description: str = "",
                            args_model: Optional[Type[BaseModel]] = None) -> None:
        """Register an automation handler called as ``function(context, **input)``.

        The handler returns a mapping merged into instance context, or None.
        """
        self._register(AUTOMATION, name, function, description, args_model)

    def _register(self, kind: str, name: str, function: Callable[..., Any], description: str,
                  args_model: Optional[Type[BaseModel]]) -> None:
        if not name or not name.strip():
            raise HandlerRegistryError("Handler name cannot be empty")
        name = name.strip()

        if not callable(function):
            raise HandlerRegistryError(f"Handler '{name}' must be callable", handler_name=name)

        try:
            parameters = inspect.signature(function).parameters
        except (ValueError, TypeError) as e:
            raise HandlerRegistryError(f"Cannot inspect signature for handler '{name}': {e}", handler_name=name)
        if not parameters:
            raise HandlerRegistryError(
                f"Handler '{name}' must accept the instance context as its first argument",
                handler_name=name
            )

        with self._lock:
            if name in self._handlers[kind]:
                raise HandlerRegistryError(f"{kind.capitalize()} '{name}' is already registered", handler_name=name)
            self._handlers[kind][name] = RegisteredHandler(
                name=name,
                kind=kind,
                function=function,
                description=description.strip() if description else "",
                args_model=args_model,
            )

        logger.info(f"Registered {kind} '{name}'")

    def unregister(self, kind: str, name: str) -> bool:
        with self._lock:
            return self._handlers.get(kind, {}).pop(name, None) is not None

    def _get(self, kind: str, name: Optional[str]) -> RegisteredHandler:
        if not name or not str(name).strip():
            raise HandlerRegistryError(f"{kind.capitalize()} name cannot be empty")
        with self._lock:
            handler = self._handlers[kind].get(str(name).strip())
        if handler is None:
            raise HandlerRegistryError(f"{kind.capitalize()} '{name}' is not registered", handler_name=name)
        return handler

    def get_predicate(self, name: str) -> RegisteredHandler:
        return self._get(PREDICATE, name)

    def get_automation(self, name: str) -> RegisteredHandler:
        return self._get(AUTOMATION, name)

    def has_predicate(self, name: Optional[str]) -> bool:
        with self._lock:
            return bool(name) and name in self._handlers[PREDICATE]

    def has_automation(self, name: Optional[str]) -> bool:
        with self._lock:
            return bool(name) and name in self._handlers[AUTOMATION]

    def list_handlers(self, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        """Describe registered handlers, optionally filtered by kind."""
        kinds = [kind] if kind else [PREDICATE, AUTOMATION]
        with self._lock:
            return [
                handler.describe()
                for k in kinds
                for handler in sorted(self._handlers.get(k, {}).values(), key=lambda h: h.name)
            ]

    def validate_args(self, handler: RegisteredHandler, args: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """Validate node arguments against the handler's schema.

        Raises:
            HandlerRegistryError: If the arguments do not satisfy the schema
        """
        args = dict(args or {})
        if handler.args_model is None:
            return args
        try:
            return handler.args_model.model_validate(args).model_dump()
        except ValidationError as e:
            raise HandlerRegistryError(
                f"Invalid arguments for {handler.kind} '{handler.name}': {e.errors(include_url=False)}",
                handler_name=handler.name
            )


# Built-in handlers

_COMPARISONS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "ne": operator.ne,
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
    "in": lambda left, right: left in right,
    "contains": lambda left, right: right in left,
}


class FieldArgs(BaseModel):
    field: str


class FieldValueArgs(BaseModel):
    field: str
    value: Any = None


class CompareArgs(BaseModel):
    field: str
    operator: str
    value: Any = None

    @field_validator("operator")
    @classmethod
    def validate_operator(cls, value):
        if value not in _COMPARISONS:
            raise ValueError(f"Unsupported operator '{value}'. Supported: {sorted(_COMPARISONS)}")
        return value


class ValueLookupArgs(BaseModel):
    field: str
    default: Any = None


class SetContextArgs(BaseModel):
    values: Dict[str, Any]


class IncrementArgs(BaseModel):
    field: str
    amount: float = 1


def _lookup(context: Mapping[str, Any], path: str, default: Any = None) -> Any:
    """Resolve a dotted path inside nested context mappings."""
    current: Any = context
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return default
        current = current[part]
    return current


def context_equals(context, field, value=None):
    return _lookup(context, field) == value


def context_truthy(context, field):
    return bool(_lookup(context, field))


def context_compare(context, field, operator, value=None):
    left = _lookup(context, field)
    if left is None:
        return False
    try:
        return bool(_COMPARISONS[operator](left, value))
    except TypeError:
        return False


def context_value(context, field, default=None):
    return _lookup(context, field, default)


def set_context(context, values):
    return dict(values)


def increment(context, field, amount=1):
    current = _lookup(context, field, 0) or 0
    result = current + amount
    if isinstance(result, float) and result.is_integer() and isinstance(current, int):
        result = int(result)
    return {field: result}


def noop(context):
    return None


def register_builtin_handlers(registry: HandlerRegistry) -> None:
    """Register the handlers every deployment gets."""
    registry.register_predicate("context_equals", context_equals,
                                "True when a context field equals a value", FieldValueArgs)
    registry.register_predicate("context_truthy", context_truthy,
                                "True when a context field is truthy", FieldArgs)
    registry.register_predicate("context_compare", context_compare,
                                "Compare a context field with a value", CompareArgs)
    registry.register_predicate("context_value", context_value,
                                "Use a context field's value as the branch label", ValueLookupArgs)
    registry.register_automation("set_context", set_context,
                                 "Write fixed values into the instance context", SetContextArgs)
    registry.register_automation("increment", increment,
                                 "Add an amount to a numeric context field", IncrementArgs)
    registry.register_automation("noop", noop, "Do nothing")
