"""
Module: tool_registry.py
Description: Catalog of assistant functions the LLM may call.

Each ToolDefinition pairs a name from the ToolName enum with a pydantic
argument model and a handler. The JSON-Schema sent over the wire is derived
from the argument model, so the schema the model sees and the validation the
executor applies can never drift apart.

The catalog is filled once at startup (see services.functions) and only read
afterwards.

Author: RUPI Assistant Team
"""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type

from pydantic import BaseModel


class ToolRegistrationError(Exception):
    """Raised when a function name is registered twice."""
    pass


class ToolName(str, Enum):
    """Every function the assistant knows about."""
    GET_TRANSACTIONS = "get_transactions"
    GET_ACCOUNTS = "get_accounts"
    GET_BALANCE_SHEET = "get_balance_sheet"
    GET_INCOME_STATEMENT = "get_income_statement"
    GET_INVESTMENTS = "get_investments"
    GET_LOANS = "get_loans"
    GET_UPCOMING_EMIS = "get_upcoming_emis"
    ANALYZE_SPENDING = "analyze_spending"
    CALCULATE_PREPAYMENT = "calculate_prepayment"

    @classmethod
    def parse(cls, name: str) -> Optional["ToolName"]:
        try:
            return cls(name)
        except ValueError:
            return None


@dataclass(frozen=True)
class FamilyContext:
    """Who a function call runs for, and the family's display preferences."""
    family_id: int
    currency: str = "INR"
    date_format: str = "%d-%m-%Y"
    timezone: str = "Asia/Kolkata"
    today: Optional[date] = None

    def current_date(self) -> date:
        return self.today or date.today()


# =============================================================================
# Schema derivation
# =============================================================================

def _clean_schema(node: Any) -> Any:
    """Strip pydantic titles/defaults and collapse Optional[X] into X."""
    if isinstance(node, dict):
        if "anyOf" in node:
            variants = [v for v in node["anyOf"] if v.get("type") != "null"]
            if len(variants) == 1:
                merged = {k: v for k, v in node.items() if k != "anyOf"}
                merged.update(variants[0])
                node = merged
        return {
            key: _clean_schema(value)
            for key, value in node.items()
            if key not in ("title", "default")
        }
    if isinstance(node, list):
        return [_clean_schema(item) for item in node]
    return node


def schema_for(model: Type[BaseModel]) -> Dict[str, Any]:
    raw = model.model_json_schema()
    schema = {
        "type": "object",
        "properties": _clean_schema(raw.get("properties", {})),
        "required": list(raw.get("required", [])),
    }
    return schema


# =============================================================================
# Definitions / catalog
# =============================================================================

@dataclass(frozen=True)
class ToolDefinition:
    name: ToolName
    description: str
    args_model: Type[BaseModel]
    handler: Callable[..., Dict[str, Any]] = field(compare=False)

    @property
    def params_schema(self) -> Dict[str, Any]:
        return schema_for(self.args_model)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "name": self.name.value,
            "description": self.description,
            "params_schema": self.params_schema,
        }


class ToolCatalog:
    """Ordered name -> definition map with unique names."""

    def __init__(self, definitions: Optional[List[ToolDefinition]] = None):
        self._definitions: Dict[str, ToolDefinition] = {}
        for definition in definitions or []:
            self.register(definition)

    def register(self, definition: ToolDefinition) -> None:
        key = definition.name.value
        if key in self._definitions:
            raise ToolRegistrationError(f"Function already registered: {key}")
        self._definitions[key] = definition

    def lookup(self, name: str) -> Optional[ToolDefinition]:
        return self._definitions.get(name)

    def all(self) -> List[ToolDefinition]:
        return list(self._definitions.values())

    def to_wire(self) -> List[Dict[str, Any]]:
        return [definition.to_wire() for definition in self._definitions.values()]

    def __len__(self) -> int:
        return len(self._definitions)

    def __contains__(self, name: str) -> bool:
        return name in self._definitions


# =============================================================================
# Call request / result
# =============================================================================

@dataclass
class ToolCallRequest:
    """A function call the model asked for."""
    call_id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    thought_signature: Optional[str] = None

    @classmethod
    def from_wire(cls, payload: Dict[str, Any]) -> "ToolCallRequest":
        arguments = payload.get("arguments") or {}
        if not isinstance(arguments, dict):
            arguments = {}
        return cls(
            call_id=str(payload.get("id") or payload.get("call_id") or ""),
            name=str(payload.get("name") or ""),
            arguments=arguments,
            thought_signature=payload.get("thought_signature"),
        )


@dataclass
class ToolCallResult:
    """Outcome of executing a ToolCallRequest. Errors are carried as data."""
    call_id: str
    name: str
    arguments: Dict[str, Any]
    output: Dict[str, Any]
    thought_signature: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return isinstance(self.output, dict) and "error" in self.output

    def to_wire(self) -> Dict[str, Any]:
        wire = {
            "call_id": self.call_id,
            "name": self.name,
            "arguments": self.arguments,
            "output": self.output,
        }
        if self.thought_signature:
            wire["thought_signature"] = self.thought_signature
        return wire
