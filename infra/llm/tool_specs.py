from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from core.errors import UnknownToolError
from core.tool_names import clean_tool_name
from core.turn_state import ToolDefinition

logger = logging.getLogger(__name__)

JSON_TOOL_NAME = "json"
JSON_TOOL_DESCRIPTION = "Respond with a JSON object."


@dataclass
class ToolCatalog:
    """Tools offered to the model, keyed by their provider-safe name."""

    tools: List[Dict[str, Any]] = field(default_factory=list)
    block_ids: Dict[str, str] = field(default_factory=dict)
    display_names: Dict[str, str] = field(default_factory=dict)

    def block_id_for(self, tool_name: str) -> str:
        block_id = self.block_ids.get(tool_name)
        if not block_id:
            raise UnknownToolError(f'Model requested unknown tool "{tool_name}"', detail={"tool": tool_name})
        return block_id

    def display_name(self, tool_name: str) -> str:
        return self.display_names.get(tool_name, tool_name)

    def resolve_force(self, force: Union[bool, str, None]) -> Optional[str]:
        """Map a display-name force directive to the provider-safe name."""
        if not isinstance(force, str):
            return None
        name = clean_tool_name(force)
        return name if name in self.block_ids else None


def build_tool_catalog(tool_defs: Sequence[ToolDefinition]) -> ToolCatalog:
    """Build the content-block tool list plus name lookups from caller definitions."""
    catalog = ToolCatalog()
    for tool_def in tool_defs or []:
        name = clean_tool_name(tool_def.name)
        if not name:
            logger.warning("Skipping tool with unusable name %r (block=%s)", tool_def.name, tool_def.block_id)
            continue
        if name in catalog.block_ids:
            logger.warning("Duplicate tool name %s; keeping the first definition", name)
            continue
        catalog.tools.append(
            {
                "name": name,
                "description": tool_def.description or "",
                "input_schema": copy.deepcopy(tool_def.input_schema) or {"type": "object", "properties": {}},
            }
        )
        catalog.block_ids[name] = tool_def.block_id
        catalog.display_names[name] = tool_def.name
    return catalog


def json_tool_spec(schema: Dict[str, Any]) -> Dict[str, Any]:
    return {"name": JSON_TOOL_NAME, "description": JSON_TOOL_DESCRIPTION, "input_schema": copy.deepcopy(schema)}


def build_tool_specs(tools: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Build OpenAI-style tool specs from content-block tool definitions."""
    specs: List[Dict[str, Any]] = []
    for tool in tools or []:
        specs.append(
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool.get("description") or "",
                    "parameters": tool.get("input_schema") or {"type": "object", "properties": {}},
                },
            }
        )
    return specs


def build_tool_choice(tool_choice: Any) -> Any:
    """Translate "auto" / "any" / {"name": ...} into the litellm tool_choice form."""
    if tool_choice is None:
        return None
    if tool_choice == "any":
        return "required"
    if isinstance(tool_choice, dict) and tool_choice.get("name"):
        return {"type": "function", "function": {"name": tool_choice["name"]}}
    return tool_choice
