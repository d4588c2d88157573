"""Text-editor commands served from an :class:`InMemoryFileStore`.

This is the command set the model's hosted ``str_replace_editor`` tool
emits: ``view``, ``create``, ``str_replace``, ``insert`` and
``undo_edit``.
"""

from __future__ import annotations

import logging

from conduit.file_store import InMemoryFileStore
from conduit.tools import ToolDescriptor
from conduit.value import DynamicValue

logger = logging.getLogger(__name__)

TEXT_EDITOR_TOOL = ToolDescriptor(type="text_editor_20250124", name="str_replace_editor")


def _is_error(result: str) -> bool:
    return result.startswith("Error:")


class TextEditorCommandHandler:
    def __init__(self, store: InMemoryFileStore | None = None):
        self.store = store if store is not None else InMemoryFileStore()

    def process(self, tool_input: dict[str, DynamicValue]) -> tuple[str, bool]:
        """Run one command and return ``(result_text, is_error)``."""
        command_value = tool_input.get("command")
        command = command_value.as_string() if command_value else None
        if command is None:
            return "Error: No 'command' field in the tool input.", True

        def text(key: str, default: str = "") -> str:
            value = tool_input.get(key)
            found = value.as_string() if value else None
            return default if found is None else found

        path = text("path", "(missing path)")
        logger.info(f"Text editor command {command} on {path}")

        if command == "view":
            contents = self.store.view(path)
            if contents is None:
                return f"Error: File not found at path: {path}", True
            return contents, False

        if command == "create":
            return self.store.create(path, text("file_text")), False

        if command == "str_replace":
            result = self.store.str_replace(path, text("old_str"), text("new_str"))
            return result, _is_error(result)

        if command == "insert":
            line_value = tool_input.get("insert_line")
            line = line_value.as_int() if line_value else None
            result = self.store.insert(path, line or 0, text("new_str"))
            return result, _is_error(result)

        if command == "undo_edit":
            result = self.store.undo_edit(path)
            return result, _is_error(result)

        return f"Error: Unknown text editor command: {command}", True
