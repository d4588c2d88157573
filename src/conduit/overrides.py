"""Workspace tools that shadow the backend's own file-system tools.

The names and parameters match the ones the ``claude mcp serve``
backend advertises, so the model calls them exactly as it would the
originals; the edits land in the conversation's in-memory store.
"""

from conduit.file_store import InMemoryFileStore, number_lines
from conduit.tools import Tool, tool


def workspace_overrides(store: InMemoryFileStore) -> list[Tool]:
    @tool(name="View")
    def view(file_path: str):
        """Read a file from the workspace, with line numbers.

        Args:
            file_path: Absolute path of the file to read.
        """
        content = store.read(file_path)
        if content is None:
            return f"Error: File not found at path: {file_path}"
        return number_lines(content)

    @tool(name="LS")
    def list_directory(path: str):
        """List the files under a directory of the workspace.

        Args:
            path: Absolute directory path.
        """
        files = store.list_dir(path)
        if not files:
            return f"No files found in {path}"
        return "\n".join(files)

    @tool(name="Edit")
    def edit(file_path: str, old_string: str, new_string: str):
        """Replace one unique occurrence of a string in a file.

        Args:
            file_path: Absolute path of the file to edit.
            old_string: Text to replace; must occur exactly once.
            new_string: Replacement text.
        """
        result = store.str_replace(file_path, old_string, new_string)
        if result.startswith("Error:"):
            return result
        return f"Successfully edited file {file_path}"

    @tool(name="Replace")
    def replace(file_path: str, content: str):
        """Write a file, replacing any existing contents.

        Args:
            file_path: Absolute path of the file to write.
            content: New file contents.
        """
        store.create(file_path, content)
        return f"Successfully replaced contents of file {file_path}"

    return [view, list_directory, edit, replace]
