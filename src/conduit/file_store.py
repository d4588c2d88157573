"""In-memory file store used when no tool backend is connected.

Every mutating method returns a status string; failures start with
``"Error:"`` so callers can classify the outcome without exceptions.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

SAMPLE_FILES: dict[str, str] = {
    "/repo/primes.py": '''def is_prime(n):
    """Check if a number is prime."""
    if n <= 1:
        return False
    if n <= 3:
        return True
    if n % 2 == 0 or n % 3 == 0:
        return False
    i = 5
    while i * i <= n:
        if n % i == 0 or n % (i + 2) == 0:
            return False
        i += 6
    return True

def get_primes(limit):
    """Generate a list of prime numbers up to the given limit."""
    primes = []
    for num in range(2, limit + 1)
        if is_prime(num):
            primes.append(num)
    return primes

def main():
    """Main function to demonstrate prime number generation."""
    limit = 100
    prime_list = get_primes(limit)
    print(f"Prime numbers up to {limit}:")
    print(prime_list)
    print(f"Found {len(prime_list)} prime numbers.")

if __name__ == "__main__":
    main()''',
    "/repo/foo.swift": '''// Example Swift file with an error
import Foundation

struct User {
    let name: String
    let age: Int

    func greet() -> String {
        "Hello, \\(name)!"
    }

    // Missing closing brace here
    func isAdult() -> Bool {
        return age >= 18
}

func createUsers() -> [User] {
    return [
        User(name: "Alice", age: 28),
        User(name: "Bob", age: 19),
        User(name: "Charlie", age: 16)
    ]
}''',
}


def number_lines(content: str) -> str:
    return "\n".join(
        f"{i}: {line}" for i, line in enumerate(content.split("\n"), start=1)
    )


class InMemoryFileStore:
    """Mapping of absolute paths to file contents.

    Args:
        files: Initial contents.  Defaults to a copy of ``SAMPLE_FILES``;
            pass ``{}`` for an empty store.
    """

    def __init__(self, files: dict[str, str] | None = None):
        self._files = dict(SAMPLE_FILES if files is None else files)

    def __contains__(self, path: str) -> bool:
        return path in self._files

    def paths(self) -> list[str]:
        return sorted(self._files)

    def read(self, path: str) -> str | None:
        """Raw contents, or None if *path* does not exist."""
        return self._files.get(path)

    def view(self, path: str) -> str | None:
        """Line-numbered contents, or None if *path* does not exist."""
        content = self._files.get(path)
        if content is None:
            return None
        return number_lines(content)

    def create(self, path: str, contents: str) -> str:
        self._files[path] = contents
        logger.info(f"Created {path} ({len(contents)} chars)")
        return f"Created file {path} successfully."

    def str_replace(self, path: str, old: str, new: str) -> str:
        content = self._files.get(path)
        if content is None:
            return f"Error: File not found at {path}."
        if not old:
            return "Error: No match found for replacement."

        occurrences = content.count(old)
        if occurrences == 0:
            return "Error: No match found for replacement."
        if occurrences > 1:
            return (
                f"Error: Found {occurrences} matches. "
                "Provide more context for a unique match."
            )
        self._files[path] = content.replace(old, new, 1)
        return "Successfully replaced text at exactly one location."

    def insert(self, path: str, line: int, text: str) -> str:
        """Insert *text* after line number *line*; ``0`` inserts at the top."""
        content = self._files.get(path)
        if content is None:
            return f"Error: File not found at {path}."

        lines = content.split("\n")
        if line < 0 or line > len(lines):
            return "Error: Invalid line number."
        lines.insert(line, text)
        self._files[path] = "\n".join(lines)
        return f"Successfully inserted text after line {line}."

    def undo_edit(self, path: str) -> str:
        return "Error: undo_edit not implemented in this example."

    def list_dir(self, path: str) -> list[str]:
        prefix = path.rstrip("/") + "/"
        return [p for p in self.paths() if p.startswith(prefix)]
