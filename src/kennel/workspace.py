from __future__ import annotations

from pathlib import Path

from kennel.errors import ValidationError


class WorkspaceRegistry:
    """Named workspaces: directories directly or indirectly under one root."""

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()

    def resolve(self, name: str) -> Path:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Workspace is required.")
        candidate = Path(name)
        if candidate.is_absolute() or ".." in candidate.parts:
            raise ValidationError(f"Workspace '{name}' must be a name relative to the workspace root.")
        path = (self.root / candidate).resolve()
        if path == self.root or not path.is_relative_to(self.root):
            raise ValidationError(f"Workspace '{name}' resolves outside the workspace root.")
        if not path.is_dir():
            raise ValidationError(f"Unknown workspace '{name}'.")
        return path

    def exists(self, name: str) -> bool:
        try:
            self.resolve(name)
        except ValidationError:
            return False
        return True

    def list(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.root.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )
