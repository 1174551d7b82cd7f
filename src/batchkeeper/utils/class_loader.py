from __future__ import annotations

import importlib
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from types import ModuleType


def load_class(path: str) -> type[Any]:
    """Dynamically load a class from a module path string.

    Args:
        path: Fully qualified class path (e.g. "mypackage.module.MyClass").

    Returns:
        The class object referenced by the path.

    Raises:
        ImportError: If the path is malformed, or the module or class cannot
            be imported.

    """
    try:
        module_path, class_name = path.rsplit(".", 1)
    except ValueError as exc:
        message = f"Invalid class path: {path}"
        raise ImportError(message) from exc

    try:
        module: ModuleType = importlib.import_module(module_path)
    except ImportError as exc:
        message = f"Cannot import module {module_path}"
        raise ImportError(message) from exc

    try:
        cls: type[Any] = getattr(module, class_name)
    except AttributeError as exc:
        message = f"Module '{module_path}' has no class {class_name}"
        raise ImportError(message) from exc
    return cls


def load_handlers(paths: dict[str, str]) -> dict[str, type[Any]]:
    """Load every handler class named in a `callbacks` config section."""
    return {name: load_class(path) for name, path in paths.items()}
